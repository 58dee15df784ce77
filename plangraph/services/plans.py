from __future__ import annotations

import inspect
import itertools
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Protocol

import asyncpg

from ..core.config import Settings
from ..core.logging import get_logger
from ..schemas.plans import (
    MilestoneDraft,
    MilestoneRecord,
    MilestoneStatus,
    PlanEventRecord,
    PlanRecord,
    PlanStatus,
)
from ..utils.json_encoding import decode_jsonb, encode_jsonb

logger = get_logger(name=__name__)

TimestampFactory = Callable[[], datetime]


def _default_now() -> datetime:
    return datetime.now(timezone.utc)


class PlanRepository(Protocol):
    """Durable home of plans, their milestones and plan events.

    Status updates are idempotent: writing the status a record already has
    leaves it untouched, and deleting a missing plan is not an error.
    """

    async def create_plan(
        self,
        thread_id: str,
        *,
        data: dict[str, Any],
        milestones: Sequence[MilestoneDraft],
    ) -> tuple[PlanRecord, list[MilestoneRecord]]:
        ...

    async def get_plan(self, plan_id: int) -> PlanRecord | None:
        ...

    async def get_active_plan_for_thread(self, thread_id: str) -> PlanRecord | None:
        ...

    async def list_milestones(self, plan_id: int) -> list[MilestoneRecord]:
        ...

    async def get_milestone(self, milestone_id: int) -> MilestoneRecord | None:
        ...

    async def revise_plan(
        self,
        plan_id: int,
        *,
        data: dict[str, Any],
        milestones: Sequence[MilestoneDraft],
    ) -> tuple[PlanRecord, list[MilestoneRecord]]:
        ...

    async def update_plan_status(self, plan_id: int, status: PlanStatus) -> PlanRecord | None:
        ...

    async def update_milestone_status(self, milestone_id: int, status: MilestoneStatus) -> MilestoneRecord | None:
        ...

    async def add_event(self, plan_id: int, event_type: str, data: dict[str, Any] | None = None) -> PlanEventRecord:
        ...

    async def list_events(self, plan_id: int) -> list[PlanEventRecord]:
        ...

    async def delete_plan(self, plan_id: int) -> bool:
        ...


class PlanNotFoundError(LookupError):
    def __init__(self, plan_id: int) -> None:
        super().__init__(f"Plan {plan_id} does not exist")
        self.plan_id = plan_id


class InMemoryPlanRepository:
    def __init__(self, *, now: TimestampFactory | None = None) -> None:
        self._now = now or _default_now
        self._plans: dict[int, PlanRecord] = {}
        self._milestones: dict[int, MilestoneRecord] = {}
        self._events: dict[int, list[PlanEventRecord]] = {}
        self._plan_ids = itertools.count(1)
        self._milestone_ids = itertools.count(1)
        self._event_ids = itertools.count(1)

    async def create_plan(
        self,
        thread_id: str,
        *,
        data: dict[str, Any],
        milestones: Sequence[MilestoneDraft],
    ) -> tuple[PlanRecord, list[MilestoneRecord]]:
        timestamp = self._now()
        plan = PlanRecord(
            id=next(self._plan_ids),
            thread_id=thread_id,
            data=dict(data),
            created_at=timestamp,
            updated_at=timestamp,
        )
        self._plans[plan.id] = plan
        self._events[plan.id] = []
        return plan.model_copy(deep=True), self._insert_milestones(plan.id, milestones, timestamp)

    async def get_plan(self, plan_id: int) -> PlanRecord | None:
        plan = self._plans.get(plan_id)
        return plan.model_copy(deep=True) if plan is not None else None

    async def get_active_plan_for_thread(self, thread_id: str) -> PlanRecord | None:
        candidates = [
            plan
            for plan in self._plans.values()
            if plan.thread_id == thread_id and plan.status is PlanStatus.ACTIVE
        ]
        if not candidates:
            return None
        latest = max(candidates, key=lambda plan: (plan.updated_at, plan.id))
        return latest.model_copy(deep=True)

    async def list_milestones(self, plan_id: int) -> list[MilestoneRecord]:
        rows = [item for item in self._milestones.values() if item.plan_id == plan_id]
        rows.sort(key=lambda item: (item.order_index, item.id))
        return [item.model_copy() for item in rows]

    async def get_milestone(self, milestone_id: int) -> MilestoneRecord | None:
        milestone = self._milestones.get(milestone_id)
        return milestone.model_copy() if milestone is not None else None

    async def revise_plan(
        self,
        plan_id: int,
        *,
        data: dict[str, Any],
        milestones: Sequence[MilestoneDraft],
    ) -> tuple[PlanRecord, list[MilestoneRecord]]:
        plan = self._plans.get(plan_id)
        if plan is None:
            raise PlanNotFoundError(plan_id)
        timestamp = self._now()
        plan.revision += 1
        plan.data = dict(data)
        plan.status = PlanStatus.ACTIVE
        plan.updated_at = timestamp
        for milestone_id in [key for key, item in self._milestones.items() if item.plan_id == plan_id]:
            del self._milestones[milestone_id]
        return plan.model_copy(deep=True), self._insert_milestones(plan_id, milestones, timestamp)

    async def update_plan_status(self, plan_id: int, status: PlanStatus) -> PlanRecord | None:
        plan = self._plans.get(plan_id)
        if plan is None:
            return None
        if plan.status is not status:
            plan.status = status
            plan.updated_at = self._now()
        return plan.model_copy(deep=True)

    async def update_milestone_status(self, milestone_id: int, status: MilestoneStatus) -> MilestoneRecord | None:
        milestone = self._milestones.get(milestone_id)
        if milestone is None:
            return None
        if milestone.status is not status:
            milestone.status = status
            milestone.updated_at = self._now()
        return milestone.model_copy()

    async def add_event(self, plan_id: int, event_type: str, data: dict[str, Any] | None = None) -> PlanEventRecord:
        if plan_id not in self._plans:
            raise PlanNotFoundError(plan_id)
        event = PlanEventRecord(
            id=next(self._event_ids),
            plan_id=plan_id,
            type=event_type,
            data=dict(data or {}),
            created_at=self._now(),
        )
        self._events.setdefault(plan_id, []).append(event)
        return event.model_copy(deep=True)

    async def list_events(self, plan_id: int) -> list[PlanEventRecord]:
        return [event.model_copy(deep=True) for event in self._events.get(plan_id, [])]

    async def delete_plan(self, plan_id: int) -> bool:
        if self._plans.pop(plan_id, None) is None:
            return False
        self._events.pop(plan_id, None)
        for milestone_id in [key for key, item in self._milestones.items() if item.plan_id == plan_id]:
            del self._milestones[milestone_id]
        return True

    def _insert_milestones(
        self,
        plan_id: int,
        drafts: Sequence[MilestoneDraft],
        timestamp: datetime,
    ) -> list[MilestoneRecord]:
        created: list[MilestoneRecord] = []
        for index, draft in enumerate(drafts):
            record = MilestoneRecord(
                id=next(self._milestone_ids),
                plan_id=plan_id,
                title=draft.title,
                description=draft.description,
                order_index=draft.order_index if draft.order_index else index,
                created_at=timestamp,
                updated_at=timestamp,
            )
            self._milestones[record.id] = record
            created.append(record.model_copy())
        return created


class PostgresPlanRepository:
    _PLAN_COLUMNS = "id, thread_id, revision, status, data, created_at, updated_at"
    _MILESTONE_COLUMNS = "id, plan_id, title, description, order_index, status, created_at, updated_at"

    def __init__(self, pool: Any, *, now: TimestampFactory | None = None) -> None:
        self._pool_or_coroutine = pool
        self._pool: Any | None = None
        self._now = now or _default_now

    @classmethod
    def from_settings(cls, settings: Settings) -> "PostgresPlanRepository":
        pool = asyncpg.create_pool(
            dsn=str(settings.postgres.dsn),
            min_size=settings.postgres.pool_min_size,
            max_size=settings.postgres.pool_max_size,
        )
        return cls(pool)

    async def create_plan(
        self,
        thread_id: str,
        *,
        data: dict[str, Any],
        milestones: Sequence[MilestoneDraft],
    ) -> tuple[PlanRecord, list[MilestoneRecord]]:
        pool = await self._ensure_pool()
        timestamp = self._now()
        async with pool.acquire() as connection:
            async with connection.transaction():
                row = await connection.fetchrow(
                    f"""
                    INSERT INTO agent_plans (thread_id, revision, status, data, created_at, updated_at)
                    VALUES ($1, 1, $2, $3::jsonb, $4, $4)
                    RETURNING {self._PLAN_COLUMNS}
                    """,
                    thread_id,
                    PlanStatus.ACTIVE.value,
                    encode_jsonb(data),
                    timestamp,
                )
                plan = self._plan_from_row(row)
                records = await self._insert_milestones(connection, plan.id, milestones, timestamp)
        logger.info("plan_created", plan_id=plan.id, thread_id=thread_id, milestones=len(records))
        return plan, records

    async def get_plan(self, plan_id: int) -> PlanRecord | None:
        pool = await self._ensure_pool()
        async with pool.acquire() as connection:
            row = await connection.fetchrow(
                f"SELECT {self._PLAN_COLUMNS} FROM agent_plans WHERE id = $1",
                plan_id,
            )
        return self._plan_from_row(row) if row is not None else None

    async def get_active_plan_for_thread(self, thread_id: str) -> PlanRecord | None:
        pool = await self._ensure_pool()
        async with pool.acquire() as connection:
            row = await connection.fetchrow(
                f"""
                SELECT {self._PLAN_COLUMNS}
                FROM agent_plans
                WHERE thread_id = $1 AND status = $2
                ORDER BY updated_at DESC, id DESC
                LIMIT 1
                """,
                thread_id,
                PlanStatus.ACTIVE.value,
            )
        return self._plan_from_row(row) if row is not None else None

    async def list_milestones(self, plan_id: int) -> list[MilestoneRecord]:
        pool = await self._ensure_pool()
        async with pool.acquire() as connection:
            rows = await connection.fetch(
                f"""
                SELECT {self._MILESTONE_COLUMNS}
                FROM agent_plan_todos
                WHERE plan_id = $1
                ORDER BY order_index ASC, id ASC
                """,
                plan_id,
            )
        return [self._milestone_from_row(row) for row in rows]

    async def get_milestone(self, milestone_id: int) -> MilestoneRecord | None:
        pool = await self._ensure_pool()
        async with pool.acquire() as connection:
            row = await connection.fetchrow(
                f"SELECT {self._MILESTONE_COLUMNS} FROM agent_plan_todos WHERE id = $1",
                milestone_id,
            )
        return self._milestone_from_row(row) if row is not None else None

    async def revise_plan(
        self,
        plan_id: int,
        *,
        data: dict[str, Any],
        milestones: Sequence[MilestoneDraft],
    ) -> tuple[PlanRecord, list[MilestoneRecord]]:
        pool = await self._ensure_pool()
        timestamp = self._now()
        async with pool.acquire() as connection:
            async with connection.transaction():
                row = await connection.fetchrow(
                    f"""
                    UPDATE agent_plans
                    SET revision = revision + 1,
                        status = $2,
                        data = $3::jsonb,
                        updated_at = $4
                    WHERE id = $1
                    RETURNING {self._PLAN_COLUMNS}
                    """,
                    plan_id,
                    PlanStatus.ACTIVE.value,
                    encode_jsonb(data),
                    timestamp,
                )
                if row is None:
                    raise PlanNotFoundError(plan_id)
                await connection.execute("DELETE FROM agent_plan_todos WHERE plan_id = $1", plan_id)
                plan = self._plan_from_row(row)
                records = await self._insert_milestones(connection, plan_id, milestones, timestamp)
        logger.info("plan_revised", plan_id=plan_id, revision=plan.revision, milestones=len(records))
        return plan, records

    async def update_plan_status(self, plan_id: int, status: PlanStatus) -> PlanRecord | None:
        pool = await self._ensure_pool()
        async with pool.acquire() as connection:
            row = await connection.fetchrow(
                f"""
                UPDATE agent_plans
                SET status = $2,
                    updated_at = CASE WHEN status = $2 THEN updated_at ELSE $3 END
                WHERE id = $1
                RETURNING {self._PLAN_COLUMNS}
                """,
                plan_id,
                status.value,
                self._now(),
            )
        return self._plan_from_row(row) if row is not None else None

    async def update_milestone_status(self, milestone_id: int, status: MilestoneStatus) -> MilestoneRecord | None:
        pool = await self._ensure_pool()
        async with pool.acquire() as connection:
            row = await connection.fetchrow(
                f"""
                UPDATE agent_plan_todos
                SET status = $2,
                    updated_at = CASE WHEN status = $2 THEN updated_at ELSE $3 END
                WHERE id = $1
                RETURNING {self._MILESTONE_COLUMNS}
                """,
                milestone_id,
                status.value,
                self._now(),
            )
        return self._milestone_from_row(row) if row is not None else None

    async def add_event(self, plan_id: int, event_type: str, data: dict[str, Any] | None = None) -> PlanEventRecord:
        pool = await self._ensure_pool()
        async with pool.acquire() as connection:
            row = await connection.fetchrow(
                """
                INSERT INTO agent_plan_events (plan_id, type, data, created_at)
                VALUES ($1, $2, $3::jsonb, $4)
                RETURNING id, plan_id, type, data, created_at
                """,
                plan_id,
                event_type,
                encode_jsonb(data or {}),
                self._now(),
            )
        return self._event_from_row(row)

    async def list_events(self, plan_id: int) -> list[PlanEventRecord]:
        pool = await self._ensure_pool()
        async with pool.acquire() as connection:
            rows = await connection.fetch(
                """
                SELECT id, plan_id, type, data, created_at
                FROM agent_plan_events
                WHERE plan_id = $1
                ORDER BY id ASC
                """,
                plan_id,
            )
        return [self._event_from_row(row) for row in rows]

    async def delete_plan(self, plan_id: int) -> bool:
        pool = await self._ensure_pool()
        async with pool.acquire() as connection:
            result = await connection.execute("DELETE FROM agent_plans WHERE id = $1", plan_id)
        return str(result).endswith(" 1")

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator["PostgresPlanRepository"]:
        try:
            await self._ensure_pool()
            yield self
        finally:
            await self.close()

    async def _insert_milestones(
        self,
        connection: Any,
        plan_id: int,
        drafts: Sequence[MilestoneDraft],
        timestamp: datetime,
    ) -> list[MilestoneRecord]:
        records: list[MilestoneRecord] = []
        for index, draft in enumerate(drafts):
            row = await connection.fetchrow(
                f"""
                INSERT INTO agent_plan_todos
                    (plan_id, title, description, order_index, status, created_at, updated_at)
                VALUES ($1, $2, $3, $4, $5, $6, $6)
                RETURNING {self._MILESTONE_COLUMNS}
                """,
                plan_id,
                draft.title,
                draft.description,
                draft.order_index if draft.order_index else index,
                MilestoneStatus.PENDING.value,
                timestamp,
            )
            records.append(self._milestone_from_row(row))
        return records

    async def _ensure_pool(self) -> Any:
        if self._pool is not None:
            return self._pool
        candidate = self._pool_or_coroutine
        if inspect.isawaitable(candidate):
            candidate = await candidate
        if not hasattr(candidate, "acquire"):
            raise RuntimeError("Invalid asyncpg pool supplied to PostgresPlanRepository")
        self._pool = candidate
        return self._pool

    @staticmethod
    def _plan_from_row(row: Any) -> PlanRecord:
        return PlanRecord(
            id=row["id"],
            thread_id=row["thread_id"],
            revision=row["revision"],
            status=PlanStatus(row["status"]),
            data=decode_jsonb(row["data"]) or {},
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _milestone_from_row(row: Any) -> MilestoneRecord:
        return MilestoneRecord(
            id=row["id"],
            plan_id=row["plan_id"],
            title=row["title"],
            description=row["description"] or "",
            order_index=row["order_index"],
            status=MilestoneStatus(row["status"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _event_from_row(row: Any) -> PlanEventRecord:
        return PlanEventRecord(
            id=row["id"],
            plan_id=row["plan_id"],
            type=row["type"],
            data=decode_jsonb(row["data"]) or {},
            created_at=row["created_at"],
        )


def build_plan_repository(settings: Settings) -> PlanRepository:
    if settings.use_postgres_plans:
        return PostgresPlanRepository.from_settings(settings)
    return InMemoryPlanRepository()


__all__ = [
    "InMemoryPlanRepository",
    "PlanNotFoundError",
    "PlanRepository",
    "PostgresPlanRepository",
    "build_plan_repository",
]
