from __future__ import annotations

import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from pydantic import ValidationError
from redis.asyncio import Redis

from ..core.config import Settings
from ..core.logging import get_logger
from ..core.metrics import increment_store_operation
from ..schemas.plans import PlanRecord
from ..services.plans import PlanRepository
from .state import HierarchicalThreadState, PlanningState, ThreadState

logger = get_logger(name=__name__)

StateT = TypeVar("StateT", bound=ThreadState)

DEFAULT_TTL_SECONDS = 3600
DEFAULT_NAMESPACE = "plangraph:thread"


@dataclass(slots=True)
class _VolatileEntry:
    payload: str
    expires_at: float


class ThreadStateStore(Generic[StateT]):
    """Keyed thread-state persistence with a transparent in-process fallback.

    Redis is the durable backend. When a Redis call fails the operation is
    served from the volatile copy instead, which every save refreshes. Plan
    and milestone records embedded in a loaded state are re-read from the
    plan repository because the serialized copies may be stale.
    """

    def __init__(
        self,
        redis: Any | None,
        plans: PlanRepository | None = None,
        *,
        state_model: type[StateT] = HierarchicalThreadState,  # type: ignore[assignment]
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        namespace: str = DEFAULT_NAMESPACE,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._redis = redis
        self._plans = plans
        self._state_model = state_model
        self._ttl = ttl_seconds
        self._namespace = namespace
        self._clock = clock or time.monotonic
        self._volatile: dict[str, _VolatileEntry] = {}

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        plans: PlanRepository | None = None,
        state_model: type[StateT] = HierarchicalThreadState,  # type: ignore[assignment]
    ) -> "ThreadStateStore[StateT]":
        redis = Redis.from_url(str(settings.redis.url))
        return cls(
            redis,
            plans,
            state_model=state_model,
            ttl_seconds=settings.thread_store.ttl_seconds,
            namespace=settings.thread_store.namespace,
        )

    @property
    def ttl_seconds(self) -> int:
        return self._ttl

    def _key(self, thread_id: str) -> str:
        return f"{self._namespace}:{thread_id}"

    async def save(self, state: StateT) -> None:
        key = self._key(state.thread_id)
        payload = state.model_dump_json()
        now = self._clock()
        self._sweep_volatile(now)
        self._volatile[key] = _VolatileEntry(payload=payload, expires_at=now + self._ttl)
        if self._redis is None:
            increment_store_operation(operation="save", backend="volatile")
            return
        try:
            await self._redis.set(key, payload, ex=self._ttl)
        except Exception as exc:
            self._log_fallback("save", state.thread_id, exc)
            increment_store_operation(operation="save", backend="volatile")
            return
        increment_store_operation(operation="save", backend="redis")

    async def load(self, thread_id: str) -> StateT | None:
        key = self._key(thread_id)
        payload: str | None = None
        backend = "volatile"
        if self._redis is not None:
            try:
                raw = await self._redis.get(key)
            except Exception as exc:
                self._log_fallback("load", thread_id, exc)
            else:
                if raw is not None:
                    payload = raw.decode("utf-8") if isinstance(raw, (bytes, bytearray)) else str(raw)
                    backend = "redis"
        if payload is None:
            payload = self._volatile_get(key)
        increment_store_operation(operation="load", backend=backend)
        if payload is None:
            return None

        try:
            state = self._state_model.model_validate_json(payload)
        except ValidationError as exc:
            logger.warning("thread_state_invalid", thread_id=thread_id, error=str(exc))
            return None
        await self._rehydrate(state)
        return state

    async def delete(self, thread_id: str) -> None:
        key = self._key(thread_id)
        self._volatile.pop(key, None)
        if self._redis is None:
            increment_store_operation(operation="delete", backend="volatile")
            return
        try:
            await self._redis.delete(key)
        except Exception as exc:
            self._log_fallback("delete", thread_id, exc)
            increment_store_operation(operation="delete", backend="volatile")
            return
        increment_store_operation(operation="delete", backend="redis")

    async def close(self) -> None:
        client = self._redis
        if client is not None:
            await client.aclose()

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator["ThreadStateStore[StateT]"]:
        try:
            yield self
        finally:
            await self.close()

    def _volatile_get(self, key: str) -> str | None:
        entry = self._volatile.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            del self._volatile[key]
            return None
        return entry.payload

    def _sweep_volatile(self, now: float) -> None:
        expired = [key for key, entry in self._volatile.items() if entry.expires_at <= now]
        for key in expired:
            del self._volatile[key]

    async def _rehydrate(self, state: ThreadState) -> None:
        """Replace cached plan records with their durable versions.

        A plan that still exists brings its current milestone list, since a
        revision replaces milestones under new ids. Without the plan, each
        cached milestone is refreshed on its own and kept as-is when missing.
        """
        planning = getattr(state, "planning", None)
        if planning is None or self._plans is None:
            return

        if planning.plan is not None:
            plan_id = planning.plan.id
            fresh_plan = None
            try:
                fresh_plan = await self._plans.get_plan(plan_id)
            except Exception as exc:
                logger.warning("thread_state_plan_refresh_failed", thread_id=state.thread_id, plan_id=plan_id, error=str(exc))
            else:
                if fresh_plan is None:
                    logger.warning("thread_state_plan_missing", thread_id=state.thread_id, plan_id=plan_id)
            if fresh_plan is not None:
                if await self._reload_plan_milestones(state.thread_id, planning, fresh_plan, self._plans):
                    return

        await self._refresh_milestones(state.thread_id, planning, self._plans)

    @staticmethod
    async def _reload_plan_milestones(
        thread_id: str,
        planning: PlanningState,
        plan: PlanRecord,
        plans: PlanRepository,
    ) -> bool:
        planning.plan = plan
        try:
            milestones = await plans.list_milestones(plan.id)
        except Exception as exc:
            logger.warning(
                "thread_state_milestones_refresh_failed",
                thread_id=thread_id,
                plan_id=plan.id,
                error=str(exc),
            )
            return False
        planning.milestones = milestones
        if planning.active_milestone_id is not None and planning.active_milestone() is None:
            logger.info(
                "thread_state_active_milestone_cleared",
                thread_id=thread_id,
                milestone_id=planning.active_milestone_id,
            )
            planning.reset_tactical()
        return True

    @staticmethod
    async def _refresh_milestones(thread_id: str, planning: PlanningState, plans: PlanRepository) -> None:
        refreshed = []
        for milestone in planning.milestones:
            fresh = None
            try:
                fresh = await plans.get_milestone(milestone.id)
            except Exception as exc:
                logger.warning(
                    "thread_state_milestone_refresh_failed",
                    thread_id=thread_id,
                    milestone_id=milestone.id,
                    error=str(exc),
                )
            else:
                if fresh is None:
                    logger.warning(
                        "thread_state_milestone_missing",
                        thread_id=thread_id,
                        milestone_id=milestone.id,
                    )
            refreshed.append(fresh if fresh is not None else milestone)
        planning.milestones = refreshed

    def _log_fallback(self, operation: str, thread_id: str, exc: Exception) -> None:
        logger.warning(
            "thread_store_fallback",
            operation=operation,
            thread_id=thread_id,
            error=str(exc),
        )


__all__ = ["ThreadStateStore"]
