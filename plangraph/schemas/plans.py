from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class PlanStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


class MilestoneStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    BLOCKED = "blocked"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PlanRecord(BaseModel):
    id: int
    thread_id: str = Field(min_length=1)
    revision: int = Field(1, ge=1)
    status: PlanStatus = PlanStatus.ACTIVE
    data: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def goal(self) -> str:
        return str(self.data.get("goal") or "")


class MilestoneRecord(BaseModel):
    id: int
    plan_id: int
    title: str
    description: str = ""
    order_index: int = Field(0, ge=0)
    status: MilestoneStatus = MilestoneStatus.PENDING
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def done(self) -> bool:
        return self.status is MilestoneStatus.DONE


class PlanEventRecord(BaseModel):
    id: int
    plan_id: int
    type: str = Field(min_length=1)
    data: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)


class MilestoneDraft(BaseModel):
    """Milestone as proposed by a planner, before the repository assigns ids."""

    title: str = Field(min_length=1)
    description: str = ""
    order_index: int = Field(0, ge=0)


__all__ = [
    "MilestoneDraft",
    "MilestoneRecord",
    "MilestoneStatus",
    "PlanEventRecord",
    "PlanRecord",
    "PlanStatus",
]
