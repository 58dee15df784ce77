from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from ..orchestration.state import ControlState, HierarchicalThreadState
from .plans import MilestoneRecord, PlanRecord


class ThreadCreateRequest(BaseModel):
    prompt: str = Field(..., min_length=1)
    channel: str | None = Field(default=None, min_length=1)


class ThreadMessageRequest(BaseModel):
    prompt: str = Field(..., min_length=1)
    channel: str | None = Field(default=None, min_length=1)


class ThreadMessageModel(BaseModel):
    id: str
    role: str
    content: str
    timestamp: datetime


class ThreadDetail(BaseModel):
    thread_id: str
    messages: list[ThreadMessageModel] = Field(default_factory=list)
    control: ControlState
    goal: str | None = None
    final_state: str
    final_summary: str = ""
    plan: PlanRecord | None = None
    milestones: list[MilestoneRecord] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_state(cls, state: HierarchicalThreadState) -> "ThreadDetail":
        planning = state.planning
        return cls(
            thread_id=state.thread_id,
            messages=[
                ThreadMessageModel(
                    id=message.id,
                    role=message.role,
                    content=message.content,
                    timestamp=message.timestamp,
                )
                for message in state.messages
            ],
            control=state.control,
            goal=planning.goal,
            final_state=planning.final_state.value,
            final_summary=planning.final_summary,
            plan=planning.plan,
            milestones=planning.ordered_milestones(),
            metadata=state.metadata,
        )


__all__ = [
    "ThreadCreateRequest",
    "ThreadDetail",
    "ThreadMessageModel",
    "ThreadMessageRequest",
]
