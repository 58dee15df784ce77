from __future__ import annotations

import itertools
import time
from datetime import datetime, timezone
from typing import Any, Literal, TypeVar

from pydantic import BaseModel, Field

from ..schemas.plans import MilestoneRecord, MilestoneStatus, PlanRecord
from .enums import FinalState, OverlordDirective, VerdictStatus

DEFAULT_CHANNEL = "chat-controller-backend"

_thread_counter = itertools.count(1)
_message_counter = itertools.count(1)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def next_thread_id() -> str:
    return f"thread_{int(time.time() * 1000)}_{next(_thread_counter)}"


def next_message_id() -> str:
    return f"msg_{int(time.time() * 1000)}_{next(_message_counter)}"


class ChatMessage(BaseModel):
    id: str = Field(default_factory=next_message_id)
    role: Literal["system", "user", "assistant", "tool"]
    content: str
    timestamp: datetime = Field(default_factory=_utcnow)
    metadata: dict[str, Any] = Field(default_factory=dict)


class ControlState(BaseModel):
    """Engine bookkeeping. Only the graph writes these fields."""

    current_node_id: str | None = None
    iterations: int = Field(0, ge=0)
    same_node_count: int = Field(0, ge=0)
    max_iterations_reached: bool = False
    loop_guard_tripped: bool = False
    completed: bool = False
    channel: str = Field(DEFAULT_CHANNEL, min_length=1)


class ThreadState(BaseModel):
    thread_id: str = Field(default_factory=next_thread_id, min_length=1, frozen=True)
    messages: list[ChatMessage] = Field(default_factory=list)
    control: ControlState = Field(default_factory=ControlState)
    metadata: dict[str, Any] = Field(default_factory=dict)

    def add_message(
        self,
        role: Literal["system", "user", "assistant", "tool"],
        content: str,
        **metadata: Any,
    ) -> ChatMessage:
        message = ChatMessage(role=role, content=content, metadata=metadata)
        self.messages.append(message)
        return message

    def last_user_message(self) -> ChatMessage | None:
        for message in reversed(self.messages):
            if message.role == "user":
                return message
        return None

    def recent_messages(self, limit: int) -> list[ChatMessage]:
        if limit <= 0:
            return []
        return self.messages[-limit:]


class TacticalStep(BaseModel):
    id: str
    action: str
    description: str = ""
    tool_hints: list[str] = Field(default_factory=list)
    done: bool = False
    result_summary: str | None = None


class CriticVerdict(BaseModel):
    status: VerdictStatus
    reason: str = ""
    score: float | None = None
    suggestions: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def approved(self) -> bool:
        return self.status is VerdictStatus.APPROVE


class PlanningState(BaseModel):
    """Domain payload shared by the hierarchical planning nodes.

    ``plan`` and ``milestones`` are a cache of records owned by the plan
    repository and are re-fetched whenever state is reloaded.
    """

    goal: str | None = None
    goal_description: str | None = None
    plan: PlanRecord | None = None
    milestones: list[MilestoneRecord] = Field(default_factory=list)
    active_milestone_id: int | None = None
    steps: list[TacticalStep] = Field(default_factory=list)
    active_step_index: int = Field(0, ge=0)
    executor_has_more_work: bool = False
    executor_failures: int = Field(0, ge=0)
    tactical_verdict: CriticVerdict | None = None
    strategic_verdict: CriticVerdict | None = None
    strategic_revision_reason: str | None = None
    tactical_revision_reason: str | None = None
    milestone_revisions: dict[str, int] = Field(default_factory=dict)
    llm_failures: int = Field(0, ge=0)
    memory_context: str = ""
    final_summary: str = ""
    final_state: FinalState = FinalState.RUNNING

    def active_milestone(self) -> MilestoneRecord | None:
        if self.active_milestone_id is None:
            return None
        for milestone in self.milestones:
            if milestone.id == self.active_milestone_id:
                return milestone
        return None

    def ordered_milestones(self) -> list[MilestoneRecord]:
        return sorted(self.milestones, key=lambda item: (item.order_index, item.id))

    def next_open_milestone(self) -> MilestoneRecord | None:
        for milestone in self.ordered_milestones():
            if milestone.status in (MilestoneStatus.PENDING, MilestoneStatus.BLOCKED):
                return milestone
        return None

    def has_open_milestones(self) -> bool:
        return any(not milestone.done for milestone in self.milestones)

    def replace_milestone(self, record: MilestoneRecord) -> None:
        for index, milestone in enumerate(self.milestones):
            if milestone.id == record.id:
                self.milestones[index] = record
                return
        self.milestones.append(record)

    def active_step(self) -> TacticalStep | None:
        if 0 <= self.active_step_index < len(self.steps):
            return self.steps[self.active_step_index]
        return None

    def revisions_for(self, milestone_id: int) -> int:
        return self.milestone_revisions.get(str(milestone_id), 0)

    def reset_tactical(self) -> None:
        self.active_milestone_id = None
        self.steps = []
        self.active_step_index = 0
        self.executor_has_more_work = False
        self.executor_failures = 0
        self.tactical_verdict = None
        self.tactical_revision_reason = None


class HierarchicalThreadState(ThreadState):
    planning: PlanningState = Field(default_factory=PlanningState)


class OverlordState(BaseModel):
    project: str = ""
    directive: OverlordDirective = OverlordDirective.CONTINUE
    instructions: str = ""
    cycles: int = Field(0, ge=0)


class OverlordThreadState(HierarchicalThreadState):
    overlord: OverlordState = Field(default_factory=OverlordState)


StateT = TypeVar("StateT", bound=ThreadState)


def new_thread_state(
    prompt: str,
    *,
    state_cls: type[StateT] = HierarchicalThreadState,  # type: ignore[assignment]
    thread_id: str | None = None,
    channel: str = DEFAULT_CHANNEL,
    metadata: dict[str, Any] | None = None,
) -> StateT:
    """Build a fresh thread whose first message is the user's ``prompt``."""
    fields: dict[str, Any] = {
        "control": ControlState(channel=channel),
        "metadata": dict(metadata or {}),
    }
    if thread_id:
        fields["thread_id"] = thread_id
    state = state_cls(**fields)
    state.add_message("user", prompt)
    return state


__all__ = [
    "ChatMessage",
    "ControlState",
    "CriticVerdict",
    "DEFAULT_CHANNEL",
    "HierarchicalThreadState",
    "OverlordState",
    "OverlordThreadState",
    "PlanningState",
    "TacticalStep",
    "ThreadState",
    "new_thread_state",
    "next_message_id",
    "next_thread_id",
]
