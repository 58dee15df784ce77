from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from ...core.config import PlanningPolicySettings
from ...core.logging import get_logger
from ...core.metrics import increment_model_call
from ...schemas.plans import MilestoneRecord, MilestoneStatus
from ...services.llm import ChatModel, PromptMessage
from ...services.memory import MemoryRetriever
from ...services.notifications import EventSink, GraphEvent, NullEventSink
from ...services.plans import PlanRepository
from ...services.tools import ToolRegistry, ToolRunner
from ...utils.json_encoding import extract_json_object
from ..cancellation import CancellationToken
from ..decisions import Decision
from ..enums import EventType
from ..state import HierarchicalThreadState, PlanningState

logger = get_logger(name=__name__)

StateT = TypeVar("StateT", bound=HierarchicalThreadState)

JSON_ONLY_INSTRUCTIONS = (
    "Respond with a single JSON object and nothing else. "
    "Do not wrap it in code fences or add commentary."
)


@dataclass
class NodeDependencies:
    """Collaborators shared by every planning node of one graph."""

    model: ChatModel
    plans: PlanRepository
    tools: ToolRunner = field(default_factory=ToolRegistry)
    events: EventSink = field(default_factory=NullEventSink)
    policy: PlanningPolicySettings = field(default_factory=PlanningPolicySettings)  # type: ignore[arg-type]
    retriever: MemoryRetriever | None = None
    cancellation: CancellationToken | None = None

    @property
    def max_executor_steps(self) -> int | None:
        return self.policy.max_executor_steps


class BaseNode(Generic[StateT]):
    id: str = ""
    name: str = ""

    def __init__(self, deps: NodeDependencies) -> None:
        self.deps = deps
        self.policy = deps.policy
        self._logger = logger.bind(node_id=self.id)

    async def initialize(self) -> None:
        self._logger.debug("node_initialized")

    async def destroy(self) -> None:
        self._logger.debug("node_destroyed")

    async def execute(self, state: StateT) -> tuple[StateT, Decision]:
        raise NotImplementedError

    # -- prompting ---------------------------------------------------------

    def build_messages(self, state: StateT, system_prompt: str, instruction: str) -> list[PromptMessage]:
        messages: list[PromptMessage] = [{"role": "system", "content": system_prompt}]
        for message in state.recent_messages(self.policy.history_window):
            role = message.role if message.role in ("user", "assistant") else "user"
            messages.append({"role": role, "content": message.content})
        messages.append({"role": "user", "content": instruction})
        return messages

    async def chat_text(
        self,
        state: StateT,
        system_prompt: str,
        instruction: str,
        *,
        options: dict[str, Any] | None = None,
    ) -> str | None:
        if self.deps.cancellation is not None:
            self.deps.cancellation.raise_if_cancelled(self.id)
        messages = self.build_messages(state, system_prompt, instruction)
        try:
            response = await self.deps.model.chat(messages, options or {})
        except Exception as exc:
            increment_model_call(node=self.id, outcome="error")
            self._logger.warning("model_call_failed", thread_id=state.thread_id, error=str(exc))
            return None
        if response is None or not response.content.strip():
            increment_model_call(node=self.id, outcome="empty")
            self._logger.warning("model_response_unusable", thread_id=state.thread_id, reason="empty")
            return None
        increment_model_call(node=self.id, outcome="success")
        return response.content

    async def chat_json(self, state: StateT, system_prompt: str, instruction: str) -> dict[str, Any] | None:
        """Ask the model for a JSON object, tolerating prose around it."""
        if self.deps.cancellation is not None:
            self.deps.cancellation.raise_if_cancelled(self.id)
        messages = self.build_messages(state, system_prompt, f"{instruction}\n\n{JSON_ONLY_INSTRUCTIONS}")
        try:
            response = await self.deps.model.chat(messages, {"format": "json"})
        except Exception as exc:
            increment_model_call(node=self.id, outcome="error")
            self._logger.warning("model_call_failed", thread_id=state.thread_id, error=str(exc))
            return None
        if response is None:
            increment_model_call(node=self.id, outcome="empty")
            self._logger.warning("model_response_unusable", thread_id=state.thread_id, reason="empty")
            return None
        payload = response.parsed if response.parsed is not None else extract_json_object(response.content)
        if payload is None:
            increment_model_call(node=self.id, outcome="unparseable")
            self._logger.warning("model_response_unusable", thread_id=state.thread_id, reason="unparseable")
            return None
        increment_model_call(node=self.id, outcome="success")
        return payload

    # -- side effects ------------------------------------------------------

    def emit_progress(self, state: StateT, message: str, **data: Any) -> None:
        event = GraphEvent(
            type=EventType.PROGRESS,
            thread_id=state.thread_id,
            channel=state.control.channel,
            data={"node_id": self.id, "message": message, **data},
        )
        try:
            self.deps.events.emit(event)
        except Exception as exc:
            self._logger.warning("node_event_emit_failed", error=str(exc))

    async def record_plan_event(self, plan_id: int, event_type: str, **data: Any) -> None:
        try:
            await self.deps.plans.add_event(plan_id, event_type, data)
        except Exception as exc:
            self._logger.warning("plan_event_failed", plan_id=plan_id, event_type=event_type, error=str(exc))

    async def set_milestone_status(
        self,
        state: StateT,
        milestone: MilestoneRecord,
        status: MilestoneStatus,
    ) -> MilestoneRecord:
        """Persist a milestone status once; repeated calls with the same status are no-ops."""
        if milestone.status is status:
            return milestone
        record = await self.deps.plans.update_milestone_status(milestone.id, status)
        if record is None:
            self._logger.warning("milestone_missing", milestone_id=milestone.id, status=status.value)
            record = milestone.model_copy(update={"status": status})
        state.planning.replace_milestone(record)
        self.emit_progress(
            state,
            f"Milestone '{record.title}' is now {record.status.value}",
            milestone_id=record.id,
            status=record.status.value,
        )
        return record


def describe_plan(planning: PlanningState) -> str:
    lines = [f"Goal: {planning.goal or '(unknown)'}"]
    if planning.goal_description:
        lines.append(f"Success looks like: {planning.goal_description}")
    if planning.plan is not None:
        lines.append(f"Plan #{planning.plan.id} revision {planning.plan.revision} ({planning.plan.status.value})")
    for milestone in planning.ordered_milestones():
        lines.append(f"- [{milestone.status.value}] {milestone.title}: {milestone.description}")
    return "\n".join(lines)


def describe_steps(planning: PlanningState) -> str:
    lines = []
    for index, step in enumerate(planning.steps):
        marker = "x" if step.done else (">" if index == planning.active_step_index else " ")
        line = f"[{marker}] {step.id}: {step.action}"
        if step.result_summary:
            line = f"{line} => {step.result_summary}"
        lines.append(line)
    return "\n".join(lines) or "(no steps)"


def coerce_number(value: Any, *, default: float = 0.0) -> float:
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip().rstrip("%"))
        except ValueError:
            return default
    return default


__all__ = [
    "BaseNode",
    "JSON_ONLY_INSTRUCTIONS",
    "NodeDependencies",
    "coerce_number",
    "describe_plan",
    "describe_steps",
]
