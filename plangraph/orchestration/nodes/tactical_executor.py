from __future__ import annotations

from ...services.tools import ToolCall, ToolResult
from ..decisions import Decision
from ..state import HierarchicalThreadState, TacticalStep
from .base import BaseNode, describe_steps

SYSTEM_PROMPT = """You are the Tactical Executor. Carry out the current step by
choosing tool calls. Use emit_chat_message to talk to the user."""

EXECUTE_INSTRUCTION = """Milestone steps:
{steps}

Current step: {action}
Step description: {description}
Suggested tools: {hints}

Return:
{{
  "tools": [["tool_name", "arg1"]],
  "markDone": true,
  "summary": "what was done in this step"
}}"""


class TacticalExecutorNode(BaseNode[HierarchicalThreadState]):
    """Run one step per invocation; the graph re-enters this node while work remains."""

    id = "tactical_executor"
    name = "Tactical Executor"

    async def execute(self, state: HierarchicalThreadState) -> tuple[HierarchicalThreadState, Decision]:
        planning = state.planning
        step = planning.active_step()
        if step is None:
            planning.executor_has_more_work = False
            return state, Decision.cont(reason="no remaining steps")

        payload = await self.chat_json(state, SYSTEM_PROMPT, self._instruction(state, step))
        if payload is None:
            planning.executor_failures += 1
            if planning.executor_failures >= self.policy.max_llm_failures:
                planning.executor_has_more_work = False
                planning.tactical_revision_reason = "Executor received no usable model response"
                return state, Decision.cont(reason="model unavailable")
            planning.executor_has_more_work = True
            return state, Decision.cont(reason="retry step")

        planning.executor_failures = 0
        raw_tools = payload.get("tools") or []
        calls = [call for call in map(ToolCall.from_payload, raw_tools if isinstance(raw_tools, list) else []) if call]
        results = await self.deps.tools.run(calls, state) if calls else []
        step.result_summary = str(payload.get("summary") or "").strip() or None

        failures = [result for result in results if not result.success]
        if failures:
            planning.tactical_revision_reason = _failure_reason(failures)
            planning.executor_has_more_work = False
            self.emit_progress(
                state,
                f"Step '{step.action}' failed",
                step_id=step.id,
                errors=[result.error for result in failures],
            )
            return state, Decision.cont(reason="tool failure")

        if payload.get("markDone") is True or not calls:
            step.done = True
            planning.active_step_index += 1
            self.emit_progress(state, f"Step '{step.action}' done", step_id=step.id)
        planning.executor_has_more_work = planning.active_step() is not None
        return state, Decision.cont()

    def _instruction(self, state: HierarchicalThreadState, step: TacticalStep) -> str:
        return EXECUTE_INSTRUCTION.format(
            steps=describe_steps(state.planning),
            action=step.action,
            description=step.description or "(none)",
            hints=", ".join(step.tool_hints) or "(none)",
        )


def _failure_reason(failures: list[ToolResult]) -> str:
    return "; ".join(f"{result.tool}: {result.error or 'failed'}" for result in failures)
