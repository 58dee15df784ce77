from __future__ import annotations

from typing import Any

from ...schemas.plans import MilestoneRecord, MilestoneStatus
from ..decisions import Decision
from ..state import HierarchicalThreadState, TacticalStep
from .base import BaseNode, describe_plan

SYSTEM_PROMPT = """You are the Tactical Planner. Break the active milestone into
concrete steps the executor can carry out one at a time with the available tools."""

STEP_INSTRUCTION = """{plan}

Active milestone: {title}
Milestone description: {description}
{feedback}
Available tools: {tools}

Return:
{{
  "steps": [
    {{"id": "step_1", "action": "short action", "description": "what this step does", "toolHints": ["tool_name"]}}
  ]
}}"""


class TacticalPlannerNode(BaseNode[HierarchicalThreadState]):
    id = "tactical_planner"
    name = "Tactical Planner"

    async def execute(self, state: HierarchicalThreadState) -> tuple[HierarchicalThreadState, Decision]:
        planning = state.planning
        milestone = planning.active_milestone()
        if milestone is None or milestone.done:
            milestone = planning.next_open_milestone()
            if milestone is None:
                planning.reset_tactical()
                return state, Decision.cont(reason="no open milestones")
            planning.active_milestone_id = milestone.id

        milestone = await self.set_milestone_status(state, milestone, MilestoneStatus.IN_PROGRESS)
        payload = await self.chat_json(state, SYSTEM_PROMPT, self._instruction(state, milestone))
        steps = _steps_from_payload(payload) if payload is not None else []
        if not steps:
            steps = [TacticalStep(id="step_1", action=milestone.title, description=milestone.description)]

        planning.steps = steps
        planning.active_step_index = 0
        planning.executor_has_more_work = True
        planning.executor_failures = 0
        planning.tactical_verdict = None
        self.emit_progress(
            state,
            f"Planned {len(steps)} steps for '{milestone.title}'",
            milestone_id=milestone.id,
            steps=[step.action for step in steps],
        )
        return state, Decision.cont()

    def _instruction(self, state: HierarchicalThreadState, milestone: MilestoneRecord) -> str:
        planning = state.planning
        feedback = ""
        if planning.tactical_revision_reason:
            feedback = f"Previous attempt was rejected: {planning.tactical_revision_reason}\n"
        tools = getattr(self.deps.tools, "names", None)
        return STEP_INSTRUCTION.format(
            plan=describe_plan(planning),
            title=milestone.title,
            description=milestone.description or "(none)",
            feedback=feedback,
            tools=", ".join(tools()) if callable(tools) else "(unknown)",
        )


def _steps_from_payload(payload: dict[str, Any]) -> list[TacticalStep]:
    raw = payload.get("steps")
    if not isinstance(raw, list):
        return []
    steps: list[TacticalStep] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        action = str(item.get("action") or "").strip()
        if not action:
            continue
        hints = item.get("toolHints") or []
        steps.append(
            TacticalStep(
                id=str(item.get("id") or f"step_{len(steps) + 1}"),
                action=action,
                description=str(item.get("description") or ""),
                tool_hints=[str(hint) for hint in hints] if isinstance(hints, list) else [],
            )
        )
    return steps
