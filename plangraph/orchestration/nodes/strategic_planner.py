from __future__ import annotations

from typing import Any

from ...schemas.plans import MilestoneDraft, PlanStatus
from ..decisions import Decision
from ..enums import FinalState
from ..state import HierarchicalThreadState
from .base import BaseNode, describe_plan

SYSTEM_PROMPT = """You are the Strategic Planner of an autonomous assistant.
Work out what the user ultimately wants and decompose it into a short ordered
list of milestones. Each milestone must be independently verifiable."""

PLAN_INSTRUCTION = """Relevant memories:
{memory}

{revision}
Return:
{{
  "goal": "the user's primary objective in one sentence",
  "goalDescription": "what success looks like",
  "planNeeded": true,
  "response": "direct answer when no plan is needed",
  "milestones": [
    {{"title": "short title", "description": "what this milestone accomplishes"}}
  ]
}}"""


class StrategicPlannerNode(BaseNode[HierarchicalThreadState]):
    id = "strategic_planner"
    name = "Strategic Planner"

    async def execute(self, state: HierarchicalThreadState) -> tuple[HierarchicalThreadState, Decision]:
        planning = state.planning
        message = state.last_user_message()
        if message is None:
            planning.final_state = FinalState.COMPLETED
            return state, Decision.end(reason="no user message")

        existing = planning.plan if planning.plan is not None and planning.plan.status is PlanStatus.ACTIVE else None
        payload = await self.chat_json(state, SYSTEM_PROMPT, self._instruction(state))
        drafts = _milestone_drafts(payload) if payload is not None else []
        plan_needed = payload is not None and payload.get("planNeeded") is not False

        if payload is None or (plan_needed and not drafts):
            planning.llm_failures += 1
            if planning.llm_failures >= self.policy.max_llm_failures:
                self._logger.warning(
                    "strategic_planner_gave_up",
                    thread_id=state.thread_id,
                    failures=planning.llm_failures,
                )
                planning.final_state = FinalState.FAILED
                planning.final_summary = "Unable to produce a plan for this request."
                return state, Decision.end(reason="no usable plan")
            return state, Decision.goto(self.id, reason="retry planning")

        planning.llm_failures = 0
        planning.goal = str(payload.get("goal") or message.content)
        planning.goal_description = str(payload.get("goalDescription") or "") or None

        if not plan_needed:
            answer = str(payload.get("response") or "").strip()
            if answer:
                state.add_message("assistant", answer, source=self.id)
            planning.final_summary = answer
            planning.final_state = FinalState.COMPLETED
            return state, Decision.end(reason="no plan needed")

        data = {"goal": planning.goal, "goal_description": planning.goal_description}
        if existing is not None:
            plan, milestones = await self.deps.plans.revise_plan(existing.id, data=data, milestones=drafts)
            await self.record_plan_event(
                plan.id,
                "plan_revised",
                revision=plan.revision,
                reason=planning.strategic_revision_reason,
            )
        else:
            plan, milestones = await self.deps.plans.create_plan(state.thread_id, data=data, milestones=drafts)
            await self.record_plan_event(plan.id, "plan_created", revision=plan.revision)

        planning.plan = plan
        planning.milestones = milestones
        planning.strategic_revision_reason = None
        planning.strategic_verdict = None
        planning.milestone_revisions = {}
        planning.final_state = FinalState.RUNNING
        planning.reset_tactical()
        self.emit_progress(
            state,
            f"Plan ready with {len(milestones)} milestones",
            plan_id=plan.id,
            revision=plan.revision,
            milestones=[milestone.title for milestone in milestones],
        )
        return state, Decision.cont()

    def _instruction(self, state: HierarchicalThreadState) -> str:
        planning = state.planning
        revision = ""
        if planning.plan is not None and planning.strategic_revision_reason:
            revision = (
                "The previous plan was rejected and must be replaced.\n"
                f"{describe_plan(planning)}\n"
                f"Reviewer feedback: {planning.strategic_revision_reason}\n"
            )
        return PLAN_INSTRUCTION.format(memory=planning.memory_context or "(none)", revision=revision)


def _milestone_drafts(payload: dict[str, Any]) -> list[MilestoneDraft]:
    raw = payload.get("milestones")
    if not isinstance(raw, list):
        return []
    drafts: list[MilestoneDraft] = []
    for item in raw:
        if isinstance(item, str) and item.strip():
            title, description = item.strip(), ""
        elif isinstance(item, dict) and str(item.get("title") or "").strip():
            title = str(item["title"]).strip()
            description = str(item.get("description") or "").strip()
        else:
            continue
        drafts.append(MilestoneDraft(title=title, description=description, order_index=len(drafts)))
    return drafts
