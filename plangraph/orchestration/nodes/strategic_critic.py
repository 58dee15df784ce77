from __future__ import annotations

from ...schemas.plans import PlanRecord, PlanStatus
from ..decisions import Decision
from ..enums import FinalState, VerdictStatus
from ..state import CriticVerdict, HierarchicalThreadState
from .base import BaseNode, coerce_number, describe_plan

SYSTEM_PROMPT = """You are the Strategic Critic, the final gatekeeper of a plan.
Approve only when the goal is verifiably achieved. Use the kill switch only for
irreversible damage or a security violation."""

REVIEW_INSTRUCTION = """{plan}

Approve only with confidence of {threshold} or more.

Return:
{{
  "decision": "approve",
  "confidence": 0,
  "reason": "why the goal was or was not reached",
  "suggestions": "what should be done next",
  "killSwitch": false
}}"""


class StrategicCriticNode(BaseNode[HierarchicalThreadState]):
    """Judge the whole plan once every milestone has been handled.

    Finishing verdicts return ``CONTINUE`` so the topology decides what follows
    a finished plan; only a rejected plan returns ``REVISE``.
    """

    id = "strategic_critic"
    name = "Strategic Critic"

    async def execute(self, state: HierarchicalThreadState) -> tuple[HierarchicalThreadState, Decision]:
        planning = state.planning
        plan = planning.plan
        if plan is None:
            if planning.final_state is FinalState.RUNNING:
                planning.final_state = FinalState.COMPLETED
            return state, Decision.cont(reason="no active plan")

        instruction = REVIEW_INSTRUCTION.format(
            plan=describe_plan(planning),
            threshold=self.policy.strategic_approval_confidence,
        )
        payload = await self.chat_json(state, SYSTEM_PROMPT, instruction)
        if payload is None:
            self._logger.warning("strategic_review_skipped", thread_id=state.thread_id, plan_id=plan.id)
            return state, Decision.cont(reason="no usable review")

        confidence = max(0.0, min(100.0, coerce_number(payload.get("confidence"))))
        wants_approval = str(payload.get("decision") or "").strip().lower() == "approve"
        approved = wants_approval and confidence >= self.policy.strategic_approval_confidence
        reason = str(payload.get("reason") or ("Goal achieved" if approved else "Revision needed"))
        suggestions = str(payload.get("suggestions") or "").strip() or None
        planning.strategic_verdict = CriticVerdict(
            status=VerdictStatus.APPROVE if approved else VerdictStatus.REVISE,
            reason=reason,
            score=confidence,
            suggestions=suggestions,
        )

        if payload.get("killSwitch") is True:
            await self._finish(state, plan, PlanStatus.ABANDONED, FinalState.FAILED, reason)
            return state, Decision.cont(reason="kill switch")

        if approved:
            await self._finish(state, plan, PlanStatus.COMPLETED, FinalState.COMPLETED, reason)
            return state, Decision.cont(reason="goal achieved")

        planning.strategic_revision_reason = suggestions or reason
        await self.record_plan_event(plan.id, "plan_revision_requested", confidence=confidence, reason=reason)
        return state, Decision.revise(reason=reason)

    async def _finish(
        self,
        state: HierarchicalThreadState,
        plan: PlanRecord,
        plan_status: PlanStatus,
        final_state: FinalState,
        reason: str,
    ) -> None:
        planning = state.planning
        updated = await self.deps.plans.update_plan_status(plan.id, plan_status)
        planning.plan = updated or plan.model_copy(update={"status": plan_status})
        planning.final_state = final_state
        planning.final_summary = reason
        await self.record_plan_event(plan.id, f"plan_{plan_status.value}", reason=reason)
        self.emit_progress(state, reason, plan_id=plan.id, status=plan_status.value)
