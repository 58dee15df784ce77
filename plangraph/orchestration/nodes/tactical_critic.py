from __future__ import annotations

from ...schemas.plans import MilestoneRecord, MilestoneStatus
from ..decisions import Decision
from ..enums import VerdictStatus
from ..state import CriticVerdict, HierarchicalThreadState
from .base import BaseNode, coerce_number, describe_steps

SYSTEM_PROMPT = """You are the Tactical Critic. Your only job is to decide whether
the active milestone's outcome now exists. Errors or messy execution alone are
not a reason to reject it."""

REVIEW_INSTRUCTION = """Milestone: {title}
Milestone description: {description}

Executed steps:
{steps}
{issues}
Score the milestone from 0 to 10. {threshold} or more means it is complete.

Return:
{{
  "successScore": 0,
  "reason": "one-sentence verdict with evidence",
  "suggestedFix": "next action if the milestone is not complete"
}}"""


class TacticalCriticNode(BaseNode[HierarchicalThreadState]):
    id = "tactical_critic"
    name = "Tactical Critic"

    async def execute(self, state: HierarchicalThreadState) -> tuple[HierarchicalThreadState, Decision]:
        planning = state.planning
        milestone = planning.active_milestone()
        if milestone is None:
            return state, Decision.cont(reason="no active milestone")

        revisions = planning.revisions_for(milestone.id)
        if revisions >= self.policy.max_tactical_revisions:
            verdict = CriticVerdict(
                status=VerdictStatus.APPROVE,
                reason=f"Accepted after {revisions} revisions",
            )
        else:
            verdict = await self._review(state, milestone)

        planning.tactical_verdict = verdict
        if verdict.approved:
            await self.set_milestone_status(state, milestone, MilestoneStatus.DONE)
            if planning.plan is not None:
                await self.record_plan_event(
                    planning.plan.id,
                    "milestone_completed",
                    milestone_id=milestone.id,
                    score=verdict.score,
                )
            planning.reset_tactical()
            planning.tactical_verdict = verdict
            return state, Decision.cont(reason=verdict.reason)

        await self.set_milestone_status(state, milestone, MilestoneStatus.BLOCKED)
        planning.milestone_revisions[str(milestone.id)] = revisions + 1
        planning.tactical_revision_reason = verdict.suggestions or verdict.reason
        self._logger.info(
            "milestone_revision_requested",
            thread_id=state.thread_id,
            milestone_id=milestone.id,
            revision=revisions + 1,
            score=verdict.score,
        )
        return state, Decision.revise(reason=verdict.reason)

    async def _review(self, state: HierarchicalThreadState, milestone: MilestoneRecord) -> CriticVerdict:
        planning = state.planning
        issues = ""
        if planning.tactical_revision_reason:
            issues = f"Executor issues: {planning.tactical_revision_reason}\n"
        instruction = REVIEW_INSTRUCTION.format(
            title=milestone.title,
            description=milestone.description or "(none)",
            steps=describe_steps(planning),
            issues=issues,
            threshold=self.policy.tactical_approval_score,
        )
        payload = await self.chat_json(state, SYSTEM_PROMPT, instruction)
        if payload is None:
            finished = planning.active_step() is None and planning.tactical_revision_reason is None
            return CriticVerdict(
                status=VerdictStatus.APPROVE if finished else VerdictStatus.REVISE,
                reason="All steps finished" if finished else "Steps remain unfinished",
            )

        score = max(0.0, min(10.0, coerce_number(payload.get("successScore"))))
        approved = score >= self.policy.tactical_approval_score
        suggestion = str(payload.get("suggestedFix") or "").strip() or None
        return CriticVerdict(
            status=VerdictStatus.APPROVE if approved else VerdictStatus.REVISE,
            reason=str(payload.get("reason") or ("Milestone complete" if approved else "Milestone incomplete")),
            score=score,
            suggestions=suggestion,
        )
