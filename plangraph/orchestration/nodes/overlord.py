from __future__ import annotations

import re

from ..decisions import Decision
from ..enums import OverlordDirective
from ..state import OverlordThreadState, PlanningState
from .base import BaseNode

SYSTEM_PROMPT = """You are the Overlord, the oversight loop that runs while the
user is away. Review the project, decide whether anything needs doing right now
and, when it does, hand concrete instructions to the planning loop."""

DECISION_INSTRUCTION = """Project: {project}
Last instructions handed off: {instructions}
Relevant memories:
{memory}

Start your answer with exactly one directive line:
- OVERLORD_DECISION: CONTINUE  (keep thinking, nothing to hand off yet)
- OVERLORD_DECISION: NEXT      (hand off the work described after the directive)
- OVERLORD_DECISION: END       (nothing left to do this cycle)"""

_DIRECTIVE_PATTERN = re.compile(r"^\s*OVERLORD_DECISION\s*:\s*(CONTINUE|NEXT|END)\b.*$", re.IGNORECASE | re.MULTILINE)


def parse_overlord_directive(text: str) -> tuple[OverlordDirective, str]:
    """Return the first directive in ``text`` and the text without that line."""
    match = _DIRECTIVE_PATTERN.search(text)
    if match is None:
        return OverlordDirective.CONTINUE, text.strip()
    remainder = (text[: match.start()] + text[match.end() :]).strip()
    return OverlordDirective(match.group(1).lower()), remainder


class OverlordPlannerNode(BaseNode[OverlordThreadState]):
    id = "overlord_planner"
    name = "Overlord Planner"

    async def execute(self, state: OverlordThreadState) -> tuple[OverlordThreadState, Decision]:
        overlord = state.overlord
        overlord.cycles += 1
        instruction = DECISION_INSTRUCTION.format(
            project=overlord.project or "(not described)",
            instructions=overlord.instructions or "(none)",
            memory=state.planning.memory_context or "(none)",
        )
        text = await self.chat_text(state, SYSTEM_PROMPT, instruction)
        if text is None:
            overlord.directive = OverlordDirective.CONTINUE
            return state, Decision.revise(reason="no usable response")

        directive, remainder = parse_overlord_directive(text)
        overlord.directive = directive
        self._logger.info("overlord_directive", thread_id=state.thread_id, directive=directive.value, cycle=overlord.cycles)

        if directive is OverlordDirective.END:
            state.planning.final_summary = remainder
            return state, Decision.end(reason="overlord finished")

        if directive is OverlordDirective.NEXT:
            overlord.instructions = remainder or text.strip()
            state.add_message("user", overlord.instructions, source=self.id)
            state.planning = PlanningState(memory_context=state.planning.memory_context)
            self.emit_progress(state, "Handing work to the planning loop", instructions=overlord.instructions)
            return state, Decision.cont(reason="delegate")

        return state, Decision.revise(reason="reconsider")
