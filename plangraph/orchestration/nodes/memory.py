from __future__ import annotations

from ..decisions import Decision
from ..state import HierarchicalThreadState
from .base import BaseNode

RECALL_LIMIT = 5


class MemoryRecallNode(BaseNode[HierarchicalThreadState]):
    """Pull related snippets for the latest user message into the planning context."""

    id = "memory_recall"
    name = "Memory Recall"

    async def execute(self, state: HierarchicalThreadState) -> tuple[HierarchicalThreadState, Decision]:
        retriever = self.deps.retriever
        message = state.last_user_message()
        if retriever is None or message is None:
            return state, Decision.cont()

        try:
            snippets = await retriever.search(message.content, RECALL_LIMIT)
        except Exception as exc:
            self._logger.warning("memory_recall_failed", thread_id=state.thread_id, error=str(exc))
            return state, Decision.cont()

        state.planning.memory_context = "\n".join(f"- {snippet}" for snippet in snippets)
        if snippets:
            self.emit_progress(state, f"Recalled {len(snippets)} related memories", count=len(snippets))
        return state, Decision.cont()
