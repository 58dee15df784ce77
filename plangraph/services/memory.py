from __future__ import annotations

from typing import Protocol


class MemoryRetriever(Protocol):
    async def search(self, query: str, limit: int = 5) -> list[str]:
        """Return snippets relevant to ``query``, most relevant first."""


class StaticMemoryRetriever:
    """Retriever over a fixed list of snippets, matched by shared words."""

    def __init__(self, snippets: list[str] | None = None) -> None:
        self._snippets = list(snippets or [])

    def add(self, snippet: str) -> None:
        self._snippets.append(snippet)

    async def search(self, query: str, limit: int = 5) -> list[str]:
        terms = {term for term in query.lower().split() if len(term) > 2}
        if not terms:
            return []
        scored = [
            (len(terms & set(snippet.lower().split())), index, snippet)
            for index, snippet in enumerate(self._snippets)
        ]
        ranked = sorted((item for item in scored if item[0] > 0), key=lambda item: (-item[0], item[1]))
        return [snippet for _, _, snippet in ranked[:limit]]


__all__ = ["MemoryRetriever", "StaticMemoryRetriever"]
