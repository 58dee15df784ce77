from __future__ import annotations

import asyncio

from .exceptions import GraphCancelledError


class CancellationToken:
    """Cooperative cancellation flag shared by a caller, the engine and its nodes.

    Nothing is interrupted preemptively: the engine polls the token around
    node lookup, and nodes are expected to poll it before long external calls.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str | None = None) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self, node_id: str | None = None) -> None:
        if self._event.is_set():
            raise GraphCancelledError(node_id, self.reason)

    async def wait(self) -> None:
        await self._event.wait()
