from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol

import httpx

from ..core.config import NotificationSettings, Settings
from ..core.logging import get_logger
from ..core.metrics import increment_notification_dropped
from ..utils.json_encoding import encode_jsonb

logger = get_logger(name=__name__)


class EventType(str, Enum):
    PROGRESS = "progress"
    CHUNK = "chunk"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass(slots=True)
class GraphEvent:
    type: EventType
    thread_id: str
    channel: str
    data: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_payload(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "thread_id": self.thread_id,
            "channel": self.channel,
            "data": self.data,
            "created_at": self.created_at.isoformat(),
        }


class EventSink(Protocol):
    def emit(self, event: GraphEvent) -> None:
        """Hand an event over for delivery without waiting for it."""


class NullEventSink:
    def emit(self, event: GraphEvent) -> None:
        return None


Subscriber = Callable[[GraphEvent], Awaitable[None]]


class NotificationService:
    """Queue-backed event sink.

    ``emit`` never blocks: events are buffered and one consumer task delivers
    them in emission order to every subscriber and the optional webhook.
    """

    def __init__(
        self,
        settings: NotificationSettings,
        *,
        client_factory: Callable[[], httpx.AsyncClient] | None = None,
    ) -> None:
        self._settings = settings
        self._subscribers: list[Subscriber] = []
        self._queue: asyncio.Queue[GraphEvent] = asyncio.Queue(maxsize=settings.queue_size)
        self._consumer_task: asyncio.Task[None] | None = None
        self._webhook_url = settings.webhook_url
        self._client_factory = client_factory or (
            lambda: httpx.AsyncClient(timeout=settings.timeout_seconds)
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "NotificationService":
        return cls(settings.notifications)

    def subscribe(self, subscriber: Subscriber) -> None:
        if subscriber not in self._subscribers:
            self._subscribers.append(subscriber)

    def unsubscribe(self, subscriber: Subscriber) -> None:
        if subscriber in self._subscribers:
            self._subscribers.remove(subscriber)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def emit(self, event: GraphEvent) -> None:
        if not self._settings.enabled:
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            increment_notification_dropped(event_type=event.type.value)
            logger.warning(
                "notification_dropped",
                event_type=event.type.value,
                thread_id=event.thread_id,
                queue_size=self._settings.queue_size,
            )

    async def drain(self) -> None:
        """Wait until every queued event has been delivered."""
        await self._queue.join()

    async def _consumer(self) -> None:
        logger.info("notification_consumer_started")
        while True:
            event = await self._queue.get()
            try:
                await self._deliver(event)
            finally:
                self._queue.task_done()

    async def _deliver(self, event: GraphEvent) -> None:
        for subscriber in list(self._subscribers):
            await self._safe_invoke(subscriber, event)
        if self._webhook_url:
            await self._post_webhook(event.to_payload())

    async def _safe_invoke(self, subscriber: Subscriber, event: GraphEvent) -> None:
        try:
            await subscriber(event)
        except Exception as exc:
            logger.warning(
                "notification_subscriber_failed",
                subscriber=getattr(subscriber, "__qualname__", repr(subscriber)),
                error=str(exc),
            )

    async def _post_webhook(self, payload: dict[str, Any]) -> None:
        try:
            async with self._client_factory() as client:
                response = await client.post(
                    self._webhook_url,  # type: ignore[arg-type]
                    content=encode_jsonb(payload),
                    headers={"Content-Type": "application/json"},
                )
                response.raise_for_status()
        except Exception as exc:
            logger.warning("notification_webhook_failed", error=str(exc))

    async def start(self) -> None:
        if self._consumer_task is None or self._consumer_task.done():
            self._consumer_task = asyncio.create_task(self._consumer())

    async def stop(self) -> None:
        if self._consumer_task is not None:
            self._consumer_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._consumer_task
            self._consumer_task = None

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator["NotificationService"]:
        await self.start()
        try:
            yield self
        finally:
            await self.stop()


async def log_event(event: GraphEvent) -> None:
    logger.info(
        "graph_event",
        event_type=event.type.value,
        thread_id=event.thread_id,
        channel=event.channel,
    )


__all__ = [
    "EventSink",
    "EventType",
    "GraphEvent",
    "NotificationService",
    "NullEventSink",
    "Subscriber",
    "log_event",
]
