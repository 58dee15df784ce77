from __future__ import annotations

import json

import httpx
import pytest

from plangraph.core.config import NotificationSettings
from plangraph.services.notifications import EventType, GraphEvent, NotificationService


def _event(index: int, event_type: EventType = EventType.PROGRESS) -> GraphEvent:
    return GraphEvent(type=event_type, thread_id="thread-n", channel="chat", data={"index": index})


@pytest.mark.asyncio
async def test_subscribers_receive_events_in_emission_order() -> None:
    service = NotificationService(NotificationSettings())
    received: list[int] = []

    async def collect(event: GraphEvent) -> None:
        received.append(event.data["index"])

    service.subscribe(collect)
    async with service.lifecycle():
        for index in range(5):
            service.emit(_event(index))
        await service.drain()

    assert received == [0, 1, 2, 3, 4]


@pytest.mark.asyncio
async def test_failing_subscriber_does_not_block_others() -> None:
    service = NotificationService(NotificationSettings())
    received: list[int] = []

    async def broken(event: GraphEvent) -> None:
        raise RuntimeError("subscriber down")

    async def collect(event: GraphEvent) -> None:
        received.append(event.data["index"])

    service.subscribe(broken)
    service.subscribe(collect)
    async with service.lifecycle():
        service.emit(_event(1))
        await service.drain()

    assert received == [1]


@pytest.mark.asyncio
async def test_full_queue_drops_events_without_raising() -> None:
    service = NotificationService(NotificationSettings(queue_size=2))

    for index in range(4):
        service.emit(_event(index))

    assert service.pending == 2


@pytest.mark.asyncio
async def test_disabled_service_ignores_events() -> None:
    service = NotificationService(NotificationSettings(enabled=False))

    service.emit(_event(1))

    assert service.pending == 0


@pytest.mark.asyncio
async def test_webhook_receives_event_payload() -> None:
    posted: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        posted.append(json.loads(request.content))
        return httpx.Response(204)

    service = NotificationService(
        NotificationSettings(webhook_url="http://hooks.test/events"),
        client_factory=lambda: httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    async with service.lifecycle():
        service.emit(_event(7, EventType.COMPLETE))
        await service.drain()

    assert len(posted) == 1
    assert posted[0]["type"] == "complete"
    assert posted[0]["thread_id"] == "thread-n"
    assert posted[0]["data"] == {"index": 7}


@pytest.mark.asyncio
async def test_webhook_errors_are_logged_not_raised() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500)

    service = NotificationService(
        NotificationSettings(webhook_url="http://hooks.test/events"),
        client_factory=lambda: httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    async with service.lifecycle():
        service.emit(_event(1))
        service.emit(_event(2))
        await service.drain()

    assert service.pending == 0
