from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import replace
from typing import Generic, TypeVar

from pydantic import BaseModel, Field

from ..core.config import GraphSettings, HeartbeatSettings
from ..core.logging import bind_thread_context, get_logger
from ..orchestration.cancellation import CancellationToken
from ..orchestration.enums import FinalState
from ..orchestration.graph import DEFAULT_MAX_ITERATIONS, Graph
from ..orchestration.nodes import NodeDependencies
from ..orchestration.state import DEFAULT_CHANNEL, HierarchicalThreadState, new_thread_state
from ..orchestration.store import ThreadStateStore

logger = get_logger(name=__name__)

StateT = TypeVar("StateT", bound=HierarchicalThreadState)

GraphFactory = Callable[[CancellationToken | None], Graph]
GraphBuilder = Callable[..., Graph]

HEARTBEAT_THREAD_ID = "heartbeat"


def graph_factory(builder: GraphBuilder, deps: NodeDependencies, *, max_same_node_loops: int) -> GraphFactory:
    """Return a factory building a fresh graph per run, wired to that run's cancellation token."""

    def build(cancellation: CancellationToken | None) -> Graph:
        return builder(replace(deps, cancellation=cancellation), max_same_node_loops=max_same_node_loops)

    return build


class ThreadRunResult(BaseModel):
    thread_id: str
    reply: str | None = None
    final_summary: str = ""
    final_state: FinalState = FinalState.RUNNING
    completed: bool = False
    loop_guard_tripped: bool = False
    max_iterations_reached: bool = False
    iterations: int = Field(0, ge=0)

    @classmethod
    def from_state(cls, state: HierarchicalThreadState, *, since: int = 0) -> "ThreadRunResult":
        replies = [message.content for message in state.messages[since:] if message.role == "assistant"]
        control = state.control
        return cls(
            thread_id=state.thread_id,
            reply=replies[-1] if replies else None,
            final_summary=state.planning.final_summary,
            final_state=state.planning.final_state,
            completed=control.completed,
            loop_guard_tripped=control.loop_guard_tripped,
            max_iterations_reached=control.max_iterations_reached,
            iterations=control.iterations,
        )


class ThreadRunner(Generic[StateT]):
    """Load, run and persist one thread per call.

    Runs for the same thread id are serialized; different threads run
    concurrently, each with its own graph instance.
    """

    def __init__(
        self,
        factory: GraphFactory,
        store: ThreadStateStore[StateT],
        *,
        state_model: type[StateT] = HierarchicalThreadState,  # type: ignore[assignment]
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        default_channel: str = DEFAULT_CHANNEL,
        max_messages: int | None = None,
    ) -> None:
        if max_messages is not None and max_messages < 1:
            raise ValueError("max_messages must be positive")
        self._factory = factory
        self._store = store
        self._state_model = state_model
        self._max_iterations = max_iterations
        self._default_channel = default_channel
        self._max_messages = max_messages
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @classmethod
    def from_settings(
        cls,
        factory: GraphFactory,
        store: ThreadStateStore[StateT],
        settings: GraphSettings,
        *,
        state_model: type[StateT] = HierarchicalThreadState,  # type: ignore[assignment]
        default_channel: str | None = None,
        max_messages: int | None = None,
    ) -> "ThreadRunner[StateT]":
        return cls(
            factory,
            store,
            state_model=state_model,
            max_iterations=settings.max_iterations,
            default_channel=default_channel or settings.default_channel,
            max_messages=max_messages,
        )

    async def run(
        self,
        prompt: str,
        *,
        thread_id: str | None = None,
        channel: str | None = None,
        cancellation: CancellationToken | None = None,
    ) -> ThreadRunResult:
        if thread_id is None:
            return await self._run_locked(prompt, None, channel, cancellation)
        lock = self._locks.setdefault(thread_id, asyncio.Lock())
        self._lock_users[thread_id] = self._lock_users.get(thread_id, 0) + 1
        try:
            async with lock:
                return await self._run_locked(prompt, thread_id, channel, cancellation)
        finally:
            self._release_lock(thread_id)

    def _release_lock(self, thread_id: str) -> None:
        remaining = self._lock_users.pop(thread_id) - 1
        if remaining:
            self._lock_users[thread_id] = remaining
        else:
            self._locks.pop(thread_id, None)

    async def _run_locked(
        self,
        prompt: str,
        thread_id: str | None,
        channel: str | None,
        cancellation: CancellationToken | None,
    ) -> ThreadRunResult:
        state = await self._store.load(thread_id) if thread_id else None
        if state is None:
            state = new_thread_state(
                prompt,
                state_cls=self._state_model,
                thread_id=thread_id,
                channel=channel or self._default_channel,
            )
            start = 0
        else:
            start = len(state.messages)
            state.add_message("user", prompt)
            if channel:
                state.control.channel = channel

        graph = self._factory(cancellation)
        with bind_thread_context(thread_id=state.thread_id):
            logger.info("thread_run_started", graph=graph.name, resumed=start > 0)
            try:
                state = await graph.execute(state, self._max_iterations, cancellation)
            finally:
                await self._store.save(self._bounded(state))
                await graph.destroy()
            result = ThreadRunResult.from_state(state, since=start)
            logger.info(
                "thread_run_finished",
                final_state=result.final_state.value,
                iterations=result.iterations,
                loop_guard_tripped=result.loop_guard_tripped,
                max_iterations_reached=result.max_iterations_reached,
            )
        return result

    def _bounded(self, state: StateT) -> StateT:
        """Return the copy to persist, keeping only the newest ``max_messages`` messages."""
        limit = self._max_messages
        if limit is None or len(state.messages) <= limit:
            return state
        return state.model_copy(update={"messages": state.messages[-limit:]})

    async def get(self, thread_id: str) -> StateT | None:
        return await self._store.load(thread_id)

    async def forget(self, thread_id: str) -> None:
        await self._store.delete(thread_id)


class HeartbeatService:
    """Periodically run the heartbeat graph on a single long-lived thread."""

    def __init__(self, runner: ThreadRunner, settings: HeartbeatSettings, *, thread_id: str = HEARTBEAT_THREAD_ID) -> None:
        self._runner = runner
        self._settings = settings
        self._thread_id = thread_id
        self._running = asyncio.Lock()
        self._task: asyncio.Task[None] | None = None

    @property
    def busy(self) -> bool:
        return self._running.locked()

    async def trigger(self) -> ThreadRunResult | None:
        """Run one cycle now, or return ``None`` when a cycle is already in flight."""
        if self._running.locked():
            logger.info("heartbeat_skipped", thread_id=self._thread_id)
            return None
        async with self._running:
            return await self._runner.run(
                self._settings.prompt,
                thread_id=self._thread_id,
                channel=self._settings.channel,
            )

    async def _loop(self) -> None:
        interval = max(5, self._settings.interval_seconds)
        logger.info("heartbeat_started", interval_seconds=interval)
        while True:
            await asyncio.sleep(interval)
            try:
                await self.trigger()
            except Exception as exc:
                logger.exception("heartbeat_cycle_failed", error=str(exc))

    async def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator["HeartbeatService"]:
        await self.start()
        try:
            yield self
        finally:
            await self.stop()


__all__ = [
    "GraphFactory",
    "HEARTBEAT_THREAD_ID",
    "HeartbeatService",
    "ThreadRunResult",
    "ThreadRunner",
    "graph_factory",
]
