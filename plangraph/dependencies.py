from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

from fastapi import HTTPException, Request, status
from redis.asyncio import Redis

from .core.config import Settings
from .core.logging import get_logger
from .orchestration.nodes import NodeDependencies
from .orchestration.state import HierarchicalThreadState, OverlordThreadState
from .orchestration.store import ThreadStateStore
from .orchestration.topology import build_heartbeat_graph, build_hierarchical_graph
from .services.execution import HeartbeatService, ThreadRunner, graph_factory
from .services.llm import ChatModel, LangChainChatModel
from .services.memory import MemoryRetriever
from .services.notifications import NotificationService, log_event
from .services.plans import PlanRepository, PostgresPlanRepository, build_plan_repository
from .services.tools import ToolRegistry

logger = get_logger(name=__name__)


@dataclass
class Runtime:
    """Every long-lived collaborator of the service, built and torn down together."""

    settings: Settings
    redis: Any | None
    plans: PlanRepository
    notifications: NotificationService
    runner: ThreadRunner[HierarchicalThreadState]
    heartbeat: HeartbeatService
    _stack: AsyncExitStack = field(default_factory=AsyncExitStack)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        model: ChatModel | None = None,
        redis: Any | None = None,
        plans: PlanRepository | None = None,
        tools: ToolRegistry | None = None,
        retriever: MemoryRetriever | None = None,
    ) -> "Runtime":
        redis_client = redis if redis is not None else Redis.from_url(str(settings.redis.url))
        plan_repository = plans if plans is not None else build_plan_repository(settings)
        notifications = NotificationService.from_settings(settings)
        notifications.subscribe(log_event)
        deps = NodeDependencies(
            model=model if model is not None else LangChainChatModel.from_settings(settings),
            plans=plan_repository,
            tools=tools if tools is not None else ToolRegistry(),
            events=notifications,
            policy=settings.planning,
            retriever=retriever,
        )
        loops = settings.graph.max_same_node_loops
        thread_store = ThreadStateStore(
            redis_client,
            plan_repository,
            state_model=HierarchicalThreadState,
            ttl_seconds=settings.thread_store.ttl_seconds,
            namespace=settings.thread_store.namespace,
        )
        heartbeat_store = ThreadStateStore(
            redis_client,
            plan_repository,
            state_model=OverlordThreadState,
            ttl_seconds=max(settings.thread_store.ttl_seconds, settings.heartbeat.interval_seconds * 2),
            namespace=f"{settings.thread_store.namespace}:heartbeat",
        )
        runner = ThreadRunner.from_settings(
            graph_factory(build_hierarchical_graph, deps, max_same_node_loops=loops),
            thread_store,
            settings.graph,
        )
        heartbeat_runner = ThreadRunner.from_settings(
            graph_factory(build_heartbeat_graph, deps, max_same_node_loops=loops),
            heartbeat_store,
            settings.graph,
            state_model=OverlordThreadState,
            default_channel=settings.heartbeat.channel,
            max_messages=settings.planning.history_window,
        )
        return cls(
            settings=settings,
            redis=redis_client,
            plans=plan_repository,
            notifications=notifications,
            runner=runner,
            heartbeat=HeartbeatService(heartbeat_runner, settings.heartbeat),
        )

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator["Runtime"]:
        async with self._stack:
            self._stack.push_async_callback(self._close_redis)
            await self._stack.enter_async_context(self.notifications.lifecycle())
            if isinstance(self.plans, PostgresPlanRepository):
                await self._stack.enter_async_context(self.plans.lifecycle())
            if self.settings.heartbeat.enabled:
                await self._stack.enter_async_context(self.heartbeat.lifecycle())
            logger.info("runtime_started", heartbeat=self.settings.heartbeat.enabled)
            yield self

    async def _close_redis(self) -> None:
        if self.redis is not None:
            await self.redis.aclose()


def get_runtime(request: Request) -> Runtime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Runtime not started")
    return runtime


def get_thread_runner(request: Request) -> ThreadRunner[HierarchicalThreadState]:
    return get_runtime(request).runner


def get_heartbeat(request: Request) -> HeartbeatService:
    return get_runtime(request).heartbeat
