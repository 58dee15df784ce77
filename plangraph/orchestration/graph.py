from __future__ import annotations

import inspect
import time
from collections.abc import Iterable, Mapping
from typing import Any, Protocol, TypeVar, runtime_checkable

from ..core.logging import bind_thread_context, get_logger
from ..core.metrics import mark_graph_run_finished, mark_graph_run_started, record_node_execution
from ..services.notifications import EventSink, GraphEvent, NullEventSink
from .cancellation import CancellationToken
from .decisions import Decision
from .edges import ConditionalEdge, DecisionEdge, DecisionRoute, GraphEdge, StateRoute, StaticEdge
from .enums import DecisionKind, EventType
from .exceptions import (
    GraphCancelledError,
    GraphConfigurationError,
    NodeNotFoundError,
    ThreadStateError,
)
from .state import ThreadState

logger = get_logger(name=__name__)

END = "__end__"
DEFAULT_MAX_ITERATIONS = 1_000_000
DEFAULT_MAX_SAME_NODE_LOOPS = 15

StateT = TypeVar("StateT", bound=ThreadState)


@runtime_checkable
class GraphNode(Protocol):
    """Unit of work registered on a graph.

    ``initialize`` and ``destroy`` are optional hooks and are looked up by name.
    """

    id: str
    name: str

    async def execute(self, state: Any) -> tuple[Any, Decision]:
        ...


async def _call_hook(node: GraphNode, hook_name: str) -> None:
    hook = getattr(node, hook_name, None)
    if hook is None:
        return
    result = hook()
    if inspect.isawaitable(result):
        await result


class Graph:
    """Directed graph of nodes driven by a single sequential cursor."""

    def __init__(
        self,
        name: str = "graph",
        *,
        events: EventSink | None = None,
        max_same_node_loops: int = DEFAULT_MAX_SAME_NODE_LOOPS,
    ) -> None:
        if max_same_node_loops < 1:
            raise ValueError("max_same_node_loops must be positive")
        self.name = name
        self._events: EventSink = events or NullEventSink()
        self._max_same_node_loops = max_same_node_loops
        self._nodes: dict[str, GraphNode] = {}
        self._edges: dict[str, list[GraphEdge]] = {}
        self._entry_point: str | None = None
        self._end_points: set[str] = set()
        self._initialized = False

    # -- builder -----------------------------------------------------------

    def add_node(self, node: GraphNode) -> "Graph":
        if node.id in self._nodes:
            raise GraphConfigurationError(f"Node already registered: {node.id!r}")
        self._nodes[node.id] = node
        return self

    def add_edge(self, source: str, target: str) -> "Graph":
        self._edges.setdefault(source, []).append(StaticEdge(source, target))
        return self

    def add_conditional_edge(self, source: str, route: StateRoute) -> "Graph":
        self._edges.setdefault(source, []).append(ConditionalEdge(source, route))
        return self

    def add_decision_edge(self, source: str, route: DecisionRoute) -> "Graph":
        self._edges.setdefault(source, []).append(DecisionEdge(source, route))
        return self

    def set_entry_point(self, node_id: str) -> "Graph":
        self._entry_point = node_id
        return self

    def set_end_points(self, *node_ids: str) -> "Graph":
        self._end_points = set(node_ids)
        return self

    @property
    def entry_point(self) -> str | None:
        return self._entry_point

    @property
    def end_points(self) -> frozenset[str]:
        return frozenset(self._end_points)

    @property
    def nodes(self) -> Mapping[str, GraphNode]:
        return dict(self._nodes)

    @property
    def max_same_node_loops(self) -> int:
        return self._max_same_node_loops

    def edges_from(self, source: str) -> list[GraphEdge]:
        return list(self._edges.get(source, ()))

    # -- lifecycle ---------------------------------------------------------

    async def initialize(self) -> None:
        if self._initialized:
            return
        for node in self._nodes.values():
            await _call_hook(node, "initialize")
        self._initialized = True
        logger.debug("graph_initialized", graph=self.name, nodes=len(self._nodes))

    async def destroy(self) -> None:
        for node in self._nodes.values():
            await _call_hook(node, "destroy")
        self._nodes.clear()
        self._edges.clear()
        self._entry_point = None
        self._end_points.clear()
        self._initialized = False
        logger.debug("graph_destroyed", graph=self.name)

    # -- routing -----------------------------------------------------------

    def resolve_next(self, current_node_id: str, decision: Decision, state: ThreadState) -> str:
        """Return the id of the node to run after ``current_node_id``, or ``END``.

        Explicit decisions win over edges: ``END`` stops, ``GOTO`` jumps to a
        registered node and ``LOOP`` returns to the entry point. Anything else
        is resolved by the node's edges in registration order: the first edge
        naming a registered node wins, so an edge answering ``END`` defers to
        later edges, and a node with no matching edge is terminal.
        """
        if decision.kind is DecisionKind.END:
            return END
        if decision.kind is DecisionKind.GOTO:
            if decision.target in self._nodes:
                return decision.target  # type: ignore[return-value]
            logger.warning(
                "graph_goto_unknown_target",
                graph=self.name,
                node_id=current_node_id,
                target=decision.target,
            )
        if decision.kind is DecisionKind.LOOP:
            return self._entry_point or END

        for edge in self._edges.get(current_node_id, ()):
            candidate = self._evaluate_edge(edge, decision, state)
            if candidate is not None and candidate in self._nodes:
                return candidate
        return END

    @staticmethod
    def _evaluate_edge(edge: GraphEdge, decision: Decision, state: ThreadState) -> str | None:
        if isinstance(edge, StaticEdge):
            return edge.target
        if isinstance(edge, ConditionalEdge):
            return edge.route(state)
        return edge.route(state, decision)

    # -- execution ---------------------------------------------------------

    async def execute(
        self,
        initial_state: StateT,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        cancellation: CancellationToken | None = None,
    ) -> StateT:
        if self._entry_point is None:
            raise GraphConfigurationError(f"Graph {self.name!r} has no entry point")
        await self.initialize()

        state = initial_state
        thread_id = state.thread_id
        channel = state.control.channel
        current = self._entry_point
        iterations = 0
        same_node_count = 0
        outcome = "failed"
        self._write_control(state, current, iterations, same_node_count)

        mark_graph_run_started(graph=self.name)
        try:
            with bind_thread_context(thread_id=thread_id, graph=self.name):
                logger.info("graph_execution_started", entry_point=current, max_iterations=max_iterations)
                while iterations < max_iterations:
                    if cancellation is not None:
                        cancellation.raise_if_cancelled(current)
                    node = self._nodes.get(current)
                    if node is None:
                        raise NodeNotFoundError(current)
                    if cancellation is not None:
                        cancellation.raise_if_cancelled(current)

                    iterations += 1
                    self._write_control(state, current, iterations, same_node_count)
                    self._emit(
                        EventType.PROGRESS,
                        thread_id,
                        channel,
                        {"phase": "node_started", "node_id": node.id, "node_name": node.name, "iteration": iterations},
                    )
                    logger.debug("graph_node_started", node_id=node.id, iteration=iterations)
                    started = time.perf_counter()
                    returned, decision = await node.execute(state)
                    latency = time.perf_counter() - started
                    if returned.thread_id != thread_id:
                        raise ThreadStateError(
                            f"Node {node.id!r} returned state for thread {returned.thread_id!r}, "
                            f"expected {thread_id!r}"
                        )
                    state = returned
                    state.control.channel = channel
                    record_node_execution(graph=self.name, node=node.id, decision=decision.kind.value, latency=latency)
                    self._emit(
                        EventType.PROGRESS,
                        thread_id,
                        channel,
                        {
                            "phase": "node_finished",
                            "node_id": node.id,
                            "node_name": node.name,
                            "iteration": iterations,
                            "decision": decision.as_payload(),
                        },
                    )
                    logger.debug("graph_node_finished", node_id=node.id, decision=decision.label, latency=latency)

                    next_id = self.resolve_next(current, decision, state)
                    if next_id == END or (current in self._end_points and decision.kind is DecisionKind.END):
                        self._write_control(state, current, iterations, same_node_count, completed=True)
                        self._emit(
                            EventType.COMPLETE,
                            thread_id,
                            channel,
                            {"reason": "end", "node_id": current, "iterations": iterations},
                        )
                        logger.info("graph_execution_completed", node_id=current, iterations=iterations)
                        outcome = "completed"
                        return state

                    if next_id == current:
                        same_node_count += 1
                        if same_node_count >= self._max_same_node_loops:
                            logger.warning(
                                "graph_loop_guard_tripped",
                                node_id=current,
                                same_node_count=same_node_count,
                                iterations=iterations,
                            )
                            self._write_control(
                                state,
                                current,
                                iterations,
                                same_node_count,
                                loop_guard_tripped=True,
                            )
                            self._emit(
                                EventType.COMPLETE,
                                thread_id,
                                channel,
                                {"reason": "loop_guard", "node_id": current, "iterations": iterations},
                            )
                            outcome = "loop_guard"
                            return state
                    else:
                        same_node_count = 0

                    current = next_id
                    self._write_control(state, current, iterations, same_node_count)

                logger.warning("graph_max_iterations_reached", iterations=iterations, node_id=current)
                self._write_control(state, current, iterations, same_node_count, max_iterations_reached=True)
                outcome = "max_iterations"
                return state
        except GraphCancelledError as exc:
            outcome = "cancelled"
            logger.info("graph_execution_cancelled", thread_id=thread_id, node_id=exc.node_id)
            self._emit(EventType.ERROR, thread_id, channel, {"error": str(exc), "cancelled": True})
            raise
        except Exception as exc:
            logger.exception("graph_execution_failed", thread_id=thread_id, node_id=current, error=str(exc))
            self._emit(EventType.ERROR, thread_id, channel, {"error": str(exc), "node_id": current})
            raise
        finally:
            mark_graph_run_finished(graph=self.name, outcome=outcome)

    def _write_control(
        self,
        state: ThreadState,
        current: str,
        iterations: int,
        same_node_count: int,
        *,
        completed: bool = False,
        loop_guard_tripped: bool = False,
        max_iterations_reached: bool = False,
    ) -> None:
        control = state.control
        control.current_node_id = current
        control.iterations = iterations
        control.same_node_count = same_node_count
        control.completed = completed
        control.loop_guard_tripped = loop_guard_tripped
        control.max_iterations_reached = max_iterations_reached

    def _emit(self, event_type: EventType, thread_id: str, channel: str, data: dict[str, Any]) -> None:
        try:
            self._events.emit(GraphEvent(type=event_type, thread_id=thread_id, channel=channel, data=data))
        except Exception as exc:
            logger.warning("graph_event_emit_failed", event_type=event_type.value, error=str(exc))


def register_nodes(graph: Graph, nodes: Iterable[GraphNode]) -> Graph:
    for node in nodes:
        graph.add_node(node)
    return graph


__all__ = [
    "DEFAULT_MAX_ITERATIONS",
    "DEFAULT_MAX_SAME_NODE_LOOPS",
    "END",
    "Graph",
    "GraphNode",
    "register_nodes",
]
