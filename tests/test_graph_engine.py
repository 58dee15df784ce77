from __future__ import annotations

import pytest
from pydantic import ValidationError

from plangraph.orchestration import (
    END,
    CancellationToken,
    Decision,
    Graph,
    GraphCancelledError,
    GraphConfigurationError,
    NodeNotFoundError,
    ThreadState,
    ThreadStateError,
)
from tests.helpers.stubs import ExplodingEventSink, FunctionNode, RecordingEventSink


def _state(**metadata: object) -> ThreadState:
    return ThreadState(thread_id="thread-test", metadata=dict(metadata))


def _passthrough(decision: Decision):
    def run(state: ThreadState) -> tuple[ThreadState, Decision]:
        return state, decision

    return run


def test_end_decision_wins_over_registered_edges() -> None:
    graph = Graph()
    graph.add_node(FunctionNode("a", _passthrough(Decision.end())))
    graph.add_node(FunctionNode("b", _passthrough(Decision.end())))
    graph.add_edge("a", "b")

    assert graph.resolve_next("a", Decision.end(), _state()) == END


def test_goto_registered_node_overrides_edges() -> None:
    graph = Graph()
    for node_id in ("a", "b", "c"):
        graph.add_node(FunctionNode(node_id, _passthrough(Decision.end())))
    graph.add_edge("a", "b")

    assert graph.resolve_next("a", Decision.goto("c"), _state()) == "c"


def test_goto_unknown_node_falls_back_to_edges() -> None:
    graph = Graph()
    graph.add_node(FunctionNode("a", _passthrough(Decision.end())))
    graph.add_node(FunctionNode("b", _passthrough(Decision.end())))
    graph.add_edge("a", "b")

    assert graph.resolve_next("a", Decision.goto("ghost"), _state()) == "b"


def test_loop_routes_to_entry_point_even_with_edges() -> None:
    graph = Graph()
    for node_id in ("entry", "a", "b"):
        graph.add_node(FunctionNode(node_id, _passthrough(Decision.end())))
    graph.set_entry_point("entry")
    graph.add_edge("a", "b")

    assert graph.resolve_next("a", Decision.loop(), _state()) == "entry"


def test_edges_are_scanned_in_insertion_order() -> None:
    graph = Graph()
    for node_id in ("a", "b", "c"):
        graph.add_node(FunctionNode(node_id, _passthrough(Decision.end())))
    graph.add_conditional_edge("a", lambda state: "ghost")
    graph.add_conditional_edge("a", lambda state: None)
    graph.add_edge("a", "c")
    graph.add_edge("a", "b")

    assert graph.resolve_next("a", Decision.cont(), _state()) == "c"


def test_edge_answering_end_defers_to_later_edges() -> None:
    graph = Graph()
    for node_id in ("a", "b"):
        graph.add_node(FunctionNode(node_id, _passthrough(Decision.end())))
    graph.add_conditional_edge("a", lambda state: END)
    graph.add_edge("a", "b")

    assert graph.resolve_next("a", Decision.cont(), _state()) == "b"


def test_decision_edge_receives_the_decision() -> None:
    seen: list[Decision] = []

    def route(state: ThreadState, decision: Decision) -> str:
        seen.append(decision)
        return "b"

    graph = Graph()
    graph.add_node(FunctionNode("a", _passthrough(Decision.end())))
    graph.add_node(FunctionNode("b", _passthrough(Decision.end())))
    graph.add_decision_edge("a", route)

    decision = Decision.revise(reason="needs work")
    assert graph.resolve_next("a", decision, _state()) == "b"
    assert seen == [decision]


def test_unrouted_node_is_terminal() -> None:
    graph = Graph()
    graph.add_node(FunctionNode("a", _passthrough(Decision.cont())))
    graph.add_edge("a", "ghost")

    assert graph.resolve_next("a", Decision.cont(), _state()) == END


def test_goto_requires_target() -> None:
    with pytest.raises(ValueError):
        Decision(kind=Decision.end().kind, target="a")
    assert Decision.goto("a").label == "goto:a"


@pytest.mark.asyncio
async def test_conditional_self_edge_runs_until_condition_clears() -> None:
    def increment(state: ThreadState) -> tuple[ThreadState, Decision]:
        state.metadata["seen"] = state.metadata["x"]
        if state.metadata["x"] < 3:
            state.metadata["x"] += 1
        return state, Decision.cont()

    node = FunctionNode("A", increment)
    graph = Graph()
    graph.add_node(node)
    graph.add_conditional_edge("A", lambda state: "A" if state.metadata["seen"] < 3 else END)
    graph.set_entry_point("A")

    result = await graph.execute(_state(x=0))

    assert node.calls == 4
    assert result.metadata["x"] == 3
    assert result.control.completed is True
    assert result.control.loop_guard_tripped is False
    assert result.control.same_node_count == 3


@pytest.mark.asyncio
async def test_self_loop_guard_soft_stops_at_ceiling() -> None:
    node = FunctionNode("spin", _passthrough(Decision.cont()))
    graph = Graph()
    graph.add_node(node)
    graph.add_edge("spin", "spin")
    graph.set_entry_point("spin")

    result = await graph.execute(_state())

    assert node.calls == 15
    assert result.control.loop_guard_tripped is True
    assert result.control.same_node_count == 15
    assert result.control.completed is False


@pytest.mark.asyncio
async def test_same_node_counter_resets_on_transition() -> None:
    observed: list[tuple[str, int]] = []

    def spin(state: ThreadState) -> tuple[ThreadState, Decision]:
        observed.append(("a", state.control.same_node_count))
        state.metadata["a_runs"] = state.metadata.get("a_runs", 0) + 1
        return state, Decision.cont()

    def finish(state: ThreadState) -> tuple[ThreadState, Decision]:
        observed.append(("b", state.control.same_node_count))
        return state, Decision.end()

    graph = Graph()
    graph.add_node(FunctionNode("a", spin))
    graph.add_node(FunctionNode("b", finish))
    graph.add_conditional_edge("a", lambda state: "a" if state.metadata["a_runs"] < 3 else "b")
    graph.set_entry_point("a")

    await graph.execute(_state())

    assert observed == [("a", 0), ("a", 1), ("a", 2), ("b", 0)]


@pytest.mark.asyncio
async def test_node_writes_to_control_do_not_change_loop_policy() -> None:
    def tamper(state: ThreadState) -> tuple[ThreadState, Decision]:
        state.control.same_node_count = 0
        state.control.iterations = 0
        return state, Decision.cont()

    node = FunctionNode("spin", tamper)
    graph = Graph(max_same_node_loops=4)
    graph.add_node(node)
    graph.add_edge("spin", "spin")
    graph.set_entry_point("spin")

    result = await graph.execute(_state())

    assert node.calls == 4
    assert result.control.loop_guard_tripped is True
    assert result.control.iterations == 4


@pytest.mark.asyncio
async def test_iteration_ceiling_sets_flag_without_raising() -> None:
    ping = FunctionNode("ping", _passthrough(Decision.cont()))
    pong = FunctionNode("pong", _passthrough(Decision.cont()))
    graph = Graph()
    graph.add_node(ping).add_node(pong)
    graph.add_edge("ping", "pong")
    graph.add_edge("pong", "ping")
    graph.set_entry_point("ping")

    result = await graph.execute(_state(), max_iterations=5)

    assert ping.calls + pong.calls == 5
    assert result.control.iterations == 5
    assert result.control.max_iterations_reached is True
    assert result.control.completed is False


@pytest.mark.asyncio
async def test_cancellation_before_start_runs_nothing() -> None:
    node = FunctionNode("a", _passthrough(Decision.end()))
    graph = Graph()
    graph.add_node(node)
    graph.set_entry_point("a")
    token = CancellationToken()
    token.cancel("user aborted")

    with pytest.raises(GraphCancelledError) as excinfo:
        await graph.execute(_state(), cancellation=token)

    assert node.calls == 0
    assert excinfo.value.node_id == "a"
    assert excinfo.value.reason == "user aborted"


@pytest.mark.asyncio
async def test_cancellation_between_nodes_stops_before_next_node() -> None:
    token = CancellationToken()

    def first(state: ThreadState) -> tuple[ThreadState, Decision]:
        token.cancel()
        return state, Decision.cont()

    a = FunctionNode("a", first)
    b = FunctionNode("b", _passthrough(Decision.end()))
    graph = Graph()
    graph.add_node(a).add_node(b)
    graph.add_edge("a", "b")
    graph.set_entry_point("a")

    with pytest.raises(GraphCancelledError):
        await graph.execute(_state(), cancellation=token)

    assert a.calls == 1
    assert b.calls == 0


@pytest.mark.asyncio
async def test_missing_entry_point_is_fatal() -> None:
    graph = Graph()
    graph.add_node(FunctionNode("a", _passthrough(Decision.end())))

    with pytest.raises(GraphConfigurationError):
        await graph.execute(_state())


@pytest.mark.asyncio
async def test_unregistered_current_node_is_fatal() -> None:
    graph = Graph()
    graph.set_entry_point("ghost")

    with pytest.raises(NodeNotFoundError) as excinfo:
        await graph.execute(_state())

    assert excinfo.value.node_id == "ghost"


def test_duplicate_node_ids_are_rejected() -> None:
    graph = Graph()
    graph.add_node(FunctionNode("a", _passthrough(Decision.end())))

    with pytest.raises(GraphConfigurationError):
        graph.add_node(FunctionNode("a", _passthrough(Decision.end())))


@pytest.mark.asyncio
async def test_initialize_is_idempotent_and_destroy_clears_tables() -> None:
    node = FunctionNode("a", _passthrough(Decision.end()))
    graph = Graph()
    graph.add_node(node)
    graph.add_edge("a", "a")
    graph.set_entry_point("a")
    graph.set_end_points("a")

    await graph.initialize()
    await graph.initialize()
    await graph.execute(_state())
    assert node.initialized == 1

    await graph.destroy()
    assert node.destroyed == 1
    assert graph.nodes == {}
    assert graph.edges_from("a") == []
    assert graph.entry_point is None
    assert graph.end_points == frozenset()


@pytest.mark.asyncio
async def test_events_follow_execution_order() -> None:
    sink = RecordingEventSink()
    graph = Graph("ordered", events=sink)
    graph.add_node(FunctionNode("a", _passthrough(Decision.cont())))
    graph.add_node(FunctionNode("b", _passthrough(Decision.end())))
    graph.add_edge("a", "b")
    graph.set_entry_point("a")
    graph.set_end_points("b")

    await graph.execute(_state())

    assert sink.phases() == [
        ("progress", "node_started", "a"),
        ("progress", "node_finished", "a"),
        ("progress", "node_started", "b"),
        ("progress", "node_finished", "b"),
        ("complete", None, "b"),
    ]
    assert {event.channel for event in sink.events} == {"chat-controller-backend"}
    assert sink.events[1].data["decision"]["kind"] == "continue"


@pytest.mark.asyncio
async def test_failing_event_sink_does_not_break_execution() -> None:
    graph = Graph(events=ExplodingEventSink())
    graph.add_node(FunctionNode("a", _passthrough(Decision.end())))
    graph.set_entry_point("a")

    result = await graph.execute(_state())

    assert result.control.completed is True


def test_thread_id_cannot_be_reassigned() -> None:
    state = _state()
    with pytest.raises(ValidationError):
        state.thread_id = "other"


@pytest.mark.asyncio
async def test_node_returning_foreign_thread_is_rejected() -> None:
    graph = Graph()
    graph.add_node(FunctionNode("a", lambda state: (ThreadState(thread_id="intruder"), Decision.end())))
    graph.set_entry_point("a")

    with pytest.raises(ThreadStateError):
        await graph.execute(_state())
