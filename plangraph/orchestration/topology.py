from __future__ import annotations

from .decisions import Decision
from .enums import DecisionKind
from .graph import DEFAULT_MAX_SAME_NODE_LOOPS, END, Graph, register_nodes
from .nodes import (
    MemoryRecallNode,
    NodeDependencies,
    OverlordPlannerNode,
    StrategicCriticNode,
    StrategicPlannerNode,
    TacticalCriticNode,
    TacticalExecutorNode,
    TacticalPlannerNode,
)
from .state import HierarchicalThreadState

HIERARCHICAL_GRAPH = "hierarchical_planning"
HEARTBEAT_GRAPH = "heartbeat"

MEMORY_RECALL = MemoryRecallNode.id
STRATEGIC_PLANNER = StrategicPlannerNode.id
TACTICAL_PLANNER = TacticalPlannerNode.id
TACTICAL_EXECUTOR = TacticalExecutorNode.id
TACTICAL_CRITIC = TacticalCriticNode.id
STRATEGIC_CRITIC = StrategicCriticNode.id
OVERLORD_PLANNER = OverlordPlannerNode.id


def route_after_strategic_planner(state: HierarchicalThreadState) -> str:
    return TACTICAL_PLANNER if state.planning.milestones else END


def route_after_tactical_planner(state: HierarchicalThreadState) -> str:
    return TACTICAL_EXECUTOR if state.planning.active_milestone() is not None else STRATEGIC_CRITIC


def executor_router(max_runs: int):
    """Keep the executor on its milestone for at most ``max_runs`` consecutive runs.

    ``control.same_node_count`` counts the self-transitions that led into the
    current run, so the run that would reach ``max_runs`` hands over to the
    critic instead of tripping the engine's loop guard.
    """

    def route(state: HierarchicalThreadState) -> str:
        if state.planning.executor_has_more_work and state.control.same_node_count + 1 < max_runs:
            return TACTICAL_EXECUTOR
        return TACTICAL_CRITIC

    return route


def route_after_tactical_critic(state: HierarchicalThreadState, decision: Decision) -> str:
    if decision.kind is DecisionKind.REVISE or state.planning.has_open_milestones():
        return TACTICAL_PLANNER
    return STRATEGIC_CRITIC


def strategic_critic_router(finished: str):
    def route(state: HierarchicalThreadState, decision: Decision) -> str:
        if decision.kind is DecisionKind.REVISE:
            return STRATEGIC_PLANNER
        return finished

    return route


def route_after_overlord(state: HierarchicalThreadState, decision: Decision) -> str:
    if decision.kind is DecisionKind.REVISE:
        return OVERLORD_PLANNER
    return STRATEGIC_PLANNER


def _executor_budget(deps: NodeDependencies, max_same_node_loops: int) -> int:
    budget = deps.max_executor_steps or max_same_node_loops
    return min(budget, max_same_node_loops)


def _add_planning_tail(graph: Graph, deps: NodeDependencies, *, after_strategic_critic: str) -> None:
    register_nodes(
        graph,
        (
            StrategicPlannerNode(deps),
            TacticalPlannerNode(deps),
            TacticalExecutorNode(deps),
            TacticalCriticNode(deps),
            StrategicCriticNode(deps),
        ),
    )
    graph.add_conditional_edge(STRATEGIC_PLANNER, route_after_strategic_planner)
    graph.add_conditional_edge(TACTICAL_PLANNER, route_after_tactical_planner)
    graph.add_conditional_edge(
        TACTICAL_EXECUTOR,
        executor_router(_executor_budget(deps, graph.max_same_node_loops)),
    )
    graph.add_decision_edge(TACTICAL_CRITIC, route_after_tactical_critic)
    graph.add_decision_edge(STRATEGIC_CRITIC, strategic_critic_router(after_strategic_critic))


def build_hierarchical_graph(
    deps: NodeDependencies,
    *,
    max_same_node_loops: int = DEFAULT_MAX_SAME_NODE_LOOPS,
) -> Graph:
    """memory_recall -> strategic_planner -> tactical loop -> strategic_critic -> end."""
    graph = Graph(HIERARCHICAL_GRAPH, events=deps.events, max_same_node_loops=max_same_node_loops)
    graph.add_node(MemoryRecallNode(deps))
    _add_planning_tail(graph, deps, after_strategic_critic=END)
    graph.add_edge(MEMORY_RECALL, STRATEGIC_PLANNER)
    graph.set_entry_point(MEMORY_RECALL)
    graph.set_end_points(STRATEGIC_CRITIC)
    return graph


def build_heartbeat_graph(
    deps: NodeDependencies,
    *,
    max_same_node_loops: int = DEFAULT_MAX_SAME_NODE_LOOPS,
) -> Graph:
    """Same planning tail, entered from and returning to the overlord node."""
    graph = Graph(HEARTBEAT_GRAPH, events=deps.events, max_same_node_loops=max_same_node_loops)
    graph.add_node(MemoryRecallNode(deps))
    graph.add_node(OverlordPlannerNode(deps))
    _add_planning_tail(graph, deps, after_strategic_critic=OVERLORD_PLANNER)
    graph.add_edge(MEMORY_RECALL, OVERLORD_PLANNER)
    graph.add_decision_edge(OVERLORD_PLANNER, route_after_overlord)
    graph.set_entry_point(MEMORY_RECALL)
    graph.set_end_points(OVERLORD_PLANNER)
    return graph


__all__ = [
    "HEARTBEAT_GRAPH",
    "HIERARCHICAL_GRAPH",
    "NodeDependencies",
    "build_heartbeat_graph",
    "build_hierarchical_graph",
    "executor_router",
    "route_after_overlord",
    "route_after_strategic_planner",
    "route_after_tactical_critic",
    "route_after_tactical_planner",
    "strategic_critic_router",
]
