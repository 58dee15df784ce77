from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

GRAPH_NODE_EXECUTIONS_TOTAL = Counter(
    "plangraph_graph_node_executions_total",
    "Node executions grouped by graph, node and the decision the node returned",
    labelnames=("graph", "node", "decision"),
)

GRAPH_NODE_LATENCY_SECONDS = Histogram(
    "plangraph_graph_node_latency_seconds",
    "Latency of a single node execution",
    labelnames=("graph", "node"),
    buckets=(0.01, 0.05, 0.1, 0.5, 1, 2, 5, 10, 30, 60, 120, float("inf")),
)

GRAPH_RUNS_TOTAL = Counter(
    "plangraph_graph_runs_total",
    "Graph executions by outcome",
    labelnames=("graph", "outcome"),
)

GRAPH_RUNS_ACTIVE = Gauge(
    "plangraph_graph_runs_active",
    "Graph executions currently in flight",
    labelnames=("graph",),
)

THREAD_STORE_OPERATIONS_TOTAL = Counter(
    "plangraph_thread_store_operations_total",
    "Thread state store operations grouped by backend that served them",
    labelnames=("operation", "backend"),
)

MODEL_CALLS_TOTAL = Counter(
    "plangraph_model_calls_total",
    "Chat model calls issued by nodes grouped by outcome",
    labelnames=("node", "outcome"),
)

NOTIFICATIONS_DROPPED_TOTAL = Counter(
    "plangraph_notifications_dropped_total",
    "Graph events dropped because the dispatch queue was full",
    labelnames=("event_type",),
)


def record_node_execution(*, graph: str, node: str, decision: str, latency: float) -> None:
    GRAPH_NODE_EXECUTIONS_TOTAL.labels(graph=graph, node=node, decision=decision).inc()
    GRAPH_NODE_LATENCY_SECONDS.labels(graph=graph, node=node).observe(max(latency, 0.0))


def mark_graph_run_started(*, graph: str) -> None:
    GRAPH_RUNS_ACTIVE.labels(graph=graph).inc()


def mark_graph_run_finished(*, graph: str, outcome: str) -> None:
    GRAPH_RUNS_ACTIVE.labels(graph=graph).dec()
    GRAPH_RUNS_TOTAL.labels(graph=graph, outcome=outcome).inc()


def increment_store_operation(*, operation: str, backend: str) -> None:
    THREAD_STORE_OPERATIONS_TOTAL.labels(operation=operation, backend=backend).inc()


def increment_model_call(*, node: str, outcome: str) -> None:
    MODEL_CALLS_TOTAL.labels(node=node, outcome=outcome).inc()


def increment_notification_dropped(*, event_type: str) -> None:
    NOTIFICATIONS_DROPPED_TOTAL.labels(event_type=event_type).inc()


TOOL_CALLS_TOTAL = Counter(
    "plangraph_tool_calls_total",
    "Tool calls executed on behalf of the tactical executor",
    labelnames=("tool", "outcome"),
)


def increment_tool_call(*, tool: str, outcome: str) -> None:
    TOOL_CALLS_TOTAL.labels(tool=tool, outcome=outcome).inc()
