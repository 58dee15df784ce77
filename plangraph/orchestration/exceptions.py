from __future__ import annotations


class GraphError(RuntimeError):
    """Base class for fatal graph execution errors."""


class GraphConfigurationError(GraphError):
    """Raised when a graph is executed without the wiring it needs."""


class NodeNotFoundError(GraphError):
    """Raised when the cursor points at a node id that was never registered."""

    def __init__(self, node_id: str) -> None:
        super().__init__(f"Node missing from graph: {node_id!r}")
        self.node_id = node_id


class GraphCancelledError(GraphError):
    """Raised when the caller's cancellation token is observed by the engine."""

    def __init__(self, node_id: str | None, reason: str | None = None) -> None:
        message = "Graph execution cancelled"
        if node_id:
            message = f"{message} before node {node_id!r}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.node_id = node_id
        self.reason = reason


class ThreadStateError(GraphError):
    """Raised when a node hands back state belonging to another thread."""
