from .cancellation import CancellationToken
from .decisions import Decision
from .edges import ConditionalEdge, DecisionEdge, GraphEdge, StaticEdge
from .enums import DecisionKind, EventType, FinalState, OverlordDirective, VerdictStatus
from .exceptions import (
    GraphCancelledError,
    GraphConfigurationError,
    GraphError,
    NodeNotFoundError,
    ThreadStateError,
)
from .graph import END, Graph, GraphNode
from .state import (
    ChatMessage,
    ControlState,
    HierarchicalThreadState,
    OverlordThreadState,
    PlanningState,
    ThreadState,
    new_thread_state,
)
from .store import ThreadStateStore

__all__ = [
    "CancellationToken",
    "ChatMessage",
    "ConditionalEdge",
    "ControlState",
    "Decision",
    "DecisionEdge",
    "DecisionKind",
    "END",
    "EventType",
    "FinalState",
    "Graph",
    "GraphCancelledError",
    "GraphConfigurationError",
    "GraphEdge",
    "GraphError",
    "GraphNode",
    "HierarchicalThreadState",
    "NodeNotFoundError",
    "OverlordDirective",
    "OverlordThreadState",
    "PlanningState",
    "StaticEdge",
    "ThreadState",
    "ThreadStateError",
    "ThreadStateStore",
    "VerdictStatus",
    "new_thread_state",
]
