from __future__ import annotations

from enum import Enum

from ..services.notifications import EventType


class DecisionKind(str, Enum):
    END = "end"
    CONTINUE = "continue"
    LOOP = "loop"
    REVISE = "revise"
    GOTO = "goto"


class VerdictStatus(str, Enum):
    APPROVE = "approve"
    REVISE = "revise"


class OverlordDirective(str, Enum):
    CONTINUE = "continue"
    NEXT = "next"
    END = "end"


class FinalState(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


__all__ = [
    "DecisionKind",
    "EventType",
    "FinalState",
    "OverlordDirective",
    "VerdictStatus",
]
