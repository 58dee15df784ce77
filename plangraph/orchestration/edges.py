from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Union

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .decisions import Decision
    from .state import ThreadState

StateRoute = Callable[["ThreadState"], "str | None"]
DecisionRoute = Callable[["ThreadState", "Decision"], "str | None"]


@dataclass(frozen=True, slots=True)
class StaticEdge:
    source: str
    target: str


@dataclass(frozen=True, slots=True)
class ConditionalEdge:
    """Edge whose target is computed from state alone."""

    source: str
    route: StateRoute


@dataclass(frozen=True, slots=True)
class DecisionEdge:
    """Edge whose target is computed from state and the node's decision."""

    source: str
    route: DecisionRoute


GraphEdge = Union[StaticEdge, ConditionalEdge, DecisionEdge]
