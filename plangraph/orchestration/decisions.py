from __future__ import annotations

from dataclasses import dataclass

from .enums import DecisionKind


@dataclass(frozen=True, slots=True)
class Decision:
    """Outcome a node hands to the router alongside its updated state.

    ``END`` finishes the run, ``LOOP`` returns to the entry point and ``GOTO``
    jumps to ``target``. ``CONTINUE`` and ``REVISE`` are resolved through the
    edges registered for the node.
    """

    kind: DecisionKind
    target: str | None = None
    reason: str | None = None

    def __post_init__(self) -> None:
        if self.kind is DecisionKind.GOTO and not self.target:
            raise ValueError("goto decisions require a target node id")
        if self.kind is not DecisionKind.GOTO and self.target is not None:
            raise ValueError(f"{self.kind.value} decisions do not carry a target")

    @classmethod
    def end(cls, reason: str | None = None) -> "Decision":
        return cls(DecisionKind.END, reason=reason)

    @classmethod
    def cont(cls, reason: str | None = None) -> "Decision":
        return cls(DecisionKind.CONTINUE, reason=reason)

    @classmethod
    def loop(cls, reason: str | None = None) -> "Decision":
        return cls(DecisionKind.LOOP, reason=reason)

    @classmethod
    def revise(cls, reason: str | None = None) -> "Decision":
        return cls(DecisionKind.REVISE, reason=reason)

    @classmethod
    def goto(cls, node_id: str, reason: str | None = None) -> "Decision":
        return cls(DecisionKind.GOTO, target=node_id, reason=reason)

    @property
    def label(self) -> str:
        if self.kind is DecisionKind.GOTO:
            return f"goto:{self.target}"
        return self.kind.value

    def as_payload(self) -> dict[str, str | None]:
        return {"kind": self.kind.value, "target": self.target, "reason": self.reason}
