from __future__ import annotations

import time
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from ..core.logging import get_logger
from ..core.metrics import increment_tool_call
from ..orchestration.state import ThreadState

logger = get_logger(name=__name__)

ToolHandler = Callable[..., Awaitable[Any]]

EMIT_CHAT_MESSAGE = "emit_chat_message"


@dataclass(slots=True, frozen=True)
class ToolCall:
    name: str
    args: tuple[Any, ...] = ()

    @classmethod
    def from_payload(cls, payload: Any) -> "ToolCall | None":
        """Build a call from model output: ``["name", arg, ...]`` or ``{"name": ..., "args": [...]}``."""
        if isinstance(payload, str) and payload.strip():
            return cls(payload.strip())
        if isinstance(payload, (list, tuple)) and payload and isinstance(payload[0], str):
            return cls(payload[0], tuple(payload[1:]))
        if isinstance(payload, Mapping):
            name = payload.get("name") or payload.get("tool")
            if not isinstance(name, str) or not name:
                return None
            args = payload.get("args", ())
            if not isinstance(args, (list, tuple)):
                args = (args,)
            return cls(name, tuple(args))
        return None


@dataclass(slots=True)
class ToolResult:
    tool: str
    success: bool
    output: Any = None
    error: str | None = None
    latency: float = 0.0


class ToolRunner(Protocol):
    async def run(self, calls: Sequence[ToolCall], state: ThreadState) -> list[ToolResult]:
        ...


@dataclass(slots=True)
class RegisteredTool:
    name: str
    handler: ToolHandler
    description: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)


class ToolRegistry:
    """Named async tool handlers executed in order against a thread's state.

    Each handler receives the state followed by the call's positional
    arguments. A failing call never stops the ones after it.
    """

    def __init__(self, *, include_builtins: bool = True) -> None:
        self._tools: dict[str, RegisteredTool] = {}
        if include_builtins:
            self.register(
                EMIT_CHAT_MESSAGE,
                emit_chat_message,
                description="Send a chat message to the user. Args: text.",
            )

    def register(self, name: str, handler: ToolHandler, *, description: str = "", **metadata: Any) -> None:
        self._tools[name] = RegisteredTool(name=name, handler=handler, description=description, metadata=metadata)

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def names(self) -> list[str]:
        return sorted(self._tools)

    def describe(self) -> list[dict[str, str]]:
        return [{"name": tool.name, "description": tool.description} for tool in self._tools.values()]

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    async def run(self, calls: Sequence[ToolCall], state: ThreadState) -> list[ToolResult]:
        results: list[ToolResult] = []
        for call in calls:
            results.append(await self._invoke(call, state))
        return results

    async def _invoke(self, call: ToolCall, state: ThreadState) -> ToolResult:
        tool = self._tools.get(call.name)
        if tool is None:
            increment_tool_call(tool=call.name, outcome="unknown")
            logger.warning("tool_unknown", tool=call.name, thread_id=state.thread_id)
            return ToolResult(tool=call.name, success=False, error=f"Unknown tool: {call.name}")
        started = time.perf_counter()
        try:
            output = await tool.handler(state, *call.args)
        except Exception as exc:
            latency = time.perf_counter() - started
            increment_tool_call(tool=call.name, outcome="error")
            logger.warning("tool_failed", tool=call.name, thread_id=state.thread_id, error=str(exc))
            return ToolResult(tool=call.name, success=False, error=str(exc), latency=latency)
        latency = time.perf_counter() - started
        increment_tool_call(tool=call.name, outcome="success")
        logger.debug("tool_succeeded", tool=call.name, thread_id=state.thread_id, latency=latency)
        return ToolResult(tool=call.name, success=True, output=output, latency=latency)


async def emit_chat_message(state: ThreadState, text: Any = "", *_: Any) -> str:
    content = str(text).strip()
    if not content:
        raise ValueError("emit_chat_message requires non-empty text")
    message = state.add_message("assistant", content, source=EMIT_CHAT_MESSAGE)
    return message.id


__all__ = [
    "EMIT_CHAT_MESSAGE",
    "RegisteredTool",
    "ToolCall",
    "ToolHandler",
    "ToolRegistry",
    "ToolResult",
    "ToolRunner",
    "emit_chat_message",
]
