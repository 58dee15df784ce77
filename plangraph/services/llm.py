from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, ClassVar, Protocol

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_ollama import ChatOllama

from ..core.config import Settings
from ..core.logging import get_logger

logger = get_logger(name=__name__)

PromptMessage = Mapping[str, str]


@dataclass(slots=True)
class ChatResponse:
    content: str
    model: str | None = None
    parsed: dict[str, Any] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class ChatModel(Protocol):
    async def chat(
        self,
        messages: Sequence[PromptMessage],
        options: Mapping[str, Any] | None = None,
    ) -> ChatResponse | None:
        """Return the model's answer, or ``None`` when no usable response came back."""


def _build_base_url(host: str, port: int) -> str:
    base = host.rstrip("/")
    if ":" in base.rsplit("/", maxsplit=1)[-1]:
        return base
    return f"{base}:{port}"


def to_langchain_messages(messages: Sequence[PromptMessage]) -> list[BaseMessage]:
    converted: list[BaseMessage] = []
    for message in messages:
        role = message.get("role", "user")
        content = message.get("content", "")
        if role == "system":
            converted.append(SystemMessage(content=content))
        elif role == "assistant":
            converted.append(AIMessage(content=content))
        else:
            converted.append(HumanMessage(content=content))
    return converted


def _content_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, str):
                parts.append(item)
            elif isinstance(item, Mapping) and isinstance(item.get("text"), str):
                parts.append(item["text"])
        return "".join(parts)
    return str(content or "")


@dataclass
class LangChainChatModel:
    """Adapter from any langchain-core chat model to the engine's chat contract."""

    client: Any
    model: str
    _client_cache: ClassVar[dict[str, Any]] = {}

    @classmethod
    def from_settings(cls, settings: Settings, *, model: str | None = None) -> "LangChainChatModel":
        model_name = model or settings.ollama.model
        cache_key = f"{settings.ollama.host}:{settings.ollama.port}:{model_name}"
        client = cls._client_cache.get(cache_key)
        if client is None:
            client = ChatOllama(
                model=model_name,
                base_url=_build_base_url(settings.ollama.host, settings.ollama.port),
                temperature=settings.ollama.temperature,
            )
            cls._client_cache[cache_key] = client
        return cls(client=client, model=model_name)

    async def chat(
        self,
        messages: Sequence[PromptMessage],
        options: Mapping[str, Any] | None = None,
    ) -> ChatResponse | None:
        client = self.client
        bound = {key: value for key, value in (options or {}).items() if key in {"temperature", "num_predict", "format"}}
        if bound and hasattr(client, "bind"):
            client = client.bind(**bound)
        try:
            result = await client.ainvoke(to_langchain_messages(messages))
        except Exception as exc:
            logger.warning("chat_model_failed", model=self.model, error=str(exc))
            return None
        text = _content_text(getattr(result, "content", result)).strip()
        if not text:
            logger.warning("chat_model_empty_response", model=self.model)
            return None
        return ChatResponse(content=text, model=self.model)


__all__ = [
    "ChatModel",
    "ChatResponse",
    "LangChainChatModel",
    "PromptMessage",
    "to_langchain_messages",
]
