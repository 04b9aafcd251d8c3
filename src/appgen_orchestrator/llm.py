from __future__ import annotations

import json
import logging
import os
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

from dotenv import load_dotenv
from langchain_anthropic import ChatAnthropic
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, AIMessageChunk, BaseMessage
from langchain_core.tools import BaseTool
from langchain_openai import ChatOpenAI

from .cache_blocks import CACHE_MARKER_KEY
from .protocols import SupportsToolStreaming

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT: int = 300
_DEFAULT_MAX_RETRIES: int = 3
_CONTEXT_OVERFLOW_MARKERS = (
    "prompt is too long",
    "context length",
    "context_length_exceeded",
    "maximum context length",
    "token limit exceeded",
)
_TRUNCATED_STOP_REASONS = frozenset({"max_tokens", "length"})

Provider = Literal["anthropic", "openai"]
StreamEventKind = Literal["content", "tool_call", "usage"]


class ModelInvocationError(RuntimeError):
    """The model provider failed for a reason retrying the same step cannot fix."""


class IncompleteTurnError(RuntimeError):
    """A streamed turn ended without a usable response; the step should be retried.

    ``token_limit`` marks turns that hit the context or output token ceiling, which
    require collapsing history before the retry.
    """

    def __init__(self, reason: str, *, token_limit: bool = False) -> None:
        super().__init__(f"Incomplete tool call detected: {reason}")
        self.reason = reason
        self.token_limit = token_limit


@dataclass(frozen=True)
class StreamEvent:
    kind: StreamEventKind
    text: str = ""
    tool_call: dict[str, Any] | None = None
    usage: dict[str, Any] | None = None


def split_model_name(model_name: str) -> tuple[Provider, str]:
    """Split ``provider:model`` identifiers; bare ``claude-*`` names resolve to Anthropic."""
    name = model_name.strip()
    if not name:
        raise ValueError("model_name must be a non-empty string")
    provider, sep, model = name.partition(":")
    if sep:
        provider = provider.lower()
        if provider not in {"anthropic", "openai"}:
            raise ValueError(f"Unsupported model provider {provider!r} in {model_name!r}")
        return provider, model  # type: ignore[return-value]
    return ("anthropic" if name.startswith("claude") else "openai"), name


def provider_supports_cache_markers(model_name: str) -> bool:
    provider, _ = split_model_name(model_name)
    return provider == "anthropic"


def ensure_api_key(provider: Provider, repo_root: Path | None = None) -> str:
    """Load the provider API key from environment or .env and return it.

    Raises:
        RuntimeError: If the key is unavailable after all sources are checked.
    """
    repo = repo_root if repo_root is not None else Path.cwd()
    env_path = repo / ".env"
    if env_path.is_file():
        load_dotenv(env_path)

    env_name = "ANTHROPIC_API_KEY" if provider == "anthropic" else "OPENAI_API_KEY"
    key = os.getenv(env_name, "").strip()
    if not key:
        raise RuntimeError(f"{env_name} is required for model execution")
    return key


def get_chat_model(
    *,
    model_name: str,
    temperature: float = 0.0,
    timeout: int = _DEFAULT_TIMEOUT,
    max_retries: int = _DEFAULT_MAX_RETRIES,
    max_tokens: int | None = None,
    repo_root: Path | None = None,
) -> BaseChatModel:
    """Construct a chat model for ``provider:model`` with validated API key and defaults.

    Args:
        model_name: Identifier such as ``anthropic:claude-sonnet-4-5`` or ``openai:gpt-4o``.
        temperature: Sampling temperature.
        timeout: Request timeout in seconds.
        max_retries: Maximum number of retry attempts on transient failures.
        max_tokens: Maximum tokens for the completion. When None, the model default is used.
        repo_root: Optional repo root for .env file resolution.

    Returns:
        Configured ``ChatAnthropic`` or ``ChatOpenAI`` instance.

    Raises:
        ValueError: If the model name is empty or names an unknown provider.
        RuntimeError: If the provider API key is not available.
    """
    provider, model = split_model_name(model_name)
    ensure_api_key(provider, repo_root=repo_root)
    if provider == "anthropic":
        kwargs: dict[str, Any] = {
            "model": model,
            "temperature": temperature,
            "timeout": timeout,
            "max_retries": max_retries,
        }
        if max_tokens is not None:
            kwargs["max_tokens"] = max_tokens
        return ChatAnthropic(**kwargs)
    kwargs = {
        "model": model,
        "temperature": temperature,
        "timeout": timeout,
        "max_retries": max_retries,
    }
    if max_tokens is not None:
        kwargs["max_completion_tokens"] = max_tokens
    return ChatOpenAI(**kwargs)


def content_to_text(content: Any) -> str:
    """Recursively extract plain text from heterogeneous LLM response content."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        chunks: list[str] = []
        for item in content:
            if isinstance(item, str):
                chunks.append(item)
            elif isinstance(item, dict):
                text_value = item.get("text")
                if isinstance(text_value, str):
                    chunks.append(text_value)
                elif item.get("content") is not None:
                    chunks.append(content_to_text(item["content"]))
        return "\n".join(chunk for chunk in chunks if chunk.strip())
    if isinstance(content, dict):
        if "content" in content:
            return content_to_text(content["content"])
        return json.dumps(content, sort_keys=True)
    return str(content)


def is_context_overflow(exc: BaseException) -> bool:
    message = str(exc).lower()
    return any(marker in message for marker in _CONTEXT_OVERFLOW_MARKERS)


def without_cache_markers(messages: Sequence[BaseMessage]) -> list[BaseMessage]:
    """Copies of ``messages`` with cache markers removed, for providers that reject them."""
    stripped: list[BaseMessage] = []
    for message in messages:
        if isinstance(message.content, list):
            content = [
                {key: value for key, value in block.items() if key != CACHE_MARKER_KEY}
                if isinstance(block, dict)
                else block
                for block in message.content
            ]
            message = message.model_copy(update={"content": content})
        stripped.append(message)
    return stripped


def required_arguments(tools: Sequence[BaseTool]) -> dict[str, bool]:
    """Map tool name to whether its schema has any required argument."""
    required: dict[str, bool] = {}
    for item in tools:
        schema = item.args_schema
        fields = getattr(schema, "model_fields", None) or {}
        required[item.name] = any(field.is_required() for field in fields.values())
    return required


def _usage_total(chunk: AIMessageChunk) -> int | None:
    usage = chunk.usage_metadata
    if usage:
        return int(usage.get("total_tokens", 0))
    token_usage = chunk.response_metadata.get("usage") or chunk.response_metadata.get("token_usage")
    if isinstance(token_usage, dict) and "total_tokens" in token_usage:
        return int(token_usage["total_tokens"])
    return None


async def stream_turn(
    model: SupportsToolStreaming,
    messages: Sequence[BaseMessage],
    *,
    token_ceiling: int,
    tools_requiring_args: dict[str, bool] | None = None,
    on_event: Callable[[StreamEvent], Awaitable[None]] | None = None,
) -> AIMessage:
    """Stream one model turn and assemble it into a single ``AIMessage``.

    Args:
        model: Tool-bound chat model.
        messages: Conversation history to send.
        token_ceiling: Usage at or above this many total tokens marks the turn incomplete.
        tools_requiring_args: Tools whose calls must carry arguments.
        on_event: Optional callback receiving content, tool call and usage events.

    Returns:
        The assembled assistant message, tool calls included.

    Raises:
        IncompleteTurnError: If the turn was truncated, a tool call is missing its
            arguments, or the token ceiling or context window was exceeded.
        ModelInvocationError: For any other provider failure.
    """
    accumulated: AIMessageChunk | None = None
    try:
        async for chunk in model.astream(messages):
            accumulated = chunk if accumulated is None else accumulated + chunk
            if on_event is not None:
                text = content_to_text(chunk.content)
                if text:
                    await on_event(StreamEvent(kind="content", text=text))
    except Exception as exc:  # noqa: BLE001
        if is_context_overflow(exc):
            raise IncompleteTurnError(str(exc), token_limit=True) from exc
        raise ModelInvocationError(f"Model invocation failed: {exc}") from exc

    if accumulated is None:
        raise IncompleteTurnError("empty response stream")

    total_tokens = _usage_total(accumulated)
    if total_tokens is not None:
        if on_event is not None:
            await on_event(StreamEvent(kind="usage", usage=dict(accumulated.usage_metadata or {})))
        if total_tokens >= token_ceiling:
            raise IncompleteTurnError("token limit exceeded", token_limit=True)

    stop_reason = accumulated.response_metadata.get("stop_reason") or accumulated.response_metadata.get(
        "finish_reason"
    )
    if accumulated.invalid_tool_calls:
        names = ", ".join(str(call.get("name")) for call in accumulated.invalid_tool_calls)
        raise IncompleteTurnError(f"malformed arguments for {names}")

    requiring = tools_requiring_args or {}
    for call in accumulated.tool_calls:
        if not call.get("args") and requiring.get(call["name"], False):
            raise IncompleteTurnError(f"tool call {call['name']} has no arguments")
        if on_event is not None:
            await on_event(StreamEvent(kind="tool_call", tool_call=dict(call)))

    if stop_reason in _TRUNCATED_STOP_REASONS and accumulated.tool_calls:
        raise IncompleteTurnError(f"response truncated ({stop_reason})")

    return AIMessage(
        content=accumulated.content,
        tool_calls=accumulated.tool_calls,
        id=accumulated.id,
        response_metadata=accumulated.response_metadata,
        usage_metadata=accumulated.usage_metadata,
    )
