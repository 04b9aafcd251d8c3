from __future__ import annotations

from pathlib import Path

import pytest
from langchain_anthropic import ChatAnthropic
from langchain_core.messages import AIMessageChunk, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI
from support import ScriptedChatModel, final_turn, tool_turn

from appgen_orchestrator.cache_blocks import CACHE_MARKER_KEY, has_cache_marker
from appgen_orchestrator.llm import (
    IncompleteTurnError,
    ModelInvocationError,
    StreamEvent,
    content_to_text,
    get_chat_model,
    provider_supports_cache_markers,
    split_model_name,
    stream_turn,
    without_cache_markers,
)

MESSAGES = [SystemMessage(content="system"), HumanMessage(content="build a todo app")]


def test_split_model_name() -> None:
    assert split_model_name("anthropic:claude-sonnet-4-5") == ("anthropic", "claude-sonnet-4-5")
    assert split_model_name("OpenAI:gpt-4o") == ("openai", "gpt-4o")
    assert split_model_name("claude-3-5-haiku") == ("anthropic", "claude-3-5-haiku")
    assert split_model_name("gpt-4o-mini") == ("openai", "gpt-4o-mini")
    with pytest.raises(ValueError, match="Unsupported model provider"):
        split_model_name("mistral:large")
    assert provider_supports_cache_markers("claude-3-5-haiku") is True
    assert provider_supports_cache_markers("openai:gpt-4o") is False


def test_get_chat_model_requires_api_key(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    with pytest.raises(RuntimeError, match="ANTHROPIC_API_KEY"):
        get_chat_model(model_name="anthropic:claude-sonnet-4-5", repo_root=tmp_path)


def test_get_chat_model_builds_provider_client(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-test")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")

    anthropic = get_chat_model(model_name="anthropic:claude-sonnet-4-5", max_tokens=1024, repo_root=tmp_path)
    assert isinstance(anthropic, ChatAnthropic)
    assert anthropic.model == "claude-sonnet-4-5"

    openai = get_chat_model(model_name="openai:gpt-4o", repo_root=tmp_path)
    assert isinstance(openai, ChatOpenAI)
    assert openai.model_name == "gpt-4o"


def test_content_to_text_flattens_blocks() -> None:
    assert content_to_text("plain") == "plain"
    assert content_to_text([{"type": "text", "text": "a"}, "b", {"type": "tool_use", "content": "c"}]) == "a\nb\nc"


def test_without_cache_markers_leaves_history_untouched() -> None:
    marked = HumanMessage(content=[{"type": "text", "text": "x", CACHE_MARKER_KEY: {"type": "ephemeral"}}])
    stripped = without_cache_markers([marked])
    assert has_cache_marker(stripped[0]) is False
    assert has_cache_marker(marked) is True


@pytest.mark.asyncio
async def test_stream_turn_assembles_text_and_tool_calls() -> None:
    events: list[StreamEvent] = []

    async def _record(event: StreamEvent) -> None:
        events.append(event)

    model = ScriptedChatModel([tool_turn(("list_files", {"directory": "src"}), ("plan_files", {"files": []}))])
    message = await stream_turn(model, MESSAGES, token_ceiling=64_000, on_event=_record)

    assert [call["name"] for call in message.tool_calls] == ["list_files", "plan_files"]
    assert message.tool_calls[0]["args"] == {"directory": "src"}
    assert [event.kind for event in events] == ["tool_call", "tool_call"]

    text = await stream_turn(ScriptedChatModel([final_turn("All done.")]), MESSAGES, token_ceiling=64_000)
    assert text.content == "All done."
    assert text.tool_calls == []


@pytest.mark.asyncio
async def test_stream_turn_flags_incomplete_turns() -> None:
    with pytest.raises(IncompleteTurnError, match="empty response stream"):
        await stream_turn(ScriptedChatModel([[]]), MESSAGES, token_ceiling=64_000)

    missing_args = ScriptedChatModel([tool_turn(("write_files", {}))])
    with pytest.raises(IncompleteTurnError, match="has no arguments"):
        await stream_turn(missing_args, MESSAGES, token_ceiling=64_000, tools_requiring_args={"write_files": True})

    malformed = ScriptedChatModel(
        [[AIMessageChunk(content="", tool_call_chunks=[{"name": "write_files", "args": "{files: [", "id": "c", "index": 0}])]]
    )
    with pytest.raises(IncompleteTurnError, match="malformed arguments"):
        await stream_turn(malformed, MESSAGES, token_ceiling=64_000)

    truncated = ScriptedChatModel(
        [
            [
                AIMessageChunk(
                    content="",
                    tool_call_chunks=[{"name": "list_files", "args": "{}", "id": "c", "index": 0}],
                    response_metadata={"stop_reason": "max_tokens"},
                )
            ]
        ]
    )
    with pytest.raises(IncompleteTurnError, match="truncated"):
        await stream_turn(truncated, MESSAGES, token_ceiling=64_000)


@pytest.mark.asyncio
async def test_stream_turn_token_limits() -> None:
    over_ceiling = ScriptedChatModel(
        [[AIMessageChunk(content="x", usage_metadata={"input_tokens": 70_000, "output_tokens": 5, "total_tokens": 70_005})]]
    )
    with pytest.raises(IncompleteTurnError) as ceiling_error:
        await stream_turn(over_ceiling, MESSAGES, token_ceiling=64_000)
    assert ceiling_error.value.token_limit is True

    overflow = ScriptedChatModel([RuntimeError("prompt is too long: 210000 tokens > 200000 maximum")])
    with pytest.raises(IncompleteTurnError) as overflow_error:
        await stream_turn(overflow, MESSAGES, token_ceiling=64_000)
    assert overflow_error.value.token_limit is True


@pytest.mark.asyncio
async def test_stream_turn_wraps_provider_failures() -> None:
    with pytest.raises(ModelInvocationError, match="overloaded"):
        await stream_turn(ScriptedChatModel([RuntimeError("overloaded")]), MESSAGES, token_ceiling=64_000)
