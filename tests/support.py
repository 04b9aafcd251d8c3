"""Scripted collaborators shared by the session and dispatch tests."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable, Sequence
from typing import Any

from langchain_core.messages import AIMessage, AIMessageChunk, BaseMessage
from langchain_core.tools import tool

from appgen_orchestrator.models import DeployAttempt, MigrationResult, ToolCall


def tool_turn(*calls: tuple[str, dict[str, Any]]) -> list[AIMessageChunk]:
    """One streamed turn requesting ``calls`` as ``(name, args)`` pairs."""
    return [
        AIMessageChunk(
            content="",
            tool_call_chunks=[
                {"name": name, "args": json.dumps(args), "id": f"call_{index}", "index": index}
                for index, (name, args) in enumerate(calls)
            ],
        )
    ]


def final_turn(text: str = "The app is ready.") -> list[AIMessageChunk]:
    return [AIMessageChunk(content=text[: len(text) // 2]), AIMessageChunk(content=text[len(text) // 2 :])]


class ScriptedChatModel:
    """Chat model double that replays scripted turns and records what it was sent.

    A turn is a list of chunks, or an exception to raise. Once the script runs out
    every further turn is a plain final answer.
    """

    def __init__(self, turns: Sequence[list[AIMessageChunk] | Exception] = (), plan: str = "1. Fix it") -> None:
        self.turns = list(turns)
        self.plan = plan
        self.requests: list[list[BaseMessage]] = []
        self.plan_requests: list[list[BaseMessage]] = []
        self.bound_tool_names: list[str] = []

    def bind_tools(self, tools: Sequence[Any], **kwargs: Any) -> "ScriptedChatModel":
        self.bound_tool_names = [item.name for item in tools]
        return self

    async def astream(self, messages: Sequence[BaseMessage], **kwargs: Any):
        self.requests.append(list(messages))
        turn = self.turns.pop(0) if self.turns else final_turn()
        if isinstance(turn, Exception):
            raise turn
        for chunk in turn:
            yield chunk

    async def ainvoke(self, messages: Sequence[BaseMessage], **kwargs: Any) -> AIMessage:
        self.plan_requests.append(list(messages))
        return AIMessage(content=self.plan)


class ScriptedDeployer:
    """Deployment backend returning scripted attempts; the last one repeats."""

    def __init__(
        self,
        attempts: Sequence[DeployAttempt | Exception],
        on_deploy: Callable[[int], None] | None = None,
    ) -> None:
        self.attempts = list(attempts)
        self.on_deploy = on_deploy
        self.artifacts: list[str] = []

    async def deploy(self, artifact: str, env_settings: dict[str, str], target: str) -> DeployAttempt:
        self.artifacts.append(artifact)
        position = len(self.artifacts) - 1
        outcome = self.attempts[min(position, len(self.attempts) - 1)]
        if self.on_deploy is not None:
            self.on_deploy(position)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class ScriptedMigrationRunner:
    def __init__(self, results: Sequence[MigrationResult]) -> None:
        self.results = list(results)
        self.required_flags: list[bool] = []

    async def migrate(self, artifact: str, env_settings: dict[str, str], required: bool) -> MigrationResult:
        self.required_flags.append(required)
        return self.results[min(len(self.required_flags) - 1, len(self.results) - 1)]


def make_delayed_tool(name: str, delay: float, log: list[str]):
    """Tool that sleeps ``delay`` seconds and records its completion in ``log``."""

    @tool(name)
    async def delayed(label: str) -> str:
        """Echo ``label`` after a delay."""
        await asyncio.sleep(delay)
        log.append(label)
        return f"{name}:{label}"

    return delayed


def call(name: str, args: Any, index: int) -> ToolCall:
    return ToolCall(name=name, args=args, id=f"call_{index}", index=index)
