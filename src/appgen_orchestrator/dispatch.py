from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable, Iterable, Sequence
from typing import Any, TypeVar

from langchain_core.tools import BaseTool
from pydantic import ValidationError

from .codebase import normalize_path
from .models import PlanFilesArgs, SearchReplaceArgs, ToolCall, ToolResult, WriteFilesArgs
from .progress import ProgressReporter
from .tools import EXTERNAL_TOOL_NAMES

logger = logging.getLogger(__name__)

ItemT = TypeVar("ItemT")
ResultT = TypeVar("ResultT")

SCHEMA_WRITING_TOOLS = frozenset({"write_files", "search_replace"})

_RECONSTRUCT_SUGGESTION = (
    "Reconstruct the arguments as structured JSON matching the tool schema. Pass lists and objects "
    "directly and do not JSON-encode (stringify) them again."
)
_SCHEMA_MISMATCH_MARKERS = ("did not match expected schema", "validation error", "stringification detected")


class UnknownToolError(LookupError):
    pass


async def gather_in_order(
    items: Sequence[ItemT],
    runner: Callable[[ItemT], Awaitable[ResultT]],
    *,
    key: Callable[[ItemT], int],
) -> list[ResultT]:
    """Run ``runner`` over ``items`` concurrently and return results sorted by ``key``.

    Completion order never leaks into the result: each result is tagged with its
    item's origin key and the list is stably sorted on that key.
    """
    results = await asyncio.gather(*(runner(item) for item in items))
    tagged = sorted(zip((key(item) for item in items), results), key=lambda pair: pair[0])
    return [result for _, result in tagged]


def unwrap_tool_args(raw: Any, max_attempts: int = 10) -> Any:
    """Decode arguments that arrive as (possibly repeatedly) JSON-encoded strings.

    Parsing stops as soon as a non-string value is produced. Payloads that do not
    converge within ``max_attempts`` are returned as-is and logged.
    """
    value = raw
    attempts = 0
    while isinstance(value, str) and attempts < max_attempts:
        attempts += 1
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            logger.warning("Tool arguments are not valid JSON after %d parse attempt(s)", attempts)
            return value
    if isinstance(value, str):
        logger.warning("Tool arguments still encoded after %d parse attempts", max_attempts)
        return value
    if isinstance(value, dict):
        return {name: _unwrap_container(item, max_attempts) for name, item in value.items()}
    return value


def _unwrap_container(value: Any, max_attempts: int) -> Any:
    # Only structural payloads are decoded; plain string arguments stay untouched.
    if isinstance(value, str) and value.lstrip()[:1] in {"[", "{"}:
        decoded = unwrap_tool_args(value, max_attempts)
        return decoded if not isinstance(decoded, str) else value
    return value


def suggest_fix(tool_name: str, message: str) -> str:
    """Derive a self-correction hint for the model from a tool error message."""
    lowered = message.lower()
    if "identical" in lowered:
        return "Please provide different content for the change"
    if any(marker in lowered for marker in _SCHEMA_MISMATCH_MARKERS):
        return f"{_RECONSTRUCT_SUGGESTION} Retry {tool_name} with corrected arguments."
    if "not found" in lowered:
        return "Please verify the file path or create the file first"
    return message


def build_error_envelope(tool_name: str, args: Any, error: str) -> str:
    return json.dumps(
        {"tool": tool_name, "args": args, "error": error, "suggestion": suggest_fix(tool_name, error)},
        indent=2,
        default=str,
        ensure_ascii=False,
    )


def _call_index(call: ToolCall) -> int:
    return call.index


def _written_paths(tool_name: str, args: dict[str, Any]) -> list[str]:
    try:
        if tool_name == "write_files":
            return [entry.file_path for entry in WriteFilesArgs.model_validate(args).files]
        if tool_name == "search_replace":
            return [entry.file_path for entry in SearchReplaceArgs.model_validate(args).replacements]
    except ValidationError:
        return []
    return []


class ToolDispatcher:
    """Executes model tool calls against a name-indexed tool set.

    Handler failures never escape: they become error envelopes the model can act on.
    Writes touching a configured database schema file flip ``schema_changed``, which the
    deploy round consumes to decide whether a migration is mandatory.
    """

    def __init__(
        self,
        tools: Iterable[BaseTool],
        *,
        schema_file_paths: Iterable[str] = (),
        max_unwrap_attempts: int = 10,
        reporter: ProgressReporter | None = None,
        external_tool_names: frozenset[str] = EXTERNAL_TOOL_NAMES,
    ) -> None:
        self.tools: dict[str, BaseTool] = {}
        for item in tools:
            if item.name in self.tools:
                raise ValueError(f"Duplicate tool name: {item.name}")
            self.tools[item.name] = item
        self.schema_file_paths = frozenset(normalize_path(path) for path in schema_file_paths)
        self.max_unwrap_attempts = max_unwrap_attempts
        self.reporter = reporter or ProgressReporter()
        self.external_tool_names = external_tool_names
        self.schema_changed = False

    @property
    def tool_list(self) -> list[BaseTool]:
        return list(self.tools.values())

    def is_external(self, name: str) -> bool:
        return name in self.external_tool_names

    async def execute(self, call: ToolCall) -> ToolResult:
        """Run one tool call and normalize its outcome into a ``ToolResult``."""
        args = unwrap_tool_args(call.args, self.max_unwrap_attempts)
        try:
            handler = self.tools.get(call.name)
            if handler is None:
                raise UnknownToolError(f"Unknown tool: {call.name}")
            if not isinstance(args, dict):
                raise ValueError(
                    f"Tool arguments did not match expected schema: expected a JSON object, got {type(args).__name__}"
                )
            output = await handler.ainvoke(args)
        except Exception as exc:  # noqa: BLE001
            message = str(exc) or type(exc).__name__
            logger.warning("Tool %s failed (call %s): %s", call.name, call.id, message)
            return ToolResult(
                tool_call_id=call.id,
                name=call.name,
                content=build_error_envelope(call.name, args, message),
                success=False,
                index=call.index,
            )

        content = output if isinstance(output, str) else json.dumps(output, default=str)
        await self._after_success(call.name, args)
        return ToolResult(tool_call_id=call.id, name=call.name, content=content, success=True, index=call.index)

    async def _after_success(self, name: str, args: dict[str, Any]) -> None:
        if name in SCHEMA_WRITING_TOOLS and self.schema_file_paths:
            touched = {normalize_path(path) for path in _written_paths(name, args)}
            if touched & self.schema_file_paths:
                logger.info("Database schema file modified by %s; migration required", name)
                self.schema_changed = True
        if name == "plan_files":
            for entry in PlanFilesArgs.model_validate(args).files:
                await self.reporter.file_plan(normalize_path(entry.file_path), entry.purpose)

    async def dispatch_batch(self, calls: Sequence[ToolCall]) -> list[ToolResult]:
        """Execute a turn's tool calls and return results in original call order.

        External read-only tools and code tools form two partitions run concurrently;
        members of each partition also run concurrently.
        """
        external = [call for call in calls if self.is_external(call.name)]
        code = [call for call in calls if not self.is_external(call.name)]
        logger.debug("Dispatching %d external and %d code tool call(s)", len(external), len(code))
        external_results, code_results = await asyncio.gather(
            gather_in_order(external, self.execute, key=_call_index),
            gather_in_order(code, self.execute, key=_call_index),
        )
        return sorted([*external_results, *code_results], key=lambda result: result.index)
