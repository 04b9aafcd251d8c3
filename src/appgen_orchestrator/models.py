from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from langchain_core.messages import ToolMessage
from pydantic import BaseModel, ConfigDict, Field, field_validator


class OutcomeCategory(str, Enum):
    CLEAN_SUCCESS = "clean_success"
    READY_WITH_WARNINGS = "ready_with_warnings"
    HARD_FAILURE = "hard_failure"
    MIGRATION_FAILURE = "migration_failure"


class RetryAction(str, Enum):
    ACCEPT = "accept"
    ACCEPT_WITH_WARNINGS = "accept_with_warnings"
    RETRY = "retry"
    FAIL = "fail"
    ABORT_REPEATED = "abort_repeated"


class TurnOutcome(str, Enum):
    READY_TO_DEPLOY = "ready_to_deploy"
    STOPPED = "stopped"
    TOOL_BUDGET_EXHAUSTED = "tool_budget_exhausted"
    MODEL_ERROR = "model_error"


class SessionStatus(str, Enum):
    COMPLETED = "completed"
    COMPLETED_WITH_WARNINGS = "completed_with_warnings"
    RETRIES_EXHAUSTED = "retries_exhausted"
    REPEATED_ERROR = "repeated_error"
    TOOL_BUDGET_EXHAUSTED = "tool_budget_exhausted"
    ABORTED = "aborted"
    STOPPED = "stopped"


class ErrorPromptKind(str, Enum):
    MIGRATION = "migration"
    BUILD = "build"
    GENERIC = "generic"


@dataclass(frozen=True)
class ToolCall:
    """A model-issued tool invocation; ``index`` is its position in the turn."""

    name: str
    args: Any
    id: str
    index: int

    @classmethod
    def from_message_calls(cls, tool_calls: list[dict[str, Any]]) -> list["ToolCall"]:
        return [
            cls(
                name=str(call.get("name") or ""),
                args=call.get("args"),
                id=str(call.get("id") or f"call_{index}"),
                index=index,
            )
            for index, call in enumerate(tool_calls)
        ]


@dataclass(frozen=True)
class ToolResult:
    tool_call_id: str
    name: str
    content: str
    success: bool
    index: int = 0

    def to_message(self) -> ToolMessage:
        return ToolMessage(
            content=[{"type": "text", "text": self.content}],
            tool_call_id=self.tool_call_id,
            name=self.name,
            status="success" if self.success else "error",
        )


@dataclass(frozen=True)
class DeployAttempt:
    retry_count: int = 0
    success: bool = False
    error_message: str = ""
    source_url: str = ""
    deployment_id: str = ""


@dataclass(frozen=True)
class MigrationResult:
    success: bool
    migration_id: str | None = None
    error: str | None = None
    failed_file: str | None = None
    skipped: bool = False


@dataclass(frozen=True)
class DeployRoundResult:
    """Combined outcome of one persist + migrate + deploy round."""

    attempt: DeployAttempt
    migration: MigrationResult
    artifact: str
    cancelled: bool = False


@dataclass(frozen=True)
class GenerationRequest:
    session_id: str
    system_prompt: str
    user_prompt: str
    env_settings: dict[str, str] = field(default_factory=dict)
    deploy_target: str = "preview"
    initial_deploy_error: str = ""
    previous_source_url: str = ""
    starter_generation: bool = True
    integration_requires_migration: bool = False


@dataclass
class GenerationResult:
    status: SessionStatus
    source_url: str = ""
    deployment_id: str = ""
    artifact: str | None = None
    retry_count: int = 0
    error_message: str = ""
    status_message: str = ""
    used_fallback: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "source_url": self.source_url,
            "deployment_id": self.deployment_id,
            "retry_count": self.retry_count,
            "error_message": self.error_message,
            "status_message": self.status_message,
            "used_fallback": self.used_fallback,
        }


# ---------------------------------------------------------------------------
# Tool argument models
# ---------------------------------------------------------------------------


def _decode_stringified_list(value: Any) -> Any:
    """Accept a JSON-encoded list where a list is expected."""
    if isinstance(value, str):
        try:
            decoded = json.loads(value)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Expected a list but received an unparseable string: {exc.msg}") from exc
        return decoded
    return value


class FileWrite(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    file_path: str = Field(alias="filePath", min_length=1)
    file_content: str = Field(alias="fileContent")


class FilePlan(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    file_path: str = Field(alias="filePath", min_length=1)
    purpose: str = ""


class Replacement(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    file_path: str = Field(alias="filePath", min_length=1)
    old_string: str = Field(alias="oldString")
    new_string: str = Field(alias="newString")
    replace_all: bool = Field(default=False, alias="replaceAll")


class WriteFilesArgs(BaseModel):
    """Files to create or overwrite, each with its full content."""

    files: list[FileWrite]

    @field_validator("files", mode="before")
    @classmethod
    def _reject_stringified_files(cls, value: Any) -> Any:
        value = _decode_stringified_list(value)
        if isinstance(value, list) and any(isinstance(item, str) for item in value):
            raise ValueError(
                "Stringification detected: each entry in files must be an object with filePath and "
                "fileContent, not a JSON string"
            )
        return value


class PlanFilesArgs(BaseModel):
    """Files the assistant intends to create or modify, with their purpose."""

    files: list[FilePlan]

    @field_validator("files", mode="before")
    @classmethod
    def _decode_files(cls, value: Any) -> Any:
        return _decode_stringified_list(value)


class SearchReplaceArgs(BaseModel):
    """Targeted text replacements inside existing files."""

    replacements: list[Replacement]

    @field_validator("replacements", mode="before")
    @classmethod
    def _decode_replacements(cls, value: Any) -> Any:
        return _decode_stringified_list(value)


class FilePathsArgs(BaseModel):
    file_paths: list[str] = Field(alias="filePaths")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("file_paths", mode="before")
    @classmethod
    def _decode_paths(cls, value: Any) -> Any:
        return _decode_stringified_list(value)


class FindFilesArgs(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    keyword: str = Field(min_length=1)
    case_sensitive: bool = Field(default=False, alias="caseSensitive")
    directory: str = ""


class ListFilesArgs(BaseModel):
    directory: str = ""
