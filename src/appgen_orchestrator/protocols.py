from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from typing import Any, Protocol

from langchain_core.messages import BaseMessage, BaseMessageChunk

from .models import DeployAttempt, MigrationResult


class SupportsToolStreaming(Protocol):
    """Chat model bound to a tool schema that streams message chunks."""

    def astream(self, input: Sequence[BaseMessage], **kwargs: Any) -> AsyncIterator[BaseMessageChunk]:  # noqa: A002
        ...


class ModelProvider(Protocol):
    """Chat model that can be bound to tools and invoked without them."""

    def bind_tools(self, tools: Sequence[Any], **kwargs: Any) -> SupportsToolStreaming:
        ...

    async def ainvoke(self, input: Any, **kwargs: Any) -> BaseMessage:  # noqa: A002
        ...


class DeploymentBackend(Protocol):
    async def deploy(self, artifact: str, env_settings: dict[str, str], target: str) -> DeployAttempt:
        ...


class MigrationRunner(Protocol):
    async def migrate(self, artifact: str, env_settings: dict[str, str], required: bool) -> MigrationResult:
        ...


class ArtifactStore(Protocol):
    async def save(self, session_id: str, artifact: str) -> None:
        ...


class StopSignalStore(Protocol):
    async def get(self, key: str) -> bool:
        ...

    async def clear(self, key: str) -> None:
        ...


class ProgressSink(Protocol):
    """Receives structured progress events; may be sync or async."""

    def __call__(self, event: dict[str, Any]) -> Any:
        ...


class InMemoryStopSignalStore:
    """Process-local stop flags keyed by session id."""

    def __init__(self) -> None:
        self._flags: dict[str, bool] = {}

    def request_stop(self, key: str) -> None:
        self._flags[key] = True

    async def get(self, key: str) -> bool:
        return self._flags.get(key, False)

    async def clear(self, key: str) -> None:
        self._flags.pop(key, None)


class SkippingMigrationRunner:
    """Migration runner for targets without a database; reports success without work."""

    async def migrate(self, artifact: str, env_settings: dict[str, str], required: bool) -> MigrationResult:
        return MigrationResult(success=True, skipped=True)


class InMemoryArtifactStore:
    """Keeps the latest artifact per session in memory."""

    def __init__(self) -> None:
        self.artifacts: dict[str, str] = {}

    async def save(self, session_id: str, artifact: str) -> None:
        self.artifacts[session_id] = artifact
