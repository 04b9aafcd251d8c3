from importlib.metadata import version

from .cache_blocks import CacheBlock, CacheBlockManager
from .canonical import to_canonical_json
from .codebase import CodebaseStore, artifact_fingerprint, normalize_path
from .deploy import ErrorRepetitionGuard, classify_outcome, decide_action, run_deploy_round
from .dispatch import ToolDispatcher, UnknownToolError, build_error_envelope, unwrap_tool_args
from .llm import IncompleteTurnError, ModelInvocationError, get_chat_model, stream_turn
from .loops import GenerationSession, ToolLoop
from .models import (
    DeployAttempt,
    DeployRoundResult,
    ErrorPromptKind,
    GenerationRequest,
    GenerationResult,
    MigrationResult,
    OutcomeCategory,
    RetryAction,
    SessionStatus,
    ToolCall,
    ToolResult,
    TurnOutcome,
)
from .progress import ProgressReporter, heartbeat
from .protocols import InMemoryArtifactStore, InMemoryStopSignalStore, SkippingMigrationRunner
from .settings import RuntimeSettings
from .state_store import LocalDirectoryDeployer, SessionStateStore
from .tools import build_code_tools, external_tools


def get_version() -> str:
    try:
        return version("appgen-orchestrator")
    except Exception:
        return "0.0.0"


__all__ = [
    "CacheBlock",
    "CacheBlockManager",
    "CodebaseStore",
    "DeployAttempt",
    "DeployRoundResult",
    "ErrorPromptKind",
    "ErrorRepetitionGuard",
    "GenerationRequest",
    "GenerationResult",
    "GenerationSession",
    "InMemoryArtifactStore",
    "InMemoryStopSignalStore",
    "IncompleteTurnError",
    "LocalDirectoryDeployer",
    "MigrationResult",
    "ModelInvocationError",
    "OutcomeCategory",
    "ProgressReporter",
    "RetryAction",
    "RuntimeSettings",
    "SessionStateStore",
    "SessionStatus",
    "SkippingMigrationRunner",
    "ToolCall",
    "ToolDispatcher",
    "ToolLoop",
    "ToolResult",
    "TurnOutcome",
    "UnknownToolError",
    "artifact_fingerprint",
    "build_code_tools",
    "build_error_envelope",
    "classify_outcome",
    "decide_action",
    "external_tools",
    "get_chat_model",
    "get_version",
    "heartbeat",
    "normalize_path",
    "run_deploy_round",
    "stream_turn",
    "to_canonical_json",
    "unwrap_tool_args",
]
