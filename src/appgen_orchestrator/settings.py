from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path

_DEFAULT_SCHEMA_FILE_PATHS = "backend/db/schema.ts,src/lib/db/schema.ts"


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    max_cache_blocks: int = 4
    system_cache_blocks: int = 2
    cache_threshold: int = 128
    system_message_cached: bool = True
    max_retries: int = 10
    max_tool_calls: int = 40
    output_token_ceiling: int = 64_000
    max_arg_unwrap_attempts: int = 10
    same_error_limit: int = 2
    max_files_per_write: int = 8
    heartbeat_interval_seconds: int = 10
    model_name: str = "anthropic:claude-sonnet-4-5"
    planning_model_name: str = ""
    model_timeout: int = 300
    model_max_tokens: int = 32_000
    recursion_limit: int = 1_000
    state_root: str = "state_store"
    schema_file_paths: tuple[str, ...] = tuple(_DEFAULT_SCHEMA_FILE_PATHS.split(","))

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            max_cache_blocks=_get_env_int("APPGEN_MAX_CACHE_BLOCKS", default=4, minimum=1, maximum=64),
            system_cache_blocks=_get_env_int("APPGEN_SYSTEM_CACHE_BLOCKS", default=2, minimum=0, maximum=64),
            cache_threshold=_get_env_int("APPGEN_CACHE_THRESHOLD", default=128, minimum=1),
            system_message_cached=_get_env_bool("APPGEN_SYSTEM_MESSAGE_CACHED", default=True),
            max_retries=_get_env_int("APPGEN_MAX_RETRIES", default=10, minimum=1, maximum=100),
            max_tool_calls=_get_env_int("APPGEN_MAX_TOOL_CALLS", default=40, minimum=1, maximum=1_000),
            output_token_ceiling=_get_env_int("APPGEN_OUTPUT_TOKEN_CEILING", default=64_000, minimum=1_024),
            max_arg_unwrap_attempts=_get_env_int("APPGEN_MAX_ARG_UNWRAP_ATTEMPTS", default=10, minimum=1, maximum=100),
            same_error_limit=_get_env_int("APPGEN_SAME_ERROR_LIMIT", default=2, minimum=1, maximum=100),
            max_files_per_write=_get_env_int("APPGEN_MAX_FILES_PER_WRITE", default=8, minimum=1, maximum=100),
            heartbeat_interval_seconds=_get_env_int("APPGEN_HEARTBEAT_INTERVAL", default=10, minimum=1, maximum=3_600),
            model_name=os.getenv("APPGEN_MODEL", "anthropic:claude-sonnet-4-5"),
            planning_model_name=os.getenv("APPGEN_PLANNING_MODEL", ""),
            model_timeout=_get_env_int("APPGEN_MODEL_TIMEOUT", default=300, minimum=1),
            model_max_tokens=_get_env_int("APPGEN_MODEL_MAX_TOKENS", default=32_000, minimum=256),
            recursion_limit=_get_env_int("APPGEN_RECURSION_LIMIT", default=1_000, minimum=25),
            state_root=os.getenv("APPGEN_STATE_ROOT", "state_store"),
            schema_file_paths=tuple(os.getenv("APPGEN_SCHEMA_FILE_PATHS", _DEFAULT_SCHEMA_FILE_PATHS).split(",")),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        model_name = self.model_name.strip()
        if not model_name:
            raise ValueError("APPGEN_MODEL must be non-empty")
        if self.system_cache_blocks > self.max_cache_blocks:
            raise ValueError(
                "APPGEN_SYSTEM_CACHE_BLOCKS must be <= APPGEN_MAX_CACHE_BLOCKS, "
                f"got: {self.system_cache_blocks} > {self.max_cache_blocks}"
            )
        if not self.state_root.strip():
            raise ValueError("APPGEN_STATE_ROOT must be non-empty")

        schema_paths = tuple(path.strip().lstrip("/") for path in self.schema_file_paths if path.strip())
        return replace(
            self,
            model_name=model_name,
            planning_model_name=self.planning_model_name.strip(),
            schema_file_paths=schema_paths,
        )

    def state_root_path(self, repo_root: Path | None = None) -> Path:
        path = Path(self.state_root)
        if path.is_absolute():
            return path
        return (repo_root if repo_root is not None else Path.cwd()) / path


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound (default 10M, prevents absurd values).

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    lowered = raw.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"{name} must be a boolean (true/false), got: {raw!r}")
