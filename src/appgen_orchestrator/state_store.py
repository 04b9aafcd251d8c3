from __future__ import annotations

import asyncio
import fcntl
import json
import logging
import os
import re
import tempfile
import uuid
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Iterator

from .codebase import artifact_fingerprint
from .models import DeployAttempt

logger = logging.getLogger(__name__)

_LOCK_SUFFIX = ".lock"
_SAFE_KEY_RE = re.compile(r"[^A-Za-z0-9._-]+")


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Acquire an exclusive file lock for the duration of the context.

    Uses a separate .lock sidecar file so the data file can be atomically
    replaced via ``os.replace`` without disturbing the lock handle.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def _atomic_write_text(path: Path, content: str) -> None:
    """Write ``content`` to ``path`` via temp file and ``os.replace``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def safe_key(key: str) -> str:
    cleaned = _SAFE_KEY_RE.sub("_", key.strip())
    if not cleaned.strip("._"):
        raise ValueError(f"Key is empty after sanitizing: {key!r}")
    return cleaned


class SessionStateStore:
    """Filesystem state for generation sessions.

    Layout under ``root``::

        artifacts/<session>.json      latest artifact per session
        artifacts/<session>.meta.json fingerprint and save time
        stop_signals/<session>.flag   "true" while a stop is requested

    Artifact writes are atomic; stop flags are guarded by ``fcntl`` locks so an
    external process can set them safely.
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self.artifacts_dir = root / "artifacts"
        self.stop_signals_dir = root / "stop_signals"
        for directory in (self.root, self.artifacts_dir, self.stop_signals_dir):
            directory.mkdir(parents=True, exist_ok=True)

    def artifact_path(self, session_id: str) -> Path:
        return self.artifacts_dir / f"{safe_key(session_id)}.json"

    def stop_flag_path(self, key: str) -> Path:
        return self.stop_signals_dir / f"{safe_key(key)}.flag"

    async def save(self, session_id: str, artifact: str) -> None:
        await asyncio.to_thread(self._save_sync, session_id, artifact)

    def _save_sync(self, session_id: str, artifact: str) -> None:
        path = self.artifact_path(session_id)
        _atomic_write_text(path, artifact)
        meta = {"fingerprint": artifact_fingerprint(artifact), "saved_at": datetime.now(UTC).isoformat()}
        _atomic_write_text(path.with_suffix(".meta.json"), json.dumps(meta, indent=2))
        logger.debug("Saved artifact for session %s to %s", session_id, path)

    def read_artifact(self, session_id: str) -> str:
        path = self.artifact_path(session_id)
        if not path.is_file():
            raise FileNotFoundError(f"Artifact not found: {path}")
        return path.read_text(encoding="utf-8")

    def request_stop(self, key: str) -> None:
        path = self.stop_flag_path(key)
        with _locked_file(path):
            _atomic_write_text(path, "true")

    async def get(self, key: str) -> bool:
        return await asyncio.to_thread(self._get_sync, key)

    def _get_sync(self, key: str) -> bool:
        path = self.stop_flag_path(key)
        with _locked_file(path):
            if not path.is_file():
                return False
            return path.read_text(encoding="utf-8").strip().lower() == "true"

    async def clear(self, key: str) -> None:
        await asyncio.to_thread(self._clear_sync, key)

    def _clear_sync(self, key: str) -> None:
        path = self.stop_flag_path(key)
        with _locked_file(path):
            path.unlink(missing_ok=True)


class LocalDirectoryDeployer:
    """Deploys an artifact by materializing its files under ``root/<deployment id>``.

    Returns a ``file://`` URL to the deployment directory. A deployment fails when the
    artifact has no files or a file path escapes the deployment directory.
    """

    def __init__(self, root: Path, *, entrypoint: str = "index.html") -> None:
        self.root = root
        self.entrypoint = entrypoint

    async def deploy(self, artifact: str, env_settings: dict[str, str], target: str) -> DeployAttempt:
        return await asyncio.to_thread(self._deploy_sync, artifact, target)

    def _deploy_sync(self, artifact: str, target: str) -> DeployAttempt:
        deployment_id = f"{safe_key(target)}-{uuid.uuid4().hex[:8]}"
        destination = (self.root / deployment_id).resolve()
        try:
            files = json.loads(artifact).get("files", [])
        except (json.JSONDecodeError, AttributeError) as exc:
            return DeployAttempt(success=False, error_message=f"Artifact is not valid JSON: {exc}")
        if not files:
            return DeployAttempt(success=False, error_message="Build failed: artifact contains no files")

        # Every path is checked before anything is written.
        planned: list[tuple[Path, str]] = []
        for entry in files:
            path = (destination / entry["path"]).resolve()
            if destination not in path.parents:
                return DeployAttempt(
                    success=False,
                    error_message=f"Build failed: file path escapes deployment directory: {entry['path']}",
                )
            planned.append((path, entry["content"]))
        for path, content in planned:
            _atomic_write_text(path, content)

        warning = ""
        if not (destination / self.entrypoint).is_file():
            warning = f"Deployed without an entrypoint: {self.entrypoint} is missing"
        logger.info("Deployed %d file(s) to %s", len(files), destination)
        return DeployAttempt(
            success=True,
            error_message=warning,
            source_url=destination.as_uri(),
            deployment_id=deployment_id,
        )
