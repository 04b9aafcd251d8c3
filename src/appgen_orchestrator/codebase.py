from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from collections import defaultdict
from pathlib import Path
from typing import Any, Iterable

from .canonical import to_canonical_json

logger = logging.getLogger(__name__)

_SKIPPED_DIRECTORIES = frozenset({".git", "node_modules", "__pycache__", ".next", "dist", "build"})


def normalize_path(path: str) -> str:
    """Normalize a model-supplied file path to a store key."""
    cleaned = path.strip().replace("\\", "/")
    while cleaned.startswith("./"):
        cleaned = cleaned[2:]
    return cleaned.lstrip("/")


def artifact_fingerprint(artifact: str) -> str:
    """Return the sha256 of a canonical artifact's UTF-8 bytes."""
    return hashlib.sha256(artifact.encode("utf-8")).hexdigest()


class CodebaseStore:
    """In-memory codebase shared by the code tools of one generation session.

    Mutations are serialized per file path with an ``asyncio.Lock`` so code tools
    dispatched concurrently in the same batch cannot interleave writes to one file.
    Reads return snapshots and never block.
    """

    def __init__(self, files: dict[str, str] | None = None) -> None:
        self._files: dict[str, str] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        for path, content in (files or {}).items():
            self._files[normalize_path(path)] = content

    @classmethod
    def from_artifact(cls, artifact: str) -> "CodebaseStore":
        store = cls()
        store._apply_entries(_parse_file_entries(artifact))
        return store

    @classmethod
    def from_directory(cls, root: Path) -> "CodebaseStore":
        """Seed a store from a directory tree, skipping VCS and build output."""
        if not root.is_dir():
            raise FileNotFoundError(f"Codebase directory does not exist: {root}")
        files: dict[str, str] = {}
        for path in sorted(root.rglob("*")):
            relative = path.relative_to(root)
            if not path.is_file() or any(part in _SKIPPED_DIRECTORIES for part in relative.parts):
                continue
            try:
                files[relative.as_posix()] = path.read_text(encoding="utf-8")
            except UnicodeDecodeError:
                logger.debug("Skipping binary file %s", relative)
        return cls(files)

    def __contains__(self, path: str) -> bool:
        return normalize_path(path) in self._files

    def __len__(self) -> int:
        return len(self._files)

    def get_available_files(self) -> list[str]:
        return sorted(self._files)

    def get_codebase_map(self) -> dict[str, str]:
        return dict(self._files)

    def get_file(self, path: str) -> str | None:
        return self._files.get(normalize_path(path))

    async def write_file(self, path: str, content: str) -> bool:
        """Create or overwrite a file. Returns True when the file already existed."""
        key = normalize_path(path)
        if not key:
            raise ValueError("File path must be non-empty")
        async with self._locks[key]:
            existed = key in self._files
            self._files[key] = content
        return existed

    async def delete_file(self, path: str) -> bool:
        key = normalize_path(path)
        async with self._locks[key]:
            return self._files.pop(key, None) is not None

    async def replace_in_file(self, path: str, old: str, new: str, *, replace_all: bool = False) -> int:
        """Replace text inside one file and return the number of replacements made.

        Raises:
            ValueError: If ``old`` and ``new`` are identical or ``old`` is empty.
            FileNotFoundError: If the file is not in the codebase.
            LookupError: If ``old`` does not occur in the file.
        """
        if old == new:
            raise ValueError("oldString and newString are identical")
        if not old:
            raise ValueError("oldString must be non-empty")
        key = normalize_path(path)
        async with self._locks[key]:
            current = self._files.get(key)
            if current is None:
                raise FileNotFoundError(f"File not found: {key}")
            occurrences = current.count(old)
            if occurrences == 0:
                raise LookupError(f"oldString not found in {key}")
            if replace_all:
                self._files[key] = current.replace(old, new)
                return occurrences
            self._files[key] = current.replace(old, new, 1)
            return 1

    async def update_codebase(self, serialized: str) -> list[str]:
        """Apply a serialized ``{"files": [{"path", "content"}]}`` payload."""
        entries = _parse_file_entries(serialized)
        for path, content in entries:
            await self.write_file(path, content)
        return [normalize_path(path) for path, _ in entries]

    def to_artifact(self) -> str:
        """Serialize the codebase into the deployment artifact."""
        files = [{"path": path, "content": self._files[path]} for path in sorted(self._files)]
        return to_canonical_json({"files": files})

    def _apply_entries(self, entries: Iterable[tuple[str, str]]) -> None:
        for path, content in entries:
            self._files[normalize_path(path)] = content


def _parse_file_entries(serialized: str) -> list[tuple[str, str]]:
    try:
        payload: Any = json.loads(serialized)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Codebase payload is not valid JSON: {exc.msg}") from exc
    files = payload.get("files") if isinstance(payload, dict) else None
    if not isinstance(files, list):
        raise ValueError("Codebase payload must be an object with a 'files' list")
    entries: list[tuple[str, str]] = []
    for item in files:
        if not isinstance(item, dict):
            raise ValueError("Each codebase entry must be an object")
        path = item.get("path") or item.get("filePath")
        content = item.get("content", item.get("fileContent", ""))
        if not isinstance(path, str) or not path.strip():
            raise ValueError("Each codebase entry needs a non-empty path")
        if not isinstance(content, str):
            raise ValueError(f"Content for {path} must be a string")
        entries.append((path, content))
    return entries
