from __future__ import annotations

import asyncio
import json
import logging
import os
import urllib.error
import urllib.parse
import urllib.request
from collections import deque
from typing import Any

from langchain_core.tools import BaseTool, tool

from .codebase import CodebaseStore, normalize_path
from .models import (
    FilePathsArgs,
    FilePlan,
    FileWrite,
    FindFilesArgs,
    ListFilesArgs,
    PlanFilesArgs,
    Replacement,
    SearchReplaceArgs,
    WriteFilesArgs,
)

logger = logging.getLogger(__name__)

EXTERNAL_TOOL_NAMES: frozenset[str] = frozenset({"web_search", "external_file_fetch", "unsplash_search"})

_HTTP_TIMEOUT_SECONDS = 30
_BRIGHTDATA_ENDPOINT = "https://api.brightdata.com/request"
_UNSPLASH_ENDPOINT = "https://api.unsplash.com/search/photos"
_SERP_MAX_RESULTS = 5
_FETCH_MAX_CHARS = 20_000
_RESULT_KEYS = ("organic", "organic_results", "results")
_RESULT_FIELD_SIGNALS = ("url", "link", "title", "description", "snippet")
_FETCH_FILE_TYPES = frozenset({"text", "json", "csv", "markdown", "html"})
_UNSPLASH_ORIENTATIONS = frozenset({"landscape", "portrait", "squarish"})
_UNSPLASH_ORDERINGS = frozenset({"relevant", "latest"})


# ---------------------------------------------------------------------------
# HTTP helpers
# ---------------------------------------------------------------------------


def _open(request: urllib.request.Request) -> bytes:
    url = request.full_url
    try:
        with urllib.request.urlopen(request, timeout=_HTTP_TIMEOUT_SECONDS) as response:
            return response.read()
    except urllib.error.HTTPError as exc:
        logger.error("HTTP %d from %s", exc.code, url)
        raise RuntimeError(f"HTTP {exc.code} from {url}: {exc.reason}") from exc
    except urllib.error.URLError as exc:
        logger.error("URL error reaching %s: %s", url, exc.reason)
        raise RuntimeError(f"Failed to reach {url}: {exc.reason}") from exc


def _decode_json(raw: bytes, url: str) -> Any:
    try:
        return json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        logger.error("Invalid JSON response from %s", url)
        raise RuntimeError(f"Invalid JSON response from {url}") from exc


def _http_post_json(url: str, payload: dict[str, Any], headers: dict[str, str]) -> Any:
    """Send a JSON POST request and return the parsed JSON response.

    Raises:
        RuntimeError: If the HTTP request fails or the response is not valid JSON.
    """
    request = urllib.request.Request(
        url,
        method="POST",
        headers={"Content-Type": "application/json", **headers},
        data=json.dumps(payload).encode("utf-8"),
    )
    return _decode_json(_open(request), url)


def _http_get_json(url: str, params: dict[str, Any], headers: dict[str, str]) -> Any:
    query = urllib.parse.urlencode(params)
    full_url = f"{url}?{query}" if query else url
    request = urllib.request.Request(full_url, method="GET", headers={"Accept": "application/json", **headers})
    return _decode_json(_open(request), full_url)


def _http_get_text(url: str) -> str:
    request = urllib.request.Request(url, method="GET", headers={"User-Agent": "appgen-orchestrator"})
    return _open(request).decode("utf-8", errors="replace")


# ---------------------------------------------------------------------------
# Code tools
# ---------------------------------------------------------------------------


def _in_directory(path: str, directory: str) -> bool:
    prefix = normalize_path(directory).rstrip("/")
    return not prefix or path == prefix or path.startswith(prefix + "/")


def build_code_tools(store: CodebaseStore, *, max_files_per_write: int = 8) -> list[BaseTool]:
    """Create the code-mutation and code-inspection tools bound to one codebase store.

    Args:
        store: Codebase shared by every tool call in the session.
        max_files_per_write: Upper bound on files accepted by one ``write_files`` call.

    Returns:
        Tools in a stable order suitable for ``bind_tools``.
    """

    @tool("get_files_content", args_schema=FilePathsArgs)
    async def get_files_content(file_paths: list[str]) -> str:
        """Read the full content of one or more files from the codebase."""
        entries: list[dict[str, Any]] = []
        for path in file_paths:
            content = store.get_file(path)
            entries.append(
                {
                    "path": normalize_path(path),
                    "content": content,
                    "error": None if content is not None else "File not found",
                }
            )
        return json.dumps(entries, indent=2)

    @tool("list_files", args_schema=ListFilesArgs)
    async def list_files(directory: str = "") -> str:
        """List files in the codebase, optionally restricted to a directory prefix."""
        files = [path for path in store.get_available_files() if _in_directory(path, directory)]
        return json.dumps({"files": files})

    @tool("find_files_with_text", args_schema=FindFilesArgs)
    async def find_files_with_text(keyword: str, case_sensitive: bool = False, directory: str = "") -> str:
        """Find files whose content contains a keyword."""
        needle = keyword if case_sensitive else keyword.lower()
        matches: list[str] = []
        for path, content in sorted(store.get_codebase_map().items()):
            if not _in_directory(path, directory):
                continue
            haystack = content if case_sensitive else content.lower()
            if needle in haystack:
                matches.append(path)
        return json.dumps(
            {"keyword": keyword, "caseSensitive": case_sensitive, "matchingFiles": matches, "count": len(matches)}
        )

    @tool("write_files", args_schema=WriteFilesArgs)
    async def write_files(files: list[FileWrite]) -> str:
        """Create new files or overwrite existing files with complete content.

        Use only for new files or full rewrites; fix existing files with search_replace.
        """
        if not files:
            raise ValueError("write_files requires at least one file")
        if len(files) > max_files_per_write:
            raise ValueError(
                f"write_files accepts at most {max_files_per_write} files per call, got {len(files)}; "
                "split the remaining files into another call"
            )
        lines: list[str] = []
        for entry in files:
            existed = await store.write_file(entry.file_path, entry.file_content)
            verb = "updated" if existed else "created"
            lines.append(f"Successfully {verb} file: {normalize_path(entry.file_path)}")
        return "\n".join(lines)

    @tool("plan_files", args_schema=PlanFilesArgs)
    async def plan_files(files: list[FilePlan]) -> str:
        """Announce the files you are about to create or modify and what each is for."""
        if not files:
            return "No files planned."
        lines = ["### Files to be created or modified:"]
        lines.extend(f"- `{normalize_path(entry.file_path)}`: {entry.purpose}" for entry in files)
        return "\n".join(lines)

    @tool("delete_files", args_schema=FilePathsArgs)
    async def delete_files(file_paths: list[str]) -> str:
        """Delete files from the codebase. Missing files are ignored."""
        lines: list[str] = []
        for path in file_paths:
            if await store.delete_file(path):
                lines.append(f"Successfully deleted file: {normalize_path(path)}")
            else:
                lines.append(f"File not found (ignored): {normalize_path(path)}")
        return "\n".join(lines)

    @tool("search_replace", args_schema=SearchReplaceArgs)
    async def search_replace(replacements: list[Replacement]) -> str:
        """Replace exact text in existing files; the preferred tool for targeted fixes.

        Replacements for the same file apply in order; different files are edited concurrently.
        """
        if not replacements:
            raise ValueError("search_replace requires at least one replacement")
        by_file: dict[str, list[Replacement]] = {}
        for replacement in replacements:
            by_file.setdefault(normalize_path(replacement.file_path), []).append(replacement)

        async def _apply(path: str, items: list[Replacement]) -> list[tuple[bool, str]]:
            outcomes: list[tuple[bool, str]] = []
            for item in items:
                try:
                    count = await store.replace_in_file(
                        path, item.old_string, item.new_string, replace_all=item.replace_all
                    )
                except FileNotFoundError:
                    outcomes.append((False, f"❌ Error: File '{path}' not found in codebase."))
                except LookupError:
                    outcomes.append(
                        (
                            False,
                            f"❌ Error: The string to replace was not found in '{path}'. "
                            "Please check the exact content including whitespace and indentation.",
                        )
                    )
                except ValueError as exc:
                    outcomes.append((False, f"❌ Error updating '{path}': {exc}"))
                else:
                    outcomes.append((True, f"✅ Successfully replaced {count} occurrence(s) in '{path}'."))
            return outcomes

        grouped = await asyncio.gather(*(_apply(path, items) for path, items in by_file.items()))
        outcomes = [outcome for group in grouped for outcome in group]
        report = "\n".join(message for _, message in outcomes)
        if not any(succeeded for succeeded, _ in outcomes):
            raise ValueError(report)
        return report

    return [get_files_content, list_files, find_files_with_text, write_files, plan_files, delete_files, search_replace]


# ---------------------------------------------------------------------------
# External read-only tools
# ---------------------------------------------------------------------------


def _first_string(entry: dict[str, Any], keys: tuple[str, ...]) -> str:
    for key in keys:
        value = entry.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def _find_result_candidates(payload: Any) -> list[dict[str, Any]]:
    """BFS through a nested SERP payload to find the list of result dicts."""
    queue: deque[Any] = deque([payload])
    while queue:
        node = queue.popleft()
        if isinstance(node, dict):
            for key in _RESULT_KEYS:
                value = node.get(key)
                if isinstance(value, list):
                    return [item for item in value if isinstance(item, dict)]
            queue.extend(value for value in node.values() if isinstance(value, (dict, list)))
            continue
        if isinstance(node, list):
            dict_items = [item for item in node if isinstance(item, dict)]
            if any(any(field in item for field in _RESULT_FIELD_SIGNALS) for item in dict_items[:5]):
                return dict_items
            queue.extend(item for item in node if isinstance(item, (dict, list)))
    return []


def _compact_search_results(payload: Any, *, max_results: int) -> list[dict[str, str]]:
    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise RuntimeError("Search response was not valid JSON") from exc
    compact: list[dict[str, str]] = []
    for entry in _find_result_candidates(payload):
        url = _first_string(entry, ("url", "link", "displayed_link"))
        title = _first_string(entry, ("title", "name", "headline"))
        snippet = _first_string(entry, ("snippet", "description", "text", "body"))
        if not any((url, title, snippet)):
            continue
        compact.append({"url": url, "title": title, "snippet": snippet})
        if len(compact) >= max_results:
            break
    return compact


@tool("web_search")
def web_search(query: str) -> str:
    """Search the web for documentation, API references or design inspiration.

    Sends the query through the Bright Data SERP API and returns up to 5 results as JSON
    with ``url``, ``title`` and ``snippet``.

    Required environment variables:
        BRIGHTDATA_API_KEY: Bearer token for Bright Data API authentication.
        BRIGHTDATA_SERP_ZONE: Zone name configured in the Bright Data dashboard.

    Args:
        query: The search query string.

    Returns:
        JSON string containing ``provider``, ``query`` and ``results``.

    Raises:
        RuntimeError: If required environment variables are missing or the request fails.
    """
    api_key = os.getenv("BRIGHTDATA_API_KEY", "").strip()
    if not api_key:
        raise RuntimeError("web_search requires BRIGHTDATA_API_KEY")
    zone = os.getenv("BRIGHTDATA_SERP_ZONE", "").strip()
    if not zone:
        raise RuntimeError("web_search requires BRIGHTDATA_SERP_ZONE")
    country = os.getenv("BRIGHTDATA_SERP_COUNTRY", "us").strip() or "us"
    payload = {
        "zone": zone,
        "url": f"https://www.google.com/search?{urllib.parse.urlencode({'q': query})}",
        "format": "json",
        "country": country,
        "method": "GET",
    }
    logger.debug("web_search query=%r zone=%s", query, zone)
    data = _http_post_json(_BRIGHTDATA_ENDPOINT, payload, headers={"Authorization": f"Bearer {api_key}"})
    results = _compact_search_results(data, max_results=_SERP_MAX_RESULTS)
    return json.dumps({"provider": "brightdata", "query": query, "results": results}, indent=2)


@tool("unsplash_search")
def unsplash_search(query: str, orientation: str = "landscape", per_page: int = 5, order_by: str = "relevant") -> str:
    """Search Unsplash for royalty-free photos to use as app imagery.

    Args:
        query: What the image should show.
        orientation: One of ``landscape``, ``portrait`` or ``squarish``.
        per_page: Number of photos to return (1-10).
        order_by: ``relevant`` or ``latest``.

    Returns:
        JSON string with ``query`` and ``images`` (url, description, author, link).

    Raises:
        RuntimeError: If UNSPLASH_ACCESS_KEY is missing or the request fails.
        ValueError: If an argument is outside the accepted values.
    """
    access_key = os.getenv("UNSPLASH_ACCESS_KEY", "").strip()
    if not access_key:
        raise RuntimeError("unsplash_search requires UNSPLASH_ACCESS_KEY")
    if orientation not in _UNSPLASH_ORIENTATIONS:
        raise ValueError(f"orientation must be one of {sorted(_UNSPLASH_ORIENTATIONS)}, got: {orientation!r}")
    if order_by not in _UNSPLASH_ORDERINGS:
        raise ValueError(f"order_by must be one of {sorted(_UNSPLASH_ORDERINGS)}, got: {order_by!r}")
    per_page = max(1, min(per_page, 10))
    data = _http_get_json(
        _UNSPLASH_ENDPOINT,
        {"query": query, "orientation": orientation, "per_page": per_page, "order_by": order_by},
        headers={"Authorization": f"Client-ID {access_key}", "Accept-Version": "v1"},
    )
    images: list[dict[str, str]] = []
    for photo in data.get("results", []) if isinstance(data, dict) else []:
        urls = photo.get("urls") or {}
        images.append(
            {
                "url": urls.get("regular") or urls.get("full") or "",
                "description": photo.get("alt_description") or photo.get("description") or "",
                "author": (photo.get("user") or {}).get("name", ""),
                "link": (photo.get("links") or {}).get("html", ""),
            }
        )
    return json.dumps({"query": query, "images": images}, indent=2)


@tool("external_file_fetch")
def external_file_fetch(url: str, fileType: str = "text") -> str:  # noqa: N803
    """Fetch a publicly reachable text file (docs, JSON data, CSV) referenced by the user.

    Args:
        url: Absolute http(s) URL of the file.
        fileType: One of ``text``, ``json``, ``csv``, ``markdown`` or ``html``.

    Returns:
        JSON string with ``url``, ``fileType``, ``content`` and ``truncated``.

    Raises:
        ValueError: If the URL or file type is not supported, or JSON content is malformed.
        RuntimeError: If the request fails.
    """
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(f"external_file_fetch requires an absolute http(s) URL, got: {url!r}")
    if fileType not in _FETCH_FILE_TYPES:
        raise ValueError(f"fileType must be one of {sorted(_FETCH_FILE_TYPES)}, got: {fileType!r}")
    content = _http_get_text(url)
    if fileType == "json":
        try:
            content = json.dumps(json.loads(content), indent=2)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Content at {url} is not valid JSON: {exc.msg}") from exc
    truncated = len(content) > _FETCH_MAX_CHARS
    return json.dumps(
        {"url": url, "fileType": fileType, "content": content[:_FETCH_MAX_CHARS], "truncated": truncated},
        indent=2,
    )


def external_tools() -> list[BaseTool]:
    return [web_search, external_file_fetch, unsplash_search]
