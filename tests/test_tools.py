from __future__ import annotations

import json
import urllib.error

import pytest
from pydantic import ValidationError

from appgen_orchestrator import tools as tools_module
from appgen_orchestrator.codebase import CodebaseStore


def _tools(store: CodebaseStore, **kwargs):  # noqa: ANN003,ANN202
    return {item.name: item for item in tools_module.build_code_tools(store, **kwargs)}


@pytest.mark.asyncio
async def test_write_files_creates_and_updates() -> None:
    store = CodebaseStore({"src/app.ts": "old"})
    write_files = _tools(store)["write_files"]

    output = await write_files.ainvoke(
        {
            "files": [
                {"filePath": "src/app.ts", "fileContent": "new"},
                {"filePath": "./src/util.ts", "fileContent": "export {}"},
            ]
        }
    )

    assert output.splitlines() == [
        "Successfully updated file: src/app.ts",
        "Successfully created file: src/util.ts",
    ]
    assert store.get_file("src/util.ts") == "export {}"


@pytest.mark.asyncio
async def test_write_files_rejects_stringified_entries() -> None:
    write_files = _tools(CodebaseStore())["write_files"]
    with pytest.raises(ValidationError, match="Stringification detected"):
        await write_files.ainvoke({"files": [json.dumps({"filePath": "a.ts", "fileContent": "x"})]})


@pytest.mark.asyncio
async def test_write_files_accepts_json_encoded_list() -> None:
    store = CodebaseStore()
    write_files = _tools(store)["write_files"]
    await write_files.ainvoke({"files": json.dumps([{"filePath": "a.ts", "fileContent": "x"}])})
    assert store.get_file("a.ts") == "x"


@pytest.mark.asyncio
async def test_write_files_enforces_per_call_limit() -> None:
    write_files = _tools(CodebaseStore(), max_files_per_write=2)["write_files"]
    files = [{"filePath": f"f{index}.ts", "fileContent": ""} for index in range(3)]
    with pytest.raises(ValueError, match="at most 2 files"):
        await write_files.ainvoke({"files": files})


@pytest.mark.asyncio
async def test_get_files_content_reports_missing_files() -> None:
    get_files_content = _tools(CodebaseStore({"a.ts": "A"}))["get_files_content"]
    payload = json.loads(await get_files_content.ainvoke({"filePaths": ["a.ts", "b.ts"]}))
    assert payload == [
        {"path": "a.ts", "content": "A", "error": None},
        {"path": "b.ts", "content": None, "error": "File not found"},
    ]


@pytest.mark.asyncio
async def test_list_and_find_files_respect_directory() -> None:
    store = CodebaseStore({"src/a.ts": "useState()", "src/b.ts": "UseState", "docs/readme.md": "usestate"})
    code_tools = _tools(store)

    listed = json.loads(await code_tools["list_files"].ainvoke({"directory": "src"}))
    assert listed == {"files": ["src/a.ts", "src/b.ts"]}

    found = json.loads(await code_tools["find_files_with_text"].ainvoke({"keyword": "usestate", "directory": "src/"}))
    assert found["matchingFiles"] == ["src/a.ts", "src/b.ts"]
    assert found["count"] == 2

    exact = json.loads(
        await code_tools["find_files_with_text"].ainvoke({"keyword": "useState", "caseSensitive": True})
    )
    assert exact["matchingFiles"] == ["src/a.ts"]


@pytest.mark.asyncio
async def test_plan_and_delete_files() -> None:
    store = CodebaseStore({"old.ts": "x"})
    code_tools = _tools(store)

    plan = await code_tools["plan_files"].ainvoke(
        {"files": [{"filePath": "src/app.tsx", "purpose": "Root component"}]}
    )
    assert plan == "### Files to be created or modified:\n- `src/app.tsx`: Root component"

    deleted = await code_tools["delete_files"].ainvoke({"filePaths": ["old.ts", "ghost.ts"]})
    assert deleted.splitlines() == ["Successfully deleted file: old.ts", "File not found (ignored): ghost.ts"]
    assert "old.ts" not in store


@pytest.mark.asyncio
async def test_search_replace_reports_each_replacement() -> None:
    store = CodebaseStore({"a.ts": "const a = 1;\nconst a2 = 1;", "b.ts": "let b = 2;"})
    search_replace = _tools(store)["search_replace"]

    report = await search_replace.ainvoke(
        {
            "replacements": [
                {"filePath": "a.ts", "oldString": "= 1", "newString": "= 3", "replaceAll": True},
                {"filePath": "b.ts", "oldString": "let", "newString": "const"},
                {"filePath": "b.ts", "oldString": "missing", "newString": "x"},
            ]
        }
    )

    assert report.splitlines()[0] == "✅ Successfully replaced 2 occurrence(s) in 'a.ts'."
    assert report.splitlines()[1] == "✅ Successfully replaced 1 occurrence(s) in 'b.ts'."
    assert "was not found in 'b.ts'" in report.splitlines()[2]
    assert store.get_file("a.ts") == "const a = 3;\nconst a2 = 3;"
    assert store.get_file("b.ts") == "const b = 2;"


@pytest.mark.asyncio
async def test_search_replace_raises_when_nothing_applied() -> None:
    search_replace = _tools(CodebaseStore({"a.ts": "x"}))["search_replace"]
    with pytest.raises(ValueError, match="identical"):
        await search_replace.ainvoke({"replacements": [{"filePath": "a.ts", "oldString": "x", "newString": "x"}]})
    with pytest.raises(ValueError, match="not found in codebase"):
        await search_replace.ainvoke({"replacements": [{"filePath": "z.ts", "oldString": "x", "newString": "y"}]})


def test_web_search_requires_brightdata_api_key(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("BRIGHTDATA_API_KEY", raising=False)
    monkeypatch.setenv("BRIGHTDATA_SERP_ZONE", "serp_zone")

    with pytest.raises(RuntimeError, match="BRIGHTDATA_API_KEY"):
        tools_module.web_search.func("tailwind dark mode toggle")


def test_web_search_requires_brightdata_serp_zone(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BRIGHTDATA_API_KEY", "token")
    monkeypatch.delenv("BRIGHTDATA_SERP_ZONE", raising=False)

    with pytest.raises(RuntimeError, match="BRIGHTDATA_SERP_ZONE"):
        tools_module.web_search.func("vite env variables")


def test_web_search_calls_brightdata_request_endpoint(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BRIGHTDATA_API_KEY", "token")
    monkeypatch.setenv("BRIGHTDATA_SERP_ZONE", "serp_zone")
    monkeypatch.setenv("BRIGHTDATA_SERP_COUNTRY", "us")
    captured: dict[str, object] = {}

    def _fake_http_post_json(url: str, payload: dict[str, object], headers: dict[str, str]) -> dict[str, object]:
        captured["url"] = url
        captured["payload"] = payload
        captured["headers"] = headers
        return {
            "organic": [
                {"link": "https://example.com/a", "title": "A", "description": "Result A"},
                {"url": "https://example.com/b", "name": "B", "snippet": "Result B"},
            ]
        }

    monkeypatch.setattr(tools_module, "_http_post_json", _fake_http_post_json)

    payload = json.loads(tools_module.web_search.func("react router guide"))

    assert captured["url"] == "https://api.brightdata.com/request"
    assert captured["headers"] == {"Authorization": "Bearer token"}
    assert captured["payload"] == {
        "zone": "serp_zone",
        "url": "https://www.google.com/search?q=react+router+guide",
        "format": "json",
        "country": "us",
        "method": "GET",
    }
    assert payload == {
        "provider": "brightdata",
        "query": "react router guide",
        "results": [
            {"url": "https://example.com/a", "title": "A", "snippet": "Result A"},
            {"url": "https://example.com/b", "title": "B", "snippet": "Result B"},
        ],
    }


def test_web_search_http_failure_propagates(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BRIGHTDATA_API_KEY", "token")
    monkeypatch.setenv("BRIGHTDATA_SERP_ZONE", "serp_zone")

    def _failing_http_post_json(url: str, payload: dict[str, object], headers: dict[str, str]) -> dict[str, object]:
        raise urllib.error.URLError("Connection refused")

    monkeypatch.setattr(tools_module, "_http_post_json", _failing_http_post_json)

    with pytest.raises(urllib.error.URLError, match="Connection refused"):
        tools_module.web_search.func("failing search query")


def test_web_search_finds_nested_results(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BRIGHTDATA_API_KEY", "token")
    monkeypatch.setenv("BRIGHTDATA_SERP_ZONE", "serp_zone")

    def _nested_response(url: str, payload: dict[str, object], headers: dict[str, str]) -> dict[str, object]:
        return {"body": {"data": [{"link": f"https://example.com/{index}", "title": str(index)} for index in range(9)]}}

    monkeypatch.setattr(tools_module, "_http_post_json", _nested_response)

    payload = json.loads(tools_module.web_search.func("nested"))
    assert [item["title"] for item in payload["results"]] == ["0", "1", "2", "3", "4"]


def test_unsplash_search_validates_and_compacts(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("UNSPLASH_ACCESS_KEY", raising=False)
    with pytest.raises(RuntimeError, match="UNSPLASH_ACCESS_KEY"):
        tools_module.unsplash_search.func("mountains")

    monkeypatch.setenv("UNSPLASH_ACCESS_KEY", "key")
    with pytest.raises(ValueError, match="orientation"):
        tools_module.unsplash_search.func("mountains", orientation="round")

    captured: dict[str, object] = {}

    def _fake_get(url: str, params: dict[str, object], headers: dict[str, str]) -> dict[str, object]:
        captured["params"] = params
        captured["headers"] = headers
        return {
            "results": [
                {
                    "urls": {"regular": "https://images.example/1.jpg"},
                    "alt_description": "snowy peak",
                    "user": {"name": "Ana"},
                    "links": {"html": "https://unsplash.example/p/1"},
                }
            ]
        }

    monkeypatch.setattr(tools_module, "_http_get_json", _fake_get)
    payload = json.loads(tools_module.unsplash_search.func("mountains", per_page=50))

    assert captured["params"]["per_page"] == 10
    assert captured["headers"]["Authorization"] == "Client-ID key"
    assert payload["images"] == [
        {
            "url": "https://images.example/1.jpg",
            "description": "snowy peak",
            "author": "Ana",
            "link": "https://unsplash.example/p/1",
        }
    ]


def test_external_file_fetch_validates_and_truncates(monkeypatch: pytest.MonkeyPatch) -> None:
    with pytest.raises(ValueError, match="http"):
        tools_module.external_file_fetch.func("file:///etc/passwd")
    with pytest.raises(ValueError, match="fileType"):
        tools_module.external_file_fetch.func("https://example.com/data", fileType="pdf")

    monkeypatch.setattr(tools_module, "_http_get_text", lambda url: "a" * 25_000)
    payload = json.loads(tools_module.external_file_fetch.func("https://example.com/big.txt"))
    assert payload["truncated"] is True
    assert len(payload["content"]) == 20_000

    monkeypatch.setattr(tools_module, "_http_get_text", lambda url: "{not json")
    with pytest.raises(ValueError, match="not valid JSON"):
        tools_module.external_file_fetch.func("https://example.com/data.json", fileType="json")
