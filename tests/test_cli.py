from __future__ import annotations

import json
from pathlib import Path

import pytest
from support import ScriptedChatModel, final_turn, tool_turn

from appgen_orchestrator import __main__ as cli


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("APPGEN_PLANNING_MODEL", raising=False)
    monkeypatch.delenv("APPGEN_MODEL", raising=False)


def test_cli_requires_a_prompt() -> None:
    with pytest.raises(SystemExit):
        cli.main([])


def test_cli_end_to_end_with_local_deployer(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    model = ScriptedChatModel(
        [
            tool_turn(("write_files", {"files": [{"filePath": "index.html", "fileContent": "<h1>Notes</h1>"}]})),
            final_turn("Deployed your notes app."),
        ]
    )
    monkeypatch.setattr(cli, "get_chat_model", lambda **kwargs: model)

    exit_code = cli.main(
        ["--prompt", "Build a notes app", "--session-id", "cli-1", "--state-root", str(tmp_path / "state")]
    )

    assert exit_code == 0
    result = json.loads(capsys.readouterr().out)
    assert result["status"] == "completed"
    assert result["source_url"].startswith("file://")
    deployment = tmp_path / "state" / "deployments" / result["deployment_id"]
    assert (deployment / "index.html").read_text(encoding="utf-8") == "<h1>Notes</h1>"
    assert (tmp_path / "state" / "artifacts" / "cli-1.json").is_file()


def test_cli_reports_missing_prompt_file(tmp_path: Path) -> None:
    assert cli.main(["--prompt-file", str(tmp_path / "missing.md")]) == 1


def test_cli_reports_missing_api_key(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    assert cli.main(["--prompt", "Build a notes app"]) == 1
