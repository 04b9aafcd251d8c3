"""Entry point for `python -m appgen_orchestrator` and the `appgen` CLI script."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import uuid
from pathlib import Path

from dotenv import load_dotenv

from appgen_orchestrator.codebase import CodebaseStore
from appgen_orchestrator.llm import get_chat_model
from appgen_orchestrator.loops import GenerationSession
from appgen_orchestrator.models import GenerationRequest, GenerationResult, SessionStatus
from appgen_orchestrator.settings import RuntimeSettings
from appgen_orchestrator.state_store import LocalDirectoryDeployer, SessionStateStore

DEFAULT_SYSTEM_PROMPT = (
    "You are an expert full-stack engineer generating a deployable web application. "
    "Inspect the codebase with the available tools, plan the files you will touch, "
    "and make every change through tool calls. Reply without tool calls only when the "
    "application is ready to deploy."
)
SUCCESS_STATUSES = frozenset({SessionStatus.COMPLETED, SessionStatus.COMPLETED_WITH_WARNINGS, SessionStatus.STOPPED})


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generate, deploy and repair an application with a tool-calling model")
    prompt_group = parser.add_mutually_exclusive_group(required=True)
    prompt_group.add_argument("--prompt", default=None, help="Inline user request")
    prompt_group.add_argument("--prompt-file", type=Path, default=None, help="Path to a file holding the user request")
    parser.add_argument("--system-prompt-file", type=Path, default=None, help="Optional system prompt override")
    parser.add_argument(
        "--codebase",
        type=Path,
        default=None,
        help="Optional directory whose files seed the session codebase",
    )
    parser.add_argument("--session-id", default=None, help="Session identifier (default: random)")
    parser.add_argument("--state-root", type=Path, default=None, help="Override APPGEN_STATE_ROOT")
    parser.add_argument(
        "--deploy-dir",
        type=Path,
        default=None,
        help="Directory local deployments are written into (default: <state-root>/deployments)",
    )
    parser.add_argument(
        "--initial-error",
        default="",
        help="Deployment error from a previous session to start repairing immediately",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    return parser.parse_args(argv)


def load_prompt(*, prompt: str | None, prompt_file: Path | None) -> str:
    if prompt_file is not None:
        if not prompt_file.is_file():
            raise FileNotFoundError(f"Prompt file does not exist: {prompt_file}")
        prompt = prompt_file.read_text(encoding="utf-8")
    trimmed = (prompt or "").strip()
    if not trimmed:
        raise ValueError("prompt must be non-empty")
    return trimmed


def log_progress(event: dict) -> None:
    if "keepalive" in event:
        return
    logging.getLogger("appgen_orchestrator.progress").info("%s", json.dumps(event, default=str))


async def run_session(args: argparse.Namespace, settings: RuntimeSettings) -> GenerationResult:
    user_prompt = load_prompt(prompt=args.prompt, prompt_file=args.prompt_file)
    system_prompt = DEFAULT_SYSTEM_PROMPT
    if args.system_prompt_file is not None:
        system_prompt = load_prompt(prompt=None, prompt_file=args.system_prompt_file)

    state_root = args.state_root if args.state_root is not None else settings.state_root_path()
    state_store = SessionStateStore(state_root)
    deployer = LocalDirectoryDeployer(args.deploy_dir if args.deploy_dir is not None else state_root / "deployments")
    codebase = CodebaseStore.from_directory(args.codebase) if args.codebase is not None else CodebaseStore()

    model = get_chat_model(
        model_name=settings.model_name,
        timeout=settings.model_timeout,
        max_tokens=settings.model_max_tokens,
    )
    planning_model = None
    if settings.planning_model_name:
        planning_model = get_chat_model(model_name=settings.planning_model_name, timeout=settings.model_timeout)

    request = GenerationRequest(
        session_id=args.session_id or uuid.uuid4().hex,
        system_prompt=system_prompt,
        user_prompt=user_prompt,
        initial_deploy_error=args.initial_error.strip(),
        starter_generation=args.codebase is None,
    )
    session = GenerationSession(
        request,
        codebase=codebase,
        model=model,
        deployer=deployer,
        artifact_store=state_store,
        stop_signals=state_store,
        progress_sink=log_progress,
        planning_model=planning_model,
        settings=settings,
    )
    return await session.run()


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    load_dotenv()

    try:
        settings = RuntimeSettings.from_env()
        result = asyncio.run(run_session(args, settings))
    except (OSError, ValueError, RuntimeError) as exc:
        logging.error("Unable to start generation session: %s", exc)
        return 1

    print(json.dumps(result.to_dict(), indent=2, default=str))
    return 0 if result.status in SUCCESS_STATUSES else 1


if __name__ == "__main__":
    raise SystemExit(main())
