from __future__ import annotations

import asyncio
import logging
from dataclasses import replace

from langchain_core.messages import HumanMessage, SystemMessage

from .codebase import CodebaseStore, artifact_fingerprint
from .llm import content_to_text
from .models import (
    DeployAttempt,
    DeployRoundResult,
    ErrorPromptKind,
    MigrationResult,
    OutcomeCategory,
    RetryAction,
)
from .protocols import ArtifactStore, DeploymentBackend, MigrationRunner, ModelProvider

logger = logging.getLogger(__name__)

DEPLOY_CANCELLED_MESSAGE = "Deployment cancelled by user"
REPEATED_ERROR_STATUS = "Unable to fix the error after multiple attempts"
WARNINGS_STATUS = "Deployment complete with warnings"
RETRIES_EXHAUSTED_STATUS = "Deployment failed after maximum retries"

ERROR_PLANNING_SYSTEM_PROMPT = (
    "You are a senior fullstack engineer. Analyze the following deployment or migration error and write a "
    "short internal plan (3-8 bullet points) naming the files to inspect and the tools (get_files_content, "
    "search_replace, write_files, plan_files, list_files, web_search, external_file_fetch) to use to fix it. "
    "Do not call tools and do not write code in this step."
)
ERROR_PLAN_PREFIX = (
    "Here is your internal plan for fixing the deployment error. Do not show this plan to the user; "
    "follow it with tool calls and code edits:\n\n"
)


# ---------------------------------------------------------------------------
# Outcome classification and the retry decision table
# ---------------------------------------------------------------------------


def classify_outcome(attempt: DeployAttempt, migration: MigrationResult) -> OutcomeCategory:
    if not migration.success:
        return OutcomeCategory.MIGRATION_FAILURE
    if attempt.success and not attempt.error_message:
        return OutcomeCategory.CLEAN_SUCCESS
    if attempt.success:
        return OutcomeCategory.READY_WITH_WARNINGS
    return OutcomeCategory.HARD_FAILURE


# Reading: category -> (action once retries are exhausted, action while budget remains).
_DECISION_TABLE: dict[OutcomeCategory, tuple[RetryAction, RetryAction]] = {
    OutcomeCategory.CLEAN_SUCCESS: (RetryAction.ACCEPT, RetryAction.ACCEPT),
    OutcomeCategory.READY_WITH_WARNINGS: (RetryAction.ACCEPT_WITH_WARNINGS, RetryAction.RETRY),
    OutcomeCategory.HARD_FAILURE: (RetryAction.FAIL, RetryAction.RETRY),
    OutcomeCategory.MIGRATION_FAILURE: (RetryAction.FAIL, RetryAction.RETRY),
}


def decide_action(
    category: OutcomeCategory,
    retry_count: int,
    max_retries: int,
    repeat_count: int,
    repeat_limit: int = 2,
) -> RetryAction:
    """Map a classified deploy outcome to the next polish-loop action.

    Args:
        category: Outcome of the latest deploy round.
        retry_count: Retries consumed, including the one this outcome charges.
        max_retries: Outer retry budget.
        repeat_count: Consecutive repeats of the current error message.
        repeat_limit: Repeats after which retrying is abandoned.

    Returns:
        The action the session graph routes on.
    """
    exhausted, remaining = _DECISION_TABLE[category]
    if category is OutcomeCategory.CLEAN_SUCCESS:
        return RetryAction.ACCEPT
    if retry_count >= max_retries:
        return exhausted
    if repeat_count >= repeat_limit:
        return RetryAction.ABORT_REPEATED
    return remaining


class ErrorRepetitionGuard:
    """Counts how many times in a row the same deploy error has been seen."""

    def __init__(self) -> None:
        self.last_error = ""
        self.repeat_count = 0

    def observe(self, error_message: str) -> int:
        if error_message and error_message == self.last_error:
            self.repeat_count += 1
        else:
            self.repeat_count = 0
            self.last_error = error_message
        return self.repeat_count


# ---------------------------------------------------------------------------
# Recovery prompts
# ---------------------------------------------------------------------------


def classify_error_prompt(error_message: str) -> ErrorPromptKind:
    lowered = error_message.lower()
    if "migration" in lowered:
        return ErrorPromptKind.MIGRATION
    if "build" in lowered or "exited with" in lowered:
        return ErrorPromptKind.BUILD
    return ErrorPromptKind.GENERIC


def build_recovery_prompt(error_message: str, kind: ErrorPromptKind | None = None) -> str:
    """Build the category-specific instruction injected after a failed deploy round."""
    kind = kind or classify_error_prompt(error_message)
    if kind is ErrorPromptKind.MIGRATION:
        return (
            "## DATABASE MIGRATION ERROR - FIX REQUIRED\n\n"
            f"<error>{error_message}</error>\n\n"
            "Steps:\n"
            "1. Read the failing migration file with get_files_content.\n"
            "2. Find the exact SQL statement that fails.\n"
            "3. Fix it with search_replace using precise old and new SQL.\n"
            "4. Keep the SQL valid PostgreSQL.\n\n"
            "Use search_replace to fix the migration file. Do not use write_files."
        )
    if kind is ErrorPromptKind.BUILD:
        return (
            "## BUILD ERROR - FIX REQUIRED\n\n"
            f"<error>{error_message}</error>\n\n"
            "Steps:\n"
            "1. Extract the file path, line number and error type from the message.\n"
            "2. Read that file with get_files_content.\n"
            "3. Fix the offending code with search_replace, including enough surrounding context in "
            "oldString to make the match unique.\n"
            "4. Check imports, types and syntax around the fix.\n\n"
            "Use search_replace to fix the code. Do not use write_files."
        )
    return (
        "## DEPLOYMENT ERROR - FIX REQUIRED\n\n"
        f"<error>{error_message}</error>\n\n"
        "Steps:\n"
        "1. Identify the root cause from the error message.\n"
        "2. Locate the affected files with get_files_content.\n"
        "3. Fix the issue with search_replace.\n\n"
        "Fix the issue with tool calls; do not just acknowledge the error."
    )


def migration_error_message(migration: MigrationResult) -> str:
    return (
        f'Database migration failed in file "{migration.failed_file or "unknown"}". '
        f"Error: {migration.error or 'unknown error'}\n\n"
        "Please fix the SQL syntax in the migration file and try again."
    )


async def plan_error_fix(model: ModelProvider, recovery_prompt: str) -> str:
    """Ask a tool-less model for a short fix plan. Returns an empty string on failure."""
    try:
        response = await model.ainvoke(
            [SystemMessage(content=ERROR_PLANNING_SYSTEM_PROMPT), HumanMessage(content=recovery_prompt)]
        )
    except Exception as exc:  # noqa: BLE001
        logger.warning("Error planning step failed, continuing without a plan: %s", exc)
        return ""
    return content_to_text(response.content).strip()


# ---------------------------------------------------------------------------
# Deploy round
# ---------------------------------------------------------------------------


async def run_deploy_round(
    *,
    session_id: str,
    codebase: CodebaseStore,
    artifact_store: ArtifactStore,
    migration_runner: MigrationRunner,
    deployer: DeploymentBackend,
    env_settings: dict[str, str],
    target: str,
    migration_required: bool,
    retry_count: int,
) -> DeployRoundResult:
    """Assemble the artifact, then persist, migrate and deploy it concurrently.

    The three calls share a task group, so one raising cancels the others. A failed
    migration turns the attempt into a failure carrying a migration-specific message
    even when the deploy itself succeeded. Exceptions raised by a collaborator propagate
    to the caller unwrapped, as infrastructure failures.
    """
    artifact = codebase.to_artifact()
    logger.info(
        "Deploy round %d for session %s (files=%d, fingerprint=%s, migration_required=%s)",
        retry_count,
        session_id,
        len(codebase),
        artifact_fingerprint(artifact)[:12],
        migration_required,
    )
    try:
        async with asyncio.TaskGroup() as group:
            group.create_task(artifact_store.save(session_id, artifact))
            migrating = group.create_task(migration_runner.migrate(artifact, env_settings, migration_required))
            deploying = group.create_task(deployer.deploy(artifact, env_settings, target))
    except ExceptionGroup as grouped:
        # Siblings are already cancelled; surface the first collaborator failure as-is.
        raise grouped.exceptions[0] from grouped
    migration = migrating.result()
    attempt = replace(deploying.result(), retry_count=retry_count)
    if not migration.success:
        logger.warning("Migration failed in %s: %s", migration.failed_file or "unknown", migration.error)
        attempt = replace(attempt, success=False, error_message=migration_error_message(migration))
    cancelled = attempt.error_message == DEPLOY_CANCELLED_MESSAGE
    return DeployRoundResult(attempt=attempt, migration=migration, artifact=artifact, cancelled=cancelled)
