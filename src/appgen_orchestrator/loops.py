from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, TypedDict

from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from langchain_core.tools import BaseTool
from langgraph.graph import END, START, StateGraph
from langgraph.types import Command

from .cache_blocks import CACHE_MARKER, CACHE_MARKER_KEY, CacheBlockManager
from .codebase import CodebaseStore
from .deploy import (
    ERROR_PLAN_PREFIX,
    REPEATED_ERROR_STATUS,
    RETRIES_EXHAUSTED_STATUS,
    WARNINGS_STATUS,
    ErrorRepetitionGuard,
    build_recovery_prompt,
    classify_error_prompt,
    classify_outcome,
    decide_action,
    plan_error_fix,
    run_deploy_round,
)
from .dispatch import ToolDispatcher
from .llm import (
    IncompleteTurnError,
    ModelInvocationError,
    StreamEvent,
    provider_supports_cache_markers,
    required_arguments,
    stream_turn,
    without_cache_markers,
)
from .models import (
    DeployAttempt,
    DeployRoundResult,
    GenerationRequest,
    GenerationResult,
    OutcomeCategory,
    RetryAction,
    SessionStatus,
    ToolCall,
    TurnOutcome,
)
from .progress import ProgressReporter, heartbeat
from .protocols import (
    ArtifactStore,
    DeploymentBackend,
    InMemoryArtifactStore,
    InMemoryStopSignalStore,
    MigrationRunner,
    ModelProvider,
    ProgressSink,
    SkippingMigrationRunner,
    StopSignalStore,
    SupportsToolStreaming,
)
from .settings import RuntimeSettings
from .tools import build_code_tools, external_tools

logger = logging.getLogger(__name__)

_ACTION_STATUS: dict[RetryAction, SessionStatus] = {
    RetryAction.ACCEPT: SessionStatus.COMPLETED,
    RetryAction.ACCEPT_WITH_WARNINGS: SessionStatus.COMPLETED_WITH_WARNINGS,
    RetryAction.FAIL: SessionStatus.RETRIES_EXHAUSTED,
    RetryAction.ABORT_REPEATED: SessionStatus.REPEATED_ERROR,
}
_ACTION_MESSAGE: dict[RetryAction, str] = {
    RetryAction.ACCEPT: "Deployment complete",
    RetryAction.ACCEPT_WITH_WARNINGS: WARNINGS_STATUS,
    RetryAction.FAIL: RETRIES_EXHAUSTED_STATUS,
    RetryAction.ABORT_REPEATED: REPEATED_ERROR_STATUS,
}
_TURN_STATUS: dict[TurnOutcome, tuple[SessionStatus, str]] = {
    TurnOutcome.STOPPED: (SessionStatus.STOPPED, "Generation stopped by user"),
    TurnOutcome.TOOL_BUDGET_EXHAUSTED: (SessionStatus.TOOL_BUDGET_EXHAUSTED, "Tool call limit reached"),
    TurnOutcome.MODEL_ERROR: (SessionStatus.ABORTED, "Model provider error"),
}


class ToolLoop:
    """Inner loop: ask the model for the next step until it stops requesting tools.

    Every model step counts against ``max_tool_calls``, retried incomplete steps included.
    Tool results are appended through the cache manager in original call order.
    """

    def __init__(
        self,
        *,
        model: SupportsToolStreaming,
        dispatcher: ToolDispatcher,
        cache: CacheBlockManager,
        stop_requested: Callable[[], Awaitable[bool]],
        settings: RuntimeSettings,
        reporter: ProgressReporter,
        send_cache_markers: bool = True,
    ) -> None:
        self.model = model
        self.dispatcher = dispatcher
        self.cache = cache
        self.stop_requested = stop_requested
        self.settings = settings
        self.reporter = reporter
        self.send_cache_markers = send_cache_markers
        self.tools_requiring_args = required_arguments(dispatcher.tool_list)
        self.last_error = ""
        self.steps_taken = 0
        self._turn_text: list[str] = []

    async def run(self, history: list[BaseMessage]) -> TurnOutcome:
        self.steps_taken = 0
        while self.steps_taken < self.settings.max_tool_calls:
            if await self.stop_requested():
                return TurnOutcome.STOPPED
            self.cache.redistribute_cache_if_needed(history)
            self.steps_taken += 1
            outgoing = history if self.send_cache_markers else without_cache_markers(history)
            self._turn_text = []
            try:
                message = await stream_turn(
                    self.model,
                    outgoing,
                    token_ceiling=self.settings.output_token_ceiling,
                    tools_requiring_args=self.tools_requiring_args,
                    on_event=self._on_stream_event,
                )
            except IncompleteTurnError as exc:
                logger.warning("Retrying step %d: %s", self.steps_taken, exc)
                if exc.token_limit:
                    self.cache.handle_token_limit(history)
                continue
            except ModelInvocationError as exc:
                logger.error("Aborting tool loop: %s", exc)
                self.last_error = str(exc)
                return TurnOutcome.MODEL_ERROR

            text = "".join(self._turn_text).strip()
            if text:
                await self.reporter.chat(text)
            if not message.tool_calls:
                return TurnOutcome.READY_TO_DEPLOY

            self.cache.add_message_with_smart_caching(history, message)
            calls = ToolCall.from_message_calls(message.tool_calls)
            logger.info("Step %d: executing %d tool call(s)", self.steps_taken, len(calls))
            for result in await self.dispatcher.dispatch_batch(calls):
                self.cache.add_message_with_smart_caching(history, result.to_message())

        logger.warning("Tool call limit of %d reached", self.settings.max_tool_calls)
        return TurnOutcome.TOOL_BUDGET_EXHAUSTED

    async def _on_stream_event(self, event: StreamEvent) -> None:
        if event.kind == "content":
            self._turn_text.append(event.text)
        elif event.kind == "tool_call" and event.tool_call is not None:
            logger.debug("Step %d requested %s", self.steps_taken, event.tool_call.get("name"))
        else:
            logger.debug("Step %d usage: %s", self.steps_taken, event.usage)


class SessionState(TypedDict, total=False):
    retry_count: int
    pending_error: str
    turn_outcome: TurnOutcome
    round_result: DeployRoundResult
    last_good: DeployAttempt
    last_good_artifact: str
    category: OutcomeCategory
    action: RetryAction
    status: SessionStatus
    status_message: str
    error_message: str
    result: GenerationResult


class GenerationSession:
    """Polish loop StateGraph: checkpoint -> prepare -> tool_loop -> deploy -> decide -> (checkpoint | finalize).

    One instance drives one generation session. The message history, cache budget and
    codebase are owned here for the session's lifetime.
    """

    def __init__(
        self,
        request: GenerationRequest,
        *,
        codebase: CodebaseStore,
        model: ModelProvider,
        deployer: DeploymentBackend,
        migration_runner: MigrationRunner | None = None,
        artifact_store: ArtifactStore | None = None,
        stop_signals: StopSignalStore | None = None,
        progress_sink: ProgressSink | None = None,
        planning_model: ModelProvider | None = None,
        settings: RuntimeSettings | None = None,
        tools: Sequence[BaseTool] | None = None,
    ) -> None:
        self.request = request
        self.settings = settings or RuntimeSettings.from_env()
        self.codebase = codebase
        self.deployer = deployer
        self.migration_runner = migration_runner or SkippingMigrationRunner()
        self.artifact_store = artifact_store or InMemoryArtifactStore()
        self.stop_signals = stop_signals or InMemoryStopSignalStore()
        self.planning_model = planning_model
        self.reporter = ProgressReporter(progress_sink)
        self.cache = CacheBlockManager.from_settings(self.settings)
        self.guard = ErrorRepetitionGuard()
        if tools is None:
            tools = [
                *build_code_tools(codebase, max_files_per_write=self.settings.max_files_per_write),
                *external_tools(),
            ]
        self.dispatcher = ToolDispatcher(
            tools,
            schema_file_paths=self.settings.schema_file_paths,
            max_unwrap_attempts=self.settings.max_arg_unwrap_attempts,
            reporter=self.reporter,
        )
        self.tool_loop = ToolLoop(
            model=model.bind_tools(self.dispatcher.tool_list),
            dispatcher=self.dispatcher,
            cache=self.cache,
            stop_requested=self._stop_requested,
            settings=self.settings,
            reporter=self.reporter,
            send_cache_markers=provider_supports_cache_markers(self.settings.model_name),
        )
        self.history: list[BaseMessage] = []
        self._seed_history()
        self.graph = self._build_graph().compile()

    def _seed_history(self) -> None:
        system_block: dict[str, Any] = {"type": "text", "text": self.request.system_prompt}
        if self.settings.system_message_cached:
            system_block[CACHE_MARKER_KEY] = dict(CACHE_MARKER)
        self.history.append(SystemMessage(content=[system_block]))
        self.cache.add_message_with_smart_caching(
            self.history, HumanMessage(content=[{"type": "text", "text": self.request.user_prompt}])
        )

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(SessionState)
        graph.add_node("checkpoint", self._checkpoint_node)
        graph.add_node("prepare", self._prepare_node)
        graph.add_node("tool_loop", self._tool_loop_node)
        graph.add_node("deploy", self._deploy_node)
        graph.add_node("decide", self._decide_node)
        graph.add_node("finalize", self._finalize_node)

        graph.add_edge(START, "checkpoint")
        graph.add_edge("prepare", "tool_loop")
        graph.add_edge("finalize", END)
        return graph

    async def _stop_requested(self) -> bool:
        key = self.request.session_id
        if not await self.stop_signals.get(key):
            return False
        await self.stop_signals.clear(key)
        logger.info("Stop signal observed for session %s", key)
        return True

    @staticmethod
    def _stop_update() -> dict[str, Any]:
        return {"status": SessionStatus.STOPPED, "status_message": "Generation stopped by user"}

    async def _checkpoint_node(self, state: SessionState) -> Command[str]:
        if await self._stop_requested():
            return Command(goto="finalize", update=self._stop_update())
        return Command(goto="prepare")

    async def _prepare_node(self, state: SessionState) -> dict[str, Any]:
        retry_count = int(state.get("retry_count", 0))
        self.dispatcher.schema_changed = (
            self.request.starter_generation and retry_count == 0
        ) or self.request.integration_requires_migration

        error_message = state.get("pending_error", "")
        if not error_message:
            await self.reporter.status("Generating code")
            return {}

        kind = classify_error_prompt(error_message)
        prompt = build_recovery_prompt(error_message, kind)
        logger.info("Retry %d: injecting %s recovery prompt", retry_count, kind.value)
        await self.reporter.status(f"Fixing {kind.value} error (attempt {retry_count})")
        del self.history[1:]
        self.cache.reset(keep_system_cache=True)
        if self.planning_model is not None:
            plan = await plan_error_fix(self.planning_model, prompt)
            if plan:
                self.cache.add_message_with_smart_caching(
                    self.history, HumanMessage(content=[{"type": "text", "text": ERROR_PLAN_PREFIX + plan}])
                )
        self.cache.add_message_with_smart_caching(self.history, HumanMessage(content=[{"type": "text", "text": prompt}]))
        return {"pending_error": ""}

    async def _tool_loop_node(self, state: SessionState) -> Command[str]:
        outcome = await self.tool_loop.run(self.history)
        if outcome is TurnOutcome.READY_TO_DEPLOY:
            return Command(goto="deploy", update={"turn_outcome": outcome})
        status, message = _TURN_STATUS[outcome]
        return Command(
            goto="finalize",
            update={
                "turn_outcome": outcome,
                "status": status,
                "status_message": message,
                "error_message": self.tool_loop.last_error if outcome is TurnOutcome.MODEL_ERROR else "",
            },
        )

    async def _deploy_node(self, state: SessionState) -> Command[str]:
        if await self._stop_requested():
            return Command(goto="finalize", update=self._stop_update())
        retry_count = int(state.get("retry_count", 0))
        await self.reporter.status("Deploying application")
        try:
            round_result = await run_deploy_round(
                session_id=self.request.session_id,
                codebase=self.codebase,
                artifact_store=self.artifact_store,
                migration_runner=self.migration_runner,
                deployer=self.deployer,
                env_settings=self.request.env_settings,
                target=self.request.deploy_target,
                migration_required=self.dispatcher.schema_changed,
                retry_count=retry_count,
            )
        except Exception as exc:  # noqa: BLE001
            logger.exception("Deployment infrastructure failure for session %s", self.request.session_id)
            return Command(
                goto="finalize",
                update={
                    "status": SessionStatus.ABORTED,
                    "status_message": "Deployment infrastructure error",
                    "error_message": str(exc),
                },
            )
        if round_result.cancelled:
            return Command(goto="finalize", update=self._stop_update())
        return Command(goto="decide", update={"round_result": round_result})

    async def _decide_node(self, state: SessionState) -> Command[str]:
        round_result = state["round_result"]
        attempt = round_result.attempt
        category = classify_outcome(attempt, round_result.migration)
        retry_count = int(state.get("retry_count", 0))
        update: dict[str, Any] = {"category": category}

        if attempt.success:
            update["last_good"] = attempt
            update["last_good_artifact"] = round_result.artifact

        repeat_count = 0
        if category is not OutcomeCategory.CLEAN_SUCCESS:
            retry_count += 1
            repeat_count = self.guard.observe(attempt.error_message)
        action = decide_action(
            category,
            retry_count,
            self.settings.max_retries,
            repeat_count,
            self.settings.same_error_limit,
        )
        logger.info(
            "Deploy outcome %s (retry %d/%d, repeats %d) -> %s",
            category.value,
            retry_count,
            self.settings.max_retries,
            repeat_count,
            action.value,
        )
        update.update({"retry_count": retry_count, "action": action, "error_message": attempt.error_message})
        if action is RetryAction.RETRY:
            update["pending_error"] = attempt.error_message
            return Command(goto="checkpoint", update=update)
        update["status"] = _ACTION_STATUS[action]
        update["status_message"] = _ACTION_MESSAGE[action]
        return Command(goto="finalize", update=update)

    async def _finalize_node(self, state: SessionState) -> dict[str, Any]:
        status = state.get("status", SessionStatus.ABORTED)
        round_result = state.get("round_result")
        last_good = state.get("last_good")
        result = GenerationResult(
            status=status,
            retry_count=int(state.get("retry_count", 0)),
            error_message=state.get("error_message", ""),
            status_message=state.get("status_message", ""),
        )
        current = round_result.attempt if round_result is not None else None
        if status in {SessionStatus.COMPLETED, SessionStatus.COMPLETED_WITH_WARNINGS} and current is not None:
            result.source_url = current.source_url
            result.deployment_id = current.deployment_id
            result.artifact = round_result.artifact
        elif last_good is not None:
            result.source_url = last_good.source_url
            result.deployment_id = last_good.deployment_id
            result.artifact = state.get("last_good_artifact")
            result.used_fallback = True
        elif self.request.previous_source_url:
            result.source_url = self.request.previous_source_url
            result.used_fallback = True

        logger.info(
            "Session %s finished: %s (url=%s, fallback=%s)",
            self.request.session_id,
            status.value,
            result.source_url or "-",
            result.used_fallback,
        )
        await self.reporter.status(result.status_message or status.value)
        if result.source_url:
            await self.reporter.source_url(result.source_url)
        return {"result": result}

    async def run(self) -> GenerationResult:
        """Drive the session to a terminal outcome.

        Returns:
            The resolved result: a working deployment, a prior working deployment
            (``used_fallback``), or an explicit failure without a URL.
        """
        initial: SessionState = {"retry_count": 0, "pending_error": self.request.initial_deploy_error}
        if self.request.initial_deploy_error:
            self.guard.observe(self.request.initial_deploy_error)
        async with heartbeat(self.reporter, self.settings.heartbeat_interval_seconds):
            final_state = await self.graph.ainvoke(
                initial,
                config={"recursion_limit": self.settings.recursion_limit},
            )
        return final_state["result"]
