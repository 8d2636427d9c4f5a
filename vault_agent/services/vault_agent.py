"""Vault Agent - round-based tool-calling loop over a note vault.

Each round makes one model call and then dispatches the returned tool calls
in order. The loop stops on ``done``, on a plain-text answer, on cancellation,
on a transport failure or when the round budget runs out. ``ask_user``
suspends the run and hands back an opaque resume token.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence, Tuple, Union

from ..models.agent import (
    AICapabilities,
    AgentResult,
    AgentTask,
    Budget,
    LoopState,
    ProgressEvent,
    SuspendedResult,
    ToolCall,
    TranscriptMessage,
    WhitelistedCommand,
)
from ..models.continuation import Continuation
from .agent_prompts import (
    FINAL_ROUND_WARNING,
    STUCK_DIRECTIVE,
    build_initial_message,
    build_initial_transcript,
    build_stuck_warning,
    build_system_prompt,
)
from .capabilities import LocalVaultCapabilities
from .config import AppConfig
from .loop_guard import BudgetTracker, StuckLoopDetector
from .model_client import ModelClient, ModelResponse, ModelTransportError
from .prompt_loader import PromptLoader
from .result_aggregator import (
    build_result,
    build_suspended,
    completion_message,
    summarize_args,
    synthesize_summary,
)
from .resume import ResumeCodec
from .tool_executor import ToolExecutor, ToolOutcome
from .tool_registry import PROTECTED_TOOLS, ToolName, ToolRegistry, get_tool_registry
from .vault import VaultService
from .web_search import WebSearchClient

logger = logging.getLogger(__name__)

EMPTY_RESULT = "(empty result)"
SKIPPED_AFTER_ASK_USER = "Skipped: this call was issued after ask_user and was not executed. Re-issue it if still needed."
SKIPPED_AFTER_DONE = "Skipped: done() was already called in this round."

ProgressSink = Callable[[ProgressEvent], Union[None, Awaitable[None]]]
RunOutcome = Union[AgentResult, SuspendedResult]


class ChatModel(Protocol):
    async def complete(
        self,
        messages: Sequence[TranscriptMessage],
        tools: Sequence[Dict[str, Any]],
        *,
        tool_choice: str = "auto",
    ) -> ModelResponse: ...


class VaultAgentError(Exception):
    """Raised when an agent run cannot be started."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class _Suspension:
    """Pending clarification gathered while dispatching a round."""

    def __init__(self, call_id: str, question: str, choices: List[str]) -> None:
        self.call_id = call_id
        self.question = question
        self.choices = choices
        self.skipped: List[str] = []


def _parse_arguments(raw: str) -> Optional[Dict[str, Any]]:
    text = raw.strip() if raw else ""
    if not text:
        return {}
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def _extend_unique(target: List[str], items: Sequence[str]) -> None:
    for item in items:
        if item not in target:
            target.append(item)


class VaultAgent:
    """
    Drives a chat model through rounds of tool use against a vault.

    One instance handles one logical run: ``run`` starts it, ``resume``
    continues it after a clarification and ``cancel`` stops it at the next
    round boundary.
    """

    def __init__(
        self,
        model: ChatModel,
        executor: ToolExecutor,
        *,
        registry: Optional[ToolRegistry] = None,
        prompt_loader: Optional[PromptLoader] = None,
        resume_codec: Optional[ResumeCodec] = None,
        capabilities: Optional[AICapabilities] = None,
        web_enabled: bool = False,
        whitelisted_commands: Sequence[WhitelistedCommand] = (),
        disabled_tools: Sequence[str] = (),
        chat_history_length: int = 10,
        default_budget: Optional[Budget] = None,
        custom_instructions: Optional[str] = None,
        progress: Optional[ProgressSink] = None,
    ) -> None:
        self.model = model
        self.executor = executor
        self.registry = registry or get_tool_registry()
        self.prompt_loader = prompt_loader or PromptLoader()
        self.resume_codec = resume_codec or ResumeCodec()
        self.capabilities = capabilities or AICapabilities()
        self.web_enabled = web_enabled
        self.whitelisted_commands = list(whitelisted_commands)
        protected = {tool.value for tool in PROTECTED_TOOLS}
        self.disabled_tools = frozenset(name for name in disabled_tools if name not in protected)
        self.chat_history_length = chat_history_length
        self.default_budget = default_budget or Budget()
        self.custom_instructions = custom_instructions
        self.progress = progress
        self._cancelled = asyncio.Event()

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        model: ChatModel,
        executor: ToolExecutor,
        *,
        progress: Optional[ProgressSink] = None,
        **overrides: Any,
    ) -> "VaultAgent":
        options: Dict[str, Any] = {
            "resume_codec": ResumeCodec(config.resume_secret),
            "capabilities": config.capabilities,
            "web_enabled": config.web_enabled,
            "disabled_tools": config.disabled_tools,
            "chat_history_length": config.chat_history_length,
            "default_budget": Budget(
                max_iterations=config.max_iterations,
                max_total_tokens=config.max_total_tokens,
            ),
            "whitelisted_commands": executor.whitelisted_commands,
            "progress": progress,
        }
        options.update(overrides)
        return cls(model, executor, **options)

    # =========================================================================
    # Public API
    # =========================================================================

    def cancel(self) -> None:
        """Request cancellation; honoured at the top of the next round."""
        logger.info("Cancellation requested")
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    async def run(self, task: AgentTask, budget: Optional[Budget] = None) -> RunOutcome:
        """Start a run for ``task``; returns a terminal or suspended result."""
        budget = budget or self.default_budget
        system_prompt = build_system_prompt(
            self.prompt_loader,
            self.registry,
            task,
            self.capabilities,
            web_enabled=self.web_enabled,
            whitelisted_commands=self.whitelisted_commands,
            disabled_tools=sorted(self.disabled_tools),
            custom_instructions=self.custom_instructions,
        )
        transcript = build_initial_transcript(
            system_prompt,
            build_initial_message(self.prompt_loader, task),
            task.chat_history,
            self.chat_history_length,
        )
        logger.info(
            f"Starting agent run: max {budget.max_iterations} rounds, "
            f"{budget.max_total_tokens} tokens",
            extra={"web_enabled": self.web_enabled, "history": len(task.chat_history)},
        )
        return await self._loop(transcript, LoopState(), budget)

    async def resume(self, token: str, answer: str) -> RunOutcome:
        """Continue a suspended run with the user's answer.

        Raises:
            ResumeTokenError: if the token is malformed or was altered.
        """
        continuation = self.resume_codec.decode(token)
        transcript = list(continuation.transcript)
        transcript.append(
            TranscriptMessage.tool_result(continuation.pending_tool_call_id, f'User answered: "{answer}"')
        )
        for call_id in continuation.skipped_tool_call_ids:
            transcript.append(TranscriptMessage.tool_result(call_id, SKIPPED_AFTER_ASK_USER))
        if continuation.directive_pending:
            transcript.append(TranscriptMessage.user(STUCK_DIRECTIVE))

        logger.info(
            f"Resuming agent run after round {continuation.state.iteration}",
            extra={"transcript_length": len(transcript)},
        )
        return await self._loop(transcript, continuation.state, continuation.budget)

    # =========================================================================
    # Round loop
    # =========================================================================

    async def _loop(
        self, transcript: List[TranscriptMessage], state: LoopState, budget: Budget
    ) -> RunOutcome:
        tracker = BudgetTracker(budget, state.usage)
        detector = StuckLoopDetector()

        while not state.finished and state.iteration < budget.max_iterations:
            if self._cancelled.is_set():
                logger.info(f"Agent run cancelled after {state.iteration} round(s)")
                await self._emit("error", "Cancelled by user")
                return build_result(state, status="cancelled", error="Cancelled by user")

            state.iteration += 1
            finalize = tracker.should_finalize(state.iteration)
            if finalize and not state.final_warning_sent:
                transcript.append(TranscriptMessage.user(FINAL_ROUND_WARNING))
                state.final_warning_sent = True

            await self._emit(
                "iteration",
                f"Round {state.iteration}/{budget.max_iterations}{' (FINAL)' if finalize else ''}",
                detail=f"{state.usage.total_tokens:,} tokens used",
            )

            try:
                response = await self.model.complete(transcript, self._tool_schemas(finalize))
            except ModelTransportError as e:
                logger.error(f"Model call failed on round {state.iteration}: {e.message}")
                await self._emit("error", e.message)
                return build_result(state, status="error", error=e.message)
            except Exception as e:
                logger.exception(f"Unexpected model failure on round {state.iteration}")
                message = f"Model call failed: {e}"
                await self._emit("error", message)
                return build_result(state, status="error", error=message)

            usage = response.usage
            tracker.record_round(usage.prompt_tokens, usage.completion_tokens, usage.total_tokens)
            transcript.append(response.message)
            text = response.message.content or ""

            if not response.message.tool_calls:
                if text.strip():
                    state.summary = text
                    state.finished = True
                else:
                    logger.debug(f"Round {state.iteration} produced no text and no tool calls")
                continue

            if text.strip():
                await self._emit("thinking", "Thinking", full_content=text)

            suspension, directive = await self._dispatch_round(
                response.message.tool_calls, transcript, state, detector, finalize
            )
            if suspension is not None:
                return await self._suspend(transcript, state, budget, suspension, directive)
            if directive:
                transcript.append(TranscriptMessage.user(STUCK_DIRECTIVE))

        if not state.summary:
            state.summary = synthesize_summary(state)
        state.finished = True
        await self._emit(
            "complete",
            completion_message(state.summary),
            detail=f"{state.usage.total_tokens:,} total tokens, {len(state.usage.per_round)} rounds",
        )
        logger.info(
            f"Agent run finished after {state.iteration} round(s)",
            extra={"edits": state.edit_count, "tokens": state.usage.total_tokens},
        )
        return build_result(state)

    async def _dispatch_round(
        self,
        calls: Sequence[ToolCall],
        transcript: List[TranscriptMessage],
        state: LoopState,
        detector: StuckLoopDetector,
        finalize: bool = False,
    ) -> Tuple[Optional[_Suspension], bool]:
        suspension: Optional[_Suspension] = None
        directive = False

        for call in calls:
            if suspension is not None:
                suspension.skipped.append(call.id)
                continue

            content, outcome, stuck = await self._dispatch_call(call, state, detector, finalize)
            directive = directive or stuck

            if outcome is not None and outcome.suspend:
                if state.finished:
                    content = SKIPPED_AFTER_DONE
                else:
                    suspension = _Suspension(call.id, outcome.question or "", list(outcome.choices))
                    continue

            transcript.append(TranscriptMessage.tool_result(call.id, content))
            if outcome is not None:
                await self._emit("tool_result", call.name, full_content=content)

        return suspension, directive

    async def _dispatch_call(
        self, call: ToolCall, state: LoopState, detector: StuckLoopDetector, finalize: bool = False
    ) -> Tuple[str, Optional[ToolOutcome], bool]:
        """Run one tool call; returns (result text, outcome if executed, directive needed)."""
        arguments = _parse_arguments(call.arguments)
        if arguments is None:
            logger.warning(f"Invalid JSON arguments for {call.name}")
            return f"Error: Invalid JSON arguments: {call.arguments}", None, False

        check = detector.record(call.name, arguments)
        if check.blocked:
            return build_stuck_warning(call.name, check.count), None, check.inject_directive

        if call.name in self.disabled_tools:
            logger.warning(f"Rejected call to disabled tool {call.name}")
            return f'Error: Tool "{call.name}" is disabled. Use a different approach.', None, False

        if finalize and call.name == ToolName.ASK_USER.value:
            logger.warning("Rejected ask_user on the final round")
            return (
                'Error: Tool "ask_user" is not available in the final round. '
                "Call done() with your best summary.",
                None,
                False,
            )

        await self._emit("tool_call", call.name, detail=summarize_args(arguments))
        outcome = await self.executor.execute(call.name, arguments)
        self._apply_outcome(state, outcome)
        return outcome.content or EMPTY_RESULT, outcome, False

    def _apply_outcome(self, state: LoopState, outcome: ToolOutcome) -> None:
        _extend_unique(state.notes_read, outcome.notes_read)
        _extend_unique(state.notes_copied, outcome.notes_copied)
        _extend_unique(state.notes_created, outcome.notes_created)
        known_urls = {source.url for source in state.web_sources}
        for source in outcome.web_sources:
            if source.url not in known_urls:
                state.web_sources.append(source)
                known_urls.add(source.url)
        if outcome.edit is not None:
            state.edits_proposed.append(outcome.edit)
        if outcome.counts_as_edit:
            state.edit_count += 1
        for path, metadata in outcome.note_metadata.items():
            state.note_metadata.setdefault(path, {}).update(metadata)
        if outcome.done:
            state.finished = True
            state.summary = outcome.summary or state.summary

    async def _suspend(
        self,
        transcript: List[TranscriptMessage],
        state: LoopState,
        budget: Budget,
        suspension: _Suspension,
        directive: bool,
    ) -> SuspendedResult:
        continuation = Continuation(
            transcript=transcript,
            pending_tool_call_id=suspension.call_id,
            skipped_tool_call_ids=suspension.skipped,
            directive_pending=directive,
            question=suspension.question,
            choices=suspension.choices,
            state=state,
            budget=budget,
        )
        token = self.resume_codec.encode(continuation)
        logger.info(
            f"Agent run suspended on round {state.iteration} awaiting user answer",
            extra={"choices": len(suspension.choices)},
        )
        await self._emit("suspended", suspension.question, detail=", ".join(suspension.choices) or None)
        return build_suspended(
            state, question=suspension.question, choices=suspension.choices, resume_token=token
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    def _tool_schemas(self, finalize: bool) -> List[Dict[str, Any]]:
        names: List[ToolName] = self.registry.available_tools(
            self.capabilities,
            web_enabled=self.web_enabled,
            whitelisted_commands=self.whitelisted_commands,
            disabled_tools=self.disabled_tools,
            finalization=finalize,
        )
        return self.registry.schemas(names, self.whitelisted_commands)

    async def _emit(
        self,
        event_type: str,
        message: str,
        *,
        detail: Optional[str] = None,
        full_content: Optional[str] = None,
    ) -> None:
        if self.progress is None:
            return
        event = ProgressEvent(type=event_type, message=message, detail=detail, full_content=full_content)
        try:
            result = self.progress(event)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning(f"Progress sink failed for {event_type} event: {e}")


def build_agent(
    config: AppConfig,
    *,
    vault: Optional[VaultService] = None,
    model: Optional[ChatModel] = None,
    progress: Optional[ProgressSink] = None,
    manual_context_paths: Sequence[str] = (),
    whitelisted_commands: Sequence[WhitelistedCommand] = (),
    apply_edits: bool = False,
) -> VaultAgent:
    """Wire a filesystem-backed agent from configuration.

    Raises:
        VaultAgentError: if no model is given and no API key is configured.
    """
    if model is None:
        if not config.api_key:
            raise VaultAgentError(
                "OPENAI_API_KEY is not configured", {"setting": "OPENAI_API_KEY"}
            )
        model = ModelClient.from_config(config)

    backend = LocalVaultCapabilities(
        vault or VaultService(config),
        capabilities=config.capabilities,
        web_client=WebSearchClient.from_config(config) if config.web_enabled else None,
        manual_context_paths=manual_context_paths,
        apply_edits=apply_edits,
    )
    executor = ToolExecutor(
        backend,
        web_snippet_limit=config.web_snippet_limit,
        whitelisted_commands=whitelisted_commands,
    )
    return VaultAgent.from_config(config, model, executor, progress=progress)


__all__ = [
    "EMPTY_RESULT",
    "SKIPPED_AFTER_ASK_USER",
    "SKIPPED_AFTER_DONE",
    "ChatModel",
    "ProgressSink",
    "RunOutcome",
    "VaultAgent",
    "VaultAgentError",
    "build_agent",
]
