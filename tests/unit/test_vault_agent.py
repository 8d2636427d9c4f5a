"""Unit tests for the VaultAgent round loop.

The chat model is replaced by a scripted fake so each round's tool calls are
known in advance; tools run against a temporary filesystem vault.
"""

from __future__ import annotations

import itertools
import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence
from unittest.mock import AsyncMock

import httpx
import pytest

from vault_agent.models.agent import (
    AgentResult,
    AgentTask,
    Budget,
    ProgressEvent,
    SuspendedResult,
    ToolCall,
    TranscriptMessage,
)
from vault_agent.services.agent_prompts import FINAL_ROUND_WARNING, STUCK_DIRECTIVE
from vault_agent.services.capabilities import LocalVaultCapabilities
from vault_agent.services.config import AppConfig
from vault_agent.services.model_client import ModelClient, ModelResponse, ModelTransportError, ModelUsage
from vault_agent.services.resume import ResumeTokenError
from vault_agent.services.tool_executor import ToolExecutor, ToolOutcome
from vault_agent.services.vault import VaultService
from vault_agent.services.vault_agent import (
    EMPTY_RESULT,
    SKIPPED_AFTER_ASK_USER,
    SKIPPED_AFTER_DONE,
    VaultAgent,
    VaultAgentError,
    build_agent,
)

_ids = itertools.count(1)


def call(name: str, arguments: Optional[Dict[str, Any]] = None, raw: Optional[str] = None) -> ToolCall:
    return ToolCall(
        id=f"call_{next(_ids)}",
        name=name,
        arguments=raw if raw is not None else json.dumps(arguments or {}),
    )


def reply(text: Optional[str] = None, *calls: ToolCall, tokens: int = 10) -> ModelResponse:
    return ModelResponse(
        message=TranscriptMessage(role="assistant", content=text, tool_calls=list(calls)),
        usage=ModelUsage(prompt_tokens=tokens - 2, completion_tokens=2, total_tokens=tokens),
    )


class ScriptedModel:
    """Returns queued responses in order and records what it was sent."""

    def __init__(self, responses: Sequence[Any]) -> None:
        self.responses = list(responses)
        self.requests: List[List[TranscriptMessage]] = []
        self.tool_names: List[List[str]] = []

    async def complete(self, messages, tools, *, tool_choice: str = "auto") -> ModelResponse:
        self.requests.append(list(messages))
        self.tool_names.append([tool["function"]["name"] for tool in tools])
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def tool_results(messages: Sequence[TranscriptMessage]) -> Dict[str, str]:
    return {message.tool_call_id: message.content for message in messages if message.role == "tool"}


@pytest.fixture
def vault(tmp_path: Path) -> VaultService:
    (tmp_path / "Plan.md").write_text("# Plan\n## Tasks\n- first", encoding="utf-8")
    (tmp_path / "Notes.md").write_text("Some notes", encoding="utf-8")
    return VaultService(vault_root=tmp_path)


@pytest.fixture
def executor(vault: VaultService) -> ToolExecutor:
    executor = ToolExecutor(LocalVaultCapabilities(vault))
    executor.execute = AsyncMock(wraps=executor.execute)
    return executor


@pytest.fixture
def events() -> List[ProgressEvent]:
    return []


def make_agent(model: ScriptedModel, executor: ToolExecutor, events: List[ProgressEvent], **kwargs) -> VaultAgent:
    return VaultAgent(model, executor, progress=events.append, **kwargs)


TASK = AgentTask(task="Tidy my plan")


class TestTermination:
    """Tests for the ways a run ends normally."""

    @pytest.mark.asyncio
    async def test_done_finishes_and_remaining_calls_still_run(self, executor, events):
        """Calls after done in the same round are dispatched; the loop then stops."""
        done = call("done", {"summary": "All tidy"})
        read = call("read_note", {"path": "Plan"})
        model = ScriptedModel([reply("Finishing", done, read)])

        result = await make_agent(model, executor, events).run(TASK)

        assert isinstance(result, AgentResult)
        assert result.status == "completed"
        assert result.success
        assert result.summary == "All tidy"
        assert result.iterations_used == 1
        assert result.notes_read == ["Plan.md"]
        assert executor.execute.await_count == 2
        assert events[-1].type == "complete"

    @pytest.mark.asyncio
    async def test_plain_text_answer_finishes(self, executor, events):
        model = ScriptedModel([reply("The plan has one task.")])

        result = await make_agent(model, executor, events).run(TASK)

        assert result.summary == "The plan has one task."
        assert result.iterations_used == 1
        assert result.error is None

    @pytest.mark.asyncio
    async def test_empty_reply_continues(self, executor, events):
        """A round with neither text nor tool calls moves to the next round."""
        model = ScriptedModel([reply(None), reply("  "), reply(None, call("done", {"summary": "ok"}))])

        result = await make_agent(model, executor, events).run(TASK)

        assert result.iterations_used == 3
        assert result.summary == "ok"

    @pytest.mark.asyncio
    async def test_single_round_budget(self, executor, events):
        """With one round the loop stops and synthesizes a summary."""
        model = ScriptedModel([reply(None, call("read_note", {"path": "Plan"}))])

        result = await make_agent(model, executor, events).run(TASK, Budget(max_iterations=1))

        assert result.status == "completed"
        assert result.iterations_used == 1
        assert result.summary == "Finished processing (max iterations reached)."
        assert len(model.requests) == 1

    @pytest.mark.asyncio
    async def test_synthesized_summary_counts_edits(self, executor, events):
        edit = call("edit_note", {"file": "Plan", "position": "end", "content": "- second"})
        model = ScriptedModel([reply(None, edit), reply(None, call("list_tags"))])

        result = await make_agent(model, executor, events).run(TASK, Budget(max_iterations=2))

        assert result.summary == "Completed 1 edit(s)."
        assert len(result.edits_proposed) == 1
        assert result.edits_proposed[0].position == "end"


class TestFinalRound:
    """Tests for the finalization-only tool subset."""

    @pytest.mark.asyncio
    async def test_last_round_restricts_tools_and_warns_once(self, executor, events):
        model = ScriptedModel(
            [
                reply(None, call("list_tags")),
                reply(None, call("read_note", {"path": "Plan"})),
            ]
        )

        await make_agent(model, executor, events).run(TASK, Budget(max_iterations=2))

        assert "search_vault" in model.tool_names[0]
        assert "ask_user" in model.tool_names[0]
        assert "search_vault" not in model.tool_names[1]
        assert "ask_user" not in model.tool_names[1]
        assert "done" in model.tool_names[1]
        assert "edit_note" in model.tool_names[1]
        assert model.requests[1][-1].content == FINAL_ROUND_WARNING
        warnings = [m for m in model.requests[1] if m.content == FINAL_ROUND_WARNING]
        assert len(warnings) == 1
        assert any(event.message == "Round 2/2 (FINAL)" for event in events)

    @pytest.mark.asyncio
    async def test_token_ceiling_triggers_finalization(self, executor, events):
        model = ScriptedModel(
            [
                reply(None, call("list_tags"), tokens=600),
                reply(None, call("done", {"summary": "stop"})),
            ]
        )

        result = await make_agent(model, executor, events).run(
            TASK, Budget(max_iterations=10, max_total_tokens=500)
        )

        assert "search_vault" not in model.tool_names[1]
        assert result.token_usage.total_tokens == 610
        assert result.token_usage.per_round == [600, 10]

    @pytest.mark.asyncio
    async def test_ask_user_on_last_round_does_not_suspend(self, executor, events):
        """A clarification request on the final round is rejected in-band."""
        model = ScriptedModel([reply(None, call("ask_user", {"question": "Which list?"}))])

        result = await make_agent(model, executor, events).run(TASK, Budget(max_iterations=1))

        assert isinstance(result, AgentResult)
        assert result.status == "completed"
        assert result.iterations_used == 1
        assert result.summary == "Finished processing (max iterations reached)."
        executor.execute.assert_not_awaited()
        assert not any(event.type == "suspended" for event in events)

    @pytest.mark.asyncio
    async def test_ask_user_after_token_ceiling_gets_rejection(self, executor, events):
        """Once finalizing, ask_user is answered with an error the model can read."""
        ask = call("ask_user", {"question": "Which list?"})
        model = ScriptedModel(
            [
                reply(None, call("list_tags"), tokens=600),
                reply(None, ask),
                reply(None, call("done", {"summary": "stop"})),
            ]
        )

        result = await make_agent(model, executor, events).run(
            TASK, Budget(max_iterations=10, max_total_tokens=500)
        )

        assert isinstance(result, AgentResult)
        assert result.summary == "stop"
        assert len(model.requests) == 3
        rejection = tool_results(model.requests[2])[ask.id]
        assert rejection.startswith('Error: Tool "ask_user" is not available in the final round')
        assert "done()" in rejection


class TestStuckLoop:
    """Tests for repeated identical calls."""

    @pytest.mark.asyncio
    async def test_warning_then_directive(self, executor, events):
        """The 3rd identical call is answered with a warning, the 4th also queues a directive."""
        repeats = [call("search_vault", {"query": "plan"}) for _ in range(4)]
        model = ScriptedModel([reply(None, repeat) for repeat in repeats] + [reply("Giving up.")])

        result = await make_agent(model, executor, events).run(TASK)

        assert executor.execute.await_count == 2
        results = tool_results(model.requests[4])
        assert "KEYWORD RESULTS" in results[repeats[1].id]
        assert results[repeats[2].id].startswith('WARNING: You\'ve called "search_vault" with the same arguments 3 times')
        assert "4 times" in results[repeats[3].id]
        assert model.requests[3][-1].role == "tool"
        assert model.requests[4][-1].content == STUCK_DIRECTIVE
        assert result.summary == "Giving up."

    @pytest.mark.asyncio
    async def test_different_arguments_are_not_stuck(self, executor, events):
        calls = [call("search_vault", {"query": f"q{index}"}) for index in range(4)]
        model = ScriptedModel([reply(None, *calls), reply("done")])

        await make_agent(model, executor, events).run(TASK)

        assert executor.execute.await_count == 4


class TestInBandErrors:
    """Errors that become tool results and keep the loop going."""

    @pytest.mark.asyncio
    async def test_invalid_json_arguments(self, executor, events):
        bad = call("read_note", raw="{path: Plan")
        model = ScriptedModel([reply(None, bad), reply("ok")])

        await make_agent(model, executor, events).run(TASK)

        assert tool_results(model.requests[1])[bad.id] == "Error: Invalid JSON arguments: {path: Plan"
        executor.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_disabled_tool(self, executor, events):
        blocked = call("search_vault", {"query": "x"})
        model = ScriptedModel([reply(None, blocked), reply("ok")])

        await make_agent(model, executor, events, disabled_tools=["search_vault", "done"]).run(TASK)

        assert tool_results(model.requests[1])[blocked.id] == (
            'Error: Tool "search_vault" is disabled. Use a different approach.'
        )
        assert "search_vault" not in model.tool_names[0]
        assert "done" in model.tool_names[0]

    @pytest.mark.asyncio
    async def test_empty_tool_output(self, executor, events):
        empty = call("list_tags")
        model = ScriptedModel([reply(None, empty), reply("ok")])
        executor.execute.return_value = ToolOutcome(content="")

        await make_agent(model, executor, events).run(TASK)

        assert tool_results(model.requests[1])[empty.id] == EMPTY_RESULT


class TestTransportAndCancellation:
    """Fatal conditions keep partial progress."""

    @pytest.mark.asyncio
    async def test_transport_error_keeps_partial_state(self, executor, events):
        model = ScriptedModel(
            [
                reply(None, call("read_note", {"path": "Plan"})),
                ModelTransportError("API error: 500", {"status_code": 500}),
            ]
        )

        result = await make_agent(model, executor, events).run(TASK)

        assert result.status == "error"
        assert not result.success
        assert result.error == "API error: 500"
        assert result.notes_read == ["Plan.md"]
        assert result.iterations_used == 2
        assert result.token_usage.total_tokens == 10
        assert events[-1].type == "error"

    @pytest.mark.asyncio
    async def test_unexpected_model_failure_becomes_error_result(self, executor, events):
        """Any exception from the chat model ends the run with an error result."""
        model = ScriptedModel(
            [
                reply(None, call("read_note", {"path": "Plan"})),
                ValueError("invalid literal for int()"),
            ]
        )

        result = await make_agent(model, executor, events).run(TASK)

        assert isinstance(result, AgentResult)
        assert result.status == "error"
        assert result.error == "Model call failed: invalid literal for int()"
        assert result.notes_read == ["Plan.md"]
        assert result.iterations_used == 2
        assert events[-1].type == "error"

    @pytest.mark.asyncio
    async def test_malformed_usage_from_client_becomes_error_result(self, executor, events):
        body = {"choices": [{"message": {"content": "hi"}}], "usage": {"prompt_tokens": "n/a"}}
        model = ModelClient(
            "test-key",
            base_url="https://llm.test/v1",
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json=body)),
        )

        result = await make_agent(model, executor, events).run(TASK)

        assert result.status == "error"
        assert result.error == "Model response usage is malformed"
        assert result.iterations_used == 1

    @pytest.mark.asyncio
    async def test_cancel_before_run(self, executor, events):
        model = ScriptedModel([])
        agent = make_agent(model, executor, events)
        agent.cancel()

        result = await agent.run(TASK)

        assert agent.cancelled
        assert result.status == "cancelled"
        assert result.error == "Cancelled by user"
        assert result.iterations_used == 0
        assert model.requests == []

    @pytest.mark.asyncio
    async def test_cancel_between_rounds(self, executor, events):
        """Cancellation requested mid-run takes effect at the next round."""
        agent_holder: List[VaultAgent] = []

        class CancellingModel(ScriptedModel):
            async def complete(self, messages, tools, *, tool_choice: str = "auto"):
                response = await super().complete(messages, tools, tool_choice=tool_choice)
                agent_holder[0].cancel()
                return response

        model = CancellingModel([reply(None, call("read_note", {"path": "Plan"}))])
        agent = make_agent(model, executor, events)
        agent_holder.append(agent)

        result = await agent.run(TASK)

        assert result.status == "cancelled"
        assert result.iterations_used == 1
        assert result.notes_read == ["Plan.md"]


class TestAskUser:
    """Suspension and resumption through ask_user."""

    @pytest.mark.asyncio
    async def test_suspend_and_resume(self, executor, events):
        ask = call("ask_user", {"question": "Which list?", "choices": ["Tasks", "Ideas"]})
        model = ScriptedModel([reply("Need input", ask), reply(None, call("done", {"summary": "Used Tasks"}))])
        agent = make_agent(model, executor, events)

        suspended = await agent.run(TASK)

        assert isinstance(suspended, SuspendedResult)
        assert suspended.question == "Which list?"
        assert suspended.choices == ["Tasks", "Ideas"]
        assert suspended.iterations_used == 1
        assert events[-1].type == "suspended"

        continuation = agent.resume_codec.decode(suspended.resume_token)
        assert continuation.state.iteration == 1
        assert continuation.pending_tool_call_id == ask.id

        result = await agent.resume(suspended.resume_token, "Tasks")

        resumed_request = model.requests[1]
        assert len(resumed_request) == len(continuation.transcript) + 1
        assert resumed_request[-1].role == "tool"
        assert resumed_request[-1].tool_call_id == ask.id
        assert resumed_request[-1].content == 'User answered: "Tasks"'
        assert result.summary == "Used Tasks"
        assert result.iterations_used == 2
        assert result.token_usage.total_tokens == 20

    @pytest.mark.asyncio
    async def test_calls_after_ask_user_are_skipped_then_answered(self, executor, events):
        ask = call("ask_user", {"question": "Proceed?"})
        later = call("read_note", {"path": "Plan"})
        model = ScriptedModel([reply(None, ask, later), reply("fine")])
        agent = make_agent(model, executor, events)

        suspended = await agent.run(TASK)
        executor.execute.assert_awaited_once()
        continuation = agent.resume_codec.decode(suspended.resume_token)
        assert continuation.skipped_tool_call_ids == [later.id]

        await agent.resume(suspended.resume_token, "yes")

        # One answer plus one skipped result per call issued after ask_user.
        assert len(model.requests[1]) == len(continuation.transcript) + 2
        results = tool_results(model.requests[1])
        assert results[ask.id] == 'User answered: "yes"'
        assert results[later.id] == SKIPPED_AFTER_ASK_USER
        order = [m.tool_call_id for m in model.requests[1] if m.role == "tool"]
        assert order == [ask.id, later.id]

    @pytest.mark.asyncio
    async def test_ask_user_after_done_does_not_suspend(self, executor, events):
        done = call("done", {"summary": "finished"})
        ask = call("ask_user", {"question": "Anything else?"})
        model = ScriptedModel([reply(None, done, ask)])

        result = await make_agent(model, executor, events).run(TASK)

        assert isinstance(result, AgentResult)
        assert result.summary == "finished"
        assert events[-2].type == "tool_result"
        assert events[-2].full_content == SKIPPED_AFTER_DONE

    @pytest.mark.asyncio
    async def test_resume_rejects_tampered_token(self, executor, events):
        model = ScriptedModel([reply(None, call("ask_user", {"question": "?"}))])
        agent = make_agent(model, executor, events)
        suspended = await agent.run(TASK)

        with pytest.raises(ResumeTokenError):
            await agent.resume(suspended.resume_token[:-2] + "xx", "answer")


class TestProgressSink:
    @pytest.mark.asyncio
    async def test_async_sink_and_failing_sink(self, executor):
        received: List[str] = []

        async def sink(event: ProgressEvent) -> None:
            received.append(event.type)
            if event.type == "tool_call":
                raise RuntimeError("sink broke")

        model = ScriptedModel([reply("thinking...", call("list_tags")), reply("done")])
        result = await VaultAgent(model, executor, progress=sink).run(TASK)

        assert result.success
        assert received[:4] == ["iteration", "thinking", "tool_call", "tool_result"]
        assert received[-1] == "complete"


class TestBuildAgent:
    def test_missing_api_key(self, tmp_path: Path):
        config = AppConfig(vault_path=tmp_path)

        with pytest.raises(VaultAgentError, match="OPENAI_API_KEY"):
            build_agent(config)

    def test_wires_budget_from_config(self, tmp_path: Path):
        config = AppConfig(vault_path=tmp_path, max_iterations=4, max_total_tokens=5000, disabled_tools=["list_tags"])

        agent = build_agent(config, model=ScriptedModel([]))

        assert agent.default_budget == Budget(max_iterations=4, max_total_tokens=5000)
        assert agent.disabled_tools == frozenset({"list_tags"})
        assert isinstance(agent.executor.capabilities, LocalVaultCapabilities)
