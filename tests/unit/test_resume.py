"""Unit tests for resume token encoding."""

from __future__ import annotations

import base64
import json

import pytest

from vault_agent.models.agent import Budget, LoopState, ToolCall, TranscriptMessage
from vault_agent.models.continuation import Continuation
from vault_agent.services.resume import ResumeCodec, ResumeTokenError


@pytest.fixture
def continuation() -> Continuation:
    call = ToolCall(id="call_1", name="ask_user", arguments='{"question": "Which?"}')
    return Continuation(
        transcript=[
            TranscriptMessage.system("system"),
            TranscriptMessage.user("task"),
            TranscriptMessage(role="assistant", tool_calls=[call]),
        ],
        pending_tool_call_id="call_1",
        skipped_tool_call_ids=["call_2"],
        directive_pending=True,
        question="Which?",
        choices=["A", "B"],
        state=LoopState(iteration=2, edit_count=1),
        budget=Budget(max_iterations=5, max_total_tokens=5000),
    )


def _reencode_payload(token: str, mutate) -> str:
    prefix, payload, signature = token.split(".")
    raw = json.loads(base64.urlsafe_b64decode(payload + "=" * (-len(payload) % 4)))
    mutate(raw)
    new_payload = base64.urlsafe_b64encode(json.dumps(raw).encode()).decode().rstrip("=")
    return f"{prefix}.{new_payload}.{signature}"


class TestResumeCodec:
    """Tests for ResumeCodec."""

    def test_round_trip_preserves_state(self, continuation):
        codec = ResumeCodec("secret")
        decoded = codec.decode(codec.encode(continuation))
        assert decoded.pending_tool_call_id == "call_1"
        assert decoded.skipped_tool_call_ids == ["call_2"]
        assert decoded.directive_pending is True
        assert decoded.state.iteration == 2
        assert decoded.budget.max_iterations == 5
        assert len(decoded.transcript) == 3
        assert decoded.transcript[2].tool_calls[0].name == "ask_user"

    def test_token_is_opaque_string(self, continuation):
        token = ResumeCodec().encode(continuation)
        assert token.startswith("va1.")
        assert token.count(".") == 2
        assert "Which?" not in token

    def test_tampered_payload_rejected(self, continuation):
        """Editing the payload invalidates the signature."""
        codec = ResumeCodec("secret")
        token = _reencode_payload(codec.encode(continuation), lambda raw: raw["state"].update(iteration=0))
        with pytest.raises(ResumeTokenError, match="signature"):
            codec.decode(token)

    def test_wrong_secret_rejected(self, continuation):
        token = ResumeCodec("one").encode(continuation)
        with pytest.raises(ResumeTokenError):
            ResumeCodec("two").decode(token)

    @pytest.mark.parametrize("token", ["", "garbage", "a.b", "a.b.c.d"])
    def test_malformed_tokens(self, token):
        with pytest.raises(ResumeTokenError):
            ResumeCodec().decode(token)

    def test_unknown_prefix(self, continuation):
        token = ResumeCodec().encode(continuation)
        with pytest.raises(ResumeTokenError, match="version"):
            ResumeCodec().decode("va9" + token[3:])

    def test_error_carries_details(self, continuation):
        token = ResumeCodec().encode(continuation)
        with pytest.raises(ResumeTokenError) as excinfo:
            ResumeCodec().decode("vx1" + token[3:])
        assert excinfo.value.details["received"] == "vx1"
