"""API tests for the agent and edit routes using FastAPI's TestClient."""

from __future__ import annotations

import itertools
import json
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi.testclient import TestClient
import pytest

from vault_agent.api.dependencies import get_app_config, get_chat_model, get_vault_service
from vault_agent.api.main import create_app
from vault_agent.models.agent import ToolCall, TranscriptMessage
from vault_agent.services.config import AppConfig
from vault_agent.services.model_client import ModelResponse, ModelUsage
from vault_agent.services.vault import VaultService

_ids = itertools.count(1)


def reply(text: Optional[str] = None, *calls: tuple) -> ModelResponse:
    tool_calls = [
        ToolCall(id=f"api_call_{next(_ids)}", name=name, arguments=json.dumps(arguments))
        for name, arguments in calls
    ]
    return ModelResponse(
        message=TranscriptMessage(role="assistant", content=text, tool_calls=tool_calls),
        usage=ModelUsage(prompt_tokens=8, completion_tokens=2, total_tokens=10),
    )


class FakeModel:
    def __init__(self, responses: List[ModelResponse]) -> None:
        self.responses = list(responses)

    async def complete(self, messages, tools, *, tool_choice: str = "auto") -> ModelResponse:
        return self.responses.pop(0)


@pytest.fixture
def vault_root(tmp_path: Path) -> Path:
    root = tmp_path / "vault"
    (root / "private").mkdir(parents=True)
    (root / "Plan.md").write_text("# Plan\n## Tasks\n- first", encoding="utf-8")
    (root / "private" / "Secret.md").write_text("hidden", encoding="utf-8")
    return root


@pytest.fixture
def app_factory(vault_root: Path):
    def build(model: Optional[FakeModel], api_key: Optional[str] = None):
        config = AppConfig(vault_path=vault_root, api_key=api_key, excluded_folders=["private"])
        app = create_app()
        app.dependency_overrides[get_app_config] = lambda: config
        app.dependency_overrides[get_vault_service] = lambda: VaultService(config)
        app.dependency_overrides[get_chat_model] = lambda: model
        return TestClient(app)

    return build


def test_health(app_factory) -> None:
    response = app_factory(None).get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


class TestAgentRoutes:
    """Tests for /api/agent."""

    def test_run_completes(self, app_factory) -> None:
        """A done() call ends the run with its summary."""
        client = app_factory(FakeModel([reply(None, ("done", {"summary": "Nothing to do"}))]))

        response = client.post("/api/agent/run", json={"task": "Check the plan"})

        assert response.status_code == 200
        body = response.json()
        assert body["result"]["status"] == "completed"
        assert body["result"]["summary"] == "Nothing to do"
        assert body["result"]["iterations_used"] == 1
        assert body["pending_edits"] == []

    def test_run_returns_pending_edits(self, app_factory, vault_root: Path) -> None:
        model = FakeModel(
            [
                reply(None, ("edit_note", {"file": "Plan", "position": "after:## Tasks", "content": "- new"})),
                reply(None, ("done", {"summary": "Added a task"})),
            ]
        )
        client = app_factory(model)

        response = client.post(
            "/api/agent/run",
            json={"task": "Add a task", "budget": {"max_iterations": 3, "max_total_tokens": 5000}},
        )

        body = response.json()
        assert body["result"]["edits_proposed"][0]["position"] == "after:## Tasks"
        assert len(body["pending_edits"]) == 1
        assert body["pending_edits"][0]["path"] == "Plan.md"
        assert "## Tasks\n\n- new\n- first" in body["pending_edits"][0]["new_content"]
        assert (vault_root / "Plan.md").read_text(encoding="utf-8") == "# Plan\n## Tasks\n- first"

    def test_run_without_api_key(self, app_factory) -> None:
        response = app_factory(None).post("/api/agent/run", json={"task": "x"})

        assert response.status_code == 503
        assert response.json()["error"] == "service_unavailable"
        assert "OPENAI_API_KEY" in response.json()["message"]

    def test_run_with_missing_current_note(self, app_factory) -> None:
        client = app_factory(FakeModel([]))

        response = client.post("/api/agent/run", json={"task": "x", "current_note_path": "Ghost.md"})

        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    def test_run_with_excluded_current_note(self, app_factory) -> None:
        client = app_factory(FakeModel([]))

        response = client.post("/api/agent/run", json={"task": "x", "current_note_path": "private/Secret.md"})

        assert response.status_code == 403

    def test_empty_task_rejected(self, app_factory) -> None:
        response = app_factory(FakeModel([])).post("/api/agent/run", json={"task": ""})

        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"

    def test_suspend_then_resume(self, app_factory) -> None:
        model = FakeModel(
            [
                reply(None, ("ask_user", {"question": "Which section?", "choices": ["Tasks", "Notes"]})),
                reply("Used the Tasks section."),
            ]
        )
        client = app_factory(model)

        first = client.post("/api/agent/run", json={"task": "Add a line"}).json()["result"]
        assert first["status"] == "suspended"
        assert first["choices"] == ["Tasks", "Notes"]

        second = client.post(
            "/api/agent/resume", json={"resume_token": first["resume_token"], "answer": "Tasks"}
        )

        assert second.status_code == 200
        result = second.json()["result"]
        assert result["status"] == "completed"
        assert result["summary"] == "Used the Tasks section."
        assert result["iterations_used"] == 2

    def test_resume_with_bad_token(self, app_factory) -> None:
        client = app_factory(FakeModel([]))

        response = client.post("/api/agent/resume", json={"resume_token": "va1.abc.def", "answer": "x"})

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_resume_token"


class TestEditRoutes:
    """Tests for /api/edits."""

    def test_preview_diff(self, app_factory, vault_root: Path) -> None:
        client = app_factory(None)

        response = client.post("/api/edits/preview", json={"file": "Plan", "position": "replace:3", "content": "- done"})

        body = response.json()
        assert response.status_code == 200
        assert body["path"] == "Plan.md"
        assert body["edit_type"] == "replace"
        assert body["new_content"] == "# Plan\n## Tasks\n- done"
        assert [line["type"] for line in body["diff"]] == ["unchanged", "unchanged", "removed", "added"]
        assert (vault_root / "Plan.md").read_text(encoding="utf-8").endswith("- first")

    def test_preview_rejected_edit(self, app_factory) -> None:
        response = app_factory(None).post(
            "/api/edits/preview", json={"file": "Plan", "position": "after:## Missing", "content": "x"}
        )

        body = response.json()
        assert response.status_code == 200
        assert body["error"].startswith('Heading not found: "## Missing"')
        assert body["diff"] == []

    def test_preview_missing_note(self, app_factory) -> None:
        response = app_factory(None).post("/api/edits/preview", json={"file": "Ghost", "position": "end"})

        assert response.status_code == 404

    def test_apply_edits(self, app_factory, vault_root: Path) -> None:
        payload: Dict[str, Any] = {
            "edits": [
                {"file": "Plan", "position": "end", "content": "Footer"},
                {"file": "Plan", "position": "delete:9"},
                {"file": "Ghost", "position": "end", "content": "x"},
            ]
        }

        response = app_factory(None).post("/api/edits/apply", json=payload)

        body = response.json()
        assert body["applied"] == ["Plan.md"]
        assert len(body["errors"]) == 2
        assert (vault_root / "Plan.md").read_text(encoding="utf-8") == "# Plan\n## Tasks\n- first\n\nFooter"
