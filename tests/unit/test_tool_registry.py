"""Unit tests for the tool registry."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from vault_agent.models.agent import AICapabilities, WhitelistedCommand
from vault_agent.services.tool_registry import (
    ARGUMENT_MODELS,
    ToolCategory,
    ToolName,
    ToolRegistry,
    ToolRegistryError,
    get_tool_registry,
    parse_arguments,
)


@pytest.fixture
def registry() -> ToolRegistry:
    return get_tool_registry()


class TestRegistryLoading:
    """The packaged schema table is complete and consistent."""

    def test_every_tool_has_schema_and_model(self, registry):
        for name in ToolName:
            schema = registry.schema(name)
            assert schema["function"]["name"] == name.value
            assert name in ARGUMENT_MODELS

    def test_incomplete_table_rejected(self):
        with pytest.raises(ToolRegistryError, match="Missing schemas"):
            ToolRegistry({"tools": []})

    def test_unknown_tool_rejected(self):
        data = {"tools": [{"category": "explore", "function": {"name": "format_disk"}}]}
        with pytest.raises(ToolRegistryError, match="unknown tool"):
            ToolRegistry(data)

    def test_schema_is_a_copy(self, registry):
        schema = registry.schema(ToolName.DONE)
        schema["function"]["name"] = "changed"
        assert registry.schema(ToolName.DONE)["function"]["name"] == "done"

    def test_execute_command_lists_whitelist(self, registry):
        commands = [WhitelistedCommand(id="app:reload", name="Reload", description="Reload the app")]
        description = registry.schema(ToolName.EXECUTE_COMMAND, commands)["function"]["description"]
        assert "AVAILABLE COMMANDS" in description
        assert '"Reload" (app:reload)' in description


class TestAvailableTools:
    """Tests for per-round tool selection."""

    def test_full_set_includes_explore_and_clarify(self, registry):
        tools = registry.available_tools(AICapabilities())
        assert ToolName.SEARCH_VAULT in tools
        assert ToolName.ASK_USER in tools
        assert ToolName.DONE in tools
        assert ToolName.WEB_SEARCH not in tools
        assert ToolName.EXECUTE_COMMAND not in tools

    def test_web_tools_when_enabled(self, registry):
        tools = registry.available_tools(AICapabilities(), web_enabled=True)
        assert ToolName.WEB_SEARCH in tools
        assert ToolName.READ_WEBPAGE in tools

    def test_finalization_subset(self, registry):
        """Final rounds offer done plus action tools only."""
        tools = registry.available_tools(AICapabilities(), web_enabled=True, finalization=True)
        assert ToolName.DONE in tools
        assert ToolName.EDIT_NOTE in tools
        for name in tools:
            assert registry.category(name) in (ToolCategory.ACTION, ToolCategory.TERMINATE)
        assert ToolName.ASK_USER not in tools
        assert ToolName.WEB_SEARCH not in tools

    def test_capabilities_restrict_actions(self, registry):
        caps = AICapabilities(can_add=False, can_delete=False, can_create=False)
        tools = registry.available_tools(caps)
        assert ToolName.EDIT_NOTE not in tools
        assert ToolName.CREATE_NOTE not in tools
        assert ToolName.DELETE_NOTE not in tools
        assert ToolName.OPEN_NOTE in tools

    def test_disabled_tools_removed_but_protected_kept(self, registry):
        tools = registry.available_tools(
            AICapabilities(), disabled_tools=["search_vault", "done", "ask_user"]
        )
        assert ToolName.SEARCH_VAULT not in tools
        assert ToolName.DONE in tools
        assert ToolName.ASK_USER in tools

    def test_execute_command_needs_whitelist(self, registry):
        commands = [WhitelistedCommand(id="x", name="X")]
        assert ToolName.EXECUTE_COMMAND in registry.available_tools(
            AICapabilities(), whitelisted_commands=commands
        )


class TestArgumentModels:
    """Tests for per-tool argument validation."""

    def test_limits_are_capped(self):
        args = parse_arguments(ToolName.SEARCH_VAULT, {"query": "x", "limit": 500})
        assert args.limit == 50

    def test_unknown_keys_ignored(self):
        args = parse_arguments(ToolName.READ_NOTE, {"path": "a.md", "extra": True})
        assert args.path == "a.md"

    def test_missing_required(self):
        with pytest.raises(ValidationError):
            parse_arguments(ToolName.EDIT_NOTE, {"file": "a.md"})

    def test_parse_name(self):
        assert ToolName.parse("done") is ToolName.DONE
        assert ToolName.parse("nope") is None
