"""Tool registry - closed set of agent tools, their schemas and argument models.

Schemas are loaded once from ``vault_agent/prompts/tools.json`` into an
immutable ``ToolRegistry``. Every tool name is a ``ToolName`` member, and
every member has exactly one schema entry, category and argument model;
``ToolRegistry`` refuses to build otherwise.
"""

from __future__ import annotations

import copy
from enum import Enum
from functools import lru_cache
import json
import logging
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Literal, Mapping, Optional, Sequence, Type

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..models.agent import AICapabilities, WhitelistedCommand

logger = logging.getLogger(__name__)

DEFAULT_TOOLS_FILE = Path(__file__).resolve().parent.parent / "prompts" / "tools.json"


class ToolName(str, Enum):
    SEARCH_VAULT = "search_vault"
    READ_NOTE = "read_note"
    LIST_NOTES = "list_notes"
    GET_LINKS = "get_links"
    EXPLORE_STRUCTURE = "explore_structure"
    LIST_TAGS = "list_tags"
    GET_MANUAL_CONTEXT = "get_manual_context"
    GET_PROPERTIES = "get_properties"
    GET_FILE_INFO = "get_file_info"
    FIND_DEAD_LINKS = "find_dead_links"
    QUERY_NOTES = "query_notes"
    WEB_SEARCH = "web_search"
    READ_WEBPAGE = "read_webpage"
    EDIT_NOTE = "edit_note"
    CREATE_NOTE = "create_note"
    OPEN_NOTE = "open_note"
    MOVE_NOTE = "move_note"
    UPDATE_PROPERTIES = "update_properties"
    ADD_TAGS = "add_tags"
    LINK_NOTES = "link_notes"
    COPY_NOTES = "copy_notes"
    DELETE_NOTE = "delete_note"
    EXECUTE_COMMAND = "execute_command"
    DONE = "done"
    ASK_USER = "ask_user"

    @classmethod
    def parse(cls, name: str) -> Optional["ToolName"]:
        try:
            return cls(name)
        except ValueError:
            return None


class ToolCategory(str, Enum):
    EXPLORE = "explore"
    WEB = "web"
    ACTION = "action"
    TERMINATE = "terminate"
    CLARIFY = "clarify"


# Never eligible for administrative disabling.
PROTECTED_TOOLS = frozenset({ToolName.DONE, ToolName.ASK_USER})


# ===== Argument models =====


class ToolArguments(BaseModel):
    """Base for per-tool argument models; unknown keys are ignored."""

    model_config = ConfigDict(extra="ignore", frozen=True)


class SearchVaultArgs(ToolArguments):
    query: str = Field(..., min_length=1)
    mode: Literal["keyword", "semantic", "both"] = "keyword"
    limit: int = Field(10, ge=1)

    @field_validator("limit")
    @classmethod
    def _cap_limit(cls, value: int) -> int:
        return min(value, 50)


class PathArgs(ToolArguments):
    path: str = Field(..., min_length=1)


class ListNotesArgs(ToolArguments):
    folder: Optional[str] = None
    limit: int = Field(30, ge=1)
    include_metadata: bool = False

    @field_validator("limit")
    @classmethod
    def _cap_limit(cls, value: int) -> int:
        return min(value, 50)


class GetLinksArgs(ToolArguments):
    path: str = Field(..., min_length=1)
    direction: Literal["in", "out", "both"] = "both"
    depth: int = Field(1, ge=1, le=3)


class ExploreStructureArgs(ToolArguments):
    action: Literal["list_folder", "find_by_tag"]
    folder: Optional[str] = None
    tag: Optional[str] = None
    recursive: bool = False


class NoArgs(ToolArguments):
    pass


class FindDeadLinksArgs(ToolArguments):
    path: Optional[str] = None


class QueryNotesArgs(ToolArguments):
    filter: Dict[str, Any] = Field(default_factory=dict)
    modified_after: Optional[str] = None
    modified_before: Optional[str] = None
    has_property: Optional[str] = None
    sort_by: Optional[Literal["name", "modified", "created"]] = None
    limit: int = Field(20, ge=1, le=100)


class WebSearchArgs(ToolArguments):
    query: str = Field(..., min_length=1)


class ReadWebpageArgs(ToolArguments):
    url: str = Field(..., min_length=1)
    max_tokens: int = Field(4000, ge=100, le=32000)


class EditNoteArgs(ToolArguments):
    file: str = Field(..., min_length=1)
    position: str = Field(..., min_length=1)
    content: str = ""


class CreateNoteArgs(ToolArguments):
    path: str = Field(..., min_length=1)
    content: str = ""


class MoveNoteArgs(ToolArguments):
    from_path: str = Field(..., min_length=1)
    to_path: str = Field(..., min_length=1)


class UpdatePropertiesArgs(ToolArguments):
    path: str = Field(..., min_length=1)
    properties: Dict[str, Any]


class AddTagsArgs(ToolArguments):
    path: str = Field(..., min_length=1)
    tags: List[str] = Field(..., min_length=1)


class LinkNotesArgs(ToolArguments):
    source: str = Field(..., min_length=1)
    target: str = Field(..., min_length=1)
    context: Optional[str] = None


class CopyNotesArgs(ToolArguments):
    paths: List[str] = Field(..., min_length=1)


class ExecuteCommandArgs(ToolArguments):
    command: str = Field(..., min_length=1)


class DoneArgs(ToolArguments):
    summary: str = ""


class AskUserArgs(ToolArguments):
    question: str = Field(..., min_length=1)
    choices: List[str] = Field(default_factory=list)


ARGUMENT_MODELS: Mapping[ToolName, Type[ToolArguments]] = MappingProxyType(
    {
        ToolName.SEARCH_VAULT: SearchVaultArgs,
        ToolName.READ_NOTE: PathArgs,
        ToolName.LIST_NOTES: ListNotesArgs,
        ToolName.GET_LINKS: GetLinksArgs,
        ToolName.EXPLORE_STRUCTURE: ExploreStructureArgs,
        ToolName.LIST_TAGS: NoArgs,
        ToolName.GET_MANUAL_CONTEXT: NoArgs,
        ToolName.GET_PROPERTIES: PathArgs,
        ToolName.GET_FILE_INFO: PathArgs,
        ToolName.FIND_DEAD_LINKS: FindDeadLinksArgs,
        ToolName.QUERY_NOTES: QueryNotesArgs,
        ToolName.WEB_SEARCH: WebSearchArgs,
        ToolName.READ_WEBPAGE: ReadWebpageArgs,
        ToolName.EDIT_NOTE: EditNoteArgs,
        ToolName.CREATE_NOTE: CreateNoteArgs,
        ToolName.OPEN_NOTE: PathArgs,
        ToolName.MOVE_NOTE: MoveNoteArgs,
        ToolName.UPDATE_PROPERTIES: UpdatePropertiesArgs,
        ToolName.ADD_TAGS: AddTagsArgs,
        ToolName.LINK_NOTES: LinkNotesArgs,
        ToolName.COPY_NOTES: CopyNotesArgs,
        ToolName.DELETE_NOTE: PathArgs,
        ToolName.EXECUTE_COMMAND: ExecuteCommandArgs,
        ToolName.DONE: DoneArgs,
        ToolName.ASK_USER: AskUserArgs,
    }
)


def parse_arguments(name: ToolName, arguments: Dict[str, Any]) -> ToolArguments:
    """Validate raw arguments into the tool's model. Raises pydantic.ValidationError."""
    return ARGUMENT_MODELS[name].model_validate(arguments)


class ToolRegistryError(Exception):
    """Raised when the tool schema table is missing or inconsistent."""


class ToolRegistry:
    """Immutable table of tool schemas and categories."""

    def __init__(self, data: Dict[str, Any]) -> None:
        schemas: Dict[ToolName, Dict[str, Any]] = {}
        categories: Dict[ToolName, ToolCategory] = {}
        for entry in data.get("tools", []):
            function = entry.get("function") or {}
            name = ToolName.parse(function.get("name", ""))
            if name is None:
                raise ToolRegistryError(f"Schema for unknown tool: {function.get('name')!r}")
            if name in schemas:
                raise ToolRegistryError(f"Duplicate schema for tool: {name.value}")
            schemas[name] = {"type": entry.get("type", "function"), "function": function}
            categories[name] = ToolCategory(entry["category"])

        missing = [name.value for name in ToolName if name not in schemas]
        if missing:
            raise ToolRegistryError(f"Missing schemas for tools: {', '.join(missing)}")

        self._schemas: Mapping[ToolName, Dict[str, Any]] = MappingProxyType(schemas)
        self._categories: Mapping[ToolName, ToolCategory] = MappingProxyType(categories)

    @classmethod
    def from_file(cls, path: Path = DEFAULT_TOOLS_FILE) -> "ToolRegistry":
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ToolRegistryError(f"Failed to load tool schemas from {path}: {e}") from e
        logger.info(f"Loaded tool schemas from {path}")
        return cls(data)

    def category(self, name: ToolName) -> ToolCategory:
        return self._categories[name]

    def names_in(self, category: ToolCategory) -> List[ToolName]:
        return [name for name in ToolName if self._categories[name] is category]

    def schema(
        self, name: ToolName, whitelisted_commands: Sequence[WhitelistedCommand] = ()
    ) -> Dict[str, Any]:
        """OpenAI function-calling schema for one tool (a fresh copy)."""
        schema = copy.deepcopy(self._schemas[name])
        if name is ToolName.EXECUTE_COMMAND and whitelisted_commands:
            listing = "\n".join(
                f'- "{command.name}" ({command.id}): {command.description}'
                for command in whitelisted_commands
            )
            schema["function"]["description"] = (
                f"{schema['function']['description']}\n\nAVAILABLE COMMANDS:\n{listing}"
            )
        return schema

    def schemas(
        self, names: Iterable[ToolName], whitelisted_commands: Sequence[WhitelistedCommand] = ()
    ) -> List[Dict[str, Any]]:
        return [self.schema(name, whitelisted_commands) for name in names]

    def available_tools(
        self,
        capabilities: AICapabilities,
        *,
        web_enabled: bool = False,
        whitelisted_commands: Sequence[WhitelistedCommand] = (),
        disabled_tools: Iterable[str] = (),
        finalization: bool = False,
    ) -> List[ToolName]:
        """Tools offered to the model for one round.

        The finalization subset keeps only ``done`` and the action tools.
        Disabled names are removed, except the protected tools.
        """
        can_modify = capabilities.can_add or capabilities.can_delete
        tools: List[ToolName] = []
        if not finalization:
            tools.extend(self.names_in(ToolCategory.EXPLORE))
            if web_enabled:
                tools.extend(self.names_in(ToolCategory.WEB))

        tools.append(ToolName.DONE)
        if can_modify:
            tools.append(ToolName.EDIT_NOTE)
        if capabilities.can_create:
            tools.append(ToolName.CREATE_NOTE)
        tools.append(ToolName.OPEN_NOTE)
        if can_modify:
            tools.extend(
                [ToolName.MOVE_NOTE, ToolName.UPDATE_PROPERTIES, ToolName.ADD_TAGS, ToolName.LINK_NOTES]
            )
        tools.append(ToolName.COPY_NOTES)
        if capabilities.can_delete:
            tools.append(ToolName.DELETE_NOTE)
        if whitelisted_commands:
            tools.append(ToolName.EXECUTE_COMMAND)
        if not finalization:
            tools.append(ToolName.ASK_USER)

        disabled = set(disabled_tools)
        return [name for name in tools if name in PROTECTED_TOOLS or name.value not in disabled]


@lru_cache(maxsize=1)
def get_tool_registry() -> ToolRegistry:
    """Load the packaged tool table once per process."""
    return ToolRegistry.from_file()


__all__ = [
    "ARGUMENT_MODELS",
    "DEFAULT_TOOLS_FILE",
    "PROTECTED_TOOLS",
    "ToolArguments",
    "ToolCategory",
    "ToolName",
    "ToolRegistry",
    "ToolRegistryError",
    "get_tool_registry",
    "parse_arguments",
]
