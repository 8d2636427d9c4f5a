"""Tool Executor - dispatches agent tool calls to the capability surface.

Each ``ToolName`` has exactly one handler; the table is checked for
completeness when the executor is built. Handlers turn capability results
into the text the model sees. Failures never propagate: unknown tools,
invalid arguments and handler errors all come back as a ``ToolOutcome``
carrying an error message with a recovery suggestion.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from pydantic import ValidationError

from ..models.agent import EditInstruction, WebSource, WhitelistedCommand
from . import tool_registry as registry
from .capabilities import NOT_SUPPORTED, VaultCapabilities, add_line_numbers
from .tool_registry import ToolName, parse_arguments
from .web_search import WebSearchError

logger = logging.getLogger(__name__)


@dataclass
class ToolOutcome:
    """Result of one dispatched tool call plus its loop-state side effects."""

    content: str
    success: bool = True
    done: bool = False
    summary: Optional[str] = None
    suspend: bool = False
    question: Optional[str] = None
    choices: List[str] = field(default_factory=list)
    edit: Optional[EditInstruction] = None
    counts_as_edit: bool = False
    notes_read: List[str] = field(default_factory=list)
    notes_copied: List[str] = field(default_factory=list)
    notes_created: List[str] = field(default_factory=list)
    web_sources: List[WebSource] = field(default_factory=list)
    note_metadata: Dict[str, Dict[str, Any]] = field(default_factory=dict)


Handler = Callable[[Any], Awaitable[ToolOutcome]]


def _not_available(tool: ToolName) -> ToolOutcome:
    return ToolOutcome(content=f"Error: {tool.value} is not available.", success=False)


def _format_validation_error(error: ValidationError) -> str:
    problems = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ())) or "arguments"
        problems.append(f"{location}: {item.get('msg', 'invalid value')}")
    return "; ".join(problems)


def get_error_suggestion(tool: str, error: str) -> str:
    """Recovery hint appended to tool errors so the model can self-correct."""
    error_lower = error.lower()

    if "excluded" in error_lower:
        return "This location is excluded from the assistant. Work with other notes instead."
    if "not found" in error_lower or "does not exist" in error_lower:
        if tool in {"web_search", "read_webpage"}:
            return "The page could not be found. Try a different URL or search query."
        return "The note may not exist. Try search_vault or list_notes to find the correct path."
    if "already exists" in error_lower:
        return "Choose a different path, or edit the existing note with edit_note."
    if "permission" in error_lower or "disabled" in error_lower:
        return "This action is not allowed. Use a different approach."
    if "timeout" in error_lower or "timed out" in error_lower:
        return "The operation timed out. Try a more specific query or a smaller scope."
    if "invalid" in error_lower or "must" in error_lower:
        return "The arguments were invalid. Check the parameter format and try again."
    if "network" in error_lower or "connection" in error_lower:
        return "A network error occurred. This may be temporary."

    suggestions = {
        "read_note": "Check the note path with search_vault.",
        "edit_note": "Re-read the note and retry with corrected line numbers or heading.",
        "query_notes": "Dates must be ISO formatted, e.g. 2024-01-31.",
        "web_search": "Try rephrasing the query.",
    }
    return suggestions.get(tool, "Try a different approach or different parameters.")


def format_tool_error(tool: str, error: str) -> str:
    return f"Error: {error}. {get_error_suggestion(tool, error)}"


class ToolExecutor:
    """
    Executes tool calls against a ``VaultCapabilities`` backend.

    Side effects the loop tracks (notes read, edits proposed, web sources)
    are reported on the returned ``ToolOutcome`` rather than stored here.
    """

    def __init__(
        self,
        capabilities: VaultCapabilities,
        *,
        web_snippet_limit: int = 8,
        whitelisted_commands: Sequence[WhitelistedCommand] = (),
    ) -> None:
        self.capabilities = capabilities
        self.web_snippet_limit = web_snippet_limit
        self.whitelisted_commands = list(whitelisted_commands)

        self._handlers: Dict[ToolName, Handler] = {
            ToolName.SEARCH_VAULT: self._search_vault,
            ToolName.READ_NOTE: self._read_note,
            ToolName.LIST_NOTES: self._list_notes,
            ToolName.GET_LINKS: self._get_links,
            ToolName.EXPLORE_STRUCTURE: self._explore_structure,
            ToolName.LIST_TAGS: self._list_tags,
            ToolName.GET_MANUAL_CONTEXT: self._get_manual_context,
            ToolName.GET_PROPERTIES: self._get_properties,
            ToolName.GET_FILE_INFO: self._get_file_info,
            ToolName.FIND_DEAD_LINKS: self._find_dead_links,
            ToolName.QUERY_NOTES: self._query_notes,
            ToolName.WEB_SEARCH: self._web_search,
            ToolName.READ_WEBPAGE: self._read_webpage,
            ToolName.EDIT_NOTE: self._edit_note,
            ToolName.CREATE_NOTE: self._create_note,
            ToolName.OPEN_NOTE: self._open_note,
            ToolName.MOVE_NOTE: self._move_note,
            ToolName.UPDATE_PROPERTIES: self._update_properties,
            ToolName.ADD_TAGS: self._add_tags,
            ToolName.LINK_NOTES: self._link_notes,
            ToolName.COPY_NOTES: self._copy_notes,
            ToolName.DELETE_NOTE: self._delete_note,
            ToolName.EXECUTE_COMMAND: self._execute_command,
            ToolName.DONE: self._done,
            ToolName.ASK_USER: self._ask_user,
        }
        missing = [name.value for name in ToolName if name not in self._handlers]
        if missing:
            raise RuntimeError(f"No handler for tools: {', '.join(missing)}")

    async def execute(self, name: str, arguments: Dict[str, Any]) -> ToolOutcome:
        """
        Execute a tool call and return its outcome.

        Args:
            name: Tool name requested by the model
            arguments: Parsed JSON arguments

        Returns:
            ToolOutcome whose ``content`` becomes the tool-result message
        """
        tool = ToolName.parse(name)
        if tool is None:
            logger.warning(f"Unknown tool requested: {name}")
            available = ", ".join(item.value for item in ToolName)
            return ToolOutcome(
                content=f'Error: Unknown tool "{name}". Available tools: {available}',
                success=False,
            )

        try:
            args = parse_arguments(tool, arguments)
        except ValidationError as e:
            logger.warning(f"Tool {name} argument validation failed: {e.error_count()} error(s)")
            return ToolOutcome(
                content=format_tool_error(name, f"Invalid arguments for {name}: {_format_validation_error(e)}"),
                success=False,
            )

        logger.info(
            f"Executing tool: {name}",
            extra={"tool": name, "args_keys": sorted(arguments.keys())},
        )
        try:
            return await self._handlers[tool](args)
        except FileNotFoundError as e:
            logger.warning(f"Tool {name} file not found: {e}")
            return ToolOutcome(content=format_tool_error(name, str(e)), success=False)
        except PermissionError as e:
            logger.warning(f"Tool {name} permission denied: {e}")
            return ToolOutcome(content=format_tool_error(name, str(e)), success=False)
        except (ValueError, WebSearchError) as e:
            logger.warning(f"Tool {name} failed: {e}")
            return ToolOutcome(content=format_tool_error(name, str(e)), success=False)
        except Exception as e:
            logger.exception(f"Tool {name} execution failed: {e}")
            return ToolOutcome(
                content=format_tool_error(name, f"Tool execution failed: {e}"),
                success=False,
            )

    # =========================================================================
    # Explore tools
    # =========================================================================

    async def _search_vault(self, args: registry.SearchVaultArgs) -> ToolOutcome:
        lines: List[str] = []
        if args.mode in ("keyword", "both"):
            hits = await self.capabilities.search_keyword(args.query, args.limit)
            if hits is NOT_SUPPORTED:
                lines.append("KEYWORD RESULTS: keyword search is not available")
            elif hits:
                lines.append("KEYWORD RESULTS:")
                lines.extend(f"- {hit.path} [{hit.match_type}]: {hit.context}" for hit in hits)
            else:
                lines.append("KEYWORD RESULTS: none")

        if args.mode in ("semantic", "both"):
            hits = await self.capabilities.search_semantic(args.query, args.limit)
            if hits is NOT_SUPPORTED or not hits:
                lines.append("SEMANTIC RESULTS: none (no embedding index or no matches)")
            else:
                lines.append("SEMANTIC RESULTS:")
                for hit in hits:
                    heading = f" [{hit.heading}]" if hit.heading else ""
                    lines.append(f"- {hit.path} ({round(hit.score * 100)}% similar){heading}")
        return ToolOutcome(content="\n".join(lines))

    async def _read_note(self, args: registry.PathArgs) -> ToolOutcome:
        note = await self.capabilities.read_note(args.path)
        if note is NOT_SUPPORTED:
            return _not_available(ToolName.READ_NOTE)
        return ToolOutcome(
            content=f"=== {note.path} ({note.line_count} lines) ===\n{add_line_numbers(note.content)}",
            notes_read=[note.path],
            note_metadata={note.path: {"line_count": note.line_count}},
        )

    async def _list_notes(self, args: registry.ListNotesArgs) -> ToolOutcome:
        notes = await self.capabilities.list_notes(args.folder, args.limit, args.include_metadata)
        if notes is NOT_SUPPORTED:
            return _not_available(ToolName.LIST_NOTES)
        if not notes:
            return ToolOutcome(content="No notes found.")
        if args.include_metadata:
            lines = []
            for note in notes:
                line = note["path"]
                if note.get("aliases"):
                    line += f" (aliases: {', '.join(note['aliases'])})"
                if note.get("description"):
                    line += f" - {note['description']}"
                lines.append(line)
            return ToolOutcome(content="\n".join(lines))
        return ToolOutcome(content="\n".join(f"{note['path']}: {note['preview']}" for note in notes))

    async def _get_links(self, args: registry.GetLinksArgs) -> ToolOutcome:
        links = await self.capabilities.get_links(args.path, args.direction, args.depth)
        if links is NOT_SUPPORTED:
            return _not_available(ToolName.GET_LINKS)
        if not links:
            return ToolOutcome(content=f'No links found for "{args.path}".')
        lines = []
        for link in links:
            arrow = "→" if link["direction"] == "outgoing" else "←"
            hops = f" (depth {link['depth']})" if link.get("depth", 1) > 1 else ""
            lines.append(f"{arrow} {link['path']}{hops}")
        return ToolOutcome(content="\n".join(lines))

    async def _explore_structure(self, args: registry.ExploreStructureArgs) -> ToolOutcome:
        if args.action == "find_by_tag":
            if not args.tag:
                return ToolOutcome(
                    content=format_tool_error("explore_structure", "find_by_tag requires a tag"),
                    success=False,
                )
            notes = await self.capabilities.find_by_tag(args.tag)
            if notes is NOT_SUPPORTED:
                return _not_available(ToolName.EXPLORE_STRUCTURE)
            tag = args.tag.lstrip("#")
            if not notes:
                return ToolOutcome(content=f"No notes tagged #{tag}.")
            return ToolOutcome(content=f"Notes tagged #{tag} ({len(notes)}):\n" + "\n".join(notes))

        folder = (args.folder or "").strip("/") or None
        listing = await self.capabilities.list_folder(folder, args.recursive)
        if listing is NOT_SUPPORTED:
            return _not_available(ToolName.EXPLORE_STRUCTURE)
        lines = [f"Folder: {folder or '/'}"]
        lines.extend(f"[folder] {item}" for item in listing["folders"])
        lines.extend(f"[note] {item}" for item in listing["files"])
        if len(lines) == 1:
            lines.append("(empty)")
        return ToolOutcome(content="\n".join(lines))

    async def _list_tags(self, args: registry.NoArgs) -> ToolOutcome:
        tags = await self.capabilities.list_tags()
        if tags is NOT_SUPPORTED:
            return _not_available(ToolName.LIST_TAGS)
        if not tags:
            return ToolOutcome(content="No tags found in vault.")
        return ToolOutcome(content="\n".join(f"#{tag} ({count} notes)" for tag, count in tags))

    async def _get_manual_context(self, args: registry.NoArgs) -> ToolOutcome:
        context = await self.capabilities.manual_context()
        if context is NOT_SUPPORTED:
            return _not_available(ToolName.GET_MANUAL_CONTEXT)
        return ToolOutcome(content=context)

    async def _get_properties(self, args: registry.PathArgs) -> ToolOutcome:
        properties = await self.capabilities.get_properties(args.path)
        if properties is NOT_SUPPORTED:
            return _not_available(ToolName.GET_PROPERTIES)
        if not properties:
            return ToolOutcome(content=f'"{args.path}" has no frontmatter properties.')
        return ToolOutcome(
            content=json.dumps(properties, indent=2, default=str),
            note_metadata={args.path: {"properties": sorted(properties.keys())}},
        )

    async def _get_file_info(self, args: registry.PathArgs) -> ToolOutcome:
        info = await self.capabilities.file_info(args.path)
        if info is NOT_SUPPORTED:
            return _not_available(ToolName.GET_FILE_INFO)
        size = info["size"]
        return ToolOutcome(
            content=(
                f"Created: {info['created'].isoformat()}\n"
                f"Modified: {info['modified'].isoformat()}\n"
                f"Size: {size / 1024:.1f} KB ({size} bytes)"
            )
        )

    async def _find_dead_links(self, args: registry.FindDeadLinksArgs) -> ToolOutcome:
        dead_links = await self.capabilities.find_dead_links(args.path)
        if dead_links is NOT_SUPPORTED:
            return _not_available(ToolName.FIND_DEAD_LINKS)
        if not dead_links:
            if args.path:
                return ToolOutcome(content=f'No broken links in "{args.path}".')
            return ToolOutcome(content="No broken links found in the vault.")
        return ToolOutcome(
            content="\n".join(f"{item['source']} → [[{item['link']}]] (broken)" for item in dead_links)
        )

    async def _query_notes(self, args: registry.QueryNotesArgs) -> ToolOutcome:
        results = await self.capabilities.query_notes(
            args.filter,
            modified_after=args.modified_after,
            modified_before=args.modified_before,
            has_property=args.has_property,
            sort_by=args.sort_by,
            limit=args.limit,
        )
        if results is NOT_SUPPORTED:
            return _not_available(ToolName.QUERY_NOTES)
        if not results:
            return ToolOutcome(content="No notes matched the query.")
        lines = []
        for result in results:
            line = result["path"]
            if result.get("matching_properties"):
                line += f" | {json.dumps(result['matching_properties'], default=str)}"
            if result.get("modified"):
                line += f" | modified: {result['modified'].date().isoformat()}"
            lines.append(line)
        return ToolOutcome(content="\n".join(lines))

    # =========================================================================
    # Web tools
    # =========================================================================

    async def _web_search(self, args: registry.WebSearchArgs) -> ToolOutcome:
        results = await self.capabilities.web_search(args.query, self.web_snippet_limit)
        if results is NOT_SUPPORTED:
            return ToolOutcome(
                content="Web search is not configured. Set SEARCH_API and SEARCH_API_KEY.",
                success=False,
            )
        if not results:
            return ToolOutcome(content=f'No results found for: "{args.query}"')
        return ToolOutcome(
            content="\n\n".join(
                f"{index}. {item.title}\n   {item.url}\n   {item.snippet}"
                for index, item in enumerate(results, start=1)
            )
        )

    async def _read_webpage(self, args: registry.ReadWebpageArgs) -> ToolOutcome:
        page = await self.capabilities.fetch_page(args.url, args.max_tokens)
        if page is NOT_SUPPORTED:
            return ToolOutcome(content="Web page fetching is not available.", success=False)
        return ToolOutcome(
            content=f"=== {page.title} ===\n{page.content}",
            web_sources=[WebSource(url=page.url, title=page.title)],
        )

    # =========================================================================
    # Action tools
    # =========================================================================

    async def _edit_note(self, args: registry.EditNoteArgs) -> ToolOutcome:
        instruction = EditInstruction(file=args.file, position=args.position, content=args.content)
        outcome = await self.capabilities.propose_edit(instruction)
        if outcome is NOT_SUPPORTED:
            return _not_available(ToolName.EDIT_NOTE)
        if not outcome.success:
            return ToolOutcome(
                content=(
                    f"Edit failed: {outcome.error}. You can re-read the note and try again "
                    "with corrected line numbers."
                ),
                success=False,
            )
        return ToolOutcome(
            content=(
                f'Edit applied to "{args.file}" at position "{args.position}". '
                "The user will see a pending edit block to accept/reject."
            ),
            edit=instruction,
            counts_as_edit=True,
        )

    async def _create_note(self, args: registry.CreateNoteArgs) -> ToolOutcome:
        outcome = await self.capabilities.create_note(args.path, args.content)
        if outcome is NOT_SUPPORTED:
            return _not_available(ToolName.CREATE_NOTE)
        if not outcome.success:
            return ToolOutcome(content=f"Failed to create note: {outcome.error}", success=False)
        created = outcome.path or args.path
        return ToolOutcome(
            content=f'Note created: "{created}".',
            counts_as_edit=True,
            notes_created=[created],
        )

    async def _open_note(self, args: registry.PathArgs) -> ToolOutcome:
        outcome = await self.capabilities.open_note(args.path)
        if outcome is NOT_SUPPORTED:
            return _not_available(ToolName.OPEN_NOTE)
        if not outcome.success:
            return ToolOutcome(content=f"Failed to open note: {outcome.error}", success=False)
        return ToolOutcome(content=f'Opened "{args.path}".')

    async def _move_note(self, args: registry.MoveNoteArgs) -> ToolOutcome:
        outcome = await self.capabilities.move_note(args.from_path, args.to_path)
        if outcome is NOT_SUPPORTED:
            return _not_available(ToolName.MOVE_NOTE)
        if not outcome.success:
            return ToolOutcome(content=f"Failed to move note: {outcome.error}", success=False)
        return ToolOutcome(
            content=f'Moved "{args.from_path}" → "{outcome.path or args.to_path}". All wikilinks updated.'
        )

    async def _update_properties(self, args: registry.UpdatePropertiesArgs) -> ToolOutcome:
        outcome = await self.capabilities.update_properties(args.path, args.properties)
        if outcome is NOT_SUPPORTED:
            return _not_available(ToolName.UPDATE_PROPERTIES)
        if not outcome.success:
            return ToolOutcome(content=f"Failed to update properties: {outcome.error}", success=False)
        return ToolOutcome(
            content=f'Updated properties of "{args.path}": {", ".join(args.properties.keys())}'
        )

    async def _add_tags(self, args: registry.AddTagsArgs) -> ToolOutcome:
        outcome = await self.capabilities.add_tags(args.path, args.tags)
        if outcome is NOT_SUPPORTED:
            return _not_available(ToolName.ADD_TAGS)
        if not outcome.success:
            return ToolOutcome(content=f"Failed to add tags: {outcome.error}", success=False)
        return ToolOutcome(content=f'Added tags to "{args.path}": {", ".join(args.tags)}')

    async def _link_notes(self, args: registry.LinkNotesArgs) -> ToolOutcome:
        outcome = await self.capabilities.link_notes(args.source, args.target, args.context)
        if outcome is NOT_SUPPORTED:
            return _not_available(ToolName.LINK_NOTES)
        if not outcome.success:
            return ToolOutcome(content=f"Failed to link notes: {outcome.error}", success=False)
        link = outcome.detail.get("link") or f"[[{args.target.removesuffix('.md')}]]"
        if outcome.detail.get("already_linked"):
            return ToolOutcome(content=f'"{args.source}" already links to {link}.')
        where = f' at "{args.context}"' if args.context else ""
        return ToolOutcome(content=f'Added link {link} to "{args.source}"{where}.')

    async def _copy_notes(self, args: registry.CopyNotesArgs) -> ToolOutcome:
        outcome = await self.capabilities.copy_notes(args.paths)
        if outcome is NOT_SUPPORTED:
            return _not_available(ToolName.COPY_NOTES)
        copied = list(outcome.detail.get("copied", args.paths))
        message = (
            f"Prepared {outcome.detail.get('note_count', len(copied))} note(s) for copying. "
            'The user will see a "Copy to clipboard" button.'
        )
        missing = outcome.detail.get("missing") or []
        if missing:
            message += f" Not found: {', '.join(missing)}"
        return ToolOutcome(content=message, notes_read=copied, notes_copied=copied)

    async def _delete_note(self, args: registry.PathArgs) -> ToolOutcome:
        outcome = await self.capabilities.delete_note(args.path)
        if outcome is NOT_SUPPORTED:
            return _not_available(ToolName.DELETE_NOTE)
        if not outcome.success:
            return ToolOutcome(content=f"Failed to delete note: {outcome.error}", success=False)
        return ToolOutcome(content=f'Moved "{args.path}" to trash. The note can be restored from .trash.')

    async def _execute_command(self, args: registry.ExecuteCommandArgs) -> ToolOutcome:
        allowed = next(
            (
                command
                for command in self.whitelisted_commands
                if args.command in (command.id, command.name)
            ),
            None,
        )
        if allowed is None:
            return ToolOutcome(
                content=(
                    f'Error: Command "{args.command}" is not in the whitelist. '
                    "Only whitelisted commands can be executed."
                ),
                success=False,
            )
        outcome = await self.capabilities.execute_command(allowed.id)
        if outcome is NOT_SUPPORTED:
            return _not_available(ToolName.EXECUTE_COMMAND)
        if not outcome.success:
            return ToolOutcome(content=f"Failed to execute command: {outcome.error}", success=False)
        return ToolOutcome(content=f'Executed command: "{allowed.name}" ({allowed.id})')

    # =========================================================================
    # Control tools
    # =========================================================================

    async def _done(self, args: registry.DoneArgs) -> ToolOutcome:
        return ToolOutcome(content=args.summary or "Done.", done=True, summary=args.summary)

    async def _ask_user(self, args: registry.AskUserArgs) -> ToolOutcome:
        return ToolOutcome(content="", suspend=True, question=args.question, choices=list(args.choices))


__all__ = ["ToolExecutor", "ToolOutcome", "format_tool_error", "get_error_suggestion"]
