"""Capability surface the agent's tools call into.

``VaultCapabilities`` declares every collaborator operation the tool
executor may use. Each member has a default that returns ``NOT_SUPPORTED``,
so a backend implements only what it can and the executor reports the rest
to the model as unavailable. ``LocalVaultCapabilities`` is the filesystem
backend built on ``VaultService``.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple, Union
import uuid

from pydantic import BaseModel, Field

from ..models.agent import AICapabilities, EditInstruction
from ..models.edits import ProposedEdit
from .edit_interpreter import apply_edit, determine_edit_type
from .vault import VaultService
from .web_search import FetchedPage, SearchResult, WebSearchClient

logger = logging.getLogger(__name__)


class NotSupported:
    """Marker returned by capability members a backend does not provide."""

    _instance: Optional["NotSupported"] = None

    def __new__(cls) -> "NotSupported":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "NOT_SUPPORTED"

    def __bool__(self) -> bool:
        return False


NOT_SUPPORTED = NotSupported()


class ActionOutcome(BaseModel):
    """Explicit success/failure of a mutating operation."""

    success: bool
    error: Optional[str] = None
    path: Optional[str] = None
    detail: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def ok(cls, path: Optional[str] = None, **detail: Any) -> "ActionOutcome":
        return cls(success=True, path=path, detail=detail)

    @classmethod
    def fail(cls, error: str) -> "ActionOutcome":
        return cls(success=False, error=error)


class NoteContent(BaseModel):
    path: str
    content: str
    line_count: int


class KeywordHit(BaseModel):
    path: str
    match_type: str
    context: str


class SemanticHit(BaseModel):
    path: str
    score: float
    heading: Optional[str] = None


class SemanticSearcher(Protocol):
    """Embedding search collaborator (optional)."""

    async def search(self, query: str, limit: int) -> List[SemanticHit]:
        ...


def add_line_numbers(content: str) -> str:
    """Prefix each line with ``N: `` starting at 1."""
    return "\n".join(f"{index}: {line}" for index, line in enumerate(content.split("\n"), start=1))


class VaultCapabilities:
    """Operations available to tool handlers; all optional."""

    # ===== Read / explore =====

    async def search_keyword(self, query: str, limit: int) -> Union[List[KeywordHit], NotSupported]:
        return NOT_SUPPORTED

    async def search_semantic(self, query: str, limit: int) -> Union[List[SemanticHit], NotSupported]:
        return NOT_SUPPORTED

    async def read_note(self, path: str) -> Union[NoteContent, NotSupported]:
        return NOT_SUPPORTED

    async def list_notes(
        self, folder: Optional[str], limit: int, include_metadata: bool
    ) -> Union[List[Dict[str, Any]], NotSupported]:
        return NOT_SUPPORTED

    async def get_links(self, path: str, direction: str, depth: int) -> Union[List[Dict[str, Any]], NotSupported]:
        return NOT_SUPPORTED

    async def list_folder(self, folder: Optional[str], recursive: bool) -> Union[Dict[str, List[str]], NotSupported]:
        return NOT_SUPPORTED

    async def find_by_tag(self, tag: str) -> Union[List[str], NotSupported]:
        return NOT_SUPPORTED

    async def list_tags(self) -> Union[List[Tuple[str, int]], NotSupported]:
        return NOT_SUPPORTED

    async def manual_context(self) -> Union[str, NotSupported]:
        return NOT_SUPPORTED

    async def get_properties(self, path: str) -> Union[Dict[str, Any], NotSupported]:
        return NOT_SUPPORTED

    async def file_info(self, path: str) -> Union[Dict[str, Any], NotSupported]:
        return NOT_SUPPORTED

    async def find_dead_links(self, path: Optional[str]) -> Union[List[Dict[str, str]], NotSupported]:
        return NOT_SUPPORTED

    async def query_notes(self, filters: Dict[str, Any], **options: Any) -> Union[List[Dict[str, Any]], NotSupported]:
        return NOT_SUPPORTED

    # ===== Web =====

    async def web_search(self, query: str, limit: int) -> Union[List[SearchResult], NotSupported]:
        return NOT_SUPPORTED

    async def fetch_page(self, url: str, max_tokens: int) -> Union[FetchedPage, NotSupported]:
        return NOT_SUPPORTED

    # ===== Actions =====

    async def propose_edit(self, instruction: EditInstruction) -> Union[ActionOutcome, NotSupported]:
        return NOT_SUPPORTED

    async def create_note(self, path: str, content: str) -> Union[ActionOutcome, NotSupported]:
        return NOT_SUPPORTED

    async def open_note(self, path: str) -> Union[ActionOutcome, NotSupported]:
        return NOT_SUPPORTED

    async def move_note(self, from_path: str, to_path: str) -> Union[ActionOutcome, NotSupported]:
        return NOT_SUPPORTED

    async def update_properties(self, path: str, properties: Dict[str, Any]) -> Union[ActionOutcome, NotSupported]:
        return NOT_SUPPORTED

    async def add_tags(self, path: str, tags: List[str]) -> Union[ActionOutcome, NotSupported]:
        return NOT_SUPPORTED

    async def link_notes(self, source: str, target: str, context: Optional[str]) -> Union[ActionOutcome, NotSupported]:
        return NOT_SUPPORTED

    async def copy_notes(self, paths: List[str]) -> Union[ActionOutcome, NotSupported]:
        return NOT_SUPPORTED

    async def delete_note(self, path: str) -> Union[ActionOutcome, NotSupported]:
        return NOT_SUPPORTED

    async def execute_command(self, command_id: str) -> Union[ActionOutcome, NotSupported]:
        return NOT_SUPPORTED


def _affected_text(document: str, instruction: EditInstruction) -> str:
    """Lines (or verbatim text) an edit replaces or removes."""
    position = instruction.position
    if not position.startswith(("replace:", "delete:")):
        return ""
    target = position.split(":", 1)[1]
    bounds = target.split("-", 1)
    if all(part.strip().isdigit() for part in bounds):
        start = int(bounds[0])
        end = int(bounds[1]) if len(bounds) > 1 else start
        return "\n".join(document.split("\n")[start - 1 : end])
    return target


class LocalVaultCapabilities(VaultCapabilities):
    """Filesystem vault backend.

    With ``apply_edits=False`` edits are validated and kept in
    ``pending_edits`` for the caller to accept or reject; otherwise they are
    written immediately. Notes are created and trashed immediately.
    ``open_note`` and ``execute_command`` are not supported here.
    """

    def __init__(
        self,
        vault: VaultService,
        *,
        capabilities: AICapabilities | None = None,
        web_client: Optional[WebSearchClient] = None,
        semantic_searcher: Optional[SemanticSearcher] = None,
        manual_context_paths: Sequence[str] = (),
        apply_edits: bool = False,
    ) -> None:
        self.vault = vault
        self.capabilities = capabilities or AICapabilities()
        self.web_client = web_client
        self.semantic_searcher = semantic_searcher
        self.manual_context_paths = list(manual_context_paths)
        self.apply_edits = apply_edits
        self.pending_edits: List[ProposedEdit] = []
        self.created_notes: List[str] = []
        self.copied_content: str = ""

    # ===== Read / explore =====

    async def search_keyword(self, query: str, limit: int) -> List[KeywordHit]:
        return [KeywordHit(**hit) for hit in self.vault.search_keyword(query, limit)]

    async def search_semantic(self, query: str, limit: int) -> Union[List[SemanticHit], NotSupported]:
        if self.semantic_searcher is None:
            return NOT_SUPPORTED
        hits = await self.semantic_searcher.search(query, limit)
        return [hit for hit in hits if not self.vault.is_excluded(hit.path)]

    async def read_note(self, path: str) -> NoteContent:
        note = self.vault.read_note(path)
        return NoteContent(path=note["path"], content=note["content"], line_count=note["line_count"])

    async def list_notes(self, folder: Optional[str], limit: int, include_metadata: bool) -> List[Dict[str, Any]]:
        return self.vault.list_notes(folder, limit=limit, include_metadata=include_metadata)

    async def get_links(self, path: str, direction: str, depth: int) -> List[Dict[str, Any]]:
        return self.vault.get_links(path, direction=direction, depth=depth)

    async def list_folder(self, folder: Optional[str], recursive: bool) -> Dict[str, List[str]]:
        return self.vault.list_folder(folder, recursive=recursive)

    async def find_by_tag(self, tag: str) -> List[str]:
        return self.vault.find_by_tag(tag)

    async def list_tags(self) -> List[Tuple[str, int]]:
        return self.vault.list_tags()

    async def manual_context(self) -> str:
        if not self.manual_context_paths:
            return "No manual context notes are selected."
        parts: List[str] = []
        for name in self.manual_context_paths:
            try:
                note = self.vault.read_note(name)
            except (FileNotFoundError, PermissionError) as e:
                parts.append(f"--- SKIPPED: {name} ({e}) ---")
                continue
            parts.append(
                f'--- FILE: "{note["path"]}" ---\n{add_line_numbers(note["content"])}\n--- END FILE ---'
            )
        return "\n\n".join(parts)

    async def get_properties(self, path: str) -> Dict[str, Any]:
        return self.vault.get_properties(path)

    async def file_info(self, path: str) -> Dict[str, Any]:
        return self.vault.file_info(path)

    async def find_dead_links(self, path: Optional[str]) -> List[Dict[str, str]]:
        return self.vault.find_dead_links(path)

    async def query_notes(self, filters: Dict[str, Any], **options: Any) -> List[Dict[str, Any]]:
        return self.vault.query_notes(filters, **options)

    # ===== Web =====

    async def web_search(self, query: str, limit: int) -> Union[List[SearchResult], NotSupported]:
        if self.web_client is None:
            return NOT_SUPPORTED
        return await self.web_client.search(query, limit)

    async def fetch_page(self, url: str, max_tokens: int) -> Union[FetchedPage, NotSupported]:
        if self.web_client is None:
            return NOT_SUPPORTED
        return await self.web_client.fetch_page(url, max_tokens)

    # ===== Actions =====

    def _edit_permission_error(self, position: str) -> Optional[str]:
        edit_type = determine_edit_type(position)
        if edit_type == "add" and not self.capabilities.can_add:
            return "Adding content is disabled. Only replace/delete edits are allowed"
        if edit_type in ("replace", "delete") and not self.capabilities.can_delete:
            return "Replacing or deleting content is disabled. Only start/end/after/insert edits are allowed"
        return None

    async def propose_edit(self, instruction: EditInstruction) -> ActionOutcome:
        permission_error = self._edit_permission_error(instruction.position)
        if permission_error:
            return ActionOutcome.fail(permission_error)
        try:
            path = self.vault.require_note(instruction.file)
        except FileNotFoundError:
            return ActionOutcome.fail(f'File not found: "{instruction.file}"')
        except PermissionError as e:
            return ActionOutcome.fail(str(e))

        document = self.vault.read_raw(path)
        outcome = apply_edit(document, instruction)
        if not outcome.ok:
            return ActionOutcome.fail(outcome.error or "Edit rejected")

        proposed = ProposedEdit(
            id=uuid.uuid4().hex[:8],
            instruction=instruction,
            path=path,
            edit_type=determine_edit_type(instruction.position),
            before=_affected_text(document, instruction),
            after=instruction.content,
            new_content=outcome.content or "",
        )
        if self.apply_edits:
            self.vault.write_raw(path, proposed.new_content)
        self.pending_edits.append(proposed)
        logger.info(
            f"Edit {'applied' if self.apply_edits else 'proposed'} for {path}",
            extra={"path": path, "position": instruction.position},
        )
        return ActionOutcome.ok(path, edit_id=proposed.id, applied=self.apply_edits)

    async def create_note(self, path: str, content: str) -> ActionOutcome:
        if not self.capabilities.can_create:
            return ActionOutcome.fail("Creating notes is disabled")
        try:
            created = self.vault.create_note(path, content)
        except (ValueError, FileExistsError, PermissionError) as e:
            return ActionOutcome.fail(str(e))
        self.created_notes.append(created)
        return ActionOutcome.ok(created)

    async def move_note(self, from_path: str, to_path: str) -> ActionOutcome:
        try:
            new_path, relinked = self.vault.move_note(from_path, to_path)
        except (ValueError, FileNotFoundError, FileExistsError, PermissionError) as e:
            return ActionOutcome.fail(str(e))
        return ActionOutcome.ok(new_path, relinked=relinked)

    async def update_properties(self, path: str, properties: Dict[str, Any]) -> ActionOutcome:
        try:
            resolved = self.vault.update_properties(path, properties)
        except (ValueError, FileNotFoundError, PermissionError) as e:
            return ActionOutcome.fail(str(e))
        return ActionOutcome.ok(resolved)

    async def add_tags(self, path: str, tags: List[str]) -> ActionOutcome:
        try:
            resolved, added = self.vault.add_tags(path, tags)
        except (ValueError, FileNotFoundError, PermissionError) as e:
            return ActionOutcome.fail(str(e))
        return ActionOutcome.ok(resolved, added=added)

    async def link_notes(self, source: str, target: str, context: Optional[str]) -> ActionOutcome:
        try:
            source_path = self.vault.require_note(source)
        except (FileNotFoundError, PermissionError) as e:
            return ActionOutcome.fail(str(e))
        target_path = self.vault.resolve_note(target)
        link_name = Path(target_path).stem if target_path else target.strip().removesuffix(".md")
        link = f"[[{link_name}]]"

        document = self.vault.read_raw(source_path)
        if link in document:
            return ActionOutcome.ok(source_path, already_linked=True, link=link)
        position = f"after:{context}" if context else "end"
        outcome = apply_edit(document, EditInstruction(file=source_path, position=position, content=link))
        if not outcome.ok:
            return ActionOutcome.fail(outcome.error or "Could not insert link")
        self.vault.write_raw(source_path, outcome.content or "")
        return ActionOutcome.ok(source_path, link=link)

    async def copy_notes(self, paths: List[str]) -> ActionOutcome:
        blocks: List[str] = []
        copied: List[str] = []
        missing: List[str] = []
        for name in paths:
            try:
                note = self.vault.read_note(name)
            except (FileNotFoundError, PermissionError):
                missing.append(name)
                continue
            copied.append(note["path"])
            blocks.append(f"# {note['path']}\n\n{note['content']}")
        self.copied_content = "\n\n---\n\n".join(blocks)
        return ActionOutcome.ok(None, copied=copied, missing=missing, note_count=len(copied))

    async def delete_note(self, path: str) -> ActionOutcome:
        if not self.capabilities.can_delete:
            return ActionOutcome.fail("Deleting notes is disabled")
        try:
            self.vault.trash_note(path)
        except (ValueError, FileNotFoundError, PermissionError) as e:
            return ActionOutcome.fail(str(e))
        return ActionOutcome.ok(path)


__all__ = [
    "ActionOutcome",
    "KeywordHit",
    "LocalVaultCapabilities",
    "NOT_SUPPORTED",
    "NoteContent",
    "NotSupported",
    "SemanticHit",
    "SemanticSearcher",
    "VaultCapabilities",
    "add_line_numbers",
]
