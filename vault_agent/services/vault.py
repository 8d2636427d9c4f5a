"""Filesystem vault management."""

from __future__ import annotations

from collections import Counter, deque
from datetime import datetime, timezone
import logging
from pathlib import Path
import re
import shutil
from typing import Any, Dict, Iterable, List, Optional, Tuple

import frontmatter
import yaml

from ..models.agent import EditInstruction, VaultStats
from .config import AppConfig, get_config
from .edit_interpreter import apply_edit, sort_edits_bottom_up

logger = logging.getLogger(__name__)

INVALID_PATH_CHARS = {'<', '>', ':', '"', '|', '?', '*'}
MAX_NOTE_BYTES = 1_048_576
TRASH_FOLDER = ".trash"
H1_PATTERN = re.compile(r"^\s*#\s+(.+)$", re.MULTILINE)
WIKILINK_PATTERN = re.compile(r"\[\[([^\]]+)\]\]")
INLINE_TAG_PATTERN = re.compile(r"(?<![\w/#&])#([A-Za-z][\w/-]*)")
PREVIEW_CHARS = 100

VaultNote = Dict[str, Any]


def _load_post(text: str, note_path: str = "", *, strict: bool = False) -> frontmatter.Post:
    """Parse frontmatter; malformed YAML is treated as plain body unless ``strict``."""
    try:
        return frontmatter.loads(text)
    except yaml.YAMLError as e:
        if strict:
            raise ValueError(f'Note "{note_path}" has invalid YAML frontmatter: {e}') from e
        logger.warning(f"Ignoring invalid frontmatter in {note_path or 'note'}: {e}")
        return frontmatter.Post(text)


def validate_note_path(note_path: str) -> Tuple[bool, str]:
    """
    Validate a relative Markdown path.

    Returns (is_valid, message). Message is empty when valid.
    """
    if not note_path or len(note_path) > 256:
        return False, "Path must be 1-256 characters"
    if not note_path.endswith(".md"):
        return False, "Path must end with .md"
    if ".." in note_path:
        return False, "Path must not contain '..'"
    if "\\" in note_path:
        return False, "Path must use Unix separators (/)"
    if note_path.startswith("/"):
        return False, "Path must be relative (no leading /)"
    if any(char in INVALID_PATH_CHARS for char in note_path):
        return False, "Path contains invalid characters"
    return True, ""


def sanitize_path(vault_root: Path, note_path: str) -> Path:
    """
    Resolve a note path within the vault.

    Raises ValueError if the resolved path escapes the vault root.
    """
    vault = vault_root.resolve()
    full_path = (vault / note_path).resolve()
    if full_path != vault and vault not in full_path.parents:
        raise ValueError(f"Path escapes vault root: {note_path}")
    return full_path


def is_path_excluded(note_path: str, excluded_folders: Iterable[str]) -> bool:
    """True when ``note_path`` lies inside one of ``excluded_folders``."""
    for folder in excluded_folders:
        cleaned = folder.strip("/")
        if not cleaned:
            continue
        if note_path == cleaned or note_path.startswith(cleaned + "/"):
            return True
    return False


def link_target(raw_link: str) -> str:
    """Strip alias and heading parts from the inside of a ``[[wikilink]]``."""
    target = raw_link.split("|", 1)[0].split("#", 1)[0]
    return target.strip()


def _derive_title(note_path: str, metadata: Dict[str, Any], body: str) -> str:
    title = metadata.get("title")
    if isinstance(title, str) and title.strip():
        return title.strip()
    match = H1_PATTERN.search(body or "")
    if match:
        return match.group(1).strip()
    stem = Path(note_path).stem
    title_from_filename = stem.replace("-", " ").replace("_", " ").strip()
    return title_from_filename or stem


def _normalize_tags(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        items = re.split(r"[,\s]+", value)
    elif isinstance(value, (list, tuple)):
        items = [str(item) for item in value]
    else:
        items = [str(value)]
    return [item.strip().lstrip("#") for item in items if item and item.strip().lstrip("#")]


def _validate_note_body(body: str) -> None:
    if len(body.encode("utf-8")) > MAX_NOTE_BYTES:
        raise ValueError("Note exceeds 1 MiB limit")


def _parse_date(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class VaultService:
    """Filesystem-backed note store rooted at a single vault directory.

    Paths exchanged with callers are vault-relative POSIX strings. Notes
    inside excluded folders behave as if they did not exist for listing and
    traversal, and raise ``PermissionError`` when addressed directly.
    """

    def __init__(
        self,
        config: AppConfig | None = None,
        *,
        vault_root: Path | None = None,
        excluded_folders: Iterable[str] | None = None,
    ) -> None:
        self.config = config or (None if vault_root is not None else get_config())
        root = vault_root if vault_root is not None else self.config.vault_path
        self.vault_root = Path(root).expanduser().resolve()
        self.vault_root.mkdir(parents=True, exist_ok=True)
        if excluded_folders is None and self.config is not None:
            excluded_folders = self.config.excluded_folders
        self.excluded_folders: List[str] = [
            folder.strip("/") for folder in (excluded_folders or []) if folder.strip("/")
        ]

    # ===== Paths =====

    def is_excluded(self, note_path: str) -> bool:
        return is_path_excluded(note_path, self.excluded_folders)

    def absolute_path(self, note_path: str) -> Path:
        """Validate and resolve a note path. Raises ValueError for invalid paths."""
        is_valid, message = validate_note_path(note_path)
        if not is_valid:
            raise ValueError(message)
        return sanitize_path(self.vault_root, note_path)

    def _relative(self, file_path: Path) -> str:
        return file_path.relative_to(self.vault_root).as_posix()

    def iter_note_paths(self) -> List[str]:
        """All visible note paths, sorted case-insensitively."""
        paths: List[str] = []
        for file_path in self.vault_root.rglob("*.md"):
            if not file_path.is_file():
                continue
            relative = self._relative(file_path)
            if any(part.startswith(".") for part in Path(relative).parts):
                continue
            if self.is_excluded(relative):
                continue
            paths.append(relative)
        return sorted(paths, key=str.lower)

    def resolve_note(self, name: str) -> Optional[str]:
        """Fuzzy-resolve a note reference to an existing vault-relative path.

        Tries the exact path, the path with ``.md`` appended, a
        case-insensitive path match, then a match on the file name alone.
        Excluded notes still resolve so callers can report the exclusion.
        """
        cleaned = (name or "").strip().strip("/")
        if not cleaned:
            return None
        candidates = [cleaned] if cleaned.endswith(".md") else [cleaned + ".md", cleaned]
        for candidate in candidates:
            try:
                absolute = sanitize_path(self.vault_root, candidate)
            except ValueError:
                return None
            if absolute.is_file() and absolute.suffix == ".md":
                return self._relative(absolute)

        wanted = candidates[0].lower()
        wanted_name = Path(wanted).name
        by_name: Optional[str] = None
        for file_path in sorted(self.vault_root.rglob("*.md")):
            relative = self._relative(file_path)
            if relative.startswith(TRASH_FOLDER + "/"):
                continue
            lowered = relative.lower()
            if lowered == wanted:
                return relative
            if by_name is None and Path(lowered).name == wanted_name:
                by_name = relative
        return by_name

    def require_note(self, name: str) -> str:
        """Resolve ``name`` or raise FileNotFoundError / PermissionError."""
        resolved = self.resolve_note(name)
        if resolved is None:
            raise FileNotFoundError(f"Note not found: {name}")
        if self.is_excluded(resolved):
            raise PermissionError(f'Note "{resolved}" is in an excluded folder and cannot be accessed')
        return resolved

    # ===== Read / write =====

    def read_raw(self, note_path: str) -> str:
        """Full file text (frontmatter included) of an existing note."""
        resolved = self.require_note(note_path)
        return self.absolute_path(resolved).read_text(encoding="utf-8")

    def read_note(self, note_path: str) -> VaultNote:
        """Read a note, returning raw content, metadata, body and derived title."""
        resolved = self.require_note(note_path)
        absolute = self.absolute_path(resolved)
        raw = absolute.read_text(encoding="utf-8")
        post = _load_post(raw, resolved)
        metadata = dict(post.metadata or {})
        body = post.content or ""
        stat = absolute.stat()
        return {
            "path": resolved,
            "title": _derive_title(resolved, metadata, body),
            "content": raw,
            "line_count": len(raw.split("\n")),
            "metadata": metadata,
            "body": body,
            "size_bytes": stat.st_size,
            "modified": datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
        }

    def write_raw(self, note_path: str, content: str) -> str:
        """Overwrite an existing note with ``content``."""
        resolved = self.require_note(note_path)
        _validate_note_body(content)
        self.absolute_path(resolved).write_text(content, encoding="utf-8")
        logger.debug(f"Wrote note {resolved}", extra={"path": resolved})
        return resolved

    def apply_edits(self, note_path: str, instructions: List[EditInstruction]) -> Tuple[str, List[str]]:
        """Apply several edits to one note bottom-to-top and write the result.

        Each edit runs against the output of the previous one. Rejected edits
        are skipped and reported; the note is written only if one applied.

        Returns:
            (resolved path, error messages of rejected edits)
        """
        resolved = self.require_note(note_path)
        content = self.read_raw(resolved)
        errors: List[str] = []
        applied = 0
        for instruction in sort_edits_bottom_up(list(instructions)):
            outcome = apply_edit(content, instruction)
            if not outcome.ok:
                errors.append(f"{instruction.position}: {outcome.error}")
                continue
            content = outcome.content
            applied += 1
        if applied:
            self.write_raw(resolved, content)
        logger.info(
            f"Applied {applied} edit(s) to {resolved}",
            extra={"path": resolved, "rejected": len(errors)},
        )
        return resolved, errors

    def create_note(self, note_path: str, content: str) -> str:
        """Create a new note; parent folders are created automatically."""
        cleaned = note_path.strip().lstrip("/")
        if cleaned and not cleaned.endswith(".md"):
            cleaned += ".md"
        absolute = self.absolute_path(cleaned)
        if self.is_excluded(cleaned):
            raise PermissionError(f'Cannot create "{cleaned}": folder is excluded')
        if absolute.exists():
            raise FileExistsError(f"Note already exists: {cleaned}")
        _validate_note_body(content)
        absolute.parent.mkdir(parents=True, exist_ok=True)
        absolute.write_text(content, encoding="utf-8")
        logger.info(f"Created note {cleaned}", extra={"path": cleaned})
        return cleaned

    def trash_note(self, note_path: str) -> str:
        """Move a note into ``.trash``, keeping its folder structure."""
        resolved = self.require_note(note_path)
        source = self.absolute_path(resolved)
        destination = self.vault_root / TRASH_FOLDER / resolved
        if destination.exists():
            stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
            destination = destination.with_name(f"{destination.stem} {stamp}.md")
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(source), str(destination))
        logger.info(f"Moved {resolved} to trash", extra={"path": resolved})
        return self._relative(destination)

    def move_note(self, from_path: str, to_path: str) -> Tuple[str, int]:
        """Rename a note and rewrite wikilinks that pointed at it.

        Returns the new path and the number of notes whose links changed.
        """
        resolved = self.require_note(from_path)
        target = to_path.strip().lstrip("/")
        if target and not target.endswith(".md"):
            target += ".md"
        destination = self.absolute_path(target)
        if self.is_excluded(target):
            raise PermissionError(f'Cannot move into "{target}": folder is excluded')
        if destination.exists():
            raise FileExistsError(f"Note already exists: {target}")

        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(self.absolute_path(resolved)), str(destination))

        old_keys = {resolved[:-3].lower(), Path(resolved).stem.lower()}
        new_link = Path(target).stem
        if self._stem_is_ambiguous(new_link, target):
            new_link = target[:-3]

        def _rewrite(match: re.Match) -> str:
            inner = match.group(1)
            name = link_target(inner)
            if name.lower().removesuffix(".md") not in old_keys:
                return match.group(0)
            return "[[" + new_link + inner[len(inner.split("|", 1)[0].split("#", 1)[0]):] + "]]"

        updated = 0
        for note in self.iter_note_paths():
            absolute = self.absolute_path(note)
            text = absolute.read_text(encoding="utf-8")
            rewritten = WIKILINK_PATTERN.sub(_rewrite, text)
            if rewritten != text:
                absolute.write_text(rewritten, encoding="utf-8")
                updated += 1
        logger.info(
            f"Moved {resolved} -> {target} ({updated} notes relinked)",
            extra={"from_path": resolved, "to_path": target},
        )
        return target, updated

    def _stem_is_ambiguous(self, stem: str, own_path: str) -> bool:
        lowered = stem.lower()
        return any(
            Path(path).stem.lower() == lowered and path != own_path
            for path in self.iter_note_paths()
        )

    # ===== Properties and tags =====

    def get_properties(self, note_path: str) -> Dict[str, Any]:
        return dict(_load_post(self.read_raw(note_path), note_path).metadata or {})

    def update_properties(self, note_path: str, properties: Dict[str, Any]) -> str:
        """Merge ``properties`` into the frontmatter; ``None`` values remove keys."""
        resolved = self.require_note(note_path)
        post = _load_post(self.read_raw(resolved), resolved, strict=True)
        for key, value in properties.items():
            if value is None:
                post.metadata.pop(key, None)
            else:
                post.metadata[key] = value
        self._write_post(resolved, post)
        return resolved

    def add_tags(self, note_path: str, tags: List[str]) -> Tuple[str, List[str]]:
        """Add frontmatter tags without removing existing ones. Returns added tags."""
        resolved = self.require_note(note_path)
        post = _load_post(self.read_raw(resolved), resolved, strict=True)
        existing = _normalize_tags(post.metadata.get("tags"))
        added = [tag for tag in _normalize_tags(tags) if tag not in existing]
        if added:
            post.metadata["tags"] = existing + added
            self._write_post(resolved, post)
        return resolved, added

    def _write_post(self, note_path: str, post: frontmatter.Post) -> None:
        if post.metadata:
            text = frontmatter.dumps(post) + "\n"
        else:
            text = post.content
        self.absolute_path(note_path).write_text(text, encoding="utf-8")

    def note_tags(self, note_path: str) -> List[str]:
        """Frontmatter and inline tags of a note, without ``#``."""
        post = _load_post(self.read_raw(note_path), note_path)
        tags = _normalize_tags(post.metadata.get("tags"))
        for match in INLINE_TAG_PATTERN.finditer(post.content or ""):
            if match.group(1) not in tags:
                tags.append(match.group(1))
        return tags

    def list_tags(self) -> List[Tuple[str, int]]:
        """All tags with note counts, most used first."""
        counts: Counter = Counter()
        for note in self.iter_note_paths():
            counts.update(set(self.note_tags(note)))
        return sorted(counts.items(), key=lambda item: (-item[1], item[0].lower()))

    def find_by_tag(self, tag: str) -> List[str]:
        wanted = tag.strip().lstrip("#").lower()
        matches = []
        for note in self.iter_note_paths():
            tags = [item.lower() for item in self.note_tags(note)]
            if any(item == wanted or item.startswith(wanted + "/") for item in tags):
                matches.append(note)
        return matches

    # ===== Listing =====

    def list_notes(
        self, folder: Optional[str] = None, limit: int = 30, include_metadata: bool = False
    ) -> List[Dict[str, Any]]:
        """Notes (optionally within ``folder``) with a short body preview."""
        prefix = (folder or "").strip().strip("/")
        if prefix and self.is_excluded(prefix):
            raise PermissionError(f'Folder "{prefix}" is excluded')
        results: List[Dict[str, Any]] = []
        for note in self.iter_note_paths():
            if prefix and not note.startswith(prefix + "/"):
                continue
            post = _load_post(self.absolute_path(note).read_text(encoding="utf-8"), note)
            body = " ".join((post.content or "").split())
            entry: Dict[str, Any] = {
                "path": note,
                "title": _derive_title(note, dict(post.metadata or {}), post.content or ""),
                "preview": body[:PREVIEW_CHARS] + ("..." if len(body) > PREVIEW_CHARS else ""),
            }
            if include_metadata:
                entry["aliases"] = _normalize_tags(post.metadata.get("aliases"))
                description = post.metadata.get("description")
                entry["description"] = str(description) if description else None
            results.append(entry)
            if len(results) >= limit:
                break
        return results

    def list_folder(self, folder: Optional[str] = None, recursive: bool = False) -> Dict[str, List[str]]:
        """Subfolders and notes directly inside ``folder`` (or below it when recursive)."""
        cleaned = (folder or "").strip().strip("/")
        if cleaned and self.is_excluded(cleaned):
            raise PermissionError(f'Folder "{cleaned}" is excluded')
        base = sanitize_path(self.vault_root, cleaned) if cleaned else self.vault_root
        if not base.is_dir():
            raise FileNotFoundError(f"Folder not found: {cleaned or '/'}")

        entries = base.rglob("*") if recursive else base.iterdir()
        folders: List[str] = []
        files: List[str] = []
        for entry in entries:
            relative = self._relative(entry)
            if any(part.startswith(".") for part in Path(relative).parts):
                continue
            if self.is_excluded(relative):
                continue
            if entry.is_dir():
                folders.append(relative)
            elif entry.suffix == ".md":
                files.append(relative)
        return {"folders": sorted(folders, key=str.lower), "files": sorted(files, key=str.lower)}

    def file_info(self, note_path: str) -> Dict[str, Any]:
        resolved = self.require_note(note_path)
        stat = self.absolute_path(resolved).stat()
        created = getattr(stat, "st_birthtime", None) or stat.st_ctime
        return {
            "path": resolved,
            "created": datetime.fromtimestamp(created, tz=timezone.utc),
            "modified": datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            "size": stat.st_size,
        }

    def stats(self) -> VaultStats:
        notes = self.iter_note_paths()
        folders = {str(Path(note).parent) for note in notes if "/" in note}
        tags = {tag for note in notes for tag in self.note_tags(note)}
        return VaultStats(total_notes=len(notes), total_folders=len(folders), total_tags=len(tags))

    # ===== Links =====

    def outgoing_links(self, note_path: str) -> Tuple[List[str], List[str]]:
        """Resolved and unresolved wikilink targets of a note."""
        text = self.read_raw(note_path)
        resolved: List[str] = []
        dead: List[str] = []
        for match in WIKILINK_PATTERN.finditer(text):
            name = link_target(match.group(1))
            if not name:
                continue
            target = self.resolve_note(name)
            if target is None:
                if name not in dead:
                    dead.append(name)
            elif target not in resolved:
                resolved.append(target)
        return resolved, dead

    def backlinks(self, note_path: str) -> List[str]:
        resolved = self.require_note(note_path)
        sources = []
        for note in self.iter_note_paths():
            if note == resolved:
                continue
            targets, _ = self.outgoing_links(note)
            if resolved in targets:
                sources.append(note)
        return sources

    def get_links(self, note_path: str, direction: str = "both", depth: int = 1) -> List[Dict[str, Any]]:
        """Breadth-first link traversal up to ``depth`` hops.

        Each entry carries ``path``, ``direction`` (``outgoing`` or
        ``backlink``) and ``depth``. Excluded notes act as walls.
        """
        start = self.require_note(note_path)
        depth = max(1, min(int(depth), 3))
        seen = {start}
        results: List[Dict[str, Any]] = []
        queue = deque([(start, 0)])
        while queue:
            current, level = queue.popleft()
            if level >= depth:
                continue
            neighbours: List[Tuple[str, str]] = []
            if direction in ("out", "both"):
                targets, _ = self.outgoing_links(current)
                neighbours.extend((target, "outgoing") for target in targets)
            if direction in ("in", "both"):
                neighbours.extend((source, "backlink") for source in self.backlinks(current))
            for path, kind in neighbours:
                if path in seen or self.is_excluded(path):
                    continue
                seen.add(path)
                results.append({"path": path, "direction": kind, "depth": level + 1})
                queue.append((path, level + 1))
        return results

    def find_dead_links(self, note_path: Optional[str] = None) -> List[Dict[str, str]]:
        notes = [self.require_note(note_path)] if note_path else self.iter_note_paths()
        dead_links: List[Dict[str, str]] = []
        for note in notes:
            _, dead = self.outgoing_links(note)
            dead_links.extend({"source": note, "link": name} for name in dead)
        return dead_links

    # ===== Search and queries =====

    def search_keyword(self, query: str, limit: int = 10) -> List[Dict[str, str]]:
        """Case-insensitive search ranked title > heading > content, then path."""
        keyword = query.strip().lower()
        if not keyword:
            return []
        ranked: List[Tuple[int, str, str, str]] = []
        for note in self.iter_note_paths():
            stem = Path(note).stem
            if keyword in stem.lower():
                ranked.append((3, note, "title", f"Title: {stem}"))
                continue
            lines = self.absolute_path(note).read_text(encoding="utf-8").split("\n")
            match: Optional[Tuple[int, str, str, str]] = None
            for index, line in enumerate(lines):
                if keyword not in line.lower():
                    continue
                if line.strip().startswith("#"):
                    match = (2, note, "heading", line.strip())
                    break
                if match is None:
                    window = " ".join(lines[max(0, index - 1) : index + 2])
                    match = (1, note, "content", window[:150] + "...")
            if match is not None:
                ranked.append(match)
        ranked.sort(key=lambda item: (-item[0], item[1].lower()))
        return [
            {"path": path, "match_type": match_type, "context": context}
            for _, path, match_type, context in ranked[:limit]
        ]

    def query_notes(
        self,
        filters: Optional[Dict[str, Any]] = None,
        *,
        modified_after: Optional[str] = None,
        modified_before: Optional[str] = None,
        has_property: Optional[str] = None,
        sort_by: Optional[str] = None,
        limit: int = 20,
    ) -> List[Dict[str, Any]]:
        """Filter notes by frontmatter values (AND) and modification dates."""
        filters = filters or {}
        after = _parse_date(modified_after) if modified_after else None
        before = _parse_date(modified_before) if modified_before else None

        matches: List[Dict[str, Any]] = []
        for note in self.iter_note_paths():
            absolute = self.absolute_path(note)
            stat = absolute.stat()
            modified = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)
            if after and modified <= after:
                continue
            if before and modified >= before:
                continue
            metadata = dict(_load_post(absolute.read_text(encoding="utf-8"), note).metadata or {})
            if has_property and has_property not in metadata:
                continue
            if not all(self._property_matches(metadata.get(key), value) for key, value in filters.items()):
                continue
            matching = {key: metadata[key] for key in filters if key in metadata}
            if has_property:
                matching[has_property] = metadata[has_property]
            matches.append(
                {
                    "path": note,
                    "matching_properties": matching,
                    "modified": modified,
                    "created": datetime.fromtimestamp(stat.st_ctime, tz=timezone.utc),
                }
            )

        if sort_by == "modified":
            matches.sort(key=lambda item: item["modified"], reverse=True)
        elif sort_by == "created":
            matches.sort(key=lambda item: item["created"], reverse=True)
        return matches[:limit]

    @staticmethod
    def _property_matches(actual: Any, expected: Any) -> bool:
        if isinstance(actual, list):
            if isinstance(expected, list):
                return all(item in actual for item in expected)
            return expected in actual or str(expected) in [str(item) for item in actual]
        if actual is None:
            return expected is None
        return actual == expected or str(actual).lower() == str(expected).lower()


__all__ = [
    "VaultService",
    "is_path_excluded",
    "link_target",
    "sanitize_path",
    "validate_note_path",
]
