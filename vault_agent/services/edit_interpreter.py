"""Position-addressed edit interpreter.

``apply_edit`` maps ``(document, EditInstruction)`` to either the complete new
document or an error message. It never touches the filesystem and never
raises for model-supplied input, so the agent loop can feed its errors back
to the model verbatim.

Position grammar (lines are 1-indexed):

- ``start`` / ``end``: prepend / append, separated by a blank line
- ``after:<heading>``: insert below the heading line (exact, then case-insensitive)
- ``insert:N``: insert before line N, ``1 <= N <= line_count + 1``
- ``replace:N`` / ``replace:N-M``: replace the inclusive range with the content
- ``replace:<text>``: replace the first literal occurrence of ``<text>``
- ``delete:N`` / ``delete:N-M``: remove the inclusive range
"""

from __future__ import annotations

from dataclasses import dataclass
import math
import re
from typing import List, Optional, Tuple

from ..models.agent import EditInstruction

LINE_RANGE_PATTERN = re.compile(r"^(\d+)(?:-(\d+))?$")
LINE_NUMBER_PATTERN = re.compile(r"^\d+$")
HEADING_PATTERN = re.compile(r"^#{1,6}\s+\S")
MAX_LISTED_HEADINGS = 5
# Heading positions are unknown without content; sort them just above "end".
HEADING_ANCHOR = 10**9


@dataclass(frozen=True)
class EditOutcome:
    """Result of interpreting one instruction: new content xor error."""

    content: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _success(content: str) -> EditOutcome:
    return EditOutcome(content=content)


def _failure(message: str) -> EditOutcome:
    return EditOutcome(error=message)


def _split_lines(document: str) -> List[str]:
    return document.split("\n")


def _parse_range(target: str) -> Optional[Tuple[int, int]]:
    match = LINE_RANGE_PATTERN.match(target.strip())
    if not match:
        return None
    start = int(match.group(1))
    end = int(match.group(2)) if match.group(2) else start
    return start, end


def _check_range(start: int, end: int, line_count: int) -> Optional[str]:
    if start < 1 or start > line_count:
        return (
            f"Line {start} out of range (file has {line_count} lines, "
            f"valid lines are 1-{line_count})"
        )
    if end < start or end > line_count:
        return (
            f"Line range {start}-{end} invalid (file has {line_count} lines, "
            f"range must satisfy {start} <= end <= {line_count})"
        )
    return None


def list_headings(document: str) -> List[str]:
    """Return markdown heading lines in document order."""
    return [
        line.rstrip()
        for line in _split_lines(document.replace("\r\n", "\n"))
        if HEADING_PATTERN.match(line)
    ]


def _find_heading_line(lines: List[str], heading: str) -> Optional[int]:
    target = heading.strip()
    for index, line in enumerate(lines):
        if line.rstrip() == target:
            return index
    lowered = target.lower()
    for index, line in enumerate(lines):
        if line.strip().lower() == lowered:
            return index
    return None


def _apply_after(document: str, heading: str, content: str) -> EditOutcome:
    if not heading.strip():
        return _failure('Missing heading after "after:". Use "after:## Heading"')

    lines = _split_lines(document)
    index = _find_heading_line(lines, heading)
    if index is None:
        headings = list_headings(document)
        if headings:
            listed = ", ".join(f'"{item}"' for item in headings[:MAX_LISTED_HEADINGS])
            hint = f"Available headings: {listed}"
            if len(headings) > MAX_LISTED_HEADINGS:
                hint += f" (and {len(headings) - MAX_LISTED_HEADINGS} more)"
        else:
            hint = "The note has no headings"
        return _failure(f'Heading not found: "{heading}". {hint}')

    head = "\n".join(lines[: index + 1])
    tail = lines[index + 1 :]
    result = f"{head}\n\n{content}"
    if tail:
        result += "\n" + "\n".join(tail)
    return _success(result)


def _apply_insert(document: str, target: str, content: str) -> EditOutcome:
    if not LINE_NUMBER_PATTERN.match(target.strip()):
        return _failure(f'Invalid line number for insert: "{target}". Use "insert:5"')
    line_number = int(target.strip())

    lines = _split_lines(document)
    upper = len(lines) + 1
    if line_number < 1 or line_number > upper:
        return _failure(
            f"Line {line_number} out of range (file has {len(lines)} lines, "
            f"valid insert positions are 1-{upper})"
        )
    new_lines = lines[: line_number - 1] + [content] + lines[line_number - 1 :]
    return _success("\n".join(new_lines))


def _apply_delete(document: str, target: str) -> EditOutcome:
    bounds = _parse_range(target)
    if bounds is None:
        return _failure(f'Invalid delete format: "{target}". Use "delete:5" or "delete:5-7"')

    lines = _split_lines(document)
    error = _check_range(bounds[0], bounds[1], len(lines))
    if error:
        return _failure(error)
    start, end = bounds
    return _success("\n".join(lines[: start - 1] + lines[end:]))


def _apply_replace(document: str, target: str, content: str) -> EditOutcome:
    bounds = _parse_range(target)
    if bounds is not None:
        lines = _split_lines(document)
        error = _check_range(bounds[0], bounds[1], len(lines))
        if error:
            return _failure(error)
        start, end = bounds
        return _success("\n".join(lines[: start - 1] + [content] + lines[end:]))

    if not target:
        return _failure('Missing target after "replace:". Use "replace:5" or "replace:5-7"')

    normalized_document = document.replace("\r\n", "\n")
    normalized_search = target.replace("\r\n", "\n")
    if normalized_search not in normalized_document:
        return _failure(
            'Text to replace not found. Use "replace:LINE_NUMBER" format '
            '(e.g., "replace:5" or "replace:5-7")'
        )
    return _success(normalized_document.replace(normalized_search, content, 1))


def apply_edit(document: str, instruction: EditInstruction) -> EditOutcome:
    """Apply ``instruction`` to ``document`` without side effects."""
    position = instruction.position
    content = instruction.content

    if position == "start":
        return _success(f"{content}\n\n{document}")
    if position == "end":
        return _success(f"{document}\n\n{content}")
    if position.startswith("after:"):
        return _apply_after(document, position[len("after:") :], content)
    if position.startswith("insert:"):
        return _apply_insert(document, position[len("insert:") :], content)
    if position.startswith("delete:"):
        return _apply_delete(document, position[len("delete:") :])
    if position.startswith("replace:"):
        return _apply_replace(document, position[len("replace:") :], content)

    return _failure(
        f'Unknown position type: "{position}". Use start, end, after:<heading>, '
        "insert:N, replace:N, replace:N-M, delete:N or delete:N-M"
    )


def determine_edit_type(position: str) -> str:
    """Classify a position as ``add``, ``replace`` or ``delete``."""
    if position.startswith("delete:"):
        return "delete"
    if position in ("start", "end") or position.startswith(("after:", "insert:")):
        return "add"
    return "replace"


def edit_line_number(position: str) -> float:
    """Anchor line used to order several edits bottom-to-top."""
    if position == "start":
        return 0
    if position == "end":
        return math.inf
    if position.startswith("after:"):
        return HEADING_ANCHOR
    if position.startswith("insert:"):
        try:
            return int(position[len("insert:") :])
        except ValueError:
            return 0
    if position.startswith(("replace:", "delete:")):
        bounds = _parse_range(position.split(":", 1)[1])
        if bounds is not None:
            return bounds[0]
    return 0


def sort_edits_bottom_up(instructions: List[EditInstruction]) -> List[EditInstruction]:
    """Order edits so applying them in sequence does not shift later targets."""
    return sorted(instructions, key=lambda item: edit_line_number(item.position), reverse=True)


__all__ = [
    "EditOutcome",
    "apply_edit",
    "determine_edit_type",
    "edit_line_number",
    "list_headings",
    "sort_edits_bottom_up",
]
