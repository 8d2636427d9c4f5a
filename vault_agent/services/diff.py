"""Line diff for edit previews. Read-only; never writes to the vault."""

from __future__ import annotations

from difflib import SequenceMatcher
from typing import List

from ..models.edits import DiffLine


def compute_diff(old_content: str, new_content: str) -> List[DiffLine]:
    """Return unchanged/removed/added lines with 1-indexed old and new numbers."""
    old_lines = old_content.split("\n")
    new_lines = new_content.split("\n")
    matcher = SequenceMatcher(a=old_lines, b=new_lines, autojunk=False)

    diff: List[DiffLine] = []
    for tag, i1, i2, j1, j2 in matcher.get_opcodes():
        if tag == "equal":
            for offset in range(i2 - i1):
                diff.append(
                    DiffLine(
                        type="unchanged",
                        line_number=i1 + offset + 1,
                        new_line_number=j1 + offset + 1,
                        content=old_lines[i1 + offset],
                    )
                )
            continue
        # Removals are listed before additions for replaced blocks.
        for index in range(i1, i2):
            diff.append(DiffLine(type="removed", line_number=index + 1, content=old_lines[index]))
        for index in range(j1, j2):
            diff.append(
                DiffLine(type="added", new_line_number=index + 1, content=new_lines[index])
            )
    return diff


def summarize_diff(diff: List[DiffLine]) -> str:
    """Short ``+added -removed`` summary used in tool results and the CLI."""
    added = sum(1 for line in diff if line.type == "added")
    removed = sum(1 for line in diff if line.type == "removed")
    return f"+{added} -{removed}"


__all__ = ["compute_diff", "summarize_diff"]
