"""Pydantic models for proposed edits, diffs and edit API payloads."""

from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from .agent import EditInstruction

EditType = Literal["replace", "add", "delete"]


class DiffLine(BaseModel):
    """One line of a preview diff."""

    type: Literal["unchanged", "added", "removed"]
    line_number: Optional[int] = Field(None, description="Line in the old content")
    new_line_number: Optional[int] = Field(None, description="Line in the new content")
    content: str


class ProposedEdit(BaseModel):
    """A validated edit waiting for the user to accept or reject it."""

    id: str = Field(..., description="Short random identifier")
    instruction: EditInstruction
    path: str = Field(..., description="Resolved vault-relative path")
    edit_type: EditType
    before: str = Field("", description="Content of the affected lines before the edit")
    after: str = Field("", description="Content block the edit introduces")
    new_content: str = Field(..., description="Full note content after the edit")
    is_new_file: bool = False


class EditPreviewRequest(BaseModel):
    """Request payload for previewing or applying an edit."""

    file: str = Field(..., min_length=1, max_length=256)
    position: str = Field(..., min_length=1)
    content: str = ""


class EditPreviewResponse(BaseModel):
    """Result of previewing an edit against the current note content."""

    path: Optional[str] = None
    edit_type: Optional[EditType] = None
    new_content: Optional[str] = None
    diff: List[DiffLine] = Field(default_factory=list)
    error: Optional[str] = None


__all__ = [
    "DiffLine",
    "EditPreviewRequest",
    "EditPreviewResponse",
    "EditType",
    "ProposedEdit",
]
