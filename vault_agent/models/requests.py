"""Request and response payloads for the HTTP API."""

from __future__ import annotations

from typing import List, Optional, Union

from pydantic import BaseModel, Field

from .agent import AgentResult, Budget, ChatHistoryMessage, CurrentNote, EditInstruction, SuspendedResult
from .edits import ProposedEdit


class AgentRunRequest(BaseModel):
    """Start an agent run."""

    task: str = Field(..., min_length=1, max_length=8000, description="What the agent should do")
    current_note: Optional[CurrentNote] = Field(
        None, description="Note open in the editor; read from the vault when only a path is known"
    )
    current_note_path: Optional[str] = Field(None, description="Vault path of the open note")
    chat_history: List[ChatHistoryMessage] = Field(default_factory=list)
    manual_context: List[str] = Field(
        default_factory=list, description="Note paths returned by get_manual_context"
    )
    budget: Optional[Budget] = Field(None, description="Override configured round/token limits")
    apply_edits: bool = Field(False, description="Write edits immediately instead of proposing them")


class AgentResumeRequest(BaseModel):
    """Continue a suspended run with the user's answer."""

    resume_token: str = Field(..., min_length=1)
    answer: str = Field(..., max_length=8000)
    apply_edits: bool = False


class AgentRunResponse(BaseModel):
    """Outcome of a run or resume call plus the edits awaiting review."""

    result: Union[SuspendedResult, AgentResult]
    pending_edits: List[ProposedEdit] = Field(default_factory=list)


class ApplyEditsRequest(BaseModel):
    """Accepted edits to write to the vault."""

    edits: List[EditInstruction] = Field(..., min_length=1)


class ApplyEditsResponse(BaseModel):
    applied: List[str] = Field(default_factory=list, description="Notes that were written")
    errors: List[str] = Field(default_factory=list)


__all__ = [
    "AgentResumeRequest",
    "AgentRunRequest",
    "AgentRunResponse",
    "ApplyEditsRequest",
    "ApplyEditsResponse",
]
