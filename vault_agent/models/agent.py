"""Pydantic models for the vault agent loop.

Covers the immutable run input (task, budget), the transcript exchanged with
the model, the mutable per-run loop state, and the terminal/suspended outcomes
returned to callers.
"""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class AICapabilities(BaseModel):
    """Which kinds of content changes the agent may propose."""

    model_config = ConfigDict(frozen=True)

    can_add: bool = Field(True, description="Allow start/end/after/insert edits")
    can_delete: bool = Field(True, description="Allow replace/delete edits")
    can_create: bool = Field(True, description="Allow creating new notes")


class WhitelistedCommand(BaseModel):
    """A host command the agent is allowed to execute."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str = ""


class EditInstruction(BaseModel):
    """A symbolic edit against one note (see edit_interpreter for the grammar)."""

    model_config = ConfigDict(frozen=True)

    file: str = Field(..., description="Target note path or name")
    position: str = Field(..., description="Position specifier, e.g. 'replace:3-5'")
    content: str = Field("", description="Content block to insert or replace with")


class EditResults(BaseModel):
    """Outcome of edits proposed in an earlier chat turn."""

    success: int = 0
    failed: int = 0
    accepted: Optional[int] = None
    rejected: Optional[int] = None
    pending: Optional[int] = None
    failures: List[Dict[str, str]] = Field(default_factory=list)


class ChatHistoryMessage(BaseModel):
    """A prior user/assistant turn rendered into the initial transcript."""

    role: Literal["user", "assistant", "context-switch"]
    content: str
    active_file: Optional[str] = None
    proposed_edits: List[EditInstruction] = Field(default_factory=list)
    edit_results: Optional[EditResults] = None


class CurrentNote(BaseModel):
    """Snapshot of the note open when the task was issued."""

    model_config = ConfigDict(frozen=True)

    path: str
    content: str


class VaultStats(BaseModel):
    """Collection statistics shown to the model."""

    model_config = ConfigDict(frozen=True)

    total_notes: int = 0
    total_folders: int = 0
    total_tags: int = 0


class AgentTask(BaseModel):
    """Immutable input for a single agent invocation."""

    model_config = ConfigDict(frozen=True)

    task: str = Field(..., min_length=1, description="Free-text goal from the user")
    current_note: Optional[CurrentNote] = None
    vault_stats: VaultStats = Field(default_factory=VaultStats)
    chat_history: List[ChatHistoryMessage] = Field(default_factory=list)


class Budget(BaseModel):
    """Per-run ceilings; read-only while the loop runs."""

    model_config = ConfigDict(frozen=True)

    max_iterations: int = Field(10, ge=1, description="Maximum model rounds")
    max_total_tokens: int = Field(100_000, ge=1, description="Cumulative token ceiling")


class ToolCall(BaseModel):
    """A model-issued tool invocation; arguments are kept as raw text."""

    id: str
    name: str
    arguments: str = "{}"

    def to_api(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


class TranscriptMessage(BaseModel):
    """One role-tagged entry of the transcript."""

    role: Literal["system", "user", "assistant", "tool"]
    content: Optional[str] = None
    tool_calls: List[ToolCall] = Field(default_factory=list)
    tool_call_id: Optional[str] = None

    @classmethod
    def system(cls, content: str) -> "TranscriptMessage":
        return cls(role="system", content=content)

    @classmethod
    def user(cls, content: str) -> "TranscriptMessage":
        return cls(role="user", content=content)

    @classmethod
    def tool_result(cls, tool_call_id: str, content: str) -> "TranscriptMessage":
        return cls(role="tool", tool_call_id=tool_call_id, content=content)

    def to_api(self) -> Dict[str, Any]:
        """Render in the OpenAI chat-completions message format."""
        message: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            message["tool_calls"] = [call.to_api() for call in self.tool_calls]
        if self.tool_call_id is not None:
            message["tool_call_id"] = self.tool_call_id
        return message


class TokenUsage(BaseModel):
    """Cumulative token accounting for a run."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    per_round: List[int] = Field(default_factory=list)


class WebSource(BaseModel):
    """A web page surfaced during the run."""

    url: str
    title: str = ""


class LoopState(BaseModel):
    """Mutable bookkeeping owned by the loop controller."""

    iteration: int = Field(0, description="Rounds started so far")
    usage: TokenUsage = Field(default_factory=TokenUsage)
    finished: bool = False
    summary: str = ""
    final_warning_sent: bool = False
    edits_proposed: List[EditInstruction] = Field(default_factory=list)
    edit_count: int = Field(0, description="Successful edit/create actions")
    notes_read: List[str] = Field(default_factory=list)
    notes_copied: List[str] = Field(default_factory=list)
    notes_created: List[str] = Field(default_factory=list)
    web_sources: List[WebSource] = Field(default_factory=list)
    note_metadata: Dict[str, Dict[str, Any]] = Field(
        default_factory=dict, description="Auxiliary per-note data gathered so far"
    )


class ProgressEvent(BaseModel):
    """One-way notification emitted while the loop runs."""

    type: Literal[
        "iteration",
        "thinking",
        "tool_call",
        "tool_result",
        "suspended",
        "complete",
        "error",
    ]
    message: str = ""
    detail: Optional[str] = None
    full_content: Optional[str] = None


class AgentResult(BaseModel):
    """Terminal outcome of a run (completed, cancelled or failed)."""

    status: Literal["completed", "cancelled", "error"] = "completed"
    success: bool = True
    summary: str = ""
    edits_proposed: List[EditInstruction] = Field(default_factory=list)
    notes_read: List[str] = Field(default_factory=list)
    notes_copied: List[str] = Field(default_factory=list)
    notes_created: List[str] = Field(default_factory=list)
    web_sources_used: List[WebSource] = Field(default_factory=list)
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    iterations_used: int = 0
    error: Optional[str] = None


class SuspendedResult(BaseModel):
    """A run paused on a clarification question."""

    status: Literal["suspended"] = "suspended"
    question: str
    choices: List[str] = Field(default_factory=list)
    resume_token: str = Field(..., description="Opaque blob; pass back unmodified")
    iterations_used: int = 0
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    edits_proposed: List[EditInstruction] = Field(default_factory=list)


__all__ = [
    "AICapabilities",
    "AgentResult",
    "AgentTask",
    "Budget",
    "ChatHistoryMessage",
    "CurrentNote",
    "EditInstruction",
    "EditResults",
    "LoopState",
    "ProgressEvent",
    "SuspendedResult",
    "TokenUsage",
    "ToolCall",
    "TranscriptMessage",
    "VaultStats",
    "WebSource",
    "WhitelistedCommand",
]
