"""Pydantic models for data validation and serialization."""

from .agent import (
    AICapabilities,
    AgentResult,
    AgentTask,
    Budget,
    ChatHistoryMessage,
    CurrentNote,
    EditInstruction,
    EditResults,
    LoopState,
    ProgressEvent,
    SuspendedResult,
    TokenUsage,
    ToolCall,
    TranscriptMessage,
    VaultStats,
    WebSource,
    WhitelistedCommand,
)
from .continuation import CONTINUATION_VERSION, Continuation
from .edits import DiffLine, EditPreviewRequest, EditPreviewResponse, ProposedEdit
from .requests import (
    AgentResumeRequest,
    AgentRunRequest,
    AgentRunResponse,
    ApplyEditsRequest,
    ApplyEditsResponse,
)

__all__ = [
    "AICapabilities",
    "AgentResult",
    "AgentResumeRequest",
    "AgentRunRequest",
    "AgentRunResponse",
    "ApplyEditsRequest",
    "ApplyEditsResponse",
    "AgentTask",
    "Budget",
    "ChatHistoryMessage",
    "CONTINUATION_VERSION",
    "Continuation",
    "CurrentNote",
    "DiffLine",
    "EditInstruction",
    "EditPreviewRequest",
    "EditPreviewResponse",
    "EditResults",
    "LoopState",
    "ProgressEvent",
    "ProposedEdit",
    "SuspendedResult",
    "TokenUsage",
    "ToolCall",
    "TranscriptMessage",
    "VaultStats",
    "WebSource",
    "WhitelistedCommand",
]
