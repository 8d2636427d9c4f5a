"""Transcript construction for the vault agent.

Builds the system prompt, renders prior chat turns into the transcript and
holds the fixed texts the loop injects (final-round warning, stuck-loop
warning and directive).
"""

from __future__ import annotations

from datetime import date
import logging
from typing import List, Optional, Sequence

from ..models.agent import (
    AICapabilities,
    AgentTask,
    ChatHistoryMessage,
    TranscriptMessage,
    WhitelistedCommand,
)
from .prompt_loader import PromptLoader
from .tool_registry import ToolCategory, ToolRegistry

logger = logging.getLogger(__name__)

EDIT_CONTENT_TRUNCATION = 500
NOTE_PREVIEW_LIMIT = 4000

FINAL_ROUND_WARNING = (
    "--- FINAL ROUND ---\n"
    "This is your LAST round. You MUST call done() with a summary, or take final "
    "actions (edit, create, etc.) and then call done().\n"
    "No more exploration tools are available."
)

STUCK_DIRECTIVE = "You appear to be stuck in a loop. Call done() now with whatever information you have."


def build_stuck_warning(tool_name: str, call_count: int) -> str:
    return (
        f'WARNING: You\'ve called "{tool_name}" with the same arguments {call_count} times. '
        "This looks like a loop. Either use different parameters or call done() to finish."
    )


def position_types(capabilities: AICapabilities) -> List[str]:
    lines: List[str] = []
    if capabilities.can_add:
        lines.extend(
            [
                '- "start" / "end" - beginning or end of file',
                '- "after:## Heading" - after a heading (match EXACTLY including all # symbols)',
                '- "insert:N" - insert before line N (1-indexed)',
            ]
        )
    if capabilities.can_delete:
        lines.extend(
            [
                '- "replace:N" or "replace:N-M" - replace line(s), inclusive range',
                '- "delete:N" or "delete:N-M" - delete line(s)',
            ]
        )
    if capabilities.can_create:
        lines.append('- create_note - new file (full path with .md, folders auto-created)')
    return lines


def forbidden_actions(capabilities: AICapabilities) -> List[str]:
    lines: List[str] = []
    if not capabilities.can_add:
        lines.append('- DO NOT use "start", "end", "after:", or "insert:" positions')
    if not capabilities.can_delete:
        lines.append('- DO NOT use "delete:" or "replace:" positions')
    if not capabilities.can_create:
        lines.append("- DO NOT create new files")
    return lines


def build_system_prompt(
    loader: PromptLoader,
    registry: ToolRegistry,
    task: AgentTask,
    capabilities: AICapabilities,
    *,
    web_enabled: bool = False,
    whitelisted_commands: Sequence[WhitelistedCommand] = (),
    disabled_tools: Sequence[str] = (),
    custom_instructions: Optional[str] = None,
    today: Optional[date] = None,
) -> str:
    offered = registry.available_tools(
        capabilities,
        web_enabled=web_enabled,
        whitelisted_commands=whitelisted_commands,
        disabled_tools=disabled_tools,
    )
    action_tools = [
        name.value for name in offered if registry.category(name) is ToolCategory.ACTION
    ]
    answer_only = not (capabilities.can_add or capabilities.can_delete or capabilities.can_create)
    return loader.load(
        "agent/system.md",
        {
            "today": (today or date.today()).isoformat(),
            "stats": task.vault_stats,
            "web_enabled": web_enabled,
            "action_tools": action_tools,
            "position_types": position_types(capabilities),
            "forbidden": forbidden_actions(capabilities),
            "answer_only": answer_only,
            "custom_instructions": (custom_instructions or "").strip(),
        },
    )


def build_initial_message(loader: PromptLoader, task: AgentTask) -> str:
    note_preview = ""
    if task.current_note is not None:
        content = task.current_note.content
        if len(content) > NOTE_PREVIEW_LIMIT:
            content = content[:NOTE_PREVIEW_LIMIT] + "\n[... truncated]"
        note_preview = content
    return loader.load(
        "agent/initial.md",
        {"task": task.task, "current_note": task.current_note, "note_preview": note_preview},
    ).rstrip("\n")


def _truncate(text: str, limit: int = EDIT_CONTENT_TRUNCATION) -> str:
    return text[:limit] + ("..." if len(text) > limit else "")


def render_history_message(message: ChatHistoryMessage) -> TranscriptMessage:
    """Render one prior chat turn with its file context and edit feedback."""
    if message.role == "context-switch":
        return TranscriptMessage.system(
            f'[CONTEXT SWITCH: User navigated to note "{message.content}" '
            f"({message.active_file}). Messages after this point refer to this note "
            "as the active context.]"
        )

    if message.role == "user":
        prefix = f"[User was viewing: {message.active_file}]\n" if message.active_file else ""
        return TranscriptMessage.user(prefix + message.content)

    content = message.content
    if message.proposed_edits:
        content += "\n\n[EDITS I PROPOSED:]\n"
        for edit in message.proposed_edits:
            content += f'- File: "{edit.file}", Position: "{edit.position}"\n'
            content += f'  Content: "{_truncate(edit.content)}"\n'

    results = message.edit_results
    if results is not None:
        if results.accepted is not None or results.rejected is not None:
            parts = []
            if results.accepted:
                parts.append(f"{results.accepted} accepted")
            if results.rejected:
                parts.append(f"{results.rejected} rejected")
            if results.pending:
                parts.append(f"{results.pending} pending")
            if parts:
                content += f"\n[EDIT FEEDBACK: {', '.join(parts)}]"
        elif results.success > 0 or results.failed > 0:
            content += f"\n[EDIT RESULTS: {results.success} proposed, {results.failed} failed]"
        if results.failures:
            content += "\n[FAILURES:]\n"
            for failure in results.failures:
                content += f'- "{failure.get("file", "")}": {failure.get("error", "")}\n'

    return TranscriptMessage(role="assistant", content=content)


def build_initial_transcript(
    system_prompt: str,
    initial_message: str,
    history: Sequence[ChatHistoryMessage],
    history_length: int,
) -> List[TranscriptMessage]:
    """System prompt, the last ``history_length`` prior turns, then the task."""
    transcript = [TranscriptMessage.system(system_prompt)]
    if history_length > 0 and history:
        kept = list(history)[-history_length:]
        transcript.extend(render_history_message(message) for message in kept)
        logger.debug(f"Rendered {len(kept)} chat history message(s)")
    transcript.append(TranscriptMessage.user(initial_message))
    return transcript


__all__ = [
    "EDIT_CONTENT_TRUNCATION",
    "FINAL_ROUND_WARNING",
    "NOTE_PREVIEW_LIMIT",
    "STUCK_DIRECTIVE",
    "build_initial_message",
    "build_initial_transcript",
    "build_stuck_warning",
    "build_system_prompt",
    "forbidden_actions",
    "position_types",
    "render_history_message",
]
