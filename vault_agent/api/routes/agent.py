"""Agent API endpoints - run, resume and stream vault agent runs."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import AsyncGenerator, List, Optional, Sequence

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sse_starlette.sse import EventSourceResponse

from ..dependencies import get_app_config, get_chat_model, get_vault_service
from ...models.agent import AgentTask, CurrentNote, ProgressEvent
from ...models.edits import ProposedEdit
from ...models.requests import AgentResumeRequest, AgentRunRequest, AgentRunResponse
from ...services.capabilities import LocalVaultCapabilities
from ...services.config import AppConfig
from ...services.vault import VaultService
from ...services.vault_agent import ChatModel, ProgressSink, VaultAgent, build_agent

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/agent", tags=["agent"])


def _create_agent(
    config: AppConfig,
    vault: VaultService,
    model: Optional[ChatModel],
    *,
    manual_context: Sequence[str] = (),
    apply_edits: bool = False,
    progress: Optional[ProgressSink] = None,
) -> VaultAgent:
    return build_agent(
        config,
        vault=vault,
        model=model,
        progress=progress,
        manual_context_paths=manual_context,
        apply_edits=apply_edits,
    )


def _pending_edits(agent: VaultAgent) -> List[ProposedEdit]:
    backend = agent.executor.capabilities
    if isinstance(backend, LocalVaultCapabilities):
        return list(backend.pending_edits)
    return []


def _build_task(request: AgentRunRequest, vault: VaultService) -> AgentTask:
    current_note = request.current_note
    if current_note is None and request.current_note_path:
        try:
            path = vault.require_note(request.current_note_path)
        except FileNotFoundError as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
        except PermissionError as e:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
        current_note = CurrentNote(path=path, content=vault.read_raw(path))

    return AgentTask(
        task=request.task,
        current_note=current_note,
        vault_stats=vault.stats(),
        chat_history=request.chat_history,
    )


@router.post("/run", response_model=AgentRunResponse)
async def run_agent(
    request: AgentRunRequest,
    config: AppConfig = Depends(get_app_config),
    vault: VaultService = Depends(get_vault_service),
    model: Optional[ChatModel] = Depends(get_chat_model),
):
    """
    Run the agent on a task (non-streaming).

    **Response:**
    - `result`: terminal result (`completed` / `cancelled` / `error`) or a
      `suspended` result carrying a question and a `resume_token`
    - `pending_edits`: validated edits awaiting the user's decision
    """
    agent = _create_agent(
        config,
        vault,
        model,
        manual_context=request.manual_context,
        apply_edits=request.apply_edits,
    )
    task = _build_task(request, vault)
    logger.info(f"Agent run requested: {request.task[:100]}")
    result = await agent.run(task, request.budget)
    return AgentRunResponse(result=result, pending_edits=_pending_edits(agent))


@router.post("/resume", response_model=AgentRunResponse)
async def resume_agent(
    request: AgentResumeRequest,
    config: AppConfig = Depends(get_app_config),
    vault: VaultService = Depends(get_vault_service),
    model: Optional[ChatModel] = Depends(get_chat_model),
):
    """Continue a suspended run. An invalid or altered token yields 400."""
    agent = _create_agent(config, vault, model, apply_edits=request.apply_edits)
    result = await agent.resume(request.resume_token, request.answer)
    return AgentRunResponse(result=result, pending_edits=_pending_edits(agent))


@router.post("/stream")
async def stream_agent(
    http_request: Request,
    request: AgentRunRequest,
    config: AppConfig = Depends(get_app_config),
    vault: VaultService = Depends(get_vault_service),
    model: Optional[ChatModel] = Depends(get_chat_model),
):
    """
    Run the agent and stream progress as Server-Sent Events.

    Each event is a JSON object with a `type` of `iteration`, `thinking`,
    `tool_call`, `tool_result`, `suspended`, `complete` or `error`, followed by
    one final `result` event carrying the same payload as `/run`.
    Disconnecting cancels the run at the next round boundary.
    """
    queue: asyncio.Queue[Optional[str]] = asyncio.Queue()

    def on_progress(event: ProgressEvent) -> None:
        queue.put_nowait(json.dumps(event.model_dump(exclude_none=True)))

    agent = _create_agent(
        config,
        vault,
        model,
        manual_context=request.manual_context,
        apply_edits=request.apply_edits,
        progress=on_progress,
    )
    task = _build_task(request, vault)

    async def drive() -> None:
        try:
            result = await agent.run(task, request.budget)
            response = AgentRunResponse(result=result, pending_edits=_pending_edits(agent))
            queue.put_nowait(json.dumps({"type": "result", **response.model_dump(mode="json")}))
        except Exception as e:
            logger.exception("Agent streaming run failed")
            queue.put_nowait(json.dumps({"type": "error", "message": f"Streaming error: {e}"}))
        finally:
            queue.put_nowait(None)

    async def event_generator() -> AsyncGenerator[str, None]:
        runner = asyncio.create_task(drive())
        try:
            while True:
                item = await queue.get()
                if item is None:
                    break
                yield item
                if await http_request.is_disconnected():
                    logger.info("Client disconnected from agent stream")
                    agent.cancel()
                    break
        finally:
            if not runner.done():
                agent.cancel()

    return EventSourceResponse(event_generator())


__all__ = ["router"]
