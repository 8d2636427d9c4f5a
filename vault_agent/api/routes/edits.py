"""Edit API endpoints - preview proposed edits as diffs and apply accepted ones."""

from __future__ import annotations

from collections import defaultdict
import logging
from typing import Dict, List

from fastapi import APIRouter, Depends, HTTPException, status

from ..dependencies import get_vault_service
from ...models.agent import EditInstruction
from ...models.edits import EditPreviewRequest, EditPreviewResponse
from ...models.requests import ApplyEditsRequest, ApplyEditsResponse
from ...services.diff import compute_diff
from ...services.edit_interpreter import apply_edit, determine_edit_type
from ...services.vault import VaultService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/edits", tags=["edits"])


@router.post("/preview", response_model=EditPreviewResponse)
async def preview_edit(
    request: EditPreviewRequest,
    vault: VaultService = Depends(get_vault_service),
):
    """Show what an edit would do without writing it.

    Interpreter rejections come back with `error` set and an empty diff.
    """
    try:
        path = vault.require_note(request.file)
    except FileNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except PermissionError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))

    document = vault.read_raw(path)
    instruction = EditInstruction(file=path, position=request.position, content=request.content)
    outcome = apply_edit(document, instruction)
    if not outcome.ok:
        return EditPreviewResponse(path=path, error=outcome.error)

    return EditPreviewResponse(
        path=path,
        edit_type=determine_edit_type(request.position),
        new_content=outcome.content,
        diff=compute_diff(document, outcome.content or ""),
    )


@router.post("/apply", response_model=ApplyEditsResponse)
async def apply_edits(
    request: ApplyEditsRequest,
    vault: VaultService = Depends(get_vault_service),
):
    """Write accepted edits; edits to one note are applied bottom-to-top."""
    by_file: Dict[str, List[EditInstruction]] = defaultdict(list)
    for edit in request.edits:
        by_file[edit.file].append(edit)

    applied: List[str] = []
    errors: List[str] = []
    for file, edits in by_file.items():
        try:
            path, rejected = vault.apply_edits(file, edits)
        except (FileNotFoundError, PermissionError, ValueError) as e:
            errors.append(f'"{file}": {e}')
            continue
        if len(rejected) < len(edits):
            applied.append(path)
        errors.extend(f'"{path}" {message}' for message in rejected)

    logger.info(f"Applied edits to {len(applied)} note(s)", extra={"errors": len(errors)})
    return ApplyEditsResponse(applied=applied, errors=errors)


__all__ = ["router"]
