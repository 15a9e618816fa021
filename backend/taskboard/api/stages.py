"""Process stage endpoints for one board."""

from __future__ import annotations

from typing import TYPE_CHECKING
from uuid import UUID

from fastapi import APIRouter, status

from taskboard.api.deps import STAGE_STORE_DEP
from taskboard.schemas.errors import ErrorResponse
from taskboard.schemas.stages import (
    StageCreate,
    StageDeleteResult,
    StageOrderUpdate,
    StageRead,
    StageUpdate,
)

if TYPE_CHECKING:
    from taskboard.models.process_stages import ProcessStage
    from taskboard.services.stage_store import StageStore

router = APIRouter(prefix="/boards/{board_id}/stages", tags=["stages"])
_RUNTIME_TYPE_REFERENCES = (UUID,)


@router.get("", response_model=list[StageRead])
async def list_stages(store: StageStore = STAGE_STORE_DEP) -> list[ProcessStage]:
    """List stages in pipeline order."""
    return await store.list_stages()


@router.post("", response_model=StageRead)
async def create_stage(
    payload: StageCreate,
    store: StageStore = STAGE_STORE_DEP,
) -> ProcessStage:
    """Append a stage to the end of the pipeline."""
    return await store.create_stage(payload)


@router.put("/order", response_model=list[StageRead])
async def reorder_stages(
    payload: StageOrderUpdate,
    store: StageStore = STAGE_STORE_DEP,
) -> list[ProcessStage]:
    """Rewrite the pipeline order from a full list of stage ids."""
    return await store.reorder_stages(payload.stage_ids)


@router.patch("/{stage_id}", response_model=StageRead)
async def update_stage(
    stage_id: UUID,
    payload: StageUpdate,
    store: StageStore = STAGE_STORE_DEP,
) -> ProcessStage:
    """Update a stage's title, color, position or default flag."""
    return await store.update_stage(stage_id, payload)


@router.delete(
    "/{stage_id}",
    response_model=StageDeleteResult,
    responses={
        status.HTTP_409_CONFLICT: {
            "model": ErrorResponse,
            "description": "Stage is the only default stage, or the last stage and not empty.",
            "content": {
                "application/json": {
                    "example": {
                        "detail": "Cannot delete the only default stage while other stages exist.",
                        "code": "conflict",
                        "retryable": False,
                    },
                },
            },
        },
    },
)
async def delete_stage(
    stage_id: UUID,
    store: StageStore = STAGE_STORE_DEP,
) -> StageDeleteResult:
    """Delete a stage after moving its tasks to the fallback stage."""
    reassigned = await store.delete_stage(stage_id)
    return StageDeleteResult(
        fallback_stage_id=reassigned[0].stage_id if reassigned else None,
        reassigned_task_ids=[task.id for task in reassigned],
    )
