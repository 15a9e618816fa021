"""Schemas for process stage create/update/read operations."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlmodel import Field, SQLModel

RUNTIME_ANNOTATION_TYPES = (datetime, UUID)


class StageCreate(SQLModel):
    """Payload for appending a stage to the end of the pipeline."""

    title: str
    color: str = "#64748b"
    is_default: bool = False


class StageUpdate(SQLModel):
    """Payload for partial stage updates."""

    title: str | None = None
    color: str | None = None
    order_index: int | None = None
    is_default: bool | None = None


class StageOrderUpdate(SQLModel):
    """Full left-to-right ordering of a board's stages."""

    stage_ids: list[UUID] = Field(min_length=1)


class StageRead(SQLModel):
    """Stage payload returned from read endpoints."""

    id: UUID
    board_id: UUID
    title: str
    color: str
    order_index: int
    is_default: bool
    created_at: datetime
    updated_at: datetime


class StageDeleteResult(SQLModel):
    """Outcome of a stage deletion, listing the tasks moved to the fallback stage."""

    ok: bool = True
    fallback_stage_id: UUID | None = None
    reassigned_task_ids: list[UUID] = Field(default_factory=list)
