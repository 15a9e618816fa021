"""Schemas for task create/update/move/read operations."""

from __future__ import annotations

from datetime import date, datetime
from typing import Literal
from uuid import UUID

from sqlmodel import SQLModel

RUNTIME_ANNOTATION_TYPES = (date, datetime, UUID)
TaskPriority = Literal["low", "medium", "high"]


class TaskCreate(SQLModel):
    """Payload for creating a task; `stage_id` defaults to the fallback stage."""

    broker_id: UUID
    title: str
    stage_id: UUID | None = None
    description: str | None = None
    due_date: date | None = None
    priority: TaskPriority = "medium"
    property_reference: str | None = None


class TaskUpdate(SQLModel):
    """Payload for partial task updates; only fields present are applied."""

    title: str | None = None
    description: str | None = None
    due_date: date | None = None
    priority: TaskPriority | None = None
    property_reference: str | None = None
    broker_id: UUID | None = None
    completed_at: datetime | None = None
    stage_id: UUID | None = None


class TaskMove(SQLModel):
    """Payload for moving a task to another stage."""

    stage_id: UUID


class TaskRead(SQLModel):
    """Task payload returned from read endpoints."""

    id: UUID
    board_id: UUID
    broker_id: UUID
    stage_id: UUID
    title: str
    description: str | None = None
    due_date: date | None = None
    priority: str
    property_reference: str | None = None
    completed_at: datetime | None = None
    created_by: UUID | None = None
    created_at: datetime
    updated_at: datetime
