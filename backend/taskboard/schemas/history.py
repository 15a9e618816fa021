"""Schemas for task history entries and comments."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlmodel import SQLModel

RUNTIME_ANNOTATION_TYPES = (datetime, UUID)


class HistoryEntryRead(SQLModel):
    """History entry payload returned by read endpoints."""

    id: UUID
    task_id: UUID
    actor_id: UUID
    kind: str
    payload: dict[str, Any]
    seq: int
    created_at: datetime


class CommentCreate(SQLModel):
    """Payload for posting a task comment."""

    body: str


class CommentRead(SQLModel):
    """Comment payload returned by read endpoints."""

    id: UUID
    task_id: UUID
    author_id: UUID
    body: str
    created_at: datetime
