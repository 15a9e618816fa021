"""Append-only task history model."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import Field

from taskboard.core.time import utcnow
from taskboard.models.base import QueryModel

RUNTIME_ANNOTATION_TYPES = (datetime,)
HISTORY_KINDS = ("created", "moved", "field_changed", "commented", "deleted")


class TaskHistoryEntry(QueryModel, table=True):
    """Audit record of one task-affecting event, ordered by (created_at, seq)."""

    __tablename__ = "task_history"  # pyright: ignore[reportAssignmentType]
    __table_args__ = (UniqueConstraint("task_id", "seq", name="uq_task_history_task_seq"),)

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    # No foreign key: history outlives the task it describes.
    task_id: UUID = Field(index=True)
    board_id: UUID = Field(index=True)
    actor_id: UUID = Field(index=True)
    kind: str = Field(index=True)
    payload: dict[str, object] = Field(default_factory=dict, sa_column=Column(JSON))
    seq: int
    created_at: datetime = Field(default_factory=utcnow, index=True)
