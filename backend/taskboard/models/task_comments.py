"""Immutable task comment model."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlmodel import Field

from taskboard.core.time import utcnow
from taskboard.models.base import QueryModel

RUNTIME_ANNOTATION_TYPES = (datetime,)


class TaskComment(QueryModel, table=True):
    """Comment owned by a task; removed together with its task."""

    __tablename__ = "task_comments"  # pyright: ignore[reportAssignmentType]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    task_id: UUID = Field(foreign_key="tasks.id", index=True)
    author_id: UUID = Field(index=True)
    body: str
    created_at: datetime = Field(default_factory=utcnow, index=True)
