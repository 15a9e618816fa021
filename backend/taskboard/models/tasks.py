"""Task model representing a broker's work item placed in a process stage."""

from __future__ import annotations

from datetime import date, datetime
from uuid import UUID, uuid4

from sqlmodel import Field

from taskboard.core.time import utcnow
from taskboard.models.base import QueryModel

RUNTIME_ANNOTATION_TYPES = (date, datetime)
TASK_PRIORITIES = ("low", "medium", "high")


class Task(QueryModel, table=True):
    """Board-scoped broker task; `stage_id` always references an existing stage."""

    __tablename__ = "tasks"  # pyright: ignore[reportAssignmentType]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    board_id: UUID = Field(foreign_key="boards.id", index=True)
    broker_id: UUID = Field(index=True)
    stage_id: UUID = Field(foreign_key="process_stages.id", index=True)

    title: str
    description: str | None = None
    due_date: date | None = None
    priority: str = Field(default="medium", index=True)
    property_reference: str | None = None
    completed_at: datetime | None = None

    created_by: UUID | None = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=utcnow, index=True)
    updated_at: datetime = Field(default_factory=utcnow)
