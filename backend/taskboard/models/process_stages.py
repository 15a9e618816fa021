"""Process stage model: one column of a board's task pipeline."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import Index
from sqlmodel import Field

from taskboard.core.time import utcnow
from taskboard.models.base import QueryModel

RUNTIME_ANNOTATION_TYPES = (datetime,)


class ProcessStage(QueryModel, table=True):
    """Named pipeline position; `order_index` defines left-to-right order."""

    __tablename__ = "process_stages"  # pyright: ignore[reportAssignmentType]
    __table_args__ = (Index("ix_process_stages_board_order", "board_id", "order_index"),)

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    board_id: UUID = Field(foreign_key="boards.id", index=True)
    title: str
    color: str = Field(default="#64748b")
    order_index: int = Field(default=0)
    is_default: bool = Field(default=False, index=True)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
