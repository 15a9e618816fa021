"""Structured error payload schemas used by API responses."""

from __future__ import annotations

from pydantic import Field
from sqlmodel import SQLModel


class ErrorResponse(SQLModel):
    """Standardized error payload returned for board failures."""

    detail: str | dict[str, object] | list[object] = Field(
        description="Error message, or an object with `message` plus context fields.",
        examples=[
            "Stage title must not be empty.",
            {"message": "Task not found.", "task_id": "3f1f0b9e-4f7a-4fbe-b0f1-1a6f0f4f9e70"},
        ],
    )
    request_id: str | None = Field(
        default=None,
        description="Request correlation identifier injected by middleware.",
    )
    code: str | None = Field(
        default=None,
        description="Machine-readable error kind.",
        examples=["validation_error", "not_found", "forbidden", "conflict", "transient_failure"],
    )
    retryable: bool | None = Field(
        default=None,
        description="Whether the client may retry the call unchanged.",
    )
