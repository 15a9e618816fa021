"""Schemas for board create/read operations."""

from __future__ import annotations

from datetime import datetime
from typing import Self
from uuid import UUID

from pydantic import model_validator
from sqlmodel import SQLModel

_ERR_NAME_REQUIRED = "name is required"
RUNTIME_ANNOTATION_TYPES = (datetime, UUID)


class BoardCreate(SQLModel):
    """Payload for creating a board."""

    name: str
    slug: str | None = None
    description: str = ""

    @model_validator(mode="after")
    def validate_name(self) -> Self:
        """Reject blank board names."""
        name = self.name.strip()
        if not name:
            raise ValueError(_ERR_NAME_REQUIRED)
        self.name = name
        return self


class BoardRead(SQLModel):
    """Board payload returned from read endpoints."""

    id: UUID
    name: str
    slug: str
    description: str
    created_at: datetime
    updated_at: datetime


class BoardPermissionsRead(SQLModel):
    """Capabilities of the calling actor, used to hide unavailable controls."""

    role: str
    capabilities: list[str]
