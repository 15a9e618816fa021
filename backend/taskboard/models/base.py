"""Base model class with the `objects` query manager."""

from __future__ import annotations

from typing import ClassVar

from sqlmodel import SQLModel

from taskboard.db.query_manager import ManagerDescriptor


class QueryModel(SQLModel, table=False):
    """SQLModel base exposing `Model.objects` chainable queries."""

    objects: ClassVar[ManagerDescriptor] = ManagerDescriptor()
