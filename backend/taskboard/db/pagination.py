"""Limit/offset pagination for list endpoints."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING, Any

from fastapi_pagination.ext.sqlalchemy import apaginate as _paginate

if TYPE_CHECKING:
    from sqlalchemy.sql import Select
    from sqlmodel.ext.asyncio.session import AsyncSession


async def paginate(
    session: AsyncSession,
    statement: Select[Any],
    *,
    transformer: Callable[[Sequence[Any]], Sequence[Any]] | None = None,
) -> Any:
    """Paginate a select statement using the request's limit/offset params."""
    return await _paginate(session, statement, transformer=transformer)
