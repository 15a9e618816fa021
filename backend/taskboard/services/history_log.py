"""Append-only task history and comment reads.

`append` never commits: the caller's commit covers both the primary mutation
and its history row, so a failed append aborts the whole operation. Per-task
ordering is `(created_at, seq)`, where `seq` is assigned here from the stored
maximum rather than from any client clock; the unique `(task_id, seq)` key
makes two concurrent appends for the same task collide instead of interleave.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func
from sqlmodel import col, select

from taskboard.core.config import settings
from taskboard.core.time import utcnow
from taskboard.models.task_comments import TaskComment
from taskboard.models.task_history import HISTORY_KINDS, TaskHistoryEntry
from taskboard.models.tasks import Task
from taskboard.services.errors import NotFoundError, ValidationError, translate_store_errors

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from uuid import UUID

    from sqlmodel.ext.asyncio.session import AsyncSession

COMMENT_EXCERPT_LENGTH = 100


def _json_value(value: Any) -> Any:
    """Render field values the way they are stored in history payloads."""
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)


def moved_payload(
    from_stage_id: UUID,
    to_stage_id: UUID,
    *,
    reason: str | None = None,
) -> dict[str, object]:
    payload: dict[str, object] = {
        "from_stage_id": str(from_stage_id),
        "to_stage_id": str(to_stage_id),
    }
    if reason is not None:
        payload["reason"] = reason
    return payload


def field_changed_payload(field: str, old_value: Any, new_value: Any) -> dict[str, object]:
    return {
        "field": field,
        "old_value": _json_value(old_value),
        "new_value": _json_value(new_value),
    }


def commented_payload(comment: TaskComment) -> dict[str, object]:
    return {"comment_id": str(comment.id), "excerpt": comment.body[:COMMENT_EXCERPT_LENGTH]}


async def _next_position(session: AsyncSession, task_id: UUID) -> tuple[int, datetime]:
    last_seq, last_created_at = (
        await session.exec(
            select(
                func.max(col(TaskHistoryEntry.seq)),
                func.max(col(TaskHistoryEntry.created_at)),
            ).where(col(TaskHistoryEntry.task_id) == task_id),
        )
    ).one()
    now = utcnow()
    # Never step backwards in time, even if this server's clock lags another's.
    if last_created_at is not None and last_created_at > now:
        now = last_created_at
    return int(last_seq or 0) + 1, now


async def append(
    session: AsyncSession,
    *,
    task_id: UUID,
    board_id: UUID,
    actor_id: UUID,
    kind: str,
    payload: dict[str, object] | None = None,
) -> TaskHistoryEntry:
    """Stage a history entry in the caller's transaction and flush it."""
    if kind not in HISTORY_KINDS:
        raise ValidationError(f"Unknown history kind: {kind}")
    seq, created_at = await _next_position(session, task_id)
    entry = TaskHistoryEntry(
        task_id=task_id,
        board_id=board_id,
        actor_id=actor_id,
        kind=kind,
        payload=payload or {},
        seq=seq,
        created_at=created_at,
    )
    session.add(entry)
    # Flush now so a sequence collision aborts before the mutation is applied.
    await session.flush()
    return entry


async def history_exists(session: AsyncSession, *, board_id: UUID, task_id: UUID) -> bool:
    task = await Task.objects.filter_by(id=task_id, board_id=board_id).first(session)
    if task is not None:
        return True
    entry = (
        await TaskHistoryEntry.objects.filter_by(task_id=task_id, board_id=board_id)
        .limit(1)
        .first(session)
    )
    return entry is not None


async def deleted_broker_id(
    session: AsyncSession,
    *,
    board_id: UUID,
    task_id: UUID,
) -> str | None:
    """Broker recorded on a deleted task's `deleted` entry, if any."""
    entry = (
        await TaskHistoryEntry.objects.filter_by(task_id=task_id, board_id=board_id, kind="deleted")
        .order_by(col(TaskHistoryEntry.seq).desc())
        .first(session)
    )
    if entry is None:
        return None
    broker_id = entry.payload.get("broker_id")
    return broker_id if isinstance(broker_id, str) else None


async def fetch_history(
    session: AsyncSession,
    *,
    board_id: UUID,
    task_id: UUID,
    page_size: int | None = None,
) -> AsyncIterator[TaskHistoryEntry]:
    """Return a fresh oldest-first iterator over a task's history.

    Raises `NotFoundError` for ids with neither a task row nor history on the
    board. History of deleted tasks stays readable. Each call starts from the
    beginning, so the sequence can be re-read at will.
    """
    if not await history_exists(session, board_id=board_id, task_id=task_id):
        raise NotFoundError("Task not found.", detail={"task_id": str(task_id)})
    size = page_size or settings.history_page_size
    return _iter_pages(session, history_statement(task_id), size, operation="fetch_history")


async def fetch_comments(
    session: AsyncSession,
    *,
    board_id: UUID,
    task_id: UUID,
    page_size: int | None = None,
) -> AsyncIterator[TaskComment]:
    """Return a fresh oldest-first iterator over a task's comments."""
    task = await Task.objects.filter_by(id=task_id, board_id=board_id).first(session)
    if task is None:
        raise NotFoundError("Task not found.", detail={"task_id": str(task_id)})
    size = page_size or settings.history_page_size
    return _iter_pages(session, comments_statement(task_id), size, operation="fetch_comments")


async def _iter_pages(
    session: AsyncSession,
    statement: Any,
    page_size: int,
    *,
    operation: str,
) -> AsyncIterator[Any]:
    offset = 0
    while True:
        with translate_store_errors(operation):
            page = list(await session.exec(statement.offset(offset).limit(page_size)))
        for row in page:
            yield row
        if len(page) < page_size:
            return
        offset += page_size


def history_statement(task_id: UUID) -> Any:
    """Oldest-first history select, shared with the paginated endpoint."""
    return (
        select(TaskHistoryEntry)
        .where(col(TaskHistoryEntry.task_id) == task_id)
        .order_by(col(TaskHistoryEntry.created_at).asc(), col(TaskHistoryEntry.seq).asc())
    )


def comments_statement(task_id: UUID) -> Any:
    """Oldest-first comment select, shared with the paginated endpoint."""
    return (
        select(TaskComment)
        .where(col(TaskComment.task_id) == task_id)
        .order_by(col(TaskComment.created_at).asc(), col(TaskComment.id).asc())
    )
