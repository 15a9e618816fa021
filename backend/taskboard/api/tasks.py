"""Task, move, history and comment endpoints for one board."""

from __future__ import annotations

from typing import TYPE_CHECKING
from uuid import UUID

from fastapi import APIRouter, Query, status
from fastapi_pagination.limit_offset import LimitOffsetPage

from taskboard.api.deps import SESSION_DEP, TASK_STORE_DEP
from taskboard.db.pagination import paginate
from taskboard.schemas.common import OkResponse
from taskboard.schemas.errors import ErrorResponse
from taskboard.schemas.history import CommentCreate, CommentRead, HistoryEntryRead
from taskboard.schemas.tasks import TaskCreate, TaskMove, TaskPriority, TaskRead, TaskUpdate

if TYPE_CHECKING:
    from sqlmodel.ext.asyncio.session import AsyncSession

    from taskboard.models.task_comments import TaskComment
    from taskboard.models.tasks import Task
    from taskboard.services.task_store import TaskStore

router = APIRouter(prefix="/boards/{board_id}/tasks", tags=["tasks"])
BROKER_QUERY = Query(default=None)
STAGE_QUERY = Query(default=None)
PRIORITY_QUERY = Query(default=None)
SEARCH_QUERY = Query(default=None, max_length=200)
_RUNTIME_TYPE_REFERENCES = (UUID,)


@router.get("", response_model=LimitOffsetPage[TaskRead])
async def list_tasks(
    broker_id: UUID | None = BROKER_QUERY,
    stage_id: UUID | None = STAGE_QUERY,
    priority: TaskPriority | None = PRIORITY_QUERY,
    search: str | None = SEARCH_QUERY,
    session: AsyncSession = SESSION_DEP,
    store: TaskStore = TASK_STORE_DEP,
) -> LimitOffsetPage[TaskRead]:
    """List tasks newest first, limited to the caller's broker scope."""
    queryset = store.list_query(
        broker_id=broker_id,
        stage_id=stage_id,
        priority=priority,
        search=search,
    )
    return await paginate(session, queryset.statement)


@router.post("", response_model=TaskRead)
async def create_task(
    payload: TaskCreate,
    store: TaskStore = TASK_STORE_DEP,
) -> Task:
    """Create a task; without `stage_id` it lands in the fallback stage."""
    return await store.create_task(payload)


@router.get("/{task_id}", response_model=TaskRead)
async def get_task(task_id: UUID, store: TaskStore = TASK_STORE_DEP) -> Task:
    """Get one task."""
    return await store.get_task(task_id)


@router.patch("/{task_id}", response_model=TaskRead)
async def update_task(
    task_id: UUID,
    payload: TaskUpdate,
    store: TaskStore = TASK_STORE_DEP,
) -> Task:
    """Apply a partial update; a `stage_id` in the patch moves the task."""
    return await store.update_task(task_id, payload)


@router.delete("/{task_id}", response_model=OkResponse)
async def delete_task(task_id: UUID, store: TaskStore = TASK_STORE_DEP) -> OkResponse:
    """Delete a task and its comments; its history stays readable."""
    await store.delete_task(task_id)
    return OkResponse()


@router.post(
    "/{task_id}/move",
    response_model=TaskRead,
    responses={
        status.HTTP_403_FORBIDDEN: {
            "model": ErrorResponse,
            "description": "Role may not move tasks, or the task belongs to another broker.",
        },
        status.HTTP_404_NOT_FOUND: {
            "model": ErrorResponse,
            "description": "Task or target stage does not exist on this board.",
        },
        status.HTTP_503_SERVICE_UNAVAILABLE: {
            "model": ErrorResponse,
            "description": "Transient store failure; the move was not applied and may be retried.",
        },
    },
)
async def move_task(
    task_id: UUID,
    payload: TaskMove,
    store: TaskStore = TASK_STORE_DEP,
) -> Task:
    """Move a task to another stage. Moving to the current stage is still logged."""
    return await store.move_task(task_id, payload.stage_id)


@router.get("/{task_id}/history", response_model=LimitOffsetPage[HistoryEntryRead])
async def list_task_history(
    task_id: UUID,
    session: AsyncSession = SESSION_DEP,
    store: TaskStore = TASK_STORE_DEP,
) -> LimitOffsetPage[HistoryEntryRead]:
    """Page through a task's history, oldest first."""
    statement = await store.history_query(task_id)
    return await paginate(session, statement)


@router.get("/{task_id}/comments", response_model=LimitOffsetPage[CommentRead])
async def list_task_comments(
    task_id: UUID,
    session: AsyncSession = SESSION_DEP,
    store: TaskStore = TASK_STORE_DEP,
) -> LimitOffsetPage[CommentRead]:
    """Page through a task's comments, oldest first."""
    statement = await store.comments_query(task_id)
    return await paginate(session, statement)


@router.post("/{task_id}/comments", response_model=CommentRead)
async def create_task_comment(
    task_id: UUID,
    payload: CommentCreate,
    store: TaskStore = TASK_STORE_DEP,
) -> TaskComment:
    """Post a comment on a task."""
    return await store.add_comment(task_id, payload.body)
