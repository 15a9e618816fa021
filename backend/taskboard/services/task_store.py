"""Broker tasks, their stage placement, comments and history reads.

Every mutation appends its history entries inside the same transaction, so a
task change is never committed without its audit trail. Moves lock the task
row; concurrent moves of one task are serialized by the store and the last
commit wins.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import false, func, or_
from sqlmodel import col

from taskboard.core.logging import get_logger
from taskboard.core.time import utcnow
from taskboard.models.process_stages import ProcessStage
from taskboard.models.task_comments import TaskComment
from taskboard.models.tasks import TASK_PRIORITIES, Task
from taskboard.services import history_log
from taskboard.services.access_gate import (
    Capability,
    can_access_broker,
    require_broker_access,
    require_capability,
    visible_broker_ids,
)
from taskboard.services.errors import (
    ForbiddenError,
    NotFoundError,
    ValidationError,
    translate_store_errors,
)
from taskboard.services.store_base import BoardStore, ensure_fallback_stage

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from taskboard.db.query_manager import QuerySet
    from taskboard.models.task_history import TaskHistoryEntry
    from taskboard.schemas.tasks import TaskCreate, TaskUpdate

logger = get_logger(__name__)

# Fields an edit may change, in the order their history entries are written.
UPDATABLE_FIELDS = (
    "title",
    "description",
    "due_date",
    "priority",
    "property_reference",
    "broker_id",
    "completed_at",
)
_NON_NULLABLE_FIELDS = frozenset({"title", "priority", "broker_id"})


def _clean_title(value: str | None) -> str:
    title = (value or "").strip()
    if not title:
        raise ValidationError("Task title must not be empty.", detail={"field": "title"})
    return title


def _check_priority(value: str) -> str:
    if value not in TASK_PRIORITIES:
        raise ValidationError(
            f"Unknown task priority: {value}",
            detail={"field": "priority", "allowed": list(TASK_PRIORITIES)},
        )
    return value


def _naive_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is not None:
        return value.astimezone(UTC).replace(tzinfo=None)
    return value


class TaskStore(BoardStore):
    """Task reads and mutations for one board, on behalf of one actor."""

    async def _load(self, task_id: UUID, *, lock: bool = False) -> Task:
        queryset = Task.objects.filter_by(id=task_id, board_id=self.board_id)
        if lock:
            queryset = queryset.for_update()
        task = await queryset.first(self.session)
        if task is None:
            raise NotFoundError("Task not found.", detail={"task_id": str(task_id)})
        return task

    async def _stage_on_board(self, stage_id: UUID) -> ProcessStage:
        # Shared lock: the stage cannot be deleted until this transaction ends.
        stage = (
            await ProcessStage.objects.filter_by(id=stage_id, board_id=self.board_id)
            .for_update(read=True)
            .first(self.session)
        )
        if stage is None:
            raise NotFoundError("Stage not found.", detail={"stage_id": str(stage_id)})
        return stage

    def list_query(
        self,
        *,
        broker_id: UUID | None = None,
        stage_id: UUID | None = None,
        priority: str | None = None,
        search: str | None = None,
    ) -> QuerySet[Task]:
        """Newest-first task query limited to the actor's broker scope."""
        require_capability(self.actor, Capability.VIEW_BOARD)
        queryset = Task.objects.filter_by(board_id=self.board_id)
        visible = visible_broker_ids(self.actor)
        if visible is not None:
            if broker_id is not None and broker_id not in visible:
                return queryset.filter(false())
            queryset = queryset.filter(col(Task.broker_id).in_(visible))
        if broker_id is not None:
            queryset = queryset.filter_by(broker_id=broker_id)
        if stage_id is not None:
            queryset = queryset.filter_by(stage_id=stage_id)
        if priority is not None:
            queryset = queryset.filter_by(priority=priority)
        if search and search.strip():
            pattern = f"%{search.strip().lower()}%"
            queryset = queryset.filter(
                or_(
                    func.lower(col(Task.title)).like(pattern),
                    func.lower(func.coalesce(col(Task.description), "")).like(pattern),
                ),
            )
        return queryset.order_by(col(Task.created_at).desc(), col(Task.id).desc())

    async def list_tasks(
        self,
        *,
        broker_id: UUID | None = None,
        stage_id: UUID | None = None,
        priority: str | None = None,
        search: str | None = None,
    ) -> list[Task]:
        queryset = self.list_query(
            broker_id=broker_id,
            stage_id=stage_id,
            priority=priority,
            search=search,
        )
        with translate_store_errors("list_tasks"):
            return await queryset.all(self.session)

    async def get_task(self, task_id: UUID) -> Task:
        require_capability(self.actor, Capability.VIEW_BOARD)
        with translate_store_errors("get_task"):
            task = await self._load(task_id)
        require_broker_access(self.actor, task.broker_id)
        return task

    async def create_task(self, payload: TaskCreate) -> Task:
        require_capability(self.actor, Capability.CREATE_TASK)
        title = _clean_title(payload.title)
        priority = _check_priority(payload.priority)
        require_broker_access(self.actor, payload.broker_id)
        async with self._write("create_task"):
            if payload.stage_id is not None:
                stage = await self._stage_on_board(payload.stage_id)
            else:
                stage, seeded = await ensure_fallback_stage(self.session, self.board_id)
                if seeded:
                    self._notify("stages", "insert", stage.id)
            task = Task(
                board_id=self.board_id,
                broker_id=payload.broker_id,
                stage_id=stage.id,
                title=title,
                description=payload.description,
                due_date=payload.due_date,
                priority=priority,
                property_reference=payload.property_reference,
                created_by=self.actor.actor_id,
            )
            self.session.add(task)
            await self.session.flush()
            await history_log.append(
                self.session,
                task_id=task.id,
                board_id=self.board_id,
                actor_id=self.actor.actor_id,
                kind="created",
                payload={
                    "title": task.title,
                    "stage_id": str(task.stage_id),
                    "broker_id": str(task.broker_id),
                },
            )
            self._notify("tasks", "insert", task.id)
            self._notify("history", "insert", task.id)
        logger.info(
            "task.created",
            extra={
                "board_id": str(self.board_id),
                "task_id": str(task.id),
                "stage_id": str(task.stage_id),
                "actor_id": str(self.actor.actor_id),
            },
        )
        return task

    async def _apply_move(self, task: Task, stage_id: UUID) -> UUID:
        stage = await self._stage_on_board(stage_id)
        from_stage_id = task.stage_id
        task.stage_id = stage.id
        task.updated_at = utcnow()
        self.session.add(task)
        # Logged even when the stage is unchanged.
        await history_log.append(
            self.session,
            task_id=task.id,
            board_id=self.board_id,
            actor_id=self.actor.actor_id,
            kind="moved",
            payload=history_log.moved_payload(from_stage_id, stage.id),
        )
        self._notify("tasks", "update", task.id)
        self._notify("history", "insert", task.id)
        return from_stage_id

    async def move_task(self, task_id: UUID, to_stage_id: UUID) -> Task:
        require_capability(self.actor, Capability.MOVE_TASK)
        async with self._write("move_task"):
            task = await self._load(task_id, lock=True)
            require_broker_access(self.actor, task.broker_id)
            from_stage_id = await self._apply_move(task, to_stage_id)
        logger.info(
            "task.move.committed",
            extra={
                "board_id": str(self.board_id),
                "task_id": str(task.id),
                "from_stage_id": str(from_stage_id),
                "to_stage_id": str(task.stage_id),
                "noop": from_stage_id == task.stage_id,
                "actor_id": str(self.actor.actor_id),
            },
        )
        return task

    def _clean_updates(self, payload: TaskUpdate) -> dict[str, Any]:
        updates = payload.model_dump(exclude_unset=True)
        for field in _NON_NULLABLE_FIELDS:
            if field in updates and updates[field] is None:
                raise ValidationError(f"Task {field} must not be null.", detail={"field": field})
        if "stage_id" in updates and updates["stage_id"] is None:
            raise ValidationError("Task stage_id must not be null.", detail={"field": "stage_id"})
        if "title" in updates:
            updates["title"] = _clean_title(updates["title"])
        if "priority" in updates:
            _check_priority(updates["priority"])
        if "completed_at" in updates:
            updates["completed_at"] = _naive_utc(updates["completed_at"])
        return updates

    async def update_task(self, task_id: UUID, payload: TaskUpdate) -> Task:
        """Apply a partial edit, writing one `field_changed` entry per changed field.

        A `stage_id` in the patch goes through the move path and additionally
        requires the move capability.
        """
        require_capability(self.actor, Capability.EDIT_TASK)
        updates = self._clean_updates(payload)
        target_stage_id = updates.pop("stage_id", None)
        if target_stage_id is not None:
            require_capability(self.actor, Capability.MOVE_TASK)
        changed: list[str] = []
        async with self._write("update_task"):
            task = await self._load(task_id, lock=True)
            require_broker_access(self.actor, task.broker_id)
            if "broker_id" in updates:
                require_broker_access(self.actor, updates["broker_id"])
            for field in UPDATABLE_FIELDS:
                if field not in updates:
                    continue
                old_value = getattr(task, field)
                new_value = updates[field]
                if old_value == new_value:
                    continue
                setattr(task, field, new_value)
                await history_log.append(
                    self.session,
                    task_id=task.id,
                    board_id=self.board_id,
                    actor_id=self.actor.actor_id,
                    kind="field_changed",
                    payload=history_log.field_changed_payload(field, old_value, new_value),
                )
                changed.append(field)
            if changed:
                task.updated_at = utcnow()
                self.session.add(task)
                self._notify("tasks", "update", task.id)
                self._notify("history", "insert", task.id)
            if target_stage_id is not None:
                await self._apply_move(task, target_stage_id)
        logger.info(
            "task.updated",
            extra={
                "board_id": str(self.board_id),
                "task_id": str(task.id),
                "fields": changed,
                "moved": target_stage_id is not None,
            },
        )
        return task

    async def delete_task(self, task_id: UUID) -> None:
        """Delete a task and its comments after durably logging the deletion.

        A second delete of the same id raises `NotFoundError`.
        """
        require_capability(self.actor, Capability.DELETE_TASK)
        async with self._write("delete_task"):
            task = await self._load(task_id, lock=True)
            require_broker_access(self.actor, task.broker_id)
            # `append` flushes, so the entry is written before the task row goes.
            await history_log.append(
                self.session,
                task_id=task.id,
                board_id=self.board_id,
                actor_id=self.actor.actor_id,
                kind="deleted",
                payload={
                    "title": task.title,
                    "stage_id": str(task.stage_id),
                    "broker_id": str(task.broker_id),
                },
            )
            comments = await TaskComment.objects.filter_by(task_id=task.id).all(self.session)
            for comment in comments:
                await self.session.delete(comment)
            await self.session.flush()
            await self.session.delete(task)
            self._notify("tasks", "delete", task.id)
            self._notify("history", "insert", task.id)
            if comments:
                self._notify("comments", "delete", task.id)
        logger.info(
            "task.deleted",
            extra={
                "board_id": str(self.board_id),
                "task_id": str(task_id),
                "comments_removed": len(comments),
                "actor_id": str(self.actor.actor_id),
            },
        )

    async def add_comment(self, task_id: UUID, body: str) -> TaskComment:
        require_capability(self.actor, Capability.COMMENT_TASK)
        text = (body or "").strip()
        if not text:
            raise ValidationError("Comment body must not be empty.", detail={"field": "body"})
        async with self._write("add_comment"):
            task = await self._load(task_id, lock=True)
            require_broker_access(self.actor, task.broker_id)
            comment = TaskComment(task_id=task.id, author_id=self.actor.actor_id, body=text)
            self.session.add(comment)
            await self.session.flush()
            await history_log.append(
                self.session,
                task_id=task.id,
                board_id=self.board_id,
                actor_id=self.actor.actor_id,
                kind="commented",
                payload=history_log.commented_payload(comment),
            )
            self._notify("comments", "insert", comment.id)
            self._notify("history", "insert", task.id)
        return comment

    async def _check_history_scope(self, task_id: UUID) -> None:
        require_capability(self.actor, Capability.VIEW_BOARD)
        task = await Task.objects.filter_by(id=task_id, board_id=self.board_id).first(self.session)
        if task is not None:
            require_broker_access(self.actor, task.broker_id)
            return
        if visible_broker_ids(self.actor) is None:
            return
        # The task is gone; its last broker is recorded on the deletion entry.
        broker_id = await history_log.deleted_broker_id(
            self.session,
            board_id=self.board_id,
            task_id=task_id,
        )
        if broker_id is not None and can_access_broker(self.actor, UUID(broker_id)):
            return
        if broker_id is None and not await history_log.history_exists(
            self.session,
            board_id=self.board_id,
            task_id=task_id,
        ):
            # Unknown id; the caller reports it as not found.
            return
        raise ForbiddenError(
            "Task belonged to a broker outside your scope.",
            detail={"task_id": str(task_id)},
        )

    async def fetch_history(
        self,
        task_id: UUID,
        *,
        page_size: int | None = None,
    ) -> AsyncIterator[TaskHistoryEntry]:
        with translate_store_errors("fetch_history"):
            await self._check_history_scope(task_id)
            return await history_log.fetch_history(
                self.session,
                board_id=self.board_id,
                task_id=task_id,
                page_size=page_size,
            )

    async def fetch_comments(
        self,
        task_id: UUID,
        *,
        page_size: int | None = None,
    ) -> AsyncIterator[TaskComment]:
        with translate_store_errors("fetch_comments"):
            await self._check_history_scope(task_id)
            return await history_log.fetch_comments(
                self.session,
                board_id=self.board_id,
                task_id=task_id,
                page_size=page_size,
            )

    async def history_query(self, task_id: UUID) -> Any:
        """Checked oldest-first history select for paginated reads."""
        with translate_store_errors("fetch_history"):
            await self._check_history_scope(task_id)
            exists = await history_log.history_exists(
                self.session,
                board_id=self.board_id,
                task_id=task_id,
            )
        if not exists:
            raise NotFoundError("Task not found.", detail={"task_id": str(task_id)})
        return history_log.history_statement(task_id)

    async def comments_query(self, task_id: UUID) -> Any:
        """Checked oldest-first comment select for paginated reads."""
        require_capability(self.actor, Capability.VIEW_BOARD)
        with translate_store_errors("fetch_comments"):
            task = await self._load(task_id)
        require_broker_access(self.actor, task.broker_id)
        return history_log.comments_statement(task_id)
