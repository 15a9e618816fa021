"""Client-side board state: committed rows plus optimistic move overlays.

Committed rows are only ever replaced wholesale by refetch results, keyed by
entity id, so a notification for the session's own write (the echo) cannot
duplicate a row. Optimistic placements live in a separate overlay owned by the
board controller; a displayed task is its committed row with the overlay's
stage substituted.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from taskboard.core.logging import get_logger

if TYPE_CHECKING:
    from uuid import UUID

    from taskboard.schemas.history import CommentRead, HistoryEntryRead
    from taskboard.schemas.stages import StageRead
    from taskboard.schemas.tasks import TaskRead

logger = get_logger(__name__)

ViewListener = Callable[["BoardView"], None]


@dataclass(frozen=True)
class Placement:
    """An optimistic stage placement tagged with the intent that produced it."""

    intent_id: int
    stage_id: UUID


@dataclass
class BoardView:
    """Everything one mounted board session renders."""

    board_id: UUID
    stages: dict[UUID, StageRead] = field(default_factory=dict)
    tasks: dict[UUID, TaskRead] = field(default_factory=dict)
    history: dict[UUID, list[HistoryEntryRead]] = field(default_factory=dict)
    comments: dict[UUID, list[CommentRead]] = field(default_factory=dict)
    watched_tasks: set[UUID] = field(default_factory=set)
    stale: bool = False
    _overlay: dict[UUID, Placement] = field(default_factory=dict, init=False, repr=False)
    _listeners: list[ViewListener] = field(default_factory=list, init=False, repr=False)

    def add_listener(self, listener: ViewListener) -> Callable[[], None]:
        """Register a re-render callback; returns a function that removes it."""
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def _changed(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                logger.exception(
                    "board_view.listener_failed",
                    extra={"board_id": str(self.board_id)},
                )

    # Refetch results

    def replace_stages(self, stages: Iterable[StageRead]) -> None:
        self.stages = {stage.id: stage for stage in stages}
        self._changed()

    def replace_tasks(self, tasks: Iterable[TaskRead]) -> None:
        self.tasks = {task.id: task for task in tasks}
        # Overlays for tasks that no longer exist have nothing to decorate.
        for task_id in [task_id for task_id in self._overlay if task_id not in self.tasks]:
            del self._overlay[task_id]
        self._changed()

    def replace_history(self, task_id: UUID, entries: Iterable[HistoryEntryRead]) -> None:
        self.history[task_id] = list(entries)
        self._changed()

    def replace_comments(self, task_id: UUID, comments: Iterable[CommentRead]) -> None:
        self.comments[task_id] = list(comments)
        self._changed()

    def store_task(self, task: TaskRead) -> None:
        """Record one committed task row, e.g. the result of a confirmed move."""
        current = self.tasks.get(task.id)
        if current is not None and current.updated_at > task.updated_at:
            # A refetch already delivered a newer row.
            return
        self.tasks[task.id] = task
        self._changed()

    def mark_stale(self, stale: bool = True) -> None:
        if self.stale != stale:
            self.stale = stale
            self._changed()

    def watch_task(self, task_id: UUID) -> None:
        self.watched_tasks.add(task_id)

    def unwatch_task(self, task_id: UUID) -> None:
        self.watched_tasks.discard(task_id)
        self.history.pop(task_id, None)
        self.comments.pop(task_id, None)

    # Optimistic overlay

    def apply_optimistic(self, task_id: UUID, stage_id: UUID, *, intent_id: int) -> None:
        self._overlay[task_id] = Placement(intent_id=intent_id, stage_id=stage_id)
        self._changed()

    def clear_optimistic(self, task_id: UUID, *, intent_id: int) -> bool:
        """Drop the overlay if it still belongs to `intent_id`."""
        placement = self._overlay.get(task_id)
        if placement is None or placement.intent_id != intent_id:
            return False
        del self._overlay[task_id]
        self._changed()
        return True

    def pending_placement(self, task_id: UUID) -> Placement | None:
        return self._overlay.get(task_id)

    # Rendering accessors

    def ordered_stages(self) -> list[StageRead]:
        return sorted(self.stages.values(), key=lambda stage: (stage.order_index, str(stage.id)))

    def committed_stage_id(self, task_id: UUID) -> UUID | None:
        task = self.tasks.get(task_id)
        return task.stage_id if task is not None else None

    def displayed_stage_id(self, task_id: UUID) -> UUID | None:
        placement = self._overlay.get(task_id)
        if placement is not None and task_id in self.tasks:
            return placement.stage_id
        return self.committed_stage_id(task_id)

    def displayed_tasks(self) -> list[TaskRead]:
        """Tasks as rendered, newest first, with optimistic placements applied."""
        rendered = []
        for task in self.tasks.values():
            placement = self._overlay.get(task.id)
            if placement is not None and placement.stage_id != task.stage_id:
                task = task.model_copy(update={"stage_id": placement.stage_id})
            rendered.append(task)
        return sorted(rendered, key=lambda task: task.created_at, reverse=True)

    def tasks_in_stage(self, stage_id: UUID) -> list[TaskRead]:
        return [task for task in self.displayed_tasks() if task.stage_id == stage_id]

    def columns(self) -> list[tuple[StageRead, list[TaskRead]]]:
        """Stage columns in display order with their displayed tasks."""
        displayed = self.displayed_tasks()
        return [
            (stage, [task for task in displayed if task.stage_id == stage.id])
            for stage in self.ordered_stages()
        ]
