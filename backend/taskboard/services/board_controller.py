"""Optimistic task moves with bounded waits, retries and rollback.

Each move is an intent: its placement shows in the view at once, the store
call runs with a timeout, and the outcome either commits the placement or
snaps the task back to its last committed stage. Intents for different tasks
are independent. For one task the latest intent owns the displayed placement;
an older intent may still finish, but it never clears or reverts a newer one.
"""

from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from taskboard.core.config import settings
from taskboard.core.logging import get_logger
from taskboard.services.access_gate import Capability, require_capability
from taskboard.services.errors import NotFoundError, TaskBoardError, TransientError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from uuid import UUID

    from taskboard.schemas.tasks import TaskRead
    from taskboard.services.access_gate import ActorContext
    from taskboard.services.board_backend import BoardBackend
    from taskboard.services.board_view import BoardView

logger = get_logger(__name__)


class MoveState(str, Enum):
    """Lifecycle of a move intent."""

    IDLE = "idle"
    MOVING = "moving"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    SUPERSEDED = "superseded"


@dataclass(frozen=True)
class MoveOutcome:
    """What happened to one move intent, reported back to the initiator."""

    task_id: UUID
    target_stage_id: UUID
    state: MoveState
    attempts: int
    task: TaskRead | None = None
    error: TaskBoardError | None = None

    @property
    def ok(self) -> bool:
        return self.state == MoveState.COMMITTED


class BoardController:
    """Drives move intents for one mounted board session."""

    def __init__(
        self,
        *,
        backend: BoardBackend,
        view: BoardView,
        actor: ActorContext,
        commit_timeout_seconds: float | None = None,
        max_retries: int | None = None,
        retry_base_seconds: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._backend = backend
        self.view = view
        self.actor = actor
        self._timeout = (
            settings.move_commit_timeout_seconds
            if commit_timeout_seconds is None
            else commit_timeout_seconds
        )
        if self._timeout <= 0:
            msg = "commit_timeout_seconds must be positive"
            raise ValueError(msg)
        self._max_retries = settings.move_max_retries if max_retries is None else max_retries
        self._retry_base = (
            settings.move_retry_base_seconds if retry_base_seconds is None else retry_base_seconds
        )
        self._sleep = sleep
        self._intents = itertools.count(1)
        self._latest: dict[UUID, int] = {}
        self._states: dict[UUID, MoveState] = {}

    def state_of(self, task_id: UUID) -> MoveState:
        """State of the latest intent for a task."""
        return self._states.get(task_id, MoveState.IDLE)

    def _is_latest(self, task_id: UUID, intent_id: int) -> bool:
        return self._latest.get(task_id) == intent_id

    async def move_task(self, task_id: UUID, stage_id: UUID) -> MoveOutcome:
        """Move a task optimistically and wait, bounded, for the store's verdict.

        Raises `ForbiddenError` up front when the actor may not move tasks and
        `NotFoundError` when the task is not on the board; nothing is displayed
        in either case. Every other failure is reported in the outcome.
        """
        require_capability(self.actor, Capability.MOVE_TASK)
        if task_id not in self.view.tasks:
            raise NotFoundError("Task not found.", detail={"task_id": str(task_id)})
        intent_id = next(self._intents)
        previous = self._latest.get(task_id)
        self._latest[task_id] = intent_id
        self._states[task_id] = MoveState.MOVING
        self.view.apply_optimistic(task_id, stage_id, intent_id=intent_id)
        if previous is not None:
            logger.info(
                "board.move.superseding",
                extra={"task_id": str(task_id), "intent_id": intent_id, "previous": previous},
            )

        attempts = 0
        while True:
            attempts += 1
            try:
                task = await asyncio.wait_for(
                    self._backend.move_task(task_id, stage_id),
                    timeout=self._timeout,
                )
            except TimeoutError:
                error: TaskBoardError = TransientError(
                    f"Move was not confirmed within {self._timeout:g}s.",
                    detail={"task_id": str(task_id)},
                )
            except TaskBoardError as exc:
                error = exc
            else:
                return self._committed(task_id, stage_id, intent_id, attempts, task)

            if error.retryable and attempts <= self._max_retries:
                if not self._is_latest(task_id, intent_id):
                    # Retrying would race the newer intent at the store.
                    return self._finish_failed(task_id, stage_id, intent_id, attempts, error)
                delay = self._retry_base * (2 ** (attempts - 1))
                logger.info(
                    "board.move.retrying",
                    extra={
                        "task_id": str(task_id),
                        "attempt": attempts,
                        "delay_seconds": delay,
                        "code": error.code,
                    },
                )
                await self._sleep(delay)
                continue
            return self._finish_failed(task_id, stage_id, intent_id, attempts, error)

    def _committed(
        self,
        task_id: UUID,
        stage_id: UUID,
        intent_id: int,
        attempts: int,
        task: TaskRead,
    ) -> MoveOutcome:
        self.view.store_task(task)
        if not self._is_latest(task_id, intent_id):
            logger.info(
                "board.move.superseded",
                extra={"task_id": str(task_id), "intent_id": intent_id, "committed": True},
            )
            return MoveOutcome(task_id, stage_id, MoveState.SUPERSEDED, attempts, task=task)
        self.view.clear_optimistic(task_id, intent_id=intent_id)
        self._states[task_id] = MoveState.COMMITTED
        logger.info(
            "board.move.committed",
            extra={"task_id": str(task_id), "stage_id": str(task.stage_id), "attempts": attempts},
        )
        return MoveOutcome(task_id, stage_id, MoveState.COMMITTED, attempts, task=task)

    def _finish_failed(
        self,
        task_id: UUID,
        stage_id: UUID,
        intent_id: int,
        attempts: int,
        error: TaskBoardError,
    ) -> MoveOutcome:
        if not self._is_latest(task_id, intent_id):
            logger.info(
                "board.move.superseded",
                extra={"task_id": str(task_id), "intent_id": intent_id, "committed": False},
            )
            return MoveOutcome(task_id, stage_id, MoveState.SUPERSEDED, attempts, error=error)
        # Dropping the overlay shows the last committed stage again.
        self.view.clear_optimistic(task_id, intent_id=intent_id)
        self._states[task_id] = MoveState.ROLLED_BACK
        logger.warning(
            "board.move.rolled_back",
            extra={
                "task_id": str(task_id),
                "stage_id": str(stage_id),
                "attempts": attempts,
                "code": error.code,
                "error": error.message,
            },
        )
        return MoveOutcome(task_id, stage_id, MoveState.ROLLED_BACK, attempts, error=error)
