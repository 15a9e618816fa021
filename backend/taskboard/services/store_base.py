"""Shared transaction and notification plumbing for the board stores."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from sqlmodel import col

from taskboard.core.config import settings
from taskboard.core.logging import get_logger
from taskboard.core.time import utcnow
from taskboard.models.boards import Board
from taskboard.models.process_stages import ProcessStage
from taskboard.services.change_channel import (
    ChangeNotification,
    get_change_channel,
    publish_changes,
)
from taskboard.services.errors import NotFoundError, translate_store_errors

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from uuid import UUID

    from sqlmodel.ext.asyncio.session import AsyncSession

    from taskboard.services.access_gate import ActorContext
    from taskboard.services.change_channel import ChangeChannel, ChangeOp, ChangeTable

logger = get_logger(__name__)


async def lock_board(session: AsyncSession, board_id: UUID) -> Board:
    """Take the board row lock that serializes stage-set mutations."""
    board = await Board.objects.by_id(board_id).for_update().first(session)
    if board is None:
        raise NotFoundError("Board not found.", detail={"board_id": str(board_id)})
    return board


async def ordered_stages(session: AsyncSession, board_id: UUID) -> list[ProcessStage]:
    return await (
        ProcessStage.objects.filter_by(board_id=board_id)
        .order_by(col(ProcessStage.order_index).asc(), col(ProcessStage.created_at).asc())
        .all(session)
    )


async def find_fallback_stage(
    session: AsyncSession,
    board_id: UUID,
    *,
    exclude: UUID | None = None,
) -> ProcessStage | None:
    """Lowest-ordered default stage of the board, optionally skipping one id."""
    queryset = ProcessStage.objects.filter_by(board_id=board_id, is_default=True)
    if exclude is not None:
        queryset = queryset.filter(col(ProcessStage.id) != exclude)
    return await queryset.order_by(
        col(ProcessStage.order_index).asc(),
        col(ProcessStage.created_at).asc(),
    ).first(session)


async def ensure_fallback_stage(
    session: AsyncSession,
    board_id: UUID,
) -> tuple[ProcessStage, bool]:
    """Return the board's fallback stage, seeding one if the board has none.

    An empty board gets a fresh default stage at order 0; a board whose stages
    have all lost the default flag gets its first stage promoted. The second
    element tells the caller whether anything was written.
    """
    fallback = await find_fallback_stage(session, board_id)
    if fallback is not None:
        return fallback, False
    await lock_board(session, board_id)
    # Re-check under the lock; a concurrent writer may have seeded already.
    fallback = await find_fallback_stage(session, board_id)
    if fallback is not None:
        return fallback, False
    stages = await ordered_stages(session, board_id)
    if stages:
        fallback = stages[0]
        fallback.is_default = True
        fallback.updated_at = utcnow()
    else:
        fallback = ProcessStage(
            board_id=board_id,
            title=settings.default_stage_title,
            color=settings.default_stage_color,
            order_index=0,
            is_default=True,
        )
    session.add(fallback)
    await session.flush()
    logger.info(
        "stage.default.seeded",
        extra={
            "board_id": str(board_id),
            "stage_id": str(fallback.id),
            "promoted": bool(stages),
        },
    )
    return fallback, True


class BoardStore:
    """Base for stores bound to one board, one actor and one session.

    Mutations run inside `_write`: a single commit covers the change and its
    history rows, and queued notifications go out only after that commit.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        board_id: UUID,
        actor: ActorContext,
        channel: ChangeChannel | None = None,
    ) -> None:
        self.session = session
        self.board_id = board_id
        self.actor = actor
        self._channel = channel
        self._pending: list[ChangeNotification] = []

    @property
    def channel(self) -> ChangeChannel:
        if self._channel is None:
            self._channel = get_change_channel()
        return self._channel

    def _notify(self, table: ChangeTable, op: ChangeOp, entity_id: UUID | None = None) -> None:
        for pending in self._pending:
            if (pending.table, pending.op, pending.entity_id) == (table, op, entity_id):
                return
        self._pending.append(
            ChangeNotification(
                board_id=self.board_id,
                table=table,
                op=op,
                entity_id=entity_id,
                actor_id=self.actor.actor_id,
            ),
        )

    @asynccontextmanager
    async def _write(self, operation: str) -> AsyncIterator[None]:
        self._pending.clear()
        try:
            with translate_store_errors(operation):
                yield
                await self.session.commit()
        except Exception:
            self._pending.clear()
            await self.session.rollback()
            raise
        pending, self._pending = self._pending, []
        await publish_changes(self.channel, pending)
