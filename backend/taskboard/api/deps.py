"""Reusable FastAPI dependencies for identity, boards and the board stores.

Routers compose these instead of building stores by hand, so every endpoint
resolves the actor the same way and every store is bound to a board that
exists.
"""

from __future__ import annotations

from typing import TYPE_CHECKING
from uuid import UUID

from fastapi import Depends

from taskboard.core.auth import get_actor_context
from taskboard.db.session import get_session
from taskboard.models.boards import Board
from taskboard.services.change_channel import ChangeChannel, get_change_channel
from taskboard.services.errors import NotFoundError
from taskboard.services.stage_store import StageStore
from taskboard.services.task_store import TaskStore

if TYPE_CHECKING:
    from sqlmodel.ext.asyncio.session import AsyncSession

    from taskboard.services.access_gate import ActorContext

SESSION_DEP = Depends(get_session)
ACTOR_DEP = Depends(get_actor_context)
_RUNTIME_TYPE_REFERENCES = (UUID,)


def get_channel() -> ChangeChannel:
    """Process-wide change channel; overridable in tests."""
    return get_change_channel()


CHANNEL_DEP = Depends(get_channel)


async def get_board_or_404(
    board_id: UUID,
    session: AsyncSession = SESSION_DEP,
) -> Board:
    """Load a board by id or raise a 404 board error."""
    board = await Board.objects.by_id(board_id).first(session)
    if board is None:
        raise NotFoundError("Board not found.", detail={"board_id": str(board_id)})
    return board


BOARD_DEP = Depends(get_board_or_404)


def get_stage_store(
    board: Board = BOARD_DEP,
    session: AsyncSession = SESSION_DEP,
    actor: ActorContext = ACTOR_DEP,
    channel: ChangeChannel = CHANNEL_DEP,
) -> StageStore:
    return StageStore(session, board_id=board.id, actor=actor, channel=channel)


def get_task_store(
    board: Board = BOARD_DEP,
    session: AsyncSession = SESSION_DEP,
    actor: ActorContext = ACTOR_DEP,
    channel: ChangeChannel = CHANNEL_DEP,
) -> TaskStore:
    return TaskStore(session, board_id=board.id, actor=actor, channel=channel)


STAGE_STORE_DEP = Depends(get_stage_store)
TASK_STORE_DEP = Depends(get_task_store)
