"""Board listing, creation and per-actor permission endpoints."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter
from fastapi_pagination.limit_offset import LimitOffsetPage
from sqlmodel import col

from taskboard.api.deps import ACTOR_DEP, BOARD_DEP, SESSION_DEP
from taskboard.db.pagination import paginate
from taskboard.models.boards import Board
from taskboard.schemas.boards import BoardCreate, BoardPermissionsRead, BoardRead
from taskboard.services.access_gate import Capability, capabilities_for, require_capability
from taskboard.services.boards import create_board

if TYPE_CHECKING:
    from sqlmodel.ext.asyncio.session import AsyncSession

    from taskboard.services.access_gate import ActorContext

router = APIRouter(prefix="/boards", tags=["boards"])


@router.get("", response_model=LimitOffsetPage[BoardRead])
async def list_boards(
    session: AsyncSession = SESSION_DEP,
    actor: ActorContext = ACTOR_DEP,
) -> LimitOffsetPage[BoardRead]:
    """List boards by name."""
    require_capability(actor, Capability.VIEW_BOARD)
    statement = Board.objects.all().order_by(col(Board.name).asc()).statement
    return await paginate(session, statement)


@router.post("", response_model=BoardRead)
async def create_board_route(
    payload: BoardCreate,
    session: AsyncSession = SESSION_DEP,
    actor: ActorContext = ACTOR_DEP,
) -> Board:
    """Create a board seeded with its default stage."""
    return await create_board(session, payload, actor=actor)


@router.get("/{board_id}", response_model=BoardRead)
async def get_board(
    board: Board = BOARD_DEP,
    actor: ActorContext = ACTOR_DEP,
) -> Board:
    """Get a board by id."""
    require_capability(actor, Capability.VIEW_BOARD)
    return board


@router.get("/{board_id}/permissions", response_model=BoardPermissionsRead)
async def get_board_permissions(
    board: Board = BOARD_DEP,
    actor: ActorContext = ACTOR_DEP,
) -> BoardPermissionsRead:
    """Capabilities of the caller on this board, for hiding unavailable controls."""
    capabilities = sorted(capability.value for capability in capabilities_for(actor.role))
    return BoardPermissionsRead(role=actor.role, capabilities=capabilities)
