"""Board creation: one tenant pipeline seeded with its default stage."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

from taskboard.core.logging import get_logger
from taskboard.models.boards import Board
from taskboard.services.access_gate import Capability, require_capability
from taskboard.services.errors import ConflictError, ValidationError, translate_store_errors
from taskboard.services.store_base import ensure_fallback_stage

if TYPE_CHECKING:
    from sqlmodel.ext.asyncio.session import AsyncSession

    from taskboard.schemas.boards import BoardCreate
    from taskboard.services.access_gate import ActorContext

logger = get_logger(__name__)


def slugify(name: str) -> str:
    """Generate a URL-safe slug from a board name."""
    slug = name.lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[\s_]+", "-", slug)
    return re.sub(r"-+", "-", slug).strip("-")


async def create_board(
    session: AsyncSession,
    payload: BoardCreate,
    *,
    actor: ActorContext,
) -> Board:
    """Create a board and its fallback stage in one transaction."""
    require_capability(actor, Capability.CONFIGURE_STAGES)
    slug = slugify(payload.slug or payload.name)
    if not slug:
        raise ValidationError(
            "Board slug must contain letters or digits.",
            detail={"field": "slug"},
        )
    try:
        with translate_store_errors("create_board"):
            if await Board.objects.filter_by(slug=slug).first(session) is not None:
                raise ConflictError("A board with this slug already exists.", detail={"slug": slug})
            board = Board(name=payload.name, slug=slug, description=payload.description)
            session.add(board)
            await session.flush()
            await ensure_fallback_stage(session, board.id)
            await session.commit()
    except Exception:
        await session.rollback()
        raise
    logger.info(
        "board.created",
        extra={"board_id": str(board.id), "slug": slug, "actor_id": str(actor.actor_id)},
    )
    return board
