"""Server-sent board-change stream for the presentation layer.

Events mirror change notifications: the event name is the table and the data
is the notification JSON. Clients refetch on every event. A `resync` event
tells them the server-side subscription dropped and a full refetch is due.
"""

from __future__ import annotations

import asyncio
import json
from typing import TYPE_CHECKING
from uuid import UUID

from fastapi import APIRouter, Request
from sse_starlette.sse import EventSourceResponse

from taskboard.api.deps import ACTOR_DEP, BOARD_DEP, CHANNEL_DEP
from taskboard.core.config import settings
from taskboard.core.logging import get_logger
from taskboard.services.access_gate import Capability, require_capability
from taskboard.services.change_channel import ALL_TABLES, ChannelClosedError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from taskboard.models.boards import Board
    from taskboard.services.access_gate import ActorContext
    from taskboard.services.change_channel import ChangeChannel, ChangeSubscription

router = APIRouter(prefix="/boards/{board_id}", tags=["events"])
logger = get_logger(__name__)
STREAM_POLL_SECONDS = 1.0
_RUNTIME_TYPE_REFERENCES = (UUID,)


@router.get("/events")
async def stream_board_events(
    request: Request,
    board: Board = BOARD_DEP,
    actor: ActorContext = ACTOR_DEP,
    channel: ChangeChannel = CHANNEL_DEP,
) -> EventSourceResponse:
    """Stream board change notifications via server-sent events."""
    require_capability(actor, Capability.VIEW_BOARD)
    board_id = board.id

    async def event_generator() -> AsyncIterator[dict[str, str]]:
        subscription: ChangeSubscription | None = None
        attempt = 0
        try:
            while True:
                if await request.is_disconnected():
                    break
                if subscription is None:
                    try:
                        subscription = await channel.subscribe(board_id, ALL_TABLES)
                    except ChannelClosedError:
                        attempt += 1
                        await asyncio.sleep(
                            min(
                                settings.realtime_reconnect_base_seconds * 2 ** (attempt - 1),
                                settings.realtime_reconnect_max_seconds,
                            ),
                        )
                        continue
                    if attempt:
                        yield {"event": "resync", "data": json.dumps({"board_id": str(board_id)})}
                    attempt = 0
                try:
                    notification = await subscription.get(timeout=STREAM_POLL_SECONDS)
                except ChannelClosedError:
                    logger.warning("events.subscription_dropped", extra={"board_id": str(board_id)})
                    await subscription.close()
                    subscription = None
                    attempt = 1
                    continue
                if notification is not None:
                    yield {"event": notification.table, "data": notification.to_json()}
        finally:
            if subscription is not None:
                await subscription.close()

    return EventSourceResponse(event_generator(), ping=settings.event_stream_ping_seconds)
