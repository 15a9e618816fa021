"""Change-notification channel keyed by board and table.

Notifications only say "something changed"; subscribers re-derive state by
refetching. Delivery is at-least-once at best, with no ordering across
tables, so nothing downstream may depend on the payload for correctness.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Literal, Protocol
from uuid import UUID

from redis.asyncio import Redis
from redis.exceptions import RedisError

from taskboard.core.config import settings
from taskboard.core.logging import get_logger
from taskboard.core.time import utcnow

if TYPE_CHECKING:
    from collections.abc import Iterable

    from redis.asyncio.client import PubSub

logger = get_logger(__name__)

ChangeTable = Literal["stages", "tasks", "history", "comments"]
ChangeOp = Literal["insert", "update", "delete"]
ALL_TABLES: tuple[ChangeTable, ...] = ("stages", "tasks", "history", "comments")


class ChannelClosedError(Exception):
    """Raised by a subscription whose underlying connection dropped."""


@dataclass(frozen=True)
class ChangeNotification:
    """One "something changed" event for a board table."""

    board_id: UUID
    table: ChangeTable
    op: ChangeOp
    entity_id: UUID | None = None
    actor_id: UUID | None = None
    emitted_at: datetime = field(default_factory=utcnow)

    def to_json(self) -> str:
        return json.dumps(
            {
                "board_id": str(self.board_id),
                "table": self.table,
                "op": self.op,
                "entity_id": str(self.entity_id) if self.entity_id else None,
                "actor_id": str(self.actor_id) if self.actor_id else None,
                "emitted_at": self.emitted_at.isoformat(),
            },
            sort_keys=True,
        )

    @classmethod
    def from_json(cls, raw: str | bytes) -> ChangeNotification:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        payload = json.loads(raw)
        entity_id = payload.get("entity_id")
        actor_id = payload.get("actor_id")
        return cls(
            board_id=UUID(payload["board_id"]),
            table=payload["table"],
            op=payload["op"],
            entity_id=UUID(entity_id) if entity_id else None,
            actor_id=UUID(actor_id) if actor_id else None,
            emitted_at=datetime.fromisoformat(payload["emitted_at"]),
        )


class ChangeSubscription(Protocol):
    """Live subscription to a board's change notifications."""

    async def get(self, timeout: float | None = None) -> ChangeNotification | None:
        """Wait for the next notification; None on timeout.

        Raises `ChannelClosedError` when the subscription is no longer live.
        """
        ...

    async def close(self) -> None: ...


class ChangeChannel(Protocol):
    """Publish/subscribe primitive keyed by board and table name."""

    async def publish(self, notification: ChangeNotification) -> None: ...

    async def subscribe(
        self,
        board_id: UUID,
        tables: Iterable[ChangeTable] = ALL_TABLES,
    ) -> ChangeSubscription: ...


def channel_name(prefix: str, board_id: UUID, table: ChangeTable) -> str:
    return f"{prefix}:{board_id}:{table}"


class LocalSubscription:
    """In-process subscription backed by an asyncio queue."""

    def __init__(self, channel: LocalChangeChannel, board_id: UUID, tables: set[str]) -> None:
        self._channel = channel
        self.board_id = board_id
        self.tables = tables
        self._queue: asyncio.Queue[ChangeNotification | None] = asyncio.Queue()
        self._closed = False

    def deliver(self, notification: ChangeNotification) -> None:
        if not self._closed:
            self._queue.put_nowait(notification)

    def drop(self) -> None:
        """Simulate a dropped connection; the next `get` raises."""
        self._closed = True
        self._queue.put_nowait(None)

    async def get(self, timeout: float | None = None) -> ChangeNotification | None:
        if self._closed and self._queue.empty():
            raise ChannelClosedError("subscription closed")
        try:
            item = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except TimeoutError:
            return None
        if item is None:
            raise ChannelClosedError("subscription closed")
        return item

    async def close(self) -> None:
        self._closed = True
        self._channel.detach(self)


class LocalChangeChannel:
    """Single-process channel delivering notifications to in-memory subscribers."""

    def __init__(self) -> None:
        self._subscriptions: list[LocalSubscription] = []

    @property
    def subscriptions(self) -> list[LocalSubscription]:
        return list(self._subscriptions)

    async def publish(self, notification: ChangeNotification) -> None:
        for subscription in list(self._subscriptions):
            if (
                subscription.board_id == notification.board_id
                and notification.table in subscription.tables
            ):
                subscription.deliver(notification)

    async def subscribe(
        self,
        board_id: UUID,
        tables: Iterable[ChangeTable] = ALL_TABLES,
    ) -> LocalSubscription:
        subscription = LocalSubscription(self, board_id, set(tables))
        self._subscriptions.append(subscription)
        return subscription

    def detach(self, subscription: LocalSubscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)


class RedisSubscription:
    """Redis pub/sub subscription for one board."""

    def __init__(self, pubsub: PubSub) -> None:
        self._pubsub = pubsub

    async def get(self, timeout: float | None = None) -> ChangeNotification | None:
        try:
            message = await self._pubsub.get_message(
                ignore_subscribe_messages=True,
                timeout=timeout,
            )
        except (RedisError, OSError) as exc:
            raise ChannelClosedError(str(exc)) from exc
        if message is None:
            return None
        try:
            return ChangeNotification.from_json(message["data"])
        except (KeyError, TypeError, ValueError):
            logger.warning(
                "realtime.channel.malformed_message",
                extra={"channel": str(message.get("channel"))},
            )
            return None

    async def close(self) -> None:
        try:
            await self._pubsub.unsubscribe()
        except (RedisError, OSError):
            logger.warning("realtime.channel.unsubscribe_failed")
        finally:
            await self._pubsub.aclose()


class RedisChangeChannel:
    """Change channel over Redis pub/sub, shared by every API process."""

    def __init__(self, redis_url: str | None = None, *, prefix: str | None = None) -> None:
        self._client = Redis.from_url(redis_url or settings.redis_url)
        self._prefix = prefix or settings.change_channel_prefix

    async def publish(self, notification: ChangeNotification) -> None:
        await self._client.publish(
            channel_name(self._prefix, notification.board_id, notification.table),
            notification.to_json(),
        )

    async def subscribe(
        self,
        board_id: UUID,
        tables: Iterable[ChangeTable] = ALL_TABLES,
    ) -> RedisSubscription:
        pubsub = self._client.pubsub()
        names = [channel_name(self._prefix, board_id, table) for table in tables]
        try:
            await pubsub.subscribe(*names)
        except (RedisError, OSError) as exc:
            await pubsub.aclose()
            raise ChannelClosedError(str(exc)) from exc
        return RedisSubscription(pubsub)

    async def aclose(self) -> None:
        await self._client.aclose()


_channel: ChangeChannel | None = None


def get_change_channel() -> ChangeChannel:
    """Return the process-wide channel selected by CHANGE_CHANNEL_BACKEND."""
    global _channel
    if _channel is None:
        if settings.change_channel_backend == "local":
            _channel = LocalChangeChannel()
        else:
            _channel = RedisChangeChannel()
    return _channel


def set_change_channel(channel: ChangeChannel | None) -> None:
    """Replace the process-wide channel (app startup and tests)."""
    global _channel
    _channel = channel


async def publish_changes(
    channel: ChangeChannel,
    notifications: Iterable[ChangeNotification],
) -> None:
    """Publish committed changes; failures are logged and never raised."""
    for notification in notifications:
        try:
            await channel.publish(notification)
        except (RedisError, OSError) as exc:
            logger.warning(
                "realtime.channel.publish_failed",
                extra={
                    "board_id": str(notification.board_id),
                    "table": notification.table,
                    "error": str(exc),
                },
            )
