"""Keeps a mounted `BoardView` fresh from change notifications.

Notifications carry no state. Each one only marks its table dirty; bursts are
coalesced and every dirty table is refetched in full and replaced by id. The
channel replays nothing, so after a dropped subscription the view is marked
stale and a full refetch follows a successful reconnect.
"""

from __future__ import annotations

import asyncio
from contextlib import suppress
from typing import TYPE_CHECKING, Self

from taskboard.core.config import settings
from taskboard.core.logging import get_logger
from taskboard.services.change_channel import ALL_TABLES, ChannelClosedError
from taskboard.services.errors import NotFoundError, TaskBoardError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable
    from types import TracebackType
    from uuid import UUID

    from taskboard.services.board_backend import BoardBackend
    from taskboard.services.board_view import BoardView
    from taskboard.services.change_channel import ChangeChannel, ChangeSubscription

logger = get_logger(__name__)

COALESCE_SECONDS = 0.05


class RealtimeSync:
    """Subscription lifecycle and refetch loop for one board session."""

    def __init__(
        self,
        *,
        channel: ChangeChannel,
        backend: BoardBackend,
        view: BoardView,
        coalesce_seconds: float = COALESCE_SECONDS,
        reconnect_base_seconds: float | None = None,
        reconnect_max_seconds: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.board_id = view.board_id
        self._channel = channel
        self._backend = backend
        self.view = view
        self._coalesce_seconds = coalesce_seconds
        self._reconnect_base = (
            settings.realtime_reconnect_base_seconds
            if reconnect_base_seconds is None
            else reconnect_base_seconds
        )
        self._reconnect_max = (
            settings.realtime_reconnect_max_seconds
            if reconnect_max_seconds is None
            else reconnect_max_seconds
        )
        self._sleep = sleep
        self._subscription: ChangeSubscription | None = None
        self._listener: asyncio.Task[None] | None = None
        self.refresh_count = 0
        self.reconnect_count = 0

    @property
    def running(self) -> bool:
        return self._listener is not None and not self._listener.done()

    async def __aenter__(self) -> Self:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.stop()

    async def start(self) -> None:
        """Subscribe, load the whole board, then start listening."""
        if self.running:
            return
        try:
            self._subscription = await self._channel.subscribe(self.board_id, ALL_TABLES)
        except ChannelClosedError as exc:
            logger.warning(
                "realtime.sync.subscribe_failed",
                extra={"board_id": str(self.board_id), "error": str(exc)},
            )
            self._subscription = None
            self.view.mark_stale()
        # Subscribe first so nothing committed after the refetch goes unnoticed.
        await self.refresh_all()
        self._listener = asyncio.create_task(self._run(), name=f"realtime-sync-{self.board_id}")
        logger.info("realtime.sync.started", extra={"board_id": str(self.board_id)})

    async def stop(self) -> None:
        """Stop listening and release the subscription."""
        listener, self._listener = self._listener, None
        if listener is not None:
            listener.cancel()
            with suppress(asyncio.CancelledError):
                await listener
        await self._close_subscription()
        logger.info("realtime.sync.stopped", extra={"board_id": str(self.board_id)})

    async def _close_subscription(self) -> None:
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            await subscription.close()

    def watch_task(self, task_id: UUID) -> None:
        """Include a task's history and comments in future refetches."""
        self.view.watch_task(task_id)

    def unwatch_task(self, task_id: UUID) -> None:
        self.view.unwatch_task(task_id)

    async def refresh_all(self) -> bool:
        return await self.refresh(ALL_TABLES)

    async def refresh(self, tables: Iterable[str]) -> bool:
        """Refetch the given tables into the view; False leaves the view stale."""
        dirty = set(tables)
        try:
            if "stages" in dirty:
                self.view.replace_stages(await self._backend.list_stages())
            if "tasks" in dirty:
                self.view.replace_tasks(await self._backend.list_tasks())
            for task_id in sorted(self.view.watched_tasks, key=str):
                if "history" in dirty:
                    await self._refresh_history(task_id)
                if "comments" in dirty:
                    await self._refresh_comments(task_id)
        except TaskBoardError as exc:
            logger.warning(
                "realtime.sync.refresh_failed",
                extra={
                    "board_id": str(self.board_id),
                    "tables": sorted(dirty),
                    "code": exc.code,
                    "error": exc.message,
                },
            )
            self.view.mark_stale()
            return False
        except Exception:
            logger.exception(
                "realtime.sync.refresh_crashed",
                extra={"board_id": str(self.board_id), "tables": sorted(dirty)},
            )
            self.view.mark_stale()
            return False
        self.refresh_count += 1
        if self._subscription is not None:
            self.view.mark_stale(False)
        return True

    async def _refresh_history(self, task_id: UUID) -> None:
        try:
            entries = await self._backend.fetch_history(task_id)
        except NotFoundError:
            entries = []
        self.view.replace_history(task_id, entries)

    async def _refresh_comments(self, task_id: UUID) -> None:
        try:
            comments = await self._backend.fetch_comments(task_id)
        except NotFoundError:
            # Comments go with their deleted task.
            comments = []
        self.view.replace_comments(task_id, comments)

    def _backoff(self, attempt: int) -> float:
        return min(self._reconnect_base * (2 ** max(attempt, 0)), self._reconnect_max)

    async def _drain(self, subscription: ChangeSubscription, dirty: set[str]) -> bool:
        """Collect notifications arriving within the coalescing window.

        Returns False when the subscription dropped while draining.
        """
        while True:
            try:
                notification = await subscription.get(timeout=self._coalesce_seconds)
            except ChannelClosedError:
                return False
            if notification is None:
                return True
            dirty.add(notification.table)

    async def _reconnect(self) -> bool:
        self.view.mark_stale()
        await self._close_subscription()
        attempt = 0
        while True:
            await self._sleep(self._backoff(attempt))
            try:
                self._subscription = await self._channel.subscribe(self.board_id, ALL_TABLES)
            except ChannelClosedError as exc:
                attempt += 1
                logger.warning(
                    "realtime.sync.reconnect_failed",
                    extra={"board_id": str(self.board_id), "attempt": attempt, "error": str(exc)},
                )
                continue
            break
        self.reconnect_count += 1
        logger.info(
            "realtime.sync.reconnected",
            extra={"board_id": str(self.board_id), "attempts": attempt + 1},
        )
        return await self.refresh_all()

    async def _run(self) -> None:
        dirty: set[str] = set()
        failures = 0
        while True:
            subscription = self._subscription
            if subscription is None:
                if await self._reconnect():
                    dirty, failures = set(), 0
                else:
                    dirty, failures = set(ALL_TABLES), 1
                continue
            # With a failed refresh outstanding, retry after a backoff even if idle.
            timeout = self._backoff(failures - 1) if dirty else None
            try:
                notification = await subscription.get(timeout=timeout)
            except ChannelClosedError:
                logger.warning(
                    "realtime.sync.subscription_dropped",
                    extra={"board_id": str(self.board_id)},
                )
                await self._close_subscription()
                continue
            live = True
            if notification is not None:
                dirty.add(notification.table)
                live = await self._drain(subscription, dirty)
            if dirty:
                if await self.refresh(dirty):
                    dirty.clear()
                    failures = 0
                else:
                    failures += 1
            if not live:
                logger.warning(
                    "realtime.sync.subscription_dropped",
                    extra={"board_id": str(self.board_id)},
                )
                await self._close_subscription()
