"""Data access used by the client-side session layer.

`RealtimeSync` and `BoardController` only need a handful of reads and the move
command. `LocalBoardBackend` serves them in-process from the stores, one
session per call; `ApiBoardBackend` serves them over the HTTP API and maps
error responses back to the typed board errors.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, TypeVar

import httpx
from pydantic import BaseModel
from pydantic import ValidationError as SchemaValidationError

from taskboard.core.auth import (
    ACTOR_ID_HEADER,
    ACTOR_ROLE_HEADER,
    BROKER_ID_HEADER,
    TEAM_BROKER_IDS_HEADER,
)
from taskboard.core.logging import get_logger
from taskboard.schemas.history import CommentRead, HistoryEntryRead
from taskboard.schemas.stages import StageRead
from taskboard.schemas.tasks import TaskRead
from taskboard.services.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    TaskBoardError,
    TransientError,
    ValidationError,
)
from taskboard.services.stage_store import StageStore
from taskboard.services.task_store import TaskStore

if TYPE_CHECKING:
    from uuid import UUID

    from sqlalchemy.ext.asyncio import async_sessionmaker
    from sqlmodel.ext.asyncio.session import AsyncSession

    from taskboard.services.access_gate import ActorContext
    from taskboard.services.change_channel import ChangeChannel

logger = get_logger(__name__)

API_PREFIX = "/api/v1"
LIST_PAGE_LIMIT = 100

ModelT = TypeVar("ModelT", bound=BaseModel)

_ERRORS_BY_CODE: dict[str, type[TaskBoardError]] = {
    error.code: error
    for error in (ValidationError, NotFoundError, ForbiddenError, ConflictError, TransientError)
}
_ERRORS_BY_STATUS: dict[int, type[TaskBoardError]] = {
    400: ValidationError,
    404: NotFoundError,
    403: ForbiddenError,
    409: ConflictError,
    422: ValidationError,
}


class BoardBackend(Protocol):
    """Reads and commands the session layer issues against one board."""

    async def list_stages(self) -> list[StageRead]: ...

    async def list_tasks(self) -> list[TaskRead]: ...

    async def fetch_history(self, task_id: UUID) -> list[HistoryEntryRead]: ...

    async def fetch_comments(self, task_id: UUID) -> list[CommentRead]: ...

    async def move_task(self, task_id: UUID, stage_id: UUID) -> TaskRead: ...


class LocalBoardBackend:
    """In-process backend running each call in a fresh session."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        *,
        board_id: UUID,
        actor: ActorContext,
        channel: ChangeChannel | None = None,
    ) -> None:
        self._session_maker = session_maker
        self.board_id = board_id
        self.actor = actor
        self._channel = channel

    def _stages(self, session: AsyncSession) -> StageStore:
        return StageStore(session, board_id=self.board_id, actor=self.actor, channel=self._channel)

    def _tasks(self, session: AsyncSession) -> TaskStore:
        return TaskStore(session, board_id=self.board_id, actor=self.actor, channel=self._channel)

    async def list_stages(self) -> list[StageRead]:
        async with self._session_maker() as session:
            stages = await self._stages(session).list_stages()
            return [StageRead.model_validate(stage, from_attributes=True) for stage in stages]

    async def list_tasks(self) -> list[TaskRead]:
        async with self._session_maker() as session:
            tasks = await self._tasks(session).list_tasks()
            return [TaskRead.model_validate(task, from_attributes=True) for task in tasks]

    async def fetch_history(self, task_id: UUID) -> list[HistoryEntryRead]:
        async with self._session_maker() as session:
            entries = await self._tasks(session).fetch_history(task_id)
            return [
                HistoryEntryRead.model_validate(entry, from_attributes=True)
                async for entry in entries
            ]

    async def fetch_comments(self, task_id: UUID) -> list[CommentRead]:
        async with self._session_maker() as session:
            comments = await self._tasks(session).fetch_comments(task_id)
            return [
                CommentRead.model_validate(comment, from_attributes=True)
                async for comment in comments
            ]

    async def move_task(self, task_id: UUID, stage_id: UUID) -> TaskRead:
        async with self._session_maker() as session:
            task = await self._tasks(session).move_task(task_id, stage_id)
            return TaskRead.model_validate(task, from_attributes=True)


def identity_headers(actor: ActorContext, *, token: str | None = None) -> dict[str, str]:
    """Headers identifying `actor` to the HTTP API."""
    headers = {ACTOR_ID_HEADER: str(actor.actor_id), ACTOR_ROLE_HEADER: actor.role}
    if actor.broker_id is not None:
        headers[BROKER_ID_HEADER] = str(actor.broker_id)
    if actor.team_broker_ids:
        headers[TEAM_BROKER_IDS_HEADER] = ",".join(sorted(str(i) for i in actor.team_broker_ids))
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return headers


def _error_from_response(response: httpx.Response) -> TaskBoardError:
    try:
        body: Any = response.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}
    detail = body.get("detail")
    message = detail.get("message") if isinstance(detail, dict) else detail
    if not isinstance(message, str) or not message:
        message = f"Board API request failed with status {response.status_code}."
    error_cls = _ERRORS_BY_CODE.get(str(body.get("code")))
    if error_cls is None:
        error_cls = _ERRORS_BY_STATUS.get(response.status_code)
    if error_cls is None:
        error_cls = TransientError if response.status_code >= 500 else TaskBoardError
    return error_cls(message, detail={"status_code": response.status_code})


def _parse_items(model: type[ModelT], items: Any) -> list[ModelT]:
    """Validate response items, treating a malformed body as a transient failure."""
    try:
        return [model.model_validate(item) for item in items]
    except (SchemaValidationError, TypeError) as exc:
        raise TransientError(f"Board API returned a malformed {model.__name__} payload.") from exc


class ApiBoardBackend:
    """Backend speaking to the HTTP API through an `httpx.AsyncClient`.

    The client is expected to carry the base URL and the identity headers
    (see `identity_headers`).
    """

    def __init__(self, client: httpx.AsyncClient, *, board_id: UUID) -> None:
        self._client = client
        self.board_id = board_id

    def _path(self, suffix: str) -> str:
        return f"{API_PREFIX}/boards/{self.board_id}{suffix}"

    async def _request(self, method: str, suffix: str, **kwargs: Any) -> Any:
        try:
            response = await self._client.request(method, self._path(suffix), **kwargs)
        except httpx.TimeoutException as exc:
            raise TransientError(f"Board API timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientError(f"Board API unreachable: {exc}") from exc
        if response.is_error:
            error = _error_from_response(response)
            logger.info(
                "board_api.request_failed",
                extra={
                    "method": method,
                    "path": suffix,
                    "status_code": response.status_code,
                    "code": error.code,
                },
            )
            raise error
        try:
            return response.json()
        except ValueError as exc:
            raise TransientError(
                f"Board API returned a non-JSON body with status {response.status_code}.",
                detail={"status_code": response.status_code},
            ) from exc

    async def _collect(self, suffix: str, **params: Any) -> list[Any]:
        items: list[Any] = []
        offset = 0
        while True:
            page = await self._request(
                "GET",
                suffix,
                params={**params, "limit": LIST_PAGE_LIMIT, "offset": offset},
            )
            if not isinstance(page, dict) or not isinstance(page.get("items", []), list):
                raise TransientError(f"Board API returned a malformed page for {suffix}.")
            batch = page.get("items", [])
            items.extend(batch)
            offset += len(batch)
            if not batch or offset >= int(page.get("total") or 0):
                return items

    async def list_stages(self) -> list[StageRead]:
        payload = await self._request("GET", "/stages")
        return _parse_items(StageRead, payload)

    async def list_tasks(self) -> list[TaskRead]:
        return _parse_items(TaskRead, await self._collect("/tasks"))

    async def fetch_history(self, task_id: UUID) -> list[HistoryEntryRead]:
        items = await self._collect(f"/tasks/{task_id}/history")
        return _parse_items(HistoryEntryRead, items)

    async def fetch_comments(self, task_id: UUID) -> list[CommentRead]:
        items = await self._collect(f"/tasks/{task_id}/comments")
        return _parse_items(CommentRead, items)

    async def move_task(self, task_id: UUID, stage_id: UUID) -> TaskRead:
        payload = await self._request(
            "POST",
            f"/tasks/{task_id}/move",
            json={"stage_id": str(stage_id)},
        )
        return _parse_items(TaskRead, [payload])[0]
