# ruff: noqa: INP001
"""Mapping of HTTP failures to typed board errors in the API backend."""

from __future__ import annotations

from uuid import uuid4

import httpx
import pytest

from taskboard.services.board_backend import ApiBoardBackend
from taskboard.services.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    TaskBoardError,
    TransientError,
    ValidationError,
)


def _backend(handler: httpx.MockTransport) -> ApiBoardBackend:
    client = httpx.AsyncClient(transport=handler, base_url="http://board.test")
    return ApiBoardBackend(client, board_id=uuid4())


def _responding(status_code: int, body: object | None = None) -> httpx.MockTransport:
    def _handler(request: httpx.Request) -> httpx.Response:
        del request
        if body is None:
            return httpx.Response(status_code, text="upstream error")
        return httpx.Response(status_code, json=body)

    return httpx.MockTransport(_handler)


@pytest.mark.parametrize(
    ("status_code", "body", "expected"),
    [
        (404, {"detail": "Task not found.", "code": "not_found"}, NotFoundError),
        (403, {"detail": "nope"}, ForbiddenError),
        (409, {"detail": {"message": "Stage changed."}, "code": "conflict"}, ConflictError),
        (422, {"detail": [{"loc": ["body", "stage_id"]}]}, ValidationError),
        (502, None, TransientError),
        (503, {"detail": "down", "code": "transient_failure"}, TransientError),
        (418, {"detail": "teapot"}, TaskBoardError),
    ],
)
@pytest.mark.asyncio
async def test_error_responses_map_to_board_errors(
    status_code: int,
    body: object | None,
    expected: type[TaskBoardError],
) -> None:
    backend = _backend(_responding(status_code, body))

    with pytest.raises(expected) as exc_info:
        await backend.move_task(uuid4(), uuid4())

    assert type(exc_info.value) is expected
    assert exc_info.value.detail == {"status_code": status_code}


@pytest.mark.asyncio
async def test_error_message_comes_from_payload_detail() -> None:
    backend = _backend(
        _responding(409, {"detail": {"message": "Stage changed."}, "code": "conflict"}),
    )

    with pytest.raises(ConflictError, match="Stage changed."):
        await backend.move_task(uuid4(), uuid4())


@pytest.mark.asyncio
async def test_transport_failure_is_transient() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    backend = _backend(httpx.MockTransport(_handler))

    with pytest.raises(TransientError) as exc_info:
        await backend.list_tasks()

    assert exc_info.value.retryable


@pytest.mark.asyncio
async def test_list_reads_follow_pagination() -> None:
    task_id = uuid4()
    comments = [
        {
            "id": str(uuid4()),
            "task_id": str(task_id),
            "author_id": str(uuid4()),
            "body": f"Comentário {index}",
            "created_at": "2026-01-05T12:00:00",
        }
        for index in range(3)
    ]
    requested_offsets: list[int] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        offset = int(request.url.params["offset"])
        requested_offsets.append(offset)
        # Serve two items per page regardless of the requested limit.
        return httpx.Response(
            200,
            json={"items": comments[offset : offset + 2], "total": len(comments)},
        )

    backend = _backend(httpx.MockTransport(_handler))

    fetched = await backend.fetch_comments(task_id)

    assert [comment.body for comment in fetched] == [c["body"] for c in comments]
    assert requested_offsets == [0, 2]


@pytest.mark.parametrize(
    "body",
    [
        None,
        [{"id": "not-a-uuid", "title": "A"}],
        {"detail": "unexpected object"},
    ],
)
@pytest.mark.asyncio
async def test_malformed_success_bodies_are_transient(body: object | None) -> None:
    # A None body is served as a plain-text page, as a gateway would.
    backend = _backend(_responding(200, body))

    with pytest.raises(TransientError):
        await backend.list_stages()


@pytest.mark.asyncio
async def test_malformed_page_is_transient() -> None:
    backend = _backend(_responding(200, ["not", "a", "page"]))

    with pytest.raises(TransientError, match="malformed page"):
        await backend.list_tasks()
