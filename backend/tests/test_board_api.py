# ruff: noqa: INP001
"""HTTP surface: auth, board/stage/task routes, error payloads and the API backend."""

from __future__ import annotations

from collections.abc import AsyncIterator
from uuid import UUID, uuid4

import pytest
from fastapi import APIRouter, FastAPI
from fastapi_pagination import add_pagination
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from taskboard.api.boards import router as boards_router
from taskboard.api.deps import get_channel
from taskboard.api.events import router as events_router
from taskboard.api.stages import router as stages_router
from taskboard.api.tasks import router as tasks_router
from taskboard.core.config import settings
from taskboard.core.error_handling import REQUEST_ID_HEADER, install_error_handling
from taskboard.db.session import get_session
from taskboard.services.access_gate import ActorContext
from taskboard.services.board_backend import ApiBoardBackend, identity_headers
from taskboard.services.change_channel import LocalChangeChannel
from taskboard.services.errors import ForbiddenError, NotFoundError

DIRETOR = ActorContext(actor_id=uuid4(), role="diretor")


async def _make_engine() -> AsyncEngine:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    async with engine.connect() as conn, conn.begin():
        await conn.run_sync(SQLModel.metadata.create_all)
    return engine


def _build_test_app(
    session_maker: async_sessionmaker[AsyncSession],
    channel: LocalChangeChannel,
) -> FastAPI:
    app = FastAPI()
    install_error_handling(app)
    api_v1 = APIRouter(prefix="/api/v1")
    api_v1.include_router(boards_router)
    api_v1.include_router(stages_router)
    api_v1.include_router(tasks_router)
    api_v1.include_router(events_router)
    app.include_router(api_v1)
    add_pagination(app)

    async def _override_get_session() -> AsyncIterator[AsyncSession]:
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_session] = _override_get_session
    app.dependency_overrides[get_channel] = lambda: channel
    return app


def _headers(actor: ActorContext = DIRETOR) -> dict[str, str]:
    return identity_headers(actor, token=settings.local_auth_token)


async def _client(engine: AsyncEngine, channel: LocalChangeChannel | None = None) -> AsyncClient:
    session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    app = _build_test_app(session_maker, channel or LocalChangeChannel())
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver")


async def _create_board(client: AsyncClient) -> dict[str, object]:
    response = await client.post(
        "/api/v1/boards",
        json={"name": "Vendas Centro"},
        headers=_headers(),
    )
    assert response.status_code == 200
    return response.json()


@pytest.mark.asyncio
async def test_requests_require_token_and_identity() -> None:
    engine = await _make_engine()
    try:
        async with await _client(engine) as client:
            missing_token = await client.get("/api/v1/boards", headers=identity_headers(DIRETOR))
            assert missing_token.status_code == 401

            wrong_token = await client.get(
                "/api/v1/boards",
                headers=identity_headers(DIRETOR, token="wrong-token"),
            )
            assert wrong_token.status_code == 401

            missing_identity = await client.get(
                "/api/v1/boards",
                headers={"Authorization": f"Bearer {settings.local_auth_token}"},
            )
            assert missing_identity.status_code == 401

            malformed = await client.get(
                "/api/v1/boards",
                headers={**_headers(), "X-Actor-Id": "not-a-uuid"},
            )
            assert malformed.status_code == 401

            authorized = await client.get("/api/v1/boards", headers=_headers())
            assert authorized.status_code == 200
            assert authorized.json()["items"] == []
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_board_lifecycle_through_the_api() -> None:
    engine = await _make_engine()
    try:
        async with await _client(engine) as client:
            board = await _create_board(client)
            assert board["slug"] == "vendas-centro"
            base = f"/api/v1/boards/{board['id']}"

            stages = (await client.get(f"{base}/stages", headers=_headers())).json()
            assert [(s["title"], s["is_default"]) for s in stages] == [
                (settings.default_stage_title, True),
            ]
            default_id = stages[0]["id"]

            created_stage = await client.post(
                f"{base}/stages",
                json={"title": "Proposta"},
                headers=_headers(),
            )
            assert created_stage.status_code == 200
            proposal_id = created_stage.json()["id"]
            assert created_stage.json()["order_index"] == 1

            task = await client.post(
                f"{base}/tasks",
                json={"broker_id": str(uuid4()), "title": "Enviar proposta"},
                headers=_headers(),
            )
            assert task.status_code == 200
            task_id = task.json()["id"]
            assert task.json()["stage_id"] == default_id

            moved = await client.post(
                f"{base}/tasks/{task_id}/move",
                json={"stage_id": proposal_id},
                headers=_headers(),
            )
            assert moved.status_code == 200
            assert moved.json()["stage_id"] == proposal_id

            listed = (await client.get(f"{base}/tasks", headers=_headers())).json()
            assert listed["total"] == 1
            assert listed["items"][0]["stage_id"] == proposal_id

            comment = await client.post(
                f"{base}/tasks/{task_id}/comments",
                json={"body": "Cliente pediu desconto"},
                headers=_headers(),
            )
            assert comment.status_code == 200

            history_url = f"{base}/tasks/{task_id}/history"
            history = (await client.get(history_url, headers=_headers())).json()
            assert [entry["kind"] for entry in history["items"]] == [
                "created",
                "moved",
                "commented",
            ]
            comments = (
                await client.get(f"{base}/tasks/{task_id}/comments", headers=_headers())
            ).json()
            assert [c["body"] for c in comments["items"]] == ["Cliente pediu desconto"]

            deleted = await client.delete(f"{base}/stages/{proposal_id}", headers=_headers())
            assert deleted.status_code == 200
            assert deleted.json() == {
                "ok": True,
                "fallback_stage_id": default_id,
                "reassigned_task_ids": [task_id],
            }

            reloaded = (await client.get(f"{base}/tasks/{task_id}", headers=_headers())).json()
            assert reloaded["stage_id"] == default_id

            removed = await client.delete(f"{base}/tasks/{task_id}", headers=_headers())
            assert removed.json() == {"ok": True}
            # History outlives the task.
            history_after = await client.get(history_url, headers=_headers())
            assert history_after.status_code == 200
            assert history_after.json()["items"][-1]["kind"] == "deleted"
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_domain_errors_map_to_json_payloads() -> None:
    engine = await _make_engine()
    corretor = ActorContext(actor_id=uuid4(), role="corretor", broker_id=uuid4())
    try:
        async with await _client(engine) as client:
            board = await _create_board(client)
            base = f"/api/v1/boards/{board['id']}"

            forbidden = await client.post(
                f"{base}/stages",
                json={"title": "Pós-venda"},
                headers=_headers(corretor),
            )
            assert forbidden.status_code == 403
            body = forbidden.json()
            assert body["code"] == "forbidden"
            assert body["retryable"] is False
            assert body["request_id"] == forbidden.headers[REQUEST_ID_HEADER]

            missing = await client.get(f"{base}/tasks/{uuid4()}", headers=_headers())
            assert missing.status_code == 404
            assert missing.json()["code"] == "not_found"

            blank = await client.post(f"{base}/stages", json={"title": " "}, headers=_headers())
            assert blank.status_code == 422
            assert blank.json()["code"] == "validation_error"

            stages = (await client.get(f"{base}/stages", headers=_headers())).json()
            await client.post(f"{base}/stages", json={"title": "Extra"}, headers=_headers())
            conflict = await client.delete(f"{base}/stages/{stages[0]['id']}", headers=_headers())
            assert conflict.status_code == 409
            assert conflict.json()["code"] == "conflict"

            unknown_board = await client.get(
                f"/api/v1/boards/{uuid4()}/stages",
                headers=_headers(),
            )
            assert unknown_board.status_code == 404
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_permissions_endpoint_lists_role_capabilities() -> None:
    engine = await _make_engine()
    gerente = ActorContext(actor_id=uuid4(), role="gerente")
    try:
        async with await _client(engine) as client:
            board = await _create_board(client)
            response = await client.get(
                f"/api/v1/boards/{board['id']}/permissions",
                headers=_headers(gerente),
            )
            assert response.status_code == 200
            payload = response.json()
            assert payload["role"] == "gerente"
            assert "delete_stage" not in payload["capabilities"]
            assert "configure_stages" in payload["capabilities"]
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_event_stream_requires_view_capability() -> None:
    engine = await _make_engine()
    visitor = ActorContext(actor_id=uuid4(), role="visitante")
    try:
        async with await _client(engine) as client:
            board = await _create_board(client)
            response = await client.get(
                f"/api/v1/boards/{board['id']}/events",
                headers=_headers(visitor),
            )
            assert response.status_code == 403
            assert response.json()["code"] == "forbidden"
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_api_backend_reads_moves_and_maps_errors() -> None:
    engine = await _make_engine()
    channel = LocalChangeChannel()
    try:
        async with await _client(engine, channel) as client:
            board = await _create_board(client)
            board_id = UUID(str(board["id"]))
            client.headers.update(_headers())
            backend = ApiBoardBackend(client, board_id=board_id)

            stages = await backend.list_stages()
            created = await client.post(
                f"/api/v1/boards/{board_id}/stages",
                json={"title": "Fechamento"},
            )
            closing_id = UUID(created.json()["id"])
            for index in range(3):
                await client.post(
                    f"/api/v1/boards/{board_id}/tasks",
                    json={"broker_id": str(uuid4()), "title": f"Tarefa {index}"},
                )

            tasks = await backend.list_tasks()
            assert len(tasks) == 3
            assert {task.stage_id for task in tasks} == {stages[0].id}

            subscription = await channel.subscribe(board_id, ("tasks",))
            moved = await backend.move_task(tasks[0].id, closing_id)
            assert moved.stage_id == closing_id
            notification = await subscription.get(timeout=0.1)
            assert notification is not None
            assert notification.entity_id == tasks[0].id

            history = await backend.fetch_history(tasks[0].id)
            assert [entry.kind for entry in history] == ["created", "moved"]

            with pytest.raises(NotFoundError):
                await backend.move_task(uuid4(), closing_id)

            visitor = ActorContext(actor_id=uuid4(), role="visitante")
            client.headers.update(identity_headers(visitor))
            with pytest.raises(ForbiddenError):
                await backend.move_task(tasks[0].id, stages[0].id)
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_reorder_and_patch_through_the_api() -> None:
    engine = await _make_engine()
    try:
        async with await _client(engine) as client:
            board = await _create_board(client)
            base = f"/api/v1/boards/{board['id']}"
            fetched = await client.get(base, headers=_headers())
            assert fetched.json()["slug"] == "vendas-centro"

            for title in ("Visita", "Proposta"):
                await client.post(f"{base}/stages", json={"title": title}, headers=_headers())
            stages = (await client.get(f"{base}/stages", headers=_headers())).json()
            reversed_ids = [stage["id"] for stage in reversed(stages)]

            reordered = await client.put(
                f"{base}/stages/order",
                json={"stage_ids": reversed_ids},
                headers=_headers(),
            )
            assert reordered.status_code == 200
            assert [stage["id"] for stage in reordered.json()] == reversed_ids
            assert [stage["order_index"] for stage in reordered.json()] == [0, 1, 2]

            partial = await client.put(
                f"{base}/stages/order",
                json={"stage_ids": reversed_ids[:1]},
                headers=_headers(),
            )
            assert partial.status_code == 422

            task = await client.post(
                f"{base}/tasks",
                json={"broker_id": str(uuid4()), "title": "Agendar visita"},
                headers=_headers(),
            )
            task_id = task.json()["id"]
            patched = await client.patch(
                f"{base}/tasks/{task_id}",
                json={"title": "Agendar segunda visita", "priority": "high"},
                headers=_headers(),
            )
            assert patched.status_code == 200
            assert patched.json()["title"] == "Agendar segunda visita"
            assert patched.json()["priority"] == "high"

            history = await client.get(f"{base}/tasks/{task_id}/history", headers=_headers())
            kinds = [entry["kind"] for entry in history.json()["items"]]
            assert kinds == ["created", "field_changed", "field_changed"]
    finally:
        await engine.dispose()
