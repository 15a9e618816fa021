# ruff: noqa: INP001
"""Stage store behavior: ordering, seeding, default rules and deletion."""

from __future__ import annotations

from uuid import UUID, uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from taskboard.core.config import settings
from taskboard.models.boards import Board
from taskboard.models.process_stages import ProcessStage
from taskboard.models.task_history import TaskHistoryEntry
from taskboard.models.tasks import Task
from taskboard.schemas.stages import StageCreate, StageUpdate
from taskboard.schemas.tasks import TaskCreate
from taskboard.services.access_gate import ActorContext
from taskboard.services.change_channel import LocalChangeChannel
from taskboard.services.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from taskboard.services.stage_store import StageStore
from taskboard.services.task_store import TaskStore

DIRETOR = ActorContext(actor_id=uuid4(), role="diretor")
GERENTE = ActorContext(actor_id=uuid4(), role="gerente")
CORRETOR = ActorContext(actor_id=uuid4(), role="corretor", broker_id=uuid4())


async def _make_engine() -> AsyncEngine:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    async with engine.connect() as conn, conn.begin():
        await conn.run_sync(SQLModel.metadata.create_all)
    return engine


def _session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def _make_board(maker: async_sessionmaker[AsyncSession]) -> UUID:
    async with maker() as session:
        board = Board(name="Vendas", slug=f"vendas-{uuid4().hex[:8]}")
        session.add(board)
        await session.commit()
        return board.id


def _stages(
    session: AsyncSession,
    board_id: UUID,
    actor: ActorContext = DIRETOR,
    channel: LocalChangeChannel | None = None,
) -> StageStore:
    return StageStore(
        session,
        board_id=board_id,
        actor=actor,
        channel=channel or LocalChangeChannel(),
    )


def _tasks(session: AsyncSession, board_id: UUID, actor: ActorContext = DIRETOR) -> TaskStore:
    return TaskStore(session, board_id=board_id, actor=actor, channel=LocalChangeChannel())


async def _stage_snapshot(
    maker: async_sessionmaker[AsyncSession],
    board_id: UUID,
) -> list[tuple[UUID, str, int, bool]]:
    async with maker() as session:
        stages = await _stages(session, board_id).list_stages()
        return [(s.id, s.title, s.order_index, s.is_default) for s in stages]


@pytest.mark.asyncio
async def test_list_stages_seeds_default_stage_on_empty_board() -> None:
    engine = await _make_engine()
    maker = _session_maker(engine)
    try:
        board_id = await _make_board(maker)
        async with maker() as session:
            stages = await _stages(session, board_id).list_stages()

        assert len(stages) == 1
        assert stages[0].title == settings.default_stage_title
        assert stages[0].order_index == 0
        assert stages[0].is_default is True

        # Seeding happens once.
        assert len(await _stage_snapshot(maker, board_id)) == 1
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_list_stages_promotes_lowest_stage_when_no_default_exists() -> None:
    engine = await _make_engine()
    maker = _session_maker(engine)
    try:
        board_id = await _make_board(maker)
        async with maker() as session:
            session.add(ProcessStage(board_id=board_id, title="Proposta", order_index=1))
            session.add(ProcessStage(board_id=board_id, title="Contato", order_index=0))
            await session.commit()

        snapshot = await _stage_snapshot(maker, board_id)

        assert [(title, order, default) for _, title, order, default in snapshot] == [
            ("Contato", 0, True),
            ("Proposta", 1, False),
        ]
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_list_stages_publishes_insert_only_when_seeding() -> None:
    engine = await _make_engine()
    maker = _session_maker(engine)
    channel = LocalChangeChannel()
    try:
        board_id = await _make_board(maker)
        subscription = await channel.subscribe(board_id, ("stages",))
        async with maker() as session:
            await _stages(session, board_id, channel=channel).list_stages()
            await _stages(session, board_id, channel=channel).list_stages()

        first = await subscription.get(timeout=0.1)
        assert first is not None
        assert (first.table, first.op) == ("stages", "insert")
        assert await subscription.get(timeout=0.05) is None
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_create_stage_appends_after_highest_order() -> None:
    engine = await _make_engine()
    maker = _session_maker(engine)
    try:
        board_id = await _make_board(maker)
        async with maker() as session:
            store = _stages(session, board_id)
            first = await store.create_stage(StageCreate(title="Contato"))
            second = await store.create_stage(StageCreate(title="  Visita  ", color="#ff0000"))

        assert first.order_index == 0
        # The first stage of a board always becomes its default stage.
        assert first.is_default is True
        assert second.order_index == 1
        assert second.is_default is False
        assert second.title == "Visita"
        assert second.color == "#ff0000"
    finally:
        await engine.dispose()


@pytest.mark.asyncio
@pytest.mark.parametrize("title", ["", "   "])
async def test_create_stage_rejects_empty_title(title: str) -> None:
    engine = await _make_engine()
    maker = _session_maker(engine)
    try:
        board_id = await _make_board(maker)
        async with maker() as session:
            with pytest.raises(ValidationError):
                await _stages(session, board_id).create_stage(StageCreate(title=title))
        async with maker() as session:
            assert await ProcessStage.objects.filter_by(board_id=board_id).all(session) == []
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_create_stage_requires_configure_capability() -> None:
    engine = await _make_engine()
    maker = _session_maker(engine)
    try:
        board_id = await _make_board(maker)
        async with maker() as session:
            with pytest.raises(ForbiddenError):
                await _stages(session, board_id, CORRETOR).create_stage(
                    StageCreate(title="Contato"),
                )
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_update_stage_rejects_order_collision_and_unknown_stage() -> None:
    engine = await _make_engine()
    maker = _session_maker(engine)
    try:
        board_id = await _make_board(maker)
        async with maker() as session:
            store = _stages(session, board_id)
            await store.create_stage(StageCreate(title="A"))
            b = await store.create_stage(StageCreate(title="B"))
            b_id = b.id

        async with maker() as session:
            with pytest.raises(ConflictError):
                await _stages(session, board_id).update_stage(b_id, StageUpdate(order_index=0))
        async with maker() as session:
            with pytest.raises(NotFoundError):
                await _stages(session, board_id).update_stage(uuid4(), StageUpdate(title="X"))
        async with maker() as session:
            with pytest.raises(ValidationError):
                await _stages(session, board_id).update_stage(b_id, StageUpdate(title=" "))

        async with maker() as session:
            updated = await _stages(session, board_id).update_stage(
                b_id,
                StageUpdate(title="Proposta", order_index=5),
            )
        assert updated.title == "Proposta"
        assert updated.order_index == 5
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_update_stage_keeps_at_least_one_default() -> None:
    engine = await _make_engine()
    maker = _session_maker(engine)
    try:
        board_id = await _make_board(maker)
        async with maker() as session:
            store = _stages(session, board_id)
            a = await store.create_stage(StageCreate(title="A"))
            b = await store.create_stage(StageCreate(title="B"))
            a_id, b_id = a.id, b.id

        async with maker() as session:
            with pytest.raises(ConflictError):
                await _stages(session, board_id).update_stage(a_id, StageUpdate(is_default=False))

        # With a second default in place the first one may give up the flag.
        async with maker() as session:
            store = _stages(session, board_id)
            await store.update_stage(b_id, StageUpdate(is_default=True))
            await store.update_stage(a_id, StageUpdate(is_default=False))

        snapshot = await _stage_snapshot(maker, board_id)
        assert [default for *_, default in snapshot] == [False, True]
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_reorder_stages_rewrites_positions() -> None:
    engine = await _make_engine()
    maker = _session_maker(engine)
    try:
        board_id = await _make_board(maker)
        async with maker() as session:
            store = _stages(session, board_id)
            ids = [(await store.create_stage(StageCreate(title=t))).id for t in ("A", "B", "C")]

        async with maker() as session:
            reordered = await _stages(session, board_id).reorder_stages([ids[2], ids[0], ids[1]])
        assert [stage.title for stage in reordered] == ["C", "A", "B"]

        snapshot = await _stage_snapshot(maker, board_id)
        assert [(title, order) for _, title, order, _ in snapshot] == [
            ("C", 0),
            ("A", 1),
            ("B", 2),
        ]

        async with maker() as session:
            with pytest.raises(ValidationError):
                await _stages(session, board_id).reorder_stages([ids[0], ids[1]])
        async with maker() as session:
            with pytest.raises(ValidationError):
                await _stages(session, board_id).reorder_stages([ids[0], ids[0], ids[1]])
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_delete_empty_stage_leaves_tasks_untouched() -> None:
    engine = await _make_engine()
    maker = _session_maker(engine)
    try:
        board_id = await _make_board(maker)
        async with maker() as session:
            stages = _stages(session, board_id)
            a = await stages.create_stage(StageCreate(title="A"))
            b = await stages.create_stage(StageCreate(title="B"))
            task = await _tasks(session, board_id).create_task(
                TaskCreate(broker_id=uuid4(), title="Ligar para cliente"),
            )
            a_id, b_id, task_id = a.id, b.id, task.id

        async with maker() as session:
            reassigned = await _stages(session, board_id).delete_stage(b_id)
        assert reassigned == []

        snapshot = await _stage_snapshot(maker, board_id)
        assert [stage_id for stage_id, *_ in snapshot] == [a_id]
        async with maker() as session:
            tasks = await _tasks(session, board_id).list_tasks()
        assert [(t.id, t.stage_id) for t in tasks] == [(task_id, a_id)]
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_delete_stage_reassigns_every_task_to_fallback() -> None:
    engine = await _make_engine()
    maker = _session_maker(engine)
    try:
        board_id = await _make_board(maker)
        async with maker() as session:
            stages = _stages(session, board_id)
            a = await stages.create_stage(StageCreate(title="A"))
            b = await stages.create_stage(StageCreate(title="B"))
            a_id, b_id = a.id, b.id
            tasks = _tasks(session, board_id)
            task_ids = []
            for index in range(3):
                task = await tasks.create_task(
                    TaskCreate(broker_id=uuid4(), title=f"T{index}", stage_id=b_id),
                )
                task_ids.append(task.id)

        async with maker() as session:
            reassigned = await _stages(session, board_id).delete_stage(b_id)
        assert sorted(t.id for t in reassigned) == sorted(task_ids)
        assert {t.stage_id for t in reassigned} == {a_id}

        async with maker() as session:
            listed = await _tasks(session, board_id).list_tasks()
            assert all(t.stage_id == a_id for t in listed)
            assert await Task.objects.filter_by(stage_id=b_id).all(session) == []
            moved = await TaskHistoryEntry.objects.filter_by(board_id=board_id, kind="moved").all(
                session,
            )
        assert sorted(entry.task_id for entry in moved) == sorted(task_ids)
        for entry in moved:
            assert entry.payload == {
                "from_stage_id": str(b_id),
                "to_stage_id": str(a_id),
                "reason": "stage_deleted",
            }
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_delete_sole_default_stage_with_others_conflicts() -> None:
    engine = await _make_engine()
    maker = _session_maker(engine)
    try:
        board_id = await _make_board(maker)
        async with maker() as session:
            stages = _stages(session, board_id)
            a = await stages.create_stage(StageCreate(title="A"))
            await stages.create_stage(StageCreate(title="B"))
            a_id = a.id
        before = await _stage_snapshot(maker, board_id)

        async with maker() as session:
            with pytest.raises(ConflictError):
                await _stages(session, board_id).delete_stage(a_id)

        assert await _stage_snapshot(maker, board_id) == before
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_delete_last_stage_allowed_only_without_tasks() -> None:
    engine = await _make_engine()
    maker = _session_maker(engine)
    try:
        board_id = await _make_board(maker)
        async with maker() as session:
            only = await _stages(session, board_id).create_stage(StageCreate(title="A"))
            await _tasks(session, board_id).create_task(
                TaskCreate(broker_id=uuid4(), title="Vistoria"),
            )
            only_id = only.id

        async with maker() as session:
            with pytest.raises(ConflictError):
                await _stages(session, board_id).delete_stage(only_id)

        async with maker() as session:
            for task in await Task.objects.filter_by(board_id=board_id).all(session):
                await _tasks(session, board_id).delete_task(task.id)
        async with maker() as session:
            await _stages(session, board_id).delete_stage(only_id)
            remaining = await ProcessStage.objects.filter_by(board_id=board_id).all(session)
        assert remaining == []
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_delete_stage_requires_delete_capability() -> None:
    engine = await _make_engine()
    maker = _session_maker(engine)
    try:
        board_id = await _make_board(maker)
        async with maker() as session:
            stages = _stages(session, board_id)
            await stages.create_stage(StageCreate(title="A"))
            b = await stages.create_stage(StageCreate(title="B"))
            b_id = b.id

        async with maker() as session:
            with pytest.raises(ForbiddenError):
                await _stages(session, board_id, GERENTE).delete_stage(b_id)
        assert len(await _stage_snapshot(maker, board_id)) == 2
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_delete_stage_publishes_after_commit() -> None:
    engine = await _make_engine()
    maker = _session_maker(engine)
    channel = LocalChangeChannel()
    try:
        board_id = await _make_board(maker)
        async with maker() as session:
            stages = _stages(session, board_id)
            await stages.create_stage(StageCreate(title="A"))
            b = await stages.create_stage(StageCreate(title="B"))
            b_id = b.id
            await _tasks(session, board_id).create_task(
                TaskCreate(broker_id=uuid4(), title="T", stage_id=b_id),
            )

        subscription = await channel.subscribe(board_id)
        async with maker() as session:
            await _stages(session, board_id, channel=channel).delete_stage(b_id)

        tables = set()
        while (notification := await subscription.get(timeout=0.05)) is not None:
            tables.add(notification.table)
        assert tables == {"stages", "tasks", "history"}
    finally:
        await engine.dispose()
