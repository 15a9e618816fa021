"""Ordered process stages of a board.

The stage set is the one shared, singleton-like resource of a board: every
mutation takes the board row lock first, and deletion reassigns the stage's
tasks to the fallback stage in the same transaction that removes the stage.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlmodel import col

from taskboard.core.config import settings
from taskboard.core.logging import get_logger
from taskboard.core.time import utcnow
from taskboard.models.process_stages import ProcessStage
from taskboard.models.tasks import Task
from taskboard.services import history_log
from taskboard.services.access_gate import Capability, require_capability
from taskboard.services.errors import (
    ConflictError,
    NotFoundError,
    ValidationError,
    translate_store_errors,
)
from taskboard.services.store_base import (
    BoardStore,
    ensure_fallback_stage,
    find_fallback_stage,
    lock_board,
    ordered_stages,
)

if TYPE_CHECKING:
    from uuid import UUID

    from taskboard.schemas.stages import StageCreate, StageUpdate

logger = get_logger(__name__)

STAGE_DELETED_REASON = "stage_deleted"


def _clean_title(value: str | None) -> str:
    title = (value or "").strip()
    if not title:
        raise ValidationError("Stage title must not be empty.", detail={"field": "title"})
    return title


class StageStore(BoardStore):
    """Create, reorder and remove the stages of one board."""

    async def _get(self, stage_id: UUID) -> ProcessStage:
        stage = await ProcessStage.objects.filter_by(id=stage_id, board_id=self.board_id).first(
            self.session,
        )
        if stage is None:
            raise NotFoundError("Stage not found.", detail={"stage_id": str(stage_id)})
        return stage

    async def list_stages(self) -> list[ProcessStage]:
        """Stages in display order; seeds a default stage first if the board lacks one."""
        require_capability(self.actor, Capability.VIEW_BOARD)
        with translate_store_errors("list_stages"):
            stages = await ordered_stages(self.session, self.board_id)
        if any(stage.is_default for stage in stages):
            return stages
        await self.ensure_default_stage()
        with translate_store_errors("list_stages"):
            return await ordered_stages(self.session, self.board_id)

    async def ensure_default_stage(self) -> ProcessStage:
        """Return the fallback stage, committing a seeded one when needed."""
        async with self._write("seed_default_stage"):
            fallback, seeded = await ensure_fallback_stage(self.session, self.board_id)
            if seeded:
                self._notify("stages", "insert", fallback.id)
        return fallback

    async def fallback_stage(self) -> ProcessStage | None:
        """Lowest-ordered default stage, without seeding."""
        with translate_store_errors("fallback_stage"):
            return await find_fallback_stage(self.session, self.board_id)

    async def create_stage(self, payload: StageCreate) -> ProcessStage:
        require_capability(self.actor, Capability.CONFIGURE_STAGES)
        title = _clean_title(payload.title)
        async with self._write("create_stage"):
            await lock_board(self.session, self.board_id)
            stages = await ordered_stages(self.session, self.board_id)
            next_index = max((stage.order_index for stage in stages), default=-1) + 1
            # The first stage of a board, or the first after all defaults were lost,
            # must carry the default flag.
            is_default = payload.is_default or not any(stage.is_default for stage in stages)
            stage = ProcessStage(
                board_id=self.board_id,
                title=title,
                color=payload.color or settings.default_stage_color,
                order_index=next_index,
                is_default=is_default,
            )
            self.session.add(stage)
            await self.session.flush()
            self._notify("stages", "insert", stage.id)
        logger.info(
            "stage.created",
            extra={
                "board_id": str(self.board_id),
                "stage_id": str(stage.id),
                "order_index": stage.order_index,
                "actor_id": str(self.actor.actor_id),
            },
        )
        return stage

    async def update_stage(self, stage_id: UUID, payload: StageUpdate) -> ProcessStage:
        require_capability(self.actor, Capability.CONFIGURE_STAGES)
        updates = payload.model_dump(exclude_unset=True)
        if "title" in updates:
            updates["title"] = _clean_title(updates["title"])
        for field in ("color", "order_index", "is_default"):
            if field in updates and updates[field] is None:
                raise ValidationError(f"Stage {field} must not be null.", detail={"field": field})
        async with self._write("update_stage"):
            await lock_board(self.session, self.board_id)
            stage = await self._get(stage_id)
            order_index = updates.get("order_index")
            if order_index is not None and order_index != stage.order_index:
                clash = await ProcessStage.objects.filter_by(
                    board_id=self.board_id,
                    order_index=order_index,
                ).first(self.session)
                if clash is not None:
                    raise ConflictError(
                        "Another stage already occupies that position.",
                        detail={"order_index": order_index, "stage_id": str(clash.id)},
                    )
            if updates.get("is_default") is False and stage.is_default:
                other = await find_fallback_stage(self.session, self.board_id, exclude=stage.id)
                if other is None:
                    raise ConflictError(
                        "The board must keep at least one default stage.",
                        detail={"stage_id": str(stage.id)},
                    )
            for key, value in updates.items():
                setattr(stage, key, value)
            stage.updated_at = utcnow()
            self.session.add(stage)
            self._notify("stages", "update", stage.id)
        logger.info(
            "stage.updated",
            extra={
                "board_id": str(self.board_id),
                "stage_id": str(stage.id),
                "fields": sorted(updates),
            },
        )
        return stage

    async def reorder_stages(self, stage_ids: list[UUID]) -> list[ProcessStage]:
        """Rewrite `order_index` to 0..n-1 following `stage_ids`."""
        require_capability(self.actor, Capability.CONFIGURE_STAGES)
        async with self._write("reorder_stages"):
            await lock_board(self.session, self.board_id)
            stages = await ordered_stages(self.session, self.board_id)
            by_id = {stage.id: stage for stage in stages}
            if len(set(stage_ids)) != len(stage_ids) or set(stage_ids) != set(by_id):
                raise ValidationError(
                    "Stage order must list every stage of the board exactly once.",
                    detail={"expected": len(by_id), "received": len(stage_ids)},
                )
            now = utcnow()
            for index, stage_id in enumerate(stage_ids):
                stage = by_id[stage_id]
                if stage.order_index == index:
                    continue
                stage.order_index = index
                stage.updated_at = now
                self.session.add(stage)
                self._notify("stages", "update", stage.id)
        return [by_id[stage_id] for stage_id in stage_ids]

    async def delete_stage(self, stage_id: UUID) -> list[Task]:
        """Remove a stage, moving its tasks to the fallback stage atomically.

        Returns the reassigned tasks. Readers never observe a task pointing at
        a deleted stage: the reassignment, its `moved` history entries and the
        removal share one commit.
        """
        require_capability(self.actor, Capability.DELETE_STAGE)
        async with self._write("delete_stage"):
            await lock_board(self.session, self.board_id)
            stage = await self._get(stage_id)
            fallback = await find_fallback_stage(self.session, self.board_id, exclude=stage.id)
            stages = await ordered_stages(self.session, self.board_id)
            if stage.is_default and fallback is None and len(stages) > 1:
                raise ConflictError(
                    "Cannot delete the only default stage while other stages exist.",
                    detail={"stage_id": str(stage.id)},
                )
            tasks = await (
                Task.objects.filter_by(board_id=self.board_id, stage_id=stage.id)
                .order_by(col(Task.created_at).asc())
                .for_update()
                .all(self.session)
            )
            if tasks:
                if fallback is None:
                    raise ConflictError(
                        "Stage still holds tasks and the board has no fallback stage.",
                        detail={"stage_id": str(stage.id), "task_count": len(tasks)},
                    )
                await self._reassign(tasks, source=stage, target=fallback)
            await self.session.flush()
            await self.session.delete(stage)
            self._notify("stages", "delete", stage.id)
        logger.info(
            "stage.deleted",
            extra={
                "board_id": str(self.board_id),
                "stage_id": str(stage_id),
                "reassigned": len(tasks),
                "fallback_stage_id": str(fallback.id) if fallback else None,
            },
        )
        return tasks

    async def _reassign(
        self,
        tasks: list[Task],
        *,
        source: ProcessStage,
        target: ProcessStage,
    ) -> None:
        now = utcnow()
        for task in tasks:
            task.stage_id = target.id
            task.updated_at = now
            self.session.add(task)
            await history_log.append(
                self.session,
                task_id=task.id,
                board_id=self.board_id,
                actor_id=self.actor.actor_id,
                kind="moved",
                payload=history_log.moved_payload(
                    source.id,
                    target.id,
                    reason=STAGE_DELETED_REASON,
                ),
            )
            self._notify("tasks", "update", task.id)
            self._notify("history", "insert", task.id)
