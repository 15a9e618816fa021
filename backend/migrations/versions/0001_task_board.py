"""task board tables

Revision ID: 0001_task_board
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""

from __future__ import annotations

import sqlalchemy as sa
import sqlmodel
from alembic import op

# revision identifiers, used by Alembic.
revision = "0001_task_board"
down_revision = None
branch_labels = None
depends_on = None


def _has_table(table_name: str) -> bool:
    return sa.inspect(op.get_bind()).has_table(table_name)


def upgrade() -> None:
    if not _has_table("boards"):
        op.create_table(
            "boards",
            sa.Column("id", sa.Uuid(), nullable=False),
            sa.Column("name", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
            sa.Column("slug", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
            sa.Column("description", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_boards_slug", "boards", ["slug"], unique=True)

    if not _has_table("process_stages"):
        op.create_table(
            "process_stages",
            sa.Column("id", sa.Uuid(), nullable=False),
            sa.Column("board_id", sa.Uuid(), nullable=False),
            sa.Column("title", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
            sa.Column("color", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
            sa.Column("order_index", sa.Integer(), nullable=False),
            sa.Column("is_default", sa.Boolean(), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.ForeignKeyConstraint(["board_id"], ["boards.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_process_stages_board_id", "process_stages", ["board_id"])
        op.create_index("ix_process_stages_is_default", "process_stages", ["is_default"])
        op.create_index(
            "ix_process_stages_board_order",
            "process_stages",
            ["board_id", "order_index"],
        )

    if not _has_table("tasks"):
        op.create_table(
            "tasks",
            sa.Column("id", sa.Uuid(), nullable=False),
            sa.Column("board_id", sa.Uuid(), nullable=False),
            sa.Column("broker_id", sa.Uuid(), nullable=False),
            sa.Column("stage_id", sa.Uuid(), nullable=False),
            sa.Column("title", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
            sa.Column("description", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
            sa.Column("due_date", sa.Date(), nullable=True),
            sa.Column("priority", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
            sa.Column("property_reference", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
            sa.Column("completed_at", sa.DateTime(), nullable=True),
            sa.Column("created_by", sa.Uuid(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.ForeignKeyConstraint(["board_id"], ["boards.id"]),
            sa.ForeignKeyConstraint(["stage_id"], ["process_stages.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
        for column in ("board_id", "broker_id", "stage_id", "priority", "created_by", "created_at"):
            op.create_index(f"ix_tasks_{column}", "tasks", [column])

    if not _has_table("task_comments"):
        op.create_table(
            "task_comments",
            sa.Column("id", sa.Uuid(), nullable=False),
            sa.Column("task_id", sa.Uuid(), nullable=False),
            sa.Column("author_id", sa.Uuid(), nullable=False),
            sa.Column("body", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.ForeignKeyConstraint(["task_id"], ["tasks.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
        for column in ("task_id", "author_id", "created_at"):
            op.create_index(f"ix_task_comments_{column}", "task_comments", [column])

    if not _has_table("task_history"):
        # No foreign key to tasks: entries outlive the task they describe.
        op.create_table(
            "task_history",
            sa.Column("id", sa.Uuid(), nullable=False),
            sa.Column("task_id", sa.Uuid(), nullable=False),
            sa.Column("board_id", sa.Uuid(), nullable=False),
            sa.Column("actor_id", sa.Uuid(), nullable=False),
            sa.Column("kind", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
            sa.Column("payload", sa.JSON(), nullable=True),
            sa.Column("seq", sa.Integer(), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("task_id", "seq", name="uq_task_history_task_seq"),
        )
        for column in ("task_id", "board_id", "actor_id", "kind", "created_at"):
            op.create_index(f"ix_task_history_{column}", "task_history", [column])


def downgrade() -> None:
    op.drop_table("task_history")
    op.drop_table("task_comments")
    op.drop_table("tasks")
    op.drop_table("process_stages")
    op.drop_table("boards")
