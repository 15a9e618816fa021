"""Public schema exports shared across API route modules."""

from taskboard.schemas.boards import BoardCreate, BoardPermissionsRead, BoardRead
from taskboard.schemas.common import OkResponse
from taskboard.schemas.history import CommentCreate, CommentRead, HistoryEntryRead
from taskboard.schemas.stages import (
    StageCreate,
    StageDeleteResult,
    StageOrderUpdate,
    StageRead,
    StageUpdate,
)
from taskboard.schemas.tasks import TaskCreate, TaskMove, TaskRead, TaskUpdate

__all__ = [
    "BoardCreate",
    "BoardPermissionsRead",
    "BoardRead",
    "CommentCreate",
    "CommentRead",
    "HistoryEntryRead",
    "OkResponse",
    "StageCreate",
    "StageDeleteResult",
    "StageOrderUpdate",
    "StageRead",
    "StageUpdate",
    "TaskCreate",
    "TaskMove",
    "TaskRead",
    "TaskUpdate",
]
