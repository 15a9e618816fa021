"""Model exports for SQLAlchemy/SQLModel metadata discovery."""

from taskboard.models.boards import Board
from taskboard.models.process_stages import ProcessStage
from taskboard.models.task_comments import TaskComment
from taskboard.models.task_history import TaskHistoryEntry
from taskboard.models.tasks import Task

__all__ = [
    "Board",
    "ProcessStage",
    "Task",
    "TaskComment",
    "TaskHistoryEntry",
]
