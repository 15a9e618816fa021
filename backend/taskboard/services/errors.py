"""Typed failures raised by the board stores, controller and access gate."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError


class TaskBoardError(Exception):
    """Base class for board failures surfaced to the initiating actor."""

    code = "task_board_error"
    status_code = 400
    retryable = False

    def __init__(self, message: str, *, detail: dict[str, object] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ValidationError(TaskBoardError):
    """Malformed input, e.g. an empty stage title."""

    code = "validation_error"
    status_code = 422


class NotFoundError(TaskBoardError):
    """Reference to a stage, task or comment that does not exist."""

    code = "not_found"
    status_code = 404


class ForbiddenError(TaskBoardError):
    """The actor's role lacks the capability for the requested action."""

    code = "forbidden"
    status_code = 403


class ConflictError(TaskBoardError):
    """The operation would break a board invariant."""

    code = "conflict"
    status_code = 409


class TransientError(TaskBoardError):
    """Backing store or network failure; the caller may retry."""

    code = "transient_failure"
    status_code = 503
    retryable = True


@contextmanager
def translate_store_errors(operation: str) -> Iterator[None]:
    """Re-raise database driver failures as retryable board errors."""
    try:
        yield
    except IntegrityError as exc:
        # Lost a race on the unique (task_id, seq) key of a concurrent history append.
        raise TransientError(
            f"Concurrent write conflict during {operation}; retry the request.",
            detail={"operation": operation},
        ) from exc
    except (OperationalError, InterfaceError) as exc:
        raise TransientError(
            f"Backing store unavailable during {operation}.",
            detail={"operation": operation},
        ) from exc
    except DBAPIError as exc:
        if exc.connection_invalidated:
            raise TransientError(
                f"Backing store connection lost during {operation}.",
                detail={"operation": operation},
            ) from exc
        raise
