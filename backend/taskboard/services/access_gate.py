"""Role-based capability checks for board actions.

Every mutating entry point (stage store, task store, board controller) calls
`require_capability` before touching state. UI code may additionally hide
controls using `capabilities_for`, but that is never a substitute for the
check at the mutation boundary.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from taskboard.core.config import settings
from taskboard.core.logging import get_logger
from taskboard.services.errors import ForbiddenError

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping
    from uuid import UUID

logger = get_logger(__name__)


class Capability(str, Enum):
    """Board actions subject to authorization."""

    VIEW_BOARD = "view_board"
    MOVE_TASK = "move_task"
    CREATE_TASK = "create_task"
    EDIT_TASK = "edit_task"
    DELETE_TASK = "delete_task"
    COMMENT_TASK = "comment_task"
    CONFIGURE_STAGES = "configure_stages"
    DELETE_STAGE = "delete_stage"


ALL_CAPABILITIES: frozenset[Capability] = frozenset(Capability)

# Roles holding every capability unconditionally; configuration cannot narrow them.
BLANKET_ROLES: frozenset[str] = frozenset({"diretor", "admin"})

# Role → enumerated capability subset for everyone else.
ROLE_CAPABILITIES: dict[str, frozenset[Capability]] = {
    "gerente": ALL_CAPABILITIES - {Capability.DELETE_STAGE},
    "corretor": frozenset(
        {
            Capability.VIEW_BOARD,
            Capability.MOVE_TASK,
            Capability.CREATE_TASK,
            Capability.EDIT_TASK,
            Capability.COMMENT_TASK,
        },
    ),
}


@dataclass(frozen=True)
class ActorContext:
    """Identity of the session performing board actions."""

    actor_id: UUID
    role: str
    broker_id: UUID | None = None
    team_broker_ids: frozenset[UUID] = field(default_factory=frozenset)


def _normalize_role(role: str) -> str:
    return role.strip().lower()


def build_role_policy(
    overrides: Mapping[str, Iterable[str]] | None = None,
) -> dict[str, frozenset[Capability]]:
    """Merge configured role overrides over the built-in policy table."""
    policy = dict(ROLE_CAPABILITIES)
    for raw_role, raw_capabilities in (overrides or {}).items():
        role = _normalize_role(raw_role)
        if role in BLANKET_ROLES:
            logger.warning("access.policy.blanket_override_ignored", extra={"role": role})
            continue
        try:
            policy[role] = frozenset(Capability(value) for value in raw_capabilities)
        except ValueError as exc:
            msg = f"Unknown capability in ROLE_CAPABILITIES for role {role!r}: {exc}"
            raise ValueError(msg) from exc
    return policy


_ROLE_POLICY = build_role_policy(settings.role_capabilities)


def capabilities_for(
    role: str,
    *,
    policy: Mapping[str, frozenset[Capability]] | None = None,
) -> frozenset[Capability]:
    """Return the full capability set for a role."""
    normalized = _normalize_role(role)
    if normalized in BLANKET_ROLES:
        return ALL_CAPABILITIES
    table = _ROLE_POLICY if policy is None else policy
    return table.get(normalized, frozenset())


def can_perform(
    role: str,
    capability: Capability,
    *,
    policy: Mapping[str, frozenset[Capability]] | None = None,
) -> bool:
    """Pure check of a role against the policy table and the blanket roles."""
    return capability in capabilities_for(role, policy=policy)


def require_capability(actor: ActorContext, capability: Capability) -> None:
    """Raise `ForbiddenError` unless the actor's role grants the capability."""
    if can_perform(actor.role, capability):
        return
    logger.info(
        "access.denied",
        extra={
            "actor_id": str(actor.actor_id),
            "role": actor.role,
            "capability": capability.value,
        },
    )
    raise ForbiddenError(
        f"Role '{actor.role}' may not perform '{capability.value}'.",
        detail={"capability": capability.value},
    )


def can_access_broker(actor: ActorContext, broker_id: UUID) -> bool:
    """Check whether the actor may act on tasks owned by `broker_id`."""
    role = _normalize_role(actor.role)
    if role in BLANKET_ROLES:
        return True
    if actor.broker_id is not None and actor.broker_id == broker_id:
        return True
    if role == "gerente":
        # Managers without team data are not restricted to a team.
        return not actor.team_broker_ids or broker_id in actor.team_broker_ids
    return False


def require_broker_access(actor: ActorContext, broker_id: UUID) -> None:
    """Raise `ForbiddenError` when the task's broker is outside the actor's scope."""
    if can_access_broker(actor, broker_id):
        return
    logger.info(
        "access.broker_denied",
        extra={
            "actor_id": str(actor.actor_id),
            "role": actor.role,
            "broker_id": str(broker_id),
        },
    )
    raise ForbiddenError(
        "Task belongs to a broker outside your scope.",
        detail={"broker_id": str(broker_id)},
    )


def visible_broker_ids(actor: ActorContext) -> frozenset[UUID] | None:
    """Broker ids the actor may list, or None when unrestricted."""
    role = _normalize_role(actor.role)
    if role in BLANKET_ROLES:
        return None
    if role == "gerente" and not actor.team_broker_ids:
        return None
    ids = set(actor.team_broker_ids) if role == "gerente" else set()
    if actor.broker_id is not None:
        ids.add(actor.broker_id)
    return frozenset(ids)
