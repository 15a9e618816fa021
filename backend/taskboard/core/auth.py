"""Actor resolution from inbound identity headers.

Session issuance and role storage live in an external identity provider. In
`local` mode callers must present the shared bearer token alongside the
identity headers; in `proxy` mode an upstream gateway has already
authenticated the request and the headers are trusted as-is.
"""

from __future__ import annotations

from hmac import compare_digest
from uuid import UUID

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from taskboard.core.auth_mode import AuthMode
from taskboard.core.config import settings
from taskboard.core.logging import get_logger
from taskboard.services.access_gate import ActorContext

logger = get_logger(__name__)
security = HTTPBearer(auto_error=False)
SECURITY_DEP = Depends(security)

ACTOR_ID_HEADER = "X-Actor-Id"
ACTOR_ROLE_HEADER = "X-Actor-Role"
BROKER_ID_HEADER = "X-Broker-Id"
TEAM_BROKER_IDS_HEADER = "X-Team-Broker-Ids"


def _extract_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    value = authorization.strip()
    if not value.lower().startswith("bearer "):
        return None
    token = value.split(" ", maxsplit=1)[1].strip()
    return token or None


def _parse_uuid(raw: str | None, *, header: str) -> UUID | None:
    value = (raw or "").strip()
    if not value:
        return None
    try:
        return UUID(value)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Malformed {header} header.",
        ) from exc


def _parse_uuid_list(raw: str | None, *, header: str) -> frozenset[UUID]:
    ids: set[UUID] = set()
    for part in (raw or "").split(","):
        parsed = _parse_uuid(part, header=header)
        if parsed is not None:
            ids.add(parsed)
    return frozenset(ids)


def _require_local_token(request: Request) -> None:
    token = _extract_bearer_token(request.headers.get("Authorization"))
    expected = settings.local_auth_token.strip()
    if token is None or not expected or not compare_digest(token, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED)


def actor_from_headers(request: Request) -> ActorContext:
    """Build the actor context from identity headers, or raise 401."""
    actor_id = _parse_uuid(request.headers.get(ACTOR_ID_HEADER), header=ACTOR_ID_HEADER)
    role = (request.headers.get(ACTOR_ROLE_HEADER) or "").strip()
    if actor_id is None or not role:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED)
    return ActorContext(
        actor_id=actor_id,
        role=role,
        broker_id=_parse_uuid(request.headers.get(BROKER_ID_HEADER), header=BROKER_ID_HEADER),
        team_broker_ids=_parse_uuid_list(
            request.headers.get(TEAM_BROKER_IDS_HEADER),
            header=TEAM_BROKER_IDS_HEADER,
        ),
    )


async def get_actor_context(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = SECURITY_DEP,
) -> ActorContext:
    """Resolve the authenticated actor for the configured auth mode."""
    if settings.auth_mode == AuthMode.LOCAL:
        _require_local_token(request)
    actor = actor_from_headers(request)
    request.state.actor_id = str(actor.actor_id)
    return actor
