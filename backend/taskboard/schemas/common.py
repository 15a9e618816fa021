"""Small response schemas shared by several routers."""

from __future__ import annotations

from sqlmodel import SQLModel


class OkResponse(SQLModel):
    """Acknowledgement for mutations without a meaningful response body."""

    ok: bool = True
