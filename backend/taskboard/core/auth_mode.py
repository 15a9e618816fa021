"""Shared auth-mode enum values."""

from __future__ import annotations

from enum import Enum


class AuthMode(str, Enum):
    """Supported identity modes for board requests."""

    LOCAL = "local"
    PROXY = "proxy"
