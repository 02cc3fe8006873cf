from __future__ import annotations

from typing import Iterable, Optional

ROLE_ADMIN = "admin"
ROLE_MANAGER = "manager"
ROLE_PLAYER = "player"

ROLES = frozenset({ROLE_ADMIN, ROLE_MANAGER, ROLE_PLAYER})
DASHBOARD_ALLOWED_ROLES = frozenset({ROLE_ADMIN, ROLE_MANAGER})


def normalize_role(value: Optional[str]) -> str:
    """Unknown or empty roles collapse to the least-privileged one."""
    normalized = (value or "").strip().lower()
    return normalized if normalized in ROLES else ROLE_PLAYER


def has_any_role(role: Optional[str], allowed: Iterable[str]) -> bool:
    return normalize_role(role) in set(allowed)
