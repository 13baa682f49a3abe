"""
Shared authentication helpers for the web layer.

Design:
    Pure functions over the session's role list so middleware and routes
    agree on who counts as an administrator.
"""

from __future__ import annotations

ROLE_PRIORITY = ("admin", "volunteer")


def primary_role(roles: list[str]) -> str:
    """Return the highest-privilege known role, defaulting to "volunteer"."""
    lowered = [r.lower() for r in roles or [] if isinstance(r, str)]
    for role in ROLE_PRIORITY:
        if role in lowered:
            return role
    return "volunteer"


def is_admin(user: dict | None) -> bool:
    roles = (user or {}).get("roles") or []
    return isinstance(roles, list) and any(isinstance(r, str) and r.lower() == "admin" for r in roles)
