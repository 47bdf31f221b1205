"""
Role normalization helpers.

Canonical contract:
- Internal (DB/runtime): roles are represented by ``UserRole`` when possible.
- API/token boundaries: roles are serialized as lowercase strings:
  "student" | "teacher" | "admin" | "system".

Legacy tolerance:
- Accept role objects with ``.value``, dicts like ``{"value": "teacher"}`` and
  enum-ish strings like "UserRole.TEACHER" when reading.
"""

from __future__ import annotations

from typing import Any, Optional, Union

from .models import UserRole

RoleLike = Union[str, UserRole, Any]

_KNOWN_ROLES = {role.value for role in UserRole}


def normalize_role(role: RoleLike) -> str:
    """Return canonical lowercase role string, or "" if missing/unknown."""
    if role is None:
        return ""

    if isinstance(role, UserRole):
        return role.value

    if isinstance(role, dict):
        role = role.get("value")
    elif hasattr(role, "value"):
        role = getattr(role, "value", role)

    raw = str(role).strip() if role is not None else ""
    if not raw:
        return ""

    lowered = raw.lower()
    if lowered in _KNOWN_ROLES:
        return lowered

    if "." in raw:
        tail = raw.split(".")[-1].strip().lower()
        if tail in _KNOWN_ROLES:
            return tail

    return ""


def parse_user_role(role: RoleLike) -> Optional[UserRole]:
    """Best-effort conversion to ``UserRole``; returns None if invalid/unknown."""
    role_value = normalize_role(role)
    if not role_value:
        return None
    return UserRole(role_value)


def role_str(user_or_role: Any) -> str:
    """Accept a user/session-like object (with ``.role``) or a role value."""
    if hasattr(user_or_role, "role"):
        return normalize_role(getattr(user_or_role, "role", None))
    return normalize_role(user_or_role)


def has_role(user_or_role: Any, *roles: Union[UserRole, str]) -> bool:
    """Return True if the user/role matches any of the given roles."""
    current = role_str(user_or_role)
    if not current:
        return False
    allowed = {normalize_role(r) for r in roles}
    return current in allowed


def is_staff(user_or_role: Any) -> bool:
    """Admins and system callers may act across classrooms."""
    return has_role(user_or_role, UserRole.ADMIN, UserRole.SYSTEM)


def is_teacher(user_or_role: Any) -> bool:
    return has_role(user_or_role, UserRole.TEACHER)


def is_student(user_or_role: Any) -> bool:
    return has_role(user_or_role, UserRole.STUDENT)
