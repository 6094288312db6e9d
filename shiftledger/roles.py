from __future__ import annotations

from typing import Callable, Optional, Protocol

from sqlalchemy import select

from . import config
from .database import UserRole
from .errors import AuthError


def normalize_role(role: Optional[str]) -> str:
    return (role or "").strip().lower()


def is_admin_role(role: Optional[str]) -> bool:
    return normalize_role(role) in config.ADMIN_ROLES


def require_admin(role: Optional[str]) -> str:
    """Gate for the mutating coordinators.

    Raises ``AuthError`` with 401 when no role was resolved and 403 when the
    role is not admin or super_admin.
    """
    label = normalize_role(role)
    if not label:
        raise AuthError("Unauthorized", code="unauthenticated", status_code=401)
    if not is_admin_role(label):
        raise AuthError("Forbidden", code="forbidden", status_code=403)
    return label


class RoleResolver(Protocol):
    def get_role(self, user_id: str) -> Optional[str]:
        ...


class SqlRoleResolver:
    """Reads the ``user_roles`` table."""

    def __init__(self, session_factory: Callable):
        self._session_factory = session_factory

    def get_role(self, user_id: str) -> Optional[str]:
        if not user_id:
            return None
        with self._session_factory() as session:
            role = session.scalars(select(UserRole.role).where(UserRole.user_id == user_id)).first()
        return normalize_role(role) or None
