from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Protocol

from sqlalchemy import select

from . import config
from .database import Employee, UserRole, UserStoreAssignment


@dataclass(frozen=True)
class EmployeeProfile:
    user_id: str
    full_name: str
    email: Optional[str] = None
    weekly_contract_hours: Optional[float] = None

    @property
    def contract_hours(self) -> float:
        if self.weekly_contract_hours is None:
            return float(config.DEFAULT_CONTRACT_HOURS)
        return float(self.weekly_contract_hours)


class EmployeeDirectory(Protocol):
    def lookup(self, user_ids: Iterable[str]) -> Dict[str, EmployeeProfile]:
        ...


class SqlEmployeeDirectory:
    """Read-only view of the ``employees`` table bound to the caller's session."""

    def __init__(self, session):
        self._session = session

    def lookup(self, user_ids: Iterable[str]) -> Dict[str, EmployeeProfile]:
        ids = sorted({user_id for user_id in user_ids if user_id})
        if not ids:
            return {}
        stmt = select(Employee).where(Employee.id.in_(ids))
        profiles: Dict[str, EmployeeProfile] = {}
        for employee in self._session.scalars(stmt):
            profiles[employee.id] = EmployeeProfile(
                user_id=employee.id,
                full_name=employee.full_name,
                email=employee.email,
                weekly_contract_hours=employee.weekly_contract_hours,
            )
        return profiles


def store_admin_ids(session, store_id: str) -> List[str]:
    """Users assigned to ``store_id`` whose role is admin or super_admin."""
    stmt = (
        select(UserStoreAssignment.user_id)
        .join(UserRole, UserRole.user_id == UserStoreAssignment.user_id)
        .where(
            UserStoreAssignment.store_id == store_id,
            UserRole.role.in_(sorted(config.ADMIN_ROLES)),
        )
        .order_by(UserStoreAssignment.user_id.asc())
    )
    return list(session.scalars(stmt))
