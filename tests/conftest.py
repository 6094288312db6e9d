from __future__ import annotations

import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from shiftledger.database import (
    Base,
    Employee,
    GenerationRun,
    Shift,
    Store,
    StoreCoverageRequirement,
    StoreRules,
    UserRole,
    UserStoreAssignment,
    week_bounds,
)

WEEK = datetime.date(2026, 3, 2)


class RecordingFanout:
    """Collects every in-app notification and email instead of sending them."""

    def __init__(self, fail_for: Iterable[str] = (), fail_email_for: Iterable[str] = ()):
        self.notifications: List[Dict[str, Any]] = []
        self.emails: List[Dict[str, Any]] = []
        self.fail_for = set(fail_for)
        self.fail_email_for = set(fail_email_for)
        self.on_notify: Optional[Callable[[str], None]] = None

    def notify(self, user_id, title, message, link, store_id=None, notification_type=None) -> None:
        if self.on_notify is not None:
            hook, self.on_notify = self.on_notify, None
            hook(user_id)
        if user_id in self.fail_for:
            raise RuntimeError(f"push service rejected {user_id}")
        self.notifications.append(
            {
                "user_id": user_id,
                "title": title,
                "message": message,
                "link": link,
                "store_id": store_id,
                "type": notification_type,
            }
        )

    def email_digest(self, email, subject, html_body) -> None:
        if email in self.fail_email_for:
            raise RuntimeError(f"mailbox unavailable: {email}")
        self.emails.append({"email": email, "subject": subject, "html": html_body})

    @property
    def recipients(self) -> List[str]:
        return [item["user_id"] for item in self.notifications]


class Seeder:
    """Small helpers that write fixture rows through their own committed sessions."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def _add(self, *rows) -> None:
        with self.session_factory() as session:
            session.add_all(rows)
            session.commit()

    def store(self, name: str = "Centro", *, generation_enabled: bool = True, departments: str = "sala, cucina", is_active: bool = True) -> str:
        store = Store(name=name, city="Torino", is_active=is_active)
        with self.session_factory() as session:
            session.add(store)
            session.flush()
            session.add(StoreRules(store_id=store.id, generation_enabled=generation_enabled, departments=departments))
            session.commit()
            return store.id

    def employee(
        self,
        full_name: str,
        *,
        email: Optional[str] = None,
        contract: Optional[int] = 40,
        role: str = "employee",
        store_id: Optional[str] = None,
        department: str = "sala",
    ) -> str:
        employee = Employee(
            full_name=full_name,
            email=email,
            weekly_contract_hours=contract,
            department=department,
        )
        with self.session_factory() as session:
            session.add(employee)
            session.flush()
            session.add(UserRole(user_id=employee.id, role=role))
            if store_id:
                session.add(UserStoreAssignment(user_id=employee.id, store_id=store_id))
            session.commit()
            return employee.id

    def admin(self, store_id: Optional[str] = None, *, full_name: str = "Admin", email: Optional[str] = None, role: str = "admin") -> str:
        return self.employee(full_name, email=email, role=role, store_id=store_id, contract=None)

    def run(self, store_id: str, week_start: datetime.date = WEEK, *, department: str = "sala", status: str = "completed") -> str:
        start, end = week_bounds(week_start)
        run = GenerationRun(store_id=store_id, department=department, week_start=start, week_end=end, status=status)
        self._add(run)
        return run.id

    def shift(
        self,
        store_id: str,
        user_id: str,
        date: datetime.date,
        start: Optional[str] = "09:00",
        end: Optional[str] = "17:00",
        *,
        run_id: Optional[str] = None,
        status: str = "draft",
        department: str = "sala",
        is_day_off: bool = False,
    ) -> str:
        shift = Shift(
            store_id=store_id,
            user_id=user_id,
            date=date,
            start_time=None if is_day_off or start is None else datetime.time.fromisoformat(start),
            end_time=None if is_day_off or end is None else datetime.time.fromisoformat(end),
            department=department,
            is_day_off=is_day_off,
            status=status,
            generation_run_id=run_id,
        )
        self._add(shift)
        return shift.id

    def coverage(self, store_id: str, day_of_week: int, hour: int, department: str = "sala", min_staff: int = 1) -> None:
        self._add(
            StoreCoverageRequirement(
                store_id=store_id,
                day_of_week=day_of_week,
                hour_slot=datetime.time(hour, 0),
                department=department,
                min_staff_required=min_staff,
            )
        )


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite://",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False, future=True)


@pytest.fixture()
def session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def seed(session_factory) -> Seeder:
    return Seeder(session_factory)


@pytest.fixture()
def fanout() -> RecordingFanout:
    return RecordingFanout()


def shift_statuses(session_factory, **filters) -> Dict[str, str]:
    with session_factory() as check:
        stmt = select(Shift)
        for key, value in filters.items():
            stmt = stmt.where(getattr(Shift, key) == value)
        return {shift.id: shift.status for shift in check.scalars(stmt)}


def run_status(session_factory, run_id: str) -> str:
    with session_factory() as check:
        return check.get(GenerationRun, run_id).status


def select_shifts(session_factory, **filters) -> List[Shift]:
    with session_factory() as check:
        stmt = select(Shift).order_by(Shift.date.asc())
        for key, value in filters.items():
            stmt = stmt.where(getattr(Shift, key) == value)
        return list(check.scalars(stmt))
