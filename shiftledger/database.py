from __future__ import annotations

import datetime
import json
import uuid
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    select,
    update,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, sessionmaker
from sqlalchemy.types import Time

from . import config
from .errors import TransitionError, ValidationError

SHIFT_STATUSES = ("draft", "published", "archived")
RUN_STATUSES = ("pending", "completed", "published", "archived", "failed")

# target status -> the only status a row may hold right before it
SHIFT_PREDECESSOR: Dict[str, str] = {"published": "draft", "archived": "published"}
RUN_PREDECESSORS: Dict[str, Tuple[str, ...]] = {
    "completed": ("pending",),
    "failed": ("pending",),
    "published": ("completed",),
    "archived": ("published",),
}


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


def normalize_week_start(date_value: datetime.date) -> datetime.date:
    """Return the Monday for the provided date."""
    if isinstance(date_value, datetime.datetime):
        date_value = date_value.date()
    weekday = date_value.weekday()
    if weekday == 0:
        return date_value
    return date_value - datetime.timedelta(days=weekday)


def week_bounds(week_start: datetime.date) -> Tuple[datetime.date, datetime.date]:
    return week_start, week_start + datetime.timedelta(days=6)


def parse_id(value: Any, field: str = "id") -> str:
    """Return the canonical string form of a UUID identifier."""
    if isinstance(value, uuid.UUID):
        return str(value)
    try:
        return str(uuid.UUID(str(value or "").strip()))
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a UUID", code="invalid_id", details={"field": field}) from None


def parse_date(value: Any, field: str = "date") -> datetime.date:
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    try:
        return datetime.date.fromisoformat(str(value or "").strip())
    except ValueError:
        raise ValidationError(f"{field} must be YYYY-MM-DD", code="invalid_date", details={"field": field}) from None


class Base(DeclarativeBase):
    pass


class Store(Base):
    __tablename__ = "stores"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    city: Mapped[str] = mapped_column(String(120), nullable=False, default="")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    rules: Mapped[Optional["StoreRules"]] = relationship(back_populates="store", uselist=False)


class StoreRules(Base):
    __tablename__ = "store_rules"

    store_id: Mapped[str] = mapped_column(ForeignKey("stores.id", ondelete="CASCADE"), primary_key=True)
    generation_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    departments: Mapped[str] = mapped_column(String(120), nullable=False, default="sala, cucina")

    store: Mapped[Store] = relationship(back_populates="rules")

    @property
    def department_list(self) -> List[str]:
        return [dept.strip() for dept in self.departments.split(",") if dept.strip()]


class StoreCoverageRequirement(Base):
    __tablename__ = "store_coverage_requirements"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    store_id: Mapped[str] = mapped_column(ForeignKey("stores.id", ondelete="CASCADE"), nullable=False)
    day_of_week: Mapped[int] = mapped_column(Integer, nullable=False)  # 0 = Monday
    hour_slot: Mapped[datetime.time] = mapped_column(Time, nullable=False)
    department: Mapped[str] = mapped_column(String(40), nullable=False)
    min_staff_required: Mapped[int] = mapped_column(Integer, nullable=False, default=1)


class Employee(Base):
    __tablename__ = "employees"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    full_name: Mapped[str] = mapped_column(String(120), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    department: Mapped[str] = mapped_column(String(40), nullable=False, default="")
    weekly_contract_hours: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class UserRole(Base):
    __tablename__ = "user_roles"

    user_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    role: Mapped[str] = mapped_column(String(24), nullable=False, default="employee")


class UserStoreAssignment(Base):
    __tablename__ = "user_store_assignments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    store_id: Mapped[str] = mapped_column(ForeignKey("stores.id", ondelete="CASCADE"), nullable=False)

    __table_args__ = (UniqueConstraint("user_id", "store_id", name="uq_user_store_assignment"),)


class GenerationRun(Base):
    __tablename__ = "generation_runs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    store_id: Mapped[str] = mapped_column(ForeignKey("stores.id"), nullable=False)
    department: Mapped[str] = mapped_column(String(40), nullable=False)
    week_start: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    week_end: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    created_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    completed_at: Mapped[Optional[datetime.datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    notes: Mapped[str] = mapped_column(Text, nullable=False, default="")
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    shifts: Mapped[List["Shift"]] = relationship(back_populates="generation_run")

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'completed', 'published', 'archived', 'failed')",
            name="ck_generation_run_status",
        ),
    )


class Shift(Base):
    __tablename__ = "shifts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    store_id: Mapped[str] = mapped_column(ForeignKey("stores.id"), nullable=False)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    start_time: Mapped[Optional[datetime.time]] = mapped_column(Time, nullable=True)
    end_time: Mapped[Optional[datetime.time]] = mapped_column(Time, nullable=True)
    department: Mapped[str] = mapped_column(String(40), nullable=False)
    is_day_off: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="draft")
    generation_run_id: Mapped[Optional[str]] = mapped_column(ForeignKey("generation_runs.id"), nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    generation_run: Mapped[Optional[GenerationRun]] = relationship(back_populates="shifts")

    __table_args__ = (
        CheckConstraint("status IN ('draft', 'published', 'archived')", name="ck_shift_status"),
        CheckConstraint(
            "NOT is_day_off OR (start_time IS NULL AND end_time IS NULL)",
            name="ck_shift_day_off_times",
        ),
    )

    @property
    def is_work_shift(self) -> bool:
        return not self.is_day_off and self.start_time is not None and self.end_time is not None


class EmployeeBalance(Base):
    __tablename__ = "employee_balances"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    store_id: Mapped[str] = mapped_column(ForeignKey("stores.id"), nullable=False)
    current_balance: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    updated_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (UniqueConstraint("user_id", "store_id", name="uq_employee_balance_user_store"),)


class BalanceAdjustment(Base):
    __tablename__ = "balance_adjustments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    store_id: Mapped[str] = mapped_column(ForeignKey("stores.id"), nullable=False)
    week_start: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    hours_worked: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    contract_hours: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    delta: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "store_id", "week_start", name="uq_balance_adjustment_week"),
    )


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    user_name: Mapped[str] = mapped_column(String(120), nullable=False, default="")
    action: Mapped[str] = mapped_column(String(60), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False, default="shifts")
    entity_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    store_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    detailsJSON: Mapped[str] = mapped_column(Text, nullable=False, default="{}")

    def details_dict(self) -> Dict[str, Any]:
        try:
            value = json.loads(self.detailsJSON or "{}")
            if isinstance(value, dict):
                return value
        except json.JSONDecodeError:
            pass
        return {}


class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    store_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    type: Mapped[str] = mapped_column(String(40), nullable=False, default="info")
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False, default="")
    link: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


engine = create_engine(
    config.DATABASE_URL,
    echo=config.DATABASE_ECHO,
    future=True,
)
SessionLocal = sessionmaker(bind=engine, expire_on_commit=False, future=True)


def init_database(bind=None) -> None:
    Base.metadata.create_all(bind or engine)


def transition_shifts(session, target: str, *criteria) -> List[Shift]:
    """Move every shift matching ``criteria`` from its predecessor status to ``target``.

    This is one ``UPDATE ... WHERE status = <predecessor> ... RETURNING``
    statement; rows already past the predecessor are never touched, so a
    racing or repeated call simply matches fewer (or zero) rows.
    """
    previous = SHIFT_PREDECESSOR.get(target)
    if previous is None:
        raise TransitionError(f"Shifts cannot be moved to '{target}'.", code="shift_transition")
    stmt = (
        update(Shift)
        .where(Shift.status == previous, *criteria)
        .values(status=target, updated_at=utcnow())
        .returning(Shift)
    )
    return list(session.scalars(stmt).all())


def transition_runs(
    session,
    target: str,
    *criteria,
    completed_at: Optional[datetime.datetime] = None,
    error_message: Optional[str] = None,
) -> List[str]:
    """Guarded status change for generation runs; returns the ids that moved."""
    previous = RUN_PREDECESSORS.get(target)
    if previous is None:
        raise TransitionError(f"Generation runs cannot be moved to '{target}'.", code="run_transition")
    values: Dict[str, Any] = {"status": target}
    if completed_at is not None:
        values["completed_at"] = completed_at
    if error_message is not None:
        values["error_message"] = error_message
    stmt = (
        update(GenerationRun)
        .where(GenerationRun.status.in_(previous), *criteria)
        .values(**values)
        .returning(GenerationRun.id)
    )
    return list(session.scalars(stmt).all())


def open_generation_run(
    session,
    store_id: str,
    department: str,
    week_start: datetime.date,
    *,
    created_by: Optional[str] = None,
    notes: str = "",
) -> GenerationRun:
    start, end = week_bounds(week_start)
    run = GenerationRun(
        store_id=store_id,
        department=department,
        week_start=start,
        week_end=end,
        status="pending",
        created_by=created_by,
        notes=notes,
    )
    session.add(run)
    session.flush()
    return run


def complete_generation_run(session, run_id: str, *, notes: Optional[str] = None) -> bool:
    moved = transition_runs(session, "completed", GenerationRun.id == run_id, completed_at=utcnow())
    if moved and notes is not None:
        session.execute(update(GenerationRun).where(GenerationRun.id == run_id).values(notes=notes))
    return bool(moved)


def fail_generation_run(session, run_id: str, error_message: str) -> bool:
    moved = transition_runs(
        session,
        "failed",
        GenerationRun.id == run_id,
        completed_at=utcnow(),
        error_message=error_message,
    )
    return bool(moved)


def add_draft_shift(session, shift: Dict[str, Any]) -> Shift:
    """Insert one proposed shift row as ``draft``."""
    is_day_off = bool(shift.get("is_day_off"))
    start_time = shift.get("start_time")
    end_time = shift.get("end_time")
    if is_day_off:
        start_time = None
        end_time = None
    elif (start_time is None) != (end_time is None):
        raise ValidationError("Shift start_time and end_time must both be set.", code="invalid_shift")
    if isinstance(start_time, str):
        start_time = datetime.time.fromisoformat(start_time)
    if isinstance(end_time, str):
        end_time = datetime.time.fromisoformat(end_time)
    user_id = shift.get("user_id")
    if not user_id:
        raise ValidationError("Shift user_id is required.", code="invalid_shift")
    db_shift = Shift(
        store_id=shift["store_id"],
        user_id=user_id,
        date=parse_date(shift.get("date"), "date"),
        start_time=start_time,
        end_time=end_time,
        department=shift.get("department") or "",
        is_day_off=is_day_off,
        status="draft",
        generation_run_id=shift.get("generation_run_id"),
    )
    session.add(db_shift)
    return db_shift


def shifts_for_week(
    session,
    store_id: str,
    week_start: datetime.date,
    *,
    status: Optional[str] = None,
) -> List[Shift]:
    start, end = week_bounds(week_start)
    stmt = select(Shift).where(Shift.store_id == store_id, Shift.date >= start, Shift.date <= end)
    if status:
        stmt = stmt.where(Shift.status == status)
    stmt = stmt.order_by(Shift.date.asc(), Shift.start_time.asc())
    return list(session.scalars(stmt))


def completed_runs_for_week(session, store_id: str, week_start: datetime.date) -> List[GenerationRun]:
    stmt = select(GenerationRun).where(
        GenerationRun.store_id == store_id,
        GenerationRun.week_start == week_start,
        GenerationRun.status == "completed",
    )
    return list(session.scalars(stmt))


def get_balance(session, user_id: str, store_id: str) -> Optional[float]:
    stmt = select(EmployeeBalance.current_balance).where(
        EmployeeBalance.user_id == user_id,
        EmployeeBalance.store_id == store_id,
    )
    return session.scalars(stmt).first()


def list_active_stores(session) -> List[Store]:
    stmt = select(Store).where(Store.is_active.is_(True)).order_by(Store.name.asc())
    return list(session.scalars(stmt))


def coverage_requirements(session, store_id: str) -> Sequence[StoreCoverageRequirement]:
    stmt = select(StoreCoverageRequirement).where(StoreCoverageRequirement.store_id == store_id)
    return list(session.scalars(stmt))


def user_display_name(session, user_id: str) -> str:
    employee = session.get(Employee, user_id)
    if employee:
        return employee.full_name
    return user_id


def record_audit_log(
    session,
    user_id: str,
    action: str,
    entity_type: str = "shifts",
    entity_id: Optional[str] = None,
    store_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    *,
    user_name: Optional[str] = None,
) -> AuditLog:
    """Append an audit entry to the caller's transaction (the caller commits)."""
    log = AuditLog(
        user_id=user_id,
        user_name=user_name if user_name is not None else user_display_name(session, user_id),
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        store_id=store_id,
        detailsJSON=json.dumps(details or {}, default=str),
    )
    session.add(log)
    return log


def audit_entries(session, action: Optional[str] = None) -> List[AuditLog]:
    stmt = select(AuditLog)
    if action:
        stmt = stmt.where(AuditLog.action == action)
    return list(session.scalars(stmt.order_by(AuditLog.id.asc())))


def distinct_user_ids(shifts: Iterable[Shift]) -> List[str]:
    seen: Dict[str, None] = {}
    for shift in shifts:
        seen.setdefault(shift.user_id, None)
    return list(seen)
