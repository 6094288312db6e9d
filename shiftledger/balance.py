"""Per-employee hour balance accounting.

The balance is the signed running sum of weekly deviations from contract
hours. Each archived week contributes a single delta, clamped to
``±BALANCE_CLAMP_HOURS``, per (employee, store).
"""

from __future__ import annotations

import datetime
from collections import defaultdict
from typing import Dict, Iterable, Optional, Tuple

from sqlalchemy import select, update

from . import config
from .database import BalanceAdjustment, EmployeeBalance, Shift, utcnow


def end_hour(end_time: datetime.time) -> int:
    """Hour a shift ends at; an end hour of 0 means midnight (24)."""
    return 24 if end_time.hour == 0 else end_time.hour


def shift_hours(start_time: Optional[datetime.time], end_time: Optional[datetime.time]) -> int:
    """Whole hours between the start and end hour."""
    if start_time is None or end_time is None:
        return 0
    return end_hour(end_time) - start_time.hour


def work_hours(shift: Shift) -> int:
    if shift.is_day_off:
        return 0
    return shift_hours(shift.start_time, shift.end_time)


def clamp_delta(total_hours: float, contract_hours: float, limit: float = config.BALANCE_CLAMP_HOURS) -> float:
    delta = float(total_hours) - float(contract_hours)
    return max(-float(limit), min(float(limit), delta))


def group_hours(shifts: Iterable[Shift]) -> Dict[Tuple[str, str], float]:
    """Total worked hours keyed by (user_id, store_id); day-off rows are ignored."""
    totals: Dict[Tuple[str, str], float] = defaultdict(float)
    for shift in shifts:
        if not shift.is_work_shift:
            continue
        totals[(shift.user_id, shift.store_id)] += work_hours(shift)
    return dict(totals)


def increment_balance(session, user_id: str, store_id: str, amount: float) -> None:
    """Add ``amount`` to the stored balance in SQL, creating the row when absent."""
    stmt = (
        update(EmployeeBalance)
        .where(EmployeeBalance.user_id == user_id, EmployeeBalance.store_id == store_id)
        .values(current_balance=EmployeeBalance.current_balance + amount, updated_at=utcnow())
        .returning(EmployeeBalance.id)
    )
    if session.scalars(stmt).first() is None:
        session.add(EmployeeBalance(user_id=user_id, store_id=store_id, current_balance=amount))
        session.flush()


def apply_week_balance(
    session,
    user_id: str,
    store_id: str,
    week_start: datetime.date,
    hours_worked: float,
    contract_hours: float,
) -> float:
    """Fold one archival pass of ``hours_worked`` into the week's adjustment.

    The first pass for a week records the clamped delta. A later pass for the
    same week (shifts published after the first archival) adds its hours to
    the recorded total and only the change in clamped delta reaches the
    balance, so a week is never counted twice. Returns the amount added.
    """
    adjustment = session.scalars(
        select(BalanceAdjustment).where(
            BalanceAdjustment.user_id == user_id,
            BalanceAdjustment.store_id == store_id,
            BalanceAdjustment.week_start == week_start,
        )
    ).first()
    if adjustment is None:
        delta = clamp_delta(hours_worked, contract_hours)
        session.add(
            BalanceAdjustment(
                user_id=user_id,
                store_id=store_id,
                week_start=week_start,
                hours_worked=float(hours_worked),
                contract_hours=float(contract_hours),
                delta=delta,
            )
        )
        increment = delta
    else:
        total = adjustment.hours_worked + float(hours_worked)
        delta = clamp_delta(total, contract_hours)
        increment = delta - adjustment.delta
        adjustment.hours_worked = total
        adjustment.contract_hours = float(contract_hours)
        adjustment.delta = delta
    session.flush()
    increment_balance(session, user_id, store_id, increment)
    return increment
