from __future__ import annotations

import datetime

import pytest
from sqlalchemy import select

from conftest import WEEK
from shiftledger.balance import apply_week_balance, clamp_delta, end_hour, group_hours, increment_balance, shift_hours
from shiftledger.database import BalanceAdjustment, Shift, get_balance


def _shift(user_id: str, start, end, *, is_day_off: bool = False, store_id: str = "store-1") -> Shift:
    return Shift(
        store_id=store_id,
        user_id=user_id,
        date=WEEK,
        start_time=None if start is None else datetime.time(start, 0),
        end_time=None if end is None else datetime.time(end, 0),
        department="sala",
        is_day_off=is_day_off,
        status="archived",
    )


@pytest.mark.parametrize(
    ("total", "expected"),
    [(50, 5.0), (30, -5.0), (42, 2.0), (40, 0.0), (35, -5.0), (45, 5.0)],
)
def test_clamp_delta_against_forty_hour_contract(total, expected) -> None:
    assert clamp_delta(total, 40) == expected


def test_shift_ending_at_midnight_counts_to_twenty_four() -> None:
    assert shift_hours(datetime.time(20, 0), datetime.time(0, 0)) == 4
    assert shift_hours(datetime.time(9, 0), datetime.time(17, 0)) == 8
    assert shift_hours(None, datetime.time(17, 0)) == 0


def test_end_hour_reads_midnight_as_end_of_day() -> None:
    assert end_hour(datetime.time(0, 0)) == 24
    assert end_hour(datetime.time(0, 30)) == 24
    assert end_hour(datetime.time(17, 0)) == 17


def test_group_hours_ignores_days_off_and_splits_by_store() -> None:
    shifts = [
        _shift("u1", 9, 17),
        _shift("u1", 20, 0),
        _shift("u1", None, None, is_day_off=True),
        _shift("u1", 10, 14, store_id="store-2"),
        _shift("u2", None, None, is_day_off=True),
    ]

    totals = group_hours(shifts)

    assert totals == {("u1", "store-1"): 12.0, ("u1", "store-2"): 4.0}


def test_increment_balance_creates_then_adds(session) -> None:
    increment_balance(session, "u1", "store-1", 2.0)
    increment_balance(session, "u1", "store-1", -5.0)
    session.commit()

    assert get_balance(session, "u1", "store-1") == pytest.approx(-3.0)
    assert get_balance(session, "u2", "store-1") is None


def test_week_balance_counts_a_week_once(session) -> None:
    first = apply_week_balance(session, "u1", "store-1", WEEK, 36, 40)
    # More shifts of the same week archived later fold into the same adjustment.
    second = apply_week_balance(session, "u1", "store-1", WEEK, 8, 40)
    session.commit()

    assert first == pytest.approx(-4.0)
    assert second == pytest.approx(8.0)
    assert get_balance(session, "u1", "store-1") == pytest.approx(4.0)
    adjustment = session.scalars(select(BalanceAdjustment)).one()
    assert adjustment.hours_worked == pytest.approx(44.0)
    assert adjustment.delta == pytest.approx(4.0)


def test_week_balance_stays_clamped_across_passes(session) -> None:
    apply_week_balance(session, "u1", "store-1", WEEK, 48, 40)
    extra = apply_week_balance(session, "u1", "store-1", WEEK, 8, 40)
    next_week = apply_week_balance(session, "u1", "store-1", WEEK + datetime.timedelta(days=7), 30, 40)
    session.commit()

    assert extra == 0.0
    assert next_week == -5.0
    assert get_balance(session, "u1", "store-1") == pytest.approx(0.0)
