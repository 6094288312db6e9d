from __future__ import annotations

import datetime

import pytest
from sqlalchemy import select

import shiftledger.archival as archival
from conftest import WEEK, run_status, shift_statuses
from shiftledger.archival import archive_week
from shiftledger.balance import apply_week_balance
from shiftledger.database import AuditLog, EmployeeBalance, get_balance
from shiftledger.publication import publish_run


def _balances(session_factory):
    with session_factory() as check:
        return {(row.user_id, row.store_id): row.current_balance for row in check.scalars(select(EmployeeBalance))}


def test_publish_then_archive_end_to_end(session, session_factory, seed, fanout) -> None:
    store_id = seed.store()
    admin_id = seed.admin(store_id)
    steady = seed.employee("Nadia", store_id=store_id)
    overtime = seed.employee("Oscar", store_id=store_id, contract=None)
    run_id = seed.run(store_id)
    for day in range(5):
        date = WEEK + datetime.timedelta(days=day)
        seed.shift(store_id, steady, date, "09:00", "17:00", run_id=run_id)
        seed.shift(store_id, overtime, date, "14:00", "00:00", run_id=run_id)

    published = publish_run(session, run_id, actor_id=admin_id, role="admin", fanout=fanout)
    result = archive_week(session, datetime.date(2026, 3, 8))

    assert published.published_count == 10
    assert result.archived_count == 10
    assert result.week_range == {"start": "2026-03-02", "end": "2026-03-08"}
    assert result.employees_updated == 2
    assert result.runs_archived == [run_id]
    assert set(shift_statuses(session_factory).values()) == {"archived"}
    assert run_status(session_factory, run_id) == "archived"
    # 40h on a 40h contract, and 50h on the default 40h contract clamped to +5.
    assert _balances(session_factory) == {(steady, store_id): 0.0, (overtime, store_id): 5.0}

    with session_factory() as check:
        entry = check.scalars(select(AuditLog).where(AuditLog.action == "archive")).one()
        assert entry.user_id == "system"
        details = entry.details_dict()
        assert details["shifts_count"] == 10
        assert details["employees_updated"] == 2
        assert details["week_start"] == "2026-03-02"


def test_archive_ignores_drafts_and_other_weeks(session, session_factory, seed) -> None:
    store_id = seed.store()
    worker = seed.employee("Paola", store_id=store_id)
    draft = seed.shift(store_id, worker, WEEK)
    later = seed.shift(store_id, worker, WEEK + datetime.timedelta(days=7), status="published")
    current = seed.shift(store_id, worker, WEEK + datetime.timedelta(days=2), status="published")

    result = archive_week(session, WEEK + datetime.timedelta(days=3))

    assert result.archived_count == 1
    assert shift_statuses(session_factory) == {draft: "draft", later: "published", current: "archived"}


def test_archive_excludes_days_off_from_hours(session, session_factory, seed) -> None:
    store_id = seed.store()
    worker = seed.employee("Quinto", store_id=store_id, contract=20)
    for day in range(2):
        seed.shift(store_id, worker, WEEK + datetime.timedelta(days=day), "10:00", "20:00", status="published")
    for day in range(2, 7):
        seed.shift(store_id, worker, WEEK + datetime.timedelta(days=day), is_day_off=True, status="published")

    result = archive_week(session, WEEK)

    assert result.archived_count == 7
    assert _balances(session_factory) == {(worker, store_id): 0.0}


def test_archive_twice_changes_nothing(session, session_factory, seed) -> None:
    store_id = seed.store()
    worker = seed.employee("Rita", store_id=store_id, contract=30)
    seed.shift(store_id, worker, WEEK, "08:00", "20:00", status="published")

    archive_week(session, WEEK)
    again = archive_week(session, WEEK)

    assert again.archived_count == 0
    assert again.employees_updated == 0
    assert _balances(session_factory) == {(worker, store_id): -5.0}


def test_late_published_shifts_only_add_the_difference(session, session_factory, seed) -> None:
    store_id = seed.store()
    worker = seed.employee("Sara", store_id=store_id)
    for day in range(4):
        seed.shift(store_id, worker, WEEK + datetime.timedelta(days=day), "09:00", "18:00", status="published")

    archive_week(session, WEEK)
    assert _balances(session_factory) == {(worker, store_id): -4.0}

    seed.shift(store_id, worker, WEEK + datetime.timedelta(days=5), "10:00", "18:00", status="published")
    result = archive_week(session, WEEK)

    assert result.archived_count == 1
    assert result.balance_changes == {f"{worker}:{store_id}": 8.0}
    assert _balances(session_factory) == {(worker, store_id): 4.0}


def test_archive_keeps_going_when_one_employee_fails(session, session_factory, seed, monkeypatch) -> None:
    store_id = seed.store()
    broken = seed.employee("Teo", store_id=store_id)
    fine = seed.employee("Ugo", store_id=store_id)
    seed.shift(store_id, broken, WEEK, status="published")
    seed.shift(store_id, fine, WEEK, "08:00", "20:00", status="published")

    def flaky_apply(session, user_id, *args, **kwargs):
        if user_id == broken:
            raise RuntimeError("balance row locked")
        return apply_week_balance(session, user_id, *args, **kwargs)

    monkeypatch.setattr(archival, "apply_week_balance", flaky_apply)

    result = archive_week(session, WEEK)

    assert result.archived_count == 2
    assert result.employees_updated == 1
    assert result.failed_groups == 1
    assert result.failures[0]["user_id"] == broken
    assert "balance row locked" in result.failures[0]["error"]
    assert set(shift_statuses(session_factory).values()) == {"archived"}
    assert _balances(session_factory) == {(fine, store_id): -5.0}
    with session_factory() as check:
        entry = check.scalars(select(AuditLog).where(AuditLog.action == "archive")).one()
        assert entry.details_dict()["failed_groups"][0]["user_id"] == broken


def test_archive_rolls_back_a_group_that_fails_midway(session, session_factory, seed, monkeypatch) -> None:
    store_id = seed.store()
    worker = seed.employee("Vera", store_id=store_id)
    seed.shift(store_id, worker, WEEK, status="published")

    def half_applied(session, user_id, store_id, week_start, hours, contract):
        apply_week_balance(session, user_id, store_id, week_start, hours, contract)
        raise RuntimeError("connection dropped")

    monkeypatch.setattr(archival, "apply_week_balance", half_applied)

    result = archive_week(session, WEEK)

    assert result.failed_groups == 1
    assert get_balance(session, worker, store_id) is None
    assert _balances(session_factory) == {}


def test_archive_defaults_to_the_current_week(session) -> None:
    result = archive_week(session)

    today = datetime.datetime.now(datetime.timezone.utc).date()
    assert result.week_start <= today <= result.week_end
    assert result.week_start.weekday() == 0


@pytest.mark.parametrize("as_of", [datetime.date(2026, 3, 2), datetime.date(2026, 3, 5), datetime.date(2026, 3, 8)])
def test_archive_week_window_is_monday_to_sunday(session, as_of) -> None:
    result = archive_week(session, as_of)

    assert (result.week_start, result.week_end) == (datetime.date(2026, 3, 2), datetime.date(2026, 3, 8))
