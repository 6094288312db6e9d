"""Weekly archival sweep: published → archived plus balance accounting."""

from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from . import config
from .balance import apply_week_balance, group_hours
from .database import (
    GenerationRun,
    Shift,
    normalize_week_start,
    record_audit_log,
    transition_runs,
    transition_shifts,
    week_bounds,
)
from .directory import EmployeeDirectory, SqlEmployeeDirectory
from .logging_setup import batch_end_log, batch_start_log, get_logger

logger = get_logger("archival")

SYSTEM_ACTOR = "system"


@dataclass
class ArchiveResult:
    archived_count: int
    employees_updated: int
    week_start: datetime.date
    week_end: datetime.date
    failed_groups: int = 0
    failures: List[Dict[str, str]] = field(default_factory=list)
    runs_archived: List[str] = field(default_factory=list)
    balance_changes: Dict[str, float] = field(default_factory=dict)

    @property
    def week_range(self) -> Dict[str, str]:
        return {"start": self.week_start.isoformat(), "end": self.week_end.isoformat()}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "archived_count": self.archived_count,
            "employees_updated": self.employees_updated,
            "failed_groups": self.failed_groups,
            "failures": self.failures,
            "runs_archived": self.runs_archived,
            "week": self.week_range,
        }


def archive_week(
    session,
    as_of: Optional[datetime.date] = None,
    *,
    directory: Optional[EmployeeDirectory] = None,
) -> ArchiveResult:
    """Archive the published shifts of the Monday-start week containing ``as_of``.

    Hours of the archived work shifts are totalled per (employee, store) and
    folded into the balance ledger. Each group is applied inside its own
    savepoint; a failing group is rolled back, logged and counted while the
    remaining groups carry on. A repeat call only sees the rows that are still
    published.
    """
    if as_of is None:
        as_of = datetime.datetime.now(datetime.timezone.utc).date()
    if isinstance(as_of, datetime.datetime):
        as_of = as_of.date()
    week_start, week_end = week_bounds(normalize_week_start(as_of))
    directory = directory or SqlEmployeeDirectory(session)
    log_info = batch_start_log("archive_week", {"week_start": week_start.isoformat(), "week_end": week_end.isoformat()})

    try:
        archived = transition_shifts(
            session,
            "archived",
            Shift.date >= week_start,
            Shift.date <= week_end,
        )
        logger.info("Archived %d shifts for week %s to %s", len(archived), week_start, week_end)

        totals = group_hours(archived)
        profiles = directory.lookup({user_id for user_id, _ in totals})
        updated = 0
        failures: List[Dict[str, str]] = []
        changes: Dict[str, float] = {}
        for (user_id, store_id), hours in sorted(totals.items()):
            profile = profiles.get(user_id)
            contract = profile.contract_hours if profile else float(config.DEFAULT_CONTRACT_HOURS)
            try:
                with session.begin_nested():
                    applied = apply_week_balance(
                        session,
                        user_id,
                        store_id,
                        week_start,
                        hours,
                        contract,
                    )
            except Exception as exc:  # noqa: BLE001
                logger.error("Balance update failed for user %s store %s: %s", user_id, store_id, exc)
                failures.append({"user_id": user_id, "store_id": store_id, "error": str(exc)})
                continue
            updated += 1
            changes[f"{user_id}:{store_id}"] = applied

        runs_archived = transition_runs(
            session,
            "archived",
            GenerationRun.week_start >= week_start,
            GenerationRun.week_start <= week_end,
        )
        record_audit_log(
            session,
            user_id=SYSTEM_ACTOR,
            user_name=SYSTEM_ACTOR,
            action="archive",
            entity_type="shifts",
            details={
                "description": f"Archived {len(archived)} shifts for week {week_start.isoformat()}",
                "week_start": week_start,
                "week_end": week_end,
                "shifts_count": len(archived),
                "employees_updated": updated,
                "failed_groups": failures,
                "generation_run_ids": runs_archived,
            },
        )
        session.commit()
    except Exception:
        session.rollback()
        batch_end_log(log_info, success=False)
        raise

    result = ArchiveResult(
        archived_count=len(archived),
        employees_updated=updated,
        week_start=week_start,
        week_end=week_end,
        failed_groups=len(failures),
        failures=failures,
        runs_archived=runs_archived,
        balance_changes=changes,
    )
    batch_end_log(log_info, success=not failures, result_info=result.to_dict())
    return result
