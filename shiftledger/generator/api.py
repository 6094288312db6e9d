"""Adapter between the opaque schedule solver and the shift store.

The solver only proposes rows. ``RecordingGenerator`` wraps it so that every
department attempt is registered as a ``GenerationRun`` and its proposal lands
as draft shifts tagged with that run.
"""

from __future__ import annotations

import datetime
import importlib
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol

from .. import config
from ..database import (
    StoreRules,
    add_draft_shift,
    complete_generation_run,
    fail_generation_run,
    open_generation_run,
)
from ..errors import ShiftLedgerError, ValidationError
from ..logging_setup import get_logger

logger = get_logger("generator")

ALL_DEPARTMENTS = "all"


@dataclass
class DepartmentReport:
    department: str
    shifts: int = 0
    uncovered: int = 0
    run_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


@dataclass
class GenerationReport:
    shifts_created: int = 0
    days_off_created: int = 0
    uncovered_slots: List[Dict[str, Any]] = field(default_factory=list)
    departments: List[DepartmentReport] = field(default_factory=list)

    def department_reports(self) -> List[DepartmentReport]:
        """Per-department breakdown, or a single ``all`` entry built from the totals."""
        if self.departments:
            return list(self.departments)
        return [
            DepartmentReport(
                department=ALL_DEPARTMENTS,
                shifts=self.shifts_created,
                uncovered=len(self.uncovered_slots),
            )
        ]

    @property
    def failed_departments(self) -> List[DepartmentReport]:
        return [dept for dept in self.departments if dept.failed]

    @property
    def total_uncovered(self) -> int:
        return max(sum(dept.uncovered for dept in self.departments), len(self.uncovered_slots))

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "GenerationReport":
        departments = []
        for item in payload.get("departments") or []:
            error = item.get("error")
            if error is None and item.get("status") == "failed":
                error = "failed"
            departments.append(
                DepartmentReport(
                    department=str(item.get("department") or ""),
                    shifts=int(item.get("shifts") or 0),
                    uncovered=int(item.get("uncovered") or 0),
                    run_id=item.get("run_id") or item.get("runId"),
                    error=str(error) if error is not None else None,
                )
            )
        return cls(
            shifts_created=int(payload.get("shifts_created") or payload.get("shiftsCreated") or 0),
            days_off_created=int(payload.get("days_off_created") or payload.get("daysOffCreated") or 0),
            uncovered_slots=list(payload.get("uncovered_slots") or payload.get("uncoveredSlots") or []),
            departments=departments,
        )


class ScheduleGenerator(Protocol):
    def generate(self, store_id: str, department: str, week_start: datetime.date) -> GenerationReport:
        ...


# solver(store_id, department, week_start) -> {"shifts": [...], "uncovered_slots": [...]}
Solver = Callable[[str, str, datetime.date], Dict[str, Any]]


class RecordingGenerator:
    def __init__(self, session_factory: Callable, solver: Solver, *, actor: Optional[str] = None):
        self._session_factory = session_factory
        self._solver = solver
        self._actor = actor

    def _departments(self, session, store_id: str, department: str) -> List[str]:
        if department != ALL_DEPARTMENTS:
            return [department]
        rules = session.get(StoreRules, store_id)
        if rules is None:
            return []
        return rules.department_list

    def generate(self, store_id: str, department: str, week_start: datetime.date) -> GenerationReport:
        """Run the solver once per department.

        A failing department is marked failed and the remaining ones still run.
        The first error is raised only when no department succeeded.
        """
        report = GenerationReport()
        first_error: Optional[Exception] = None
        with self._session_factory() as session:
            for dept in self._departments(session, store_id, department):
                run = open_generation_run(session, store_id, dept, week_start, created_by=self._actor)
                run_id = run.id
                session.commit()
                try:
                    proposal = self._solver(store_id, dept, week_start) or {}
                    shifts = 0
                    days_off = 0
                    for row in proposal.get("shifts") or []:
                        payload = dict(row)
                        payload["store_id"] = store_id
                        payload["generation_run_id"] = run_id
                        payload.setdefault("department", dept)
                        shift = add_draft_shift(session, payload)
                        if shift.is_day_off:
                            days_off += 1
                        else:
                            shifts += 1
                    uncovered = list(proposal.get("uncovered_slots") or [])
                    complete_generation_run(session, run_id, notes=proposal.get("notes"))
                    session.commit()
                except Exception as exc:
                    session.rollback()
                    fail_generation_run(session, run_id, str(exc))
                    session.commit()
                    logger.error("Generation failed for store %s department %s: %s", store_id, dept, exc)
                    if first_error is None:
                        first_error = exc
                    report.departments.append(
                        DepartmentReport(department=dept, run_id=run_id, error=str(exc) or exc.__class__.__name__)
                    )
                    continue
                logger.info(
                    "Run %s: %d shifts, %d days off, %d uncovered slot(s) for %s/%s",
                    run_id,
                    shifts,
                    days_off,
                    len(uncovered),
                    store_id,
                    dept,
                )
                report.shifts_created += shifts
                report.days_off_created += days_off
                report.uncovered_slots.extend({**slot, "department": dept} for slot in uncovered)
                report.departments.append(
                    DepartmentReport(department=dept, shifts=shifts, uncovered=len(uncovered), run_id=run_id)
                )
        if first_error is not None and len(report.failed_departments) == len(report.departments):
            raise first_error
        return report


def load_solver(path: str) -> Solver:
    """Resolve a ``package.module:function`` reference to the solver callable."""
    module_name, _, attr = (path or "").partition(":")
    if not module_name or not attr:
        raise ValidationError(
            "Solver must be given as 'package.module:function'",
            code="invalid_solver",
            details={"solver": path},
        )
    module = importlib.import_module(module_name)
    solver = getattr(module, attr, None)
    if not callable(solver):
        raise ValidationError(f"{path} is not callable", code="invalid_solver", details={"solver": path})
    return solver


def default_generator(session_factory: Callable, *, actor: Optional[str] = None) -> RecordingGenerator:
    if not config.SOLVER_PATH:
        raise ShiftLedgerError("No schedule solver configured", code="solver_not_configured")
    return RecordingGenerator(session_factory, load_solver(config.SOLVER_PATH), actor=actor)
