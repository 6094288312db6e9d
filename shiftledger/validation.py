from __future__ import annotations

from collections import defaultdict
from typing import Dict, Iterable, List, Sequence, Tuple

from . import config
from .balance import end_hour, shift_hours
from .database import Shift, StoreCoverageRequirement, coverage_requirements
from .errors import ShiftValidationError


def find_short_shifts(shifts: Iterable[Shift], min_hours: int = config.MIN_SHIFT_HOURS) -> List[str]:
    problems: List[str] = []
    for shift in shifts:
        if not shift.is_work_shift:
            continue
        duration = shift_hours(shift.start_time, shift.end_time)
        if duration < min_hours:
            problems.append(
                f"{shift.date.isoformat()} {shift.start_time:%H:%M}-{shift.end_time:%H:%M} ({duration}h)"
            )
    return problems


def find_overbooked_slots(
    shifts: Iterable[Shift],
    requirements: Sequence[StoreCoverageRequirement],
) -> List[str]:
    """Slots staffed above ``min_staff_required`` on any date of the week."""
    work = [shift for shift in shifts if shift.is_work_shift]
    problems: List[str] = []
    for requirement in requirements:
        slot_hour = requirement.hour_slot.hour
        counts: Dict[str, int] = defaultdict(int)
        for shift in work:
            if shift.date.weekday() != requirement.day_of_week:
                continue
            if shift.department != requirement.department:
                continue
            if shift.start_time.hour <= slot_hour < end_hour(shift.end_time):
                counts[shift.date.isoformat()] += 1
        for date_label, count in sorted(counts.items()):
            if count > requirement.min_staff_required:
                problems.append(
                    f"{date_label} {requirement.hour_slot:%H:%M} {requirement.department}: "
                    f"{count}/{requirement.min_staff_required}"
                )
    return problems


def check_draft_week(session, store_id: str, drafts: Sequence[Shift]) -> Tuple[List[str], List[str]]:
    short = find_short_shifts(drafts)
    overbooked = find_overbooked_slots(drafts, coverage_requirements(session, store_id))
    return short, overbooked


def validate_draft_week(session, store_id: str, drafts: Sequence[Shift]) -> None:
    """Raise ``ShiftValidationError`` when the week's drafts cannot be published."""
    short, overbooked = check_draft_week(session, store_id, drafts)
    if short:
        raise ShiftValidationError(
            f"Cannot publish: {len(short)} shift(s) shorter than {config.MIN_SHIFT_HOURS} hours",
            code="short_shifts",
            details={"invalid_shifts": short},
        )
    if overbooked:
        raise ShiftValidationError(
            f"Cannot publish: {len(overbooked)} slot(s) staffed above requirement",
            code="overbooked_slots",
            details={"overbooked_slots": overbooked},
        )
