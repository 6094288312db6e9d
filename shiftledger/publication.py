"""Draft → published transitions.

Every flip goes through ``transition_shifts``: one guarded
``UPDATE ... WHERE status = 'draft' ... RETURNING``. Two admins publishing the
same run concurrently therefore publish each shift exactly once; the later
call sees zero rows and reports a no-op. Notifications are sent only after the
commit and can never undo it.
"""

from __future__ import annotations

import datetime
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from .database import (
    GenerationRun,
    Shift,
    Store,
    completed_runs_for_week,
    distinct_user_ids,
    parse_date,
    parse_id,
    record_audit_log,
    shifts_for_week,
    transition_runs,
    transition_shifts,
    utcnow,
    week_bounds,
)
from .directory import EmployeeDirectory, SqlEmployeeDirectory
from .errors import NotFoundError
from .logging_setup import get_logger
from .notifications import (
    DeliveryReport,
    NotificationFanout,
    NullFanout,
    OutboundMessage,
    app_link,
    deliver,
    shift_digest_html,
)
from .roles import require_admin
from .validation import validate_draft_week

logger = get_logger("publication")

CALENDAR_PATH = "/team-calendar"
PERSONAL_CALENDAR_PATH = "/personal-calendar"


@dataclass
class PublishResult:
    published_count: int
    run_ids: List[str] = field(default_factory=list)
    store_id: Optional[str] = None
    week_start: Optional[datetime.date] = None
    noop: bool = False
    notified: int = 0
    notification_failures: int = 0
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        if self.week_start:
            payload["week_start"] = self.week_start.isoformat()
        return payload


@dataclass
class PatchApprovalResult:
    published_count: int
    affected_employees: int
    affected_user_ids: List[str] = field(default_factory=list)
    runs_published: List[str] = field(default_factory=list)
    store_id: Optional[str] = None
    week_start: Optional[datetime.date] = None
    notified: int = 0
    notification_failures: int = 0
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        if self.week_start:
            payload["week_start"] = self.week_start.isoformat()
        return payload


def _group_by_user(shifts: Iterable[Shift]) -> Dict[str, List[Shift]]:
    grouped: Dict[str, List[Shift]] = defaultdict(list)
    for shift in shifts:
        grouped[shift.user_id].append(shift)
    return grouped


def _store_name(session, store_id: Optional[str]) -> str:
    store = session.get(Store, store_id) if store_id else None
    return store.name if store else "Store"


def _published_messages(
    session,
    shifts: List[Shift],
    directory: EmployeeDirectory,
    week_start: datetime.date,
) -> List[OutboundMessage]:
    """One batched message per employee listing all of their newly published shifts."""
    grouped = _group_by_user(shifts)
    profiles = directory.lookup(grouped.keys())
    week_end = week_bounds(week_start)[1]
    messages: List[OutboundMessage] = []
    for user_id, user_shifts in grouped.items():
        store_id = user_shifts[0].store_id
        store_name = _store_name(session, store_id)
        profile = profiles.get(user_id)
        messages.append(
            OutboundMessage(
                user_id=user_id,
                store_id=store_id,
                title="Shifts published",
                notification_type="shifts_published",
                message=f"Your shifts for the week of {week_start.isoformat()} at {store_name} have been published.",
                link=CALENDAR_PATH,
                email=profile.email if profile else None,
                subject=f"Shifts published - {store_name}",
                html_body=shift_digest_html(
                    "Shifts published",
                    f"{store_name} - week {week_start.isoformat()} to {week_end.isoformat()}",
                    user_shifts,
                    app_link(CALENDAR_PATH),
                ),
            )
        )
    return messages


def _changed_messages(
    session,
    shifts: List[Shift],
    directory: EmployeeDirectory,
    store_id: str,
) -> List[OutboundMessage]:
    grouped = _group_by_user(shifts)
    profiles = directory.lookup(grouped.keys())
    store_name = _store_name(session, store_id)
    messages: List[OutboundMessage] = []
    for user_id, user_shifts in grouped.items():
        profile = profiles.get(user_id)
        messages.append(
            OutboundMessage(
                user_id=user_id,
                store_id=store_id,
                title="Shift updated",
                notification_type="shift_updated",
                message=f"Your shift at {store_name} was changed to cover an absence. Check the calendar.",
                link=CALENDAR_PATH,
                email=profile.email if profile else None,
                subject=f"Shift update - {store_name}",
                html_body=shift_digest_html(
                    "Shift update",
                    f"{store_name} - your shifts were updated",
                    user_shifts,
                    app_link(PERSONAL_CALENDAR_PATH),
                ),
            )
        )
    return messages


def _run_week_start(shifts: List[Shift], run: Optional[GenerationRun]) -> datetime.date:
    if run is not None:
        return run.week_start
    return min(shift.date for shift in shifts)


def _notify_after_commit(
    fanout: NotificationFanout,
    build: Callable[[], List[OutboundMessage]],
    shifts: List[Shift],
) -> DeliveryReport:
    """Deliver messages for already committed shifts; a failure is only counted."""
    try:
        messages = build()
    except Exception as exc:  # noqa: BLE001
        failed = sorted(_group_by_user(shifts))
        logger.error("Could not build notifications for %d recipient(s): %s", len(failed), exc)
        return DeliveryReport(failed=failed)
    return deliver(fanout, messages)


def publish_run(
    session,
    run_id,
    *,
    actor_id: str,
    role: Optional[str],
    fanout: Optional[NotificationFanout] = None,
    directory: Optional[EmployeeDirectory] = None,
) -> PublishResult:
    """Publish the draft shifts of one generation run."""
    require_admin(role)
    run_id = parse_id(run_id, "generation_run_id")
    fanout = fanout or NullFanout()
    directory = directory or SqlEmployeeDirectory(session)

    run = session.get(GenerationRun, run_id)
    if run is None:
        raise NotFoundError("Generation run not found", code="run_not_found")

    try:
        published = transition_shifts(session, "published", Shift.generation_run_id == run_id)
        if not published:
            session.rollback()
            logger.info("Run %s has no draft shifts left; nothing to publish", run_id)
            return PublishResult(
                published_count=0,
                run_ids=[run_id],
                store_id=run.store_id,
                week_start=run.week_start,
                noop=True,
                message="No draft shifts to publish",
            )
        moved = transition_runs(session, "published", GenerationRun.id == run_id, completed_at=utcnow())
        if not moved:
            logger.warning("Run %s was not in 'completed' state; run status left unchanged", run_id)
        record_audit_log(
            session,
            user_id=actor_id,
            action="publish",
            entity_type="generation_run",
            entity_id=run_id,
            store_id=run.store_id,
            details={
                "description": f"Published {len(published)} shifts for week {run.week_start.isoformat()}",
                "week_start": run.week_start,
                "week_end": run.week_end,
                "shifts_count": len(published),
                "department": run.department,
            },
        )
        session.commit()
    except Exception:
        session.rollback()
        raise

    logger.info("Published %d shifts for run %s", len(published), run_id)
    report = _notify_after_commit(
        fanout, lambda: _published_messages(session, published, directory, _run_week_start(published, run)), published
    )
    return PublishResult(
        published_count=len(published),
        run_ids=[run_id],
        store_id=run.store_id,
        week_start=run.week_start,
        notified=len(report.delivered),
        notification_failures=report.failure_count,
        message=f"Published {len(published)} shifts",
    )


def publish_week(
    session,
    store_id,
    week_start,
    *,
    actor_id: str,
    role: Optional[str],
    fanout: Optional[NotificationFanout] = None,
    directory: Optional[EmployeeDirectory] = None,
) -> PublishResult:
    """Publish every draft shift of a store's week after the pre-publication checks.

    Requires at least one completed generation run for that week; all of them
    are marked published together with the shifts.
    """
    require_admin(role)
    store_id = parse_id(store_id, "store_id")
    week_start = parse_date(week_start, "week_start")
    fanout = fanout or NullFanout()
    directory = directory or SqlEmployeeDirectory(session)
    start, end = week_bounds(week_start)

    runs = completed_runs_for_week(session, store_id, week_start)
    if not runs:
        raise NotFoundError("No completed generation runs found for this week", code="runs_not_found")
    drafts = shifts_for_week(session, store_id, week_start, status="draft")
    validate_draft_week(session, store_id, drafts)

    run_ids = [run.id for run in runs]
    try:
        published = transition_shifts(
            session,
            "published",
            Shift.store_id == store_id,
            Shift.date >= start,
            Shift.date <= end,
        )
        if not published:
            session.rollback()
            return PublishResult(
                published_count=0,
                run_ids=run_ids,
                store_id=store_id,
                week_start=week_start,
                noop=True,
                message="No draft shifts to publish",
            )
        moved = transition_runs(session, "published", GenerationRun.id.in_(run_ids), completed_at=utcnow())
        record_audit_log(
            session,
            user_id=actor_id,
            action="publish",
            entity_type="shifts",
            store_id=store_id,
            details={
                "description": f"Published {len(published)} shifts for week {week_start.isoformat()}",
                "week_start": start,
                "week_end": end,
                "shifts_count": len(published),
                "generation_run_ids": moved,
            },
        )
        session.commit()
    except Exception:
        session.rollback()
        raise

    logger.info("Published %d shifts for store %s week %s", len(published), store_id, week_start)
    report = _notify_after_commit(fanout, lambda: _published_messages(session, published, directory, week_start), published)
    return PublishResult(
        published_count=len(published),
        run_ids=moved,
        store_id=store_id,
        week_start=week_start,
        notified=len(report.delivered),
        notification_failures=report.failure_count,
        message=f"Published {len(published)} shifts",
    )


def approve_patch(
    session,
    store_id,
    week_start,
    run_ids: Optional[Iterable] = None,
    *,
    actor_id: str,
    role: Optional[str],
    fanout: Optional[NotificationFanout] = None,
    directory: Optional[EmployeeDirectory] = None,
) -> PatchApprovalResult:
    """Publish all draft shifts of a store's week, whichever run produced them.

    Only employees whose shifts actually moved are notified.
    """
    require_admin(role)
    store_id = parse_id(store_id, "store_id")
    week_start = parse_date(week_start, "week_start")
    listed_runs = [parse_id(run_id, "generation_run_id") for run_id in (run_ids or [])]
    fanout = fanout or NullFanout()
    directory = directory or SqlEmployeeDirectory(session)
    start, end = week_bounds(week_start)

    try:
        published = transition_shifts(
            session,
            "published",
            Shift.store_id == store_id,
            Shift.date >= start,
            Shift.date <= end,
        )
        if not published:
            session.rollback()
            raise NotFoundError("No draft shifts to approve", code="no_draft_shifts")
        runs_published: List[str] = []
        if listed_runs:
            runs_published = transition_runs(
                session,
                "published",
                GenerationRun.id.in_(listed_runs),
                GenerationRun.store_id == store_id,
                completed_at=utcnow(),
            )
        affected = distinct_user_ids(published)
        record_audit_log(
            session,
            user_id=actor_id,
            action="publish",
            entity_type="shifts",
            store_id=store_id,
            details={
                "description": (
                    f"Approved coverage patch: {len(published)} shifts published (week {week_start.isoformat()})"
                ),
                "week_start": start,
                "week_end": end,
                "shifts_count": len(published),
                "is_patch_approval": True,
                "generation_run_ids": runs_published,
            },
        )
        session.commit()
    except NotFoundError:
        raise
    except Exception:
        session.rollback()
        raise

    logger.info(
        "Patch approval published %d shifts for %d employee(s) in store %s",
        len(published),
        len(affected),
        store_id,
    )
    report = _notify_after_commit(fanout, lambda: _changed_messages(session, published, directory, store_id), published)
    return PatchApprovalResult(
        published_count=len(published),
        affected_employees=len(affected),
        affected_user_ids=affected,
        runs_published=runs_published,
        store_id=store_id,
        week_start=week_start,
        notified=len(report.delivered),
        notification_failures=report.failure_count,
        message=f"Published {len(published)} shifts for {len(affected)} employee(s)",
    )
