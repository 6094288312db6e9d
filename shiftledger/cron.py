"""Weekly generation trigger.

Invokes the generation collaborator for every active store with generation
enabled, records one outcome per store/department and tells each store's
admins whether the new draft still has uncovered slots. A failing store never
stops the loop; there are no retries inside a cycle.
"""

from __future__ import annotations

import datetime
import html
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .database import Store, StoreRules, list_active_stores
from .directory import EmployeeDirectory, SqlEmployeeDirectory, store_admin_ids
from .generator.api import ALL_DEPARTMENTS, GenerationReport, ScheduleGenerator
from .logging_setup import batch_end_log, batch_start_log, get_logger
from .notifications import DeliveryReport, NotificationFanout, NullFanout, OutboundMessage, app_link, deliver

logger = get_logger("cron")

STATUS_SKIPPED = "skipped"
STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"


@dataclass
class StoreOutcome:
    store_id: str
    store_name: str
    department: str
    status: str
    error: Optional[str] = None
    shifts: int = 0
    uncovered: int = 0


@dataclass
class CronSummary:
    week_start: datetime.date
    results: List[StoreOutcome] = field(default_factory=list)
    notified: int = 0
    notification_failures: int = 0

    def count(self, status: str) -> int:
        return sum(1 for item in self.results if item.status == status)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "week_start": self.week_start.isoformat(),
            "results": [asdict(item) for item in self.results],
            "succeeded": self.count(STATUS_SUCCESS),
            "failed": self.count(STATUS_FAILED),
            "skipped": self.count(STATUS_SKIPPED),
            "notified": self.notified,
            "notification_failures": self.notification_failures,
        }


def next_week_start(today: Optional[datetime.date] = None) -> datetime.date:
    """The Monday strictly after ``today``."""
    base = today or datetime.datetime.now(datetime.timezone.utc).date()
    return base + datetime.timedelta(days=7 - base.weekday())


def _generation_enabled(session, store: Store) -> bool:
    rules = session.get(StoreRules, store.id)
    return bool(rules and rules.generation_enabled)


def _admin_messages(
    session,
    store: Store,
    report: GenerationReport,
    week_start: datetime.date,
    directory: EmployeeDirectory,
) -> List[OutboundMessage]:
    admin_ids = store_admin_ids(session, store.id)
    if not admin_ids:
        return []
    profiles = directory.lookup(admin_ids)
    total_uncovered = report.total_uncovered
    failed = [dept.department for dept in report.failed_departments]
    if total_uncovered > 0 or failed:
        title = "Draft schedule needs attention"
        subject = f"Draft shifts with problems - {store.name}"
        problems = []
        if total_uncovered > 0:
            problems.append(f"{total_uncovered} uncovered slot(s)")
        if failed:
            problems.append(f"failed department(s): {', '.join(failed)}")
        message = (
            f"Shifts for the week of {week_start.isoformat()} were generated for {store.name} "
            f"with {' and '.join(problems)}. Resolve them before publishing."
        )
        notification_type = "draft_warning"
    else:
        title = "Draft schedule ready"
        subject = f"Draft shifts generated - {store.name}"
        message = (
            f"Shifts for the week of {week_start.isoformat()} were generated for {store.name}. "
            "Review and publish when ready."
        )
        notification_type = "draft_ready"
    rows = "".join(
        f"<tr><td>{html.escape(dept.department)}</td><td>{dept.shifts}</td><td>{dept.uncovered}</td>"
        f"<td>{html.escape(dept.error) if dept.failed else 'ok'}</td></tr>"
        for dept in report.department_reports()
    )
    warning = (
        f"<p><strong>Warning: {total_uncovered} uncovered slot(s)</strong></p>" if total_uncovered > 0 else ""
    )
    link = app_link("/team-calendar")
    body = (
        "<!DOCTYPE html><html><head><meta charset=\"utf-8\"></head><body>"
        f"<h1>{html.escape(title)}</h1><p>{html.escape(store.name)} - week of {week_start.isoformat()}</p>"
        f"{warning}<table><tr><th>Department</th><th>Shifts</th><th>Uncovered</th><th>Status</th></tr>{rows}</table>"
        f"<p><a href=\"{html.escape(link, quote=True)}\">Review shifts</a></p></body></html>"
    )
    messages: List[OutboundMessage] = []
    for admin_id in admin_ids:
        profile = profiles.get(admin_id)
        messages.append(
            OutboundMessage(
                user_id=admin_id,
                store_id=store.id,
                title=title,
                message=message,
                link="/team-calendar",
                email=profile.email if profile else None,
                subject=subject,
                html_body=body,
                notification_type=notification_type,
            )
        )
    return messages


def _notify_admins(
    session_factory: Callable,
    store_id: str,
    report: GenerationReport,
    week_start: datetime.date,
    fanout: NotificationFanout,
    directory_factory: Callable[[Any], EmployeeDirectory],
) -> DeliveryReport:
    try:
        with session_factory() as session:
            store = session.get(Store, store_id)
            messages = _admin_messages(session, store, report, week_start, directory_factory(session))
    except Exception as exc:  # noqa: BLE001
        logger.error("Could not build admin notifications for store %s: %s", store_id, exc)
        return DeliveryReport(failed=[store_id])
    return deliver(fanout, messages)


def run_weekly_generation(
    session_factory: Callable,
    generator: ScheduleGenerator,
    *,
    today: Optional[datetime.date] = None,
    fanout: Optional[NotificationFanout] = None,
    directory_factory: Callable[[Any], EmployeeDirectory] = SqlEmployeeDirectory,
) -> CronSummary:
    week_start = next_week_start(today)
    fanout = fanout or NullFanout()
    summary = CronSummary(week_start=week_start)
    log_info = batch_start_log("weekly_generation", {"week_start": week_start.isoformat()})

    with session_factory() as session:
        stores = [(store.id, store.name, _generation_enabled(session, store)) for store in list_active_stores(session)]
    if not stores:
        logger.info("No active stores")

    for store_id, store_name, enabled in stores:
        if not enabled:
            summary.results.append(
                StoreOutcome(store_id=store_id, store_name=store_name, department=ALL_DEPARTMENTS, status=STATUS_SKIPPED)
            )
            continue
        try:
            raw = generator.generate(store_id, ALL_DEPARTMENTS, week_start)
            report = raw if isinstance(raw, GenerationReport) else GenerationReport.from_dict(raw or {})
        except Exception as exc:  # noqa: BLE001
            logger.error("Generation failed for store %s (%s): %s", store_name, store_id, exc)
            summary.results.append(
                StoreOutcome(
                    store_id=store_id,
                    store_name=store_name,
                    department=ALL_DEPARTMENTS,
                    status=STATUS_FAILED,
                    error=str(exc) or exc.__class__.__name__,
                )
            )
            continue
        departments = report.department_reports()
        for dept in departments:
            summary.results.append(
                StoreOutcome(
                    store_id=store_id,
                    store_name=store_name,
                    department=dept.department,
                    status=STATUS_FAILED if dept.failed else STATUS_SUCCESS,
                    error=dept.error,
                    shifts=dept.shifts,
                    uncovered=dept.uncovered,
                )
            )
        if all(dept.failed for dept in departments):
            continue
        delivery = _notify_admins(session_factory, store_id, report, week_start, fanout, directory_factory)
        summary.notified += len(delivery.delivered)
        summary.notification_failures += delivery.failure_count

    batch_end_log(log_info, success=summary.count(STATUS_FAILED) == 0, result_info=summary.to_dict())
    return summary
