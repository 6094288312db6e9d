"""Best-effort notification fan-out.

Coordinators hand a list of ``OutboundMessage`` to ``deliver`` after their
transaction has committed. Each recipient is attempted independently; a
failure is logged and counted, never raised.
"""

from __future__ import annotations

import datetime
import html
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional, Protocol

import httpx

from . import config
from .balance import work_hours
from .database import Notification, Shift
from .errors import NotificationError
from .logging_setup import get_logger

logger = get_logger("notifications")


class NotificationFanout(Protocol):
    def notify(
        self,
        user_id: str,
        title: str,
        message: str,
        link: str,
        store_id: Optional[str] = None,
        notification_type: Optional[str] = None,
    ) -> None:
        ...

    def email_digest(self, email: str, subject: str, html_body: str) -> None:
        ...


class NullFanout:
    """Drops every message."""

    def notify(
        self,
        user_id: str,
        title: str,
        message: str,
        link: str,
        store_id: Optional[str] = None,
        notification_type: Optional[str] = None,
    ) -> None:
        return None

    def email_digest(self, email: str, subject: str, html_body: str) -> None:
        return None


class SqlResendFanout:
    """In-app rows in ``notifications`` plus email through the Resend HTTP API."""

    def __init__(
        self,
        session_factory: Callable,
        *,
        api_key: Optional[str] = None,
        api_url: Optional[str] = None,
        sender: Optional[str] = None,
        client: Optional[httpx.Client] = None,
        notification_type: str = "info",
    ):
        self._session_factory = session_factory
        self._api_key = config.RESEND_API_KEY if api_key is None else api_key
        self._api_url = api_url or config.RESEND_API_URL
        self._sender = sender or config.EMAIL_FROM
        self._client = client
        self.notification_type = notification_type

    def notify(
        self,
        user_id: str,
        title: str,
        message: str,
        link: str,
        store_id: Optional[str] = None,
        notification_type: Optional[str] = None,
    ) -> None:
        with self._session_factory() as session:
            session.add(
                Notification(
                    user_id=user_id,
                    store_id=store_id,
                    type=notification_type or self.notification_type,
                    title=title,
                    message=message,
                    link=link,
                )
            )
            session.commit()

    def email_digest(self, email: str, subject: str, html_body: str) -> None:
        if not self._api_key:
            logger.debug("RESEND_API_KEY not set; skipping email to %s", email)
            return
        payload = {"from": self._sender, "to": [email], "subject": subject, "html": html_body}
        headers = {"Authorization": f"Bearer {self._api_key}"}
        try:
            if self._client is not None:
                response = self._client.post(self._api_url, json=payload, headers=headers)
            else:
                with httpx.Client(timeout=config.EMAIL_TIMEOUT_SECONDS) as client:
                    response = client.post(self._api_url, json=payload, headers=headers)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise NotificationError(f"Email to {email} failed: {exc}", code="email_failed") from exc


@dataclass
class OutboundMessage:
    user_id: str
    title: str
    message: str
    link: str
    store_id: Optional[str] = None
    email: Optional[str] = None
    subject: Optional[str] = None
    html_body: Optional[str] = None
    notification_type: Optional[str] = None


@dataclass
class DeliveryReport:
    delivered: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    @property
    def failure_count(self) -> int:
        return len(self.failed)


def deliver(fanout: NotificationFanout, messages: Iterable[OutboundMessage]) -> DeliveryReport:
    report = DeliveryReport()
    for item in messages:
        ok = True
        try:
            fanout.notify(
                item.user_id,
                item.title,
                item.message,
                item.link,
                store_id=item.store_id,
                notification_type=item.notification_type,
            )
        except Exception as exc:  # noqa: BLE001
            ok = False
            logger.error("In-app notification failed for %s: %s", item.user_id, exc)
        if item.email and item.subject and item.html_body is not None:
            try:
                fanout.email_digest(item.email, item.subject, item.html_body)
            except Exception as exc:  # noqa: BLE001
                ok = False
                logger.error("Email to %s (%s) failed: %s", item.email, item.user_id, exc)
        if ok:
            report.delivered.append(item.user_id)
        else:
            report.failed.append(item.user_id)
    if report.failed:
        logger.warning("Notification fan-out finished with %d failed recipient(s)", report.failure_count)
    return report


def app_link(path: str) -> str:
    if not config.PUBLIC_APP_URL:
        return path
    return f"{config.PUBLIC_APP_URL}{path}"


def _shift_row(shift: Shift) -> str:
    day = shift.date.strftime("%A %d %B") if isinstance(shift.date, datetime.date) else str(shift.date)
    start = shift.start_time.strftime("%H:%M") if shift.start_time else "--"
    end = shift.end_time.strftime("%H:%M") if shift.end_time else "--"
    return (
        f"<tr><td>{html.escape(day)}</td>"
        f"<td>{start} - {end}</td>"
        f"<td>{html.escape(shift.department.capitalize())}</td>"
        f"<td>{work_hours(shift)}h</td></tr>"
    )


def shift_digest_html(heading: str, subtitle: str, shifts: Iterable[Shift], link: str) -> str:
    """Plain HTML table of a person's work shifts, sorted by date."""
    work = sorted((s for s in shifts if not s.is_day_off), key=lambda s: (s.date, s.start_time or datetime.time(0)))
    rows = "".join(_shift_row(shift) for shift in work)
    return (
        "<!DOCTYPE html><html><head><meta charset=\"utf-8\"></head><body>"
        f"<h1>{html.escape(heading)}</h1>"
        f"<p>{html.escape(subtitle)}</p>"
        f"<table>{rows}</table>"
        f"<p><a href=\"{html.escape(link, quote=True)}\">Open calendar</a></p>"
        "</body></html>"
    )
