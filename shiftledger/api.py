"""FastAPI surface over the shift lifecycle coordinators.

Handlers stay thin: resolve the caller's role from ``X-User-Id``, parse the
path, call the coordinator and serialize its result. Domain errors are mapped
to status codes in one place.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, Optional, Tuple

from fastapi import Depends, FastAPI, Header, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from . import database
from .archival import archive_week
from .cron import run_weekly_generation
from .database import init_database, parse_date
from .errors import ShiftLedgerError, ValidationError
from .generator.api import ScheduleGenerator, default_generator
from .logging_setup import get_logger
from .notifications import NotificationFanout, SqlResendFanout
from .publication import approve_patch, publish_run, publish_week
from .roles import SqlRoleResolver, require_admin

logger = get_logger("api")


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_database()
    yield


app = FastAPI(title="Shift Ledger API", version="0.1", lifespan=lifespan)


def get_session_factory() -> Callable:
    return database.SessionLocal


def get_db(session_factory=Depends(get_session_factory)):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


def get_fanout(session_factory=Depends(get_session_factory)) -> NotificationFanout:
    return SqlResendFanout(session_factory)


def get_generator_factory() -> Callable[[Callable], ScheduleGenerator]:
    """Built lazily so an unauthorised call never needs a configured solver."""
    return lambda session_factory: default_generator(session_factory, actor="cron")


def get_caller(
    x_user_id: Optional[str] = Header(None),
    session_factory=Depends(get_session_factory),
) -> Tuple[str, Optional[str]]:
    user_id = (x_user_id or "").strip()
    role = SqlRoleResolver(session_factory).get_role(user_id) if user_id else None
    return user_id, role


@app.exception_handler(ShiftLedgerError)
async def shift_ledger_error_handler(_: Request, exc: ShiftLedgerError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("Request failed: %s", exc)
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))


@app.exception_handler(Exception)
async def unexpected_error_handler(_: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error: %s", exc)
    return JSONResponse(status_code=500, content={"error": "InternalError", "message": "Internal server error"})


def _result(payload: Dict[str, Any]) -> JSONResponse:
    return JSONResponse(content=jsonable_encoder(payload))


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.post("/api/v1/generation-runs/{run_id}/publish")
def publish_generation_run(
    run_id: str,
    caller=Depends(get_caller),
    db=Depends(get_db),
    fanout=Depends(get_fanout),
) -> JSONResponse:
    actor_id, role = caller
    result = publish_run(db, run_id, actor_id=actor_id, role=role, fanout=fanout)
    return _result(result.to_dict())


@app.post("/api/v1/stores/{store_id}/weeks/{week_start}/publish")
def publish_store_week(
    store_id: str,
    week_start: str,
    caller=Depends(get_caller),
    db=Depends(get_db),
    fanout=Depends(get_fanout),
) -> JSONResponse:
    actor_id, role = caller
    result = publish_week(db, store_id, week_start, actor_id=actor_id, role=role, fanout=fanout)
    return _result(result.to_dict())


@app.post("/api/v1/stores/{store_id}/weeks/{week_start}/approve-patch")
def approve_store_patch(
    store_id: str,
    week_start: str,
    payload: Optional[Dict[str, Any]] = None,
    caller=Depends(get_caller),
    db=Depends(get_db),
    fanout=Depends(get_fanout),
) -> JSONResponse:
    actor_id, role = caller
    run_ids = (payload or {}).get("generation_run_ids") or []
    if not isinstance(run_ids, list):
        raise ValidationError("generation_run_ids must be a list", code="invalid_body")
    result = approve_patch(db, store_id, week_start, run_ids, actor_id=actor_id, role=role, fanout=fanout)
    return _result(result.to_dict())


@app.post("/api/v1/jobs/archive-week")
def archive_week_job(
    payload: Optional[Dict[str, Any]] = None,
    caller=Depends(get_caller),
    db=Depends(get_db),
) -> JSONResponse:
    _, role = caller
    require_admin(role)
    as_of_raw = (payload or {}).get("as_of")
    as_of = parse_date(as_of_raw, "as_of") if as_of_raw else None
    result = archive_week(db, as_of)
    return _result(result.to_dict())


@app.post("/api/v1/jobs/weekly-generation")
def weekly_generation_job(
    payload: Optional[Dict[str, Any]] = None,
    caller=Depends(get_caller),
    session_factory=Depends(get_session_factory),
    fanout=Depends(get_fanout),
    generator_factory=Depends(get_generator_factory),
) -> JSONResponse:
    _, role = caller
    require_admin(role)
    today_raw = (payload or {}).get("today")
    today = parse_date(today_raw, "today") if today_raw else None
    generator = generator_factory(session_factory)
    summary = run_weekly_generation(session_factory, generator, today=today, fanout=fanout)
    return _result(summary.to_dict())
