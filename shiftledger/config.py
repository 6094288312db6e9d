from __future__ import annotations

import os
from pathlib import Path


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


DATA_DIR = Path(os.environ.get("SHIFTLEDGER_DATA_DIR") or Path(__file__).resolve().parent / "data")
DATA_DIR.mkdir(parents=True, exist_ok=True)
DATABASE_URL = os.environ.get("SHIFTLEDGER_DATABASE_URL") or f"sqlite:///{(DATA_DIR / 'shiftledger.db').as_posix()}"
DATABASE_ECHO = os.environ.get("SHIFTLEDGER_DATABASE_ECHO", "").lower() in {"1", "true", "yes"}

# Outbound mail goes through the Resend HTTP API; no key means email is skipped.
RESEND_API_KEY = os.environ.get("RESEND_API_KEY") or ""
RESEND_API_URL = os.environ.get("RESEND_API_URL") or "https://api.resend.com/emails"
EMAIL_FROM = os.environ.get("SHIFTLEDGER_EMAIL_FROM") or "Shift Scheduler <onboarding@resend.dev>"
EMAIL_TIMEOUT_SECONDS = _env_int("SHIFTLEDGER_EMAIL_TIMEOUT", 10)
PUBLIC_APP_URL = (os.environ.get("PUBLIC_APP_URL") or "").rstrip("/")

LOG_LEVEL = os.environ.get("SHIFTLEDGER_LOG_LEVEL") or "INFO"
LOG_DIR = os.environ.get("SHIFTLEDGER_LOG_DIR") or ""
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_MAX_BYTES = _env_int("SHIFTLEDGER_LOG_MAX_MB", 10) * 1024 * 1024
LOG_BACKUP_COUNT = _env_int("SHIFTLEDGER_LOG_BACKUPS", 5)

DEFAULT_CONTRACT_HOURS = 40
BALANCE_CLAMP_HOURS = 5
MIN_SHIFT_HOURS = 4

ADMIN_ROLES = frozenset({"admin", "super_admin"})

# "package.module:function" of the schedule solver used by the weekly generation job.
SOLVER_PATH = os.environ.get("SHIFTLEDGER_SOLVER") or ""
