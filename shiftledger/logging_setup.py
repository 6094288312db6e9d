"""Named loggers for the shift ledger jobs and coordinators."""

from __future__ import annotations

import datetime
import logging
import logging.handlers
from pathlib import Path
from typing import Any, Dict, Optional

from . import config

_LOGGERS: Dict[str, logging.Logger] = {}


def _level() -> int:
    return getattr(logging, str(config.LOG_LEVEL).upper(), logging.INFO)


def get_logger(name: str) -> logging.Logger:
    """Return the ``shiftledger.<name>`` logger, configuring handlers once."""
    if name in _LOGGERS:
        return _LOGGERS[name]
    logger = logging.getLogger(f"shiftledger.{name}")
    logger.setLevel(_level())
    formatter = logging.Formatter(config.LOG_FORMAT)
    if not logger.handlers:
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        logger.addHandler(console)
        if config.LOG_DIR:
            log_dir = Path(config.LOG_DIR)
            log_dir.mkdir(parents=True, exist_ok=True)
            file_handler = logging.handlers.RotatingFileHandler(
                log_dir / f"{name}.log",
                maxBytes=config.LOG_MAX_BYTES,
                backupCount=config.LOG_BACKUP_COUNT,
            )
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
    # Keep records flowing to the root logger so pytest's caplog sees them.
    logger.propagate = True
    _LOGGERS[name] = logger
    return logger


def batch_start_log(process_name: str, additional_info: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    batch_logger = get_logger("batch")
    log_info = {
        "process_name": process_name,
        "start_time": datetime.datetime.now(datetime.timezone.utc),
        "additional_info": additional_info,
    }
    batch_logger.info("Starting batch process: %s", process_name)
    if additional_info:
        batch_logger.info("Process info: %s", additional_info)
    return log_info


def batch_end_log(log_info: Dict[str, Any], success: bool = True, result_info: Optional[Dict[str, Any]] = None) -> None:
    batch_logger = get_logger("batch")
    process_name = log_info.get("process_name", "Unknown")
    start_time = log_info.get("start_time") or datetime.datetime.now(datetime.timezone.utc)
    duration = datetime.datetime.now(datetime.timezone.utc) - start_time
    if success:
        batch_logger.info("Completed batch process: %s", process_name)
    else:
        batch_logger.error("Failed batch process: %s", process_name)
    batch_logger.info("Process duration: %s", duration)
    if result_info:
        batch_logger.info("Process results: %s", result_info)
