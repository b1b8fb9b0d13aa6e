"""Logging for the History backend.

Console output goes to stderr at ``APP_LOG_LEVEL``. Unless
``LOG_FILE_ENABLED`` is off, everything down to DEBUG is also written to a
daily file under ``LOG_DIR``. Structured helpers put a dict in the message
so provider calls, store writes and lifecycle events can be grepped by tag.
"""

import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from loguru import logger

from history.config import settings

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> <level>{level: <7}</level> "
    "<cyan>{name}</cyan> | <level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DDTHH:mm:ss.SSSZZ} {level} {name}:{line} {message}"

# Transport and driver loggers from the provider client, the stores and the server.
QUIET_LOGGERS = (
    "uvicorn.access",
    "sse_starlette.sse",
    "httpx",
    "httpcore",
    "hpack",
    "asyncpg",
    "postgrest",
    "supabase",
    "gotrue",
)


def configure_logging() -> None:
    logger.remove()
    logger.add(sys.stderr, format=CONSOLE_FORMAT, level=settings.app_log_level.upper(), colorize=True)

    if settings.log_file_enabled:
        log_dir = Path(settings.log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_dir / "history_{time:YYYY-MM-DD}.log",
            format=FILE_FORMAT,
            level="DEBUG",
            rotation="00:00",
            retention=f"{settings.log_retention_days} days",
            compression="zip",
        )

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(settings.noisy_log_level.upper())


configure_logging()


def log_provider_call(
    method: str,
    path: str,
    status_code: int | None = None,
    duration_ms: int = 0,
    error: Optional[str] = None,
) -> None:
    """Log a DeepResearch provider call."""
    call_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "method": method,
        "path": path,
        "status_code": status_code,
        "duration_ms": duration_ms,
        "error": error,
    }
    if error:
        logger.error(f"PROVIDER_CALL_FAILED: {call_data}")
    else:
        logger.debug(f"PROVIDER_CALL: {call_data}")


def log_db_operation(
    operation: str,
    table: str,
    status: str,
    details: Optional[str] = None,
    error: Optional[str] = None,
) -> None:
    """Log a database operation."""
    op_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "operation": operation,
        "table": table,
        "status": status,
        "details": details,
        "error": error,
    }
    if error:
        logger.error(f"DB_OPERATION_FAILED: {op_data}")
    else:
        logger.info(f"DB_OPERATION: {op_data}")


def log_event(
    event_type: str,
    message: str,
    **kwargs,
) -> None:
    """Log a generic event."""
    event_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event_type": event_type,
        "message": message,
        **kwargs,
    }
    logger.info(f"EVENT: {event_data}")
