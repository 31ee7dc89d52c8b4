"""
Shared logging configuration for AuthGuard.

Standard output belongs to the credential-process contract, so every log
record goes to stderr and, optionally, to a daily-rotated file.
"""

import sys
import os
import structlog
import logging
import logging.handlers
import uuid
import time
from pathlib import Path
from typing import Any, Dict, Literal, Optional, Union
from contextvars import ContextVar

LOG_FILE_NAME = "authguard.log"

LogLevel = Literal["error", "warn", "info", "debug", "trace"]

# trace has no stdlib level of its own
LOG_LEVELS: Dict[str, int] = {
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
    "trace": logging.DEBUG,
}

# Context variables for correlation IDs
request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)
profile_var: ContextVar[Optional[str]] = ContextVar('profile', default=None)


def configure_logging(log_level: LogLevel = "info", log_dir: Optional[Union[str, Path]] = None) -> None:
    """Configure structured logging for the helper."""

    # Configure structlog
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            add_correlation_context,
            add_timestamp,
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handlers = [logging.StreamHandler(sys.stderr)]
    file_handler = _file_handler(log_dir) if log_dir else None
    if file_handler is not None:
        handlers.append(file_handler)

    # Configure standard library logging
    logging.basicConfig(
        format="%(message)s",
        handlers=handlers,
        level=LOG_LEVELS[log_level],
        force=True,
    )


def _file_handler(log_dir: Union[str, Path]) -> Optional[logging.Handler]:
    """Daily-rotated file sink; skipped when the directory is not writable."""
    path = Path(log_dir)
    try:
        path.mkdir(parents=True, exist_ok=True)
        os.chmod(path, 0o750)
        return logging.handlers.TimedRotatingFileHandler(
            path / LOG_FILE_NAME, when="midnight", backupCount=7, utc=True
        )
    except OSError as e:
        print(f"[authguard] file logging disabled for {path}: {e}", file=sys.stderr)
        return None


def add_correlation_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add correlation context to log events."""
    request_id = request_id_var.get()
    if request_id:
        event_dict["request_id"] = request_id

    profile = profile_var.get()
    if profile:
        event_dict["profile"] = profile

    return event_dict


def add_timestamp(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add high-precision timestamp to log events."""
    event_dict["timestamp"] = time.time()
    return event_dict


def set_request_id(request_id: Optional[str] = None) -> str:
    """Set request ID in context."""
    if request_id is None:
        request_id = str(uuid.uuid4())
    request_id_var.set(request_id)
    return request_id


def set_profile(profile: Optional[str]) -> None:
    """Tag subsequent log events with the active environment profile."""
    profile_var.set(profile)


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
