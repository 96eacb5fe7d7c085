# rule_scheduler/core/logging.py
"""
Logging setup for the scheduler.

Engines log through ``logging.getLogger(__name__)``; the app entry point and
the pipeline use structlog. Both end up on the root handlers configured here.
"""
import json
import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

import structlog

from rule_scheduler.core.config import Settings, get_settings

# Attributes every LogRecord carries; anything else came in through ``extra=``
_RESERVED_RECORD_ATTRS = set(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()
) | {"message", "asctime"}

QUIET_LOGGERS: Dict[str, int] = {
    "uvicorn.access": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "aiosqlite": logging.WARNING,
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "celery.worker.strategy": logging.WARNING,
}


class StructuredFormatter(logging.Formatter):
    """One JSON object per record, with ``extra=`` fields inlined"""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
        }
        payload.update({
            key: value for key, value in record.__dict__.items()
            if key not in _RESERVED_RECORD_ATTRS and not key.startswith("_")
        })
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)


def _formatter(settings: Settings) -> logging.Formatter:
    if settings.enable_structured_logging:
        return StructuredFormatter()
    return logging.Formatter(settings.log_format)


def _handlers(settings: Settings) -> List[logging.Handler]:
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]

    if settings.log_file:
        log_dir = Path(settings.log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.handlers.RotatingFileHandler(
            filename=log_dir / settings.log_file,
            maxBytes=settings.log_max_bytes,
            backupCount=settings.log_backup_count
        ))

    formatter = _formatter(settings)
    for handler in handlers:
        handler.setFormatter(formatter)
    return handlers


def _configure_structlog(settings: Settings):
    renderer = (
        structlog.processors.JSONRenderer()
        if settings.is_production or settings.enable_structured_logging
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def setup_logging(settings: Optional[Settings] = None):
    """Replace the root handlers and configure structlog on top of them"""
    settings = settings or get_settings()

    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
    root_logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    for handler in _handlers(settings):
        root_logger.addHandler(handler)

    _configure_structlog(settings)

    for name, level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(level)

    logging.getLogger(__name__).info(
        "Logging initialized",
        extra={
            "log_level": settings.log_level,
            "structured_logging": settings.enable_structured_logging,
            "log_file": settings.log_file
        }
    )


class LogContext:
    """Binds structlog context vars (e.g. a pipeline run id) for a block"""

    def __init__(self, **kwargs):
        self.context = kwargs

    def __enter__(self):
        structlog.contextvars.bind_contextvars(**self.context)
        return structlog.get_logger()

    def __exit__(self, exc_type, exc_val, exc_tb):
        structlog.contextvars.unbind_contextvars(*self.context)


def log_performance(operation: str, duration_ms: float, success: bool = True, **extra):
    logger = logging.getLogger("rule_scheduler.performance")
    fields = {"operation": operation, "duration_ms": duration_ms, "success": success, **extra}

    if success:
        logger.info(f"{operation} finished in {duration_ms:.0f}ms", extra=fields)
    else:
        logger.warning(f"{operation} aborted after {duration_ms:.0f}ms", extra=fields)
