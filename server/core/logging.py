"""Structured logging configuration.

Every event passes through ``redact_secrets`` so execution tokens, SMTP
passwords and outbound auth headers never reach the log sink. While a
worker runs a job, ``job_log_context`` binds the job, execution and
workflow ids onto every event emitted by the walker and node handlers.
"""

import sys
import structlog
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, TYPE_CHECKING

from core.config import Settings

if TYPE_CHECKING:
    from models.database import Job

REDACTED = "***"
SECRET_KEYS = frozenset([
    "token", "execution_token", "executiontoken", "password", "smtp_password",
    "authorization", "api_key", "apikey", "openai_api_key", "cron_secret",
])


def redact_secrets(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    for key in list(event_dict):
        if key.lower() in SECRET_KEYS and event_dict[key] is not None:
            event_dict[key] = REDACTED
    return event_dict


def configure_logging(settings: Settings) -> None:
    """Configure structured logging based on settings."""

    level = getattr(logging, settings.log_level.upper())
    handlers = [logging.StreamHandler(sys.stdout)]

    if settings.log_file:
        log_path = Path(settings.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))

    for handler in handlers:
        handler.setLevel(level)
    logging.basicConfig(level=level, handlers=handlers, format="%(message)s")

    # SQL echo goes through its own logger; keep it off unless asked for
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database_echo else logging.WARNING
    )
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.log_format == "json":
        processors.insert(0, structlog.processors.TimeStamper(fmt="iso", utc=True))
        processors.insert(0, structlog.stdlib.add_logger_name)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.insert(0, structlog.processors.TimeStamper(fmt="%H:%M:%S"))
        processors.append(structlog.dev.ConsoleRenderer(
            colors=False,
            pad_event=35,
            exception_formatter=structlog.dev.plain_traceback
        ))

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


@contextmanager
def job_log_context(job: "Job", worker_id: str) -> Iterator[None]:
    """Bind job identifiers to every log event emitted inside the block."""
    with structlog.contextvars.bound_contextvars(
        job_id=job.id,
        execution_id=job.execution_id,
        workflow_id=job.workflow_id,
        org_id=job.org_id,
        attempt=job.attempts + 1,
        worker_id=worker_id,
    ):
        yield
