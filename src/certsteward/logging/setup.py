"""Structured logging configuration for CertSteward.

Provides JSON and text formatters, a context filter that injects the
current job (certificate id, job id) or operator API request into
every log record, and a one-call ``configure_logging`` function driven
by config settings.
"""

from __future__ import annotations

import contextvars
import json
import logging
import sys
import uuid
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator

    from certsteward.config.settings import LoggingSettings

_STANDARD_ATTRS = frozenset(
    {
        "args",
        "created",
        "exc_info",
        "exc_text",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "message",
        "module",
        "msecs",
        "msg",
        "name",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "taskName",
        "thread",
        "threadName",
        # context attributes, handled explicitly
        "certificate_id",
        "job_id",
        "request_id",
        "method",
        "path",
    }
)

_job: contextvars.ContextVar[tuple[str, str] | None] = contextvars.ContextVar(
    "certsteward_job",
    default=None,
)


@contextmanager
def job_context(certificate_id: str) -> Iterator[str]:
    """Tag every log record emitted inside the block with a fresh job id."""
    job_id = uuid.uuid4().hex[:12]
    token = _job.set((certificate_id, job_id))
    try:
        yield job_id
    finally:
        _job.reset(token)


# ---------------------------------------------------------------------------
# Formatters
# ---------------------------------------------------------------------------


class StructuredFormatter(logging.Formatter):
    """JSON-lines formatter for production logging.

    Every record becomes a single JSON object on one line containing
    the standard fields plus any *extra* attributes passed by the
    caller or injected by filters.
    """

    def format(self, record: logging.LogRecord) -> str:
        record.message = record.getMessage()

        data: dict = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.message,
        }

        for attr in ("certificate_id", "job_id", "request_id", "method", "path"):
            value = getattr(record, attr, None)
            if value is not None:
                data[attr] = value

        for key, value in record.__dict__.items():
            if key not in _STANDARD_ATTRS and not key.startswith("_"):
                data.setdefault(key, value)

        if record.exc_info and record.exc_info[0] is not None:
            data["exception"] = self.formatException(record.exc_info)

        if record.stack_info:
            data["stack_info"] = self.formatStack(record.stack_info)

        return json.dumps(data, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable formatter for console use."""

    _FMT = "%(asctime)s %(levelname)-8s [%(certificate_id)s] %(name)s: %(message)s"

    def __init__(self) -> None:
        super().__init__(fmt=self._FMT, datefmt="%Y-%m-%d %H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        if getattr(record, "certificate_id", None) is None:
            record.certificate_id = "-"  # type: ignore[attr-defined]
        return super().format(record)


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------


class JobContextFilter(logging.Filter):
    """Inject job and request context into every log record.

    ``certificate_id`` / ``job_id`` come from :func:`job_context`
    (scheduler jobs) unless the caller passed them as extras;
    ``request_id`` / ``method`` / ``path`` come from the Flask request
    when one is active.
    """

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        job = _job.get()
        if not hasattr(record, "certificate_id"):
            record.certificate_id = job[0] if job else None  # type: ignore[attr-defined]
        if not hasattr(record, "job_id"):
            record.job_id = job[1] if job else None  # type: ignore[attr-defined]
        for attr in ("request_id", "method", "path"):
            if not hasattr(record, attr):
                setattr(record, attr, None)

        from flask import g, has_request_context, request  # noqa: PLC0415

        if has_request_context():
            record.request_id = getattr(g, "request_id", None)  # type: ignore[attr-defined]
            record.method = request.method  # type: ignore[attr-defined]
            record.path = request.path  # type: ignore[attr-defined]
        return True


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def configure_logging(settings: LoggingSettings) -> logging.Logger:
    """Configure the ``certsteward`` logger hierarchy from settings.

    Replaces any bootstrap handlers with properly formatted output.
    When ``settings.audit.enabled``, every state transition is also
    written as JSON to a rotating audit file via the
    ``certsteward.audit`` logger.

    Returns the root ``certsteward`` logger.
    """
    level = getattr(logging, settings.level.upper(), logging.INFO)

    root = logging.getLogger("certsteward")
    root.setLevel(level)
    root.handlers.clear()
    root.propagate = False

    formatter: logging.Formatter
    formatter = StructuredFormatter() if settings.format == "json" else TextFormatter()

    ctx_filter = JobContextFilter()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(formatter)
    console.addFilter(ctx_filter)
    root.addHandler(console)

    audit = logging.getLogger("certsteward.audit")
    audit.handlers.clear()
    audit.propagate = False
    if settings.audit.enabled and settings.audit.file:
        from logging.handlers import RotatingFileHandler  # noqa: PLC0415

        try:
            fh = RotatingFileHandler(
                settings.audit.file,
                maxBytes=settings.audit.max_file_size_bytes,
                backupCount=settings.audit.backup_count,
            )
        except OSError as exc:
            root.warning("Could not open audit log file %s: %s", settings.audit.file, exc)
        else:
            fh.setFormatter(StructuredFormatter())
            fh.addFilter(ctx_filter)
            audit.addHandler(fh)

    for lib in ("werkzeug", "gunicorn", "gunicorn.access", "gunicorn.error", "acmeow"):
        logging.getLogger(lib).setLevel(logging.WARNING)

    return root
