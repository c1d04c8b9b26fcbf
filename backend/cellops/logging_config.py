"""Logging setup for the process engine.

Every record passing through the cellops handler carries the lab context of
the work being done (process, culture, deviation codes) as bound by the
services, so a single grep on ``PROC-2026-0007`` or a culture code pulls the
whole story out of the logs. Development gets a readable line, everything else
one JSON object per line.
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

_log_context: ContextVar[dict[str, str]] = ContextVar("cellops_log_context", default={})

# keys in the order they are rendered on a dev line
CONTEXT_KEYS = ("request", "process", "culture", "deviation")


def bind_log_context(**fields: Any) -> None:
    """Attach lab identifiers to every record logged from the current context."""
    context = dict(_log_context.get())
    context.update({key: str(value) for key, value in fields.items() if value is not None})
    _log_context.set(context)


def clear_log_context() -> None:
    _log_context.set({})


def current_log_context() -> dict[str, str]:
    return dict(_log_context.get())


def _render_context(context: dict[str, str]) -> str:
    ordered = [key for key in CONTEXT_KEYS if key in context]
    ordered += sorted(key for key in context if key not in CONTEXT_KEYS)
    return " ".join(f"{key}={context[key]}" for key in ordered)


class LabContextFilter(logging.Filter):
    """Copy the bound lab context onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = _log_context.get()
        record.lab_context = dict(context)
        record.lab_context_text = f" [{_render_context(context)}]" if context else ""
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per record, lab context under its own keys."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        entry.update(getattr(record, "lab_context", {}))
        if record.exc_info and record.exc_info[0] is not None:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


_DEV_FORMAT = "%(asctime)s %(levelname)-7s %(name)s%(lab_context_text)s %(message)s"


def configure_logging(environment: str = "development", level: str = "INFO") -> logging.Handler:
    """Install the cellops handler on the root logger and return it."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for existing in root.handlers[:]:
        root.removeHandler(existing)

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(LabContextFilter())
    if environment == "development":
        handler.setFormatter(logging.Formatter(_DEV_FORMAT, datefmt="%H:%M:%S"))
    else:
        handler.setFormatter(JSONFormatter())
    root.addHandler(handler)

    for noisy in ("uvicorn.access", "sqlalchemy.engine", "celery", "kombu"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    return handler
