"""Human-readable code minting (PROC-/DEV-/TASK-YYYY-NNNN)."""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy.orm import Session

from . import models
from .repository import flush

PROCESS_PREFIX = "PROC"
DEVIATION_PREFIX = "DEV"
TASK_PREFIX = "TASK"


def format_code(prefix: str, year: int, value: int) -> str:
    return f"{prefix}-{year}-{value:04d}"


def next_code(db: Session, prefix: str, *, now: datetime | None = None) -> str:
    """Reserve the next sequential code for ``prefix`` in the current calendar year.

    The counter row is locked for the caller's transaction, so two writers
    cannot observe the same value. A rolled-back transaction gives its number
    back.
    """

    year = (now or datetime.now(timezone.utc)).year
    counter = (
        db.query(models.CodeSequence)
        .filter(models.CodeSequence.prefix == prefix, models.CodeSequence.year == year)
        .populate_existing()
        .with_for_update()
        .one_or_none()
    )
    if counter is None:
        counter = models.CodeSequence(prefix=prefix, year=year, last_value=0)
        db.add(counter)
    counter.last_value = (counter.last_value or 0) + 1
    flush(db)
    return format_code(prefix, year, counter.last_value)
