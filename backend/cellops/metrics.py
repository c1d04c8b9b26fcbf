"""Prometheus metric definitions for the process engine."""

from __future__ import annotations

from prometheus_client import Counter, Histogram
from sqlalchemy import event
from sqlalchemy.orm import Session

# HTTP
REQUEST_COUNT = Counter("request_count", "Total requests", ["method", "endpoint"])
REQUEST_LATENCY = Histogram(
    "request_latency_seconds", "Request latency", ["endpoint"]
)

# Process engine
step_completions_total = Counter(
    "cellops_step_completions_total",
    "Executed steps reaching a terminal status",
    ["step_type", "result"],
)

deviations_total = Counter(
    "cellops_deviations_total",
    "Deviations raised by CCA failures",
    ["severity"],
)

lineage_operations_total = Counter(
    "cellops_lineage_operations_total",
    "Lineage operations applied to cultures",
    ["operation"],
)

notification_failures_total = Counter(
    "cellops_notification_failures_total",
    "Notifications that could not be delivered",
)

_PENDING_KEY = "cellops.pending_counts"


def count_on_commit(db: Session, counter: Counter, *labels: str) -> None:
    """Increment ``counter`` once the session's transaction commits."""
    db.info.setdefault(_PENDING_KEY, []).append((counter, labels))


@event.listens_for(Session, "after_commit")
def _apply_counts(session: Session) -> None:
    for counter, labels in session.info.pop(_PENDING_KEY, []):
        (counter.labels(*labels) if labels else counter).inc()


@event.listens_for(Session, "after_rollback")
def _drop_counts(session: Session) -> None:
    session.info.pop(_PENDING_KEY, None)
