"""Utilities for recording container and culture history entries."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy.orm import Session

from . import models

# purpose: shared helpers persisting lineage history consumed by traceability views
# inputs: SQLAlchemy session, container or culture instance, operation metadata, actor
# outputs: ContainerHistory / CultureHistory rows added to the caller's transaction
# status: active


def record_container_event(
    db: Session,
    container: models.Container,
    operation: str,
    description: str,
    details: dict[str, Any] | None = None,
    actor: models.User | None = None,
) -> models.ContainerHistory:
    """Persist one history entry for a container touched by a lineage or QP operation."""

    entry = models.ContainerHistory(
        container=container,
        operation=operation,
        description=description,
        details=details if isinstance(details, dict) else {},
        performed_by=getattr(actor, "id", None),
        performed_at=datetime.now(timezone.utc),
    )
    db.add(entry)
    return entry


def record_culture_event(
    db: Session,
    culture: models.Culture,
    action: str,
    description: str,
    old_values: dict[str, Any] | None = None,
    new_values: dict[str, Any] | None = None,
    actor: models.User | None = None,
) -> models.CultureHistory:
    entry = models.CultureHistory(
        culture_id=culture.id,
        action=action,
        description=description,
        old_values=old_values or {},
        new_values=new_values or {},
        performed_by=getattr(actor, "id", None),
        performed_at=datetime.now(timezone.utc),
    )
    db.add(entry)
    return entry
