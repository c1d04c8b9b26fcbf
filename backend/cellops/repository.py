"""Row locking and flush helpers shared by the process engine services."""

from __future__ import annotations

from uuid import UUID

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from . import models
from .services.errors import ConflictError, ReferenceNotFound, RepositoryError

# purpose: serialize writers per culture / per process and translate persistence failures
# status: active
# depends_on: backend.cellops.models


def lock_culture(db: Session, culture_id: UUID) -> models.Culture:
    """Load a culture with SELECT ... FOR UPDATE for the rest of the transaction."""

    culture = (
        db.query(models.Culture)
        .filter(models.Culture.id == culture_id)
        .populate_existing()
        .with_for_update()
        .one_or_none()
    )
    if culture is None:
        raise ReferenceNotFound("Culture", culture_id)
    return culture


def lock_process(db: Session, process_id: UUID) -> models.ExecutedProcess:
    process = (
        db.query(models.ExecutedProcess)
        .filter(models.ExecutedProcess.id == process_id)
        .populate_existing()
        .with_for_update()
        .one_or_none()
    )
    if process is None:
        raise ReferenceNotFound("ExecutedProcess", process_id)
    return process


def get_or_404(db: Session, model, ref_id: UUID, kind: str | None = None):
    instance = db.get(model, ref_id)
    if instance is None:
        raise ReferenceNotFound(kind or model.__name__, ref_id)
    return instance


def flush(db: Session) -> None:
    """Flush pending writes, mapping lock and constraint failures onto engine errors."""

    try:
        db.flush()
    except StaleDataError as exc:
        raise ConflictError(f"concurrent update detected: {exc}") from exc
    except IntegrityError as exc:
        raise ConflictError(f"constraint violated: {exc.orig}") from exc
    except SQLAlchemyError as exc:
        raise RepositoryError(f"persistence failure: {exc}") from exc


def commit(db: Session) -> None:
    """Commit the request transaction; routers call this once per mutation."""

    try:
        db.commit()
    except StaleDataError as exc:
        raise ConflictError(f"concurrent update detected: {exc}") from exc
    except IntegrityError as exc:
        raise ConflictError(f"constraint violated: {exc.orig}") from exc
    except SQLAlchemyError as exc:
        raise RepositoryError(f"commit failed: {exc}") from exc
