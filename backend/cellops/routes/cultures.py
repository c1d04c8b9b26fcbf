"""Culture lineage API routes."""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from .. import models, schemas
from ..auth import get_current_user
from ..database import get_db
from ..repository import commit
from ..services import lineage
from ..services.errors import ProcessEngineError
from .errors import to_http_exception

# purpose: passage, banking and thaw actions plus the lineage reads behind culture detail
# status: active
# depends_on: backend.cellops.services.lineage

router = APIRouter(prefix="/api/cultures", tags=["cultures", "lineage"])


def _lineage_view(db: Session, outcome: lineage.LineageOutcome) -> schemas.LineageResult:
    db.refresh(outcome.culture)
    return schemas.LineageResult(
        operation=outcome.operation,
        culture=schemas.CultureOut.model_validate(outcome.culture),
        created=[schemas.ContainerOut.model_validate(c) for c in outcome.created],
        sources=[schemas.ContainerOut.model_validate(c) for c in outcome.sources],
    )


@router.get("/{culture_id}", response_model=schemas.CultureOut)
def get_culture(
    culture_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    culture = db.get(models.Culture, culture_id)
    if not culture:
        raise HTTPException(status_code=404, detail=f"Culture {culture_id} not found")
    return culture


@router.get("/{culture_id}/containers", response_model=list[schemas.ContainerOut])
def list_containers(
    culture_id: UUID,
    container_status: str | None = None,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    try:
        return lineage.list_containers(db, culture_id, status=container_status)
    except ProcessEngineError as exc:
        raise to_http_exception(exc) from exc


@router.get("/{culture_id}/history", response_model=list[schemas.CultureHistoryOut])
def culture_history(
    culture_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    try:
        return lineage.culture_history(db, culture_id)
    except ProcessEngineError as exc:
        raise to_http_exception(exc) from exc


@router.get(
    "/{culture_id}/containers/{container_id}/history",
    response_model=list[schemas.ContainerHistoryOut],
)
def container_history(
    culture_id: UUID,
    container_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    container = db.get(models.Container, container_id)
    if not container or container.culture_id != culture_id:
        raise HTTPException(status_code=404, detail=f"Container {container_id} not found")
    return container.history


@router.post("/{culture_id}/passage", response_model=schemas.LineageResult, status_code=status.HTTP_201_CREATED)
def passage(
    culture_id: UUID,
    payload: schemas.PassageRequest,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    try:
        outcome = lineage.passage(db, culture_id, payload, user)
        commit(db)
    except ProcessEngineError as exc:
        db.rollback()
        raise to_http_exception(exc) from exc
    return _lineage_view(db, outcome)


@router.post("/{culture_id}/bank", response_model=schemas.LineageResult, status_code=status.HTTP_201_CREATED)
def bank(
    culture_id: UUID,
    payload: schemas.BankRequest,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    try:
        outcome = lineage.bank(db, culture_id, payload, user)
        commit(db)
    except ProcessEngineError as exc:
        db.rollback()
        raise to_http_exception(exc) from exc
    return _lineage_view(db, outcome)


@router.post("/{culture_id}/thaw", response_model=schemas.LineageResult, status_code=status.HTTP_201_CREATED)
def thaw(
    culture_id: UUID,
    payload: schemas.ThawRequest,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    try:
        outcome = lineage.thaw(db, culture_id, payload, user)
        commit(db)
    except ProcessEngineError as exc:
        db.rollback()
        raise to_http_exception(exc) from exc
    return _lineage_view(db, outcome)
