from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from .. import models, schemas
from ..auth import get_current_user
from ..database import get_db
from ..repository import commit
from ..services import deviations
from ..services.errors import ProcessEngineError
from .errors import to_http_exception

router = APIRouter(prefix="/api/deviations", tags=["deviations", "quality"])


@router.get("", response_model=list[schemas.DeviationOut])
def list_deviations(
    deviation_status: str | None = None,
    culture_id: UUID | None = None,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    return deviations.list_deviations(db, status=deviation_status, culture_id=culture_id)


@router.get("/{deviation_id}", response_model=schemas.DeviationOut)
def get_deviation(
    deviation_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    try:
        return deviations.get_deviation(db, deviation_id)
    except ProcessEngineError as exc:
        raise to_http_exception(exc) from exc


@router.post("/{deviation_id}/decision", response_model=schemas.DeviationOut)
def record_decision(
    deviation_id: UUID,
    payload: schemas.QPDecisionRequest,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    try:
        deviation = deviations.record_qp_decision(
            db, deviation_id, payload.decision, user, payload.comments
        )
        commit(db)
    except ProcessEngineError as exc:
        db.rollback()
        raise to_http_exception(exc) from exc
    db.refresh(deviation)
    return deviation
