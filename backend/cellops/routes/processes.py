"""Process execution API routes."""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from .. import models, schemas
from ..auth import get_current_user
from ..database import get_db
from ..repository import commit
from ..services import processes, step_machine
from ..services.errors import ProcessEngineError
from .errors import to_http_exception

# purpose: expose process start, step transitions and operator controls
# status: active
# depends_on: backend.cellops.services.processes, backend.cellops.services.step_machine

router = APIRouter(prefix="/api/processes", tags=["processes"])


def _transition_view(db: Session, outcome: step_machine.StepOutcome) -> schemas.StepTransitionOut:
    db.refresh(outcome.process)
    deviation = None
    if outcome.deviation is not None:
        db.refresh(outcome.deviation)
        deviation = schemas.DeviationOut.model_validate(outcome.deviation)
    return schemas.StepTransitionOut(
        process=processes.describe_process(outcome.process),
        step=processes.describe_step(outcome.step),
        deviation=deviation,
    )


@router.post("", response_model=schemas.ExecutedProcessOut, status_code=status.HTTP_201_CREATED)
def start_process(
    payload: schemas.ProcessStart,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    try:
        process = processes.start_process(db, payload.template_id, payload.culture_id, user)
        commit(db)
    except ProcessEngineError as exc:
        db.rollback()
        raise to_http_exception(exc) from exc
    db.refresh(process)
    return processes.describe_process(process)


@router.get("/{process_id}", response_model=schemas.ExecutedProcessOut)
def get_process(
    process_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    try:
        process = processes.get_process(db, process_id)
    except ProcessEngineError as exc:
        raise to_http_exception(exc) from exc
    return processes.describe_process(process)


@router.post("/{process_id}/steps/{step_id}/start", response_model=schemas.StepTransitionOut)
def start_step(
    process_id: UUID,
    step_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    try:
        outcome = step_machine.start_step(db, process_id, step_id, user)
        commit(db)
    except ProcessEngineError as exc:
        db.rollback()
        raise to_http_exception(exc) from exc
    return _transition_view(db, outcome)


@router.post("/{process_id}/steps/{step_id}/complete", response_model=schemas.StepTransitionOut)
def complete_step(
    process_id: UUID,
    step_id: UUID,
    payload: schemas.StepCompleteRequest,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    try:
        outcome = step_machine.complete_step(db, process_id, step_id, payload, user)
        commit(db)
    except ProcessEngineError as exc:
        db.rollback()
        raise to_http_exception(exc) from exc
    return _transition_view(db, outcome)


@router.post("/{process_id}/pause", response_model=schemas.ExecutedProcessOut)
def pause_process(
    process_id: UUID,
    payload: schemas.ProcessControl | None = None,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    try:
        process = processes.pause_process(db, process_id, user, payload.reason if payload else None)
        commit(db)
    except ProcessEngineError as exc:
        db.rollback()
        raise to_http_exception(exc) from exc
    db.refresh(process)
    return processes.describe_process(process)


@router.post("/{process_id}/resume", response_model=schemas.ExecutedProcessOut)
def resume_process(
    process_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    try:
        process = processes.resume_process(db, process_id, user)
        commit(db)
    except ProcessEngineError as exc:
        db.rollback()
        raise to_http_exception(exc) from exc
    db.refresh(process)
    return processes.describe_process(process)


@router.post("/{process_id}/abort", response_model=schemas.ExecutedProcessOut)
def abort_process(
    process_id: UUID,
    payload: schemas.ProcessControl | None = None,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    try:
        process = processes.abort_process(db, process_id, user, payload.reason if payload else None)
        commit(db)
    except ProcessEngineError as exc:
        db.rollback()
        raise to_http_exception(exc) from exc
    db.refresh(process)
    return processes.describe_process(process)
