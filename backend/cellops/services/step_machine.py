"""Executed step lifecycle: pending -> in_progress -> completed | failed."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from .. import audit, models, notify, schemas
from ..config import settings
from ..logging_config import bind_log_context
from ..metrics import count_on_commit, step_completions_total
from ..repository import flush, lock_process
from ..states import ContainerStatus, ProcessStatus, StepStatus, StepType
from . import cca, deviations, processes
from .errors import ConflictError, ReferenceNotFound, ValidationError

logger = logging.getLogger(__name__)

# purpose: sole mutation point for executed steps, including CCA evaluation and gating
# status: active
# depends_on: backend.cellops.services.processes, backend.cellops.services.cca, backend.cellops.services.deviations

STEP_TRANSITIONS: dict[str, set[str]] = {
    StepStatus.PENDING.value: {StepStatus.IN_PROGRESS.value},
    StepStatus.IN_PROGRESS.value: {StepStatus.COMPLETED.value, StepStatus.FAILED.value},
    StepStatus.COMPLETED.value: set(),
    StepStatus.FAILED.value: set(),
}

TERMINAL_STEP_STATUSES = (StepStatus.COMPLETED.value, StepStatus.FAILED.value)


@dataclass
class StepOutcome:
    process: models.ExecutedProcess
    step: models.ExecutedStep
    deviation: Optional[models.Deviation] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _label(process: models.ExecutedProcess, step: models.ExecutedStep) -> str:
    return f"step {step.sequence} ({step.template_step.step_name}) of {process.process_code}"


def transition_step(process: models.ExecutedProcess, step: models.ExecutedStep, target: str) -> None:
    current = step.status
    if target not in STEP_TRANSITIONS.get(current, set()):
        raise ConflictError(f"{_label(process, step)} cannot move from {current} to {target}")
    step.status = target


def _find_step(process: models.ExecutedProcess, step_id: UUID) -> models.ExecutedStep:
    for step in process.steps:
        if step.id == step_id:
            return step
    raise ReferenceNotFound("ExecutedStep", step_id)


def _require_running(process: models.ExecutedProcess) -> None:
    if process.status != ProcessStatus.IN_PROGRESS.value:
        raise ConflictError(
            f"ExecutedProcess {process.process_code} is {process.status}; steps cannot change"
        )


def parse_recorded_parameters(step_type: str, raw: dict[str, Any]) -> dict[str, Any]:
    """Validate recorded parameters against the typed result for ``step_type``."""

    try:
        model = schemas.STEP_RESULT_MODELS.get(StepType(step_type), schemas.StepResult)
    except ValueError:
        model = schemas.StepResult
    try:
        result = model.model_validate(raw or {})
    except PydanticValidationError as exc:
        raise ValidationError(f"invalid recorded parameters for {step_type} step: {exc}") from exc
    return result.model_dump(mode="json", exclude_none=True)


def start_step(
    db: Session,
    process_id: UUID,
    step_id: UUID,
    actor: models.User,
    *,
    now: Optional[datetime] = None,
) -> StepOutcome:
    """Move the current pending step to in_progress and stamp ``started_at``."""

    process = lock_process(db, process_id)
    bind_log_context(process=process.process_code, culture=process.culture.culture_code)
    step = _find_step(process, step_id)
    _require_running(process)

    current = processes.select_current_step(process)
    if step.status == StepStatus.PENDING.value and current is not step:
        raise ConflictError(
            f"{_label(process, step)} cannot start before step {current.sequence} "
            f"({current.template_step.step_name}) is {current.status}"
        )
    transition_step(process, step, StepStatus.IN_PROGRESS.value)
    step.started_at = now or _utcnow()
    step.executed_by = actor.id
    flush(db)

    audit.log_action(
        db,
        actor.id,
        "step.start",
        "executed_step",
        step.id,
        {"process_code": process.process_code, "sequence": step.sequence},
    )
    logger.info("started %s", _label(process, step))
    return StepOutcome(process=process, step=step)


def complete_step(
    db: Session,
    process_id: UUID,
    step_id: UUID,
    payload: schemas.StepCompleteRequest,
    actor: models.User,
    *,
    now: Optional[datetime] = None,
) -> StepOutcome:
    """Record parameters, evaluate CCA rules and terminalize the step.

    A CCA failure is a successful call: the step ends ``failed`` and exactly one
    Deviation + Task pair is raised. Terminal steps are never re-opened.
    """

    now = now or _utcnow()
    process = lock_process(db, process_id)
    bind_log_context(process=process.process_code, culture=process.culture.culture_code)
    step = _find_step(process, step_id)
    if step.status in TERMINAL_STEP_STATUSES:
        raise ConflictError(f"{_label(process, step)} is already {step.status}")
    _require_running(process)
    if step.status != StepStatus.IN_PROGRESS.value:
        raise ConflictError(f"{_label(process, step)} has not been started")

    template_step = step.template_step
    equipment_reference = (payload.equipment_reference or "").strip() or None
    if template_step.requires_equipment_scan and not equipment_reference:
        raise ValidationError(f"{_label(process, step)} requires an equipment scan reference")
    if template_step.requires_sop_confirmation and not payload.sop_confirmed:
        raise ValidationError(f"{_label(process, step)} requires SOP confirmation")

    container_id = payload.container_id or step.container_id
    if container_id is not None:
        container = db.get(models.Container, container_id)
        if container is None:
            raise ReferenceNotFound("Container", container_id)
        if container.culture_id != process.culture_id:
            raise ValidationError(
                f"Container {container.container_code} does not belong to the culture of {process.process_code}"
            )
        if container.status != ContainerStatus.ACTIVE.value:
            raise ConflictError(
                f"Container {container.container_code} is {container.status}; only active containers can be measured"
            )

    recorded = parse_recorded_parameters(template_step.step_type, payload.recorded_parameters)
    evaluation = cca.evaluate(
        template_step.cca_rules,
        recorded,
        default_min_viability=settings.DEFAULT_MIN_VIABILITY,
    )

    transition_step(
        process,
        step,
        StepStatus.COMPLETED.value if evaluation.passed else StepStatus.FAILED.value,
    )
    step.completed_at = now
    step.executed_by = step.executed_by or actor.id
    step.recorded_parameters = recorded
    step.notes = payload.notes
    step.cca_passed = evaluation.passed
    step.cca_results = evaluation.results_payload()
    step.equipment_reference = equipment_reference
    step.sop_confirmed_at = now if payload.sop_confirmed else None
    step.container_id = container_id
    flush(db)

    deviation = None
    if evaluation.passed:
        notify.queue_notification(
            db, f'Step "{template_step.step_name}" completed ({process.process_code})', "info"
        )
    else:
        deviation = deviations.on_cca_failure(db, process, step, evaluation, actor, now=now)
        notify.queue_notification(
            db,
            f'CCA fail: "{template_step.step_name}" ({process.process_code}), '
            f"deviation {deviation.deviation_code}. QP decision required.",
            "warning",
        )

    if deviation is not None and template_step.is_critical and settings.HOLD_ON_CRITICAL_FAILURE:
        processes.hold_for_quality(db, process, deviation)
    else:
        processes.advance(db, process, now=now)
    flush(db)

    count_on_commit(db, step_completions_total, template_step.step_type, step.status)
    audit.log_action(
        db,
        actor.id,
        "step.complete",
        "executed_step",
        step.id,
        {
            "process_code": process.process_code,
            "sequence": step.sequence,
            "status": step.status,
            "cca_message": evaluation.message,
            "deviation_code": deviation.deviation_code if deviation else None,
        },
    )
    logger.info("%s -> %s (%s)", _label(process, step), step.status, evaluation.message)
    return StepOutcome(process=process, step=step, deviation=deviation)
