"""Process orchestration: templates, process start, current-step selection and advancement."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from .. import audit, models, notify, schemas
from ..codes import PROCESS_PREFIX, next_code
from ..config import settings
from ..logging_config import bind_log_context
from ..rbac import QP_ROLES, require_role
from ..repository import flush, get_or_404, lock_culture, lock_process
from ..states import CultureStatus, ProcessStatus, StepStatus
from .cca import normalize_rules
from .errors import ConflictError, ReferenceNotFound, ValidationError

logger = logging.getLogger(__name__)

# purpose: drive executed processes through their ordered step sequence
# status: active
# depends_on: backend.cellops.models.ExecutedProcess, backend.cellops.models.ExecutedStep

PROCESS_TRANSITIONS: dict[str, set[str]] = {
    ProcessStatus.IN_PROGRESS.value: {
        ProcessStatus.PAUSED.value,
        ProcessStatus.PAUSED_QUALITY_HOLD.value,
        ProcessStatus.COMPLETED.value,
        ProcessStatus.ABORTED.value,
    },
    ProcessStatus.PAUSED.value: {ProcessStatus.IN_PROGRESS.value, ProcessStatus.ABORTED.value},
    ProcessStatus.PAUSED_QUALITY_HOLD.value: {ProcessStatus.IN_PROGRESS.value, ProcessStatus.ABORTED.value},
    ProcessStatus.COMPLETED.value: set(),
    ProcessStatus.ABORTED.value: set(),
}

NON_TERMINAL_PROCESS_STATUSES = (
    ProcessStatus.IN_PROGRESS.value,
    ProcessStatus.PAUSED.value,
    ProcessStatus.PAUSED_QUALITY_HOLD.value,
)

_OPEN_STEP_STATUSES = (StepStatus.PENDING.value, StepStatus.IN_PROGRESS.value)
_UNUSABLE_CULTURE_STATUSES = (CultureStatus.DISPOSED.value, CultureStatus.CONTAMINATED.value)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def transition_process(process: models.ExecutedProcess, target: str) -> None:
    current = process.status
    if target not in PROCESS_TRANSITIONS.get(current, set()):
        raise ConflictError(
            f"ExecutedProcess {process.process_code} cannot move from {current} to {target}"
        )
    process.status = target


def create_template(
    db: Session,
    payload: schemas.TemplateCreate,
    actor: models.User,
) -> models.ProcessTemplate:
    """Publish a template. An existing ``template_code`` gets the next version."""

    require_role(actor, QP_ROLES, "publish process templates")
    latest = (
        db.query(models.ProcessTemplate)
        .filter(models.ProcessTemplate.template_code == payload.template_code)
        .order_by(models.ProcessTemplate.version.desc())
        .first()
    )
    version = latest.version + 1 if latest else 1
    template = models.ProcessTemplate(
        id=uuid.uuid4(),
        template_code=payload.template_code,
        name=payload.name,
        version=version,
        description=payload.description,
        applicable_cell_types=list(payload.applicable_cell_types),
        is_active=True,
        created_by=actor.id,
        created_at=_utcnow(),
    )
    for step in sorted(payload.steps, key=lambda s: s.step_number):
        template.steps.append(
            models.ProcessTemplateStep(
                id=uuid.uuid4(),
                step_number=step.step_number,
                step_name=step.step_name,
                step_type=step.step_type.value,
                description=step.description,
                is_critical=step.is_critical,
                expected_duration_minutes=step.expected_duration_minutes,
                requires_equipment_scan=step.requires_equipment_scan,
                requires_sop_confirmation=step.requires_sop_confirmation,
                sop_reference=step.sop_reference,
                cca_rules=[
                    rule.model_dump(mode="json", exclude_none=True)
                    for rule in normalize_rules(step.cca_rules)
                ],
            )
        )
    db.add(template)
    flush(db)
    audit.log_action(
        db,
        actor.id,
        "process_template.publish",
        "process_template",
        template.id,
        {"template_code": template.template_code, "version": version, "steps": len(template.steps)},
    )
    logger.info("published template %s v%d", template.template_code, version)
    return template


def list_templates(
    db: Session,
    *,
    template_code: Optional[str] = None,
    active_only: bool = True,
) -> list[models.ProcessTemplate]:
    query = db.query(models.ProcessTemplate)
    if template_code:
        query = query.filter(models.ProcessTemplate.template_code == template_code)
    if active_only:
        query = query.filter(models.ProcessTemplate.is_active.is_(True))
    return query.order_by(
        models.ProcessTemplate.template_code, models.ProcessTemplate.version.desc()
    ).all()


def start_process(
    db: Session,
    template_id: UUID,
    culture_id: UUID,
    actor: models.User,
    *,
    now: Optional[datetime] = None,
) -> models.ExecutedProcess:
    """Create an ExecutedProcess and one pending ExecutedStep per template step."""

    now = now or _utcnow()
    template = db.get(models.ProcessTemplate, template_id)
    if template is None:
        raise ReferenceNotFound("ProcessTemplate", template_id)
    culture = lock_culture(db, culture_id)
    bind_log_context(culture=culture.culture_code)

    if not template.is_active:
        raise ValidationError(
            f"ProcessTemplate {template.template_code} v{template.version} is inactive"
        )
    if not template.steps:
        raise ValidationError(
            f"ProcessTemplate {template.template_code} v{template.version} has no steps"
        )
    applicable = template.applicable_cell_types or []
    if applicable and culture.cell_type not in applicable:
        raise ValidationError(
            f"ProcessTemplate {template.template_code} does not apply to cell type "
            f"{culture.cell_type} (culture {culture.culture_code})"
        )
    if culture.status in _UNUSABLE_CULTURE_STATUSES:
        raise ConflictError(f"Culture {culture.culture_code} is {culture.status}")

    if settings.SINGLE_ACTIVE_PROCESS_PER_CULTURE:
        running = (
            db.query(models.ExecutedProcess)
            .filter(
                models.ExecutedProcess.culture_id == culture.id,
                models.ExecutedProcess.status.in_(NON_TERMINAL_PROCESS_STATUSES),
            )
            .first()
        )
        if running is not None:
            raise ConflictError(
                f"Culture {culture.culture_code} already has process {running.process_code} "
                f"({running.status})"
            )

    process = models.ExecutedProcess(
        id=uuid.uuid4(),
        process_code=next_code(db, PROCESS_PREFIX, now=now),
        template_id=template.id,
        culture_id=culture.id,
        status=ProcessStatus.IN_PROGRESS.value,
        started_at=now,
        started_by=actor.id,
    )
    for template_step in template.steps:
        process.steps.append(
            models.ExecutedStep(
                id=uuid.uuid4(),
                template_step_id=template_step.id,
                sequence=template_step.step_number,
                status=StepStatus.PENDING.value,
                recorded_parameters={},
            )
        )
    db.add(process)
    flush(db)
    bind_log_context(process=process.process_code)
    audit.log_action(
        db,
        actor.id,
        "process.start",
        "executed_process",
        process.id,
        {
            "process_code": process.process_code,
            "template_code": template.template_code,
            "template_version": template.version,
            "culture_code": culture.culture_code,
        },
    )
    logger.info(
        "started %s (%s v%d) on culture %s with %d steps",
        process.process_code,
        template.template_code,
        template.version,
        culture.culture_code,
        len(process.steps),
    )
    return process


def select_current_step(process: models.ExecutedProcess) -> Optional[models.ExecutedStep]:
    """First step, in creation order, that is still pending or in progress."""

    for step in sorted(process.steps, key=lambda s: s.sequence):
        if step.status in _OPEN_STEP_STATUSES:
            return step
    return None


def advance(
    db: Session,
    process: models.ExecutedProcess,
    *,
    now: Optional[datetime] = None,
) -> Optional[models.ExecutedStep]:
    """Re-scan after a step reached a terminal status; complete the process when nothing is left.

    A failed step does not stop the scan.
    """

    if process.status != ProcessStatus.IN_PROGRESS.value:
        return None
    next_step = select_current_step(process)
    if next_step is None:
        transition_process(process, ProcessStatus.COMPLETED.value)
        process.completed_at = now or _utcnow()
        failed = sum(1 for step in process.steps if step.status == StepStatus.FAILED.value)
        notify.queue_notification(
            db,
            f"Process {process.process_code} completed"
            + (f" with {failed} failed step(s) pending QP review" if failed else ""),
            "info",
        )
        logger.info("process %s completed (%d failed steps)", process.process_code, failed)
    return next_step


def hold_for_quality(
    db: Session,
    process: models.ExecutedProcess,
    deviation: models.Deviation,
) -> None:
    transition_process(process, ProcessStatus.PAUSED_QUALITY_HOLD.value)
    process.hold_reason = f"awaiting QP decision on deviation {deviation.deviation_code}"
    process.held_deviation_id = deviation.id
    notify.queue_notification(
        db,
        f"Process {process.process_code} placed on quality hold ({deviation.deviation_code})",
        "warning",
    )
    logger.warning(
        "process %s held for deviation %s", process.process_code, deviation.deviation_code
    )


def release_quality_hold(
    db: Session,
    process: models.ExecutedProcess,
    deviation: models.Deviation,
    *,
    resume: bool,
    now: Optional[datetime] = None,
) -> bool:
    """Apply a QP outcome to a held process: resume and advance, or abort.

    Only the deviation that placed the hold releases it. Returns whether the
    process was released.
    """

    if process.status != ProcessStatus.PAUSED_QUALITY_HOLD.value:
        return False
    if process.held_deviation_id != deviation.id:
        logger.info(
            "decision on %s leaves %s on hold", deviation.deviation_code, process.process_code
        )
        return False
    now = now or _utcnow()
    process.hold_reason = None
    process.held_deviation_id = None
    if resume:
        transition_process(process, ProcessStatus.IN_PROGRESS.value)
        advance(db, process, now=now)
        logger.info("process %s released from quality hold", process.process_code)
    else:
        transition_process(process, ProcessStatus.ABORTED.value)
        process.completed_at = now
        logger.warning("process %s aborted by QP decision", process.process_code)
    return True


def pause_process(
    db: Session,
    process_id: UUID,
    actor: models.User,
    reason: Optional[str] = None,
) -> models.ExecutedProcess:
    process = lock_process(db, process_id)
    transition_process(process, ProcessStatus.PAUSED.value)
    process.hold_reason = reason
    flush(db)
    audit.log_action(db, actor.id, "process.pause", "executed_process", process.id, {"reason": reason})
    logger.info("process %s paused", process.process_code)
    return process


def resume_process(
    db: Session,
    process_id: UUID,
    actor: models.User,
    *,
    now: Optional[datetime] = None,
) -> models.ExecutedProcess:
    process = lock_process(db, process_id)
    if process.status == ProcessStatus.PAUSED_QUALITY_HOLD.value:
        raise ConflictError(
            f"ExecutedProcess {process.process_code} is on quality hold; a QP decision is required"
        )
    transition_process(process, ProcessStatus.IN_PROGRESS.value)
    process.hold_reason = None
    advance(db, process, now=now)
    flush(db)
    audit.log_action(db, actor.id, "process.resume", "executed_process", process.id, {})
    logger.info("process %s resumed", process.process_code)
    return process


def abort_process(
    db: Session,
    process_id: UUID,
    actor: models.User,
    reason: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> models.ExecutedProcess:
    process = lock_process(db, process_id)
    transition_process(process, ProcessStatus.ABORTED.value)
    process.completed_at = now or _utcnow()
    process.hold_reason = reason
    process.held_deviation_id = None
    flush(db)
    audit.log_action(db, actor.id, "process.abort", "executed_process", process.id, {"reason": reason})
    logger.warning("process %s aborted: %s", process.process_code, reason or "no reason given")
    return process


def get_process(db: Session, process_id: UUID) -> models.ExecutedProcess:
    return get_or_404(db, models.ExecutedProcess, process_id)


def describe_step(step: models.ExecutedStep, *, now: Optional[datetime] = None) -> schemas.ExecutedStepOut:
    return schemas.ExecutedStepOut(
        id=step.id,
        sequence=step.sequence,
        status=step.status,
        started_at=step.started_at,
        completed_at=step.completed_at,
        elapsed_seconds=step.elapsed_seconds(now),
        executed_by=step.executed_by,
        container_id=step.container_id,
        recorded_parameters=step.recorded_parameters or {},
        notes=step.notes,
        cca_passed=step.cca_passed,
        cca_results=step.cca_results,
        equipment_reference=step.equipment_reference,
        sop_confirmed_at=step.sop_confirmed_at,
        template_step=schemas.TemplateStepOut.model_validate(step.template_step),
    )


def describe_process(process: models.ExecutedProcess) -> schemas.ExecutedProcessOut:
    """Process aggregate with nested steps, template metadata and the current step."""

    now = _utcnow()
    current = select_current_step(process)
    return schemas.ExecutedProcessOut(
        id=process.id,
        process_code=process.process_code,
        template_id=process.template_id,
        template_code=process.template.template_code,
        template_version=process.template.version,
        culture_id=process.culture_id,
        status=process.status,
        hold_reason=process.hold_reason,
        held_deviation_id=process.held_deviation_id,
        started_at=process.started_at,
        completed_at=process.completed_at,
        started_by=process.started_by,
        current_step_id=current.id if current else None,
        steps=[describe_step(step, now=now) for step in sorted(process.steps, key=lambda s: s.sequence)],
    )
