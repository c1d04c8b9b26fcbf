"""Deviation generation on CCA failure and QP adjudication."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from .. import audit, models, notify
from ..codes import DEVIATION_PREFIX, TASK_PREFIX, next_code
from ..eventlog import record_container_event, record_culture_event
from ..logging_config import bind_log_context
from ..metrics import count_on_commit, deviations_total
from ..rbac import QP_ROLES, require_role
from ..repository import flush, get_or_404, lock_culture
from ..schemas.quality import CCAEvaluation
from ..states import (
    ContainerStatus,
    CultureStatus,
    DeviationSeverity,
    DeviationStatus,
    QPDecision,
    QualityHold,
    RiskFlag,
    UserRole,
)
from . import processes
from .errors import ConflictError, ReferenceNotFound

logger = logging.getLogger(__name__)

# purpose: automatic deviation + QP task pairing and the delayed human decision that follows
# status: active
# depends_on: backend.cellops.models.Deviation, backend.cellops.models.Task

CCA_FAIL = "cca_fail"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def cca_failure_key(step: models.ExecutedStep) -> str:
    return f"{step.id}:{CCA_FAIL}"


def on_cca_failure(
    db: Session,
    process: models.ExecutedProcess,
    step: models.ExecutedStep,
    evaluation: CCAEvaluation,
    actor: models.User,
    *,
    now: Optional[datetime] = None,
) -> models.Deviation:
    """Create the Deviation and its QP investigation Task for a failed step.

    A measured container is blocked with a ``system`` quality hold until a QP
    decision clears or replaces it.

    Keyed on the step, so a retried call returns the existing pair instead of
    adding a second one.
    """

    key = cca_failure_key(step)
    existing = (
        db.query(models.Deviation).filter(models.Deviation.idempotency_key == key).one_or_none()
    )
    if existing is not None:
        return existing

    now = now or _utcnow()
    template_step = step.template_step
    critical = bool(template_step.is_critical)
    severity = DeviationSeverity.CRITICAL.value if critical else DeviationSeverity.MAJOR.value
    deviation_code = next_code(db, DEVIATION_PREFIX, now=now)

    deviation = models.Deviation(
        id=uuid.uuid4(),
        deviation_code=deviation_code,
        deviation_type=CCA_FAIL,
        severity=severity,
        title=f"CCA fail: {template_step.step_name}",
        description=(
            f'CCA fail during step "{template_step.step_name}" of {process.process_code}: '
            f"{evaluation.message}"
        ),
        status=DeviationStatus.OPEN.value,
        qp_review_required=True,
        culture_id=process.culture_id,
        container_id=step.container_id,
        executed_step_id=step.id,
        detected_by=actor.id,
        detected_at=now,
        idempotency_key=key,
    )
    db.add(deviation)

    task = models.Task(
        id=uuid.uuid4(),
        task_code=next_code(db, TASK_PREFIX, now=now),
        task_type="investigation",
        title=f"CCA fail: {template_step.step_name}",
        description=f"QP decision required for deviation {deviation_code}. {evaluation.message}",
        priority="critical" if critical else "high",
        assigned_to_role=UserRole.QP.value,
        status="pending",
        culture_id=process.culture_id,
        container_id=step.container_id,
        deviation=deviation,
        executed_step_id=step.id,
        idempotency_key=key,
        created_at=now,
    )
    db.add(task)

    container = db.get(models.Container, step.container_id) if step.container_id else None
    if container is not None and container.quality_hold == QualityHold.NONE.value:
        container.quality_hold = QualityHold.SYSTEM.value
        container.hold_reason = f'CCA fail at step "{template_step.step_name}"'
        container.hold_set_at = now
        record_container_event(
            db,
            container,
            "cca_block",
            f"Blocked by CCA fail ({deviation_code})",
            {"deviation_code": deviation_code, "quality_hold": container.quality_hold},
            actor,
        )
    flush(db)

    count_on_commit(db, deviations_total, severity)
    logger.warning(
        "deviation %s (%s) raised for step %d of %s: %s",
        deviation_code,
        severity,
        step.sequence,
        process.process_code,
        evaluation.message,
    )
    return deviation


def _operator_task(
    db: Session,
    deviation: models.Deviation,
    task_type: str,
    title: str,
    description: str,
    now: datetime,
) -> models.Task:
    task = models.Task(
        id=uuid.uuid4(),
        task_code=next_code(db, TASK_PREFIX, now=now),
        task_type=task_type,
        title=title,
        description=description,
        priority="high",
        assigned_to_role=UserRole.OPERATOR.value,
        status="pending",
        culture_id=deviation.culture_id,
        container_id=deviation.container_id,
        deviation_id=deviation.id,
        executed_step_id=deviation.executed_step_id,
        idempotency_key=f"{deviation.id}:{task_type}",
        created_at=now,
    )
    db.add(task)
    return task


def record_qp_decision(
    db: Session,
    deviation_id: UUID,
    decision: QPDecision,
    actor: models.User,
    comments: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> models.Deviation:
    """Record the QP adjudication and apply its container/culture consequences.

    continue   -> deviation resolved; a CCA block on the container is lifted; a held process resumes
    quarantine -> container on QP hold, culture at risk, operator task; deviation under review;
                  a held process resumes
    dispose    -> container and culture disposed, culture critical, operator task; held process aborted
    """

    require_role(actor, QP_ROLES, "record QP decisions")
    decision = QPDecision(decision)
    now = now or _utcnow()

    deviation = (
        db.query(models.Deviation)
        .filter(models.Deviation.id == deviation_id)
        .populate_existing()
        .with_for_update()
        .one_or_none()
    )
    if deviation is None:
        raise ReferenceNotFound("Deviation", deviation_id)
    bind_log_context(deviation=deviation.deviation_code)
    if deviation.qp_decision is not None:
        raise ConflictError(
            f"Deviation {deviation.deviation_code} already has QP decision {deviation.qp_decision}"
        )

    culture = lock_culture(db, deviation.culture_id) if deviation.culture_id else None
    container = db.get(models.Container, deviation.container_id) if deviation.container_id else None
    label = container.container_code if container else (culture.culture_code if culture else "-")

    deviation.qp_decision = decision.value
    deviation.qp_comments = comments
    deviation.qp_reviewed_by = actor.id
    deviation.qp_reviewed_at = now

    if decision is QPDecision.CONTINUE:
        deviation.status = DeviationStatus.RESOLVED.value
        deviation.resolved_at = now
        if container is not None and container.quality_hold == QualityHold.SYSTEM.value:
            container.quality_hold = QualityHold.NONE.value
            container.hold_reason = None
            container.hold_set_at = None
            record_container_event(
                db,
                container,
                "release_hold",
                f"CCA block released per QP decision on {deviation.deviation_code}",
                {"deviation_code": deviation.deviation_code, "quality_hold": container.quality_hold},
                actor,
            )

    elif decision is QPDecision.QUARANTINE:
        deviation.status = DeviationStatus.UNDER_REVIEW.value
        if container is not None:
            container.quality_hold = QualityHold.QP.value
            container.hold_reason = f"QP quarantine ({deviation.deviation_code})"
            container.hold_set_at = now
            record_container_event(
                db,
                container,
                "quarantine",
                f"QP quarantine per {deviation.deviation_code}",
                {"deviation_code": deviation.deviation_code, "quality_hold": QualityHold.QP.value},
                actor,
            )
        if culture is not None:
            old_flag = culture.risk_flag
            culture.risk_flag = RiskFlag.AT_RISK.value
            culture.risk_flag_reason = f"Quarantine per {deviation.deviation_code}"
            culture.risk_flag_set_at = now
            record_culture_event(
                db,
                culture,
                "qp_quarantine",
                f"QP quarantine decision on {deviation.deviation_code}",
                {"risk_flag": old_flag},
                {"risk_flag": culture.risk_flag},
                actor,
            )
        _operator_task(
            db,
            deviation,
            "move_to_quarantine",
            f"Move {label} to quarantine",
            f"QP decision on {deviation.deviation_code}: quarantine. {comments or ''}".strip(),
            now,
        )

    elif decision is QPDecision.DISPOSE:
        deviation.status = DeviationStatus.RESOLVED.value
        deviation.resolved_at = now
        if container is not None and container.status != ContainerStatus.DISPOSED.value:
            old_status = container.status
            container.status = ContainerStatus.DISPOSED.value
            container.volume_ml = 0
            container.disposed_at = now
            record_container_event(
                db,
                container,
                "dispose",
                f"Disposed per QP decision on {deviation.deviation_code}",
                {"old_status": old_status, "new_status": container.status, "deviation_code": deviation.deviation_code},
                actor,
            )
        if culture is not None:
            old_values = {"status": culture.status, "risk_flag": culture.risk_flag}
            culture.status = CultureStatus.DISPOSED.value
            culture.risk_flag = RiskFlag.CRITICAL.value
            culture.risk_flag_reason = f"Disposed per {deviation.deviation_code}"
            culture.risk_flag_set_at = now
            record_culture_event(
                db,
                culture,
                "qp_dispose",
                f"QP dispose decision on {deviation.deviation_code}",
                old_values,
                {"status": culture.status, "risk_flag": culture.risk_flag},
                actor,
            )
        _operator_task(
            db,
            deviation,
            "dispose_container",
            f"Dispose {label}",
            f"QP decision on {deviation.deviation_code}: dispose. {comments or ''}".strip(),
            now,
        )

    step = deviation.executed_step
    if step is not None:
        processes.release_quality_hold(
            db, step.process, deviation, resume=decision is not QPDecision.DISPOSE, now=now
        )

    flush(db)
    audit.log_action(
        db,
        actor.id,
        "deviation.qp_decision",
        "deviation",
        deviation.id,
        {"deviation_code": deviation.deviation_code, "decision": decision.value, "comments": comments},
    )
    notify.queue_notification(
        db,
        f"QP decision on {deviation.deviation_code}: {decision.value}",
        "info" if decision is QPDecision.CONTINUE else "warning",
    )
    logger.info("QP decision %s recorded on %s by %s", decision.value, deviation.deviation_code, actor.email)
    return deviation


def list_deviations(
    db: Session,
    *,
    status: Optional[str] = None,
    culture_id: Optional[UUID] = None,
) -> list[models.Deviation]:
    query = db.query(models.Deviation)
    if status:
        query = query.filter(models.Deviation.status == status)
    if culture_id:
        query = query.filter(models.Deviation.culture_id == culture_id)
    return query.order_by(models.Deviation.detected_at.desc()).all()


def get_deviation(db: Session, deviation_id: UUID) -> models.Deviation:
    return get_or_404(db, models.Deviation, deviation_id)


def list_tasks(
    db: Session,
    *,
    role: Optional[str] = None,
    status: Optional[str] = None,
) -> list[models.Task]:
    query = db.query(models.Task)
    if role:
        query = query.filter(models.Task.assigned_to_role == role)
    if status:
        query = query.filter(models.Task.status == status)
    return query.order_by(models.Task.created_at.desc()).all()
