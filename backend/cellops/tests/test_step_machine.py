import uuid

import pytest

from cellops import metrics, models, notify, schemas
from cellops.services import deviations, processes, step_machine
from cellops.services.errors import ConflictError, ReferenceNotFound, ValidationError

from .conftest import make_container, make_culture, make_template, make_user, three_step_payload


def _run(db, process, step, operator, **request):
    step_machine.start_step(db, process.id, step.id, operator)
    outcome = step_machine.complete_step(
        db, process.id, step.id, schemas.StepCompleteRequest(**request), operator
    )
    db.commit()
    return outcome


def _started(db, payload=None):
    qp = make_user(db, "qp")
    operator = make_user(db)
    template = make_template(db, qp, payload or three_step_payload())
    culture = make_culture(db)
    process = processes.start_process(db, template.id, culture.id, operator)
    db.commit()
    return process, operator, qp


def test_failed_viability_raises_major_deviation_and_process_advances(db):
    process, operator, _ = _started(db)
    step1, step2, step3 = process.steps

    _run(db, process, step1, operator)
    outcome = _run(db, process, step2, operator, recorded_parameters={"viability_percent": 75})

    assert step2.status == "failed"
    assert step2.cca_passed is False
    assert step2.cca_results["message"] == "Viability 75% < 80%"
    assert outcome.deviation is not None
    assert outcome.deviation.severity == "major"
    assert outcome.deviation.status == "open"
    assert len(outcome.deviation.tasks) == 1
    task = outcome.deviation.tasks[0]
    assert (task.task_type, task.assigned_to_role, task.priority) == ("investigation", "qp", "high")

    assert process.status == "in_progress"
    assert processes.select_current_step(process) is step3

    _run(db, process, step3, operator, recorded_parameters={"split_ratio": "1:3"})
    assert process.status == "completed"
    assert process.completed_at is not None
    messages = [message for _, message in notify.NOTIFICATION_OUTBOX]
    assert any("CCA fail" in m and outcome.deviation.deviation_code in m for m in messages)
    assert any("completed with 1 failed step(s)" in m for m in messages)


def test_critical_step_failure_is_critical_deviation(db):
    process, operator, _ = _started(db, three_step_payload(critical=True))
    step1, step2, _ = process.steps
    _run(db, process, step1, operator)
    outcome = _run(db, process, step2, operator, recorded_parameters={"viability_percent": 75})

    assert outcome.deviation.severity == "critical"
    assert outcome.deviation.tasks[0].priority == "critical"
    # default behaviour keeps the run going
    assert process.status == "in_progress"


def test_terminal_step_cannot_be_completed_again(db):
    process, operator, _ = _started(db)
    step1, step2, _ = process.steps
    _run(db, process, step1, operator)
    _run(db, process, step2, operator, recorded_parameters={"viability_percent": 60})

    with pytest.raises(ConflictError):
        step_machine.complete_step(
            db,
            process.id,
            step2.id,
            schemas.StepCompleteRequest(recorded_parameters={"viability_percent": 95}),
            operator,
        )
    db.rollback()

    key = deviations.cca_failure_key(step2)
    assert db.query(models.Deviation).filter_by(executed_step_id=step2.id).count() == 1
    assert db.query(models.Task).filter_by(idempotency_key=key).count() == 1
    assert step2.status == "failed"


def test_steps_must_start_in_order(db):
    process, operator, _ = _started(db)
    _, step2, _ = process.steps

    with pytest.raises(ConflictError) as exc:
        step_machine.start_step(db, process.id, step2.id, operator)
    assert "Visual check" in str(exc.value)

    with pytest.raises(ConflictError):
        step_machine.complete_step(db, process.id, step2.id, schemas.StepCompleteRequest(), operator)

    with pytest.raises(ReferenceNotFound):
        step_machine.start_step(db, process.id, uuid.uuid4(), operator)


def test_started_step_cannot_start_twice(db):
    process, operator, _ = _started(db)
    step1 = process.steps[0]
    step_machine.start_step(db, process.id, step1.id, operator)
    db.commit()
    assert step1.started_at is not None
    with pytest.raises(ConflictError):
        step_machine.start_step(db, process.id, step1.id, operator)


def test_equipment_and_sop_gating(db):
    payload = three_step_payload()
    payload.steps[0].requires_equipment_scan = True
    payload.steps[0].requires_sop_confirmation = True
    process, operator, _ = _started(db, payload)
    step1 = process.steps[0]
    step_machine.start_step(db, process.id, step1.id, operator)
    db.commit()

    with pytest.raises(ValidationError) as exc:
        step_machine.complete_step(db, process.id, step1.id, schemas.StepCompleteRequest(), operator)
    assert "equipment" in str(exc.value)

    with pytest.raises(ValidationError) as exc:
        step_machine.complete_step(
            db,
            process.id,
            step1.id,
            schemas.StepCompleteRequest(equipment_reference="BSC-04"),
            operator,
        )
    assert "SOP" in str(exc.value)
    db.rollback()

    outcome = step_machine.complete_step(
        db,
        process.id,
        step1.id,
        schemas.StepCompleteRequest(equipment_reference=" BSC-04 ", sop_confirmed=True),
        operator,
    )
    db.commit()
    assert outcome.step.status == "completed"
    assert outcome.step.equipment_reference == "BSC-04"
    assert outcome.step.sop_confirmed_at is not None


def test_recorded_parameters_are_validated_per_step_type(db):
    process, operator, _ = _started(db)
    step1, step2, _ = process.steps
    _run(db, process, step1, operator)
    step_machine.start_step(db, process.id, step2.id, operator)
    db.commit()

    with pytest.raises(ValidationError):
        step_machine.complete_step(
            db,
            process.id,
            step2.id,
            schemas.StepCompleteRequest(recorded_parameters={"viability_percent": 140}),
            operator,
        )
    db.rollback()

    outcome = step_machine.complete_step(
        db,
        process.id,
        step2.id,
        schemas.StepCompleteRequest(
            recorded_parameters={"viability_percent": "91", "total_cells": 2.0e6, "operator_initials": "AB"}
        ),
        operator,
    )
    db.commit()
    assert outcome.step.status == "completed"
    assert outcome.step.recorded_parameters["viability_percent"] == 91.0
    assert outcome.step.recorded_parameters["operator_initials"] == "AB"


def test_container_must_belong_to_process_culture(db):
    process, operator, _ = _started(db)
    step1 = process.steps[0]
    other = make_culture(db)
    stray = make_container(db, other)
    step_machine.start_step(db, process.id, step1.id, operator)
    db.commit()

    with pytest.raises(ValidationError):
        step_machine.complete_step(
            db, process.id, step1.id, schemas.StepCompleteRequest(container_id=stray.id), operator
        )
    db.rollback()

    for status in ("disposed", "frozen", "thawed"):
        dead = make_container(db, process.culture, status=status)
        with pytest.raises(ConflictError) as exc:
            step_machine.complete_step(
                db, process.id, step1.id, schemas.StepCompleteRequest(container_id=dead.id), operator
            )
        assert status in str(exc.value)
        db.rollback()
        assert step1.status == "in_progress"

    own = make_container(db, process.culture)
    outcome = step_machine.complete_step(
        db, process.id, step1.id, schemas.StepCompleteRequest(container_id=own.id), operator
    )
    db.commit()
    assert outcome.step.container_id == own.id


def test_hold_on_critical_failure(db, monkeypatch):
    monkeypatch.setattr(step_machine.settings, "HOLD_ON_CRITICAL_FAILURE", True)
    process, operator, qp = _started(db, three_step_payload(critical=True))
    step1, step2, step3 = process.steps
    _run(db, process, step1, operator)
    outcome = _run(db, process, step2, operator, recorded_parameters={"viability_percent": 70})

    assert process.status == "paused_quality_hold"
    assert outcome.deviation.deviation_code in process.hold_reason
    assert any(level == "warning" and "quality hold" in m for level, m in notify.NOTIFICATION_OUTBOX)

    with pytest.raises(ConflictError):
        step_machine.start_step(db, process.id, step3.id, operator)
    with pytest.raises(ConflictError):
        processes.resume_process(db, process.id, operator)
    db.rollback()

    deviations.record_qp_decision(db, outcome.deviation.id, "continue", qp, "recount in range")
    db.commit()
    assert process.status == "in_progress"
    assert process.hold_reason is None
    assert processes.select_current_step(process) is step3


def test_non_critical_failure_does_not_hold(db, monkeypatch):
    monkeypatch.setattr(step_machine.settings, "HOLD_ON_CRITICAL_FAILURE", True)
    process, operator, _ = _started(db)
    step1, step2, _ = process.steps
    _run(db, process, step1, operator)
    _run(db, process, step2, operator, recorded_parameters={"viability_percent": 70})
    assert process.status == "in_progress"


def test_notifications_are_dropped_on_rollback(db):
    process, operator, _ = _started(db)
    step1 = process.steps[0]
    notify.NOTIFICATION_OUTBOX.clear()
    step_machine.start_step(db, process.id, step1.id, operator)
    step_machine.complete_step(db, process.id, step1.id, schemas.StepCompleteRequest(), operator)
    assert notify.pending_notifications(db)
    db.rollback()

    assert notify.NOTIFICATION_OUTBOX == []
    assert notify.pending_notifications(db) == []
    db.expire_all()
    assert db.get(models.ExecutedStep, step1.id).status == "pending"


def test_completion_counter_waits_for_commit(db):
    counter = metrics.step_completions_total.labels("observation", "completed")
    process, operator, _ = _started(db)
    step1 = process.steps[0]
    before = counter._value.get()

    step_machine.start_step(db, process.id, step1.id, operator)
    step_machine.complete_step(db, process.id, step1.id, schemas.StepCompleteRequest(), operator)
    assert counter._value.get() == before
    db.rollback()
    assert counter._value.get() == before

    step_machine.start_step(db, process.id, step1.id, operator)
    step_machine.complete_step(db, process.id, step1.id, schemas.StepCompleteRequest(), operator)
    assert counter._value.get() == before
    db.commit()
    assert counter._value.get() == before + 1
