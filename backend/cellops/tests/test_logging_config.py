import json
import logging

from cellops import logging_config
from cellops.services import processes, step_machine

from .conftest import make_culture, make_template, make_user


def _record(message="step completed"):
    record = logging.LogRecord("cellops.services", logging.INFO, __file__, 1, message, None, None)
    assert logging_config.LabContextFilter().filter(record)
    return record


def test_json_lines_carry_bound_lab_context():
    logging_config.bind_log_context(process="PROC-2026-0001", culture="CLT-0001", deviation=None)
    entry = json.loads(logging_config.JSONFormatter().format(_record()))
    assert entry["process"] == "PROC-2026-0001"
    assert entry["culture"] == "CLT-0001"
    assert "deviation" not in entry
    assert entry["msg"] == "step completed"
    assert entry["level"] == "INFO"


def test_dev_lines_render_context_in_fixed_order():
    logging_config.bind_log_context(culture="CLT-0001", request="POST /api/processes", process="PROC-2026-0001")
    record = _record()
    assert record.lab_context_text == " [request=POST /api/processes process=PROC-2026-0001 culture=CLT-0001]"

    logging_config.clear_log_context()
    assert _record().lab_context_text == ""


def test_step_services_bind_process_and_culture(db):
    qp = make_user(db, "qp")
    operator = make_user(db)
    template = make_template(db, qp)
    culture = make_culture(db)
    process = processes.start_process(db, template.id, culture.id, operator)
    db.commit()

    logging_config.clear_log_context()
    step_machine.start_step(db, process.id, process.steps[0].id, operator)
    db.commit()
    context = logging_config.current_log_context()
    assert context == {"process": process.process_code, "culture": culture.culture_code}
