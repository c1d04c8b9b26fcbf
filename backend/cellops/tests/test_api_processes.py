import uuid

from .conftest import auth_headers, make_culture, make_user


def _template_body(code=None, critical=False):
    return {
        "template_code": code or f"API-{uuid.uuid4().hex[:6]}",
        "name": "MSC expansion",
        "applicable_cell_types": ["MSC"],
        "steps": [
            {"step_number": 1, "step_name": "Visual check", "step_type": "observation"},
            {
                "step_number": 2,
                "step_name": "Cell count",
                "step_type": "cell_counting",
                "is_critical": critical,
                "requires_equipment_scan": True,
                "cca_rules": [{"parameter": "viability_percent", "min": 80}],
            },
            {"step_number": 3, "step_name": "Split", "step_type": "passage"},
        ],
    }


def _setup(client, db):
    qp = make_user(db, "qp")
    operator = make_user(db)
    qp_headers, op_headers = auth_headers(qp), auth_headers(operator)
    culture_id = str(make_culture(db).id)
    resp = client.post("/api/templates", json=_template_body(), headers=qp_headers)
    assert resp.status_code == 201, resp.text
    return resp.json(), culture_id, qp_headers, op_headers


def test_requires_authentication(client):
    assert client.get("/api/templates").status_code == 401
    bogus = {"Authorization": "Bearer not.a.token"}
    assert client.get("/api/tasks", headers=bogus).status_code == 401


def test_operator_cannot_publish_template(client, db):
    headers = auth_headers(make_user(db))
    resp = client.post("/api/templates", json=_template_body(), headers=headers)
    assert resp.status_code == 403


def test_template_validation(client, db):
    headers = auth_headers(make_user(db, "qp"))
    body = _template_body()
    body["steps"][1]["step_number"] = 1
    assert client.post("/api/templates", json=body, headers=headers).status_code == 422

    body = _template_body()
    body["steps"][1]["cca_rules"] = [{"parameter": "viability_percent", "min": 90, "max": 50}]
    assert client.post("/api/templates", json=body, headers=headers).status_code == 422


def test_process_run_with_cca_failure_and_qp_decision(client, db):
    template, culture_id, qp_headers, op_headers = _setup(client, db)
    assert template["version"] == 1
    assert [s["step_number"] for s in template["steps"]] == [1, 2, 3]

    resp = client.post(
        "/api/processes",
        json={"template_id": template["id"], "culture_id": culture_id},
        headers=op_headers,
    )
    assert resp.status_code == 201, resp.text
    process = resp.json()
    pid = process["id"]
    step1, step2, step3 = (s["id"] for s in process["steps"])
    assert process["current_step_id"] == step1
    assert {s["status"] for s in process["steps"]} == {"pending"}

    # second run on the same culture is refused while the first is open
    dup = client.post(
        "/api/processes",
        json={"template_id": template["id"], "culture_id": culture_id},
        headers=op_headers,
    )
    assert dup.status_code == 409

    out_of_order = client.post(f"/api/processes/{pid}/steps/{step2}/start", headers=op_headers)
    assert out_of_order.status_code == 409
    assert "Visual check" in out_of_order.json()["detail"]

    resp = client.post(f"/api/processes/{pid}/steps/{step1}/start", headers=op_headers)
    assert resp.status_code == 200
    assert resp.json()["step"]["status"] == "in_progress"
    resp = client.post(f"/api/processes/{pid}/steps/{step1}/complete", json={}, headers=op_headers)
    assert resp.status_code == 200
    assert resp.json()["process"]["current_step_id"] == step2

    client.post(f"/api/processes/{pid}/steps/{step2}/start", headers=op_headers)
    missing_scan = client.post(
        f"/api/processes/{pid}/steps/{step2}/complete",
        json={"recorded_parameters": {"viability_percent": 75}},
        headers=op_headers,
    )
    assert missing_scan.status_code == 422

    resp = client.post(
        f"/api/processes/{pid}/steps/{step2}/complete",
        json={"recorded_parameters": {"viability_percent": 75}, "equipment_reference": "CNT-01"},
        headers=op_headers,
    )
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["step"]["status"] == "failed"
    assert body["step"]["cca_passed"] is False
    assert body["step"]["cca_results"]["message"] == "Viability 75% < 80%"
    deviation = body["deviation"]
    assert deviation["severity"] == "major"
    assert len(deviation["tasks"]) == 1
    assert body["process"]["status"] == "in_progress"
    assert body["process"]["current_step_id"] == step3

    again = client.post(
        f"/api/processes/{pid}/steps/{step2}/complete",
        json={"recorded_parameters": {"viability_percent": 95}, "equipment_reference": "CNT-01"},
        headers=op_headers,
    )
    assert again.status_code == 409

    tasks = client.get("/api/tasks", params={"role": "qp"}, headers=op_headers).json()
    assert deviation["id"] in {t["deviation_id"] for t in tasks}

    forbidden = client.post(
        f"/api/deviations/{deviation['id']}/decision",
        json={"decision": "continue"},
        headers=op_headers,
    )
    assert forbidden.status_code == 403

    resp = client.post(
        f"/api/deviations/{deviation['id']}/decision",
        json={"decision": "continue", "comments": "recount in range"},
        headers=qp_headers,
    )
    assert resp.status_code == 200
    assert resp.json()["status"] == "resolved"
    twice = client.post(
        f"/api/deviations/{deviation['id']}/decision",
        json={"decision": "dispose"},
        headers=qp_headers,
    )
    assert twice.status_code == 409

    client.post(f"/api/processes/{pid}/steps/{step3}/start", headers=op_headers)
    resp = client.post(
        f"/api/processes/{pid}/steps/{step3}/complete",
        json={"recorded_parameters": {"split_ratio": "1:3"}},
        headers=op_headers,
    )
    assert resp.json()["process"]["status"] == "completed"
    assert resp.json()["process"]["current_step_id"] is None

    listed = client.get("/api/deviations", params={"culture_id": culture_id}, headers=op_headers)
    assert [d["id"] for d in listed.json()] == [deviation["id"]]


def test_process_controls(client, db):
    template, culture_id, _, op_headers = _setup(client, db)
    pid = client.post(
        "/api/processes",
        json={"template_id": template["id"], "culture_id": culture_id},
        headers=op_headers,
    ).json()["id"]

    resp = client.post(f"/api/processes/{pid}/pause", json={"reason": "power cut"}, headers=op_headers)
    assert resp.status_code == 200
    assert resp.json()["status"] == "paused"
    assert client.post(f"/api/processes/{pid}/resume", headers=op_headers).json()["status"] == "in_progress"
    resp = client.post(f"/api/processes/{pid}/abort", headers=op_headers)
    assert resp.json()["status"] == "aborted"
    assert client.post(f"/api/processes/{pid}/resume", headers=op_headers).status_code == 409


def test_missing_references(client, db):
    template, _, _, op_headers = _setup(client, db)
    resp = client.post(
        "/api/processes",
        json={"template_id": template["id"], "culture_id": str(uuid.uuid4())},
        headers=op_headers,
    )
    assert resp.status_code == 404
    assert "Culture" in resp.json()["detail"]
    assert client.get(f"/api/processes/{uuid.uuid4()}", headers=op_headers).status_code == 404
    assert client.get(f"/api/deviations/{uuid.uuid4()}", headers=op_headers).status_code == 404

    other_culture = str(make_culture(db, cell_type="HEK293").id)
    resp = client.post(
        "/api/processes",
        json={"template_id": template["id"], "culture_id": other_culture},
        headers=op_headers,
    )
    assert resp.status_code == 422


def test_metrics_endpoint(client):
    resp = client.get("/metrics")
    assert resp.status_code == 200
    assert "cellops_step_completions_total" in resp.text
