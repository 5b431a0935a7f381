from __future__ import annotations

from fastapi.testclient import TestClient

from api.app import create_app

from tests.conftest import full_answers


def _client(tmp_path, **config) -> TestClient:
    return TestClient(create_app(data_dir=str(tmp_path / "data"), config=config))


def _login(client, actor_id: str, role: str) -> dict[str, str]:
    resp = client.post("/session/login", json={"actor_id": actor_id, "role": role})
    assert resp.status_code == 200
    return {"X-Session-Id": resp.json()["session_id"]}


def test_full_assessment_flow(tmp_path):
    with _client(tmp_path) as client:
        assert client.get("/").json()["status"] == "ok"

        doc = _login(client, "dr1", "clinician")
        created = client.post("/subjects", json={"subject_id": "p1", "display_name": "Pat", "age": 41}, headers=doc)
        assert created.status_code == 200
        assert created.json()["owner_clinician_id"] == "dr1"

        me = _login(client, "p1", "subject")
        t1 = client.post("/subjects/p1/tasks", json={"instrument_id": "hal", "origin": "patient_self"}, headers=me)
        t2 = client.post("/subjects/p1/tasks", json={"instrument_id": "hal", "origin": "patient_self"}, headers=me)
        assert t1.status_code == 200
        task_id = t1.json()["task_id"]
        assert t2.json()["task_id"] == task_id
        assert t1.json()["status"] == "not_started"

        put = client.put(
            "/subjects/p1/answers/hal",
            json={"item_id": "q1", "value": 6, "task_id": task_id},
            headers=me,
        )
        assert put.status_code == 200
        assert put.json()["items"] == {"q1": 6}

        bulk = client.put(
            "/subjects/p1/answers/hal/bulk",
            json={"items": full_answers("hal", 6), "task_id": task_id},
            headers=me,
        )
        assert bulk.status_code == 200
        tasks = client.get("/subjects/p1/tasks", headers=me).json()["tasks"]
        assert tasks[0]["status"] == "in_progress"
        assert tasks[0]["progress_percent"] == 100.0

        got = client.get("/subjects/p1/answers/hal", params={"task_id": task_id}, headers=me)
        assert len(got.json()["items"]) == 42

        sub = client.post(f"/tasks/{task_id}/submit", json={"subject_id": "p1", "instrument_id": "hal"}, headers=me)
        assert sub.status_code == 200
        body = sub.json()
        assert body["total_score"] == 100.0
        assert body["scores"]["domain_scores"]["LSKS"]["score"] == 100.0

        listed = client.get("/subjects/p1/responses", headers=me).json()["responses"]
        assert [r["response_id"] for r in listed] == [body["response_id"]]

        dash = client.get("/subjects/p1/dashboard", headers=me).json()
        hal_card = next(c for c in dash["instruments"] if c["instrument_id"] == "hal")
        assert hal_card["status"] == "completed"
        assert dash["age_group"] == "middle_aged"

        doc = _login(client, "dr1", "clinician")
        summary = client.get("/dashboard/clinician", headers=doc).json()
        assert summary["total_subjects"] == 1
        assert summary["recent_completions"][0]["total_score"] == 100.0

        report = client.post("/maintenance", json={}, headers=doc)
        assert report.status_code == 200
        assert report.json()["issuesFound"] == 0

        csv_resp = client.get("/audit.csv", headers=doc)
        assert csv_resp.status_code == 200
        assert csv_resp.text.splitlines()[0].startswith("t,actor_id,role")


def test_errors_map_to_status_codes(tmp_path):
    with _client(tmp_path) as client:
        anon = client.get("/subjects/p1/tasks")
        assert anon.status_code == 401
        assert anon.json()["error"] == "Unauthorized"

        stale = client.get("/subjects/p1/tasks", headers={"X-Session-Id": "nope"})
        assert stale.status_code == 401

        me = _login(client, "p1", "subject")
        other = client.get("/subjects/p2/tasks", headers=me)
        assert other.status_code == 403
        assert other.json()["error"] == "Forbidden"

        bad = client.put("/subjects/p1/answers/hal", json={"item_id": "q1", "value": 7}, headers=me)
        assert bad.status_code == 422
        assert bad.json()["error"] == "ValidationError"

        missing = client.post("/tasks/T00000077/submit", json={"subject_id": "p1", "instrument_id": "hal"}, headers=me)
        assert missing.status_code == 404
        assert missing.json()["error"] == "TaskNotFound"

        unknown = client.get("/instruments/nope")
        assert unknown.status_code == 404

        out = client.post("/session/logout", headers=me)
        assert out.status_code == 200
        assert client.get("/subjects/p1/tasks", headers=me).status_code == 401


def test_resubmit_rejected_by_policy(tmp_path):
    with _client(tmp_path, RESUBMIT_POLICY="reject") as client:
        me = _login(client, "p1", "subject")
        task_id = client.post("/subjects/p1/tasks", json={"instrument_id": "gad7_phq9"}, headers=me).json()["task_id"]
        payload = {"subject_id": "p1", "instrument_id": "gad7_phq9", "answers": {"gad1": 2}}
        assert client.post(f"/tasks/{task_id}/submit", json=payload, headers=me).status_code == 200
        again = client.post(f"/tasks/{task_id}/submit", json=payload, headers=me)
        assert again.status_code == 409
        assert again.json()["error"] == "AlreadyCompleted"


def test_audit_export_disabled(tmp_path):
    with _client(tmp_path, AUDIT_EXPORT_ENABLED=False) as client:
        doc = _login(client, "dr1", "clinician")
        assert client.get("/audit.json", headers=doc).status_code == 404
        assert client.get("/audit.csv", headers=doc).status_code == 404
