from __future__ import annotations

import pytest

from assess_core.errors import Forbidden
from assess_core.smoke import run_smoke_session
from assess_core.types import Role

from tests.conftest import full_answers


def test_subject_dashboard_cards(store, subject, clock):
    done = store.get_or_create_task(subject, "p1", "haemqol")
    store.submit_response(subject, done.task_id, "p1", "haemqol", full_answers("haemqol", 1))
    clock.advance(60)
    active = store.get_or_create_task(subject, "p1", "hal")
    store.set_answer(subject, "p1", "hal", "q1", 3, active.task_id)

    dash = store.subject_dashboard(subject, "p1")
    cards = {c["instrument_id"]: c for c in dash["instruments"]}
    assert cards["hal"]["status"] == "in_progress"
    assert cards["hal"]["task"].task_id == active.task_id
    assert cards["haemqol"]["status"] == "completed"
    assert cards["haemqol"]["latest_total"] == 41.0
    assert cards["gad7_phq9"]["status"] == "not_started"
    assert cards["gad7_phq9"]["task"] is None
    assert [t.task_id for t in dash["active_tasks"]] == [active.task_id]
    assert dash["age_group"] == "young_adult"


def test_clinician_summary_windows(store, clinician, clock):
    store.register_subject(clinician, "p2", "Second")
    old = store.get_or_create_task(clinician, "p1", "hal")
    store.submit_response(clinician, old.task_id, "p1", "hal", {"q1": 6})
    clock.advance(days=10)
    clinician = store.login("dr1", Role.CLINICIAN)
    recent = store.get_or_create_task(clinician, "p2", "gad7_phq9")
    store.submit_response(clinician, recent.task_id, "p2", "gad7_phq9", {"gad1": 3})
    store.get_or_create_task(clinician, "p2", "hal")
    clock.advance(days=25)
    clinician = store.login("dr1", Role.CLINICIAN)

    summary = store.clinician_summary(clinician)
    assert summary["total_subjects"] == 2
    assert summary["active_subjects"] == 1
    assert summary["pending_tasks"] == 1
    assert summary["completed_recently"] == 0
    rows = summary["recent_completions"]
    assert [r["task_id"] for r in rows] == [recent.task_id, old.task_id]
    assert rows[0]["subject_name"] == "Second"
    assert rows[0]["total_score"] == 3.0

    me = store.login("p1", Role.SUBJECT)
    with pytest.raises(Forbidden):
        store.clinician_summary(me)


def test_smoke_run(tmp_path):
    totals = run_smoke_session(str(tmp_path / "smoke"))
    assert totals == {"hal": 50.0, "haemqol": 100.0, "gad7_phq9": 24.0}
