from __future__ import annotations

import pytest

from assess_core import storage
from assess_core.answers import AnswerStore
from assess_core.errors import AlreadyCompleted, Forbidden, ValidationError
from assess_core.storage import AnswerRecord, DurableTier, EphemeralTier
from assess_core.types import Role, TaskStatus

from tests.conftest import START, FakeClock, build_store


def _durable_answers(store):
    return storage.unwrap(store.durable.load("answers"), "answers")


def test_set_then_get_round_trip(store, subject):
    store.set_answer(subject, "p1", "hal", "q1", 4)
    store.set_answer(subject, "p1", "hal", "q2", "5")
    got = store.get_answers(subject, "p1", "hal")
    assert got.items == {"q1": 4, "q2": 5}
    assert got.source == "ephemeral"


def test_no_answers_is_an_empty_set(store, subject):
    got = store.get_answers(subject, "p1", "haemqol")
    assert got.is_empty
    assert got.source == "empty"


def test_resolution_prefers_task_record(store, subject):
    task = store.get_or_create_task(subject, "p1", "hal")
    store.set_answer(subject, "p1", "hal", "q1", 3, task.task_id)
    store.ephemeral.clear_all()
    got = store.get_answers(subject, "p1", "hal", task.task_id)
    assert got.source == "task"
    assert got.items == {"q1": 3}
    assert got.task_id == task.task_id


def test_subject_record_is_the_fallback(store, subject):
    store.set_answer(subject, "p1", "hal", "q7", 2)
    store.ephemeral.clear_all()
    got = store.get_answers(subject, "p1", "hal")
    assert got.source == "subject"
    assert got.items == {"q7": 2}
    # the durable copy is cached back into memory
    assert store.get_answers(subject, "p1", "hal").source == "ephemeral"


def test_sparser_durable_copy_never_wins_over_memory(store, subject, clock):
    task = store.get_or_create_task(subject, "p1", "hal")
    for iid, val in (("q1", 1), ("q2", 2), ("q3", 3)):
        store.set_answer(subject, "p1", "hal", iid, val, task.task_id)
    records = _durable_answers(store)
    rid = next(k for k, r in records.items() if r.task_id == task.task_id)
    store.durable.put(
        "answers",
        rid,
        AnswerRecord(record_id=rid, subject_id="p1", instrument_id="hal", task_id=task.task_id, items={}, updated_at=clock()),
    )

    got = store.get_answers(subject, "p1", "hal", task.task_id)
    assert got.items == {"q1": 1, "q2": 2, "q3": 3}
    assert got.source == "ephemeral"
    healed = _durable_answers(store)[rid]
    assert len(healed.items) == 3


def test_durable_outage_degrades_to_memory(store, subject, monkeypatch):
    real_write = storage._write_json

    def broken(path, payload):
        raise OSError("disk unavailable")

    monkeypatch.setattr(storage, "_write_json", broken)
    got = store.set_answer(subject, "p1", "hal", "q1", 6)
    assert got.items == {"q1": 6}
    assert store.answers.degraded is True
    assert store.get_answers(subject, "p1", "hal").items == {"q1": 6}

    monkeypatch.setattr(storage, "_write_json", real_write)
    store.set_answer(subject, "p1", "hal", "q2", 6)
    assert store.answers.degraded is False
    assert any(r.items == {"q1": 6, "q2": 6} for r in _durable_answers(store).values())


def test_task_bound_write_survives_durable_outage(store, subject, monkeypatch):
    task = store.get_or_create_task(subject, "p1", "hal")
    real_write = storage._write_json

    def broken(path, payload):
        raise OSError("disk down")

    monkeypatch.setattr(storage, "_write_json", broken)
    got = store.set_answer(subject, "p1", "hal", "q1", 4, task.task_id)
    assert got.items == {"q1": 4}
    assert store.answers.degraded is True
    assert store.tasks.get_task(task.task_id).status is TaskStatus.NOT_STARTED

    monkeypatch.setattr(storage, "_write_json", real_write)
    store.set_answer(subject, "p1", "hal", "q2", 5, task.task_id)
    assert store.tasks.get_task(task.task_id).status is TaskStatus.IN_PROGRESS
    assert store.get_answers(subject, "p1", "hal", task.task_id).items == {"q1": 4, "q2": 5}


def test_incremental_write_builds_on_durable_answers(store, subject):
    for n in range(1, 5):
        store.set_answer(subject, "p1", "hal", f"q{n}", 3)
    store.ephemeral.clear_all()
    store.set_answer(subject, "p1", "hal", "q5", 3)
    store.ephemeral.clear_all()
    got = store.get_answers(subject, "p1", "hal")
    assert got.source == "subject"
    assert sorted(got.items) == ["q1", "q2", "q3", "q4", "q5"]


def test_task_write_starts_from_subject_record(store, subject):
    store.set_answers(subject, "p1", "hal", {"q1": 2, "q2": 2})
    task = store.get_or_create_task(subject, "p1", "hal")
    store.ephemeral.clear_all()
    store.set_answer(subject, "p1", "hal", "q3", 2, task.task_id)
    store.ephemeral.clear_all()
    got = store.get_answers(subject, "p1", "hal", task.task_id)
    assert got.source == "task"
    assert got.items == {"q1": 2, "q2": 2, "q3": 2}


def test_corrupt_durable_file_does_not_block_reads(store, subject):
    store.set_answer(subject, "p1", "hal", "q1", 5)
    (store.durable.root / "answers.json").write_text("{not json", encoding="utf-8")
    assert store.get_answers(subject, "p1", "hal").items == {"q1": 5}
    store.ephemeral.clear_all()
    assert store.get_answers(subject, "p1", "hal").is_empty


def test_invalid_value_is_rejected_and_not_stored(store, subject):
    with pytest.raises(ValidationError):
        store.set_answer(subject, "p1", "hal", "q1", 9)
    with pytest.raises(ValidationError):
        store.set_answer(subject, "p1", "hal", "zz", 3)
    assert store.get_answers(subject, "p1", "hal").is_empty


def test_blank_value_clears_item(store, subject):
    store.set_answer(subject, "p1", "hal", "q1", 4)
    store.set_answer(subject, "p1", "hal", "q1", "")
    assert store.get_answers(subject, "p1", "hal").is_empty


def test_bulk_write_is_all_or_nothing(store, subject):
    with pytest.raises(ValidationError):
        store.set_answers(subject, "p1", "gad7_phq9", {"gad1": 1, "gad2": 9})
    assert store.get_answers(subject, "p1", "gad7_phq9").is_empty
    got = store.set_answers(subject, "p1", "gad7_phq9", {"gad1": 1, "gad2": 2})
    assert got.items == {"gad1": 1, "gad2": 2}


def test_deferred_writes_wait_for_flush(tmp_path):
    st = build_store(tmp_path, DEFERRED_DURABLE_WRITES=True)
    try:
        st.login("dr1", Role.CLINICIAN)
        doc = st.guard.current
        st.register_subject(doc, "p1")
        me = st.login("p1", Role.SUBJECT)
        st.set_answer(me, "p1", "hal", "q1", 2)
        assert st.answers.pending == 1
        assert not _durable_answers(st)
        assert st.flush() == 1
        assert [r.items for r in _durable_answers(st).values()] == [{"q1": 2}]
    finally:
        st.close()


def test_stale_write_after_session_switch_is_dropped(tmp_path):
    epoch = {"n": 1}
    answers = AnswerStore(EphemeralTier(), DurableTier(tmp_path), epoch=lambda: epoch["n"], clock=FakeClock(), deferred=True)
    answers.set_item("p1", "hal", "q1", 3)
    epoch["n"] += 1
    assert answers.flush() == 0
    assert storage.unwrap(answers.durable.load("answers"), "answers") == {}


def test_clear_keeps_task_records(store, subject):
    task = store.get_or_create_task(subject, "p1", "hal")
    store.set_answer(subject, "p1", "hal", "q1", 3, task.task_id)
    store.answers.clear("p1")
    remaining = _durable_answers(store)
    assert [r.task_id for r in remaining.values()] == [task.task_id]
    assert store.ephemeral.keys_for_subject("p1") == []


def test_logout_clears_in_progress_answers(store, subject):
    store.set_answer(subject, "p1", "hal", "q1", 3)
    store.logout(subject)
    doc = store.login("dr1", Role.CLINICIAN)
    assert store.get_answers(doc, "p1", "hal").is_empty
    other = store.login("p2", Role.SUBJECT)
    with pytest.raises(Forbidden):
        store.get_answers(other, "p1", "hal")


def test_task_progress_follows_answers(store, subject):
    task = store.get_or_create_task(subject, "p1", "gad7_phq9")
    store.set_answers(subject, "p1", "gad7_phq9", {"gad1": 1, "gad2": 1, "gad3": 1, "gad4": 1}, task.task_id)
    current = store.tasks.get_task(task.task_id)
    assert current.status is TaskStatus.IN_PROGRESS
    assert current.progress_percent == 25.0


def test_completed_task_rejects_answers(store, subject):
    task = store.get_or_create_task(subject, "p1", "hal")
    store.submit_response(subject, task.task_id, "p1", "hal", {"q1": 2})
    with pytest.raises(AlreadyCompleted):
        store.set_answer(subject, "p1", "hal", "q1", 3, task.task_id)


def test_task_answer_history(store, subject, clock):
    first = store.get_or_create_task(subject, "p1", "hal")
    store.submit_response(subject, first.task_id, "p1", "hal", {"q1": 2, "q2": 3})
    clock.advance(3600)
    second = store.get_or_create_task(subject, "p1", "hal")
    store.set_answer(subject, "p1", "hal", "q1", 5, second.task_id)
    history = store.task_answer_history(subject, "p1", "hal")
    assert [h["task_id"] for h in history] == [second.task_id, first.task_id]
    assert [h["item_count"] for h in history] == [1, 2]
    assert history[1]["updated_at"] == START
