from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from assess_core.instruments import get_instrument
from assess_core.store import AssessmentStore
from assess_core.types import Role


START = datetime(2026, 1, 5, 9, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Deterministic clock; tests move it forward explicitly."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0.0, **kw: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds, **kw)
        return self.now


def full_answers(instrument_id: str, value: int) -> dict[str, int]:
    return {iid: value for iid in get_instrument(instrument_id).item_ids}


def build_store(tmp_path, clock: FakeClock | None = None, **overrides) -> AssessmentStore:
    return AssessmentStore(tmp_path / "data", clock=clock or FakeClock(), **overrides)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(tmp_path, clock):
    st = build_store(tmp_path, clock)
    yield st
    st.close()


@pytest.fixture
def clinician(store):
    """Logged-in clinician session with subject ``p1`` registered."""
    sess = store.login("dr1", Role.CLINICIAN)
    store.register_subject(sess, "p1", "Pat One", age=30)
    return sess


@pytest.fixture
def subject(store, clinician):
    return store.login("p1", Role.SUBJECT)
