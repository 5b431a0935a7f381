from __future__ import annotations

import pytest

from assess_core import instruments
from assess_core.errors import InstrumentNotFound, ValidationError
from assess_core.instruments import DomainDef, Instrument, ItemDef, ValueDomain, coerce_value, get_instrument
from assess_core.scoring import normalized_score, reencoded_score, score

from tests.conftest import full_answers


def _lsks(values):
    return {f"q{i + 1}": v for i, v in enumerate(values)}


def test_normalized_domain_bounds_examples():
    best = score("hal", _lsks([6] * 8)).domain_scores["LSKS"]
    worst = score("hal", _lsks([1] * 8)).domain_scores["LSKS"]
    assert best.score == 100.0
    assert best.max_possible == 100.0
    assert best.percent == 100.0
    assert worst.score == 0.0


def test_partial_answers_and_not_applicable():
    res = score("hal", {"q1": 4})
    assert res.domain_scores["LSKS"].score == 60.0
    assert res.domain_scores["LEGS"] is None

    with_na = _lsks([8, 6, 6, 6, 6, 6, 6, 6])
    assert score("hal", with_na).domain_scores["LSKS"].score == 100.0

    all_na = _lsks([8] * 8)
    assert score("hal", all_na).domain_scores["LSKS"] is None


def test_out_of_range_values_are_skipped_by_the_engine():
    res = score("hal", {"q1": 7, "q2": "", "q3": None, "q4": "abc"})
    assert res.domain_scores["LSKS"] is None
    assert res.total is None


def test_rounding_is_half_up():
    assert normalized_score([2] + [1] * 15) == 1.3
    assert normalized_score([2, 3, 3]) == 33.3


def test_reencoded_groups_keep_orientation():
    best = score("hal", full_answers("hal", 6))
    worst = score("hal", full_answers("hal", 1))
    for key in ("UPPER", "LOWBAS", "LOWCOM"):
        assert best.domain_scores[key].score == 100.0
        assert worst.domain_scores[key].score == 0.0
    assert best.total == 100.0
    assert worst.total == 0.0
    assert reencoded_score([]) is None


def test_overlapping_item_scored_in_each_domain():
    res = score("hal", {"q8": 6})
    assert res.domain_scores["LSKS"].score == 100.0
    assert res.domain_scores["LOWBAS"].score == 100.0


def test_additive_haemqol():
    res = score("haemqol", full_answers("haemqol", 5))
    part1 = res.domain_scores["part1"]
    assert part1.score == 55.0
    assert part1.max_possible == 55.0
    assert part1.percent == 100.0
    assert res.total == 205.0

    zero = score("haemqol", full_answers("haemqol", 0))
    assert zero.domain_scores["part4"].score == 0.0
    assert zero.total == 0.0

    empty = score("haemqol", {})
    assert all(v is None for v in empty.domain_scores.values())
    assert empty.total is None


def test_additive_sections_gad_phq():
    answers = {f"gad{i}": 3 for i in range(1, 8)}
    answers.update({f"phq{i}": 2 for i in range(1, 10)})
    res = score("gad7_phq9", answers)
    assert res.domain_scores["gad7"].score == 21.0
    assert res.domain_scores["phq9"].score == 18.0
    assert res.total == 39.0


def test_scoring_is_deterministic():
    answers = {"q1": 3, "q5": 8, "q9": 2, "q30": 5}
    first = score("hal", answers)
    second = score("hal", answers)
    assert first == second
    assert first.to_dict() == second.to_dict()


def test_reverse_item_is_reflected_before_aggregation(monkeypatch):
    custom = Instrument(
        instrument_id="rev",
        version="1",
        title="reverse test",
        items=(ItemDef("a"), ItemDef("b", reverse=True)),
        domains=(DomainDef("both", ("a", "b")), DomainDef("only_b", ("b",))),
        value_domain=ValueDomain(low=1, high=6),
        aggregation="normalized",
        total_mode="all_items",
    )
    monkeypatch.setitem(instruments.INSTRUMENTS, "rev", custom)
    res = score("rev", {"a": 6, "b": 1})
    assert res.domain_scores["both"].score == 100.0
    assert res.domain_scores["only_b"].score == 100.0
    assert res.total == 100.0


def test_coerce_value_rules():
    hal = get_instrument("hal")
    assert coerce_value(hal, "q1", "5") == 5
    assert coerce_value(hal, "q1", 8) == 8
    assert coerce_value(hal, "q1", "") is None
    assert coerce_value(hal, "q1", None) is None
    for bad in (7, 0, "x", True, 2.5):
        with pytest.raises(ValidationError):
            coerce_value(hal, "q1", bad)
    with pytest.raises(ValidationError):
        coerce_value(hal, "q99", 3)


def test_unknown_instrument():
    with pytest.raises(InstrumentNotFound):
        score("nope", {})


def test_instrument_definitions_declare_aggregation():
    assert get_instrument("hal").aggregation == "normalized"
    assert get_instrument("haemqol").aggregation == "additive"
    summary = get_instrument("hal").summary()
    assert len(summary["items"]) == 42
    assert summary["reencoded_domains"] == ["UPPER", "LOWBAS", "LOWCOM"]
    assert summary["value_domain"]["not_applicable"] == 8
