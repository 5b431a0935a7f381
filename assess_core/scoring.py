from __future__ import annotations
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Mapping, Optional, Tuple

from .instruments import DomainDef, Instrument, get_instrument
from .types import DomainScore, ScoreResult


def _round1(x: float) -> float:
    # half-up like the scoring sheets, not banker's rounding
    return float(Decimal(repr(x)).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


def _clamp(x: float, lo: float = 0.0, hi: float = 100.0) -> float:
    if x < lo: return lo
    if x > hi: return hi
    return x


def _parse(raw: object) -> Optional[int]:
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, str):
        raw = raw.strip()
        if not raw:
            return None
    try:
        if isinstance(raw, float) and not raw.is_integer():
            return None
        return int(raw)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None


def _valid_values(instrument: Instrument, item_ids, answers: Mapping[str, object]) -> List[int]:
    """Included values for a set of items, item polarity already applied.

    Blank, non-numeric, out-of-range and not-applicable answers are skipped.
    """
    vd = instrument.value_domain
    out: List[int] = []
    for iid in item_ids:
        v = _parse(answers.get(iid))
        if v is None or not vd.in_range(v):
            continue
        if instrument.item(iid).reverse:
            v = vd.reflect(v)
        out.append(v)
    return out


def normalized_score(values: List[int], low: int = 1, high: int = 6) -> Optional[float]:
    """Rescale a 1..6 (worst..best) response set onto 0..100 (worst..best)."""
    valid = len(values)
    if valid == 0:
        return None
    span = high - low
    score = (sum(values) - low * valid) * 100.0 / (span * valid)
    return _round1(_clamp(score))


def reencode(value: int, low: int = 1, high: int = 6) -> int:
    return low + high - value


def reencoded_score(values: List[int], low: int = 1, high: int = 6) -> Optional[float]:
    """Score an item group whose response semantics are reversed.

    Values are re-encoded (1<->6, 2<->5, 3<->4), aggregated with the
    normalized formula, and the result is flipped back onto the 0 = worst
    orientation shared by every other domain.
    """
    valid = len(values)
    if valid == 0:
        return None
    span = high - low
    re_sum = sum(reencode(v, low, high) for v in values)
    score = 100.0 - (re_sum - low * valid) * (100.0 / (span * valid))
    return _round1(_clamp(score))


def additive_score(values: List[int]) -> Optional[int]:
    if not values:
        return None
    return sum(values)


def _domain_score(instrument: Instrument, dom: DomainDef, answers: Mapping[str, object]) -> Tuple[Optional[DomainScore], int]:
    vd = instrument.value_domain
    values = _valid_values(instrument, dom.items, answers)
    if instrument.aggregation == "additive":
        s = additive_score(values)
        if s is None:
            return None, 0
        max_possible = float(len(values) * vd.high)
        pct = _round1(s * 100.0 / max_possible) if max_possible else 0.0
        return DomainScore(score=float(s), max_possible=max_possible, percent=pct), len(values)
    if dom.reencode:
        ns = reencoded_score(values, vd.low, vd.high)
    else:
        ns = normalized_score(values, vd.low, vd.high)
    if ns is None:
        return None, 0
    return DomainScore(score=ns, max_possible=100.0, percent=ns), len(values)


def score(instrument_id: str, answers: Mapping[str, object]) -> ScoreResult:
    """Domain scores and total for one answer set.

    Pure: the same input always yields the same ScoreResult. Partial answer
    sets are fine; a domain with no valid answers scores None.
    """
    instrument = get_instrument(instrument_id)
    answers = answers or {}
    domain_scores: Dict[str, Optional[DomainScore]] = {}
    for dom in instrument.domains:
        ds, _n = _domain_score(instrument, dom, answers)
        domain_scores[dom.key] = ds

    total: Optional[float]
    if instrument.total_mode == "all_items":
        values = _valid_values(instrument, instrument.item_ids, answers)
        if instrument.aggregation == "additive":
            s = additive_score(values)
            total = None if s is None else float(s)
        else:
            vd = instrument.value_domain
            total = normalized_score(values, vd.low, vd.high)
    else:
        parts = [
            domain_scores[d.key].score  # type: ignore[union-attr]
            for d in instrument.domains
            if d.in_total and domain_scores.get(d.key) is not None
        ]
        total = float(sum(parts)) if parts else None

    return ScoreResult(
        instrument_id=instrument.instrument_id,
        aggregation=instrument.aggregation,
        domain_scores=domain_scores,
        total=total,
    )


__all__ = ["score", "normalized_score", "reencoded_score", "additive_score", "reencode"]
