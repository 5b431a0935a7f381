from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from .errors import InstrumentNotFound, ValidationError

AGGREGATIONS: tuple[str, ...] = ("normalized", "additive")
TOTAL_MODES: tuple[str, ...] = ("all_items", "section_sum")


@dataclass(frozen=True)
class ValueDomain:
    low: int
    high: int
    not_applicable: Optional[int] = None

    def accepts(self, value: int) -> bool:
        return self.low <= value <= self.high or (
            self.not_applicable is not None and value == self.not_applicable
        )

    def in_range(self, value: int) -> bool:
        return self.low <= value <= self.high

    def reflect(self, value: int) -> int:
        return self.low + self.high - value


@dataclass(frozen=True)
class ItemDef:
    id: str
    reverse: bool = False


@dataclass(frozen=True)
class DomainDef:
    key: str
    items: Tuple[str, ...]
    reencode: bool = False
    in_total: bool = True


@dataclass(frozen=True)
class Instrument:
    instrument_id: str
    version: str
    title: str
    items: Tuple[ItemDef, ...]
    domains: Tuple[DomainDef, ...]
    value_domain: ValueDomain
    aggregation: str
    total_mode: str
    _by_id: Dict[str, ItemDef] = field(default_factory=dict, compare=False, repr=False)

    def __post_init__(self) -> None:
        if self.aggregation not in AGGREGATIONS:
            raise ValueError(f"unknown aggregation {self.aggregation!r}")
        if self.total_mode not in TOTAL_MODES:
            raise ValueError(f"unknown total mode {self.total_mode!r}")
        self._by_id.update({it.id: it for it in self.items})
        for dom in self.domains:
            missing = [iid for iid in dom.items if iid not in self._by_id]
            if missing:
                raise ValueError(f"{self.instrument_id}.{dom.key} references unknown items {missing}")

    @property
    def item_ids(self) -> List[str]:
        return [it.id for it in self.items]

    def item(self, item_id: str) -> ItemDef:
        try:
            return self._by_id[item_id]
        except KeyError:
            raise ValidationError(f"{item_id} is not an item of {self.instrument_id}") from None

    def has_item(self, item_id: str) -> bool:
        return item_id in self._by_id

    def summary(self) -> Dict[str, object]:
        return {
            "instrument_id": self.instrument_id,
            "version": self.version,
            "title": self.title,
            "items": self.item_ids,
            "reverse_items": [it.id for it in self.items if it.reverse],
            "domains": {d.key: list(d.items) for d in self.domains},
            "reencoded_domains": [d.key for d in self.domains if d.reencode],
            "value_domain": {
                "low": self.value_domain.low,
                "high": self.value_domain.high,
                "not_applicable": self.value_domain.not_applicable,
            },
            "aggregation": self.aggregation,
            "total_mode": self.total_mode,
        }


def _ids(prefix: str, numbers: Iterable[int]) -> Tuple[str, ...]:
    return tuple(f"{prefix}{n}" for n in numbers)


def _span(first: int, last: int) -> range:
    return range(first, last + 1)


def _hal() -> Instrument:
    q = lambda *nums: _ids("q", nums)
    return Instrument(
        instrument_id="hal",
        version="2.0",
        title="Haemophilia Activities List",
        items=tuple(ItemDef(i) for i in _ids("q", _span(1, 42))),
        domains=(
            DomainDef("LSKS", _ids("q", _span(1, 8))),
            DomainDef("LEGS", _ids("q", _span(9, 17))),
            DomainDef("ARMS", _ids("q", _span(18, 21))),
            DomainDef("TRANS", _ids("q", _span(22, 24))),
            DomainDef("SELFC", _ids("q", _span(25, 29))),
            DomainDef("HOUSEH", _ids("q", _span(30, 35))),
            DomainDef("LEISPO", _ids("q", _span(36, 42))),
            DomainDef("UPPER", q(18, 19, 20, 21, 25, 26, 27, 28, 29), reencode=True, in_total=False),
            DomainDef("LOWBAS", q(8, 9, 10, 11, 12, 13), reencode=True, in_total=False),
            DomainDef("LOWCOM", q(3, 4, 5, 6, 7, 14, 15, 16, 17, 22), reencode=True, in_total=False),
        ),
        value_domain=ValueDomain(low=1, high=6, not_applicable=8),
        aggregation="normalized",
        total_mode="all_items",
    )


def _haemqol() -> Instrument:
    return Instrument(
        instrument_id="haemqol",
        version="1.0",
        title="Haemo-QoL-A",
        items=tuple(ItemDef(i) for i in _ids("hq", _span(1, 41))),
        domains=(
            DomainDef("part1", _ids("hq", _span(1, 11))),
            DomainDef("part2", _ids("hq", _span(12, 22))),
            DomainDef("part3", _ids("hq", _span(23, 36))),
            DomainDef("part4", _ids("hq", _span(37, 41))),
        ),
        value_domain=ValueDomain(low=0, high=5),
        aggregation="additive",
        total_mode="section_sum",
    )


def _gad7_phq9() -> Instrument:
    gad = _ids("gad", _span(1, 7))
    phq = _ids("phq", _span(1, 9))
    return Instrument(
        instrument_id="gad7_phq9",
        version="1.0",
        title="GAD-7 and PHQ-9 screening",
        items=tuple(ItemDef(i) for i in gad + phq),
        domains=(DomainDef("gad7", gad), DomainDef("phq9", phq)),
        value_domain=ValueDomain(low=0, high=3),
        aggregation="additive",
        total_mode="section_sum",
    )


INSTRUMENTS: Dict[str, Instrument] = {
    ins.instrument_id: ins for ins in (_hal(), _haemqol(), _gad7_phq9())
}


def get_instrument(instrument_id: str) -> Instrument:
    try:
        return INSTRUMENTS[instrument_id]
    except KeyError:
        raise InstrumentNotFound(f"unknown instrument {instrument_id!r}") from None


def list_instruments() -> List[Instrument]:
    return list(INSTRUMENTS.values())


def coerce_value(instrument: Instrument, item_id: str, value: object) -> Optional[int]:
    """Validate one raw answer against the instrument.

    Returns the integer value, or None when the answer is blank (which clears
    the item). Raises ValidationError for unknown items and values outside the
    declared domain.
    """
    instrument.item(item_id)
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{item_id}: boolean is not a valid answer")
    try:
        if isinstance(value, float) and not value.is_integer():
            raise ValueError(value)
        iv = int(value.strip() if isinstance(value, str) else value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        raise ValidationError(f"{item_id}: {value!r} is not an integer answer") from None
    if not instrument.value_domain.accepts(iv):
        raise ValidationError(f"{item_id}: {iv} outside {instrument.instrument_id} value domain")
    return iv


def coerce_answers(instrument: Instrument, answers: Mapping[str, object]) -> Dict[str, int]:
    out: Dict[str, int] = {}
    for item_id, raw in (answers or {}).items():
        val = coerce_value(instrument, str(item_id), raw)
        if val is not None:
            out[str(item_id)] = val
    return out


def unanswered_items(instrument: Instrument, answers: Mapping[str, object]) -> List[str]:
    return [iid for iid in instrument.item_ids if answers.get(iid) in (None, "")]


def is_complete(instrument: Instrument, answers: Mapping[str, object]) -> bool:
    return not unanswered_items(instrument, answers)


def completion_percent(instrument: Instrument, answers: Mapping[str, object]) -> float:
    total = len(instrument.items)
    if not total:
        return 0.0
    answered = total - len(unanswered_items(instrument, answers))
    return round(answered * 100.0 / total, 1)
