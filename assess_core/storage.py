"""Storage tiers for the assessment store.

Two tiers hold answer data: an in-memory ephemeral tier for fast UI round
trips, and a durable tier made of JSON files under ``DATA_DIR`` (one file per
collection, written atomically through a ``.tmp`` sibling).  Tasks, responses,
subjects and audit events live in the durable tier only.

Tier operations never raise for I/O trouble.  They return ``Ok(value)`` or
``Err(kind, detail)`` and the caller decides whether the failure is fatal.
Every record crossing the durable boundary is validated with its pydantic
schema; records that fail validation are logged and skipped on load.
"""

from __future__ import annotations

import copy
import json
import logging
import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Generic, List, Optional, Tuple, Type, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as SchemaError

from .errors import StorageError
from .types import AnswerSet, AuditEvent, Response, ScoreResult, Subject, Task, TaskOrigin, TaskStatus

log = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T = None  # type: ignore[assignment]

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    kind: str
    detail: str = ""

    @property
    def ok(self) -> bool:
        return False


TierResult = Union[Ok, Err]


def unwrap(res: TierResult, what: str) -> Any:
    if isinstance(res, Err):
        raise StorageError(f"{what}: {res.kind} {res.detail}".strip())
    return res.value


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def utcnow_iso() -> str:
    return utcnow().isoformat()


# ---- record schemas (durable boundary) ----

class _Record(BaseModel):
    model_config = ConfigDict(extra="ignore")


class SubjectRecord(_Record):
    id: str
    display_name: str
    created_at: datetime
    updated_at: datetime
    age: Optional[float] = Field(default=None, ge=0)
    weight_kg: Optional[float] = Field(default=None, ge=0)
    height_cm: Optional[float] = Field(default=None, ge=0)
    owner_clinician_id: Optional[str] = None


class TaskRecord(_Record):
    task_id: str
    subject_id: str
    instrument_id: str
    origin: TaskOrigin
    status: TaskStatus
    created_at: datetime
    updated_at: datetime
    progress_percent: float = Field(default=0.0, ge=0, le=100)
    assigned_by: Optional[str] = None
    completed_at: Optional[datetime] = None


class AnswerRecord(_Record):
    record_id: str
    subject_id: str
    instrument_id: str
    task_id: Optional[str] = None
    items: Dict[str, int] = Field(default_factory=dict)
    updated_at: datetime


class ResponseRecord(_Record):
    response_id: str
    task_id: Optional[str] = None
    subject_id: str
    instrument_id: str
    answers: Dict[str, int] = Field(default_factory=dict)
    scores: Optional[Dict[str, Any]] = None
    total_score: Optional[float] = None
    completed_at: datetime
    visible_to_subject: bool = True
    clinician_notes: Optional[str] = None
    submitted_by: Optional[str] = None
    updated_at: Optional[datetime] = None


class AuditRecord(_Record):
    t: datetime
    actor_id: str
    role: str
    action: str
    resource_type: str
    resource_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


COLLECTIONS: Dict[str, Type[_Record]] = {
    "subjects": SubjectRecord,
    "tasks": TaskRecord,
    "answers": AnswerRecord,
    "responses": ResponseRecord,
    "audit": AuditRecord,
}

ID_PREFIX: Dict[str, str] = {
    "tasks": "T",
    "answers": "A",
    "responses": "R",
    "audit": "E",
}


# ---- dataclass <-> record ----

def subject_to_record(s: Subject) -> SubjectRecord:
    return SubjectRecord.model_validate(asdict(s))


def record_to_subject(r: SubjectRecord) -> Subject:
    return Subject(**r.model_dump())


def task_to_record(t: Task) -> TaskRecord:
    return TaskRecord.model_validate(asdict(t))


def record_to_task(r: TaskRecord) -> Task:
    return Task(**r.model_dump())


def answers_to_record(record_id: str, a: AnswerSet) -> AnswerRecord:
    return AnswerRecord(
        record_id=record_id,
        subject_id=a.subject_id,
        instrument_id=a.instrument_id,
        task_id=a.task_id,
        items=dict(a.items),
        updated_at=a.updated_at or utcnow(),
    )


def record_to_answers(r: AnswerRecord, source: str) -> AnswerSet:
    return AnswerSet(
        subject_id=r.subject_id,
        instrument_id=r.instrument_id,
        items=dict(r.items),
        task_id=r.task_id,
        updated_at=r.updated_at,
        source=source,
    )


def response_to_record(resp: Response) -> ResponseRecord:
    payload = asdict(resp)
    payload["scores"] = resp.scores.to_dict() if resp.scores is not None else None
    return ResponseRecord.model_validate(payload)


def record_to_response(r: ResponseRecord) -> Response:
    data = r.model_dump()
    data["scores"] = ScoreResult.from_dict(r.scores) if r.scores is not None else None
    return Response(**data)


def audit_to_record(e: AuditEvent) -> AuditRecord:
    return AuditRecord.model_validate(asdict(e))


def record_to_audit(r: AuditRecord) -> AuditEvent:
    return AuditEvent(**r.model_dump())


# ---- JSON file helpers ----

def _read_json(path: Path, default: Any) -> Any:
    if not path.exists():
        return default
    return json.loads(path.read_text(encoding="utf-8"))


def _write_json(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
    tmp.replace(path)


class DurableTier:
    """Collection-per-file JSON store rooted at ``root``."""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root).resolve()
        self._lock = threading.RLock()

    def _path(self, collection: str) -> Path:
        if collection not in COLLECTIONS and collection != "counters":
            raise KeyError(collection)
        return self.root / f"{collection}.json"

    def _read_raw(self, collection: str) -> TierResult:
        path = self._path(collection)
        try:
            raw = _read_json(path, {})
        except OSError as exc:
            return Err("io", f"{path.name}: {exc}")
        except ValueError as exc:
            return Err("corrupt", f"{path.name}: {exc}")
        if not isinstance(raw, dict):
            return Err("corrupt", f"{path.name}: expected an object")
        return Ok(raw)

    def _write_raw(self, collection: str, payload: Dict[str, Any]) -> TierResult:
        path = self._path(collection)
        try:
            _write_json(path, payload)
        except (OSError, TypeError, ValueError) as exc:
            return Err("io", f"{path.name}: {exc}")
        return Ok(None)

    def load(self, collection: str) -> TierResult:
        """All valid records of a collection, keyed by record id."""
        schema = COLLECTIONS[collection]
        with self._lock:
            res = self._read_raw(collection)
        if isinstance(res, Err):
            return res
        out: Dict[str, _Record] = {}
        for key, payload in res.value.items():
            try:
                out[key] = schema.model_validate(payload)
            except SchemaError as exc:
                log.warning("skipping invalid %s record %s: %s", collection, key, exc.errors()[:1])
        return Ok(out)

    def get(self, collection: str, key: str) -> TierResult:
        res = self.load(collection)
        if isinstance(res, Err):
            return res
        return Ok(res.value.get(key))

    def put(self, collection: str, key: str, record: _Record) -> TierResult:
        schema = COLLECTIONS[collection]
        if not isinstance(record, schema):
            return Err("schema", f"{collection} expects {schema.__name__}")
        payload = record.model_dump(mode="json")
        with self._lock:
            res = self._read_raw(collection)
            if isinstance(res, Err):
                return res
            data = res.value
            data[key] = payload
            return self._write_raw(collection, data)

    def delete(self, collection: str, key: str) -> TierResult:
        with self._lock:
            res = self._read_raw(collection)
            if isinstance(res, Err):
                return res
            data = res.value
            if key not in data:
                return Ok(False)
            data.pop(key, None)
            wres = self._write_raw(collection, data)
            if isinstance(wres, Err):
                return wres
        return Ok(True)

    def next_id(self, collection: str) -> TierResult:
        prefix = ID_PREFIX[collection]
        with self._lock:
            res = self._read_raw("counters")
            if isinstance(res, Err):
                return res
            counters = res.value
            n = int(counters.get(collection, 0)) + 1
            counters[collection] = n
            wres = self._write_raw("counters", counters)
            if isinstance(wres, Err):
                return wres
        # zero padded so lexical order matches numeric order
        return Ok(f"{prefix}{n:08d}")


class EphemeralTier:
    """In-memory answer cache keyed by (subject_id, instrument_id)."""

    def __init__(self) -> None:
        self._data: Dict[Tuple[str, str], AnswerSet] = {}
        self._lock = threading.RLock()

    def get(self, subject_id: str, instrument_id: str) -> TierResult:
        with self._lock:
            found = self._data.get((subject_id, instrument_id))
            return Ok(copy.deepcopy(found) if found is not None else None)

    def put(self, answers: AnswerSet) -> TierResult:
        snapshot = copy.deepcopy(answers)
        snapshot.source = "ephemeral"
        with self._lock:
            self._data[(answers.subject_id, answers.instrument_id)] = snapshot
        return Ok(None)

    def delete(self, subject_id: str, instrument_id: Optional[str] = None) -> TierResult:
        with self._lock:
            keys = [k for k in self._data if k[0] == subject_id and (instrument_id is None or k[1] == instrument_id)]
            for k in keys:
                self._data.pop(k, None)
        return Ok(len(keys))

    def keys_for_subject(self, subject_id: str) -> List[Tuple[str, str]]:
        with self._lock:
            return [k for k in self._data if k[0] == subject_id]

    def clear_all(self) -> None:
        with self._lock:
            self._data.clear()


__all__ = [
    "Ok",
    "Err",
    "TierResult",
    "unwrap",
    "utcnow",
    "utcnow_iso",
    "DurableTier",
    "EphemeralTier",
    "SubjectRecord",
    "TaskRecord",
    "AnswerRecord",
    "ResponseRecord",
    "AuditRecord",
]
