from __future__ import annotations

import dataclasses
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from .errors import SubjectNotFound, ValidationError
from .storage import DurableTier, record_to_subject, subject_to_record, unwrap, utcnow
from .types import Subject

log = logging.getLogger(__name__)

DEMOGRAPHIC_FIELDS: tuple[str, ...] = ("age", "weight_kg", "height_cm")


def age_group(age: Optional[float]) -> str:
    if not age or age <= 0:
        return "unknown"
    if age <= 12:
        return "child"
    if age <= 18:
        return "adolescent"
    if age <= 39:
        return "young_adult"
    return "middle_aged"


def _clean_demographics(values: Dict[str, Any]) -> Dict[str, Optional[float]]:
    out: Dict[str, Optional[float]] = {}
    for key, raw in values.items():
        if key not in DEMOGRAPHIC_FIELDS:
            raise ValidationError(f"unknown demographic field {key!r}")
        if raw is None or (isinstance(raw, str) and not raw.strip()):
            out[key] = None
            continue
        if isinstance(raw, bool):
            raise ValidationError(f"{key} must be a number")
        try:
            num = float(raw)
        except (TypeError, ValueError):
            raise ValidationError(f"{key} must be a number") from None
        if num != num or num < 0:
            raise ValidationError(f"{key} must be a non-negative number")
        out[key] = num
    return out


class SubjectRegistry:
    def __init__(self, durable: DurableTier, clock: Callable[[], datetime] = utcnow):
        self.durable = durable
        self._clock = clock

    def _save(self, subject: Subject) -> Subject:
        unwrap(self.durable.put("subjects", subject.id, subject_to_record(subject)), f"save subject {subject.id}")
        return subject

    def find(self, subject_id: str) -> Optional[Subject]:
        rec = unwrap(self.durable.get("subjects", subject_id), f"load subject {subject_id}")
        return record_to_subject(rec) if rec is not None else None

    def get(self, subject_id: str) -> Subject:
        subject = self.find(subject_id)
        if subject is None:
            raise SubjectNotFound(f"subject {subject_id!r} not found")
        return subject

    def ensure(self, subject_id: str, display_name: Optional[str] = None) -> Tuple[Subject, bool]:
        existing = self.find(subject_id)
        if existing is not None:
            return existing, False
        now = self._clock()
        subject = Subject(id=subject_id, display_name=display_name or subject_id, created_at=now, updated_at=now)
        self._save(subject)
        log.info("created subject record for %s", subject_id)
        return subject, True

    def register(
        self,
        subject_id: str,
        display_name: Optional[str] = None,
        owner_clinician_id: Optional[str] = None,
        **demographics: Any,
    ) -> Subject:
        sid = (subject_id or "").strip()
        if not sid:
            raise ValidationError("subject id is required")
        if self.find(sid) is not None:
            raise ValidationError(f"subject {sid!r} already exists")
        now = self._clock()
        subject = Subject(
            id=sid,
            display_name=(display_name or "").strip() or sid,
            created_at=now,
            updated_at=now,
            owner_clinician_id=owner_clinician_id,
            **_clean_demographics(demographics),
        )
        self._save(subject)
        log.info("registered subject %s (owner=%s)", sid, owner_clinician_id)
        return subject

    def update(self, subject_id: str, display_name: Optional[str] = None, **demographics: Any) -> Subject:
        subject = self.get(subject_id)
        changes: Dict[str, Any] = dict(_clean_demographics(demographics))
        if display_name is not None and display_name.strip():
            changes["display_name"] = display_name.strip()
        if not changes:
            return subject
        return self._save(dataclasses.replace(subject, updated_at=self._clock(), **changes))

    def assign_owner(self, subject_id: str, clinician_id: Optional[str]) -> Subject:
        subject = self.get(subject_id)
        return self._save(dataclasses.replace(subject, owner_clinician_id=clinician_id, updated_at=self._clock()))

    def list_all(self) -> List[Subject]:
        records = unwrap(self.durable.load("subjects"), "load subjects")
        out = [record_to_subject(rec) for rec in records.values()]
        out.sort(key=lambda s: (s.updated_at, s.id), reverse=True)
        return out

    def search(self, query: str) -> List[Subject]:
        q = (query or "").strip().lower()
        if not q:
            return self.list_all()
        return [s for s in self.list_all() if q in s.id.lower() or q in s.display_name.lower()]


__all__ = ["SubjectRegistry", "age_group", "DEMOGRAPHIC_FIELDS"]
