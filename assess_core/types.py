from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Any


class Role(str, Enum):
    SUBJECT = "subject"
    CLINICIAN = "clinician"


class TaskOrigin(str, Enum):
    CLINICIAN_ASSIGNED = "clinician_assigned"
    SUBJECT_INITIATED = "subject_initiated"


class TaskStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"

    @property
    def active(self) -> bool:
        return self is not TaskStatus.COMPLETED

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]


_STATUS_RANK = {
    TaskStatus.NOT_STARTED: 0,
    TaskStatus.IN_PROGRESS: 1,
    TaskStatus.COMPLETED: 2,
}


@dataclass
class Session:
    session_id: str
    actor_id: str
    role: Role
    started_at: datetime
    last_activity_at: datetime

    @property
    def is_clinician(self) -> bool:
        return self.role is Role.CLINICIAN


@dataclass
class Subject:
    id: str
    display_name: str
    created_at: datetime
    updated_at: datetime
    age: Optional[float] = None
    weight_kg: Optional[float] = None
    height_cm: Optional[float] = None
    owner_clinician_id: Optional[str] = None


@dataclass
class Task:
    task_id: str
    subject_id: str
    instrument_id: str
    origin: TaskOrigin
    status: TaskStatus
    created_at: datetime
    updated_at: datetime
    progress_percent: float = 0.0
    assigned_by: Optional[str] = None
    completed_at: Optional[datetime] = None


@dataclass
class AnswerSet:
    subject_id: str
    instrument_id: str
    items: Dict[str, int] = field(default_factory=dict)
    task_id: Optional[str] = None
    updated_at: Optional[datetime] = None
    # tier the view was resolved from: "task", "ephemeral", "subject", "empty"
    source: str = "empty"

    def __len__(self) -> int:
        return len(self.items)

    @property
    def is_empty(self) -> bool:
        return not self.items


@dataclass
class DomainScore:
    score: float
    max_possible: float
    percent: float


@dataclass
class ScoreResult:
    instrument_id: str
    aggregation: str
    domain_scores: Dict[str, Optional[DomainScore]]
    total: Optional[float]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instrument_id": self.instrument_id,
            "aggregation": self.aggregation,
            "domain_scores": {
                k: (None if v is None else {"score": v.score, "max_possible": v.max_possible, "percent": v.percent})
                for k, v in self.domain_scores.items()
            },
            "total": self.total,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "ScoreResult":
        domains: Dict[str, Optional[DomainScore]] = {}
        for key, val in (data.get("domain_scores") or {}).items():
            domains[key] = None if val is None else DomainScore(
                score=float(val["score"]),
                max_possible=float(val["max_possible"]),
                percent=float(val["percent"]),
            )
        total = data.get("total")
        return ScoreResult(
            instrument_id=str(data.get("instrument_id", "")),
            aggregation=str(data.get("aggregation", "")),
            domain_scores=domains,
            total=None if total is None else float(total),
        )


@dataclass
class Response:
    response_id: str
    task_id: Optional[str]
    subject_id: str
    instrument_id: str
    answers: Dict[str, int]
    scores: Optional[ScoreResult]
    total_score: Optional[float]
    completed_at: datetime
    visible_to_subject: bool = True
    clinician_notes: Optional[str] = None
    submitted_by: Optional[str] = None
    updated_at: Optional[datetime] = None


@dataclass
class AuditEvent:
    t: datetime
    actor_id: str
    role: str
    action: str
    resource_type: str
    resource_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class MaintenanceReport:
    issues_found: int = 0
    issues_resolved: int = 0
    answer_duplicates: int = 0
    response_duplicates: int = 0
    deleted_answer_ids: List[str] = field(default_factory=list)
    deleted_response_ids: List[str] = field(default_factory=list)
    completed_task_ids: List[str] = field(default_factory=list)
    conflicts: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "issuesFound": self.issues_found,
            "issuesResolved": self.issues_resolved,
            "answerDuplicates": self.answer_duplicates,
            "responseDuplicates": self.response_duplicates,
            "deletedAnswerIds": list(self.deleted_answer_ids),
            "deletedResponseIds": list(self.deleted_response_ids),
            "completedTaskIds": list(self.completed_task_ids),
            "conflicts": list(self.conflicts),
        }
