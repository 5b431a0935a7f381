"""Response Archive: one scored submission per completed task."""
from __future__ import annotations

import dataclasses
import logging
from datetime import datetime
from typing import Callable, Dict, List, Mapping, Optional

from .answers import AnswerStore
from .errors import AlreadyCompleted, ResponseNotFound, StorageError, ValidationError
from .instruments import coerce_answers, get_instrument
from .scoring import score
from .storage import DurableTier, record_to_response, response_to_record, unwrap, utcnow
from .tasks import TaskManager
from .types import Response, TaskStatus

log = logging.getLogger(__name__)


def redact_for_subject(resp: Response) -> Response:
    """Subject-facing copy: never clinician notes, no scores when hidden."""
    out = dataclasses.replace(resp, clinician_notes=None)
    if not resp.visible_to_subject:
        out = dataclasses.replace(out, scores=None, total_score=None)
    return out


def _newest_first(responses: List[Response]) -> List[Response]:
    return sorted(responses, key=lambda r: (r.completed_at, r.response_id), reverse=True)


class ResponseArchive:
    def __init__(
        self,
        durable: DurableTier,
        tasks: TaskManager,
        answers: AnswerStore,
        clock: Callable[[], datetime] = utcnow,
        resubmit_policy: str = "accept",
        visible_by_default: bool = True,
    ):
        self.durable = durable
        self.tasks = tasks
        self.answers = answers
        self.resubmit_policy = resubmit_policy
        self.visible_by_default = visible_by_default
        self._clock = clock

    def _all(self) -> Dict[str, Response]:
        records = unwrap(self.durable.load("responses"), "load responses")
        return {key: record_to_response(rec) for key, rec in records.items()}

    def _save(self, resp: Response) -> Response:
        unwrap(
            self.durable.put("responses", resp.response_id, response_to_record(resp)),
            f"save response {resp.response_id}",
        )
        return resp

    def for_task(self, task_id: str) -> List[Response]:
        return _newest_first([r for r in self._all().values() if r.task_id == task_id])

    def get(self, response_id: str) -> Response:
        rec = unwrap(self.durable.get("responses", response_id), f"load response {response_id}")
        if rec is None:
            raise ResponseNotFound(f"response {response_id!r} not found")
        return record_to_response(rec)

    def submit(
        self,
        task_id: str,
        subject_id: str,
        instrument_id: str,
        answers: Mapping[str, object],
        submitted_by: Optional[str] = None,
    ) -> Response:
        """Score the answers, store the response for the task and complete the task.

        Resubmitting the same task overwrites its response under the default
        ``accept`` policy; with ``reject`` it raises AlreadyCompleted.
        """
        task = self.tasks.get_task(task_id)
        if task.subject_id != subject_id:
            raise ValidationError(f"task {task_id} belongs to another subject")
        if task.instrument_id != instrument_id:
            raise ValidationError(f"task {task_id} is for {task.instrument_id}, not {instrument_id}")
        instrument = get_instrument(instrument_id)
        clean = coerce_answers(instrument, answers)

        existing = self.for_task(task_id)
        if self.resubmit_policy == "reject" and (existing or task.status is TaskStatus.COMPLETED):
            raise AlreadyCompleted(f"task {task_id} already has a submitted response")

        result = score(instrument_id, clean)
        now = self._clock()
        if existing:
            prior = existing[0]
            resp = dataclasses.replace(
                prior,
                answers=clean,
                scores=result,
                total_score=result.total,
                completed_at=now,
                submitted_by=submitted_by,
                updated_at=now,
            )
            log.info("response %s for task %s overwritten by resubmission", prior.response_id, task_id)
        else:
            rid = unwrap(self.durable.next_id("responses"), "allocate response id")
            resp = Response(
                response_id=rid,
                task_id=task_id,
                subject_id=subject_id,
                instrument_id=instrument_id,
                answers=clean,
                scores=result,
                total_score=result.total,
                completed_at=now,
                visible_to_subject=self.visible_by_default,
                submitted_by=submitted_by,
                updated_at=now,
            )
        self._save(resp)
        try:
            self.tasks.mark_completed(task_id, now)
        except StorageError:
            log.error(
                "response %s stored but task %s is still open; maintenance will complete it",
                resp.response_id,
                task_id,
            )
            raise
        self.answers.finalize(subject_id, instrument_id, task_id, clean)
        log.info(
            "submitted %s for %s/%s (task %s, total=%s)",
            resp.response_id,
            subject_id,
            instrument_id,
            task_id,
            resp.total_score,
        )
        return resp

    def list_for_subject(self, subject_id: str, redact: bool = False) -> List[Response]:
        out = _newest_first([r for r in self._all().values() if r.subject_id == subject_id])
        if redact:
            out = [redact_for_subject(r) for r in out]
        return out

    def list_all(self) -> List[Response]:
        return _newest_first(list(self._all().values()))

    def update_review(
        self,
        response_id: str,
        visible_to_subject: Optional[bool] = None,
        clinician_notes: Optional[str] = None,
    ) -> Response:
        resp = self.get(response_id)
        changes = {}
        if visible_to_subject is not None:
            changes["visible_to_subject"] = bool(visible_to_subject)
        if clinician_notes is not None:
            changes["clinician_notes"] = clinician_notes.strip() or None
        if not changes:
            return resp
        resp = dataclasses.replace(resp, updated_at=self._clock(), **changes)
        return self._save(resp)


__all__ = ["ResponseArchive", "redact_for_subject"]
