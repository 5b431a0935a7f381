"""AssessmentStore: the handle callers hold for every store operation.

Build one at startup, pass the Session returned by ``login`` into each call,
and ``close()`` it on shutdown.  Nothing here is module-global.
"""
from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from . import config as cfgmod
from .answers import AnswerStore
from .archive import ResponseArchive, redact_for_subject
from .audit import AuditTrail, to_csv, to_json
from .dashboards import clinician_summary, subject_dashboard
from .errors import AlreadyCompleted, Forbidden, NotFound, StorageError, Unauthorized, ValidationError
from .instruments import coerce_answers, completion_percent, get_instrument
from .reconcile import reconcile, validate_subject_data
from .scoring import score
from .session import SessionGuard
from .storage import DurableTier, EphemeralTier, utcnow
from .subjects import SubjectRegistry
from .tasks import TaskManager
from .types import AnswerSet, AuditEvent, MaintenanceReport, Response, Role, ScoreResult, Session, Subject, Task, TaskOrigin

log = logging.getLogger(__name__)


class AssessmentStore:
    def __init__(
        self,
        data_dir: Union[str, Path, None] = None,
        config: Optional[Mapping[str, Any]] = None,
        clock: Callable[[], datetime] = utcnow,
        **overrides: Any,
    ):
        cfg = cfgmod.defaults()
        cfg.update({str(k).upper(): v for k, v in (config or {}).items()})
        cfg.update({str(k).upper(): v for k, v in overrides.items()})
        if data_dir is not None:
            cfg["DATA_DIR"] = str(data_dir)
        if cfg.get("RESUBMIT_POLICY") not in cfgmod.RESUBMIT_POLICIES:
            raise ValidationError(f"unknown resubmit policy {cfg.get('RESUBMIT_POLICY')!r}")
        self.config = cfg
        self._clock = clock
        self._closed = False

        self.durable = DurableTier(cfg["DATA_DIR"])
        self.ephemeral = EphemeralTier()
        self.guard = SessionGuard(int(cfg["SESSION_IDLE_TIMEOUT_SEC"]), clock=clock)
        self.answers = AnswerStore(
            self.ephemeral,
            self.durable,
            epoch=lambda: self.guard.epoch,
            clock=clock,
            deferred=bool(cfg["DEFERRED_DURABLE_WRITES"]),
        )
        self.tasks = TaskManager(self.durable, int(cfg["TASK_REUSE_WINDOW_SEC"]), clock=clock)
        self.archive = ResponseArchive(
            self.durable,
            self.tasks,
            self.answers,
            clock=clock,
            resubmit_policy=str(cfg["RESUBMIT_POLICY"]),
            visible_by_default=bool(cfg["RESPONSES_VISIBLE_BY_DEFAULT"]),
        )
        self.subjects = SubjectRegistry(self.durable, clock=clock)
        self.audit = AuditTrail(self.durable, enabled=bool(cfg["AUDIT_ENABLED"]), clock=clock)
        log.info("assessment store opened at %s", self.durable.root)

    # ---- lifecycle ----

    def _check_open(self) -> None:
        if self._closed:
            raise StorageError("store is closed")

    def flush(self) -> int:
        self._check_open()
        return self.answers.flush()

    def close(self) -> None:
        if self._closed:
            return
        self.answers.flush()
        self.ephemeral.clear_all()
        self.guard.end()
        self._closed = True
        log.info("assessment store closed")

    def __enter__(self) -> "AssessmentStore":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    # ---- sessions ----

    def _release(self, prior: Session) -> None:
        # let queued writes of the outgoing session land before its keyspace goes
        self.answers.flush()
        if prior.role is Role.SUBJECT:
            self.answers.clear(prior.actor_id)
        self.ephemeral.clear_all()

    def login(self, actor_id: str, role: Union[Role, str], display_name: Optional[str] = None) -> Session:
        self._check_open()
        prior = self.guard.current
        if prior is not None and prior.actor_id != (actor_id or "").strip():
            self._release(prior)
        else:
            self.answers.flush()
        sess = self.guard.authenticate(actor_id, role)
        if sess.role is Role.SUBJECT:
            self.subjects.ensure(sess.actor_id, display_name)
        self.audit.record(sess, "login", "session", sess.session_id)
        return sess

    def logout(self, session: Optional[Session] = None) -> Optional[Session]:
        self._check_open()
        prior = self.guard.current
        if prior is None:
            return None
        if session is not None and session.session_id != prior.session_id:
            log.info("logout for an inactive session ignored")
            return None
        self._release(prior)
        self.guard.end()
        self.audit.record(prior, "logout", "session", prior.session_id)
        return prior

    def current_session(self, session_id: str) -> Session:
        self._check_open()
        sess = self.guard.current
        if sess is None or sess.session_id != session_id:
            raise Unauthorized("unknown or inactive session")
        return self.guard.validate(sess)

    def _access(self, session: Optional[Session], subject_id: str) -> Session:
        self._check_open()
        return self.guard.require_access(session, subject_id)

    def _clinician(self, session: Optional[Session]) -> Session:
        self._check_open()
        return self.guard.require_clinician(session)

    # ---- subjects ----

    def register_subject(
        self,
        session: Session,
        subject_id: str,
        display_name: Optional[str] = None,
        **demographics: Any,
    ) -> Subject:
        sess = self._clinician(session)
        subject = self.subjects.register(subject_id, display_name, owner_clinician_id=sess.actor_id, **demographics)
        self.audit.record(sess, "create", "subject", subject.id)
        return subject

    def get_subject(self, session: Session, subject_id: str) -> Subject:
        self._access(session, subject_id)
        return self.subjects.get(subject_id)

    def update_subject(self, session: Session, subject_id: str, display_name: Optional[str] = None, **demographics: Any) -> Subject:
        sess = self._access(session, subject_id)
        subject = self.subjects.update(subject_id, display_name, **demographics)
        self.audit.record(sess, "update", "subject", subject_id, {"fields": sorted(demographics)})
        return subject

    def assign_owner(self, session: Session, subject_id: str, clinician_id: Optional[str] = None) -> Subject:
        sess = self._clinician(session)
        subject = self.subjects.assign_owner(subject_id, clinician_id or sess.actor_id)
        self.audit.record(sess, "assign_owner", "subject", subject_id, {"owner": subject.owner_clinician_id})
        return subject

    def list_subjects(self, session: Session) -> List[Subject]:
        self._clinician(session)
        return self.subjects.list_all()

    def search_subjects(self, session: Session, query: str) -> List[Subject]:
        self._clinician(session)
        return self.subjects.search(query)

    # ---- tasks ----

    def get_or_create_task(
        self,
        session: Session,
        subject_id: str,
        instrument_id: str,
        origin: Union[TaskOrigin, str, None] = None,
    ) -> Task:
        sess = self._access(session, subject_id)
        if origin is None:
            origin = TaskOrigin.CLINICIAN_ASSIGNED if sess.is_clinician else TaskOrigin.SUBJECT_INITIATED
        if sess.is_clinician:
            self.subjects.get(subject_id)
        task, created = self.tasks.get_or_create_task(
            subject_id,
            instrument_id,
            origin,
            assigned_by=sess.actor_id if sess.is_clinician else None,
        )
        if created:
            self.audit.record(sess, "create", "task", task.task_id, {"instrument_id": instrument_id})
        return task

    def _owned_task(self, sess: Session, task_id: str) -> Task:
        task = self.tasks.get_task(task_id)
        if not sess.is_clinician and task.subject_id != sess.actor_id:
            raise Forbidden("subjects may only access their own tasks")
        return task

    def start_task(self, session: Session, task_id: str) -> Task:
        self._check_open()
        sess = self.guard.validate(session)
        self._owned_task(sess, task_id)
        return self.tasks.mark_in_progress(task_id)

    def list_tasks(self, session: Session, subject_id: str) -> List[Task]:
        self._access(session, subject_id)
        return self.tasks.list_for_subject(subject_id)

    # ---- answers ----

    def _bound_task(self, task_id: str, subject_id: str, instrument_id: str) -> Optional[Task]:
        try:
            task = self.tasks.get_task(task_id)
        except StorageError as exc:
            log.warning("task %s unreadable, accepting answers unchecked: %s", task_id, exc)
            return None
        if task.subject_id != subject_id or task.instrument_id != instrument_id:
            raise ValidationError(f"task {task_id} is not {subject_id}/{instrument_id}")
        if not task.status.active:
            raise AlreadyCompleted(f"task {task_id} is already completed")
        return task

    def _track_progress(self, task_id: Optional[str], answers: AnswerSet) -> None:
        if not task_id:
            return
        pct = completion_percent(get_instrument(answers.instrument_id), answers.items)
        try:
            self.tasks.mark_in_progress(task_id, pct)
        except StorageError as exc:
            log.warning("progress of task %s not saved, answers kept: %s", task_id, exc)

    def set_answer(
        self,
        session: Session,
        subject_id: str,
        instrument_id: str,
        item_id: str,
        value: Any,
        task_id: Optional[str] = None,
    ) -> AnswerSet:
        self._access(session, subject_id)
        if task_id:
            self._bound_task(task_id, subject_id, instrument_id)
        answers = self.answers.set_item(subject_id, instrument_id, item_id, value, task_id)
        self._track_progress(task_id, answers)
        return answers

    def set_answers(
        self,
        session: Session,
        subject_id: str,
        instrument_id: str,
        items: Mapping[str, Any],
        task_id: Optional[str] = None,
    ) -> AnswerSet:
        self._access(session, subject_id)
        if task_id:
            self._bound_task(task_id, subject_id, instrument_id)
        answers = self.answers.set_items(subject_id, instrument_id, items, task_id)
        self._track_progress(task_id, answers)
        return answers

    def get_answers(self, session: Session, subject_id: str, instrument_id: str, task_id: Optional[str] = None) -> AnswerSet:
        self._access(session, subject_id)
        return self.answers.get_answers(subject_id, instrument_id, task_id)

    def task_answer_history(self, session: Session, subject_id: str, instrument_id: str) -> List[Dict[str, Any]]:
        self._access(session, subject_id)
        return self.answers.task_answer_history(subject_id, instrument_id)

    # ---- scoring and responses ----

    def compute_score(self, session: Session, instrument_id: str, answers: Mapping[str, Any]) -> ScoreResult:
        self._check_open()
        self.guard.validate(session)
        clean = coerce_answers(get_instrument(instrument_id), answers)
        return score(instrument_id, clean)

    def submit_response(
        self,
        session: Session,
        task_id: str,
        subject_id: str,
        instrument_id: str,
        answers: Optional[Mapping[str, Any]] = None,
    ) -> Response:
        sess = self._access(session, subject_id)
        if answers is None:
            answers = self.answers.get_answers(subject_id, instrument_id, task_id).items
        resp = self.archive.submit(task_id, subject_id, instrument_id, answers, submitted_by=sess.actor_id)
        self.audit.record(sess, "submit", "response", resp.response_id, {"task_id": task_id, "total": resp.total_score})
        return resp

    def list_responses(self, session: Session, subject_id: str) -> List[Response]:
        sess = self._access(session, subject_id)
        return self.archive.list_for_subject(subject_id, redact=not sess.is_clinician)

    def get_response(self, session: Session, response_id: str) -> Response:
        self._check_open()
        resp = self.archive.get(response_id)
        sess = self.guard.require_access(session, resp.subject_id)
        return resp if sess.is_clinician else redact_for_subject(resp)

    def review_response(
        self,
        session: Session,
        response_id: str,
        visible_to_subject: Optional[bool] = None,
        clinician_notes: Optional[str] = None,
    ) -> Response:
        sess = self._clinician(session)
        resp = self.archive.update_review(response_id, visible_to_subject, clinician_notes)
        self.audit.record(
            sess,
            "review",
            "response",
            response_id,
            {"visible_to_subject": resp.visible_to_subject, "notes": clinician_notes is not None},
        )
        return resp

    # ---- maintenance ----

    def run_maintenance(self, session: Session, subject_id: Optional[str] = None) -> MaintenanceReport:
        self._check_open()
        sess = self.guard.validate(session)
        if not sess.is_clinician:
            if subject_id not in (None, sess.actor_id):
                raise Forbidden("subjects may only maintain their own data")
            subject_id = sess.actor_id
        self.answers.flush()
        report = reconcile(self.durable, subject_id, float(self.config["RESPONSE_DEDUP_TOLERANCE_SEC"]))
        self.audit.record(sess, "maintenance", "store", subject_id, report.to_dict())
        return report

    def validate_subject_data(self, session: Session, subject_id: str) -> dict:
        self._access(session, subject_id)
        return validate_subject_data(self.answers, subject_id, int(self.config["TIER_MISMATCH_TOLERANCE"]))

    # ---- dashboards and audit ----

    def subject_dashboard(self, session: Session, subject_id: str) -> Dict[str, Any]:
        sess = self._access(session, subject_id)
        subject = self.subjects.get(subject_id)
        responses = self.archive.list_for_subject(subject_id, redact=not sess.is_clinician)
        return subject_dashboard(subject, self.tasks.list_for_subject(subject_id), responses)

    def clinician_summary(self, session: Session) -> Dict[str, Any]:
        self._clinician(session)
        return clinician_summary(
            self.subjects.list_all(),
            self.tasks.list_all(),
            self.archive.list_all(),
            now=self._clock(),
            active_window_days=int(self.config["ACTIVE_SUBJECT_WINDOW_DAYS"]),
            completed_recent_days=int(self.config["COMPLETED_RECENT_DAYS"]),
            recent_limit=int(self.config["RECENT_COMPLETIONS_LIMIT"]),
        )

    def audit_events(self, session: Session, actor_id: Optional[str] = None, action: Optional[str] = None) -> List[AuditEvent]:
        self._clinician(session)
        return self.audit.events(actor_id=actor_id, action=action)

    def export_audit(self, session: Session, fmt: str = "json") -> Union[Dict[str, Any], str]:
        events = self.audit_events(session)
        if not self.config["AUDIT_EXPORT_ENABLED"]:
            raise NotFound("audit export disabled")
        if fmt == "csv":
            return to_csv(events)
        if fmt == "json":
            return to_json(events)
        raise ValidationError(f"unknown export format {fmt!r}")


__all__ = ["AssessmentStore"]
