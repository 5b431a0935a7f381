from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Union

from .errors import AlreadyCompleted, TaskNotFound, ValidationError
from .instruments import get_instrument
from .storage import DurableTier, record_to_task, task_to_record, unwrap, utcnow
from .types import Task, TaskOrigin, TaskStatus

log = logging.getLogger(__name__)


def coerce_origin(origin: Union[TaskOrigin, str]) -> TaskOrigin:
    if isinstance(origin, TaskOrigin):
        return origin
    raw = str(origin or "").strip().lower()
    # labels sent by older clients
    aliases = {"patient_self": TaskOrigin.SUBJECT_INITIATED, "doctor_assigned": TaskOrigin.CLINICIAN_ASSIGNED}
    if raw in aliases:
        return aliases[raw]
    try:
        return TaskOrigin(raw)
    except ValueError:
        raise ValidationError(f"unknown task origin {origin!r}") from None


def _newest_key(t: Task) -> Tuple[datetime, str]:
    return (t.created_at, t.task_id)


def newest(tasks: Iterable[Task]) -> Optional[Task]:
    tasks = list(tasks)
    return max(tasks, key=_newest_key) if tasks else None


def select_display_task(tasks: Iterable[Task]) -> Optional[Task]:
    """Newest active task, else newest completed one, else None ("not started")."""
    tasks = list(tasks)
    active = newest(t for t in tasks if t.status.active)
    if active is not None:
        return active
    return newest(t for t in tasks if t.status is TaskStatus.COMPLETED)


def display_status(tasks: Iterable[Task]) -> str:
    chosen = select_display_task(tasks)
    return chosen.status.value if chosen is not None else TaskStatus.NOT_STARTED.value


class TaskManager:
    def __init__(
        self,
        durable: DurableTier,
        reuse_window_sec: int = 3600,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.durable = durable
        self.reuse_window = timedelta(seconds=max(0, int(reuse_window_sec)))
        self._clock = clock
        self._lock = threading.RLock()

    def _all(self) -> Dict[str, Task]:
        records = unwrap(self.durable.load("tasks"), "load tasks")
        return {key: record_to_task(rec) for key, rec in records.items()}

    def _save(self, task: Task) -> Task:
        unwrap(self.durable.put("tasks", task.task_id, task_to_record(task)), f"save task {task.task_id}")
        return task

    def get_task(self, task_id: str) -> Task:
        rec = unwrap(self.durable.get("tasks", task_id), f"load task {task_id}")
        if rec is None:
            raise TaskNotFound(f"task {task_id!r} not found")
        return record_to_task(rec)

    def tasks_for(self, subject_id: str, instrument_id: Optional[str] = None) -> List[Task]:
        out = [
            t for t in self._all().values()
            if t.subject_id == subject_id and (instrument_id is None or t.instrument_id == instrument_id)
        ]
        out.sort(key=_newest_key, reverse=True)
        return out

    def list_for_subject(self, subject_id: str) -> List[Task]:
        return self.tasks_for(subject_id)

    def list_all(self) -> List[Task]:
        out = list(self._all().values())
        out.sort(key=_newest_key, reverse=True)
        return out

    def _reusable(self, tasks: List[Task], now: datetime) -> Optional[Task]:
        recent = [t for t in tasks if t.status.active and now - t.created_at <= self.reuse_window]
        return newest(recent)

    def get_or_create_task(
        self,
        subject_id: str,
        instrument_id: str,
        origin: Union[TaskOrigin, str] = TaskOrigin.SUBJECT_INITIATED,
        assigned_by: Optional[str] = None,
    ) -> Tuple[Task, bool]:
        """Return the subject's active task for the instrument, creating one if needed.

        Completed tasks are never reused. The second element of the result is
        True when a new task was created.
        """
        get_instrument(instrument_id)
        org = coerce_origin(origin)

        active = newest(t for t in self.tasks_for(subject_id, instrument_id) if t.status.active)
        if active is not None:
            log.info("reusing active task %s for %s/%s", active.task_id, subject_id, instrument_id)
            return active, False

        with self._lock:
            now = self._clock()
            # a concurrent caller may have created one since the read above
            recent = self._reusable(self.tasks_for(subject_id, instrument_id), now)
            if recent is not None:
                log.info("reusing task %s created %s ago", recent.task_id, now - recent.created_at)
                return recent, False

            task_id = unwrap(self.durable.next_id("tasks"), "allocate task id")
            task = Task(
                task_id=task_id,
                subject_id=subject_id,
                instrument_id=instrument_id,
                origin=org,
                status=TaskStatus.NOT_STARTED,
                created_at=now,
                updated_at=now,
                assigned_by=assigned_by,
            )
            self._save(task)
        log.info("created task %s for %s/%s (%s)", task.task_id, subject_id, instrument_id, org.value)
        return task, True

    def mark_in_progress(self, task_id: str, progress: Optional[float] = None) -> Task:
        with self._lock:
            task = self.get_task(task_id)
            if task.status is TaskStatus.COMPLETED:
                log.debug("task %s already completed; progress update ignored", task_id)
                return task
            changed = False
            if task.status is TaskStatus.NOT_STARTED:
                task.status = TaskStatus.IN_PROGRESS
                changed = True
            if progress is not None:
                pct = max(0.0, min(100.0, float(progress)))
                if pct > task.progress_percent:
                    task.progress_percent = pct
                    changed = True
                elif pct < task.progress_percent:
                    log.debug("task %s progress %.1f below recorded %.1f; kept", task_id, pct, task.progress_percent)
            if not changed:
                return task
            task.updated_at = self._clock()
            return self._save(task)

    def mark_completed(self, task_id: str, when: Optional[datetime] = None) -> Task:
        with self._lock:
            task = self.get_task(task_id)
            if task.status is TaskStatus.COMPLETED:
                return task
            now = when or self._clock()
            task.status = TaskStatus.COMPLETED
            task.progress_percent = 100.0
            task.completed_at = now
            task.updated_at = now
            self._save(task)
        log.info("task %s completed", task_id)
        return task

    def require_open(self, task_id: str) -> Task:
        task = self.get_task(task_id)
        if task.status is TaskStatus.COMPLETED:
            raise AlreadyCompleted(f"task {task_id} is already completed")
        return task


__all__ = [
    "TaskManager",
    "coerce_origin",
    "select_display_task",
    "display_status",
    "newest",
]
