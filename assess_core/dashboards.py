from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from .instruments import list_instruments
from .subjects import age_group
from .tasks import display_status, select_display_task
from .types import Response, Subject, Task, TaskStatus


def subject_dashboard(subject: Subject, tasks: Iterable[Task], responses: Iterable[Response]) -> Dict[str, Any]:
    """Everything the subject's landing page needs, one card per instrument."""
    tasks = list(tasks)
    responses = list(responses)
    cards: List[Dict[str, Any]] = []
    for ins in list_instruments():
        mine = [t for t in tasks if t.instrument_id == ins.instrument_id]
        shown = select_display_task(mine)
        latest = next((r for r in responses if r.instrument_id == ins.instrument_id), None)
        cards.append(
            {
                "instrument_id": ins.instrument_id,
                "title": ins.title,
                "status": display_status(mine),
                "task": shown,
                "progress_percent": shown.progress_percent if shown is not None else 0.0,
                "latest_response_id": latest.response_id if latest is not None else None,
                "latest_total": latest.total_score if latest is not None else None,
            }
        )
    return {
        "subject": subject,
        "age_group": age_group(subject.age),
        "active_tasks": [t for t in tasks if t.status.active],
        "completed_tasks": [t for t in tasks if t.status is TaskStatus.COMPLETED],
        "instruments": cards,
    }


def clinician_summary(
    subjects: Iterable[Subject],
    tasks: Iterable[Task],
    responses: Iterable[Response],
    now: datetime,
    active_window_days: int = 30,
    completed_recent_days: int = 7,
    recent_limit: int = 5,
) -> Dict[str, Any]:
    subjects = list(subjects)
    tasks = list(tasks)
    by_subject = {s.id: s for s in subjects}
    by_task: Dict[str, Response] = {}
    for r in responses:
        if r.task_id and r.task_id not in by_task:
            by_task[r.task_id] = r

    active_since = now - timedelta(days=active_window_days)
    completed_since = now - timedelta(days=completed_recent_days)
    completed = [t for t in tasks if t.status is TaskStatus.COMPLETED and t.completed_at is not None]
    completed.sort(key=lambda t: (t.completed_at, t.task_id), reverse=True)

    last_seen = {s.id: s.updated_at for s in subjects}
    for t in tasks:
        if t.subject_id in last_seen and t.updated_at > last_seen[t.subject_id]:
            last_seen[t.subject_id] = t.updated_at

    recent: List[Dict[str, Any]] = []
    for t in completed[: max(0, recent_limit)]:
        subj: Optional[Subject] = by_subject.get(t.subject_id)
        resp = by_task.get(t.task_id)
        recent.append(
            {
                "subject_id": t.subject_id,
                "subject_name": subj.display_name if subj is not None else "unknown subject",
                "instrument_id": t.instrument_id,
                "task_id": t.task_id,
                "completed_at": t.completed_at,
                "total_score": resp.total_score if resp is not None else None,
            }
        )

    return {
        "total_subjects": len(subjects),
        "active_subjects": sum(1 for seen in last_seen.values() if seen > active_since),
        "pending_tasks": sum(1 for t in tasks if t.status.active),
        "completed_recently": sum(1 for t in completed if t.completed_at > completed_since),
        "recent_completions": recent,
    }


__all__ = ["subject_dashboard", "clinician_summary"]
