"""Maintenance pass: collapse duplicate durable answer and response records.

Answer records are grouped by (subject, instrument, task); task-bound and
in-progress records are different attempts and never merged with each other.
Responses sharing a task id are duplicates; a task-less response is a
duplicate of a task-bound one for the same subject and instrument completed
within the tolerance window, and task-less responses chained within the window
collapse to their newest member.  Tasks left open although a response for
them was stored are completed.  Every group keeps one record, so running the
pass twice changes nothing the second time.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from datetime import timedelta
from typing import Dict, List, Optional, Tuple

from .answers import AnswerStore, pick_best
from .errors import ConflictDetected
from .storage import DurableTier, Err, record_to_response, record_to_task, task_to_record, unwrap
from .types import MaintenanceReport, Response, TaskStatus

log = logging.getLogger(__name__)


def _delete(durable: DurableTier, collection: str, key: str) -> bool:
    res = durable.delete(collection, key)
    if isinstance(res, Err):
        log.warning("could not delete %s %s: %s %s", collection, key, res.kind, res.detail)
        return False
    return True


def _conflict(report: MaintenanceReport, kind: str, key: tuple, kept: str, dropped: List[str]) -> None:
    conflict = ConflictDetected(kind, key, kept, dropped)
    log.warning("%s", conflict.detail)
    report.conflicts.append(conflict.detail)
    report.issues_found += len(dropped)


def _response_rank(r: Response) -> Tuple:
    return (r.completed_at, r.response_id)


def _answer_duplicates(durable: DurableTier, subject_id: Optional[str], report: MaintenanceReport) -> None:
    records = unwrap(durable.load("answers"), "load answers")
    groups: Dict[tuple, list] = defaultdict(list)
    for rid, rec in records.items():
        if subject_id is not None and rec.subject_id != subject_id:
            continue
        groups[(rec.subject_id, rec.instrument_id, rec.task_id)].append((rid, rec))

    for key in sorted(groups, key=lambda k: (k[0], k[1], k[2] or "")):
        members = groups[key]
        if len(members) < 2:
            continue
        keep_id, keep = pick_best(members)  # type: ignore[misc]
        dropped = sorted(rid for rid, _ in members if rid != keep_id)
        _conflict(report, "answer", key, keep_id, dropped)
        log.info("keeping answer record %s with %d items", keep_id, len(keep.items))
        for rid in dropped:
            if _delete(durable, "answers", rid):
                report.answer_duplicates += 1
                report.issues_resolved += 1
                report.deleted_answer_ids.append(rid)


def _response_duplicates(
    durable: DurableTier,
    subject_id: Optional[str],
    tolerance: timedelta,
    report: MaintenanceReport,
) -> None:
    records = unwrap(durable.load("responses"), "load responses")
    responses = [record_to_response(rec) for rec in records.values()]
    if subject_id is not None:
        responses = [r for r in responses if r.subject_id == subject_id]

    to_drop: List[str] = []

    by_task: Dict[str, List[Response]] = defaultdict(list)
    taskless: Dict[tuple, List[Response]] = defaultdict(list)
    for r in responses:
        if r.task_id:
            by_task[r.task_id].append(r)
        else:
            taskless[(r.subject_id, r.instrument_id)].append(r)

    kept_tasked: Dict[tuple, List[Response]] = defaultdict(list)
    for task_id in sorted(by_task):
        members = by_task[task_id]
        keep = max(members, key=_response_rank)
        kept_tasked[(keep.subject_id, keep.instrument_id)].append(keep)
        if len(members) > 1:
            dropped = sorted(r.response_id for r in members if r is not keep)
            _conflict(report, "response", (task_id,), keep.response_id, dropped)
            to_drop.extend(dropped)

    for key in sorted(taskless):
        members = sorted(taskless[key], key=_response_rank)
        survivors: List[Response] = []
        for r in members:
            shadow = next(
                (t for t in kept_tasked.get(key, []) if abs(t.completed_at - r.completed_at) <= tolerance),
                None,
            )
            if shadow is not None:
                _conflict(report, "response", key, shadow.response_id, [r.response_id])
                to_drop.append(r.response_id)
            else:
                survivors.append(r)

        cluster: List[Response] = []
        for r in survivors + [None]:  # type: ignore[list-item]
            if r is not None and (not cluster or r.completed_at - cluster[-1].completed_at <= tolerance):
                cluster.append(r)
                continue
            if len(cluster) > 1:
                keep = max(cluster, key=_response_rank)
                dropped = sorted(c.response_id for c in cluster if c is not keep)
                _conflict(report, "response", key, keep.response_id, dropped)
                to_drop.extend(dropped)
            cluster = [r] if r is not None else []

    for rid in to_drop:
        if _delete(durable, "responses", rid):
            report.response_duplicates += 1
            report.issues_resolved += 1
            report.deleted_response_ids.append(rid)


def _orphaned_completions(durable: DurableTier, subject_id: Optional[str], report: MaintenanceReport) -> None:
    """Complete tasks that already have a stored response but were left open."""
    responses = unwrap(durable.load("responses"), "load responses")
    latest: Dict[str, Response] = {}
    for rec in responses.values():
        r = record_to_response(rec)
        if not r.task_id or (subject_id is not None and r.subject_id != subject_id):
            continue
        if r.task_id not in latest or _response_rank(r) > _response_rank(latest[r.task_id]):
            latest[r.task_id] = r

    tasks = unwrap(durable.load("tasks"), "load tasks")
    for task_id in sorted(latest):
        rec = tasks.get(task_id)
        if rec is None:
            continue
        task = record_to_task(rec)
        if task.status is TaskStatus.COMPLETED:
            continue
        report.issues_found += 1
        done = latest[task_id].completed_at
        task.status = TaskStatus.COMPLETED
        task.progress_percent = 100.0
        task.completed_at = done
        task.updated_at = max(task.updated_at, done)
        res = durable.put("tasks", task_id, task_to_record(task))
        if isinstance(res, Err):
            log.warning("could not complete task %s: %s %s", task_id, res.kind, res.detail)
            continue
        log.warning("task %s had response %s but was still open; completed", task_id, latest[task_id].response_id)
        report.issues_resolved += 1
        report.completed_task_ids.append(task_id)


def reconcile(durable: DurableTier, subject_id: Optional[str] = None, tolerance_sec: float = 5.0) -> MaintenanceReport:
    report = MaintenanceReport()
    _answer_duplicates(durable, subject_id, report)
    _response_duplicates(durable, subject_id, timedelta(seconds=max(0.0, float(tolerance_sec))), report)
    _orphaned_completions(durable, subject_id, report)
    log.info(
        "maintenance%s: %d issues found, %d resolved",
        f" for {subject_id}" if subject_id else "",
        report.issues_found,
        report.issues_resolved,
    )
    return report


def validate_subject_data(answers: AnswerStore, subject_id: str, mismatch_tolerance: int = 5) -> dict:
    """Compare what the two tiers hold for a subject's in-progress answers."""
    issues: List[str] = []
    memory = answers.ephemeral_counts(subject_id)
    records = unwrap(answers.durable.load("answers"), "load answers")

    durable: Dict[str, List[int]] = defaultdict(list)
    for rec in records.values():
        if rec.subject_id == subject_id and rec.task_id is None:
            durable[rec.instrument_id].append(len(rec.items))

    instruments = {}
    for iid in sorted(set(memory) | set(durable)):
        counts = durable.get(iid, [])
        if len(counts) > 1:
            issues.append(f"multiple durable {iid} records ({len(counts)})")
        mem_n = memory.get(iid, 0)
        dur_n = max(counts) if counts else 0
        if mem_n and not counts:
            issues.append(f"{iid} answers only in memory")
        elif dur_n and not mem_n:
            issues.append(f"{iid} answers only in durable tier")
        elif abs(mem_n - dur_n) > mismatch_tolerance:
            issues.append(f"{iid} answer counts differ: memory {mem_n}, durable {dur_n}")
        instruments[iid] = {"ephemeral": mem_n, "durable": dur_n}

    return {"subject_id": subject_id, "instruments": instruments, "issues": issues}


__all__ = ["reconcile", "validate_subject_data"]
