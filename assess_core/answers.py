"""Answer Store: in-progress item answers over the ephemeral and durable tiers.

Writes land in the ephemeral tier first and are then mirrored to the durable
tier, once subject-scoped and, when a task id is known, once more keyed by the
task so distinct attempts never overwrite each other.  Reads resolve
task record -> ephemeral -> subject record -> empty, and never let a sparser
durable copy shadow answers already held in memory.
"""
from __future__ import annotations

import copy
import logging
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .errors import StorageError
from .instruments import coerce_answers, coerce_value, get_instrument
from .storage import (
    AnswerRecord,
    DurableTier,
    EphemeralTier,
    Err,
    Ok,
    TierResult,
    answers_to_record,
    record_to_answers,
    utcnow,
)
from .types import AnswerSet

log = logging.getLogger(__name__)


def _rank(rid: str, rec: AnswerRecord) -> Tuple[int, datetime, str]:
    return (len(rec.items), rec.updated_at, rid)


def pick_best(records: List[Tuple[str, AnswerRecord]]) -> Optional[Tuple[str, AnswerRecord]]:
    """Most items, then newest, then highest record id."""
    if not records:
        return None
    return max(records, key=lambda pair: _rank(*pair))


class AnswerStore:
    def __init__(
        self,
        ephemeral: EphemeralTier,
        durable: DurableTier,
        epoch: Callable[[], int] = lambda: 0,
        clock: Callable[[], datetime] = utcnow,
        deferred: bool = False,
    ):
        self.ephemeral = ephemeral
        self.durable = durable
        self.deferred = deferred
        self.degraded = False
        self._epoch = epoch
        self._clock = clock
        self._queue: List[Tuple[AnswerSet, int]] = []
        self._qlock = threading.Lock()

    # ---- durable lookups ----

    def _durable_matches(self, subject_id: str, instrument_id: str, task_id: Optional[str]) -> TierResult:
        res = self.durable.load("answers")
        if isinstance(res, Err):
            return res
        matches = [
            (rid, rec)
            for rid, rec in res.value.items()
            if rec.subject_id == subject_id and rec.instrument_id == instrument_id and rec.task_id == task_id
        ]
        return Ok(matches)

    def _durable_lookup(self, subject_id: str, instrument_id: str, task_id: Optional[str]) -> Optional[Tuple[str, AnswerRecord]]:
        res = self._durable_matches(subject_id, instrument_id, task_id)
        if isinstance(res, Err):
            log.warning("durable answers unreadable (%s), using memory only: %s", res.kind, res.detail)
            self.degraded = True
            return None
        return pick_best(res.value)

    def _ephemeral_get(self, subject_id: str, instrument_id: str) -> Optional[AnswerSet]:
        res = self.ephemeral.get(subject_id, instrument_id)
        if isinstance(res, Err):
            raise StorageError(f"ephemeral tier: {res.kind} {res.detail}".strip())
        return res.value

    def _ephemeral_put(self, answers: AnswerSet) -> None:
        res = self.ephemeral.put(answers)
        if isinstance(res, Err):
            raise StorageError(f"ephemeral tier: {res.kind} {res.detail}".strip())

    # ---- durable writes ----

    def _upsert(self, answers: AnswerSet, task_id: Optional[str]) -> TierResult:
        scoped = copy.copy(answers)
        scoped.task_id = task_id
        found = self._durable_matches(answers.subject_id, answers.instrument_id, task_id)
        if isinstance(found, Err):
            return found
        best = pick_best(found.value)
        if best is not None:
            rid = best[0]
        else:
            nid = self.durable.next_id("answers")
            if isinstance(nid, Err):
                return nid
            rid = nid.value
        return self.durable.put("answers", rid, answers_to_record(rid, scoped))

    def _write_durable(self, answers: AnswerSet, epoch: int) -> bool:
        if epoch != self._epoch():
            log.warning(
                "dropping stale answer write for %s/%s: session changed",
                answers.subject_id,
                answers.instrument_id,
            )
            return False
        scopes: List[Optional[str]] = [None]
        if answers.task_id:
            scopes.append(answers.task_id)
        ok = True
        for scope in scopes:
            res = self._upsert(answers, scope)
            if isinstance(res, Err):
                ok = False
                self.degraded = True
                log.warning(
                    "durable write failed for %s/%s (task=%s): %s %s; keeping answers in memory",
                    answers.subject_id,
                    answers.instrument_id,
                    scope,
                    res.kind,
                    res.detail,
                )
        if ok and self.degraded:
            log.info("durable tier accepted writes again")
            self.degraded = False
        return ok

    def _schedule(self, answers: AnswerSet, epoch: int) -> None:
        if self.deferred:
            with self._qlock:
                self._queue.append((copy.deepcopy(answers), epoch))
            return
        self._write_durable(answers, epoch)

    @property
    def pending(self) -> int:
        with self._qlock:
            return len(self._queue)

    def flush(self) -> int:
        """Drain queued durable writes; returns how many were applied."""
        with self._qlock:
            queued, self._queue = self._queue, []
        written = 0
        for answers, epoch in queued:
            if self._write_durable(answers, epoch):
                written += 1
        return written

    def discard_pending(self) -> int:
        with self._qlock:
            n = len(self._queue)
            self._queue = []
        return n

    # ---- public operations ----

    def _working_copy(self, subject_id: str, instrument_id: str, task_id: Optional[str]) -> AnswerSet:
        # resolve like a read: task record, memory, subject record
        working = self.get_answers(subject_id, instrument_id, task_id)
        if task_id is not None:
            working.task_id = task_id
        return working

    def set_item(
        self,
        subject_id: str,
        instrument_id: str,
        item_id: str,
        value: Any,
        task_id: Optional[str] = None,
    ) -> AnswerSet:
        instrument = get_instrument(instrument_id)
        val = coerce_value(instrument, item_id, value)
        epoch = self._epoch()
        working = self._working_copy(subject_id, instrument_id, task_id)
        if val is None:
            working.items.pop(item_id, None)
        else:
            working.items[item_id] = val
        working.updated_at = self._clock()
        self._ephemeral_put(working)
        log.debug("answer %s/%s %s=%s (task=%s)", subject_id, instrument_id, item_id, val, working.task_id)
        self._schedule(working, epoch)
        working.source = "ephemeral"
        return working

    def set_items(
        self,
        subject_id: str,
        instrument_id: str,
        items: Mapping[str, Any],
        task_id: Optional[str] = None,
        replace: bool = False,
    ) -> AnswerSet:
        """Bulk write; the whole item map is validated before anything is stored."""
        instrument = get_instrument(instrument_id)
        clean = coerce_answers(instrument, items)
        cleared = [str(k) for k, v in (items or {}).items() if coerce_value(instrument, str(k), v) is None]
        epoch = self._epoch()
        if replace:
            working = AnswerSet(subject_id=subject_id, instrument_id=instrument_id, task_id=task_id)
        else:
            working = self._working_copy(subject_id, instrument_id, task_id)
        for iid in cleared:
            working.items.pop(iid, None)
        working.items.update(clean)
        working.updated_at = self._clock()
        self._ephemeral_put(working)
        self._schedule(working, epoch)
        working.source = "ephemeral"
        return working

    def get_answers(self, subject_id: str, instrument_id: str, task_id: Optional[str] = None) -> AnswerSet:
        get_instrument(instrument_id)
        epoch = self._epoch()
        memory = self._ephemeral_get(subject_id, instrument_id)
        if memory is not None and task_id is not None and memory.task_id not in (None, task_id):
            memory = None

        chosen: Optional[AnswerSet] = None
        if task_id is not None:
            found = self._durable_lookup(subject_id, instrument_id, task_id)
            if found is not None:
                chosen = record_to_answers(found[1], source="task")
        if chosen is None and memory is not None:
            chosen = memory
        if chosen is None:
            found = self._durable_lookup(subject_id, instrument_id, None)
            if found is not None:
                chosen = record_to_answers(found[1], source="subject")
                if task_id is not None:
                    chosen.task_id = task_id
        if chosen is None:
            return AnswerSet(subject_id=subject_id, instrument_id=instrument_id, task_id=task_id)

        if chosen.source != "ephemeral" and memory is not None and len(memory) > len(chosen):
            log.warning(
                "durable copy of %s/%s has %d answers, memory has %d; keeping memory",
                subject_id,
                instrument_id,
                len(chosen),
                len(memory),
            )
            memory.source = "ephemeral"
            if task_id is not None:
                memory.task_id = task_id
            self._schedule(memory, epoch)
            return memory

        if memory is None and not chosen.is_empty and epoch == self._epoch():
            self._ephemeral_put(chosen)
        return chosen

    def clear(self, subject_id: str, instrument_id: Optional[str] = None) -> int:
        """Drop a subject's in-progress answers.

        Removes the ephemeral copies and the subject-scoped durable records.
        Task-bound durable records stay; they belong to an attempt, not to the
        session that produced them.
        """
        res = self.ephemeral.delete(subject_id, instrument_id)
        if isinstance(res, Err):
            raise StorageError(f"ephemeral tier: {res.kind} {res.detail}".strip())
        removed = int(res.value)
        loaded = self.durable.load("answers")
        if isinstance(loaded, Err):
            log.warning("could not clear durable answers for %s: %s %s", subject_id, loaded.kind, loaded.detail)
            return removed
        for rid, rec in loaded.value.items():
            if rec.subject_id != subject_id or rec.task_id is not None:
                continue
            if instrument_id is not None and rec.instrument_id != instrument_id:
                continue
            dres = self.durable.delete("answers", rid)
            if isinstance(dres, Err):
                log.warning("could not delete answer record %s: %s", rid, dres.kind)
            elif dres.value:
                removed += 1
        return removed

    def finalize(self, subject_id: str, instrument_id: str, task_id: str, items: Mapping[str, int]) -> None:
        """Pin the submitted answers to the task and drop the in-progress copies."""
        final = AnswerSet(
            subject_id=subject_id,
            instrument_id=instrument_id,
            items=dict(items),
            task_id=task_id,
            updated_at=self._clock(),
        )
        res = self._upsert(final, task_id)
        if isinstance(res, Err):
            log.warning("could not pin answers to task %s: %s %s", task_id, res.kind, res.detail)
        with self._qlock:
            self._queue = [
                (a, e) for a, e in self._queue
                if not (a.subject_id == subject_id and a.instrument_id == instrument_id)
            ]
        self.clear(subject_id, instrument_id)

    def task_answer_history(self, subject_id: str, instrument_id: str) -> List[Dict[str, Any]]:
        res = self.durable.load("answers")
        if isinstance(res, Err):
            raise StorageError(f"answer history: {res.kind} {res.detail}".strip())
        rows = [
            {
                "record_id": rid,
                "task_id": rec.task_id,
                "item_count": len(rec.items),
                "updated_at": rec.updated_at,
            }
            for rid, rec in res.value.items()
            if rec.subject_id == subject_id and rec.instrument_id == instrument_id and rec.task_id
        ]
        rows.sort(key=lambda r: (r["updated_at"], r["record_id"]), reverse=True)
        return rows

    def ephemeral_counts(self, subject_id: str) -> Dict[str, int]:
        out: Dict[str, int] = {}
        for _sid, iid in self.ephemeral.keys_for_subject(subject_id):
            aset = self._ephemeral_get(subject_id, iid)
            if aset is not None:
                out[iid] = len(aset)
        return out


__all__ = ["AnswerStore", "pick_best"]
