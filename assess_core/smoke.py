from __future__ import annotations

import logging
import tempfile
from typing import Dict

from .config import DEFERRED_DURABLE_WRITES
from .instruments import get_instrument
from .store import AssessmentStore
from .types import Role


def _scripted_answers(instrument_id: str) -> Dict[str, int]:
    ins = get_instrument(instrument_id)
    vd = ins.value_domain
    span = vd.high - vd.low + 1
    return {iid: vd.low + (idx % span) for idx, iid in enumerate(ins.item_ids)}


def run_smoke_session(data_dir: str | None = None) -> dict:
    logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(message)s")
    tmp = None
    if data_dir is None:
        tmp = tempfile.TemporaryDirectory(prefix="assess_smoke_")
        data_dir = tmp.name

    totals: dict = {}
    try:
        with AssessmentStore(data_dir, DEFERRED_DURABLE_WRITES=DEFERRED_DURABLE_WRITES) as store:
            doc = store.login("dr-smoke", Role.CLINICIAN)
            store.register_subject(doc, "p-smoke", "Smoke Subject", age=34)
            for instrument_id in ("hal", "haemqol", "gad7_phq9"):
                store.get_or_create_task(doc, "p-smoke", instrument_id)

            me = store.login("p-smoke", Role.SUBJECT)
            for task in store.list_tasks(me, "p-smoke"):
                answers = _scripted_answers(task.instrument_id)
                for item_id, value in answers.items():
                    store.set_answer(me, "p-smoke", task.instrument_id, item_id, value, task.task_id)
                store.flush()
                resp = store.submit_response(me, task.task_id, "p-smoke", task.instrument_id)
                totals[task.instrument_id] = resp.total_score
                logging.info("%s total=%s", task.instrument_id, resp.total_score)
                for key, ds in (resp.scores.domain_scores.items() if resp.scores else []):
                    if ds is not None:
                        logging.info("  %s score=%.1f max=%.1f pct=%.1f", key, ds.score, ds.max_possible, ds.percent)

            doc = store.login("dr-smoke", Role.CLINICIAN)
            report = store.run_maintenance(doc)
            logging.info("maintenance: %s", report.to_dict())
            summary = store.clinician_summary(doc)
            logging.info(
                "subjects=%d pending=%d completed_recently=%d",
                summary["total_subjects"],
                summary["pending_tasks"],
                summary["completed_recently"],
            )
    finally:
        if tmp is not None:
            tmp.cleanup()
    return totals


if __name__ == "__main__":  # pragma: no cover
    run_smoke_session()
