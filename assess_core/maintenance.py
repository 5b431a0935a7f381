from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import List, Optional

from . import config
from .audit import AuditTrail
from .errors import StorageError
from .reconcile import reconcile
from .storage import DurableTier

log = logging.getLogger(__name__)


def _parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Collapse duplicate answer and response records in a data dir.")
    p.add_argument("--data-dir", default=None, help="durable tier root (default: DATA_DIR from config)")
    p.add_argument("--subject", default=None, help="limit the pass to one subject id")
    p.add_argument("--tolerance", type=float, default=None, help="response dedup window in seconds")
    p.add_argument("--config", default=None, help="path to config.json")
    p.add_argument("--report", default=None, help="also write the JSON report to this file")
    return p


def main(argv: Optional[List[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(message)s")
    args = _parser().parse_args(argv)
    cfg = config.load_config(args.config)
    root = Path(args.data_dir or cfg["DATA_DIR"])
    tolerance = args.tolerance if args.tolerance is not None else float(cfg["RESPONSE_DEDUP_TOLERANCE_SEC"])

    durable = DurableTier(root)
    try:
        report = reconcile(durable, args.subject, tolerance)
    except StorageError as exc:
        log.error("maintenance failed: %s", exc.detail)
        return 1

    payload = report.to_dict()
    AuditTrail(durable, enabled=bool(cfg["AUDIT_ENABLED"])).record(
        None, "maintenance", "store", args.subject, payload, actor_id="maintenance-cli"
    )
    text = json.dumps(payload, indent=2, sort_keys=True)
    print(text)
    if args.report:
        Path(args.report).write_text(text + "\n", encoding="utf-8")
    return 2 if report.issues_found else 0


if __name__ == "__main__":
    raise SystemExit(main())
