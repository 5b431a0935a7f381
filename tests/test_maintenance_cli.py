from __future__ import annotations

import json

from assess_core import maintenance
from assess_core.storage import AnswerRecord, DurableTier, unwrap

from tests.conftest import START


def _seed(root):
    durable = DurableTier(root)
    for rid, items in (("A00000001", {"q1": 2}), ("A00000002", {"q1": 2, "q2": 3})):
        durable.put(
            "answers",
            rid,
            AnswerRecord(record_id=rid, subject_id="p1", instrument_id="hal", items=items, updated_at=START),
        )
    return durable


def test_cli_reports_and_converges(tmp_path, capsys):
    data = tmp_path / "data"
    durable = _seed(data)
    args = ["--data-dir", str(data), "--config", str(tmp_path / "absent.json")]

    report_path = tmp_path / "report.json"
    assert maintenance.main(args + ["--report", str(report_path)]) == 2
    written = json.loads(report_path.read_text(encoding="utf-8"))
    assert written["issuesFound"] == 1
    assert written["deletedAnswerIds"] == ["A00000001"]
    assert '"issuesResolved": 1' in capsys.readouterr().out

    assert maintenance.main(args) == 0
    audit = unwrap(durable.load("audit"), "audit")
    assert [rec.actor_id for rec in audit.values()] == ["maintenance-cli", "maintenance-cli"]


def test_cli_fails_cleanly_on_corrupt_data(tmp_path):
    data = tmp_path / "data"
    data.mkdir()
    (data / "responses.json").write_text("{", encoding="utf-8")
    assert maintenance.main(["--data-dir", str(data), "--config", str(tmp_path / "absent.json")]) == 1
