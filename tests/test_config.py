from __future__ import annotations

import json

from assess_core.config import load_config


def test_environment_overrides_every_config_json_key(tmp_path, monkeypatch):
    path = tmp_path / "config.json"
    path.write_text(
        json.dumps(
            {
                "TASK_REUSE_WINDOW_SEC": 10,
                "AUDIT_ENABLED": True,
                "RESPONSES_VISIBLE_BY_DEFAULT": True,
                "ACTIVE_SUBJECT_WINDOW_DAYS": 90,
                "RESPONSE_DEDUP_TOLERANCE_SEC": 2.0,
            }
        ),
        encoding="utf-8",
    )
    monkeypatch.setenv("AUDIT_ENABLED", "false")
    monkeypatch.setenv("RESPONSES_VISIBLE_BY_DEFAULT", "0")
    monkeypatch.setenv("ACTIVE_SUBJECT_WINDOW_DAYS", "3")
    monkeypatch.setenv("RESPONSE_DEDUP_TOLERANCE_SEC", "7.5")
    monkeypatch.setenv("DATA_DIR", str(tmp_path / "env-data"))
    monkeypatch.delenv("TASK_REUSE_WINDOW_SEC", raising=False)

    cfg = load_config(path)
    assert cfg["AUDIT_ENABLED"] is False
    assert cfg["RESPONSES_VISIBLE_BY_DEFAULT"] is False
    assert cfg["ACTIVE_SUBJECT_WINDOW_DAYS"] == 3
    assert cfg["RESPONSE_DEDUP_TOLERANCE_SEC"] == 7.5
    assert cfg["DATA_DIR"] == str(tmp_path / "env-data")
    assert cfg["TASK_REUSE_WINDOW_SEC"] == 10


def test_bad_values_fall_back(tmp_path, monkeypatch):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"RESUBMIT_POLICY": "sometimes", "RECENT_COMPLETIONS_LIMIT": 9}), encoding="utf-8")
    monkeypatch.setenv("RECENT_COMPLETIONS_LIMIT", "many")
    monkeypatch.delenv("RESUBMIT_POLICY", raising=False)
    cfg = load_config(path)
    assert cfg["RESUBMIT_POLICY"] == "accept"
    assert cfg["RECENT_COMPLETIONS_LIMIT"] == 9
