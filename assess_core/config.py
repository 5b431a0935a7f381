from __future__ import annotations
import os, json, pathlib


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


def _env_str(name: str, default: str, allowed: tuple[str, ...] | None = None) -> str:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    val = raw.strip().lower()
    if allowed and val not in allowed:
        return default
    return val


DATA_DIR: str = "data"

TASK_REUSE_WINDOW_SEC: int = 60 * 60
RESPONSE_DEDUP_TOLERANCE_SEC: float = 5.0
SESSION_IDLE_TIMEOUT_SEC: int = 8 * 60 * 60

DEFERRED_DURABLE_WRITES: bool = False
RESUBMIT_POLICIES: tuple[str, ...] = ("accept", "reject")
RESUBMIT_POLICY: str = "accept"
RESPONSES_VISIBLE_BY_DEFAULT: bool = True

AUDIT_ENABLED: bool = True
AUDIT_EXPORT_ENABLED: bool = True

ACTIVE_SUBJECT_WINDOW_DAYS: int = 30
COMPLETED_RECENT_DAYS: int = 7
RECENT_COMPLETIONS_LIMIT: int = 5

# consistency check flags a tier mismatch above this many items
TIER_MISMATCH_TOLERANCE: int = 5

# env overrides for deployments and tests
DATA_DIR = os.getenv("DATA_DIR", DATA_DIR)
TASK_REUSE_WINDOW_SEC = _env_int("TASK_REUSE_WINDOW_SEC", TASK_REUSE_WINDOW_SEC)
RESPONSE_DEDUP_TOLERANCE_SEC = _env_float("RESPONSE_DEDUP_TOLERANCE_SEC", RESPONSE_DEDUP_TOLERANCE_SEC)
SESSION_IDLE_TIMEOUT_SEC = _env_int("SESSION_IDLE_TIMEOUT_SEC", SESSION_IDLE_TIMEOUT_SEC)
DEFERRED_DURABLE_WRITES = _env_bool("DEFERRED_DURABLE_WRITES", DEFERRED_DURABLE_WRITES)
RESUBMIT_POLICY = _env_str("RESUBMIT_POLICY", RESUBMIT_POLICY, RESUBMIT_POLICIES)
RESPONSES_VISIBLE_BY_DEFAULT = _env_bool("RESPONSES_VISIBLE_BY_DEFAULT", RESPONSES_VISIBLE_BY_DEFAULT)
AUDIT_ENABLED = _env_bool("AUDIT_ENABLED", AUDIT_ENABLED)
AUDIT_EXPORT_ENABLED = _env_bool("AUDIT_EXPORT_ENABLED", AUDIT_EXPORT_ENABLED)
ACTIVE_SUBJECT_WINDOW_DAYS = _env_int("ACTIVE_SUBJECT_WINDOW_DAYS", ACTIVE_SUBJECT_WINDOW_DAYS)
RECENT_COMPLETIONS_LIMIT = _env_int("RECENT_COMPLETIONS_LIMIT", RECENT_COMPLETIONS_LIMIT)


def defaults() -> dict:
    """Snapshot of the module-level settings as a plain dict."""

    return {
        "DATA_DIR": DATA_DIR,
        "TASK_REUSE_WINDOW_SEC": TASK_REUSE_WINDOW_SEC,
        "RESPONSE_DEDUP_TOLERANCE_SEC": RESPONSE_DEDUP_TOLERANCE_SEC,
        "SESSION_IDLE_TIMEOUT_SEC": SESSION_IDLE_TIMEOUT_SEC,
        "DEFERRED_DURABLE_WRITES": DEFERRED_DURABLE_WRITES,
        "RESUBMIT_POLICY": RESUBMIT_POLICY,
        "RESPONSES_VISIBLE_BY_DEFAULT": RESPONSES_VISIBLE_BY_DEFAULT,
        "AUDIT_ENABLED": AUDIT_ENABLED,
        "AUDIT_EXPORT_ENABLED": AUDIT_EXPORT_ENABLED,
        "ACTIVE_SUBJECT_WINDOW_DAYS": ACTIVE_SUBJECT_WINDOW_DAYS,
        "COMPLETED_RECENT_DAYS": COMPLETED_RECENT_DAYS,
        "RECENT_COMPLETIONS_LIMIT": RECENT_COMPLETIONS_LIMIT,
        "TIER_MISMATCH_TOLERANCE": TIER_MISMATCH_TOLERANCE,
    }


def load_config(path: str | os.PathLike | None = None) -> dict:
    cfg = defaults()
    p = pathlib.Path(path) if path else pathlib.Path("config.json")
    if p.exists():
        try:
            file_cfg = json.loads(p.read_text(encoding="utf-8"))
        except ValueError:
            file_cfg = {}
        if isinstance(file_cfg, dict):
            cfg.update({k: v for k, v in file_cfg.items() if k in cfg})
    # environment beats config.json
    base = defaults()
    for key, current in list(cfg.items()):
        if not os.environ.get(key, "").strip():
            continue
        kind = base[key]
        if key == "RESUBMIT_POLICY":
            cfg[key] = _env_str(key, current, RESUBMIT_POLICIES)
        elif isinstance(kind, bool):
            cfg[key] = _env_bool(key, current)
        elif isinstance(kind, int):
            cfg[key] = _env_int(key, current)
        elif isinstance(kind, float):
            cfg[key] = _env_float(key, current)
        else:
            cfg[key] = os.environ[key].strip()
    if cfg.get("RESUBMIT_POLICY") not in RESUBMIT_POLICIES:
        cfg["RESUBMIT_POLICY"] = "accept"
    return cfg
