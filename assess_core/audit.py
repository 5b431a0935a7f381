"""Append-only audit trail plus JSON/CSV export of its events."""
from __future__ import annotations

from typing import Any, Callable, Dict, Iterable, List, Optional
from datetime import datetime
import csv
import io
import json
import logging

from .storage import DurableTier, Err, audit_to_record, record_to_audit, utcnow
from .types import AuditEvent, Session

log = logging.getLogger(__name__)

_FIELDS: tuple[str, ...] = (
    "t",
    "actor_id",
    "role",
    "action",
    "resource_type",
    "resource_id",
    "details",
)


def _normalize_event(event: Dict[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key in _FIELDS:
        val = event.get(key)
        if key == "t":
            out[key] = val.isoformat() if isinstance(val, datetime) else ("" if val is None else str(val))
        elif key == "details":
            try:
                out[key] = json.dumps(val or {}, sort_keys=True, default=str)
            except (TypeError, ValueError):
                out[key] = "{}"
        else:
            out[key] = "" if val is None else str(val)
    return out


def _as_dict(event: Any) -> Dict[str, Any]:
    if isinstance(event, AuditEvent):
        return {k: getattr(event, k) for k in _FIELDS}
    return dict(event or {})


def to_json(events: Iterable[Any]) -> Dict[str, Any]:
    """Return a JSON-safe payload for audit export."""

    normalized: List[Dict[str, Any]] = [_normalize_event(_as_dict(evt)) for evt in events]
    return {"events": normalized}


def to_csv(events: Iterable[Any]) -> str:
    """Render audit events as CSV with a fixed header."""

    normalized = [_normalize_event(_as_dict(evt)) for evt in events]
    buf = io.StringIO()
    writer = csv.DictWriter(buf, fieldnames=_FIELDS)
    writer.writeheader()
    for row in normalized:
        writer.writerow(row)
    return buf.getvalue()


class AuditTrail:
    def __init__(self, durable: DurableTier, enabled: bool = True, clock: Callable[[], datetime] = utcnow):
        self.durable = durable
        self.enabled = enabled
        self._clock = clock

    def record(
        self,
        actor: Optional[Session],
        action: str,
        resource_type: str,
        resource_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        *,
        actor_id: Optional[str] = None,
        role: Optional[str] = None,
    ) -> Optional[AuditEvent]:
        """Append one event. Failures are logged, never raised."""
        if not self.enabled:
            return None
        event = AuditEvent(
            t=self._clock(),
            actor_id=actor.actor_id if actor is not None else (actor_id or "system"),
            role=actor.role.value if actor is not None else (role or "system"),
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            details=dict(details or {}),
        )
        rid = self.durable.next_id("audit")
        if isinstance(rid, Err):
            log.warning("audit %s/%s not recorded: %s", action, resource_type, rid.kind)
            return None
        res = self.durable.put("audit", rid.value, audit_to_record(event))
        if isinstance(res, Err):
            log.warning("audit %s/%s not recorded: %s", action, resource_type, res.kind)
            return None
        return event

    def events(self, actor_id: Optional[str] = None, action: Optional[str] = None) -> List[AuditEvent]:
        res = self.durable.load("audit")
        if isinstance(res, Err):
            log.warning("audit log unreadable: %s %s", res.kind, res.detail)
            return []
        out = [record_to_audit(rec) for _key, rec in sorted(res.value.items())]
        if actor_id:
            out = [e for e in out if e.actor_id == actor_id]
        if action:
            out = [e for e in out if e.action == action]
        return out


__all__ = ["AuditTrail", "to_json", "to_csv"]
