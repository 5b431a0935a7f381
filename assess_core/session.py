from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional, Union

from .errors import Forbidden, Unauthorized, ValidationError
from .storage import utcnow
from .types import Role, Session

log = logging.getLogger(__name__)


def coerce_role(role: Union[Role, str]) -> Role:
    if isinstance(role, Role):
        return role
    try:
        return Role(str(role).strip().lower())
    except ValueError:
        raise ValidationError(f"unknown role {role!r}") from None


class SessionGuard:
    """Holds the one active session of a runtime context and answers capability checks.

    The session is handed back to callers and passed explicitly into every
    store operation; the guard only confirms it is still the live one.
    """

    def __init__(self, idle_timeout_sec: int, clock: Callable[[], datetime] = utcnow):
        self.idle_timeout = timedelta(seconds=max(0, int(idle_timeout_sec)))
        self._clock = clock
        self._current: Optional[Session] = None
        self._epoch = 0

    @property
    def current(self) -> Optional[Session]:
        return self._current

    @property
    def epoch(self) -> int:
        """Bumped on every login/logout; lets in-flight work notice a session switch."""
        return self._epoch

    def authenticate(self, actor_id: str, role: Union[Role, str]) -> Session:
        actor = (actor_id or "").strip()
        if not actor:
            raise ValidationError("actor id is required")
        r = coerce_role(role)
        now = self._clock()
        prior = self._current
        self._current = Session(
            session_id=uuid.uuid4().hex,
            actor_id=actor,
            role=r,
            started_at=now,
            last_activity_at=now,
        )
        self._epoch += 1
        if prior is not None:
            log.info("session for %s replaced by %s (%s)", prior.actor_id, actor, r.value)
        else:
            log.info("session started for %s (%s)", actor, r.value)
        return self._current

    def end(self) -> Optional[Session]:
        prior = self._current
        self._current = None
        self._epoch += 1
        if prior is not None:
            log.info("session ended for %s", prior.actor_id)
        return prior

    def _expired(self, sess: Session, now: datetime) -> bool:
        if not self.idle_timeout:
            return False
        return now - sess.last_activity_at > self.idle_timeout

    def validate(self, session: Optional[Session]) -> Session:
        if session is None or self._current is None:
            raise Unauthorized("no active session")
        if session.session_id != self._current.session_id:
            raise Unauthorized("session is no longer active")
        now = self._clock()
        if self._expired(self._current, now):
            log.info("session for %s expired", self._current.actor_id)
            self.end()
            raise Unauthorized("session expired")
        self._current.last_activity_at = now
        session.last_activity_at = now
        return self._current

    def can_access(self, session: Optional[Session], resource_owner_id: str) -> bool:
        if session is None or self._current is None:
            return False
        if session.session_id != self._current.session_id:
            return False
        if self._expired(self._current, self._clock()):
            return False
        if session.role is Role.CLINICIAN:
            return True
        return session.actor_id == resource_owner_id

    def require_access(self, session: Optional[Session], resource_owner_id: str) -> Session:
        sess = self.validate(session)
        if sess.role is Role.CLINICIAN or sess.actor_id == resource_owner_id:
            return sess
        raise Forbidden("subjects may only access their own data")

    def require_clinician(self, session: Optional[Session]) -> Session:
        sess = self.validate(session)
        if sess.role is not Role.CLINICIAN:
            raise Forbidden("clinician role required")
        return sess
