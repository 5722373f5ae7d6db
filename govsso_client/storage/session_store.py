from __future__ import annotations

import secrets
import threading
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Protocol

from govsso_client.logging import get_logger
from govsso_client.storage.models import SessionData, utcnow


class SessionStore(Protocol):
    """Authority on whether a session cookie still maps to a live session."""

    def create(self, attributes: Optional[Dict[str, Any]] = None) -> SessionData: ...

    def get(self, session_id: str) -> Optional[SessionData]: ...

    def touch(self, session_id: str) -> None: ...

    def invalidate(self, session_id: str) -> bool: ...

    def is_live(self, session_id: str) -> bool: ...


class MemorySessionStore:
    """In-process session store keyed by the ``SESSION`` cookie value."""

    def __init__(
        self,
        max_inactive_seconds: int = 30 * 60,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.logger = get_logger(__name__)
        self.max_inactive_seconds = max_inactive_seconds
        self._clock = clock
        self.sessions: Dict[str, SessionData] = {}
        self._lock = threading.RLock()

    def create(self, attributes: Optional[Dict[str, Any]] = None) -> SessionData:
        now = self._clock()
        with self._lock:
            session_id = secrets.token_urlsafe(32)
            while session_id in self.sessions:
                session_id = secrets.token_urlsafe(32)
            session = SessionData(
                id=session_id,
                created_at=now,
                last_accessed_at=now,
                max_inactive_seconds=self.max_inactive_seconds,
                attributes=dict(attributes or {}),
            )
            self.sessions[session_id] = session
            return session

    def get(self, session_id: str) -> Optional[SessionData]:
        with self._lock:
            session = self.sessions.get(session_id)
            if session is None or not session.is_live(self._clock()):
                return None
            return session

    def touch(self, session_id: str) -> None:
        with self._lock:
            session = self.sessions.get(session_id)
            if session is not None and session.is_live(self._clock()):
                session.last_accessed_at = self._clock()

    def invalidate(self, session_id: str) -> bool:
        """Invalidate immediately; returns False when nothing was live."""
        with self._lock:
            session = self.sessions.pop(session_id, None)
            if session is None:
                return False
            was_live = session.is_live(self._clock())
            session.invalidated = True
        self.logger.debug("session_invalidated", session_id=session_id, was_live=was_live)
        return was_live

    def is_live(self, session_id: str) -> bool:
        return self.get(session_id) is not None

    def purge_dead(self) -> int:
        now = self._clock()
        with self._lock:
            dead = [sid for sid, sess in self.sessions.items() if not sess.is_live(now)]
            for sid in dead:
                self.sessions.pop(sid, None)
        return len(dead)
