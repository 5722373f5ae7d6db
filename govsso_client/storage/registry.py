"""Process-wide registry correlating browser sessions to GovSSO principals.

The registry is the single writer-of-record for session token state. All
mutation happens under one re-entrant lock and never awaits, so:

- ``expire`` and ``replace_tokens`` on the same record are mutually exclusive;
- a reader sees either the old or the new token tuple, never a mix;
- once ``expired`` is set no call can clear it (expiry beats refresh).
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Set, Tuple

from govsso_client.logging import get_logger
from govsso_client.service.errors import ConcurrencyConflict
from govsso_client.storage.models import (
    AuthorizedClient,
    Principal,
    SessionRecord,
    utcnow,
)

logger = get_logger(__name__)


class SessionRegistry:
    def __init__(
        self,
        *,
        expired_retention_seconds: int = 3600,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._clock = clock
        self.expired_retention = timedelta(seconds=expired_retention_seconds)
        self._records: Dict[str, SessionRecord] = {}
        self._by_principal: Dict[Tuple[str, str], Set[str]] = {}
        self._by_provider_sid: Dict[str, Set[str]] = {}
        self._lock = threading.RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    # -- indexes -------------------------------------------------------

    def _index(self, record: SessionRecord) -> None:
        self._by_principal.setdefault(record.principal.key, set()).add(record.session_id)
        if record.provider_session_id:
            self._by_provider_sid.setdefault(record.provider_session_id, set()).add(
                record.session_id
            )

    def _unindex(self, record: SessionRecord) -> None:
        ids = self._by_principal.get(record.principal.key)
        if ids is not None:
            ids.discard(record.session_id)
            if not ids:
                del self._by_principal[record.principal.key]
        if record.provider_session_id:
            ids = self._by_provider_sid.get(record.provider_session_id)
            if ids is not None:
                ids.discard(record.session_id)
                if not ids:
                    del self._by_provider_sid[record.provider_session_id]

    # -- registration and lookup ---------------------------------------

    def register(
        self,
        session_id: str,
        principal: Principal,
        authorized_client: AuthorizedClient,
    ) -> SessionRecord:
        """Create or replace the entry for ``session_id``.

        An already expired entry is left untouched and returned as-is.
        """
        now = self._clock()
        with self._lock:
            existing = self._records.get(session_id)
            if existing is not None and existing.expired:
                logger.warning("session_register_refused_expired", session_id=session_id)
                return existing.snapshot()
            if existing is not None:
                self._unindex(existing)
            record = SessionRecord(
                session_id=session_id,
                principal=principal,
                authorized_client=authorized_client,
                provider_session_id=authorized_client.provider_session_id,
                last_access_time=now,
                registered_at=existing.registered_at if existing else now,
                version=existing.version + 1 if existing else 0,
            )
            self._records[session_id] = record
            self._index(record)
            snapshot = record.snapshot()
        logger.info(
            "session_registered",
            session_id=session_id,
            subject=principal.subject,
            provider_session_id=snapshot.provider_session_id,
            replaced=existing is not None,
        )
        return snapshot

    def find_by_session_id(self, session_id: Optional[str]) -> Optional[SessionRecord]:
        if not session_id:
            return None
        with self._lock:
            record = self._records.get(session_id)
            return record.snapshot() if record is not None else None

    def find_by_principal(self, principal: Principal) -> List[SessionRecord]:
        with self._lock:
            ids = self._by_principal.get(principal.key, set())
            return [self._records[sid].snapshot() for sid in sorted(ids)]

    def find_by_provider_session_id(self, provider_session_id: str) -> List[SessionRecord]:
        with self._lock:
            ids = self._by_provider_sid.get(provider_session_id, set())
            return [self._records[sid].snapshot() for sid in sorted(ids)]

    # -- state transitions ---------------------------------------------

    def expire(self, session_id: str) -> bool:
        """Mark a session expired. Returns True only for the call that flipped the flag."""
        with self._lock:
            record = self._records.get(session_id)
            if record is None or record.expired:
                return False
            record.expired = True
            record.expired_at = self._clock()
        logger.info("session_expired", session_id=session_id)
        return True

    def remove(self, session_id: str) -> bool:
        with self._lock:
            record = self._records.pop(session_id, None)
            if record is None:
                return False
            self._unindex(record)
        logger.debug("session_removed", session_id=session_id)
        return True

    def touch(self, session_id: str) -> None:
        with self._lock:
            record = self._records.get(session_id)
            if record is not None and not record.expired:
                record.last_access_time = self._clock()

    def begin_refresh(self, session_id: str) -> Optional[SessionRecord]:
        """Claim the single refresh slot of a session.

        Returns the snapshot the refresh should start from, or ``None`` when
        the session is unknown, expired, or another request is refreshing it.
        """
        with self._lock:
            record = self._records.get(session_id)
            if record is None or record.expired or record.refreshing:
                return None
            record.refreshing = True
            return record.snapshot()

    def end_refresh(self, session_id: str) -> None:
        with self._lock:
            record = self._records.get(session_id)
            if record is not None:
                record.refreshing = False

    def replace_tokens(
        self,
        session_id: str,
        authorized_client: AuthorizedClient,
        *,
        expected_version: int,
    ) -> SessionRecord:
        """Atomically swap the token tuple of a live session.

        Raises:
            ConcurrencyConflict: the record is gone, expired, or was replaced
                since ``expected_version`` was read.
        """
        with self._lock:
            record = self._records.get(session_id)
            if record is None:
                raise ConcurrencyConflict(
                    "session no longer registered", detail={"session_id": session_id}
                )
            if record.expired:
                raise ConcurrencyConflict(
                    "session expired during token replacement",
                    detail={"session_id": session_id},
                    error_code="expired_session",
                )
            if record.version != expected_version:
                raise ConcurrencyConflict(
                    "session tokens changed concurrently",
                    detail={
                        "session_id": session_id,
                        "expected_version": expected_version,
                        "actual_version": record.version,
                    },
                )
            self._unindex(record)
            record.authorized_client = authorized_client
            record.provider_session_id = (
                authorized_client.provider_session_id or record.provider_session_id
            )
            record.version += 1
            record.last_access_time = self._clock()
            self._index(record)
            return record.snapshot()

    def remove_expired_sessions(self, is_live: Callable[[str], bool]) -> int:
        """Drop entries whose underlying session is gone.

        Expired entries are kept for the retention window after expiry so the
        expiration stage can still answer "expired" rather than "unknown".
        """
        now = self._clock()
        with self._lock:
            candidates = list(self._records.values())
        removable: List[str] = []
        for record in candidates:
            if record.expired:
                expired_at = record.expired_at or now
                if now - expired_at < self.expired_retention:
                    continue
                removable.append(record.session_id)
            elif not is_live(record.session_id):
                removable.append(record.session_id)
        removed = 0
        with self._lock:
            for session_id in removable:
                record = self._records.get(session_id)
                if record is None:
                    continue
                # A live session may have been re-registered since the scan
                if not record.expired and is_live(session_id):
                    continue
                self._records.pop(session_id)
                self._unindex(record)
                removed += 1
        if removed:
            logger.info("registry_sweep", removed=removed, remaining=len(self))
        return removed
