from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def from_timestamp(value: Any) -> Optional[datetime]:
    """Convert a NumericDate claim to an aware datetime, ``None`` if absent or malformed."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


@dataclass(frozen=True)
class Principal:
    """Authenticated identity as asserted by the ID token."""

    subject: str
    issuer: str
    registration_id: str = "govsso"

    @property
    def key(self) -> Tuple[str, str]:
        return (self.issuer, self.subject)


@dataclass(frozen=True)
class OAuth2Token:
    value: str
    issued_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    claims: Dict[str, Any] = field(default_factory=dict, compare=False)

    def remaining_seconds(self, now: datetime) -> Optional[float]:
        if self.expires_at is None:
            return None
        return (self.expires_at - now).total_seconds()


@dataclass(frozen=True)
class AuthorizedClient:
    """Token tuple of one session; replaced as a whole, never mutated."""

    access_token: OAuth2Token
    id_token: OAuth2Token
    refresh_token: Optional[OAuth2Token] = None

    @property
    def provider_session_id(self) -> Optional[str]:
        sid = self.id_token.claims.get("sid")
        return sid if isinstance(sid, str) and sid else None

    def earliest_expiry(self) -> Optional[datetime]:
        candidates = [
            token.expires_at
            for token in (self.access_token, self.id_token)
            if token.expires_at is not None
        ]
        return min(candidates) if candidates else None


@dataclass
class SessionRecord:
    session_id: str
    principal: Principal
    authorized_client: AuthorizedClient
    provider_session_id: Optional[str] = None
    expired: bool = False
    expired_at: Optional[datetime] = None
    last_access_time: datetime = field(default_factory=utcnow)
    registered_at: datetime = field(default_factory=utcnow)
    version: int = 0
    refreshing: bool = False

    def snapshot(self) -> "SessionRecord":
        """Copy handed out to readers; the token tuple is immutable so a shallow copy suffices."""
        return dataclasses.replace(self)


@dataclass
class SessionData:
    """Server-side state of a browser session held by the session store."""

    id: str
    created_at: datetime
    last_accessed_at: datetime
    max_inactive_seconds: int
    attributes: Dict[str, Any] = field(default_factory=dict)
    invalidated: bool = False

    def is_live(self, now: datetime) -> bool:
        if self.invalidated:
            return False
        idle = (now - self.last_accessed_at).total_seconds()
        return idle < self.max_inactive_seconds
