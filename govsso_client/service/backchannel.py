from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List

from govsso_client.logging import get_logger
from govsso_client.service.tokens import LogoutToken, OidcTokenDecoder
from govsso_client.storage.models import Principal, SessionRecord
from govsso_client.storage.registry import SessionRegistry
from govsso_client.storage.session_store import SessionStore

logger = get_logger(__name__)


@dataclass
class LogoutOutcome:
    expired: List[str] = field(default_factory=list)
    already_expired: List[str] = field(default_factory=list)

    @property
    def matched(self) -> int:
        return len(self.expired) + len(self.already_expired)


class BackChannelLogoutHandler:
    """Applies an identity-provider logout token to the local sessions it names.

    ``handle`` raises ``ValidationError`` for a bad token before touching any
    state; otherwise it expires every matching session and invalidates it in
    the session store. Zero matches is a normal outcome and repeated delivery
    of the same token is a no-op.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        session_store: SessionStore,
        decoder: OidcTokenDecoder,
        *,
        registration_id: str = "govsso",
    ) -> None:
        self.registry = registry
        self.session_store = session_store
        self.decoder = decoder
        self.registration_id = registration_id

    async def handle(self, raw_logout_token: str) -> LogoutOutcome:
        logout_token = await self.decoder.decode_logout_token(raw_logout_token)
        targets = self.resolve_sessions(logout_token)

        outcome = LogoutOutcome()
        for record in targets:
            if self.registry.expire(record.session_id):
                outcome.expired.append(record.session_id)
            else:
                outcome.already_expired.append(record.session_id)
            self.session_store.invalidate(record.session_id)

        logger.info(
            "backchannel_logout_processed",
            subject=logout_token.subject,
            provider_session_id=logout_token.session_id,
            expired=len(outcome.expired),
            already_expired=len(outcome.already_expired),
        )
        return outcome

    def resolve_sessions(self, logout_token: LogoutToken) -> List[SessionRecord]:
        if logout_token.session_id is not None:
            records = self.registry.find_by_provider_session_id(logout_token.session_id)
            records = [r for r in records if r.principal.issuer == logout_token.issuer]
            if logout_token.subject is not None:
                records = [r for r in records if r.principal.subject == logout_token.subject]
            return records

        principal = Principal(
            subject=logout_token.subject or "",
            issuer=logout_token.issuer,
            registration_id=self.registration_id,
        )
        return self.registry.find_by_principal(principal)


def logout_error_body(message: str) -> Dict[str, str]:
    """Error body for the identity provider (OpenID Back-Channel Logout §2.8)."""
    return {"error": "invalid_request", "error_description": message}
