"""GovSSO login, session update and RP-initiated logout flows."""

from __future__ import annotations

import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional
from urllib.parse import urlencode

from govsso_client.config import REGISTRATION_ID, Settings
from govsso_client.logging import get_logger
from govsso_client.service.errors import (
    AuthenticationError,
    ConcurrencyConflict,
    SessionExpiredError,
    ValidationError,
)
from govsso_client.service.refresh import authorized_client_from_response
from govsso_client.service.token_client import TokenEndpointClient
from govsso_client.service.tokens import OidcTokenDecoder, principal_from_id_token
from govsso_client.storage.models import SessionRecord, utcnow
from govsso_client.storage.registry import SessionRegistry
from govsso_client.storage.session_store import SessionStore

logger = get_logger(__name__)

SUPPORTED_UI_LOCALES = ("et", "en", "ru")


@dataclass(frozen=True)
class PendingAuthorization:
    nonce: str
    expires_at: datetime
    session_id: Optional[str] = None  # set for session update (prompt=none)

    @property
    def session_update(self) -> bool:
        return self.session_id is not None


@dataclass(frozen=True)
class LoginResult:
    session_id: str
    record: SessionRecord
    created: bool


class LoginService:
    """Authorization requests and code callbacks.

    A plain login creates a fresh local session. A session update
    (``prompt=none`` with ``id_token_hint``) keeps the local session and swaps
    its tokens, provided the new ID token describes the same principal.
    """

    def __init__(
        self,
        settings: Settings,
        registry: SessionRegistry,
        session_store: SessionStore,
        token_client: TokenEndpointClient,
        decoder: OidcTokenDecoder,
        *,
        state_ttl_seconds: int = 600,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self.registry = registry
        self.session_store = session_store
        self.token_client = token_client
        self.decoder = decoder
        self.state_ttl = timedelta(seconds=state_ttl_seconds)
        self._clock = clock
        self._state_lock = threading.Lock()
        self._pending: Dict[str, PendingAuthorization] = {}

    def cleanup_expired_states(self) -> int:
        now = self._clock()
        with self._state_lock:
            expired = [state for state, pending in self._pending.items() if pending.expires_at <= now]
            for state in expired:
                self._pending.pop(state, None)
        if expired:
            logger.debug("authorization_state_cleanup", cleaned=len(expired))
        return len(expired)

    def start(
        self,
        *,
        locale: Optional[str] = None,
        prompt: Optional[str] = None,
        current_record: Optional[SessionRecord] = None,
    ) -> str:
        self.cleanup_expired_states()

        session_update = prompt == "none"
        if session_update and (current_record is None or current_record.expired):
            raise AuthenticationError(
                "session update requires an active session", error_code="login_required"
            )

        state = secrets.token_urlsafe(32)
        nonce = secrets.token_urlsafe(32)
        pending = PendingAuthorization(
            nonce=nonce,
            expires_at=self._clock() + self.state_ttl,
            session_id=current_record.session_id if session_update and current_record else None,
        )
        with self._state_lock:
            self._pending[state] = pending

        params = {
            "response_type": "code",
            "client_id": self.settings.govsso_client_id,
            "redirect_uri": self.settings.govsso_redirect_uri,
            "scope": self.settings.govsso_scope,
            "state": state,
            "nonce": nonce,
        }
        ui_locale = resolve_ui_locale(locale)
        if ui_locale:
            params["ui_locales"] = ui_locale
        if session_update and current_record is not None:
            params["prompt"] = "none"
            params["id_token_hint"] = current_record.authorized_client.id_token.value
        logger.info(
            "authorization_request_created",
            session_update=session_update,
            ui_locales=ui_locale,
        )
        return f"{self.settings.govsso_authorization_uri}?{urlencode(params)}"

    async def complete(
        self,
        *,
        code: str,
        state: str,
        current_session_id: Optional[str] = None,
    ) -> LoginResult:
        with self._state_lock:
            pending = self._pending.pop(state, None)
        if pending is None or pending.expires_at <= self._clock():
            raise AuthenticationError("unknown or expired state", error_code="invalid_state_parameter")

        response = await self.token_client.exchange_code(code, self.settings.govsso_redirect_uri)
        id_token = await self.decoder.decode_id_token(
            response.id_token, access_token=response.access_token, nonce=pending.nonce
        )
        principal = principal_from_id_token(id_token, REGISTRATION_ID)
        authorized_client = authorized_client_from_response(response, id_token, now=self._clock())

        if pending.session_update:
            return self._complete_session_update(pending, current_session_id, principal, authorized_client)

        if current_session_id:
            # New local session on every login; the old id must not survive authentication
            self.session_store.invalidate(current_session_id)
            existing = self.registry.find_by_session_id(current_session_id)
            if existing is not None and not existing.expired:
                self.registry.remove(current_session_id)

        session = self.session_store.create({"subject": principal.subject})
        record = self.registry.register(session.id, principal, authorized_client)
        logger.info(
            "login_succeeded",
            session_id=session.id,
            subject=principal.subject,
            provider_session_id=record.provider_session_id,
        )
        return LoginResult(session_id=session.id, record=record, created=True)

    def _complete_session_update(
        self, pending, current_session_id, principal, authorized_client
    ) -> LoginResult:
        session_id = pending.session_id
        if session_id != current_session_id:
            raise AuthenticationError(
                "session update callback arrived on another session", error_code="invalid_state_parameter"
            )
        record = self.registry.find_by_session_id(session_id)
        if record is None or record.expired or not self.session_store.is_live(session_id):
            raise SessionExpiredError("session expired before update completed")
        if record.principal.key != principal.key:
            logger.warning(
                "session_update_subject_mismatch",
                session_id=session_id,
                expected_subject=record.principal.subject,
                actual_subject=principal.subject,
            )
            self.registry.expire(session_id)
            self.session_store.invalidate(session_id)
            raise ValidationError("session update returned another principal", error_code="invalid_id_token")
        try:
            updated = self.registry.replace_tokens(
                session_id, authorized_client, expected_version=record.version
            )
        except ConcurrencyConflict as exc:
            raise SessionExpiredError("session changed during update") from exc
        self.session_store.touch(session_id)
        logger.info("session_update_succeeded", session_id=session_id, subject=principal.subject)
        return LoginResult(session_id=session_id, record=updated, created=False)


def resolve_ui_locale(requested: Optional[str], fallback: Optional[str] = None) -> Optional[str]:
    """Pick the first supported locale from a ``ui_locales``/``Accept-Language`` style value."""
    for candidate in (requested, fallback):
        if not candidate:
            continue
        for part in candidate.replace(",", " ").split():
            tag = part.split(";", 1)[0].split("-", 1)[0].strip().lower()
            if tag in SUPPORTED_UI_LOCALES:
                return tag
    return None


class LogoutService:
    """RP-initiated logout: end the local session, then hand over to GovSSO."""

    def __init__(
        self,
        settings: Settings,
        registry: SessionRegistry,
        session_store: SessionStore,
    ) -> None:
        self.settings = settings
        self.registry = registry
        self.session_store = session_store

    def post_logout_redirect_uri(self, base_url: str) -> Optional[str]:
        template = self.settings.post_logout_redirect_uri
        if not template:
            return None
        return template.replace("{baseUrl}", base_url.rstrip("/"))

    def logout(
        self,
        session_id: Optional[str],
        *,
        base_url: str,
        ui_locales: Optional[str] = None,
    ) -> str:
        record = self.registry.find_by_session_id(session_id)
        if session_id:
            self.session_store.invalidate(session_id)
            self.registry.remove(session_id)

        post_logout_redirect_uri = self.post_logout_redirect_uri(base_url)
        end_session = self.settings.govsso_end_session_uri
        if record is None or not end_session:
            logger.info("local_logout", session_id=session_id, had_record=record is not None)
            return post_logout_redirect_uri or "/"

        params = {"id_token_hint": record.authorized_client.id_token.value}
        if ui_locales:
            params["ui_locales"] = ui_locales
        if post_logout_redirect_uri:
            params["post_logout_redirect_uri"] = post_logout_redirect_uri
        logger.info(
            "rp_initiated_logout",
            session_id=session_id,
            subject=record.principal.subject,
            ui_locales=ui_locales,
        )
        separator = "&" if "?" in end_session else "?"
        return f"{end_session}{separator}{urlencode(params)}"
