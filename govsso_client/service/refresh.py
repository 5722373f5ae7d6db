"""Keeps a session's access and ID tokens valid ahead of their expiry."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Optional

from govsso_client.config import RefreshMissingPolicy
from govsso_client.logging import get_logger
from govsso_client.service.errors import ConcurrencyConflict, UpstreamError, ValidationError
from govsso_client.service.results import Failure, FailureKind, Result, Success
from govsso_client.service.token_client import TokenEndpointClient, TokenResponse
from govsso_client.service.tokens import OidcTokenDecoder, principal_from_id_token
from govsso_client.storage.models import AuthorizedClient, OAuth2Token, SessionRecord, utcnow
from govsso_client.storage.registry import SessionRegistry
from govsso_client.storage.session_store import SessionStore

logger = get_logger(__name__)


def authorized_client_from_response(
    response: TokenResponse,
    id_token: OAuth2Token,
    *,
    now: datetime,
    previous_refresh_token: Optional[OAuth2Token] = None,
) -> AuthorizedClient:
    access_expires_at = (
        now + timedelta(seconds=response.expires_in) if response.expires_in is not None else None
    )
    if response.refresh_token:
        refresh_token: Optional[OAuth2Token] = OAuth2Token(value=response.refresh_token, issued_at=now)
    else:
        # Provider did not rotate; keep using the previous one
        refresh_token = previous_refresh_token
    return AuthorizedClient(
        access_token=OAuth2Token(
            value=response.access_token, issued_at=now, expires_at=access_expires_at
        ),
        id_token=id_token,
        refresh_token=refresh_token,
    )


class TokenRefresher:
    def __init__(
        self,
        registry: SessionRegistry,
        session_store: SessionStore,
        token_client: TokenEndpointClient,
        decoder: OidcTokenDecoder,
        *,
        lead_seconds: int = 120,
        missing_policy: RefreshMissingPolicy = RefreshMissingPolicy.REAUTHENTICATE,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.registry = registry
        self.session_store = session_store
        self.token_client = token_client
        self.decoder = decoder
        self.lead = timedelta(seconds=lead_seconds)
        self.missing_policy = missing_policy
        self._clock = clock

    def needs_refresh(self, record: SessionRecord, now: Optional[datetime] = None) -> bool:
        expiry = record.authorized_client.earliest_expiry()
        if expiry is None:
            return False
        return expiry - (now or self._clock()) <= self.lead

    async def refresh_if_needed(self, session_id: str) -> Result:
        record = self.registry.find_by_session_id(session_id)
        if record is None:
            return Success()
        if record.expired:
            return Failure(FailureKind.EXPIRED, "expired_session")
        if not self.needs_refresh(record):
            self.registry.touch(session_id)
            return Success(record)

        if record.authorized_client.refresh_token is None:
            if self.missing_policy is RefreshMissingPolicy.FAIL_OPEN:
                logger.warning("token_refresh_skipped_no_refresh_token", session_id=session_id)
                return Success(record)
            self._invalidate(session_id, reason="refresh_token_missing")
            return Failure(FailureKind.UNAUTHENTICATED, "refresh_token_missing")

        claimed = self.registry.begin_refresh(session_id)
        if claimed is None:
            current = self.registry.find_by_session_id(session_id)
            if current is None or current.expired:
                return Failure(FailureKind.EXPIRED, "expired_session")
            # Another request holds the refresh; its result lands in the registry
            return Success(current)
        try:
            return await self._refresh(claimed)
        finally:
            self.registry.end_refresh(session_id)

    async def _refresh(self, record: SessionRecord) -> Result:
        session_id = record.session_id
        refresh_token = record.authorized_client.refresh_token
        if refresh_token is None:
            return Success(record)
        try:
            response = await self.token_client.refresh(refresh_token.value)
            id_token = await self.decoder.decode_id_token(
                response.id_token, access_token=response.access_token
            )
        except UpstreamError as exc:
            logger.error(
                "token_refresh_failed",
                session_id=session_id,
                error_code=exc.error_code,
                message=exc.message,
            )
            self._invalidate(session_id, reason=exc.error_code)
            return Failure(FailureKind.UPSTREAM, exc.error_code, exc.detail)
        except ValidationError as exc:
            logger.warning(
                "token_refresh_invalid_id_token",
                session_id=session_id,
                error_code=exc.error_code,
                message=exc.message,
                detail=exc.detail,
            )
            self._invalidate(session_id, reason=exc.error_code)
            return Failure(FailureKind.VALIDATION, exc.error_code, exc.detail)

        principal = principal_from_id_token(id_token, record.principal.registration_id)
        if principal.key != record.principal.key:
            logger.warning(
                "token_refresh_subject_mismatch",
                session_id=session_id,
                expected_subject=record.principal.subject,
                actual_subject=principal.subject,
                expected_issuer=record.principal.issuer,
                actual_issuer=principal.issuer,
            )
            self._invalidate(session_id, reason="subject_mismatch")
            return Failure(FailureKind.VALIDATION, "invalid_id_token", {"reason": "subject_mismatch"})

        authorized_client = authorized_client_from_response(
            response,
            id_token,
            now=self._clock(),
            previous_refresh_token=refresh_token,
        )
        try:
            updated = self.registry.replace_tokens(
                session_id, authorized_client, expected_version=record.version
            )
        except ConcurrencyConflict as exc:
            current = self.registry.find_by_session_id(session_id)
            if current is None or current.expired:
                logger.info("token_refresh_lost_to_expiry", session_id=session_id)
                return Failure(FailureKind.EXPIRED, "expired_session")
            # Tokens were replaced by a login callback meanwhile; those are newer
            logger.info("token_refresh_superseded", session_id=session_id, detail=exc.detail)
            return Success(current)

        logger.info(
            "token_refresh_succeeded",
            session_id=session_id,
            subject=principal.subject,
            access_expires_at=(
                updated.authorized_client.access_token.expires_at.isoformat()
                if updated.authorized_client.access_token.expires_at
                else None
            ),
            refresh_rotated=response.refresh_token is not None,
        )
        return Success(updated, refreshed=True)

    def _invalidate(self, session_id: str, *, reason: str) -> None:
        self.registry.expire(session_id)
        self.session_store.invalidate(session_id)
        logger.info("session_invalidated_after_refresh", session_id=session_id, reason=reason)
