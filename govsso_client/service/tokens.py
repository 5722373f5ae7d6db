"""JWKS-backed decoding and validation of GovSSO ID tokens and logout tokens."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol

import httpx
from jose import JWTError, jwt

from govsso_client.config import BACKCHANNEL_LOGOUT_EVENT
from govsso_client.logging import get_logger
from govsso_client.service.errors import ValidationError
from govsso_client.storage.models import OAuth2Token, Principal, from_timestamp, utcnow

logger = get_logger(__name__)


class KeySource(Protocol):
    async def get_key(self, kid: Optional[str]) -> Optional[Dict[str, Any]]: ...


def _select_key(keys: Iterable[Dict[str, Any]], kid: Optional[str]) -> Optional[Dict[str, Any]]:
    keys = list(keys)
    if kid is None:
        # Tokens without a kid are only accepted against a single-key set
        return keys[0] if len(keys) == 1 else None
    for key in keys:
        if key.get("kid") == kid:
            return key
    return None


class StaticKeySource:
    """Key source over a fixed JWKS document (pinned keys)."""

    def __init__(self, jwks: Dict[str, Any]) -> None:
        keys = jwks.get("keys")
        if not isinstance(keys, list):
            raise ValueError("JWKS document missing 'keys' array")
        self._keys: List[Dict[str, Any]] = keys

    async def get_key(self, kid: Optional[str]) -> Optional[Dict[str, Any]]:
        return _select_key(self._keys, kid)


class JwksKeySource:
    """Fetches and caches the provider's JWKS, refetching on an unknown kid.

    Refetches forced by an unknown kid are spaced at least
    ``min_refetch_interval`` seconds apart.
    """

    def __init__(
        self,
        jwks_url: str,
        *,
        refresh_interval: int = 300,
        min_refetch_interval: int = 30,
        http_timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.jwks_url = jwks_url
        self.refresh_interval = refresh_interval
        self.min_refetch_interval = min_refetch_interval
        self.logger = get_logger("govsso.jwks")

        self._keys: Optional[List[Dict[str, Any]]] = None
        self._last_fetch: float = 0.0
        self._lock = asyncio.Lock()
        self._client = httpx.AsyncClient(timeout=http_timeout, transport=transport)

    async def close(self) -> None:
        await self._client.aclose()

    async def get_key(self, kid: Optional[str]) -> Optional[Dict[str, Any]]:
        await self._refresh_keys(force=False)
        key = _select_key(self._keys or [], kid)
        if key is not None:
            return key

        # Key might be rotated; refresh once more eagerly.
        if not await self._refresh_keys(force=True):
            self.logger.warning("jwks_refetch_throttled", kid=kid)
            return None
        return _select_key(self._keys or [], kid)

    def _is_fresh(self, *, force: bool) -> bool:
        if self._keys is None:
            return False
        age = time.time() - self._last_fetch
        if force:
            return age < self.min_refetch_interval
        return age < self.refresh_interval

    async def _refresh_keys(self, *, force: bool) -> bool:
        """Fetch the JWKS unless the cache is fresh. Returns whether a fetch ran."""
        if self._is_fresh(force=force):
            return False

        async with self._lock:
            if self._is_fresh(force=force):
                return False

            self._last_fetch = time.time()
            try:
                response = await self._client.get(self.jwks_url)
                response.raise_for_status()
                payload = response.json()
            except (httpx.HTTPError, ValueError) as exc:
                self.logger.error("jwks_fetch_failed", url=self.jwks_url, error=str(exc))
                if self._keys is not None:
                    # Stale keys still verify tokens signed before a rotation
                    return True
                raise ValidationError(
                    "signing keys unavailable", error_code="invalid_token"
                ) from exc
            keys = payload.get("keys") if isinstance(payload, dict) else None
            if not isinstance(keys, list):
                raise ValidationError("JWKS response missing 'keys' array", error_code="invalid_token")

            self._keys = keys
            self.logger.info("jwks_refreshed", keys_count=len(keys))
            return True


@dataclass(frozen=True)
class LogoutToken:
    issuer: str
    subject: Optional[str]
    session_id: Optional[str]
    issued_at: datetime
    jti: Optional[str]
    claims: Dict[str, Any]


class OidcTokenDecoder:
    """Verifies signature, issuer and audience, then applies token-type rules.

    ID tokens: ``sub``, ``iat`` and ``exp`` required; ``nonce`` compared when
    the login flow expects one; ``at_hash`` checked against the access token.

    Logout tokens: ``iat`` fresh, ``events`` carrying the back-channel logout
    event, ``sub`` and/or ``sid``, and no ``nonce``.
    """

    def __init__(
        self,
        key_source: KeySource,
        *,
        issuer: str,
        client_id: str,
        algorithms: List[str],
        clock_skew_seconds: int = 30,
        logout_token_max_age_seconds: int = 300,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.key_source = key_source
        self.issuer = issuer
        self.client_id = client_id
        self.algorithms = list(algorithms)
        self.clock_skew = timedelta(seconds=clock_skew_seconds)
        self.logout_token_max_age = timedelta(seconds=logout_token_max_age_seconds)
        self._clock = clock

    async def _decode(self, token: str, *, access_token: Optional[str] = None) -> Dict[str, Any]:
        if not token or not isinstance(token, str):
            raise ValidationError("token missing")
        try:
            header = jwt.get_unverified_header(token)
        except JWTError as exc:
            raise ValidationError("malformed token", detail={"error": str(exc)}) from exc

        alg = header.get("alg")
        if alg not in self.algorithms:
            raise ValidationError("unexpected signing algorithm", detail={"alg": alg})
        kid = header.get("kid")
        key = await self.key_source.get_key(kid if isinstance(kid, str) else None)
        if key is None:
            raise ValidationError("signing key not found for token", detail={"kid": kid})

        try:
            claims = jwt.decode(
                token,
                key,
                algorithms=self.algorithms,
                audience=self.client_id,
                issuer=self.issuer,
                access_token=access_token,
                options={"leeway": int(self.clock_skew.total_seconds())},
            )
        except JWTError as exc:
            logger.warning("token_validation_failed", kid=kid, error=str(exc))
            raise ValidationError("token validation failed", detail={"error": str(exc)}) from exc
        if "aud" not in claims:
            # jose skips the audience check when the claim is absent
            raise ValidationError("token missing audience")
        return claims

    async def decode_id_token(
        self,
        token: str,
        *,
        access_token: Optional[str] = None,
        nonce: Optional[str] = None,
    ) -> OAuth2Token:
        try:
            claims = await self._decode(token, access_token=access_token)
        except ValidationError as exc:
            exc.error_code = "invalid_id_token"
            raise
        subject = claims.get("sub")
        if not isinstance(subject, str) or not subject:
            raise ValidationError("ID token missing subject", error_code="invalid_id_token")
        issued_at = from_timestamp(claims.get("iat"))
        expires_at = from_timestamp(claims.get("exp"))
        if issued_at is None or expires_at is None:
            raise ValidationError("ID token missing iat or exp", error_code="invalid_id_token")
        if nonce is not None and claims.get("nonce") != nonce:
            raise ValidationError("ID token nonce mismatch", error_code="invalid_nonce")
        return OAuth2Token(value=token, issued_at=issued_at, expires_at=expires_at, claims=claims)

    async def decode_logout_token(self, token: str) -> LogoutToken:
        claims = await self._decode(token)
        now = self._clock()

        issued_at = from_timestamp(claims.get("iat"))
        if issued_at is None:
            raise ValidationError("logout token missing iat")
        if issued_at > now + self.clock_skew:
            raise ValidationError("logout token issued in the future")
        if now - issued_at > self.logout_token_max_age + self.clock_skew:
            raise ValidationError("logout token too old", detail={"iat": claims.get("iat")})

        events = claims.get("events")
        if not isinstance(events, dict) or not isinstance(events.get(BACKCHANNEL_LOGOUT_EVENT), dict):
            raise ValidationError("logout token missing back-channel logout event")
        if "nonce" in claims:
            raise ValidationError("logout token must not contain nonce")

        subject = claims.get("sub")
        session_id = claims.get("sid")
        subject = subject if isinstance(subject, str) and subject else None
        session_id = session_id if isinstance(session_id, str) and session_id else None
        if subject is None and session_id is None:
            raise ValidationError("logout token requires sub or sid")

        jti = claims.get("jti")
        return LogoutToken(
            issuer=claims["iss"],
            subject=subject,
            session_id=session_id,
            issued_at=issued_at,
            jti=jti if isinstance(jti, str) else None,
            claims=claims,
        )


def principal_from_id_token(id_token: OAuth2Token, registration_id: str = "govsso") -> Principal:
    return Principal(
        subject=id_token.claims["sub"],
        issuer=id_token.claims["iss"],
        registration_id=registration_id,
    )
