"""Shared builders for signed tokens, token endpoint stubs and clocks."""

import base64
import json
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import httpx
from jose import jwt

from govsso_client.config import BACKCHANNEL_LOGOUT_EVENT
from govsso_client.service.tokens import OidcTokenDecoder, StaticKeySource
from govsso_client.storage.models import AuthorizedClient, OAuth2Token, Principal

ISSUER = "https://govsso.test/"
CLIENT_ID = "client-a"
KID = "test"
SECRET = "test-signing-secret-for-hs256-only-0123456789"


def jwks() -> Dict[str, Any]:
    k = base64.urlsafe_b64encode(SECRET.encode()).rstrip(b"=").decode()
    return {"keys": [{"kty": "oct", "k": k, "alg": "HS256", "kid": KID}]}


def key_source() -> StaticKeySource:
    return StaticKeySource(jwks())


def make_decoder(clock: Callable[[], datetime] = None, **kwargs) -> OidcTokenDecoder:
    params = dict(issuer=ISSUER, client_id=CLIENT_ID, algorithms=["HS256"])
    params.update(kwargs)
    if clock is not None:
        params["clock"] = clock
    return OidcTokenDecoder(key_source(), **params)


def sign(claims: Dict[str, Any], *, kid: str = KID, access_token: Optional[str] = None) -> str:
    return jwt.encode(
        claims, SECRET, algorithm="HS256", headers={"kid": kid}, access_token=access_token
    )


def make_id_token(
    *,
    sub: str = "user1",
    sid: Optional[str] = "sid-1",
    nonce: Optional[str] = None,
    aud: Any = CLIENT_ID,
    iss: str = ISSUER,
    expires_in: int = 900,
    access_token: Optional[str] = "access-1",
    **extra: Any,
) -> str:
    now = int(time.time())
    claims: Dict[str, Any] = {
        "iss": iss,
        "sub": sub,
        "aud": aud,
        "iat": now,
        "exp": now + expires_in,
        **extra,
    }
    if sid is not None:
        claims["sid"] = sid
    if nonce is not None:
        claims["nonce"] = nonce
    return sign(claims, access_token=access_token)


def make_logout_token(
    *,
    sub: Optional[str] = "user1",
    sid: Optional[str] = "sid-1",
    aud: Any = CLIENT_ID,
    iss: str = ISSUER,
    iat: Optional[int] = None,
    events: Any = None,
    **extra: Any,
) -> str:
    claims: Dict[str, Any] = {
        "iss": iss,
        "aud": aud,
        "iat": iat if iat is not None else int(time.time()),
        "jti": "jti-1",
        "events": events if events is not None else {BACKCHANNEL_LOGOUT_EVENT: {}},
        **extra,
    }
    if sub is not None:
        claims["sub"] = sub
    if sid is not None:
        claims["sid"] = sid
    return sign(claims)


def make_authorized_client(
    *,
    now: datetime,
    access_expires_in: Optional[int] = 900,
    id_expires_in: Optional[int] = 900,
    refresh_token: Optional[str] = "refresh-1",
    sub: str = "user1",
    sid: Optional[str] = "sid-1",
    claims: Optional[Dict[str, Any]] = None,
) -> AuthorizedClient:
    claims = {"iss": ISSUER, "sub": sub, **(claims or {})}
    if sid is not None:
        claims["sid"] = sid
    return AuthorizedClient(
        access_token=OAuth2Token(
            value="access-0",
            issued_at=now,
            expires_at=now + timedelta(seconds=access_expires_in) if access_expires_in is not None else None,
        ),
        id_token=OAuth2Token(
            value="id-token-0",
            issued_at=now,
            expires_at=now + timedelta(seconds=id_expires_in) if id_expires_in is not None else None,
            claims=claims,
        ),
        refresh_token=OAuth2Token(value=refresh_token, issued_at=now) if refresh_token else None,
    )


def principal(sub: str = "user1") -> Principal:
    return Principal(subject=sub, issuer=ISSUER)


class FrozenClock:
    """Settable clock starting at the real current time."""

    def __init__(self, now: Optional[datetime] = None):
        self.now = now or datetime.now(timezone.utc).replace(microsecond=0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class TokenEndpointStub:
    """httpx transport standing in for the provider token endpoint."""

    def __init__(self, responder: Optional[Callable[[Dict[str, str]], httpx.Response]] = None):
        self.requests: List[Dict[str, str]] = []
        self.auth_headers: List[Optional[str]] = []
        self.responder = responder or (lambda form: token_response())
        self.transport = httpx.MockTransport(self._handle)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        form = dict(httpx.QueryParams(request.content.decode()))
        self.requests.append(form)
        self.auth_headers.append(request.headers.get("authorization"))
        return self.responder(form)

    @property
    def calls(self) -> int:
        return len(self.requests)


def token_response(
    *,
    access_token: str = "access-2",
    refresh_token: Optional[str] = "refresh-2",
    expires_in: int = 900,
    id_token: Optional[str] = None,
    **id_token_kwargs: Any,
) -> httpx.Response:
    body: Dict[str, Any] = {
        "access_token": access_token,
        "token_type": "Bearer",
        "expires_in": expires_in,
        "id_token": id_token
        or make_id_token(access_token=access_token, **id_token_kwargs),
    }
    if refresh_token is not None:
        body["refresh_token"] = refresh_token
    return httpx.Response(200, content=json.dumps(body), headers={"Content-Type": "application/json"})


def oauth_error(error: str, status_code: int = 400) -> httpx.Response:
    return httpx.Response(
        status_code,
        content=json.dumps({"error": error, "error_description": f"{error} from test"}),
        headers={"Content-Type": "application/json"},
    )
