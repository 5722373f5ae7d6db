"""Per-request session stages run ahead of the route handlers.

Order is fixed: the expiration stage must see a session before the refresh
stage can spend a network call on it, so a session ended by back-channel
logout is never refreshed back to life.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Mapping, Optional, Protocol, Sequence, Tuple, Union
from urllib.parse import urlencode

from fastapi.responses import RedirectResponse, Response

from govsso_client.api.error_handling import error_response
from govsso_client.logging import get_logger
from govsso_client.service.refresh import TokenRefresher
from govsso_client.service.results import Failure, FailureKind
from govsso_client.storage.models import SessionRecord, utcnow
from govsso_client.storage.registry import SessionRegistry
from govsso_client.storage.session_store import SessionStore

logger = get_logger(__name__)

BYPASS_PATHS = frozenset({"/backchannel/logout", "/healthz", "/favicon.ico"})
BYPASS_PREFIXES = ("/static/", "/assets/")

_HALT_MESSAGES = {
    FailureKind.EXPIRED: "session has expired",
    FailureKind.VALIDATION: "session tokens could not be validated",
    FailureKind.UPSTREAM: "session tokens could not be refreshed",
    FailureKind.UNAUTHENTICATED: "re-authentication required",
}


def wants_json(headers: Mapping[str, str]) -> bool:
    accept = headers.get("accept", "")
    if "application/json" in accept and "text/html" not in accept:
        return True
    return headers.get("x-requested-with", "").lower() == "xmlhttprequest"


@dataclass
class RequestContext:
    path: str
    session_id: Optional[str] = None
    wants_json: bool = False
    record: Optional[SessionRecord] = None


@dataclass(frozen=True)
class Proceed:
    context: RequestContext


@dataclass(frozen=True)
class Halt:
    kind: FailureKind
    error_code: str
    status_code: int = 401
    detail: Dict[str, Any] = field(default_factory=dict)

    @property
    def message(self) -> str:
        return _HALT_MESSAGES.get(self.kind, "re-authentication required")

    @classmethod
    def from_failure(cls, failure: Failure) -> "Halt":
        return cls(kind=failure.kind, error_code=failure.error_code, detail=dict(failure.detail))


StageResult = Union[Proceed, Halt]


class Stage(Protocol):
    name: str

    async def __call__(self, context: RequestContext) -> StageResult:
        ...


class SessionExpirationStage:
    """Rejects requests on sessions the registry has marked expired.

    Also expires a session whose ID token lapsed (past ``exp`` plus clock
    skew) without a session update. Requests without a session, or with a
    session the registry does not know, pass through untouched.
    """

    name = "session_expiration"

    def __init__(
        self,
        registry: SessionRegistry,
        session_store: SessionStore,
        *,
        clock_skew_seconds: int = 30,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.registry = registry
        self.session_store = session_store
        self.clock_skew = timedelta(seconds=clock_skew_seconds)
        self._clock = clock

    async def __call__(self, context: RequestContext) -> StageResult:
        if not context.session_id:
            return Proceed(context)
        record = self.registry.find_by_session_id(context.session_id)
        if record is None:
            return Proceed(context)
        if record.expired:
            self.session_store.invalidate(context.session_id)
            logger.info(
                "expired_session_rejected",
                session_id=context.session_id,
                subject=record.principal.subject,
                path=context.path,
            )
            return Halt(FailureKind.EXPIRED, "expired_session")

        id_token_expires_at = record.authorized_client.id_token.expires_at
        if id_token_expires_at is not None and self._clock() > id_token_expires_at + self.clock_skew:
            self.registry.expire(context.session_id)
            self.session_store.invalidate(context.session_id)
            logger.info(
                "session_expired_with_id_token",
                session_id=context.session_id,
                subject=record.principal.subject,
                id_token_expires_at=id_token_expires_at.isoformat(),
            )
            return Halt(FailureKind.EXPIRED, "expired_session")

        if not self.session_store.is_live(context.session_id):
            # Local session timed out; the route sees an anonymous request
            return Proceed(context)
        self.session_store.touch(context.session_id)
        context.record = record
        return Proceed(context)


class TokenRefreshStage:
    name = "token_refresh"

    def __init__(self, refresher: TokenRefresher) -> None:
        self.refresher = refresher

    async def __call__(self, context: RequestContext) -> StageResult:
        if context.record is None or not context.session_id:
            return Proceed(context)
        result = await self.refresher.refresh_if_needed(context.session_id)
        if isinstance(result, Failure):
            return Halt.from_failure(result)
        if result.record is not None:
            context.record = result.record
        return Proceed(context)


class RequestPipeline:
    def __init__(
        self,
        stages: Sequence[Stage],
        *,
        bypass_paths: frozenset = BYPASS_PATHS,
        bypass_prefixes: Tuple[str, ...] = BYPASS_PREFIXES,
    ) -> None:
        self.stages: Tuple[Stage, ...] = tuple(stages)
        self.bypass_paths = bypass_paths
        self.bypass_prefixes = bypass_prefixes

    def bypasses(self, path: str) -> bool:
        return path in self.bypass_paths or path.startswith(self.bypass_prefixes)

    async def run(self, context: RequestContext) -> StageResult:
        for stage in self.stages:
            result = await stage(context)
            if isinstance(result, Halt):
                logger.info(
                    "request_halted",
                    stage=stage.name,
                    path=context.path,
                    session_id=context.session_id,
                    error_code=result.error_code,
                )
                return result
            context = result.context
        return Proceed(context)


def build_pipeline(
    registry: SessionRegistry,
    session_store: SessionStore,
    refresher: TokenRefresher,
    *,
    clock_skew_seconds: int = 30,
    clock: Callable[[], datetime] = utcnow,
) -> RequestPipeline:
    return RequestPipeline(
        (
            SessionExpirationStage(
                registry, session_store, clock_skew_seconds=clock_skew_seconds, clock=clock
            ),
            TokenRefreshStage(refresher),
        )
    )


def clear_session_cookie(response: Response, cookie_name: str, *, secure: bool) -> None:
    response.delete_cookie(cookie_name, path="/", secure=secure, httponly=True, samesite="lax")


def halt_response(
    halt: Halt,
    context: RequestContext,
    *,
    cookie_name: str,
    cookie_secure: bool,
) -> Response:
    """Browsers are redirected to the landing page; API clients get 401 JSON."""
    if context.wants_json:
        response: Response = error_response(
            halt.status_code, halt.message, halt.detail or None, code=halt.error_code
        )
    else:
        response = RedirectResponse(url=f"/?{urlencode({'error': halt.error_code})}", status_code=302)
    clear_session_cookie(response, cookie_name, secure=cookie_secure)
    return response
