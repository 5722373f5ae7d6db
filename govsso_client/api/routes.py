from __future__ import annotations

import re
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Form, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response

from govsso_client.api.pipeline import RequestContext, clear_session_cookie, wants_json
from govsso_client.api.schemas import (
    DashboardResponse,
    Envelope,
    HealthResponse,
    LandingResponse,
    TokenSummary,
)
from govsso_client.logging import get_logger
from govsso_client.service.backchannel import logout_error_body
from govsso_client.service.errors import AuthenticationError, ServiceError, ValidationError
from govsso_client.service.login import resolve_ui_locale
from govsso_client.service.runtime import get_runtime
from govsso_client.storage.models import OAuth2Token, SessionRecord, utcnow

logger = get_logger(__name__)

router = APIRouter()

LOGIN_PATH = "/oauth2/authorization/govsso"
_OAUTH_ERROR_CODE = re.compile(r"^[a-z][a-z0-9_]{0,63}$")


def _context(request: Request) -> Optional[RequestContext]:
    return getattr(request.state, "session_context", None)


def _current_record(request: Request) -> Optional[SessionRecord]:
    context = _context(request)
    return context.record if context is not None else None


def _session_id(request: Request) -> Optional[str]:
    return request.cookies.get(get_runtime().settings.session_cookie_name)


def _error_redirect(error_code: str) -> RedirectResponse:
    if not _OAUTH_ERROR_CODE.match(error_code or ""):
        error_code = "authentication_failure"
    return RedirectResponse(url=f"/?{urlencode({'error': error_code})}", status_code=302)


def _base_url(request: Request) -> str:
    return str(request.base_url).rstrip("/")


def _string_claim(claims: dict, name: str) -> Optional[str]:
    value = claims.get(name)
    return value if isinstance(value, str) else None


def _token_summary(token: OAuth2Token) -> TokenSummary:
    return TokenSummary(issued_at=token.issued_at, expires_at=token.expires_at)


@router.get("/", tags=["pages"])
async def landing(
    request: Request,
    error: Optional[str] = Query(None, max_length=64),
    show_post_logout_message: Optional[str] = Query(None, alias="show-post-logout-message"),
):
    """Landing page; echoes the error code a failed flow redirected with."""
    if _current_record(request) is not None and error is None:
        return RedirectResponse(url="/dashboard", status_code=302)
    return Envelope(
        status="ok",
        data=LandingResponse(
            authenticated=False,
            error=error if error and _OAUTH_ERROR_CODE.match(error) else None,
            show_post_logout_message=show_post_logout_message is not None,
            login_url=LOGIN_PATH,
        ),
    )


@router.get("/dashboard", tags=["pages"])
async def dashboard(request: Request):
    record = _current_record(request)
    if record is None:
        if wants_json(request.headers):
            raise AuthenticationError("login required", error_code="unauthorized")
        return RedirectResponse(url=LOGIN_PATH, status_code=302)

    claims = record.authorized_client.id_token.claims
    amr = claims.get("amr")
    if isinstance(amr, list):
        amr = [method for method in amr if isinstance(method, str)]
    else:
        amr = None
    return Envelope(
        status="ok",
        data=DashboardResponse(
            subject=record.principal.subject,
            issuer=record.principal.issuer,
            session_id=record.session_id,
            provider_session_id=record.provider_session_id,
            given_name=_string_claim(claims, "given_name"),
            family_name=_string_claim(claims, "family_name"),
            birthdate=_string_claim(claims, "birthdate"),
            acr=_string_claim(claims, "acr"),
            amr=amr,
            id_token=_token_summary(record.authorized_client.id_token),
            access_token=_token_summary(record.authorized_client.access_token),
            has_refresh_token=record.authorized_client.refresh_token is not None,
            last_access_time=record.last_access_time,
        ),
    )


@router.get(LOGIN_PATH, tags=["auth"])
async def authorization_request(
    request: Request,
    locale: Optional[str] = Query(None, max_length=32),
    prompt: Optional[str] = Query(None, pattern="^none$"),
):
    """Start a login, or a session update when ``prompt=none``."""
    runtime = get_runtime()
    try:
        url = runtime.login.start(
            locale=locale,
            prompt=prompt,
            current_record=_current_record(request),
        )
    except AuthenticationError as exc:
        if wants_json(request.headers):
            raise
        logger.info("authorization_request_refused", error_code=exc.error_code)
        return _error_redirect(exc.error_code)
    return RedirectResponse(url=url, status_code=302)


@router.get("/login/oauth2/code/govsso", tags=["auth"])
async def authorization_callback(
    request: Request,
    code: Optional[str] = Query(None, max_length=2048),
    state: Optional[str] = Query(None, max_length=128),
    error: Optional[str] = Query(None, max_length=64),
    error_description: Optional[str] = Query(None, max_length=512),
):
    """Authorization code callback. Failures never surface exception detail."""
    runtime = get_runtime()
    if error:
        logger.warning(
            "authorization_error_from_provider",
            oauth_error=error,
            oauth_error_description=error_description,
        )
        return _error_redirect(error)
    if not code or not state:
        return _error_redirect("invalid_request")

    try:
        result = await runtime.login.complete(
            code=code, state=state, current_session_id=_session_id(request)
        )
    except ServiceError as exc:
        logger.warning(
            "authentication_failed",
            error_code=exc.error_code,
            status_code=exc.status_code,
            message=exc.message,
        )
        response = _error_redirect(exc.error_code)
        if exc.error_code in {"expired_session", "invalid_id_token"}:
            clear_session_cookie(
                response, runtime.settings.session_cookie_name, secure=runtime.settings.cookie_secure
            )
        return response

    response = RedirectResponse(url="/dashboard", status_code=302)
    response.set_cookie(
        runtime.settings.session_cookie_name,
        result.session_id,
        httponly=True,
        secure=runtime.settings.cookie_secure,
        samesite="lax",
        path="/",
    )
    return response


@router.post("/oauth/logout", tags=["auth"])
async def rp_initiated_logout(
    request: Request,
    ui_locales: Optional[str] = Form(None, max_length=32),
):
    runtime = get_runtime()
    # Locale is resolved before the session is gone
    locale = resolve_ui_locale(ui_locales, request.headers.get("accept-language"))
    url = runtime.logout.logout(
        _session_id(request),
        base_url=_base_url(request),
        ui_locales=locale,
    )
    response = RedirectResponse(url=url, status_code=302)
    clear_session_cookie(
        response, runtime.settings.session_cookie_name, secure=runtime.settings.cookie_secure
    )
    return response


@router.post("/backchannel/logout", tags=["auth"])
async def backchannel_logout(logout_token: Optional[str] = Form(None)):
    """OpenID Connect Back-Channel Logout receiver.

    200 for every processed token, matching sessions or not; 400 for a
    missing or invalid token, with no state change.
    """
    runtime = get_runtime()
    headers = {"Cache-Control": "no-store"}
    if not logout_token:
        logger.warning("backchannel_logout_missing_token")
        return JSONResponse(
            status_code=400, content=logout_error_body("logout_token is required"), headers=headers
        )
    try:
        await runtime.backchannel.handle(logout_token)
    except ValidationError as exc:
        logger.warning(
            "backchannel_logout_rejected",
            error_code=exc.error_code,
            message=exc.message,
            detail=exc.detail,
        )
        return JSONResponse(status_code=400, content=logout_error_body(exc.message), headers=headers)
    return Response(status_code=200, headers=headers)


@router.get("/healthz", tags=["ops"])
async def health():
    runtime = get_runtime()
    return HealthResponse(
        status="healthy",
        registered_sessions=len(runtime.registry),
        timestamp=utcnow(),
    )

