from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from govsso_client.api.error_handling import register_exception_handlers
from govsso_client.api.pipeline import Halt, RequestContext, halt_response, wants_json
from govsso_client.api.routes import router
from govsso_client.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

HSTS_MAX_AGE_SECONDS = 186 * 24 * 60 * 60

# GovSSO redirects back here from a privacy-sensitive context (Origin: null)
# during background session update
SESSION_UPDATE_CORS_PATHS = frozenset({"/login/oauth2/code/govsso", "/dashboard"})

_sweep_task: asyncio.Task | None = None


async def _run_registry_sweep(interval_seconds: int) -> None:
    """Background loop dropping dead sessions and stale registry entries."""
    from govsso_client.service.runtime import get_runtime

    interval = max(interval_seconds, 10)
    try:
        while True:
            await asyncio.sleep(interval)
            try:
                get_runtime().sweep()
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # pragma: no cover - best-effort cleanup
                logger.warning("registry_sweep_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info("registry_sweep_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    global _sweep_task
    from govsso_client.service.runtime import get_runtime

    runtime = get_runtime()
    _sweep_task = asyncio.create_task(
        _run_registry_sweep(runtime.settings.registry_sweep_interval_seconds)
    )
    logger.info("registry_sweep_started", interval=runtime.settings.registry_sweep_interval_seconds)

    yield

    try:
        if _sweep_task:
            _sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _sweep_task
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="GovSSO Client", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def run_session_pipeline(request: Request, call_next):
    """Session expiration, then token refresh, ahead of every route."""
    from govsso_client.service.runtime import get_runtime

    runtime = get_runtime()
    pipeline = runtime.pipeline
    path = request.url.path
    if pipeline.bypasses(path):
        return await call_next(request)

    context = RequestContext(
        path=path,
        session_id=request.cookies.get(runtime.settings.session_cookie_name),
        wants_json=wants_json(request.headers),
    )
    result = await pipeline.run(context)
    if isinstance(result, Halt):
        return halt_response(
            result,
            context,
            cookie_name=runtime.settings.session_cookie_name,
            cookie_secure=runtime.settings.cookie_secure,
        )
    request.state.session_context = result.context
    return await call_next(request)


@app.middleware("http")
async def allow_null_origin_for_session_update(request: Request, call_next):
    response = await call_next(request)
    if request.url.path in SESSION_UPDATE_CORS_PATHS and request.headers.get("origin") == "null":
        response.headers["Access-Control-Allow-Origin"] = "null"
        response.headers["Access-Control-Allow-Credentials"] = "true"
    return response


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    from govsso_client.service.runtime import get_runtime

    settings = get_runtime().settings
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    response.headers.setdefault(
        "Permissions-Policy", "camera=(), microphone=(), geolocation=(), payment=()"
    )
    if request.url.scheme == "https" and settings.enable_hsts:
        response.headers.setdefault(
            "Strict-Transport-Security", f"max-age={HSTS_MAX_AGE_SECONDS}; includeSubDomains"
        )
    response.headers.setdefault(
        "Content-Security-Policy-Report-Only",
        "default-src 'self'; frame-ancestors 'none'; base-uri 'self'; "
        f"form-action 'self' {settings.govsso_issuer_uri.rstrip('/')}",
    )
    return response


@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    """Bind X-Request-ID (or a fresh UUID) to the log context and echo it back."""
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)
