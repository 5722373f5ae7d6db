"""Tests for the request pipeline stages and their ordering."""

from typing import List

from govsso_client.api.pipeline import (
    Halt,
    Proceed,
    RequestContext,
    RequestPipeline,
    SessionExpirationStage,
    TokenRefreshStage,
    build_pipeline,
    halt_response,
    wants_json,
)
from govsso_client.service.results import Failure, FailureKind, Success
from govsso_client.storage.registry import SessionRegistry
from govsso_client.storage.session_store import MemorySessionStore
from support import FrozenClock, make_authorized_client, principal


class RecordingRefresher:
    def __init__(self, result=None):
        self.calls: List[str] = []
        self.result = result or Success()

    async def refresh_if_needed(self, session_id):
        self.calls.append(session_id)
        return self.result


def _setup(refresher=None):
    clock = FrozenClock()
    registry = SessionRegistry(clock=clock)
    store = MemorySessionStore(1800, clock=clock)
    refresher = refresher or RecordingRefresher()
    pipeline = build_pipeline(registry, store, refresher, clock_skew_seconds=30, clock=clock)
    return clock, registry, store, refresher, pipeline


def _login(clock, registry, store, **kwargs) -> str:
    session = store.create()
    registry.register(session.id, principal(), make_authorized_client(now=clock(), **kwargs))
    return session.id


class TestSessionExpirationStage:
    async def test_no_session_passes(self):
        clock, registry, store, _, _ = _setup()
        stage = SessionExpirationStage(registry, store, clock=clock)
        result = await stage(RequestContext(path="/"))
        assert isinstance(result, Proceed)

    async def test_unknown_session_passes(self):
        clock, registry, store, _, _ = _setup()
        stage = SessionExpirationStage(registry, store, clock=clock)
        result = await stage(RequestContext(path="/", session_id="unknown"))
        assert isinstance(result, Proceed)
        assert result.context.record is None

    async def test_live_session_is_attached(self):
        clock, registry, store, _, _ = _setup()
        sid = _login(clock, registry, store)
        stage = SessionExpirationStage(registry, store, clock=clock)

        result = await stage(RequestContext(path="/", session_id=sid))

        assert isinstance(result, Proceed)
        assert result.context.record.session_id == sid

    async def test_expired_session_halts(self):
        clock, registry, store, _, _ = _setup()
        sid = _login(clock, registry, store)
        registry.expire(sid)
        stage = SessionExpirationStage(registry, store, clock=clock)

        result = await stage(RequestContext(path="/dashboard", session_id=sid))

        assert isinstance(result, Halt)
        assert result.kind is FailureKind.EXPIRED
        assert result.error_code == "expired_session"

    async def test_lapsed_id_token_expires_session(self):
        clock, registry, store, _, _ = _setup()
        sid = _login(clock, registry, store, id_expires_in=60, access_expires_in=60)
        stage = SessionExpirationStage(registry, store, clock_skew_seconds=30, clock=clock)

        clock.advance(80)
        assert isinstance(await stage(RequestContext(path="/", session_id=sid)), Proceed)

        clock.advance(20)
        result = await stage(RequestContext(path="/", session_id=sid))
        assert isinstance(result, Halt)
        assert registry.find_by_session_id(sid).expired is True
        assert store.is_live(sid) is False


class TestTokenRefreshStage:
    async def test_failure_becomes_halt(self):
        refresher = RecordingRefresher(Failure(FailureKind.UPSTREAM, "invalid_grant"))
        clock, registry, store, _, _ = _setup()
        sid = _login(clock, registry, store)
        context = RequestContext(path="/", session_id=sid, record=registry.find_by_session_id(sid))

        result = await TokenRefreshStage(refresher)(context)

        assert isinstance(result, Halt)
        assert result.error_code == "invalid_grant"
        assert result.kind is FailureKind.UPSTREAM

    async def test_anonymous_request_skips_refresh(self):
        refresher = RecordingRefresher()
        result = await TokenRefreshStage(refresher)(RequestContext(path="/"))
        assert isinstance(result, Proceed)
        assert refresher.calls == []


class TestRequestPipeline:
    def test_stage_order_is_explicit(self):
        _, _, _, _, pipeline = _setup()
        assert [stage.name for stage in pipeline.stages] == ["session_expiration", "token_refresh"]

    async def test_expired_session_never_reaches_refresh(self):
        clock, registry, store, refresher, pipeline = _setup()
        sid = _login(clock, registry, store, access_expires_in=5)
        registry.expire(sid)

        result = await pipeline.run(RequestContext(path="/dashboard", session_id=sid))

        assert isinstance(result, Halt)
        assert result.error_code == "expired_session"
        assert refresher.calls == []

    async def test_live_session_runs_both_stages(self):
        clock, registry, store, refresher, pipeline = _setup()
        sid = _login(clock, registry, store)

        result = await pipeline.run(RequestContext(path="/dashboard", session_id=sid))

        assert isinstance(result, Proceed)
        assert refresher.calls == [sid]

    async def test_halt_stops_later_stages(self):
        calls = []

        class Stop:
            name = "stop"

            async def __call__(self, context):
                calls.append("stop")
                return Halt(FailureKind.UNAUTHENTICATED, "login_required")

        class Never:
            name = "never"

            async def __call__(self, context):
                calls.append("never")
                return Proceed(context)

        result = await RequestPipeline((Stop(), Never())).run(RequestContext(path="/"))

        assert isinstance(result, Halt)
        assert calls == ["stop"]

    def test_bypass_paths(self):
        _, _, _, _, pipeline = _setup()
        assert pipeline.bypasses("/backchannel/logout")
        assert pipeline.bypasses("/healthz")
        assert pipeline.bypasses("/static/app.css")
        assert not pipeline.bypasses("/dashboard")


class TestHaltResponse:
    def test_browser_gets_redirect_and_cookie_cleared(self):
        halt = Halt(FailureKind.EXPIRED, "expired_session")
        response = halt_response(
            halt, RequestContext(path="/dashboard"), cookie_name="SESSION", cookie_secure=False
        )
        assert response.status_code == 302
        assert response.headers["location"] == "/?error=expired_session"
        assert "SESSION=" in response.headers["set-cookie"]

    def test_api_client_gets_401_json(self):
        halt = Halt(FailureKind.UPSTREAM, "invalid_grant")
        response = halt_response(
            halt,
            RequestContext(path="/dashboard", wants_json=True),
            cookie_name="SESSION",
            cookie_secure=False,
        )
        assert response.status_code == 401
        assert b'"code":"invalid_grant"' in response.body

    def test_wants_json(self):
        assert wants_json({"accept": "application/json"})
        assert wants_json({"x-requested-with": "XMLHttpRequest"})
        assert not wants_json({"accept": "text/html,application/json;q=0.9"})
        assert not wants_json({})
