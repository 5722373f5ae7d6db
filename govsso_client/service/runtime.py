from __future__ import annotations

import threading
from datetime import datetime
from typing import Callable, Optional

import httpx

from govsso_client.api.pipeline import RequestPipeline, build_pipeline
from govsso_client.config import REGISTRATION_ID, Settings, get_settings, reset_settings_cache
from govsso_client.logging import get_logger
from govsso_client.service.backchannel import BackChannelLogoutHandler
from govsso_client.service.login import LoginService, LogoutService
from govsso_client.service.refresh import TokenRefresher
from govsso_client.service.token_client import TokenEndpointClient
from govsso_client.service.tokens import JwksKeySource, KeySource, OidcTokenDecoder
from govsso_client.storage.models import utcnow
from govsso_client.storage.registry import SessionRegistry
from govsso_client.storage.session_store import MemorySessionStore

logger = get_logger(__name__)


class Runtime:
    """Holds singleton service instances for the FastAPI app.

    ``key_source``, ``token_transport`` and ``clock`` exist so tests can pin
    signing keys, stub the token endpoint and move time.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        key_source: Optional[KeySource] = None,
        token_transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings or get_settings()
        self.clock = clock
        logger.info(
            "runtime_init_started",
            issuer=self.settings.govsso_issuer_uri,
            client_id=self.settings.govsso_client_id,
            test_mode=self.settings.test_mode,
        )

        self.session_store = MemorySessionStore(
            self.settings.session_timeout_minutes * 60, clock=clock
        )
        self.registry = SessionRegistry(
            expired_retention_seconds=self.settings.expired_session_retention_seconds,
            clock=clock,
        )

        self._owns_key_source = key_source is None
        self.key_source: KeySource = key_source or JwksKeySource(
            self.settings.govsso_jwks_uri,
            refresh_interval=self.settings.jwks_refresh_interval_seconds,
            min_refetch_interval=self.settings.jwks_min_refetch_seconds,
            http_timeout=self.settings.token_endpoint_timeout_seconds,
        )
        self.decoder = OidcTokenDecoder(
            self.key_source,
            issuer=self.settings.govsso_issuer_uri,
            client_id=self.settings.govsso_client_id,
            algorithms=self.settings.jws_algorithms,
            clock_skew_seconds=self.settings.clock_skew_seconds,
            logout_token_max_age_seconds=self.settings.logout_token_max_age_seconds,
            clock=clock,
        )
        self.token_client = TokenEndpointClient(
            self.settings.govsso_token_uri,
            self.settings.govsso_client_id,
            self.settings.govsso_client_secret,
            timeout=self.settings.token_endpoint_timeout_seconds,
            transport=token_transport,
        )

        self.refresher = TokenRefresher(
            self.registry,
            self.session_store,
            self.token_client,
            self.decoder,
            lead_seconds=self.settings.refresh_lead_seconds,
            missing_policy=self.settings.refresh_missing_policy,
            clock=clock,
        )
        self.backchannel = BackChannelLogoutHandler(
            self.registry,
            self.session_store,
            self.decoder,
            registration_id=REGISTRATION_ID,
        )
        self.login = LoginService(
            self.settings,
            self.registry,
            self.session_store,
            self.token_client,
            self.decoder,
            clock=clock,
        )
        self.logout = LogoutService(self.settings, self.registry, self.session_store)
        self.pipeline: RequestPipeline = build_pipeline(
            self.registry,
            self.session_store,
            self.refresher,
            clock_skew_seconds=self.settings.clock_skew_seconds,
            clock=clock,
        )

        logger.info(
            "runtime_initialized",
            refresh_lead_seconds=self.settings.refresh_lead_seconds,
            refresh_missing_policy=self.settings.refresh_missing_policy.value,
            jws_algorithms=self.settings.jws_algorithms,
            pipeline=[stage.name for stage in self.pipeline.stages],
        )

    def sweep(self) -> int:
        """Drop dead local sessions and registry entries past retention."""
        purged_sessions = self.session_store.purge_dead()
        removed = self.registry.remove_expired_sessions(self.session_store.is_live)
        self.login.cleanup_expired_states()
        if purged_sessions or removed:
            logger.info(
                "registry_sweep_completed",
                purged_sessions=purged_sessions,
                removed_records=removed,
                remaining_records=len(self.registry),
            )
        return removed

    async def close(self) -> None:
        await self.token_client.close()
        if self._owns_key_source and isinstance(self.key_source, JwksKeySource):
            await self.key_source.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(
    *,
    key_source: Optional[KeySource] = None,
    token_transport: Optional[httpx.AsyncBaseTransport] = None,
    clock: Callable[[], datetime] = utcnow,
) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(
            settings, key_source=key_source, token_transport=token_transport, clock=clock
        )
        return runtime
