from __future__ import annotations

import asyncio
import threading
from typing import List, Optional, Union
from urllib.parse import urlparse, urlunparse

import httpx

from wso2auth.config import Settings, get_settings, reset_settings_cache
from wso2auth.logging import get_logger
from wso2auth.service.authorization import AuthorizationURLBuilder
from wso2auth.service.callback import CallbackFlow
from wso2auth.service.environment import EnvironmentConfig
from wso2auth.service.extensions import ExtensionPoints
from wso2auth.service.http import build_http_client
from wso2auth.service.idp_client import TokenExchangeClient, UserInfoClient
from wso2auth.service.operator_privileges import OperatorPrivilegesClient, OperatorRoleMapper
from wso2auth.service.profile_sync import ProfileSyncEngine
from wso2auth.service.reconciler import IdentityReconciler
from wso2auth.service.redirects import SecureRedirectDispatcher
from wso2auth.service.session_probe import (
    DirectSessionProbe,
    HttpImageLoader,
    HttpProbeFrame,
    IframeProbe,
    ImageBeaconProbe,
    ProbeMessageBus,
    ProbeStrategy,
    SilentSessionProbe,
)
from wso2auth.service.session_state import SessionManager
from wso2auth.service.state_tokens import StateTokenStore
from wso2auth.storage.memory import MemoryStore
from wso2auth.storage.redis_cache import FileStateStore, RedisCache, SyncRedisCache

logger = get_logger(__name__)

KVStore = Union[RedisCache, SyncRedisCache, FileStateStore]


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password of a connection URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


def _connect_kv(settings: Settings) -> KVStore:
    redis_error: Exception | None = None
    if settings.redis_url:
        try:
            # sync client in test mode avoids binding connections to one event loop
            cache: KVStore
            if settings.test_mode:
                cache = SyncRedisCache(settings.redis_url)
            else:
                cache = RedisCache(settings.redis_url)
            cache.verify_connection()
            return cache
        except Exception as exc:
            redis_error = exc

    if not settings.test_mode and not settings.allow_redis_fallback_dev:
        raise RuntimeError(
            "Redis is required for browser sessions and profile sync timestamps; "
            "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for the file fallback."
        ) from redis_error

    fallback_mode = "TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
    logger.warning(
        "redis_disabled_fallback",
        redis_url=_mask_url_password(settings.redis_url),
        error=str(redis_error) if redis_error else "redis_url_missing",
        message=(
            f"Running without Redis under {fallback_mode}; sessions and sync timestamps "
            "are kept in a file under the shared root."
        ),
        mode=fallback_mode,
    )
    return FileStateStore(settings.shared_fs_root)


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, *, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = get_settings()
        settings = self.settings
        logger.info(
            "runtime_init_started",
            environment=settings.environment.value,
            enabled=settings.enabled,
            test_mode=settings.test_mode,
        )

        try:
            self.store = MemoryStore(fs_root=settings.shared_fs_root)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        self.kv = _connect_kv(settings)

        self.http = build_http_client(settings, transport=transport)
        self.extensions = ExtensionPoints()
        self.environment = EnvironmentConfig(settings)
        self.sessions = SessionManager(self.kv, ttl_minutes=settings.session_ttl_minutes)
        self.state_tokens = StateTokenStore(ttl_seconds=settings.state_ttl_seconds)
        self.authorization = AuthorizationURLBuilder(
            settings, self.environment, self.state_tokens, self.extensions
        )
        self.token_client = TokenExchangeClient(self.http, self.extensions)
        self.userinfo_client = UserInfoClient(self.http, self.extensions)
        self.reconciler = IdentityReconciler(self.store, settings, self.extensions)
        self.redirects = SecureRedirectDispatcher(
            settings.app_base_url,
            settings.external_domains_whitelist,
            debug=settings.debug,
        )
        self.privileges = OperatorPrivilegesClient(
            self.http, settings, self.environment.operator_privileges_base_url
        )
        self.role_mapper = OperatorRoleMapper(self.privileges, self.store, settings)
        self.callback = CallbackFlow(
            settings,
            self.environment,
            self.state_tokens,
            self.token_client,
            self.userinfo_client,
            self.reconciler,
            self.redirects,
            role_mapper=self.role_mapper,
        )
        self.probe_bus = ProbeMessageBus()
        self.session_probe = SilentSessionProbe(
            settings, self.environment, self._probe_strategies()
        )
        self.profile_sync = ProfileSyncEngine(
            settings, self.environment, self.store, self.kv, self.http
        )

        logger.info(
            "runtime_initialized",
            kv_backend=type(self.kv).__name__,
            citizen_configured=self.environment.is_configured(),
            operator_enabled=settings.operator_enabled,
            probe_strategies=[strategy.name for strategy in self.session_probe.strategies],
            profile_sync_enabled=settings.profile_sync_enabled,
        )

    def _probe_strategies(self) -> List[ProbeStrategy]:
        settings = self.settings
        strategies: List[ProbeStrategy] = []
        if settings.probe_direct_url:
            strategies.append(
                DirectSessionProbe(
                    self.http,
                    settings.probe_direct_url,
                    timeout=settings.probe_direct_timeout_seconds,
                )
            )
        strategies.append(
            IframeProbe(
                self.authorization,
                lambda context: HttpProbeFrame(self.http, context.cookies),
                self.probe_bus,
                timeout=settings.probe_iframe_timeout_seconds,
            )
        )
        if settings.probe_image_url:
            strategies.append(
                ImageBeaconProbe(
                    HttpImageLoader(self.http),
                    settings.probe_image_url,
                    timeout=settings.probe_image_timeout_seconds,
                )
            )
        return strategies

    async def aclose(self) -> None:
        await self.http.aclose()
        await self.kv.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the unlocked read is the fast path, the locked
    re-check keeps two threads from building two runtimes.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def _close_kv(kv: KVStore) -> None:
    if isinstance(kv, SyncRedisCache):
        kv.client.close()
        return
    if isinstance(kv, RedisCache):
        try:
            loop = asyncio.get_running_loop()
            loop.create_task(kv.close())
        except RuntimeError:
            asyncio.run(kv.close())


def reset_runtime_for_tests(
    *, transport: Optional[httpx.AsyncBaseTransport] = None
) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs.

    ``transport`` replaces the network for every outbound HTTP client.
    """
    global runtime

    with _runtime_lock:
        if runtime is not None:
            try:
                _close_kv(runtime.kv)
            except Exception as exc:
                logger.debug("runtime_reset_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(transport=transport)
        return runtime
