from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol
from urllib.parse import parse_qs, quote, urljoin, urlsplit

import httpx

from wso2auth.config import Settings
from wso2auth.logging import get_logger, mask_url_query
from wso2auth.service.authorization import AuthorizationURLBuilder
from wso2auth.service.environment import EnvironmentConfig
from wso2auth.service.session_state import SessionState
from wso2auth.storage.models import SessionCheckState

logger = get_logger(__name__)

NOT_AUTHENTICATED_ERRORS = frozenset({"login_required", "interaction_required"})
AUTHORIZE_PATH = "/wso2-auth/authorize"


class ProbeResult(str, Enum):
    AUTHENTICATED = "authenticated"
    NOT_AUTHENTICATED = "not_authenticated"
    AMBIGUOUS = "ambiguous"


@dataclass
class ProbeContext:
    """What a strategy needs to know about the visitor being probed."""

    session: SessionState
    path: str
    cookies: Dict[str, str] = field(default_factory=dict)


class ProbeStrategy(Protocol):
    name: str
    timeout: float
    # result when the strategy times out or raises
    failure_result: ProbeResult

    async def probe(self, context: ProbeContext) -> ProbeResult: ...


def classify_probe_message(message: Dict[str, Any]) -> ProbeResult:
    if message.get("code"):
        return ProbeResult.AUTHENTICATED
    if message.get("error") in NOT_AUTHENTICATED_ERRORS:
        return ProbeResult.NOT_AUTHENTICATED
    return ProbeResult.AMBIGUOUS


def classify_navigated_url(url: str) -> Optional[ProbeResult]:
    """Inspect a redirect target for ``code=`` or ``error=``; None means keep waiting."""
    try:
        query = parse_qs(urlsplit(url).query)
    except ValueError:
        return None
    if "code" not in query and "error" not in query:
        return None
    return classify_probe_message(
        {"code": (query.get("code") or [None])[0], "error": (query.get("error") or [None])[0]}
    )


# direct probe


class DirectSessionProbe:
    """Credentialed GET against a session endpoint: 200 yes, 401 no, anything else unknown."""

    name = "direct"
    failure_result = ProbeResult.AMBIGUOUS

    def __init__(self, client: httpx.AsyncClient, url: str, *, timeout: float = 5.0):
        self.client = client
        self.url = url
        self.timeout = timeout

    async def probe(self, context: ProbeContext) -> ProbeResult:
        try:
            response = await self.client.get(self.url, cookies=context.cookies or None)
        except httpx.HTTPError as exc:
            logger.info("direct_probe_transport_error", error_type=type(exc).__name__)
            return ProbeResult.AMBIGUOUS
        if response.status_code == 200:
            return ProbeResult.AUTHENTICATED
        if response.status_code == 401:
            return ProbeResult.NOT_AUTHENTICATED
        logger.info("direct_probe_unexpected_status", status_code=response.status_code)
        return ProbeResult.AMBIGUOUS


# iframe probe


class ProbeFrame(Protocol):
    """A hidden frame: load a URL, then expose where it navigated to.

    ``settled`` turns true once the frame can no longer navigate on its own.
    """

    settled: bool

    async def load(self, url: str) -> None: ...

    async def current_url(self) -> Optional[str]: ...

    async def close(self) -> None: ...


class HttpProbeFrame:
    """Frame backed by a single non-redirecting GET; the Location header is the navigated URL."""

    def __init__(self, client: httpx.AsyncClient, cookies: Optional[Dict[str, str]] = None):
        self.client = client
        self.cookies = cookies or {}
        self._location: Optional[str] = None
        self.settled = False
        self.closed = False

    async def load(self, url: str) -> None:
        response = await self.client.get(url, cookies=self.cookies or None, follow_redirects=False)
        location = response.headers.get("location")
        self._location = urljoin(url, location) if location else None
        self.settled = True

    async def current_url(self) -> Optional[str]:
        return self._location

    async def close(self) -> None:
        self._location = None
        self.closed = True


class ProbeMessageBus:
    """Delivers ``probe_result`` messages from the probe callback page to a waiting probe.

    Subscriptions are keyed by the probe's ``state`` and live only while the
    probe waits.
    """

    def __init__(self) -> None:
        self._waiters: Dict[str, asyncio.Future] = {}

    def subscribe(self, state: str) -> asyncio.Future:
        future = asyncio.get_running_loop().create_future()
        self._waiters[state] = future
        return future

    def unsubscribe(self, state: str) -> None:
        future = self._waiters.pop(state, None)
        if future is not None and not future.done():
            future.cancel()

    def publish(self, state: str, message: Dict[str, Any]) -> bool:
        if message.get("type") != "probe_result":
            return False
        future = self._waiters.get(state)
        if future is None or future.done():
            return False
        future.set_result(message)
        return True

    @property
    def active_subscriptions(self) -> int:
        return len(self._waiters)


class IframeProbe:
    """``prompt=none`` authorization request in a hidden frame.

    Resolves from a bus message or from the frame's navigated URL, whichever
    arrives first. The frame and the subscription are always torn down.
    """

    name = "iframe"
    failure_result = ProbeResult.AMBIGUOUS

    def __init__(
        self,
        builder: AuthorizationURLBuilder,
        frame_factory: Callable[[ProbeContext], ProbeFrame],
        bus: ProbeMessageBus,
        *,
        timeout: float = 15.0,
        poll_interval: float = 0.25,
    ):
        self.builder = builder
        self.frame_factory = frame_factory
        self.bus = bus
        self.timeout = timeout
        self.poll_interval = poll_interval

    async def probe(self, context: ProbeContext) -> ProbeResult:
        url = self.builder.build(context.session, context.path, prompt="none")
        pending = context.session.peek_auth_request()
        state = pending.state if pending else ""
        message = self.bus.subscribe(state)
        frame = self.frame_factory(context)
        result = ProbeResult.AMBIGUOUS
        try:
            await frame.load(url)
            while True:
                if message.done():
                    result = classify_probe_message(message.result())
                    return result
                navigated = await frame.current_url()
                if navigated:
                    classified = classify_navigated_url(navigated)
                    if classified is not None:
                        result = classified
                        return result
                if frame.settled:
                    return result
                await asyncio.wait({message}, timeout=self.poll_interval)
        finally:
            self.bus.unsubscribe(state)
            await frame.close()
            if result != ProbeResult.AUTHENTICATED:
                current = context.session.peek_auth_request()
                if current is not None and current.state == state:
                    context.session.pop_auth_request()


# image beacon probe


class ImageLoader(Protocol):
    async def load(self, url: str, cookies: Dict[str, str]) -> bool: ...


class HttpImageLoader:
    """``onload`` when the resource answers 2xx, ``onerror`` otherwise."""

    def __init__(self, client: httpx.AsyncClient):
        self.client = client

    async def load(self, url: str, cookies: Dict[str, str]) -> bool:
        try:
            response = await self.client.get(url, cookies=cookies or None)
        except httpx.HTTPError:
            return False
        return response.is_success


class ImageBeaconProbe:
    """Last resort, lowest confidence: a load means yes, an error or timeout means no."""

    name = "image"
    failure_result = ProbeResult.NOT_AUTHENTICATED

    def __init__(self, loader: ImageLoader, url: str, *, timeout: float = 5.0):
        self.loader = loader
        self.url = url
        self.timeout = timeout

    async def probe(self, context: ProbeContext) -> ProbeResult:
        separator = "&" if "?" in self.url else "?"
        loaded = await self.loader.load(f"{self.url}{separator}_={int(time.time() * 1000)}", context.cookies)
        return ProbeResult.AUTHENTICATED if loaded else ProbeResult.NOT_AUTHENTICATED


# orchestration


@dataclass
class ProbeDecision:
    result: Optional[ProbeResult] = None
    skipped: Optional[str] = None
    redirect_url: Optional[str] = None

    @property
    def should_redirect(self) -> bool:
        return self.redirect_url is not None


class SilentSessionProbe:
    """Runs the probe strategies as a sequential fallback chain.

    A strategy is only consulted when the previous one was ambiguous. If every
    strategy is ambiguous the visitor is treated as not authenticated.
    """

    def __init__(
        self,
        settings: Settings,
        environment: EnvironmentConfig,
        strategies: List[ProbeStrategy],
        *,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.environment = environment
        self.strategies = strategies
        self.clock = clock

    @property
    def enabled(self) -> bool:
        return (
            self.settings.session_probe_enabled
            and self.environment.is_configured()
            and bool(self.strategies)
        )

    def is_path_excluded(self, path: str) -> bool:
        return any(path.startswith(prefix) for prefix in self.settings.probe_excluded_paths if prefix)

    def throttle_reason(self, check: SessionCheckState) -> Optional[str]:
        """Why a probe must not run now, or None. Clears a stale redirect marker."""
        now = self.clock()
        if check.redirect_in_progress:
            started = check.redirect_started_at or 0.0
            if now - started < self.settings.probe_redirect_grace_seconds:
                return "redirect_in_progress"
            check.redirect_in_progress = False
            check.redirect_started_at = None
        if check.last_check_at is not None and now - check.last_check_at < self.settings.probe_check_interval_seconds:
            return "checked_recently"
        if (
            check.last_negative_at is not None
            and now - check.last_negative_at < self.settings.probe_negative_cooldown_seconds
        ):
            return "negative_cooldown"
        return None

    async def run(self, context: ProbeContext) -> ProbeResult:
        for strategy in self.strategies:
            try:
                result = await asyncio.wait_for(strategy.probe(context), timeout=strategy.timeout)
            except asyncio.TimeoutError:
                logger.info("session_probe_strategy_timeout", strategy=strategy.name)
                result = strategy.failure_result
            except Exception as exc:
                logger.warning(
                    "session_probe_strategy_failed",
                    strategy=strategy.name,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                result = strategy.failure_result
            if self.settings.debug:
                logger.debug("session_probe_strategy_result_debug", strategy=strategy.name, result=result.value)
            if result != ProbeResult.AMBIGUOUS:
                return result
        return ProbeResult.NOT_AUTHENTICATED

    async def check(self, context: ProbeContext, *, anonymous: bool = True) -> ProbeDecision:
        if not self.enabled:
            return ProbeDecision(skipped="disabled")
        if not anonymous:
            return ProbeDecision(skipped="authenticated")
        if self.is_path_excluded(urlsplit(context.path).path):
            return ProbeDecision(skipped="excluded_path")
        check = context.session.session_check
        reason = self.throttle_reason(check)
        if reason:
            context.session.set_session_check(check)
            return ProbeDecision(skipped=reason)

        check.checked = True
        check.last_check_at = self.clock()
        context.session.set_session_check(check)

        result = await self.run(context)
        check = context.session.session_check
        if result == ProbeResult.AUTHENTICATED:
            check.redirect_in_progress = True
            check.redirect_started_at = self.clock()
            redirect_url = f"{AUTHORIZE_PATH}?destinazione={quote(context.path, safe='')}"
        else:
            check.last_negative_at = self.clock()
            redirect_url = None
        context.session.set_session_check(check)
        logger.info(
            "session_probe_completed",
            result=result.value,
            path=mask_url_query(context.path),
        )
        return ProbeDecision(result=result, redirect_url=redirect_url)
