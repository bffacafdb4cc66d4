"""Tests for the silent session probe and its fallback chain."""

import asyncio
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

from wso2auth.config import Settings
from wso2auth.service.authorization import AuthorizationURLBuilder
from wso2auth.service.environment import EnvironmentConfig
from wso2auth.service.extensions import ExtensionPoints
from wso2auth.service.session_probe import (
    DirectSessionProbe,
    IframeProbe,
    ImageBeaconProbe,
    ProbeContext,
    ProbeMessageBus,
    ProbeResult,
    SilentSessionProbe,
    classify_navigated_url,
    classify_probe_message,
)
from wso2auth.service.session_state import SessionState
from wso2auth.service.state_tokens import StateTokenStore

pytestmark = pytest.mark.asyncio


def probe_settings(**overrides):
    values = dict(
        enabled=True,
        environment="staging",
        citizen_client_id="citizen-client",
        citizen_client_secret="citizen-secret",
        app_base_url="https://www.comune.test",
        session_probe_enabled=True,
    )
    values.update(overrides)
    return Settings(**values)


class FakeStrategy:
    def __init__(self, name, result=None, *, error=None, delay=0.0, timeout=1.0, failure_result=ProbeResult.AMBIGUOUS):
        self.name = name
        self.result = result
        self.error = error
        self.delay = delay
        self.timeout = timeout
        self.failure_result = failure_result
        self.calls = 0

    async def probe(self, context):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def context(path="/servizi", cookies=None):
    return ProbeContext(session=SessionState("sid", is_new=True), path=path, cookies=cookies or {})


def make_probe(strategies, *, clock=None, **overrides):
    settings = probe_settings(**overrides)
    return SilentSessionProbe(
        settings, EnvironmentConfig(settings), strategies, clock=clock or FakeClock()
    )


class TestFallbackChain:
    """Strategies run in order; only an ambiguous answer moves on."""

    async def test_definite_answer_short_circuits(self):
        direct = FakeStrategy("direct", ProbeResult.NOT_AUTHENTICATED)
        iframe = FakeStrategy("iframe", ProbeResult.AUTHENTICATED)
        probe = make_probe([direct, iframe])

        assert await probe.run(context()) == ProbeResult.NOT_AUTHENTICATED
        assert iframe.calls == 0

    async def test_ambiguous_falls_through_to_next(self):
        direct = FakeStrategy("direct", ProbeResult.AMBIGUOUS)
        iframe = FakeStrategy("iframe", ProbeResult.NOT_AUTHENTICATED)
        image = FakeStrategy("image", ProbeResult.AUTHENTICATED)
        probe = make_probe([direct, iframe, image])

        assert await probe.run(context()) == ProbeResult.NOT_AUTHENTICATED
        assert (direct.calls, iframe.calls, image.calls) == (1, 1, 0)

    async def test_all_ambiguous_means_not_authenticated(self):
        probe = make_probe([FakeStrategy("a", ProbeResult.AMBIGUOUS), FakeStrategy("b", ProbeResult.AMBIGUOUS)])
        assert await probe.run(context()) == ProbeResult.NOT_AUTHENTICATED

    async def test_raising_strategy_uses_failure_result(self):
        broken = FakeStrategy("direct", error=RuntimeError("boom"))
        image = FakeStrategy("image", ProbeResult.AUTHENTICATED)
        probe = make_probe([broken, image])

        assert await probe.run(context()) == ProbeResult.AUTHENTICATED

    async def test_timeout_uses_failure_result(self):
        slow_image = FakeStrategy(
            "image",
            ProbeResult.AUTHENTICATED,
            delay=1.0,
            timeout=0.01,
            failure_result=ProbeResult.NOT_AUTHENTICATED,
        )
        probe = make_probe([slow_image])
        assert await probe.run(context()) == ProbeResult.NOT_AUTHENTICATED


class TestCheck:
    """Gating, throttling and the redirect decision."""

    async def test_disabled_probe_skips(self):
        strategy = FakeStrategy("direct", ProbeResult.AUTHENTICATED)
        probe = make_probe([strategy], session_probe_enabled=False)

        decision = await probe.check(context())

        assert decision.skipped == "disabled"
        assert strategy.calls == 0

    async def test_unconfigured_environment_disables_probe(self):
        probe = make_probe([FakeStrategy("direct", ProbeResult.AUTHENTICATED)], citizen_client_id=None)
        assert not probe.enabled

    async def test_authenticated_visitor_skips(self):
        probe = make_probe([FakeStrategy("direct", ProbeResult.AUTHENTICATED)])
        decision = await probe.check(context(), anonymous=False)
        assert decision.skipped == "authenticated"

    async def test_excluded_path_skips(self):
        probe = make_probe([FakeStrategy("direct", ProbeResult.AUTHENTICATED)])
        decision = await probe.check(context("/wso2-auth/callback?code=x"))
        assert decision.skipped == "excluded_path"

    async def test_authenticated_result_redirects_to_authorize(self):
        clock = FakeClock()
        probe = make_probe([FakeStrategy("direct", ProbeResult.AUTHENTICATED)], clock=clock)
        ctx = context("/servizi?tab=1")

        decision = await probe.check(ctx)

        assert decision.should_redirect
        assert decision.redirect_url == "/wso2-auth/authorize?destinazione=%2Fservizi%3Ftab%3D1"
        check = ctx.session.session_check
        assert check.checked
        assert check.redirect_in_progress
        assert check.redirect_started_at == clock.now
        assert check.last_negative_at is None

    async def test_redirect_grace_blocks_second_probe(self):
        clock = FakeClock()
        strategy = FakeStrategy("direct", ProbeResult.AUTHENTICATED)
        probe = make_probe([strategy], clock=clock)
        ctx = context()
        await probe.check(ctx)

        clock.now += 2
        decision = await probe.check(ctx)

        assert decision.skipped == "redirect_in_progress"
        assert strategy.calls == 1

    async def test_stale_redirect_marker_is_cleared(self):
        clock = FakeClock()
        probe = make_probe([FakeStrategy("direct", ProbeResult.AUTHENTICATED)], clock=clock)
        ctx = context()
        await probe.check(ctx)

        clock.now += 10
        decision = await probe.check(ctx)

        # grace window over, but the interval since the last check still applies
        assert decision.skipped == "checked_recently"
        assert not ctx.session.session_check.redirect_in_progress

    async def test_negative_result_throttles(self):
        clock = FakeClock()
        strategy = FakeStrategy("direct", ProbeResult.NOT_AUTHENTICATED)
        probe = make_probe([strategy], clock=clock)
        ctx = context()

        first = await probe.check(ctx)
        assert first.result == ProbeResult.NOT_AUTHENTICATED
        assert not first.should_redirect
        assert ctx.session.session_check.last_negative_at == clock.now

        clock.now += 10
        assert (await probe.check(ctx)).skipped == "checked_recently"
        clock.now += 30
        assert (await probe.check(ctx)).skipped == "negative_cooldown"
        clock.now += 200
        assert (await probe.check(ctx)).result == ProbeResult.NOT_AUTHENTICATED
        assert strategy.calls == 2


def direct_probe(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return DirectSessionProbe(client, "https://idp.test/session", timeout=1.0)


class TestDirectProbe:
    @pytest.mark.parametrize(
        "status_code, expected",
        [
            (200, ProbeResult.AUTHENTICATED),
            (401, ProbeResult.NOT_AUTHENTICATED),
            (500, ProbeResult.AMBIGUOUS),
            (302, ProbeResult.AMBIGUOUS),
        ],
    )
    async def test_status_mapping(self, status_code, expected):
        probe = direct_probe(lambda request: httpx.Response(status_code))
        assert await probe.probe(context()) == expected

    async def test_network_error_is_ambiguous(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        assert await direct_probe(handler).probe(context()) == ProbeResult.AMBIGUOUS

    async def test_sends_only_context_cookies(self):
        seen = []

        def handler(request):
            seen.append(request.headers.get("cookie"))
            return httpx.Response(200)

        await direct_probe(handler).probe(context(cookies={"commonAuthId": "abc"}))
        assert seen == ["commonAuthId=abc"]

    async def test_no_cookie_header_without_context_cookies(self):
        seen = []

        def handler(request):
            seen.append(request.headers.get("cookie"))
            return httpx.Response(200)

        await direct_probe(handler).probe(context())
        assert seen == [None]


class FakeFrame:
    def __init__(self, location=None, *, settle=True, on_load=None):
        self.location = location
        self.settle = settle
        self.on_load = on_load
        self.settled = False
        self.loaded_url = None
        self.closed = False

    async def load(self, url):
        self.loaded_url = url
        if self.on_load is not None:
            self.on_load(url)
        self.settled = self.settle

    async def current_url(self):
        return self.location

    async def close(self):
        self.closed = True


def iframe_probe(frame, bus=None, *, timeout=1.0):
    settings = probe_settings()
    builder = AuthorizationURLBuilder(
        settings, EnvironmentConfig(settings), StateTokenStore(), ExtensionPoints()
    )
    return IframeProbe(builder, lambda ctx: frame, bus or ProbeMessageBus(), timeout=timeout, poll_interval=0.01)


class TestIframeProbe:
    async def test_requests_prompt_none(self):
        frame = FakeFrame("https://www.comune.test/wso2-auth/callback?code=abc&state=s")
        ctx = context()

        await iframe_probe(frame).probe(ctx)

        query = parse_qs(urlsplit(frame.loaded_url).query)
        assert query["prompt"] == ["none"]
        assert query["nonce"][0]
        assert query["response_type"] == ["code"]

    async def test_code_in_navigated_url_is_authenticated(self):
        frame = FakeFrame("https://www.comune.test/wso2-auth/callback?code=abc&state=s")
        ctx = context()

        assert await iframe_probe(frame).probe(ctx) == ProbeResult.AUTHENTICATED
        assert frame.closed
        # the pending request stays for the real login
        assert ctx.session.peek_auth_request() is not None

    async def test_login_required_is_not_authenticated(self):
        frame = FakeFrame("https://www.comune.test/wso2-auth/callback?error=login_required&state=s")
        ctx = context()

        assert await iframe_probe(frame).probe(ctx) == ProbeResult.NOT_AUTHENTICATED
        assert ctx.session.peek_auth_request() is None

    async def test_other_error_is_ambiguous(self):
        frame = FakeFrame("https://www.comune.test/wso2-auth/callback?error=server_error")
        assert await iframe_probe(frame).probe(context()) == ProbeResult.AMBIGUOUS

    async def test_settled_without_navigation_is_ambiguous(self):
        frame = FakeFrame(None)
        assert await iframe_probe(frame).probe(context()) == ProbeResult.AMBIGUOUS

    async def test_bus_message_resolves_probe(self):
        bus = ProbeMessageBus()
        ctx = context()

        def publish(url):
            state = ctx.session.peek_auth_request().state
            bus.publish(state, {"type": "probe_result", "error": "interaction_required"})

        frame = FakeFrame(None, settle=False, on_load=publish)

        assert await iframe_probe(frame, bus).probe(ctx) == ProbeResult.NOT_AUTHENTICATED
        assert bus.active_subscriptions == 0
        assert frame.closed

    async def test_unsettled_frame_times_out_and_cleans_up(self):
        bus = ProbeMessageBus()
        frame = FakeFrame(None, settle=False)
        strategy = iframe_probe(frame, bus, timeout=0.05)
        probe = make_probe([strategy])
        ctx = context()

        assert await probe.run(ctx) == ProbeResult.NOT_AUTHENTICATED
        assert frame.closed
        assert bus.active_subscriptions == 0
        assert ctx.session.peek_auth_request() is None


class FakeLoader:
    def __init__(self, loaded):
        self.loaded = loaded
        self.urls = []

    async def load(self, url, cookies):
        self.urls.append(url)
        return self.loaded


class TestImageProbe:
    async def test_load_means_authenticated(self):
        loader = FakeLoader(True)
        probe = ImageBeaconProbe(loader, "https://idp.test/pixel.gif?v=1")

        assert await probe.probe(context()) == ProbeResult.AUTHENTICATED
        assert loader.urls[0].startswith("https://idp.test/pixel.gif?v=1&_=")

    async def test_error_means_not_authenticated(self):
        probe = ImageBeaconProbe(FakeLoader(False), "https://idp.test/pixel.gif")
        assert await probe.probe(context()) == ProbeResult.NOT_AUTHENTICATED


class TestMessageBus:
    async def test_publish_requires_probe_result_type(self):
        bus = ProbeMessageBus()
        future = bus.subscribe("s1")

        assert bus.publish("s1", {"type": "other", "code": "x"}) is False
        assert not future.done()
        assert bus.publish("s1", {"type": "probe_result", "code": "x"}) is True
        assert future.result()["code"] == "x"

    async def test_unknown_state_is_dropped(self):
        bus = ProbeMessageBus()
        assert bus.publish("nobody", {"type": "probe_result"}) is False

    async def test_unsubscribe_cancels_waiter(self):
        bus = ProbeMessageBus()
        future = bus.subscribe("s1")
        bus.unsubscribe("s1")
        assert future.cancelled()
        assert bus.active_subscriptions == 0


def test_classify_probe_message():
    assert classify_probe_message({"code": "abc"}) == ProbeResult.AUTHENTICATED
    assert classify_probe_message({"error": "login_required"}) == ProbeResult.NOT_AUTHENTICATED
    assert classify_probe_message({"error": "access_denied"}) == ProbeResult.AMBIGUOUS


def test_classify_navigated_url_waits_without_result():
    assert classify_navigated_url("https://idp.test/login") is None
    assert classify_navigated_url("https://site.test/cb?code=1") == ProbeResult.AUTHENTICATED
