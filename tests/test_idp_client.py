"""Tests for the token and userinfo clients and the shared HTTP helpers."""

from urllib.parse import parse_qs

import httpx
import pytest

from wso2auth.config import AuthType, Settings
from wso2auth.service.environment import EnvironmentConfig
from wso2auth.service.errors import MalformedResponseError, UpstreamHttpError
from wso2auth.service.extensions import ExtensionPoints
from wso2auth.service.idp_client import TokenExchangeClient, UserInfoClient

pytestmark = pytest.mark.asyncio

IDP = "https://id-staging.055055.it:9443/oauth2"


@pytest.fixture
def provider():
    settings = Settings(
        enabled=True,
        environment="staging",
        citizen_client_id="citizen-client",
        citizen_client_secret="citizen-secret",
        app_base_url="https://www.comune.test",
    )
    return EnvironmentConfig(settings).for_auth_type(AuthType.CITIZEN)


@pytest.fixture
def extensions():
    return ExtensionPoints()


@pytest.fixture
def client(upstream):
    return httpx.AsyncClient(transport=httpx.MockTransport(upstream.handler))


class TestTokenExchange:
    async def test_exchange_returns_bundle(self, upstream, client, extensions, provider):
        upstream.json(
            "POST",
            f"{IDP}/token",
            {"access_token": "at-1", "id_token": "idt-1", "expires_in": 120, "token_type": "Bearer"},
        )

        bundle = await TokenExchangeClient(client, extensions).exchange(provider, "the-code")

        assert bundle.access_token == "at-1"
        assert bundle.id_token == "idt-1"
        assert not bundle.expired
        form = parse_qs(upstream.calls("POST", f"{IDP}/token")[0].content.decode())
        assert form == {
            "grant_type": ["authorization_code"],
            "code": ["the-code"],
            "redirect_uri": ["https://www.comune.test/wso2-auth/callback"],
            "client_id": ["citizen-client"],
            "client_secret": ["citizen-secret"],
        }

    async def test_token_request_listener_can_add_params(self, upstream, client, extensions, provider):
        upstream.json("POST", f"{IDP}/token", {"access_token": "at-1"})
        extensions.token_request.append(lambda params, code: params.update({"extra": code.upper()}))

        await TokenExchangeClient(client, extensions).exchange(provider, "abc")

        form = parse_qs(upstream.calls("POST", f"{IDP}/token")[0].content.decode())
        assert form["extra"] == ["ABC"]

    async def test_non_2xx_raises_upstream_error(self, upstream, client, extensions, provider):
        upstream.json("POST", f"{IDP}/token", {"error": "invalid_grant"}, status_code=400)

        with pytest.raises(UpstreamHttpError) as excinfo:
            await TokenExchangeClient(client, extensions).exchange(provider, "used-code")

        assert excinfo.value.upstream_status == 400
        assert excinfo.value.error_code == "upstream_error"
        assert excinfo.value.status_code == 502

    async def test_not_retried(self, upstream, client, extensions, provider):
        upstream.json("POST", f"{IDP}/token", {"error": "server"}, status_code=500)

        with pytest.raises(UpstreamHttpError):
            await TokenExchangeClient(client, extensions).exchange(provider, "c")

        assert len(upstream.calls("POST", f"{IDP}/token")) == 1

    async def test_missing_access_token_is_malformed(self, upstream, client, extensions, provider):
        upstream.json("POST", f"{IDP}/token", {"id_token": "only"})

        with pytest.raises(MalformedResponseError) as excinfo:
            await TokenExchangeClient(client, extensions).exchange(provider, "c")
        assert excinfo.value.error_code == "malformed_response"

    async def test_invalid_json_is_malformed(self, upstream, client, extensions, provider):
        upstream.add("POST", f"{IDP}/token", httpx.Response(200, text="<html>oops</html>"))

        with pytest.raises(MalformedResponseError):
            await TokenExchangeClient(client, extensions).exchange(provider, "c")

    async def test_json_array_is_malformed(self, upstream, client, extensions, provider):
        upstream.json("POST", f"{IDP}/token", ["not", "an", "object"])

        with pytest.raises(MalformedResponseError):
            await TokenExchangeClient(client, extensions).exchange(provider, "c")

    async def test_transport_failure(self, upstream, client, extensions, provider):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        upstream.add("POST", f"{IDP}/token", refuse)

        with pytest.raises(UpstreamHttpError) as excinfo:
            await TokenExchangeClient(client, extensions).exchange(provider, "c")
        assert excinfo.value.upstream_status is None
        assert excinfo.value.detail["service"] == "idp_token"

    async def test_timeout(self, upstream, client, extensions, provider):
        def slow(request):
            raise httpx.ReadTimeout("timed out", request=request)

        upstream.add("POST", f"{IDP}/token", slow)

        with pytest.raises(UpstreamHttpError) as excinfo:
            await TokenExchangeClient(client, extensions).exchange(provider, "c")
        assert "timed out" in excinfo.value.message


class TestUserInfo:
    async def test_fetch_sends_bearer(self, upstream, client, extensions, provider):
        upstream.json("GET", f"{IDP}/userinfo", {"sub": "S1", "email": "a@example.com"})

        claims = await UserInfoClient(client, extensions).fetch(provider, "at-1")

        assert claims == {"sub": "S1", "email": "a@example.com"}
        request = upstream.calls("GET", f"{IDP}/userinfo")[0]
        assert request.headers["authorization"] == "Bearer at-1"

    async def test_listeners_alter_request_and_claims(self, upstream, client, extensions, provider):
        upstream.json("GET", f"{IDP}/userinfo", {"sub": "S1"})
        extensions.userinfo_request.append(lambda headers, token: headers.update({"X-Entity": "FIRENZE"}))
        extensions.userinfo.append(lambda claims: {**claims, "groups": ["staff"]})
        extensions.userinfo.append(lambda claims: None)

        claims = await UserInfoClient(client, extensions).fetch(provider, "at-1")

        assert claims == {"sub": "S1", "groups": ["staff"]}
        assert upstream.calls("GET", f"{IDP}/userinfo")[0].headers["x-entity"] == "FIRENZE"

    async def test_unauthorized(self, upstream, client, extensions, provider):
        upstream.json("GET", f"{IDP}/userinfo", {"error": "invalid_token"}, status_code=401)

        with pytest.raises(UpstreamHttpError) as excinfo:
            await UserInfoClient(client, extensions).fetch(provider, "expired")
        assert excinfo.value.detail == {"service": "idp_userinfo", "upstream_status": 401}
