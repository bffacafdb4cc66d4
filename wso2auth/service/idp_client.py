from __future__ import annotations

from typing import Any, Dict

import httpx

from wso2auth.logging import get_logger
from wso2auth.service.environment import IdentityProviderConfig
from wso2auth.service.errors import MalformedResponseError
from wso2auth.service.extensions import ExtensionPoints
from wso2auth.service.http import request_json
from wso2auth.storage.models import TokenBundle

logger = get_logger(__name__)


class TokenExchangeClient:
    """Exchanges an authorization code at the Identity Server token endpoint.

    Codes are single use, so failures are never retried.
    """

    def __init__(self, client: httpx.AsyncClient, extensions: ExtensionPoints):
        self.client = client
        self.extensions = extensions

    async def exchange(self, provider: IdentityProviderConfig, code: str) -> TokenBundle:
        params: Dict[str, str] = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": provider.redirect_uri,
            "client_id": provider.client_id,
            "client_secret": provider.client_secret,
        }
        self.extensions.alter_token_request(params, code)
        payload = await request_json(
            self.client,
            "POST",
            provider.token_url,
            service="idp_token",
            data=params,
            headers={"Accept": "application/json"},
        )
        access_token = payload.get("access_token")
        if not access_token or not isinstance(access_token, str):
            logger.error("token_response_missing_access_token", keys=sorted(payload.keys()))
            raise MalformedResponseError(
                "token response has no access_token", service="idp_token"
            )
        bundle = TokenBundle.from_token_response(payload)
        logger.info(
            "token_exchange_succeeded",
            auth_type=provider.auth_type.value,
            has_id_token=bundle.id_token is not None,
            has_refresh_token=bundle.refresh_token is not None,
        )
        return bundle


class UserInfoClient:
    """Fetches the claim set for an access token."""

    def __init__(self, client: httpx.AsyncClient, extensions: ExtensionPoints):
        self.client = client
        self.extensions = extensions

    async def fetch(self, provider: IdentityProviderConfig, access_token: str) -> Dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
        }
        self.extensions.alter_userinfo_request(headers, access_token)
        claims = await request_json(
            self.client,
            "GET",
            provider.userinfo_url,
            service="idp_userinfo",
            headers=headers,
        )
        claims = self.extensions.alter_userinfo(claims)
        logger.info("userinfo_fetched", claim_names=sorted(claims.keys()))
        return claims
