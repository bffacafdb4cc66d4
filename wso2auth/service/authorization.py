from __future__ import annotations

import time
from typing import Dict, Optional
from urllib.parse import urlencode

from wso2auth.config import AuthType, Settings
from wso2auth.logging import get_logger, mask_url_query
from wso2auth.service.environment import EnvironmentConfig
from wso2auth.service.extensions import ExtensionPoints
from wso2auth.service.session_state import SessionState
from wso2auth.service.state_tokens import StateTokenStore

logger = get_logger(__name__)


def append_query(url: str, params: Dict[str, str]) -> str:
    separator = "&" if "?" in url else "?"
    return url + separator + urlencode(params)


def with_cache_buster(url: str, *, now: Optional[float] = None) -> str:
    """Append a single ``nocache`` timestamp so intermediaries never reuse the redirect."""
    return append_query(url, {"nocache": str(int(now if now is not None else time.time()))})


class AuthorizationURLBuilder:
    """Builds the Identity Server authorization and logout URLs.

    The authorization request carries ``client_secret`` as a query parameter
    when ``include_client_secret_in_authorize`` is set. The target Identity
    Server deployment expects it there; it is not an OAuth2 practice and it
    leaks the secret into browser history and referrers.
    """

    def __init__(
        self,
        settings: Settings,
        environment: EnvironmentConfig,
        state_store: StateTokenStore,
        extensions: ExtensionPoints,
    ):
        self.settings = settings
        self.environment = environment
        self.state_store = state_store
        self.extensions = extensions

    def build(
        self,
        session: SessionState,
        destination: Optional[str] = None,
        auth_type: AuthType | str = AuthType.CITIZEN,
        *,
        prompt: Optional[str] = None,
    ) -> str:
        provider = self.environment.for_auth_type(auth_type)
        request = self.state_store.issue(
            session,
            auth_type=provider.auth_type,
            destination=destination,
            with_nonce=prompt is not None,
        )
        params: Dict[str, str] = {
            "agEntityId": provider.entity_id,
            "client_id": provider.client_id,
        }
        if self.settings.include_client_secret_in_authorize:
            params["client_secret"] = provider.client_secret
        params.update(
            {
                "redirect_uri": provider.redirect_uri,
                "response_type": "code",
                "scope": provider.scope,
                "state": request.state,
            }
        )
        if provider.auth_type == AuthType.OPERATOR:
            params["isAuthSilfi"] = "yes"
        if prompt:
            params["prompt"] = prompt
            params["nonce"] = request.nonce or ""

        url = append_query(provider.authorize_url, params)
        url = self.extensions.alter_authorization_url(url, params)
        if self.settings.debug:
            logger.debug(
                "authorization_url_built_debug",
                url=mask_url_query(url),
                auth_type=provider.auth_type.value,
                has_destination=bool(destination),
            )
        return url

    def logout_url(self, id_token: Optional[str], post_logout_redirect_uri: str) -> str:
        params: Dict[str, str] = {}
        if id_token:
            params["id_token_hint"] = id_token
        params["post_logout_redirect_uri"] = post_logout_redirect_uri
        url = append_query(self.environment.logout_url, params)
        url = self.extensions.alter_logout_url(url, params)
        if self.settings.debug:
            logger.debug("logout_url_built_debug", url=mask_url_query(url))
        return url
