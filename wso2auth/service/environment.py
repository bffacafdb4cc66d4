from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from wso2auth.config import AuthType, IdpEnvironment, Settings
from wso2auth.logging import get_logger
from wso2auth.service.errors import ConfigurationError

logger = get_logger(__name__)


_IDP_ENVIRONMENTS: Dict[IdpEnvironment, Dict[str, str]] = {
    IdpEnvironment.PRODUCTION: {
        "auth_server_url": "https://id.055055.it:9443/oauth2",
        "logout_url": "https://id.055055.it:9443/oidc/logout",
    },
    IdpEnvironment.STAGING: {
        "auth_server_url": "https://id-staging.055055.it:9443/oauth2",
        "logout_url": "https://id-staging.055055.it:9443/oidc/logout",
    },
}

_API_MANAGER_URLS: Dict[IdpEnvironment, str] = {
    IdpEnvironment.PRODUCTION: "https://api.055055.it",
    IdpEnvironment.STAGING: "https://api-staging.055055.it",
}

AUTHORIZE_PATH = "/authorize"
TOKEN_PATH = "/token"
USERINFO_PATH = "/userinfo"


@dataclass(frozen=True)
class IdentityProviderConfig:
    """Resolved endpoints and client credentials for one auth type."""

    environment: IdpEnvironment
    auth_type: AuthType
    auth_server_url: str
    logout_url: str
    client_id: str
    client_secret: str = field(repr=False)
    scope: str
    entity_id: str
    redirect_uri: str
    skip_tls_verify: bool = False
    authorize_path: str = AUTHORIZE_PATH
    token_path: str = TOKEN_PATH
    userinfo_path: str = USERINFO_PATH

    @property
    def authorize_url(self) -> str:
        return self.auth_server_url.rstrip("/") + self.authorize_path

    @property
    def token_url(self) -> str:
        return self.auth_server_url.rstrip("/") + self.token_path

    @property
    def userinfo_url(self) -> str:
        return self.auth_server_url.rstrip("/") + self.userinfo_path

    @property
    def provider(self) -> str:
        return "wso2_operator" if self.auth_type == AuthType.OPERATOR else "wso2_auth"


class EnvironmentConfig:
    """Picks the active Identity Server environment and its endpoint URLs."""

    def __init__(self, settings: Settings):
        self.settings = settings

    @property
    def environment(self) -> IdpEnvironment:
        return self.settings.environment

    @property
    def auth_server_url(self) -> str:
        if self.settings.auth_server_url:
            return self.settings.auth_server_url.rstrip("/")
        return _IDP_ENVIRONMENTS[self.environment]["auth_server_url"]

    @property
    def logout_url(self) -> str:
        if self.settings.auth_server_url:
            base = self.settings.auth_server_url.rstrip("/")
            return base.replace("/oauth2", "/oidc") + "/logout"
        return _IDP_ENVIRONMENTS[self.environment]["logout_url"]

    @property
    def api_manager_base_url(self) -> str:
        if self.settings.api_manager_base_url:
            return self.settings.api_manager_base_url.rstrip("/")
        return _API_MANAGER_URLS[self.settings.api_manager_environment]

    @property
    def operator_privileges_base_url(self) -> Optional[str]:
        if self.settings.is_staging:
            url = self.settings.operator_privileges_stage_url
        else:
            url = self.settings.operator_privileges_url
        return url.rstrip("/") if url else None

    def missing_settings(self, auth_type: AuthType = AuthType.CITIZEN) -> List[str]:
        missing: List[str] = []
        if not self.settings.enabled:
            missing.append("enabled")
        if auth_type == AuthType.OPERATOR:
            if not self.settings.operator_enabled:
                missing.append("operator_enabled")
            if not self.settings.operator_client_id:
                missing.append("operator_client_id")
            if not self.settings.operator_client_secret:
                missing.append("operator_client_secret")
        else:
            if not self.settings.citizen_client_id:
                missing.append("citizen_client_id")
            if not self.settings.citizen_client_secret:
                missing.append("citizen_client_secret")
        if not self.settings.app_base_url:
            missing.append("app_base_url")
        return missing

    def is_configured(self, auth_type: AuthType = AuthType.CITIZEN) -> bool:
        return not self.missing_settings(auth_type)

    def for_auth_type(self, auth_type: AuthType | str = AuthType.CITIZEN) -> IdentityProviderConfig:
        """Resolve the provider config for ``auth_type``.

        Raises ConfigurationError naming the missing settings (never their
        values) when the flow cannot run.
        """
        try:
            auth_type = AuthType(auth_type)
        except ValueError as exc:
            raise ConfigurationError(
                "unknown authentication type", detail={"auth_type": str(auth_type)}
            ) from exc
        missing = self.missing_settings(auth_type)
        if missing:
            logger.warning(
                "idp_configuration_incomplete",
                auth_type=auth_type.value,
                missing=missing,
            )
            raise ConfigurationError(
                "authentication is not configured",
                detail={"auth_type": auth_type.value, "missing": missing},
            )
        settings = self.settings
        if auth_type == AuthType.OPERATOR:
            client_id = settings.operator_client_id
            client_secret = settings.operator_client_secret
            scope = settings.operator_scope
            entity_id = settings.operator_ag_entity_id or settings.ag_entity_id
        else:
            client_id = settings.citizen_client_id
            client_secret = settings.citizen_client_secret
            scope = settings.citizen_scope
            entity_id = settings.ag_entity_id
        return IdentityProviderConfig(
            environment=self.environment,
            auth_type=auth_type,
            auth_server_url=self.auth_server_url,
            logout_url=self.logout_url,
            client_id=client_id or "",
            client_secret=client_secret or "",
            scope=scope,
            entity_id=entity_id,
            redirect_uri=settings.redirect_uri,
            skip_tls_verify=not settings.tls_verify,
        )
