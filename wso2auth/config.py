from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from wso2auth.logging import get_logger, is_sensitive_key

logger = get_logger(__name__)


class IdpEnvironment(str, Enum):
    """Identity Server deployments the relying party can talk to."""

    STAGING = "staging"
    PRODUCTION = "production"


class AuthType(str, Enum):
    """Audience of an authorization flow; each has its own OAuth2 client."""

    CITIZEN = "citizen"
    OPERATOR = "operator"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_list(value: Any, *, separators: str = ",") -> Any:
    if value is None:
        return []
    if isinstance(value, str):
        normalized = value
        for sep in separators[1:]:
            normalized = normalized.replace(sep, separators[0])
        return [item.strip() for item in normalized.split(separators[0]) if item.strip()]
    return value


class Settings(BaseModel):
    """Runtime settings for the relying party.

    Everything the authentication core reads from configuration lives here;
    no component reads the environment directly.
    """

    # general
    enabled: bool = env_field(False, "WSO2_AUTH_ENABLED")
    environment: IdpEnvironment = env_field(
        IdpEnvironment.PRODUCTION,
        "WSO2_ENVIRONMENT",
        description="Identity Server deployment: staging or production",
    )
    auth_server_url: str | None = env_field(
        None,
        "WSO2_AUTH_SERVER_URL",
        description="Overrides the environment's OAuth2 base URL when set",
    )
    skip_tls_verify: bool = env_field(
        False,
        "WSO2_SKIP_TLS_VERIFY",
        description="Disable TLS verification for IdP and API calls; ignored in production",
    )
    debug: bool = env_field(False, "WSO2_DEBUG")
    ag_entity_id: str = env_field("FIRENZE", "WSO2_AG_ENTITY_ID")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    callback_path: str = env_field("/wso2-auth/callback", "WSO2_CALLBACK_PATH")
    include_client_secret_in_authorize: bool = env_field(
        True,
        "WSO2_AUTHORIZE_SENDS_SECRET",
        description=(
            "Send client_secret on the authorization redirect. Required by the "
            "Identity Server deployment this targets; it exposes the secret to "
            "browser history, proxies and referrers."
        ),
    )
    external_domains_whitelist: list[str] = env_field(
        [],
        "WSO2_REDIRECT_WHITELIST",
        description="Domains allowed as post-login destinations (newline or comma separated)",
    )
    state_ttl_seconds: int = env_field(600, "WSO2_STATE_TTL_SECONDS")
    http_timeout_seconds: float = env_field(30.0, "WSO2_HTTP_TIMEOUT_SECONDS")
    http_connect_timeout_seconds: float = env_field(10.0, "WSO2_HTTP_CONNECT_TIMEOUT_SECONDS")

    # citizen client
    citizen_client_id: str | None = env_field(None, "WSO2_CITIZEN_CLIENT_ID")
    citizen_client_secret: str | None = env_field(None, "WSO2_CITIZEN_CLIENT_SECRET")
    citizen_scope: str = env_field("openid", "WSO2_CITIZEN_SCOPE")
    citizen_auto_register: bool = env_field(True, "WSO2_CITIZEN_AUTO_REGISTER")
    citizen_user_role: str | None = env_field(None, "WSO2_CITIZEN_USER_ROLE")
    citizen_roles_to_exclude: list[str] = env_field(
        ["administrator"], "WSO2_CITIZEN_ROLES_TO_EXCLUDE"
    )

    # claim mapping table
    claim_user_id: str = env_field("sub", "WSO2_CLAIM_USER_ID")
    claim_username: str = env_field("email", "WSO2_CLAIM_USERNAME")
    claim_email: str = env_field("email", "WSO2_CLAIM_EMAIL")
    claim_first_name: str = env_field("given_name", "WSO2_CLAIM_FIRST_NAME")
    claim_last_name: str = env_field("family_name", "WSO2_CLAIM_LAST_NAME")
    claim_fiscal_code: str = env_field("cn", "WSO2_CLAIM_FISCAL_CODE")
    claim_mobile_phone: str = env_field("", "WSO2_CLAIM_MOBILE_PHONE")
    lookup_by_username: bool = env_field(True, "WSO2_LOOKUP_BY_USERNAME")

    # operator client
    operator_enabled: bool = env_field(False, "WSO2_OPERATOR_ENABLED")
    operator_client_id: str | None = env_field(None, "WSO2_OPERATOR_CLIENT_ID")
    operator_client_secret: str | None = env_field(None, "WSO2_OPERATOR_CLIENT_SECRET")
    operator_scope: str = env_field("openid", "WSO2_OPERATOR_SCOPE")
    operator_ag_entity_id: str | None = env_field(None, "WSO2_OPERATOR_AG_ENTITY_ID")
    operator_auto_register: bool = env_field(True, "WSO2_OPERATOR_AUTO_REGISTER")
    operator_user_role: str | None = env_field("authenticated", "WSO2_OPERATOR_USER_ROLE")
    operator_role_population: str = env_field(
        "",
        "WSO2_OPERATOR_ROLE_POPULATION",
        description="role:function pairs separated by '|'",
    )
    operator_privileges_url: str | None = env_field(None, "WSO2_OPERATOR_PRIVILEGES_URL")
    operator_privileges_stage_url: str | None = env_field(
        None, "WSO2_OPERATOR_PRIVILEGES_STAGE_URL"
    )
    operator_username: str | None = env_field(None, "WSO2_OPERATOR_USERNAME")
    operator_password: str | None = env_field(None, "WSO2_OPERATOR_PASSWORD")
    operator_ente: str | None = env_field(None, "WSO2_OPERATOR_ENTE")
    operator_app: str | None = env_field(None, "WSO2_OPERATOR_APP")

    # silent session probe
    session_probe_enabled: bool = env_field(False, "WSO2_SESSION_PROBE_ENABLED")
    probe_check_interval_seconds: int = env_field(30, "WSO2_PROBE_CHECK_INTERVAL_SECONDS")
    probe_negative_cooldown_seconds: int = env_field(
        120, "WSO2_PROBE_NEGATIVE_COOLDOWN_SECONDS"
    )
    probe_redirect_grace_seconds: int = env_field(5, "WSO2_PROBE_REDIRECT_GRACE_SECONDS")
    probe_direct_url: str | None = env_field(None, "WSO2_PROBE_DIRECT_URL")
    probe_image_url: str | None = env_field(None, "WSO2_PROBE_IMAGE_URL")
    probe_direct_timeout_seconds: float = env_field(5.0, "WSO2_PROBE_DIRECT_TIMEOUT_SECONDS")
    probe_iframe_timeout_seconds: float = env_field(15.0, "WSO2_PROBE_IFRAME_TIMEOUT_SECONDS")
    probe_image_timeout_seconds: float = env_field(5.0, "WSO2_PROBE_IMAGE_TIMEOUT_SECONDS")
    probe_excluded_paths: list[str] = env_field(
        ["/wso2-auth", "/user/login", "/user/logout", "/admin", "/healthz", "/static"],
        "WSO2_PROBE_EXCLUDED_PATHS",
    )
    # names of visitor cookies sent along with server-side probe requests
    probe_forward_cookies: list[str] = env_field([], "WSO2_PROBE_FORWARD_COOKIES")

    # profile sync
    profile_sync_enabled: bool = env_field(True, "PROFILE_SYNC_ENABLED")
    profile_sync_interval_seconds: int = env_field(1800, "PROFILE_SYNC_INTERVAL_SECONDS")
    profile_sync_paths: list[str] = env_field(
        ["/servizi/prenotazione-appuntamenti/new"], "PROFILE_SYNC_PATHS"
    )
    profile_sync_fields: list[str] = env_field(
        ["firstname", "lastname", "email", "mobile"], "PROFILE_SYNC_FIELDS"
    )
    api_manager_environment: IdpEnvironment = env_field(
        IdpEnvironment.STAGING, "API_MANAGER_ENVIRONMENT"
    )
    api_manager_base_url: str | None = env_field(None, "API_MANAGER_BASE_URL")
    api_manager_client_id: str | None = env_field(None, "API_MANAGER_CLIENT_ID")
    api_manager_client_secret: str | None = env_field(None, "API_MANAGER_CLIENT_SECRET")
    profile_api_path: str = env_field(
        "/opencity/1.0/utente/dati-base/{fiscal_code}", "PROFILE_API_PATH"
    )

    # infrastructure
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/wso2auth", "SHARED_FS_ROOT")
    user_profile_fields: list[str] = env_field(
        ["first_name", "last_name", "fiscal_code", "mobile_phone", "contact_email", "groups"],
        "USER_PROFILE_FIELDS",
        description="Profile fields present in the local user schema",
    )
    session_cookie_name: str = env_field("wso2auth_session", "SESSION_COOKIE_NAME")
    session_ttl_minutes: int = env_field(24 * 60, "SESSION_TTL_MINUTES")
    session_cookie_secure: bool = env_field(False, "SESSION_COOKIE_SECURE")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    test_mode: bool = env_field(False, "TEST_MODE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("environment", "api_manager_environment", mode="before")
    @classmethod
    def _validate_environment(cls, value: Any) -> IdpEnvironment:
        if isinstance(value, str):
            return IdpEnvironment(value.strip().lower())
        return IdpEnvironment(value)

    @field_validator("external_domains_whitelist", mode="before")
    @classmethod
    def _split_whitelist(cls, value: Any) -> Any:
        return _split_list(value, separators="\n,")

    @field_validator(
        "citizen_roles_to_exclude",
        "probe_excluded_paths",
        "probe_forward_cookies",
        "profile_sync_paths",
        "profile_sync_fields",
        "user_profile_fields",
        "cors_allow_origins",
        mode="before",
    )
    @classmethod
    def _split_csv(cls, value: Any) -> Any:
        return _split_list(value)

    @field_validator("citizen_user_role", "operator_user_role", mode="before")
    @classmethod
    def _normalize_role(cls, value: Any) -> Any:
        # "none" is how an unset role is spelled in configuration
        if isinstance(value, str) and value.strip().lower() in {"", "none"}:
            return None
        return value

    @property
    def is_staging(self) -> bool:
        return self.environment == IdpEnvironment.STAGING

    @property
    def tls_verify(self) -> bool:
        if self.skip_tls_verify and not self.is_staging:
            logger.warning("tls_verify_skip_ignored_in_production")
            return True
        return not self.skip_tls_verify

    @property
    def redirect_uri(self) -> str:
        return self.app_base_url.rstrip("/") + self.callback_path

    def redacted(self) -> dict[str, Any]:
        """Dump settings with secrets masked, for diagnostics."""
        dumped = self.model_dump(mode="json")
        return {
            key: ("***" if value and is_sensitive_key(key) else value)
            for key, value in dumped.items()
        }


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
