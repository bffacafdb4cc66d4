from __future__ import annotations

import time
from typing import Any, Callable, Dict, Optional
from urllib.parse import quote

import httpx

from wso2auth.config import Settings
from wso2auth.logging import get_logger
from wso2auth.service.environment import EnvironmentConfig
from wso2auth.service.errors import UpstreamHttpError
from wso2auth.service.http import request_json
from wso2auth.storage.memory import MemoryStore
from wso2auth.storage.models import ProfileSyncRecord, User
from wso2auth.storage.redis_cache import KeyValueStore, get_json, set_json

logger = get_logger(__name__)

SYNC_KEY_PREFIX = "profile_sync:last:"
TOKEN_SERVICE = "api_manager_token"
PROFILE_SERVICE = "profile_api"

# downstream field -> (sync field name, local profile field)
PROFILE_FIELD_MAP = {
    "nome": ("firstname", "first_name"),
    "cognome": ("lastname", "last_name"),
    "email": ("email", "contact_email"),
    "cellulare": ("mobile", "mobile_phone"),
}


class ProfileSyncEngine:
    """Pulls citizen profile data from the API manager into the local user.

    Syncs are throttled per user through a timestamp kept in the shared
    key-value store. The timestamp is written once a profile fetch has been
    attempted, whatever its outcome, so a failing downstream is hit at most
    once per interval.
    """

    def __init__(
        self,
        settings: Settings,
        environment: EnvironmentConfig,
        store: MemoryStore,
        kv: KeyValueStore,
        client: httpx.AsyncClient,
        *,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.environment = environment
        self.store = store
        self.kv = kv
        self.client = client
        self.clock = clock

    @property
    def enabled(self) -> bool:
        return self.settings.profile_sync_enabled

    def should_trigger(self, path: str) -> bool:
        return self.enabled and path in self.settings.profile_sync_paths

    @staticmethod
    def _key(user_id: str) -> str:
        return f"{SYNC_KEY_PREFIX}{user_id}"

    async def last_sync(self, user_id: str) -> Optional[ProfileSyncRecord]:
        data = await get_json(self.kv, self._key(user_id))
        if not data or data.get("last_sync_at") is None:
            return None
        return ProfileSyncRecord(user_id=user_id, last_sync_at=float(data["last_sync_at"]))

    async def was_sync_performed_recently(self, user_id: str) -> bool:
        record = await self.last_sync(user_id)
        if record is None:
            return False
        return self.clock() - record.last_sync_at < self.settings.profile_sync_interval_seconds

    async def mark_sync_performed(self, user_id: str) -> None:
        await set_json(
            self.kv,
            self._key(user_id),
            {"last_sync_at": self.clock()},
            ttl=max(1, int(self.settings.profile_sync_interval_seconds)),
        )

    async def get_api_manager_token(self) -> Optional[str]:
        settings = self.settings
        if not settings.api_manager_client_id or not settings.api_manager_client_secret:
            logger.warning("api_manager_credentials_missing")
            return None
        try:
            payload = await request_json(
                self.client,
                "POST",
                f"{self.environment.api_manager_base_url}/token",
                service=TOKEN_SERVICE,
                data={
                    "grant_type": "client_credentials",
                    "client_id": settings.api_manager_client_id,
                    "client_secret": settings.api_manager_client_secret,
                },
                headers={"Accept": "application/json"},
            )
        except UpstreamHttpError as exc:
            logger.error("api_manager_token_failed", error_code=exc.error_code, error=exc.message)
            return None
        token = payload.get("access_token")
        if not token or not isinstance(token, str):
            logger.error("api_manager_token_missing", keys=sorted(payload.keys()))
            return None
        return token

    async def fetch_profile(self, fiscal_code: str, token: str) -> Optional[Dict[str, Any]]:
        path = self.settings.profile_api_path.format(fiscal_code=quote(fiscal_code, safe=""))
        try:
            payload = await request_json(
                self.client,
                "GET",
                f"{self.environment.api_manager_base_url}{path}",
                service=PROFILE_SERVICE,
                headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
            )
        except UpstreamHttpError as exc:
            logger.error("profile_fetch_failed", error_code=exc.error_code, error=exc.message)
            return None
        if payload.get("esito") != "SUCCESS":
            logger.error(
                "profile_fetch_business_error",
                esito=payload.get("esito"),
                message=payload.get("messaggio"),
            )
            return None
        return payload

    def profile_changes(self, user: User, payload: Dict[str, Any]) -> Dict[str, str]:
        """Fields of ``payload`` whose non-empty value differs from the stored one."""
        allowed = set(self.settings.profile_sync_fields)
        schema = set(self.settings.user_profile_fields)
        changes: Dict[str, str] = {}
        for remote, (sync_name, local) in PROFILE_FIELD_MAP.items():
            if sync_name not in allowed or local not in schema:
                continue
            value = payload.get(remote)
            if value is None or isinstance(value, (dict, list)):
                continue
            value = str(value).strip()
            if value and user.profile.get(local) != value:
                changes[local] = value
        return changes

    def apply_profile(self, user: User, payload: Dict[str, Any]) -> bool:
        changes = self.profile_changes(user, payload)
        if not changes:
            logger.debug("profile_sync_no_changes", user_id=user.id)
            return True
        user.profile.update(changes)
        self.store.save_user(user)
        logger.info("profile_sync_updated", user_id=user.id, fields=sorted(changes))
        return True

    async def perform_sync(self, user_id: str) -> bool:
        """Sync one user's profile.

        Returns True when the profile is current (recently synced, unchanged
        or updated) and False when the sync could not run or the downstream
        service could not be used.
        """
        user = self.store.get_user(user_id)
        if user is None or not user.is_active:
            logger.debug("profile_sync_skipped_no_user", user_id=user_id)
            return False
        if await self.was_sync_performed_recently(user_id):
            logger.debug("profile_sync_skipped_recent", user_id=user_id)
            return True

        token = await self.get_api_manager_token()
        if not token:
            logger.warning("profile_sync_token_unavailable", user_id=user_id)
            return False
        fiscal_code = user.profile.get("fiscal_code")
        if not fiscal_code:
            logger.warning("profile_sync_fiscal_code_missing", user_id=user_id)
            return False

        payload = await self.fetch_profile(str(fiscal_code), token)
        try:
            if payload is None:
                return False
            return self.apply_profile(user, payload)
        finally:
            await self.mark_sync_performed(user_id)
