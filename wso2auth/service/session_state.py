from __future__ import annotations

import secrets
from typing import Any, Dict, List, Optional

from wso2auth.logging import get_logger
from wso2auth.storage.models import AuthorizationRequest, SessionCheckState, TokenBundle
from wso2auth.storage.redis_cache import KeyValueStore, get_json, set_json

logger = get_logger(__name__)

SESSION_KEY_PREFIX = "session:"

_AUTH_REQUEST = "wso2_auth_request"
_TOKENS = "wso2_auth_tokens"
_USER_ID = "uid"
_PROVIDER = "wso2_auth_provider"
_AUTHNAME = "wso2_auth_authname"
_SESSION_CHECK = "wso2_session_check"
_MESSAGES = "messages"


class SessionState:
    """Per-browser session document.

    Holds the pending authorization request, the post-login destination, the
    token bundle, the bound local user and the silent-probe markers. Every
    mutation marks the session dirty so the middleware knows to save it.
    """

    def __init__(self, session_id: str, data: Optional[Dict[str, Any]] = None, *, is_new: bool = False):
        self.id = session_id
        self.data: Dict[str, Any] = dict(data or {})
        self.is_new = is_new
        self.modified = False
        self.previous_id: Optional[str] = None

    def _set(self, key: str, value: Any) -> None:
        if value is None:
            if key in self.data:
                del self.data[key]
                self.modified = True
            return
        self.data[key] = value
        self.modified = True

    def _pop(self, key: str) -> Any:
        if key in self.data:
            self.modified = True
            return self.data.pop(key)
        return None

    # pending authorization request
    def set_auth_request(self, request: AuthorizationRequest) -> None:
        self._set(_AUTH_REQUEST, request.to_dict())

    def peek_auth_request(self) -> Optional[AuthorizationRequest]:
        raw = self.data.get(_AUTH_REQUEST)
        return AuthorizationRequest.from_dict(raw) if raw else None

    def pop_auth_request(self) -> Optional[AuthorizationRequest]:
        raw = self._pop(_AUTH_REQUEST)
        return AuthorizationRequest.from_dict(raw) if raw else None

    # tokens
    @property
    def token_bundle(self) -> Optional[TokenBundle]:
        raw = self.data.get(_TOKENS)
        return TokenBundle.from_dict(raw) if raw else None

    def set_token_bundle(self, bundle: Optional[TokenBundle]) -> None:
        self._set(_TOKENS, bundle.to_dict() if bundle else None)

    # identity
    @property
    def user_id(self) -> Optional[str]:
        return self.data.get(_USER_ID)

    @property
    def provider(self) -> Optional[str]:
        return self.data.get(_PROVIDER)

    @property
    def authname(self) -> Optional[str]:
        return self.data.get(_AUTHNAME)

    def bind_user(self, user_id: str, *, provider: str, authname: str) -> None:
        self._set(_USER_ID, user_id)
        self._set(_PROVIDER, provider)
        self._set(_AUTHNAME, authname)

    def clear_identity(self) -> None:
        for key in (_USER_ID, _PROVIDER, _AUTHNAME, _TOKENS):
            self._pop(key)

    # silent probe markers
    @property
    def session_check(self) -> SessionCheckState:
        return SessionCheckState.from_dict(self.data.get(_SESSION_CHECK))

    def set_session_check(self, state: SessionCheckState) -> None:
        self._set(_SESSION_CHECK, state.to_dict())

    # flash messages
    def add_message(self, level: str, text: str) -> None:
        messages = list(self.data.get(_MESSAGES) or [])
        messages.append({"level": level, "text": text})
        self._set(_MESSAGES, messages)

    def drain_messages(self) -> List[Dict[str, str]]:
        return list(self._pop(_MESSAGES) or [])

    def regenerate_id(self) -> None:
        """Issue a fresh session id, keeping the data (fixation protection)."""
        if self.previous_id is None and not self.is_new:
            self.previous_id = self.id
        self.id = new_session_id()
        self.modified = True

    def destroy(self) -> None:
        """Drop all session data; the old id is deleted on save."""
        self.data.clear()
        self.regenerate_id()

    @property
    def is_empty(self) -> bool:
        return not self.data


def new_session_id() -> str:
    return secrets.token_urlsafe(32)


class SessionManager:
    """Loads and saves browser sessions in the shared key-value store."""

    def __init__(self, kv: KeyValueStore, *, ttl_minutes: int = 24 * 60):
        self.kv = kv
        self.ttl_seconds = max(60, int(ttl_minutes) * 60)

    @staticmethod
    def _key(session_id: str) -> str:
        return f"{SESSION_KEY_PREFIX}{session_id}"

    async def load(self, session_id: Optional[str]) -> SessionState:
        if session_id:
            data = await get_json(self.kv, self._key(session_id))
            if data is not None:
                return SessionState(session_id, data)
        return SessionState(new_session_id(), is_new=True)

    async def save(self, session: SessionState) -> None:
        if session.previous_id:
            await self.kv.delete(self._key(session.previous_id))
            session.previous_id = None
            logger.debug("browser_session_rotated")
        if session.is_empty:
            await self.kv.delete(self._key(session.id))
            session.modified = False
            return
        await set_json(self.kv, self._key(session.id), session.data, ttl=self.ttl_seconds)
        session.modified = False
        session.is_new = False
