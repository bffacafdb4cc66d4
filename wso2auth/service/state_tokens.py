from __future__ import annotations

import hmac
import secrets
import time
from typing import Optional

from wso2auth.config import AuthType
from wso2auth.logging import get_logger
from wso2auth.service.errors import StateMismatchError
from wso2auth.service.session_state import SessionState
from wso2auth.storage.models import AuthorizationRequest

logger = get_logger(__name__)


def random_token(num_bytes: int = 16) -> str:
    """Hex encoded token with ``num_bytes`` of entropy (128 bits by default)."""
    return secrets.token_hex(num_bytes)


class StateTokenStore:
    """One-time anti-forgery ``state`` tokens bound to the browser session.

    Only one authorization flow is in flight per session: issuing a new token
    replaces any pending one. Verification consumes the pending token before
    comparing, so a replayed callback always fails.
    """

    def __init__(self, *, ttl_seconds: int = 600):
        self.ttl_seconds = ttl_seconds

    def issue(
        self,
        session: SessionState,
        *,
        auth_type: AuthType | str = AuthType.CITIZEN,
        destination: Optional[str] = None,
        with_nonce: bool = False,
    ) -> AuthorizationRequest:
        request = AuthorizationRequest(
            state=random_token(),
            auth_type=AuthType(auth_type).value,
            destination=destination or None,
            nonce=random_token() if with_nonce else None,
        )
        replaced = session.peek_auth_request() is not None
        session.set_auth_request(request)
        logger.debug("state_token_issued", auth_type=request.auth_type, replaced=replaced)
        return request

    def consume(self, session: SessionState, returned_state: Optional[str]) -> AuthorizationRequest:
        """Pop the pending request and check ``returned_state`` against it.

        Raises StateMismatchError when either value is missing, the values
        differ or the pending request outlived its TTL.
        """
        pending = session.pop_auth_request()
        if pending is None or not pending.state:
            raise StateMismatchError("no pending authorization request", detail={"reason": "missing"})
        if not returned_state:
            raise StateMismatchError("state parameter missing", detail={"reason": "empty"})
        if not hmac.compare_digest(pending.state.encode(), returned_state.encode()):
            raise StateMismatchError("state parameter mismatch", detail={"reason": "mismatch"})
        if pending.is_expired(self.ttl_seconds, now=time.time()):
            raise StateMismatchError("authorization request expired", detail={"reason": "expired"})
        return pending

    def verify(self, session: SessionState, returned_state: Optional[str]) -> bool:
        try:
            self.consume(session, returned_state)
        except StateMismatchError as exc:
            logger.warning("state_verification_failed", reason=exc.detail.get("reason"))
            return False
        return True
