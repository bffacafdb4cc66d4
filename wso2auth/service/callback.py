from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from wso2auth.config import AuthType, Settings
from wso2auth.logging import get_logger
from wso2auth.service.environment import EnvironmentConfig
from wso2auth.service.errors import ServiceError, StateMismatchError
from wso2auth.service.idp_client import TokenExchangeClient, UserInfoClient
from wso2auth.service.operator_privileges import OperatorRoleMapper
from wso2auth.service.reconciler import IdentityReconciler, ReconciliationResult
from wso2auth.service.redirects import SecureRedirectDispatcher
from wso2auth.service.session_state import SessionState
from wso2auth.service.state_tokens import StateTokenStore

logger = get_logger(__name__)


class CallbackState(str, Enum):
    AWAIT_CODE = "await_code"
    STATE_VERIFIED = "state_verified"
    TOKENS_EXCHANGED = "tokens_exchanged"
    CLAIMS_FETCHED = "claims_fetched"
    IDENTITY_RECONCILED = "identity_reconciled"
    REDIRECTED = "redirected"
    FAILED = "failed"


# user-facing messages; upstream detail stays in the logs
MESSAGE_INVALID_RESPONSE = "The authorization response was not valid. Please try again."
MESSAGE_INVALID_STATE = "The login request has expired or was not recognised. Please try again."
MESSAGE_NOT_CONFIGURED = "Login is not available at the moment."
MESSAGE_TOKENS = "Unable to complete the login with the identity provider."
MESSAGE_USERINFO = "Unable to retrieve your identity from the identity provider."
MESSAGE_AUTH_FAILED = "Authentication failed."

_FAILURE_MESSAGES = {
    CallbackState.AWAIT_CODE: MESSAGE_INVALID_STATE,
    CallbackState.STATE_VERIFIED: MESSAGE_TOKENS,
    CallbackState.TOKENS_EXCHANGED: MESSAGE_USERINFO,
    CallbackState.CLAIMS_FETCHED: MESSAGE_AUTH_FAILED,
    CallbackState.IDENTITY_RECONCILED: MESSAGE_AUTH_FAILED,
}


@dataclass
class CallbackOutcome:
    state: CallbackState
    redirect_url: str
    result: Optional[ReconciliationResult] = None
    error: Optional[ServiceError] = None

    @property
    def succeeded(self) -> bool:
        return self.state == CallbackState.REDIRECTED


class CallbackFlow:
    """Drives one authorization callback from the returned code to a local login.

    Every step must succeed before the next runs. Any failure ends in
    ``FAILED``: the pending request is discarded, a generic message is queued
    for the visitor and the redirect goes to the site root, never to the
    requested destination.
    """

    def __init__(
        self,
        settings: Settings,
        environment: EnvironmentConfig,
        state_store: StateTokenStore,
        token_client: TokenExchangeClient,
        userinfo_client: UserInfoClient,
        reconciler: IdentityReconciler,
        dispatcher: SecureRedirectDispatcher,
        role_mapper: Optional[OperatorRoleMapper] = None,
    ):
        self.settings = settings
        self.environment = environment
        self.state_store = state_store
        self.token_client = token_client
        self.userinfo_client = userinfo_client
        self.reconciler = reconciler
        self.dispatcher = dispatcher
        self.role_mapper = role_mapper

    def _transition(self, current: CallbackState, target: CallbackState, **context) -> CallbackState:
        if self.settings.debug:
            logger.debug(
                "callback_transition_debug", source=current.value, target=target.value, **context
            )
        return target

    def _fail(
        self,
        session: SessionState,
        current: CallbackState,
        message: str,
        error: ServiceError,
        *,
        notify: bool = True,
    ) -> CallbackOutcome:
        session.pop_auth_request()
        if notify:
            session.add_message("error", message)
        logger.warning(
            "callback_failed",
            failed_in=current.value,
            error_code=error.error_code,
            error=error.message,
            detail=error.detail,
        )
        return CallbackOutcome(
            state=CallbackState.FAILED,
            redirect_url=self.dispatcher.absolute("/"),
            error=error,
        )

    def _abort(
        self, session: SessionState, current: CallbackState, error: ServiceError, *, notify: bool
    ) -> CallbackOutcome:
        if current == CallbackState.IDENTITY_RECONCILED:
            session.clear_identity()
        return self._fail(session, current, _FAILURE_MESSAGES[current], error, notify=notify)

    @staticmethod
    def _unexpected(current: CallbackState, exc: Exception) -> ServiceError:
        logger.exception(
            "callback_unexpected_error",
            exc_info=exc,
            failed_in=current.value,
            error_type=type(exc).__name__,
        )
        return ServiceError(
            "unexpected failure while completing the login",
            status_code=500,
            error_code="server_error",
            detail={"error_type": type(exc).__name__},
        )

    async def run(
        self,
        session: SessionState,
        code: Optional[str],
        state: Optional[str],
        *,
        idp_error: Optional[str] = None,
        notify: bool = True,
    ) -> CallbackOutcome:
        """Run the flow. ``notify`` queues a flash message for the visitor on failure."""
        current = CallbackState.AWAIT_CODE
        if idp_error:
            logger.info("callback_idp_error", idp_error=idp_error)
            return self._fail(
                session,
                current,
                MESSAGE_INVALID_RESPONSE,
                StateMismatchError("identity provider returned an error", detail={"reason": idp_error}),
                notify=notify,
            )
        if not code or not state:
            return self._fail(
                session,
                current,
                MESSAGE_INVALID_RESPONSE,
                StateMismatchError(
                    "code or state missing",
                    detail={"reason": "empty", "has_code": bool(code), "has_state": bool(state)},
                ),
                notify=notify,
            )

        try:
            request = self.state_store.consume(session, state)
        except StateMismatchError as exc:
            return self._fail(session, current, MESSAGE_INVALID_STATE, exc, notify=notify)
        except Exception as exc:
            error = self._unexpected(current, exc)
            return self._fail(session, current, MESSAGE_INVALID_STATE, error, notify=notify)
        current = self._transition(current, CallbackState.STATE_VERIFIED, auth_type=request.auth_type)

        try:
            provider = self.environment.for_auth_type(request.auth_type)
        except ServiceError as exc:
            return self._fail(session, current, MESSAGE_NOT_CONFIGURED, exc, notify=notify)

        try:
            bundle = await self.token_client.exchange(provider, code)
            current = self._transition(current, CallbackState.TOKENS_EXCHANGED)
            claims = await self.userinfo_client.fetch(provider, bundle.access_token)
            current = self._transition(current, CallbackState.CLAIMS_FETCHED)
            result = self.reconciler.authenticate(claims, provider.auth_type, session)
            current = self._transition(
                current, CallbackState.IDENTITY_RECONCILED, outcome=result.outcome.value
            )
            if provider.auth_type == AuthType.OPERATOR and self.role_mapper is not None:
                await self.role_mapper.apply(result.user, result.authname)
        except ServiceError as exc:
            return self._abort(session, current, exc, notify=notify)
        except Exception as exc:
            return self._abort(session, current, self._unexpected(current, exc), notify=notify)

        session.set_token_bundle(bundle)
        check = session.session_check
        check.redirect_in_progress = False
        check.redirect_started_at = None
        check.last_negative_at = None
        session.set_session_check(check)

        redirect_url = self.dispatcher.resolve(request.destination, "/")
        current = self._transition(current, CallbackState.REDIRECTED)
        logger.info(
            "callback_completed",
            user_id=result.user.id,
            auth_type=provider.auth_type.value,
            outcome=result.outcome.value,
            has_destination=bool(request.destination),
        )
        return CallbackOutcome(state=current, redirect_url=redirect_url, result=result)
