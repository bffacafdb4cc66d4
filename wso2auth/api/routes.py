from __future__ import annotations

import json
import secrets
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

from fastapi import APIRouter, HTTPException, Path, Query, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse

from wso2auth.api.schemas import (
    CheckSessionResponse,
    Envelope,
    ExchangeCodeRequest,
    ExchangeCodeResponse,
    FlashMessage,
    MessagesResponse,
)
from wso2auth.config import AuthType
from wso2auth.logging import get_logger
from wso2auth.service.authorization import with_cache_buster
from wso2auth.service.errors import ConfigurationError, ForbiddenError, ValidationError
from wso2auth.service.runtime import get_runtime
from wso2auth.service.session_state import SessionState
from wso2auth.storage.memory import MemoryStore
from wso2auth.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/wso2-auth", tags=["wso2-auth"])

NO_STORE = "no-store, private"
# referers that must never become a post-login destination
_REFERER_BLOCKLIST = ("wso2-auth/authorize", "user/login", "user/logout")

MESSAGE_NOT_CONFIGURED = "WSO2 authentication is not properly configured."
MESSAGE_OPERATOR_DISABLED = "Operator authentication is not enabled."


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def browser_session(request: Request) -> SessionState:
    session = getattr(request.state, "session", None)
    if session is None:
        raise _http_error("server_error", "browser session unavailable", status_code=500)
    return session


def current_user(store: MemoryStore, session: SessionState) -> Optional[User]:
    """The active local user bound to ``session``, if any."""
    if not session.user_id:
        return None
    user = store.get_user(session.user_id)
    if user is None or not user.is_active:
        return None
    return user


def _redirect(url: str) -> RedirectResponse:
    response = RedirectResponse(url, status_code=302)
    response.headers["Cache-Control"] = NO_STORE
    return response


def _home(session: SessionState, message: Optional[str] = None) -> RedirectResponse:
    if message:
        session.add_message("error", message)
    return _redirect(get_runtime().redirects.absolute("/"))


def destination_from_referer(referer: Optional[str], site_url: str) -> Optional[str]:
    """Fallback destination taken from the Referer header.

    Login and logout pages are ignored; a referer on the site's own host is
    reduced to its path so it is treated as internal.
    """
    if not referer or any(blocked in referer for blocked in _REFERER_BLOCKLIST):
        return None
    try:
        parts = urlsplit(referer)
        site = urlsplit(site_url)
    except ValueError:
        return None
    if parts.netloc and parts.netloc.lower() == site.netloc.lower():
        return urlunsplit(("", "", parts.path or "/", parts.query, parts.fragment))
    return referer


async def _authorize(request: Request, auth_type: str, destination: Optional[str]) -> RedirectResponse:
    runtime = get_runtime()
    session = browser_session(request)
    try:
        auth_type = AuthType(auth_type)
    except ValueError:
        logger.warning("authorize_unknown_auth_type", auth_type=auth_type)
        return _home(session, MESSAGE_NOT_CONFIGURED)
    if auth_type == AuthType.OPERATOR and not runtime.settings.operator_enabled:
        logger.warning("authorize_operator_disabled")
        return _home(session, MESSAGE_OPERATOR_DISABLED)

    if not destination:
        destination = destination_from_referer(
            request.headers.get("referer"), runtime.settings.app_base_url
        )
    try:
        url = runtime.authorization.build(session, destination, auth_type)
    except ConfigurationError as exc:
        logger.warning("authorize_not_configured", detail=exc.detail)
        return _home(session, MESSAGE_NOT_CONFIGURED)
    logger.info(
        "authorize_redirect",
        auth_type=auth_type.value,
        has_destination=bool(destination),
    )
    return _redirect(with_cache_buster(url))


@router.get("/authorize")
async def authorize(
    request: Request,
    destinazione: Optional[str] = Query(None, max_length=2048),
    auth_type: str = Query(AuthType.CITIZEN.value, alias="type", max_length=32),
) -> RedirectResponse:
    """Start the authorization-code flow and redirect to the Identity Server."""
    return await _authorize(request, auth_type, destinazione)


@router.get("/authorize/{auth_type}")
async def authorize_typed(
    request: Request,
    auth_type: str = Path(..., max_length=32),
    destinazione: Optional[str] = Query(None, max_length=2048),
) -> RedirectResponse:
    return await _authorize(request, auth_type, destinazione)


@router.get("/callback")
async def callback(
    request: Request,
    code: Optional[str] = Query(None, max_length=1024),
    state: Optional[str] = Query(None, max_length=256),
    session_state: Optional[str] = Query(None, max_length=512),
    error: Optional[str] = Query(None, max_length=256),
) -> RedirectResponse:
    """Complete the flow started by ``/authorize``; always answers with a redirect."""
    runtime = get_runtime()
    session = browser_session(request)
    outcome = await runtime.callback.run(session, code, state, idp_error=error)
    return _redirect(outcome.redirect_url)


@router.get("/logout")
async def logout(request: Request) -> RedirectResponse:
    """End the local session and, when an ID token is held, the Identity Server one."""
    runtime = get_runtime()
    session = browser_session(request)
    bundle = session.token_bundle
    user_id = session.user_id
    session.destroy()
    home = runtime.redirects.absolute("/")
    if bundle is None or not bundle.id_token:
        logger.info("logout_local_only", user_id=user_id)
        return _redirect(home)
    url = runtime.authorization.logout_url(bundle.id_token, home)
    logger.info("logout_redirect_idp", user_id=user_id)
    return _redirect(url)


@router.get("/check-session", response_model=CheckSessionResponse)
async def check_session(request: Request) -> JSONResponse:
    runtime = get_runtime()
    headers = {"Cache-Control": "no-store, no-cache, must-revalidate, private"}
    if not runtime.environment.is_configured():
        body = CheckSessionResponse(authenticated=False, error=MESSAGE_NOT_CONFIGURED)
        return JSONResponse(body.model_dump(exclude_none=True), headers=headers)
    authenticated = current_user(runtime.store, browser_session(request)) is not None
    if runtime.settings.debug:
        logger.debug("check_session_debug", authenticated=authenticated)
    return JSONResponse(
        CheckSessionResponse(authenticated=authenticated).model_dump(exclude_none=True),
        headers=headers,
    )


@router.get("/messages", response_model=Envelope)
async def messages(request: Request) -> Envelope:
    """Drain the flash messages queued for this browser."""
    session = browser_session(request)
    drained = [FlashMessage(**item) for item in session.drain_messages()]
    return Envelope(status="ok", data=MessagesResponse(messages=drained))


_PROBE_CALLBACK_PAGE = """<!DOCTYPE html>
<html><head><meta charset="utf-8"><title>Session check</title></head>
<body><script nonce="{nonce}">
(function () {{
  var message = {payload};
  if (window.parent && window.parent !== window) {{
    window.parent.postMessage(message, window.location.origin);
  }}
}})();
</script></body></html>
"""


@router.get("/probe-callback", response_class=HTMLResponse)
async def probe_callback(
    code: Optional[str] = Query(None, max_length=1024),
    state: Optional[str] = Query(None, max_length=256),
    error: Optional[str] = Query(None, max_length=256),
) -> HTMLResponse:
    """Landing page of a ``prompt=none`` request loaded in a hidden frame.

    Hands the result to the waiting probe and posts it to the parent window.
    """
    runtime = get_runtime()
    message = {"type": "probe_result", "code": code, "error": error, "state": state}
    delivered = runtime.probe_bus.publish(state or "", message) if state else False
    logger.info(
        "probe_callback_received",
        has_code=bool(code),
        idp_error=error,
        delivered=delivered,
    )
    nonce = secrets.token_urlsafe(16)
    # "<" escaped so the payload cannot close the script element
    payload = json.dumps(message).replace("<", "\\u003c")
    return HTMLResponse(
        _PROBE_CALLBACK_PAGE.format(nonce=nonce, payload=payload),
        headers={
            "Cache-Control": NO_STORE,
            "Content-Security-Policy": (
                f"default-src 'none'; script-src 'nonce-{nonce}'; frame-ancestors 'self'"
            ),
        },
    )


@router.post("/exchange-code", response_model=Envelope)
async def exchange_code(request: Request, body: ExchangeCodeRequest) -> Envelope:
    """Finish a login for a silent probe that obtained an authorization code."""
    runtime = get_runtime()
    if not runtime.settings.session_probe_enabled:
        raise ForbiddenError("auto-login is disabled")
    session = browser_session(request)
    user = current_user(runtime.store, session)
    if user is not None:
        return Envelope(
            status="ok",
            data=ExchangeCodeResponse(
                success=True, logged_in=True, user_id=user.id, username=user.name
            ),
        )
    if not body.code:
        raise ValidationError("no authorization code provided", detail={"field": "code"})

    outcome = await runtime.callback.run(session, body.code, body.state, notify=False)
    if not outcome.succeeded or outcome.result is None:
        error = outcome.error
        raise _http_error(
            error.error_code if error else "validation_error",
            "code exchange failed",
            status_code=400 if error is None or error.status_code < 500 else error.status_code,
        )
    user = outcome.result.user
    return Envelope(
        status="ok",
        data=ExchangeCodeResponse(
            success=True, logged_in=True, user_id=user.id, username=user.name
        ),
    )
