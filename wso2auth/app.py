from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse

from wso2auth.api.error_handling import register_exception_handlers
from wso2auth.api.routes import NO_STORE, current_user, router
from wso2auth.api.schemas import HealthResponse
from wso2auth.config import Settings
from wso2auth.logging import get_logger, set_correlation_id
from wso2auth.service.runtime import get_runtime
from wso2auth.service.session_probe import ProbeContext

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    runtime = get_runtime()
    logger.info(
        "app_started",
        environment=runtime.settings.environment.value,
        probe_enabled=runtime.session_probe.enabled,
        profile_sync_enabled=runtime.settings.profile_sync_enabled,
    )
    yield
    try:
        await runtime.aclose()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="WSO2 Auth", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    return [_settings.app_base_url.rstrip("/")]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "X-Request-ID", "X-Requested-With"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


def _is_ajax(request: Request) -> bool:
    if request.headers.get("X-Requested-With", "").lower() == "xmlhttprequest":
        return True
    accept = request.headers.get("accept", "")
    return "application/json" in accept and "text/html" not in accept


# Middlewares declared later wrap the ones declared earlier: the browser
# session must be loaded before the probe and the profile sync run.


@app.middleware("http")
async def trigger_profile_sync(request: Request, call_next):
    runtime = get_runtime()
    engine = runtime.profile_sync
    path = request.url.path
    if request.method == "GET" and engine.should_trigger(path):
        session = request.state.session
        user = current_user(runtime.store, session)
        if user is None:
            logger.debug("profile_sync_skipped_anonymous", path=path)
        else:
            logger.info("profile_sync_triggered", user_id=user.id, path=path)
            try:
                synced = await engine.perform_sync(user.id)
            except Exception as exc:
                logger.error(
                    "profile_sync_failed",
                    user_id=user.id,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
            else:
                if synced:
                    logger.info("profile_sync_completed", user_id=user.id)
                else:
                    logger.warning("profile_sync_failed", user_id=user.id)
    return await call_next(request)


@app.middleware("http")
async def silent_session_check(request: Request, call_next):
    runtime = get_runtime()
    probe = runtime.session_probe
    if request.method != "GET" or _is_ajax(request) or not probe.enabled:
        return await call_next(request)
    session = request.state.session
    anonymous = current_user(runtime.store, session) is None
    path = request.url.path
    if request.url.query:
        path = f"{path}?{request.url.query}"
    # only allow-listed cookies are sent; the browser session cookie never is
    forwarded = set(runtime.settings.probe_forward_cookies)
    forwarded.discard(runtime.settings.session_cookie_name)
    cookies = {name: value for name, value in request.cookies.items() if name in forwarded}
    decision = await probe.check(
        ProbeContext(session=session, path=path, cookies=cookies), anonymous=anonymous
    )
    if decision.should_redirect:
        response = RedirectResponse(decision.redirect_url, status_code=302)
        response.headers["Cache-Control"] = NO_STORE
        return response
    return await call_next(request)


@app.middleware("http")
async def attach_browser_session(request: Request, call_next):
    runtime = get_runtime()
    settings = runtime.settings
    session = await runtime.sessions.load(request.cookies.get(settings.session_cookie_name))
    request.state.session = session
    response = await call_next(request)
    if session.modified or session.previous_id:
        await runtime.sessions.save(session)
        if session.is_empty:
            response.delete_cookie(settings.session_cookie_name, path="/")
        else:
            response.set_cookie(
                settings.session_cookie_name,
                session.id,
                max_age=runtime.sessions.ttl_seconds,
                path="/",
                httponly=True,
                samesite="lax",
                secure=settings.session_cookie_secure,
            )
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    # the probe callback page is framed by this site
    response.headers.setdefault("X-Frame-Options", "SAMEORIGIN")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/wso2-auth/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    response.headers.setdefault(
        "Content-Security-Policy", "default-src 'self'; frame-ancestors 'self'; base-uri 'self'"
    )
    return response


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Reuse the caller's X-Request-ID or mint one, and echo it on the response."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz", response_model=HealthResponse)
async def health() -> JSONResponse:
    """Report user store and key-value store health."""
    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, func) -> bool:
        try:
            result = await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return result is not False
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    store_ok = await _run_bounded("user_store", runtime.store.ping)
    checks["user_store"] = {"status": "healthy" if store_ok else "unhealthy", "type": "memory"}
    kv_ok = await _run_bounded("kv_store", runtime.kv.verify_connection)
    checks["kv_store"] = {
        "status": "healthy" if kv_ok else "unhealthy",
        "type": type(runtime.kv).__name__,
    }
    healthy = store_ok and kv_ok
    body = HealthResponse(
        status="healthy" if healthy else "unhealthy", version=__version__, checks=checks
    )
    return JSONResponse(status_code=200 if healthy else 503, content=body.model_dump())


def create_app() -> FastAPI:
    return app
