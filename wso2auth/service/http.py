from __future__ import annotations

import json
from typing import Any, Dict, Optional

import httpx

from wso2auth.config import Settings
from wso2auth.logging import get_logger
from wso2auth.service.errors import MalformedResponseError, UpstreamHttpError

logger = get_logger(__name__)


def build_http_client(settings: Settings, **kwargs: Any) -> httpx.AsyncClient:
    """Shared outbound client: bounded timeouts, TLS policy from settings, no redirects."""
    return httpx.AsyncClient(
        timeout=httpx.Timeout(
            settings.http_timeout_seconds, connect=settings.http_connect_timeout_seconds
        ),
        verify=settings.tls_verify,
        follow_redirects=False,
        **kwargs,
    )


async def request_json(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    service: str,
    **kwargs: Any,
) -> Dict[str, Any]:
    """Send one request and decode a JSON object body.

    Transport failures and non-2xx answers raise UpstreamHttpError; a 2xx
    answer whose body is not a JSON object raises MalformedResponseError.
    Nothing is retried.
    """
    response = await send(client, method, url, service=service, **kwargs)
    return decode_json_object(response, service=service)


async def send(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    service: str,
    **kwargs: Any,
) -> httpx.Response:
    try:
        response = await client.request(method, url, **kwargs)
    except httpx.TimeoutException as exc:
        logger.error("upstream_timeout", service=service, error=str(exc))
        raise UpstreamHttpError(f"{service} timed out", service=service) from exc
    except httpx.HTTPError as exc:
        logger.error(
            "upstream_connect_error",
            service=service,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        raise UpstreamHttpError(f"{service} unreachable", service=service) from exc
    if not response.is_success:
        logger.error(
            "upstream_http_error",
            service=service,
            upstream_status=response.status_code,
            body=_body_excerpt(response),
        )
        raise UpstreamHttpError(
            f"{service} answered {response.status_code}",
            service=service,
            upstream_status=response.status_code,
        )
    return response


def decode_json_object(response: httpx.Response, *, service: str) -> Dict[str, Any]:
    try:
        payload = response.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        logger.error("upstream_malformed_json", service=service, error=str(exc))
        raise MalformedResponseError(
            f"{service} returned invalid JSON",
            service=service,
            upstream_status=response.status_code,
        ) from exc
    if not isinstance(payload, dict):
        logger.error("upstream_unexpected_payload", service=service, type=type(payload).__name__)
        raise MalformedResponseError(
            f"{service} returned an unexpected payload",
            service=service,
            upstream_status=response.status_code,
        )
    return payload


def _body_excerpt(response: httpx.Response, limit: int = 200) -> Optional[str]:
    try:
        text = response.text
    except UnicodeDecodeError:
        return None
    return text[:limit] if text else None
