from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for relying-party exceptions mapped to HTTP responses.

    Each subclass carries a stable ``error_code`` and the HTTP status used
    when the error reaches a JSON endpoint. Browser-flow endpoints never
    expose these to the visitor; they log them and redirect home.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class ForbiddenError(ServiceError):
    """Feature disabled or access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class ConfigurationError(ServiceError):
    """Required settings are missing; the feature behaves as disabled (503)."""
    status_code = 503
    error_code = "configuration_error"


class StateMismatchError(ServiceError):
    """Forged or replayed callback: the state token did not verify (400)."""
    status_code = 400
    error_code = "state_mismatch"


class UpstreamHttpError(ServiceError):
    """Network failure, timeout or non-2xx answer from the IdP or an API (502)."""

    status_code = 502
    error_code = "upstream_error"

    def __init__(
        self,
        message: str,
        *,
        service: str,
        upstream_status: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        merged = {"service": service, **(detail or {})}
        if upstream_status is not None:
            merged["upstream_status"] = upstream_status
        super().__init__(message, detail=merged, error_code=error_code)
        self.service = service
        self.upstream_status = upstream_status


class MalformedResponseError(UpstreamHttpError):
    """Upstream answered 2xx with a body that is not the expected JSON."""
    error_code = "malformed_response"


class ReconciliationError(ServiceError):
    """Claims could not be mapped to exactly one local account (401)."""
    status_code = 401
    error_code = "reconciliation_failed"


class RedirectSafetyError(ServiceError):
    """Destination is not internal and not on a whitelisted domain (400)."""
    status_code = 400
    error_code = "unsafe_redirect"


__all__ = [
    "ServiceError",
    "ValidationError",
    "ForbiddenError",
    "ConfigurationError",
    "StateMismatchError",
    "UpstreamHttpError",
    "MalformedResponseError",
    "ReconciliationError",
    "RedirectSafetyError",
]
