from __future__ import annotations

from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
    "configuration_error",
    "state_mismatch",
    "upstream_error",
    "malformed_response",
    "reconciliation_failed",
    "unsafe_redirect",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class CheckSessionResponse(BaseModel):
    authenticated: bool
    error: Optional[str] = None


class ExchangeCodeRequest(BaseModel):
    code: str = Field("", max_length=1024)
    state: str = Field("", max_length=256)


class ExchangeCodeResponse(BaseModel):
    success: bool
    logged_in: bool
    user_id: Optional[str] = None
    username: Optional[str] = None


class FlashMessage(BaseModel):
    level: str
    text: str


class MessagesResponse(BaseModel):
    messages: List[FlashMessage] = Field(default_factory=list)


class HealthResponse(BaseModel):
    status: str = Field(..., pattern="^(healthy|unhealthy)$")
    version: str
    checks: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
