from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class User:
    id: str
    name: str
    email: Optional[str] = None
    roles: List[str] = field(default_factory=list)
    profile: Dict[str, Any] = field(default_factory=dict)
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)

    def has_role(self, role: str) -> bool:
        return role in self.roles


@dataclass
class ExternalIdentityLink:
    """Association between an IdP subject and a local account."""

    provider: str
    authname: str
    user_id: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class TokenBundle:
    access_token: str
    expires_at: datetime
    id_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"

    @classmethod
    def from_token_response(cls, payload: Dict[str, Any], *, default_ttl: int = 3600) -> "TokenBundle":
        try:
            expires_in = int(payload.get("expires_in") or default_ttl)
        except (TypeError, ValueError):
            expires_in = default_ttl
        return cls(
            access_token=payload["access_token"],
            expires_at=utcnow() + timedelta(seconds=expires_in),
            id_token=payload.get("id_token"),
            refresh_token=payload.get("refresh_token"),
            token_type=payload.get("token_type") or "Bearer",
        )

    @property
    def expired(self) -> bool:
        return utcnow() >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "expires_at": self.expires_at.isoformat(),
            "id_token": self.id_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TokenBundle":
        return cls(
            access_token=data["access_token"],
            expires_at=_parse_datetime(data.get("expires_at")) or utcnow(),
            id_token=data.get("id_token"),
            refresh_token=data.get("refresh_token"),
            token_type=data.get("token_type") or "Bearer",
        )


@dataclass
class AuthorizationRequest:
    """Pending authorization flow, consumed exactly once by the callback."""

    state: str
    auth_type: str
    destination: Optional[str] = None
    nonce: Optional[str] = None
    created_at: float = field(default_factory=time.time)

    def is_expired(self, ttl_seconds: int, *, now: Optional[float] = None) -> bool:
        current = time.time() if now is None else now
        return current - self.created_at > ttl_seconds

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state,
            "auth_type": self.auth_type,
            "destination": self.destination,
            "nonce": self.nonce,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuthorizationRequest":
        return cls(
            state=data.get("state") or "",
            auth_type=data.get("auth_type") or "citizen",
            destination=data.get("destination"),
            nonce=data.get("nonce"),
            created_at=float(data.get("created_at") or 0.0),
        )


@dataclass
class SessionCheckState:
    """Silent-probe bookkeeping for one browser session.

    Timestamps are unix seconds. ``redirect_in_progress`` only holds within
    the grace window that starts at ``redirect_started_at``.
    """

    checked: bool = False
    last_check_at: Optional[float] = None
    last_negative_at: Optional[float] = None
    redirect_in_progress: bool = False
    redirect_started_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "checked": self.checked,
            "last_check_at": self.last_check_at,
            "last_negative_at": self.last_negative_at,
            "redirect_in_progress": self.redirect_in_progress,
            "redirect_started_at": self.redirect_started_at,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "SessionCheckState":
        data = data or {}
        return cls(
            checked=bool(data.get("checked", False)),
            last_check_at=data.get("last_check_at"),
            last_negative_at=data.get("last_negative_at"),
            redirect_in_progress=bool(data.get("redirect_in_progress", False)),
            redirect_started_at=data.get("redirect_started_at"),
        )


@dataclass
class ProfileSyncRecord:
    user_id: str
    last_sync_at: float
