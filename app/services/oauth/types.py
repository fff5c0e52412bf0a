"""Provider-agnostic value types shared by the engine, adapters and store."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def split_scopes(scope: str | None) -> list[str]:
    if not scope:
        return []
    return [s for s in re.split(r"[,\s]+", scope) if s]


class ConnectionState(str, Enum):
    NOT_CONNECTED = "not_connected"
    CONNECTED = "connected"
    EXPIRED = "expired"


@dataclass(frozen=True)
class ProviderDescriptor:
    id: str
    display_name: str
    authorize_endpoint: str
    token_endpoint: str
    scopes: tuple[str, ...]
    supports_refresh: bool = True
    supports_long_lived_exchange: bool = False
    token_verification_endpoint: str | None = None
    revoke_endpoint: str | None = None
    requires_pkce: bool = False
    target_platforms: tuple[str, ...] = ()

    @property
    def supports_verification(self) -> bool:
        return self.token_verification_endpoint is not None


@dataclass
class TokenSet:
    access_token: str
    refresh_token: str | None = None
    expires_in: int | None = None
    scope: str | None = None
    token_type: str = "bearer"
    extra: dict[str, Any] = field(default_factory=dict)

    def __repr__(self) -> str:
        # Keep token material out of tracebacks and debug output.
        return (
            f"TokenSet(expires_in={self.expires_in!r}, scope={self.scope!r}, "
            f"has_refresh_token={self.refresh_token is not None})"
        )

    def expires_at(self, now: datetime) -> datetime | None:
        if not self.expires_in:
            return None
        return now + timedelta(seconds=int(self.expires_in))


@dataclass
class ProviderIdentity:
    provider_account_id: str
    display_name: str | None = None
    avatar_url: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class ConnectionRecord:
    """One stored connection; token fields hold ciphertext only."""

    profile_id: str
    provider: str
    provider_account_id: str
    access_token_enc: str
    refresh_token_enc: str | None = None
    scope: str | None = None
    expires_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def is_expired(self, now: datetime, margin_seconds: int = 0) -> bool:
        expires_at = ensure_utc(self.expires_at)
        if expires_at is None:
            return False
        return expires_at <= now + timedelta(seconds=margin_seconds)


@dataclass
class ConnectionStatus:
    connected: bool
    provider: str
    state: ConnectionState
    provider_account_id: str | None = None
    expires_at: datetime | None = None
    scopes: list[str] = field(default_factory=list)
    display_name: str | None = None
    reconnect_required: bool = False


@dataclass(frozen=True)
class IssuedState:
    token: str
    nonce: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class VerifiedState:
    profile_id: str
    provider: str
    nonce: str
    issued_at: datetime
    target_platform: str | None = None


@dataclass(frozen=True)
class StartResult:
    auth_url: str
    state_token: str
    state_expires_at: datetime
    code_verifier: str | None = None


@dataclass(frozen=True)
class CallbackResult:
    success: bool
    redirect_url: str
    error_code: str | None = None
    profile_id: str | None = None
