from __future__ import annotations

from app.schemas.oauth import (
    ConnectionListResponse,
    ConnectionStatusResponse,
    DisconnectResponse,
    ProviderResponse,
    RefreshResponse,
)

__all__ = [
    "ProviderResponse",
    "ConnectionStatusResponse",
    "ConnectionListResponse",
    "RefreshResponse",
    "DisconnectResponse",
]
