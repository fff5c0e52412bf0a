from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from app.services.oauth.types import ConnectionState


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class ProviderResponse(CamelModel):
    id: str
    display_name: str
    target_platforms: list[str]
    requires_pkce: bool
    supports_refresh: bool


class ConnectionStatusResponse(CamelModel):
    connected: bool
    provider: str
    provider_account_id: str | None = None
    expires_at: datetime | None = None
    scopes: list[str] = []
    display_name: str | None = None
    state: ConnectionState
    reconnect_required: bool = False


class ConnectionListResponse(CamelModel):
    items: list[ConnectionStatusResponse]


class RefreshResponse(CamelModel):
    success: bool
    provider: str
    expires_at: datetime | None = None


class DisconnectResponse(CamelModel):
    success: bool
    provider: str
