from __future__ import annotations

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings, get_settings
from app.core.exceptions import ConfigurationError, NotAuthenticatedError
from app.core.security import TokenVault
from app.db.session import get_async_session
from app.services.oauth.engine import OAuthEngine
from app.services.oauth.state import StateTokenCodec
from app.services.oauth.store import SQLAlchemyConnectionStore
from app.services.providers.registry import ProviderRegistry

# Development profile - used when dev_mode is enabled
DEV_PROFILE_ID = "00000000-0000-0000-0000-000000000001"

bearer_scheme = HTTPBearer(auto_error=False)


def get_app_settings() -> Settings:
    return get_settings()


async def get_current_profile_id(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    settings: Settings = Depends(get_app_settings),
) -> str:
    """Profile id of the caller, from a bearer token or the session cookie."""
    if settings.dev_mode:
        return DEV_PROFILE_ID

    token = credentials.credentials if credentials else request.cookies.get(settings.auth_cookie_name)
    if not token:
        raise NotAuthenticatedError("No access token presented")
    if not settings.auth_jwt_secret:
        raise ConfigurationError("Caller authentication secret is not configured")

    try:
        claims = jwt.decode(
            token,
            settings.auth_jwt_secret,
            algorithms=[settings.auth_jwt_algorithm],
            audience=settings.auth_jwt_audience,
        )
    except JWTError as exc:
        raise NotAuthenticatedError("Access token rejected") from exc

    profile_id = claims.get("sub")
    if not profile_id:
        raise NotAuthenticatedError("Access token has no subject")
    return str(profile_id)


def get_provider_registry(request: Request) -> ProviderRegistry:
    return request.app.state.provider_registry


def get_state_codec(request: Request) -> StateTokenCodec:
    return request.app.state.state_codec


def get_token_vault(request: Request) -> TokenVault:
    return request.app.state.token_vault


async def get_oauth_engine(
    registry: ProviderRegistry = Depends(get_provider_registry),
    state_codec: StateTokenCodec = Depends(get_state_codec),
    vault: TokenVault = Depends(get_token_vault),
    session: AsyncSession = Depends(get_async_session),
    settings: Settings = Depends(get_app_settings),
) -> OAuthEngine:
    return OAuthEngine(
        registry,
        state_codec,
        vault,
        SQLAlchemyConnectionStore(session),
        app_base_url=settings.app_base_url,
        refresh_margin_seconds=settings.token_refresh_margin_seconds,
        status_policy=settings.status_policy,
    )
