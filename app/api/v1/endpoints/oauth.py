from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from slowapi import Limiter
from slowapi.util import get_remote_address
from starlette.responses import RedirectResponse

from app.api.v1.deps import get_current_profile_id, get_oauth_engine, get_provider_registry
from app.core.config import get_settings
from app.schemas.oauth import (
    ConnectionListResponse,
    ConnectionStatusResponse,
    DisconnectResponse,
    ProviderResponse,
    RefreshResponse,
)
from app.services.oauth.engine import OAuthEngine
from app.services.providers.registry import ProviderRegistry

router = APIRouter()

_settings = get_settings()

# Rate limiter
limiter = Limiter(key_func=get_remote_address, enabled=_settings.rate_limit_enabled)

STATE_COOKIE = "oauth_state"
VERIFIER_COOKIE = "oauth_code_verifier"


def _set_flow_cookie(response: RedirectResponse, name: str, value: str, provider: str) -> None:
    response.set_cookie(
        key=name,
        value=value,
        max_age=_settings.state_ttl_seconds,
        path=_settings.oauth_callback_path(provider),
        secure=_settings.cookie_secure,
        httponly=True,
        samesite="lax",
    )


def _clear_flow_cookies(response: RedirectResponse, provider: str) -> None:
    for name in (STATE_COOKIE, VERIFIER_COOKIE):
        response.delete_cookie(
            key=name,
            path=_settings.oauth_callback_path(provider),
            secure=_settings.cookie_secure,
            httponly=True,
            samesite="lax",
        )


@router.get("/providers", response_model=list[ProviderResponse])
async def list_providers(registry: ProviderRegistry = Depends(get_provider_registry)):
    """List the providers this deployment can connect to."""
    return [
        ProviderResponse(
            id=adapter.descriptor.id,
            display_name=adapter.descriptor.display_name,
            target_platforms=list(adapter.descriptor.target_platforms),
            requires_pkce=adapter.descriptor.requires_pkce,
            supports_refresh=adapter.descriptor.supports_refresh,
        )
        for adapter in registry.list_all()
    ]


@router.get("/connections", response_model=ConnectionListResponse)
async def list_connections(
    profile_id: str = Depends(get_current_profile_id),
    engine: OAuthEngine = Depends(get_oauth_engine),
):
    statuses = await engine.list_connections(profile_id)
    return ConnectionListResponse(
        items=[ConnectionStatusResponse.model_validate(status) for status in statuses]
    )


@router.get("/{provider}/start")
@limiter.limit("20/minute")
async def start_oauth(
    request: Request,
    provider: str,
    target_platform: str | None = Query(default=None, alias="targetPlatform", max_length=32),
    profile_id: str = Depends(get_current_profile_id),
    engine: OAuthEngine = Depends(get_oauth_engine),
):
    """Redirect the browser to the provider's consent screen."""
    result = await engine.start_oauth(provider, profile_id, target_platform)

    response = RedirectResponse(url=result.auth_url)
    _set_flow_cookie(response, STATE_COOKIE, result.state_token, provider)
    if result.code_verifier:
        _set_flow_cookie(response, VERIFIER_COOKIE, result.code_verifier, provider)
    return response


@router.get("/{provider}/callback")
@limiter.limit("30/minute")
async def oauth_callback(
    request: Request,
    provider: str,
    engine: OAuthEngine = Depends(get_oauth_engine),
):
    """Provider redirect target. Always answers with a redirect back to the app."""
    result = await engine.handle_callback(
        provider,
        request.query_params,
        state_cookie=request.cookies.get(STATE_COOKIE),
        code_verifier=request.cookies.get(VERIFIER_COOKIE),
    )

    response = RedirectResponse(url=result.redirect_url)
    _clear_flow_cookies(response, provider)
    return response


@router.get("/{provider}/status", response_model=ConnectionStatusResponse)
async def connection_status(
    provider: str,
    profile_id: str = Depends(get_current_profile_id),
    engine: OAuthEngine = Depends(get_oauth_engine),
):
    status = await engine.get_connection_status(provider, profile_id)
    return ConnectionStatusResponse.model_validate(status)


@router.post("/{provider}/refresh", response_model=RefreshResponse)
async def refresh_connection(
    provider: str,
    profile_id: str = Depends(get_current_profile_id),
    engine: OAuthEngine = Depends(get_oauth_engine),
):
    """Force a token refresh for an existing connection."""
    status = await engine.refresh_connection(provider, profile_id)
    return RefreshResponse(success=True, provider=provider, expires_at=status.expires_at)


@router.api_route("/{provider}/disconnect", methods=["POST", "DELETE"], response_model=DisconnectResponse)
async def disconnect_provider(
    provider: str,
    profile_id: str = Depends(get_current_profile_id),
    engine: OAuthEngine = Depends(get_oauth_engine),
):
    """Remove the connection. Succeeds even if nothing was connected."""
    await engine.disconnect_provider(provider, profile_id)
    return DisconnectResponse(success=True, provider=provider)
