from __future__ import annotations

import base64
import hashlib
import secrets
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from functools import cached_property
from typing import Any, AsyncIterator, ClassVar, Mapping

import httpx
import structlog
from httpx_oauth.oauth2 import GetAccessTokenError, OAuth2, RefreshTokenError

from app.core.exceptions import (
    IdentityFetchError,
    OAuthError,
    RefreshNotSupportedError,
    TokenExchangeError,
    TokenRefreshError,
    UnsupportedTargetPlatformError,
)
from app.core.http import request_with_retries
from app.services.oauth.types import ProviderDescriptor, ProviderIdentity, TokenSet

logger = structlog.get_logger(__name__)

# Keys of a token response that map onto TokenSet fields. expires_at is added
# by httpx-oauth's OAuth2Token and is recomputed from expires_in.
TOKEN_RESPONSE_FIELDS = {"access_token", "refresh_token", "expires_in", "expires_at", "scope", "token_type"}


def generate_code_verifier() -> str:
    """43-128 characters from the unreserved set (RFC 7636)."""
    return secrets.token_urlsafe(64)[:96]


def code_challenge_s256(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def _as_int(value: Any) -> int | None:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


class ProviderOAuth2(OAuth2):
    """httpx-oauth client that sends its requests over the app's shared AsyncClient."""

    def __init__(self, *args: Any, http_client: httpx.AsyncClient | None = None, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.http_client = http_client

    @asynccontextmanager
    async def _shared_client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self.http_client is None:
            async with httpx.AsyncClient() as client:
                yield client
        else:
            # Borrowed, not owned: the lifespan closes it.
            yield self.http_client

    def get_httpx_client(self):
        return self._shared_client()


class ProviderAdapter(ABC):
    """Talks OAuth 2.0 to one provider.

    The authorization-code grant itself (authorize URL, code exchange,
    refresh, revocation, client authentication) is delegated to an
    httpx-oauth ``OAuth2`` client built from the descriptor. Subclasses
    override only what differs: scope formatting, response envelopes,
    non-standard token endpoints and the identity lookup.
    """

    descriptor: ClassVar[ProviderDescriptor]

    # How scopes are joined in the authorize URL.
    scope_separator: ClassVar[str] = " "
    # "client_secret_post" sends client credentials as form fields,
    # "client_secret_basic" as an Authorization header.
    token_endpoint_auth_method: ClassVar[str] = "client_secret_post"
    extra_authorize_params: ClassVar[dict[str, str]] = {}
    oauth_client_class: ClassVar[type[ProviderOAuth2]] = ProviderOAuth2

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        http_client: httpx.AsyncClient,
        retries: int = 2,
        backoff_seconds: float = 0.35,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.http_client = http_client
        self.retries = retries
        self.backoff_seconds = backoff_seconds

    @property
    def id(self) -> str:
        return self.descriptor.id

    @cached_property
    def oauth_client(self) -> ProviderOAuth2:
        descriptor = self.descriptor
        return self.oauth_client_class(
            self.client_id,
            self.client_secret,
            descriptor.authorize_endpoint,
            descriptor.token_endpoint,
            refresh_token_endpoint=descriptor.token_endpoint if descriptor.supports_refresh else None,
            revoke_token_endpoint=descriptor.revoke_endpoint,
            name=descriptor.id,
            token_endpoint_auth_method=self.token_endpoint_auth_method,
            revocation_endpoint_auth_method=self.token_endpoint_auth_method,
            http_client=self.http_client,
        )

    # -- authorization -------------------------------------------------

    def scopes_for(self, target_platform: str | None = None) -> tuple[str, ...]:
        return self.descriptor.scopes

    def check_target_platform(self, target_platform: str | None) -> None:
        if target_platform is None:
            return
        if target_platform not in self.descriptor.target_platforms:
            raise UnsupportedTargetPlatformError(
                f"{self.id} does not support target platform {target_platform!r}",
                provider=self.id,
                details={"supportedTargetPlatforms": list(self.descriptor.target_platforms)},
            )

    def authorize_extras(self, target_platform: str | None = None) -> dict[str, str]:
        return dict(self.extra_authorize_params)

    async def build_authorization_url(
        self,
        state: str,
        target_platform: str | None = None,
        code_verifier: str | None = None,
    ) -> str:
        self.check_target_platform(target_platform)
        scopes: list[str] | None = list(self.scopes_for(target_platform))
        extras = self.authorize_extras(target_platform)
        if self.scope_separator != " ":
            # httpx-oauth always space-joins the scope list.
            extras["scope"] = self.scope_separator.join(scopes)
            scopes = None

        challenge = code_challenge_s256(code_verifier) if code_verifier is not None else None
        return await self.oauth_client.get_authorization_url(
            self.redirect_uri,
            state=state,
            scope=scopes,
            code_challenge=challenge,
            code_challenge_method="S256" if challenge else None,
            extras_params=extras or None,
        )

    # -- tokens --------------------------------------------------------

    async def exchange_code(self, code: str, code_verifier: str | None = None) -> TokenSet:
        # Single attempt: authorization codes are single-use.
        try:
            payload = await self.oauth_client.get_access_token(code, self.redirect_uri, code_verifier)
        except GetAccessTokenError as exc:
            self._log_request_failure("exchange", exc)
            raise TokenExchangeError(f"{self.id} token exchange failed", provider=self.id) from exc
        return self.token_set_from_payload(payload, TokenExchangeError, "exchange")

    async def exchange_for_long_lived_token(self, token_set: TokenSet) -> TokenSet:
        return token_set

    async def verify_token(self, access_token: str) -> bool:
        return True

    @abstractmethod
    async def fetch_identity(self, access_token: str) -> ProviderIdentity:
        ...

    async def refresh(self, refresh_token: str) -> TokenSet:
        if not self.descriptor.supports_refresh:
            raise RefreshNotSupportedError(provider=self.id)
        try:
            payload = await self.oauth_client.refresh_token(refresh_token)
        except RefreshTokenError as exc:
            self._log_request_failure("refresh", exc)
            raise TokenRefreshError(f"{self.id} token refresh failed", provider=self.id) from exc
        token_set = self.token_set_from_payload(payload, TokenRefreshError, "refresh")
        # Providers that do not rotate refresh tokens omit them from the response.
        if not token_set.refresh_token:
            token_set.refresh_token = refresh_token
        return token_set

    async def revoke(self, access_token: str) -> None:
        if not self.descriptor.revoke_endpoint:
            return
        await self.oauth_client.revoke_token(access_token, token_type_hint="access_token")

    # -- helpers -------------------------------------------------------

    def parse_token_response(self, payload: Mapping[str, Any]) -> TokenSet:
        access_token = payload.get("access_token")
        if not access_token or not isinstance(access_token, str):
            raise ValueError("token response has no access_token")
        extra = {key: value for key, value in payload.items() if key not in TOKEN_RESPONSE_FIELDS}
        return TokenSet(
            access_token=access_token,
            refresh_token=payload.get("refresh_token") or None,
            expires_in=_as_int(payload.get("expires_in")),
            scope=payload.get("scope"),
            token_type=payload.get("token_type") or "bearer",
            extra=extra,
        )

    def token_set_from_payload(
        self,
        payload: Any,
        error_cls: type[OAuthError],
        operation: str,
    ) -> TokenSet:
        try:
            return self.parse_token_response(payload)
        except (ValueError, AttributeError) as exc:
            logger.warning(f"provider.{operation}_malformed", provider=self.id)
            raise error_cls(f"{self.id} token response malformed", provider=self.id) from exc

    def _log_request_failure(self, operation: str, exc: Exception) -> None:
        response = getattr(exc, "response", None)
        logger.warning(
            f"provider.{operation}_failed",
            provider=self.id,
            status_code=response.status_code if response is not None else None,
            error=type(exc.__cause__ or exc).__name__,
        )

    async def _get_json(
        self,
        url: str,
        *,
        access_token: str | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        headers = {"Accept": "application/json"}
        if access_token is not None:
            headers["Authorization"] = f"Bearer {access_token}"
        try:
            resp = await request_with_retries(
                self.http_client,
                method="GET",
                url=url,
                retries=self.retries,
                backoff_seconds=self.backoff_seconds,
                headers=headers,
                params=params,
            )
        except httpx.HTTPError as exc:
            raise IdentityFetchError(f"{self.id} API unreachable", provider=self.id) from exc
        if resp.status_code >= 400:
            logger.warning("provider.api_failed", provider=self.id, status_code=resp.status_code)
            raise IdentityFetchError(f"{self.id} API returned HTTP {resp.status_code}", provider=self.id)
        try:
            payload = resp.json()
        except ValueError as exc:
            raise IdentityFetchError(f"{self.id} API response malformed", provider=self.id) from exc
        if not isinstance(payload, dict):
            raise IdentityFetchError(f"{self.id} API response malformed", provider=self.id)
        return payload
