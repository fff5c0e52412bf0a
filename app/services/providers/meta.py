from __future__ import annotations

from typing import Any

import httpx
import structlog

from app.core.exceptions import IdentityFetchError, OAuthError, TokenExchangeError, TokenRefreshError
from app.services.oauth.types import ProviderDescriptor, ProviderIdentity, TokenSet
from app.services.providers.base import ProviderAdapter

logger = structlog.get_logger(__name__)

META_API_VERSION = "v21.0"
META_GRAPH_URL = f"https://graph.facebook.com/{META_API_VERSION}"

FACEBOOK_SCOPES = (
    "pages_show_list",
    "pages_manage_posts",
    "pages_read_engagement",
    "pages_read_user_content",
)
INSTAGRAM_SCOPES = (
    "pages_show_list",
    "pages_read_engagement",
    "instagram_basic",
    "instagram_content_publish",
    "instagram_manage_insights",
)


class MetaAdapter(ProviderAdapter):
    """Facebook Login for Business, covering Facebook Pages and Instagram.

    Meta hands out one-hour user tokens; they are upgraded to ~60 day tokens
    via ``fb_exchange_token``. There is no refresh token: "refresh" re-runs
    that exchange with the current long-lived token, so the access token is
    also kept as the refresh token.
    """

    descriptor = ProviderDescriptor(
        id="meta",
        display_name="Meta (Facebook/Instagram)",
        authorize_endpoint=f"https://www.facebook.com/{META_API_VERSION}/dialog/oauth",
        token_endpoint=f"{META_GRAPH_URL}/oauth/access_token",
        scopes=tuple(dict.fromkeys(FACEBOOK_SCOPES + INSTAGRAM_SCOPES)),
        supports_refresh=True,
        supports_long_lived_exchange=True,
        token_verification_endpoint=f"{META_GRAPH_URL}/debug_token",
        revoke_endpoint=f"{META_GRAPH_URL}/me/permissions",
        target_platforms=("facebook", "instagram"),
    )
    scope_separator = ","
    extra_authorize_params = {"display": "popup"}

    def scopes_for(self, target_platform: str | None = None) -> tuple[str, ...]:
        if target_platform == "facebook":
            return FACEBOOK_SCOPES
        if target_platform == "instagram":
            return INSTAGRAM_SCOPES
        return self.descriptor.scopes

    async def _graph_token_get(
        self,
        params: dict[str, str],
        error_cls: type[OAuthError],
        operation: str,
    ) -> TokenSet:
        # Meta's token endpoint is a GET with the credentials in the query string.
        query = {"client_id": self.client_id, "client_secret": self.client_secret, **params}
        try:
            resp = await self.http_client.get(
                self.descriptor.token_endpoint,
                params=query,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            logger.warning(f"provider.{operation}_unreachable", provider=self.id, error=type(exc).__name__)
            raise error_cls("meta token endpoint unreachable", provider=self.id) from exc
        if resp.status_code >= 400:
            logger.warning(f"provider.{operation}_failed", provider=self.id, status_code=resp.status_code)
            raise error_cls(f"meta token endpoint returned HTTP {resp.status_code}", provider=self.id)
        try:
            payload = resp.json()
        except ValueError as exc:
            raise error_cls("meta token response malformed", provider=self.id) from exc
        return self.token_set_from_payload(payload, error_cls, operation)

    async def exchange_code(self, code: str, code_verifier: str | None = None) -> TokenSet:
        return await self._graph_token_get(
            {"redirect_uri": self.redirect_uri, "code": code},
            TokenExchangeError,
            "exchange",
        )

    async def exchange_for_long_lived_token(self, token_set: TokenSet) -> TokenSet:
        long_lived = await self._graph_token_get(
            {"grant_type": "fb_exchange_token", "fb_exchange_token": token_set.access_token},
            TokenExchangeError,
            "long_lived_exchange",
        )
        long_lived.refresh_token = long_lived.access_token
        long_lived.scope = long_lived.scope or token_set.scope
        return long_lived

    async def refresh(self, refresh_token: str) -> TokenSet:
        token_set = await self._graph_token_get(
            {"grant_type": "fb_exchange_token", "fb_exchange_token": refresh_token},
            TokenRefreshError,
            "refresh",
        )
        token_set.refresh_token = token_set.access_token
        return token_set

    async def verify_token(self, access_token: str) -> bool:
        try:
            payload = await self._get_json(
                self.descriptor.token_verification_endpoint,
                params={
                    "input_token": access_token,
                    "access_token": f"{self.client_id}|{self.client_secret}",
                },
            )
        except IdentityFetchError:
            return False
        data = payload.get("data") or {}
        return bool(data.get("is_valid")) and str(data.get("app_id", self.client_id)) == self.client_id

    async def fetch_identity(self, access_token: str) -> ProviderIdentity:
        me = await self._get_json(
            f"{META_GRAPH_URL}/me",
            access_token=access_token,
            params={"fields": "id,name,email"},
        )
        if not me.get("id"):
            raise IdentityFetchError("meta /me response has no id", provider=self.id)

        # Pages and linked Instagram accounts are enrichment only.
        try:
            pages = await self._fetch_pages(access_token)
        except IdentityFetchError:
            logger.warning("provider.meta_pages_unavailable", provider=self.id)
            pages = []

        instagram_accounts = [
            page["instagram_business_account"]
            for page in pages
            if page.get("instagram_business_account")
        ]
        return ProviderIdentity(
            provider_account_id=str(me["id"]),
            display_name=me.get("name"),
            extra={
                "email": me.get("email"),
                "pages": pages,
                "instagram_accounts": instagram_accounts,
            },
        )

    async def _fetch_pages(self, access_token: str) -> list[dict[str, Any]]:
        payload = await self._get_json(
            f"{META_GRAPH_URL}/me/accounts",
            access_token=access_token,
            params={"fields": "id,name,access_token,category"},
        )
        pages: list[dict[str, Any]] = []
        for page in payload.get("data") or []:
            # Page tokens stay in memory; only identifiers are kept.
            entry = {"id": page.get("id"), "name": page.get("name"), "category": page.get("category")}
            page_token = page.get("access_token")
            if page_token and page.get("id"):
                entry["instagram_business_account"] = await self._fetch_instagram_account(
                    page["id"], page_token
                )
            pages.append(entry)
        return pages

    async def _fetch_instagram_account(self, page_id: str, page_token: str) -> dict[str, Any] | None:
        try:
            payload = await self._get_json(
                f"{META_GRAPH_URL}/{page_id}",
                access_token=page_token,
                params={
                    "fields": "instagram_business_account{id,username,name,profile_picture_url,followers_count}"
                },
            )
        except IdentityFetchError:
            return None
        return payload.get("instagram_business_account")

    async def revoke(self, access_token: str) -> None:
        resp = await self.http_client.delete(
            self.descriptor.revoke_endpoint,
            params={"access_token": access_token},
        )
        resp.raise_for_status()
