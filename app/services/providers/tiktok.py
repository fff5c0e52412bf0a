from __future__ import annotations

from typing import Any, Mapping

from app.core.exceptions import IdentityFetchError
from app.services.oauth.types import ProviderDescriptor, ProviderIdentity, TokenSet
from app.services.providers.base import ProviderAdapter, ProviderOAuth2

TIKTOK_API_URL = "https://open.tiktokapis.com/v2"


class TikTokOAuth2(ProviderOAuth2):
    """TikTok names the client id ``client_key`` on every token-endpoint call."""

    def build_request(self, client, method, url, *, auth_method=None, data=None):
        if data is not None:
            data = {**data, "client_key": self.client_id}
        return super().build_request(client, method, url, auth_method=auth_method, data=data)


class TikTokAdapter(ProviderAdapter):
    """TikTok Login Kit v2. Uses ``client_key`` instead of ``client_id`` and requires PKCE."""

    descriptor = ProviderDescriptor(
        id="tiktok",
        display_name="TikTok",
        authorize_endpoint="https://www.tiktok.com/v2/auth/authorize/",
        token_endpoint=f"{TIKTOK_API_URL}/oauth/token/",
        scopes=("user.info.basic", "video.upload", "video.publish"),
        supports_refresh=True,
        revoke_endpoint=f"{TIKTOK_API_URL}/oauth/revoke/",
        requires_pkce=True,
    )
    scope_separator = ","
    oauth_client_class = TikTokOAuth2

    def authorize_extras(self, target_platform: str | None = None) -> dict[str, str]:
        return {**super().authorize_extras(target_platform), "client_key": self.client_id}

    def parse_token_response(self, payload: Mapping[str, Any]) -> TokenSet:
        # Errors come back as HTTP 200 with an "error" field and no token.
        if isinstance(payload.get("data"), dict):
            payload = payload["data"]
        return super().parse_token_response(payload)

    async def fetch_identity(self, access_token: str) -> ProviderIdentity:
        payload = await self._get_json(
            f"{TIKTOK_API_URL}/user/info/",
            access_token=access_token,
            params={"fields": "open_id,union_id,avatar_url,display_name"},
        )
        error = payload.get("error") or {}
        if error.get("code") not in (None, "ok"):
            raise IdentityFetchError(f"tiktok user info error {error.get('code')}", provider=self.id)

        user = (payload.get("data") or {}).get("user") or {}
        if not user.get("open_id"):
            raise IdentityFetchError("tiktok user info has no open_id", provider=self.id)
        return ProviderIdentity(
            provider_account_id=str(user["open_id"]),
            display_name=user.get("display_name"),
            avatar_url=user.get("avatar_url"),
            extra={"union_id": user.get("union_id")},
        )
