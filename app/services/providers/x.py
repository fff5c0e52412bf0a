from __future__ import annotations

from app.core.exceptions import IdentityFetchError
from app.services.oauth.types import ProviderDescriptor, ProviderIdentity
from app.services.providers.base import ProviderAdapter

X_API_URL = "https://api.twitter.com/2"


class XAdapter(ProviderAdapter):
    """X (Twitter) OAuth 2.0 with PKCE, confidential client.

    Refresh tokens rotate: every refresh returns a new one and invalidates
    the old, so the response must always be persisted.
    """

    descriptor = ProviderDescriptor(
        id="x",
        display_name="X (Twitter)",
        authorize_endpoint="https://x.com/i/oauth2/authorize",
        token_endpoint=f"{X_API_URL}/oauth2/token",
        scopes=("tweet.read", "tweet.write", "users.read", "offline.access", "media.write"),
        supports_refresh=True,
        revoke_endpoint=f"{X_API_URL}/oauth2/revoke",
        requires_pkce=True,
    )
    token_endpoint_auth_method = "client_secret_basic"

    async def fetch_identity(self, access_token: str) -> ProviderIdentity:
        payload = await self._get_json(
            f"{X_API_URL}/users/me",
            access_token=access_token,
            params={"user.fields": "id,name,username,profile_image_url,verified"},
        )
        user = payload.get("data") or {}
        if not user.get("id"):
            raise IdentityFetchError("x users/me has no id", provider=self.id)
        return ProviderIdentity(
            provider_account_id=str(user["id"]),
            display_name=user.get("name"),
            avatar_url=user.get("profile_image_url"),
            extra={"username": user.get("username"), "verified": user.get("verified")},
        )
