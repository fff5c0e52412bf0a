from __future__ import annotations

from app.core.exceptions import IdentityFetchError
from app.services.oauth.types import ProviderDescriptor, ProviderIdentity
from app.services.providers.base import ProviderAdapter

SNAPCHAT_SCOPE_URL = "https://auth.snapchat.com/oauth2/api"


class SnapchatAdapter(ProviderAdapter):
    """Snap Login Kit; identity comes from the Bitmoji-enabled ``/v1/me`` query."""

    descriptor = ProviderDescriptor(
        id="snapchat",
        display_name="Snapchat",
        authorize_endpoint="https://accounts.snapchat.com/accounts/oauth2/auth",
        token_endpoint="https://accounts.snapchat.com/accounts/oauth2/token",
        scopes=(
            f"{SNAPCHAT_SCOPE_URL}/user.display_name",
            f"{SNAPCHAT_SCOPE_URL}/user.bitmoji.avatar",
            f"{SNAPCHAT_SCOPE_URL}/user.external_id",
        ),
        supports_refresh=True,
    )
    token_endpoint_auth_method = "client_secret_basic"

    async def fetch_identity(self, access_token: str) -> ProviderIdentity:
        payload = await self._get_json(
            "https://kit.snapchat.com/v1/me",
            access_token=access_token,
            params={"query": "{me{displayName,bitmoji{avatar},externalId}}"},
        )
        me = (payload.get("data") or {}).get("me") or {}
        if not me.get("externalId"):
            raise IdentityFetchError("snapchat me has no externalId", provider=self.id)
        return ProviderIdentity(
            provider_account_id=str(me["externalId"]),
            display_name=me.get("displayName"),
            avatar_url=(me.get("bitmoji") or {}).get("avatar"),
        )
