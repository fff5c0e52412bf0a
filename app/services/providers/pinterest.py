from __future__ import annotations

from app.core.exceptions import IdentityFetchError
from app.services.oauth.types import ProviderDescriptor, ProviderIdentity
from app.services.providers.base import ProviderAdapter

PINTEREST_API_URL = "https://api.pinterest.com/v5"


class PinterestAdapter(ProviderAdapter):
    descriptor = ProviderDescriptor(
        id="pinterest",
        display_name="Pinterest",
        authorize_endpoint="https://www.pinterest.com/oauth/",
        token_endpoint=f"{PINTEREST_API_URL}/oauth/token",
        scopes=("user_accounts:read", "pins:read", "pins:write", "boards:read", "boards:write"),
        supports_refresh=True,
    )
    scope_separator = ","
    token_endpoint_auth_method = "client_secret_basic"

    async def fetch_identity(self, access_token: str) -> ProviderIdentity:
        account = await self._get_json(f"{PINTEREST_API_URL}/user_account", access_token=access_token)
        # Pinterest has no stable numeric id on this endpoint; the username is unique.
        if not account.get("username"):
            raise IdentityFetchError("pinterest user_account has no username", provider=self.id)
        return ProviderIdentity(
            provider_account_id=str(account["username"]),
            display_name=account.get("business_name") or account.get("username"),
            avatar_url=account.get("profile_image"),
            extra={"account_type": account.get("account_type")},
        )
