from __future__ import annotations

from app.core.exceptions import IdentityFetchError
from app.services.oauth.types import ProviderDescriptor, ProviderIdentity
from app.services.providers.base import ProviderAdapter

OPENID_SCOPES = ("openid", "profile", "email")
MEMBER_SCOPES = OPENID_SCOPES + ("w_member_social",)
# Community Management API; the member has to administer the company page.
ORGANIZATION_SCOPES = OPENID_SCOPES + (
    "w_organization_social",
    "r_organization_social",
    "rw_organization_admin",
)


class LinkedInAdapter(ProviderAdapter):
    """LinkedIn personal profile and company pages.

    ``target_platform="organization"`` asks only for the company page scopes,
    ``"profile"`` only for posting as the member. Without a target both sets
    are requested.
    """

    descriptor = ProviderDescriptor(
        id="linkedin",
        display_name="LinkedIn",
        authorize_endpoint="https://www.linkedin.com/oauth/v2/authorization",
        token_endpoint="https://www.linkedin.com/oauth/v2/accessToken",
        scopes=tuple(dict.fromkeys(MEMBER_SCOPES + ORGANIZATION_SCOPES)),
        supports_refresh=True,
        target_platforms=("profile", "organization"),
    )

    def scopes_for(self, target_platform: str | None = None) -> tuple[str, ...]:
        if target_platform == "profile":
            return MEMBER_SCOPES
        if target_platform == "organization":
            return ORGANIZATION_SCOPES
        return self.descriptor.scopes

    async def fetch_identity(self, access_token: str) -> ProviderIdentity:
        # OpenID Connect userinfo: sub is the member id.
        user = await self._get_json("https://api.linkedin.com/v2/userinfo", access_token=access_token)
        if not user.get("sub"):
            raise IdentityFetchError("linkedin userinfo has no sub", provider=self.id)
        return ProviderIdentity(
            provider_account_id=str(user["sub"]),
            display_name=user.get("name"),
            avatar_url=user.get("picture"),
            extra={"email": user.get("email"), "email_verified": user.get("email_verified")},
        )
