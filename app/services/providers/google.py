from __future__ import annotations

import structlog

from app.core.exceptions import IdentityFetchError
from app.services.oauth.types import ProviderDescriptor, ProviderIdentity
from app.services.providers.base import ProviderAdapter

logger = structlog.get_logger(__name__)

YOUTUBE_API_URL = "https://www.googleapis.com/youtube/v3"


class GoogleAdapter(ProviderAdapter):
    """Google OAuth for YouTube publishing and analytics."""

    descriptor = ProviderDescriptor(
        id="google",
        display_name="YouTube",
        authorize_endpoint="https://accounts.google.com/o/oauth2/v2/auth",
        token_endpoint="https://oauth2.googleapis.com/token",
        scopes=(
            "https://www.googleapis.com/auth/youtube.readonly",
            "https://www.googleapis.com/auth/youtube.upload",
            "https://www.googleapis.com/auth/yt-analytics.readonly",
            "https://www.googleapis.com/auth/drive.file",
            "openid",
            "email",
            "profile",
        ),
        supports_refresh=True,
        token_verification_endpoint="https://oauth2.googleapis.com/tokeninfo",
        revoke_endpoint="https://oauth2.googleapis.com/revoke",
    )
    # offline + consent is what makes Google return a refresh token every time.
    extra_authorize_params = {
        "access_type": "offline",
        "prompt": "consent",
        "include_granted_scopes": "true",
    }

    async def verify_token(self, access_token: str) -> bool:
        try:
            payload = await self._get_json(
                self.descriptor.token_verification_endpoint,
                params={"access_token": access_token},
            )
        except IdentityFetchError:
            return False
        audience = payload.get("aud") or payload.get("azp")
        return audience == self.client_id

    async def fetch_identity(self, access_token: str) -> ProviderIdentity:
        user = await self._get_json(
            "https://www.googleapis.com/oauth2/v2/userinfo",
            access_token=access_token,
        )
        if not user.get("id"):
            raise IdentityFetchError("google userinfo has no id", provider=self.id)

        channel = None
        try:
            channels = await self._get_json(
                f"{YOUTUBE_API_URL}/channels",
                access_token=access_token,
                params={"part": "snippet,statistics,contentDetails", "mine": "true"},
            )
        except IdentityFetchError:
            logger.warning("provider.youtube_channel_unavailable", provider=self.id)
        else:
            items = channels.get("items") or []
            if items:
                snippet = items[0].get("snippet") or {}
                statistics = items[0].get("statistics") or {}
                channel = {
                    "id": items[0].get("id"),
                    "title": snippet.get("title"),
                    "custom_url": snippet.get("customUrl"),
                    "subscriber_count": statistics.get("subscriberCount"),
                }

        return ProviderIdentity(
            provider_account_id=str(user["id"]),
            display_name=(channel or {}).get("title") or user.get("name"),
            avatar_url=user.get("picture"),
            extra={"email": user.get("email"), "youtube_channel": channel},
        )
