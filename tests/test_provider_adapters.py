import base64
import hashlib
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
import respx
from httpx import Response
from httpx_oauth.oauth2 import OAuth2

from app.core.exceptions import (
    IdentityFetchError,
    TokenExchangeError,
    TokenRefreshError,
    UnsupportedTargetPlatformError,
)
from app.services.providers.base import code_challenge_s256, generate_code_verifier
from app.services.providers.google import GoogleAdapter
from app.services.providers.linkedin import LinkedInAdapter
from app.services.providers.meta import META_GRAPH_URL, MetaAdapter
from app.services.providers.pinterest import PinterestAdapter
from app.services.providers.snapchat import SnapchatAdapter
from app.services.providers.tiktok import TikTokAdapter
from app.services.providers.x import XAdapter


def _adapter(cls, client: httpx.AsyncClient, client_id: str = "client-id"):
    return cls(
        client_id=client_id,
        client_secret="client-secret",
        redirect_uri=f"http://api.test/api/v1/auth/{cls.descriptor.id}/callback",
        http_client=client,
        retries=1,
        backoff_seconds=0,
    )


def _query(url) -> dict[str, str]:
    return {key: values[0] for key, values in parse_qs(urlparse(str(url)).query).items()}


def _form(request: httpx.Request) -> dict[str, str]:
    return {key: values[0] for key, values in parse_qs(request.content.decode()).items()}


def _basic(client_id: str = "client-id", secret: str = "client-secret") -> str:
    return "Basic " + base64.b64encode(f"{client_id}:{secret}".encode()).decode()


def test_pkce_challenge_matches_rfc_example():
    # RFC 7636 appendix B
    verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
    assert code_challenge_s256(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"


def test_generated_verifier_is_valid_length():
    verifier = generate_code_verifier()
    assert 43 <= len(verifier) <= 128
    assert code_challenge_s256(verifier) == (
        base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest()).rstrip(b"=").decode()
    )


@pytest.mark.asyncio
async def test_meta_authorize_url_scopes_by_target_platform():
    async with httpx.AsyncClient() as client:
        adapter = _adapter(MetaAdapter, client)

        default = _query(await adapter.build_authorization_url("state-1"))
        instagram = _query(await adapter.build_authorization_url("state-1", target_platform="instagram"))

        assert default["client_id"] == "client-id"
        assert default["display"] == "popup"
        assert default["redirect_uri"] == "http://api.test/api/v1/auth/meta/callback"
        assert "pages_manage_posts" in default["scope"].split(",")
        assert "instagram_content_publish" in instagram["scope"].split(",")
        assert "pages_manage_posts" not in instagram["scope"].split(",")

        with pytest.raises(UnsupportedTargetPlatformError):
            await adapter.build_authorization_url("state-1", target_platform="tiktok")


@pytest.mark.asyncio
async def test_meta_exchange_and_long_lived_upgrade():
    with respx.mock:
        route = respx.get(f"{META_GRAPH_URL}/oauth/access_token").mock(
            side_effect=[
                Response(200, json={"access_token": "short", "token_type": "bearer", "expires_in": 3600}),
                Response(200, json={"access_token": "long", "token_type": "bearer", "expires_in": 5183944}),
            ]
        )
        async with httpx.AsyncClient() as client:
            adapter = _adapter(MetaAdapter, client)
            short = await adapter.exchange_code("abc123")
            long = await adapter.exchange_for_long_lived_token(short)

    exchange_params = _query(route.calls[0].request.url)
    assert exchange_params["code"] == "abc123"
    assert exchange_params["client_secret"] == "client-secret"
    upgrade_params = _query(route.calls[1].request.url)
    assert upgrade_params["grant_type"] == "fb_exchange_token"
    assert upgrade_params["fb_exchange_token"] == "short"
    assert long.access_token == "long"
    assert long.refresh_token == "long"
    assert long.expires_in == 5183944


@pytest.mark.asyncio
async def test_meta_exchange_error_hides_provider_body():
    with respx.mock:
        respx.get(f"{META_GRAPH_URL}/oauth/access_token").mock(
            return_value=Response(400, json={"error": {"message": "Invalid code for user 98765"}})
        )
        async with httpx.AsyncClient() as client:
            with pytest.raises(TokenExchangeError) as exc_info:
                await _adapter(MetaAdapter, client).exchange_code("bad")

    assert "98765" not in str(exc_info.value)
    assert "98765" not in str(exc_info.value.to_dict())


@pytest.mark.asyncio
async def test_meta_verify_token_uses_app_token():
    with respx.mock:
        route = respx.get(f"{META_GRAPH_URL}/debug_token").mock(
            return_value=Response(200, json={"data": {"is_valid": True, "app_id": "client-id"}})
        )
        async with httpx.AsyncClient() as client:
            assert await _adapter(MetaAdapter, client).verify_token("tok") is True

    params = _query(route.calls[0].request.url)
    assert params["input_token"] == "tok"
    assert params["access_token"] == "client-id|client-secret"


@pytest.mark.asyncio
async def test_meta_identity_collects_pages_without_page_tokens():
    with respx.mock:
        respx.get(f"{META_GRAPH_URL}/me").mock(
            return_value=Response(200, json={"id": "1001", "name": "Jo Doe", "email": "jo@example.com"})
        )
        respx.get(f"{META_GRAPH_URL}/me/accounts").mock(
            return_value=Response(
                200,
                json={"data": [{"id": "p1", "name": "Bakery", "category": "Food", "access_token": "page-secret"}]},
            )
        )
        respx.get(f"{META_GRAPH_URL}/p1").mock(
            return_value=Response(
                200,
                json={"instagram_business_account": {"id": "ig1", "username": "bakery"}, "id": "p1"},
            )
        )
        async with httpx.AsyncClient() as client:
            identity = await _adapter(MetaAdapter, client).fetch_identity("tok")

    assert identity.provider_account_id == "1001"
    assert identity.display_name == "Jo Doe"
    assert identity.extra["pages"][0]["name"] == "Bakery"
    assert identity.extra["instagram_accounts"] == [{"id": "ig1", "username": "bakery"}]
    assert "page-secret" not in repr(identity.extra)


@pytest.mark.asyncio
async def test_tiktok_uses_client_key_and_pkce():
    verifier = generate_code_verifier()
    with respx.mock:
        route = respx.post("https://open.tiktokapis.com/v2/oauth/token/").mock(
            return_value=Response(
                200,
                json={
                    "access_token": "act.1",
                    "refresh_token": "rft.1",
                    "expires_in": 86400,
                    "open_id": "open-1",
                    "scope": "user.info.basic,video.upload",
                },
            )
        )
        async with httpx.AsyncClient() as client:
            adapter = _adapter(TikTokAdapter, client)
            params = _query(await adapter.build_authorization_url("state-1", code_verifier=verifier))
            token_set = await adapter.exchange_code("abc123", code_verifier=verifier)

    assert params["client_key"] == "client-id"
    assert params["scope"] == "user.info.basic,video.upload,video.publish"
    assert params["code_challenge"] == code_challenge_s256(verifier)

    form = _form(route.calls[0].request)
    assert form["client_key"] == "client-id"
    assert form["code_verifier"] == verifier
    assert form["grant_type"] == "authorization_code"
    assert token_set.access_token == "act.1"
    assert token_set.extra["open_id"] == "open-1"


@pytest.mark.asyncio
async def test_tiktok_error_in_ok_response_is_exchange_failure():
    with respx.mock:
        respx.post("https://open.tiktokapis.com/v2/oauth/token/").mock(
            return_value=Response(200, json={"error": "invalid_grant", "error_description": "Code expired"})
        )
        async with httpx.AsyncClient() as client:
            with pytest.raises(TokenExchangeError):
                await _adapter(TikTokAdapter, client).exchange_code("stale")


@pytest.mark.asyncio
async def test_tiktok_identity_unwraps_data_envelope():
    with respx.mock:
        respx.get("https://open.tiktokapis.com/v2/user/info/").mock(
            return_value=Response(
                200,
                json={
                    "data": {"user": {"open_id": "open-1", "display_name": "creator", "avatar_url": "https://a"}},
                    "error": {"code": "ok", "message": ""},
                },
            )
        )
        async with httpx.AsyncClient() as client:
            identity = await _adapter(TikTokAdapter, client).fetch_identity("act.1")

    assert identity.provider_account_id == "open-1"
    assert identity.display_name == "creator"


@pytest.mark.asyncio
async def test_google_authorize_requests_offline_access():
    async with httpx.AsyncClient() as client:
        params = _query(await _adapter(GoogleAdapter, client).build_authorization_url("state-1"))

    assert params["access_type"] == "offline"
    assert params["prompt"] == "consent"
    assert "https://www.googleapis.com/auth/youtube.upload" in params["scope"].split(" ")


@pytest.mark.asyncio
async def test_google_refresh_keeps_existing_refresh_token():
    with respx.mock:
        route = respx.post("https://oauth2.googleapis.com/token").mock(
            return_value=Response(200, json={"access_token": "ya29.new", "expires_in": 3599})
        )
        async with httpx.AsyncClient() as client:
            token_set = await _adapter(GoogleAdapter, client).refresh("1//refresh")

    form = _form(route.calls[0].request)
    assert form["grant_type"] == "refresh_token"
    assert form["client_id"] == "client-id"
    assert token_set.access_token == "ya29.new"
    assert token_set.refresh_token == "1//refresh"


@pytest.mark.asyncio
async def test_google_refresh_failure():
    with respx.mock:
        respx.post("https://oauth2.googleapis.com/token").mock(
            return_value=Response(400, json={"error": "invalid_grant"})
        )
        async with httpx.AsyncClient() as client:
            with pytest.raises(TokenRefreshError):
                await _adapter(GoogleAdapter, client).refresh("1//revoked")


@pytest.mark.asyncio
async def test_google_verify_checks_audience():
    with respx.mock:
        respx.get("https://oauth2.googleapis.com/tokeninfo").mock(
            side_effect=[
                Response(200, json={"aud": "client-id", "expires_in": "3000"}),
                Response(200, json={"aud": "someone-else"}),
                Response(400, json={"error": "invalid_token"}),
            ]
        )
        async with httpx.AsyncClient() as client:
            adapter = _adapter(GoogleAdapter, client)
            assert await adapter.verify_token("tok") is True
            assert await adapter.verify_token("tok") is False
            assert await adapter.verify_token("tok") is False


@pytest.mark.asyncio
async def test_google_identity_prefers_channel_title():
    with respx.mock:
        respx.get("https://www.googleapis.com/oauth2/v2/userinfo").mock(
            return_value=Response(200, json={"id": "g-1", "name": "Jo", "picture": "https://p"})
        )
        respx.get("https://www.googleapis.com/youtube/v3/channels").mock(
            return_value=Response(
                200,
                json={"items": [{"id": "UC1", "snippet": {"title": "Jo Cooks"}, "statistics": {"subscriberCount": "10"}}]},
            )
        )
        async with httpx.AsyncClient() as client:
            identity = await _adapter(GoogleAdapter, client).fetch_identity("tok")

    assert identity.provider_account_id == "g-1"
    assert identity.display_name == "Jo Cooks"
    assert identity.extra["youtube_channel"]["id"] == "UC1"


@pytest.mark.asyncio
async def test_x_uses_basic_auth_and_pkce():
    with respx.mock:
        route = respx.post("https://api.twitter.com/2/oauth2/token").mock(
            return_value=Response(
                200,
                json={"access_token": "x-at", "refresh_token": "x-rt", "expires_in": 7200, "token_type": "bearer"},
            )
        )
        async with httpx.AsyncClient() as client:
            token_set = await _adapter(XAdapter, client).exchange_code("abc123", code_verifier="v" * 64)

    request = route.calls[0].request
    assert request.headers["Authorization"] == _basic()
    form = _form(request)
    assert "client_secret" not in form
    assert form["code_verifier"] == "v" * 64
    assert token_set.refresh_token == "x-rt"


@pytest.mark.asyncio
async def test_x_identity_reads_data_field():
    with respx.mock:
        respx.get("https://api.twitter.com/2/users/me").mock(
            return_value=Response(200, json={"data": {"id": "42", "name": "Jo", "username": "jo"}})
        )
        async with httpx.AsyncClient() as client:
            identity = await _adapter(XAdapter, client).fetch_identity("x-at")

    assert identity.provider_account_id == "42"
    assert identity.extra["username"] == "jo"


@pytest.mark.asyncio
async def test_identity_retries_transient_failures():
    with respx.mock:
        route = respx.get("https://api.linkedin.com/v2/userinfo").mock(
            side_effect=[
                Response(503),
                Response(200, json={"sub": "li-1", "name": "Jo", "email": "jo@example.com"}),
            ]
        )
        async with httpx.AsyncClient() as client:
            identity = await _adapter(LinkedInAdapter, client).fetch_identity("tok")

    assert route.call_count == 2
    assert identity.provider_account_id == "li-1"
    assert identity.extra["email"] == "jo@example.com"


@pytest.mark.asyncio
async def test_identity_failure_raises():
    with respx.mock:
        respx.get("https://api.linkedin.com/v2/userinfo").mock(return_value=Response(401))
        async with httpx.AsyncClient() as client:
            with pytest.raises(IdentityFetchError):
                await _adapter(LinkedInAdapter, client).fetch_identity("tok")


@pytest.mark.asyncio
async def test_pinterest_basic_auth_and_username_identity():
    with respx.mock:
        token_route = respx.post("https://api.pinterest.com/v5/oauth/token").mock(
            return_value=Response(200, json={"access_token": "pina_1", "refresh_token": "pinr_1", "expires_in": 2592000})
        )
        respx.get("https://api.pinterest.com/v5/user_account").mock(
            return_value=Response(200, json={"username": "bakery", "account_type": "BUSINESS"})
        )
        async with httpx.AsyncClient() as client:
            adapter = _adapter(PinterestAdapter, client)
            params = _query(await adapter.build_authorization_url("state-1"))
            await adapter.exchange_code("abc123")
            identity = await adapter.fetch_identity("pina_1")

    assert params["scope"] == "user_accounts:read,pins:read,pins:write,boards:read,boards:write"
    assert token_route.calls[0].request.headers["Authorization"] == _basic()
    assert identity.provider_account_id == "bakery"


@pytest.mark.asyncio
async def test_snapchat_identity_from_bitmoji_query():
    with respx.mock:
        respx.get("https://kit.snapchat.com/v1/me").mock(
            return_value=Response(
                200,
                json={"data": {"me": {"externalId": "snap-1", "displayName": "Jo", "bitmoji": {"avatar": "https://b"}}}},
            )
        )
        async with httpx.AsyncClient() as client:
            identity = await _adapter(SnapchatAdapter, client).fetch_identity("tok")

    assert identity.provider_account_id == "snap-1"
    assert identity.avatar_url == "https://b"


@pytest.mark.asyncio
async def test_revoke_posts_token():
    with respx.mock:
        route = respx.post("https://oauth2.googleapis.com/revoke").mock(return_value=Response(200))
        async with httpx.AsyncClient() as client:
            await _adapter(GoogleAdapter, client).revoke("ya29.tok")

    assert _form(route.calls[0].request)["token"] == "ya29.tok"


@pytest.mark.asyncio
async def test_linkedin_has_no_revoke_endpoint():
    with respx.mock:
        async with httpx.AsyncClient() as client:
            await _adapter(LinkedInAdapter, client).revoke("tok")
        assert respx.calls.call_count == 0


@pytest.mark.asyncio
async def test_grant_requests_use_the_shared_client():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> Response:
        seen.append(request)
        return Response(200, json={"access_token": "li-at", "expires_in": 5184000})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        adapter = _adapter(LinkedInAdapter, client)
        assert isinstance(adapter.oauth_client, OAuth2)
        token_set = await adapter.exchange_code("abc123")

    assert [str(r.url) for r in seen] == ["https://www.linkedin.com/oauth/v2/accessToken"]
    form = _form(seen[0])
    assert form["grant_type"] == "authorization_code"
    assert form["redirect_uri"] == "http://api.test/api/v1/auth/linkedin/callback"
    assert form["client_secret"] == "client-secret"
    assert token_set.expires_in == 5184000
    assert "expires_at" not in token_set.extra


@pytest.mark.asyncio
async def test_exchange_http_error_hides_provider_body():
    with respx.mock:
        respx.post("https://www.linkedin.com/oauth/v2/accessToken").mock(
            return_value=Response(400, json={"error_description": "code for member 55555 expired"})
        )
        async with httpx.AsyncClient() as client:
            with pytest.raises(TokenExchangeError) as exc_info:
                await _adapter(LinkedInAdapter, client).exchange_code("stale")

    assert "55555" not in str(exc_info.value)


@pytest.mark.asyncio
async def test_tiktok_refresh_sends_client_key():
    with respx.mock:
        route = respx.post("https://open.tiktokapis.com/v2/oauth/token/").mock(
            return_value=Response(200, json={"access_token": "act.2", "refresh_token": "rft.2", "expires_in": 86400})
        )
        async with httpx.AsyncClient() as client:
            token_set = await _adapter(TikTokAdapter, client).refresh("rft.1")

    form = _form(route.calls[0].request)
    assert form["grant_type"] == "refresh_token"
    assert form["refresh_token"] == "rft.1"
    assert form["client_key"] == "client-id"
    assert form["client_secret"] == "client-secret"
    assert token_set.refresh_token == "rft.2"


@pytest.mark.asyncio
async def test_x_revoke_uses_basic_auth_and_type_hint():
    with respx.mock:
        route = respx.post("https://api.twitter.com/2/oauth2/revoke").mock(return_value=Response(200))
        async with httpx.AsyncClient() as client:
            await _adapter(XAdapter, client).revoke("x-at")

    request = route.calls[0].request
    assert request.headers["Authorization"] == _basic()
    assert _form(request) == {"token": "x-at", "token_type_hint": "access_token"}


@pytest.mark.asyncio
async def test_x_refresh_failure():
    with respx.mock:
        respx.post("https://api.twitter.com/2/oauth2/token").mock(
            return_value=Response(400, json={"error": "invalid_request"})
        )
        async with httpx.AsyncClient() as client:
            with pytest.raises(TokenRefreshError):
                await _adapter(XAdapter, client).refresh("x-rt-rotated")


@pytest.mark.asyncio
async def test_linkedin_scopes_by_target_platform():
    async with httpx.AsyncClient() as client:
        adapter = _adapter(LinkedInAdapter, client)
        organization = _query(await adapter.build_authorization_url("state-1", target_platform="organization"))
        profile = _query(await adapter.build_authorization_url("state-1", target_platform="profile"))

    assert "rw_organization_admin" in organization["scope"].split(" ")
    assert "w_member_social" not in organization["scope"].split(" ")
    assert profile["scope"].split(" ") == ["openid", "profile", "email", "w_member_social"]
