import os

# Settings are cached on first use, so the test environment has to be in place
# before anything under app/ is imported.
os.environ.setdefault("SOCIALCONNECT_DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SOCIALCONNECT_RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("SOCIALCONNECT_COOKIE_SECURE", "false")
os.environ.setdefault("SOCIALCONNECT_LOG_JSON", "false")

from dataclasses import replace  # noqa: E402
from datetime import datetime, timedelta, timezone  # noqa: E402

import pytest  # noqa: E402

from app.core.security import TokenVault  # noqa: E402
from app.services.oauth.engine import OAuthEngine  # noqa: E402
from app.services.oauth.state import StateTokenCodec  # noqa: E402
from app.services.oauth.store import ConnectionStore  # noqa: E402
from app.services.oauth.types import (  # noqa: E402
    ConnectionRecord,
    ProviderDescriptor,
    ProviderIdentity,
    TokenSet,
)
from app.services.providers.base import ProviderAdapter  # noqa: E402
from app.services.providers.registry import ProviderRegistry  # noqa: E402

STATE_SECRET = "test-state-secret-with-enough-entropy"
APP_BASE_URL = "http://app.test"


class FakeClock:
    def __init__(self, now: datetime | None = None):
        self.now = now or datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeAdapter(ProviderAdapter):
    """Adapter that never touches the network and records what the engine asks of it."""

    def __init__(
        self,
        provider_id: str = "meta",
        *,
        supports_refresh: bool = True,
        supports_long_lived_exchange: bool = False,
        verification: bool = False,
        requires_pkce: bool = False,
        target_platforms: tuple[str, ...] = (),
    ):
        super().__init__(
            client_id=f"{provider_id}-client",
            client_secret=f"{provider_id}-secret",
            redirect_uri=f"http://api.test/api/v1/auth/{provider_id}/callback",
            http_client=None,
        )
        self.descriptor = ProviderDescriptor(
            id=provider_id,
            display_name=provider_id.title(),
            authorize_endpoint=f"https://{provider_id}.example/authorize",
            token_endpoint=f"https://{provider_id}.example/token",
            scopes=("read", "write"),
            supports_refresh=supports_refresh,
            supports_long_lived_exchange=supports_long_lived_exchange,
            token_verification_endpoint=f"https://{provider_id}.example/verify" if verification else None,
            revoke_endpoint=f"https://{provider_id}.example/revoke",
            requires_pkce=requires_pkce,
            target_platforms=target_platforms,
        )
        self.next_token = TokenSet(access_token="tok1", refresh_token="ref1", expires_in=3600)
        self.next_refresh = TokenSet(access_token="tok2", refresh_token="ref2", expires_in=3600)
        self.identity = ProviderIdentity(provider_account_id="acct-1", display_name="Test Account")
        self.verify_result = True
        self.exchange_error: Exception | None = None
        self.refresh_error: Exception | None = None
        self.revoke_error: Exception | None = None
        # Runs inside refresh(), before the result is returned.
        self.during_refresh = None

        self.exchange_calls: list[tuple[str, str | None]] = []
        self.long_lived_calls: list[str] = []
        self.refresh_calls: list[str] = []
        self.revoke_calls: list[str] = []

    async def exchange_code(self, code, code_verifier=None):
        self.exchange_calls.append((code, code_verifier))
        if self.exchange_error:
            raise self.exchange_error
        return replace(self.next_token)

    async def exchange_for_long_lived_token(self, token_set):
        self.long_lived_calls.append(token_set.access_token)
        return TokenSet(
            access_token=f"long-{token_set.access_token}",
            refresh_token=f"long-{token_set.access_token}",
            expires_in=60 * 24 * 3600,
        )

    async def verify_token(self, access_token):
        return self.verify_result

    async def fetch_identity(self, access_token):
        return self.identity

    async def refresh(self, refresh_token):
        self.refresh_calls.append(refresh_token)
        if not self.descriptor.supports_refresh:
            return await super().refresh(refresh_token)
        if self.during_refresh:
            await self.during_refresh()
        if self.refresh_error:
            raise self.refresh_error
        return replace(self.next_refresh)

    async def revoke(self, access_token):
        self.revoke_calls.append(access_token)
        if self.revoke_error:
            raise self.revoke_error


class InMemoryConnectionStore(ConnectionStore):
    def __init__(self):
        self.rows: dict[tuple[str, str], ConnectionRecord] = {}
        self.writes = 0

    async def upsert(self, record):
        self.writes += 1
        existing = self.rows.get((record.profile_id, record.provider))
        created_at = existing.created_at if existing else record.created_at
        self.rows[(record.profile_id, record.provider)] = replace(record, created_at=created_at)
        return self.rows[(record.profile_id, record.provider)]

    async def get(self, profile_id, provider):
        return self.rows.get((profile_id, provider))

    async def list_for_profile(self, profile_id):
        return [row for (pid, _), row in sorted(self.rows.items()) if pid == profile_id]

    async def update_tokens(
        self,
        profile_id,
        provider,
        *,
        access_token_enc,
        refresh_token_enc,
        expires_at,
        scope,
        expected_refresh_token_enc=None,
    ):
        row = self.rows.get((profile_id, provider))
        if row is None:
            return None
        if expected_refresh_token_enc is not None and row.refresh_token_enc != expected_refresh_token_enc:
            return None
        self.writes += 1
        self.rows[(profile_id, provider)] = replace(
            row,
            access_token_enc=access_token_enc,
            refresh_token_enc=refresh_token_enc,
            expires_at=expires_at,
            scope=scope,
        )
        return self.rows[(profile_id, provider)]

    async def delete(self, profile_id, provider):
        return self.rows.pop((profile_id, provider), None) is not None


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def vault():
    return TokenVault([TokenVault.generate_key()])


@pytest.fixture
def state_codec(clock):
    return StateTokenCodec(STATE_SECRET, ttl_seconds=600, clock=clock)


@pytest.fixture
def store():
    return InMemoryConnectionStore()


@pytest.fixture
def meta_adapter():
    return FakeAdapter("meta", target_platforms=("facebook", "instagram"))


@pytest.fixture
def registry(meta_adapter):
    return ProviderRegistry([meta_adapter, FakeAdapter("linkedin", supports_refresh=False)])


@pytest.fixture
def oauth_engine(registry, state_codec, vault, store, clock):
    return OAuthEngine(
        registry,
        state_codec,
        vault,
        store,
        app_base_url=APP_BASE_URL,
        clock=clock,
    )
