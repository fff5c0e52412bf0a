from __future__ import annotations

import hmac
from datetime import datetime
from typing import Any, Callable, Mapping
from urllib.parse import urlencode

import structlog

from app.core.config import StatusPolicy
from app.core.exceptions import (
    ConnectionNotFoundError,
    DecryptionError,
    ErrorCode,
    InvalidStateError,
    MissingCodeError,
    OAuthError,
    RefreshNotSupportedError,
    TokenExpiredError,
    TokenRefreshError,
    UnknownProviderError,
)
from app.core.security import TokenVault
from app.services.oauth.state import StateTokenCodec
from app.services.oauth.store import ConnectionStore
from app.services.oauth.types import (
    CallbackResult,
    ConnectionRecord,
    ConnectionState,
    ConnectionStatus,
    StartResult,
    split_scopes,
    utc_now,
)
from app.services.providers.base import ProviderAdapter, generate_code_verifier
from app.services.providers.registry import ProviderRegistry

logger = structlog.get_logger(__name__)

INTEGRATIONS_PATH = "/settings/integrations"


class OAuthEngine:
    """Drives the authorization-code flow for every registered provider.

    The engine never reads cookies or sessions itself: the HTTP layer passes
    the profile id and cookie values in, and writes back whatever state and
    verifier the engine hands out. All provider specifics live in the adapters.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        state_codec: StateTokenCodec,
        vault: TokenVault,
        store: ConnectionStore,
        *,
        app_base_url: str,
        refresh_margin_seconds: int = 60,
        status_policy: StatusPolicy = StatusPolicy.ROW_EXISTS,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.registry = registry
        self.state_codec = state_codec
        self.vault = vault
        self.store = store
        self.app_base_url = app_base_url.rstrip("/")
        self.refresh_margin_seconds = refresh_margin_seconds
        self.status_policy = status_policy
        self._clock = clock

    # -- redirects -------------------------------------------------------

    def success_redirect(self, provider_id: str) -> str:
        return f"{self.app_base_url}{INTEGRATIONS_PATH}?{urlencode({'connected': provider_id})}"

    def failure_redirect(self, provider_id: str, code: ErrorCode | str) -> str:
        code_value = code.value if isinstance(code, ErrorCode) else code
        query = urlencode({"error": code_value, "provider": provider_id})
        return f"{self.app_base_url}{INTEGRATIONS_PATH}?{query}"

    def _failure(self, provider_id: str, code: ErrorCode, profile_id: str | None = None) -> CallbackResult:
        return CallbackResult(
            success=False,
            redirect_url=self.failure_redirect(provider_id, code),
            error_code=code.value,
            profile_id=profile_id,
        )

    # -- flow ------------------------------------------------------------

    async def start_oauth(
        self,
        provider_id: str,
        profile_id: str,
        target_platform: str | None = None,
    ) -> StartResult:
        adapter = self.registry.get(provider_id)
        adapter.check_target_platform(target_platform)

        issued = self.state_codec.issue(profile_id, provider_id, target_platform)
        code_verifier = generate_code_verifier() if adapter.descriptor.requires_pkce else None
        auth_url = await adapter.build_authorization_url(
            issued.token,
            target_platform=target_platform,
            code_verifier=code_verifier,
        )
        logger.info(
            "oauth.started",
            provider=provider_id,
            profile_id=profile_id,
            target_platform=target_platform,
        )
        return StartResult(
            auth_url=auth_url,
            state_token=issued.token,
            state_expires_at=issued.expires_at,
            code_verifier=code_verifier,
        )

    async def handle_callback(
        self,
        provider_id: str,
        query_params: Mapping[str, str],
        state_cookie: str | None,
        code_verifier: str | None = None,
    ) -> CallbackResult:
        """Complete a flow. Never raises for flow failures: they become failure redirects."""
        provider_error = query_params.get("error")
        if provider_error:
            code = ErrorCode.ACCESS_DENIED if provider_error == "access_denied" else ErrorCode.PROVIDER_ERROR
            # The provider's error_description is not logged; it can carry identifiers.
            logger.info("oauth.provider_declined", provider=provider_id, error=provider_error)
            return self._failure(provider_id, code)

        if not self.registry.is_registered(provider_id):
            logger.warning("oauth.callback_unknown_provider", provider=provider_id)
            return self._failure(provider_id, ErrorCode.UNKNOWN_PROVIDER)
        adapter = self.registry.get(provider_id)

        try:
            state_param = query_params.get("state") or ""
            if not state_cookie or not hmac.compare_digest(state_param.encode(), state_cookie.encode()):
                raise InvalidStateError("State parameter does not match cookie", provider=provider_id)
            verified = self.state_codec.verify(state_param, provider_id)
        except InvalidStateError as exc:
            logger.warning("oauth.state_rejected", provider=provider_id, reason=exc.message)
            return self._failure(provider_id, exc.code)

        profile_id = verified.profile_id
        code = query_params.get("code")
        try:
            if not code:
                raise MissingCodeError("Callback has no authorization code", provider=provider_id)
            await self._complete(adapter, profile_id, code, code_verifier, verified.target_platform)
        except OAuthError as exc:
            exc.log(stage="callback", profile_id=profile_id)
            return self._failure(provider_id, exc.code, profile_id)
        except Exception:
            logger.exception("oauth.callback_failed", provider=provider_id, profile_id=profile_id)
            return self._failure(provider_id, ErrorCode.INTERNAL_ERROR, profile_id)

        logger.info("oauth.connected", provider=provider_id, profile_id=profile_id)
        return CallbackResult(
            success=True,
            redirect_url=self.success_redirect(provider_id),
            profile_id=profile_id,
        )

    async def _complete(
        self,
        adapter: ProviderAdapter,
        profile_id: str,
        code: str,
        code_verifier: str | None,
        target_platform: str | None,
    ) -> ConnectionRecord:
        descriptor = adapter.descriptor
        token_set = await adapter.exchange_code(code, code_verifier=code_verifier)

        if descriptor.supports_long_lived_exchange:
            token_set = await adapter.exchange_for_long_lived_token(token_set)

        metadata: dict[str, Any] = {}
        if descriptor.supports_verification:
            verified = await adapter.verify_token(token_set.access_token)
            metadata["token_verified"] = verified
            if not verified:
                logger.warning("oauth.token_unverified", provider=adapter.id, profile_id=profile_id)

        identity = await adapter.fetch_identity(token_set.access_token)
        metadata.update(
            {
                "display_name": identity.display_name,
                "avatar_url": identity.avatar_url,
                **identity.extra,
            }
        )
        if target_platform:
            metadata["target_platform"] = target_platform

        record = ConnectionRecord(
            profile_id=profile_id,
            provider=adapter.id,
            provider_account_id=identity.provider_account_id,
            access_token_enc=self.vault.encrypt(token_set.access_token),
            refresh_token_enc=self.vault.encrypt_optional(token_set.refresh_token),
            scope=token_set.scope or adapter.scope_separator.join(adapter.scopes_for(target_platform)),
            expires_at=token_set.expires_at(self._clock()),
            metadata=metadata,
        )
        return await self.store.upsert(record)

    # -- reads -----------------------------------------------------------

    def _status_from_record(self, provider_id: str, record: ConnectionRecord | None) -> ConnectionStatus:
        if record is None:
            return ConnectionStatus(
                connected=False,
                provider=provider_id,
                state=ConnectionState.NOT_CONNECTED,
            )

        adapter = self.registry.get(provider_id)
        expired = record.is_expired(self._clock())
        refreshable = adapter.descriptor.supports_refresh and record.refresh_token_enc is not None
        dead = expired and not refreshable

        connected = True
        if dead and self.status_policy == StatusPolicy.USABLE:
            connected = False

        return ConnectionStatus(
            connected=connected,
            provider=provider_id,
            state=ConnectionState.EXPIRED if dead else ConnectionState.CONNECTED,
            provider_account_id=record.provider_account_id,
            expires_at=record.expires_at,
            scopes=split_scopes(record.scope),
            display_name=record.metadata.get("display_name"),
            reconnect_required=dead,
        )

    async def get_connection_status(self, provider_id: str, profile_id: str) -> ConnectionStatus:
        """Read-only; tokens are never decrypted here."""
        if not self.registry.is_registered(provider_id):
            raise UnknownProviderError(provider_id, supported=self.registry.ids())
        record = await self.store.get(profile_id, provider_id)
        return self._status_from_record(provider_id, record)

    async def list_connections(self, profile_id: str) -> list[ConnectionStatus]:
        records = {record.provider: record for record in await self.store.list_for_profile(profile_id)}
        return [
            self._status_from_record(provider_id, records.get(provider_id))
            for provider_id in self.registry.ids()
        ]

    # -- tokens ----------------------------------------------------------

    async def get_valid_access_token(self, profile_id: str, provider_id: str) -> str:
        """Plaintext access token for an outbound API call, refreshed if close to expiry.

        ``TokenExpiredError`` means the user has to reconnect; callers should
        not retry it.
        """
        adapter = self.registry.get(provider_id)
        record = await self.store.get(profile_id, provider_id)
        if record is None:
            raise ConnectionNotFoundError(provider=provider_id)

        if not record.is_expired(self._clock(), self.refresh_margin_seconds):
            return self.vault.decrypt(record.access_token_enc)

        if not adapter.descriptor.supports_refresh or record.refresh_token_enc is None:
            raise TokenExpiredError("Token expired and cannot be refreshed", provider=provider_id)

        try:
            refreshed = await self._refresh(adapter, record)
        except (TokenRefreshError, RefreshNotSupportedError) as exc:
            # A concurrent refresh may have spent a rotating refresh token first.
            winner = await self._token_from_concurrent_refresh(record)
            if winner is not None:
                return winner
            exc.log(stage="get_valid_access_token", profile_id=profile_id)
            raise TokenExpiredError("Token refresh failed", provider=provider_id) from exc
        return refreshed

    async def refresh_connection(self, provider_id: str, profile_id: str) -> ConnectionStatus:
        adapter = self.registry.get(provider_id)
        record = await self.store.get(profile_id, provider_id)
        if record is None:
            raise ConnectionNotFoundError(provider=provider_id)
        if not adapter.descriptor.supports_refresh or record.refresh_token_enc is None:
            raise RefreshNotSupportedError(provider=provider_id)

        await self._refresh(adapter, record)
        return await self.get_connection_status(provider_id, profile_id)

    async def _refresh(self, adapter: ProviderAdapter, record: ConnectionRecord) -> str:
        refresh_token = self.vault.decrypt(record.refresh_token_enc)
        logger.info("oauth.refreshing", provider=adapter.id, profile_id=record.profile_id)

        token_set = await adapter.refresh(refresh_token)
        updated = await self.store.update_tokens(
            record.profile_id,
            record.provider,
            access_token_enc=self.vault.encrypt(token_set.access_token),
            refresh_token_enc=self.vault.encrypt_optional(token_set.refresh_token or refresh_token),
            expires_at=token_set.expires_at(self._clock()),
            scope=token_set.scope or record.scope,
            expected_refresh_token_enc=record.refresh_token_enc,
        )
        if updated is None:
            # Lost the race: the row already holds another request's tokens.
            logger.info("oauth.refresh_superseded", provider=adapter.id, profile_id=record.profile_id)
            winner = await self._token_from_concurrent_refresh(record)
            if winner is None:
                raise TokenRefreshError("Connection changed during refresh", provider=adapter.id)
            return winner

        logger.info("oauth.refreshed", provider=adapter.id, profile_id=record.profile_id)
        return token_set.access_token

    async def _token_from_concurrent_refresh(self, record: ConnectionRecord) -> str | None:
        """Access token written by another request since ``record`` was read, if still usable."""
        current = await self.store.get(record.profile_id, record.provider)
        if current is None or current.refresh_token_enc == record.refresh_token_enc:
            return None
        if current.is_expired(self._clock(), self.refresh_margin_seconds):
            return None
        return self.vault.decrypt(current.access_token_enc)

    # -- disconnect ------------------------------------------------------

    async def disconnect_provider(self, provider_id: str, profile_id: str) -> bool:
        """Ensure no connection exists. Returns whether a row was removed."""
        adapter = self.registry.get(provider_id)
        record = await self.store.get(profile_id, provider_id)
        if record is None:
            return False

        # Revocation is best effort; the local delete always happens.
        try:
            access_token = self.vault.decrypt(record.access_token_enc)
            await adapter.revoke(access_token)
        except DecryptionError:
            logger.warning("oauth.revoke_skipped", provider=provider_id, profile_id=profile_id)
        except Exception as exc:
            logger.warning(
                "oauth.revoke_failed",
                provider=provider_id,
                profile_id=profile_id,
                error=type(exc).__name__,
            )

        removed = await self.store.delete(profile_id, provider_id)
        logger.info("oauth.disconnected", provider=provider_id, profile_id=profile_id)
        return removed
