from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone
from typing import Callable

import structlog
from cachetools import TTLCache
from jose import JWTError, jwt

from app.core.config import Settings
from app.core.exceptions import ConfigurationError, ExpiredStateError, InvalidStateError
from app.services.oauth.types import IssuedState, VerifiedState, utc_now

logger = structlog.get_logger(__name__)

STATE_TOKEN_TYPE = "oauth_state"
STATE_ALGORITHM = "HS256"


class StateTokenCodec:
    """Signed, time-boxed OAuth ``state`` values.

    A state token binds one authorization round trip to a profile and a
    provider. It is an HS256 JWT so the callback can be validated without a
    server-side session row; the nonce makes every token unique, and verified
    nonces are remembered for the TTL so the same token cannot be replayed.
    """

    def __init__(
        self,
        secret: str,
        *,
        ttl_seconds: int = 600,
        clock: Callable[[], datetime] = utc_now,
        replay_cache_size: int = 10_000,
    ):
        if not secret:
            raise ConfigurationError("State signing secret is not configured")
        self._secret = secret
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._used_nonces: TTLCache = TTLCache(maxsize=replay_cache_size, ttl=ttl_seconds)

    @classmethod
    def from_settings(cls, settings: Settings) -> "StateTokenCodec":
        return cls(settings.state_signing_secret or "", ttl_seconds=settings.state_ttl_seconds)

    def issue(
        self,
        profile_id: str,
        provider: str,
        target_platform: str | None = None,
    ) -> IssuedState:
        now = self._clock()
        nonce = secrets.token_urlsafe(24)
        claims = {
            "sub": profile_id,
            "provider": provider,
            "nonce": nonce,
            "iat": int(now.timestamp()),
            "type": STATE_TOKEN_TYPE,
        }
        if target_platform:
            claims["target_platform"] = target_platform

        token = jwt.encode(claims, self._secret, algorithm=STATE_ALGORITHM)
        issued_at = datetime.fromtimestamp(claims["iat"], tz=timezone.utc)
        return IssuedState(
            token=token,
            nonce=nonce,
            issued_at=issued_at,
            expires_at=issued_at + timedelta(seconds=self.ttl_seconds),
        )

    def verify(self, token: str, expected_provider: str) -> VerifiedState:
        if not token:
            raise InvalidStateError("Missing state token", provider=expected_provider)

        try:
            # Expiry is checked below against the injected clock.
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[STATE_ALGORITHM],
                options={"verify_exp": False, "verify_iat": False, "verify_nbf": False},
            )
        except JWTError as exc:
            raise InvalidStateError("State signature invalid", provider=expected_provider) from exc

        if claims.get("type") != STATE_TOKEN_TYPE:
            raise InvalidStateError("Wrong state token type", provider=expected_provider)

        profile_id = str(claims.get("sub") or "").strip()
        nonce = str(claims.get("nonce") or "")
        issued_ts = claims.get("iat")
        if not profile_id or not nonce or not isinstance(issued_ts, int):
            raise InvalidStateError("State token missing claims", provider=expected_provider)

        if claims.get("provider") != expected_provider:
            raise InvalidStateError("State issued for another provider", provider=expected_provider)

        issued_at = datetime.fromtimestamp(issued_ts, tz=timezone.utc)
        age = (self._clock() - issued_at).total_seconds()
        if age > self.ttl_seconds:
            raise ExpiredStateError("State token expired", provider=expected_provider)

        if nonce in self._used_nonces:
            logger.warning("oauth.state_replayed", provider=expected_provider)
            raise InvalidStateError("State token already used", provider=expected_provider)
        self._used_nonces[nonce] = True

        return VerifiedState(
            profile_id=profile_id,
            provider=expected_provider,
            nonce=nonce,
            issued_at=issued_at,
            target_platform=claims.get("target_platform"),
        )
