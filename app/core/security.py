from __future__ import annotations

import structlog
from cryptography.fernet import Fernet, InvalidToken, MultiFernet

from app.core.config import Settings
from app.core.exceptions import ConfigurationError, DecryptionError

logger = structlog.get_logger(__name__)


class TokenVault:
    """Encrypts provider tokens before they are persisted.

    Each Fernet token embeds a fresh random IV, a timestamp and an HMAC, so
    encrypting the same plaintext twice yields different envelopes and any
    tampering is detected on decrypt. The first key encrypts; every configured
    key may decrypt. Rows move to the new primary key the next time their
    tokens are written (reconnect or refresh), after which old keys can go.
    """

    def __init__(self, keys: list[str]):
        if not keys:
            raise ConfigurationError("No token encryption key configured")
        try:
            self._fernet = MultiFernet([Fernet(key.encode()) for key in keys])
        except (ValueError, TypeError) as exc:
            raise ConfigurationError("Token encryption key is not a valid Fernet key") from exc

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenVault":
        return cls(settings.token_encryption_keys)

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode()

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a token string."""
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, envelope: str) -> str:
        """Decrypt an envelope produced by :meth:`encrypt`."""
        try:
            return self._fernet.decrypt(envelope.encode()).decode()
        except (InvalidToken, ValueError, TypeError) as exc:
            # Never include the envelope itself in the log line.
            logger.warning("vault.decrypt_failed")
            raise DecryptionError("Stored token could not be decrypted") from exc

    def encrypt_optional(self, plaintext: str | None) -> str | None:
        if plaintext is None:
            return None
        return self.encrypt(plaintext)
