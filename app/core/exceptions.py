"""OAuth error taxonomy and its HTTP mapping.

Every failure the connection engine can raise carries a stable, symbolic
``code`` (what the frontend and the callback redirect see) and a safe
``user_message``. The technical ``message`` is for logs only and never contains
token material or raw provider response bodies.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

import structlog
from fastapi import Request
from fastapi.responses import JSONResponse

logger = structlog.get_logger(__name__)


class ErrorCode(str, Enum):
    # Configuration
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    UNKNOWN_PROVIDER = "UNKNOWN_PROVIDER"

    # Caller
    NOT_AUTHENTICATED = "NOT_AUTHENTICATED"

    # Authorization flow
    ACCESS_DENIED = "ACCESS_DENIED"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    INVALID_STATE = "INVALID_STATE"
    STATE_EXPIRED = "STATE_EXPIRED"
    MISSING_CODE = "MISSING_CODE"
    UNSUPPORTED_TARGET_PLATFORM = "UNSUPPORTED_TARGET_PLATFORM"

    # Tokens
    TOKEN_EXCHANGE_FAILED = "TOKEN_EXCHANGE_FAILED"
    TOKEN_REFRESH_FAILED = "TOKEN_REFRESH_FAILED"
    REFRESH_NOT_SUPPORTED = "REFRESH_NOT_SUPPORTED"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    IDENTITY_FETCH_FAILED = "IDENTITY_FETCH_FAILED"

    # Connections
    CONNECTION_NOT_FOUND = "CONNECTION_NOT_FOUND"
    CONNECTION_UNUSABLE = "CONNECTION_UNUSABLE"

    INTERNAL_ERROR = "INTERNAL_ERROR"


class OAuthError(Exception):
    """Base class for connection engine errors."""

    http_status: int = 500
    code: ErrorCode = ErrorCode.INTERNAL_ERROR
    user_message: str = "An unexpected error occurred. Please try again."

    def __init__(
        self,
        message: str | None = None,
        *,
        provider: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message or self.user_message
        self.provider = provider
        self.details = details or {}
        super().__init__(self.message)

    @property
    def reconnect_required(self) -> bool:
        return False

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.user_message,
            "code": self.code.value,
            "provider": self.provider,
            "details": self.details,
        }

    def log(self, **context: Any) -> None:
        log_data = {
            "error_code": self.code.value,
            "message": self.message,
            "status_code": self.http_status,
            "provider": self.provider,
            **context,
        }
        if self.http_status >= 500:
            logger.error("oauth.error", **log_data)
        else:
            logger.warning("oauth.error", **log_data)


class ConfigurationError(OAuthError):
    """Missing or invalid secrets, credentials, or registry setup."""

    http_status = 500
    code = ErrorCode.CONFIGURATION_ERROR
    user_message = "Service configuration error. Please contact support."


class UnknownProviderError(OAuthError):
    http_status = 400
    code = ErrorCode.UNKNOWN_PROVIDER
    user_message = "The requested service is not supported."

    def __init__(self, provider: str, supported: list[str] | None = None):
        super().__init__(
            f"Unknown OAuth provider: {provider!r}",
            provider=provider,
            details={"supportedProviders": list(supported or [])},
        )


class NotAuthenticatedError(OAuthError):
    http_status = 401
    code = ErrorCode.NOT_AUTHENTICATED
    user_message = "Please log in to continue."


class InvalidStateError(OAuthError):
    http_status = 400
    code = ErrorCode.INVALID_STATE
    user_message = "Authentication session expired or invalid. Please try again."


class ExpiredStateError(InvalidStateError):
    code = ErrorCode.STATE_EXPIRED
    user_message = "Authentication took too long. Please try again."


class MissingCodeError(OAuthError):
    http_status = 400
    code = ErrorCode.MISSING_CODE
    user_message = "Authentication was not completed. Please try again."


class UnsupportedTargetPlatformError(OAuthError):
    http_status = 400
    code = ErrorCode.UNSUPPORTED_TARGET_PLATFORM
    user_message = "The requested platform is not available for this service."


class TokenExchangeError(OAuthError):
    """The provider rejected the authorization code or could not be reached."""

    http_status = 502
    code = ErrorCode.TOKEN_EXCHANGE_FAILED
    user_message = "Failed to complete authentication. Please try again."


class TokenRefreshError(OAuthError):
    http_status = 502
    code = ErrorCode.TOKEN_REFRESH_FAILED
    user_message = "Session refresh failed. Please reconnect your account."


class IdentityFetchError(OAuthError):
    http_status = 502
    code = ErrorCode.IDENTITY_FETCH_FAILED
    user_message = "Could not retrieve your account information. Please try again."


class RefreshNotSupportedError(OAuthError):
    http_status = 409
    code = ErrorCode.REFRESH_NOT_SUPPORTED
    user_message = "This service does not support session refresh. Please reconnect your account."

    @property
    def reconnect_required(self) -> bool:
        return True


class TokenExpiredError(OAuthError):
    """Access token is expired and cannot be refreshed: the user must reconnect."""

    http_status = 401
    code = ErrorCode.TOKEN_EXPIRED
    user_message = "Your session has expired. Please reconnect your account."

    @property
    def reconnect_required(self) -> bool:
        return True


class DecryptionError(OAuthError):
    """Stored token material cannot be decrypted (key mismatch or corruption)."""

    http_status = 409
    code = ErrorCode.CONNECTION_UNUSABLE
    user_message = "This connection can no longer be used. Please disconnect and reconnect your account."

    @property
    def reconnect_required(self) -> bool:
        return True


class ConnectionNotFoundError(OAuthError):
    http_status = 404
    code = ErrorCode.CONNECTION_NOT_FOUND
    user_message = "Account is not connected. Please connect first."


def error_code_for(exc: BaseException) -> ErrorCode:
    if isinstance(exc, OAuthError):
        return exc.code
    return ErrorCode.INTERNAL_ERROR


async def oauth_error_handler(request: Request, exc: OAuthError) -> JSONResponse:
    exc.log(path=request.url.path, method=request.method)
    content = exc.to_dict()
    if exc.reconnect_required:
        content["reconnectRequired"] = True
    return JSONResponse(status_code=exc.http_status, content=content)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "unhandled_exception",
        path=request.url.path,
        method=request.method,
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": OAuthError.user_message,
            "code": ErrorCode.INTERNAL_ERROR.value,
            "provider": None,
            "details": {},
        },
    )


def register_exception_handlers(app) -> None:
    app.add_exception_handler(OAuthError, oauth_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
