"""ssoauth exception hierarchy.

All ssoauth-specific exceptions inherit from SsoAuthException, enabling
catch-all handling while supporting specific error types.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class SsoAuthException(Exception):
    """Base exception for all ssoauth errors."""

    def __init__(self, message: str, **context: Any) -> None:
        """Initialize ssoauth exception.

        Parameters
        ----------
        message : str
            Human-readable error message.
        **context : Any
            Additional context (region, flow_id, account_id, etc.).
        """
        super().__init__(message)
        self.message = message
        self.context = context

    def __str__(self) -> str:
        """Format exception with context."""
        ctx = ", ".join(f"{k}={v!r}" for k, v in self.context.items() if v is not None)
        if ctx:
            return f"{self.message} ({ctx})"
        return self.message


class ConfigurationError(SsoAuthException):
    """Required configuration (start URL, region) is missing or invalid."""


class AuthenticationError(SsoAuthException):
    """Base exception for all authentication failures.

    Raised when an authentication operation fails, including
    client registration, authorization grants, and token refresh.
    """

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        flow_id: str | None = None,
        **context: Any,
    ) -> None:
        """Initialize authentication error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        provider : str, optional
            The identity provider endpoint family (e.g. ``"oidc"``, ``"portal"``).
        flow_id : str, optional
            The unique identifier of the auth flow that failed.
        **context : Any
            Additional context.
        """
        super().__init__(message, provider=provider, flow_id=flow_id, **context)
        self.provider = provider
        self.flow_id = flow_id


class RegistrationError(AuthenticationError):
    """The provider's client registration response was incomplete."""


class InvalidResponse(AuthenticationError):
    """A provider response is missing required fields.

    Security-sensitive fields are never defaulted; a partially
    populated response is rejected as a whole.
    """


class ErrorCode(str, Enum):
    """Stable tags for provider error responses."""

    AUTHORIZATION_PENDING = "authorization_pending"
    SLOW_DOWN = "slow_down"
    EXPIRED_TOKEN = "expired_token"
    ACCESS_DENIED = "access_denied"
    INVALID_GRANT = "invalid_grant"
    INVALID_CLIENT = "invalid_client"
    UNAUTHORIZED = "unauthorized"
    TRANSPORT = "transport"
    UNKNOWN = "unknown"


class ProviderError(AuthenticationError):
    """The identity provider rejected a request.

    Parameters
    ----------
    message : str
        Human-readable error message.
    code : ErrorCode
        Normalised error tag.
    description : str, optional
        The provider's own description, if any.
    status_code : int, optional
        HTTP status of the failed call.
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.UNKNOWN,
        description: str | None = None,
        status_code: int | None = None,
        **context: Any,
    ) -> None:
        """Initialize provider error."""
        super().__init__(message, code=code.value, status_code=status_code, **context)
        self.code = code
        self.description = description
        self.status_code = status_code


class DeviceAuthorizationExpired(ProviderError):
    """The device code expired before the user approved it."""


class AccessDenied(ProviderError):
    """The user (or the provider) denied the authorization request."""


class CsrfMismatch(AuthenticationError):
    """The callback's ``state`` did not match the active flow.

    Raised before any token exchange is attempted.
    """


class AuthFlowCancelled(AuthenticationError):
    """Authentication flow was cancelled.

    Raised when the flow is explicitly cancelled or superseded
    by a newer flow.
    """


class CallbackTimeout(AuthenticationError):
    """No browser callback arrived within the configured wait window."""

    def __init__(
        self,
        message: str,
        timeout: float,
        provider: str | None = None,
        flow_id: str | None = None,
        **context: Any,
    ) -> None:
        """Initialize timeout error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        timeout : float
            The timeout value in seconds.
        provider : str, optional
            The identity provider endpoint family.
        flow_id : str, optional
            The unique identifier of the auth flow.
        **context : Any
            Additional context.
        """
        super().__init__(message, provider=provider, flow_id=flow_id, timeout=timeout, **context)
        self.timeout = timeout


class TokenError(AuthenticationError):
    """Token operation failed."""


class NoRefreshToken(TokenError):
    """No refresh token is stored; full re-authentication is required."""


class RefreshFailed(TokenError):
    """The provider rejected the refresh token."""


class NotAuthenticated(AuthenticationError):
    """An operation needs a token or account/role selection that is absent."""
