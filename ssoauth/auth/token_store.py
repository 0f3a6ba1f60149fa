"""Current SSO token set with lazy, single-flight refresh.

Refresh is on demand rather than timer driven: callers ask for
``refresh_if_needed`` before using the token.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import asyncio
import logging
import time

from typing import TYPE_CHECKING, Any

from ..exceptions import InvalidResponse, NoRefreshToken, ProviderError, RefreshFailed
from ..types import TokenSet
from .client import REFRESH_TOKEN_GRANT


if TYPE_CHECKING:
    from ..types import ClientRegistration
    from .cipher import CredentialCipher
    from .client import SsoHttpClient


logger = logging.getLogger("ssoauth.auth")

DEFAULT_TOKEN_LIFETIME = 3600


def token_set_from_response(
    raw: dict[str, Any],
    cipher: CredentialCipher,
    previous_refresh_token: str | None = None,
) -> TokenSet:
    """Build an encrypted ``TokenSet`` from a ``/token`` response.

    Parameters
    ----------
    raw : dict
        The provider's JSON response.
    cipher : CredentialCipher
        Encrypts the token values.
    previous_refresh_token : str, optional
        Ciphertext kept when the provider does not rotate the refresh token.

    Raises
    ------
    InvalidResponse
        If the response carries no access token.
    """
    access_token = raw.get("accessToken")
    if not access_token:
        msg = "Invalid token response: missing accessToken"
        raise InvalidResponse(msg, provider="oidc")

    refresh_token = raw.get("refreshToken")
    expires_in = raw.get("expiresIn") or DEFAULT_TOKEN_LIFETIME
    return TokenSet(
        access_token=cipher.encrypt(access_token),
        refresh_token=cipher.encrypt(refresh_token) if refresh_token else previous_refresh_token,
        expires_at=time.time() + float(expires_in),
    )


class TokenStore:
    """Owns the current ``TokenSet``.

    Parameters
    ----------
    client : SsoHttpClient
        Protocol client used for the refresh grant.
    cipher : CredentialCipher
        Decrypts the stored refresh token and encrypts new tokens.
    refresh_margin_seconds : float
        Tokens expiring within this margin are treated as expired.
    tokens : TokenSet, optional
        Initial token set (e.g. loaded from persistence).
    """

    def __init__(
        self,
        client: SsoHttpClient,
        cipher: CredentialCipher,
        refresh_margin_seconds: float = 60,
        tokens: TokenSet | None = None,
    ) -> None:
        """Initialize the token store."""
        self.client = client
        self.cipher = cipher
        self.refresh_margin_seconds = refresh_margin_seconds
        self._tokens = tokens
        self._refresh_lock = asyncio.Lock()

    @property
    def tokens(self) -> TokenSet | None:
        """The current token set, if any."""
        return self._tokens

    def set(self, tokens: TokenSet | None) -> None:
        """Replace the token set wholesale."""
        self._tokens = tokens

    def clear(self) -> None:
        """Forget the current token set."""
        self._tokens = None

    def is_valid(self, now: float | None = None) -> bool:
        """Check that a token exists and outlives the safety margin."""
        if self._tokens is None:
            return False
        return not self._tokens.expires_within(self.refresh_margin_seconds, now=now)

    async def refresh(self, registration: ClientRegistration) -> TokenSet:
        """Exchange the stored refresh token for a new ``TokenSet``.

        Raises
        ------
        NoRefreshToken
            If no (readable) refresh token is stored.
        RefreshFailed
            If the provider rejects the refresh.
        """
        current = self._tokens
        refresh_token = self.cipher.decrypt(current.refresh_token if current else None)
        if not refresh_token:
            msg = "No refresh token stored; sign in again"
            raise NoRefreshToken(msg, provider="oidc")

        try:
            raw = await self.client.create_token(
                registration.client_id,
                self.cipher.decrypt(registration.client_secret),
                REFRESH_TOKEN_GRANT,
                refreshToken=refresh_token,
            )
            tokens = token_set_from_response(
                raw,
                self.cipher,
                previous_refresh_token=current.refresh_token if current else None,
            )
        except (ProviderError, InvalidResponse) as exc:
            msg = f"Token refresh failed: {exc.message}"
            raise RefreshFailed(msg, provider="oidc") from exc

        self._tokens = tokens
        logger.debug("SSO token refreshed; expires at %s", tokens.expires_at)
        return tokens

    async def refresh_if_needed(self, registration: ClientRegistration) -> TokenSet:
        """Refresh only when the token is no longer valid.

        Concurrent callers are serialised; a caller that waited on the
        lock sees the token another caller just refreshed.
        """
        async with self._refresh_lock:
            if self.is_valid():
                assert self._tokens is not None  # noqa: S101
                return self._tokens
            return await self.refresh(registration)
