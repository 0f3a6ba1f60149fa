"""Device authorization grant.

``poll`` performs exactly one token attempt and reports its outcome;
timing, cancellation and backoff stay with the caller.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import logging
import time

from enum import Enum
from typing import TYPE_CHECKING

from ..exceptions import ErrorCode, ProviderError
from ..types import DeviceAuthSession, TokenSet
from .client import DEVICE_CODE_GRANT, require_fields
from .token_store import token_set_from_response


if TYPE_CHECKING:
    from ..types import ClientRegistration
    from .cipher import CredentialCipher
    from .client import SsoHttpClient


logger = logging.getLogger("ssoauth.auth")

DEFAULT_POLL_INTERVAL = 5
DEFAULT_DEVICE_EXPIRY = 600


class PollOutcome(str, Enum):
    """Non-terminal outcomes of a single poll."""

    PENDING = "pending"
    SLOW_DOWN = "slow_down"


class DeviceAuthorizationFlow:
    """Runs the device-code grant one step at a time.

    Parameters
    ----------
    client : SsoHttpClient
        Protocol client for the region.
    cipher : CredentialCipher
        Decrypts the client secret and encrypts issued tokens.
    default_interval : int
        Poll interval used when the provider omits one.
    default_expiry : int
        Device-code lifetime used when the provider omits one.
    """

    def __init__(
        self,
        client: SsoHttpClient,
        cipher: CredentialCipher,
        default_interval: int = DEFAULT_POLL_INTERVAL,
        default_expiry: int = DEFAULT_DEVICE_EXPIRY,
    ) -> None:
        """Initialize the device flow."""
        self.client = client
        self.cipher = cipher
        self.default_interval = default_interval
        self.default_expiry = default_expiry

    async def start(self, registration: ClientRegistration, start_url: str) -> DeviceAuthSession:
        """Request a device code for ``start_url``.

        Raises
        ------
        InvalidResponse
            If the device code, user code or verification URI is missing.
        """
        raw = await self.client.start_device_authorization(
            registration.client_id,
            self.cipher.decrypt(registration.client_secret),
            start_url,
        )
        require_fields(raw, "deviceCode", "userCode", "verificationUri", what="device authorization")

        session = DeviceAuthSession(
            device_code=raw["deviceCode"],
            user_code=raw["userCode"],
            verification_uri=raw["verificationUri"],
            verification_uri_complete=raw.get("verificationUriComplete") or raw["verificationUri"],
            expires_at=time.time() + int(raw.get("expiresIn") or self.default_expiry),
            poll_interval_seconds=int(raw.get("interval") or self.default_interval),
        )
        logger.info("Device authorization started; user code %s", session.user_code)
        return session

    async def poll(
        self,
        registration: ClientRegistration,
        device_code: str,
    ) -> PollOutcome | TokenSet:
        """Make one token attempt with the device-code grant.

        Returns
        -------
        PollOutcome or TokenSet
            ``PENDING`` or ``SLOW_DOWN`` while the user has not finished,
            otherwise the issued tokens.

        Raises
        ------
        DeviceAuthorizationExpired
            The device code expired.
        AccessDenied
            The user denied the request.
        ProviderError
            Any other provider failure.
        """
        try:
            raw = await self.client.create_token(
                registration.client_id,
                self.cipher.decrypt(registration.client_secret),
                DEVICE_CODE_GRANT,
                deviceCode=device_code,
            )
        except ProviderError as exc:
            if exc.code is ErrorCode.AUTHORIZATION_PENDING:
                return PollOutcome.PENDING
            if exc.code is ErrorCode.SLOW_DOWN:
                logger.debug("Device poll asked to slow down")
                return PollOutcome.SLOW_DOWN
            raise
        return token_set_from_response(raw, self.cipher)


class DevicePollBackoff:
    """Caller-side wait policy for device polling.

    Starts at the session interval. ``SLOW_DOWN`` at least doubles the
    wait; the session interval is the floor.

    Parameters
    ----------
    session_interval : float
        The interval issued with the device session.
    max_interval : float
        Upper bound for the wait (default 60 seconds).
    """

    def __init__(self, session_interval: float, max_interval: float = 60.0) -> None:
        """Initialize the backoff."""
        self.floor = max(float(session_interval), 1.0)
        self.max_interval = max(max_interval, self.floor)
        self.interval = self.floor

    def next_interval(self, outcome: PollOutcome | str) -> float:
        """Return the wait before the next attempt after ``outcome``."""
        if PollOutcome(outcome) is PollOutcome.SLOW_DOWN:
            self.interval = min(max(self.interval * 2, self.floor), self.max_interval)
        return self.interval
