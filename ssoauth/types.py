"""Data model for the SSO credential lifecycle.

Every secret-bearing field in these records holds ciphertext produced
by :class:`ssoauth.auth.cipher.CredentialCipher`. Timestamps are Unix
epoch seconds.
"""

from __future__ import annotations

import threading
import time

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field


if TYPE_CHECKING:
    from .auth.callback_server import CallbackListener


def to_iso(timestamp: float | None) -> str | None:
    """Render an epoch timestamp as an ISO-8601 UTC string."""
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


@dataclass(frozen=True)
class ClientRegistration:
    """A public OIDC client registered with the identity provider.

    Attributes
    ----------
    client_id : str
        The registered client ID.
    client_secret : str
        Ciphertext of the client secret.
    expires_at : float
        When the registration stops being usable.
    region : str
        Region the client was registered in.
    authorization_endpoint : str or None
        Authorization endpoint advertised by the provider, if any.
    """

    client_id: str
    client_secret: str
    expires_at: float
    region: str = ""
    authorization_endpoint: str | None = None

    def is_expired(self, now: float | None = None) -> bool:
        """Check whether the registration has expired."""
        return (now if now is not None else time.time()) >= self.expires_at


@dataclass(frozen=True)
class DeviceAuthSession:
    """A device authorization issued by the provider.

    Attributes
    ----------
    device_code : str
        Opaque code used when polling for the token.
    user_code : str
        Short code the user confirms in the browser.
    verification_uri : str
        Page where the user enters ``user_code``.
    verification_uri_complete : str
        Verification page with the user code pre-filled.
    expires_at : float
        When the device code stops being accepted.
    poll_interval_seconds : int
        Minimum wait between poll attempts.
    """

    device_code: str
    user_code: str
    verification_uri: str
    verification_uri_complete: str
    expires_at: float
    poll_interval_seconds: int = 5

    def is_expired(self, now: float | None = None) -> bool:
        """Check whether the device code has expired."""
        return (now if now is not None else time.time()) >= self.expires_at


@dataclass(frozen=True)
class TokenSet:
    """SSO access token and optional refresh token (both ciphertext)."""

    access_token: str
    expires_at: float
    refresh_token: str | None = None

    def expires_within(self, seconds: float, now: float | None = None) -> bool:
        """Check whether the token expires within ``seconds`` from now."""
        return (now if now is not None else time.time()) + seconds >= self.expires_at


@dataclass(frozen=True)
class RoleCredentials:
    """Temporary role credentials for one account and role (ciphertext)."""

    access_key_id: str
    secret_access_key: str
    session_token: str
    expiration: float

    def is_expired(self, now: float | None = None) -> bool:
        """Check whether the credentials have expired."""
        return (now if now is not None else time.time()) >= self.expiration


@dataclass(frozen=True)
class Account:
    """An account visible to the authenticated user."""

    id: str
    name: str
    email: str = ""


@dataclass(frozen=True)
class Role:
    """A role the user may assume in an account."""

    name: str
    account_id: str


class CallbackOutcome(str, Enum):
    """Terminal state of a callback listener wait."""

    RECEIVED = "received"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class CallbackResult:
    """Raw result captured by the callback listener."""

    outcome: CallbackOutcome
    code: str | None = None
    state: str | None = None
    error: str | None = None
    error_description: str | None = None


class DevicePollStatus(str, Enum):
    """Outcome of one device-flow poll as seen by callers."""

    PENDING = "pending"
    SLOW_DOWN = "slow_down"
    SUCCESS = "success"
    EXPIRED = "expired"
    DENIED = "denied"


@dataclass(frozen=True)
class DevicePollResult:
    """Result of :meth:`FlowOrchestrator.poll_device_flow`."""

    status: DevicePollStatus
    expires_at: float | None = None
    interval: int | None = None


@dataclass(frozen=True)
class FlowResult:
    """Summary returned by a completed authorization flow."""

    success: bool
    expires_at: float

    @property
    def expires_at_iso(self) -> str | None:
        """Expiry as an ISO-8601 string."""
        return to_iso(self.expires_at)


@dataclass
class AuthFlowState:
    """The single in-flight browser authorization.

    Owned by the orchestrator. ``release()`` is the one cleanup routine
    for every exit path; it closes the listener exactly once.
    """

    flow_id: str
    csrf_state: str
    code_verifier: str
    redirect_uri: str
    listener: CallbackListener
    authorize_url: str = ""
    _released: bool = field(default=False, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    @property
    def released(self) -> bool:
        """Whether the flow's resources have been released."""
        return self._released

    def release(self, wait: bool = True) -> bool:
        """Close the listener if not already done.

        Parameters
        ----------
        wait : bool
            Block until the port is released (see ``CallbackListener.cancel``).

        Returns
        -------
        bool
            True if this call performed the release.
        """
        with self._lock:
            if self._released:
                return False
            self._released = True
        self.listener.cancel(wait=wait)
        return True


@dataclass(frozen=True)
class SsoStatus:
    """Snapshot of the stored SSO configuration and credential state."""

    configured: bool
    authenticated: bool
    has_credentials: bool
    start_url: str | None = None
    region: str | None = None
    account_id: str | None = None
    account_name: str | None = None
    role_name: str | None = None
    token_expires_at: str | None = None
    credentials_expires_at: str | None = None
    flow_active: bool = False
    cipher: str = "platform"

    def to_dict(self) -> dict[str, Any]:
        """Return the status as a plain dictionary."""
        return dict(self.__dict__)


class SettingsRecord(BaseModel):
    """The single persisted settings record.

    Holds only ciphertext for secret-bearing fields.
    """

    start_url: str | None = None
    region: str | None = None
    client_registration: ClientRegistration | None = None
    tokens: TokenSet | None = None
    account_id: str | None = None
    account_name: str | None = None
    role_name: str | None = None
    role_credentials: RoleCredentials | None = None
    updated_at: float = Field(default_factory=time.time)

    def cleared_session(self) -> SettingsRecord:
        """Copy with tokens, selection and role credentials removed."""
        return self.model_copy(
            update={
                "tokens": None,
                "account_id": None,
                "account_name": None,
                "role_name": None,
                "role_credentials": None,
                "updated_at": time.time(),
            }
        )
