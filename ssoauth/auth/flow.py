"""SSO authentication flow orchestrator.

``FlowOrchestrator`` composes client registration, the two authorization
grants, token storage and the directory calls. It owns the only mutable
shared state: the in-flight browser flow and the current token set. At
most one browser flow exists at a time; starting another one, or calling
``cancel_active_flow``, releases the previous flow's listener first.
"""

# pylint: disable=logging-too-many-args,too-many-instance-attributes

from __future__ import annotations

import asyncio
import logging
import threading
import time

from typing import TYPE_CHECKING, Any

from ..config import SsoSettings
from ..exceptions import (
    AccessDenied,
    AuthFlowCancelled,
    ConfigurationError,
    DeviceAuthorizationExpired,
    NotAuthenticated,
)
from ..storage import get_settings_store
from ..types import (
    DevicePollResult,
    DevicePollStatus,
    FlowResult,
    SsoStatus,
    to_iso,
)
from .browser import BrowserAuthorizationFlow, SystemBrowserLauncher, strategy_from_name
from .callback_server import CallbackListener
from .cipher import CredentialCipher, KeyringSecureStorage
from .client import SsoHttpClient
from .device import DeviceAuthorizationFlow, PollOutcome
from .directory import DirectoryClient
from .registry import OidcClientRegistry
from .token_store import TokenStore


if TYPE_CHECKING:
    from collections.abc import Callable

    from ..config import Settings
    from ..storage import SettingsStore
    from ..types import (
        Account,
        AuthFlowState,
        ClientRegistration,
        DeviceAuthSession,
        Role,
        RoleCredentials,
        SettingsRecord,
        TokenSet,
    )
    from .browser import BrowserLauncher


logger = logging.getLogger("ssoauth.auth")


class FlowOrchestrator:
    """Top-level façade for the SSO credential lifecycle.

    Parameters
    ----------
    store : SettingsStore
        Persistence for the settings record.
    cipher : CredentialCipher
        At-rest encryption for every secret field.
    settings : SsoSettings, optional
        Flow settings (timeouts, scopes, endpoints).
    client_factory : callable, optional
        Builds the protocol client for a region.
    browser_launcher : BrowserLauncher, optional
        Default launcher for browser flows (system browser).
    listener_factory : callable, optional
        Builds the callback listener for browser flows.
    """

    def __init__(
        self,
        store: SettingsStore,
        cipher: CredentialCipher,
        settings: SsoSettings | None = None,
        client_factory: Callable[[str], SsoHttpClient] | None = None,
        browser_launcher: BrowserLauncher | None = None,
        listener_factory: Callable[[], CallbackListener] = CallbackListener,
    ) -> None:
        """Initialize the orchestrator."""
        self.store = store
        self.cipher = cipher
        self.settings = settings or SsoSettings()
        self.browser_launcher = browser_launcher or SystemBrowserLauncher()
        self.listener_factory = listener_factory
        self._client_factory = client_factory or self._default_client

        self._flow_lock = threading.Lock()
        self._active_flow: AuthFlowState | None = None
        self._device_sessions: dict[str, DeviceAuthSession] = {}

        self._record_lock = asyncio.Lock()
        self._client: SsoHttpClient | None = None
        self._token_store: TokenStore | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> FlowOrchestrator:
        """Build an orchestrator from loaded settings.

        Uses the configured settings store and a keyring-backed cipher.
        """
        store = get_settings_store(settings.storage.backend, path=settings.storage.path)
        cipher = CredentialCipher(KeyringSecureStorage(settings.storage.keyring_service))
        return cls(store, cipher, settings=settings.sso)

    def _default_client(self, region: str) -> SsoHttpClient:
        return SsoHttpClient(
            region,
            oidc_endpoint=self.settings.oidc_endpoint,
            portal_endpoint=self.settings.portal_endpoint,
            timeout=self.settings.http_timeout_seconds,
        )

    @property
    def flow_active(self) -> bool:
        """Whether a browser flow is in flight."""
        with self._flow_lock:
            return self._active_flow is not None

    # ── Shared state helpers ────────────────────────────────────────

    async def _service(self, region: str | None) -> tuple[SsoHttpClient, TokenStore]:
        """Return the client and token store for ``region``, rebuilding on change."""
        if not region:
            msg = "SSO region is not configured"
            raise ConfigurationError(msg)
        if self._client is None or self._token_store is None or self._client.region != region:
            previous = self._client
            self._client = self._client_factory(region)
            self._token_store = TokenStore(
                self._client,
                self.cipher,
                refresh_margin_seconds=self.settings.refresh_margin_seconds,
            )
            if previous is not None:
                await previous.aclose()
        return self._client, self._token_store

    async def _update(self, **changes: Any) -> SettingsRecord:
        """Load, patch and save the record as one step."""
        async with self._record_lock:
            record = await self.store.load()
            record = record.model_copy(update={**changes, "updated_at": time.time()})
            await self.store.save(record)
            return record

    @staticmethod
    def _sync_tokens(token_store: TokenStore, record: SettingsRecord) -> None:
        """Adopt the persisted token set unless memory already holds a newer one."""
        current = token_store.tokens
        if record.tokens is None:
            token_store.clear()
        elif current is None or record.tokens.expires_at > current.expires_at:
            token_store.set(record.tokens)

    async def _store_tokens(self, token_store: TokenStore, tokens: TokenSet) -> None:
        token_store.set(tokens)
        await self._update(tokens=tokens)

    async def _ensure_registration(
        self,
        start_url: str,
        region: str,
    ) -> tuple[SsoHttpClient, TokenStore, ClientRegistration]:
        """Reuse the stored client registration or register a new one."""
        if not start_url:
            msg = "SSO start URL is not configured"
            raise ConfigurationError(msg)
        client, token_store = await self._service(region)
        registry = OidcClientRegistry(
            client,
            self.cipher,
            client_name=self.settings.client_name,
            scopes=self.settings.scope_list,
        )
        async with self._record_lock:
            record = await self.store.load()
            cached = record.client_registration if record.region == region else None
            registration = await registry.get_or_register(cached)
            if (
                registration is not cached
                or record.start_url != start_url
                or record.region != region
            ):
                record = record.model_copy(
                    update={
                        "client_registration": registration,
                        "start_url": start_url,
                        "region": region,
                        "updated_at": time.time(),
                    }
                )
                await self.store.save(record)
        return client, token_store, registration

    async def _valid_tokens(self) -> tuple[SsoHttpClient, TokenSet, SettingsRecord]:
        """Current token set, refreshed first if it is about to expire."""
        record = await self.store.load()
        if record.tokens is None or not record.region:
            msg = "Not authenticated"
            raise NotAuthenticated(msg)
        client, token_store = await self._service(record.region)
        self._sync_tokens(token_store, record)

        if token_store.is_valid():
            assert token_store.tokens is not None  # noqa: S101
            return client, token_store.tokens, record

        if record.client_registration is None:
            msg = "SSO session expired and no client is registered; sign in again"
            raise NotAuthenticated(msg)
        tokens = await token_store.refresh_if_needed(record.client_registration)
        if tokens is not record.tokens:
            record = await self._update(tokens=tokens)
        return client, tokens, record

    # ── Flow slot ───────────────────────────────────────────────────

    def _activate(self, flow: AuthFlowState) -> None:
        with self._flow_lock:
            previous = self._active_flow
            self._active_flow = flow
        if previous is not None and previous.release(wait=False):
            logger.info("Auth flow %s superseded by %s", previous.flow_id, flow.flow_id)

    async def _finish_flow(self, flow: AuthFlowState) -> None:
        """Single cleanup routine for every browser-flow exit path."""
        with self._flow_lock:
            if self._active_flow is flow:
                self._active_flow = None
        await asyncio.to_thread(flow.release)

    def _detach_flow(self) -> AuthFlowState | None:
        with self._flow_lock:
            flow = self._active_flow
            self._active_flow = None
            self._device_sessions.clear()
        return flow

    def cancel_active_flow(self) -> None:
        """Cancel the in-flight flow, if any. Idempotent.

        Does not block: the waiting flow is woken at once and its listener
        is shut down on a background thread.
        """
        flow = self._detach_flow()
        if flow is not None and flow.release(wait=False):
            logger.info("Auth flow %s cancelled", flow.flow_id)

    async def _cancel_and_wait(self) -> None:
        """Cancel the in-flight flow and wait until its port is released."""
        flow = self._detach_flow()
        if flow is None:
            return
        if flow.release(wait=False):
            logger.info("Auth flow %s cancelled", flow.flow_id)
        await asyncio.to_thread(flow.listener.cancel)

    # ── Device flow ─────────────────────────────────────────────────

    def _device_flow(self, client: SsoHttpClient) -> DeviceAuthorizationFlow:
        return DeviceAuthorizationFlow(
            client,
            self.cipher,
            default_interval=self.settings.default_poll_interval_seconds,
            default_expiry=self.settings.default_device_expiry_seconds,
        )

    async def start_device_flow(self, start_url: str, region: str) -> DeviceAuthSession:
        """Begin a device-code sign-in.

        Returns
        -------
        DeviceAuthSession
            Codes and URLs to show the user; poll with ``poll_device_flow``.
        """
        await self._cancel_and_wait()
        client, _, registration = await self._ensure_registration(start_url, region)
        session = await self._device_flow(client).start(registration, start_url)
        with self._flow_lock:
            self._device_sessions[session.device_code] = session
        return session

    def _forget_device_session(self, device_code: str) -> None:
        with self._flow_lock:
            self._device_sessions.pop(device_code, None)

    async def poll_device_flow(self, device_code: str) -> DevicePollResult:
        """Make one completion check for a device sign-in.

        Returns
        -------
        DevicePollResult
            ``pending`` / ``slow_down`` while the user is still signing in,
            ``success`` once tokens are stored, ``expired`` or ``denied``
            when the sign-in must be restarted.
        """
        with self._flow_lock:
            session = self._device_sessions.get(device_code)
        if session is None:
            msg = "No device sign-in is in progress for this code"
            raise NotAuthenticated(msg)
        if session.is_expired():
            self._forget_device_session(device_code)
            return DevicePollResult(DevicePollStatus.EXPIRED)

        record = await self.store.load()
        if record.client_registration is None:
            msg = "SSO client not registered"
            raise NotAuthenticated(msg)
        client, token_store = await self._service(record.region)

        try:
            outcome = await self._device_flow(client).poll(record.client_registration, device_code)
        except DeviceAuthorizationExpired:
            self._forget_device_session(device_code)
            return DevicePollResult(DevicePollStatus.EXPIRED)
        except AccessDenied:
            self._forget_device_session(device_code)
            return DevicePollResult(DevicePollStatus.DENIED)

        if outcome is PollOutcome.PENDING:
            return DevicePollResult(DevicePollStatus.PENDING, interval=session.poll_interval_seconds)
        if outcome is PollOutcome.SLOW_DOWN:
            return DevicePollResult(
                DevicePollStatus.SLOW_DOWN, interval=session.poll_interval_seconds
            )

        with self._flow_lock:
            still_active = self._device_sessions.pop(device_code, None) is not None
        if not still_active:
            msg = "Device sign-in was cancelled"
            raise AuthFlowCancelled(msg)
        await self._store_tokens(token_store, outcome)
        logger.info("Device sign-in completed")
        return DevicePollResult(DevicePollStatus.SUCCESS, expires_at=outcome.expires_at)

    # ── Browser flow ────────────────────────────────────────────────

    async def start_browser_flow(
        self,
        start_url: str,
        region: str,
        browser_launcher: BrowserLauncher | None = None,
    ) -> FlowResult:
        """Run an authorization-code + PKCE sign-in through the browser.

        Suspends until the redirect arrives, the wait times out, or the
        flow is cancelled. The listener is closed on every exit path.

        Raises
        ------
        CallbackTimeout, AuthFlowCancelled, CsrfMismatch, ProviderError
            Terminal outcomes of the flow.
        """
        await self._cancel_and_wait()
        client, token_store, registration = await self._ensure_registration(start_url, region)
        browser = BrowserAuthorizationFlow(
            client,
            self.cipher,
            endpoint_strategy=strategy_from_name(
                self.settings.authorize_endpoint_strategy, self.settings.oidc_endpoint
            ),
            scopes=self.settings.scope_list,
            callback_timeout=self.settings.auth_timeout_seconds,
            listener_factory=self.listener_factory,
        )

        flow = browser.prepare(registration, start_url)
        self._activate(flow)
        logger.info("Auth flow %s waiting on %s", flow.flow_id, flow.redirect_uri)
        try:
            tokens = await browser.complete(
                registration, flow, browser_launcher or self.browser_launcher
            )
            if flow.released:
                msg = "Authentication flow was superseded"
                raise AuthFlowCancelled(msg, flow_id=flow.flow_id)
            await self._store_tokens(token_store, tokens)
            return FlowResult(success=True, expires_at=tokens.expires_at)
        finally:
            await self._finish_flow(flow)

    # ── Directory ───────────────────────────────────────────────────

    async def list_accounts(self) -> list[Account]:
        """List accounts available to the signed-in user."""
        client, tokens, _ = await self._valid_tokens()
        return await DirectoryClient(client, self.cipher).list_accounts(tokens)

    async def list_roles(self, account_id: str) -> list[Role]:
        """List roles the user may assume in ``account_id``."""
        client, tokens, _ = await self._valid_tokens()
        return await DirectoryClient(client, self.cipher).list_roles(tokens, account_id)

    async def select_account_role(
        self,
        account_id: str,
        role_name: str,
        account_name: str | None = None,
    ) -> RoleCredentials:
        """Store the account/role selection and fetch its credentials."""
        client, tokens, _ = await self._valid_tokens()
        credentials = await DirectoryClient(client, self.cipher).get_role_credentials(
            tokens, account_id, role_name
        )
        await self._update(
            account_id=account_id,
            account_name=account_name,
            role_name=role_name,
            role_credentials=credentials,
        )
        logger.info("Selected role %s in account %s", role_name, account_id)
        return credentials

    async def refresh_credentials(self) -> RoleCredentials:
        """Re-issue role credentials for the stored selection.

        Refreshes the SSO token first when it is about to expire.

        Raises
        ------
        NotAuthenticated
            No token, or no account/role selected.
        NoRefreshToken, RefreshFailed
            The SSO session cannot be renewed.
        """
        client, tokens, record = await self._valid_tokens()
        if not record.account_id or not record.role_name:
            msg = "No account/role selected"
            raise NotAuthenticated(msg)
        credentials = await DirectoryClient(client, self.cipher).get_role_credentials(
            tokens, record.account_id, record.role_name
        )
        await self._update(role_credentials=credentials)
        return credentials

    async def credential_environment(self) -> dict[str, str]:
        """Environment variables exposing the selected role's credentials.

        Expired credentials are re-issued first.
        """
        record = await self.store.load()
        credentials = record.role_credentials
        if credentials is None:
            msg = "No role credentials stored; select an account and role"
            raise NotAuthenticated(msg)
        if credentials.is_expired():
            credentials = await self.refresh_credentials()

        env = {
            "AWS_ACCESS_KEY_ID": self.cipher.decrypt(credentials.access_key_id),
            "AWS_SECRET_ACCESS_KEY": self.cipher.decrypt(credentials.secret_access_key),
            "AWS_SESSION_TOKEN": self.cipher.decrypt(credentials.session_token),
        }
        if not all(env.values()):
            msg = "Stored role credentials cannot be read; select the role again"
            raise NotAuthenticated(msg)
        if record.region:
            env["AWS_REGION"] = record.region
        return env

    # ── Session management ──────────────────────────────────────────

    async def logout(self) -> None:
        """Forget tokens, selection and role credentials.

        The client registration and portal configuration are kept.
        """
        await self._cancel_and_wait()
        if self._token_store is not None:
            self._token_store.clear()
        async with self._record_lock:
            record = await self.store.load()
            await self.store.save(record.cleared_session())
        logger.info("Signed out")

    async def get_status(self) -> SsoStatus:
        """Summarise configuration, sign-in and credential state."""
        record = await self.store.load()
        now = time.time()
        token_valid = record.tokens is not None and record.tokens.expires_at > now
        creds_valid = (
            record.role_credentials is not None and not record.role_credentials.is_expired(now)
        )
        return SsoStatus(
            configured=bool(record.start_url and record.region),
            authenticated=token_valid,
            has_credentials=creds_valid,
            start_url=record.start_url,
            region=record.region,
            account_id=record.account_id,
            account_name=record.account_name,
            role_name=record.role_name,
            token_expires_at=to_iso(record.tokens.expires_at) if record.tokens else None,
            credentials_expires_at=(
                to_iso(record.role_credentials.expiration) if record.role_credentials else None
            ),
            flow_active=self.flow_active,
            cipher="fallback" if self.cipher.degraded else "platform",
        )

    async def aclose(self) -> None:
        """Cancel any flow and close the HTTP client."""
        await self._cancel_and_wait()
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            self._token_store = None
