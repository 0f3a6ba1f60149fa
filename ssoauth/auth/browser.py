"""Authorization-code + PKCE grant through the system browser.

The flow is split so the orchestrator can own the in-flight state:
``prepare`` binds the listener and builds the authorization URL,
``complete`` opens the browser, waits for the redirect and exchanges
the code. ``start`` runs both and releases the listener itself.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import asyncio
import logging
import re
import secrets
import webbrowser

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Protocol
from urllib.parse import urlencode

from ..exceptions import AuthFlowCancelled, CallbackTimeout, CsrfMismatch, ProviderError
from ..types import AuthFlowState, CallbackOutcome
from .callback_server import CallbackListener
from .client import AUTHORIZATION_CODE_GRANT, normalise_error_code
from .pkce import PKCEChallenge, generate_state
from .token_store import token_set_from_response


if TYPE_CHECKING:
    from collections.abc import Callable

    from ..types import ClientRegistration, TokenSet
    from .cipher import CredentialCipher
    from .client import SsoHttpClient


logger = logging.getLogger("ssoauth.auth")

DEFAULT_CALLBACK_TIMEOUT = 300.0

_START_SUFFIX = re.compile(r"/start/?(#.*)?$")


class BrowserLauncher(Protocol):
    """Opens a URL for the user."""

    def open(self, url: str) -> object:
        """Open ``url``."""


class SystemBrowserLauncher:
    """Opens URLs with the default system browser."""

    def open(self, url: str) -> bool:
        """Open ``url`` in a new browser tab."""
        return webbrowser.open(url, new=2)


# ── Authorization endpoint strategies ───────────────────────────────


class AuthorizeEndpointStrategy(ABC):
    """Derives the provider's authorization endpoint."""

    #: Identifies the derivation rule; bump when the rule changes.
    version: str = ""

    @abstractmethod
    def resolve(self, start_url: str, region: str, registration: ClientRegistration) -> str:
        """Return the authorization endpoint URL."""


class PortalSuffixStrategy(AuthorizeEndpointStrategy):
    """Strip ``/start`` from the portal URL and append ``/oauth2/authorize``.

    ``https://d-abc123.awsapps.com/start`` becomes
    ``https://d-abc123.awsapps.com/oauth2/authorize``.
    """

    version = "portal-suffix/1"

    def resolve(self, start_url: str, region: str, registration: ClientRegistration) -> str:
        """Apply the suffix transform to ``start_url``."""
        base, replaced = _START_SUFFIX.subn("", start_url.strip())
        if not replaced:
            logger.warning("Start URL %s has no /start suffix; using it as the portal base", start_url)
        return f"{base.rstrip('/')}/oauth2/authorize"


class RegionalOidcStrategy(AuthorizeEndpointStrategy):
    """Use the regional OIDC service's ``/authorize`` endpoint."""

    version = "regional-oidc/1"

    def __init__(self, oidc_endpoint: str = "") -> None:
        """Initialize with an optional OIDC base URL override."""
        self.oidc_endpoint = oidc_endpoint

    def resolve(self, start_url: str, region: str, registration: ClientRegistration) -> str:
        """Return ``{oidc}/authorize`` for ``region``."""
        base = self.oidc_endpoint or f"https://oidc.{region}.amazonaws.com"
        return f"{base.rstrip('/')}/authorize"


class DiscoveryAuthorizeEndpoint(AuthorizeEndpointStrategy):
    """Prefer the endpoint advertised at registration, else a fallback rule."""

    def __init__(self, fallback: AuthorizeEndpointStrategy) -> None:
        """Initialize with the rule used when no metadata is available."""
        self.fallback = fallback
        self.version = f"discovery+{fallback.version}"

    def resolve(self, start_url: str, region: str, registration: ClientRegistration) -> str:
        """Return the advertised endpoint or the fallback's result."""
        derived = self.fallback.resolve(start_url, region, registration)
        advertised = registration.authorization_endpoint
        if advertised:
            if advertised.rstrip("/") != derived.rstrip("/"):
                logger.info(
                    "Provider advertises %s; %s derived %s",
                    advertised,
                    self.fallback.version,
                    derived,
                )
            return advertised
        return derived


def strategy_from_name(name: str, oidc_endpoint: str = "") -> AuthorizeEndpointStrategy:
    """Build the configured strategy, wrapped with registration discovery."""
    if name == "portal-suffix":
        return DiscoveryAuthorizeEndpoint(PortalSuffixStrategy())
    if name == "regional-oidc":
        return DiscoveryAuthorizeEndpoint(RegionalOidcStrategy(oidc_endpoint))
    msg = f"Unknown authorization endpoint strategy: {name}"
    raise ValueError(msg)


# ── Flow ────────────────────────────────────────────────────────────


class BrowserAuthorizationFlow:
    """Authorization-code grant with PKCE and CSRF state.

    Parameters
    ----------
    client : SsoHttpClient
        Protocol client for the region.
    cipher : CredentialCipher
        Decrypts the client secret and encrypts issued tokens.
    endpoint_strategy : AuthorizeEndpointStrategy, optional
        How to derive the authorization endpoint.
    scopes : list[str], optional
        Scopes requested in the authorization URL.
    callback_timeout : float
        Seconds to wait for the redirect (default 300).
    listener_factory : callable, optional
        Creates the callback listener (tests may bind elsewhere).
    """

    def __init__(
        self,
        client: SsoHttpClient,
        cipher: CredentialCipher,
        endpoint_strategy: AuthorizeEndpointStrategy | None = None,
        scopes: list[str] | None = None,
        callback_timeout: float = DEFAULT_CALLBACK_TIMEOUT,
        listener_factory: Callable[[], CallbackListener] = CallbackListener,
    ) -> None:
        """Initialize the browser flow."""
        self.client = client
        self.cipher = cipher
        self.endpoint_strategy = endpoint_strategy or DiscoveryAuthorizeEndpoint(
            PortalSuffixStrategy()
        )
        self.scopes = scopes or ["sso:account:access"]
        self.callback_timeout = callback_timeout
        self.listener_factory = listener_factory

    def build_authorize_url(
        self,
        registration: ClientRegistration,
        start_url: str,
        redirect_uri: str,
        state: str,
        pkce: PKCEChallenge,
    ) -> str:
        """Build the full authorization URL."""
        endpoint = self.endpoint_strategy.resolve(start_url, self.client.region, registration)
        params = {
            "client_id": registration.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.scopes),
            "state": state,
            "code_challenge": pkce.challenge,
            "code_challenge_method": pkce.method,
        }
        return f"{endpoint}?{urlencode(params)}"

    def prepare(self, registration: ClientRegistration, start_url: str) -> AuthFlowState:
        """Generate PKCE and state, bind the listener and build the URL.

        The caller owns the returned state and must ``release()`` it.
        """
        pkce = PKCEChallenge.generate()
        csrf_state = generate_state()
        listener = self.listener_factory()
        redirect_uri = listener.start()
        try:
            authorize_url = self.build_authorize_url(
                registration, start_url, redirect_uri, csrf_state, pkce
            )
        except Exception:
            listener.cancel()
            raise
        return AuthFlowState(
            flow_id=secrets.token_urlsafe(8),
            csrf_state=csrf_state,
            code_verifier=pkce.verifier,
            redirect_uri=redirect_uri,
            listener=listener,
            authorize_url=authorize_url,
        )

    async def complete(
        self,
        registration: ClientRegistration,
        flow: AuthFlowState,
        browser_launcher: BrowserLauncher,
    ) -> TokenSet:
        """Open the browser, wait for the redirect and exchange the code.

        Raises
        ------
        CallbackTimeout
            No callback within ``callback_timeout``.
        AuthFlowCancelled
            The flow was cancelled while waiting.
        ProviderError
            The callback carried an ``error``.
        CsrfMismatch
            The callback's state differs from the flow's; no exchange is made.
        """
        logger.debug("Auth flow %s: opening %s", flow.flow_id, flow.authorize_url)
        browser_launcher.open(flow.authorize_url)

        result = await asyncio.to_thread(flow.listener.wait_for_callback, self.callback_timeout)

        if result.outcome is CallbackOutcome.CANCELLED:
            msg = "Authentication flow was cancelled"
            raise AuthFlowCancelled(msg, flow_id=flow.flow_id)
        if result.outcome is CallbackOutcome.TIMED_OUT:
            msg = f"No sign-in callback within {self.callback_timeout}s"
            raise CallbackTimeout(msg, timeout=self.callback_timeout, flow_id=flow.flow_id)

        if result.error:
            description = result.error_description or result.error
            msg = f"Provider returned error: {description}"
            raise ProviderError(
                msg,
                code=normalise_error_code(result.error),
                description=description,
                provider="oidc",
                flow_id=flow.flow_id,
                error=result.error,
            )

        if not result.state or not secrets.compare_digest(
            result.state.encode("utf-8"), flow.csrf_state.encode("utf-8")
        ):
            msg = "State parameter mismatch (possible CSRF attack)"
            raise CsrfMismatch(msg, provider="oidc", flow_id=flow.flow_id)

        assert result.code is not None  # noqa: S101
        raw = await self.client.create_token(
            registration.client_id,
            self.cipher.decrypt(registration.client_secret),
            AUTHORIZATION_CODE_GRANT,
            code=result.code,
            redirectUri=flow.redirect_uri,
            codeVerifier=flow.code_verifier,
        )
        tokens = token_set_from_response(raw, self.cipher)
        logger.info("Auth flow %s completed", flow.flow_id)
        return tokens

    async def start(
        self,
        registration: ClientRegistration,
        start_url: str,
        browser_launcher: BrowserLauncher | None = None,
    ) -> TokenSet:
        """Run the whole grant, releasing the listener on every exit path."""
        flow = self.prepare(registration, start_url)
        try:
            return await self.complete(registration, flow, browser_launcher or SystemBrowserLauncher())
        finally:
            await asyncio.to_thread(flow.release)
