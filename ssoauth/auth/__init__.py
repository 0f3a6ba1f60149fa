"""SSO authentication engine for ssoauth.

Provides OIDC client registration, the device-code and browser/PKCE
grants, the loopback callback listener, token storage and refresh,
directory calls and flow orchestration.
"""

from __future__ import annotations

from .browser import (
    BrowserAuthorizationFlow,
    DiscoveryAuthorizeEndpoint,
    PortalSuffixStrategy,
    RegionalOidcStrategy,
    SystemBrowserLauncher,
)
from .callback_server import CallbackListener
from .cipher import CredentialCipher, KeyringSecureStorage, SecureStorage
from .client import SsoHttpClient
from .device import DeviceAuthorizationFlow, DevicePollBackoff, PollOutcome
from .directory import DirectoryClient
from .flow import FlowOrchestrator
from .pkce import PKCEChallenge
from .registry import OidcClientRegistry
from .token_store import TokenStore


__all__ = [
    "BrowserAuthorizationFlow",
    "CallbackListener",
    "CredentialCipher",
    "DeviceAuthorizationFlow",
    "DevicePollBackoff",
    "DirectoryClient",
    "DiscoveryAuthorizeEndpoint",
    "FlowOrchestrator",
    "KeyringSecureStorage",
    "OidcClientRegistry",
    "PKCEChallenge",
    "PollOutcome",
    "PortalSuffixStrategy",
    "RegionalOidcStrategy",
    "SecureStorage",
    "SsoHttpClient",
    "SystemBrowserLauncher",
    "TokenStore",
]
