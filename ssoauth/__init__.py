"""ssoauth - temporary cloud credentials through OIDC single sign-on."""

from __future__ import annotations

from .auth import CredentialCipher, FlowOrchestrator
from .config import Settings, get_settings
from .exceptions import (
    AuthenticationError,
    ConfigurationError,
    NotAuthenticated,
    ProviderError,
    SsoAuthException,
)
from .storage import FileSettingsStore, MemorySettingsStore, get_settings_store
from .types import Account, DevicePollStatus, Role, SsoStatus


__version__ = "0.1.0"

__all__ = [
    "Account",
    "AuthenticationError",
    "ConfigurationError",
    "CredentialCipher",
    "DevicePollStatus",
    "FileSettingsStore",
    "FlowOrchestrator",
    "MemorySettingsStore",
    "NotAuthenticated",
    "ProviderError",
    "Role",
    "Settings",
    "SsoAuthException",
    "SsoStatus",
    "__version__",
    "get_settings",
    "get_settings_store",
]
