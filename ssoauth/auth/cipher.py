"""At-rest encryption for tokens and credentials.

``CredentialCipher`` wraps a platform secure-storage primitive. When the
platform reports itself unavailable, values are stored base64-encoded
instead. Every ciphertext carries a tag naming the path that produced it,
so degraded storage is always visible in diagnostics.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import base64
import binascii
import logging
import threading

from typing import Protocol, runtime_checkable

import keyring

from cryptography.fernet import Fernet
from keyring.errors import KeyringError


logger = logging.getLogger("ssoauth.auth")

PLATFORM_TAG = "enc:"
FALLBACK_TAG = "b64:"


@runtime_checkable
class SecureStorage(Protocol):
    """Platform encrypt/decrypt primitive."""

    def is_available(self) -> bool:
        """Whether strong encryption can be used right now."""

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a string."""

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt a string produced by ``encrypt``."""


class KeyringSecureStorage:
    """Fernet encryption keyed by a secret held in the OS keyring.

    The key is generated on first use and stored under
    ``(service_name, key_name)``. The storage counts as unavailable when
    only a fail/null keyring backend is installed.

    Parameters
    ----------
    service_name : str
        Keyring service name (default ``"ssoauth"``).
    key_name : str
        Keyring username holding the Fernet key.
    """

    def __init__(self, service_name: str = "ssoauth", key_name: str = "credential-key") -> None:
        """Initialize the keyring-backed storage."""
        self._service_name = service_name
        self._key_name = key_name
        self._fernet: Fernet | None = None
        self._lock = threading.Lock()

    def is_available(self) -> bool:
        """Check that a usable keyring backend is installed."""
        try:
            backend = keyring.get_keyring()
        except KeyringError:
            return False
        return getattr(backend, "priority", 0) > 0

    def _get_fernet(self) -> Fernet:
        with self._lock:
            if self._fernet is None:
                key = keyring.get_password(self._service_name, self._key_name)
                if key is None:
                    key = Fernet.generate_key().decode("ascii")
                    keyring.set_password(self._service_name, self._key_name, key)
                    logger.debug("Generated new credential key in keyring %s", self._service_name)
                self._fernet = Fernet(key.encode("ascii"))
            return self._fernet

    def encrypt(self, plaintext: str) -> str:
        """Encrypt with the keyring-held Fernet key."""
        return self._get_fernet().encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt a Fernet token; raises ``InvalidToken`` on foreign input."""
        return self._get_fernet().decrypt(ciphertext.encode("ascii")).decode("utf-8")


class CredentialCipher:
    """Encrypt/decrypt secret fields before they reach persistence.

    ``decrypt`` never raises: malformed or foreign input yields ``""``,
    which callers treat as "no credential".

    Parameters
    ----------
    storage : SecureStorage
        The platform secure-storage primitive.
    """

    def __init__(self, storage: SecureStorage) -> None:
        """Initialize the cipher."""
        self._storage = storage
        self._warned = False

    @property
    def degraded(self) -> bool:
        """True when new values would be stored with the fallback encoding."""
        return not self._storage.is_available()

    def encrypt(self, plaintext: str) -> str:
        """Encrypt ``plaintext`` and tag the result with its origin."""
        if self._storage.is_available():
            return PLATFORM_TAG + self._storage.encrypt(plaintext)
        if not self._warned:
            logger.warning("Secure storage unavailable; credentials stored with base64 fallback")
            self._warned = True
        encoded = base64.b64encode(plaintext.encode("utf-8")).decode("ascii")
        return FALLBACK_TAG + encoded

    def decrypt(self, ciphertext: str | None) -> str:
        """Decrypt a tagged value, returning ``""`` when it cannot be read."""
        if not ciphertext:
            return ""
        if ciphertext.startswith(FALLBACK_TAG):
            try:
                raw = base64.b64decode(ciphertext[len(FALLBACK_TAG) :], validate=True)
                return raw.decode("utf-8")
            except (binascii.Error, UnicodeDecodeError):
                logger.error("Stored credential has a malformed fallback encoding")
                return ""
        if ciphertext.startswith(PLATFORM_TAG):
            if not self._storage.is_available():
                logger.error("Stored credential needs secure storage, which is unavailable")
                return ""
            try:
                return self._storage.decrypt(ciphertext[len(PLATFORM_TAG) :])
            except Exception as exc:  # noqa: BLE001
                logger.error("Credential decryption failed: %s", type(exc).__name__)
                return ""
        logger.error("Stored credential has an unknown format")
        return ""

    @staticmethod
    def describe(ciphertext: str | None) -> str:
        """Report which path produced ``ciphertext``.

        Returns
        -------
        str
            ``"platform"``, ``"fallback"`` or ``"unknown"``.
        """
        if ciphertext and ciphertext.startswith(PLATFORM_TAG):
            return "platform"
        if ciphertext and ciphertext.startswith(FALLBACK_TAG):
            return "fallback"
        return "unknown"
