"""Pytest configuration and fixtures."""

from __future__ import annotations

import time

from typing import TYPE_CHECKING

import pytest

from ssoauth.auth.cipher import CredentialCipher
from ssoauth.config import clear_settings
from ssoauth.storage import reset_settings_store
from ssoauth.types import ClientRegistration
from tests.constants import CLIENT_ID, CLIENT_SECRET, REGION
from tests.fakes import FakeSecureStorage, ProviderStub


if TYPE_CHECKING:
    from collections.abc import Generator


@pytest.fixture(autouse=True)
def _local_requests_bypass_proxy(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep urllib requests to the loopback listener off any proxy."""
    monkeypatch.setenv("no_proxy", "127.0.0.1,localhost")
    monkeypatch.setenv("NO_PROXY", "127.0.0.1,localhost")


@pytest.fixture(autouse=True)
def _reset_singletons() -> Generator[None, None, None]:
    """Drop cached settings and stores between tests."""
    clear_settings()
    reset_settings_store()
    yield
    clear_settings()
    reset_settings_store()


@pytest.fixture()
def secure_storage() -> FakeSecureStorage:
    """Available fake platform storage."""
    return FakeSecureStorage()


@pytest.fixture()
def cipher(secure_storage: FakeSecureStorage) -> CredentialCipher:
    """Cipher on the platform path."""
    return CredentialCipher(secure_storage)


@pytest.fixture()
def provider() -> ProviderStub:
    """Scripted provider endpoints."""
    return ProviderStub()


@pytest.fixture()
def registration(cipher: CredentialCipher) -> ClientRegistration:
    """A valid client registration for the default region."""
    return ClientRegistration(
        client_id=CLIENT_ID,
        client_secret=cipher.encrypt(CLIENT_SECRET),
        expires_at=time.time() + 86400,
        region=REGION,
    )
