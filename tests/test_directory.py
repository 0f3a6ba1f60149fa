"""Unit tests for account/role listing and credential issuance."""

from __future__ import annotations

import asyncio
import time

import pytest

from ssoauth.auth.cipher import CredentialCipher
from ssoauth.auth.directory import DirectoryClient
from ssoauth.exceptions import InvalidResponse, NotAuthenticated
from ssoauth.types import Account, TokenSet
from tests.constants import ACCOUNT_ID, ROLE_NAME
from tests.fakes import ProviderStub


@pytest.fixture()
def tokens(cipher: CredentialCipher) -> TokenSet:
    """A valid encrypted token set."""
    return TokenSet(access_token=cipher.encrypt("bearer-1"), expires_at=time.time() + 3600)


def _accounts_page(start: int, next_token: str | None) -> dict:
    page: dict = {
        "accountList": [
            {"accountId": f"{i:012d}", "accountName": f"acct-{i}", "emailAddress": f"{i}@example.com"}
            for i in (start, start + 1)
        ]
    }
    if next_token:
        page["nextToken"] = next_token
    return page


class TestListAccounts:
    """Account pagination."""

    def test_follows_next_token(
        self, provider: ProviderStub, cipher: CredentialCipher, tokens: TokenSet
    ) -> None:
        """Three pages of two accounts make six, in order."""
        provider.set(
            "/assignment/accounts",
            _accounts_page(1, "p2"),
            _accounts_page(3, "p3"),
            _accounts_page(5, None),
        )
        accounts = asyncio.run(DirectoryClient(provider.client(), cipher).list_accounts(tokens))

        assert [a.name for a in accounts] == [f"acct-{i}" for i in range(1, 7)]
        assert accounts[0] == Account(id="000000000001", name="acct-1", email="1@example.com")
        requests = provider.calls("/assignment/accounts")
        assert [r.url.params.get("next_token") for r in requests] == [None, "p2", "p3"]
        assert all(r.headers["x-amz-sso_bearer_token"] == "bearer-1" for r in requests)

    def test_skips_incomplete_entries(
        self, provider: ProviderStub, cipher: CredentialCipher, tokens: TokenSet
    ) -> None:
        """Entries without id or name are dropped, not fabricated."""
        provider.set(
            "/assignment/accounts",
            {
                "accountList": [
                    {"accountId": ACCOUNT_ID, "accountName": "ok"},
                    {"accountId": "222222222222"},
                    {"accountName": "no-id"},
                ]
            },
        )
        accounts = asyncio.run(DirectoryClient(provider.client(), cipher).list_accounts(tokens))
        assert accounts == [Account(id=ACCOUNT_ID, name="ok")]

    def test_unreadable_token(self, provider: ProviderStub, cipher: CredentialCipher) -> None:
        """A token that cannot be decrypted means not authenticated."""
        broken = TokenSet(access_token="garbage", expires_at=time.time() + 3600)
        with pytest.raises(NotAuthenticated):
            asyncio.run(DirectoryClient(provider.client(), cipher).list_accounts(broken))
        assert provider.requests == []


class TestListRoles:
    """Role pagination."""

    def test_roles_across_pages(
        self, provider: ProviderStub, cipher: CredentialCipher, tokens: TokenSet
    ) -> None:
        """Roles from every page are returned; nameless entries are skipped."""
        provider.set(
            "/assignment/roles",
            {"roleList": [{"roleName": "Admin"}, {"accountId": ACCOUNT_ID}], "nextToken": "r2"},
            {"roleList": [{"roleName": "ReadOnly"}]},
        )
        roles = asyncio.run(
            DirectoryClient(provider.client(), cipher).list_roles(tokens, ACCOUNT_ID)
        )
        assert [r.name for r in roles] == ["Admin", "ReadOnly"]
        assert all(r.account_id == ACCOUNT_ID for r in roles)


class TestRoleCredentials:
    """Credential issuance."""

    def test_credentials_are_encrypted(
        self, provider: ProviderStub, cipher: CredentialCipher, tokens: TokenSet
    ) -> None:
        """Issued secrets are ciphertext; expiration converts from milliseconds."""
        expiration_ms = 1_900_000_000_000
        provider.set(
            "/federation/credentials",
            {
                "roleCredentials": {
                    "accessKeyId": "ASIA1",
                    "secretAccessKey": "sk",
                    "sessionToken": "st",
                    "expiration": expiration_ms,
                }
            },
        )
        creds = asyncio.run(
            DirectoryClient(provider.client(), cipher).get_role_credentials(tokens, ACCOUNT_ID, ROLE_NAME)
        )
        assert cipher.decrypt(creds.access_key_id) == "ASIA1"
        assert cipher.decrypt(creds.secret_access_key) == "sk"
        assert cipher.decrypt(creds.session_token) == "st"
        assert "sk" not in creds.secret_access_key
        assert creds.expiration == 1_900_000_000.0

    def test_missing_expiration_defaults_to_one_hour(
        self, provider: ProviderStub, cipher: CredentialCipher, tokens: TokenSet
    ) -> None:
        """Expiration is the only field allowed a default."""
        provider.set(
            "/federation/credentials",
            {"roleCredentials": {"accessKeyId": "a", "secretAccessKey": "s", "sessionToken": "t"}},
        )
        creds = asyncio.run(
            DirectoryClient(provider.client(), cipher).get_role_credentials(tokens, ACCOUNT_ID, ROLE_NAME)
        )
        assert creds.expiration == pytest.approx(time.time() + 3600, abs=5)

    def test_missing_secret_field(
        self, provider: ProviderStub, cipher: CredentialCipher, tokens: TokenSet
    ) -> None:
        """A response missing the session token is rejected."""
        provider.set(
            "/federation/credentials",
            {"roleCredentials": {"accessKeyId": "a", "secretAccessKey": "s"}},
        )
        with pytest.raises(InvalidResponse, match="sessionToken"):
            asyncio.run(
                DirectoryClient(provider.client(), cipher).get_role_credentials(
                    tokens, ACCOUNT_ID, ROLE_NAME
                )
            )
