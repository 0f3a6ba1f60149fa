"""Account/role listing and role-credential issuance."""

from __future__ import annotations

import logging
import time

from typing import TYPE_CHECKING

from ..exceptions import InvalidResponse, NotAuthenticated
from ..types import Account, Role, RoleCredentials


if TYPE_CHECKING:
    from ..types import TokenSet
    from .cipher import CredentialCipher
    from .client import SsoHttpClient


logger = logging.getLogger("ssoauth.auth")

DEFAULT_CREDENTIAL_LIFETIME = 3600


class DirectoryClient:
    """Thin wrapper over the portal's assignment and federation calls.

    Parameters
    ----------
    client : SsoHttpClient
        Protocol client for the region.
    cipher : CredentialCipher
        Decrypts the access token and encrypts issued credentials.
    page_size : int
        ``max_result`` requested per page.
    """

    def __init__(self, client: SsoHttpClient, cipher: CredentialCipher, page_size: int = 100) -> None:
        """Initialize the directory client."""
        self.client = client
        self.cipher = cipher
        self.page_size = page_size

    def _access_token(self, tokens: TokenSet) -> str:
        access_token = self.cipher.decrypt(tokens.access_token)
        if not access_token:
            msg = "Stored access token cannot be read; sign in again"
            raise NotAuthenticated(msg)
        return access_token

    async def list_accounts(self, tokens: TokenSet) -> list[Account]:
        """List every account, following ``nextToken`` to the last page."""
        access_token = self._access_token(tokens)
        accounts: list[Account] = []
        next_token: str | None = None

        while True:
            page = await self.client.list_accounts(access_token, next_token, self.page_size)
            for entry in page.get("accountList") or []:
                if entry.get("accountId") and entry.get("accountName"):
                    accounts.append(
                        Account(
                            id=entry["accountId"],
                            name=entry["accountName"],
                            email=entry.get("emailAddress") or "",
                        )
                    )
            next_token = page.get("nextToken")
            if not next_token:
                break

        logger.debug("Listed %d accounts", len(accounts))
        return accounts

    async def list_roles(self, tokens: TokenSet, account_id: str) -> list[Role]:
        """List every role in ``account_id``."""
        access_token = self._access_token(tokens)
        roles: list[Role] = []
        next_token: str | None = None

        while True:
            page = await self.client.list_account_roles(
                access_token, account_id, next_token, self.page_size
            )
            roles.extend(
                Role(name=entry["roleName"], account_id=account_id)
                for entry in page.get("roleList") or []
                if entry.get("roleName")
            )
            next_token = page.get("nextToken")
            if not next_token:
                break

        return roles

    async def get_role_credentials(
        self,
        tokens: TokenSet,
        account_id: str,
        role_name: str,
    ) -> RoleCredentials:
        """Issue credentials for one account and role.

        Raises
        ------
        InvalidResponse
            If the access key id, secret key or session token is missing.
        """
        raw = await self.client.get_role_credentials(
            self._access_token(tokens), account_id, role_name
        )
        creds = raw.get("roleCredentials") or {}
        missing = [
            name
            for name in ("accessKeyId", "secretAccessKey", "sessionToken")
            if not creds.get(name)
        ]
        if missing:
            msg = f"Invalid role credentials response: missing {', '.join(missing)}"
            raise InvalidResponse(msg, provider="portal", account_id=account_id, role=role_name)

        expiration_ms = creds.get("expiration")
        expiration = (
            float(expiration_ms) / 1000
            if expiration_ms
            else time.time() + DEFAULT_CREDENTIAL_LIFETIME
        )
        return RoleCredentials(
            access_key_id=self.cipher.encrypt(creds["accessKeyId"]),
            secret_access_key=self.cipher.encrypt(creds["secretAccessKey"]),
            session_token=self.cipher.encrypt(creds["sessionToken"]),
            expiration=expiration,
        )
