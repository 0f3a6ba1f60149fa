"""Public OIDC client registration with caching."""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import logging
import time

from typing import TYPE_CHECKING

from ..exceptions import RegistrationError
from ..types import ClientRegistration


if TYPE_CHECKING:
    from .cipher import CredentialCipher
    from .client import SsoHttpClient


logger = logging.getLogger("ssoauth.auth")

DEFAULT_SCOPES = ["sso:account:access"]


class OidcClientRegistry:
    """Registers a public client and reuses it until it expires.

    Parameters
    ----------
    client : SsoHttpClient
        Protocol client for the region.
    cipher : CredentialCipher
        Encrypts the returned client secret.
    client_name : str
        Name sent with the registration.
    scopes : list[str], optional
        Scopes requested for the client (defaults to ``sso:account:access``).
    """

    def __init__(
        self,
        client: SsoHttpClient,
        cipher: CredentialCipher,
        client_name: str = "ssoauth desktop",
        scopes: list[str] | None = None,
    ) -> None:
        """Initialize the registry."""
        self.client = client
        self.cipher = cipher
        self.client_name = client_name
        self.scopes = scopes or list(DEFAULT_SCOPES)

    async def get_or_register(
        self,
        cached: ClientRegistration | None = None,
    ) -> ClientRegistration:
        """Return ``cached`` while it is valid, otherwise register anew.

        Parameters
        ----------
        cached : ClientRegistration, optional
            A previously stored registration.

        Returns
        -------
        ClientRegistration
            A usable registration with an encrypted secret.

        Raises
        ------
        RegistrationError
            If the provider omits the client id, secret or secret expiry.
        """
        if cached is not None and not cached.is_expired():
            if not cached.region or cached.region == self.client.region:
                return cached
            logger.debug("Cached client is for region %s; registering anew", cached.region)

        logger.info("Registering new OIDC client in %s", self.client.region)
        raw = await self.client.register_client(self.client_name, self.scopes)

        missing = [
            name
            for name in ("clientId", "clientSecret", "clientSecretExpiresAt")
            if not raw.get(name)
        ]
        if missing:
            msg = f"Invalid client registration response: missing {', '.join(missing)}"
            raise RegistrationError(msg, provider="oidc")

        expires_at = float(raw["clientSecretExpiresAt"])
        if expires_at <= time.time():
            msg = "Invalid client registration response: secret already expired"
            raise RegistrationError(msg, provider="oidc")

        return ClientRegistration(
            client_id=raw["clientId"],
            client_secret=self.cipher.encrypt(raw["clientSecret"]),
            expires_at=expires_at,
            region=self.client.region,
            authorization_endpoint=raw.get("authorizationEndpoint"),
        )
