"""HTTP client for the Identity Center OIDC and portal services.

This is the single boundary where provider error responses are
translated into the tagged taxonomy of :mod:`ssoauth.exceptions`.
Everything above it switches on :class:`ErrorCode`, never on raw
provider strings.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import logging

from typing import Any

import httpx

from ..exceptions import (
    AccessDenied,
    DeviceAuthorizationExpired,
    ErrorCode,
    InvalidResponse,
    ProviderError,
)


logger = logging.getLogger("ssoauth.auth")

DEVICE_CODE_GRANT = "urn:ietf:params:oauth:grant-type:device_code"
AUTHORIZATION_CODE_GRANT = "authorization_code"
REFRESH_TOKEN_GRANT = "refresh_token"  # noqa: S105

BEARER_HEADER = "x-amz-sso_bearer_token"

# OAuth error strings and service exception names for the same conditions
_ERROR_CODES: dict[str, ErrorCode] = {
    "authorization_pending": ErrorCode.AUTHORIZATION_PENDING,
    "authorizationpendingexception": ErrorCode.AUTHORIZATION_PENDING,
    "slow_down": ErrorCode.SLOW_DOWN,
    "slowdownexception": ErrorCode.SLOW_DOWN,
    "expired_token": ErrorCode.EXPIRED_TOKEN,
    "expiredtokenexception": ErrorCode.EXPIRED_TOKEN,
    "access_denied": ErrorCode.ACCESS_DENIED,
    "accessdeniedexception": ErrorCode.ACCESS_DENIED,
    "invalid_grant": ErrorCode.INVALID_GRANT,
    "invalidgrantexception": ErrorCode.INVALID_GRANT,
    "invalid_client": ErrorCode.INVALID_CLIENT,
    "invalidclientexception": ErrorCode.INVALID_CLIENT,
    "unauthorizedexception": ErrorCode.UNAUTHORIZED,
    "unauthorized_client": ErrorCode.UNAUTHORIZED,
}


def normalise_error_code(raw: str | None) -> ErrorCode:
    """Map a provider error string to an :class:`ErrorCode`.

    Accepts OAuth error strings (``authorization_pending``), service
    exception names (``SlowDownException``) and header forms
    (``ExpiredTokenException:http://...``).
    """
    if not raw:
        return ErrorCode.UNKNOWN
    name = raw.split(":", 1)[0].rsplit("#", 1)[-1].strip().lower()
    return _ERROR_CODES.get(name, ErrorCode.UNKNOWN)


def translate_error(response: httpx.Response, service: str) -> ProviderError:
    """Build the typed exception for a failed provider response.

    Parameters
    ----------
    response : httpx.Response
        The non-2xx response.
    service : str
        Endpoint family (``"oidc"`` or ``"portal"``), recorded as provider.

    Returns
    -------
    ProviderError
        ``DeviceAuthorizationExpired`` or ``AccessDenied`` for those tags,
        otherwise a ``ProviderError`` carrying the tag.
    """
    payload: dict[str, Any] = {}
    try:
        body = response.json()
        if isinstance(body, dict):
            payload = body
    except ValueError:
        pass

    raw_code = (
        payload.get("error")
        or response.headers.get("x-amzn-ErrorType")
        or payload.get("__type")
    )
    code = normalise_error_code(raw_code)
    if code is ErrorCode.UNKNOWN and response.status_code == 401:
        code = ErrorCode.UNAUTHORIZED
    description = (
        payload.get("error_description") or payload.get("message") or payload.get("Message")
    )
    msg = f"{service} request failed: {raw_code or response.status_code}"
    if description:
        msg = f"{msg} - {description}"

    exc_cls: type[ProviderError] = ProviderError
    if code is ErrorCode.EXPIRED_TOKEN:
        exc_cls = DeviceAuthorizationExpired
    elif code is ErrorCode.ACCESS_DENIED:
        exc_cls = AccessDenied
    return exc_cls(
        msg,
        code=code,
        description=description,
        status_code=response.status_code,
        provider=service,
    )


def require_fields(payload: dict[str, Any], *names: str, what: str) -> None:
    """Raise ``InvalidResponse`` unless every named field is present and non-empty."""
    missing = [name for name in names if not payload.get(name)]
    if missing:
        msg = f"Invalid {what} response: missing {', '.join(missing)}"
        raise InvalidResponse(msg)


class SsoHttpClient:
    """Async client for the OIDC (``oidc.*``) and portal (``portal.sso.*``) APIs.

    Parameters
    ----------
    region : str
        Region of the Identity Center instance.
    oidc_endpoint : str, optional
        Override for the OIDC base URL.
    portal_endpoint : str, optional
        Override for the portal base URL.
    timeout : float
        Per-request timeout in seconds.
    http_client : httpx.AsyncClient, optional
        Pre-built client (tests inject one with a mock transport).
    """

    def __init__(
        self,
        region: str,
        oidc_endpoint: str = "",
        portal_endpoint: str = "",
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the client."""
        self.region = region
        self.oidc_endpoint = (oidc_endpoint or f"https://oidc.{region}.amazonaws.com").rstrip("/")
        self.portal_endpoint = (
            portal_endpoint or f"https://portal.sso.{region}.amazonaws.com"
        ).rstrip("/")
        self.timeout = timeout
        self._http_client = http_client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the shared HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    async def aclose(self) -> None:
        """Close the shared HTTP client."""
        if self._http_client is not None and not self._http_client.is_closed:
            await self._http_client.aclose()
            self._http_client = None

    async def _request(
        self,
        service: str,
        method: str,
        url: str,
        **kwargs: Any,
    ) -> dict[str, Any]:
        """Send one request and return its JSON body or raise a typed error."""
        try:
            client = await self._get_client()
            resp = await client.request(method, url, timeout=self.timeout, **kwargs)
        except httpx.HTTPError as exc:
            msg = f"{service} request failed: {exc}"
            raise ProviderError(msg, code=ErrorCode.TRANSPORT, provider=service) from exc

        if not resp.is_success:
            raise translate_error(resp, service)

        try:
            body = resp.json()
        except ValueError as exc:
            msg = f"{service} returned a non-JSON response"
            raise InvalidResponse(msg, provider=service) from exc
        if not isinstance(body, dict):
            msg = f"{service} returned an unexpected JSON document"
            raise InvalidResponse(msg, provider=service)
        return body

    # ── OIDC service ────────────────────────────────────────────────

    async def register_client(
        self,
        client_name: str,
        scopes: list[str],
        client_type: str = "public",
    ) -> dict[str, Any]:
        """Register a client (``POST /client/register``)."""
        return await self._request(
            "oidc",
            "POST",
            f"{self.oidc_endpoint}/client/register",
            json={"clientName": client_name, "clientType": client_type, "scopes": scopes},
        )

    async def start_device_authorization(
        self,
        client_id: str,
        client_secret: str,
        start_url: str,
    ) -> dict[str, Any]:
        """Request a device code (``POST /device_authorization``)."""
        return await self._request(
            "oidc",
            "POST",
            f"{self.oidc_endpoint}/device_authorization",
            json={"clientId": client_id, "clientSecret": client_secret, "startUrl": start_url},
        )

    async def create_token(
        self,
        client_id: str,
        client_secret: str,
        grant_type: str,
        **grant_params: str,
    ) -> dict[str, Any]:
        """Exchange a grant for tokens (``POST /token``).

        Parameters
        ----------
        client_id : str
            Registered client ID.
        client_secret : str
            Plaintext client secret.
        grant_type : str
            One of the device-code, authorization-code or refresh grants.
        **grant_params : str
            Grant-specific fields in wire casing (``deviceCode``, ``code``,
            ``redirectUri``, ``codeVerifier``, ``refreshToken``).
        """
        body = {"clientId": client_id, "clientSecret": client_secret, "grantType": grant_type}
        body.update(grant_params)
        return await self._request("oidc", "POST", f"{self.oidc_endpoint}/token", json=body)

    # ── Portal service ──────────────────────────────────────────────

    async def list_accounts(
        self,
        access_token: str,
        next_token: str | None = None,
        max_results: int = 100,
    ) -> dict[str, Any]:
        """Fetch one page of accounts (``GET /assignment/accounts``)."""
        params: dict[str, Any] = {"max_result": max_results}
        if next_token:
            params["next_token"] = next_token
        return await self._request(
            "portal",
            "GET",
            f"{self.portal_endpoint}/assignment/accounts",
            params=params,
            headers={BEARER_HEADER: access_token},
        )

    async def list_account_roles(
        self,
        access_token: str,
        account_id: str,
        next_token: str | None = None,
        max_results: int = 100,
    ) -> dict[str, Any]:
        """Fetch one page of roles (``GET /assignment/roles``)."""
        params: dict[str, Any] = {"account_id": account_id, "max_result": max_results}
        if next_token:
            params["next_token"] = next_token
        return await self._request(
            "portal",
            "GET",
            f"{self.portal_endpoint}/assignment/roles",
            params=params,
            headers={BEARER_HEADER: access_token},
        )

    async def get_role_credentials(
        self,
        access_token: str,
        account_id: str,
        role_name: str,
    ) -> dict[str, Any]:
        """Issue role credentials (``GET /federation/credentials``)."""
        return await self._request(
            "portal",
            "GET",
            f"{self.portal_endpoint}/federation/credentials",
            params={"account_id": account_id, "role_name": role_name},
            headers={BEARER_HEADER: access_token},
        )
