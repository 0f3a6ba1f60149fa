"""Unit tests for the provider HTTP client and error translation."""

from __future__ import annotations

import asyncio

from typing import Any

import httpx
import pytest

from ssoauth.auth.client import (
    BEARER_HEADER,
    DEVICE_CODE_GRANT,
    SsoHttpClient,
    normalise_error_code,
    require_fields,
)
from ssoauth.exceptions import (
    AccessDenied,
    DeviceAuthorizationExpired,
    ErrorCode,
    InvalidResponse,
    ProviderError,
)
from tests.constants import ACCOUNT_ID, CLIENT_ID, CLIENT_SECRET, REGION
from tests.fakes import ProviderStub


def _client_returning(response: httpx.Response | Exception) -> SsoHttpClient:
    def handler(request: httpx.Request) -> httpx.Response:
        if isinstance(response, Exception):
            raise response
        return response

    transport = httpx.MockTransport(handler)
    return SsoHttpClient(REGION, http_client=httpx.AsyncClient(transport=transport))


def _token_call(client: SsoHttpClient) -> dict[str, Any]:
    return asyncio.run(
        client.create_token(CLIENT_ID, CLIENT_SECRET, DEVICE_CODE_GRANT, deviceCode="d")
    )


# ── Endpoints ────────────────────────────────────────────────────────


class TestEndpoints:
    """Request shapes for each provider call."""

    def test_default_endpoints_follow_region(self) -> None:
        """Base URLs are derived from the region."""
        client = SsoHttpClient("ap-southeast-2")
        assert client.oidc_endpoint == "https://oidc.ap-southeast-2.amazonaws.com"
        assert client.portal_endpoint == "https://portal.sso.ap-southeast-2.amazonaws.com"

    def test_endpoint_overrides(self) -> None:
        """Overrides replace the derived URLs and lose trailing slashes."""
        client = SsoHttpClient(
            REGION, oidc_endpoint="http://localhost:4566/", portal_endpoint="http://localhost:4567/"
        )
        assert client.oidc_endpoint == "http://localhost:4566"
        assert client.portal_endpoint == "http://localhost:4567"

    def test_register_client_body(self, provider: ProviderStub) -> None:
        """Registration asks for a public client with the given scopes."""
        client = provider.client()
        asyncio.run(client.register_client("my app", ["sso:account:access"]))

        (request,) = provider.calls("/client/register")
        assert request.method == "POST"
        assert request.url.host == "oidc.us-east-1.amazonaws.com"
        assert provider.body(request) == {
            "clientName": "my app",
            "clientType": "public",
            "scopes": ["sso:account:access"],
        }

    def test_create_token_body(self, provider: ProviderStub) -> None:
        """Grant parameters are sent in wire casing beside the client credentials."""
        client = provider.client()
        asyncio.run(
            client.create_token(
                CLIENT_ID,
                CLIENT_SECRET,
                "authorization_code",
                code="c",
                redirectUri="http://127.0.0.1:1/callback",
                codeVerifier="v",
            )
        )
        body = provider.body(provider.calls("/token")[0])
        assert body == {
            "clientId": CLIENT_ID,
            "clientSecret": CLIENT_SECRET,
            "grantType": "authorization_code",
            "code": "c",
            "redirectUri": "http://127.0.0.1:1/callback",
            "codeVerifier": "v",
        }

    def test_portal_calls_send_bearer_header(self, provider: ProviderStub) -> None:
        """Portal calls authenticate with the bearer header and paginate by query."""
        client = provider.client()
        asyncio.run(client.list_accounts("at", next_token="page-2", max_results=50))
        asyncio.run(client.list_account_roles("at", ACCOUNT_ID))

        accounts_req = provider.calls("/assignment/accounts")[0]
        assert accounts_req.method == "GET"
        assert accounts_req.url.host == "portal.sso.us-east-1.amazonaws.com"
        assert accounts_req.headers[BEARER_HEADER] == "at"
        assert accounts_req.url.params["next_token"] == "page-2"
        assert accounts_req.url.params["max_result"] == "50"

        roles_req = provider.calls("/assignment/roles")[0]
        assert roles_req.url.params["account_id"] == ACCOUNT_ID
        assert "next_token" not in roles_req.url.params

    def test_role_credentials_query(self, provider: ProviderStub) -> None:
        """Credential issuance names the account and role."""
        client = provider.client()
        asyncio.run(client.get_role_credentials("at", ACCOUNT_ID, "ReadOnly"))
        request = provider.calls("/federation/credentials")[0]
        assert request.url.params["account_id"] == ACCOUNT_ID
        assert request.url.params["role_name"] == "ReadOnly"


# ── Error translation ────────────────────────────────────────────────


class TestErrorTranslation:
    """Provider failures become tagged exceptions at one boundary."""

    @pytest.mark.parametrize(
        ("response", "code", "exc_type"),
        [
            (
                httpx.Response(400, json={"error": "authorization_pending"}),
                ErrorCode.AUTHORIZATION_PENDING,
                ProviderError,
            ),
            (
                httpx.Response(
                    400, headers={"x-amzn-ErrorType": "SlowDownException:http://internal.amazon.com/"}
                ),
                ErrorCode.SLOW_DOWN,
                ProviderError,
            ),
            (
                httpx.Response(400, json={"__type": "com.amazonaws#ExpiredTokenException"}),
                ErrorCode.EXPIRED_TOKEN,
                DeviceAuthorizationExpired,
            ),
            (
                httpx.Response(400, json={"error": "access_denied"}),
                ErrorCode.ACCESS_DENIED,
                AccessDenied,
            ),
            (
                httpx.Response(400, json={"error": "invalid_grant", "error_description": "bad"}),
                ErrorCode.INVALID_GRANT,
                ProviderError,
            ),
            (httpx.Response(401, text="nope"), ErrorCode.UNAUTHORIZED, ProviderError),
            (httpx.Response(500, json={"message": "boom"}), ErrorCode.UNKNOWN, ProviderError),
        ],
    )
    def test_error_codes(
        self, response: httpx.Response, code: ErrorCode, exc_type: type[ProviderError]
    ) -> None:
        """Error bodies and headers map to the expected code and class."""
        with pytest.raises(exc_type) as exc_info:
            _token_call(_client_returning(response))
        assert exc_info.value.code is code
        assert exc_info.value.status_code == response.status_code
        assert exc_info.value.provider == "oidc"

    def test_description_kept(self) -> None:
        """The provider's description is carried on the exception."""
        response = httpx.Response(
            400, json={"error": "invalid_client", "error_description": "client expired"}
        )
        with pytest.raises(ProviderError) as exc_info:
            _token_call(_client_returning(response))
        assert exc_info.value.description == "client expired"
        assert "client expired" in str(exc_info.value)

    def test_transport_failure(self) -> None:
        """Network errors become TRANSPORT provider errors."""
        with pytest.raises(ProviderError) as exc_info:
            _token_call(_client_returning(httpx.ConnectError("connection refused")))
        assert exc_info.value.code is ErrorCode.TRANSPORT

    def test_non_json_success(self) -> None:
        """A 200 without JSON is an invalid response."""
        with pytest.raises(InvalidResponse):
            _token_call(_client_returning(httpx.Response(200, text="<html>")))

    def test_non_object_json(self) -> None:
        """A JSON array is an invalid response."""
        with pytest.raises(InvalidResponse):
            _token_call(_client_returning(httpx.Response(200, json=["a"])))


class TestHelpers:
    """normalise_error_code and require_fields."""

    @pytest.mark.parametrize(
        ("raw", "code"),
        [
            ("authorization_pending", ErrorCode.AUTHORIZATION_PENDING),
            ("AuthorizationPendingException", ErrorCode.AUTHORIZATION_PENDING),
            ("SlowDownException:http://internal", ErrorCode.SLOW_DOWN),
            ("aws.sso.oidc#InvalidClientException", ErrorCode.INVALID_CLIENT),
            ("UnauthorizedException", ErrorCode.UNAUTHORIZED),
            ("something_else", ErrorCode.UNKNOWN),
            (None, ErrorCode.UNKNOWN),
            ("", ErrorCode.UNKNOWN),
        ],
    )
    def test_normalise_error_code(self, raw: str | None, code: ErrorCode) -> None:
        """OAuth strings, exception names and header forms normalise alike."""
        assert normalise_error_code(raw) is code

    def test_require_fields_lists_missing(self) -> None:
        """Empty and absent fields are both reported."""
        with pytest.raises(InvalidResponse, match="missing userCode, verificationUri"):
            require_fields({"deviceCode": "d", "userCode": ""}, "deviceCode", "userCode", "verificationUri", what="device")

    def test_aclose_allows_reuse(self) -> None:
        """A closed client recreates its HTTP session on next use."""
        client = SsoHttpClient(REGION)

        async def run() -> bool:
            await client._get_client()  # noqa: SLF001
            await client.aclose()
            http = await client._get_client()  # noqa: SLF001
            closed = http.is_closed
            await client.aclose()
            return closed

        assert asyncio.run(run()) is False
