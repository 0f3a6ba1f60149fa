"""Test doubles for the provider, secure storage and browser."""

# pylint: disable=consider-using-with

from __future__ import annotations

import contextlib
import json
import threading
import time

from typing import Any, Callable
from urllib.parse import parse_qs, urlencode, urlparse
from urllib.request import urlopen

import httpx

from ssoauth.auth.client import SsoHttpClient
from tests.constants import (
    ACCESS_TOKEN,
    ACCOUNT_ID,
    CALLBACK_DELAY,
    CLIENT_ID,
    CLIENT_SECRET,
    DEVICE_CODE,
    HTTP_TIMEOUT,
    REFRESH_TOKEN,
    REGION,
    ROLE_NAME,
    USER_CODE,
)


# ── Secure storage ───────────────────────────────────────────────────


class FakeSecureStorage:
    """Reversible stand-in for the platform primitive."""

    def __init__(self, available: bool = True) -> None:
        self.available = available
        self.fail_decrypt = False

    def is_available(self) -> bool:
        return self.available

    def encrypt(self, plaintext: str) -> str:
        return "x" + plaintext[::-1]

    def decrypt(self, ciphertext: str) -> str:
        if self.fail_decrypt or not ciphertext.startswith("x"):
            msg = "not produced by this storage"
            raise ValueError(msg)
        return ciphertext[1:][::-1]


# ── Provider ─────────────────────────────────────────────────────────


def default_routes() -> dict[str, list[Any]]:
    """One canned success response per endpoint."""
    now = time.time()
    return {
        "/client/register": [
            {
                "clientId": CLIENT_ID,
                "clientSecret": CLIENT_SECRET,
                "clientIdIssuedAt": int(now),
                "clientSecretExpiresAt": int(now + 90 * 86400),
            }
        ],
        "/device_authorization": [
            {
                "deviceCode": DEVICE_CODE,
                "userCode": USER_CODE,
                "verificationUri": "https://device.sso.us-east-1.amazonaws.com/",
                "verificationUriComplete": (
                    f"https://device.sso.us-east-1.amazonaws.com/?user_code={USER_CODE}"
                ),
                "expiresIn": 600,
                "interval": 1,
            }
        ],
        "/token": [
            {
                "accessToken": ACCESS_TOKEN,
                "refreshToken": REFRESH_TOKEN,
                "tokenType": "Bearer",
                "expiresIn": 3600,
            }
        ],
        "/assignment/accounts": [
            {
                "accountList": [
                    {
                        "accountId": ACCOUNT_ID,
                        "accountName": "sandbox",
                        "emailAddress": "sandbox@example.com",
                    }
                ]
            }
        ],
        "/assignment/roles": [
            {"roleList": [{"roleName": ROLE_NAME, "accountId": ACCOUNT_ID}]}
        ],
        "/federation/credentials": [
            {
                "roleCredentials": {
                    "accessKeyId": "ASIAEXAMPLE",
                    "secretAccessKey": "secret-access-key",
                    "sessionToken": "session-token",
                    "expiration": int((now + 3600) * 1000),
                }
            }
        ],
    }


class ProviderStub:
    """Scripted Identity Center endpoints behind ``httpx.MockTransport``.

    Each path holds a queue of responses; the last one repeats. A response
    is a dict (200 JSON), a ``(status, body)`` tuple, or a callable taking
    the request.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.regions: list[str] = []
        self._routes = default_routes()

    def set(self, path: str, *responses: Any) -> None:
        """Replace the response queue for ``path``."""
        self._routes[path] = list(responses)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self._routes.get(request.url.path)
        if not queue:
            return httpx.Response(404, json={"message": "no route"})
        reply = queue.pop(0) if len(queue) > 1 else queue[0]
        if callable(reply):
            return reply(request)
        status, body = reply if isinstance(reply, tuple) else (200, reply)
        return httpx.Response(status, json=body)

    def calls(self, path: str) -> list[httpx.Request]:
        """Requests made to ``path``."""
        return [r for r in self.requests if r.url.path == path]

    @staticmethod
    def body(request: httpx.Request) -> dict[str, Any]:
        """Decoded JSON body of a request."""
        return json.loads(request.content)

    def client(self, region: str = REGION) -> SsoHttpClient:
        """Build a protocol client routed to this stub."""
        self.regions.append(region)
        transport = httpx.MockTransport(self._handle)
        return SsoHttpClient(region, http_client=httpx.AsyncClient(transport=transport))


# ── Browser ──────────────────────────────────────────────────────────


def send_callback(url: str, delay: float = CALLBACK_DELAY) -> None:
    """Hit ``url`` from a background thread after ``delay``."""

    def _send() -> None:
        time.sleep(delay)
        with contextlib.suppress(OSError):
            urlopen(url, timeout=HTTP_TIMEOUT)  # noqa: S310

    threading.Thread(target=_send, daemon=True).start()


class CallbackBrowser:
    """Launcher that plays the provider's redirect back to the listener.

    Parameters
    ----------
    respond : callable, optional
        Maps the authorization URL's query to callback parameters.
        ``None`` (or a callable returning ``None``) sends nothing.
    """

    def __init__(self, respond: Callable[[dict[str, str]], dict[str, str] | None] | None = None) -> None:
        self.respond = respond
        self.opened: list[str] = []

    def open(self, url: str) -> bool:
        self.opened.append(url)
        query = {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}
        params = self.respond(query) if self.respond else None
        if params is not None:
            send_callback(f"{query['redirect_uri']}?{urlencode(params)}")
        return True


def approve(query: dict[str, str]) -> dict[str, str]:
    """Callback parameters for a user who approves the sign-in."""
    return {"code": "auth-code-1", "state": query["state"]}


def forge_state(query: dict[str, str]) -> dict[str, str]:
    """Callback parameters carrying someone else's state."""
    return {"code": "auth-code-1", "state": "forged-state"}


def deny(query: dict[str, str]) -> dict[str, str]:
    """Callback parameters for a user who declines the sign-in."""
    return {
        "error": "access_denied",
        "error_description": "User denied the request",
        "state": query["state"],
    }
