"""Single-use localhost HTTP listener for OAuth2 redirect capture.

Binds an ephemeral port, waits for exactly one well-formed ``/callback``
request, serves a minimal confirmation page and closes. It does not
interpret the callback; CSRF checks and token exchange belong to the
browser flow.

Uses only stdlib (http.server, threading, urllib.parse).
"""

# pylint: disable=logging-too-many-args

# pylint: disable=C0103,W0212

from __future__ import annotations

import html
import logging
import threading

from enum import Enum
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any
from urllib.parse import parse_qs, urlparse

from ..types import CallbackOutcome, CallbackResult


logger = logging.getLogger("ssoauth.auth")

# Idle connections (browser preconnects) are dropped after this many seconds
REQUEST_TIMEOUT = 5.0

_POLL_INTERVAL = 0.1

_PAGE_STYLE = """
  body { font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, sans-serif;
         display: flex; align-items: center; justify-content: center;
         height: 100vh; margin: 0; background: #f0f2f5; color: #1a1a2e; }
  .card { text-align: center; padding: 2rem 3rem; background: white;
          border-radius: 12px; box-shadow: 0 2px 12px rgba(0,0,0,.08); }
  h1 { font-size: 1.5rem; margin-bottom: 0.5rem; }
  p { color: #666; }
"""

_PAGE_TEMPLATE = """<!DOCTYPE html>
<html>
<head><title>{title}</title><style>{style}</style></head>
<body><div class="card">
  <h1>{heading}</h1>
  <p>{message}</p>
</div></body></html>"""


def _render(title: str, heading: str, message: str) -> str:
    return _PAGE_TEMPLATE.format(title=title, style=_PAGE_STYLE, heading=heading, message=message)


_SUCCESS_HTML = _render(
    "Sign-in Complete",
    "&#x2705; Sign-in complete",
    "You can close this window and return to the application.",
)

_WAITING_HTML = _render(
    "Waiting for Sign-in",
    "Waiting for sign-in&hellip;",
    "Please complete the login in the browser window.",
)


class ListenerState(str, Enum):
    """Lifecycle of a :class:`CallbackListener`."""

    IDLE = "idle"
    LISTENING = "listening"
    RECEIVED = "received"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    CLOSED = "closed"


class CallbackListener:
    """Ephemeral localhost HTTP server capturing one OAuth2 redirect.

    ``Idle -> Listening -> {Received | TimedOut | Cancelled} -> Closed``.
    The bound port is released in every terminal case.

    Parameters
    ----------
    host : str
        Bind address (default ``"127.0.0.1"``).
    port : int
        Port number (``0`` for an OS-assigned port).
    path : str
        Callback path (default ``"/callback"``).
    """

    def __init__(self, host: str = "127.0.0.1", port: int = 0, path: str = "/callback") -> None:
        """Initialize the listener."""
        self._host = host
        self._port = port
        self._path = path
        self._server: ThreadingHTTPServer | None = None
        self._thread: threading.Thread | None = None
        self._result: CallbackResult | None = None
        self._done = threading.Event()
        self._lock = threading.Lock()
        self._state = ListenerState.IDLE
        self._closed = False
        self._close_done = threading.Event()
        self._actual_port: int = 0

    @property
    def state(self) -> ListenerState:
        """Current lifecycle state."""
        return self._state

    @property
    def port(self) -> int:
        """The bound port (``0`` before ``start``)."""
        return self._actual_port

    @property
    def redirect_uri(self) -> str:
        """Get the redirect URI for this listener.

        Returns
        -------
        str
            The full redirect URI (e.g. ``http://127.0.0.1:54321/callback``).
        """
        return f"http://{self._host}:{self._actual_port}{self._path}"

    def start(self) -> str:
        """Bind the port and serve on a daemon thread.

        Returns
        -------
        str
            The redirect URI to use with the identity provider.
        """
        if self._state is not ListenerState.IDLE:
            msg = f"Listener cannot start from state {self._state.value}"
            raise RuntimeError(msg)

        listener = self

        class _CallbackHandler(BaseHTTPRequestHandler):
            """HTTP request handler for OAuth2 callbacks."""

            timeout = REQUEST_TIMEOUT

            def do_GET(self) -> None:
                """Handle GET requests."""
                parsed = urlparse(self.path)

                if parsed.path == listener._path:
                    params = parse_qs(parsed.query)
                    result = listener._parse(params)
                    if result is None:
                        self.send_error(400, "Missing code/state or error")
                        return
                    if not listener._finish(ListenerState.RECEIVED, result):
                        self.send_error(410, "Callback already handled")
                        return
                    if result.error:
                        error_msg = result.error_description or result.error
                        safe_msg = html.escape(str(error_msg), quote=True)
                        self._send_html(
                            _render("Sign-in Failed", "&#x274C; Sign-in failed", safe_msg)
                        )
                    else:
                        self._send_html(_SUCCESS_HTML)
                    # Shut down from another thread; shutdown() blocks until serve_forever exits
                    threading.Thread(target=listener._close, daemon=True).start()

                elif parsed.path == "/":
                    self._send_html(_WAITING_HTML)
                else:
                    self.send_error(404)

            def _send_html(self, html_content: str) -> None:
                """Send an HTML response with security headers."""
                encoded = html_content.encode("utf-8")
                self.send_response(200)
                self.send_header("Content-Type", "text/html; charset=utf-8")
                self.send_header("Content-Length", str(len(encoded)))
                self.send_header("Cache-Control", "no-store")
                self.send_header(
                    "Content-Security-Policy",
                    "default-src 'none'; style-src 'unsafe-inline'",
                )
                self.send_header("X-Content-Type-Options", "nosniff")
                self.end_headers()
                self.wfile.write(encoded)

            def log_message(self, *args: Any) -> None:
                """Redirect HTTP server logging to the ssoauth logger."""
                if args:
                    logger.debug("Callback listener: %s", args[0] % args[1:])

        self._server = ThreadingHTTPServer((self._host, self._port), _CallbackHandler)
        self._server.daemon_threads = True
        # server_close() must not wait on handlers stuck on idle sockets
        self._server.block_on_close = False
        self._actual_port = self._server.server_address[1]
        self._state = ListenerState.LISTENING

        self._thread = threading.Thread(
            target=self._server.serve_forever,
            kwargs={"poll_interval": _POLL_INTERVAL},
            daemon=True,
        )
        self._thread.start()

        logger.debug("Callback listener started on %s", self.redirect_uri)
        return self.redirect_uri

    def wait_for_callback(self, timeout: float = 300.0) -> CallbackResult:
        """Block until a callback arrives, the timeout elapses, or ``cancel()``.

        Parameters
        ----------
        timeout : float
            Maximum seconds to wait (default 300).

        Returns
        -------
        CallbackResult
            The captured parameters, or an outcome of ``TIMED_OUT`` /
            ``CANCELLED``. The port is released before returning.
        """
        if not self._done.wait(timeout=timeout):
            self._finish(ListenerState.TIMED_OUT, CallbackResult(CallbackOutcome.TIMED_OUT))
        self._close()
        assert self._result is not None  # noqa: S101
        return self._result

    def cancel(self, wait: bool = True) -> None:
        """Abort any wait and release the port. Safe to call repeatedly.

        Parameters
        ----------
        wait : bool
            If False, wake the waiter and shut the server down on a
            background thread instead of blocking until the port is free.
        """
        if self._finish(ListenerState.CANCELLED, CallbackResult(CallbackOutcome.CANCELLED)):
            logger.debug("Callback listener on port %s cancelled", self._actual_port)
        if wait:
            self._close()
        else:
            threading.Thread(target=self._close, daemon=True).start()

    def _parse(self, params: dict[str, list[str]]) -> CallbackResult | None:
        def first(name: str) -> str | None:
            values = params.get(name)
            return values[0] if values else None

        error = first("error")
        if error:
            return CallbackResult(
                CallbackOutcome.RECEIVED,
                error=error,
                error_description=first("error_description"),
                state=first("state"),
            )
        code, state = first("code"), first("state")
        if code and state:
            return CallbackResult(CallbackOutcome.RECEIVED, code=code, state=state)
        return None

    def _finish(self, state: ListenerState, result: CallbackResult) -> bool:
        """Record the first terminal outcome; later ones are ignored."""
        with self._lock:
            if self._result is not None:
                return False
            self._result = result
            if self._state is not ListenerState.CLOSED:
                self._state = state
        self._done.set()
        return True

    def _close(self) -> None:
        """Shut down the server and release the port exactly once."""
        with self._lock:
            already_closing = self._closed
            self._closed = True
        if already_closing:
            self._close_done.wait(timeout=5)
            return
        with self._lock:
            server, thread = self._server, self._thread
            self._server = None
            self._thread = None
        if server is not None:
            server.shutdown()
            server.server_close()
        if thread is not None and thread is not threading.current_thread() and thread.is_alive():
            thread.join(timeout=5)
        with self._lock:
            self._state = ListenerState.CLOSED
        self._close_done.set()
        logger.debug("Callback listener on port %s closed", self._actual_port)
