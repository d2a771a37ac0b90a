"""External user agents that complete redirect-based flows.

A user agent is handed an authorization (or end-session) URL and the
redirect URI to watch for, shows the flow to the user, and resolves
with the callback URL the provider redirected to, or ``None`` if the
user cancelled.

- SystemBrowserUserAgent opens the system browser and waits for the
  embedding application to deliver the custom-scheme callback.
- LoopbackUserAgent serves an ephemeral localhost HTTP listener on the
  redirect URI's port and captures the redirect itself.
"""

# pylint: disable=logging-too-many-args,C0103,W0212

from __future__ import annotations

import asyncio
import contextlib
import html
import logging
import threading
import webbrowser

from abc import ABC, abstractmethod
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import TYPE_CHECKING, Any
from urllib.parse import parse_qs, urlparse


if TYPE_CHECKING:
    from collections.abc import Callable


logger = logging.getLogger("oidc_session.auth")

# IPv4 only; the listener is an AF_INET HTTPServer
LOOPBACK_HOSTS = ("127.0.0.1", "localhost")

_SUCCESS_HTML = """<!DOCTYPE html>
<html>
<head><title>Sign-in Complete</title>
<style>
  body { font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, sans-serif;
         display: flex; align-items: center; justify-content: center;
         height: 100vh; margin: 0; background: #f0f2f5; color: #1a1a2e; }
  .card { text-align: center; padding: 2rem 3rem; background: white;
          border-radius: 12px; box-shadow: 0 2px 12px rgba(0,0,0,.08); }
</style></head>
<body><div class="card">
  <h1>Done</h1>
  <p>You can close this window and return to the application.</p>
</div></body></html>"""

_ERROR_HTML = """<!DOCTYPE html>
<html>
<head><title>Sign-in Failed</title>
<style>
  body {{ font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, sans-serif;
         display: flex; align-items: center; justify-content: center;
         height: 100vh; margin: 0; background: #f0f2f5; color: #1a1a2e; }}
  .card {{ text-align: center; padding: 2rem 3rem; background: white;
          border-radius: 12px; box-shadow: 0 2px 12px rgba(0,0,0,.08); }}
  h1 {{ color: #cc0000; }}
</style></head>
<body><div class="card">
  <h1>Sign-in Failed</h1>
  <p>{error}</p>
</div></body></html>"""


def matches_redirect(url: str, redirect_uri: str) -> bool:
    """Check whether ``url`` is a redirect to ``redirect_uri``.

    Scheme, authority and path must match; the query is ignored.
    """
    got = urlparse(url)
    want = urlparse(redirect_uri)
    return (
        got.scheme.lower() == want.scheme.lower()
        and got.netloc.lower() == want.netloc.lower()
        and got.path.rstrip("/") == want.path.rstrip("/")
    )


class ExternalUserAgent(ABC):
    """Interface to a browser-like agent able to complete a redirect flow."""

    @abstractmethod
    async def present(self, url: str, redirect_uri: str) -> str | None:
        """Show ``url`` and wait for the redirect to ``redirect_uri``.

        Parameters
        ----------
        url : str
            The authorization or end-session URL.
        redirect_uri : str
            The redirect URI to intercept.

        Returns
        -------
        str or None
            The full callback URL, or None if the user cancelled.
        """

    @abstractmethod
    def cancel(self) -> None:
        """Abort the flow being presented; ``present`` resolves to None."""


class SystemBrowserUserAgent(ExternalUserAgent):
    """Opens the system browser and waits for a delivered callback.

    The application's custom URL scheme handler passes the callback
    URL to ``deliver``. It may be called from any thread.

    Parameters
    ----------
    timeout : float
        Seconds to wait for the callback before treating the flow as
        cancelled (default ``300``).
    open_browser : callable, optional
        Function opening a URL, ``webbrowser.open`` by default.
    """

    def __init__(
        self,
        timeout: float = 300.0,
        open_browser: Callable[[str], Any] | None = None,
    ) -> None:
        """Initialize the browser user agent."""
        self.timeout = timeout
        self._open_browser = open_browser or webbrowser.open
        self._loop: asyncio.AbstractEventLoop | None = None
        self._future: asyncio.Future[str | None] | None = None
        self._redirect_uri: str | None = None

    @property
    def pending(self) -> bool:
        """True while a flow is waiting for its callback."""
        return self._future is not None and not self._future.done()

    async def present(self, url: str, redirect_uri: str) -> str | None:
        """Open ``url`` in the browser and await the callback."""
        self._loop = asyncio.get_running_loop()
        self._future = self._loop.create_future()
        self._redirect_uri = redirect_uri

        opened = self._open_browser(url)
        if opened is False:
            logger.warning("Could not open a browser; open this URL manually: %s", url)

        try:
            return await asyncio.wait_for(self._future, timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning("No redirect received within %.0fs", self.timeout)
            return None
        finally:
            self._future = None
            self._redirect_uri = None

    def deliver(self, callback_url: str) -> bool:
        """Hand the callback URL received by the application to the flow.

        Returns
        -------
        bool
            True if a flow was waiting for this redirect URI.
        """
        future = self._future
        redirect_uri = self._redirect_uri
        loop = self._loop
        if future is None or redirect_uri is None or loop is None:
            return False
        if not matches_redirect(callback_url, redirect_uri):
            logger.debug("Ignoring URL that does not match the pending redirect")
            return False
        loop.call_soon_threadsafe(_resolve, future, callback_url)
        return True

    def cancel(self) -> None:
        """Resolve the pending flow as cancelled."""
        if self._future is not None and self._loop is not None:
            self._loop.call_soon_threadsafe(_resolve, self._future, None)


def _resolve(future: asyncio.Future[str | None], value: str | None) -> None:
    if not future.done():
        future.set_result(value)


class LoopbackUserAgent(ExternalUserAgent):
    """Captures the redirect on an ephemeral localhost HTTP server.

    The redirect URI must be an ``http://127.0.0.1:<port>/...`` (or
    ``localhost``) URI registered with the provider; the listener binds
    that host and port for the duration of one flow.

    Parameters
    ----------
    timeout : float
        Seconds to wait for the redirect (default ``300``).
    open_browser : callable, optional
        Function opening a URL, ``webbrowser.open`` by default.
    """

    def __init__(
        self,
        timeout: float = 300.0,
        open_browser: Callable[[str], Any] | None = None,
    ) -> None:
        """Initialize the loopback user agent."""
        self.timeout = timeout
        self._open_browser = open_browser or webbrowser.open
        self._server: HTTPServer | None = None
        self._thread: threading.Thread | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._future: asyncio.Future[str | None] | None = None

    @property
    def port(self) -> int:
        """Port the listener is bound to (0 when stopped)."""
        if self._server is None:
            return 0
        return int(self._server.server_address[1])

    async def present(self, url: str, redirect_uri: str) -> str | None:
        """Start the listener, open ``url`` and await the redirect."""
        parsed = urlparse(redirect_uri)
        if parsed.scheme != "http" or parsed.hostname not in LOOPBACK_HOSTS:
            msg = f"LoopbackUserAgent needs an http loopback redirect URI, got {redirect_uri}"
            raise ValueError(msg)

        self._loop = asyncio.get_running_loop()
        self._future = self._loop.create_future()
        port = parsed.port if parsed.port is not None else 80
        self._start(parsed.hostname or "127.0.0.1", port, redirect_uri)

        try:
            opened = self._open_browser(url)
            if opened is False:
                logger.warning("Could not open a browser; open this URL manually: %s", url)
            return await asyncio.wait_for(self._future, timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning("No redirect received within %.0fs", self.timeout)
            return None
        finally:
            await asyncio.to_thread(self.stop)
            self._future = None

    def cancel(self) -> None:
        """Resolve the pending flow as cancelled."""
        if self._future is not None and self._loop is not None:
            self._loop.call_soon_threadsafe(_resolve, self._future, None)

    def _start(self, host: str, port: int, redirect_uri: str) -> None:
        """Start the listener on a daemon thread."""
        agent = self
        callback_path = urlparse(redirect_uri).path.rstrip("/") or "/"

        class _CallbackHandler(BaseHTTPRequestHandler):
            """HTTP request handler for the redirect."""

            def do_GET(self) -> None:
                """Handle GET requests."""
                parsed = urlparse(self.path)
                if (parsed.path.rstrip("/") or "/") != callback_path:
                    self.send_error(404)
                    return

                params = parse_qs(parsed.query)
                error = params.get("error_description", params.get("error", [None]))[0]
                if error:
                    self._send_html(_ERROR_HTML.format(error=html.escape(error, quote=True)))
                else:
                    self._send_html(_SUCCESS_HTML)

                future = agent._future
                loop = agent._loop
                if future is not None and loop is not None:
                    callback_url = redirect_uri.split("?", 1)[0]
                    if parsed.query:
                        callback_url = f"{callback_url}?{parsed.query}"
                    loop.call_soon_threadsafe(_resolve, future, callback_url)

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
                """Redirect HTTP server logging to the package logger."""
                if args:
                    logger.debug("Loopback redirect listener: %s", args[0] % args[1:])

        self._server = HTTPServer((host, port), _CallbackHandler)
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)
        self._thread.start()
        logger.debug("Loopback redirect listener started on %s:%s", host, self.port)

    def stop(self) -> None:
        """Shut down the listener."""
        if self._server is not None:
            self._server.shutdown()
            with contextlib.suppress(OSError):
                self._server.server_close()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=5)
        self._server = None
        self._thread = None
