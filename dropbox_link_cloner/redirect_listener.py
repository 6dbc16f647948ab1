"""
License:
dropbox_link_cloner
Copyright (C) 2025  Frédéric Devernay

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at

http://www.apache.org/licenses/LICENSE-2.0

Unless required by applicable law or agreed to in writing, software
distributed under the License is distributed on an "AS IS" BASIS,
WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
See the License for the specific language governing permissions and
limitations under the License.

Loopback HTTP listener capturing the OAuth2 redirect from Dropbox.

Dropbox redirects the browser to /authorize. The browser does not send the
URL fragment to the server, so /authorize answers with a bridge page whose
inline script forwards the full location to /token as the url_with_fragment
query parameter. That value is the result of the capture.
"""

import time
import urllib.parse
from enum import Enum
from http.server import BaseHTTPRequestHandler, HTTPServer
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .errors import AuthorizationError, RedirectTimeout
from .sync_log import SyncLog

# If this port is not available on your machine, pick an unused one and
# register the matching redirect URI on https://www.dropbox.com/developers/apps.
LOOPBACK_HOST = "127.0.0.1"
LOOPBACK_PORT = 52475

AUTHORIZE_PATH = "/authorize"
TOKEN_PATH = "/token"
FRAGMENT_PARAMETER = "url_with_fragment"

DEFAULT_STEP_TIMEOUT = 300.0
CONNECTION_TIMEOUT = 10.0

BRIDGE_PAGE_NAME = "index.html"

DONE_PAGE = (
    b"<html><body><p>Authorization complete. "
    b"You can close this window and return to the terminal.</p></body></html>"
)


class ListenerState(Enum):
    WAIT_AUTHORIZE_REQUEST = "wait_authorize_request"
    SERVE_BRIDGE_PAGE = "serve_bridge_page"
    WAIT_TOKEN_REQUEST = "wait_token_request"
    CAPTURED = "captured"
    DONE = "done"


def find_bridge_page() -> Path:
    """index.html from the working directory, or the copy shipped with the package."""
    local_page = Path.cwd() / BRIDGE_PAGE_NAME
    if local_page.is_file():
        return local_page
    return Path(__file__).with_name(BRIDGE_PAGE_NAME)


class _RedirectRequestHandler(BaseHTTPRequestHandler):
    # Socket timeout for a single connection
    timeout = CONNECTION_TIMEOUT

    def do_GET(self):
        parsed = urllib.parse.urlsplit(self.path)
        route = self.server.listener.routes.get(parsed.path)
        if route is None:
            self.respond(404, b"Not found")
            return
        route(self, urllib.parse.parse_qs(parsed.query))

    def respond(
        self, status: int, body: bytes, content_type: str = "text/plain; charset=utf-8"
    ) -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format, *args):
        log = self.server.listener.log
        if log is not None:
            log.detail("Redirect listener: " + format % args)


class RedirectListener:
    """
    Single-threaded loopback server walking through
    WAIT_AUTHORIZE_REQUEST -> SERVE_BRIDGE_PAGE -> WAIT_TOKEN_REQUEST -> CAPTURED -> DONE.

    Each waiting state is bounded by step_timeout seconds. Requests to
    unknown paths get a 404 and do not change the state.
    """

    def __init__(
        self,
        host: str = LOOPBACK_HOST,
        port: int = LOOPBACK_PORT,
        bridge_page: Optional[Path] = None,
        step_timeout: float = DEFAULT_STEP_TIMEOUT,
        log: Optional[SyncLog] = None,
    ):
        self.host = host
        self.port = port
        self.bridge_page = Path(bridge_page) if bridge_page else find_bridge_page()
        self.step_timeout = step_timeout
        self.log = log
        self.state = ListenerState.WAIT_AUTHORIZE_REQUEST
        self.captured: Optional[str] = None
        self.routes: Dict[str, Callable[[_RedirectRequestHandler, Dict[str, List[str]]], None]] = {
            AUTHORIZE_PATH: self._serve_bridge_page,
            TOKEN_PATH: self._capture_redirect,
        }
        self._bridge_bytes = b""
        self._server: Optional[HTTPServer] = None

    @property
    def base_url(self) -> str:
        if self._server is not None:
            host, port = self._server.server_address[:2]
        else:
            host, port = self.host, self.port
        return f"http://{host}:{port}"

    @property
    def redirect_uri(self) -> str:
        return self.base_url + AUTHORIZE_PATH

    def start(self) -> None:
        # The bridge page is read up front so a missing asset fails before the browser opens
        self._bridge_bytes = self.bridge_page.read_bytes()
        self._server = HTTPServer((self.host, self.port), _RedirectRequestHandler)
        self._server.listener = self
        self.state = ListenerState.WAIT_AUTHORIZE_REQUEST
        self.captured = None
        if self.log is not None:
            self.log.detail(f"Listening for the OAuth2 redirect on {self.redirect_uri}")

    def wait_for_redirect(self) -> str:
        """Block until the redirect URI has been captured and return it."""
        if self._server is None:
            raise AuthorizationError("Redirect listener is not started")

        state = self.state
        deadline = time.monotonic() + self.step_timeout
        while self.state is not ListenerState.CAPTURED:
            if self.state is not state:
                state = self.state
                deadline = time.monotonic() + self.step_timeout
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise RedirectTimeout(self.state.name, self.step_timeout)
            self._server.timeout = remaining
            self._server.handle_request()

        assert self.captured is not None
        return self.captured

    def stop(self) -> None:
        if self._server is not None:
            self._server.server_close()
            self._server = None
        self.state = ListenerState.DONE

    def __enter__(self) -> "RedirectListener":
        self.start()
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.stop()

    def _serve_bridge_page(
        self, handler: _RedirectRequestHandler, params: Dict[str, List[str]]
    ) -> None:
        # A reload of the bridge page before the token arrives is allowed
        if self.state not in (
            ListenerState.WAIT_AUTHORIZE_REQUEST,
            ListenerState.WAIT_TOKEN_REQUEST,
        ):
            handler.respond(409, b"Authorization already captured")
            return
        self.state = ListenerState.SERVE_BRIDGE_PAGE
        handler.respond(200, self._bridge_bytes, "text/html")
        self.state = ListenerState.WAIT_TOKEN_REQUEST

    def _capture_redirect(
        self, handler: _RedirectRequestHandler, params: Dict[str, List[str]]
    ) -> None:
        if self.state is not ListenerState.WAIT_TOKEN_REQUEST:
            handler.respond(409, b"Unexpected request")
            return
        values = params.get(FRAGMENT_PARAMETER)
        if not values or not values[0]:
            handler.respond(400, f"Missing {FRAGMENT_PARAMETER}".encode("utf-8"))
            return
        self.captured = values[0]
        self.state = ListenerState.CAPTURED
        handler.respond(200, DONE_PAGE, "text/html")
