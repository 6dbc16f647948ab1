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
"""

from pathlib import Path
from typing import Optional

import dropbox
import requests


class LinkClonerError(Exception):
    """Base class for errors raised by dropbox_link_cloner."""


class AuthorizationError(LinkClonerError):
    """The OAuth2 authorization could not be completed."""


class RedirectTimeout(AuthorizationError):
    def __init__(self, state: str, timeout: float):
        super().__init__(f"Timed out after {timeout:.0f} seconds in state {state}")
        self.state = state
        self.timeout = timeout


class TransportError(LinkClonerError):
    """A Dropbox API call or the HTTP transport underneath it failed."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        request_uri: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.request_uri = request_uri

    @classmethod
    def from_exception(
        cls, exc: Exception, request_uri: Optional[str] = None
    ) -> "TransportError":
        """Translate an SDK or requests exception into a TransportError."""
        status_code = None
        if isinstance(exc, dropbox.exceptions.ApiError):
            # Route-specific errors are always returned with HTTP 409
            status_code = 409
            message = str(exc.error)
            if exc.user_message_text:
                message = f"{message} ({exc.user_message_text})"
        elif isinstance(exc, dropbox.exceptions.HttpError):
            status_code = exc.status_code
            # AuthError and RateLimitError carry a structured error instead of a body
            detail = exc.body or getattr(exc, "error", None)
            message = str(detail) if detail else type(exc).__name__
        elif isinstance(exc, requests.exceptions.RequestException):
            message = str(exc) or type(exc).__name__
            if exc.response is not None:
                status_code = exc.response.status_code
            if request_uri is None and exc.request is not None:
                request_uri = exc.request.url
        else:
            message = str(exc) or type(exc).__name__
        return cls(message, status_code=status_code, request_uri=request_uri)

    def describe(self) -> str:
        lines = [
            "Exception reported from RPC layer",
            f"    Status code: {self.status_code if self.status_code is not None else 'n/a'}",
            f"    Message    : {self.message}",
        ]
        if self.request_uri:
            lines.append(f"    Request uri: {self.request_uri}")
        return "\n".join(lines)


class LocalIOError(LinkClonerError):
    """Writing a downloaded file to the local disk failed."""

    def __init__(self, path: Path, cause: OSError):
        super().__init__(f"Cannot write {path}: {cause}")
        self.path = path
        self.cause = cause


class SettingsError(LinkClonerError):
    """The settings file cannot be read."""

    def __init__(self, path: Path, cause: Exception):
        super().__init__(f"Cannot read settings from {path}: {cause}")
        self.path = path
        self.cause = cause
