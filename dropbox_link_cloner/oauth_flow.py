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

import urllib.parse
import webbrowser
from datetime import timezone
from typing import Callable, Dict, List, Optional

import requests
from dropbox import DropboxOAuth2Flow
from dropbox.oauth import (
    BadRequestException,
    BadStateException,
    CsrfException,
    NotApprovedException,
    ProviderException,
)

from .errors import AuthorizationError
from .redirect_listener import RedirectListener
from .settings import Settings, SettingsStore
from .sync_log import SyncLog

CSRF_TOKEN_SESSION_KEY = "dropbox-auth-csrf-token"

AUTHORIZATION_ERRORS = (
    AuthorizationError,
    BadRequestException,
    BadStateException,
    CsrfException,
    NotApprovedException,
    ProviderException,
    requests.exceptions.RequestException,
    OSError,
)


def parse_redirect(uri: str) -> Dict[str, str]:
    """Collect the OAuth2 response parameters from both the query and the fragment."""
    parts = urllib.parse.urlsplit(uri)
    params = dict(urllib.parse.parse_qsl(parts.query))
    params.update(urllib.parse.parse_qsl(parts.fragment))
    return params


class AuthorizationFlow:
    def __init__(
        self,
        settings: Settings,
        store: SettingsStore,
        log: SyncLog,
        listener_factory: Callable[..., RedirectListener] = RedirectListener,
        open_browser: Callable[[str], bool] = webbrowser.open,
        prompt: Callable[[str], str] = input,
        oauth_flow_factory: Callable[..., DropboxOAuth2Flow] = DropboxOAuth2Flow,
    ):
        self.settings = settings
        self.store = store
        self.log = log
        self.listener_factory = listener_factory
        self.open_browser = open_browser
        self.prompt = prompt
        self.oauth_flow_factory = oauth_flow_factory

    def _prompt_for_app_credentials(self) -> None:
        self.settings.api_key = self.prompt("API Key: ").strip()
        self.settings.api_secret = self.prompt("API Secret Key: ").strip()
        self.store.save(self.settings)

    def acquire_token(
        self, scopes: List[str], include_granted_scopes: Optional[str] = None
    ) -> Optional[str]:
        """
        Return the Dropbox user id, running the browser authorization if needed.

        A stored access token is reused as is; refreshing it when it expires
        is left to the Dropbox client built from the refresh token.

        Args:
            scopes: Scopes requested at authorization time
            include_granted_scopes: "user" or "team" to also include previously
                granted scopes, or None

        Returns:
            The user id, or None if the authorization failed.
        """
        if self.settings.has_token():
            return self.settings.uid

        if not self.settings.api_secret:
            self._prompt_for_app_credentials()

        try:
            return self._authorize(scopes, include_granted_scopes)
        except AUTHORIZATION_ERRORS as e:
            self.log.error(f"Error: {e}")
            return None

    def _authorize(self, scopes: List[str], include_granted_scopes: Optional[str]) -> str:
        self.log.info("Waiting for credentials.")
        with self.listener_factory(log=self.log) as listener:
            session: Dict[str, str] = {}
            auth_flow = self.oauth_flow_factory(
                self.settings.api_key,
                redirect_uri=listener.redirect_uri,
                session=session,
                csrf_token_session_key=CSRF_TOKEN_SESSION_KEY,
                consumer_secret=self.settings.api_secret,
                token_access_type="offline",
                scope=scopes,
                include_granted_scopes=include_granted_scopes,
            )
            # start() generates the anti-forgery state and keeps it in the session
            authorize_url = auth_flow.start()
            self.log.detail(f"Authorize URL: {authorize_url}")
            if not self.open_browser(authorize_url):
                self.log.info(f"Open this URL in your browser: {authorize_url}")

            redirect_uri = listener.wait_for_redirect()

            self.log.info("Exchanging code for token")
            oauth_result = auth_flow.finish(parse_redirect(redirect_uri))
            self.log.info("Finished exchanging code for token")

        self.log.info(f"Uid: {oauth_result.user_id}")
        self.settings.access_token = oauth_result.access_token
        self.settings.uid = oauth_result.user_id
        if oauth_result.refresh_token:
            self.settings.refresh_token = oauth_result.refresh_token
        expires_at = getattr(oauth_result, "expires_at", None)
        if expires_at is not None:
            # The SDK reports naive UTC datetimes
            if expires_at.tzinfo is None:
                expires_at = expires_at.replace(tzinfo=timezone.utc)
            self.settings.expires_at = expires_at.isoformat()
            self.log.detail(f"ExpiresAt: {self.settings.expires_at}")
        if oauth_result.scope:
            self.settings.scopes = oauth_result.scope.split()
            self.log.detail(f"Scopes: {oauth_result.scope}")
        self.store.save(self.settings)
        return oauth_result.user_id
