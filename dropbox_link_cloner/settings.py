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

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from .errors import SettingsError

# Persisted key names
API_KEY = "ApiKey"
API_SECRET = "ApiSecret"
ACCESS_TOKEN = "AccessToken"
REFRESH_TOKEN = "RefreshToken"
UID = "Uid"
EXPIRES_AT = "ExpiresAt"
SCOPES = "Scopes"
SHARED_LINKS = "SharedLinks"


@dataclass
class Settings:
    api_key: str = ""
    api_secret: str = ""
    access_token: str = ""
    refresh_token: str = ""
    uid: str = ""
    expires_at: str = ""
    scopes: List[str] = field(default_factory=list)
    shared_links: List[str] = field(default_factory=list)

    def has_token(self) -> bool:
        return bool(self.access_token and self.uid)

    def expiration(self) -> Optional[datetime]:
        """Access token expiry as an aware UTC datetime, if one was recorded."""
        if not self.expires_at:
            return None
        expiration = datetime.fromisoformat(self.expires_at)
        if expiration.tzinfo is None:
            expiration = expiration.replace(tzinfo=timezone.utc)
        return expiration

    def token_expired(self, now: Optional[datetime] = None) -> bool:
        expiration = self.expiration()
        if expiration is None:
            return False
        now = now or datetime.now(timezone.utc)
        return now >= expiration

    def to_dict(self) -> Dict[str, object]:
        return {
            API_KEY: self.api_key,
            API_SECRET: self.api_secret,
            ACCESS_TOKEN: self.access_token,
            REFRESH_TOKEN: self.refresh_token,
            UID: self.uid,
            EXPIRES_AT: self.expires_at,
            SCOPES: list(self.scopes),
            SHARED_LINKS: list(self.shared_links),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, object]) -> "Settings":
        return cls(
            api_key=data.get(API_KEY) or "",
            api_secret=data.get(API_SECRET) or "",
            access_token=data.get(ACCESS_TOKEN) or "",
            refresh_token=data.get(REFRESH_TOKEN) or "",
            uid=data.get(UID) or "",
            expires_at=data.get(EXPIRES_AT) or "",
            scopes=list(data.get(SCOPES) or []),
            shared_links=list(data.get(SHARED_LINKS) or []),
        )


class SettingsStore:
    """Settings persisted as a JSON file between runs."""

    def __init__(self, path):
        self.path = Path(path)

    def _read_settings_file(self) -> Dict[str, object]:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            return {}

    def load(self) -> Settings:
        """Raises SettingsError if the file is not valid settings JSON."""
        try:
            data = self._read_settings_file()
            if not isinstance(data, dict):
                raise ValueError("expected a JSON object")
            settings = Settings.from_dict(data)
            settings.expiration()
        except (ValueError, TypeError) as e:
            raise SettingsError(self.path, e) from e
        return settings

    def save(self, settings: Settings) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump(settings.to_dict(), f, indent=4)

    def reset_all(self) -> Settings:
        settings = Settings()
        self.save(settings)
        return settings

    def reset_shared_links(self, settings: Settings) -> Settings:
        settings.shared_links = []
        self.save(settings)
        return settings
