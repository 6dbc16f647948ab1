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

import argparse
import os
import sys
from pathlib import Path
from typing import Callable, List, Optional

import dropbox

from .errors import SettingsError, TransportError
from .oauth_flow import AuthorizationFlow
from .settings import Settings, SettingsStore
from .sync_log import SyncLog
from .syncer import API_ERRORS, SharedLinkSyncer, as_utc

AUTHORIZATION_SCOPES = [
    "files.metadata.read",
    "files.content.read",
    "account_info.read",
    "sharing.read",
]
SYNC_SCOPES = ["files.metadata.read", "files.content.read", "sharing.read"]

# Maximum time without receiving any byte from the server
READ_WRITE_TIMEOUT = 10.0
USER_AGENT = "DropboxLinkCloner"

SETTINGS_FILE_ENV = "DROPBOX_LINK_CLONER_SETTINGS"
DOCUMENTS_ROOT_ENV = "DROPBOX_LINK_CLONER_DOCUMENTS"


def default_settings_file() -> Path:
    return Path(os.environ.get(SETTINGS_FILE_ENV) or Path.home() / ".dropbox_link_cloner.json")


def default_documents_root() -> Path:
    return Path(os.environ.get(DOCUMENTS_ROOT_ENV) or Path.home() / "Documents")


class _ArgumentParser(argparse.ArgumentParser):
    def error(self, message):
        sys.stderr.write(f"{self.prog}: error: {message}\n")
        self.print_help(sys.stdout)
        sys.exit(1)


def build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog="dropbox_link_cloner",
        description="Mirror Dropbox shared-link folders into local folders.",
        prefix_chars="-/",
        add_help=False,
        allow_abbrev=False,
    )
    parser.add_argument(
        "-v", "--verbose", "/v", "/verbose",
        dest="verbose",
        action="store_true",
        help="Print detailed progress information.",
    )
    parser.add_argument(
        "-np", "--no-prompt", "/np", "/no-prompt",
        dest="no_prompt",
        action="store_true",
        help="Do not wait for a key press before exiting.",
    )
    parser.add_argument(
        "-ra", "--reset-all", "/ra", "/reset-all",
        dest="reset_all",
        action="store_true",
        help="Clear all saved settings, including credentials and shared links.",
    )
    parser.add_argument(
        "-rsl", "--reset-shared-links", "/rsl", "/reset-shared-links",
        dest="reset_shared_links",
        action="store_true",
        help="Clear the saved shared links and ask for them again.",
    )
    parser.add_argument(
        "-?", "-h", "--help", "/?", "/h", "/help",
        action="help",
        help="Show this help message and exit.",
    )
    return parser


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    if argv is None:
        argv = sys.argv[1:]
    # Flags are case-insensitive
    argv = [arg.lower() if arg[:1] in "-/" else arg for arg in argv]
    return build_parser().parse_args(argv)


def build_client(settings: Settings) -> dropbox.Dropbox:
    expiration = settings.expiration()
    if expiration is not None:
        # The SDK compares against naive UTC datetimes
        expiration = as_utc(expiration).replace(tzinfo=None)
    return dropbox.Dropbox(
        oauth2_access_token=settings.access_token or None,
        oauth2_refresh_token=settings.refresh_token or None,
        oauth2_access_token_expiration=expiration,
        app_key=settings.api_key,
        app_secret=settings.api_secret,
        session=dropbox.create_session(),
        timeout=READ_WRITE_TIMEOUT,
        user_agent=USER_AGENT,
    )


def refresh_access_token(
    dbx: dropbox.Dropbox, settings: Settings, store: SettingsStore, scopes: List[str]
) -> None:
    if not settings.refresh_token:
        return
    try:
        dbx.refresh_access_token(scope=scopes)
    except API_ERRORS as e:
        raise TransportError.from_exception(e) from e

    # The SDK has no public accessor for the refreshed token. dropbox 11.x and 12.x keep
    # it in these attributes, set in Dropbox.__init__ and by refresh_access_token.
    access_token = getattr(dbx, "_oauth2_access_token", None)
    if access_token:
        settings.access_token = access_token
        expiration = getattr(dbx, "_oauth2_access_token_expiration", None)
        if expiration is not None:
            settings.expires_at = as_utc(expiration).isoformat()
        store.save(settings)


def show_current_account(dbx: dropbox.Dropbox, log: SyncLog) -> None:
    """Print information about the currently authorized account."""
    try:
        full = dbx.users_get_current_account()
    except API_ERRORS as e:
        log.error(TransportError.from_exception(e).describe())
        return

    log.info("Current Account:")
    log.info(f"Account id    : {full.account_id}")
    log.info(f"Country       : {full.country}")
    log.info(f"Email         : {full.email}")
    log.info(f"Is paired     : {'Yes' if full.is_paired else 'No'}")
    log.info(f"Locale        : {full.locale}")
    log.info("Name")
    log.info(f"  Display  : {full.name.display_name}")
    log.info(f"  Familiar : {full.name.familiar_name}")
    log.info(f"  Given    : {full.name.given_name}")
    log.info(f"  Surname  : {full.name.surname}")
    log.info(f"Referral link : {full.referral_link}")
    if full.team is not None:
        log.info("Team")
        log.info(f"  Id   : {full.team.id}")
        log.info(f"  Name : {full.team.name}")
    else:
        log.info("Team - None")


def prompt_for_shared_links(
    settings: Settings, store: SettingsStore, prompt: Callable[[str], str]
) -> None:
    settings.shared_links = []
    label = "Shared link: "
    while True:
        try:
            line = prompt(label).strip()
        except EOFError:
            break
        if not line:
            break
        settings.shared_links.append(line)
        label = "Shared link (leave blank to finish): "
    store.save(settings)


def run(
    args: argparse.Namespace,
    store: SettingsStore,
    documents_root: Path,
    log: SyncLog,
    prompt: Callable[[str], str] = input,
    authorization_factory: Callable[..., AuthorizationFlow] = AuthorizationFlow,
    client_factory: Callable[[Settings], dropbox.Dropbox] = build_client,
) -> int:
    if args.reset_all:
        settings = store.reset_all()
        log.info("All settings cleared")
    else:
        try:
            settings = store.load()
        except SettingsError as e:
            log.error(f"{e}\nRun with --reset-all to start over.")
            return 1
        if args.reset_shared_links:
            store.reset_shared_links(settings)
            log.info("Shared links cleared")

    flow = authorization_factory(settings, store, log, prompt=prompt)
    uid = flow.acquire_token(AUTHORIZATION_SCOPES)
    if not uid:
        return 1

    try:
        if settings.token_expired():
            if settings.refresh_token:
                log.detail(f"Cached access token expired at {settings.expires_at}, refreshing")
            else:
                log.warning(
                    f"Cached access token expired at {settings.expires_at} and there is no "
                    "refresh token. Run with --reset-all to authorize again."
                )
        dbx = client_factory(settings)
        scopes = SYNC_SCOPES + ["account_info.read"] if args.verbose else SYNC_SCOPES
        refresh_access_token(dbx, settings, store, scopes)
        if args.verbose:
            show_current_account(dbx, log)

        if not settings.shared_links:
            prompt_for_shared_links(settings, store, prompt)

        syncer = SharedLinkSyncer(dbx, documents_root, log)
        syncer.sync_all(settings.shared_links)
        log.info("All downloads complete!")
    except TransportError as e:
        log.error(e.describe())

    if not args.no_prompt:
        try:
            prompt("Exit with any key")
        except EOFError:
            pass
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    log = SyncLog(verbose=args.verbose)
    store = SettingsStore(default_settings_file())
    return run(args, store, default_documents_root(), log)
