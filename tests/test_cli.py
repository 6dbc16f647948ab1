from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from dropbox_link_cloner import cli
from dropbox_link_cloner.settings import Settings


def args(**kwargs):
    values = dict(verbose=False, no_prompt=True, reset_all=False, reset_shared_links=False)
    values.update(kwargs)
    return SimpleNamespace(**values)


def stored_settings():
    return Settings(
        api_key="k",
        api_secret="s",
        access_token="a",
        refresh_token="r",
        uid="dbid:1",
        shared_links=["https://www.dropbox.com/sh/one"],
    )


class FakeFlow:
    def __init__(self, settings, store, log, prompt=input):
        self.settings = settings

    def acquire_token(self, scopes):
        assert "account_info.read" in scopes
        return self.settings.uid or None


class FakeClient:
    def __init__(self):
        self.refreshed_with = None
        self._oauth2_access_token = "refreshed"
        self._oauth2_access_token_expiration = None

    def refresh_access_token(self, scope=None):
        self.refreshed_with = scope


@pytest.fixture
def no_network(monkeypatch):
    def fail(*a, **kw):
        raise AssertionError("no network access expected")

    monkeypatch.setattr(cli, "AuthorizationFlow", fail)
    monkeypatch.setattr(cli, "build_client", fail)


def test_flags_are_case_insensitive_and_accept_slash():
    parsed = cli.parse_args(["/V", "-NP", "--Reset-Shared-Links"])
    assert parsed.verbose
    assert parsed.no_prompt
    assert parsed.reset_shared_links
    assert not parsed.reset_all

    parsed = cli.parse_args(["-ra", "/rsl"])
    assert parsed.reset_all
    assert parsed.reset_shared_links


@pytest.mark.parametrize("flag", ["-?", "-h", "--help", "/?", "/H"])
def test_help_exits_without_running(flag, capsys, no_network):
    with pytest.raises(SystemExit) as excinfo:
        cli.main([flag])
    assert excinfo.value.code == 0
    out = capsys.readouterr().out
    assert "--reset-shared-links" in out


@pytest.mark.parametrize("argv", [["--bogus"], ["-v", "/x"], ["extra"]])
def test_unknown_flag_prints_help_and_fails(argv, capsys, no_network):
    with pytest.raises(SystemExit) as excinfo:
        cli.main(argv)
    assert excinfo.value.code == 1
    captured = capsys.readouterr()
    assert "error" in captured.err
    assert "--no-prompt" in captured.out


def test_authorization_failure_exits_with_one(store, log, tmp_path):
    store.save(Settings(api_key="k", api_secret="s"))
    code = cli.run(args(), store, tmp_path, log, authorization_factory=FakeFlow)
    assert code == 1


def test_reset_shared_links_keeps_tokens(store, log, tmp_path, monkeypatch):
    store.save(stored_settings())
    prompts = iter(["https://www.dropbox.com/sh/two", ""])
    synced = []

    class RecordingSyncer:
        def __init__(self, dbx, documents_root, log):
            pass

        def sync_all(self, links):
            synced.extend(links)

    client = FakeClient()
    monkeypatch.setattr(cli, "SharedLinkSyncer", RecordingSyncer)
    code = cli.run(
        args(reset_shared_links=True),
        store,
        tmp_path,
        log,
        prompt=lambda label: next(prompts),
        authorization_factory=FakeFlow,
        client_factory=lambda settings: client,
    )

    assert code == 0
    assert synced == ["https://www.dropbox.com/sh/two"]
    assert client.refreshed_with == cli.SYNC_SCOPES
    saved = store.load()
    assert saved.shared_links == ["https://www.dropbox.com/sh/two"]
    assert saved.access_token == "refreshed"
    assert saved.refresh_token == "r"
    assert saved.uid == "dbid:1"


def test_reset_all_clears_settings_before_authorizing(store, log, tmp_path):
    store.save(stored_settings())
    seen = []

    class RecordingFlow(FakeFlow):
        def acquire_token(self, scopes):
            seen.append(self.settings)
            return None

    code = cli.run(args(reset_all=True), store, tmp_path, log, authorization_factory=RecordingFlow)

    assert code == 1
    assert seen == [Settings()]
    assert store.load() == Settings()


def test_transport_error_during_setup_is_reported(store, log, tmp_path, capsys):
    import dropbox

    store.save(stored_settings())

    class ExpiredRefresh(FakeClient):
        def refresh_access_token(self, scope=None):
            raise dropbox.exceptions.BadInputError("req-9", "invalid refresh token")

    code = cli.run(
        args(),
        store,
        tmp_path,
        log,
        authorization_factory=FakeFlow,
        client_factory=lambda settings: ExpiredRefresh(),
    )

    assert code == 0
    err = capsys.readouterr().err
    assert "Exception reported from RPC layer" in err
    assert "Status code: 400" in err


def test_prompt_for_shared_links_keeps_order_and_duplicates(store):
    settings = Settings()
    answers = iter(["https://a", "https://b", "https://a", "  "])
    cli.prompt_for_shared_links(settings, store, lambda label: next(answers))
    assert store.load().shared_links == ["https://a", "https://b", "https://a"]


def account(team=None):
    return SimpleNamespace(
        account_id="dbid:AAH4f99T0taONIb-OurWxbNQ6ywGRopQngc",
        country="FR",
        email="franz@example.com",
        is_paired=False,
        locale="fr",
        name=SimpleNamespace(
            display_name="Franz Ferdinand (Personal)",
            familiar_name="Franz",
            given_name="Franz",
            surname="Ferdinand",
        ),
        referral_link="https://db.tt/ZITNuhtI",
        team=team,
    )


class AccountClient(FakeClient):
    def __init__(self, full_account):
        super().__init__()
        self.full_account = full_account

    def users_get_current_account(self):
        return self.full_account


def test_show_current_account_with_team(log, capsys):
    team = SimpleNamespace(id="dbtid:1234abcd", name="Acme, Inc.")
    cli.show_current_account(AccountClient(account(team=team)), log)

    out = capsys.readouterr().out
    assert "Account id    : dbid:AAH4f99T0taONIb-OurWxbNQ6ywGRopQngc" in out
    assert "Is paired     : No" in out
    assert "  Display  : Franz Ferdinand (Personal)" in out
    assert "  Surname  : Ferdinand" in out
    assert "  Id   : dbtid:1234abcd" in out
    assert "  Name : Acme, Inc." in out
    assert "Team - None" not in out


def test_show_current_account_without_team(log, capsys):
    cli.show_current_account(AccountClient(account()), log)
    out = capsys.readouterr().out
    assert "Team - None" in out
    assert "Email         : franz@example.com" in out


def test_verbose_run_shows_account(store, log, tmp_path, monkeypatch, capsys):
    store.save(stored_settings())
    client = AccountClient(account())

    class NoopSyncer:
        def __init__(self, dbx, documents_root, log):
            pass

        def sync_all(self, links):
            pass

    monkeypatch.setattr(cli, "SharedLinkSyncer", NoopSyncer)
    code = cli.run(
        args(verbose=True),
        store,
        tmp_path,
        log,
        authorization_factory=FakeFlow,
        client_factory=lambda settings: client,
    )

    assert code == 0
    assert client.refreshed_with == cli.SYNC_SCOPES + ["account_info.read"]
    assert "Current Account:" in capsys.readouterr().out


def test_refresh_persists_new_expiration(store):
    settings = stored_settings()
    client = FakeClient()
    # The SDK keeps naive UTC datetimes
    client._oauth2_access_token_expiration = datetime(2024, 1, 1, 4, 0, 0)

    cli.refresh_access_token(client, settings, store, cli.SYNC_SCOPES)

    saved = store.load()
    assert saved.access_token == "refreshed"
    assert saved.expires_at == "2024-01-01T04:00:00+00:00"
    assert saved.expiration() == datetime(2024, 1, 1, 4, 0, tzinfo=timezone.utc)


def test_build_client_passes_tokens_and_naive_utc_expiry():
    settings = stored_settings()
    settings.expires_at = "2024-01-01T06:00:00+02:00"

    dbx = cli.build_client(settings)

    # refresh_access_token reads these attributes back after a refresh
    assert dbx._oauth2_access_token == "a"
    assert dbx._oauth2_refresh_token == "r"
    assert dbx._oauth2_access_token_expiration == datetime(2024, 1, 1, 4, 0, 0)
    assert dbx._oauth2_access_token_expiration.tzinfo is None


def test_expired_token_is_refreshed_and_logged(store, log, tmp_path, monkeypatch):
    settings = stored_settings()
    settings.expires_at = "2000-01-01T00:00:00+00:00"
    store.save(settings)
    client = FakeClient()
    monkeypatch.setattr(
        cli, "SharedLinkSyncer", lambda dbx, root, log: SimpleNamespace(sync_all=lambda links: None)
    )

    code = cli.run(
        args(), store, tmp_path, log, authorization_factory=FakeFlow, client_factory=lambda s: client
    )

    assert code == 0
    assert client.refreshed_with == cli.SYNC_SCOPES
    with open(log.log_file, encoding="utf-8") as f:
        assert "Cached access token expired at 2000-01-01T00:00:00+00:00, refreshing" in f.read()


def test_expired_token_without_refresh_token_warns(store, log, tmp_path, monkeypatch, capsys):
    settings = stored_settings()
    settings.refresh_token = ""
    settings.expires_at = "2000-01-01T00:00:00+00:00"
    store.save(settings)
    monkeypatch.setattr(
        cli, "SharedLinkSyncer", lambda dbx, root, log: SimpleNamespace(sync_all=lambda links: None)
    )

    cli.run(
        args(), store, tmp_path, log, authorization_factory=FakeFlow, client_factory=lambda s: FakeClient()
    )

    assert "--reset-all" in capsys.readouterr().err


def test_corrupt_settings_file_is_reported(store, log, tmp_path, capsys, no_network):
    store.path.write_text("{not json", encoding="utf-8")

    code = cli.run(args(), store, tmp_path, log)

    assert code == 1
    err = capsys.readouterr().err
    assert "Cannot read settings" in err
    assert "--reset-all" in err


def test_reset_all_recovers_from_corrupt_settings_file(store, log, tmp_path):
    store.path.write_text("{not json", encoding="utf-8")

    code = cli.run(args(reset_all=True), store, tmp_path, log, authorization_factory=FakeFlow)

    assert code == 1
    assert store.load() == Settings()
