import pytest

from dropbox_link_cloner.settings import SettingsStore
from dropbox_link_cloner.sync_log import SyncLog


@pytest.fixture
def log(tmp_path):
    return SyncLog(log_file=str(tmp_path / "run.log"))


@pytest.fixture
def store(tmp_path):
    return SettingsStore(tmp_path / "settings.json")
