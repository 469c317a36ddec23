"""Tests for sync settings and token storage."""

import json
from datetime import datetime, timezone
from unittest.mock import patch

import pytest
from keyring.backends import fail

from lunasync.config.sync_config import (
    Credentials,
    SyncConfig,
    load_sync_config,
    save_sync_config,
    validate_sync_config,
)
from lunasync.config.user_config import get_app_data_dir, get_database_path
from lunasync.sync.exceptions import ConfigError, MissingRemoteIdError
from lunasync.sync.token_manager import TokenManager


class TestPaths:
    """Tests for application directories."""

    def test_env_override(self, app_home):
        assert get_app_data_dir() == app_home
        assert get_database_path() == app_home / "library.db"

    def test_default_home(self, monkeypatch, tmp_path):
        monkeypatch.delenv("LUNASYNC_HOME")
        monkeypatch.setattr("pathlib.Path.home", lambda: tmp_path)

        assert get_app_data_dir() == tmp_path / ".lunasync"


class TestSyncConfig:
    """Tests for persisted sync settings."""

    def test_missing_file_gives_defaults(self, tmp_path):
        config = load_sync_config(tmp_path / "none.json")

        assert config == SyncConfig()
        assert config.sync_interval == 300

    def test_save_and_load(self, tmp_path):
        path = tmp_path / "sync.json"
        config = SyncConfig(
            enabled=True,
            last_sync_time=datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc),
            sync_interval=60,
            remote_id="abc",
            credentials=Credentials(username="tester", token="secret"),
            last_synced_entity_ids=["n1"],
        )

        save_sync_config(config, path)
        loaded = load_sync_config(path)

        assert loaded.remote_id == "abc"
        assert loaded.last_sync_time == config.last_sync_time
        assert loaded.credentials.username == "tester"
        assert loaded.last_synced_entity_ids == ["n1"]

    def test_token_never_written(self, tmp_path):
        path = tmp_path / "sync.json"

        save_sync_config(SyncConfig(credentials=Credentials("tester", "secret")), path)

        assert "secret" not in path.read_text()
        assert load_sync_config(path).credentials.token == ""

    def test_default_location(self, app_home):
        save_sync_config(SyncConfig(remote_id="x"))

        assert (app_home / "sync_config.json").exists()
        assert load_sync_config().remote_id == "x"

    def test_corrupt_file_gives_defaults(self, tmp_path):
        path = tmp_path / "sync.json"
        path.write_text("{broken")

        assert load_sync_config(path) == SyncConfig()

    def test_invalid_values_fall_back(self):
        config = SyncConfig.from_dict({"sync_interval": -5, "last_sync_time": "garbage", "remote_id": ""})

        assert config.sync_interval == 300
        assert config.last_sync_time is None
        assert config.remote_id is None


class TestValidateSyncConfig:
    """Tests for pre-flight validation."""

    def test_valid(self, config):
        validate_sync_config(config)

    def test_missing_token(self):
        config = SyncConfig(credentials=Credentials(username="tester"))

        with pytest.raises(ConfigError, match="GitHub token"):
            validate_sync_config(config)

    def test_missing_both(self):
        with pytest.raises(ConfigError, match="username and GitHub token"):
            validate_sync_config(SyncConfig())

    def test_remote_id_required(self, config):
        with pytest.raises(MissingRemoteIdError):
            validate_sync_config(config, require_remote_id=True)

        config.remote_id = "abc"
        validate_sync_config(config, require_remote_id=True)


class TestTokenManager:
    """Tests for token storage priority."""

    def test_env_var_wins(self, monkeypatch, tmp_path):
        monkeypatch.setenv(TokenManager.ENV_VAR, "from-env")

        manager = TokenManager(tmp_path)

        assert manager.get_token() == "from-env"
        assert manager.get_storage_location() == f"Environment variable: {TokenManager.ENV_VAR}"

    def test_file_fallback_without_keyring(self, tmp_path):
        manager = TokenManager(tmp_path)

        with patch("keyring.get_keyring", return_value=fail.Keyring()):
            assert manager.set_token("ghp_file") is False
            assert manager.get_token() == "ghp_file"
            assert manager.get_storage_location().startswith("Config file")
            assert manager.delete_token() is True
            assert manager.get_token() is None

    def test_keyring_storage(self, tmp_path):
        manager = TokenManager(tmp_path)
        stored = {}

        with patch("keyring.get_keyring") as get_keyring, \
                patch("keyring.set_password", side_effect=lambda s, u, p: stored.update({(s, u): p})), \
                patch("keyring.get_password", side_effect=lambda s, u: stored.get((s, u))):
            get_keyring.return_value = object()

            assert manager.set_token("ghp_key") is True
            assert manager.get_token() == "ghp_key"
            assert not manager.config_file.exists()

    def test_empty_token_rejected(self, tmp_path):
        with pytest.raises(ValueError):
            TokenManager(tmp_path).set_token("")
