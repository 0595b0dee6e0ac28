"""Tests for YAML configuration."""

import pytest
import yaml

from studysync.config import ConfigError, ConfigModel, load_config, save_config
from studysync.cloud.google_drive import TOKEN_ENV_VAR


@pytest.fixture(autouse=True)
def no_env_token(monkeypatch):
    monkeypatch.delenv(TOKEN_ENV_VAR, raising=False)


class TestConfigModel:

    def test_defaults(self):
        config = ConfigModel(data_dir="/tmp/studysync-test")

        assert config.provider == "google_drive"
        assert config.backup_file_name == "studypal.db.json"
        assert config.debounce_seconds == 5.0
        assert config.cooldown_seconds == 2.0
        assert config.clock_skew_ms == 1000
        assert config.max_upload_bytes == 10 * 1024 * 1024
        assert config.embed_binary_in_backup is True

    def test_paths(self, tmp_path):
        config = ConfigModel(data_dir=str(tmp_path), database_name="mine.db")

        assert config.get_database_path() == tmp_path / "mine.db"
        assert config.get_sync_state_path() == tmp_path / "sync_state.json"
        assert config.get_config_path() == tmp_path / "config.yaml"

    def test_user_paths_are_expanded(self):
        config = ConfigModel(data_dir="~/somewhere", provider="local_folder", remote_folder="~/share")

        assert not config.data_dir.startswith("~")
        assert not config.remote_folder.startswith("~")

    def test_unknown_provider(self):
        with pytest.raises(ConfigError):
            ConfigModel(provider="dropbox")

    def test_token_from_environment(self, monkeypatch):
        monkeypatch.setenv(TOKEN_ENV_VAR, "env-token")

        config = ConfigModel()

        assert config.google_drive_token == "env-token"
        assert yaml.safe_load(config.to_yaml())["google_drive_token"] is None

    def test_yaml_round_trip(self, tmp_path):
        config = ConfigModel(data_dir=str(tmp_path), provider="local_folder",
                             remote_folder=str(tmp_path / "remote"), debounce_seconds=1.5)

        restored = ConfigModel.from_yaml(config.to_yaml())

        assert restored == config

    def test_unknown_keys_are_ignored(self):
        config = ConfigModel.from_yaml("provider: local_folder\ntheme: dark\n")

        assert config.provider == "local_folder"

    def test_non_mapping_yaml(self):
        with pytest.raises(ConfigError):
            ConfigModel.from_yaml("- just\n- a list\n")


class TestLoadSave:

    def test_missing_file_gives_defaults(self, tmp_path):
        config = load_config(tmp_path / "absent.yaml")

        assert config == ConfigModel()

    def test_save_then_load(self, tmp_path):
        path = tmp_path / "conf" / "config.yaml"
        config = ConfigModel(data_dir=str(tmp_path), clock_skew_ms=250)

        save_config(config, path)

        assert load_config(path).clock_skew_ms == 250

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("provider: [unclosed\n")

        with pytest.raises(ConfigError):
            load_config(path)
