from pathlib import Path

import pytest

from trainyard.config import (
    PolicySettings,
    Settings,
    VastSettings,
    _deep_merge,
    get_api_key,
    load_config,
    load_settings,
)
from trainyard.errors import ConfigError

pytestmark = [pytest.mark.unit]

_ENV = ("TRAINYARD_DB_PATH", "API_BASE_URL", "VAST_API_KEY", "TRAINYARD_SSH_KEY", "TRAINYARD_LOG_LEVEL")


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    for name in _ENV:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))


class TestDeepMerge:
    def test_shallow_override(self):
        assert _deep_merge({"a": 1, "b": 2}, {"b": 3}) == {"a": 1, "b": 3}

    def test_nested_merge(self):
        base = {"vast": {"default_gpu": "RTX 3090", "disk_gb": 50}}
        override = {"vast": {"default_gpu": "A100"}}
        assert _deep_merge(base, override) == {"vast": {"default_gpu": "A100", "disk_gb": 50}}

    def test_empty_sides(self):
        assert _deep_merge({}, {"a": 1}) == {"a": 1}
        assert _deep_merge({"a": 1}, {}) == {"a": 1}


class TestLoadConfig:
    def test_missing_files_give_defaults(self, tmp_path: Path):
        settings = load_settings(project_dir=tmp_path, global_path=tmp_path / "nope.toml")
        assert settings == Settings()

    def test_project_overrides_global(self, tmp_path: Path):
        global_toml = tmp_path / "defaults.toml"
        global_toml.write_text('[vast]\ndefault_gpu = "RTX 4090"\ndisk_gb = 80\n')
        project = tmp_path / "project"
        project.mkdir()
        (project / "trainyard.toml").write_text('[vast]\ndefault_gpu = "A100"\n')

        settings = load_settings(project_dir=project, global_path=global_toml)

        assert settings.vast.default_gpu == "A100"
        assert settings.vast.disk_gb == 80

    def test_sections(self, tmp_path: Path):
        (tmp_path / "trainyard.toml").write_text(
            'db_path = "/var/lib/trainyard.db"\n'
            "[policy]\npause_ratio = 2.5\nlow_balance_floor = 250\n"
            '[log]\nlevel = "DEBUG"\nconsole = false\n'
        )
        settings = load_settings(project_dir=tmp_path, global_path=tmp_path / "nope.toml")

        assert settings.db_path == "/var/lib/trainyard.db"
        assert settings.policy == PolicySettings(pause_ratio=2.5, low_balance_floor=250)
        assert settings.log.level == "DEBUG"
        assert settings.log.console is False

    def test_env_wins(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        (tmp_path / "trainyard.toml").write_text('db_path = "from-file.db"\n')
        monkeypatch.setenv("TRAINYARD_DB_PATH", "from-env.db")
        monkeypatch.setenv("VAST_API_KEY", "env-key")
        monkeypatch.setenv("TRAINYARD_LOG_LEVEL", "warning")

        raw = load_config(project_dir=tmp_path, global_path=tmp_path / "nope.toml")

        assert raw["db_path"] == "from-env.db"
        assert raw["vast"]["api_key"] == "env-key"
        assert raw["log"]["level"] == "WARNING"

    def test_unknown_key_rejected(self, tmp_path: Path):
        (tmp_path / "trainyard.toml").write_text("[policy]\npause_ration = 3\n")
        with pytest.raises(ConfigError, match="pause_ration"):
            load_settings(project_dir=tmp_path, global_path=tmp_path / "nope.toml")

    def test_invalid_toml(self, tmp_path: Path):
        (tmp_path / "trainyard.toml").write_text("[vast\n")
        with pytest.raises(ConfigError, match="Invalid TOML"):
            load_settings(project_dir=tmp_path, global_path=tmp_path / "nope.toml")


class TestApiKey:
    def test_settings_first(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("VAST_API_KEY", "env-key")
        assert get_api_key(VastSettings(api_key="explicit")) == "explicit"

    def test_env(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("VAST_API_KEY", "env-key")
        assert get_api_key(VastSettings()) == "env-key"

    def test_vastai_config_file(self, tmp_path: Path):
        key_file = tmp_path / "home" / ".config" / "vastai" / "vast_api_key"
        key_file.parent.mkdir(parents=True)
        key_file.write_text("file-key\n")
        assert get_api_key() == "file-key"

    def test_missing(self):
        with pytest.raises(ConfigError, match="API key not found"):
            get_api_key(VastSettings())
