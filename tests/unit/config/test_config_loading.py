"""Tests for layered config loading and validation."""

import json
from pathlib import Path

import pytest

from parley.config.loader import load_config
from parley.config.schema import Config, ProfileConfig
from parley.core.errors import ConfigurationError


@pytest.fixture(autouse=True)
def isolated_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    return home


def write_json(path: Path, data: object) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data))
    return path


class TestLoadConfig:
    def test_shipped_defaults(self) -> None:
        config = load_config()

        assert config.default_profile == "flash"
        assert config.get_profile().provider == "gemini"
        assert set(config.profiles) >= {"flash", "developer", "llama", "local"}
        assert config.compaction.threshold == 10
        assert config.compaction.recent_window == 5
        assert config.stream.flush_interval == 0.1

    def test_user_file_merged_over_defaults(self, isolated_home: Path) -> None:
        write_json(isolated_home / ".parley" / "config.json", {
            "default_profile": "local",
            "compaction": {"threshold": 20},
        })

        config = load_config()

        assert config.default_profile == "local"
        assert config.compaction.threshold == 20
        assert config.compaction.recent_window == 5
        assert "flash" in config.profiles

    def test_explicit_path(self, tmp_path: Path) -> None:
        path = write_json(tmp_path / "custom.json", {
            "profiles": {"mine": {"provider": "groq", "model": "llama-3.1-8b-instant"}},
            "tools": {"disabled": ["internet_search"]},
        })

        config = load_config(path)

        assert config.profiles["mine"].model == "llama-3.1-8b-instant"
        assert config.tools.disabled == ["internet_search"]

    def test_missing_explicit_path(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError, match="File not found"):
            load_config(tmp_path / "nope.json")

    def test_invalid_json(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.json"
        path.write_text("{nope")

        with pytest.raises(ConfigurationError, match="Invalid JSON"):
            load_config(path)

    def test_non_object_json(self, tmp_path: Path) -> None:
        path = write_json(tmp_path / "list.json", [1, 2])

        with pytest.raises(ConfigurationError, match="Expected object"):
            load_config(path)

    def test_unknown_provider_reference(self, tmp_path: Path) -> None:
        path = write_json(tmp_path / "c.json", {
            "profiles": {"broken": {"provider": "nowhere", "model": "m"}},
        })

        with pytest.raises(ConfigurationError, match="unknown provider 'nowhere'"):
            load_config(path)

    def test_unknown_keys_rejected(self, tmp_path: Path) -> None:
        path = write_json(tmp_path / "c.json", {"compaction": {"threshhold": 3}})

        with pytest.raises(ConfigurationError):
            load_config(path)


class TestConfigModel:
    def test_builtin_default_is_offline(self) -> None:
        config = Config()

        assert config.get_profile().provider == "offline"
        assert config.get_provider_config("offline").type == "offline"

    def test_unknown_profile_lookup(self) -> None:
        with pytest.raises(KeyError):
            Config().get_profile("missing")

    def test_unknown_default_profile(self) -> None:
        with pytest.raises(ValueError):
            Config(default_profile="missing")

    def test_base_url_trailing_slash_stripped(self) -> None:
        config = Config.model_validate({
            "providers": {
                "offline": {"type": "offline", "auth_method": "none", "base_url": ""},
                "local": {"type": "openai", "base_url": "http://localhost:8080/v1/"},
            },
            "profiles": {"local": ProfileConfig(provider="local", model="m").model_dump()},
        })

        assert config.providers["local"].base_url == "http://localhost:8080/v1"
