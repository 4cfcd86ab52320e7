"""Configuration loader tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from wpid.config import (
    AppConfig,
    ConfigError,
    get_global_value,
    load_config,
    normalise_sites_base_directory,
    set_global_value,
)
from wpid.ports import DEFAULT_RANGES, PortRange
from wpid.state import StateRegistry


def test_load_config_defaults_when_file_missing(tmp_path: Path) -> None:
    """Defaults apply when no config file is present."""
    config = load_config(tmp_path / "state", env={})

    assert isinstance(config, AppConfig)
    assert config.storage_dir == tmp_path / "state"
    assert config.config_file == tmp_path / "state" / "config.yml"
    assert config.sites_base_directory is None
    assert config.theme == "dark"
    assert config.templates_dir is None
    assert config.logs_dir == tmp_path / "state" / "logs"
    assert config.compose_bin == "docker"
    assert config.ports.ranges() == DEFAULT_RANGES
    assert config.warnings == ()


def test_load_config_reads_yaml_file(tmp_path: Path) -> None:
    """Values are loaded from ``config.yml`` in the storage directory."""
    (tmp_path / "config.yml").write_text(
        "sites_base_directory: {sites}\n"
        "theme: light\n"
        "ports:\n"
        "  wordpress: [12000, 12999]\n"
        "  adminer: '9000-9100'\n".format(sites=tmp_path / "sites"),
        encoding="utf-8",
    )

    config = load_config(tmp_path, env={})

    assert config.sites_base_directory == tmp_path / "sites"
    assert config.theme == "light"
    assert config.ports.wordpress == PortRange(12000, 12999)
    assert config.ports.adminer == PortRange(9000, 9100)
    assert config.ports.mailpit_web == DEFAULT_RANGES["mailpit_web"]


def test_env_overrides_take_precedence(tmp_path: Path) -> None:
    """Environment variables override file settings; overrides beat both."""
    (tmp_path / "config.yml").write_text("theme: light\ncompose_bin: podman\n", encoding="utf-8")
    env = {
        "WPID_THEME": "dark",
        "WPID_PORTS__MAILPIT_SMTP": "[10500, 10600]",
        "WPID_TEMPLATES_DIR": str(tmp_path / "templates"),
        "UNRELATED": "ignored",
    }

    config = load_config(tmp_path, env=env)
    overridden = load_config(tmp_path, env=env, overrides={"theme": "light"})

    assert config.theme == "dark"
    assert config.compose_bin == "podman"
    assert config.ports.mailpit_smtp == PortRange(10500, 10600)
    assert config.templates_dir == tmp_path / "templates"
    assert overridden.theme == "light"


def test_storage_dir_comes_from_environment(tmp_path: Path) -> None:
    """``WPID_STORAGE_DIR`` selects the storage directory and is not a config key."""
    storage = tmp_path / "custom"

    config = load_config(env={"WPID_STORAGE_DIR": str(storage)})

    assert config.storage_dir == storage
    assert storage.is_dir()


def test_malformed_config_file_warns_and_uses_defaults(tmp_path: Path) -> None:
    """Broken YAML degrades to defaults with a warning."""
    (tmp_path / "config.yml").write_text("theme: [unterminated\n", encoding="utf-8")

    config = load_config(tmp_path, env={})

    assert config.theme == "dark"
    assert len(config.warnings) == 1
    assert "might be corrupt" in config.warnings[0]


@pytest.mark.parametrize(
    "content",
    [
        "surprise: true\n",
        "theme: neon\n",
        "compose_bin: ''\n",
        "ports:\n  ftp: [2000, 2100]\n",
        "ports:\n  wordpress: [20000, 10000]\n",
    ],
)
def test_invalid_values_raise(tmp_path: Path, content: str) -> None:
    """Unknown keys and invalid values are configuration errors."""
    (tmp_path / "config.yml").write_text(content, encoding="utf-8")

    with pytest.raises(ConfigError):
        load_config(tmp_path, env={})


def test_set_and_get_global_values(tmp_path: Path) -> None:
    """``set_global_value`` persists keys that ``load_config`` then resolves."""
    store = StateRegistry(tmp_path)
    sites = tmp_path / "sites"

    stored, warning = set_global_value(store, "sites_base_directory", str(sites))
    assert stored == str(sites)
    assert warning is not None and "does not exist" in warning

    set_global_value(store, "theme", "LIGHT")
    config = load_config(tmp_path, env={})
    assert get_global_value(config, "theme") == "light"
    assert get_global_value(config, "sites_base_directory") == str(sites)

    stored, _ = set_global_value(store, "theme", "")
    assert stored is None
    assert "theme" not in store.read_global_config()


def test_set_global_value_rejects_bad_input(tmp_path: Path) -> None:
    """Unknown keys, themes and file paths are refused."""
    store = StateRegistry(tmp_path)
    not_a_dir = tmp_path / "file.txt"
    not_a_dir.write_text("x", encoding="utf-8")

    with pytest.raises(ConfigError, match="Unknown configuration key"):
        set_global_value(store, "compose_bin", "podman")
    with pytest.raises(ConfigError, match="Theme must be one of"):
        set_global_value(store, "theme", "neon")
    with pytest.raises(ConfigError, match="not a directory"):
        set_global_value(store, "sites_base_directory", str(not_a_dir))
    with pytest.raises(ConfigError):
        get_global_value(load_config(tmp_path, env={}), "logs_dir")


def test_normalise_sites_base_directory(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Relative paths become absolute and empty values unset the key."""
    monkeypatch.chdir(tmp_path)
    (tmp_path / "sites").mkdir()

    assert normalise_sites_base_directory("sites") == (tmp_path / "sites", None)
    assert normalise_sites_base_directory("   ") == (None, None)
