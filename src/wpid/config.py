"""Configuration loader for wpid.

Configuration values are layered from several sources, later ones winning:

1. Built-in defaults.
2. ``config.yml`` in the storage directory (the global configuration record).
3. Environment variables prefixed with ``WPID_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export WPID_THEME=light
    export WPID_PORTS__WORDPRESS="[12000, 12999]"

Values are coerced via PyYAML's ``safe_load`` so that lists and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses``.

A malformed ``config.yml`` does not stop the tool: defaults are used and a
warning is attached to the resulting :class:`AppConfig`.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load wpid configuration. Install with "
        "`pip install wpid` or ensure PyYAML>=6.0 is available."
    ) from exc

from .ports import DEFAULT_RANGES, PortRange, PortRangeError
from .state import StateRegistry, StateRegistryError, resolve_storage_dir
from .state.registry import STORAGE_ENV_VAR

ENV_PREFIX = "WPID_"
RESERVED_ENV_KEYS = {STORAGE_ENV_VAR}

THEMES = ("dark", "light")
SITES_BASE_DIRECTORY = "sites_base_directory"
THEME = "theme"
GLOBAL_KEYS = frozenset({SITES_BASE_DIRECTORY, THEME})


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class PortsConfig:
    """Port ranges used when allocating ports for new instances."""

    wordpress: PortRange = DEFAULT_RANGES["wordpress"]
    mailpit_smtp: PortRange = DEFAULT_RANGES["mailpit_smtp"]
    mailpit_web: PortRange = DEFAULT_RANGES["mailpit_web"]
    adminer: PortRange = DEFAULT_RANGES["adminer"]

    def ranges(self) -> dict[str, PortRange]:
        """Return the ranges keyed by service, in allocation order."""
        return {
            "wordpress": self.wordpress,
            "mailpit_smtp": self.mailpit_smtp,
            "mailpit_web": self.mailpit_web,
            "adminer": self.adminer,
        }

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {name: port_range.to_list() for name, port_range in self.ranges().items()}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for wpid."""

    storage_dir: Path
    sites_base_directory: Path | None
    theme: str
    templates_dir: Path | None
    logs_dir: Path
    compose_bin: str
    ports: PortsConfig
    warnings: tuple[str, ...] = ()

    @property
    def config_file(self) -> Path:
        """Return the path of the global configuration record."""
        return self.storage_dir / "config.yml"

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "storage_dir": str(self.storage_dir),
            "sites_base_directory": (
                str(self.sites_base_directory) if self.sites_base_directory else None
            ),
            "theme": self.theme,
            "templates_dir": str(self.templates_dir) if self.templates_dir else None,
            "logs_dir": str(self.logs_dir),
            "compose_bin": self.compose_bin,
            "ports": self.ports.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "sites_base_directory": None,
    "theme": "dark",
    "templates_dir": None,
    "logs_dir": None,  # derived from the storage directory when absent
    "compose_bin": "docker",
    "ports": {name: port_range.to_list() for name, port_range in DEFAULT_RANGES.items()},
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_PORT_KEYS = set(DEFAULT_RANGES.keys())


def load_config(
    storage_dir: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    resolved_env = dict(os.environ if env is None else env)
    warnings: list[str] = []

    if storage_dir is not None:
        root = Path(storage_dir).expanduser()
    else:
        try:
            root, storage_warning = resolve_storage_dir(resolved_env)
        except StateRegistryError as exc:
            raise ConfigError(str(exc)) from exc
        if storage_warning:
            warnings.append(storage_warning)

    merged: dict[str, object] = _deep_copy(DEFAULTS)

    store = StateRegistry(root)
    try:
        file_values = _as_dict(store.read_global_config(), f"file:{store.path_for('config.yml')}")
    except StateRegistryError as exc:
        raise ConfigError(str(exc)) from exc
    warnings.extend(store.drain_warnings())
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    _validate_structure(merged)

    return _build_app_config(merged, root, tuple(warnings))


def normalise_sites_base_directory(value: str) -> tuple[Path | None, str | None]:
    """Validate a ``sites_base_directory`` value from ``config set``.

    Returns ``(path, warning)``; an empty value unsets the key (``None``).
    Relative paths are made absolute and ``~`` is expanded. A missing path is
    accepted with a warning; an existing non-directory raises.
    """
    text = value.strip()
    if not text:
        return None, None
    path = Path(os.path.abspath(os.path.expanduser(text)))
    if not path.exists():
        return path, f"Directory {path} does not exist yet."
    if not path.is_dir():
        raise ConfigError(f"Path {path} exists but is not a directory.")
    return path, None


def set_global_value(store: StateRegistry, key: str, value: str) -> tuple[object, str | None]:
    """Persist one user-settable key to ``config.yml``.

    Returns ``(stored_value, warning)``; ``stored_value`` is ``None`` when the
    key was unset.
    """
    if key not in GLOBAL_KEYS:
        allowed = ", ".join(sorted(GLOBAL_KEYS))
        raise ConfigError(f"Unknown configuration key '{key}'. Allowed: {allowed}.")

    warning: str | None = None
    stored: object
    if key == SITES_BASE_DIRECTORY:
        path, warning = normalise_sites_base_directory(value)
        stored = str(path) if path is not None else None
    else:
        theme = value.strip().lower()
        if theme and theme not in THEMES:
            raise ConfigError(f"Theme must be one of: {', '.join(THEMES)}.")
        stored = theme or None

    try:
        payload = store.read_global_config()
        if stored is None:
            payload.pop(key, None)
        else:
            payload[key] = stored
        store.write_global_config(payload)
    except StateRegistryError as exc:
        raise ConfigError(str(exc)) from exc
    return stored, warning


def get_global_value(config: AppConfig, key: str) -> object:
    """Return the resolved value for a user-settable key."""
    if key not in GLOBAL_KEYS:
        allowed = ", ".join(sorted(GLOBAL_KEYS))
        raise ConfigError(f"Unknown configuration key '{key}'. Allowed: {allowed}.")
    return config.to_dict()[key]


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    theme = raw.get("theme")
    if theme is not None and str(theme).lower() not in THEMES:
        raise ConfigError(f"Unsupported theme '{theme}'. Allowed: {', '.join(THEMES)}.")

    compose_bin = raw.get("compose_bin")
    if compose_bin is not None and (not isinstance(compose_bin, str) or not compose_bin.strip()):
        raise ConfigError("compose_bin must be a non-empty string.")

    ports = raw.get("ports")
    if ports is not None:
        ports_map = _as_dict(ports, "ports")
        unknown = set(ports_map.keys()) - ALLOWED_PORT_KEYS
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown ports configuration keys: {joined}.")


def _build_app_config(
    raw: Mapping[str, object],
    storage_dir: Path,
    warnings: tuple[str, ...],
) -> AppConfig:
    sites_raw = raw.get("sites_base_directory")
    sites_base_directory = _to_path(sites_raw) if sites_raw else None

    templates_raw = raw.get("templates_dir")
    templates_dir = _to_path(templates_raw) if templates_raw else None

    logs_raw = raw.get("logs_dir")
    logs_dir = _to_path(logs_raw) if logs_raw else storage_dir / "logs"

    ports_map = _as_dict(raw.get("ports"), "ports")
    ranges: dict[str, PortRange] = {}
    for name in DEFAULT_RANGES:
        try:
            ranges[name] = PortRange.parse(ports_map.get(name, DEFAULT_RANGES[name]))
        except PortRangeError as exc:
            raise ConfigError(f"Invalid ports.{name}: {exc}") from exc

    return AppConfig(
        storage_dir=storage_dir,
        sites_base_directory=sites_base_directory,
        theme=str(raw.get("theme") or "dark").lower(),
        templates_dir=templates_dir,
        logs_dir=logs_dir,
        compose_bin=str(raw.get("compose_bin") or "docker"),
        ports=PortsConfig(**ranges),
        warnings=warnings,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigError",
    "DEFAULTS",
    "GLOBAL_KEYS",
    "PortsConfig",
    "THEMES",
    "get_global_value",
    "load_config",
    "normalise_sites_base_directory",
    "set_global_value",
]
