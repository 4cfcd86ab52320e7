"""Helpers for interacting with the wpid storage directory.

The storage directory (``~/.config/wpid`` by default) holds YAML artifacts
such as ``instances.yml`` (the central instance registry) and ``config.yml``
(global preferences). This module reads and writes those files using atomic
operations; it knows nothing about the shape of the records it stores.

Reads favour availability: a malformed file yields the caller's default and
a warning collected on :attr:`StateRegistry.warnings`, unless the caller asks
for ``strict`` parsing (used when validating a hand-edited file).
"""
from __future__ import annotations

import os
import sys
import tempfile
from collections.abc import Mapping
from copy import deepcopy
from dataclasses import dataclass, field
from pathlib import Path

try:  # PyYAML is a runtime dependency declared in pyproject.toml
    import yaml
except Exception as exc:  # pragma: no cover - import failure handled in tests
    raise RuntimeError(
        "PyYAML is required to manage wpid state. Install with `pip install wpid`."
    ) from exc


INSTANCES_FILE = "instances.yml"
GLOBAL_CONFIG_FILE = "config.yml"
STORAGE_ENV_VAR = "WPID_STORAGE_DIR"
FALLBACK_DIR_NAME = ".wpid-data"


class StateRegistryError(RuntimeError):
    """Raised when state registry operations fail."""


@dataclass
class StateRegistry:
    """Atomic YAML reader/writer rooted at one storage directory."""

    root: Path
    warnings: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        self.root = Path(self.root).expanduser()

    def ensure_root(self) -> None:
        """Create the storage directory (owner-only) if it does not yet exist."""
        if self.root.exists():
            return
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            os.chmod(self.root, 0o700)
        except OSError as exc:
            raise StateRegistryError(
                f"Failed to create storage directory {self.root}: {exc}"
            ) from exc

    # ------------------------------------------------------------------
    # Public helpers
    # ------------------------------------------------------------------
    def path_for(self, name: str) -> Path:
        """Return the filesystem path for a named registry file."""
        return self.root / name

    def read(
        self,
        name: str,
        *,
        default: Mapping[str, object] | None = None,
        strict: bool = False,
    ) -> dict[str, object]:
        """Read a registry file, returning a copy of *default* when missing.

        Malformed content yields *default* plus a recorded warning, or raises
        :class:`StateRegistryError` when *strict* is set.
        """
        fallback: dict[str, object] = deepcopy(dict(default or {}))
        path = self.path_for(name)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return fallback
        except OSError as exc:
            raise StateRegistryError(f"Failed to read registry file {path}: {exc}") from exc

        if not text.strip():
            return fallback

        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            return self._corrupt(path, f"invalid YAML: {exc}", fallback, strict=strict)

        if data is None:
            return fallback
        if not isinstance(data, Mapping):
            return self._corrupt(
                path,
                f"expected a mapping at the top level, found {type(data).__name__}",
                fallback,
                strict=strict,
            )
        return dict(data)

    def write(self, name: str, payload: Mapping[str, object]) -> None:
        """Atomically write *payload* to the given registry file.

        The payload is serialised into a temporary file in the same directory,
        flushed to disk and renamed over the target. On failure the temporary
        file is removed and the original target is left untouched.
        """
        self.ensure_root()
        path = self.path_for(name)

        try:
            tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.root), prefix=f".{path.name}.")
        except OSError as exc:
            raise StateRegistryError(f"Failed to create temporary file for {path}: {exc}") from exc
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(dict(payload), handle, sort_keys=False)
                handle.flush()
                os.fsync(handle.fileno())
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, path)
        except OSError as exc:
            raise StateRegistryError(f"Failed to write registry file {path}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)

    # Convenience wrappers -------------------------------------------------
    def read_instances(self, *, strict: bool = False) -> dict[str, object]:
        """Return the ``instances`` mapping from ``instances.yml`` (empty if missing)."""
        data = self.read(INSTANCES_FILE, default={"instances": {}}, strict=strict)
        instances = data.get("instances")
        if instances is None:
            return {}
        if not isinstance(instances, Mapping):
            path = self.path_for(INSTANCES_FILE)
            return self._corrupt(path, "'instances' is not a mapping", {}, strict=strict)
        return dict(instances)

    def write_instances(self, instances: Mapping[str, object]) -> None:
        """Persist instance entries to ``instances.yml``."""
        self.write(INSTANCES_FILE, {"instances": dict(instances)})

    def read_global_config(self, *, strict: bool = False) -> dict[str, object]:
        """Return the global configuration record (empty mapping when absent)."""
        return self.read(GLOBAL_CONFIG_FILE, default={}, strict=strict)

    def write_global_config(self, payload: Mapping[str, object]) -> None:
        """Persist the global configuration record to ``config.yml``."""
        self.write(GLOBAL_CONFIG_FILE, payload)

    def drain_warnings(self) -> list[str]:
        """Return and clear the warnings collected by lenient reads."""
        collected = list(dict.fromkeys(self.warnings))
        self.warnings.clear()
        return collected

    # Internal helpers -------------------------------------------------
    def _corrupt(
        self,
        path: Path,
        reason: str,
        fallback: dict[str, object],
        *,
        strict: bool,
    ) -> dict[str, object]:
        message = f"Registry file {path} might be corrupt ({reason})."
        if strict:
            raise StateRegistryError(message)
        self.warnings.append(f"{message} Using defaults.")
        return fallback


def user_config_dir(env: Mapping[str, str] | None = None) -> Path:
    """Return the per-user configuration directory for this platform.

    Raises :class:`StateRegistryError` when no home directory can be
    determined (for example inside a sandbox with an empty environment).
    """
    resolved_env = os.environ if env is None else env
    if sys.platform.startswith("win"):
        appdata = resolved_env.get("APPDATA")
        if not appdata:
            raise StateRegistryError("%APPDATA% is not defined.")
        return Path(appdata)

    home = resolved_env.get("HOME")
    if sys.platform == "darwin":
        if not home:
            raise StateRegistryError("$HOME is not defined.")
        return Path(home) / "Library" / "Application Support"

    xdg = resolved_env.get("XDG_CONFIG_HOME")
    if xdg and Path(xdg).is_absolute():
        return Path(xdg)
    if not home:
        raise StateRegistryError("Neither $XDG_CONFIG_HOME nor $HOME are defined.")
    return Path(home) / ".config"


def resolve_storage_dir(
    env: Mapping[str, str] | None = None,
    *,
    cwd: Path | None = None,
) -> tuple[Path, str | None]:
    """Return ``(storage_dir, warning)`` for the current user.

    ``WPID_STORAGE_DIR`` wins when set. Otherwise the per-user config
    directory is used; if it cannot be determined or created, a
    ``.wpid-data`` directory under *cwd* is created with owner-only
    permissions and a warning message is returned alongside it.
    """
    resolved_env = os.environ if env is None else env
    override = resolved_env.get(STORAGE_ENV_VAR)
    if override:
        path = Path(override).expanduser()
        _make_private_dir(path)
        return path, None

    try:
        candidate = user_config_dir(resolved_env) / "wpid"
        _make_private_dir(candidate)
        return candidate, None
    except (StateRegistryError, OSError) as exc:
        reason = str(exc)

    fallback = (cwd or Path.cwd()) / FALLBACK_DIR_NAME
    try:
        _make_private_dir(fallback)
    except OSError as exc:
        raise StateRegistryError(
            f"Could not create fallback data directory {fallback}: {exc}"
        ) from exc
    warning = (
        "User config directory not available, using fallback directory "
        f"{fallback} ({reason})."
    )
    return fallback, warning


def _make_private_dir(path: Path) -> None:
    if path.is_dir():
        return
    path.mkdir(parents=True, exist_ok=True)
    os.chmod(path, 0o700)


__all__ = [
    "FALLBACK_DIR_NAME",
    "GLOBAL_CONFIG_FILE",
    "INSTANCES_FILE",
    "STORAGE_ENV_VAR",
    "StateRegistry",
    "StateRegistryError",
    "resolve_storage_dir",
    "user_config_dir",
]
