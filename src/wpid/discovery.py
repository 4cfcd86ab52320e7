"""Discovery helpers for instance directories that live outside the registry.

An *orphan* is a directory that looks like a wpid instance (it carries a
``.wpid-meta.json`` marker, or both ``.env`` and ``docker-compose.yml``) but
is not registered centrally, typically because it was copied from another
machine or the registry was reset.
"""
from __future__ import annotations

import os
import shutil
from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from pathlib import Path

from .instances import (
    MARKER_FILE,
    InstanceRecord,
    InstanceRegistry,
    InstanceRegistryError,
    InstanceStatus,
    read_env_port,
    read_marker,
    validate_instance_name,
)

COMPOSE_FILE = "docker-compose.yml"
ENV_FILE = ".env"


class DiscoveryError(RuntimeError):
    """Raised when a directory cannot be treated as an instance."""


class MissingPortError(DiscoveryError):
    """Raised when neither the marker nor ``.env`` names the WordPress port."""


@dataclass(slots=True)
class OrphanInstance:
    """Representation of an unregistered instance detected on disk."""

    name: str
    directory: Path
    source: str
    record: InstanceRecord | None = None
    warnings: list[str] = field(default_factory=list)


@dataclass(slots=True)
class OrphanReport:
    """Aggregated report describing discovery results."""

    orphans: list[OrphanInstance] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


def looks_like_instance(directory: Path) -> bool:
    """Return ``True`` when *directory* has the files of an instance."""
    if (directory / MARKER_FILE).is_file():
        return True
    return (directory / ENV_FILE).is_file() and (directory / COMPOSE_FILE).is_file()


def inspect_directory(directory: Path, *, port: int | None = None) -> InstanceRecord:
    """Build the record ``register`` would store for *directory*.

    The local marker supplies every field it has; the directory is always the
    absolute path given here. A missing port falls back to ``WORDPRESS_PORT``
    in ``.env`` and then to *port*; :class:`MissingPortError` is raised when
    none is available.
    """
    absolute = Path(os.path.abspath(os.path.expanduser(str(directory))))
    if not absolute.is_dir():
        raise DiscoveryError(f"Directory not found: {absolute}")
    for required in (COMPOSE_FILE, ENV_FILE):
        if not (absolute / required).is_file():
            raise DiscoveryError(f"{required} not found in {absolute}.")

    try:
        record = read_marker(absolute)
    except InstanceRegistryError as exc:
        raise DiscoveryError(str(exc)) from exc
    if record is None:
        record = InstanceRecord(directory=str(absolute))
    record = replace(record, directory=str(absolute))

    if record.assigned_port <= 0:
        resolved = read_env_port(absolute) or port
        if not resolved:
            raise MissingPortError(
                f"Could not determine the WordPress port for {absolute} "
                f"from {MARKER_FILE} or {ENV_FILE}."
            )
        record = replace(record, assigned_port=resolved)
    return record


def find_orphans(search_roots: Iterable[Path], registry: InstanceRegistry) -> OrphanReport:
    """Scan the immediate children of each root for unregistered instances."""
    report = OrphanReport()
    registered = {
        os.path.normpath(record.directory) for record in registry.list().values()
    }
    seen: set[str] = set()
    for root in search_roots:
        root = Path(root).expanduser()
        if not root.is_dir():
            report.warnings.append(f"Search root {root} does not exist.")
            continue
        try:
            children = sorted(root.iterdir())
        except OSError as exc:
            report.errors.append(f"Cannot list {root}: {exc}")
            continue
        for child in children:
            if not child.is_dir() or not looks_like_instance(child):
                continue
            key = os.path.normpath(str(child.absolute()))
            if key in registered or key in seen:
                continue
            seen.add(key)
            report.orphans.append(_describe_orphan(child))
    return report


def _describe_orphan(directory: Path) -> OrphanInstance:
    source = "marker" if (directory / MARKER_FILE).is_file() else "compose"
    orphan = OrphanInstance(name=directory.name, directory=directory.absolute(), source=source)
    try:
        orphan.record = read_marker(directory)
    except InstanceRegistryError as exc:
        orphan.warnings.append(str(exc))
    if orphan.record is None and read_env_port(directory) is None:
        orphan.warnings.append("WORDPRESS_PORT not found in .env.")
    return orphan


def adopt_orphan(
    directory: Path,
    registry: InstanceRegistry,
    *,
    name: str | None = None,
    port: int | None = None,
    overwrite: bool = False,
) -> tuple[str, InstanceRecord]:
    """Register *directory* from its marker (or ``.env``) and return it."""
    record = inspect_directory(directory, port=port)
    if record.status is InstanceStatus.DIRECTORY_MISSING:
        record = replace(record, status=InstanceStatus.UNKNOWN)
    resolved_name = validate_instance_name(name or Path(record.directory).name)
    registry.register(resolved_name, record, overwrite=overwrite)
    return resolved_name, record


def discard_orphan(directory: Path, registry: InstanceRegistry) -> None:
    """Delete an unregistered instance directory."""
    absolute = Path(os.path.abspath(os.path.expanduser(str(directory))))
    with registry.locks.registry_lock():
        owner = registry.find_by_directory(absolute)
        if owner is not None:
            raise DiscoveryError(
                f"{absolute} is registered as '{owner}'; use `wpid delete {owner}` instead."
            )
        if not absolute.is_dir() or not looks_like_instance(absolute):
            raise DiscoveryError(f"{absolute} does not look like a wpid instance directory.")
        try:
            shutil.rmtree(absolute)
        except OSError as exc:
            raise DiscoveryError(f"Failed to remove {absolute}: {exc}") from exc


__all__ = [
    "DiscoveryError",
    "MissingPortError",
    "OrphanInstance",
    "OrphanReport",
    "adopt_orphan",
    "discard_orphan",
    "find_orphans",
    "inspect_directory",
    "looks_like_instance",
]
