"""Central instance registry for wpid.

The registry maps instance names to :class:`InstanceRecord` values and is
persisted in ``instances.yml`` through :class:`~wpid.state.StateRegistry`.
Every mutation re-reads the file, decides, and writes it back while holding
the registry sentinel, so concurrent wpid processes cannot interleave their
read-decide-write sequences.

Each instance directory also carries a local marker (``.wpid-meta.json``)
mirroring its record. The marker is the source of truth for ``register`` and
orphan adoption; the central registry is the source of truth for everything
else.
"""
from __future__ import annotations

import json
import os
import re
import stat
import tempfile
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from pathlib import Path

from .locking import LockManager
from .state import StateRegistry

MARKER_FILE = ".wpid-meta.json"
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
UNKNOWN = "Unknown"

_INVALID_NAME_CHARS = re.compile(r'[/\\:*?"<>|\s]')


class InstanceStatus(str, Enum):
    """Last observed state of an instance's containers."""

    RUNNING = "Running"
    STOPPED = "Stopped"
    UNKNOWN = "Unknown"
    DIRECTORY_MISSING = "Directory Missing"

    @classmethod
    def parse(cls, value: object) -> InstanceStatus:
        """Return the matching status, degrading unknown values to ``Unknown``."""
        if isinstance(value, cls):
            return value
        text = "".join(str(value or "").split()).lower()
        for member in cls:
            if "".join(member.value.split()).lower() == text:
                return member
        return cls.UNKNOWN


class InstanceRegistryError(RuntimeError):
    """Raised when the instance registry cannot satisfy a request."""


class InstanceNotFoundError(InstanceRegistryError):
    """Raised when a named instance is not registered."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Instance '{name}' not found in registry.")
        self.name = name


@dataclass(frozen=True)
class RegistrationConflict:
    """An existing entry that collides with a registration request."""

    kind: str
    existing_name: str
    existing_directory: str

    def describe(self) -> str:
        """Return a human readable description of the conflict."""
        if self.kind == "name":
            return (
                f"Instance name '{self.existing_name}' is already registered "
                f"for {self.existing_directory}."
            )
        return (
            f"Directory {self.existing_directory} is already registered "
            f"as '{self.existing_name}'."
        )


class InstanceConflictError(InstanceRegistryError):
    """Raised when registration collides with existing entries."""

    def __init__(self, conflicts: Iterable[RegistrationConflict]) -> None:
        self.conflicts = list(conflicts)
        super().__init__(" ".join(conflict.describe() for conflict in self.conflicts))


@dataclass(frozen=True)
class InstanceRecord:
    """Persisted description of one WordPress development instance."""

    directory: str
    creation_timestamp: str = UNKNOWN
    software_version: str = ""
    database_version: str = ""
    assigned_port: int = 0
    status: InstanceStatus = InstanceStatus.UNKNOWN

    def to_dict(self) -> dict[str, object]:
        """Return the mapping persisted in the registry and local marker."""
        return {
            "directory": self.directory,
            "creation_date": self.creation_timestamp,
            "wordpress_version": self.software_version,
            "db_version": self.database_version,
            "wordpress_port": self.assigned_port,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> InstanceRecord:
        """Build a record from a persisted mapping, tolerating missing keys."""
        return cls(
            directory=str(data.get("directory") or ""),
            creation_timestamp=_coerce_timestamp(data.get("creation_date")),
            software_version=str(data.get("wordpress_version") or ""),
            database_version=str(data.get("db_version") or ""),
            assigned_port=_coerce_port(data.get("wordpress_port")),
            status=InstanceStatus.parse(data.get("status")),
        )

    @property
    def path(self) -> Path:
        """Return the instance directory as a :class:`Path`."""
        return Path(self.directory)

    def directory_exists(self) -> bool:
        """Return ``True`` unless the instance directory is known to be gone.

        A directory that cannot be inspected (for example permission denied on
        a parent) counts as present; see :meth:`directory_problem`.
        """
        if not self.directory:
            return False
        try:
            info = os.stat(self.directory)
        except (FileNotFoundError, NotADirectoryError):
            return False
        except OSError:
            return True
        return stat.S_ISDIR(info.st_mode)

    def directory_problem(self) -> str | None:
        """Return why the directory could not be inspected, if it could not."""
        if not self.directory:
            return None
        try:
            os.stat(self.directory)
        except (FileNotFoundError, NotADirectoryError):
            return None
        except OSError as exc:
            return f"Cannot inspect {self.directory}: {exc}"
        return None


StatusProber = Callable[[Path], InstanceStatus]


@dataclass
class StatusChange:
    """Outcome of refreshing one instance's status."""

    name: str
    old: InstanceStatus
    new: InstanceStatus

    @property
    def changed(self) -> bool:
        return self.old is not self.new


@dataclass
class ScanReport:
    """Result of :meth:`InstanceRegistry.scan_statuses`."""

    changes: list[StatusChange] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def changed_count(self) -> int:
        return sum(1 for change in self.changes if change.changed)


class InstanceRegistry:
    """Query and mutate the central instance registry."""

    _UPDATABLE_FIELDS = frozenset({"software_version", "database_version"})

    def __init__(self, store: StateRegistry, locks: LockManager) -> None:
        self.store = store
        self.locks = locks

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def list(self) -> dict[str, InstanceRecord]:
        """Return every registered instance keyed by name, sorted by name."""
        raw = self.store.read_instances()
        records: dict[str, InstanceRecord] = {}
        for key in sorted(raw, key=str):
            name = str(key)
            entry = raw[key]
            if not isinstance(entry, Mapping):
                self.store.warnings.append(
                    f"Ignoring malformed registry entry '{name}' (expected a mapping)."
                )
                continue
            records[name] = InstanceRecord.from_dict(entry)
        return records

    def get(self, name: str) -> InstanceRecord | None:
        """Return the record registered under *name*, if any."""
        return self.list().get(name)

    def require(self, name: str) -> InstanceRecord:
        """Return the record for *name* or raise :class:`InstanceNotFoundError`."""
        record = self.get(name)
        if record is None:
            raise InstanceNotFoundError(name)
        return record

    def claimed_ports(self) -> set[int]:
        """Return every primary port currently assigned to a registered instance."""
        return {
            record.assigned_port for record in self.list().values() if record.assigned_port > 0
        }

    def find_by_directory(self, directory: str | Path) -> str | None:
        """Return the name registered for *directory*, if any."""
        target = _normalise_directory(directory)
        for name, record in self.list().items():
            if record.directory and _normalise_directory(record.directory) == target:
                return name
        return None

    def find_conflicts(self, name: str, directory: str | Path) -> list[RegistrationConflict]:
        """Return the entries that collide with registering *name* at *directory*."""
        target = _normalise_directory(directory)
        conflicts: list[RegistrationConflict] = []
        for existing_name, record in self.list().items():
            if existing_name == name:
                conflicts.append(RegistrationConflict("name", existing_name, record.directory))
            elif record.directory and _normalise_directory(record.directory) == target:
                conflicts.append(
                    RegistrationConflict("directory", existing_name, record.directory)
                )
        return conflicts

    def prune_candidates(self) -> list[str]:
        """Return the names whose directories no longer exist.

        Entries whose directory cannot be inspected are kept and reported on
        the store's warnings instead.
        """
        candidates: list[str] = []
        for name, record in self.list().items():
            problem = record.directory_problem()
            if problem is not None:
                self.store.warnings.append(f"Keeping '{name}': {problem}")
            elif not record.directory_exists():
                candidates.append(name)
        return candidates

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def register(
        self,
        name: str,
        record: InstanceRecord,
        *,
        overwrite: bool = False,
    ) -> list[RegistrationConflict]:
        """Add *record* under *name* and return the conflicts that were replaced.

        Without *overwrite*, any name or directory conflict raises
        :class:`InstanceConflictError` and nothing is written. With it, every
        conflicting entry is dropped and *record* is stored as given.
        """
        name = validate_instance_name(name)
        with self.locks.registry_lock():
            conflicts = self.find_conflicts(name, record.directory)
            if conflicts and not overwrite:
                raise InstanceConflictError(conflicts)
            raw = self._raw_entries()
            for conflict in conflicts:
                raw.pop(conflict.existing_name, None)
            raw[name] = record.to_dict()
            self.store.write_instances(raw)
        return conflicts

    def unregister(self, name: str) -> InstanceRecord:
        """Remove *name* from the registry without touching the filesystem."""
        with self.locks.registry_lock():
            record = self.require(name)
            raw = self._raw_entries()
            raw.pop(name, None)
            self.store.write_instances(raw)
        return record

    def remove(self, name: str) -> InstanceRecord | None:
        """Drop *name* if present; return the removed record."""
        with self.locks.registry_lock():
            record = self.get(name)
            if record is None:
                return None
            raw = self._raw_entries()
            raw.pop(name, None)
            self.store.write_instances(raw)
        return record

    def prune(self, names: Iterable[str]) -> list[str]:
        """Remove those of *names* whose directories are still missing."""
        requested = set(names)
        with self.locks.registry_lock():
            current = self.list()
            removed = [
                name
                for name, record in current.items()
                if name in requested and not record.directory_exists()
            ]
            if removed:
                raw = self._raw_entries()
                for name in removed:
                    raw.pop(name, None)
                self.store.write_instances(raw)
        return removed

    def refresh_status(self, name: str, status: InstanceStatus) -> InstanceRecord:
        """Update only the status of *name*."""
        with self.locks.registry_lock():
            record = self.require(name)
            updated = replace(record, status=status)
            if updated != record:
                self._store_record(name, updated)
        return updated

    def update(self, name: str, **fields: str) -> InstanceRecord:
        """Update version metadata for *name*."""
        unknown = set(fields) - self._UPDATABLE_FIELDS
        if unknown:
            raise InstanceRegistryError(
                f"Cannot update field(s): {', '.join(sorted(unknown))}."
            )
        with self.locks.registry_lock():
            record = self.require(name)
            updated = replace(record, **fields)
            if updated != record:
                self._store_record(name, updated)
        return updated

    def scan_statuses(self, prober: StatusProber) -> ScanReport:
        """Refresh the status of every entry, persisting once if anything changed.

        Entries whose directory is gone become ``Directory Missing``; the rest
        get whatever *prober* reports. Local markers are updated best-effort.
        """
        report = ScanReport()
        with self.locks.registry_lock():
            current = self.list()
            updated: dict[str, InstanceRecord] = {}
            for name, record in current.items():
                if record.directory_exists():
                    new_status = prober(record.path)
                else:
                    new_status = InstanceStatus.DIRECTORY_MISSING
                report.changes.append(StatusChange(name, record.status, new_status))
                if new_status is not record.status:
                    updated[name] = replace(record, status=new_status)
            if updated:
                raw = self._raw_entries()
                for name, record in updated.items():
                    raw[name] = record.to_dict()
                self.store.write_instances(raw)
        for name, record in updated.items():
            if record.status is InstanceStatus.DIRECTORY_MISSING:
                continue
            try:
                update_marker_status(record.path, record.status)
            except InstanceRegistryError as exc:
                report.warnings.append(f"{name}: {exc}")
        return report

    # Internal helpers -------------------------------------------------
    def _raw_entries(self) -> dict[str, object]:
        return {str(key): value for key, value in self.store.read_instances().items()}

    def _store_record(self, name: str, record: InstanceRecord) -> None:
        raw = self._raw_entries()
        raw[name] = record.to_dict()
        self.store.write_instances(raw)


# ----------------------------------------------------------------------
# Naming helpers
# ----------------------------------------------------------------------
def validate_instance_name(name: str) -> str:
    """Return the stripped *name* or raise when it cannot be a registry key."""
    normalized = (name or "").strip()
    if not normalized:
        raise InstanceRegistryError("Instance name must be a non-empty string.")
    if _INVALID_NAME_CHARS.search(normalized):
        raise InstanceRegistryError(
            f"Instance name '{normalized}' contains invalid characters "
            "(whitespace or any of / \\ : * ? \" < > |)."
        )
    return normalized


def now_timestamp() -> str:
    """Return the current local time in the registry timestamp format."""
    return datetime.now().strftime(TIMESTAMP_FORMAT)


def _normalise_directory(directory: str | Path) -> str:
    return os.path.normpath(os.path.abspath(os.path.expanduser(str(directory))))


def _coerce_timestamp(value: object) -> str:
    if value is None:
        return UNKNOWN
    return str(value)


def _coerce_port(value: object) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return 0
    return 0


# ----------------------------------------------------------------------
# Local marker
# ----------------------------------------------------------------------
def marker_path(directory: str | Path) -> Path:
    """Return the local marker path inside *directory*."""
    return Path(directory) / MARKER_FILE


def read_marker(directory: str | Path) -> InstanceRecord | None:
    """Return the record stored in the local marker, or ``None`` if absent."""
    path = marker_path(directory)
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError as exc:
        raise InstanceRegistryError(f"Failed to read {path}: {exc}") from exc
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise InstanceRegistryError(f"Failed to parse {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise InstanceRegistryError(f"Failed to parse {path}: expected a JSON object.")
    return InstanceRecord.from_dict(data)


def write_marker(record: InstanceRecord) -> Path:
    """Write *record* to the local marker of its directory (atomic replace)."""
    path = marker_path(record.directory)
    try:
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    except OSError as exc:
        raise InstanceRegistryError(f"Failed to write {path}: {exc}") from exc
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            json.dump(record.to_dict(), handle, indent=2)
            handle.write("\n")
        os.chmod(tmp_path, 0o644)
        os.replace(tmp_path, path)
    except OSError as exc:
        raise InstanceRegistryError(f"Failed to write {path}: {exc}") from exc
    finally:
        tmp_path.unlink(missing_ok=True)
    return path


def update_marker_status(directory: str | Path, status: InstanceStatus) -> bool:
    """Set the status in an existing local marker; return ``False`` if absent."""
    record = read_marker(directory)
    if record is None:
        return False
    if record.status is not status:
        write_marker(replace(record, status=status))
    return True


def read_env_port(directory: str | Path, key: str = "WORDPRESS_PORT") -> int | None:
    """Return the integer value of *key* from the instance ``.env``, if present."""
    env_path = Path(directory) / ".env"
    try:
        lines = env_path.read_text(encoding="utf-8").splitlines()
    except OSError:
        return None
    for line in lines:
        stripped = line.strip()
        if not stripped or stripped.startswith("#") or "=" not in stripped:
            continue
        env_key, _, value = stripped.partition("=")
        if env_key.strip() != key:
            continue
        port = _coerce_port(value.strip().strip('"').strip("'"))
        return port or None
    return None


__all__ = [
    "InstanceConflictError",
    "InstanceNotFoundError",
    "InstanceRecord",
    "InstanceRegistry",
    "InstanceRegistryError",
    "InstanceStatus",
    "MARKER_FILE",
    "RegistrationConflict",
    "ScanReport",
    "StatusChange",
    "StatusProber",
    "TIMESTAMP_FORMAT",
    "marker_path",
    "now_timestamp",
    "read_env_port",
    "read_marker",
    "update_marker_status",
    "validate_instance_name",
    "write_marker",
]
