"""Tests for the central instance registry."""
from __future__ import annotations

import json
import os
from pathlib import Path

import pytest
import yaml

from wpid import instances as instances_module
from wpid.instances import (
    MARKER_FILE,
    InstanceConflictError,
    InstanceNotFoundError,
    InstanceRecord,
    InstanceRegistry,
    InstanceRegistryError,
    InstanceStatus,
    read_env_port,
    read_marker,
    validate_instance_name,
    write_marker,
)
from wpid.locking import LockHeldError
from wpid.state import StateRegistry


def test_record_serialises_with_persisted_keys(make_record) -> None:
    """Records use the registry's key names and status strings."""
    record = make_record("/srv/sites/alpha", 11234, status=InstanceStatus.DIRECTORY_MISSING)

    assert record.to_dict() == {
        "directory": "/srv/sites/alpha",
        "creation_date": "2026-10-18 10:00:00",
        "wordpress_version": "latest",
        "db_version": "8.0",
        "wordpress_port": 11234,
        "status": "Directory Missing",
    }


def test_record_from_dict_tolerates_missing_and_odd_values() -> None:
    """Missing keys default and numeric strings become ports."""
    record = InstanceRecord.from_dict({"directory": "/x", "wordpress_port": "12001",
                                       "status": "sleeping"})

    assert record.assigned_port == 12001
    assert record.status is InstanceStatus.UNKNOWN
    assert record.creation_timestamp == "Unknown"
    assert record.software_version == ""
    assert InstanceStatus.parse("running") is InstanceStatus.RUNNING


def test_list_is_sorted_and_empty_registry_is_empty(registry: InstanceRegistry, make_record,
                                                    tmp_path: Path) -> None:
    """list() returns entries sorted by name."""
    assert registry.list() == {}

    registry.register("zeta", make_record(tmp_path / "zeta", 11002))
    registry.register("alpha", make_record(tmp_path / "alpha", 11001))

    assert list(registry.list()) == ["alpha", "zeta"]
    assert registry.claimed_ports() == {11001, 11002}


def test_register_persists_yaml_layout(registry: InstanceRegistry, store: StateRegistry,
                                       make_record, tmp_path: Path) -> None:
    """The registry file nests records under ``instances``."""
    registry.register("www-alpha-wordpress", make_record(tmp_path / "alpha", 11234))

    raw = yaml.safe_load(store.path_for("instances.yml").read_text(encoding="utf-8"))
    assert raw["instances"]["www-alpha-wordpress"]["wordpress_port"] == 11234
    assert raw["instances"]["www-alpha-wordpress"]["status"] == "Stopped"
    assert not registry.locks.is_held()


def test_register_conflicts_without_overwrite(registry: InstanceRegistry, make_record,
                                              tmp_path: Path) -> None:
    """Name and directory collisions raise and leave the registry alone."""
    registry.register("alpha", make_record(tmp_path / "alpha", 11001))

    with pytest.raises(InstanceConflictError) as excinfo:
        registry.register("alpha", make_record(tmp_path / "other", 11002))
    assert [conflict.kind for conflict in excinfo.value.conflicts] == ["name"]

    with pytest.raises(InstanceConflictError) as excinfo:
        registry.register("beta", make_record(tmp_path / "alpha", 11003))
    assert excinfo.value.conflicts[0].kind == "directory"
    assert excinfo.value.conflicts[0].existing_name == "alpha"

    assert list(registry.list()) == ["alpha"]


def test_register_overwrite_replaces_conflicts(registry: InstanceRegistry, make_record,
                                               tmp_path: Path) -> None:
    """Overwriting drops every conflicting entry and stores the new record as given."""
    registry.register("alpha", make_record(tmp_path / "alpha", 11001, software_version="6.4"))
    registry.register("old-name", make_record(tmp_path / "shared", 11002))

    replacement = make_record(tmp_path / "shared", 11003, software_version="")
    replaced = registry.register("alpha", replacement, overwrite=True)

    assert {conflict.existing_name for conflict in replaced} == {"alpha", "old-name"}
    assert registry.list() == {"alpha": replacement}


def test_unregister_and_not_found(registry: InstanceRegistry, make_record,
                                  tmp_path: Path) -> None:
    """Unregistering removes only the entry and never touches the directory."""
    directory = tmp_path / "alpha"
    directory.mkdir()
    registry.register("alpha", make_record(directory, 11001))

    removed = registry.unregister("alpha")

    assert removed.assigned_port == 11001
    assert registry.list() == {}
    assert directory.is_dir()
    with pytest.raises(InstanceNotFoundError):
        registry.unregister("alpha")


def test_prune_removes_only_missing_directories(registry: InstanceRegistry, make_record,
                                                tmp_path: Path) -> None:
    """Pruning keeps entries whose directories exist."""
    present = tmp_path / "present"
    present.mkdir()
    registry.register("present", make_record(present, 11001))
    registry.register("gone", make_record(tmp_path / "gone", 11002))

    assert registry.prune_candidates() == ["gone"]
    assert registry.prune(["gone", "present"]) == ["gone"]
    assert list(registry.list()) == ["present"]
    assert registry.list()["present"] == make_record(present, 11001)


def test_prune_skips_directories_that_reappeared(registry: InstanceRegistry, make_record,
                                                 tmp_path: Path) -> None:
    """A candidate whose directory came back before commit is kept."""
    registry.register("flaky", make_record(tmp_path / "flaky", 11001))
    candidates = registry.prune_candidates()
    (tmp_path / "flaky").mkdir()

    assert registry.prune(candidates) == []
    assert "flaky" in registry.list()


def test_refresh_status_and_update_touch_only_their_fields(registry: InstanceRegistry,
                                                           make_record, tmp_path: Path) -> None:
    """Status refresh and version updates leave the other fields alone."""
    original = make_record(tmp_path / "alpha", 11001)
    registry.register("alpha", original)

    registry.refresh_status("alpha", InstanceStatus.RUNNING)
    updated = registry.update("alpha", software_version="6.5", database_version="8.4")

    assert updated.status is InstanceStatus.RUNNING
    assert updated.software_version == "6.5"
    assert updated.database_version == "8.4"
    assert updated.creation_timestamp == original.creation_timestamp
    assert updated.assigned_port == original.assigned_port
    with pytest.raises(InstanceRegistryError):
        registry.update("alpha", creation_timestamp="now")


def test_scan_statuses_marks_missing_and_updates_markers(registry: InstanceRegistry,
                                                         make_record,
                                                         tmp_path: Path) -> None:
    """Statuses are refreshed from the prober and mirrored into markers."""
    running_dir = tmp_path / "running"
    running_dir.mkdir()
    record = make_record(running_dir, 11001)
    write_marker(record)
    registry.register("running", record)
    registry.register("missing", make_record(tmp_path / "missing", 11002))

    report = registry.scan_statuses(lambda path: InstanceStatus.RUNNING)

    assert report.changed_count == 2
    statuses = {name: rec.status for name, rec in registry.list().items()}
    assert statuses == {
        "missing": InstanceStatus.DIRECTORY_MISSING,
        "running": InstanceStatus.RUNNING,
    }
    marker = json.loads((running_dir / MARKER_FILE).read_text(encoding="utf-8"))
    assert marker["status"] == "Running"


def test_mutation_fails_while_lock_held_elsewhere(registry: InstanceRegistry, make_record,
                                                  tmp_path: Path) -> None:
    """A stale sentinel blocks mutations and leaves the registry untouched."""
    registry.locks.path.parent.mkdir(parents=True, exist_ok=True)
    registry.locks.path.touch()

    with pytest.raises(LockHeldError):
        registry.register("alpha", make_record(tmp_path / "alpha", 11001))

    registry.locks.path.unlink()
    assert registry.list() == {}


def test_corrupt_registry_reads_as_empty_with_warning(registry: InstanceRegistry,
                                                      store: StateRegistry) -> None:
    """A corrupt registry file degrades to an empty listing plus a warning."""
    store.ensure_root()
    store.path_for("instances.yml").write_text("instances: {alpha: [\n", encoding="utf-8")

    assert registry.list() == {}
    assert store.drain_warnings()


@pytest.mark.parametrize("name", ["", "   ", "has space", "a/b", "x:y", 'q"'])
def test_validate_instance_name_rejects(name: str) -> None:
    """Names must be non-empty and free of path or shell metacharacters."""
    with pytest.raises(InstanceRegistryError):
        validate_instance_name(name)


def test_marker_and_env_helpers(tmp_path: Path, make_record) -> None:
    """Markers round-trip records and .env ports are parsed."""
    record = make_record(tmp_path, 12345)
    path = write_marker(record)

    assert path == tmp_path / MARKER_FILE
    assert read_marker(tmp_path) == record

    (tmp_path / ".env").write_text("# comment\nWORDPRESS_PORT=\"12001\"\n", encoding="utf-8")
    assert read_env_port(tmp_path) == 12001

    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(InstanceRegistryError):
        read_marker(tmp_path)


@pytest.mark.parametrize(
    "record",
    [
        InstanceRecord(
            directory="/srv/sites/www-alpha-wordpress",
            creation_timestamp="2026-10-18 10:00:00",
            software_version="6.5",
            database_version="8.0",
            assigned_port=11234,
            status=InstanceStatus.RUNNING,
        ),
        InstanceRecord(directory="/srv/sites/bare", creation_timestamp=""),
        InstanceRecord(
            directory="/srv/sites/gone",
            assigned_port=19999,
            status=InstanceStatus.DIRECTORY_MISSING,
        ),
    ],
)
def test_record_round_trips_through_registry_file(registry: InstanceRegistry,
                                                  record: InstanceRecord) -> None:
    """Every field survives a write to instances.yml and a fresh read."""
    registry.store.write_instances({"alpha": record.to_dict()})

    assert registry.list() == {"alpha": record}


def test_status_parse_accepts_both_missing_spellings() -> None:
    """The compact and the spaced spelling both mean a missing directory."""
    assert InstanceStatus.parse("DirectoryMissing") is InstanceStatus.DIRECTORY_MISSING
    assert InstanceStatus.parse("Directory Missing") is InstanceStatus.DIRECTORY_MISSING
    assert InstanceStatus.parse("directory  missing") is InstanceStatus.DIRECTORY_MISSING
    assert InstanceStatus.parse(None) is InstanceStatus.UNKNOWN


def test_prune_precision_with_one_missing_entry(registry: InstanceRegistry,
                                                store: StateRegistry, make_record,
                                                tmp_path: Path) -> None:
    """Of three entries only the one without a directory is pruned."""
    for name in ("a", "c"):
        (tmp_path / name).mkdir()
    registry.register("a", make_record(tmp_path / "a", 11001))
    registry.register("b", make_record(tmp_path / "b", 11002))
    registry.register("c", make_record(tmp_path / "c", 11003, software_version="6.4"))
    before = store.read_instances()

    assert registry.prune_candidates() == ["b"]
    assert registry.prune(registry.prune_candidates()) == ["b"]

    after = store.read_instances()
    assert list(after) == ["a", "c"]
    assert after["a"] == before["a"]
    assert after["c"] == before["c"]


def test_prune_keeps_entries_whose_directory_cannot_be_inspected(
    registry: InstanceRegistry,
    store: StateRegistry,
    make_record,
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Permission errors are reported, never treated as a missing directory."""
    blocked = tmp_path / "blocked"
    blocked.mkdir()
    registry.register("blocked", make_record(blocked, 11001))
    registry.register("gone", make_record(tmp_path / "gone", 11002))
    real_stat = os.stat

    def fake_stat(path, *args, **kwargs):
        if os.fspath(path) == str(blocked):
            raise PermissionError(13, "Permission denied", str(blocked))
        return real_stat(path, *args, **kwargs)

    monkeypatch.setattr(instances_module.os, "stat", fake_stat)

    record = registry.get("blocked")
    assert record is not None
    assert record.directory_exists() is True
    assert "Permission denied" in (record.directory_problem() or "")
    assert registry.prune_candidates() == ["gone"]
    assert any("blocked" in warning for warning in store.drain_warnings())
    assert registry.prune(["blocked", "gone"]) == ["gone"]
    assert list(registry.list()) == ["blocked"]


def test_non_string_registry_keys_are_listed_as_names(registry: InstanceRegistry,
                                                      store: StateRegistry,
                                                      tmp_path: Path) -> None:
    """A hand-edited numeric key is listed and can be removed like any other."""
    store.ensure_root()
    store.path_for("instances.yml").write_text(
        "instances:\n"
        f"  alpha:\n    directory: {tmp_path / 'alpha'}\n    wordpress_port: 11001\n"
        f"  123:\n    directory: {tmp_path / 'numeric'}\n    wordpress_port: 11002\n",
        encoding="utf-8",
    )

    assert list(registry.list()) == ["123", "alpha"]
    assert registry.get("123") is not None

    registry.unregister("123")

    raw = yaml.safe_load(store.path_for("instances.yml").read_text(encoding="utf-8"))
    assert list(raw["instances"]) == ["alpha"]
