"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
import random
from collections.abc import Callable
from dataclasses import replace
from pathlib import Path

import pytest

# Rich reads the terminal width when the CLI console is created; keep tables
# wide enough that instance names and paths are never truncated in output.
os.environ.setdefault("COLUMNS", "200")

from wpid.instances import (  # noqa: E402
    InstanceRecord,
    InstanceRegistry,
    InstanceStatus,
    write_marker,
)
from wpid.locking import LockManager, sentinel_path_for  # noqa: E402
from wpid.state import INSTANCES_FILE, StateRegistry  # noqa: E402

RecordFactory = Callable[..., InstanceRecord]
InstanceDirFactory = Callable[..., Path]


@pytest.fixture
def store(tmp_path: Path) -> StateRegistry:
    """Return a state store rooted in a private temporary directory."""
    return StateRegistry(tmp_path / "state")


@pytest.fixture
def registry(store: StateRegistry) -> InstanceRegistry:
    """Return an instance registry guarded by a sentinel next to instances.yml."""
    locks = LockManager(sentinel_path_for(store.path_for(INSTANCES_FILE)))
    return InstanceRegistry(store, locks)


@pytest.fixture
def make_record() -> RecordFactory:
    """Factory returning an :class:`InstanceRecord` with sensible defaults."""

    def _make(directory: Path | str, port: int, **overrides: object) -> InstanceRecord:
        record = InstanceRecord(
            directory=str(directory),
            creation_timestamp="2026-10-18 10:00:00",
            software_version="latest",
            database_version="8.0",
            assigned_port=port,
            status=InstanceStatus.STOPPED,
        )
        return replace(record, **overrides)

    return _make


@pytest.fixture
def make_instance_dir(tmp_path: Path) -> InstanceDirFactory:
    """Factory creating an instance directory with a compose file and ``.env``."""

    def _make(
        name: str,
        *,
        port: int | None = None,
        marker: InstanceRecord | None = None,
    ) -> Path:
        directory = tmp_path / "sites" / name
        directory.mkdir(parents=True)
        (directory / "docker-compose.yml").write_text("services: {}\n", encoding="utf-8")
        env_lines = [f"COMPOSE_PROJECT_NAME={name}"]
        if port is not None:
            env_lines.append(f"WORDPRESS_PORT={port}")
        (directory / ".env").write_text("\n".join(env_lines) + "\n", encoding="utf-8")
        if marker is not None:
            write_marker(replace(marker, directory=str(directory)))
        return directory

    return _make


class CyclingRandom(random.Random):
    """Deterministic ``randint`` that walks each range from its lower bound."""

    def __init__(self) -> None:
        super().__init__(0)
        self.calls = 0

    def randint(self, a: int, b: int) -> int:
        value = a + self.calls % (b - a + 1)
        self.calls += 1
        return value


@pytest.fixture
def cycling_rng() -> Callable[[], CyclingRandom]:
    """Factory for random sources that make port draws predictable."""
    return CyclingRandom
