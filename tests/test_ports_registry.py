"""Tests for port allocation helpers."""
from __future__ import annotations

import random
import socket

import pytest

from wpid.ports import (
    DEFAULT_RANGES,
    NoAvailablePortError,
    PortRange,
    PortRangeError,
    allocate_ports,
    check_port,
    find_available_port,
    is_port_available,
)


def _always_free(port: int) -> bool:
    return True


@pytest.mark.parametrize("seed", range(200))
def test_find_available_port_skips_claimed_and_busy_ports(seed: int) -> None:
    """With 8000-8001 claimed and 8002-8003 busy only 8004 or 8005 may come back."""
    claimed = {8000, 8001}
    checked: list[int] = []

    def is_free(port: int) -> bool:
        checked.append(port)
        return port not in {8002, 8003}

    port = find_available_port(8000, 8005, claimed, probe=is_free, rng=random.Random(seed))

    assert port in {8004, 8005}
    assert 8000 not in checked and 8001 not in checked
    assert port not in claimed
    assert claimed <= {8000, 8001, 8002, 8003}


class _StuckRandom(random.Random):
    """Random source that keeps drawing the same port."""

    def randint(self, a: int, b: int) -> int:
        return a


def test_find_available_port_scans_after_unlucky_draws() -> None:
    """When every random draw misses, the range is scanned once before failing."""
    claimed = {8000}

    port = find_available_port(
        8000, 8003, claimed, probe=lambda port: port == 8003, rng=_StuckRandom()
    )

    assert port == 8003
    assert claimed == {8000, 8001, 8002}


def test_find_available_port_exhaustion_raises() -> None:
    """A range where every port is busy raises NoAvailablePortError."""
    claimed: set[int] = set()

    with pytest.raises(NoAvailablePortError) as excinfo:
        find_available_port(9000, 9001, claimed, probe=lambda port: False, rng=random.Random(1))

    assert excinfo.value.lower == 9000
    assert excinfo.value.upper == 9001
    assert claimed <= {9000, 9001}
    assert claimed


def test_find_available_port_fully_claimed_range() -> None:
    """A range whose ports are all claimed never probes and fails."""
    def probe(port: int) -> bool:
        raise AssertionError("claimed ports must not be probed")

    with pytest.raises(NoAvailablePortError):
        find_available_port(9000, 9002, {9000, 9001, 9002}, probe=probe)


@pytest.mark.parametrize(("lower", "upper"), [(10, 5), (0, 100), (65000, 70000)])
def test_find_available_port_rejects_bad_ranges(lower: int, upper: int) -> None:
    """Inverted or out-of-bounds ranges are rejected before probing."""
    with pytest.raises(PortRangeError):
        find_available_port(lower, upper, set(), probe=_always_free)


def test_allocate_ports_never_reuses_a_port(cycling_rng) -> None:
    """Overlapping ranges still yield distinct ports."""
    ranges = {"mailpit_web": PortRange(8000, 8001), "adminer": PortRange(8000, 8001)}
    claimed = {5000}

    allocated = allocate_ports(ranges, claimed, probe=_always_free, rng=cycling_rng())

    assert set(allocated) == {"mailpit_web", "adminer"}
    assert sorted(allocated.values()) == [8000, 8001]
    assert claimed == {5000}


def test_allocate_ports_default_ranges() -> None:
    """Each default range yields one port inside its bounds."""
    allocated = allocate_ports(DEFAULT_RANGES, set(), probe=_always_free, rng=random.Random(5))

    for service, port_range in DEFAULT_RANGES.items():
        assert allocated[service] in port_range
    assert len(set(allocated.values())) == len(allocated)


def test_port_range_parse_forms() -> None:
    """Ranges parse from lists and dash-separated strings."""
    assert PortRange.parse([11000, 19999]) == PortRange(11000, 19999)
    assert PortRange.parse("8000 - 8999") == PortRange(8000, 8999)
    assert PortRange(8000, 8999).size == 1000
    assert 8500 in PortRange(8000, 8999)

    with pytest.raises(PortRangeError):
        PortRange.parse("eighty")
    with pytest.raises(PortRangeError):
        PortRange.parse(["a", "b"])


def test_check_port_reasons() -> None:
    """check_port explains why a port cannot be used."""
    assert check_port(11000, {12000}, probe=_always_free) is None
    assert "outside" in (check_port(70000, set(), probe=_always_free) or "")
    assert "already assigned" in (check_port(12000, {12000}, probe=_always_free) or "")
    assert "in use" in (check_port(11000, set(), probe=lambda port: False) or "")


def test_is_port_available_detects_listener() -> None:
    """A port with an active listener is reported busy."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("", 0))
        sock.listen(1)
        port = sock.getsockname()[1]

        assert is_port_available(port) is False
