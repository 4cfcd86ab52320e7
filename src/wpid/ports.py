"""Port allocation helpers for wpid.

Every instance publishes a handful of host ports (WordPress, Mailpit SMTP and
web UI, Adminer). Ports are chosen at random inside a configured range,
skipping ports already claimed by other registered instances and ports that
another process is listening on right now.

The liveness probe binds and immediately closes a listening socket, so a port
reported free can be taken by an unrelated process before the container
runtime binds it. Callers serialise allocation against each other with the
registry lock; they cannot protect against the rest of the host.
"""
from __future__ import annotations

import random
import secrets
import socket
from collections.abc import Callable, Iterable, Mapping, MutableSet
from dataclasses import dataclass

MIN_PORT = 1
MAX_PORT = 65535


class PortsRegistryError(RuntimeError):
    """Raised when port allocation fails."""


class PortRangeError(PortsRegistryError):
    """Raised when a port range is malformed."""


class NoAvailablePortError(PortsRegistryError):
    """Raised when no free port could be found within the attempt budget."""

    def __init__(self, lower: int, upper: int) -> None:
        super().__init__(f"No available port found in range {lower}-{upper}.")
        self.lower = lower
        self.upper = upper


def _validate_range(lower: int, upper: int) -> None:
    if lower > upper:
        raise PortRangeError(f"Invalid port range: lower bound {lower} exceeds upper {upper}.")
    if lower < MIN_PORT or upper > MAX_PORT:
        raise PortRangeError(
            f"Invalid port range {lower}-{upper}: bounds must be within {MIN_PORT}-{MAX_PORT}."
        )


@dataclass(frozen=True)
class PortRange:
    """Inclusive port range."""

    lower: int
    upper: int

    def __post_init__(self) -> None:
        """Validate the bounds."""
        _validate_range(self.lower, self.upper)

    def __contains__(self, port: object) -> bool:
        return isinstance(port, int) and self.lower <= port <= self.upper

    @property
    def size(self) -> int:
        """Return the number of ports in the range."""
        return self.upper - self.lower + 1

    def to_list(self) -> list[int]:
        """Return ``[lower, upper]`` for serialisation."""
        return [self.lower, self.upper]

    @classmethod
    def parse(cls, value: object) -> PortRange:
        """Build a range from ``[lower, upper]`` or ``"lower-upper"``."""
        if isinstance(value, PortRange):
            return value
        if isinstance(value, str) and "-" in value:
            lower_text, _, upper_text = value.partition("-")
            parts: list[object] = [lower_text.strip(), upper_text.strip()]
        elif isinstance(value, (list, tuple)) and len(value) == 2:
            parts = list(value)
        else:
            raise PortRangeError(
                f"Port range must be [lower, upper] or 'lower-upper', got {value!r}."
            )
        try:
            lower, upper = (int(part) for part in parts)  # type: ignore[call-overload]
        except (TypeError, ValueError) as exc:
            raise PortRangeError(f"Port range bounds must be integers, got {value!r}.") from exc
        return cls(lower, upper)


WORDPRESS_RANGE = PortRange(11000, 19999)
MAILPIT_SMTP_RANGE = PortRange(10000, 10999)
MAILPIT_WEB_RANGE = PortRange(8000, 8999)
ADMINER_RANGE = PortRange(8081, 8999)

DEFAULT_RANGES: dict[str, PortRange] = {
    "wordpress": WORDPRESS_RANGE,
    "mailpit_smtp": MAILPIT_SMTP_RANGE,
    "mailpit_web": MAILPIT_WEB_RANGE,
    "adminer": ADMINER_RANGE,
}

PortProbe = Callable[[int], bool]


def is_port_available(port: int, host: str = "") -> bool:
    """Return ``True`` when a TCP listener can be bound to *port* right now."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind((host, port))
            sock.listen(1)
    except OSError:
        return False
    return True


def find_available_port(
    lower: int,
    upper: int,
    claimed: MutableSet[int],
    *,
    probe: PortProbe = is_port_available,
    rng: random.Random | None = None,
) -> int:
    """Return a random port in ``[lower, upper]`` not in *claimed* and free.

    At most ``(upper - lower + 1) * 2`` candidates are drawn. Candidates the
    probe reports busy are added to *claimed* so they are not probed again;
    the chosen port itself is left for the caller to claim. When the random
    draws run out, the remaining unclaimed ports are probed once in order, so
    the error is only raised when no usable port exists.
    """
    _validate_range(lower, upper)
    chooser = rng or secrets.SystemRandom()
    max_attempts = (upper - lower + 1) * 2
    for _ in range(max_attempts):
        candidate = chooser.randint(lower, upper)
        if candidate in claimed:
            continue
        if probe(candidate):
            return candidate
        claimed.add(candidate)
    for candidate in range(lower, upper + 1):
        if candidate in claimed:
            continue
        if probe(candidate):
            return candidate
        claimed.add(candidate)
    raise NoAvailablePortError(lower, upper)


def allocate_ports(
    ranges: Mapping[str, PortRange],
    claimed: Iterable[int],
    *,
    probe: PortProbe = is_port_available,
    rng: random.Random | None = None,
) -> dict[str, int]:
    """Allocate one port per named range, in order, without reusing any port."""
    working: set[int] = set(claimed)
    allocated: dict[str, int] = {}
    for service, port_range in ranges.items():
        port = find_available_port(
            port_range.lower,
            port_range.upper,
            working,
            probe=probe,
            rng=rng,
        )
        working.add(port)
        allocated[service] = port
    return allocated


def check_port(
    port: int,
    claimed: Iterable[int],
    *,
    probe: PortProbe = is_port_available,
) -> str | None:
    """Return why *port* cannot be used, or ``None`` when it is usable."""
    if not MIN_PORT <= port <= MAX_PORT:
        return f"Port {port} is outside {MIN_PORT}-{MAX_PORT}."
    if port in set(claimed):
        return f"Port {port} is already assigned to a registered instance."
    if not probe(port):
        return f"Port {port} is in use by another process."
    return None


__all__ = [
    "ADMINER_RANGE",
    "DEFAULT_RANGES",
    "MAILPIT_SMTP_RANGE",
    "MAILPIT_WEB_RANGE",
    "MAX_PORT",
    "MIN_PORT",
    "NoAvailablePortError",
    "PortProbe",
    "PortRange",
    "PortRangeError",
    "PortsRegistryError",
    "WORDPRESS_RANGE",
    "allocate_ports",
    "check_port",
    "find_available_port",
    "is_port_available",
]
