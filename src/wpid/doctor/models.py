"""Result types and the shared context for ``wpid doctor``.

Probes never read the registry themselves. :class:`DoctorContext` parses
``instances.yml`` once, strictly, into a :class:`RegistrySnapshot` that every
state and ports probe inspects, so one run reports on one consistent view of
the file even when probes execute on worker threads.
"""
from __future__ import annotations

from collections import Counter
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Literal

from ..exit_codes import ExitCode
from ..instances import InstanceRecord
from ..state import StateRegistryError

if TYPE_CHECKING:
    from ..cli import RuntimeContext
    from ..config import AppConfig
    from ..locking import LockManager
    from ..providers.compose import ComposeProvider
    from ..state import StateRegistry
    from ..templates import TemplateEngine

DEFAULT_WORKERS = 4

Category = Literal["env", "docker", "fs", "state", "ports", "templates"]
CATEGORIES: tuple[Category, ...] = ("env", "docker", "fs", "state", "ports", "templates")


class ProbeStatus(str, Enum):
    """Traffic-light outcome of one check."""

    GREEN = "green"
    YELLOW = "yellow"
    RED = "red"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]


_STATUS_RANK = {ProbeStatus.GREEN: 0, ProbeStatus.YELLOW: 1, ProbeStatus.RED: 2}


class DoctorImpact(Enum):
    """Exit code a failing check contributes; the worst one wins."""

    OK = int(ExitCode.OK)
    VALIDATION = int(ExitCode.VALIDATION)
    ENVIRONMENT = int(ExitCode.ENVIRONMENT)
    PROVIDER = int(ExitCode.PROVIDER)


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of one check."""

    id: str
    category: Category
    status: ProbeStatus
    message: str
    impact: DoctorImpact = DoctorImpact.OK
    remediation: str | None = None
    data: Mapping[str, Any] | None = None
    duration_ms: int | None = None


@dataclass(frozen=True)
class Probe:
    """A named check and the function that performs it."""

    id: str
    category: Category
    run: Callable[[DoctorContext], ProbeResult]


@dataclass(frozen=True)
class RegistrySnapshot:
    """The registry as parsed once for a doctor run."""

    records: Mapping[str, InstanceRecord] = field(default_factory=dict)
    malformed: Sequence[str] = ()
    error: str | None = None

    @classmethod
    def load(cls, store: StateRegistry) -> RegistrySnapshot:
        """Strictly parse ``instances.yml``; parse failures land in :attr:`error`."""
        try:
            raw = store.read_instances(strict=True)
        except StateRegistryError as exc:
            return cls(error=str(exc))
        records: dict[str, InstanceRecord] = {}
        malformed: list[str] = []
        for key in sorted(raw, key=str):
            entry = raw[key]
            if not isinstance(key, str) or not isinstance(entry, Mapping):
                malformed.append(str(key))
                continue
            records[key] = InstanceRecord.from_dict(entry)
        return cls(records=records, malformed=tuple(malformed))

    def port_owners(self) -> dict[int, list[str]]:
        """Return ports claimed by more than one entry, with their owners."""
        counts = Counter(
            record.assigned_port for record in self.records.values() if record.assigned_port > 0
        )
        return {
            port: sorted(
                name for name, record in self.records.items() if record.assigned_port == port
            )
            for port in sorted(counts)
            if counts[port] > 1
        }


@dataclass(frozen=True)
class DoctorContext:
    """Everything a probe may look at."""

    config: AppConfig
    store: StateRegistry
    locks: LockManager
    templates: TemplateEngine
    compose: ComposeProvider
    registry: RegistrySnapshot
    workers: int = DEFAULT_WORKERS

    @classmethod
    def from_runtime(
        cls,
        runtime: RuntimeContext,
        *,
        workers: int = DEFAULT_WORKERS,
    ) -> DoctorContext:
        """Build a context from the CLI runtime, snapshotting the registry."""
        return cls(
            config=runtime.config,
            store=runtime.store,
            locks=runtime.locks,
            templates=runtime.templates,
            compose=runtime.compose,
            registry=RegistrySnapshot.load(runtime.store),
            workers=workers,
        )


@dataclass(frozen=True)
class DoctorReport:
    """Results of a doctor run, in probe order."""

    results: Sequence[ProbeResult]
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @property
    def status(self) -> ProbeStatus:
        return max(
            (result.status for result in self.results),
            key=lambda status: status.rank,
            default=ProbeStatus.GREEN,
        )

    @property
    def impact(self) -> DoctorImpact:
        return max(
            (result.impact for result in self.results),
            key=lambda impact: impact.value,
            default=DoctorImpact.OK,
        )

    @property
    def exit_code(self) -> int:
        return self.impact.value

    def totals(self) -> dict[ProbeStatus, int]:
        """Count results per status, including zero counts."""
        counts = Counter(result.status for result in self.results)
        return {status: counts.get(status, 0) for status in ProbeStatus}


__all__ = [
    "CATEGORIES",
    "Category",
    "DEFAULT_WORKERS",
    "DoctorContext",
    "DoctorImpact",
    "DoctorReport",
    "Probe",
    "ProbeResult",
    "ProbeStatus",
    "RegistrySnapshot",
]
