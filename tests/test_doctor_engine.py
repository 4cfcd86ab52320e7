"""Tests for running doctor checks and summarising their results."""

from __future__ import annotations

import time
from pathlib import Path
from types import SimpleNamespace

from wpid.cli import RuntimeContext
from wpid.doctor import (
    DoctorContext,
    DoctorImpact,
    DoctorReport,
    Probe,
    ProbeResult,
    ProbeStatus,
    RegistrySnapshot,
    run_doctor,
    run_probe,
)
from wpid.instances import InstanceRegistry
from wpid.state import StateRegistry


def _context(workers: int = 1) -> DoctorContext:
    """Return a context whose dependencies the checks below never touch."""
    sentinel = object()
    return DoctorContext(
        config=sentinel,  # type: ignore[arg-type]
        store=sentinel,  # type: ignore[arg-type]
        locks=sentinel,  # type: ignore[arg-type]
        templates=sentinel,  # type: ignore[arg-type]
        compose=sentinel,  # type: ignore[arg-type]
        registry=RegistrySnapshot(),
        workers=workers,
    )


def _result(status: ProbeStatus, impact: DoctorImpact = DoctorImpact.OK) -> ProbeResult:
    return ProbeResult(id="", category="env", status=status, message="ok", impact=impact)


def test_report_summary_uses_worst_status_and_impact() -> None:
    """The report exit code follows the most severe impact, not the last one."""
    report = DoctorReport(
        results=(
            _result(ProbeStatus.RED, DoctorImpact.PROVIDER),
            _result(ProbeStatus.RED, DoctorImpact.VALIDATION),
            _result(ProbeStatus.YELLOW),
            _result(ProbeStatus.GREEN),
        )
    )

    assert report.status is ProbeStatus.RED
    assert report.impact is DoctorImpact.PROVIDER
    assert report.exit_code == 4
    assert report.totals() == {
        ProbeStatus.GREEN: 1,
        ProbeStatus.YELLOW: 1,
        ProbeStatus.RED: 2,
    }


def test_warnings_alone_keep_exit_code_zero() -> None:
    """Yellow results colour the summary without failing the run."""
    report = DoctorReport(results=(_result(ProbeStatus.GREEN), _result(ProbeStatus.YELLOW)))
    empty = DoctorReport(results=())

    assert report.status is ProbeStatus.YELLOW
    assert report.exit_code == 0
    assert empty.status is ProbeStatus.GREEN
    assert empty.totals()[ProbeStatus.RED] == 0


def test_run_probe_stamps_id_category_and_duration() -> None:
    """Results carry the id and category of the check that produced them."""
    probe = Probe("fs-storage", "fs", lambda ctx: _result(ProbeStatus.GREEN))

    result = run_probe(probe, _context())

    assert (result.id, result.category) == ("fs-storage", "fs")
    assert result.duration_ms is not None


def test_run_probe_turns_crashes_into_red_results() -> None:
    """An exception inside a check becomes a red result instead of aborting."""

    def boom(ctx: DoctorContext) -> ProbeResult:
        raise RuntimeError("kaboom")

    result = run_probe(Probe("docker-daemon", "docker", boom), _context())

    assert result.status is ProbeStatus.RED
    assert result.impact is DoctorImpact.PROVIDER
    assert "kaboom" in result.message
    assert result.data is not None
    assert "RuntimeError" in result.data["traceback"]


def test_run_doctor_keeps_probe_order_with_workers() -> None:
    """Parallel execution still reports results in the order checks were given."""

    def slow(ctx: DoctorContext) -> ProbeResult:
        time.sleep(0.02)
        return _result(ProbeStatus.YELLOW)

    probes = [
        Probe("slow", "env", slow),
        Probe("fast", "state", lambda ctx: _result(ProbeStatus.GREEN)),
    ]

    report = run_doctor(_context(workers=4), probes, metadata={"matched_probes": 2})

    assert [result.id for result in report.results] == ["slow", "fast"]
    assert report.metadata["workers"] == 4
    assert report.metadata["probe_count"] == 2
    assert report.metadata["matched_probes"] == 2
    assert run_doctor(_context(), []).results == ()


def test_registry_snapshot_flags_bad_keys_and_duplicate_ports(
    store: StateRegistry,
    registry: InstanceRegistry,
    make_record,
    tmp_path: Path,
) -> None:
    """The snapshot separates usable records from entries it cannot interpret."""
    registry.register("alpha", make_record(tmp_path / "alpha", 12001))
    registry.register("beta", make_record(tmp_path / "beta", 12001))
    raw = dict(store.read_instances())
    raw[123] = {"directory": str(tmp_path / "numeric")}
    raw["gamma"] = "not a mapping"
    store.write_instances(raw)

    snapshot = RegistrySnapshot.load(store)

    assert snapshot.error is None
    assert list(snapshot.records) == ["alpha", "beta"]
    assert list(snapshot.malformed) == ["123", "gamma"]
    assert snapshot.port_owners() == {12001: ["alpha", "beta"]}


def test_registry_snapshot_records_parse_errors(store: StateRegistry) -> None:
    """A file that does not parse leaves an error and no records."""
    store.ensure_root()
    store.path_for("instances.yml").write_text("instances: [\n", encoding="utf-8")

    snapshot = RegistrySnapshot.load(store)

    assert snapshot.error is not None
    assert snapshot.records == {}


def test_context_from_runtime_snapshots_registry(
    store: StateRegistry,
    registry: InstanceRegistry,
    make_record,
    tmp_path: Path,
) -> None:
    """The context mirrors the runtime and reads the registry once."""
    registry.register("alpha", make_record(tmp_path / "alpha", 12001))
    sentinel = SimpleNamespace()
    runtime = RuntimeContext(
        config=sentinel,  # type: ignore[arg-type]
        store=store,
        instances=registry,
        locks=registry.locks,
        logger=sentinel,  # type: ignore[arg-type]
        templates=sentinel,  # type: ignore[arg-type]
        compose=sentinel,  # type: ignore[arg-type]
    )

    context = DoctorContext.from_runtime(runtime, workers=2)

    assert context.store is store
    assert context.locks is registry.locks
    assert context.workers == 2
    assert list(context.registry.records) == ["alpha"]
