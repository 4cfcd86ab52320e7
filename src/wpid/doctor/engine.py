"""Run doctor probes and collect their results."""
from __future__ import annotations

import concurrent.futures
import time
import traceback
from collections.abc import Mapping, Sequence
from dataclasses import replace

from .models import DoctorContext, DoctorImpact, DoctorReport, Probe, ProbeResult, ProbeStatus


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def run_probe(probe: Probe, context: DoctorContext) -> ProbeResult:
    """Run one probe; an exception becomes a red Docker-impact result."""
    start = time.perf_counter()
    try:
        result = probe.run(context)
    except Exception as exc:  # noqa: BLE001
        return ProbeResult(
            id=probe.id,
            category=probe.category,
            status=ProbeStatus.RED,
            impact=DoctorImpact.PROVIDER,
            message=f"Check '{probe.id}' crashed: {exc}",
            data={"exception": repr(exc), "traceback": traceback.format_exc()},
            duration_ms=_elapsed_ms(start),
        )
    return replace(result, id=probe.id, category=probe.category, duration_ms=_elapsed_ms(start))


def run_doctor(
    context: DoctorContext,
    probes: Sequence[Probe],
    *,
    metadata: Mapping[str, object] | None = None,
) -> DoctorReport:
    """Run *probes* on up to ``context.workers`` threads, keeping their order."""
    start = time.perf_counter()
    workers = max(1, context.workers)
    if workers == 1 or len(probes) <= 1:
        results = [run_probe(probe, context) for probe in probes]
    else:
        with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as executor:
            results = list(executor.map(lambda probe: run_probe(probe, context), probes))
    return DoctorReport(
        results=tuple(results),
        metadata={
            "duration_ms": _elapsed_ms(start),
            "probe_count": len(results),
            "workers": workers,
            **(metadata or {}),
        },
    )


__all__ = ["run_doctor", "run_probe"]
