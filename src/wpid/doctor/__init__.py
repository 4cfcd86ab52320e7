"""Health checks behind ``wpid doctor``."""
from __future__ import annotations

from .engine import run_doctor, run_probe
from .models import (
    CATEGORIES,
    DEFAULT_WORKERS,
    DoctorContext,
    DoctorImpact,
    DoctorReport,
    Probe,
    ProbeResult,
    ProbeStatus,
    RegistrySnapshot,
)
from .probes import collect_probes

__all__ = [
    "CATEGORIES",
    "DEFAULT_WORKERS",
    "DoctorContext",
    "DoctorImpact",
    "DoctorReport",
    "Probe",
    "ProbeResult",
    "ProbeStatus",
    "RegistrySnapshot",
    "collect_probes",
    "run_doctor",
    "run_probe",
]
