"""The checks run by ``wpid doctor``.

Docker checks talk to the compose provider; state and ports checks read the
registry snapshot held by the context; the template check renders every
instance template against a sample instance.
"""
from __future__ import annotations

import platform
import shutil
import sys
import tempfile
from collections.abc import Sequence

from .. import __version__
from ..lifecycle import CreateRequest, build_template_context
from ..state import INSTANCES_FILE
from ..templates import INSTANCE_TEMPLATES, TemplateError
from .models import DoctorContext, DoctorImpact, Probe, ProbeResult, ProbeStatus


def collect_probes(context: DoctorContext) -> Sequence[Probe]:
    """Return the checks to run, in report order.

    Daemon and compose checks are only added when the docker binary is on
    ``PATH``; without it the binary check alone reports the problem.
    """
    probes = [
        Probe("env-python", "env", _env_python),
        Probe("env-wpid", "env", _env_wpid),
        Probe("docker-binary", "docker", _docker_binary),
    ]
    if shutil.which(context.compose.compose_bin) is not None:
        probes += [
            Probe("docker-daemon", "docker", _docker_daemon),
            Probe("docker-compose", "docker", _docker_compose),
        ]
    probes += [
        Probe("fs-storage", "fs", _fs_storage),
        Probe("state-registry", "state", _state_registry),
        Probe("state-lock", "state", _state_lock),
        Probe("state-directories", "state", _state_directories),
        Probe("ports-duplicates", "ports", _ports_duplicates),
        Probe("templates-render", "templates", _templates_render),
    ]
    return tuple(probes)


def _result(
    status: ProbeStatus,
    message: str,
    *,
    impact: DoctorImpact = DoctorImpact.OK,
    remediation: str | None = None,
    **data: object,
) -> ProbeResult:
    # id and category are filled in by run_probe
    return ProbeResult(
        id="",
        category="env",
        status=status,
        message=message,
        impact=impact,
        remediation=remediation,
        data=data or None,
    )


def _env_python(_context: DoctorContext) -> ProbeResult:
    version = platform.python_version()
    return _result(
        ProbeStatus.GREEN,
        f"Python {version} on {platform.system()} ({platform.machine()}).",
        executable=sys.executable,
    )


def _env_wpid(_context: DoctorContext) -> ProbeResult:
    return _result(ProbeStatus.GREEN, f"wpid {__version__} installed.")


def _docker_binary(context: DoctorContext) -> ProbeResult:
    binary = context.compose.compose_bin
    resolved = shutil.which(binary)
    if resolved is None:
        return _result(
            ProbeStatus.RED,
            f"'{binary}' not found on PATH; instances cannot be started or deleted cleanly.",
            impact=DoctorImpact.PROVIDER,
            remediation="Install Docker Engine or Docker Desktop.",
        )
    return _result(ProbeStatus.GREEN, f"Docker found at {resolved}.")


def _docker_daemon(context: DoctorContext) -> ProbeResult:
    responding, detail = context.compose.daemon_responding()
    if not responding:
        return _result(
            ProbeStatus.RED,
            f"Docker daemon not responding: {detail}",
            impact=DoctorImpact.PROVIDER,
            remediation="Start the Docker daemon and check your user can reach its socket.",
        )
    return _result(ProbeStatus.GREEN, "Docker daemon responding.")


def _docker_compose(context: DoctorContext) -> ProbeResult:
    found = context.compose.version()
    if found is None:
        return _result(
            ProbeStatus.RED,
            "Neither 'docker compose' (v2) nor 'docker-compose' (v1) is available.",
            impact=DoctorImpact.PROVIDER,
        )
    flavour, version_line = found
    if flavour == "v1":
        return _result(
            ProbeStatus.YELLOW,
            f"Only 'docker-compose' (v1) found ({version_line}); wpid calls 'docker compose'.",
            remediation="Upgrade to Docker Compose v2.",
        )
    return _result(ProbeStatus.GREEN, f"'docker compose' available ({version_line}).")


def _fs_storage(context: DoctorContext) -> ProbeResult:
    storage = context.store.root
    if not storage.is_dir():
        return _result(
            ProbeStatus.RED,
            f"Storage directory {storage} does not exist.",
            impact=DoctorImpact.ENVIRONMENT,
        )
    try:
        with tempfile.NamedTemporaryFile(dir=storage, prefix=".wpid-doctor-"):
            pass
    except OSError as exc:
        return _result(
            ProbeStatus.RED,
            f"Storage directory {storage} is not writable: {exc}",
            impact=DoctorImpact.ENVIRONMENT,
        )
    return _result(
        ProbeStatus.GREEN,
        f"Storage directory {storage} is writable.",
        mode=f"{storage.stat().st_mode & 0o777:03o}",
    )


def _state_registry(context: DoctorContext) -> ProbeResult:
    snapshot = context.registry
    if snapshot.error is not None:
        return _result(
            ProbeStatus.RED,
            snapshot.error,
            impact=DoctorImpact.VALIDATION,
            remediation="Fix the file with `wpid meta edit` or restore it from a copy.",
        )
    if snapshot.malformed:
        return _result(
            ProbeStatus.RED,
            f"Malformed registry entries: {', '.join(snapshot.malformed)}.",
            impact=DoctorImpact.VALIDATION,
            remediation="Entry keys must be names and values mappings; see `wpid meta validate`.",
        )
    count = len(snapshot.records)
    message = "No instances registered." if not count else f"{count} instance(s) registered."
    return _result(ProbeStatus.GREEN, message)


def _state_lock(context: DoctorContext) -> ProbeResult:
    if context.locks.is_held():
        return _result(
            ProbeStatus.YELLOW,
            f"Lock file {context.locks.path} exists; another wpid command may be running.",
            remediation="If no wpid command is running, remove it with `wpid meta unlock`.",
        )
    return _result(ProbeStatus.GREEN, "Registry is not locked.")


def _state_directories(context: DoctorContext) -> ProbeResult:
    missing: list[str] = []
    unreadable: list[str] = []
    for name, record in context.registry.records.items():
        if record.directory_problem() is not None:
            unreadable.append(name)
        elif not record.directory_exists():
            missing.append(name)
    if missing or unreadable:
        parts = []
        if missing:
            parts.append(f"missing directories: {', '.join(missing)}")
        if unreadable:
            parts.append(f"directories that cannot be inspected: {', '.join(unreadable)}")
        return _result(
            ProbeStatus.YELLOW,
            f"Registered instances with {'; '.join(parts)}.",
            remediation="Run `wpid prune` to drop entries whose directories are gone.",
            missing=missing,
            unreadable=unreadable,
        )
    return _result(ProbeStatus.GREEN, "All registered instance directories exist.")


def _ports_duplicates(context: DoctorContext) -> ProbeResult:
    owners = context.registry.port_owners()
    if owners:
        detail = ", ".join(str(port) for port in owners)
        return _result(
            ProbeStatus.RED,
            f"Ports assigned to more than one instance in {INSTANCES_FILE}: {detail}.",
            impact=DoctorImpact.VALIDATION,
            owners={str(port): names for port, names in owners.items()},
        )
    ports = {record.assigned_port for record in context.registry.records.values()}
    ports.discard(0)
    return _result(ProbeStatus.GREEN, f"{len(ports)} distinct port(s) assigned.")


def _templates_render(context: DoctorContext) -> ProbeResult:
    request = CreateRequest(name="doctor", parent_dir=context.store.root)
    sample = build_template_context(
        request,
        {name: port_range.lower for name, port_range in context.config.ports.ranges().items()},
    )
    failures: list[str] = []
    for template_name in INSTANCE_TEMPLATES.values():
        try:
            context.templates.render_to_string(template_name, sample)
        except TemplateError as exc:
            failures.append(str(exc))
    if failures:
        return _result(
            ProbeStatus.RED,
            "; ".join(failures),
            impact=DoctorImpact.ENVIRONMENT,
            remediation="Fix or remove the overriding templates in templates_dir.",
        )
    source = context.templates.override_dir or "bundled templates"
    return _result(ProbeStatus.GREEN, f"Instance templates render ({source}).")


__all__ = ["collect_probes"]
