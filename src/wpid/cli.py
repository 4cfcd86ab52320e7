"""Typer-powered command line interface for ``wpid``.

Every command builds (or reuses) a :class:`RuntimeContext` holding the
resolved configuration, the state store, the instance registry and the
providers, and runs inside a structured logging operation so that each
invocation leaves one record in ``operations.jsonl``.
"""
from __future__ import annotations

import json
import textwrap
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.theme import Theme

from . import __version__
from .config import (
    GLOBAL_KEYS,
    AppConfig,
    ConfigError,
    get_global_value,
    load_config,
    set_global_value,
)
from .discovery import (
    DiscoveryError,
    MissingPortError,
    adopt_orphan,
    discard_orphan,
    find_orphans,
    inspect_directory,
)
from .doctor import (
    CATEGORIES,
    DEFAULT_WORKERS,
    DoctorContext,
    DoctorImpact,
    DoctorReport,
    ProbeResult,
    ProbeStatus,
    collect_probes,
    run_doctor,
)
from .exit_codes import ExitCode
from .instances import (
    InstanceRecord,
    InstanceRegistry,
    InstanceRegistryError,
    InstanceStatus,
    update_marker_status,
    validate_instance_name,
)
from .lifecycle import (
    DEFAULT_DB_VERSION,
    DEFAULT_DOMAIN_SUFFIX,
    DEFAULT_WORDPRESS_VERSION,
    CreateRequest,
    LifecycleError,
    create_instance,
    delete_instance,
    generate_name,
    instance_dir_name,
)
from .locking import LockError, LockHeldError, LockManager, break_lock, sentinel_path_for
from .logging import OperationScope, StructuredLogger
from .ports import (
    MAX_PORT,
    MIN_PORT,
    NoAvailablePortError,
    PortsRegistryError,
    check_port,
    is_port_available,
)
from .providers import ComposeError, ComposeProvider
from .state import INSTANCES_FILE, StateRegistry, StateRegistryError
from .templates import TemplateEngine, TemplateError

console = Console()
err_console = Console(stderr=True)

_THEMES = {
    "dark": Theme(
        {
            "wpid.header": "bold magenta",
            "wpid.name": "bold cyan",
            "wpid.muted": "dim",
        }
    ),
    "light": Theme(
        {
            "wpid.header": "bold blue",
            "wpid.name": "bold",
            "wpid.muted": "grey50",
        }
    ),
}

_STATUS_STYLE = {
    InstanceStatus.RUNNING: "green",
    InstanceStatus.STOPPED: "yellow",
    InstanceStatus.UNKNOWN: "wpid.muted",
    InstanceStatus.DIRECTORY_MISSING: "red",
}

STORAGE_DIR_OPTION = typer.Option(
    None,
    "--storage-dir",
    file_okay=False,
    help="Directory holding instances.yml and config.yml (overrides WPID_STORAGE_DIR).",
)

YES_OPTION = typer.Option(
    False,
    "--yes",
    "-y",
    help="Assume yes for confirmation prompts (non-interactive mode).",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit JSON instead of a table.",
)

NAME_OPTION = typer.Option(
    None,
    "--name",
    help="Registry name (defaults to the directory name).",
)

PORT_OPTION = typer.Option(
    None,
    "--port",
    min=MIN_PORT,
    max=MAX_PORT,
    help="WordPress port to record when neither the marker nor .env provides one.",
)

_PROBE_CATEGORY_NAMES = ", ".join(CATEGORIES)

DOCTOR_ONLY_OPTION = typer.Option(
    None,
    "--only",
    metavar="CATEGORY[,CATEGORY...]",
    help=f"Comma-separated probe categories to include ({_PROBE_CATEGORY_NAMES}).",
)
DOCTOR_EXCLUDE_OPTION = typer.Option(
    None,
    "--exclude",
    metavar="CATEGORY[,CATEGORY...]",
    help=f"Comma-separated probe categories to exclude ({_PROBE_CATEGORY_NAMES}).",
)
DOCTOR_WORKERS_OPTION = typer.Option(
    DEFAULT_WORKERS,
    "--workers",
    min=1,
    help="Number of checks run in parallel.",
)

_PROBE_CATEGORY_SET = frozenset(CATEGORIES)
_PROBE_STATUS_STYLE = {
    ProbeStatus.GREEN: "[green]PASS[/green]",
    ProbeStatus.YELLOW: "[yellow]WARN[/yellow]",
    ProbeStatus.RED: "[red]FAIL[/red]",
}
_SUMMARY_STATUS_STYLE = {
    ProbeStatus.GREEN: "[green]GREEN[/green]",
    ProbeStatus.YELLOW: "[yellow]WARN[/yellow]",
    ProbeStatus.RED: "[red]RED[/red]",
}
_DOCTOR_IMPACT_MESSAGES = {
    DoctorImpact.OK: "Doctor run completed successfully.",
    DoctorImpact.VALIDATION: "Doctor detected registry or configuration errors.",
    DoctorImpact.ENVIRONMENT: "Doctor detected environment errors.",
    DoctorImpact.PROVIDER: "Doctor detected Docker failures.",
}

# Most specific first; the first match wins.
_ERROR_EXIT_CODES: tuple[tuple[type[BaseException], ExitCode], ...] = (
    (LockHeldError, ExitCode.RESOURCE),
    (NoAvailablePortError, ExitCode.RESOURCE),
    (PortsRegistryError, ExitCode.VALIDATION),
    (InstanceRegistryError, ExitCode.VALIDATION),
    (DiscoveryError, ExitCode.VALIDATION),
    (ComposeError, ExitCode.PROVIDER),
    (LockError, ExitCode.ENVIRONMENT),
    (StateRegistryError, ExitCode.ENVIRONMENT),
    (ConfigError, ExitCode.ENVIRONMENT),
    (TemplateError, ExitCode.ENVIRONMENT),
    (LifecycleError, ExitCode.ENVIRONMENT),
    (OSError, ExitCode.ENVIRONMENT),
)

_HANDLED_ERRORS = tuple(error_type for error_type, _ in _ERROR_EXIT_CODES)


def _parse_probe_categories(raw: str | None) -> set[str]:
    """Parse comma-separated probe categories into a normalised set."""
    if raw is None:
        return set()
    return {part.strip().lower() for part in raw.split(",") if part.strip()}


def _sanitize_doctor_payload(value: object) -> object:
    """Sanitise doctor payload values for JSON/log contexts."""
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitize_doctor_payload(item) for key, item in value.items()}
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return [_sanitize_doctor_payload(item) for item in value]
    return str(value)


def _serialize_doctor_report(report: DoctorReport) -> dict[str, object]:
    """Convert a doctor report into a JSON-serialisable mapping."""
    results_payload: list[dict[str, object]] = []
    for result in report.results:
        result_payload: dict[str, object] = {
            "id": result.id,
            "category": result.category,
            "status": result.status.value,
            "impact": result.impact.name.lower(),
            "message": result.message,
        }
        if result.remediation:
            result_payload["remediation"] = result.remediation
        if result.duration_ms is not None:
            result_payload["duration_ms"] = result.duration_ms
        if result.data:
            result_payload["data"] = _sanitize_doctor_payload(result.data)
        results_payload.append(result_payload)

    return {
        "summary": {
            "status": report.status.value,
            "impact": report.impact.name.lower(),
            "exit_code": report.exit_code,
            "totals": {status.value: count for status, count in report.totals().items()},
        },
        "results": results_payload,
        "metadata": _sanitize_doctor_payload(report.metadata),
    }


def _collect_status_identifiers(
    results: Sequence[ProbeResult],
    status: ProbeStatus,
) -> list[str]:
    """Return identifiers for results matching a particular status."""
    return [
        f"{result.category}:{result.id}"
        for result in results
        if result.status is status
    ]


def _render_doctor_report(report: DoctorReport) -> None:
    """Render a doctor report in a human-friendly format."""
    totals = report.totals()
    console.print(
        f"Doctor summary: {_SUMMARY_STATUS_STYLE[report.status]} "
        f"(impact={report.impact.name.lower()}, exit={report.exit_code})"
    )
    console.print(
        f"Totals: green={totals[ProbeStatus.GREEN]} "
        f"warn={totals[ProbeStatus.YELLOW]} "
        f"red={totals[ProbeStatus.RED]}"
    )
    if not report.results:
        console.print("No probes were executed.")
        return

    console.print()
    for result in report.results:
        console.print(
            f"{_PROBE_STATUS_STYLE[result.status]} {escape(f'[{result.category}]')} "
            f"{result.id}: {escape(result.message)}",
            highlight=False,
        )
        if result.remediation:
            console.print(f"  remediation: {result.remediation}")
        if result.impact is not DoctorImpact.OK:
            console.print(
                f"  impact: {result.impact.name.lower()} (exit={result.impact.value})"
            )


app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        WordPress Instance Deployer.

        Creates Docker Compose based WordPress development instances, keeps a
        central registry of them and allocates their host ports.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    store: StateRegistry
    instances: InstanceRegistry
    locks: LockManager
    logger: StructuredLogger
    templates: TemplateEngine
    compose: ComposeProvider


def _ensure_runtime(
    ctx: typer.Context,
    storage_dir: Path | None = None,
    theme: str | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if theme is not None:
        overrides["theme"] = theme

    try:
        config = load_config(storage_dir, overrides=overrides)
        store = StateRegistry(config.storage_dir)
        store.ensure_root()
        if theme is not None:
            set_global_value(store, "theme", theme)
    except (ConfigError, StateRegistryError) as exc:
        err_console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=int(ExitCode.ENVIRONMENT)) from exc

    for warning in config.warnings:
        err_console.print(f"[yellow]Warning:[/yellow] {warning}")

    locks = LockManager(sentinel_path_for(store.path_for(INSTANCES_FILE)))
    runtime = RuntimeContext(
        config=config,
        store=store,
        instances=InstanceRegistry(store, locks),
        locks=locks,
        logger=StructuredLogger(config.logs_dir),
        templates=TemplateEngine.with_overrides(config.templates_dir),
        compose=ComposeProvider(compose_bin=config.compose_bin),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx)


def _report_store_warnings(runtime: RuntimeContext) -> None:
    for warning in runtime.store.drain_warnings():
        err_console.print(f"[yellow]Warning:[/yellow] {warning}")


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the wpid version and exit.",
    ),
    storage_dir: Path | None = STORAGE_DIR_OPTION,
    light: bool | None = typer.Option(
        None,
        "--light/--dark",
        help="Switch the colour theme for light or dark terminals (remembered).",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    theme = None if light is None else ("light" if light else "dark")
    runtime = _ensure_runtime(ctx, storage_dir, theme)
    ctx.with_resource(console.use_theme(_THEMES[runtime.config.theme]))
    ctx.call_on_close(lambda: _report_store_warnings(runtime))

    if version:
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"wpid {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    if ctx.invoked_subcommand is None:
        if theme is not None:
            console.print(f"Theme set to [bold]{theme}[/bold].")
            raise typer.Exit(code=0)
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = 2,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{escape(message)}[/red]", highlight=False)
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _exit_code_for(exc: BaseException) -> int:
    for error_type, code in _ERROR_EXIT_CODES:
        if isinstance(exc, error_type):
            return int(code)
    return 1


def _fail(op: OperationScope, exc: BaseException) -> NoReturn:
    """Translate a domain exception into a command error."""
    _command_error(op, str(exc), rc=_exit_code_for(exc))


def _confirm(prompt: str, *, assume_yes: bool, default: bool = False) -> bool:
    if assume_yes:
        return True
    return typer.confirm(prompt, default=default)


def _cancelled(op: OperationScope, message: str = "Cancelled.") -> None:
    console.print(f"[yellow]{message}[/yellow]")
    op.success(message, changed=0, context={"cancelled": True})


def _print_warnings(warnings: Sequence[str]) -> None:
    for warning in warnings:
        console.print(f"[yellow]Warning:[/yellow] {escape(warning)}", highlight=False)


def _status_label(status: InstanceStatus) -> str:
    return f"[{_STATUS_STYLE[status]}]{status.value}[/]"


def _record_payload(name: str, record: InstanceRecord) -> dict[str, object]:
    return {"name": name, **record.to_dict()}


# ---------------------------------------------------------------------------
# Instance lifecycle
# ---------------------------------------------------------------------------


@app.command()
def create(
    ctx: typer.Context,
    name: str | None = typer.Argument(
        None,
        help="Instance name; a random adjective-noun name is used when omitted.",
    ),
    parent_dir: Path | None = typer.Option(
        None,
        "--parent-dir",
        file_okay=False,
        help="Directory to create the instance in (defaults to sites_base_directory or cwd).",
    ),
    wp_version: str = typer.Option(
        DEFAULT_WORDPRESS_VERSION,
        "--wp-version",
        help="WordPress image tag.",
    ),
    db_version: str = typer.Option(
        DEFAULT_DB_VERSION,
        "--db-version",
        help="MySQL image tag.",
    ),
    port: int | None = typer.Option(
        None,
        "--port",
        min=MIN_PORT,
        max=MAX_PORT,
        help="Use this WordPress port instead of allocating one.",
    ),
    db_user: str | None = typer.Option(None, "--db-user", help="Database user name."),
    db_name: str | None = typer.Option(None, "--db-name", help="Database name."),
    domain_suffix: str = typer.Option(
        DEFAULT_DOMAIN_SUFFIX,
        "--domain-suffix",
        help="Suffix of the development host name served by Caddy.",
    ),
    production_url: str = typer.Option(
        "",
        "--production-url",
        help="Production site URL recorded in .env for later migrations.",
    ),
    caddy: bool | None = typer.Option(
        None,
        "--caddy/--no-caddy",
        help="Enable the Caddy reverse proxy (default: only when ports 80/443 are free).",
    ),
    yes: bool = YES_OPTION,
) -> None:
    """Create a new WordPress instance and register it."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "create",
        args={
            "name": name,
            "parent_dir": parent_dir,
            "wp_version": wp_version,
            "db_version": db_version,
            "port": port,
            "caddy": caddy,
        },
        target={"kind": "instance", "name": name},
    ) as op:
        try:
            base = validate_instance_name(name) if name else _unused_random_name(runtime)
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)

        parent = (parent_dir or runtime.config.sites_base_directory or Path.cwd()).expanduser()
        if not parent.exists():
            if not _confirm(
                f"Parent directory {parent} does not exist. Create it?",
                assume_yes=yes,
                default=True,
            ):
                _cancelled(op)
                return
        elif not parent.is_dir():
            _command_error(op, f"{parent} is not a directory.", rc=int(ExitCode.VALIDATION))

        if caddy is None:
            caddy = is_port_available(80) and is_port_available(443)
            op.add_step("caddy.detect", status="info", detail=caddy)

        request = CreateRequest(
            name=base,
            parent_dir=parent,
            wordpress_version=wp_version,
            db_version=db_version,
            wordpress_port=port,
            db_user=db_user,
            db_name=db_name,
            domain_suffix=domain_suffix,
            production_url=production_url,
            caddy_enabled=caddy,
        )
        try:
            result = create_instance(
                request,
                registry=runtime.instances,
                templates=runtime.templates,
                ranges=runtime.config.ports.ranges(),
                op=op,
            )
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)

        table = Table(show_header=False, box=None)
        table.add_column("Key", style="wpid.header")
        table.add_column("Value")
        table.add_row("Name", result.name)
        table.add_row("Directory", result.record.directory)
        table.add_row("WordPress", f"http://localhost:{result.ports['wordpress']}")
        table.add_row("Mailpit", f"http://localhost:{result.ports['mailpit_web']}")
        table.add_row("Adminer", f"http://localhost:{result.ports['adminer']}")
        table.add_row("SMTP", f"localhost:{result.ports['mailpit_smtp']}")
        table.add_row("Database", f"{result.db_name} (user {result.db_user})")
        if caddy:
            table.add_row("Dev host", f"https://{result.dev_host}")
        console.print(f"[green]Instance '{result.name}' created.[/green]")
        console.print(table)
        _print_warnings(result.warnings)
        console.print(
            f"Start it with: cd {result.record.directory} && docker compose up -d",
            highlight=False,
        )
        context = {"directory": result.record.directory, "ports": result.ports}
        if result.warnings:
            op.warning(
                "Instance created with warnings.",
                warnings=result.warnings,
                changed=len(result.files),
                context=context,
            )
        else:
            op.success("Instance created.", changed=len(result.files), context=context)


def _unused_random_name(runtime: RuntimeContext, attempts: int = 20) -> str:
    registered = runtime.instances.list()
    for _ in range(attempts):
        candidate = generate_name()
        if instance_dir_name(candidate) not in registered:
            return candidate
    raise InstanceRegistryError("Could not generate an unused instance name; pass one.")


@app.command("list")
def list_instances(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """List registered instances."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "list",
        args={"json": json_output},
        target={"kind": "instance", "scope": "registry"},
    ) as op:
        try:
            records = runtime.instances.list()
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)
        if json_output:
            console.print_json(
                data={"instances": [_record_payload(name, rec) for name, rec in records.items()]}
            )
            op.success("Reported instance list as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="wpid.header")
        table.add_column("Name", style="wpid.name")
        table.add_column("Port")
        table.add_column("Status")
        table.add_column("WordPress")
        table.add_column("DB")
        table.add_column("Created")
        table.add_column("Directory", overflow="fold")

        if not records:
            table.add_row("(none)", "", "", "", "", "", "")
        else:
            for name, record in records.items():
                table.add_row(
                    name,
                    str(record.assigned_port or ""),
                    _status_label(record.status),
                    record.software_version,
                    record.database_version,
                    record.creation_timestamp,
                    record.directory,
                )

        console.print(table)
        op.success("Reported instance list.", changed=0, context={"count": len(records)})


@app.command()
def locate(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Registered instance name."),
) -> None:
    """Print the directory of an instance (for ``cd "$(wpid locate NAME)"``)."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "locate",
        args={"name": name},
        target={"kind": "instance", "name": name},
    ) as op:
        try:
            record = runtime.instances.get(name)
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)
        if record is None:
            _command_error(op, f"Instance '{name}' not found in registry.", rc=1)
        if not record.directory_exists():
            err_console.print(
                f"[yellow]Warning:[/yellow] directory {record.directory} does not exist."
            )
        typer.echo(record.directory)
        op.success("Located instance.", changed=0, context={"directory": record.directory})


@app.command()
def update(
    ctx: typer.Context,
    name: str | None = typer.Argument(
        None,
        help="Only refresh this instance (all instances when omitted).",
    ),
    wp_version: str | None = typer.Option(
        None,
        "--wp-version",
        help="Record a new WordPress version for NAME.",
    ),
    db_version: str | None = typer.Option(
        None,
        "--db-version",
        help="Record a new database version for NAME.",
    ),
) -> None:
    """Refresh instance statuses from Docker and optionally record versions."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "update",
        args={"name": name, "wp_version": wp_version, "db_version": db_version},
        target={"kind": "instance", "name": name or "*"},
    ) as op:
        versions = {
            key: value
            for key, value in (
                ("software_version", wp_version),
                ("database_version", db_version),
            )
            if value is not None
        }
        if versions and name is None:
            _command_error(
                op,
                "--wp-version/--db-version require an instance NAME.",
                rc=int(ExitCode.VALIDATION),
            )

        try:
            if name is not None:
                changed, warnings = _update_one(runtime, op, name, versions)
            else:
                changed, warnings = _update_all(runtime, op)
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)

        _print_warnings(warnings)
        console.print(f"Updated {changed} instance(s).")
        if warnings:
            op.warning("Statuses refreshed with warnings.", warnings=warnings, changed=changed)
        else:
            op.success("Statuses refreshed.", changed=changed)


def _update_all(runtime: RuntimeContext, op: OperationScope) -> tuple[int, list[str]]:
    report = runtime.instances.scan_statuses(runtime.compose.status)
    op.add_step("status.scan", status="success", detail=len(report.changes))
    if not report.changes:
        console.print("No instances registered.")
        return 0, report.warnings

    table = Table(show_header=True, header_style="wpid.header")
    table.add_column("Name", style="wpid.name")
    table.add_column("Previous")
    table.add_column("Current")
    for change in report.changes:
        table.add_row(change.name, _status_label(change.old), _status_label(change.new))
    console.print(table)
    return report.changed_count, report.warnings


def _update_one(
    runtime: RuntimeContext,
    op: OperationScope,
    name: str,
    versions: Mapping[str, str],
) -> tuple[int, list[str]]:
    with runtime.locks.registry_lock() as handle:
        op.set_lock_wait_ms(handle.wait_ms)
        before = runtime.instances.require(name)
        if before.directory_exists():
            status = runtime.compose.status(before.path)
        else:
            status = InstanceStatus.DIRECTORY_MISSING
        after = runtime.instances.refresh_status(name, status)
        if versions:
            after = runtime.instances.update(name, **versions)
    warnings: list[str] = []
    if status is not InstanceStatus.DIRECTORY_MISSING:
        try:
            update_marker_status(after.path, status)
        except InstanceRegistryError as exc:
            warnings.append(str(exc))
    console.print(
        f"{name}: {_status_label(before.status)} -> {_status_label(after.status)}",
        highlight=False,
    )
    return (1 if after != before else 0), warnings


@app.command()
def delete(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Registered instance name."),
    yes: bool = YES_OPTION,
) -> None:
    """Stop containers, remove the instance directory and unregister it."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "delete",
        args={"name": name, "yes": yes},
        target={"kind": "instance", "name": name},
    ) as op:
        try:
            record = runtime.instances.require(name)
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)
        console.print(
            f"This removes the containers, volumes and directory {record.directory}.",
            highlight=False,
        )
        if not _confirm(f"Delete instance '{name}'?", assume_yes=yes):
            _cancelled(op)
            return

        def _confirm_elevated(path: Path) -> bool:
            return _confirm(
                f"Permission denied removing {path}. Retry with sudo?",
                assume_yes=yes,
            )

        try:
            result = delete_instance(
                name,
                registry=runtime.instances,
                compose=runtime.compose,
                confirm_elevated=_confirm_elevated,
                op=op,
            )
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)

        _print_warnings(result.warnings)
        context = {
            "directory": result.record.directory,
            "directory_removed": result.directory_removed,
            "teardown_ok": result.teardown_ok,
        }
        if result.warnings:
            console.print(f"[yellow]Instance '{name}' unregistered with warnings.[/yellow]")
            op.warning(
                "Instance deleted with warnings.",
                warnings=result.warnings,
                changed=1,
                context=context,
            )
        else:
            console.print(f"[green]Instance '{name}' deleted.[/green]")
            op.success("Instance deleted.", changed=1, context=context)


def _register_directory(
    runtime: RuntimeContext,
    op: OperationScope,
    path: Path,
    *,
    name: str | None,
    port: int | None,
    yes: bool,
) -> None:
    """Register *path* from its marker or ``.env``, confirming overwrites."""
    try:
        try:
            record = inspect_directory(path, port=port)
        except MissingPortError:
            if yes:
                raise
            port = typer.prompt("WordPress port", type=int)
            record = inspect_directory(path, port=port)
        resolved = validate_instance_name(name or record.path.name)

        # The conflicts shown to the user are the ones replaced on overwrite.
        with runtime.locks.registry_lock() as handle:
            op.set_lock_wait_ms(handle.wait_ms)
            conflicts = runtime.instances.find_conflicts(resolved, record.directory)
            overwrite = False
            if conflicts:
                for conflict in conflicts:
                    console.print(f"[yellow]{conflict.describe()}[/yellow]", highlight=False)
                if not _confirm("Overwrite the existing registration?", assume_yes=yes):
                    _cancelled(op, "Registration cancelled.")
                    return
                overwrite = True

            others = {
                other.assigned_port
                for other_name, other in runtime.instances.list().items()
                if other_name != resolved and other.directory != record.directory
            }
            registered_name, registered = adopt_orphan(
                record.path,
                runtime.instances,
                name=resolved,
                port=record.assigned_port,
                overwrite=overwrite,
            )
    except _HANDLED_ERRORS as exc:
        _fail(op, exc)

    warnings: list[str] = []
    if registered.assigned_port in others:
        warnings.append(
            f"Port {registered.assigned_port} is also assigned to another instance."
        )
    _print_warnings(warnings)
    console.print(
        f"[green]Registered '{registered_name}'[/green] -> {registered.directory} "
        f"(port {registered.assigned_port}).",
        highlight=False,
    )
    context = {"name": registered_name, "record": registered.to_dict()}
    if warnings:
        op.warning(
            "Instance registered with warnings.",
            warnings=warnings,
            changed=1,
            context=context,
        )
    else:
        op.success("Instance registered.", changed=1, context=context)


@app.command()
def register(
    ctx: typer.Context,
    path: Path = typer.Argument(..., file_okay=False, help="Existing instance directory."),
    name: str | None = NAME_OPTION,
    port: int | None = PORT_OPTION,
    yes: bool = YES_OPTION,
) -> None:
    """Register an existing instance directory."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "register",
        args={"path": path, "name": name, "port": port, "yes": yes},
        target={"kind": "instance", "path": path},
    ) as op:
        _register_directory(runtime, op, path, name=name, port=port, yes=yes)


@app.command()
def unregister(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Registered instance name."),
    yes: bool = YES_OPTION,
) -> None:
    """Remove an instance from the registry, leaving its files in place."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "unregister",
        args={"name": name, "yes": yes},
        target={"kind": "instance", "name": name},
    ) as op:
        try:
            runtime.instances.require(name)
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)
        if not _confirm(
            f"Remove '{name}' from the registry? Its files are kept.",
            assume_yes=yes,
        ):
            _cancelled(op)
            return
        try:
            record = runtime.instances.unregister(name)
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)
        console.print(f"[green]Unregistered '{name}'.[/green] Files kept in {record.directory}.")
        op.success("Instance unregistered.", changed=1, context={"record": record.to_dict()})


@app.command()
def prune(
    ctx: typer.Context,
    yes: bool = YES_OPTION,
) -> None:
    """Remove registry entries whose directories no longer exist."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "prune",
        args={"yes": yes},
        target={"kind": "instance", "scope": "registry"},
    ) as op:
        try:
            candidates = runtime.instances.prune_candidates()
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)
        if not candidates:
            console.print("Nothing to prune.")
            op.success("Nothing to prune.", changed=0)
            return
        for candidate in candidates:
            console.print(f"  - {candidate}")
        if not _confirm(f"Remove {len(candidates)} stale entr(y/ies)?", assume_yes=yes):
            _cancelled(op)
            return
        try:
            removed = runtime.instances.prune(candidates)
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)
        console.print(f"[green]Pruned {len(removed)} instance(s).[/green]")
        op.success("Registry pruned.", changed=len(removed), context={"removed": removed})


# ---------------------------------------------------------------------------
# Sub-applications
# ---------------------------------------------------------------------------

orphans_app = typer.Typer(help="Find, adopt or discard unregistered instance directories.")
meta_app = typer.Typer(help="Inspect and maintain the registry files themselves.")
config_app = typer.Typer(help="Inspect and change global configuration.")
ports_app = typer.Typer(help="Inspect assigned ports.")

app.add_typer(orphans_app, name="orphans")
app.add_typer(meta_app, name="meta")
app.add_typer(config_app, name="config")
app.add_typer(ports_app, name="ports")


@orphans_app.command("list")
def orphans_list(
    ctx: typer.Context,
    roots: list[Path] | None = typer.Option(
        None,
        "--root",
        help="Directory to scan (repeatable; defaults to sites_base_directory or cwd).",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """List instance directories that are not in the registry."""
    runtime = _get_runtime(ctx)
    search_roots = list(roots or [runtime.config.sites_base_directory or Path.cwd()])
    with runtime.logger.operation(
        "orphans list",
        args={"roots": search_roots, "json": json_output},
        target={"kind": "orphans"},
    ) as op:
        try:
            report = find_orphans(search_roots, runtime.instances)
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)
        if json_output:
            console.print_json(
                data={
                    "orphans": [
                        {
                            "name": orphan.name,
                            "directory": str(orphan.directory),
                            "source": orphan.source,
                            "record": orphan.record.to_dict() if orphan.record else None,
                            "warnings": orphan.warnings,
                        }
                        for orphan in report.orphans
                    ],
                    "warnings": report.warnings,
                    "errors": report.errors,
                }
            )
        else:
            table = Table(show_header=True, header_style="wpid.header")
            table.add_column("Name", style="wpid.name")
            table.add_column("Directory", overflow="fold")
            table.add_column("Source")
            table.add_column("Port")
            table.add_column("Notes")
            if not report.orphans:
                table.add_row("(none)", "", "", "", "")
            for orphan in report.orphans:
                port = orphan.record.assigned_port if orphan.record else None
                table.add_row(
                    orphan.name,
                    str(orphan.directory),
                    orphan.source,
                    str(port or ""),
                    "; ".join(orphan.warnings),
                )
            console.print(table)
            _print_warnings(report.warnings + report.errors)

        context = {"count": len(report.orphans)}
        if report.warnings or report.errors:
            op.warning(
                "Orphan scan completed with warnings.",
                warnings=report.warnings,
                errors=report.errors,
                context=context,
            )
        else:
            op.success("Orphan scan completed.", changed=0, context=context)


@orphans_app.command("adopt")
def orphans_adopt(
    ctx: typer.Context,
    path: Path = typer.Argument(..., file_okay=False, help="Orphaned instance directory."),
    name: str | None = NAME_OPTION,
    port: int | None = PORT_OPTION,
    yes: bool = YES_OPTION,
) -> None:
    """Register an orphaned instance from its marker file."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "orphans adopt",
        args={"path": path, "name": name, "port": port},
        target={"kind": "orphans", "path": path},
    ) as op:
        _register_directory(runtime, op, path, name=name, port=port, yes=yes)


@orphans_app.command("discard")
def orphans_discard(
    ctx: typer.Context,
    path: Path = typer.Argument(..., file_okay=False, help="Orphaned instance directory."),
    yes: bool = YES_OPTION,
) -> None:
    """Delete an orphaned instance directory."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "orphans discard",
        args={"path": path, "yes": yes},
        target={"kind": "orphans", "path": path},
    ) as op:
        if not _confirm(f"Permanently delete {path}?", assume_yes=yes):
            _cancelled(op)
            return
        try:
            discard_orphan(path, runtime.instances)
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)
        console.print(f"[green]Removed {path}.[/green]", highlight=False)
        op.success("Orphan discarded.", changed=1)


@meta_app.command("show")
def meta_show(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Show where wpid keeps its state."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "meta show",
        args={"json": json_output},
        target={"kind": "meta"},
    ) as op:
        registry_path = runtime.store.path_for(INSTANCES_FILE)
        data: dict[str, object] = {
            "storage_dir": str(runtime.store.root),
            "registry_file": str(registry_path),
            "registry_exists": registry_path.exists(),
            "config_file": str(runtime.config.config_file),
            "lock_file": str(runtime.locks.path),
            "locked": runtime.locks.is_held(),
            "operations_log": str(runtime.logger.path),
        }
        try:
            data["instances"] = len(runtime.instances.list())
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)
        if json_output:
            console.print_json(data=data)
            op.success("Reported registry metadata as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="wpid.header")
        table.add_column("Key", style="bold")
        table.add_column("Value", overflow="fold")
        for key, value in data.items():
            table.add_row(key, str(value))
        console.print(table)
        op.success("Reported registry metadata.", changed=0)


def _registry_problems(runtime: RuntimeContext) -> list[str]:
    problems: list[str] = []
    try:
        raw = runtime.store.read_instances(strict=True)
    except StateRegistryError as exc:
        problems.append(str(exc))
        raw = {}
    for name, entry in raw.items():
        if not isinstance(name, str):
            problems.append(f"Entry key {name!r} is not a string; quote it in instances.yml.")
        if not isinstance(entry, Mapping):
            problems.append(f"Entry '{name}' is not a mapping.")
            continue
        if not entry.get("directory"):
            problems.append(f"Entry '{name}' has no directory.")
        record = InstanceRecord.from_dict(entry)
        if record.assigned_port <= 0:
            problems.append(f"Entry '{name}' has no valid wordpress_port.")
    try:
        runtime.store.read_global_config(strict=True)
    except StateRegistryError as exc:
        problems.append(str(exc))
    return problems


@meta_app.command("validate")
def meta_validate(ctx: typer.Context) -> None:
    """Strictly parse instances.yml and config.yml."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "meta validate",
        target={"kind": "meta"},
    ) as op:
        problems = _registry_problems(runtime)
        if problems:
            for problem in problems:
                console.print(f"[red]- {problem}[/red]", highlight=False)
            _command_error(
                op,
                f"Registry validation found {len(problems)} problem(s).",
                rc=int(ExitCode.VALIDATION),
                errors=problems,
            )
        console.print("[green]Registry files are valid.[/green]")
        op.success("Registry files are valid.", changed=0)


@meta_app.command("edit")
def meta_edit(ctx: typer.Context) -> None:
    """Open instances.yml in $EDITOR while holding the registry lock."""
    runtime = _get_runtime(ctx)
    registry_path = runtime.store.path_for(INSTANCES_FILE)
    with runtime.logger.operation(
        "meta edit",
        args={"path": registry_path},
        target={"kind": "meta"},
    ) as op:
        try:
            with runtime.locks.registry_lock() as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                if not registry_path.exists():
                    runtime.store.write_instances({})
                typer.edit(filename=str(registry_path))
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)

        problems = _registry_problems(runtime)
        if problems:
            _print_warnings(problems)
            op.warning("Registry edited; validation found problems.", warnings=problems)
            return
        console.print("[green]Registry saved and valid.[/green]")
        op.success("Registry edited.", changed=1)


@meta_app.command("unlock")
def meta_unlock(
    ctx: typer.Context,
    yes: bool = YES_OPTION,
) -> None:
    """Remove a stale registry lock left behind by an interrupted command."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "meta unlock",
        args={"yes": yes},
        target={"kind": "meta", "path": runtime.locks.path},
    ) as op:
        if not runtime.locks.is_held():
            console.print("Registry is not locked.")
            op.success("No lock present.", changed=0)
            return
        if not _confirm(
            f"Remove lock file {runtime.locks.path}? Only do this if no wpid command is running.",
            assume_yes=yes,
        ):
            _cancelled(op)
            return
        try:
            removed = break_lock(runtime.locks.path)
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)
        console.print("[green]Lock removed.[/green]" if removed else "Registry is not locked.")
        op.success("Lock removed." if removed else "No lock present.", changed=int(removed))


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="wpid.header")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, sort_keys=True)
            else:
                rendered = "" if value is None else str(value)
            table.add_row(key, rendered)

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


@config_app.command("get")
def config_get(
    ctx: typer.Context,
    key: str = typer.Argument(..., help=f"One of: {', '.join(sorted(GLOBAL_KEYS))}."),
) -> None:
    """Print one configuration value."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "config get",
        args={"key": key},
        target={"kind": "config", "key": key},
    ) as op:
        try:
            value = get_global_value(runtime.config, key)
        except ConfigError as exc:
            _command_error(op, str(exc), rc=int(ExitCode.VALIDATION))
        typer.echo("" if value is None else str(value))
        op.success("Reported configuration value.", changed=0, context={"value": value})


@config_app.command("set")
def config_set(
    ctx: typer.Context,
    key: str = typer.Argument(..., help=f"One of: {', '.join(sorted(GLOBAL_KEYS))}."),
    value: str | None = typer.Argument(
        None,
        help="New value; an empty string unsets the key. Prompted for when omitted.",
    ),
) -> None:
    """Persist one configuration value to config.yml."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "config set",
        args={"key": key, "value": value},
        target={"kind": "config", "key": key},
    ) as op:
        if key not in GLOBAL_KEYS:
            _command_error(
                op,
                f"Unknown configuration key '{key}'. Allowed: {', '.join(sorted(GLOBAL_KEYS))}.",
                rc=int(ExitCode.VALIDATION),
            )
        if value is None:
            current = get_global_value(runtime.config, key)
            value = typer.prompt(key, default="" if current is None else str(current))
        try:
            stored, warning = set_global_value(runtime.store, key, value)
        except ConfigError as exc:
            _command_error(op, str(exc), rc=int(ExitCode.VALIDATION))
        if warning:
            _print_warnings([warning])
        if stored is None:
            console.print(f"[green]Unset {key}.[/green]")
        else:
            console.print(f"[green]{key} = {stored}[/green]", highlight=False)
        op.success(
            "Configuration updated.",
            changed=1,
            warnings=[warning] if warning else (),
            context={"key": key, "value": stored},
        )


@ports_app.command("list")
def ports_list(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """List the WordPress port assigned to each instance and the allocation ranges."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "ports list",
        args={"json": json_output},
        target={"kind": "ports"},
    ) as op:
        try:
            records = runtime.instances.list()
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)
        entries = [
            {"name": name, "port": record.assigned_port, "status": record.status.value}
            for name, record in sorted(records.items(), key=lambda item: item[1].assigned_port)
        ]
        ranges = runtime.config.ports.to_dict()
        if json_output:
            console.print_json(data={"ports": entries, "ranges": ranges})
            op.success("Reported ports as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="wpid.header")
        table.add_column("Instance", style="wpid.name")
        table.add_column("Port")
        table.add_column("Status")
        if not entries:
            table.add_row("(none)", "", "")
        for entry in entries:
            table.add_row(str(entry["name"]), str(entry["port"]), str(entry["status"]))
        console.print(table)

        for service, (lower, upper) in ranges.items():
            console.print(f"[wpid.muted]{service}: {lower}-{upper}[/]")
        op.success("Reported ports.", changed=0)


@ports_app.command("check")
def ports_check(
    ctx: typer.Context,
    port: int = typer.Argument(..., help="Port to check."),
) -> None:
    """Check whether a port could be used for a new instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "ports check",
        args={"port": port},
        target={"kind": "ports", "port": port},
    ) as op:
        try:
            claimed = runtime.instances.claimed_ports()
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)
        reason = check_port(port, claimed)
        if reason is not None:
            in_range = MIN_PORT <= port <= MAX_PORT
            rc = ExitCode.RESOURCE if in_range else ExitCode.VALIDATION
            _command_error(op, reason, rc=int(rc))
        console.print(f"[green]Port {port} is available.[/green]")
        op.success("Port available.", changed=0)


@app.command()
def doctor(
    ctx: typer.Context,
    json_output: bool = typer.Option(False, "--json", help="Emit a JSON doctor report."),
    only: str | None = DOCTOR_ONLY_OPTION,
    exclude: str | None = DOCTOR_EXCLUDE_OPTION,
    workers: int = DOCTOR_WORKERS_OPTION,
) -> None:
    """Check Docker, the registry files and the template set."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "doctor",
        args={
            "json": json_output,
            "only": only,
            "exclude": exclude,
            "workers": workers,
        },
        target={"kind": "system", "scope": "health"},
    ) as op:
        include_categories = _parse_probe_categories(only)
        exclude_categories = _parse_probe_categories(exclude)

        invalid_categories = (include_categories | exclude_categories) - _PROBE_CATEGORY_SET
        if invalid_categories:
            _command_error(
                op,
                f"Unknown probe categories: {', '.join(sorted(invalid_categories))}",
                rc=2,
            )
        if only is not None and exclude is not None:
            _command_error(op, "Cannot combine --only and --exclude.", rc=2)

        context = DoctorContext.from_runtime(runtime, workers=workers)
        discovered_probes = list(collect_probes(context))
        matched_probes = discovered_probes
        if include_categories:
            matched_probes = [
                probe for probe in matched_probes if probe.category in include_categories
            ]
        if exclude_categories:
            matched_probes = [
                probe for probe in matched_probes if probe.category not in exclude_categories
            ]

        metadata = {
            "filters": {
                "only": sorted(include_categories) if only is not None else None,
                "exclude": sorted(exclude_categories) if exclude is not None else None,
            },
            "discovered_probes": len(discovered_probes),
            "matched_probes": len(matched_probes),
        }

        report = run_doctor(context, matched_probes, metadata=metadata)
        report_payload = _serialize_doctor_report(report)

        if json_output:
            console.print_json(data=report_payload)
        else:
            _render_doctor_report(report)

        warning_ids = _collect_status_identifiers(report.results, ProbeStatus.YELLOW)
        error_ids = _collect_status_identifiers(report.results, ProbeStatus.RED)
        log_context = {"report": report_payload}

        impact_message = _DOCTOR_IMPACT_MESSAGES.get(report.impact, "Doctor detected issues.")

        if not json_output:
            if report.exit_code == 0 and report.status is ProbeStatus.YELLOW:
                console.print("[yellow]Doctor completed with warnings.[/yellow]")
            elif report.exit_code != 0:
                console.print(f"[red]{impact_message}[/red]")

        if report.exit_code == 0:
            if report.status is ProbeStatus.YELLOW:
                op.warning(
                    "Doctor completed with warnings.",
                    warnings=warning_ids or None,
                    context=log_context,
                )
            else:
                op.success(_DOCTOR_IMPACT_MESSAGES[DoctorImpact.OK], context=log_context)
            return

        op.error(
            impact_message,
            rc=report.exit_code,
            errors=error_ids or None,
            context=log_context,
        )
        raise typer.Exit(code=report.exit_code)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["RuntimeContext", "app", "main"]
