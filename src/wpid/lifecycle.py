"""Creation and deletion workflows for wpid instances.

Creation runs entirely under the registry lock: the directory and name are
checked, ports are allocated against the ports already claimed by the
registry, files are rendered, the local marker is written and, as the last
step, the instance is registered centrally. Every filesystem step is recorded
in a :class:`CreationJournal`; if anything fails (including an interrupt)
before registration completes, the journal undoes exactly what was created
and the registry is left untouched.

Deletion tears down the compose project, removes the directory (optionally
escalating with ``sudo`` after confirmation) and removes the registry entry
even when the earlier steps only partially succeeded.
"""
from __future__ import annotations

import random
import secrets
import shutil
import string
import subprocess
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path

from .instances import (
    InstanceConflictError,
    InstanceRecord,
    InstanceRegistry,
    InstanceStatus,
    marker_path,
    now_timestamp,
    validate_instance_name,
    write_marker,
)
from .logging import OperationScope
from .ports import (
    PortProbe,
    PortRange,
    PortsRegistryError,
    allocate_ports,
    check_port,
    is_port_available,
)
from .providers.compose import ComposeError, ComposeProvider
from .templates import INSTANCE_TEMPLATES, TemplateEngine

INSTANCE_DIR_PREFIX = "www-"
INSTANCE_DIR_SUFFIX = "-wordpress"
DEFAULT_DOMAIN_SUFFIX = ".example.local"
DEFAULT_WORDPRESS_VERSION = "latest"
DEFAULT_DB_VERSION = "8.0"

PASSWORD_LENGTH = 16
SALT_LENGTH = 64
SECRET_ALPHABET = string.ascii_letters + string.digits
SALT_KEYS = (
    "AUTH_KEY",
    "SECURE_AUTH_KEY",
    "LOGGED_IN_KEY",
    "NONCE_KEY",
    "AUTH_SALT",
    "SECURE_AUTH_SALT",
    "LOGGED_IN_SALT",
    "NONCE_SALT",
)

_NAME_ADJECTIVES = (
    "brave", "calm", "eager", "fancy", "gentle", "happy", "jolly", "kind", "lively", "mighty",
)
_NAME_NOUNS = ("lion", "tiger", "eagle", "panda", "whale", "fox", "wolf", "bear", "shark", "falcon")


class LifecycleError(RuntimeError):
    """Raised when an instance cannot be created or deleted."""


ConfirmCallback = Callable[[Path], bool]


def instance_dir_name(base: str) -> str:
    """Return the directory (and registry) name for instance *base*."""
    return f"{INSTANCE_DIR_PREFIX}{base}{INSTANCE_DIR_SUFFIX}"


def generate_secret(length: int, alphabet: str = SECRET_ALPHABET) -> str:
    """Return a cryptographically random string of *length* characters."""
    return "".join(secrets.choice(alphabet) for _ in range(length))


def generate_salts() -> dict[str, str]:
    """Return one fresh 64-character value per WordPress salt key."""
    return {key: generate_secret(SALT_LENGTH) for key in SALT_KEYS}


def generate_name(rng: random.Random | None = None) -> str:
    """Return a random ``adjective-noun`` instance name."""
    chooser = rng or secrets.SystemRandom()
    return f"{chooser.choice(_NAME_ADJECTIVES)}-{chooser.choice(_NAME_NOUNS)}"


def normalise_domain_suffix(suffix: str | None) -> str:
    """Return *suffix* with a leading dot, or the default when blank."""
    text = (suffix or "").strip()
    if not text:
        return DEFAULT_DOMAIN_SUFFIX
    return text if text.startswith(".") else f".{text}"


@dataclass(frozen=True)
class CreateRequest:
    """Parameters for creating one instance."""

    name: str
    parent_dir: Path
    wordpress_version: str = DEFAULT_WORDPRESS_VERSION
    db_version: str = DEFAULT_DB_VERSION
    wordpress_port: int | None = None
    db_user: str | None = None
    db_name: str | None = None
    db_password: str | None = None
    domain_suffix: str = DEFAULT_DOMAIN_SUFFIX
    production_url: str = ""
    caddy_enabled: bool = False
    caddy_http_port: int = 80
    caddy_https_port: int = 443

    @property
    def registry_name(self) -> str:
        return instance_dir_name(self.name)

    @property
    def directory(self) -> Path:
        return (Path(self.parent_dir).expanduser() / self.registry_name).absolute()

    @property
    def dev_host(self) -> str:
        return f"{self.name}{normalise_domain_suffix(self.domain_suffix)}"


@dataclass
class CreationJournal:
    """Record of filesystem artefacts created so far, for rollback."""

    files: list[Path] = field(default_factory=list)
    directories: list[Path] = field(default_factory=list)

    def make_directory(self, path: Path) -> None:
        """Create *path* (and missing parents), recording each new directory."""
        missing: list[Path] = []
        current = path
        while not current.exists():
            missing.append(current)
            if current.parent == current:
                break
            current = current.parent
        for directory in reversed(missing):
            directory.mkdir(mode=0o755)
            self.directories.append(directory)

    def record_file(self, path: Path) -> None:
        """Remember that *path* was written by this workflow."""
        self.files.append(path)

    def rollback(self) -> list[str]:
        """Undo recorded steps in reverse order; return any cleanup failures."""
        problems: list[str] = []
        for path in reversed(self.files):
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                problems.append(f"Could not remove {path}: {exc}")
        for directory in reversed(self.directories):
            try:
                directory.rmdir()
            except FileNotFoundError:
                continue
            except OSError:
                # Leftovers we did not journal (for example editor swap files).
                try:
                    shutil.rmtree(directory)
                except OSError as exc:
                    problems.append(f"Could not remove {directory}: {exc}")
        self.files.clear()
        self.directories.clear()
        return problems


@dataclass
class CreateResult:
    """Outcome of a successful creation."""

    name: str
    record: InstanceRecord
    ports: dict[str, int]
    db_user: str
    db_name: str
    dev_host: str
    files: list[Path] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def build_template_context(
    request: CreateRequest,
    ports: Mapping[str, int],
) -> dict[str, object]:
    """Return the variables used to render an instance's files.

    Database passwords and WordPress salts are freshly generated on each
    call unless the request pins the database password.
    """
    return {
        "instance_name": request.registry_name,
        "container_name": f"wp-{request.name}",
        "created": now_timestamp(),
        "wordpress_version": request.wordpress_version,
        "db_version": request.db_version,
        "ports": dict(ports),
        "production_url": request.production_url,
        "db_user": request.db_user or f"{request.name}_user",
        "db_name": request.db_name or f"{request.name}_db",
        "db_password": request.db_password or generate_secret(PASSWORD_LENGTH),
        "db_root_password": generate_secret(PASSWORD_LENGTH),
        "salts": generate_salts(),
        "salt_keys": SALT_KEYS,
        "caddy_enabled": request.caddy_enabled,
        "caddy_http_port": request.caddy_http_port,
        "caddy_https_port": request.caddy_https_port,
        "dev_host": request.dev_host,
    }


def create_instance(
    request: CreateRequest,
    *,
    registry: InstanceRegistry,
    templates: TemplateEngine,
    ranges: Mapping[str, PortRange],
    op: OperationScope | None = None,
    probe: PortProbe = is_port_available,
    rng: random.Random | None = None,
) -> CreateResult:
    """Create, render and register a new instance described by *request*."""
    validate_instance_name(request.name)
    name = validate_instance_name(request.registry_name)
    directory = request.directory

    with registry.locks.registry_lock() as handle:
        if op is not None:
            op.set_lock_wait_ms(handle.wait_ms)

        if directory.exists():
            raise LifecycleError(f"Directory {directory} already exists.")
        conflicts = registry.find_conflicts(name, directory)
        if conflicts:
            raise InstanceConflictError(conflicts)

        ports = _allocate_instance_ports(
            request,
            ranges,
            registry.claimed_ports(),
            probe=probe,
            rng=rng,
        )
        if op is not None:
            op.add_step("ports.allocate", status="success", detail=ports)

        warnings: list[str] = []
        if request.caddy_enabled and not (
            probe(request.caddy_http_port) and probe(request.caddy_https_port)
        ):
            warnings.append(
                f"Ports {request.caddy_http_port}/{request.caddy_https_port} are in use; "
                "the Caddy container may fail to start."
            )

        context = build_template_context(request, ports)
        record = InstanceRecord(
            directory=str(directory),
            creation_timestamp=str(context["created"]),
            software_version=request.wordpress_version,
            database_version=request.db_version,
            assigned_port=ports["wordpress"],
            status=InstanceStatus.STOPPED,
        )

        journal = CreationJournal()
        try:
            journal.make_directory(directory)
            for relative, template_name in INSTANCE_TEMPLATES.items():
                target = directory / relative
                journal.make_directory(target.parent)
                mode = 0o600 if relative == ".env" else 0o644
                journal.record_file(target)
                templates.render_to_path(template_name, target, context, mode=mode)
            if op is not None:
                op.add_step("templates.render", status="success", detail=len(INSTANCE_TEMPLATES))
            journal.record_file(marker_path(directory))
            write_marker(record)
            registry.register(name, record)
        except BaseException:
            problems = journal.rollback()
            if op is not None:
                op.add_step(
                    "create.rollback",
                    status="warning" if problems else "success",
                    detail=problems or None,
                )
            raise

    return CreateResult(
        name=name,
        record=record,
        ports=ports,
        db_user=str(context["db_user"]),
        db_name=str(context["db_name"]),
        dev_host=request.dev_host,
        files=list(journal.files),
        warnings=warnings,
    )


def _allocate_instance_ports(
    request: CreateRequest,
    ranges: Mapping[str, PortRange],
    claimed: set[int],
    *,
    probe: PortProbe,
    rng: random.Random | None,
) -> dict[str, int]:
    remaining = dict(ranges)
    fixed: dict[str, int] = {}
    if request.wordpress_port is not None:
        reason = check_port(request.wordpress_port, claimed, probe=probe)
        if reason is not None:
            raise PortsRegistryError(reason)
        fixed["wordpress"] = request.wordpress_port
        remaining.pop("wordpress", None)
        claimed = claimed | {request.wordpress_port}
    allocated = allocate_ports(remaining, claimed, probe=probe, rng=rng)
    return {**fixed, **allocated}


@dataclass
class DeleteResult:
    """Outcome of deleting an instance."""

    name: str
    record: InstanceRecord
    directory_removed: bool
    teardown_ok: bool
    warnings: list[str] = field(default_factory=list)


def delete_instance(
    name: str,
    *,
    registry: InstanceRegistry,
    compose: ComposeProvider,
    confirm_elevated: ConfirmCallback,
    op: OperationScope | None = None,
) -> DeleteResult:
    """Tear down, delete and unregister instance *name*.

    Teardown and directory removal failures are reported as warnings; the
    registry entry is removed regardless so the registry never points at an
    instance the user asked to delete.
    """
    with registry.locks.registry_lock() as handle:
        if op is not None:
            op.set_lock_wait_ms(handle.wait_ms)
        record = registry.require(name)
        directory = record.path
        warnings: list[str] = []
        teardown_ok = False
        directory_removed = False

        if not record.directory_exists():
            warnings.append(
                f"Directory {directory} not found; removing the registry entry only."
            )
        else:
            try:
                compose.down(directory)
                teardown_ok = True
            except ComposeError as exc:
                warnings.append(f"Container teardown failed: {exc}")
            if op is not None:
                op.add_step(
                    "compose.down",
                    status="success" if teardown_ok else "warning",
                )
            directory_removed = remove_directory(directory, confirm_elevated, warnings)
            if op is not None:
                op.add_step(
                    "directory.remove",
                    status="success" if directory_removed else "warning",
                    detail=str(directory),
                )

        registry.remove(name)
    return DeleteResult(
        name=name,
        record=record,
        directory_removed=directory_removed,
        teardown_ok=teardown_ok,
        warnings=warnings,
    )


def remove_directory(
    directory: Path,
    confirm_elevated: ConfirmCallback,
    warnings: list[str],
) -> bool:
    """Remove *directory*, escalating with ``sudo`` when permitted."""
    try:
        shutil.rmtree(directory)
        return True
    except PermissionError as exc:
        if not confirm_elevated(directory):
            warnings.append(f"Permission denied removing {directory}: {exc}. Left in place.")
            return False
    except OSError as exc:
        warnings.append(f"Failed to remove {directory}: {exc}")
        return False

    try:
        elevated_remove(directory)
    except LifecycleError as exc:
        warnings.append(str(exc))
        return False
    return True


def elevated_remove(directory: Path) -> None:
    """Remove *directory* with ``sudo rm -rf``."""
    try:
        result = subprocess.run(  # noqa: S603, S607
            ["sudo", "rm", "-rf", str(directory)],
            check=False,
        )
    except OSError as exc:
        raise LifecycleError(f"sudo removal of {directory} could not start: {exc}") from exc
    if result.returncode != 0:
        raise LifecycleError(
            f"sudo removal of {directory} failed (exit {result.returncode})."
        )


__all__ = [
    "CreateRequest",
    "CreateResult",
    "CreationJournal",
    "DEFAULT_DOMAIN_SUFFIX",
    "DeleteResult",
    "LifecycleError",
    "SALT_KEYS",
    "build_template_context",
    "create_instance",
    "delete_instance",
    "elevated_remove",
    "generate_name",
    "generate_salts",
    "generate_secret",
    "instance_dir_name",
    "normalise_domain_suffix",
    "remove_directory",
]
