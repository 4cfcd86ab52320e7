"""Docker Compose provider used for instance teardown and status probes."""
from __future__ import annotations

import shutil
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from ..instances import InstanceStatus

# Service names that identify the web-facing container of an instance.
WEB_SERVICE_MARKERS = ("wordpress", "wp", "web", "app")


class ComposeError(RuntimeError):
    """Raised when docker compose invocations fail."""


@dataclass(slots=True)
class ComposeProvider:
    """Run ``docker compose`` inside instance directories."""

    compose_bin: str = "docker"
    timeout: float | None = 300.0

    def base_command(self) -> list[str]:
        """Return the argv prefix that invokes compose v2."""
        return [self.compose_bin, "compose"]

    def down(self, directory: Path) -> subprocess.CompletedProcess[str]:
        """Stop and remove the instance's containers, volumes and orphans."""
        return self._run(
            [*self.base_command(), "down", "--volumes", "--remove-orphans"],
            cwd=directory,
            error_prefix="docker compose down",
        )

    def running_services(self, directory: Path) -> list[str]:
        """Return the names of services currently running in *directory*."""
        result = self._run(
            [*self.base_command(), "ps", "--services", "--filter", "status=running"],
            cwd=directory,
            error_prefix="docker compose ps",
            check=False,
        )
        return [line.strip() for line in (result.stdout or "").splitlines() if line.strip()]

    def status(self, directory: Path) -> InstanceStatus:
        """Return ``Running`` when a web-facing service is up, else ``Stopped``.

        A missing directory yields ``Directory Missing``; a compose binary that
        cannot be executed yields ``Unknown``.
        """
        if not Path(directory).is_dir():
            return InstanceStatus.DIRECTORY_MISSING
        try:
            services = self.running_services(directory)
        except ComposeError:
            return InstanceStatus.UNKNOWN
        if any(marker in service for service in services for marker in WEB_SERVICE_MARKERS):
            return InstanceStatus.RUNNING
        return InstanceStatus.STOPPED

    def version(self) -> tuple[str, str] | None:
        """Return ``(flavour, first_line)`` for the available compose, if any.

        ``flavour`` is ``"v2"`` for the docker plugin or ``"v1"`` for the
        standalone ``docker-compose`` binary.
        """
        candidates: list[tuple[str, list[str]]] = [
            ("v2", [*self.base_command(), "version"]),
            ("v1", ["docker-compose", "version"]),
        ]
        for flavour, argv in candidates:
            if shutil.which(argv[0]) is None:
                continue
            try:
                result = self._run(argv, error_prefix=" ".join(argv))
            except ComposeError:
                continue
            first_line = (result.stdout or "").strip().splitlines()
            return flavour, first_line[0] if first_line else ""
        return None

    def daemon_responding(self) -> tuple[bool, str]:
        """Return whether ``docker info`` succeeds, with any error output."""
        try:
            self._run([self.compose_bin, "info"], error_prefix="docker info")
        except ComposeError as exc:
            return False, str(exc)
        return True, ""

    # ------------------------------------------------------------------
    def _run(
        self,
        args: Sequence[str],
        *,
        error_prefix: str,
        cwd: Path | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603
                list(args),
                cwd=str(cwd) if cwd is not None else None,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout,
            )
        except FileNotFoundError as exc:
            raise ComposeError(f"{args[0]} not found: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise ComposeError(f"{error_prefix} timed out after {exc.timeout}s.") from exc
        except OSError as exc:
            raise ComposeError(f"{error_prefix} failed to start: {exc}") from exc
        if check and result.returncode != 0:
            stdout = result.stdout or ""
            stderr = result.stderr or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise ComposeError(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


__all__ = ["ComposeError", "ComposeProvider", "WEB_SERVICE_MARKERS"]
