"""Template rendering helpers for wpid.

Instance scaffolding (``.env``, ``docker-compose.yml``, ``config/Caddyfile``)
is rendered from Jinja2 templates bundled in this package. A user supplied
directory (``templates_dir`` in the configuration) may shadow any bundled
template by providing a file at the same relative path.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from jinja2 import (
    ChoiceLoader,
    Environment,
    FileSystemLoader,
    PackageLoader,
    StrictUndefined,
    TemplateError as JinjaTemplateError,
)

ENV_TEMPLATE = "instance/env.j2"
COMPOSE_TEMPLATE = "instance/docker-compose.yml.j2"
CADDYFILE_TEMPLATE = "instance/Caddyfile.j2"

INSTANCE_TEMPLATES: dict[str, str] = {
    ".env": ENV_TEMPLATE,
    "docker-compose.yml": COMPOSE_TEMPLATE,
    "config/Caddyfile": CADDYFILE_TEMPLATE,
}


class TemplateError(RuntimeError):
    """Raised when a template cannot be loaded or rendered."""


@dataclass(frozen=True)
class TemplateEngine:
    """Render bundled templates, honouring an optional override directory."""

    environment: Environment
    override_dir: Path | None = None

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Build an engine whose loader checks *override_dir* first."""
        loaders = []
        resolved: Path | None = None
        if override_dir is not None:
            resolved = Path(override_dir).expanduser()
            if resolved.is_dir():
                loaders.append(FileSystemLoader(str(resolved)))
        loaders.append(PackageLoader("wpid", "templates"))
        environment = Environment(
            loader=ChoiceLoader(loaders),
            undefined=StrictUndefined,
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
        )
        return cls(environment=environment, override_dir=resolved)

    def render_to_string(self, name: str, context: Mapping[str, object]) -> str:
        """Render template *name* with *context*."""
        try:
            template = self.environment.get_template(name)
            return template.render(**dict(context))
        except JinjaTemplateError as exc:
            raise TemplateError(f"Failed to render template '{name}': {exc}") from exc

    def render_to_path(
        self,
        name: str,
        destination: Path,
        context: Mapping[str, object],
        *,
        mode: int = 0o644,
    ) -> bool:
        """Render *name* into *destination*; return ``True`` when content changed."""
        rendered = self.render_to_string(name, context)
        destination = Path(destination)
        try:
            existing = destination.read_text(encoding="utf-8")
        except FileNotFoundError:
            existing = None
        except OSError as exc:
            raise TemplateError(f"Failed to read {destination}: {exc}") from exc

        if existing == rendered:
            if (destination.stat().st_mode & 0o777) != mode:
                os.chmod(destination, mode)
            return False

        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            tmp_fd, tmp_name = tempfile.mkstemp(
                dir=str(destination.parent), prefix=f".{destination.name}."
            )
        except OSError as exc:
            raise TemplateError(f"Failed to prepare {destination}: {exc}") from exc
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                handle.write(rendered)
            os.chmod(tmp_path, mode)
            os.replace(tmp_path, destination)
        except OSError as exc:
            raise TemplateError(f"Failed to write {destination}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)
        return True


__all__ = [
    "CADDYFILE_TEMPLATE",
    "COMPOSE_TEMPLATE",
    "ENV_TEMPLATE",
    "INSTANCE_TEMPLATES",
    "TemplateEngine",
    "TemplateError",
]
