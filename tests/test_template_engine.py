"""Tests for the template rendering engine."""
from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from wpid.lifecycle import SALT_KEYS, CreateRequest, build_template_context
from wpid.templates import (
    CADDYFILE_TEMPLATE,
    COMPOSE_TEMPLATE,
    ENV_TEMPLATE,
    TemplateEngine,
    TemplateError,
)

PORTS = {"wordpress": 11234, "mailpit_smtp": 10025, "mailpit_web": 8025, "adminer": 8181}


def _context(tmp_path: Path, **overrides: object) -> dict[str, object]:
    request = CreateRequest(name="alpha", parent_dir=tmp_path, **overrides)  # type: ignore[arg-type]
    return build_template_context(request, PORTS)


def test_env_template_lists_ports_credentials_and_salts(tmp_path: Path) -> None:
    """The .env file carries every allocated port and one line per salt."""
    engine = TemplateEngine.with_overrides(None)

    output = engine.render_to_string(
        ENV_TEMPLATE, _context(tmp_path, db_user="alice", production_url="https://example.org")
    )

    assert "COMPOSE_PROJECT_NAME=wp-alpha" in output
    assert "WORDPRESS_PORT=11234" in output
    assert "MAILPIT_PORT_SMTP=10025" in output
    assert "ADMINER_PORT=8181" in output
    assert "WORDPRESS_DB_USER=alice" in output
    assert "PRODUCTION_URL=https://example.org" in output
    for key in SALT_KEYS:
        assert f"WORDPRESS_{key}=" in output


def test_compose_template_is_valid_yaml_and_toggles_caddy(tmp_path: Path) -> None:
    """The compose file parses and Caddy only runs when enabled."""
    engine = TemplateEngine.with_overrides(None)

    disabled = yaml.safe_load(engine.render_to_string(COMPOSE_TEMPLATE, _context(tmp_path)))
    enabled = yaml.safe_load(
        engine.render_to_string(COMPOSE_TEMPLATE, _context(tmp_path, caddy_enabled=True))
    )

    assert set(disabled["services"]) == {"wordpress", "db", "adminer", "mailpit", "caddy"}
    assert disabled["services"]["caddy"]["profiles"] == ["donotstart"]
    assert "profiles" not in enabled["services"]["caddy"]
    assert disabled["services"]["wordpress"]["ports"] == ["${WORDPRESS_PORT}:80"]


def test_caddyfile_targets_dev_host(tmp_path: Path) -> None:
    """The Caddyfile serves the development host name."""
    engine = TemplateEngine.with_overrides(None)

    host_level = engine.render_to_string(
        CADDYFILE_TEMPLATE, _context(tmp_path, domain_suffix="test")
    )
    in_stack = engine.render_to_string(
        CADDYFILE_TEMPLATE, _context(tmp_path, caddy_enabled=True)
    )

    assert "alpha.test {" in host_level
    assert "reverse_proxy 127.0.0.1:11234" in host_level
    assert "reverse_proxy wordpress:80" in in_stack


def test_render_to_path_writes_with_mode(tmp_path: Path) -> None:
    """Rendering to a file writes content, respects the mode and reports changes."""
    engine = TemplateEngine.with_overrides(None)
    destination = tmp_path / "config" / "Caddyfile"
    context = _context(tmp_path)

    assert engine.render_to_path(CADDYFILE_TEMPLATE, destination, context, mode=0o600) is True
    assert oct(destination.stat().st_mode & 0o777) == "0o600"
    assert engine.render_to_path(CADDYFILE_TEMPLATE, destination, context, mode=0o644) is False
    assert oct(destination.stat().st_mode & 0o777) == "0o644"
    assert [path.name for path in destination.parent.iterdir()] == ["Caddyfile"]


def test_override_directory_shadows_bundled_template(tmp_path: Path) -> None:
    """A file in the override directory replaces the bundled template."""
    override = tmp_path / "templates"
    (override / "instance").mkdir(parents=True)
    (override / "instance" / "Caddyfile.j2").write_text(
        "custom {{ dev_host }}\n", encoding="utf-8"
    )
    engine = TemplateEngine.with_overrides(override)

    assert engine.override_dir == override
    assert engine.render_to_string(CADDYFILE_TEMPLATE, _context(tmp_path)) == (
        "custom alpha.example.local\n"
    )
    assert "WORDPRESS_PORT=11234" in engine.render_to_string(ENV_TEMPLATE, _context(tmp_path))


def test_missing_variables_and_templates_raise(tmp_path: Path) -> None:
    """Strict undefined variables and unknown templates raise TemplateError."""
    engine = TemplateEngine.with_overrides(None)

    with pytest.raises(TemplateError, match="instance/env.j2"):
        engine.render_to_string(ENV_TEMPLATE, {"instance_name": "alpha"})
    with pytest.raises(TemplateError):
        engine.render_to_string("instance/missing.j2", {})
