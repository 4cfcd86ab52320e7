"""Structured operation logging for wpid.

Each CLI command runs inside :meth:`StructuredLogger.operation`, which yields
an :class:`OperationScope`. Commands record steps and a final result on the
scope; when the ``with`` block exits one JSON line is appended to
``operations.jsonl`` in the logs directory.

Logging is best-effort. If the logs directory cannot be created, or a write
fails, the logger disables itself and commands continue unaffected.
"""
from __future__ import annotations

import json
import os
import time
import uuid
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

OPERATIONS_LOG = "operations.jsonl"


def _sanitize(value: object) -> object:
    """Return a JSON-safe representation of *value*."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Enum):
        return _sanitize(value.value)
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


def _sanitize_mapping(value: Mapping[str, object] | None) -> dict[str, object]:
    if not value:
        return {}
    return {str(key): _sanitize(item) for key, item in value.items()}


@dataclass
class OperationStep:
    """One step recorded during an operation."""

    label: str
    status: str = "info"
    detail: object = None

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {"label": self.label, "status": self.status}
        if self.detail is not None:
            payload["detail"] = _sanitize(self.detail)
        return payload


@dataclass
class OperationScope:
    """Mutable record of one CLI operation."""

    command: str
    args: dict[str, object] = field(default_factory=dict)
    target: dict[str, object] = field(default_factory=dict)
    op_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    steps: list[OperationStep] = field(default_factory=list)
    result: dict[str, object] | None = None
    lock_wait_ms: int | None = None

    def add_step(self, label: str, *, status: str = "info", detail: object = None) -> None:
        """Append a step to the operation record."""
        self.steps.append(OperationStep(label=label, status=status, detail=detail))

    def set_lock_wait_ms(self, wait_ms: int) -> None:
        """Record how long the operation waited for the registry lock."""
        self.lock_wait_ms = int(wait_ms)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        warnings: Iterable[str] = (),
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result(
            "success",
            message,
            changed=changed,
            warnings=warnings,
            errors=(),
            rc=0,
            context=context,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] = (),
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            changed=changed,
            warnings=list(warnings) if warnings is not None else [message],
            errors=errors,
            rc=0,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Iterable[str] | None = None,
        rc: int = 1,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            changed=0,
            warnings=(),
            errors=list(errors) if errors is not None else [message],
            rc=rc,
            context=context,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        changed: int,
        warnings: Iterable[str],
        errors: Iterable[str],
        rc: int,
        context: Mapping[str, object] | None,
    ) -> None:
        self.result = {
            "status": status,
            "message": message,
            "changed": changed,
            "rc": rc,
            "warnings": [str(item) for item in warnings],
            "errors": [str(item) for item in errors],
            "context": _sanitize_mapping(context),
        }


class StructuredLogger:
    """Append operation records to ``operations.jsonl``."""

    def __init__(self, log_dir: Path) -> None:
        self._log_dir = Path(log_dir)
        self._operations_log_path = self._log_dir / OPERATIONS_LOG
        self._enabled = True
        try:
            self._log_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False

    @property
    def path(self) -> Path:
        """Return the operations log path."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist it on exit."""
        scope = OperationScope(
            command=command,
            args=_sanitize_mapping(args),
            target=_sanitize_mapping(target),
        )
        started = time.perf_counter()
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                scope.error(
                    f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__,
                    rc=1,
                )
            raise
        finally:
            duration_ms = int((time.perf_counter() - started) * 1000)
            self._write(scope, duration_ms)

    def _write(self, scope: OperationScope, duration_ms: int) -> None:
        if not self._enabled:
            return
        record = {
            "ts": datetime.now(UTC).isoformat(),
            "op_id": scope.op_id,
            "pid": os.getpid(),
            "command": scope.command,
            "args": scope.args,
            "target": scope.target,
            "steps": [step.to_dict() for step in scope.steps],
            "lock_wait_ms": scope.lock_wait_ms,
            "duration_ms": duration_ms,
            "result": scope.result or {"status": "unknown"},
        }
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=False) + "\n")
        except OSError:
            self._enabled = False


__all__ = ["OPERATIONS_LOG", "OperationScope", "OperationStep", "StructuredLogger"]
