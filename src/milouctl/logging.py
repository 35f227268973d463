"""Structured operation logging for milouctl.

Each pipeline stage runs inside an :class:`OperationScope`; when the scope
closes a single JSON record is appended to ``operations.jsonl`` in the logs
directory. The logger never raises: if the directory cannot be created or a
write fails it disables itself and the pipeline carries on.
"""
from __future__ import annotations

import json
import logging
import time
import uuid
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

LOGGER = logging.getLogger(__name__)

OPERATIONS_LOG = "operations.jsonl"


def _timestamp() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def _sanitize(value: object) -> object:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


class OperationScope:
    """Collects the outcome of a single logged operation."""

    def __init__(self, name: str, args: Mapping[str, object] | None) -> None:
        """Record the operation name, arguments and start time."""
        self.name = name
        self.args = dict(args or {})
        self.id = uuid.uuid4().hex[:12]
        self.started_at = _timestamp()
        self._start = time.perf_counter()
        self._result: dict[str, object] | None = None

    @property
    def completed(self) -> bool:
        """Return ``True`` once an outcome has been recorded."""
        return self._result is not None

    def success(self, message: str, *, context: Mapping[str, object] | None = None) -> None:
        """Record a successful outcome."""
        self._set("success", message, context=context)

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] = (),
        errors: Sequence[str] = (),
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Record a degraded-but-usable outcome."""
        self._set("warning", message, warnings=warnings, errors=errors, context=context)

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Record a failed outcome; *errors* defaults to ``[message]``."""
        self._set("error", message, errors=errors if errors else (message,), context=context)

    def to_record(self) -> dict[str, object]:
        """Return the JSON record describing this operation."""
        return {
            "id": self.id,
            "operation": self.name,
            "args": _sanitize(self.args),
            "started_at": self.started_at,
            "finished_at": _timestamp(),
            "duration_ms": int((time.perf_counter() - self._start) * 1000),
            "result": self._result or {"status": "success", "message": ""},
        }

    def _set(
        self,
        status: str,
        message: str,
        *,
        warnings: Sequence[str] = (),
        errors: Sequence[str] = (),
        context: Mapping[str, object] | None = None,
    ) -> None:
        self._result = {
            "status": status,
            "message": message,
            "warnings": list(warnings),
            "errors": list(errors),
            "context": _sanitize(context or {}),
        }


class StructuredLogger:
    """Append-only JSONL logger for pipeline operations."""

    def __init__(self, log_dir: Path) -> None:
        """Prepare the logs directory, disabling the logger when unavailable."""
        self._log_dir = Path(log_dir).expanduser()
        self._operations_log_path = self._log_dir / OPERATIONS_LOG
        self._enabled = True
        try:
            self._log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.warning("Structured logging disabled; cannot create %s: %s", self._log_dir, exc)
            self._enabled = False

    @property
    def path(self) -> Path:
        """Return the operations log path."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        name: str,
        *,
        args: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield a scope for *name* and persist its outcome on exit."""
        scope = OperationScope(name, args)
        try:
            yield scope
        except Exception as exc:
            if not scope.completed:
                scope.error(f"{type(exc).__name__}: {exc}")
            raise
        finally:
            self._write(scope.to_record())

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=True) + "\n")
        except OSError as exc:
            LOGGER.warning("Structured logging disabled after write failure: %s", exc)
            self._enabled = False


__all__ = ["OPERATIONS_LOG", "OperationScope", "StructuredLogger"]
