"""Logging setup for the engine and the CLI.

Two correlation ids travel with every record:

* ``command_id``: one per ``get_context_for_command`` call, so the scoring,
  filtering and usage lines for one dictated command can be grouped.
* ``pass_id``: one per reconciliation pass.

Both live in a ``ContextVar``; scoring tasks fanned out with ``asyncio.gather``
copy the context at creation and so inherit the ids of their caller.

Records go to stderr. Stdout belongs to CLI output such as ``memory show --json``.
"""

from __future__ import annotations

import contextvars
import json
import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import UTC, datetime

# Third-party loggers that are chatty at INFO.
_QUIET_LOGGERS = ("apscheduler",)


@dataclass(frozen=True, slots=True)
class CorrelationContext:
    command_id: str | None = None
    pass_id: str | None = None

    def as_fields(self) -> dict[str, str]:
        fields = {"command_id": self.command_id, "pass_id": self.pass_id}
        return {key: value for key, value in fields.items() if value is not None}


_CURRENT: contextvars.ContextVar[CorrelationContext] = contextvars.ContextVar(
    "dictum_correlation",
    default=CorrelationContext(),
)


def get_correlation_context() -> CorrelationContext:
    return _CURRENT.get()


@contextmanager
def correlation_scope(
    *,
    command_id: str | None = None,
    pass_id: str | None = None,
) -> Iterator[CorrelationContext]:
    """Set correlation ids for the enclosed block.

    Ids left as ``None`` keep the value of the enclosing scope, so a command
    served during a pass is logged with both.
    """
    changes = {
        key: value
        for key, value in (("command_id", command_id), ("pass_id", pass_id))
        if value is not None
    }
    context = replace(_CURRENT.get(), **changes)
    token = _CURRENT.set(context)
    try:
        yield context
    finally:
        _CURRENT.reset(token)


class CorrelationFilter(logging.Filter):
    """Copy the active correlation ids onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = _CURRENT.get()
        record.command_id = context.command_id
        record.pass_id = context.pass_id
        return True


class _TextFormatter(logging.Formatter):
    """``time level logger [command_id=.. pass_id=..] message``; absent ids are left out."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)-7s %(name)s %(correlation)s%(message)s")

    def format(self, record: logging.LogRecord) -> str:
        fields = CorrelationContext(
            command_id=getattr(record, "command_id", None),
            pass_id=getattr(record, "pass_id", None),
        ).as_fields()
        record.correlation = "".join(f"{key}={value} " for key, value in fields.items())
        return super().format(record)


class _JsonFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, object] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "command_id": getattr(record, "command_id", None),
            "pass_id": getattr(record, "pass_id", None),
        }
        if record.exc_info is not None:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True)


def setup_logging(level: int | str = logging.INFO, json_output: bool = False) -> None:
    """Replace the root handlers with a single correlation-aware stderr handler."""
    if isinstance(level, str):
        level = level.upper()

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.filters.clear()

    handler = logging.StreamHandler(stream=sys.stderr)
    handler.setFormatter(_JsonFormatter() if json_output else _TextFormatter())
    handler.addFilter(CorrelationFilter())
    root.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.WARNING, root.level))


__all__ = [
    "CorrelationContext",
    "CorrelationFilter",
    "correlation_scope",
    "get_correlation_context",
    "setup_logging",
]
