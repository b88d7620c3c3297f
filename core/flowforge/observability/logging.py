"""
Log formatting with the run's trace fields attached.

Trace fields flow in from the engine, never from executor code:
    WorkflowRuntime._run_execution() -> execution_id, workflow_id
        | (inherited by every task the run creates)
    WorkflowExecutor._run_node() -> node_id, local to the node's own task
        |
    logger.info("...") anywhere below -> formatted with all three
"""

import json
import logging
import os
import re
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

# Copied per asyncio task, so sibling nodes never see each other's node_id
_trace: ContextVar[dict[str, Any] | None] = ContextVar("flowforge_trace", default=None)

_ANSI = re.compile(r"\x1b\[[0-9;]*m")

# LogRecord attributes (passed via ``extra=``) copied into JSON entries
RECORD_FIELDS = ("event", "node_id", "attempt", "delay", "duration_seconds")

# Routed through the root handler in JSON mode
NOISY_LOGGERS = ("httpx", "httpcore", "asyncio")


def _plain(value: Any) -> Any:
    return _ANSI.sub("", value) if isinstance(value, str) else value


class StructuredFormatter(logging.Formatter):
    """One JSON object per line, with the current trace fields merged in."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": _plain(record.getMessage()),
            **get_trace_context(),
        }

        for name in RECORD_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = _plain(value)

        if record.exc_info:
            entry["exception"] = _plain(self.formatException(record.exc_info))

        return json.dumps(entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """
    Terminal output: ``[LEVEL   ] [exec:1a2b3c4d | wf:report | node:fetch] message``.

    The execution id is shortened to its last eight characters.
    """

    LEVEL_COLORS = {
        logging.DEBUG: "36",
        logging.INFO: "32",
        logging.WARNING: "33",
        logging.ERROR: "31",
        logging.CRITICAL: "35",
    }

    def __init__(self, color: bool = True):
        super().__init__()
        self.color = color

    def _level(self, record: logging.LogRecord) -> str:
        label = f"[{record.levelname:<8}]"
        code = self.LEVEL_COLORS.get(record.levelno)
        if not self.color or code is None:
            return label
        return f"\033[{code}m{label}\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        trace = get_trace_context()
        tags = []
        if trace.get("execution_id"):
            tags.append(f"exec:{trace['execution_id'][-8:]}")
        if trace.get("workflow_id"):
            tags.append(f"wf:{trace['workflow_id']}")
        if trace.get("node_id"):
            tags.append(f"node:{trace['node_id']}")

        parts = [self._level(record)]
        if tags:
            parts.append(f"[{' | '.join(tags)}]")
        parts.append(record.getMessage())
        event = getattr(record, "event", None)
        if event is not None:
            parts.append(f"[{event}]")

        line = " ".join(parts)
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def _resolve_format(format: str) -> str:
    if format != "auto":
        return format
    if os.getenv("LOG_FORMAT", "").lower() == "json":
        return "json"
    if os.getenv("ENV", "").lower() == "production":
        return "json"
    return "human"


def configure_logging(level: str = "INFO", format: str = "auto") -> None:
    """
    Install one root handler. Call once at startup; the CLI does.

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        format: "json", "human", or "auto" (json when LOG_FORMAT=json or
            ENV=production, human otherwise)
    """
    handler = logging.StreamHandler()

    if _resolve_format(format) == "json":
        handler.setFormatter(StructuredFormatter())
        # Keeps colored output out of library log lines
        os.environ["NO_COLOR"] = "1"
        for name in NOISY_LOGGERS:
            noisy = logging.getLogger(name)
            noisy.handlers.clear()
            noisy.propagate = True
    else:
        handler.setFormatter(HumanReadableFormatter(color="NO_COLOR" not in os.environ))

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level.upper())


def set_trace_context(**fields: Any) -> None:
    """Merge fields (execution_id, workflow_id, node_id, ...) into the current task's trace."""
    _trace.set({**(_trace.get() or {}), **fields})


def get_trace_context() -> dict[str, Any]:
    """Copy of the current trace (empty dict if none)."""
    return dict(_trace.get() or {})


def clear_trace_context() -> None:
    _trace.set(None)
