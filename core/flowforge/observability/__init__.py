"""
Observability module for trace correlation and structured logging.

Every log line emitted while a run is in progress carries the run's
execution_id and workflow_id (and the node_id while a node executes)
without any of it being passed around by hand.
"""

from flowforge.observability.logging import (
    clear_trace_context,
    configure_logging,
    get_trace_context,
    set_trace_context,
)

__all__ = [
    "configure_logging",
    "get_trace_context",
    "set_trace_context",
    "clear_trace_context",
]
