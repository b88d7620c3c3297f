"""Runtime pieces shared by every run: context, events and executor lookup.

WorkflowRuntime lives in flowforge.runtime.workflow_runtime (it depends on
the graph executor, which in turn depends on this package).
"""

from flowforge.runtime.context import ExecutionContext, RunStatus
from flowforge.runtime.event_bus import EventBus, EventType, WorkflowEvent
from flowforge.runtime.executor_registry import (
    ExecutorRegistry,
    FunctionExecutor,
    NodeExecutor,
)

__all__ = [
    "ExecutionContext",
    "RunStatus",
    "EventBus",
    "EventType",
    "WorkflowEvent",
    "ExecutorRegistry",
    "FunctionExecutor",
    "NodeExecutor",
]
