"""
flowforge - Workflow execution engine.

Turns a node/edge graph plus input variables into a dependency-ordered,
partially parallel execution with retries, checkpoints and lifecycle events.

Example:
    from flowforge import ExecutorRegistry, GraphSpec, WorkflowRuntime

    registry = ExecutorRegistry()
    registry.register_function("echo", lambda node, ctx: node.config["message"])

    runtime = WorkflowRuntime(registry=registry)
    result = await runtime.run(GraphSpec.model_validate(workflow), {"user": "ada"})
"""

from flowforge.errors import (
    CheckpointPersistenceError,
    CircularOrUnresolvableGraphError,
    ExecutorNotFoundError,
    GraphValidationError,
    NodeExecutionError,
    NodeExecutionFailedError,
    NodeExecutionTimeoutError,
    UnknownExecutionError,
    WorkflowError,
)
from flowforge.graph import (
    EdgeSpec,
    ExecutionConfig,
    ExecutionResult,
    GraphSpec,
    NodeSpec,
    NodeStatus,
    RetryPolicy,
    WorkflowExecutor,
)
from flowforge.runtime import (
    EventBus,
    EventType,
    ExecutionContext,
    ExecutorRegistry,
    RunStatus,
    WorkflowEvent,
)
from flowforge.runtime.workflow_runtime import WorkflowRuntime
from flowforge.storage import FileCheckpointStore, InMemoryCheckpointStore

__version__ = "0.1.0"

__all__ = [
    # Graph
    "NodeSpec",
    "EdgeSpec",
    "GraphSpec",
    "NodeStatus",
    "RetryPolicy",
    "ExecutionConfig",
    # Execution
    "WorkflowExecutor",
    "ExecutionResult",
    "WorkflowRuntime",
    "ExecutionContext",
    "RunStatus",
    "ExecutorRegistry",
    # Events
    "EventBus",
    "EventType",
    "WorkflowEvent",
    # Storage
    "FileCheckpointStore",
    "InMemoryCheckpointStore",
    # Errors
    "WorkflowError",
    "GraphValidationError",
    "ExecutorNotFoundError",
    "NodeExecutionError",
    "NodeExecutionTimeoutError",
    "NodeExecutionFailedError",
    "CircularOrUnresolvableGraphError",
    "UnknownExecutionError",
    "CheckpointPersistenceError",
]
