"""
Errors - Exception taxonomy for workflow execution.

Per-node errors (executor lookup, timeouts, failures) are contained to the
node that raised them. Structural errors (unresolvable graph, unknown
execution) abort the caller immediately.
"""


class WorkflowError(Exception):
    """Base class for all workflow engine errors."""

    pass


class GraphValidationError(WorkflowError):
    """Graph structure is invalid (duplicate ids, dangling edges)."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__("Invalid workflow graph: " + "; ".join(errors))


class ExecutorNotFoundError(WorkflowError):
    """No executor is registered for a node type. Never retried."""

    def __init__(self, node_type: str):
        self.node_type = node_type
        super().__init__(f"No executor registered for type {node_type}")


class NodeExecutionError(WorkflowError):
    """A node failed to produce a result."""

    def __init__(self, node_id: str, message: str):
        self.node_id = node_id
        super().__init__(message)


class NodeExecutionTimeoutError(NodeExecutionError):
    """A single attempt exceeded the per-node execution timeout."""

    def __init__(self, node_id: str, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(node_id, f"Node execution timeout after {timeout_seconds}s")


class NodeExecutionFailedError(NodeExecutionError):
    """A node failed after all permitted attempts."""

    def __init__(self, node_id: str, attempts: int, last_error: BaseException):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            node_id,
            f"Node '{node_id}' failed after {attempts} attempt(s): {last_error}",
        )


class CircularOrUnresolvableGraphError(WorkflowError):
    """No remaining node can make progress (cycle or unresolvable dependency)."""

    def __init__(self, remaining: list[str]):
        self.remaining = remaining
        super().__init__(f"Circular dependency or unresolvable nodes: {', '.join(remaining)}")


class UnknownExecutionError(WorkflowError):
    """Execution id is missing from the active registry or has expired."""

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Execution {execution_id} not found or expired")


class CheckpointPersistenceError(WorkflowError):
    """Checkpoint could not be persisted. Logged, never surfaced to the run."""

    pass


class ExecutionInterruptedError(WorkflowError):
    """A pending retry was abandoned because the run was paused or cancelled."""

    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"Execution interrupted before node '{node_id}' could be retried")


class ConditionEvaluationError(WorkflowError):
    """A branch condition could not be evaluated (bad path, operator or types)."""

    def __init__(self, message: str):
        super().__init__(f"Condition validation failed: {message}")
