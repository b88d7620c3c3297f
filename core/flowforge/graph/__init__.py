"""Graph structures: Nodes, Edges, retry policies and the workflow executor."""

from flowforge.graph.conditions import (
    Condition,
    ConditionGroup,
    ConditionOperator,
    evaluate_condition,
    evaluate_conditions,
)
from flowforge.graph.edge import EdgeSpec, GraphSpec
from flowforge.graph.execution_config import (
    DEFAULT_EXECUTION_CONFIG,
    SEQUENTIAL_EXECUTION_CONFIG,
    STRICT_EXECUTION_CONFIG,
    ExecutionConfig,
    SchedulingMode,
)
from flowforge.graph.executor import ExecutionResult, WorkflowExecutor
from flowforge.graph.node import NodePosition, NodeSpec, NodeStatus
from flowforge.graph.retry import BackoffStrategy, RetryPolicy, RetryRunner

__all__ = [
    # Node
    "NodeSpec",
    "NodeStatus",
    "NodePosition",
    # Edge
    "EdgeSpec",
    "GraphSpec",
    # Retry
    "RetryPolicy",
    "RetryRunner",
    "BackoffStrategy",
    # Configuration
    "ExecutionConfig",
    "SchedulingMode",
    "DEFAULT_EXECUTION_CONFIG",
    "STRICT_EXECUTION_CONFIG",
    "SEQUENTIAL_EXECUTION_CONFIG",
    # Conditions
    "Condition",
    "ConditionGroup",
    "ConditionOperator",
    "evaluate_condition",
    "evaluate_conditions",
    # Executor
    "WorkflowExecutor",
    "ExecutionResult",
]
