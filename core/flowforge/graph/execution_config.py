"""
Execution Configuration - Controls retries, checkpoints and scheduling for a run.
"""

from enum import StrEnum

from pydantic import BaseModel, Field

from flowforge.graph.retry import RetryPolicy


class SchedulingMode(StrEnum):
    """How newly ready nodes are discovered."""

    # Launch every ready node, wait for the whole batch, then recompute
    ROUNDS = "rounds"
    # Launch each dependent as soon as its last dependency completes
    EAGER = "eager"


class ExecutionConfig(BaseModel):
    """
    Configuration for a single workflow run.

    Durations are in seconds.
    """

    # Checkpointing
    enable_checkpoints: bool = True
    checkpoint_interval: int = Field(default=5, ge=1)  # Every N completed nodes

    # Retries
    enable_retry: bool = True
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    node_retry_policies: dict[str, RetryPolicy] = Field(default_factory=dict)

    # Error handling
    pause_on_error: bool = False

    # Scheduling
    enable_parallel_execution: bool = True
    scheduling_mode: SchedulingMode = SchedulingMode.ROUNDS
    max_concurrent_nodes: int = Field(default=10, ge=1)

    # Per-attempt timeout (5 minutes); None disables the timeout race
    node_timeout_seconds: float | None = 300.0

    model_config = {"extra": "forbid"}

    def retry_policy_for(self, node_id: str) -> RetryPolicy:
        """Effective policy for a node: its override, else the global policy."""
        return self.node_retry_policies.get(node_id, self.retry_policy)

    def should_checkpoint(self, completed_count: int) -> bool:
        """Check if a checkpoint is due after ``completed_count`` completions."""
        return (
            self.enable_checkpoints
            and completed_count > 0
            and completed_count % self.checkpoint_interval == 0
        )


DEFAULT_EXECUTION_CONFIG = ExecutionConfig()


# Fail fast: single attempt, stop the run on the first node failure
STRICT_EXECUTION_CONFIG = ExecutionConfig(
    enable_retry=False,
    pause_on_error=True,
)


# Sequential execution with no checkpoints (debugging, deterministic logs)
SEQUENTIAL_EXECUTION_CONFIG = ExecutionConfig(
    enable_checkpoints=False,
    enable_parallel_execution=False,
)
