"""
Execution Context - Mutable state of a single workflow run.

Created when a run starts, mutated by the executor (statuses, retry counts)
and by node executors (each writes only its own ``<node_id>_output``
variable), and kept in the runtime's registry for a grace period after the
run ends so late queries still succeed.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from flowforge.graph.execution_config import ExecutionConfig
from flowforge.graph.node import NodeStatus
from flowforge.schemas.checkpoint import Checkpoint


class RunStatus(StrEnum):
    """Aggregate state of a run."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"
    PAUSED = "paused"


def generate_execution_id() -> str:
    return f"exec_{uuid.uuid4().hex}"


@dataclass
class ExecutionContext:
    """Context for a single execution."""

    workflow_id: str
    variables: dict[str, Any] = field(default_factory=dict)
    config: ExecutionConfig = field(default_factory=ExecutionConfig)
    execution_id: str = field(default_factory=generate_execution_id)
    started_at: datetime = field(default_factory=datetime.now)
    completed_at: datetime | None = None

    status: RunStatus = RunStatus.IDLE
    node_statuses: dict[str, NodeStatus] = field(default_factory=dict)
    completed_nodes: list[str] = field(default_factory=list)  # In completion order
    failed_nodes: list[str] = field(default_factory=list)
    retried_nodes: dict[str, int] = field(default_factory=dict)  # Extra attempts per node
    node_durations: dict[str, float] = field(default_factory=dict)  # Seconds, all attempts
    checkpoints: list[Checkpoint] = field(default_factory=list)

    paused_at: str | None = None  # Node where the run stopped, or "current"
    resume_from: str | None = None
    error: str | None = None

    # Set on pause, cancel or abort; stops new rounds and pending retries
    _interrupted: asyncio.Event = field(default_factory=asyncio.Event, init=False, repr=False)
    # Set on cancel only; executors may watch this to abort in-flight work
    cancellation: asyncio.Event = field(default_factory=asyncio.Event, init=False, repr=False)

    # === CONTROL ===

    @property
    def is_interrupted(self) -> bool:
        return self._interrupted.is_set()

    @property
    def is_cancelled(self) -> bool:
        return self.cancellation.is_set()

    @property
    def is_paused(self) -> bool:
        return self.is_interrupted and not self.is_cancelled

    def request_pause(self) -> None:
        self._interrupted.set()
        if self.paused_at is None:
            self.paused_at = "current"

    def request_abort(self, node_id: str) -> None:
        """A node failure ends the run; siblings stop before their next attempt."""
        self._interrupted.set()
        self.paused_at = node_id

    def request_cancel(self) -> None:
        self.cancellation.set()
        self._interrupted.set()

    def clear_pause(self) -> None:
        if not self.is_cancelled:
            self._interrupted.clear()
        self.paused_at = None

    async def wait_interrupted(self) -> None:
        await self._interrupted.wait()

    # === BOOKKEEPING ===

    def set_node_status(self, node_id: str, status: NodeStatus) -> None:
        self.node_statuses[node_id] = status

    def get_node_status(self, node_id: str) -> NodeStatus:
        return self.node_statuses.get(node_id, NodeStatus.IDLE)

    def record_retry(self, node_id: str) -> None:
        self.retried_nodes[node_id] = self.retried_nodes.get(node_id, 0) + 1

    def set_output(self, node_id: str, result: Any) -> None:
        self.variables[f"{node_id}_output"] = result

    @property
    def total_retries(self) -> int:
        return sum(self.retried_nodes.values())

    @property
    def latest_checkpoint(self) -> Checkpoint | None:
        return self.checkpoints[-1] if self.checkpoints else None

    @property
    def duration_seconds(self) -> float:
        end = self.completed_at or datetime.now()
        return (end - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        """Serializable summary for status queries."""
        return {
            "execution_id": self.execution_id,
            "workflow_id": self.workflow_id,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "node_statuses": {k: v.value for k, v in self.node_statuses.items()},
            "failed_nodes": list(self.failed_nodes),
            "retried_nodes": dict(self.retried_nodes),
            "node_durations": dict(self.node_durations),
            "checkpoints": len(self.checkpoints),
            "paused_at": self.paused_at,
            "error": self.error,
        }
