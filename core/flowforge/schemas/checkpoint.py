"""
Checkpoint Schema - Execution progress snapshots for resumability.

A checkpoint records which nodes of a run had completed at a point in time,
together with a copy of the run variables, so a paused or interrupted run
can continue without re-executing finished work.
"""

import re
import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class Checkpoint(BaseModel):
    """Single checkpoint in an execution timeline."""

    # Identity
    checkpoint_id: str  # Format: cp_{node_id}_{timestamp}_{suffix}
    execution_id: str

    # Timestamps
    created_at: str  # ISO 8601 format

    # Progress
    node_id: str | None = None  # Most recently completed node
    completed_nodes: list[str] = Field(default_factory=list)

    # State snapshots
    variables: dict[str, Any] = Field(default_factory=dict)
    retried_nodes: dict[str, int] = Field(default_factory=dict)
    retry_attempt: int = 0  # Total retries across the run so far

    model_config = {"extra": "allow"}

    @classmethod
    def create(
        cls,
        execution_id: str,
        node_id: str | None,
        variables: dict[str, Any],
        completed_nodes: list[str] | None = None,
        retried_nodes: dict[str, int] | None = None,
    ) -> "Checkpoint":
        """
        Snapshot progress under a fresh, filesystem-safe id.

        Args:
            execution_id: Execution this checkpoint belongs to
            node_id: Most recently completed node
            variables: Variable mapping to snapshot (copied)
            completed_nodes: Node IDs completed so far
            retried_nodes: Retry counts per node so far

        Returns:
            New Checkpoint instance
        """
        now = datetime.now()
        suffix = uuid.uuid4().hex[:6]
        label = re.sub(r"[^A-Za-z0-9_.\-]", "_", node_id or "start")
        checkpoint_id = f"cp_{label}_{now.strftime('%Y%m%d_%H%M%S')}_{suffix}"
        retried = dict(retried_nodes or {})

        return cls(
            checkpoint_id=checkpoint_id,
            execution_id=execution_id,
            created_at=now.isoformat(),
            node_id=node_id,
            completed_nodes=list(completed_nodes or []),
            variables=dict(variables),
            retried_nodes=retried,
            retry_attempt=sum(retried.values()),
        )


class CheckpointSummary(BaseModel):
    """Index entry: enough to list and prune checkpoints without opening them."""

    checkpoint_id: str
    created_at: str
    node_id: str | None = None
    completed_count: int = 0

    model_config = {"extra": "allow"}

    @classmethod
    def from_checkpoint(cls, checkpoint: Checkpoint) -> "CheckpointSummary":
        return cls(
            checkpoint_id=checkpoint.checkpoint_id,
            created_at=checkpoint.created_at,
            node_id=checkpoint.node_id,
            completed_count=len(checkpoint.completed_nodes),
        )


class CheckpointIndex(BaseModel):
    """Manifest of all checkpoints for one execution, in creation order."""

    execution_id: str
    checkpoints: list[CheckpointSummary] = Field(default_factory=list)
    latest_checkpoint_id: str | None = None
    total_checkpoints: int = 0

    model_config = {"extra": "allow"}

    def add_checkpoint(self, checkpoint: Checkpoint) -> None:
        self.checkpoints.append(CheckpointSummary.from_checkpoint(checkpoint))
        self.latest_checkpoint_id = checkpoint.checkpoint_id
        self.total_checkpoints = len(self.checkpoints)

    def remove_checkpoint(self, checkpoint_id: str) -> None:
        """Drop a checkpoint from the index and fix up the latest pointer."""
        self.checkpoints = [cp for cp in self.checkpoints if cp.checkpoint_id != checkpoint_id]
        self.total_checkpoints = len(self.checkpoints)
        if self.latest_checkpoint_id == checkpoint_id:
            self.latest_checkpoint_id = (
                self.checkpoints[-1].checkpoint_id if self.checkpoints else None
            )

    def get_checkpoint_summary(self, checkpoint_id: str) -> CheckpointSummary | None:
        """None if the id is not indexed."""
        for summary in self.checkpoints:
            if summary.checkpoint_id == checkpoint_id:
                return summary
        return None

    def filter_by_node(self, node_id: str) -> list[CheckpointSummary]:
        """Entries taken right after node_id completed."""
        return [cp for cp in self.checkpoints if cp.node_id == node_id]
