"""Schema definitions for persisted engine state."""

from flowforge.schemas.checkpoint import Checkpoint, CheckpointIndex, CheckpointSummary

__all__ = ["Checkpoint", "CheckpointIndex", "CheckpointSummary"]
