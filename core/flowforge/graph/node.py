"""
Node Protocol - Units of work in a workflow graph.

A node is data only: an id, a type tag that selects an executor, and an
opaque configuration mapping the executor interprets. Position is carried
for the canvas and ignored by the engine.
"""

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class NodeStatus(StrEnum):
    """Per-node state within a single run."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"


class NodePosition(BaseModel):
    """Canvas coordinates (presentation only)."""

    x: float = 0.0
    y: float = 0.0


class NodeSpec(BaseModel):
    """
    Specification for a single workflow node.

    Examples:
        NodeSpec(id="summarize", type="agent", config={"model": "llama3", "prompt": "..."})

        NodeSpec(
            id="notify",
            type="webhook",
            config={"url": "https://hooks.example.com/x", "method": "POST"},
        )
    """

    id: str
    type: str = Field(description="Executor dispatch tag, e.g. 'tool', 'agent', 'decision'")
    config: dict[str, Any] = Field(
        default_factory=dict,
        description="Executor-specific configuration",
    )
    position: NodePosition = Field(default_factory=NodePosition)

    name: str = ""
    description: str = ""

    model_config = {"extra": "allow"}

    @property
    def output_key(self) -> str:
        """Variable key this node's result is stored under."""
        return f"{self.id}_output"

    @property
    def display_name(self) -> str:
        return self.name or self.id
