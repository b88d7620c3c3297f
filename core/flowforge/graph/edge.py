"""
Edge Protocol - How nodes connect in a workflow graph.

Edges define:
1. Source and target nodes (the target depends on the source)
2. Optional named ports for nodes with several outputs/inputs
   (e.g. a decision node's "true"/"false" outputs)

GraphSpec derives the dependency map (node -> upstream ids) and the
dependent map (node -> downstream ids) once at construction, in a single
pass over the edges. The graph is immutable for the duration of a run.
"""

from collections.abc import Collection
from typing import Any

from pydantic import BaseModel, Field, PrivateAttr

from flowforge.errors import GraphValidationError
from flowforge.graph.node import NodeSpec


class EdgeSpec(BaseModel):
    """
    Specification for an edge between nodes.

    Examples:
        # Plain dependency
        EdgeSpec(id="fetch-to-summarize", source="fetch", target="summarize")

        # Branch output
        EdgeSpec(
            id="check-yes",
            source="check",
            target="notify",
            source_port="true",
        )
    """

    id: str = ""
    source: str = Field(description="Source node ID")
    target: str = Field(description="Target node ID")

    source_port: str | None = Field(default=None, description="Named output on the source")
    target_port: str | None = Field(default=None, description="Named input on the target")

    model_config = {"extra": "allow"}

    def model_post_init(self, __context: Any) -> None:
        if not self.id:
            self.id = f"{self.source}->{self.target}"


class GraphSpec(BaseModel):
    """
    Complete description of a workflow graph.

    Example:
        GraphSpec(
            id="daily-report",
            nodes=[
                NodeSpec(id="fetch", type="tool"),
                NodeSpec(id="summarize", type="agent"),
            ],
            edges=[EdgeSpec(source="fetch", target="summarize")],
        )

    Raises:
        GraphValidationError: on duplicate node ids or edges whose endpoints
            are not nodes of this graph. Cycles are permitted here and
            reported by the executor when it cannot make progress.
    """

    id: str = "workflow"
    name: str = ""
    description: str = ""

    nodes: list[NodeSpec] = Field(default_factory=list)
    edges: list[EdgeSpec] = Field(default_factory=list)

    model_config = {"extra": "allow"}

    _nodes_by_id: dict[str, NodeSpec] = PrivateAttr(default_factory=dict)
    _dependencies: dict[str, list[str]] = PrivateAttr(default_factory=dict)
    _dependents: dict[str, list[str]] = PrivateAttr(default_factory=dict)

    def model_post_init(self, __context: Any) -> None:
        errors: list[str] = []

        for node in self.nodes:
            if node.id in self._nodes_by_id:
                errors.append(f"Duplicate node id '{node.id}'")
                continue
            self._nodes_by_id[node.id] = node
            self._dependencies[node.id] = []
            self._dependents[node.id] = []

        for edge in self.edges:
            missing = [
                end for end in (edge.source, edge.target) if end not in self._nodes_by_id
            ]
            if missing:
                for end in missing:
                    errors.append(f"Edge '{edge.id}' references missing node '{end}'")
                continue
            # Parallel edges (e.g. two ports between the same pair) count once
            if edge.source not in self._dependencies[edge.target]:
                self._dependencies[edge.target].append(edge.source)
                self._dependents[edge.source].append(edge.target)

        if errors:
            raise GraphValidationError(errors)

    # === LOOKUPS ===

    @property
    def node_ids(self) -> list[str]:
        """Node ids in declaration order."""
        return list(self._nodes_by_id)

    @property
    def dependencies(self) -> dict[str, list[str]]:
        return {k: list(v) for k, v in self._dependencies.items()}

    @property
    def dependents(self) -> dict[str, list[str]]:
        return {k: list(v) for k, v in self._dependents.items()}

    def get_node(self, node_id: str) -> NodeSpec | None:
        """Get a node by ID."""
        return self._nodes_by_id.get(node_id)

    def get_dependencies(self, node_id: str) -> list[str]:
        """Upstream node ids that must complete before node_id may run."""
        return list(self._dependencies.get(node_id, []))

    def get_dependents(self, node_id: str) -> list[str]:
        """Downstream node ids that wait on node_id."""
        return list(self._dependents.get(node_id, []))

    def get_outgoing_edges(self, node_id: str, port: str | None = None) -> list[EdgeSpec]:
        """Get all edges leaving a node, optionally only those from one port."""
        return [
            e for e in self.edges if e.source == node_id and (port is None or e.source_port == port)
        ]

    def get_incoming_edges(self, node_id: str) -> list[EdgeSpec]:
        """Get all edges entering a node."""
        return [e for e in self.edges if e.target == node_id]

    # === SCHEDULING ===

    def ready_nodes(
        self,
        completed: Collection[str],
        running: Collection[str],
        failed: Collection[str],
    ) -> list[str]:
        """
        Node ids that can start now.

        A node is ready when it is not completed, running or failed, and every
        one of its dependencies is in ``completed``. Pure function of the three
        state sets; result is in node declaration order.
        """
        return [
            node_id
            for node_id, deps in self._dependencies.items()
            if node_id not in completed
            and node_id not in running
            and node_id not in failed
            and all(dep in completed for dep in deps)
        ]

    def descendants(self, node_id: str) -> set[str]:
        """All nodes transitively downstream of node_id (excluding itself)."""
        seen: set[str] = set()
        to_visit = list(self._dependents.get(node_id, []))
        while to_visit:
            current = to_visit.pop()
            if current in seen:
                continue
            seen.add(current)
            to_visit.extend(self._dependents.get(current, []))
        seen.discard(node_id)
        return seen

    def find_cycle(self) -> list[str] | None:
        """
        Find one dependency cycle, if any.

        Returns:
            Node ids forming the cycle in traversal order, or None if the
            graph is acyclic.
        """
        white, grey, black = 0, 1, 2
        color = dict.fromkeys(self._nodes_by_id, white)

        for root in self._nodes_by_id:
            if color[root] != white:
                continue
            path: list[str] = []
            stack: list[tuple[str, int]] = [(root, 0)]
            while stack:
                node_id, child_idx = stack.pop()
                if child_idx == 0:
                    color[node_id] = grey
                    path.append(node_id)
                children = self._dependents[node_id]
                if child_idx < len(children):
                    stack.append((node_id, child_idx + 1))
                    child = children[child_idx]
                    if color[child] == grey:
                        return path[path.index(child) :]
                    if color[child] == white:
                        stack.append((child, 0))
                else:
                    color[node_id] = black
                    path.pop()
        return None

    def validate(self) -> list[str]:
        """Validate the graph structure beyond what construction enforces."""
        errors = []

        if not self.nodes:
            errors.append("Graph has no nodes")

        for edge in self.edges:
            if edge.source == edge.target:
                errors.append(f"Edge '{edge.id}' connects node '{edge.source}' to itself")

        cycle = self.find_cycle()
        if cycle:
            errors.append(f"Dependency cycle: {' -> '.join([*cycle, cycle[0]])}")

        return errors
