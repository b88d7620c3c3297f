"""
Opt-in executors for common node types.

The engine registers nothing on its own; call register_default_executors()
to install these on a registry:

    registry = ExecutorRegistry()
    register_default_executors(registry)
"""

import httpx

from flowforge.executors.branch import BranchExecutor
from flowforge.executors.http import HttpToolExecutor, render_template
from flowforge.runtime.executor_registry import ExecutorRegistry, FunctionExecutor

HTTP_NODE_TYPES = ("tool", "webhook")
BRANCH_NODE_TYPES = ("decision",)


def register_default_executors(
    registry: ExecutorRegistry,
    client: httpx.AsyncClient | None = None,
) -> ExecutorRegistry:
    """Register the HTTP and branch executors for their node types."""
    http = HttpToolExecutor(client=client)
    for node_type in HTTP_NODE_TYPES:
        registry.register(node_type, http)

    branch = BranchExecutor()
    for node_type in BRANCH_NODE_TYPES:
        registry.register(node_type, branch)

    return registry


__all__ = [
    "BranchExecutor",
    "FunctionExecutor",
    "HttpToolExecutor",
    "register_default_executors",
    "render_template",
]
