"""
Executor Registry - Maps node type tags to the code that runs them.

Executors are supplied by collaborators (HTTP tools, model inference,
database, email, ...) and registered before a run starts. The engine itself
registers nothing.
"""

import inspect
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from flowforge.errors import ExecutorNotFoundError

if TYPE_CHECKING:
    from flowforge.graph.node import NodeSpec
    from flowforge.runtime.context import ExecutionContext

logger = logging.getLogger(__name__)


@runtime_checkable
class NodeExecutor(Protocol):
    """
    Contract every executor fulfils.

    ``execute`` returns the node's result or raises. The result is stored
    by the engine as ``<node_id>_output``. Long-running executors should
    watch ``context.cancellation`` and return early once it is set.
    """

    async def execute(self, node: "NodeSpec", context: "ExecutionContext") -> Any: ...


class FunctionExecutor:
    """Adapts a plain callable (sync or async) to the NodeExecutor contract."""

    def __init__(self, func: Callable[..., Any]):
        self.func = func

    async def execute(self, node: "NodeSpec", context: "ExecutionContext") -> Any:
        result = self.func(node, context)
        if inspect.isawaitable(result):
            result = await result
        return result

    def __repr__(self) -> str:
        return f"FunctionExecutor({getattr(self.func, '__name__', self.func)!r})"


class ExecutorRegistry:
    """
    Registry of node executors keyed by node type.

    Example:
        registry = ExecutorRegistry()
        registry.register("tool", HttpToolExecutor(client))

        @registry.executor("echo")
        async def echo(node, ctx):
            return node.config.get("message")
    """

    def __init__(self, executors: dict[str, NodeExecutor] | None = None):
        self._executors: dict[str, NodeExecutor] = {}
        for node_type, executor in (executors or {}).items():
            self.register(node_type, executor)

    def register(self, node_type: str, executor: NodeExecutor | Callable[..., Any]) -> None:
        """Register an executor (or a bare callable) for a node type."""
        if not isinstance(executor, NodeExecutor):
            if not callable(executor):
                raise TypeError(f"Executor for '{node_type}' must be callable or a NodeExecutor")
            executor = FunctionExecutor(executor)
        if node_type in self._executors:
            logger.info(f"Replacing executor for node type '{node_type}'")
        self._executors[node_type] = executor

    def register_function(self, node_type: str, func: Callable[..., Any]) -> None:
        """Register a function as the executor for a node type."""
        self._executors[node_type] = FunctionExecutor(func)

    def executor(self, node_type: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Decorator form of register_function."""

        def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
            self.register_function(node_type, func)
            return func

        return decorator

    def unregister(self, node_type: str) -> bool:
        return self._executors.pop(node_type, None) is not None

    def get(self, node_type: str) -> NodeExecutor:
        """
        Look up the executor for a node type.

        Raises:
            ExecutorNotFoundError: if nothing is registered for the type
        """
        try:
            return self._executors[node_type]
        except KeyError:
            raise ExecutorNotFoundError(node_type) from None

    def has(self, node_type: str) -> bool:
        return node_type in self._executors

    def types(self) -> list[str]:
        return sorted(self._executors)

    def __contains__(self, node_type: str) -> bool:
        return self.has(node_type)

    def __len__(self) -> int:
        return len(self._executors)
