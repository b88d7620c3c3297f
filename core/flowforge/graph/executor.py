"""
Workflow Executor - Runs workflow graphs.

The executor:
1. Takes a GraphSpec and an ExecutionContext
2. Computes the ready set from the completed/running/failed sets
3. Runs ready nodes through the retry policy (concurrently when allowed)
4. Stores each result as ``<node_id>_output`` and checkpoints progress
5. Returns an ExecutionResult once no further node can run
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from flowforge.errors import (
    CircularOrUnresolvableGraphError,
    ExecutionInterruptedError,
    NodeExecutionFailedError,
)
from flowforge.graph.edge import GraphSpec
from flowforge.graph.execution_config import SchedulingMode
from flowforge.graph.node import NodeSpec, NodeStatus
from flowforge.graph.retry import RetryRunner
from flowforge.observability import set_trace_context
from flowforge.runtime.context import ExecutionContext, RunStatus
from flowforge.runtime.event_bus import EventBus
from flowforge.runtime.executor_registry import ExecutorRegistry
from flowforge.storage.checkpoint_store import CheckpointStore, InMemoryCheckpointStore

logger = logging.getLogger(__name__)


@dataclass
class ExecutionResult:
    """Result of executing a graph."""

    success: bool
    status: RunStatus
    execution_id: str = ""
    workflow_id: str = ""
    output: dict[str, Any] = field(default_factory=dict)  # Final variable mapping
    error: str | None = None
    paused_at: str | None = None  # Node that aborted the run, or "current"

    completed_nodes: list[str] = field(default_factory=list)  # In completion order
    failed_nodes: list[str] = field(default_factory=list)
    unreachable_nodes: list[str] = field(default_factory=list)  # Downstream of a failure
    cancelled_nodes: list[str] = field(default_factory=list)

    # Execution quality metrics
    total_retries: int = 0
    retry_details: dict[str, int] = field(default_factory=dict)  # {node_id: retry_count}
    checkpoints: int = 0
    duration_seconds: float = 0.0
    node_durations: dict[str, float] = field(default_factory=dict)  # {node_id: seconds}

    @property
    def is_clean_success(self) -> bool:
        """True only if execution succeeded with no retries."""
        return self.success and self.total_retries == 0

    @property
    def average_node_seconds(self) -> float:
        if not self.node_durations:
            return 0.0
        return sum(self.node_durations.values()) / len(self.node_durations)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "status": self.status.value,
            "execution_id": self.execution_id,
            "workflow_id": self.workflow_id,
            "output": self.output,
            "error": self.error,
            "paused_at": self.paused_at,
            "completed_nodes": self.completed_nodes,
            "failed_nodes": self.failed_nodes,
            "unreachable_nodes": self.unreachable_nodes,
            "cancelled_nodes": self.cancelled_nodes,
            "total_retries": self.total_retries,
            "retry_details": self.retry_details,
            "checkpoints": self.checkpoints,
            "duration_seconds": self.duration_seconds,
            "node_durations": self.node_durations,
            "average_node_seconds": self.average_node_seconds,
        }


@dataclass
class _RunState:
    """Scheduling sets for one call to execute(). Always disjoint."""

    completed: set[str]
    semaphore: asyncio.Semaphore  # Caps concurrently executing nodes
    running: set[str] = field(default_factory=set)
    failed: set[str] = field(default_factory=set)
    unreachable: list[str] = field(default_factory=list)
    pending_writes: set[asyncio.Task] = field(default_factory=set)


class WorkflowExecutor:
    """
    Executes workflow graphs.

    Example:
        registry = ExecutorRegistry()
        registry.register("tool", HttpToolExecutor(client))

        executor = WorkflowExecutor(registry=registry, event_bus=bus)
        ctx = ExecutionContext(workflow_id=graph.id, variables={"city": "Oslo"})
        result = await executor.execute(graph, ctx)
    """

    def __init__(
        self,
        registry: ExecutorRegistry,
        event_bus: EventBus | None = None,
        checkpoint_store: CheckpointStore | None = None,
    ):
        """
        Initialize the executor.

        Args:
            registry: Node type -> executor lookup
            event_bus: Optional event bus for lifecycle events
            checkpoint_store: Where checkpoints are persisted (in-memory if None)
        """
        self.registry = registry
        self.event_bus = event_bus
        self.checkpoint_store = checkpoint_store or InMemoryCheckpointStore()
        self._retry_runner = RetryRunner(event_bus=event_bus)

    async def execute(
        self,
        graph: GraphSpec,
        ctx: ExecutionContext,
        completed: set[str] | None = None,
    ) -> ExecutionResult:
        """
        Drive one run until no further node can make progress.

        Args:
            graph: The workflow graph
            ctx: Execution context (variables, config, bookkeeping)
            completed: Node ids already done, when resuming. These are never
                executed again.

        Returns:
            ExecutionResult; status PAUSED or CANCELLED if the run was
            interrupted before every node finished

        Raises:
            CircularOrUnresolvableGraphError: if remaining nodes can never
                become ready and not all of them sit downstream of a failure
            NodeExecutionFailedError: with pause_on_error, the first node
                failure aborts the run
        """
        resuming = completed is not None
        state = _RunState(
            completed={n for n in (completed or ()) if graph.get_node(n) is not None},
            semaphore=asyncio.Semaphore(ctx.config.max_concurrent_nodes),
        )
        self._prepare_context(graph, ctx, state)

        set_trace_context(execution_id=ctx.execution_id, workflow_id=ctx.workflow_id)

        if not resuming:
            logger.info(f"🚀 Starting workflow: {graph.name or graph.id}")
            logger.info(f"   Nodes: {len(graph.nodes)}, edges: {len(graph.edges)}")
            if self.event_bus:
                await self.event_bus.emit_workflow_started(
                    execution_id=ctx.execution_id,
                    workflow_id=ctx.workflow_id,
                    node_count=len(graph.nodes),
                    config=ctx.config.model_dump(mode="json"),
                )
        else:
            logger.info(
                f"🔄 Resuming workflow: {graph.name or graph.id} "
                f"({len(state.completed)}/{len(graph.nodes)} nodes already completed)"
            )

        try:
            if (
                ctx.config.enable_parallel_execution
                and ctx.config.scheduling_mode == SchedulingMode.EAGER
            ):
                await self._run_eager(graph, ctx, state)
            else:
                await self._run_rounds(graph, ctx, state)

            remaining = self._remaining(graph, state)
            if remaining and ctx.is_interrupted:
                return await self._interrupted(graph, ctx, state)
            if remaining:
                blocked_by_failure = set()
                for failed_id in state.failed:
                    blocked_by_failure |= graph.descendants(failed_id)
                if not state.failed or not set(remaining) <= blocked_by_failure:
                    raise CircularOrUnresolvableGraphError(remaining)
                state.unreachable = remaining
                logger.warning(f"⚠ Unreachable after failures: {', '.join(remaining)}")

        except (CircularOrUnresolvableGraphError, NodeExecutionFailedError) as e:
            await self._abort(ctx, state, e)
            raise

        finally:
            await self._flush_checkpoints(state)

        return await self._complete(graph, ctx, state)

    # === SCHEDULING ===

    async def _run_rounds(self, graph: GraphSpec, ctx: ExecutionContext, state: _RunState) -> None:
        """Launch every ready node, wait for the whole batch, recompute."""
        total = len(graph.nodes)
        round_number = 0

        while len(state.completed) + len(state.failed) < total:
            if ctx.is_interrupted:
                logger.info("⏸ Interrupt detected - stopping at round boundary")
                return

            ready = graph.ready_nodes(state.completed, state.running, state.failed)
            if not ready:
                return

            round_number += 1
            logger.info(f"\n▶ Round {round_number}: {', '.join(ready)}")
            state.running.update(ready)

            if ctx.config.enable_parallel_execution:
                results = await asyncio.gather(
                    *[self._launch(graph.get_node(n), ctx, state) for n in ready],
                    return_exceptions=True,
                )
                errors = [r for r in results if isinstance(r, BaseException)]
                if errors:
                    raise errors[0]
            else:
                for node_id in ready:
                    await self._launch(graph.get_node(node_id), ctx, state)

    async def _run_eager(self, graph: GraphSpec, ctx: ExecutionContext, state: _RunState) -> None:
        """Launch each node as soon as its last dependency completes."""
        tasks: set[asyncio.Task] = set()
        abort: BaseException | None = None

        def launch_ready() -> None:
            ready = graph.ready_nodes(state.completed, state.running, state.failed)
            if ready:
                logger.info(f"\n▶ Ready: {', '.join(ready)}")
            state.running.update(ready)
            for node_id in ready:
                tasks.add(asyncio.create_task(self._launch(graph.get_node(node_id), ctx, state)))

        launch_ready()
        while tasks:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            tasks -= done
            for task in done:
                if not task.cancelled() and task.exception() is not None and abort is None:
                    abort = task.exception()
            if abort is None and not ctx.is_interrupted:
                launch_ready()

        if abort is not None:
            raise abort

    async def _launch(self, node: NodeSpec, ctx: ExecutionContext, state: _RunState) -> None:
        """Run one node in its own task so its trace context stays local."""
        await asyncio.create_task(self._run_bounded(node, ctx, state))

    async def _run_bounded(self, node: NodeSpec, ctx: ExecutionContext, state: _RunState) -> None:
        async with state.semaphore:
            if ctx.is_interrupted:
                # Never started: leave it for a resume
                state.running.discard(node.id)
                if ctx.is_cancelled:
                    await self._set_status(ctx, node.id, NodeStatus.CANCELLED)
                return
            await self._run_node(node, ctx, state)

    async def _run_node(self, node: NodeSpec, ctx: ExecutionContext, state: _RunState) -> None:
        """Execute one node through the retry policy and record the outcome."""
        set_trace_context(node_id=node.id)
        logger.info(f"   Executing {node.display_name} ({node.type})")

        await self._set_status(ctx, node.id, NodeStatus.RUNNING)
        if self.event_bus:
            await self.event_bus.emit_node_started(
                execution_id=ctx.execution_id,
                node_id=node.id,
                node_type=node.type,
            )
        started = time.monotonic()

        async def attempt() -> Any:
            executor = self.registry.get(node.type)
            return await executor.execute(node, ctx)

        try:
            result = await self._retry_runner.run(
                node,
                ctx,
                ctx.config.retry_policy_for(node.id),
                execute=attempt,
                retry_enabled=ctx.config.enable_retry,
                timeout_seconds=ctx.config.node_timeout_seconds,
            )
        except ExecutionInterruptedError:
            state.running.discard(node.id)
            if ctx.is_cancelled:
                await self._set_status(ctx, node.id, NodeStatus.CANCELLED)
            else:
                # Paused or aborted during a retry wait: left idle
                await self._set_status(ctx, node.id, NodeStatus.IDLE)
            return
        except NodeExecutionFailedError as e:
            state.running.discard(node.id)
            state.failed.add(node.id)
            ctx.failed_nodes.append(node.id)
            duration = ctx.node_durations[node.id] = time.monotonic() - started
            logger.error(
                f"   ✗ {node.display_name} failed after {e.attempts} attempt(s)",
                extra={"event": "node:failed", "duration_seconds": duration},
            )

            await self._set_status(ctx, node.id, NodeStatus.ERROR)
            if self.event_bus:
                await self.event_bus.emit_node_failed(
                    execution_id=ctx.execution_id,
                    node_id=node.id,
                    error=str(e.last_error),
                    total_attempts=e.attempts,
                    duration_seconds=duration,
                )

            if ctx.config.pause_on_error:
                ctx.request_abort(node.id)
                raise
            return

        state.running.discard(node.id)
        if ctx.is_cancelled:
            logger.info(f"   ⊘ Discarding result of {node.display_name} (run cancelled)")
            await self._set_status(ctx, node.id, NodeStatus.CANCELLED)
            return

        state.completed.add(node.id)
        completed_count = len(state.completed)
        ctx.completed_nodes.append(node.id)
        ctx.set_output(node.id, result)
        duration = ctx.node_durations[node.id] = time.monotonic() - started
        logger.info(
            f"   ✓ {node.display_name} completed ({duration:.2f}s)",
            extra={"event": "node:completed", "duration_seconds": duration},
        )

        await self._set_status(ctx, node.id, NodeStatus.COMPLETED)
        if self.event_bus:
            await self.event_bus.emit_node_completed(
                execution_id=ctx.execution_id,
                node_id=node.id,
                result=result,
                attempts=ctx.retried_nodes.get(node.id, 0) + 1,
                duration_seconds=duration,
            )

        await self._maybe_checkpoint(ctx, state, node.id, completed_count)

    # === CHECKPOINTS ===

    async def _maybe_checkpoint(
        self, ctx: ExecutionContext, state: _RunState, node_id: str, completed_count: int
    ) -> None:
        """Create a checkpoint every ``checkpoint_interval`` completed nodes."""
        if not ctx.config.should_checkpoint(completed_count):
            return

        checkpoint = self.checkpoint_store.create(
            execution_id=ctx.execution_id,
            node_id=node_id,
            variables=ctx.variables,
            completed_nodes=ctx.completed_nodes,
            retried_nodes=ctx.retried_nodes,
        )
        ctx.checkpoints.append(checkpoint)
        logger.info(f"   💾 Checkpoint {checkpoint.checkpoint_id}")

        if self.event_bus:
            await self.event_bus.emit_checkpoint_created(
                execution_id=ctx.execution_id,
                checkpoint_id=checkpoint.checkpoint_id,
                node_id=node_id,
                completed_nodes=len(checkpoint.completed_nodes),
            )

        # Fire-and-forget; persist() never raises
        task = asyncio.create_task(self.checkpoint_store.persist(checkpoint))
        state.pending_writes.add(task)
        task.add_done_callback(state.pending_writes.discard)

    async def _flush_checkpoints(self, state: _RunState) -> None:
        if state.pending_writes:
            await asyncio.gather(*state.pending_writes, return_exceptions=True)

    # === TERMINAL STATES ===

    async def _complete(
        self, graph: GraphSpec, ctx: ExecutionContext, state: _RunState
    ) -> ExecutionResult:
        ctx.status = RunStatus.COMPLETED
        ctx.completed_at = datetime.now()

        if state.failed:
            logger.warning(
                f"\n⚠ Workflow finished with failures: {', '.join(ctx.failed_nodes)}"
            )
        else:
            logger.info("\n✓ Workflow complete!")
        logger.info(f"   Completed: {len(state.completed)}/{len(graph.nodes)}")
        logger.info(f"   Retries: {ctx.total_retries}")

        if self.event_bus:
            await self.event_bus.emit_workflow_completed(
                execution_id=ctx.execution_id,
                duration_seconds=ctx.duration_seconds,
                failed_nodes=list(ctx.failed_nodes),
                retry_details=dict(ctx.retried_nodes),
                checkpoints=len(ctx.checkpoints),
            )

        return self._build_result(ctx, state, success=not state.failed)

    async def _interrupted(
        self, graph: GraphSpec, ctx: ExecutionContext, state: _RunState
    ) -> ExecutionResult:
        """Stop a paused or cancelled run after in-flight nodes have settled."""
        if ctx.is_cancelled:
            ctx.status = RunStatus.CANCELLED
            ctx.completed_at = datetime.now()
            for node_id in self._remaining(graph, state):
                if ctx.get_node_status(node_id) != NodeStatus.CANCELLED:
                    await self._set_status(ctx, node_id, NodeStatus.CANCELLED)
            logger.info("⊘ Workflow cancelled")
        else:
            ctx.status = RunStatus.PAUSED
            logger.info(
                f"⏸ Workflow paused ({len(state.completed)}/{len(graph.nodes)} nodes completed)"
            )
        return self._build_result(ctx, state, success=False)

    async def _abort(self, ctx: ExecutionContext, state: _RunState, error: Exception) -> None:
        ctx.status = RunStatus.ERROR
        ctx.error = str(error)
        ctx.completed_at = datetime.now()
        logger.error(f"\n✗ Workflow aborted: {error}")

        if self.event_bus:
            await self.event_bus.emit_workflow_error(
                execution_id=ctx.execution_id,
                error=str(error),
                failed_nodes=list(ctx.failed_nodes),
                retry_details=dict(ctx.retried_nodes),
            )
            await self.event_bus.emit_workflow_failed(
                execution_id=ctx.execution_id,
                error=str(error),
                failed_nodes=list(ctx.failed_nodes),
                retry_details=dict(ctx.retried_nodes),
                checkpoints=len(ctx.checkpoints),
            )

    def _build_result(
        self, ctx: ExecutionContext, state: _RunState, success: bool
    ) -> ExecutionResult:
        return ExecutionResult(
            success=success,
            status=ctx.status,
            execution_id=ctx.execution_id,
            workflow_id=ctx.workflow_id,
            output=dict(ctx.variables),
            error=ctx.error,
            paused_at=ctx.paused_at,
            completed_nodes=list(ctx.completed_nodes),
            failed_nodes=list(ctx.failed_nodes),
            unreachable_nodes=list(state.unreachable),
            cancelled_nodes=[
                n for n, s in ctx.node_statuses.items() if s == NodeStatus.CANCELLED
            ],
            total_retries=ctx.total_retries,
            retry_details=dict(ctx.retried_nodes),
            checkpoints=len(ctx.checkpoints),
            duration_seconds=ctx.duration_seconds,
            node_durations=dict(ctx.node_durations),
        )

    # === HELPERS ===

    def _prepare_context(self, graph: GraphSpec, ctx: ExecutionContext, state: _RunState) -> None:
        """Align the context's bookkeeping with the starting completed set."""
        ordered = [n for n in ctx.completed_nodes if n in state.completed]
        ordered += [n for n in graph.node_ids if n in state.completed and n not in ordered]
        ctx.completed_nodes = ordered
        ctx.failed_nodes = []
        if not ctx.is_interrupted:
            ctx.status = RunStatus.RUNNING
        ctx.error = None
        ctx.completed_at = None
        for node_id in graph.node_ids:
            ctx.set_node_status(
                node_id,
                NodeStatus.COMPLETED if node_id in state.completed else NodeStatus.IDLE,
            )

    def _remaining(self, graph: GraphSpec, state: _RunState) -> list[str]:
        return [
            n for n in graph.node_ids if n not in state.completed and n not in state.failed
        ]

    async def _set_status(self, ctx: ExecutionContext, node_id: str, status: NodeStatus) -> None:
        ctx.set_node_status(node_id, status)
        if self.event_bus:
            await self.event_bus.emit_node_status_changed(
                execution_id=ctx.execution_id,
                node_id=node_id,
                status=status.value,
            )
