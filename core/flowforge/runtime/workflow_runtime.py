"""
Workflow Runtime - Owns the active-run registry.

Each run gets:
- Its own ExecutionContext (variables, statuses, retry counts)
- A background task driving the WorkflowExecutor
- A completion event for waiters

Finished runs stay queryable for ``retention_seconds`` before eviction.
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Any

from flowforge.config import RuntimeConfig
from flowforge.errors import UnknownExecutionError
from flowforge.graph.edge import GraphSpec
from flowforge.graph.execution_config import ExecutionConfig
from flowforge.graph.executor import ExecutionResult, WorkflowExecutor
from flowforge.graph.node import NodeStatus
from flowforge.observability import set_trace_context
from flowforge.runtime.context import ExecutionContext, RunStatus
from flowforge.runtime.event_bus import EventBus, EventHandler
from flowforge.runtime.executor_registry import ExecutorRegistry
from flowforge.schemas.checkpoint import Checkpoint
from flowforge.storage.checkpoint_store import (
    CheckpointStore,
    FileCheckpointStore,
    InMemoryCheckpointStore,
)

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = (RunStatus.COMPLETED, RunStatus.ERROR, RunStatus.CANCELLED)


class WorkflowRuntime:
    """
    Runs workflows in the background and answers queries about them.

    Example:
        runtime = WorkflowRuntime(registry=registry)

        execution_id = await runtime.start(graph, {"ticket_id": "123"})
        await runtime.pause(execution_id)
        await runtime.resume(execution_id)

        result = await runtime.wait_for_completion(execution_id)
    """

    def __init__(
        self,
        registry: ExecutorRegistry,
        event_bus: EventBus | None = None,
        checkpoint_store: CheckpointStore | None = None,
        config: RuntimeConfig | None = None,
        default_execution_config: ExecutionConfig | None = None,
    ):
        """
        Initialize the runtime.

        Args:
            registry: Executors for every node type the workflows use
            event_bus: Shared event bus (one is created if None)
            checkpoint_store: Checkpoint persistence; defaults to a
                FileCheckpointStore under config.checkpoint_dir when set,
                otherwise in memory
            config: Retention and history settings
            default_execution_config: Used when start() gets no config
        """
        self.config = config or RuntimeConfig()
        self.event_bus = event_bus or EventBus(max_history=self.config.max_history)

        if checkpoint_store is None:
            if self.config.checkpoint_dir is not None:
                checkpoint_store = FileCheckpointStore(self.config.checkpoint_dir)
            else:
                checkpoint_store = InMemoryCheckpointStore()
        self.checkpoint_store = checkpoint_store

        self.registry = registry
        self.default_execution_config = default_execution_config or ExecutionConfig()
        self._executor = WorkflowExecutor(
            registry=registry,
            event_bus=self.event_bus,
            checkpoint_store=self.checkpoint_store,
        )

        # Execution tracking
        self._contexts: dict[str, ExecutionContext] = {}
        self._graphs: dict[str, GraphSpec] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._results: dict[str, ExecutionResult] = {}
        self._completion_events: dict[str, asyncio.Event] = {}
        self._active: set[str] = set()
        self._finished_at: dict[str, float] = {}

    # === RUN API ===

    async def start(
        self,
        graph: GraphSpec,
        variables: dict[str, Any] | None = None,
        config: ExecutionConfig | None = None,
    ) -> str:
        """
        Start a run and return its execution ID.

        Non-blocking - the run proceeds in a background task.
        """
        self._prune()

        ctx = ExecutionContext(
            workflow_id=graph.id,
            variables=dict(variables or {}),
            config=config or self.default_execution_config,
        )
        execution_id = ctx.execution_id
        ctx.status = RunStatus.RUNNING

        self._contexts[execution_id] = ctx
        self._graphs[execution_id] = graph
        self._active.add(execution_id)
        self._launch(ctx, completed=None)

        logger.debug(f"Started execution {execution_id} for workflow {graph.id}")
        return execution_id

    async def run(
        self,
        graph: GraphSpec,
        variables: dict[str, Any] | None = None,
        config: ExecutionConfig | None = None,
        timeout: float | None = None,
    ) -> ExecutionResult | None:
        """Start a run and wait for it to stop (None on timeout)."""
        execution_id = await self.start(graph, variables, config)
        return await self.wait_for_completion(execution_id, timeout=timeout)

    async def wait_for_completion(
        self,
        execution_id: str,
        timeout: float | None = None,
    ) -> ExecutionResult | None:
        """
        Wait for the run's current background task to stop.

        A paused run counts as stopped; after resume() wait again.

        Args:
            execution_id: Execution to wait for
            timeout: Maximum time to wait (seconds)

        Returns:
            ExecutionResult or None if timeout
        """
        self._require(execution_id)
        event = self._completion_events.get(execution_id)
        if event is None or event.is_set():
            return self._results.get(execution_id)

        try:
            if timeout is not None:
                await asyncio.wait_for(event.wait(), timeout=timeout)
            else:
                await event.wait()
        except TimeoutError:
            return None
        return self._results.get(execution_id)

    async def pause(self, execution_id: str) -> bool:
        """
        Pause a run at the next round boundary.

        In-flight nodes finish; pending retries are abandoned and re-run on
        resume.

        Returns:
            True if the run was running and is now pausing
        """
        ctx = self._require(execution_id)
        if execution_id not in self._active or ctx.status != RunStatus.RUNNING:
            return False

        ctx.request_pause()
        ctx.status = RunStatus.PAUSED
        logger.info(f"⏸ Pause requested for {execution_id}")

        await self.event_bus.emit_workflow_paused(
            execution_id=execution_id,
            paused_at=ctx.paused_at,
        )
        return True

    async def resume(self, execution_id: str, from_node_id: str | None = None) -> bool:
        """
        Resume a paused run.

        Completed nodes are taken from the latest checkpoint together with
        the run's own record. With ``from_node_id``, that node and everything
        downstream of it run again; every other completed node is kept.

        Returns:
            True if the run was resumed, False if it was not paused
        """
        ctx = self._require(execution_id)
        if execution_id not in self._active or ctx.status != RunStatus.PAUSED:
            return False

        graph = self._graphs[execution_id]
        if from_node_id is not None and graph.get_node(from_node_id) is None:
            raise ValueError(f"Node '{from_node_id}' not found in workflow {graph.id}")

        # In-flight nodes settle before the loop restarts
        task = self._tasks.get(execution_id)
        if task is not None and not task.done():
            await asyncio.wait({task})
            if ctx.status != RunStatus.PAUSED:
                return False

        completed = set(ctx.completed_nodes)
        checkpoint = await self._latest_checkpoint(ctx)
        if checkpoint is not None:
            completed |= set(checkpoint.completed_nodes)
            for key, value in checkpoint.variables.items():
                ctx.variables.setdefault(key, value)

        if from_node_id is not None:
            rerun = {from_node_id} | graph.descendants(from_node_id)
            completed -= rerun
            for node_id in rerun:
                ctx.variables.pop(f"{node_id}_output", None)
            logger.info(f"🔄 Re-running from {from_node_id}: {', '.join(sorted(rerun))}")

        ctx.clear_pause()
        ctx.resume_from = from_node_id
        ctx.status = RunStatus.RUNNING

        await self.event_bus.emit_workflow_resumed(
            execution_id=execution_id,
            resume_from=from_node_id,
        )
        self._launch(ctx, completed=completed)
        return True

    async def cancel(self, execution_id: str) -> bool:
        """
        Cancel a run.

        In-flight executor calls are not force-terminated (they can watch
        ``context.cancellation``); their results are discarded.

        Returns:
            True if the run was active and is now cancelled
        """
        ctx = self._require(execution_id)
        if execution_id not in self._active:
            return False

        ctx.request_cancel()
        self._active.discard(execution_id)
        logger.info(f"⊘ Cancel requested for {execution_id}")

        task = self._tasks.get(execution_id)
        if task is None or task.done():
            # Paused: nothing is running, finish the bookkeeping here
            self._finish_cancelled(ctx)

        await self.event_bus.emit_workflow_cancelled(
            execution_id=execution_id,
            failed_nodes=list(ctx.failed_nodes),
            retry_details=dict(ctx.retried_nodes),
        )
        return True

    async def shutdown(self) -> None:
        """Cancel every active run and wait for their tasks."""
        for execution_id in list(self._active):
            await self.cancel(execution_id)
        tasks = [t for t in self._tasks.values() if not t.done()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def subscribe(
        self,
        event_types: Any,
        handler: EventHandler,
        filter_node: str | None = None,
        filter_execution: str | None = None,
    ) -> str:
        """Subscribe to engine events. See EventBus.subscribe."""
        return self.event_bus.subscribe(
            event_types,
            handler,
            filter_node=filter_node,
            filter_execution=filter_execution,
        )

    def unsubscribe(self, subscription_id: str) -> bool:
        return self.event_bus.unsubscribe(subscription_id)

    # === QUERIES ===

    def get_status(self, execution_id: str) -> RunStatus:
        return self._require(execution_id).status

    def get_node_statuses(self, execution_id: str) -> dict[str, NodeStatus]:
        return dict(self._require(execution_id).node_statuses)

    def get_checkpoints(self, execution_id: str) -> list[Checkpoint]:
        """Checkpoints created by the run, oldest first."""
        return list(self._require(execution_id).checkpoints)

    def get_retry_statistics(self, execution_id: str) -> dict[str, int]:
        """Extra attempts beyond the first, per node."""
        return dict(self._require(execution_id).retried_nodes)

    def get_context(self, execution_id: str) -> ExecutionContext:
        return self._require(execution_id)

    def get_result(self, execution_id: str) -> ExecutionResult | None:
        """Result of the run's last background task, if it has stopped."""
        self._require(execution_id)
        return self._results.get(execution_id)

    def get_active_executions(self) -> list[str]:
        self._prune()
        return sorted(self._active)

    def get_stats(self) -> dict:
        """Get runtime statistics."""
        self._prune()
        statuses: dict[str, int] = {}
        for ctx in self._contexts.values():
            statuses[ctx.status.value] = statuses.get(ctx.status.value, 0) + 1

        return {
            "active_executions": len(self._active),
            "retained_executions": len(self._contexts),
            "status_counts": statuses,
            "registered_types": self.registry.types(),
            "retention_seconds": self.config.retention_seconds,
            "events": self.event_bus.get_stats(),
        }

    # === INTERNALS ===

    def _launch(self, ctx: ExecutionContext, completed: set[str] | None) -> None:
        execution_id = ctx.execution_id
        self._results.pop(execution_id, None)
        self._completion_events[execution_id] = asyncio.Event()
        self._tasks[execution_id] = asyncio.create_task(self._run_execution(ctx, completed))

    async def _run_execution(self, ctx: ExecutionContext, completed: set[str] | None) -> None:
        """Drive one background segment of a run (until it stops or pauses)."""
        execution_id = ctx.execution_id
        graph = self._graphs[execution_id]
        set_trace_context(execution_id=execution_id, workflow_id=ctx.workflow_id)

        try:
            result = await self._executor.execute(graph, ctx, completed=completed)

        except asyncio.CancelledError:
            ctx.status = RunStatus.CANCELLED
            ctx.completed_at = datetime.now()
            self._results[execution_id] = self._failure_result(ctx, "Execution task cancelled")
            raise

        except Exception as e:
            # Events and context status were already updated by the executor
            logger.error(f"Execution {execution_id} failed: {e}")
            if ctx.status not in TERMINAL_STATUSES:
                ctx.status = RunStatus.ERROR
                ctx.error = str(e)
                ctx.completed_at = datetime.now()
            self._results[execution_id] = self._failure_result(ctx, str(e))

        else:
            self._results[execution_id] = result
            logger.debug(f"Execution {execution_id} stopped: status={result.status}")

        finally:
            if ctx.status in TERMINAL_STATUSES:
                self._active.discard(execution_id)
                self._finished_at[execution_id] = time.monotonic()

            event = self._completion_events.get(execution_id)
            if event is not None:
                event.set()

    def _finish_cancelled(self, ctx: ExecutionContext) -> None:
        ctx.status = RunStatus.CANCELLED
        ctx.completed_at = datetime.now()
        for node_id, status in ctx.node_statuses.items():
            if status in (NodeStatus.IDLE, NodeStatus.RUNNING):
                ctx.set_node_status(node_id, NodeStatus.CANCELLED)
        self._results[ctx.execution_id] = self._failure_result(ctx, None)
        self._finished_at[ctx.execution_id] = time.monotonic()

    def _failure_result(self, ctx: ExecutionContext, error: str | None) -> ExecutionResult:
        return ExecutionResult(
            success=False,
            status=ctx.status,
            execution_id=ctx.execution_id,
            workflow_id=ctx.workflow_id,
            output=dict(ctx.variables),
            error=error,
            paused_at=ctx.paused_at,
            completed_nodes=list(ctx.completed_nodes),
            failed_nodes=list(ctx.failed_nodes),
            cancelled_nodes=[
                n for n, s in ctx.node_statuses.items() if s == NodeStatus.CANCELLED
            ],
            total_retries=ctx.total_retries,
            retry_details=dict(ctx.retried_nodes),
            checkpoints=len(ctx.checkpoints),
            duration_seconds=ctx.duration_seconds,
            node_durations=dict(ctx.node_durations),
        )

    async def _latest_checkpoint(self, ctx: ExecutionContext) -> Checkpoint | None:
        """Newest checkpoint from the store, falling back to the in-memory copy."""
        stored = await self.checkpoint_store.latest(ctx.execution_id)
        local = ctx.latest_checkpoint
        if stored is None:
            return local
        if local is None:
            return stored
        return max(stored, local, key=lambda cp: len(cp.completed_nodes))

    def _require(self, execution_id: str) -> ExecutionContext:
        self._prune()
        ctx = self._contexts.get(execution_id)
        if ctx is None:
            raise UnknownExecutionError(execution_id)
        return ctx

    def _prune(self) -> None:
        """Evict finished runs older than the retention window."""
        cutoff = time.monotonic() - self.config.retention_seconds
        for execution_id, finished_at in list(self._finished_at.items()):
            if finished_at > cutoff:
                continue
            self._finished_at.pop(execution_id, None)
            self._contexts.pop(execution_id, None)
            self._graphs.pop(execution_id, None)
            self._tasks.pop(execution_id, None)
            self._results.pop(execution_id, None)
            self._completion_events.pop(execution_id, None)
            self.checkpoint_store.discard(execution_id)
            logger.debug(f"Evicted execution {execution_id}")
