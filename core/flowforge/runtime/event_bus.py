"""
Event Bus - Pub/sub notifications for workflow and node lifecycle.

Observers (canvas UIs, log shippers, tests) subscribe to event types and
receive WorkflowEvents as runs progress. Publishing is awaited by the node
coroutine that caused the change, so the events of any single node arrive
in the order its state actually changed. A failing observer is logged and
never affects the run.
"""

import asyncio
import logging
from collections import Counter, deque
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    """Every event the engine publishes."""

    # Workflow lifecycle
    WORKFLOW_STARTED = "workflow:started"
    WORKFLOW_COMPLETED = "workflow:completed"
    WORKFLOW_ERROR = "workflow:error"
    WORKFLOW_FAILED = "workflow:failed"
    WORKFLOW_PAUSED = "workflow:paused"
    WORKFLOW_RESUMED = "workflow:resumed"
    WORKFLOW_CANCELLED = "workflow:cancelled"

    # Node lifecycle
    NODE_STARTED = "node:started"
    NODE_STATUS_CHANGED = "node:status_changed"
    NODE_ATTEMPT_STARTED = "node:attempt_started"
    NODE_ATTEMPT_FAILED = "node:attempt_failed"
    NODE_RETRY_SCHEDULED = "node:retry_scheduled"
    NODE_COMPLETED = "node:completed"
    NODE_FAILED = "node:failed"

    # Checkpoints
    CHECKPOINT_CREATED = "checkpoint:created"


@dataclass
class WorkflowEvent:
    type: EventType
    execution_id: str | None = None
    node_id: str | None = None  # Set for node and checkpoint events
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "execution_id": self.execution_id,
            "node_id": self.node_id,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


EventHandler = Callable[[WorkflowEvent], Awaitable[None]]


@dataclass
class Subscription:
    id: str
    event_types: frozenset[EventType]
    handler: EventHandler
    filter_node: str | None = None
    filter_execution: str | None = None

    def matches(self, event: WorkflowEvent) -> bool:
        if event.type not in self.event_types:
            return False
        if self.filter_node is not None and event.node_id != self.filter_node:
            return False
        if self.filter_execution is not None and event.execution_id != self.filter_execution:
            return False
        return True


class EventBus:
    """
    Pub/sub event bus with bounded history.

    Example:
        bus = EventBus()

        async def on_failed(event: WorkflowEvent):
            alert(f"{event.node_id} failed: {event.data['error']}")

        bus.subscribe(EventType.NODE_FAILED, on_failed)
    """

    def __init__(self, max_history: int = 1000, max_concurrent_handlers: int = 10):
        """
        Args:
            max_history: Events kept for get_history(), oldest dropped first
            max_concurrent_handlers: Cap on handlers running at once
        """
        self._subscriptions: dict[str, Subscription] = {}
        self._history: deque[WorkflowEvent] = deque(maxlen=max_history)
        self._handler_slots = asyncio.Semaphore(max_concurrent_handlers)
        self._next_id = 0

    # === SUBSCRIPTIONS ===

    def subscribe(
        self,
        event_types: EventType | str | Iterable[EventType | str],
        handler: EventHandler,
        filter_node: str | None = None,
        filter_execution: str | None = None,
    ) -> str:
        """
        Register an async handler.

        Args:
            event_types: One type or several, as enum members or their
                string values (e.g. "node:completed")
            handler: Coroutine function receiving each matching event
            filter_node: Only events for this node id
            filter_execution: Only events for this execution id

        Returns:
            Subscription ID for unsubscribe()
        """
        if isinstance(event_types, str):
            event_types = [event_types]

        self._next_id += 1
        subscription = Subscription(
            id=f"sub_{self._next_id}",
            event_types=frozenset(EventType(t) for t in event_types),
            handler=handler,
            filter_node=filter_node,
            filter_execution=filter_execution,
        )
        self._subscriptions[subscription.id] = subscription
        logger.debug(f"{subscription.id} listening for {sorted(subscription.event_types)}")
        return subscription.id

    def unsubscribe(self, subscription_id: str) -> bool:
        """Returns False if the subscription did not exist."""
        removed = self._subscriptions.pop(subscription_id, None) is not None
        if removed:
            logger.debug(f"{subscription_id} removed")
        return removed

    # === PUBLISHING ===

    async def publish(self, event: WorkflowEvent) -> None:
        """Record the event and await every matching handler."""
        self._history.append(event)

        handlers = [s.handler for s in list(self._subscriptions.values()) if s.matches(event)]
        if handlers:
            await asyncio.gather(*(self._call(h, event) for h in handlers))

    async def _call(self, handler: EventHandler, event: WorkflowEvent) -> None:
        async with self._handler_slots:
            try:
                await handler(event)
            except Exception as e:
                logger.error(f"Event handler failed on {event.type}: {e}")

    async def _emit(
        self,
        event_type: EventType,
        execution_id: str,
        node_id: str | None = None,
        **data: Any,
    ) -> None:
        await self.publish(
            WorkflowEvent(type=event_type, execution_id=execution_id, node_id=node_id, data=data)
        )

    # --- workflow events ---

    async def emit_workflow_started(
        self,
        execution_id: str,
        workflow_id: str,
        node_count: int,
        config: dict[str, Any] | None = None,
    ) -> None:
        await self._emit(
            EventType.WORKFLOW_STARTED,
            execution_id,
            workflow_id=workflow_id,
            node_count=node_count,
            config=config or {},
        )

    async def emit_workflow_completed(
        self,
        execution_id: str,
        duration_seconds: float,
        failed_nodes: list[str],
        retry_details: dict[str, int],
        checkpoints: int,
    ) -> None:
        await self._emit(
            EventType.WORKFLOW_COMPLETED,
            execution_id,
            duration_seconds=duration_seconds,
            failed_nodes=failed_nodes,
            retry_details=retry_details,
            retries=sum(retry_details.values()),
            checkpoints=checkpoints,
        )

    async def emit_workflow_error(
        self,
        execution_id: str,
        error: str,
        failed_nodes: list[str],
        retry_details: dict[str, int],
    ) -> None:
        """Proximate cause of an aborted run."""
        await self._emit(
            EventType.WORKFLOW_ERROR,
            execution_id,
            error=error,
            failed_nodes=failed_nodes,
            retry_details=retry_details,
        )

    async def emit_workflow_failed(
        self,
        execution_id: str,
        error: str,
        failed_nodes: list[str],
        retry_details: dict[str, int],
        checkpoints: int,
    ) -> None:
        """Terminal summary of an aborted run; follows workflow:error."""
        await self._emit(
            EventType.WORKFLOW_FAILED,
            execution_id,
            error=error,
            failed_nodes=failed_nodes,
            retry_details=retry_details,
            retries=sum(retry_details.values()),
            checkpoints=checkpoints,
        )

    async def emit_workflow_paused(self, execution_id: str, paused_at: str | None) -> None:
        await self._emit(EventType.WORKFLOW_PAUSED, execution_id, paused_at=paused_at)

    async def emit_workflow_resumed(self, execution_id: str, resume_from: str | None) -> None:
        await self._emit(EventType.WORKFLOW_RESUMED, execution_id, resume_from=resume_from)

    async def emit_workflow_cancelled(
        self,
        execution_id: str,
        failed_nodes: list[str],
        retry_details: dict[str, int],
    ) -> None:
        await self._emit(
            EventType.WORKFLOW_CANCELLED,
            execution_id,
            failed_nodes=failed_nodes,
            retry_details=retry_details,
        )

    # --- node events ---

    async def emit_node_started(self, execution_id: str, node_id: str, node_type: str) -> None:
        await self._emit(EventType.NODE_STARTED, execution_id, node_id, node_type=node_type)

    async def emit_node_status_changed(self, execution_id: str, node_id: str, status: str) -> None:
        await self._emit(EventType.NODE_STATUS_CHANGED, execution_id, node_id, status=status)

    async def emit_node_attempt_started(
        self, execution_id: str, node_id: str, attempt: int, max_attempts: int
    ) -> None:
        await self._emit(
            EventType.NODE_ATTEMPT_STARTED,
            execution_id,
            node_id,
            attempt=attempt,
            max_attempts=max_attempts,
        )

    async def emit_node_attempt_failed(
        self, execution_id: str, node_id: str, attempt: int, error: str
    ) -> None:
        await self._emit(
            EventType.NODE_ATTEMPT_FAILED, execution_id, node_id, attempt=attempt, error=error
        )

    async def emit_node_retry_scheduled(
        self, execution_id: str, node_id: str, attempt: int, delay: float
    ) -> None:
        """``attempt`` is the upcoming attempt number; ``delay`` is in seconds."""
        await self._emit(
            EventType.NODE_RETRY_SCHEDULED, execution_id, node_id, attempt=attempt, delay=delay
        )

    async def emit_node_completed(
        self,
        execution_id: str,
        node_id: str,
        result: Any,
        attempts: int,
        duration_seconds: float | None = None,
    ) -> None:
        await self._emit(
            EventType.NODE_COMPLETED,
            execution_id,
            node_id,
            result=result,
            attempts=attempts,
            duration_seconds=duration_seconds,
        )

    async def emit_node_failed(
        self,
        execution_id: str,
        node_id: str,
        error: str,
        total_attempts: int,
        duration_seconds: float | None = None,
    ) -> None:
        await self._emit(
            EventType.NODE_FAILED,
            execution_id,
            node_id,
            error=error,
            total_attempts=total_attempts,
            duration_seconds=duration_seconds,
        )

    async def emit_checkpoint_created(
        self,
        execution_id: str,
        checkpoint_id: str,
        node_id: str | None,
        completed_nodes: int,
    ) -> None:
        await self._emit(
            EventType.CHECKPOINT_CREATED,
            execution_id,
            node_id,
            checkpoint_id=checkpoint_id,
            completed_nodes=completed_nodes,
        )

    # === QUERIES ===

    def get_history(
        self,
        event_type: EventType | None = None,
        execution_id: str | None = None,
        node_id: str | None = None,
        limit: int = 100,
    ) -> list[WorkflowEvent]:
        """Recorded events, most recent first, optionally filtered."""
        matched = []
        for event in reversed(self._history):
            if event_type is not None and event.type != event_type:
                continue
            if execution_id is not None and event.execution_id != execution_id:
                continue
            if node_id is not None and event.node_id != node_id:
                continue
            matched.append(event)
            if len(matched) >= limit:
                break
        return matched

    def get_stats(self) -> dict[str, Any]:
        by_type = Counter(event.type.value for event in self._history)
        return {
            "total_events": len(self._history),
            "subscriptions": len(self._subscriptions),
            "events_by_type": dict(by_type),
        }

    async def wait_for(
        self,
        event_type: EventType,
        node_id: str | None = None,
        execution_id: str | None = None,
        timeout: float | None = None,
    ) -> WorkflowEvent | None:
        """Block until a matching event is published. None on timeout."""
        loop = asyncio.get_running_loop()
        received: asyncio.Future[WorkflowEvent] = loop.create_future()

        async def capture(event: WorkflowEvent) -> None:
            if not received.done():
                received.set_result(event)

        sub_id = self.subscribe(
            event_type, capture, filter_node=node_id, filter_execution=execution_id
        )
        try:
            return await asyncio.wait_for(received, timeout=timeout)
        except TimeoutError:
            return None
        finally:
            self.unsubscribe(sub_id)
