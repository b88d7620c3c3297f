"""
Retry Policy - Classifies node errors and schedules further attempts.

The policy answers two questions for a failed attempt:
1. May the node be tried again? (non-retryable patterns win over retryable
   ones; an error matching neither list is retried by default)
2. How long to wait first? (linear, exponential or fixed backoff, capped)

RetryRunner applies a policy to a single node: an explicit attempt loop,
each attempt raced against the per-node timeout, with an interruptible
sleep between attempts so a cancelled run abandons a pending retry.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from flowforge.errors import (
    ExecutionInterruptedError,
    ExecutorNotFoundError,
    NodeExecutionFailedError,
    NodeExecutionTimeoutError,
)

if TYPE_CHECKING:
    from flowforge.graph.node import NodeSpec
    from flowforge.runtime.context import ExecutionContext
    from flowforge.runtime.event_bus import EventBus

logger = logging.getLogger(__name__)

DEFAULT_RETRYABLE_ERRORS = ["timeout", "network", "rate_limit", "temporary"]
DEFAULT_NON_RETRYABLE_ERRORS = ["authentication", "authorization", "validation", "not_found"]


class BackoffStrategy(StrEnum):
    """How the delay grows between attempts."""

    LINEAR = "linear"
    EXPONENTIAL = "exponential"
    FIXED = "fixed"


class RetryPolicy(BaseModel):
    """
    Retry behaviour for a node (or the global default).

    Delays are in seconds. Pattern lists are matched case-insensitively as
    substrings of the error message.
    """

    max_attempts: int = Field(default=3, ge=1)
    backoff: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    base_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=30.0, ge=0)
    retryable_errors: list[str] = Field(default_factory=lambda: list(DEFAULT_RETRYABLE_ERRORS))
    non_retryable_errors: list[str] = Field(
        default_factory=lambda: list(DEFAULT_NON_RETRYABLE_ERRORS)
    )

    model_config = {"extra": "forbid"}

    def is_non_retryable(self, error: BaseException | str) -> bool:
        message = str(error).lower()
        return any(pattern.lower() in message for pattern in self.non_retryable_errors)

    def is_retryable(self, error: BaseException | str) -> bool:
        message = str(error).lower()
        return any(pattern.lower() in message for pattern in self.retryable_errors)

    def should_retry(self, error: BaseException | str) -> bool:
        """
        Classify an error.

        Non-retryable patterns are checked first and forbid a retry even if a
        retryable pattern also matches. Unmatched errors are retried.
        """
        if isinstance(error, ExecutorNotFoundError):
            return False
        if self.is_non_retryable(error):
            return False
        # Retryable match and "no match" both permit a retry
        return True

    def compute_delay(self, attempt: int) -> float:
        """
        Delay before the attempt following ``attempt`` (1-based).

        linear: base * attempt; exponential: base * 2^(attempt-1); fixed: base.
        Always capped at max_delay.
        """
        if self.backoff == BackoffStrategy.LINEAR:
            delay = self.base_delay * attempt
        elif self.backoff == BackoffStrategy.EXPONENTIAL:
            delay = self.base_delay * (2 ** (attempt - 1))
        else:
            delay = self.base_delay
        return min(delay, self.max_delay)


class RetryRunner:
    """
    Runs one node through its retry policy.

    Example:
        runner = RetryRunner(event_bus=bus)
        result = await runner.run(node, ctx, policy, execute=registry_call)
    """

    def __init__(self, event_bus: "EventBus | None" = None):
        self._event_bus = event_bus

    async def run(
        self,
        node: "NodeSpec",
        ctx: "ExecutionContext",
        policy: RetryPolicy,
        execute: Callable[[], Awaitable[Any]],
        retry_enabled: bool = True,
        timeout_seconds: float | None = None,
    ) -> Any:
        """
        Execute a node with retries.

        Args:
            node: Node being executed
            ctx: Execution context (retry counts are recorded on it)
            policy: Effective retry policy for this node
            execute: Zero-argument coroutine factory performing one attempt
            retry_enabled: When False exactly one attempt is made
            timeout_seconds: Per-attempt timeout, None for no limit

        Returns:
            The executor's result

        Raises:
            NodeExecutionFailedError: when no further attempt is permitted
            asyncio.CancelledError: if the run is cancelled during a retry wait
        """
        max_attempts = policy.max_attempts if retry_enabled else 1
        last_error: BaseException | None = None
        attempt = 0

        for attempt in range(1, max_attempts + 1):
            if self._event_bus:
                await self._event_bus.emit_node_attempt_started(
                    execution_id=ctx.execution_id,
                    node_id=node.id,
                    attempt=attempt,
                    max_attempts=max_attempts,
                )

            try:
                result = await self._attempt(node, execute, timeout_seconds)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                last_error = e
                logger.warning(f"   ✗ {node.display_name}: attempt {attempt} failed: {e}")

                if self._event_bus:
                    await self._event_bus.emit_node_attempt_failed(
                        execution_id=ctx.execution_id,
                        node_id=node.id,
                        attempt=attempt,
                        error=str(e),
                    )

                if attempt >= max_attempts or not policy.should_retry(e):
                    break
                if ctx.is_interrupted:
                    raise ExecutionInterruptedError(node.id) from e

                delay = policy.compute_delay(attempt)
                ctx.record_retry(node.id)

                if self._event_bus:
                    await self._event_bus.emit_node_retry_scheduled(
                        execution_id=ctx.execution_id,
                        node_id=node.id,
                        attempt=attempt + 1,
                        delay=delay,
                    )

                logger.info(
                    f"   ↻ Retrying {node.display_name} ({attempt + 1}/{max_attempts}) "
                    f"in {delay}s..."
                )
                if not await self._sleep(delay, ctx):
                    raise ExecutionInterruptedError(node.id) from e
                continue

            return result

        raise NodeExecutionFailedError(node.id, attempt, last_error) from last_error

    async def _attempt(
        self,
        node: "NodeSpec",
        execute: Callable[[], Awaitable[Any]],
        timeout_seconds: float | None,
    ) -> Any:
        if timeout_seconds is None or timeout_seconds <= 0:
            return await execute()
        try:
            return await asyncio.wait_for(execute(), timeout=timeout_seconds)
        except TimeoutError as e:
            raise NodeExecutionTimeoutError(node.id, timeout_seconds) from e

    async def _sleep(self, delay: float, ctx: "ExecutionContext") -> bool:
        """
        Wait before the next attempt, racing the run's interrupt marker.

        Returns False if the run was paused or cancelled during the wait.
        """
        if ctx.is_interrupted:
            return False

        sleeper = asyncio.ensure_future(asyncio.sleep(delay))
        interrupt = asyncio.ensure_future(ctx.wait_interrupted())
        try:
            await asyncio.wait({sleeper, interrupt}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleeper, interrupt):
                if not task.done():
                    task.cancel()
        return not ctx.is_interrupted
