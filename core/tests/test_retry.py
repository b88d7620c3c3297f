"""
Tests for retry classification, backoff and the per-node attempt loop.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from flowforge.errors import (
    ExecutionInterruptedError,
    ExecutorNotFoundError,
    NodeExecutionFailedError,
    NodeExecutionTimeoutError,
)
from flowforge.graph.node import NodeSpec
from flowforge.graph.retry import BackoffStrategy, RetryPolicy, RetryRunner
from flowforge.runtime.context import ExecutionContext
from flowforge.runtime.event_bus import EventBus, EventType


@pytest.fixture
def fast_sleep(monkeypatch):
    sleep = AsyncMock()
    monkeypatch.setattr("asyncio.sleep", sleep)
    return sleep


def flaky(failures: list[Exception], result="ok"):
    """Coroutine factory that raises each of ``failures`` once, then returns result."""
    remaining = list(failures)
    calls = {"count": 0}

    async def attempt():
        calls["count"] += 1
        if remaining:
            raise remaining.pop(0)
        return result

    return attempt, calls


class TestRetryPolicy:
    """Classification and delay computation."""

    def test_defaults(self):
        policy = RetryPolicy()

        assert policy.max_attempts == 3
        assert policy.backoff == BackoffStrategy.EXPONENTIAL
        assert policy.base_delay == 1.0
        assert policy.max_delay == 30.0

    def test_exponential_delays(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=100.0)
        assert [policy.compute_delay(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]

    def test_linear_delays(self):
        policy = RetryPolicy(backoff="linear", base_delay=0.5)
        assert [policy.compute_delay(n) for n in (1, 2, 3)] == [0.5, 1.0, 1.5]

    def test_fixed_delays(self):
        policy = RetryPolicy(backoff="fixed", base_delay=2.0)
        assert [policy.compute_delay(n) for n in (1, 5, 10)] == [2.0, 2.0, 2.0]

    def test_delay_capped(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=30.0)
        assert policy.compute_delay(10) == 30.0

    def test_non_retryable_wins_over_retryable(self):
        policy = RetryPolicy()
        assert not policy.should_retry(Exception("network authentication failure"))

    def test_retryable_match(self):
        policy = RetryPolicy()
        assert policy.should_retry(Exception("Temporary outage"))
        assert policy.is_retryable("Rate_Limit exceeded")

    def test_unmatched_error_is_retried(self):
        policy = RetryPolicy()
        assert policy.should_retry(Exception("something odd happened"))

    def test_executor_not_found_never_retried(self):
        policy = RetryPolicy(non_retryable_errors=[])
        assert not policy.should_retry(ExecutorNotFoundError("agent"))

    def test_custom_pattern_lists(self):
        policy = RetryPolicy(non_retryable_errors=["quota"])
        assert not policy.should_retry("Quota exhausted")
        assert policy.should_retry("validation failed")

    def test_rejects_unknown_fields(self):
        with pytest.raises(ValueError):
            RetryPolicy(attempts=3)


class TestRetryRunner:
    """RetryRunner applies a policy to one node."""

    @pytest.fixture
    def node(self):
        return NodeSpec(id="fetch", type="tool")

    @pytest.fixture
    def ctx(self):
        return ExecutionContext(workflow_id="wf")

    @pytest.mark.asyncio
    async def test_success_first_attempt(self, node, ctx, fast_sleep):
        """No retry bookkeeping when the first attempt succeeds."""
        execute, calls = flaky([])

        result = await RetryRunner().run(node, ctx, RetryPolicy(), execute)

        assert result == "ok"
        assert calls["count"] == 1
        assert ctx.retried_nodes == {}
        fast_sleep.assert_not_called()

    @pytest.mark.asyncio
    async def test_retries_with_exponential_backoff(self, node, ctx, fast_sleep):
        """Two network failures then success: delays 1s and 2s, two retries recorded."""
        execute, calls = flaky([Exception("network down"), Exception("network down")])
        bus = EventBus()

        result = await RetryRunner(event_bus=bus).run(node, ctx, RetryPolicy(), execute)

        assert result == "ok"
        assert calls["count"] == 3
        assert ctx.retried_nodes == {"fetch": 2}
        assert [c.args[0] for c in fast_sleep.call_args_list] == [1.0, 2.0]

        scheduled = bus.get_history(event_type=EventType.NODE_RETRY_SCHEDULED)[::-1]
        assert [e.data["attempt"] for e in scheduled] == [2, 3]
        assert [e.data["delay"] for e in scheduled] == [1.0, 2.0]
        assert len(bus.get_history(event_type=EventType.NODE_ATTEMPT_STARTED)) == 3
        assert len(bus.get_history(event_type=EventType.NODE_ATTEMPT_FAILED)) == 2

    @pytest.mark.asyncio
    async def test_non_retryable_fails_immediately(self, node, ctx, fast_sleep):
        execute, calls = flaky([Exception("authentication failed")])

        with pytest.raises(NodeExecutionFailedError) as exc_info:
            await RetryRunner().run(node, ctx, RetryPolicy(), execute)

        assert calls["count"] == 1
        assert exc_info.value.attempts == 1
        assert "authentication" in str(exc_info.value.last_error)
        assert ctx.retried_nodes == {}
        fast_sleep.assert_not_called()

    @pytest.mark.asyncio
    async def test_attempts_exhausted(self, node, ctx, fast_sleep):
        errors = [Exception("timeout"), Exception("timeout"), Exception("timeout")]
        execute, calls = flaky(errors)

        with pytest.raises(NodeExecutionFailedError) as exc_info:
            await RetryRunner().run(node, ctx, RetryPolicy(), execute)

        assert calls["count"] == 3
        assert exc_info.value.attempts == 3
        assert ctx.retried_nodes == {"fetch": 2}

    @pytest.mark.asyncio
    async def test_retry_disabled_single_attempt(self, node, ctx, fast_sleep):
        execute, calls = flaky([Exception("network down")])

        with pytest.raises(NodeExecutionFailedError):
            await RetryRunner().run(node, ctx, RetryPolicy(), execute, retry_enabled=False)

        assert calls["count"] == 1

    @pytest.mark.asyncio
    async def test_executor_not_found_single_attempt(self, node, ctx, fast_sleep):
        execute, calls = flaky([ExecutorNotFoundError("tool")])

        with pytest.raises(NodeExecutionFailedError) as exc_info:
            await RetryRunner().run(node, ctx, RetryPolicy(), execute)

        assert calls["count"] == 1
        assert isinstance(exc_info.value.last_error, ExecutorNotFoundError)

    @pytest.mark.asyncio
    async def test_timeout_is_retryable(self, node, ctx):
        """An attempt that overruns its timeout counts as a retryable failure."""
        calls = {"count": 0}

        async def slow_then_fast():
            calls["count"] += 1
            if calls["count"] == 1:
                await asyncio.Event().wait()
            return "done"

        policy = RetryPolicy(base_delay=0.0)

        result = await RetryRunner().run(node, ctx, policy, slow_then_fast, timeout_seconds=0.05)

        assert result == "done"
        assert calls["count"] == 2
        assert ctx.retried_nodes == {"fetch": 1}

    @pytest.mark.asyncio
    async def test_timeout_error_message(self, node, ctx):
        async def hang():
            await asyncio.Event().wait()

        policy = RetryPolicy(max_attempts=1)

        with pytest.raises(NodeExecutionFailedError) as exc_info:
            await RetryRunner().run(node, ctx, policy, hang, timeout_seconds=0.01)

        assert isinstance(exc_info.value.last_error, NodeExecutionTimeoutError)
        assert "timeout" in str(exc_info.value.last_error).lower()

    @pytest.mark.asyncio
    async def test_interrupt_during_wait_abandons_retry(self, node, ctx):
        """A pause requested while a retry is pending abandons the retry."""
        calls = {"count": 0}

        async def failing():
            calls["count"] += 1
            raise Exception("network down")

        policy = RetryPolicy(base_delay=60.0, max_delay=60.0)
        task = asyncio.create_task(RetryRunner().run(node, ctx, policy, failing))

        while calls["count"] == 0:
            await asyncio.sleep(0)
        ctx.request_pause()

        with pytest.raises(ExecutionInterruptedError):
            await asyncio.wait_for(task, timeout=1.0)
        assert calls["count"] == 1

    @pytest.mark.asyncio
    async def test_already_interrupted_skips_wait(self, node, ctx, fast_sleep):
        async def failing():
            ctx.request_cancel()
            raise Exception("network down")

        with pytest.raises(ExecutionInterruptedError):
            await RetryRunner().run(node, ctx, RetryPolicy(), failing)

        fast_sleep.assert_not_called()
