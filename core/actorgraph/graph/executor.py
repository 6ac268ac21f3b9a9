"""
Node Executor - Runs one node with its timeout and retry policy.

The executor:
1. Hands the node an immutable snapshot and a NodeContext
2. Bounds each attempt with the node's timeout
3. Retries failures with bounded exponential backoff
4. Returns a NodeResult, or raises NodeTimeout / NodeExecutionFailed

It never touches the live state: merging is the scheduler's job, after
the superstep barrier.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

from actorgraph.errors import InvalidUpdate, NodeExecutionFailed, NodeTimeout
from actorgraph.graph.node import NodeContext, NodeResult, NodeSpec, RetryPolicy
from actorgraph.graph.state import StateSnapshot
from actorgraph.observability import set_trace_context

logger = logging.getLogger(__name__)

# (node, attempt that failed, error, delay before next attempt)
RetryCallback = Callable[[str, int, BaseException, float], Awaitable[None]]


class NodeExecutor:
    """
    Applies timeout and retry policy around a node's capability.

    Example:
        executor = NodeExecutor(default_timeout=30.0, default_retry=RetryPolicy())
        result = await executor.invoke(node_spec, state.snapshot(), ctx)
    """

    def __init__(
        self,
        default_timeout: float | None = None,
        default_retry: RetryPolicy | None = None,
        on_retry: RetryCallback | None = None,
    ):
        self.default_timeout = default_timeout
        self.default_retry = default_retry or RetryPolicy()
        self.on_retry = on_retry

    async def invoke(
        self,
        node: NodeSpec,
        state: StateSnapshot,
        ctx: NodeContext,
    ) -> NodeResult:
        """
        Execute ``node`` against ``state``.

        Raises:
            NodeTimeout: the last attempt timed out
            NodeExecutionFailed: attempts exhausted, wraps the last error
            InvalidUpdate: the node returned something unmergeable (never retried)
        """
        retry = node.effective_retry(self.default_retry)
        timeout = node.effective_timeout(self.default_timeout)
        set_trace_context(node=node.name, step=ctx.step)

        last_error: BaseException | None = None
        attempt = 0
        while attempt < retry.max_attempts:
            attempt += 1
            attempt_ctx = ctx if attempt == 1 else ctx.for_attempt(attempt)
            started = time.perf_counter()
            try:
                pending = node.capability.execute(state, attempt_ctx)
                if timeout is not None:
                    output = await asyncio.wait_for(pending, timeout)
                else:
                    output = await pending
                result = NodeResult.from_output(node.name, output)
                result.attempts = attempt
                result.latency_ms = int((time.perf_counter() - started) * 1000)
                if attempt > 1:
                    logger.info(f"✓ Node '{node.name}' succeeded on attempt {attempt}")
                return result
            except InvalidUpdate:
                raise
            except Exception as e:
                if isinstance(e, TimeoutError) and timeout is not None:
                    last_error = NodeTimeout(node.name, timeout, attempt)
                    logger.warning(f"⏱ Node '{node.name}' timed out after {timeout}s")
                else:
                    last_error = e
                    logger.warning(
                        f"✗ Node '{node.name}' attempt {attempt}/{retry.max_attempts} "
                        f"failed: {e!r}"
                    )
                if not retry.should_retry(e):
                    break

            if attempt < retry.max_attempts:
                delay = retry.delay_for(attempt)
                logger.info(
                    f"↻ Retrying '{node.name}' in {delay}s "
                    f"({attempt + 1}/{retry.max_attempts})",
                    extra={"event": "node_retry", "attempt": attempt},
                )
                if self.on_retry is not None:
                    await self.on_retry(node.name, attempt, last_error, delay)
                await asyncio.sleep(delay)

        if isinstance(last_error, NodeTimeout):
            raise NodeTimeout(node.name, last_error.timeout, attempt)
        raise NodeExecutionFailed(node.name, attempt, last_error) from last_error
