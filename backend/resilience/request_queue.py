"""
Pulseboard Resilience - Priority Request Queue

Serializes expensive upstream operations behind the rate limiter. Requests
are drained by a single worker in priority order (FIFO within a priority);
each one waits for tokens, then runs through the retry policy.

Usage:
    queue = RequestQueue(limiter, retry_policy, monitor)
    result = await queue.enqueue(lambda: client.analyze(doc), priority="high")
"""
import asyncio
import heapq
import itertools
import logging
import math
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Awaitable, Callable, Optional, Union

from resilience.errors import RateLimitExceeded, ResilienceError, ServiceUnhealthy

logger = logging.getLogger("pulseboard.resilience.request_queue")

_MAX_QUEUE_SIZE = 50


class Priority(IntEnum):
    HIGH = 0
    NORMAL = 1
    LOW = 2


@dataclass(order=True)
class _QueuedRequest:
    priority: int
    seq: int
    operation: Callable[[], Awaitable[Any]] = field(compare=False)
    future: asyncio.Future = field(compare=False)
    cost: float = field(default=1, compare=False)


class RequestQueue:
    """Priority queue gated by the health monitor, rate limiter and retry policy."""

    def __init__(self, limiter, retry_policy, monitor=None,
                 max_size: int = _MAX_QUEUE_SIZE, max_attempts: int = 0):
        self._limiter = limiter
        self._retry = retry_policy
        self._monitor = monitor
        self._max_size = max_size
        self._max_attempts = max_attempts
        self._heap: list[_QueuedRequest] = []
        self._seq = itertools.count()
        self._worker: Optional[asyncio.Task] = None
        self._processing = False

    async def enqueue(self, operation: Callable[[], Awaitable[Any]],
                      priority: Union[Priority, str] = Priority.NORMAL, cost: float = 1) -> Any:
        """
        Queue `operation` and wait for its result.

        Raises ServiceUnhealthy if the health circuit is open,
        RateLimitExceeded if the queue is full, or the operation's terminal error.
        """
        if self._monitor is not None and not self._monitor.is_trustworthy():
            raise ServiceUnhealthy(
                "Service is temporarily unavailable. Please try again in a few minutes."
            )
        if len(self._heap) >= self._max_size:
            raise RateLimitExceeded("Request queue is full. Please try again later.")

        self._limiter.bucket.validate_cost(cost)
        rank = Priority[priority.upper()] if isinstance(priority, str) else Priority(priority)
        future = asyncio.get_running_loop().create_future()
        heapq.heappush(self._heap, _QueuedRequest(int(rank), next(self._seq), operation, future, cost))
        self._ensure_worker()
        return await future

    def _ensure_worker(self):
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._drain())

    async def _drain(self):
        self._processing = True
        try:
            while self._heap:
                request = heapq.heappop(self._heap)
                if request.future.done():
                    # Caller gave up while queued
                    continue
                await self._process(request)
        finally:
            self._processing = False

    async def _process(self, request: _QueuedRequest):
        try:
            await self._limiter.wait_for_tokens(request.cost)
            outcome = await self._retry.execute(request.operation, self._max_attempts)
        except asyncio.CancelledError:
            if not request.future.done():
                request.future.cancel()
            raise
        except Exception as e:
            logger.error(f"Queued request failed unexpectedly: {e}")
            if not request.future.done():
                request.future.set_exception(e)
            return

        if request.future.done():
            return
        if outcome.ok:
            request.future.set_result(outcome.value)
            return

        if self._monitor is not None and outcome.error is not None:
            self._monitor.record_error(str(outcome.error))
        request.future.set_exception(
            outcome.error or ResilienceError("Queued request failed")
        )

    def clear(self) -> int:
        """Reject every pending request. Returns how many were dropped."""
        dropped = 0
        while self._heap:
            request = heapq.heappop(self._heap)
            if not request.future.done():
                request.future.set_exception(ResilienceError("Request cancelled due to queue reset"))
                dropped += 1
        if dropped:
            logger.info(f"Request queue cleared ({dropped} dropped)")
        return dropped

    async def close(self):
        self.clear()
        if self._worker:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

    def get_status(self) -> dict:
        """Queue figures for dashboards."""
        queued_cost = sum(r.cost for r in self._heap if not r.future.done())
        bucket = self._limiter.bucket
        shortfall = max(0.0, queued_cost - bucket.tokens)
        return {
            "queue_length": len(self._heap),
            "is_processing": self._processing,
            "circuit_open": self._monitor is not None and not self._monitor.is_trustworthy(),
            "estimated_wait_ms": math.ceil(shortfall / bucket.refill_rate * 1000),
        }
