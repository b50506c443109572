"""
Bounded in-memory write buffer (batcher) in front of the InfluxDB sink.

Many poll loops enqueue points concurrently; exactly one flush path drains
them to the sink at a time.  Memory is bounded by ``capacity`` at all times:

- enqueue() never blocks.  When the queue is full the *oldest* point is
  evicted (recency over completeness) and counted as an overflow drop.
- A flush is triggered when ``flush_interval_s`` has elapsed since the last
  flush or the queue reaches ``flush_size`` points, whichever comes first.
- A flush drains up to ``batch_size`` points and writes them as one request.
  On SinkTransientError the batch is put back at the head of the queue and
  retried with exponential backoff, up to ``max_retries`` attempts in total;
  after that it is dropped and reported.  Overflow may evict points of a
  batch waiting for retry, since they are the oldest in the queue.
- On SinkRejectedError the batch is dropped immediately without retry.

Delivery is at-least-once: a retried batch may be written twice, which the
sink absorbs as an idempotent overwrite of identical series/timestamp.

CHANGELOG:
- 2026-10-17: Summarise overflow drops instead of logging every point
- 2026-10-10: Put failed batches back at the queue head while backing off
- 2026-10-05: Initial creation (STORY-106)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Protocol

from collector.src.errors import SinkRejectedError, SinkTransientError
from collector.src.models import MetricPoint

logger = logging.getLogger(__name__)

_OVERFLOW_LOG_EVERY = 1000
"""While the buffer overflows, log a summary once per this many dropped points."""


class PointSink(Protocol):
    """Anything that can durably write a batch of points."""

    async def write(self, points: list[MetricPoint]) -> None: ...


@dataclass
class BufferStats:
    """Counters describing buffer activity since startup."""

    enqueued: int = 0
    dropped_overflow: int = 0
    dropped_batches: int = 0
    dropped_points: int = 0
    rejected_batches: int = 0
    written_points: int = 0
    write_requests: int = 0
    last_flush_at: datetime | None = None

    @property
    def total_dropped(self) -> int:
        return self.dropped_overflow + self.dropped_points


@dataclass
class PendingBatch:
    """Points owned by the flush path for one write attempt."""

    points: list[MetricPoint] = field(default_factory=list)
    attempts: int = 0

    def __len__(self) -> int:
        return len(self.points)


class WriteBuffer:
    """Bounded FIFO of MetricPoints with a single-writer flush path.

    Args:
        sink: Target with an async ``write(points)`` method.
        capacity: Maximum number of queued points.
        flush_size: Queue length that triggers an immediate flush.
        batch_size: Maximum points per write request.
        flush_interval_s: Maximum time between flushes.
        max_retries: Total write attempts per batch before it is dropped.
        retry_backoff_s: Delay before the second attempt; doubles per attempt.
        retry_backoff_max_s: Cap for the retry delay.
    """

    def __init__(
        self,
        sink: PointSink,
        *,
        capacity: int = 10_000,
        flush_size: int = 500,
        batch_size: int = 500,
        flush_interval_s: float = 10.0,
        max_retries: int = 5,
        retry_backoff_s: float = 1.0,
        retry_backoff_max_s: float = 30.0,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        self._sink = sink
        self._capacity = capacity
        self._flush_size = max(1, min(flush_size, capacity))
        self._batch_size = batch_size
        self._flush_interval_s = flush_interval_s
        self._max_retries = max_retries
        self._retry_backoff_s = retry_backoff_s
        self._retry_backoff_max_s = retry_backoff_max_s

        self._queue: deque[MetricPoint] = deque()
        # Number of points at the queue head that belong to a batch awaiting retry.
        self._reserved = 0
        self._flush_lock = asyncio.Lock()
        self._flush_requested = asyncio.Event()
        # Overflow drops since the overflow episode began (reset by a write).
        self._overflow_run = 0
        self._last_flush_monotonic = time.monotonic()
        self.stats = BufferStats()

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def capacity(self) -> int:
        return self._capacity

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def enqueue(self, point: MetricPoint) -> None:
        """Queue one point, evicting the oldest point if the buffer is full."""
        if len(self._queue) >= self._capacity:
            self._evict_oldest()
        self._queue.append(point)
        self.stats.enqueued += 1
        if len(self._queue) >= self._flush_size:
            self._flush_requested.set()

    def enqueue_many(self, points: list[MetricPoint]) -> None:
        for point in points:
            self.enqueue(point)

    def _evict_oldest(self) -> None:
        self._queue.popleft()
        if self._reserved:
            self._reserved -= 1
        self.stats.dropped_overflow += 1
        self._overflow_run += 1
        if self._overflow_run == 1:
            logger.warning(
                "Write buffer full (capacity=%d), dropping oldest points",
                self._capacity,
            )
        elif self._overflow_run % _OVERFLOW_LOG_EVERY == 0:
            logger.warning(
                "Write buffer still full: %d points dropped so far "
                "(total overflow drops: %d)",
                self._overflow_run,
                self.stats.dropped_overflow,
            )

    # ------------------------------------------------------------------
    # Flush path
    # ------------------------------------------------------------------

    def _take(self, n: int) -> list[MetricPoint]:
        n = min(n, len(self._queue))
        return [self._queue.popleft() for _ in range(n)]

    def _requeue(self, batch: PendingBatch) -> None:
        """Put *batch* back at the head of the queue, honouring capacity."""
        overflow = len(self._queue) + len(batch.points) - self._capacity
        points = batch.points
        if overflow > 0:
            # The batch is the oldest data; its oldest points go first.
            points = points[overflow:]
            self.stats.dropped_overflow += overflow
            self._overflow_run += overflow
            logger.warning(
                "Write buffer full while requeueing, dropped %d oldest points",
                overflow,
            )
        self._queue.extendleft(reversed(points))
        self._reserved = len(points)
        batch.points = []

    def _retry_delay(self, attempt: int) -> float:
        return min(
            self._retry_backoff_s * (2 ** (attempt - 1)),
            self._retry_backoff_max_s,
        )

    async def flush(self) -> int:
        """Write one batch (up to ``batch_size`` points) to the sink.

        Only one flush runs at a time; concurrent callers wait their turn.

        Returns:
            Number of points written successfully (0 if the queue was empty
            or the batch was dropped).
        """
        async with self._flush_lock:
            self._last_flush_monotonic = time.monotonic()
            batch = PendingBatch(points=self._take(self._batch_size))
            if not batch.points:
                return 0
            return await self._write_with_retry(batch)

    async def _write_with_retry(self, batch: PendingBatch) -> int:
        while True:
            batch.attempts += 1
            self.stats.write_requests += 1
            try:
                await self._sink.write(batch.points)
            except SinkRejectedError as exc:
                self.stats.rejected_batches += 1
                self._drop(batch, f"rejected by sink: {exc}")
                return 0
            except SinkTransientError as exc:
                if batch.attempts >= self._max_retries:
                    self._drop(
                        batch,
                        f"still failing after {batch.attempts} attempts: {exc}",
                    )
                    return 0
                delay = self._retry_delay(batch.attempts)
                logger.warning(
                    "Write of %d points failed (attempt %d/%d), retrying in %.1fs: %s",
                    len(batch),
                    batch.attempts,
                    self._max_retries,
                    delay,
                    exc,
                )
                self._requeue(batch)
                await asyncio.sleep(delay)
                batch.points = self._take(self._reserved)
                self._reserved = 0
                if not batch.points:
                    logger.warning(
                        "Pending batch fully evicted by overflow while backing off"
                    )
                    return 0
                continue

            written = len(batch)
            self.stats.written_points += written
            self.stats.last_flush_at = datetime.now(tz=UTC)
            logger.info("Flushed %d points to sink", written)
            if self._overflow_run:
                logger.warning(
                    "Write buffer overflow ended after %d dropped points",
                    self._overflow_run,
                )
                self._overflow_run = 0
            return written

    def _drop(self, batch: PendingBatch, reason: str) -> None:
        self.stats.dropped_batches += 1
        self.stats.dropped_points += len(batch)
        logger.error("Dropped batch of %d points: %s", len(batch), reason)
        batch.points = []

    async def flush_all(self) -> int:
        """Flush batches until the queue is empty or a batch is not written.

        Returns:
            Total number of points written.
        """
        total = 0
        while self._queue:
            written = await self.flush()
            if written == 0:
                break
            total += written
        return total

    def drain_all(self) -> list[MetricPoint]:
        """Remove and return every queued point (oldest first)."""
        points = list(self._queue)
        self._queue.clear()
        self._reserved = 0
        return points

    # ------------------------------------------------------------------
    # Flush loop
    # ------------------------------------------------------------------

    def _flush_due(self) -> bool:
        if len(self._queue) >= self._flush_size:
            return True
        elapsed = time.monotonic() - self._last_flush_monotonic
        return bool(self._queue) and elapsed >= self._flush_interval_s

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """Flush on interval or size trigger until *shutdown_event* is set.

        A final flush is attempted after shutdown.  Errors in one flush are
        logged and never stop the loop.
        """
        logger.info(
            "Flush loop started (interval=%ss, size=%d, capacity=%d)",
            self._flush_interval_s,
            self._flush_size,
            self._capacity,
        )
        while not shutdown_event.is_set():
            remaining = self._flush_interval_s - (
                time.monotonic() - self._last_flush_monotonic
            )
            if remaining > 0 and len(self._queue) < self._flush_size:
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(
                        self._wait_for_trigger(shutdown_event), timeout=remaining
                    )
            self._flush_requested.clear()
            if shutdown_event.is_set():
                break
            if not self._flush_due():
                if not self._queue:
                    self._last_flush_monotonic = time.monotonic()
                continue
            await self._flush_safely()

        try:
            await self.flush_all()
        except Exception:
            logger.error("Final flush error", exc_info=True)
        logger.info("Flush loop stopped (%d points still buffered)", len(self._queue))

    async def _wait_for_trigger(self, shutdown_event: asyncio.Event) -> None:
        waiters = [
            asyncio.ensure_future(self._flush_requested.wait()),
            asyncio.ensure_future(shutdown_event.wait()),
        ]
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()

    async def _flush_safely(self) -> None:
        try:
            await self.flush()
        except Exception:
            logger.error("Flush cycle error", exc_info=True)
