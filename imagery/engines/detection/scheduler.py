"""
Dispatch Scheduler

Bounded, priority-tiered work queue drained by a fixed pool of async workers.

Queue Flow:
1. admit     - reject immediately with QUEUE_FULL once the depth bound is hit
2. claim     - strict precedence high > normal > low, FIFO within a tier,
               with aging so low-priority work is never starved indefinitely
3. run       - one request at a time per worker
4. expire    - the request budget also runs while waiting; a queued item past
               its deadline is pulled and dead-lettered as TIMEOUT
5. retry     - transient failures re-queue after exponential backoff,
               if the backoff still fits the request's time budget
6. dead-letter - everything else is recorded and surfaced to the caller

All queue mutation happens on the event loop between awaits, so admission,
claiming and completion are atomic with respect to the workers.
"""

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set

from imagery.core.config import Settings, settings as default_settings
from imagery.core.exceptions import (
    AnalysisTimeoutError,
    EngineError,
    EngineShuttingDownError,
    FatalEngineError,
    QueueFullError,
)
from imagery.core.logging import LogContext, get_logger, utc_timestamp
from imagery.core.metrics import engine_active_workers, record_dead_letter, record_retry, set_queue_depth
from imagery.engines.detection.schemas import (
    AnalysisRequest,
    AnalysisResult,
    ClientConfig,
    DeadLetterRecord,
    ItemState,
    NormalizedImage,
    PriorityTier,
)
from imagery.engines.detection.sentinel import BufferScope

logger = get_logger(__name__)

# Served first to last
TIER_ORDER = (PriorityTier.HIGH, PriorityTier.NORMAL, PriorityTier.LOW)


@dataclass(eq=False)
class QueueItem:
    """A request travelling through the scheduler."""
    request: AnalysisRequest
    future: "asyncio.Future[AnalysisResult]"
    deadline: float
    client_config: Optional[ClientConfig] = None
    scope: Optional[BufferScope] = None
    tier: PriorityTier = PriorityTier.NORMAL
    enqueued_at: float = field(default_factory=time.monotonic)
    tier_entered_at: float = field(default_factory=time.monotonic)
    first_claimed_at: Optional[float] = None
    retry_count: int = 0
    state: ItemState = ItemState.QUEUED
    normalized: Optional[NormalizedImage] = None
    content_hint: Optional[str] = None
    last_error: Optional[EngineError] = None
    task: Optional["asyncio.Task[AnalysisResult]"] = None
    caller_cancelled: bool = False
    stage: str = "queue"
    deadline_timer: Optional[asyncio.TimerHandle] = None

    @property
    def analysis_id(self) -> str:
        return self.request.analysis_id

    def remaining(self, now: Optional[float] = None) -> float:
        return self.deadline - (time.monotonic() if now is None else now)

    def queue_time_ms(self) -> int:
        claimed = self.first_claimed_at if self.first_claimed_at is not None else time.monotonic()
        return int((claimed - self.request.submitted_at) * 1000)

    def release(self):
        """Wipe the image buffer and every derived array. Idempotent."""
        if self.scope is not None:
            self.scope.release()
        self.request.image.wipe()
        if self.normalized is not None:
            self.normalized.pixels.fill(0)
            self.normalized = None


# =============================================================================
# Priority Work Queue
# =============================================================================

class PriorityWorkQueue:
    """Three FIFO tiers behind one admission bound."""

    def __init__(self, max_depth: int, aging_threshold: float = 5.0):
        self.max_depth = max_depth
        self.aging_threshold = aging_threshold
        self._tiers: Dict[PriorityTier, Deque[QueueItem]] = {tier: deque() for tier in TIER_ORDER}
        self._not_empty = asyncio.Condition()

    def __len__(self) -> int:
        return sum(len(q) for q in self._tiers.values())

    @property
    def depth(self) -> int:
        return len(self)

    def depths(self) -> Dict[str, int]:
        return {tier.value: len(self._tiers[tier]) for tier in TIER_ORDER}

    async def admit(self, item: QueueItem, bypass_bound: bool = False):
        """
        Enqueue without ever waiting for space.

        Raises:
            QueueFullError: depth already at the admission bound
        """
        depth = len(self)
        if not bypass_bound and depth >= self.max_depth:
            raise QueueFullError(depth, self.max_depth, analysis_id=item.analysis_id)

        now = time.monotonic()
        item.state = ItemState.QUEUED
        item.enqueued_at = now
        item.tier_entered_at = now
        self._tiers[item.tier].append(item)
        self._publish()
        async with self._not_empty:
            self._not_empty.notify()

    async def claim(self) -> QueueItem:
        """Wait for the next item by precedence and aging."""
        async with self._not_empty:
            await self._not_empty.wait_for(lambda: len(self) > 0)
            self._promote_aged(time.monotonic())
            for tier in TIER_ORDER:
                if self._tiers[tier]:
                    item = self._tiers[tier].popleft()
                    self._publish()
                    return item
        raise RuntimeError("claim woke up with an empty queue")

    def remove(self, item: QueueItem) -> bool:
        """Drop a queued item. Returns False if it was not queued."""
        for q in self._tiers.values():
            try:
                q.remove(item)
            except ValueError:
                continue
            self._publish()
            return True
        return False

    def drain(self) -> List[QueueItem]:
        items = [item for tier in TIER_ORDER for item in self._tiers[tier]]
        for q in self._tiers.values():
            q.clear()
        self._publish()
        return items

    def _promote_aged(self, now: float):
        # Tiers are ordered by tier_entered_at, so only the heads need checking.
        # Normal is handled before low so an item climbs one tier per claim.
        for lower, upper in ((PriorityTier.NORMAL, PriorityTier.HIGH), (PriorityTier.LOW, PriorityTier.NORMAL)):
            source = self._tiers[lower]
            while source and now - source[0].tier_entered_at > self.aging_threshold:
                item = source.popleft()
                item.tier = upper
                item.tier_entered_at = now
                self._tiers[upper].append(item)
                logger.debug("queue_item_promoted", analysis_id=item.analysis_id, tier=upper.value)

    def _publish(self):
        for tier in TIER_ORDER:
            set_queue_depth(tier.value, len(self._tiers[tier]))


# =============================================================================
# Dead Letter Channel
# =============================================================================

class DeadLetterQueue:
    """Bounded record of requests that exhausted every recovery path."""

    def __init__(self, capacity: int = 1000):
        self._records: Deque[DeadLetterRecord] = deque(maxlen=capacity)
        self.total = 0

    def __len__(self) -> int:
        return len(self._records)

    def add(self, item: QueueItem, error: EngineError) -> DeadLetterRecord:
        record = DeadLetterRecord(
            analysis_id=item.analysis_id,
            client_id=item.request.client_id,
            error_code=error.error_code,
            reason=error.message,
            retry_count=item.retry_count,
            dead_lettered_at=utc_timestamp()
        )
        self._records.append(record)
        self.total += 1
        record_dead_letter(error.error_code)
        return record

    def snapshot(self, limit: Optional[int] = None) -> List[DeadLetterRecord]:
        """Most recent first."""
        records = list(reversed(self._records))
        return records if limit is None else records[:limit]


# =============================================================================
# Scheduler
# =============================================================================

Handler = Callable[[QueueItem], Awaitable[AnalysisResult]]


class DispatchScheduler:
    """
    Worker pool over a PriorityWorkQueue.

    The handler runs one attempt of the pipeline for an item and either
    returns the result or raises an EngineError; the scheduler decides
    between completion, retry and dead-lettering.
    """

    def __init__(self, handler: Handler, settings: Settings = default_settings):
        self.handler = handler
        self.worker_count = settings.WORKER_COUNT
        self.max_retries = settings.MAX_RETRIES
        self.backoff_base = settings.RETRY_BACKOFF_BASE_SECONDS
        self.backoff_max = settings.RETRY_BACKOFF_MAX_SECONDS

        self.queue = PriorityWorkQueue(settings.MAX_QUEUE_DEPTH, settings.AGING_THRESHOLD_SECONDS)
        self.dead_letters = DeadLetterQueue(settings.DEAD_LETTER_CAPACITY)

        self._workers: List[asyncio.Task] = []
        self._retry_tasks: Set[asyncio.Task] = set()
        self._running: Set[QueueItem] = set()
        self._accepting = False
        self.completed = 0
        self.failed = 0

    @property
    def is_running(self) -> bool:
        return self._accepting

    def start(self):
        if self._accepting:
            return
        self._accepting = True
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"dispatch-worker-{i}")
            for i in range(self.worker_count)
        ]
        logger.info("scheduler_started", workers=self.worker_count, max_queue_depth=self.queue.max_depth)

    async def stop(self):
        """Cancel workers and fail everything still pending."""
        if not self._accepting and not self._workers:
            return
        self._accepting = False

        tasks = self._workers + list(self._retry_tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers = []
        self._retry_tasks.clear()

        pending = self.queue.drain()
        for item in pending:
            self._resolve_error(item, EngineShuttingDownError(analysis_id=item.analysis_id))
        logger.info("scheduler_stopped", failed_pending=len(pending))

    async def submit(self, item: QueueItem) -> QueueItem:
        """
        Admit an item for processing.

        Raises:
            EngineShuttingDownError: scheduler is not running
            QueueFullError: admission bound reached
        """
        if not self._accepting:
            raise EngineShuttingDownError(analysis_id=item.analysis_id)
        item.tier = item.request.options.priority
        await self.queue.admit(item)
        self._arm_deadline(item)
        logger.debug("request_queued", analysis_id=item.analysis_id, tier=item.tier.value, depth=self.queue.depth)
        return item

    def cancel(self, item: QueueItem):
        """Caller gave up: drop the item if queued, or stop its attempt if running."""
        item.caller_cancelled = True
        if item.deadline_timer is not None:
            item.deadline_timer.cancel()
        if self.queue.remove(item):
            item.state = ItemState.FAILED
            item.release()
            logger.info("request_cancelled", analysis_id=item.analysis_id, state="queued")
        elif item.task is not None and not item.task.done():
            item.task.cancel()
        else:
            # Waiting out a retry backoff; the retry task checks the flag
            item.release()

    def stats(self) -> Dict[str, Any]:
        return {
            "accepting": self._accepting,
            "workers": len(self._workers),
            "running": len(self._running),
            "queue_depth": self.queue.depth,
            "queue_limit": self.queue.max_depth,
            "queue_depth_by_tier": self.queue.depths(),
            "retries_pending": len(self._retry_tasks),
            "completed": self.completed,
            "failed": self.failed,
            "dead_lettered": self.dead_letters.total,
        }

    # -------------------------------------------------------------------------
    # Worker loop
    # -------------------------------------------------------------------------

    async def _worker(self, index: int):
        while True:
            item = await self.queue.claim()
            if item.future.done() or item.caller_cancelled:
                item.release()
                continue

            if item.first_claimed_at is None:
                item.first_claimed_at = time.monotonic()
            item.state = ItemState.RUNNING
            self._running.add(item)
            engine_active_workers.inc()
            try:
                with LogContext(analysis_id=item.analysis_id):
                    await self._run_attempt(item)
            finally:
                self._running.discard(item)
                engine_active_workers.dec()

    async def _run_attempt(self, item: QueueItem):
        item.task = asyncio.ensure_future(self.handler(item))
        try:
            result = await item.task
        except asyncio.CancelledError:
            if item.caller_cancelled and self._accepting:
                item.state = ItemState.FAILED
                item.release()
                logger.info("request_cancelled", analysis_id=item.analysis_id, state="running")
                return
            self._resolve_error(item, EngineShuttingDownError(analysis_id=item.analysis_id))
            raise
        except EngineError as e:
            self._on_failure(item, e)
            return
        except Exception as e:
            error = FatalEngineError(
                f"Unexpected {type(e).__name__} in dispatch",
                analysis_id=item.analysis_id,
                stage="dispatch"
            )
            logger.error("dispatch_unexpected_error", error_type=type(e).__name__, exc_info=True)
            self._on_failure(item, error)
            return
        finally:
            item.task = None

        item.state = ItemState.COMPLETED
        item.release()
        self.completed += 1
        if not item.future.done():
            item.future.set_result(result)

    def _on_failure(self, item: QueueItem, error: EngineError):
        item.state = ItemState.FAILED
        item.last_error = error

        if error.retriable and item.retry_count < self.max_retries:
            delay = self.backoff_delay(item.retry_count)
            if delay < item.remaining():
                item.retry_count += 1
                record_retry()
                logger.warning(
                    "request_retry_scheduled",
                    analysis_id=item.analysis_id,
                    error_code=error.error_code,
                    retry=item.retry_count,
                    backoff_s=round(delay, 3)
                )
                task = asyncio.create_task(self._requeue_after(item, delay))
                self._retry_tasks.add(task)
                task.add_done_callback(self._retry_tasks.discard)
                return

        record = self.dead_letters.add(item, error)
        item.state = ItemState.DEAD_LETTERED
        logger.warning(
            "request_dead_lettered",
            analysis_id=record.analysis_id,
            error_code=record.error_code,
            retry_count=record.retry_count
        )
        self._resolve_error(item, error)

    async def _requeue_after(self, item: QueueItem, delay: float):
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            self._resolve_error(item, EngineShuttingDownError(analysis_id=item.analysis_id))
            raise
        if item.caller_cancelled or item.future.done():
            item.release()
            return
        # Already admitted once; retries are never shed by the admission bound
        await self.queue.admit(item, bypass_bound=True)

    def backoff_delay(self, retry_count: int) -> float:
        return min(self.backoff_base * (2 ** retry_count), self.backoff_max)

    def _arm_deadline(self, item: QueueItem):
        if item.deadline_timer is not None:
            return
        loop = asyncio.get_running_loop()
        item.deadline_timer = loop.call_later(max(0.0, item.remaining()), self._expire, item)
        item.future.add_done_callback(lambda _: item.deadline_timer.cancel())

    def _expire(self, item: QueueItem):
        """Budget ran out while the item was queued or backing off."""
        # Running attempts are bounded by the handler against the same deadline
        if item.future.done() or item in self._running:
            return
        queued = self.queue.remove(item)
        budget = item.deadline - item.request.submitted_at
        logger.warning(
            "request_expired",
            analysis_id=item.analysis_id,
            state="queued" if queued else "retry_backoff",
            tier=item.tier.value,
            retries=item.retry_count
        )
        self._on_failure(item, AnalysisTimeoutError(budget, analysis_id=item.analysis_id, stage="queue"))

    def _resolve_error(self, item: QueueItem, error: EngineError):
        if item.state is not ItemState.DEAD_LETTERED:
            item.state = ItemState.FAILED
        item.last_error = error
        item.release()
        self.failed += 1
        if not item.future.done():
            item.future.set_exception(error)
