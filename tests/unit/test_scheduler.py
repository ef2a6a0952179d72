import asyncio
import time

import pytest

from imagery.core.config import Settings
from imagery.core.exceptions import (
    AllModelsUnavailableError,
    AnalysisTimeoutError,
    CorruptImageError,
    EngineShuttingDownError,
    QueueFullError,
)
from imagery.engines.detection.scheduler import DeadLetterQueue, DispatchScheduler, PriorityWorkQueue, QueueItem
from imagery.engines.detection.schemas import AnalysisRequest, ItemState, PriorityTier, ProcessingOptions
from imagery.engines.detection.sentinel import ImageBuffer, MemorySentinel


def make_item(tier=PriorityTier.NORMAL, budget=30.0, sentinel=None) -> QueueItem:
    request = AnalysisRequest(
        client_id="c1",
        image=ImageBuffer(b"\xff\xd8\xff" + b"\x01" * 16),
        declared_format="JPEG",
        options=ProcessingOptions(priority=tier)
    )
    return QueueItem(
        request=request,
        future=asyncio.get_running_loop().create_future(),
        deadline=time.monotonic() + budget,
        tier=tier,
        scope=sentinel.acquire(request.image) if sentinel else None
    )


def scheduler_settings(**overrides) -> Settings:
    values = dict(
        WORKER_COUNT=1,
        MAX_QUEUE_DEPTH=8,
        MAX_RETRIES=2,
        RETRY_BACKOFF_BASE_SECONDS=0.01,
        RETRY_BACKOFF_MAX_SECONDS=0.04,
        AGING_THRESHOLD_SECONDS=5.0,
    )
    values.update(overrides)
    return Settings(**values)


# =============================================================================
# PriorityWorkQueue
# =============================================================================

@pytest.mark.asyncio
async def test_claim_order_is_strict_precedence():
    queue = PriorityWorkQueue(max_depth=10)
    low, normal, high = make_item(PriorityTier.LOW), make_item(PriorityTier.NORMAL), make_item(PriorityTier.HIGH)
    for item in (low, normal, high):
        await queue.admit(item)

    assert [await queue.claim() for _ in range(3)] == [high, normal, low]


@pytest.mark.asyncio
async def test_fifo_within_a_tier():
    queue = PriorityWorkQueue(max_depth=10)
    items = [make_item(PriorityTier.NORMAL) for _ in range(4)]
    for item in items:
        await queue.admit(item)

    assert [await queue.claim() for _ in range(4)] == items


@pytest.mark.asyncio
async def test_aged_item_overtakes_newer_higher_tier_work():
    queue = PriorityWorkQueue(max_depth=10, aging_threshold=5.0)
    starving = make_item(PriorityTier.LOW)
    urgent = make_item(PriorityTier.HIGH)
    await queue.admit(starving)
    await queue.admit(urgent)
    starving.tier_entered_at -= 10.0

    # Promoted to normal while the high item is served
    assert await queue.claim() is urgent
    assert starving.tier is PriorityTier.NORMAL

    later_normal = make_item(PriorityTier.NORMAL)
    await queue.admit(later_normal)

    assert await queue.claim() is starving
    assert await queue.claim() is later_normal


@pytest.mark.asyncio
async def test_admission_bound_rejects_immediately():
    queue = PriorityWorkQueue(max_depth=2)
    await queue.admit(make_item())
    await queue.admit(make_item())

    started = time.monotonic()
    with pytest.raises(QueueFullError) as exc_info:
        await queue.admit(make_item())

    assert time.monotonic() - started < 0.1
    assert exc_info.value.error_code == "QUEUE_FULL"
    assert exc_info.value.retriable is True
    assert exc_info.value.retry_after > 0
    assert queue.depth == 2


@pytest.mark.asyncio
async def test_bypass_bound_for_readmission():
    queue = PriorityWorkQueue(max_depth=1)
    await queue.admit(make_item())
    await queue.admit(make_item(), bypass_bound=True)
    assert queue.depth == 2


@pytest.mark.asyncio
async def test_remove_queued_item():
    queue = PriorityWorkQueue(max_depth=4)
    item = make_item()
    await queue.admit(item)

    assert queue.remove(item) is True
    assert queue.remove(item) is False
    assert queue.depths() == {"high": 0, "normal": 0, "low": 0}


@pytest.mark.asyncio
async def test_dead_letter_queue_is_bounded():
    channel = DeadLetterQueue(capacity=2)
    for _ in range(3):
        channel.add(make_item(), CorruptImageError("bad bytes"))

    assert len(channel) == 2
    assert channel.total == 3
    assert channel.snapshot()[0].error_code == "CORRUPT_IMAGE"


# =============================================================================
# DispatchScheduler
# =============================================================================

@pytest.mark.asyncio
async def test_completed_item_resolves_and_wipes():
    sentinel = MemorySentinel()

    async def handler(item):
        return "verdict"

    scheduler = DispatchScheduler(handler, scheduler_settings())
    scheduler.start()
    try:
        item = await scheduler.submit(make_item(sentinel=sentinel))
        assert await asyncio.wait_for(item.future, 2) == "verdict"
        assert item.state is ItemState.COMPLETED
        assert item.request.image.wiped
        assert sentinel.live_count == 0
    finally:
        await scheduler.stop()


@pytest.mark.asyncio
async def test_transient_failure_is_retried():
    attempts = []

    async def handler(item):
        attempts.append(item.retry_count)
        if len(attempts) == 1:
            raise AllModelsUnavailableError()
        return "ok"

    scheduler = DispatchScheduler(handler, scheduler_settings())
    scheduler.start()
    try:
        item = await scheduler.submit(make_item())
        assert await asyncio.wait_for(item.future, 2) == "ok"
        assert attempts == [0, 1]
        assert item.retry_count == 1
        assert scheduler.dead_letters.total == 0
    finally:
        await scheduler.stop()


@pytest.mark.asyncio
async def test_retries_are_bounded_then_dead_lettered():
    async def handler(item):
        raise AllModelsUnavailableError()

    scheduler = DispatchScheduler(handler, scheduler_settings(MAX_RETRIES=2))
    scheduler.start()
    try:
        item = await scheduler.submit(make_item())
        with pytest.raises(AllModelsUnavailableError):
            await asyncio.wait_for(item.future, 2)

        assert item.retry_count == 2
        assert item.state is ItemState.DEAD_LETTERED
        record = scheduler.dead_letters.snapshot()[0]
        assert record.analysis_id == item.analysis_id
        assert record.retry_count == 2
        assert item.request.image.wiped
    finally:
        await scheduler.stop()


@pytest.mark.asyncio
async def test_validation_errors_are_not_retried():
    calls = []

    async def handler(item):
        calls.append(1)
        raise CorruptImageError("cannot decode")

    scheduler = DispatchScheduler(handler, scheduler_settings())
    scheduler.start()
    try:
        item = await scheduler.submit(make_item())
        with pytest.raises(CorruptImageError):
            await asyncio.wait_for(item.future, 2)
        assert calls == [1]
        assert scheduler.dead_letters.snapshot()[0].error_code == "CORRUPT_IMAGE"
    finally:
        await scheduler.stop()


@pytest.mark.asyncio
async def test_no_retry_when_backoff_exceeds_budget():
    async def handler(item):
        raise AllModelsUnavailableError()

    scheduler = DispatchScheduler(handler, scheduler_settings(RETRY_BACKOFF_BASE_SECONDS=5.0, RETRY_BACKOFF_MAX_SECONDS=5.0))
    scheduler.start()
    try:
        item = await scheduler.submit(make_item(budget=1.0))
        with pytest.raises(AllModelsUnavailableError):
            await asyncio.wait_for(item.future, 2)
        assert item.retry_count == 0
    finally:
        await scheduler.stop()


@pytest.mark.asyncio
async def test_backoff_is_exponential_and_capped():
    scheduler = DispatchScheduler(None, scheduler_settings(RETRY_BACKOFF_BASE_SECONDS=0.25, RETRY_BACKOFF_MAX_SECONDS=1.0))
    assert [scheduler.backoff_delay(n) for n in range(4)] == [0.25, 0.5, 1.0, 1.0]


@pytest.mark.asyncio
async def test_submit_before_start_is_rejected():
    scheduler = DispatchScheduler(None, scheduler_settings())
    with pytest.raises(EngineShuttingDownError):
        await scheduler.submit(make_item())


@pytest.mark.asyncio
async def test_stop_fails_pending_work_and_wipes_buffers():
    gate = asyncio.Event()

    async def handler(item):
        await gate.wait()
        return "late"

    scheduler = DispatchScheduler(handler, scheduler_settings(WORKER_COUNT=1))
    scheduler.start()
    items = [await scheduler.submit(make_item()) for _ in range(3)]
    await asyncio.sleep(0.05)

    await scheduler.stop()

    for item in items:
        assert isinstance(item.future.exception(), EngineShuttingDownError)
        assert item.request.image.wiped


@pytest.mark.asyncio
async def test_cancel_removes_queued_item():
    gate = asyncio.Event()

    async def handler(item):
        await gate.wait()
        return "ok"

    scheduler = DispatchScheduler(handler, scheduler_settings(WORKER_COUNT=1))
    scheduler.start()
    try:
        running = await scheduler.submit(make_item())
        await asyncio.sleep(0.05)
        queued = await scheduler.submit(make_item())

        scheduler.cancel(queued)

        assert scheduler.queue.depth == 0
        assert queued.request.image.wiped
        gate.set()
        assert await asyncio.wait_for(running.future, 2) == "ok"
    finally:
        await scheduler.stop()


@pytest.mark.asyncio
async def test_stats_shape():
    scheduler = DispatchScheduler(None, scheduler_settings(WORKER_COUNT=3))
    scheduler.start()
    try:
        stats = scheduler.stats()
        assert stats["workers"] == 3
        assert stats["queue_limit"] == 8
        assert stats["queue_depth_by_tier"] == {"high": 0, "normal": 0, "low": 0}
    finally:
        await scheduler.stop()


@pytest.mark.asyncio
async def test_queued_item_expires_while_workers_are_busy():
    gate = asyncio.Event()

    async def handler(item):
        await gate.wait()
        return "ok"

    scheduler = DispatchScheduler(handler, scheduler_settings(WORKER_COUNT=1))
    scheduler.start()
    try:
        busy = await scheduler.submit(make_item())
        await asyncio.sleep(0.05)
        waiting = await scheduler.submit(make_item(budget=0.2))

        started = time.monotonic()
        with pytest.raises(AnalysisTimeoutError) as exc_info:
            await asyncio.wait_for(waiting.future, 2)

        assert time.monotonic() - started < 0.5
        assert exc_info.value.stage == "queue"
        assert waiting.state is ItemState.DEAD_LETTERED
        assert scheduler.dead_letters.snapshot()[0].error_code == "TIMEOUT"
        assert scheduler.queue.depth == 0
        assert waiting.request.image.wiped

        gate.set()
        assert await asyncio.wait_for(busy.future, 2) == "ok"
    finally:
        await scheduler.stop()
