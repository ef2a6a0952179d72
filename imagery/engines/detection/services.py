"""
Detection Engine

Facade over the detection pipeline. ``submit`` admits a request into the
dispatch scheduler and awaits its verdict; each worker attempt runs

    preprocess -> content hint -> adapter selection -> ensemble -> classify

under the request's end-to-end time budget, then wipes the image before the
result is handed back.
"""

import asyncio
import time
import traceback
from collections import deque
from typing import Any, Deque, Dict, Optional

from imagery.core.config import Settings, settings as default_settings
from imagery.core.exceptions import AnalysisTimeoutError, EngineError, FatalEngineError
from imagery.core.logging import LogContext, get_logger
from imagery.core.metrics import record_analysis, record_analysis_error, record_fatal_alert
from imagery.engines.detection.adapters import AdapterRegistry, build_default_registry
from imagery.engines.detection.classifier import classify, resolve_threshold
from imagery.engines.detection.ensemble import EnsembleAggregator
from imagery.engines.detection.preprocessor import ImagePreprocessor
from imagery.engines.detection.repositories import ClientConfigRepository, ClientRateLimiter
from imagery.engines.detection.scheduler import DispatchScheduler, QueueItem
from imagery.engines.detection.schemas import (
    AnalysisRequest,
    AnalysisResult,
    ClientConfig,
    FeatureSummary,
    ProcessingMetadata,
)
from imagery.engines.detection.sentinel import MemorySentinel

logger = get_logger(__name__)


# =============================================================================
# Fatal Event Monitor
# =============================================================================

class FatalEventMonitor:
    """Raises an operator alert when fatal errors cluster in time."""

    def __init__(self, threshold: int = 3, window_seconds: float = 60.0, clock=time.monotonic):
        self.threshold = threshold
        self.window_seconds = window_seconds
        self._clock = clock
        self._events: Deque[float] = deque()
        self._last_alert_at: Optional[float] = None
        self.total = 0

    def record(self, error_type: str, stage: Optional[str] = None) -> bool:
        """Count one fatal event. Returns True if it raised an alert."""
        now = self._clock()
        self.total += 1
        self._events.append(now)
        self._expire(now)

        if len(self._events) <= self.threshold:
            return False
        # One alert per window
        if self._last_alert_at is not None and now - self._last_alert_at < self.window_seconds:
            return False

        self._last_alert_at = now
        record_fatal_alert()
        logger.critical(
            "operator_alert",
            reason="fatal_error_rate",
            fatal_events=len(self._events),
            window_s=self.window_seconds,
            last_error_type=error_type,
            last_stage=stage
        )
        return True

    def recent(self) -> int:
        self._expire(self._clock())
        return len(self._events)

    def _expire(self, now: float):
        while self._events and now - self._events[0] > self.window_seconds:
            self._events.popleft()


# =============================================================================
# Detection Engine
# =============================================================================

class DetectionEngine:
    """
    Entry point of the detection dispatch engine.

    Usage:
        engine = DetectionEngine()
        await engine.start()
        result = await engine.submit(request)
        await engine.stop()
    """

    def __init__(
        self,
        settings: Settings = default_settings,
        registry: Optional[AdapterRegistry] = None,
        preprocessor: Optional[ImagePreprocessor] = None,
        sentinel: Optional[MemorySentinel] = None,
        client_configs: Optional[ClientConfigRepository] = None,
        rate_limiter: Optional[ClientRateLimiter] = None,
        aggregator: Optional[EnsembleAggregator] = None
    ):
        self.settings = settings
        self.budget_seconds = settings.REQUEST_BUDGET_SECONDS
        self.registry = registry or build_default_registry(settings)
        self.preprocessor = preprocessor or ImagePreprocessor(settings)
        self.sentinel = sentinel or MemorySentinel()
        self.client_configs = client_configs if client_configs is not None else ClientConfigRepository.from_settings(settings)
        self.rate_limiter = rate_limiter or ClientRateLimiter()
        self.aggregator = aggregator or EnsembleAggregator(settings.MODEL_WEIGHTS)
        self.fatal_monitor = FatalEventMonitor(
            settings.FATAL_ALERT_THRESHOLD,
            settings.FATAL_ALERT_WINDOW_SECONDS
        )
        self.scheduler = DispatchScheduler(self._process, settings)

    @property
    def is_running(self) -> bool:
        return self.scheduler.is_running

    async def start(self):
        self.scheduler.start()
        logger.info(
            "detection_engine_started",
            models=[a.name for a in self.registry.all()],
            budget_s=self.budget_seconds
        )

    async def stop(self):
        await self.scheduler.stop()
        self.sentinel.release_all()
        logger.info("detection_engine_stopped")

    async def submit(self, request: AnalysisRequest, client_config: Optional[ClientConfig] = None) -> AnalysisResult:
        """
        Analyse one image and return its verdict.

        The request's image buffer is wiped before this returns or raises.

        Raises:
            EngineError: validation, overload, model failure, timeout or fatal
        """
        config = client_config or self.client_configs.get(request.client_id)
        limited = False
        admitted = False
        item: Optional[QueueItem] = None

        with LogContext(analysis_id=request.analysis_id, stage="admission"):
            try:
                self.rate_limiter.acquire(config)
                limited = True

                # Reject bad options before they take a queue slot
                self.registry.select(request.options, request.options.content_hint or "food", config)
                resolve_threshold(request.options, config)

                loop = asyncio.get_running_loop()
                item = QueueItem(
                    request=request,
                    future=loop.create_future(),
                    deadline=request.submitted_at + self.budget_seconds,
                    client_config=config,
                    scope=self.sentinel.acquire(request.image)
                )
                await self.scheduler.submit(item)
                admitted = True

                try:
                    return await item.future
                except asyncio.CancelledError:
                    self.scheduler.cancel(item)
                    raise

            except EngineError as e:
                if e.analysis_id is None:
                    e.analysis_id = request.analysis_id
                if isinstance(e, FatalEngineError) and not admitted:
                    # Worker-side fatals are already counted in _process
                    logger.error(
                        "admission_fatal_error",
                        stage=e.stage,
                        error_type=type(e).__name__,
                        error=e.message,
                        client_id=request.client_id
                    )
                    self.fatal_monitor.record(type(e).__name__, e.stage)
                elapsed_ms = (time.monotonic() - request.submitted_at) * 1000
                record_analysis_error(e.error_code, elapsed_ms)
                logger.warning(
                    "analysis_failed",
                    error_code=e.error_code,
                    stage=e.stage,
                    retries=item.retry_count if item else 0,
                    total_time_ms=int(elapsed_ms)
                )
                raise
            finally:
                if item is None:
                    request.image.wipe()
                elif not admitted or item.future.done():
                    item.release()
                if limited:
                    self.rate_limiter.release(config.client_id)

    analyze = submit

    def stats(self) -> Dict[str, Any]:
        return {
            **self.scheduler.stats(),
            "live_buffers": self.sentinel.live_count,
            "fatal_events_recent": self.fatal_monitor.recent(),
            "fatal_events_total": self.fatal_monitor.total,
            "models": len(self.registry.all()),
            **self.rate_limiter.get_stats(),
        }

    # -------------------------------------------------------------------------
    # Worker side
    # -------------------------------------------------------------------------

    async def _process(self, item: QueueItem) -> AnalysisResult:
        """One attempt of the pipeline, bounded by what is left of the budget."""
        remaining = item.remaining()
        if remaining <= 0:
            raise AnalysisTimeoutError(self.budget_seconds, analysis_id=item.analysis_id, stage="queue")

        try:
            return await asyncio.wait_for(self._pipeline(item), timeout=remaining)
        except asyncio.TimeoutError:
            logger.warning("analysis_timeout", budget_s=self.budget_seconds, retries=item.retry_count)
            raise AnalysisTimeoutError(self.budget_seconds, analysis_id=item.analysis_id, stage="pipeline")
        except FatalEngineError as e:
            self.fatal_monitor.record(type(e).__name__, e.stage)
            raise
        except EngineError:
            raise
        except Exception as e:
            stage = item.stage
            logger.error(
                "analysis_fatal_error",
                stage=stage,
                error_type=type(e).__name__,
                traceback=traceback.format_exc()
            )
            self.fatal_monitor.record(type(e).__name__, stage)
            raise FatalEngineError(
                f"Unexpected {type(e).__name__} during analysis",
                analysis_id=item.analysis_id,
                stage=stage
            ) from e

    async def _pipeline(self, item: QueueItem) -> AnalysisResult:
        request = item.request
        options = request.options

        with LogContext(analysis_id=item.analysis_id, stage="preprocess") as ctx:
            item.stage = "preprocess"
            if item.normalized is None:
                view = request.image.view()
                try:
                    normalized = await asyncio.to_thread(self.preprocessor.prepare, view, request.declared_format)
                finally:
                    del view
                item.normalized = normalized
                if item.scope is not None:
                    item.scope.register(normalized.pixels)
                request.dimensions = normalized.original_size
            normalized = item.normalized

            ctx.set_stage("select")
            item.stage = "select"
            if item.content_hint is None:
                item.content_hint = options.content_hint or self.preprocessor.detect_content_hint(normalized)
            adapters = self.registry.select(options, item.content_hint, item.client_config)
            threshold = resolve_threshold(options, item.client_config)

            ctx.set_stage("ensemble")
            item.stage = "ensemble"
            outcomes, ensemble = await self.aggregator.run(normalized, adapters, self.registry.backup())

            ctx.set_stage("classify")
            item.stage = "classify"
            classification = classify(ensemble.score, ensemble.lean, threshold)

            summary = FeatureSummary(
                models_invoked=len(outcomes),
                models_succeeded=ensemble.successful,
                models_failed=ensemble.failed,
                ai_votes=ensemble.ai_votes,
                authentic_votes=ensemble.authentic_votes,
                width=normalized.width,
                height=normalized.height,
                resized=normalized.resized,
                content_hint=item.content_hint
            )
            # Image is gone before anyone sees the verdict
            item.release()

            finished = time.monotonic()
            total_ms = int((finished - request.submitted_at) * 1000)
            queue_ms = item.queue_time_ms()
            result = AnalysisResult(
                analysis_id=item.analysis_id,
                classification=classification,
                confidence_score=ensemble.score,
                model_results=outcomes,
                feature_summary=summary,
                processing_metadata=ProcessingMetadata(
                    total_time_ms=total_ms,
                    queue_time_ms=queue_ms,
                    processing_time_ms=max(0, total_ms - queue_ms),
                    fallback_triggered=ensemble.fallback_triggered,
                    retries=item.retry_count,
                    low_confidence=ensemble.low_confidence,
                    threshold=threshold
                )
            )

            record_analysis(classification.value, ensemble.score, total_ms, queue_ms, ensemble.fallback_triggered)
            logger.info(
                "analysis_completed",
                classification=classification.value,
                confidence_score=ensemble.score,
                fallback_triggered=ensemble.fallback_triggered,
                total_time_ms=total_ms,
                queue_time_ms=queue_ms,
                retries=item.retry_count
            )
            return result
