"""
Global Exception Handling

Provides the engine error taxonomy, structured JSON error responses and the
circuit breaker pattern for graceful failure handling.

Every user-visible failure carries a human-readable reason and a stable
``error_code``; the HTTP status lives in ``code`` as in the rest of the API.
"""

import time
import traceback
from typing import Optional, Dict, Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from imagery.core.logging import get_logger, analysis_id_var, utc_timestamp

logger = get_logger(__name__)


# =============================================================================
# Custom Exceptions
# =============================================================================

class EngineError(Exception):
    """Base exception for the detection engine."""

    error_code = "ENGINE_ERROR"
    category = "fatal"

    def __init__(
        self,
        message: str,
        code: int = 500,
        analysis_id: Optional[str] = None,
        stage: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        retriable: bool = False,
        retry_after: Optional[float] = None
    ):
        self.message = message
        self.code = code
        self.analysis_id = analysis_id or analysis_id_var.get()
        self.stage = stage
        self.details = details or {}
        self.retriable = retriable
        self.retry_after = retry_after
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """JSON error shape shared by the API and the dead-letter channel."""
        return {
            "error": self.message,
            "error_code": self.error_code,
            "analysis_id": self.analysis_id,
            "code": self.code,
            "stage": self.stage,
            "retriable": self.retriable,
            "retry_after": self.retry_after,
            "details": self.details,
            "timestamp": utc_timestamp(),
        }


# -- Validation (non-retriable) ------------------------------------------------

class ValidationError(EngineError):
    """Raised when input validation fails."""

    error_code = "VALIDATION_ERROR"
    category = "validation"

    def __init__(self, message: str, code: int = 400, **kwargs):
        kwargs.setdefault("stage", "preprocess")
        super().__init__(message, code=code, retriable=False, **kwargs)


class UnsupportedFormatError(ValidationError):
    """Declared format is unsupported or does not match the magic bytes."""

    error_code = "UNSUPPORTED_FORMAT"

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=415, **kwargs)


class CorruptImageError(ValidationError):
    """Image bytes could not be decoded."""

    error_code = "CORRUPT_IMAGE"

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=422, **kwargs)


class SizeExceededError(ValidationError):
    """Upload exceeds the hard size or pixel limit."""

    error_code = "SIZE_EXCEEDED"

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=413, **kwargs)


class InvalidOptionsError(ValidationError):
    """Processing options reference unknown models or invalid thresholds."""

    error_code = "INVALID_OPTIONS"

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("stage", "dispatch")
        super().__init__(message, code=400, **kwargs)


# -- Model failure ---------------------------------------------------------------

class AllModelsUnavailableError(EngineError):
    """Every adapter, including the backup, failed for this request."""

    error_code = "ALL_MODELS_UNAVAILABLE"
    category = "model_failure"

    def __init__(self, message: str = "All detection models are unavailable", **kwargs):
        kwargs.setdefault("stage", "ensemble")
        kwargs.setdefault("retry_after", 5.0)
        super().__init__(message, code=503, retriable=True, **kwargs)


# -- Overload --------------------------------------------------------------------

class OverloadedError(EngineError):
    """Work was shed before being queued; the caller may retry later."""

    error_code = "OVERLOADED"
    category = "overload"

    def __init__(self, message: str, code: int = 503, retry_after: float = 1.0, **kwargs):
        kwargs.setdefault("stage", "admission")
        super().__init__(message, code=code, retriable=True, retry_after=retry_after, **kwargs)


class QueueFullError(OverloadedError):
    """Queue depth reached the admission bound."""

    error_code = "QUEUE_FULL"

    def __init__(self, depth: int, limit: int, retry_after: float = 1.0, **kwargs):
        super().__init__(
            f"Analysis queue is full ({depth}/{limit}); retry after {retry_after:.1f}s",
            retry_after=retry_after,
            **kwargs
        )
        self.details.update({"queue_depth": depth, "queue_limit": limit})


class RateLimitedError(OverloadedError):
    """Client exceeded one of its configured rate limits."""

    error_code = "RATE_LIMITED"

    def __init__(self, client_id: str, limit: str, retry_after: float, **kwargs):
        super().__init__(
            f"Rate limit '{limit}' exceeded for client",
            code=429,
            retry_after=retry_after,
            **kwargs
        )
        self.details.update({"client_id": client_id, "limit": limit})


class EngineShuttingDownError(OverloadedError):
    """Engine is stopping and no longer accepts or finishes work."""

    error_code = "SHUTTING_DOWN"

    def __init__(self, message: str = "Detection engine is shutting down", **kwargs):
        super().__init__(message, retry_after=5.0, **kwargs)


# -- Timeout ---------------------------------------------------------------------

class AnalysisTimeoutError(EngineError):
    """End-to-end budget elapsed before classification completed."""

    error_code = "TIMEOUT"
    category = "timeout"

    def __init__(self, budget_seconds: float, **kwargs):
        super().__init__(
            f"Analysis exceeded the {budget_seconds:.0f}s processing budget",
            code=504,
            retriable=False,
            **kwargs
        )
        self.details["budget_seconds"] = budget_seconds


# -- Fatal -----------------------------------------------------------------------

class FatalEngineError(EngineError):
    """Unrecoverable invariant violation; aborts only the current request."""

    error_code = "FATAL_ERROR"
    category = "fatal"

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=500, retriable=False, **kwargs)


# =============================================================================
# Circuit Breaker Implementation
# =============================================================================

class CircuitBreaker:
    """
    Circuit Breaker pattern for graceful failure handling.

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: Too many failures, requests fail fast
    - HALF_OPEN: Testing if service is recovered
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60,
        half_open_max_calls: int = 3
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.half_open_max_calls = half_open_max_calls

        self._failure_count = 0
        self._last_failure_time: Optional[float] = None
        self._state = "CLOSED"
        self._half_open_calls = 0

    @property
    def state(self) -> str:
        """Get current circuit breaker state."""
        if self._state == "OPEN" and self._last_failure_time is not None:
            elapsed = time.monotonic() - self._last_failure_time
            if elapsed >= self.recovery_timeout:
                self._state = "HALF_OPEN"
                self._half_open_calls = 0
        return self._state

    def can_execute(self) -> bool:
        """Check if request can proceed."""
        state = self.state

        if state == "CLOSED":
            return True
        elif state == "OPEN":
            return False
        elif state == "HALF_OPEN":
            return self._half_open_calls < self.half_open_max_calls

        return False

    def record_success(self):
        """Record a successful call."""
        if self._state == "HALF_OPEN":
            self._half_open_calls += 1
            if self._half_open_calls >= self.half_open_max_calls:
                self._state = "CLOSED"
                self._failure_count = 0
                logger.info("circuit_breaker_closed", circuit=self.name)
        elif self._state == "CLOSED":
            self._failure_count = 0

    def record_failure(self, error: Optional[str] = None):
        """Record a failed call."""
        self._failure_count += 1
        self._last_failure_time = time.monotonic()

        if self._state == "HALF_OPEN":
            self._state = "OPEN"
            logger.warning("circuit_breaker_reopened", circuit=self.name, error=error)
        elif self._state == "CLOSED" and self._failure_count >= self.failure_threshold:
            self._state = "OPEN"
            logger.warning(
                "circuit_breaker_opened",
                circuit=self.name,
                failure_count=self._failure_count,
                error=error
            )

    def reset(self):
        """Reset the circuit breaker."""
        self._state = "CLOSED"
        self._failure_count = 0
        self._last_failure_time = None
        self._half_open_calls = 0


# =============================================================================
# Exception Handlers
# =============================================================================

def error_response(exc: EngineError) -> JSONResponse:
    """Convert an engine error to its structured JSON response."""
    headers = None
    if exc.retry_after is not None and exc.retriable:
        headers = {"Retry-After": str(max(1, int(round(exc.retry_after))))}
    return JSONResponse(status_code=exc.code, content=exc.to_dict(), headers=headers)


def register_exception_handlers(app: FastAPI):
    """Register custom exception handlers with FastAPI app."""

    @app.exception_handler(EngineError)
    async def engine_exception_handler(request: Request, exc: EngineError):
        log = logger.error if exc.category == "fatal" else logger.warning
        log(
            "engine_exception",
            error=exc.message,
            error_code=exc.error_code,
            code=exc.code,
            stage=exc.stage,
            analysis_id=exc.analysis_id
        )
        return error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg")}
            for err in exc.errors()
        ]
        logger.warning("request_validation_failed", path=str(request.url.path), error_count=len(errors))
        return error_response(InvalidOptionsError(
            "Request body failed validation",
            stage="upload",
            details={"errors": errors}
        ))

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=str(request.url.path),
            traceback=traceback.format_exc()
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "error_code": FatalEngineError.error_code,
                "analysis_id": analysis_id_var.get(),
                "code": 500,
                "stage": None,
                "retriable": False,
                "retry_after": None,
                "details": {},
                "timestamp": utc_timestamp()
            }
        )
