"""
Model Adapters

Uniform wrapper around one detection model's scoring function. Every
invocation is individually timed out and failure-contained: a timeout, a
crash or an open circuit becomes a failed ModelOutcome instead of an
exception, so the ensemble can continue with partial results.
"""

import asyncio
import functools
import inspect
import time
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Tuple, Union

import numpy as np

from imagery.core.config import Settings, settings as default_settings
from imagery.core.exceptions import CircuitBreaker, InvalidOptionsError
from imagery.core.logging import get_logger
from imagery.core.metrics import record_model_outcome
from imagery.engines.detection import scorers
from imagery.engines.detection.schemas import (
    ClientConfig,
    ModelOutcome,
    ModelRole,
    NormalizedImage,
    OutcomeLabel,
    ProcessingOptions,
)

logger = get_logger(__name__)

ScoreResult = Tuple[str, float]
Scorer = Callable[[np.ndarray], Union[ScoreResult, Awaitable[ScoreResult]]]


class ModelAdapter:
    """One detection model behind the ``score(image) -> ModelOutcome`` contract."""

    def __init__(
        self,
        name: str,
        role: ModelRole,
        scorer: Scorer,
        version: str = "1.0.0",
        timeout: float = 8.0,
        circuit: Optional[CircuitBreaker] = None
    ):
        self.name = name
        self.role = role
        self.version = version
        self.timeout = timeout
        self.scorer = scorer
        self.circuit = circuit or CircuitBreaker(f"adapter:{name}")

    def __repr__(self) -> str:
        return f"ModelAdapter(name={self.name!r}, role={self.role.value}, version={self.version!r})"

    async def score(self, image: NormalizedImage) -> ModelOutcome:
        """Run the scorer once. Never raises except on cancellation."""
        start = time.perf_counter()

        if not self.circuit.can_execute():
            return self._failure(start, "circuit_open", "circuit breaker open")

        try:
            label, confidence = await asyncio.wait_for(self._invoke(image.pixels), timeout=self.timeout)
            outcome = self._success(start, label, confidence)
        except asyncio.TimeoutError:
            self.circuit.record_failure("timeout")
            logger.warning("adapter_timeout", model=self.name, timeout_s=self.timeout)
            return self._failure(start, "timeout", f"timed out after {self.timeout:.1f}s")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.circuit.record_failure(type(e).__name__)
            logger.warning("adapter_failed", model=self.name, error_type=type(e).__name__, error=str(e))
            return self._failure(start, "error", f"{type(e).__name__}: {e}")

        self.circuit.record_success()
        return outcome

    async def _invoke(self, pixels: np.ndarray) -> ScoreResult:
        if inspect.iscoroutinefunction(self.scorer):
            return await self.scorer(pixels)
        result = await asyncio.to_thread(self.scorer, pixels)
        if asyncio.iscoroutine(result):
            return await result
        return result

    def _success(self, start: float, label, confidence) -> ModelOutcome:
        try:
            parsed = OutcomeLabel(label)
            value = float(confidence)
        except (TypeError, ValueError) as e:
            raise ValueError(f"scorer returned an invalid result ({label!r}, {confidence!r})") from e
        if parsed is OutcomeLabel.ERROR or not (0.0 <= value <= 100.0) or value != value:
            raise ValueError(f"scorer returned an invalid result ({label!r}, {confidence!r})")

        elapsed_ms = (time.perf_counter() - start) * 1000
        record_model_outcome(self.name, "success", elapsed_ms)
        return ModelOutcome(
            model_name=self.name,
            model_version=self.version,
            role=self.role,
            label=parsed,
            confidence=round(value, 1),
            elapsed_ms=round(elapsed_ms, 1),
            success=True
        )

    def _failure(self, start: float, status: str, reason: str) -> ModelOutcome:
        elapsed_ms = (time.perf_counter() - start) * 1000
        record_model_outcome(self.name, status, elapsed_ms)
        return ModelOutcome(
            model_name=self.name,
            model_version=self.version,
            role=self.role,
            label=OutcomeLabel.ERROR,
            confidence=0.0,
            elapsed_ms=round(elapsed_ms, 1),
            success=False,
            error=reason
        )


class AdapterRegistry:
    """Capability-tagged set of adapters.

    Selection is driven by request options, client preferences and the
    pre-classification content hint; the ensemble only ever sees the uniform
    ModelAdapter interface.
    """

    def __init__(self, adapters: Iterable[ModelAdapter] = (), include_backup: bool = False):
        self._adapters: Dict[str, ModelAdapter] = {}
        self.include_backup = include_backup
        for adapter in adapters:
            self.register(adapter)

    def register(self, adapter: ModelAdapter):
        if adapter.name in self._adapters:
            raise ValueError(f"Adapter '{adapter.name}' is already registered")
        if adapter.role is ModelRole.BACKUP and self.backup() is not None:
            raise ValueError("Only one backup adapter can be registered")
        self._adapters[adapter.name] = adapter
        logger.info("adapter_registered", model=adapter.name, role=adapter.role.value, version=adapter.version)

    def get(self, name: str) -> Optional[ModelAdapter]:
        return self._adapters.get(name)

    def all(self) -> List[ModelAdapter]:
        return list(self._adapters.values())

    def by_role(self, role: ModelRole) -> List[ModelAdapter]:
        return [a for a in self._adapters.values() if a.role is role]

    def backup(self) -> Optional[ModelAdapter]:
        found = self.by_role(ModelRole.BACKUP)
        return found[0] if found else None

    def select(
        self,
        options: ProcessingOptions,
        content_hint: Optional[str] = None,
        client_config: Optional[ClientConfig] = None
    ) -> List[ModelAdapter]:
        """Adapters for the initial fan-out, in registration order."""
        requested = options.models
        if not requested and client_config is not None and client_config.model_preferences:
            requested = list(client_config.model_preferences)

        if requested:
            unknown = [name for name in requested if name not in self._adapters]
            if unknown:
                raise InvalidOptionsError(
                    f"Unknown model(s): {', '.join(sorted(unknown))}",
                    details={"unknown_models": sorted(unknown), "available": sorted(self._adapters)}
                )
            wanted = set(requested)
            return [a for a in self._adapters.values() if a.name in wanted]

        selected = []
        for adapter in self._adapters.values():
            if adapter.role is ModelRole.PRIMARY:
                selected.append(adapter)
            elif adapter.role is ModelRole.FOOD and content_hint == "food":
                selected.append(adapter)
            elif adapter.role is ModelRole.BACKUP and self.include_backup:
                selected.append(adapter)

        if not selected:
            backup = self.backup()
            if backup is None:
                raise InvalidOptionsError("No detection models are registered")
            selected.append(backup)
        return selected


def build_default_registry(settings: Settings = default_settings) -> AdapterRegistry:
    """Registry with the three built-in detectors."""
    crop = settings.ANALYSIS_CROP_SIZE
    timeout = settings.ADAPTER_TIMEOUT_SECONDS

    def breaker(name: str) -> CircuitBreaker:
        return CircuitBreaker(
            f"adapter:{name}",
            failure_threshold=settings.CIRCUIT_FAILURE_THRESHOLD,
            recovery_timeout=settings.CIRCUIT_RECOVERY_SECONDS
        )

    return AdapterRegistry(
        [
            ModelAdapter(
                "primary", ModelRole.PRIMARY,
                functools.partial(scorers.frequency_artifact_score, crop_size=crop),
                version="freq-2.1", timeout=timeout, circuit=breaker("primary")
            ),
            ModelAdapter(
                "food", ModelRole.FOOD,
                functools.partial(scorers.chroma_residual_score, crop_size=crop),
                version="chroma-1.4", timeout=timeout, circuit=breaker("food")
            ),
            ModelAdapter(
                "backup", ModelRole.BACKUP,
                functools.partial(scorers.noise_residual_score, crop_size=crop),
                version="noise-1.0", timeout=timeout, circuit=breaker("backup")
            ),
        ],
        include_backup=settings.ENSEMBLE_INCLUDE_BACKUP
    )
