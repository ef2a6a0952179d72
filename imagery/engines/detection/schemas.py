from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple, TYPE_CHECKING

import numpy as np
from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from imagery.engines.detection.sentinel import ImageBuffer


# =============================================================================
# Enumerations
# =============================================================================

class ImageFormat(str, Enum):
    JPEG = "JPEG"
    PNG = "PNG"
    WEBP = "WEBP"
    TIFF = "TIFF"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["ImageFormat"]:
        """Resolve a format name, MIME type or file extension.

        Returns None for anything outside the four supported formats.
        """
        if value is None:
            return None
        if isinstance(value, ImageFormat):
            return value
        key = str(value).strip().lower()
        if "/" in key:
            key = key.split("/", 1)[1]
        key = key.lstrip(".")
        return _FORMAT_ALIASES.get(key)


_FORMAT_ALIASES = {
    "jpeg": ImageFormat.JPEG,
    "jpg": ImageFormat.JPEG,
    "jpe": ImageFormat.JPEG,
    "pjpeg": ImageFormat.JPEG,
    "png": ImageFormat.PNG,
    "webp": ImageFormat.WEBP,
    "tiff": ImageFormat.TIFF,
    "tif": ImageFormat.TIFF,
}


class PriorityTier(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class Classification(str, Enum):
    AI_GENERATED = "AI-Generated"
    AUTHENTIC = "Authentic"
    UNCERTAIN = "Uncertain"


class OutcomeLabel(str, Enum):
    """Raw label reported by a single model adapter."""
    AI_GENERATED = "ai_generated"
    AUTHENTIC = "authentic"
    ERROR = "error"


class ModelRole(str, Enum):
    """Capability tag of a model adapter."""
    PRIMARY = "primary"
    FOOD = "food"
    BACKUP = "backup"


class ItemState(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD_LETTERED = "dead_lettered"


# =============================================================================
# Inputs
# =============================================================================

class ProcessingOptions(BaseModel):
    """Per-request processing options."""
    priority: PriorityTier = Field(default=PriorityTier.NORMAL)
    models: Optional[List[str]] = Field(None, description="Explicit subset of adapter names to run")
    confidence_threshold: Optional[float] = Field(
        None, gt=0.0, le=100.0,
        description="Per-client threshold override, copied from ClientConfig"
    )
    content_hint: Optional[str] = Field(None, description="Content hint, e.g. 'food'")


class ClientConfig(BaseModel):
    """Read-only client configuration supplied by the configuration service."""
    model_config = ConfigDict(frozen=True, protected_namespaces=())

    client_id: str
    requests_per_minute: int = Field(600, ge=1)
    requests_per_day: int = Field(100000, ge=1)
    concurrent_limit: int = Field(100, ge=1)
    model_preferences: Tuple[str, ...] = Field(default_factory=tuple)
    confidence_threshold: Optional[float] = Field(None, gt=0.0, le=100.0)


@dataclass
class AnalysisRequest:
    """A single analysis request.

    The request exclusively owns its image buffer; nothing else keeps a
    reference to it once the request reaches a terminal state.
    """
    client_id: str
    image: "ImageBuffer"
    declared_format: Optional[str]
    options: ProcessingOptions = field(default_factory=ProcessingOptions)
    analysis_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    submitted_at: float = field(default_factory=time.monotonic)
    submitted_at_wall: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    dimensions: Optional[Tuple[int, int]] = None

    @property
    def byte_size(self) -> int:
        return self.image.size

    def __repr__(self) -> str:
        return (
            f"AnalysisRequest(analysis_id={self.analysis_id!r}, client_id={self.client_id!r}, "
            f"declared_format={self.declared_format!r}, byte_size={self.byte_size})"
        )


@dataclass
class NormalizedImage:
    """Model-ready RGB pixel buffer produced by the preprocessor."""
    pixels: np.ndarray
    source_format: ImageFormat
    original_size: Tuple[int, int]
    resized: bool = False

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def byte_size(self) -> int:
        return int(self.pixels.nbytes)

    def __repr__(self) -> str:
        return (
            f"NormalizedImage({self.width}x{self.height}, format={self.source_format.value}, "
            f"resized={self.resized})"
        )


# =============================================================================
# Outputs
# =============================================================================

class ModelOutcome(BaseModel):
    """Result of one adapter invocation. Immutable once created."""
    model_config = ConfigDict(frozen=True, protected_namespaces=())

    model_name: str
    model_version: str
    role: ModelRole
    label: OutcomeLabel
    confidence: float = Field(..., ge=0.0, le=100.0)
    elapsed_ms: float = Field(..., ge=0.0)
    success: bool
    error: Optional[str] = None


class FeatureSummary(BaseModel):
    """Aggregate counts describing the analysis. Never contains image data."""
    models_invoked: int = 0
    models_succeeded: int = 0
    models_failed: int = 0
    ai_votes: int = 0
    authentic_votes: int = 0
    width: int = 0
    height: int = 0
    resized: bool = False
    content_hint: Optional[str] = None


class ProcessingMetadata(BaseModel):
    total_time_ms: int = Field(..., description="Submission to result, in milliseconds")
    queue_time_ms: int = Field(..., description="Time spent waiting for a worker")
    processing_time_ms: int = Field(0, description="Time spent in the pipeline")
    fallback_triggered: bool = False
    retries: int = 0
    low_confidence: bool = Field(False, description="Fewer than two models succeeded")
    threshold: float = 70.0


class AnalysisResult(BaseModel):
    """Verdict returned to the caller. Field names are stable for JSON consumers."""
    model_config = ConfigDict(protected_namespaces=())

    analysis_id: str
    classification: Classification
    confidence_score: float = Field(..., ge=0.0, le=100.0)
    model_results: List[ModelOutcome] = Field(default_factory=list)
    feature_summary: FeatureSummary = Field(default_factory=FeatureSummary)
    processing_metadata: ProcessingMetadata


class DeadLetterRecord(BaseModel):
    """Terminal record of a request that exhausted its recovery paths."""
    analysis_id: str
    client_id: str
    error_code: str
    reason: str
    retry_count: int = 0
    dead_lettered_at: str


class ErrorResponse(BaseModel):
    """JSON error shape returned for every failed request."""
    error: str
    error_code: str
    analysis_id: Optional[str] = None
    code: int
    stage: Optional[str] = None
    retriable: bool = False
    retry_after: Optional[float] = None
    details: Dict[str, object] = Field(default_factory=dict)
    timestamp: str
