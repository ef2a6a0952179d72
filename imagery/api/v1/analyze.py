"""
Analysis Endpoint

POST /api/v1/analyze - Classify one image as AI-Generated, Authentic or Uncertain

The request waits for the verdict (bounded by the engine's 30s budget).
Image bytes live only in memory and are wiped before the response is sent.
"""

import base64
import binascii
import os
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from imagery.api.dependencies import get_client_id, get_engine
from imagery.core.config import settings
from imagery.core.exceptions import CorruptImageError, SizeExceededError, UnsupportedFormatError
from imagery.core.logging import get_logger
from imagery.engines.detection.schemas import (
    AnalysisRequest,
    AnalysisResult,
    ErrorResponse,
    ImageFormat,
    PriorityTier,
    ProcessingOptions,
)
from imagery.engines.detection.sentinel import ImageBuffer
from imagery.engines.detection.services import DetectionEngine

logger = get_logger(__name__)
router = APIRouter()


# =============================================================================
# Request Schema
# =============================================================================

class AnalyzeRequest(BaseModel):
    """Request for image authenticity analysis."""
    image_base64: str = Field(..., description="Base64 encoded image (JPEG, PNG, WebP or TIFF)")
    format: Optional[str] = Field(None, description="Declared format or MIME type; defaults to the filename extension")
    filename: Optional[str] = Field(None, max_length=255, description="Original filename, used only to infer the format")
    priority: PriorityTier = Field(default=PriorityTier.NORMAL)
    models: Optional[List[str]] = Field(None, description="Run only these models")
    content_hint: Optional[str] = Field(None, description="Content hint, e.g. 'food'")

    def declared_format(self) -> Optional[str]:
        if self.format:
            return self.format
        if self.filename:
            ext = os.path.splitext(self.filename)[1]
            return ext or None
        return None

    def __repr__(self) -> str:
        return f"AnalyzeRequest(format={self.format!r}, payload_chars={len(self.image_base64)})"


def decode_image(payload: str) -> ImageBuffer:
    """Base64 -> ImageBuffer, enforcing the upload limit before decoding."""
    approx_size = len(payload) * 3 // 4
    if approx_size > settings.MAX_UPLOAD_BYTES + 3:
        raise SizeExceededError(
            f"Image size (~{approx_size / 1048576:.2f}MB) exceeds maximum "
            f"({settings.MAX_UPLOAD_BYTES / 1048576:.0f}MB)",
            stage="upload",
            details={"byte_size": approx_size, "limit": settings.MAX_UPLOAD_BYTES}
        )
    if payload.startswith("data:") and "," in payload:
        payload = payload.split(",", 1)[1]
    try:
        raw = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise CorruptImageError("Image payload is not valid base64", stage="upload") from e
    try:
        return ImageBuffer(raw)
    finally:
        del raw


# =============================================================================
# Endpoints
# =============================================================================

@router.post(
    "",
    response_model=AnalysisResult,
    responses={
        400: {"model": ErrorResponse},
        413: {"model": ErrorResponse},
        415: {"model": ErrorResponse},
        422: {"model": ErrorResponse},
        429: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
        504: {"model": ErrorResponse},
    }
)
async def analyze_image(
    body: AnalyzeRequest,
    client_id: str = Depends(get_client_id),
    engine: DetectionEngine = Depends(get_engine)
):
    """
    Analyse an image for signs of AI generation.

    Flow:
    - Validate declared format and payload size
    - Queue by priority tier (QUEUE_FULL when saturated)
    - Preprocess, run the model ensemble, classify at the 70% boundary

    Returns:
        AnalysisResult with classification, confidence and per-model results
    """
    declared = body.declared_format()
    if ImageFormat.parse(declared) is None:
        raise UnsupportedFormatError(
            f"Unsupported image format '{declared}'. Supported: JPEG, PNG, WebP, TIFF",
            stage="upload",
            details={"declared_format": declared}
        )

    image = decode_image(body.image_base64)
    request = AnalysisRequest(
        client_id=client_id,
        image=image,
        declared_format=declared,
        options=ProcessingOptions(
            priority=body.priority,
            models=body.models,
            content_hint=body.content_hint
        )
    )
    try:
        return await engine.submit(request)
    finally:
        image.wipe()
