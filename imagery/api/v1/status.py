"""
Status Endpoints - Engine Introspection

GET /api/v1/status              - Queue depth, workers, dead-letter count
GET /api/v1/status/dead-letters - Recent dead-lettered requests
GET /api/v1/status/models       - Registered models, weights and breaker state
"""

from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from imagery.api.dependencies import get_engine
from imagery.core.logging import get_logger
from imagery.engines.detection.ensemble import ROLE_DEFAULT_WEIGHTS
from imagery.engines.detection.schemas import DeadLetterRecord
from imagery.engines.detection.services import DetectionEngine

logger = get_logger(__name__)
router = APIRouter()


# =============================================================================
# Response Schemas
# =============================================================================

class EngineStatusResponse(BaseModel):
    accepting: bool
    workers: int
    running: int
    queue_depth: int
    queue_limit: int
    queue_depth_by_tier: Dict[str, int]
    retries_pending: int
    completed: int
    failed: int
    dead_lettered: int
    live_buffers: int
    fatal_events_recent: int


class DeadLetterListResponse(BaseModel):
    records: List[DeadLetterRecord]
    total: int


class ModelStatus(BaseModel):
    """One registered detection model."""
    name: str
    role: str
    version: str
    weight: float
    timeout_seconds: float
    circuit_state: str
    in_default_fanout: Optional[bool] = None


# =============================================================================
# Endpoints
# =============================================================================

@router.get("", response_model=EngineStatusResponse)
async def engine_status(engine: DetectionEngine = Depends(get_engine)):
    """Current scheduler and sentinel counters."""
    return EngineStatusResponse(**engine.stats())


@router.get("/dead-letters", response_model=DeadLetterListResponse)
async def dead_letters(
    limit: int = Query(50, ge=1, le=1000),
    engine: DetectionEngine = Depends(get_engine)
):
    """Most recent dead-lettered requests first. Records never contain image data."""
    channel = engine.scheduler.dead_letters
    return DeadLetterListResponse(records=channel.snapshot(limit), total=channel.total)


@router.get("/models", response_model=List[ModelStatus])
async def models(engine: DetectionEngine = Depends(get_engine)):
    """Registered adapters with their ensemble weight and circuit state."""
    weights = engine.aggregator.weights
    registry = engine.registry
    result = []
    for adapter in registry.all():
        result.append(ModelStatus(
            name=adapter.name,
            role=adapter.role.value,
            version=adapter.version,
            weight=weights.get(adapter.name, ROLE_DEFAULT_WEIGHTS.get(adapter.role, 1.0)),
            timeout_seconds=adapter.timeout,
            circuit_state=adapter.circuit.state,
            in_default_fanout=adapter.role.value == "primary" or (
                adapter.role.value == "backup" and registry.include_backup
            )
        ))
    return result
