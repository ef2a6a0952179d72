"""
API v1 Router Module - Detection Engine

All v1 endpoints are prefixed with /api/v1/

Primary endpoint: POST /api/v1/analyze
Supporting endpoints:
- /api/v1/status/* - Queue, dead-letter and model status
- /api/v1/metrics  - Prometheus exposition
"""

from fastapi import APIRouter

from imagery.api.v1.analyze import router as analyze_router
from imagery.api.v1.metrics import router as metrics_router
from imagery.api.v1.status import router as status_router

# Main v1 router
api_v1_router = APIRouter(prefix="/api/v1")

api_v1_router.include_router(analyze_router, prefix="/analyze", tags=["analysis"])
api_v1_router.include_router(status_router, prefix="/status", tags=["status"])
api_v1_router.include_router(metrics_router, tags=["metrics"])
