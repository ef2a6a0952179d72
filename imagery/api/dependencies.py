"""
FastAPI Dependencies for the Detection Engine

Provides dependency injection for:
- DetectionEngine (one per process, created in the application lifespan)
- Client identity (trusted header set by the upstream auth gateway)
"""

from typing import Optional

from fastapi import Header, Request

from imagery.core.exceptions import EngineShuttingDownError
from imagery.engines.detection.services import DetectionEngine

ANONYMOUS_CLIENT = "anonymous"


def get_engine(request: Request) -> DetectionEngine:
    """The engine started by the lifespan handler."""
    engine = getattr(request.app.state, "engine", None)
    if engine is None or not engine.is_running:
        raise EngineShuttingDownError("Detection engine is not running")
    return engine


def get_client_id(x_client_id: Optional[str] = Header(None, alias="X-Client-ID")) -> str:
    """Client identity; authentication happens before requests reach us."""
    client_id = (x_client_id or "").strip()
    return client_id or ANONYMOUS_CLIENT
