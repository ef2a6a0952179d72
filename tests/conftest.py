import asyncio
import io
from typing import AsyncGenerator, Optional, Tuple

import numpy as np
import pytest
from httpx import AsyncClient, ASGITransport
from PIL import Image

from imagery.core.config import Settings
from imagery.engines.detection.adapters import AdapterRegistry, ModelAdapter
from imagery.engines.detection.schemas import AnalysisRequest, ModelRole, ProcessingOptions
from imagery.engines.detection.sentinel import ImageBuffer, LiveBufferCounter, MemorySentinel
from imagery.engines.detection.services import DetectionEngine


# =============================================================================
# Synthetic images
# =============================================================================

def make_pixels(size: Tuple[int, int] = (256, 192), seed: int = 0, warm: bool = False) -> np.ndarray:
    """RGB uint8 test pattern: smooth gradient plus sensor-like noise."""
    width, height = size
    rng = np.random.default_rng(seed)
    y = np.linspace(0.0, 1.0, height)[:, None]
    x = np.linspace(0.0, 1.0, width)[None, :]
    arr = np.empty((height, width, 3), dtype=np.float32)
    if warm:
        # Reds, oranges and browns, like a plate of food
        arr[..., 0] = 190 + 40 * x
        arr[..., 1] = 80 + 40 * y
        arr[..., 2] = 30 + 10 * x
    else:
        arr[..., 0] = 40 + 60 * x
        arr[..., 1] = 90 + 60 * y
        arr[..., 2] = 200 + 40 * (x + y) / 2
    arr += rng.normal(0.0, 6.0, size=arr.shape)
    return np.clip(arr, 0, 255).astype(np.uint8)


def encode_image(pixels: np.ndarray, fmt: str = "JPEG") -> bytes:
    buf = io.BytesIO()
    kwargs = {"quality": 90} if fmt in ("JPEG", "WEBP") else {}
    Image.fromarray(pixels, mode="RGB").save(buf, format=fmt, **kwargs)
    return buf.getvalue()


@pytest.fixture
def pixels_factory():
    return make_pixels


@pytest.fixture
def image_factory():
    """Returns encoded image bytes: image_factory("PNG", size=(64, 64), warm=True)."""
    def _make(fmt: str = "JPEG", size: Tuple[int, int] = (256, 192), seed: int = 0, warm: bool = False) -> bytes:
        return encode_image(make_pixels(size, seed, warm), fmt)
    return _make


@pytest.fixture
def request_factory(image_factory):
    """Builds AnalysisRequest objects owning a fresh ImageBuffer."""
    def _make(
        data: Optional[bytes] = None,
        fmt: str = "JPEG",
        client_id: str = "test-client",
        **options
    ) -> AnalysisRequest:
        if data is None:
            data = image_factory(fmt)
        return AnalysisRequest(
            client_id=client_id,
            image=ImageBuffer(data),
            declared_format=fmt,
            options=ProcessingOptions(**options)
        )
    return _make


# =============================================================================
# Adapters
# =============================================================================

@pytest.fixture
def adapter_factory():
    """Stub adapters with a fixed verdict, optional delay and failure."""
    def _make(
        name: str,
        role: ModelRole,
        label: str = "ai_generated",
        confidence: float = 90.0,
        delay: float = 0.0,
        fail: bool = False,
        timeout: float = 5.0,
        gate: Optional[asyncio.Event] = None
    ) -> ModelAdapter:
        async def scorer(pixels):
            if gate is not None:
                await gate.wait()
            if delay:
                await asyncio.sleep(delay)
            if fail:
                raise RuntimeError(f"{name} model crashed")
            return label, confidence

        adapter = ModelAdapter(name, role, scorer, version="test", timeout=timeout)
        adapter.calls = 0
        original = adapter.score

        async def counting_score(image):
            adapter.calls += 1
            return await original(image)

        adapter.score = counting_score
        return adapter
    return _make


# =============================================================================
# Engine
# =============================================================================

@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        WORKER_COUNT=4,
        MAX_QUEUE_DEPTH=64,
        REQUEST_BUDGET_SECONDS=10.0,
        MAX_RETRIES=2,
        RETRY_BACKOFF_BASE_SECONDS=0.01,
        RETRY_BACKOFF_MAX_SECONDS=0.05,
        CLIENT_CONFIG_PATH=None,
        LOG_FORMAT_JSON=False,
    )


@pytest.fixture
def buffer_counter() -> LiveBufferCounter:
    return LiveBufferCounter()


@pytest.fixture
async def engine_factory(test_settings, buffer_counter):
    """Starts DetectionEngines and stops them at teardown."""
    started = []

    async def _make(settings: Optional[Settings] = None, registry: Optional[AdapterRegistry] = None, **kwargs):
        kwargs.setdefault("sentinel", MemorySentinel(tracker=buffer_counter))
        engine = DetectionEngine(settings or test_settings, registry=registry, **kwargs)
        await engine.start()
        started.append(engine)
        return engine

    yield _make

    for engine in started:
        await engine.stop()


@pytest.fixture
async def engine(engine_factory) -> DetectionEngine:
    return await engine_factory()


# =============================================================================
# HTTP client
# =============================================================================

@pytest.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    from imagery.main import app

    # Trigger lifespan events (startup/shutdown)
    async with app.router.lifespan_context(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            yield ac
