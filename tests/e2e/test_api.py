import base64

import pytest


@pytest.fixture
def jpeg_b64(image_factory):
    return base64.b64encode(image_factory("JPEG")).decode()


@pytest.mark.asyncio
async def test_health_check(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


@pytest.mark.asyncio
async def test_ready_once_engine_started(client):
    response = await client.get("/ready")
    assert response.status_code == 200
    assert response.json()["checks"] == {"engine": True, "models": True}


@pytest.mark.asyncio
async def test_root_lists_api(client):
    response = await client.get("/")
    assert response.json()["api_v1"] == "/api/v1"


@pytest.mark.asyncio
async def test_analyze_jpeg(client, jpeg_b64):
    response = await client.post(
        "/api/v1/analyze",
        json={"image_base64": jpeg_b64, "format": "image/jpeg"},
        headers={"X-Client-ID": "e2e"}
    )
    assert response.status_code == 200
    data = response.json()
    assert data["classification"] in ("AI-Generated", "Authentic", "Uncertain")
    assert 0 <= data["confidence_score"] <= 100
    assert {"analysis_id", "model_results", "feature_summary", "processing_metadata"} <= data.keys()
    assert data["processing_metadata"]["total_time_ms"] < 30000
    assert "X-Process-Time" in response.headers


@pytest.mark.asyncio
async def test_analyze_infers_format_from_filename(client, image_factory):
    payload = base64.b64encode(image_factory("PNG")).decode()
    response = await client.post("/api/v1/analyze", json={"image_base64": payload, "filename": "lunch.png"})
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_unsupported_format(client, jpeg_b64):
    response = await client.post("/api/v1/analyze", json={"image_base64": jpeg_b64, "format": "gif"})
    assert response.status_code == 415
    body = response.json()
    assert body["error_code"] == "UNSUPPORTED_FORMAT"
    assert body["retriable"] is False


@pytest.mark.asyncio
async def test_declared_format_must_match_bytes(client, jpeg_b64):
    response = await client.post("/api/v1/analyze", json={"image_base64": jpeg_b64, "format": "png"})
    assert response.status_code == 415
    assert response.json()["analysis_id"]


@pytest.mark.asyncio
async def test_invalid_base64(client):
    response = await client.post("/api/v1/analyze", json={"image_base64": "not base64!!", "format": "jpeg"})
    assert response.status_code == 422
    assert response.json()["error_code"] == "CORRUPT_IMAGE"


@pytest.mark.asyncio
async def test_bad_priority_is_invalid_options(client, jpeg_b64):
    response = await client.post(
        "/api/v1/analyze",
        json={"image_base64": jpeg_b64, "format": "jpeg", "priority": "urgent"}
    )
    assert response.status_code == 400
    assert response.json()["error_code"] == "INVALID_OPTIONS"


@pytest.mark.asyncio
async def test_unknown_model_is_invalid_options(client, jpeg_b64):
    response = await client.post(
        "/api/v1/analyze",
        json={"image_base64": jpeg_b64, "format": "jpeg", "models": ["imaginary"]}
    )
    assert response.status_code == 400
    assert response.json()["error_code"] == "INVALID_OPTIONS"


@pytest.mark.asyncio
async def test_status_endpoints(client, jpeg_b64):
    await client.post("/api/v1/analyze", json={"image_base64": jpeg_b64, "format": "png"})

    status = (await client.get("/api/v1/status")).json()
    assert status["accepting"] is True
    assert status["live_buffers"] == 0
    assert set(status["queue_depth_by_tier"]) == {"high", "normal", "low"}

    dead = (await client.get("/api/v1/status/dead-letters", params={"limit": 5})).json()
    assert dead["total"] >= 1
    assert dead["records"][0]["error_code"] == "UNSUPPORTED_FORMAT"
    assert "image" not in dead["records"][0]

    models = (await client.get("/api/v1/status/models")).json()
    assert {m["role"] for m in models} == {"primary", "food", "backup"}
    assert all(m["circuit_state"] == "CLOSED" for m in models)


@pytest.mark.asyncio
async def test_metrics_exposition(client, jpeg_b64):
    await client.post("/api/v1/analyze", json={"image_base64": jpeg_b64, "format": "jpeg"})
    response = await client.get("/api/v1/metrics")
    assert response.status_code == 200
    assert "analyses_total" in response.text
