"""Tests for the HealthySnacks HTTP API."""

from __future__ import annotations

import io
import os
from typing import TYPE_CHECKING
from unittest.mock import MagicMock, patch

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

import httpx
import pytest
from fastapi import FastAPI, status
from PIL import Image

from healthysnacks.api.routes import HTTP_413_CONTENT_TOO_LARGE
from healthysnacks.classification import ClassificationAdapter
from healthysnacks.config import get_settings
from healthysnacks.main import create_app
from healthysnacks.ml.image_classifier import ClassificationResult
from healthysnacks.ml.inference import InferencePool

if TYPE_CHECKING:
    from healthysnacks.ml.preprocessing import PickedImage


class FakePipeline:
    """Stands in for InferencePipeline; returns canned results."""

    def __init__(self, results: list[ClassificationResult]) -> None:
        self.results = results
        self.seen: list[PickedImage] = []

    def predict(self, picked: PickedImage) -> list[ClassificationResult]:
        self.seen.append(picked)
        return list(self.results)


class BrokenPipeline:
    """A pipeline whose model fails at inference time."""

    def __init__(self, exc: Exception) -> None:
        self.exc = exc

    def predict(self, picked: PickedImage) -> list[ClassificationResult]:
        raise self.exc


def _png_bytes(size: tuple[int, int] = (32, 24)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, (200, 30, 30)).save(buf, format="PNG")
    return buf.getvalue()


def _init_app_state(
    app: FastAPI,
    results: list[ClassificationResult] | None = None,
    pipeline: FakePipeline | BrokenPipeline | None = None,
    **env_overrides: str,
) -> None:
    """Manually initialize app state (ASGITransport does not trigger lifespan)."""
    with patch.dict(os.environ, env_overrides):
        settings = get_settings()
    app.state.settings = settings
    pool = InferencePool(settings)
    if pipeline is None:
        pipeline = FakePipeline(results if results is not None else [])
    app.state.inference_pool = pool
    app.state.adapter = ClassificationAdapter(pipeline, pool, settings.confidence_threshold)
    manager = MagicMock()
    manager.get_loaded_models.return_value = [settings.model_name]
    app.state.model_manager = manager


async def _make_client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://testserver",
    ) as ac:
        yield ac
    pool: InferencePool = app.state.inference_pool
    pool.shutdown()


@pytest.fixture()
def pipeline() -> FakePipeline:
    """A pipeline that is confident about apples."""
    return FakePipeline(
        [
            ClassificationResult("apple", 0.8234),
            ClassificationResult("banana", 0.1766),
        ]
    )


@pytest.fixture()
def app(pipeline: FakePipeline) -> FastAPI:
    """Create a fresh app instance around the apple pipeline."""
    application = create_app()
    _init_app_state(application, pipeline=pipeline)
    return application


@pytest.fixture()
async def client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    """Async HTTP client for testing the app."""
    async for ac in _make_client(app):
        yield ac


class TestHealthEndpoint:
    async def test_health_returns_ok(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/health")
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "ok"
        assert data["gpu"] is False
        assert data["models_loaded"] == ["healthy_snacks"]
        assert data["concurrent_requests"] == 0
        assert data["queue_depth"] == 0

    async def test_health_gpu_true_when_cuda(self) -> None:
        cuda_app = create_app()
        _init_app_state(cuda_app, HEALTHYSNACKS_DEVICE="cuda")
        async for ac in _make_client(cuda_app):
            response = await ac.get("/api/v1/health")
            assert response.status_code == status.HTTP_200_OK
            assert response.json()["gpu"] is True


class TestClassifyImageEndpoint:
    async def test_confident_result_is_formatted(self, client: httpx.AsyncClient, pipeline: FakePipeline) -> None:
        response = await client.post(
            "/api/v1/classify-image",
            files={"file": ("snack.png", io.BytesIO(_png_bytes()), "image/png")},
        )
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["message"] == "apple 82.3%"
        assert [t["label"] for t in data["tags"]] == ["apple", "banana"]
        assert pipeline.seen[0].size == (32, 24)

    async def test_low_confidence_is_uncertain(self) -> None:
        app = create_app()
        _init_app_state(app, results=[ClassificationResult("cookie", 0.79)])
        async for ac in _make_client(app):
            response = await ac.post(
                "/api/v1/classify-image",
                files={"file": ("snack.png", io.BytesIO(_png_bytes()), "image/png")},
            )
            assert response.status_code == status.HTTP_200_OK
            assert response.json()["message"] == "Not sure"

    async def test_threshold_follows_settings(self) -> None:
        app = create_app()
        _init_app_state(
            app,
            results=[ClassificationResult("cookie", 0.79)],
            HEALTHYSNACKS_CONFIDENCE_THRESHOLD="0.5",
        )
        async for ac in _make_client(app):
            response = await ac.post(
                "/api/v1/classify-image",
                files={"file": ("snack.png", io.BytesIO(_png_bytes()), "image/png")},
            )
            assert response.json()["message"] == "cookie 79.0%"

    async def test_no_results_is_nothing_found(self) -> None:
        app = create_app()
        _init_app_state(app, results=[])
        async for ac in _make_client(app):
            response = await ac.post(
                "/api/v1/classify-image",
                files={"file": ("snack.png", io.BytesIO(_png_bytes()), "image/png")},
            )
            assert response.status_code == status.HTTP_200_OK
            assert response.json() == {"tags": [], "message": "Nothing found"}

    async def test_undecodable_image_returns_400(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/api/v1/classify-image",
            files={"file": ("test.jpg", io.BytesIO(b"fake image data"), "image/jpeg")},
        )
        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert "decode" in response.json()["detail"].lower()

    async def test_oversized_file_returns_413(self) -> None:
        app = create_app()
        _init_app_state(app, HEALTHYSNACKS_MAX_FILE_SIZE="10")
        async for ac in _make_client(app):
            response = await ac.post(
                "/api/v1/classify-image",
                files={"file": ("snack.png", io.BytesIO(_png_bytes()), "image/png")},
            )
            assert response.status_code == HTTP_413_CONTENT_TOO_LARGE

    async def test_too_many_pixels_returns_400(self) -> None:
        app = create_app()
        _init_app_state(app, HEALTHYSNACKS_MAX_IMAGE_PIXELS="100")
        async for ac in _make_client(app):
            response = await ac.post(
                "/api/v1/classify-image",
                files={"file": ("snack.png", io.BytesIO(_png_bytes()), "image/png")},
            )
            assert response.status_code == status.HTTP_400_BAD_REQUEST
            assert "limit" in response.json()["detail"]

    async def test_queue_timeout_returns_503(self, client: httpx.AsyncClient, app: FastAPI) -> None:
        with patch.object(app.state.inference_pool, "run", side_effect=TimeoutError):
            response = await client.post(
                "/api/v1/classify-image",
                files={"file": ("snack.png", io.BytesIO(_png_bytes()), "image/png")},
            )
        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
        assert "queue is full" in response.json()["detail"]

    async def test_inference_failure_returns_500_with_description(self) -> None:
        app = create_app()
        _init_app_state(app, pipeline=BrokenPipeline(RuntimeError("bad tensor")))
        async for ac in _make_client(app):
            response = await ac.post(
                "/api/v1/classify-image",
                files={"file": ("snack.png", io.BytesIO(_png_bytes()), "image/png")},
            )
            assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
            assert response.json() == {"detail": "Error: bad tensor"}

    async def test_label_mismatch_is_reported(self) -> None:
        app = create_app()
        _init_app_state(app, pipeline=BrokenPipeline(ValueError("Model returned 3 scores for 2 labels")))
        async for ac in _make_client(app):
            response = await ac.post(
                "/api/v1/classify-image",
                files={"file": ("snack.png", io.BytesIO(_png_bytes()), "image/png")},
            )
            assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
            assert "3 scores for 2 labels" in response.json()["detail"]


class TestModelsEndpoint:
    async def test_models_returns_list(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/models")
        assert response.status_code == status.HTTP_200_OK
        names = {m["name"] for m in response.json()["models"]}
        assert names == {"healthy_snacks", "multi_snacks"}

    async def test_default_model_is_active(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/models")
        models = {m["name"]: m for m in response.json()["models"]}
        assert models["healthy_snacks"]["status"] == "active"
        assert models["multi_snacks"]["status"] == "available"
        assert models["healthy_snacks"]["labels"] == ["healthy", "unhealthy"]
        assert models["multi_snacks"]["task"] == "image_classification"

    async def test_selected_model_is_active(self) -> None:
        app = create_app()
        _init_app_state(app, HEALTHYSNACKS_MODEL_NAME="multi_snacks")
        async for ac in _make_client(app):
            response = await ac.get("/api/v1/models")
            active = [m["name"] for m in response.json()["models"] if m["status"] == "active"]
            assert active == ["multi_snacks"]


class TestAuthentication:
    async def test_no_auth_required_by_default(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/health")
        assert response.status_code == status.HTTP_200_OK

    async def test_auth_required_when_api_key_set(self) -> None:
        app = create_app()
        _init_app_state(app, HEALTHYSNACKS_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get("/api/v1/health")
            assert response.status_code == status.HTTP_401_UNAUTHORIZED

    async def test_auth_passes_with_correct_key(self) -> None:
        app = create_app()
        _init_app_state(app, HEALTHYSNACKS_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get(
                "/api/v1/health",
                headers={"Authorization": "Bearer test-secret-key"},
            )
            assert response.status_code == status.HTTP_200_OK

    async def test_auth_fails_with_wrong_key(self) -> None:
        app = create_app()
        _init_app_state(app, HEALTHYSNACKS_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.post(
                "/api/v1/classify-image",
                headers={"Authorization": "Bearer wrong-key"},
                files={"file": ("snack.png", io.BytesIO(_png_bytes()), "image/png")},
            )
            assert response.status_code == status.HTTP_401_UNAUTHORIZED
