"""Tests for the AniDex HTTP API."""

from __future__ import annotations

import asyncio
import io
import os
import threading
import time
import uuid
from typing import TYPE_CHECKING
from unittest.mock import patch

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

import httpx
import pytest
from fastapi import FastAPI, status

from anidex.config import get_settings
from anidex.main import create_app
from anidex.ml.image_classifier import ClassificationResult
from anidex.ml.inference import InferencePool
from anidex.ml.intelligence import Intelligence
from anidex.ml.model_manager import OnnxModelManager
from anidex.ml.preprocessing import decode_image
from fakes import FakeClassifier, encode_image


def _init_app_state(
    app: FastAPI,
    models_dir: Path,
    classifier: object | None = None,
    **env_overrides: str,
) -> None:
    """Manually initialize app state (ASGITransport does not trigger lifespan)."""
    with patch.dict(os.environ, {"ANIDEX_MODELS_DIR": str(models_dir), **env_overrides}):
        settings = get_settings()
    pool = InferencePool(settings)
    app.state.settings = settings
    app.state.inference_pool = pool
    app.state.model_manager = OnnxModelManager(settings)
    app.state.intelligence = Intelligence(
        classifier or FakeClassifier(),  # type: ignore[arg-type]
        pool,
        strict_orientation=settings.strict_orientation,
    )


async def _make_client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://testserver",
    ) as ac:
        yield ac
    pool: InferencePool = app.state.inference_pool
    pool.shutdown()


def _upload(data: bytes, name: str = "photo.png", content_type: str = "image/png") -> dict[str, object]:
    return {"file": (name, io.BytesIO(data), content_type)}


@pytest.fixture()
def app(tmp_path: Path) -> FastAPI:
    """Create a fresh app instance with default settings and a fake classifier."""
    application = create_app()
    _init_app_state(application, tmp_path)
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
        assert data["models_loaded"] == []
        assert data["concurrent_requests"] == 0
        assert data["queue_depth"] == 0

    async def test_health_gpu_true_when_cuda(self, tmp_path: Path) -> None:
        cuda_app = create_app()
        _init_app_state(cuda_app, tmp_path, ANIDEX_DEVICE="cuda")
        async for ac in _make_client(cuda_app):
            response = await ac.get("/api/v1/health")
            assert response.status_code == status.HTTP_200_OK
            assert response.json()["gpu"] is True


class TestClassifyImageEndpoint:
    async def test_returns_ranked_tags(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/v1/classify-image", files=_upload(encode_image()))

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["model"] == "fake_classifier"
        assert len(data["tags"]) == 5
        confidences = [tag["confidence"] for tag in data["tags"]]
        assert confidences == sorted(confidences, reverse=True)
        assert data["best_label"] == data["tags"][0]
        assert data["best_label"]["label"] == "red fox"
        uuid.UUID(data["tags"][0]["id"])

    async def test_top_k_query(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/v1/classify-image?top_k=2", files=_upload(encode_image()))
        assert response.status_code == status.HTTP_200_OK
        assert [tag["label"] for tag in response.json()["tags"]] == ["red fox", "grey wolf"]

    async def test_top_k_capped_by_settings(self, tmp_path: Path) -> None:
        observations = [ClassificationResult(label=f"label-{i}", confidence=0.01) for i in range(20)]
        capped = create_app()
        _init_app_state(capped, tmp_path, FakeClassifier(observations), ANIDEX_MAX_TOP_K="3")
        async for ac in _make_client(capped):
            response = await ac.post("/api/v1/classify-image?top_k=10", files=_upload(encode_image()))
            assert len(response.json()["tags"]) == 3

    async def test_top_k_must_be_positive(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/v1/classify-image?top_k=0", files=_upload(encode_image()))
        assert response.status_code == 422

    async def test_classifier_sees_upright_image(self, tmp_path: Path) -> None:
        classifier = FakeClassifier()
        rotated = create_app()
        _init_app_state(rotated, tmp_path, classifier)
        async for ac in _make_client(rotated):
            data = encode_image(16, 8, fmt="JPEG", orientation=6)
            response = await ac.post("/api/v1/classify-image", files=_upload(data, "photo.jpg", "image/jpeg"))
            assert response.status_code == status.HTTP_200_OK
        assert classifier.seen_shapes == [(16, 8, 3)]

    async def test_invalid_image_returns_400(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/api/v1/classify-image",
            files=_upload(b"fake image data", "test.jpg", "image/jpeg"),
        )
        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert "could not decode" in response.json()["detail"].lower()

    async def test_oversized_upload_returns_413(self, tmp_path: Path) -> None:
        small = create_app()
        _init_app_state(small, tmp_path, ANIDEX_MAX_FILE_SIZE="10")
        async for ac in _make_client(small):
            response = await ac.post("/api/v1/classify-image", files=_upload(encode_image()))
            assert response.status_code == status.HTTP_413_REQUEST_ENTITY_TOO_LARGE

    async def test_analysis_failure_returns_502(self, tmp_path: Path) -> None:
        failing = create_app()
        _init_app_state(failing, tmp_path, FakeClassifier([]))
        async for ac in _make_client(failing):
            response = await ac.post("/api/v1/classify-image", files=_upload(encode_image()))
            assert response.status_code == status.HTTP_502_BAD_GATEWAY
            assert "no observations" in response.json()["detail"]

    async def test_strict_orientation_rejects_unknown(self, tmp_path: Path) -> None:
        strict = create_app()
        _init_app_state(strict, tmp_path, ANIDEX_STRICT_ORIENTATION="true")
        async for ac in _make_client(strict):
            data = encode_image(fmt="JPEG", orientation=9)
            response = await ac.post("/api/v1/classify-image", files=_upload(data, "photo.jpg", "image/jpeg"))
            assert response.status_code == status.HTTP_400_BAD_REQUEST

    async def test_decoding_does_not_block_event_loop(self, client: httpx.AsyncClient) -> None:
        ticks = 0
        seen: dict[str, object] = {}

        def slow_decode(data: bytes, **kwargs: object) -> object:
            time.sleep(0.2)
            seen["thread"] = threading.current_thread()
            seen["ticks"] = ticks
            return decode_image(data, **kwargs)  # type: ignore[arg-type]

        async def ticker() -> None:
            nonlocal ticks
            for _ in range(20):
                await asyncio.sleep(0.01)
                ticks += 1

        with patch("anidex.api.routes.decode_image", side_effect=slow_decode):
            response, _ = await asyncio.gather(
                client.post("/api/v1/classify-image", files=_upload(encode_image(640, 480))),
                ticker(),
            )

        assert response.status_code == status.HTTP_200_OK
        assert seen["thread"] is not threading.main_thread()
        assert seen["ticks"] > 0  # type: ignore[operator]


class TestBestLabelEndpoint:
    async def test_returns_best_label(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/v1/best-label", files=_upload(encode_image()))
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["best_label"]["label"] == "red fox"
        assert data["best_label"]["confidence"] == pytest.approx(0.62)
        assert data["model"] == "fake_classifier"

    async def test_invalid_image_returns_400(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/v1/best-label", files=_upload(b"\x00\x01"))
        assert response.status_code == status.HTTP_400_BAD_REQUEST


class TestModelsEndpoint:
    async def test_models_returns_list(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/models")
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert "models" in data
        assert len(data["models"]) >= 2
        assert all(m["task"] == "image_classification" for m in data["models"])

    async def test_default_model_is_active(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/models")
        models = response.json()["models"]
        active_names = {m["name"] for m in models if m["status"] == "active"}
        assert active_names == {"mobilenetv3_large"}

    async def test_configured_model_is_active(self, tmp_path: Path) -> None:
        app = create_app()
        _init_app_state(app, tmp_path, ANIDEX_CLASSIFIER_MODEL="convnext_tiny")
        async for ac in _make_client(app):
            response = await ac.get("/api/v1/models")
            models = response.json()["models"]
            convnext = next(m for m in models if m["name"] == "convnext_tiny")
            assert convnext["status"] == "active"


class TestAuthentication:
    async def test_no_auth_required_by_default(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/health")
        assert response.status_code == status.HTTP_200_OK

    async def test_auth_required_when_api_key_set(self, tmp_path: Path) -> None:
        app = create_app()
        _init_app_state(app, tmp_path, ANIDEX_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get("/api/v1/health")
            assert response.status_code in (
                status.HTTP_401_UNAUTHORIZED,
                status.HTTP_403_FORBIDDEN,
            )

    async def test_auth_passes_with_correct_key(self, tmp_path: Path) -> None:
        app = create_app()
        _init_app_state(app, tmp_path, ANIDEX_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get(
                "/api/v1/health",
                headers={"Authorization": "Bearer test-secret-key"},
            )
            assert response.status_code == status.HTTP_200_OK

    async def test_auth_fails_with_wrong_key(self, tmp_path: Path) -> None:
        app = create_app()
        _init_app_state(app, tmp_path, ANIDEX_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.post(
                "/api/v1/classify-image",
                files=_upload(encode_image()),
                headers={"Authorization": "Bearer wrong-key"},
            )
            assert response.status_code in (
                status.HTTP_401_UNAUTHORIZED,
                status.HTTP_403_FORBIDDEN,
            )
