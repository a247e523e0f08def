"""Shared fixtures for coconut_server tests.

This module provides pytest fixtures for:
- A fake in-memory model with a fixed score
- Test client for FastAPI endpoints with the fake model injected
- Synthetic encoded images
- Model directories with a manifest for loader tests
"""

import io
import json
import threading
import time
from pathlib import Path
from typing import List, Optional

import numpy as np
import pytest
from PIL import Image

from coconut_server.config import ServerSettings
from coconut_server.services.decision import ScorePolarity
from coconut_server.services.device_manager import DeviceManager
from coconut_server.services.model_backends import LoadedModel
from coconut_server.services.model_manifest import ModelManifest
from coconut_server.utils.normalization import NormalizationPolicy

# Import test client only when available
try:
    from fastapi.testclient import TestClient
    from coconut_server.main import create_app
    FASTAPI_AVAILABLE = True
except ImportError:
    FASTAPI_AVAILABLE = False


class FakeModel(LoadedModel):
    """In-memory model returning a fixed score and recording its inputs."""

    def __init__(
        self,
        manifest: ModelManifest,
        score: float = 0.8,
        error: Optional[Exception] = None,
    ):
        super().__init__(manifest)
        self.score = score
        self.error = error
        self.calls: List[np.ndarray] = []
        self.closed = False
        self.output_shape = [1, 1]

    def predict(self, batch: np.ndarray) -> np.ndarray:
        self.calls.append(batch.copy())
        if self.error is not None:
            raise self.error
        return np.array([[self.score]], dtype=np.float32)

    def close(self) -> None:
        self.closed = True


def make_manifest(
    normalization=NormalizationPolicy.SIGNED_SCALE,
    polarity=ScorePolarity.HIGH_IS_NOT_COCONUT,
    layout: str = "NHWC",
) -> ModelManifest:
    """Build a manifest without touching the filesystem."""
    input_shape = (1, 3, 260, 260) if layout == "NCHW" else (1, 260, 260, 3)
    return ModelManifest(
        model_dir=Path("fake_model"),
        name="fake",
        format="onnx",
        weights_path=Path("fake_model") / "model.onnx",
        normalization=normalization,
        polarity=polarity,
        input_shape=input_shape,
        layout=layout,
    )


def encode_image(
    size=(260, 260),
    color=(128, 128, 128),
    fmt: str = "PNG",
    mode: str = "RGB",
) -> bytes:
    """Encode a solid-colour image. ``size`` is (width, height)."""
    img = Image.new(mode, size, color)
    buffer = io.BytesIO()
    img.save(buffer, format=fmt)
    return buffer.getvalue()


def wait_for_health(client, loaded: bool = True, timeout: float = 5.0) -> dict:
    """Poll /health until modelLoaded matches, returning the last body."""
    deadline = time.monotonic() + timeout
    while True:
        data = client.get("/health").json()
        if data["modelLoaded"] is loaded or time.monotonic() > deadline:
            return data
        time.sleep(0.01)


@pytest.fixture
def manifest() -> ModelManifest:
    """Manifest for the round-trip configuration."""
    return make_manifest()


@pytest.fixture
def fake_model(manifest) -> FakeModel:
    """Fake model returning score 0.8."""
    return FakeModel(manifest, score=0.8)


@pytest.fixture
def settings(tmp_path) -> ServerSettings:
    """Server settings for tests (CPU, short timeouts)."""
    return ServerSettings(
        model_dir=str(tmp_path / "model"),
        device="cpu",
        warmup_timeout=5.0,
        shutdown_timeout=1.0,
        exit_on_load_failure=False,
    )


@pytest.fixture
def app_factory(settings):
    """Create apps with a given model loader injected."""
    if not FASTAPI_AVAILABLE:
        pytest.skip("FastAPI test client not available")

    def factory(loader, **overrides):
        app_settings = settings.model_copy(update=overrides) if overrides else settings
        return create_app(
            app_settings,
            model_loader=loader,
            device_manager=DeviceManager("cpu"),
        )

    return factory


@pytest.fixture
def client(app_factory, fake_model):
    """FastAPI test client with lifespan context and a ready fake model."""
    app = app_factory(lambda: fake_model)

    # Use context manager to invoke lifespan
    with TestClient(app) as client:
        data = wait_for_health(client)
        assert data["modelLoaded"] is True
        yield client


@pytest.fixture
def blocking_loader(fake_model):
    """Loader that blocks until released, for observing the loading state."""
    release = threading.Event()

    def loader():
        release.wait(timeout=10)
        return fake_model

    loader.release = release
    yield loader
    release.set()


@pytest.fixture
def gray_png() -> bytes:
    """260x260 mid-gray PNG."""
    return encode_image()


@pytest.fixture
def model_dir(tmp_path) -> Path:
    """Model directory with a manifest and an empty ONNX weights file."""
    model_dir = tmp_path / "model"
    model_dir.mkdir()
    (model_dir / "model.onnx").write_bytes(b"")
    metadata = {
        "name": "coconut-efficientnet",
        "normalization": "signed_scale",
        "polarity": "high_is_not_coconut",
        "input_shape": [1, 260, 260, 3],
    }
    with open(model_dir / "metadata.json", "w") as f:
        json.dump(metadata, f, indent=2)
    return model_dir


@pytest.fixture
def skip_without_cuda():
    """Skip test if CUDA is not available."""
    try:
        import torch
        if not torch.cuda.is_available():
            pytest.skip("CUDA not available")
    except ImportError:
        pytest.skip("PyTorch not available")
