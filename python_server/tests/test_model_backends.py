"""Tests for model loading with real engines.

Tests cover:
- TorchScript model loading and warm-up
- ONNX model loading (preferred when both exist)
- Load failures surfacing as ModelLoadError
- End-to-end prediction through a real engine
"""

import asyncio
import json

import numpy as np
import pytest

from coconut_server.errors import ModelLoadError
from coconut_server.services.device_manager import DeviceManager
from coconut_server.services.inference_service import InferenceService
from coconut_server.services.model_backends import (
    OnnxModel,
    TorchScriptModel,
    load_model_dir,
)
from coconut_server.services.model_lifecycle import ModelLifecycle

from conftest import encode_image

torch = pytest.importorskip("torch")


class MeanSigmoid(torch.nn.Module):
    """Tiny stand-in classifier: sigmoid of the mean input value."""

    def forward(self, x):
        return torch.sigmoid(x.mean(dim=[1, 2, 3])).unsqueeze(1)


@pytest.fixture
def torchscript_model_dir(tmp_path):
    """Model directory with a TorchScript model.pt."""
    model_dir = tmp_path / "ts_model"
    model_dir.mkdir()
    torch.jit.script(MeanSigmoid()).save(str(model_dir / "model.pt"))
    metadata = {
        "name": "mean-sigmoid",
        "normalization": "signed_scale",
        "polarity": "high_is_not_coconut",
    }
    with open(model_dir / "metadata.json", "w") as f:
        json.dump(metadata, f)
    return model_dir


def _export_onnx(model_dir):
    pytest.importorskip("onnxruntime")
    try:
        torch.onnx.export(
            MeanSigmoid().eval(),
            torch.zeros(1, 260, 260, 3),
            str(model_dir / "model.onnx"),
            opset_version=14,
            input_names=["input"],
            output_names=["output"],
        )
    except Exception as e:
        pytest.skip(f"ONNX export failed: {e}")


class TestTorchScript:
    """Test TorchScript backend."""

    def test_load(self, torchscript_model_dir):
        model = load_model_dir(torchscript_model_dir, DeviceManager("cpu"))

        assert isinstance(model, TorchScriptModel)
        assert model.input_shape == [1, 260, 260, 3]
        assert model.output_shape == [1, 1]

    def test_predict(self, torchscript_model_dir):
        model = load_model_dir(torchscript_model_dir, DeviceManager("cpu"))
        output = model.predict(np.zeros((1, 260, 260, 3), dtype=np.float32))

        np.testing.assert_allclose(output, [[0.5]], atol=1e-6)

    def test_close(self, torchscript_model_dir):
        model = load_model_dir(torchscript_model_dir, DeviceManager("cpu"))
        model.close()

        with pytest.raises(RuntimeError):
            model.predict(np.zeros((1, 260, 260, 3), dtype=np.float32))

    def test_corrupt_weights(self, torchscript_model_dir):
        (torchscript_model_dir / "model.pt").write_bytes(b"not a model")

        with pytest.raises(ModelLoadError):
            load_model_dir(torchscript_model_dir, DeviceManager("cpu"))

    def test_wrong_output_size_fails_warmup(self, torchscript_model_dir):
        class TwoLogits(torch.nn.Module):
            def forward(self, x):
                return torch.zeros([x.shape[0], 2])

        torch.jit.script(TwoLogits()).save(str(torchscript_model_dir / "model.pt"))

        with pytest.raises(ModelLoadError):
            load_model_dir(torchscript_model_dir, DeviceManager("cpu"))

    def test_end_to_end(self, torchscript_model_dir):
        """Gray image under signed scale is close to zero: score ~0.5."""
        async def load():
            lifecycle = ModelLifecycle(
                lambda: load_model_dir(torchscript_model_dir, DeviceManager("cpu")))
            lifecycle.start_loading()
            assert await lifecycle.wait_until_ready(30)
            return lifecycle

        service = InferenceService(asyncio.run(load()))
        decision = service.predict(encode_image(size=(500, 400)), "image/png")

        assert 0.5 < decision.raw_score < 0.51
        assert decision.is_coconut_tree is False


class TestOnnx:
    """Test ONNX backend."""

    def test_load_onnx(self, torchscript_model_dir):
        _export_onnx(torchscript_model_dir)

        model = load_model_dir(torchscript_model_dir, DeviceManager("cpu"))

        # Should prefer ONNX
        assert isinstance(model, OnnxModel)
        assert model.input_shape == [1, 260, 260, 3]
        output = model.predict(np.zeros((1, 260, 260, 3), dtype=np.float32))
        np.testing.assert_allclose(np.asarray(output).reshape(-1), [0.5], atol=1e-6)

    def test_corrupt_onnx(self, torchscript_model_dir):
        pytest.importorskip("onnxruntime")
        (torchscript_model_dir / "model.onnx").write_bytes(b"garbage")

        with pytest.raises(ModelLoadError):
            load_model_dir(torchscript_model_dir, DeviceManager("cpu"))
