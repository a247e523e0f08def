"""Model backends for the classifier.

Supports:
- ONNX models via ONNX Runtime (preferred)
- TorchScript models via PyTorch

Both expose the same small interface: ``predict`` on a float32 batch,
``input_shape``/``output_shape`` for logging, and ``close`` to release
engine resources.
"""

import logging
from typing import Any, List, Optional, Sequence

import numpy as np

from ..errors import ModelLoadError
from .device_manager import DeviceManager
from .model_manifest import ModelManifest, load_manifest

logger = logging.getLogger(__name__)


class LoadedModel:
    """Base class for a loaded classifier model."""

    def __init__(self, manifest: ModelManifest):
        self.manifest = manifest
        self.output_shape: Optional[List[Any]] = None

    @property
    def input_shape(self) -> List[Any]:
        return list(self.manifest.input_shape)

    def predict(self, batch: np.ndarray) -> np.ndarray:
        """Run a forward pass on a float32 batch laid out as the manifest says."""
        raise NotImplementedError

    def warmup(self) -> List[int]:
        """Run one forward pass on zeros to validate the artifact.

        Returns:
            Shape of the output produced for a single-image batch
        """
        dummy = np.zeros(self.manifest.input_shape, dtype=np.float32)
        output = np.asarray(self.predict(dummy))
        if output.size != 1:
            raise ValueError(
                "Expected a single score per image, got output shape %s"
                % (output.shape,))
        shape = list(output.shape)
        if self.output_shape is None:
            self.output_shape = shape
        return shape

    def close(self) -> None:
        """Release engine resources."""


class OnnxModel(LoadedModel):
    """Classifier executed by an ONNX Runtime inference session.

    InferenceSession.run is thread-safe, so concurrent requests run in
    parallel up to the session's intra-op thread pool.
    """

    def __init__(self, manifest: ModelManifest, providers: Sequence[str]):
        super().__init__(manifest)
        import onnxruntime as ort

        logger.info("Loading ONNX model from %s", manifest.weights_path)
        self._session = ort.InferenceSession(
            str(manifest.weights_path),
            providers=list(providers)
        )
        model_input = self._session.get_inputs()[0]
        model_output = self._session.get_outputs()[0]
        self._input_name = model_input.name
        self._declared_input_shape = list(model_input.shape)
        self.output_shape = list(model_output.shape)

    @property
    def input_shape(self) -> List[Any]:
        return self._declared_input_shape

    def predict(self, batch: np.ndarray) -> np.ndarray:
        if self._session is None:
            raise RuntimeError("ONNX session has been closed")
        outputs = self._session.run(None, {self._input_name: batch})
        return outputs[0]

    def close(self) -> None:
        self._session = None


class TorchScriptModel(LoadedModel):
    """Classifier executed as a TorchScript module.

    Forward passes run under ``torch.inference_mode`` and do not mutate
    the module, so concurrent calls are allowed; PyTorch parallelises each
    call internally over its intra-op thread pool.
    """

    def __init__(self, manifest: ModelManifest, device_manager: DeviceManager):
        super().__init__(manifest)
        import torch

        self._torch = torch
        self._device = device_manager.device
        logger.info("Loading TorchScript model from %s on %s",
                    manifest.weights_path, self._device)
        module = torch.jit.load(str(manifest.weights_path), map_location=self._device)
        module.eval()
        self._module = module

    def predict(self, batch: np.ndarray) -> np.ndarray:
        if self._module is None:
            raise RuntimeError("TorchScript module has been released")
        torch = self._torch
        tensor = torch.from_numpy(batch).to(self._device)
        try:
            with torch.inference_mode():
                output = self._module(tensor)
                if isinstance(output, (tuple, list)):
                    output = output[0]
                return output.detach().float().cpu().numpy()
        finally:
            del tensor

    def close(self) -> None:
        self._module = None


def load_model(manifest: ModelManifest, device_manager: DeviceManager) -> LoadedModel:
    """Instantiate the backend for a manifest.

    Raises:
        ModelLoadError: If the engine is missing or rejects the artifact
    """
    try:
        if manifest.format == "onnx":
            return OnnxModel(manifest, device_manager.get_onnx_providers())
        return TorchScriptModel(manifest, device_manager)
    except ImportError as e:
        raise ModelLoadError(
            "Runtime for %s models is not installed: %s" % (manifest.format, e)) from e
    except ModelLoadError:
        raise
    except Exception as e:
        raise ModelLoadError(
            "Failed to load %s: %s" % (manifest.weights_path, e)) from e


def load_model_dir(model_dir, device_manager: DeviceManager) -> LoadedModel:
    """Load manifest and weights from a model directory and warm the model up.

    Raises:
        ModelLoadError: On any manifest, weights or warm-up failure
    """
    manifest = load_manifest(model_dir)
    model = load_model(manifest, device_manager)
    try:
        model.warmup()
    except Exception as e:
        model.close()
        raise ModelLoadError("Model warm-up failed: %s" % e) from e
    return model
