"""Inference service for the coconut tree classifier.

Runs the prediction pipeline for one uploaded image:

    readiness check -> decode/resize -> normalize -> forward pass -> decision

Intermediate arrays are held in a scoped context and released on every
exit path, together with any device cache the forward pass filled.
"""

import logging
from contextlib import ExitStack
from typing import Iterable, Optional

import numpy as np

from ..errors import ClassifierError, InferenceError
from ..utils.normalization import normalize
from ..utils.preprocessing import decode_image
from .decision import ClassDecision, decide
from .device_manager import DeviceManager
from .model_backends import LoadedModel
from .model_lifecycle import ModelLifecycle

logger = logging.getLogger(__name__)


class _Buffers:
    """Holds transient arrays for the duration of one prediction."""

    def __init__(self):
        self._arrays = {}

    def __setitem__(self, name: str, array: np.ndarray) -> None:
        self._arrays[name] = array

    def __getitem__(self, name: str) -> np.ndarray:
        return self._arrays[name]

    def release(self) -> None:
        self._arrays.clear()


class InferenceService:
    """Service for classifying uploaded images.

    Stateless apart from the shared, read-only model; safe to call from
    many worker threads at once. Whether forward passes actually overlap
    depends on the engine: both ONNX Runtime and TorchScript accept
    concurrent calls but share one intra-op thread pool, so throughput is
    bounded by a single model instance.
    """

    def __init__(
        self,
        lifecycle: ModelLifecycle,
        device_manager: Optional[DeviceManager] = None,
        allowed_content_types: Optional[Iterable[str]] = None,
    ):
        self.lifecycle = lifecycle
        self.device_manager = device_manager
        self.allowed_content_types = (
            list(allowed_content_types) if allowed_content_types is not None else None
        )

    def predict(self, data: bytes, content_type: Optional[str]) -> ClassDecision:
        """Classify one image.

        Args:
            data: Raw uploaded bytes
            content_type: Declared MIME type of the upload

        Returns:
            ClassDecision for the image

        Raises:
            ModelNotReady: Model not loaded (checked before anything else)
            UnsupportedFormat, UploadError: Rejected upload, nothing decoded
            DecodeError: Bytes are not a decodable image
            InferenceError: Forward pass failed or returned an unusable score
        """
        model = self.lifecycle.require_ready()
        manifest = model.manifest

        with ExitStack() as stack:
            buffers = _Buffers()
            stack.callback(buffers.release)

            buffers["pixels"] = decode_image(
                data, content_type,
                size=manifest.image_size,
                allowed_content_types=self.allowed_content_types,
            )
            buffers["input"] = normalize(buffers["pixels"], manifest.normalization)
            score = self.run_model(model, buffers["input"])

        try:
            return decide(score, manifest.polarity)
        except ValueError as e:
            raise InferenceError(str(e)) from e

    def run_model(self, model: LoadedModel, tensor: np.ndarray) -> float:
        """Run the forward pass and extract the single sigmoid score.

        Args:
            model: Ready model
            tensor: float32 input with shape (1, H, W, 3)

        Returns:
            Score in [0, 1]

        Raises:
            InferenceError: On any engine failure or unusable output
        """
        with ExitStack() as stack:
            buffers = _Buffers()
            stack.callback(buffers.release)
            if self.device_manager is not None:
                stack.callback(self.device_manager.clear_cache)

            try:
                if model.manifest.layout == "NCHW":
                    # NHWC -> NCHW
                    buffers["batch"] = np.ascontiguousarray(tensor.transpose(0, 3, 1, 2))
                else:
                    buffers["batch"] = tensor
                buffers["output"] = np.asarray(model.predict(buffers["batch"]))
            except ClassifierError:
                raise
            except Exception as e:
                logger.exception("Model forward pass failed")
                raise InferenceError("Forward pass failed: %s" % e) from e

            output = buffers["output"]
            if output.size != 1:
                raise InferenceError(
                    "Expected a single score, got output shape %s" % (output.shape,))

            score = float(output.reshape(-1)[0])

        if not np.isfinite(score) or score < 0.0 or score > 1.0:
            raise InferenceError("Model returned score %r outside [0, 1]" % score)
        return score
