"""Model manifest: the metadata.json that travels with a model artifact.

The manifest pins everything about how a model must be fed and read:
input shape, tensor layout, normalization policy and score polarity. A
model directory looks like::

    model/
        metadata.json
        model.onnx          (optionally with external weight shards)
        model.pt            (TorchScript, used when no ONNX file exists)
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from ..errors import ModelLoadError
from ..utils.normalization import NormalizationPolicy
from .decision import ScorePolarity

logger = logging.getLogger(__name__)

MANIFEST_FILENAME = "metadata.json"
ONNX_FILENAME = "model.onnx"
TORCHSCRIPT_FILENAME = "model.pt"

DEFAULT_INPUT_SHAPE = (1, 260, 260, 3)
SUPPORTED_FORMATS = ("onnx", "torchscript")
SUPPORTED_LAYOUTS = ("NHWC", "NCHW")


@dataclass(frozen=True)
class ModelManifest:
    """Parsed model metadata."""
    model_dir: Path
    name: str
    format: str
    weights_path: Path
    normalization: NormalizationPolicy
    polarity: ScorePolarity
    input_shape: Tuple[int, int, int, int] = DEFAULT_INPUT_SHAPE
    layout: str = "NHWC"

    @property
    def image_size(self) -> Tuple[int, int]:
        """Spatial (height, width) of the model input."""
        if self.layout == "NCHW":
            return self.input_shape[2], self.input_shape[3]
        return self.input_shape[1], self.input_shape[2]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "name": self.name,
            "format": self.format,
            "weights_path": str(self.weights_path),
            "normalization": self.normalization.value,
            "polarity": self.polarity.value,
            "input_shape": list(self.input_shape),
            "layout": self.layout,
        }


def load_manifest(model_dir) -> ModelManifest:
    """Read and validate the manifest of a model directory.

    Normalization and polarity have no defaults: a model without them
    cannot be served correctly, so their absence fails the load.

    Args:
        model_dir: Path to the model directory

    Returns:
        Validated ModelManifest

    Raises:
        ModelLoadError: Missing directory, unreadable or invalid metadata,
            or no weights file for the declared format
    """
    model_dir = Path(model_dir)
    if not model_dir.is_dir():
        raise ModelLoadError("Model directory not found at: %s" % model_dir)

    metadata_path = model_dir / MANIFEST_FILENAME
    try:
        with open(metadata_path) as f:
            metadata = json.load(f)
    except FileNotFoundError as e:
        raise ModelLoadError("No %s in %s" % (MANIFEST_FILENAME, model_dir)) from e
    except (OSError, json.JSONDecodeError) as e:
        raise ModelLoadError("Unreadable %s: %s" % (metadata_path, e)) from e

    if not isinstance(metadata, dict):
        raise ModelLoadError("%s must contain a JSON object" % metadata_path)

    for key in ("normalization", "polarity"):
        if key not in metadata:
            raise ModelLoadError(
                "%s does not declare '%s'" % (metadata_path, key))

    try:
        normalization = NormalizationPolicy.parse(metadata["normalization"])
        polarity = ScorePolarity.parse(metadata["polarity"])
    except ValueError as e:
        raise ModelLoadError(str(e)) from e

    layout = str(metadata.get("layout", "NHWC")).upper()
    if layout not in SUPPORTED_LAYOUTS:
        raise ModelLoadError("Unsupported tensor layout: %s" % layout)

    input_shape = _parse_input_shape(metadata.get("input_shape"), layout)
    model_format, weights_path = _resolve_weights(model_dir, metadata.get("format"))

    manifest = ModelManifest(
        model_dir=model_dir,
        name=metadata.get("name", model_dir.name),
        format=model_format,
        weights_path=weights_path,
        normalization=normalization,
        polarity=polarity,
        input_shape=input_shape,
        layout=layout,
    )
    logger.info("Model manifest: %s", manifest.to_dict())
    return manifest


def _parse_input_shape(value: Optional[Any], layout: str) -> Tuple[int, int, int, int]:
    if value is None:
        if layout == "NCHW":
            n, h, w, c = DEFAULT_INPUT_SHAPE
            return (n, c, h, w)
        return DEFAULT_INPUT_SHAPE

    try:
        shape = tuple(int(v) for v in value)
    except (TypeError, ValueError) as e:
        raise ModelLoadError("Invalid input_shape: %r" % (value,)) from e

    if len(shape) != 4 or shape[0] != 1 or any(v <= 0 for v in shape):
        raise ModelLoadError(
            "input_shape must be [1, H, W, C] or [1, C, H, W], got %r" % (value,))

    channels = shape[1] if layout == "NCHW" else shape[3]
    if channels != 3:
        raise ModelLoadError("Model must take 3 input channels, got %d" % channels)
    return shape


def _resolve_weights(model_dir: Path, declared: Optional[str]) -> Tuple[str, Path]:
    """Pick the weights file, preferring ONNX when no format is declared."""
    onnx_path = model_dir / ONNX_FILENAME
    pt_path = model_dir / TORCHSCRIPT_FILENAME

    if declared is not None:
        declared = str(declared).lower()
        if declared not in SUPPORTED_FORMATS:
            raise ModelLoadError("Unsupported model format: %s" % declared)
        path = onnx_path if declared == "onnx" else pt_path
        if not path.is_file():
            raise ModelLoadError("Model weights not found at: %s" % path)
        return declared, path

    if onnx_path.is_file():
        return "onnx", onnx_path
    if pt_path.is_file():
        return "torchscript", pt_path

    raise ModelLoadError("No model found at %s" % model_dir)
