"""Compute device selection and memory cache management.

Provides:
- Device selection (CUDA > MPS > CPU when set to "auto")
- ONNX Runtime execution providers for the selected device
- Cache clearing after inference and on model disposal
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

DEVICE_CHOICES = ("auto", "cuda", "mps", "cpu")


def _detect() -> Tuple[str, str]:
    """Return (device type, display name) of the best available device."""
    try:
        import torch
    except ImportError:
        logger.warning("PyTorch not installed, falling back to CPU")
        return "cpu", "CPU"

    try:
        if torch.cuda.is_available():
            return "cuda", torch.cuda.get_device_name(0)
        mps = getattr(torch.backends, "mps", None)
        if mps is not None and mps.is_available():
            return "mps", "Apple Silicon (MPS)"
    except Exception as e:
        logger.warning("GPU detection failed: %s", e)

    return "cpu", "CPU"


class DeviceManager:
    """Compute device the classifier runs on.

    "auto" picks CUDA, then MPS, then CPU. An explicit device skips
    detection.
    """

    def __init__(self, device: str = "auto"):
        if device == "auto":
            self._device_type, self._device_name = _detect()
        else:
            self._device_type, self._device_name = device, device.upper()
        self._device = None

    @property
    def device(self):
        """Get torch.device object."""
        if self._device is None:
            import torch
            self._device = torch.device(self._device_type)
        return self._device

    def get_onnx_providers(self) -> List[str]:
        """Get ONNX execution providers matching the device.

        Returns:
            List of ONNX execution provider names, CPU always last
        """
        try:
            import onnxruntime as ort
            available = ort.get_available_providers()
        except ImportError:
            logger.warning("ONNX Runtime not available")
            return ["CPUExecutionProvider"]

        if self._device_type == "cuda" and "CUDAExecutionProvider" in available:
            return ["CUDAExecutionProvider", "CPUExecutionProvider"]
        elif self._device_type == "mps" and "CoreMLExecutionProvider" in available:
            return ["CoreMLExecutionProvider", "CPUExecutionProvider"]

        return ["CPUExecutionProvider"]

    def clear_cache(self) -> None:
        """Clear GPU memory cache.

        Safe to call on any device type.
        """
        if self._device_type == "cpu":
            return
        try:
            import torch

            if self._device_type == "cuda":
                torch.cuda.empty_cache()
                logger.debug("Cleared CUDA memory cache")

            elif self._device_type == "mps":
                # MPS cache clearing (PyTorch 2.0+)
                if hasattr(torch.mps, 'empty_cache'):
                    torch.mps.empty_cache()
                    logger.debug("Cleared MPS memory cache")

        except Exception as e:
            logger.warning("Failed to clear GPU cache: %s", e)

    def get_info(self) -> Dict[str, Any]:
        """Get device info for logging and diagnostics."""
        return {
            "available": self._device_type != "cpu",
            "device_type": self._device_type,
            "name": self._device_name,
        }


def resolve_device(device: Optional[str]) -> DeviceManager:
    """Build a DeviceManager from a configured device string."""
    device = (device or "auto").lower()
    if device not in DEVICE_CHOICES:
        raise ValueError("Unknown device %r" % device)
    return DeviceManager(device)
