"""Pixel normalization for classifier input tensors.

The value range a classifier expects is fixed when it is trained, so the
policy is read from the model manifest rather than chosen per request.
The three policies produce different, non-interchangeable ranges:

- raw_float:    float32 copy of the 0-255 pixel values
- unit_scale:   x / 255             -> [0, 1]
- signed_scale: x * (2 / 255) - 1   -> [-1, 1]
"""
import logging
from enum import Enum

import numpy as np

logger = logging.getLogger(__name__)


class NormalizationPolicy(str, Enum):
    """Input scaling convention a model was trained with."""
    RAW_FLOAT = "raw_float"
    UNIT_SCALE = "unit_scale"
    SIGNED_SCALE = "signed_scale"

    @classmethod
    def parse(cls, value) -> "NormalizationPolicy":
        """Parse a policy from its name or value (case-insensitive).

        Raises:
            ValueError: If the value names no known policy
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            key = value.strip().lower()
            for policy in cls:
                if key in (policy.value, policy.name.lower()):
                    return policy
        raise ValueError(
            "Unknown normalization policy %r (expected one of: %s)"
            % (value, ", ".join(p.value for p in cls)))


def normalize(pixels: np.ndarray, policy: NormalizationPolicy) -> np.ndarray:
    """Convert a uint8 HWC pixel array into a batched float32 tensor.

    The input array is left untouched; the result is a new contiguous
    array with a leading batch dimension of 1.

    Args:
        pixels: uint8 array with shape (H, W, 3)
        policy: Scaling convention of the paired model

    Returns:
        float32 array with shape (1, H, W, 3)
    """
    if pixels.dtype != np.uint8:
        raise ValueError("Expected uint8 pixels, got %s" % pixels.dtype)
    if pixels.ndim != 3 or pixels.shape[2] != 3:
        raise ValueError("Expected (H, W, 3) pixels, got %s" % (pixels.shape,))

    policy = NormalizationPolicy.parse(policy)
    img = pixels.astype(np.float32)

    if policy is NormalizationPolicy.UNIT_SCALE:
        img /= np.float32(255.0)
    elif policy is NormalizationPolicy.SIGNED_SCALE:
        img *= np.float32(2.0 / 255.0)
        img -= np.float32(1.0)

    return np.ascontiguousarray(img[np.newaxis, ...])
