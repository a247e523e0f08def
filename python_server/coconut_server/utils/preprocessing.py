"""Image decoding and resizing for uploaded images.

Turns raw uploaded bytes into the fixed-size uint8 RGB pixel array the
classifier expects. Normalization to the model's value range happens
separately in ``normalization``.
"""

import io
import logging
from typing import Iterable, Optional, Tuple

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from ..errors import DecodeError, UnsupportedFormat, UploadError

logger = logging.getLogger(__name__)

# Spatial resolution (height, width) the classifier was trained on
MODEL_IMAGE_SIZE: Tuple[int, int] = (260, 260)


def check_content_type(
    content_type: Optional[str],
    allowed: Optional[Iterable[str]] = None
) -> str:
    """Validate the declared MIME type of an upload.

    Args:
        content_type: MIME type as sent by the client, may include parameters
        allowed: Accepted MIME types. Any ``image/*`` type when omitted.

    Returns:
        The bare, lower-cased MIME type

    Raises:
        UnsupportedFormat: If the type is missing, not an image type, or
            not in the allowed set
    """
    if not content_type:
        raise UnsupportedFormat("Missing file content type. Please upload an image.")

    mime = content_type.split(";", 1)[0].strip().lower()
    if not mime.startswith("image/"):
        raise UnsupportedFormat(
            "Unsupported file type '%s'. Please upload an image." % mime)

    if allowed is not None and mime not in {a.lower() for a in allowed}:
        raise UnsupportedFormat("Unsupported image type '%s'." % mime)

    return mime


def decode_image(
    data: bytes,
    content_type: Optional[str],
    size: Tuple[int, int] = MODEL_IMAGE_SIZE,
    allowed_content_types: Optional[Iterable[str]] = None,
) -> np.ndarray:
    """Decode image bytes and resize them to the model resolution.

    The MIME type is checked before any decode work. Images of any size and
    aspect ratio are resized (nearest neighbour, no crop, no padding) to
    exactly ``size``. EXIF orientation is honoured, animated images use
    their first frame, and every colour mode is converted to RGB.

    Args:
        data: Raw uploaded bytes
        content_type: Declared MIME type of the upload
        size: Output (height, width)
        allowed_content_types: Accepted MIME types (any image/* when None)

    Returns:
        uint8 array with shape (height, width, 3)

    Raises:
        UnsupportedFormat: Disallowed MIME type
        UploadError: Empty upload
        DecodeError: Bytes are not a decodable image
    """
    mime = check_content_type(content_type, allowed_content_types)

    if not data:
        raise UploadError("Uploaded file is empty.")

    height, width = size
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.seek(0)
            img = ImageOps.exif_transpose(img)
            logger.debug("Decoding %s upload (%dx%d, mode %s)",
                         mime, img.width, img.height, img.mode)
            img = _to_rgb(img)
            img = img.resize((width, height), resample=Image.Resampling.NEAREST)
            pixels = np.array(img, dtype=np.uint8)
    except UnidentifiedImageError as e:
        raise DecodeError("Unrecognised image data: %s" % e) from e
    except (OSError, ValueError, SyntaxError, Image.DecompressionBombError) as e:
        # Pillow reports truncated/corrupt payloads through these
        raise DecodeError("Corrupt image data: %s" % e) from e

    if pixels.shape != (height, width, 3):
        raise DecodeError(
            "Decoded image has unexpected shape %s" % (pixels.shape,))

    return pixels


def _to_rgb(img: Image.Image) -> Image.Image:
    """Convert any PIL mode to 8-bit RGB.

    Alpha channels are composited onto black, matching what a canvas
    draw of a transparent image yields. 16/32-bit grayscale is rescaled
    to 8 bits rather than clipped.
    """
    if img.mode == "RGB":
        return img

    if img.mode in ("I;16", "I;16B", "I;16L", "I", "F"):
        arr = np.asarray(img, dtype=np.float64)
        lo, hi = float(arr.min()), float(arr.max())
        if hi > lo:
            arr = (arr - lo) / (hi - lo) * 255.0
        else:
            arr = np.zeros_like(arr)
        img = Image.fromarray(arr.astype(np.uint8))

    if img.mode == "P" and "transparency" in img.info:
        img = img.convert("RGBA")

    if img.mode in ("RGBA", "LA", "PA"):
        rgba = img.convert("RGBA")
        background = Image.new("RGBA", rgba.size, (0, 0, 0, 255))
        return Image.alpha_composite(background, rgba).convert("RGB")

    return img.convert("RGB")
