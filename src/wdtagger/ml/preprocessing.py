"""Image preprocessing: decoding uploads and normalizing them into model input.

The tagger models expect a square ``(1, size, size, 3)`` float32 tensor in BGR
order with raw 0-255 sample values, built from an image flattened onto white
and padded to a square before resizing.
"""

from __future__ import annotations

import io
import logging
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, UnidentifiedImageError

from wdtagger.exceptions import InvalidInputError

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)

WHITE = (255, 255, 255)


def decode_image(image_bytes: bytes, max_pixels: int) -> Image.Image:
    """Decode raw image bytes into a Pillow image.

    Args:
        image_bytes: Raw file bytes (any format Pillow can read).
        max_pixels: Upper bound on width * height.

    Returns:
        The decoded image, fully loaded.

    Raises:
        InvalidInputError: If the bytes cannot be decoded or the image is
            empty or exceeds ``max_pixels``.
    """
    try:
        image = Image.open(io.BytesIO(image_bytes))
    except UnidentifiedImageError as exc:
        raise InvalidInputError("Unsupported or corrupt image data") from exc
    except Image.DecompressionBombError as exc:
        raise InvalidInputError(str(exc)) from exc

    width, height = image.size
    if width * height > max_pixels:
        raise InvalidInputError(f"Image of {width}x{height} exceeds the {max_pixels} pixel limit")

    try:
        image.load()
    except (OSError, ValueError) as exc:
        raise InvalidInputError(f"Failed to decode image: {exc}") from exc
    _check_size(image)
    return image


def flatten_alpha(image: Image.Image) -> Image.Image:
    """Composite the image onto a white background, returning opaque RGB."""
    canvas = Image.new("RGBA", image.size, (*WHITE, 255))
    canvas.alpha_composite(image.convert("RGBA"))
    return canvas.convert("RGB")


def pad_to_square(image: Image.Image) -> Image.Image:
    """Center the image on a white square canvas as large as its longer side."""
    width, height = image.size
    max_dim = max(width, height)
    pad_left = (max_dim - width) // 2
    pad_top = (max_dim - height) // 2

    padded = Image.new("RGB", (max_dim, max_dim), WHITE)
    padded.paste(image, (pad_left, pad_top))
    return padded


def normalize_image(image: Image.Image, target_size: int) -> NDArray[np.float32]:
    """Turn an arbitrary image into the tagger's input tensor.

    Args:
        image: Source image of any mode; it is not modified.
        target_size: Spatial size the model expects (height == width).

    Returns:
        float32 array of shape ``(1, target_size, target_size, 3)``, channels
        in BGR order, values in ``[0, 255]``.

    Raises:
        InvalidInputError: If ``target_size`` is not positive or the image has
            zero width or height.
    """
    if target_size <= 0:
        raise InvalidInputError(f"Target size must be positive, got {target_size}")
    _check_size(image)

    padded = pad_to_square(flatten_alpha(image))
    if padded.width != target_size:
        padded = padded.resize((target_size, target_size), Image.Resampling.BICUBIC)

    # RGB -> BGR, add batch dim
    arr = np.asarray(padded, dtype=np.float32)[:, :, ::-1]
    return np.ascontiguousarray(arr[np.newaxis, ...])


def _check_size(image: Image.Image) -> None:
    width, height = image.size
    if width == 0 or height == 0:
        raise InvalidInputError(f"Image has zero dimension ({width}x{height})")
