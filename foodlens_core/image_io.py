"""Decoding, resizing, cropping and encoding helpers for uploaded photos."""

from __future__ import annotations

import base64
from io import BytesIO

import cv2
import numpy as np
from PIL import Image, UnidentifiedImageError

from foodlens_core.errors import ImageDecodeError
from foodlens_core.geometry import Rect, clamp
from foodlens_core.models import DecodedImage

_FORMAT_MIME = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "WEBP": "image/webp",
    "GIF": "image/gif",
    "BMP": "image/bmp",
}


def _pil_to_bgr(img: Image.Image) -> np.ndarray:
    """Convert PIL image (any mode) to OpenCV BGR ndarray, dropping alpha."""
    rgb = np.array(img.convert("RGB"))
    return cv2.cvtColor(rgb, cv2.COLOR_RGB2BGR)


def decode_image(data: bytes, content_type: str | None = None) -> DecodedImage:
    if not data:
        raise ImageDecodeError("Empty image upload", component="image_io")
    try:
        img = Image.open(BytesIO(data))
        img.load()
    except (UnidentifiedImageError, OSError) as exc:
        raise ImageDecodeError("Invalid image", component="image_io", original_error=exc)

    mime = _FORMAT_MIME.get(str(img.format or "").upper()) or content_type or "image/jpeg"
    pixels = _pil_to_bgr(img)
    h, w = pixels.shape[:2]
    if w <= 0 or h <= 0:
        raise ImageDecodeError("Image has no dimensions", component="image_io")
    return DecodedImage(pixels=pixels, width=int(w), height=int(h), mime_type=mime)


def resize_longest_side(pixels: np.ndarray, max_side: int) -> tuple[np.ndarray, float, float]:
    """Shrink so the longest side is at most ``max_side``.

    Returns the resized buffer plus the x/y factors that map resized
    coordinates back to the original image.
    """
    h, w = pixels.shape[:2]
    longest = max(h, w)
    if max_side <= 0 or longest <= max_side:
        return pixels, 1.0, 1.0
    scale = max_side / float(longest)
    new_w = max(1, int(round(w * scale)))
    new_h = max(1, int(round(h * scale)))
    resized = cv2.resize(pixels, (new_w, new_h), interpolation=cv2.INTER_AREA)
    return resized, w / float(new_w), h / float(new_h)


def crop(pixels: np.ndarray, rect: Rect) -> np.ndarray | None:
    """Extract a crop in pixel coordinates, or None if it is degenerate."""
    h, w = pixels.shape[:2]
    bounded = clamp(rect, w, h)
    if bounded is None:
        return None
    x1, y1, x2, y2 = bounded.as_int_tuple()
    if x2 <= x1 or y2 <= y1:
        return None
    out = pixels[y1:y2, x1:x2]
    if out.size == 0:
        return None
    return out


def encode_jpeg(pixels: np.ndarray, quality: int = 85) -> bytes:
    ok, buf = cv2.imencode(".jpg", pixels, [int(cv2.IMWRITE_JPEG_QUALITY), int(quality)])
    if not ok:
        raise ImageDecodeError("Failed to JPEG-encode image", component="image_io")
    return buf.tobytes()


def encode_base64_jpeg(pixels: np.ndarray, quality: int = 85) -> str:
    return base64.b64encode(encode_jpeg(pixels, quality)).decode("ascii")


def to_data_url(image: DecodedImage, max_side: int = 960, quality: int = 75) -> str:
    """Inline JPEG preview used by the ``image`` stream event."""
    preview, _, _ = resize_longest_side(image.pixels, max_side)
    return "data:image/jpeg;base64," + encode_base64_jpeg(preview, quality)
