"""
Image buffer helpers shared by the CV stages.

Images travel through the pipeline as ``(H, W, 4)`` uint8 RGBA arrays and
masks as ``(H, W)`` uint8 arrays. Pillow is the codec at the edges
(decode/encode); OpenCV and numpy do the numeric work in between.
"""

import io
import math
from dataclasses import dataclass
from typing import Optional

import cv2
import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from countertop.cv.errors import InvalidImageError

# Sobel kernels, row-major
SOBEL_X = np.array([[-1, 0, 1], [-2, 0, 2], [-1, 0, 1]], dtype=np.float32)
SOBEL_Y = np.array([[-1, -2, -1], [0, 0, 0], [1, 2, 1]], dtype=np.float32)


@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned box between the extreme mask pixels (width/height are max - min)."""

    x: int
    y: int
    width: int
    height: int

    def contains(self, px: float, py: float) -> bool:
        return self.x <= px <= self.x + self.width and self.y <= py <= self.y + self.height


def decode_image(data: bytes, max_size: Optional[int] = None) -> np.ndarray:
    """Decode encoded image bytes into an RGBA array, optionally capping the longest side."""
    if not data:
        raise InvalidImageError("empty image buffer")
    try:
        image = Image.open(io.BytesIO(data))
        image = ImageOps.exif_transpose(image)
        image = image.convert("RGBA")
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
        raise InvalidImageError(f"could not decode image: {e}") from e

    # Constrain very large images
    if max_size and max(image.size) > max_size:
        image.thumbnail((max_size, max_size), Image.Resampling.LANCZOS)

    return ensure_rgba(np.array(image))


def encode_image(image: np.ndarray, fmt: str = "JPEG", quality: int = 90) -> bytes:
    """Encode an RGBA image or a single-channel mask to bytes."""
    if image.ndim == 2:
        pil_image = Image.fromarray(image.astype(np.uint8))
    else:
        pil_image = Image.fromarray(ensure_rgba(image))

    fmt = fmt.upper()
    buf = io.BytesIO()
    if fmt in ("JPEG", "JPG"):
        if pil_image.mode == "RGBA":
            pil_image = pil_image.convert("RGB")
        pil_image.save(buf, format="JPEG", quality=quality)
    else:
        pil_image.save(buf, format=fmt)
    return buf.getvalue()


def ensure_rgba(image: np.ndarray, name: str = "image") -> np.ndarray:
    """Validate an image array and return it as a contiguous (H, W, 4) uint8 array."""
    if not isinstance(image, np.ndarray):
        raise InvalidImageError(f"{name} must be a numpy array, got {type(image).__name__}")
    if image.ndim == 2:
        image = np.dstack([image, image, image])
    if image.ndim != 3 or image.shape[2] not in (3, 4):
        raise InvalidImageError(f"{name} must have shape (H, W, 3|4), got {image.shape}")
    if image.shape[0] == 0 or image.shape[1] == 0:
        raise InvalidImageError(f"{name} has zero size: {image.shape[1]}x{image.shape[0]}")
    if image.dtype != np.uint8:
        image = np.clip(image, 0, 255).astype(np.uint8)
    if image.shape[2] == 3:
        alpha = np.full(image.shape[:2] + (1,), 255, dtype=np.uint8)
        image = np.concatenate([image, alpha], axis=2)
    return np.ascontiguousarray(image)


def check_mask(mask: np.ndarray, width: int, height: int) -> np.ndarray:
    """Mask dimensions must always match the image the mask belongs to."""
    if not isinstance(mask, np.ndarray) or mask.ndim != 2:
        raise InvalidImageError("mask must be a 2D numpy array")
    if mask.shape != (height, width):
        raise InvalidImageError(
            f"mask is {mask.shape[1]}x{mask.shape[0]}, expected {width}x{height}"
        )
    return mask.astype(np.uint8, copy=False)


def to_grayscale(image: np.ndarray) -> np.ndarray:
    """Luma (0.299 R + 0.587 G + 0.114 B) as float32."""
    return cv2.cvtColor(image, cv2.COLOR_RGBA2GRAY).astype(np.float32)


def sobel_magnitude(gray: np.ndarray) -> np.ndarray:
    """3x3 Sobel gradient magnitude clipped to 0-255; the one-pixel frame stays 0."""
    gray = gray.astype(np.float32)
    gx = cv2.filter2D(gray, cv2.CV_32F, SOBEL_X, borderType=cv2.BORDER_REPLICATE)
    gy = cv2.filter2D(gray, cv2.CV_32F, SOBEL_Y, borderType=cv2.BORDER_REPLICATE)
    magnitude = np.sqrt(gx * gx + gy * gy)

    edges = np.minimum(magnitude, 255).astype(np.uint8)
    edges[0, :] = 0
    edges[-1, :] = 0
    edges[:, 0] = 0
    edges[:, -1] = 0
    return edges


def gaussian_kernel_1d(sigma: float) -> np.ndarray:
    """Normalized 1D Gaussian with radius ceil(3 * sigma)."""
    radius = max(1, int(math.ceil(sigma * 3)))
    x = np.arange(-radius, radius + 1, dtype=np.float64)
    kernel = np.exp(-(x * x) / (2 * sigma * sigma))
    return (kernel / kernel.sum()).astype(np.float32)


def _filter_axis(data: np.ndarray, kernel: np.ndarray, axis: int) -> np.ndarray:
    """Correlate a 2D array with a 1D kernel along one axis, clamping at the borders."""
    radius = len(kernel) // 2
    if axis == 1:
        padded = np.pad(data, ((0, 0), (radius, radius)), mode="edge")
        taps = kernel.reshape(1, -1)
    else:
        padded = np.pad(data, ((radius, radius), (0, 0)), mode="edge")
        taps = kernel.reshape(-1, 1)

    filtered = cv2.filter2D(padded, cv2.CV_32F, taps, borderType=cv2.BORDER_CONSTANT)
    if axis == 1:
        return filtered[:, radius:radius + data.shape[1]]
    return filtered[radius:radius + data.shape[0], :]


def gaussian_blur(data: np.ndarray, sigma: float, mask: Optional[np.ndarray] = None) -> np.ndarray:
    """
    Separable Gaussian blur of a 2D float array, horizontal pass then vertical.

    With a mask, each pass is a normalized convolution: pixels outside the
    mask contribute no weight, so background values never leak into the
    masked region. Output is only meaningful where the mask is set; pixels
    with no masked neighbours keep their input value.
    """
    kernel = gaussian_kernel_1d(sigma)
    data = data.astype(np.float32)

    if mask is None:
        return _filter_axis(_filter_axis(data, kernel, axis=1), kernel, axis=0)

    weights = (mask > 0).astype(np.float32)
    result = data
    for axis in (1, 0):
        numerator = _filter_axis(result * weights, kernel, axis)
        denominator = _filter_axis(weights, kernel, axis)
        # filter2D may switch to a DFT for long kernels; tiny negatives mean "no weight"
        valid = denominator > 1e-12
        passed = np.where(valid, numerator / np.where(valid, denominator, 1.0), result)
        result = np.where(weights > 0, passed, result).astype(np.float32)
    return result


def resize_bilinear(values: np.ndarray, width: int, height: int) -> np.ndarray:
    """Bilinear resize of a 2D float map, sampling source at (x * src_w / dst_w, y * src_h / dst_h)."""
    src_h, src_w = values.shape
    if (src_w, src_h) == (width, height):
        return values.astype(np.float32, copy=True)

    xs = np.arange(width, dtype=np.float64) * (src_w / width)
    ys = np.arange(height, dtype=np.float64) * (src_h / height)
    x1 = np.floor(xs).astype(np.int64)
    y1 = np.floor(ys).astype(np.int64)
    x2 = np.minimum(src_w - 1, x1 + 1)
    y2 = np.minimum(src_h - 1, y1 + 1)
    wx = (xs - x1)[None, :]
    wy = (ys - y1)[:, None]

    v11 = values[y1[:, None], x1[None, :]]
    v21 = values[y1[:, None], x2[None, :]]
    v12 = values[y2[:, None], x1[None, :]]
    v22 = values[y2[:, None], x2[None, :]]
    out = (v11 * (1 - wx) * (1 - wy) + v21 * wx * (1 - wy)
           + v12 * (1 - wx) * wy + v22 * wx * wy)
    return out.astype(np.float32)


def bilinear_sample(image: np.ndarray, xs: np.ndarray, ys: np.ndarray, wrap: bool = False) -> np.ndarray:
    """
    Sample an (H, W, C) image at float coordinates across all channels.

    Coordinates must already be in range (``0 <= x < W - 1``) unless
    ``wrap`` is set, in which case neighbours wrap around the edges.
    """
    h, w = image.shape[:2]
    x1 = np.floor(xs).astype(np.int64)
    y1 = np.floor(ys).astype(np.int64)
    wx = (xs - x1)[:, None]
    wy = (ys - y1)[:, None]
    if wrap:
        x1 %= w
        y1 %= h
        x2 = (x1 + 1) % w
        y2 = (y1 + 1) % h
    else:
        x2 = np.minimum(w - 1, x1 + 1)
        y2 = np.minimum(h - 1, y1 + 1)

    src = image.astype(np.float32)
    q11 = src[y1, x1]
    q21 = src[y1, x2]
    q12 = src[y2, x1]
    q22 = src[y2, x2]
    out = (q11 * (1 - wx) * (1 - wy) + q21 * wx * (1 - wy)
           + q12 * (1 - wx) * wy + q22 * wx * wy)
    return np.clip(np.rint(out), 0, 255).astype(np.uint8)


def get_mask_bounding_box(mask: np.ndarray) -> Optional[BoundingBox]:
    """Smallest box containing every nonzero mask pixel, or None for an empty mask."""
    ys, xs = np.nonzero(mask)
    if len(xs) == 0:
        return None
    min_x, max_x = int(xs.min()), int(xs.max())
    min_y, max_y = int(ys.min()), int(ys.max())
    return BoundingBox(x=min_x, y=min_y, width=max_x - min_x, height=max_y - min_y)


def mask_to_rgba(mask: np.ndarray) -> np.ndarray:
    """Grey visualization of a mask."""
    gray = mask.astype(np.uint8)
    alpha = np.full_like(gray, 255)
    return np.dstack([gray, gray, gray, alpha])


def values_to_rgba(values: np.ndarray) -> np.ndarray:
    """Min-max normalized grey visualization of a float map (flat maps render mid-grey)."""
    lo = float(values.min()) if values.size else 0.0
    hi = float(values.max()) if values.size else 0.0
    span = hi - lo
    if span > 0:
        normalized = (values - lo) / span
    else:
        normalized = np.full(values.shape, 0.5, dtype=np.float32)
    return mask_to_rgba(np.rint(normalized * 255).astype(np.uint8))
