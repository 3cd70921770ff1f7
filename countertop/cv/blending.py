"""
Compositing the relit texture back into the photo.

``BoundaryAlphaBlender`` is the default: it alpha-blends only where the mask
is partial or changes side of the threshold, and takes a hard decision
everywhere else. ``PoissonBlender`` swaps in OpenCV's gradient-domain
``seamlessClone`` behind the same interface.
"""

import logging

import cv2
import numpy as np

from countertop.cv.settings import BLEND_THRESHOLD

logger = logging.getLogger(__name__)


def find_mask_boundary(mask: np.ndarray, threshold: int = BLEND_THRESHOLD) -> np.ndarray:
    """Boolean map of interior pixels whose 4-neighbours fall on both sides of ``threshold``."""
    height, width = mask.shape
    boundary = np.zeros((height, width), dtype=bool)
    if height < 3 or width < 3:
        return boundary

    neighbours = [
        mask[:-2, 1:-1],  # top
        mask[2:, 1:-1],  # bottom
        mask[1:-1, :-2],  # left
        mask[1:-1, 2:],  # right
    ]
    has_inside = np.zeros((height - 2, width - 2), dtype=bool)
    has_outside = np.zeros_like(has_inside)
    for n in neighbours:
        has_inside |= n > threshold
        has_outside |= n <= threshold

    boundary[1:-1, 1:-1] = has_inside & has_outside
    return boundary


class Blender:
    """Composites ``overlay`` onto ``base`` (both (H, W, 4) uint8) under ``mask``."""

    name = "base"

    def blend(self, base: np.ndarray, overlay: np.ndarray, mask: np.ndarray) -> np.ndarray:
        raise NotImplementedError


class BoundaryAlphaBlender(Blender):
    name = "boundary-alpha"

    def __init__(self, threshold: int = BLEND_THRESHOLD):
        self.threshold = threshold

    def blend(self, base: np.ndarray, overlay: np.ndarray, mask: np.ndarray) -> np.ndarray:
        inside = mask > self.threshold
        result = np.where(inside[:, :, None], overlay, base)

        # Boundary and feathered pixels get a weighted mix across all four channels
        zone = find_mask_boundary(mask, self.threshold) | ((mask > 0) & (mask < 255))
        if zone.any():
            alpha = (mask[zone].astype(np.float32) / 255.0)[:, None]
            mixed = base[zone].astype(np.float32) * (1 - alpha) + overlay[zone].astype(np.float32) * alpha
            result[zone] = np.clip(np.rint(mixed), 0, 255).astype(np.uint8)
        return result


class PoissonBlender(Blender):
    """Gradient-domain blend; falls back to the boundary blend when cloning is not possible."""

    name = "poisson"

    def __init__(self, threshold: int = BLEND_THRESHOLD, mode: int = cv2.NORMAL_CLONE):
        self.threshold = threshold
        self.mode = mode
        self.fallback = BoundaryAlphaBlender(threshold)

    def blend(self, base: np.ndarray, overlay: np.ndarray, mask: np.ndarray) -> np.ndarray:
        region = np.where(mask > self.threshold, 255, 0).astype(np.uint8)
        # seamlessClone needs a one-pixel margin around the region
        region[0, :] = 0
        region[-1, :] = 0
        region[:, 0] = 0
        region[:, -1] = 0

        if not region.any():
            return self.fallback.blend(base, overlay, mask)

        x, y, w, h = cv2.boundingRect(region)
        center = (x + w // 2, y + h // 2)
        try:
            cloned = cv2.seamlessClone(
                np.ascontiguousarray(overlay[:, :, :3]),
                np.ascontiguousarray(base[:, :, :3]),
                region, center, self.mode,
            )
        except cv2.error as e:
            logger.warning(f"seamlessClone failed, using boundary blend: {e}")
            return self.fallback.blend(base, overlay, mask)

        return np.dstack([cloned, base[:, :, 3]])
