"""
Scene lighting transfer.

The countertop's shading is recovered with a mask-aware multi-scale Retinex
decomposition and multiplied into the new texture, so the replacement keeps
the photo's highlights and shadows. Feathering and final compositing live
here too.
"""

import logging
import math
from dataclasses import dataclass
from typing import Optional

import cv2
import numpy as np

from countertop.cv.blending import Blender, BoundaryAlphaBlender
from countertop.cv.imaging import (
    check_mask,
    ensure_rgba,
    gaussian_blur,
    resize_bilinear,
    values_to_rgba,
)
from countertop.cv.settings import DEFAULT_SETTINGS, CVSettings

# Configure logging
logger = logging.getLogger(__name__)


@dataclass
class LightingComponents:
    shading: np.ndarray  # (height, width) float32, 1.0 = average scene light
    reflectance: np.ndarray
    confidence: float
    width: int
    height: int


@dataclass
class RelightingResult:
    relit_texture: np.ndarray
    preserved_shading: np.ndarray  # grey visualization of the resized shading map
    confidence: float


class RelightingEngine:
    def __init__(self, settings: CVSettings = DEFAULT_SETTINGS, blender: Optional[Blender] = None):
        self.settings = settings
        self.blender = blender or BoundaryAlphaBlender(settings.blend_threshold)

    def extract_lighting(self, image: np.ndarray, mask: np.ndarray) -> LightingComponents:
        """
        Intrinsic decomposition of the masked region into shading x reflectance.

        Illumination is the multi-scale Retinex estimate of the mean log
        intensity. It is expressed relative to its own mean over the mask,
        so shading is 1.0 for average light, above 1 in highlights and below
        1 in shadow. Pixels outside the mask get neutral shading.
        """
        image = ensure_rgba(image, "kitchen image")
        height, width = image.shape[:2]
        mask = check_mask(mask, width, height)
        inside = mask > 0

        shading = np.ones((height, width), dtype=np.float32)
        reflectance = np.zeros((height, width), dtype=np.float32)
        if not inside.any():
            return LightingComponents(shading, reflectance, 0.0, width, height)

        rgb = image[:, :, :3].astype(np.float32)
        log_mean = np.log(np.maximum(1.0, rgb)).mean(axis=2)
        log_mean = np.where(inside, log_mean, 0.0).astype(np.float32)

        illumination = self.multi_scale_retinex(log_mean, mask)
        illumination -= illumination[inside].mean()
        shading[inside] = np.exp(illumination[inside])

        intensity = rgb.mean(axis=2)
        floor = self.settings.reflectance_floor
        reflectance[inside] = np.maximum(floor, intensity[inside] / np.maximum(floor, shading[inside]))

        # Decomposition quality from the reconstruction error
        error = np.abs(reflectance[inside] * shading[inside] - intensity[inside]).mean()
        confidence = float(max(0.0, 1.0 - error / 255.0))

        logger.debug(f"Lighting extracted over {int(inside.sum())} px, confidence {confidence:.3f}")
        return LightingComponents(shading, reflectance, confidence, width, height)

    def multi_scale_retinex(self, log_image: np.ndarray, mask: np.ndarray) -> np.ndarray:
        """Equal-weight average of mask-aware Gaussian blurs at each Retinex scale."""
        scales = self.settings.retinex_scales
        result = np.zeros(log_image.shape, dtype=np.float32)
        for sigma in scales:
            result += gaussian_blur(log_image, sigma, mask=mask) / len(scales)
        return result

    def apply_lighting(self, texture: np.ndarray, lighting: LightingComponents,
                       width: int, height: int) -> RelightingResult:
        texture = ensure_rgba(texture, "texture")
        shading = resize_bilinear(lighting.shading, width, height)

        if texture.shape[:2] != (height, width):
            texture = cv2.resize(texture, (width, height), interpolation=cv2.INTER_LINEAR)

        relit = texture.astype(np.float32)
        relit[:, :, :3] *= shading[:, :, None]
        relit = np.clip(np.rint(relit), 0, 255).astype(np.uint8)

        return RelightingResult(
            relit_texture=relit,
            preserved_shading=self.create_shading_visualization(shading),
            confidence=lighting.confidence,
        )

    def create_shading_visualization(self, shading: np.ndarray) -> np.ndarray:
        return values_to_rgba(shading)

    def compute_distance_transform(self, mask: np.ndarray) -> np.ndarray:
        """
        4-neighbour (city-block) distance of each mask pixel to the mask edge.

        Mask pixels touching a non-mask pixel or the image border are at
        distance 0; pixels outside the mask are 0 as well.
        """
        inside = (mask > 0).astype(np.uint8)
        # Zero frame so the image border counts as outside
        padded = cv2.copyMakeBorder(inside, 1, 1, 1, 1, cv2.BORDER_CONSTANT, value=0)
        distances = cv2.distanceTransform(padded, cv2.DIST_L1, 3)[1:-1, 1:-1]
        return np.where(inside > 0, distances - 1, 0).astype(np.float32)

    def create_feathered_mask(self, mask: np.ndarray, width: int, height: int,
                              feather_radius: float) -> np.ndarray:
        """Raised-cosine ramp from 0 at the mask edge to 255 at ``feather_radius`` pixels in."""
        mask = check_mask(mask, width, height)
        inside = mask > 0
        if feather_radius <= 0:
            return np.where(inside, 255, 0).astype(np.uint8)

        distances = self.compute_distance_transform(mask)
        ramp = (1 - np.cos(math.pi * np.minimum(distances, feather_radius) / feather_radius)) / 2
        alpha = np.where(distances < feather_radius, np.rint(ramp * 255), 255)
        return np.where(inside, alpha, 0).astype(np.uint8)

    def blend_seamlessly(self, base: np.ndarray, overlay: np.ndarray, mask: np.ndarray,
                         width: int, height: int) -> np.ndarray:
        base = ensure_rgba(base, "base image")
        overlay = ensure_rgba(overlay, "overlay image")
        mask = check_mask(mask, width, height)

        if base.shape[:2] != (height, width):
            base = cv2.resize(base, (width, height), interpolation=cv2.INTER_LINEAR)
        if overlay.shape[:2] != (height, width):
            overlay = cv2.resize(overlay, (width, height), interpolation=cv2.INTER_LINEAR)

        return self.blender.blend(base, overlay, mask)
