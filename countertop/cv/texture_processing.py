"""
Material sample analysis.

Turns a photo of a material sample into a lighting-normalized albedo, a
seamlessly tileable square texture, a coarse feature-scale estimate and a
short list of dominant colours.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Tuple

import cv2
import numpy as np

from countertop.cv.imaging import ensure_rgba, gaussian_blur, sobel_magnitude, to_grayscale
from countertop.cv.settings import DEFAULT_SETTINGS, CVSettings

logger = logging.getLogger(__name__)


@dataclass
class TextureMetadata:
    original_size: Tuple[int, int]  # (width, height)
    tile_size: Tuple[int, int]
    dominant_colors: List[int] = field(default_factory=list)  # packed 0xRRGGBB


@dataclass
class ProcessedTexture:
    albedo: np.ndarray
    tileable: np.ndarray
    scale: float
    metadata: TextureMetadata


class TextureProcessor:
    """Prepares a material sample for mapping onto the countertop plane."""

    def __init__(self, settings: CVSettings = DEFAULT_SETTINGS):
        self.settings = settings

    def process(self, image: np.ndarray) -> ProcessedTexture:
        image = ensure_rgba(image, "material sample")
        height, width = image.shape[:2]

        # Step 1: strip the sample's own lighting
        albedo = self.retinex_normalization(image)

        # Step 2: seamless tile
        tileable = self.make_seamless_tileable(albedo)

        # Step 3: scale and palette come from the untouched photo
        scale = self.detect_material_scale(image)
        dominant_colors = self.extract_dominant_colors(image)

        logger.debug(f"Material {width}x{height} -> tile {tileable.shape[1]}, scale {scale:.2f}")
        return ProcessedTexture(
            albedo=albedo,
            tileable=tileable,
            scale=scale,
            metadata=TextureMetadata(
                original_size=(width, height),
                tile_size=(tileable.shape[1], tileable.shape[0]),
                dominant_colors=dominant_colors,
            ),
        )

    def retinex_normalization(self, image: np.ndarray) -> np.ndarray:
        """
        Single-Scale Retinex per colour channel.

        The illumination field is a Gaussian blur of the log image with sigma
        proportional to the shorter side. Subtracting it leaves log
        reflectance, which is re-centred on the channel's mean log intensity
        so the sample keeps its overall colour while losing shading gradients.
        """
        height, width = image.shape[:2]
        sigma = min(width, height) / self.settings.retinex_sigma_divisor
        result = image.copy()

        for channel in range(3):
            log_channel = np.log(np.maximum(1.0, image[:, :, channel].astype(np.float32)))
            illumination = gaussian_blur(log_channel, sigma)
            reflectance = log_channel - illumination + log_channel.mean()
            result[:, :, channel] = np.clip(np.rint(np.exp(reflectance)), 0, 255).astype(np.uint8)

        return result

    def calculate_optimal_tile_size(self, width: int, height: int) -> int:
        """Largest power of two from the minimum tile size that fits the shorter side."""
        min_side = min(width, height)
        tile_size = self.settings.min_tile_size
        while tile_size * 2 <= min_side and tile_size < self.settings.max_tile_size:
            tile_size *= 2
        return tile_size

    def make_seamless_tileable(self, image: np.ndarray) -> np.ndarray:
        height, width = image.shape[:2]
        tile_size = self.calculate_optimal_tile_size(width, height)

        working = image
        if (width, height) != (tile_size, tile_size):
            interpolation = cv2.INTER_AREA if min(width, height) > tile_size else cv2.INTER_LINEAR
            working = cv2.resize(image, (tile_size, tile_size), interpolation=interpolation)

        return self.apply_edge_blending(working)

    def apply_edge_blending(self, image: np.ndarray) -> np.ndarray:
        """
        Cross-fade opposite borders so the texture repeats without seams.

        Column i is mixed with its mirror column W-1-i over a band of 10% of
        the width; the mix weight is 0.5 at the outermost pair and rises
        linearly to 1 at the inner edge of the band. Rows get the same
        treatment afterwards, so row 0 == row H-1 and column 0 == column W-1.
        """
        height, width = image.shape[:2]
        result = image.astype(np.float32)
        rgb = result[:, :, :3]

        band = int(width * self.settings.tile_blend_fraction)
        if band > 0:
            own = (0.5 + 0.5 * np.arange(band, dtype=np.float32) / band)[None, :, None]
            left = rgb[:, :band].copy()
            right = rgb[:, ::-1][:, :band].copy()
            rgb[:, :band] = own * left + (1 - own) * right
            rgb[:, width - band:] = (own * right + (1 - own) * left)[:, ::-1]

        band = int(height * self.settings.tile_blend_fraction)
        if band > 0:
            own = (0.5 + 0.5 * np.arange(band, dtype=np.float32) / band)[:, None, None]
            top = rgb[:band].copy()
            bottom = rgb[::-1][:band].copy()
            rgb[:band] = own * top + (1 - own) * bottom
            rgb[height - band:] = (own * bottom + (1 - own) * top)[::-1]

        return np.clip(np.rint(result), 0, 255).astype(np.uint8)

    def detect_material_scale(self, image: np.ndarray) -> float:
        """Coarse scale proxy from the mean distance between edge features, clamped to [0.1, 10]."""
        edges = sobel_magnitude(to_grayscale(image))
        distance = self.calculate_average_feature_distance(edges)
        lo, hi = self.settings.scale_range
        return float(max(lo, min(hi, distance / self.settings.scale_divisor)))

    def calculate_average_feature_distance(self, edges: np.ndarray) -> float:
        ys, xs = np.nonzero(edges > self.settings.edge_threshold)
        if len(xs) < 2:
            return self.settings.default_feature_distance

        # First N edge pixels in raster order
        n = self.settings.max_scale_samples
        points = np.stack([xs[:n], ys[:n]], axis=1).astype(np.float64)
        diffs = points[:, None, :] - points[None, :, :]
        distances = np.sqrt((diffs ** 2).sum(axis=2))
        upper = np.triu_indices(len(points), k=1)
        return float(distances[upper].mean())

    def extract_dominant_colors(self, image: np.ndarray) -> List[int]:
        height, width = image.shape[:2]
        sample_rate = max(1, (width * height) // self.settings.color_sample_target)
        q = self.settings.color_quantization

        pixels = image.reshape(-1, 4)[::sample_rate, :3].astype(np.int64)
        quantized = (pixels // q) * q
        packed = (quantized[:, 0] << 16) | (quantized[:, 1] << 8) | quantized[:, 2]

        # Most frequent first, ties broken by first appearance
        colors, first_seen, counts = np.unique(packed, return_index=True, return_counts=True)
        order = np.lexsort((first_seen, -counts))
        return [int(c) for c in colors[order][: self.settings.dominant_color_count]]
