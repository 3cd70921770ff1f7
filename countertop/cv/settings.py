"""
Tunable heuristics for the countertop CV pipeline.

Every threshold the stages rely on lives here as a named constant, and
``CVSettings`` bundles them so each component receives its configuration
through the constructor instead of reading globals.
"""

from dataclasses import dataclass
from typing import Tuple

# Segmentation
EDGE_THRESHOLD = 50
SEARCH_BAND = (0.3, 0.8)  # fraction of image height
FALLBACK_SEGMENTATION_CONFIDENCE = 0.8

# Texture processing
MIN_TILE_SIZE = 256
MAX_TILE_SIZE = 1024
TILE_BLEND_FRACTION = 0.1
RETINEX_SIGMA_DIVISOR = 3.0  # sigma = min(width, height) / divisor
SCALE_DIVISOR = 50.0
DEFAULT_FEATURE_DISTANCE = 50.0
MAX_SCALE_SAMPLES = 100
SCALE_RANGE = (0.1, 10.0)
DOMINANT_COLOR_COUNT = 5
COLOR_QUANTIZATION = 16
COLOR_SAMPLE_TARGET = 10000

# Geometry
HARRIS_WINDOW = 3
HARRIS_K = 0.04
HARRIS_THRESHOLD = 0.01
MAX_CORNERS = 20
TEXTURE_PLANE_SIZE = 512
PREFERRED_ASPECT_RATIO = 1.5
AREA_CONFIDENCE_WEIGHT = 0.6
ASPECT_CONFIDENCE_WEIGHT = 0.4
SINGULAR_EPSILON = 1e-10

# Relighting
RETINEX_SCALES = (15.0, 80.0, 250.0)
REFLECTANCE_FLOOR = 0.1
BLEND_THRESHOLD = 128


@dataclass(frozen=True)
class CVSettings:
    """Configuration shared by the segmentation, texture, geometry and lighting stages."""

    edge_threshold: int = EDGE_THRESHOLD
    search_band: Tuple[float, float] = SEARCH_BAND
    fallback_segmentation_confidence: float = FALLBACK_SEGMENTATION_CONFIDENCE

    min_tile_size: int = MIN_TILE_SIZE
    max_tile_size: int = MAX_TILE_SIZE
    tile_blend_fraction: float = TILE_BLEND_FRACTION
    retinex_sigma_divisor: float = RETINEX_SIGMA_DIVISOR
    scale_divisor: float = SCALE_DIVISOR
    default_feature_distance: float = DEFAULT_FEATURE_DISTANCE
    max_scale_samples: int = MAX_SCALE_SAMPLES
    scale_range: Tuple[float, float] = SCALE_RANGE
    dominant_color_count: int = DOMINANT_COLOR_COUNT
    color_quantization: int = COLOR_QUANTIZATION
    color_sample_target: int = COLOR_SAMPLE_TARGET

    harris_window: int = HARRIS_WINDOW
    harris_k: float = HARRIS_K
    harris_threshold: float = HARRIS_THRESHOLD
    max_corners: int = MAX_CORNERS
    texture_plane_size: int = TEXTURE_PLANE_SIZE
    preferred_aspect_ratio: float = PREFERRED_ASPECT_RATIO
    area_confidence_weight: float = AREA_CONFIDENCE_WEIGHT
    aspect_confidence_weight: float = ASPECT_CONFIDENCE_WEIGHT
    singular_epsilon: float = SINGULAR_EPSILON

    retinex_scales: Tuple[float, ...] = RETINEX_SCALES
    reflectance_floor: float = REFLECTANCE_FLOOR
    blend_threshold: int = BLEND_THRESHOLD


DEFAULT_SETTINGS = CVSettings()
