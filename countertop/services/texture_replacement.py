"""
Deterministic countertop texture replacement.

Runs the CV stages in order (segment, process the material, detect the
countertop plane, warp, relight, feather, blend) and packages the composite
together with debug images and per-stage confidence scores.
"""

import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional, Sequence

import numpy as np

from countertop.config import (
    BLEND_MODE,
    HUGGINGFACE_API_TOKEN,
    SEGMENTATION_API_URL,
    SEGMENTATION_LABELS,
    SEGMENTATION_TIMEOUT,
)
from countertop.cv.blending import BoundaryAlphaBlender, PoissonBlender
from countertop.cv.errors import InvalidImageError, TextureReplacementError
from countertop.cv.geometry_mapping import GeometryMapper
from countertop.cv.imaging import decode_image, encode_image, ensure_rgba, mask_to_rgba
from countertop.cv.relighting import RelightingEngine
from countertop.cv.segmentation import CountertopSegmenter, RemoteSegmentationStrategy
from countertop.cv.settings import DEFAULT_SETTINGS, CVSettings
from countertop.cv.texture_processing import TextureProcessor

# Configure logging
logger = logging.getLogger(__name__)

OUTPUT_FORMATS = ("JPEG", "PNG")
FAST_PROCESSING_MS = 10000

SEGMENTATION_THRESHOLD = 0.7
PERSPECTIVE_THRESHOLD = 0.6
LIGHTING_THRESHOLD = 0.5
OVERALL_THRESHOLD = 0.6


@dataclass
class TextureReplacementOptions:
    feather_radius: int = 8
    preserve_lighting: bool = True
    output_quality: int = 90  # JPEG quality
    max_output_size: int = 2048  # longest side of the kitchen photo
    output_format: str = "JPEG"

    def __post_init__(self):
        if not 0 <= self.output_quality <= 100:
            raise ValueError(f"output_quality must be between 0 and 100, got {self.output_quality}")
        if self.max_output_size <= 0:
            raise ValueError(f"max_output_size must be positive, got {self.max_output_size}")
        self.output_format = self.output_format.upper()
        if self.output_format == "JPG":
            self.output_format = "JPEG"
        if self.output_format not in OUTPUT_FORMATS:
            raise ValueError(f"output_format must be one of {OUTPUT_FORMATS}, got {self.output_format}")


@dataclass
class DebugImages:
    original_mask: bytes
    processed_texture: bytes
    warped_texture: bytes
    lighting: bytes  # empty when lighting is not preserved
    before_blending: bytes


@dataclass
class ReplacementMetadata:
    segmentation_confidence: float
    perspective_confidence: float
    lighting_confidence: float
    processing_time_ms: int
    texture_scale: float


@dataclass
class TextureReplacementResult:
    final_image: bytes
    debug_images: DebugImages
    metadata: ReplacementMetadata


@dataclass
class QualityAssessment:
    overall_score: float
    breakdown: Dict[str, float]
    recommendations: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class PipelineOutput:
    """In-memory pipeline result, before encoding."""

    final_image: np.ndarray
    mask: np.ndarray
    processed_texture: np.ndarray
    warped_texture: np.ndarray
    shading: Optional[np.ndarray]
    before_blending: np.ndarray
    segmentation_confidence: float
    perspective_confidence: float
    lighting_confidence: float
    texture_scale: float


class TextureReplacementEngine:
    """Replaces the countertop surface of a kitchen photo with a material sample."""

    def __init__(self, segmenter: Optional[CountertopSegmenter] = None,
                 texture_processor: Optional[TextureProcessor] = None,
                 geometry_mapper: Optional[GeometryMapper] = None,
                 relighting_engine: Optional[RelightingEngine] = None,
                 settings: CVSettings = DEFAULT_SETTINGS):
        self.segmenter = segmenter or CountertopSegmenter(settings=settings)
        self.texture_processor = texture_processor or TextureProcessor(settings)
        self.geometry_mapper = geometry_mapper or GeometryMapper(settings)
        self.relighting_engine = relighting_engine or RelightingEngine(settings)

    def replace_texture(self, kitchen_image: bytes, material_sample: bytes,
                        options: Optional[TextureReplacementOptions] = None) -> TextureReplacementResult:
        options = options or TextureReplacementOptions()
        start_time = time.time()
        logger.info("Starting deterministic texture replacement pipeline")

        try:
            kitchen = decode_image(kitchen_image, max_size=options.max_output_size)
            material = decode_image(material_sample, max_size=options.max_output_size)
            output = self.render(kitchen, material, options)

            fmt, quality = options.output_format, options.output_quality
            final_image = encode_image(output.final_image, fmt, quality)
            debug_images = DebugImages(
                original_mask=encode_image(mask_to_rgba(output.mask), fmt, quality),
                processed_texture=encode_image(output.processed_texture, fmt, quality),
                warped_texture=encode_image(output.warped_texture, fmt, quality),
                lighting=encode_image(output.shading, fmt, quality) if output.shading is not None else b"",
                before_blending=encode_image(output.before_blending, fmt, quality),
            )
        except InvalidImageError as e:
            logger.error(f"Texture replacement rejected input: {e}")
            raise
        except Exception as e:
            logger.error(f"Texture replacement pipeline failed: {e}")
            raise TextureReplacementError(f"Texture replacement failed: {e}") from e

        processing_time_ms = int((time.time() - start_time) * 1000)
        logger.info(f"Pipeline completed in {processing_time_ms}ms")

        return TextureReplacementResult(
            final_image=final_image,
            debug_images=debug_images,
            metadata=ReplacementMetadata(
                segmentation_confidence=output.segmentation_confidence,
                perspective_confidence=output.perspective_confidence,
                lighting_confidence=output.lighting_confidence,
                processing_time_ms=processing_time_ms,
                texture_scale=output.texture_scale,
            ),
        )

    def render(self, kitchen: np.ndarray, material: np.ndarray,
               options: Optional[TextureReplacementOptions] = None) -> PipelineOutput:
        """Run every stage on decoded RGBA arrays; all outputs share the kitchen photo's size."""
        options = options or TextureReplacementOptions()
        kitchen = ensure_rgba(kitchen, "kitchen image")
        height, width = kitchen.shape[:2]

        # Step 1: Segment the countertop
        segmentation = self.segmenter.segment(kitchen)
        logger.info(f"Segmentation ({segmentation.strategy}) confidence: {segmentation.confidence:.2f}")

        # Step 2: Process the material sample
        texture = self.texture_processor.process(material)
        logger.info(f"Texture scale detected: {texture.scale:.2f}")

        # Step 3: Countertop plane
        perspective = self.geometry_mapper.detect_perspective(kitchen, segmentation.mask)
        logger.info(f"Perspective confidence: {perspective.confidence:.2f}")

        # Step 4: Tile the texture across the plane
        warped = self.geometry_mapper.warp_texture(
            texture.tileable, perspective.homography, width, height, wrap=True
        )

        # Step 5: Transfer the scene's lighting
        shading = None
        lighting_confidence = 0.0
        to_blend = warped
        if options.preserve_lighting:
            lighting = self.relighting_engine.extract_lighting(kitchen, segmentation.mask)
            relit = self.relighting_engine.apply_lighting(warped, lighting, width, height)
            lighting_confidence = lighting.confidence
            shading = relit.preserved_shading
            to_blend = relit.relit_texture
            logger.info(f"Lighting extraction confidence: {lighting_confidence:.2f}")

        # Step 6: Feather and composite
        feathered = self.relighting_engine.create_feathered_mask(
            segmentation.mask, width, height, options.feather_radius
        )
        final = self.relighting_engine.blend_seamlessly(kitchen, to_blend, feathered, width, height)

        return PipelineOutput(
            final_image=final,
            mask=segmentation.mask,
            processed_texture=texture.tileable,
            warped_texture=warped,
            shading=shading,
            before_blending=to_blend,
            segmentation_confidence=segmentation.confidence,
            perspective_confidence=perspective.confidence,
            lighting_confidence=lighting_confidence,
            texture_scale=texture.scale,
        )

    def batch_replace_textures(self, kitchen_images: Sequence[bytes], material_sample: bytes,
                               options: Optional[TextureReplacementOptions] = None) -> List[TextureReplacementResult]:
        """Process each kitchen photo against one material; failed photos are logged and skipped."""
        total = len(kitchen_images)
        logger.info(f"Starting batch processing of {total} images")

        results = []
        for i, kitchen_image in enumerate(kitchen_images, start=1):
            logger.info(f"Processing image {i}/{total}")
            try:
                results.append(self.replace_texture(kitchen_image, material_sample, options))
            except Exception as e:
                logger.error(f"Failed to process image {i}: {e}")

        logger.info(f"Batch processing completed. Successfully processed {len(results)}/{total} images")
        return results

    def assess_replacement_quality(self, result: TextureReplacementResult) -> QualityAssessment:
        metadata = result.metadata
        recommendations = []

        segmentation = metadata.segmentation_confidence
        if segmentation < SEGMENTATION_THRESHOLD:
            recommendations.append(
                "Low segmentation quality detected. Consider using a clearer kitchen image with visible countertops."
            )

        perspective = metadata.perspective_confidence
        if perspective < PERSPECTIVE_THRESHOLD:
            recommendations.append(
                "Perspective detection struggled. Try using an image with more defined countertop edges."
            )

        lighting = metadata.lighting_confidence
        if lighting < LIGHTING_THRESHOLD:
            recommendations.append("Lighting extraction quality is low. The result may look less realistic.")

        # Blending has no direct signal; a fast run is taken as a clean one
        blending = min(1.0, 0.8 + (0.2 if metadata.processing_time_ms < FAST_PROCESSING_MS else 0.0))

        overall = segmentation * 0.3 + perspective * 0.3 + lighting * 0.2 + blending * 0.2
        if overall < OVERALL_THRESHOLD:
            recommendations.append("Overall quality is below optimal. Consider using higher quality input images.")

        return QualityAssessment(
            overall_score=overall,
            breakdown={
                "segmentation": segmentation,
                "perspective": perspective,
                "lighting": lighting,
                "blending": blending,
            },
            recommendations=recommendations,
        )


def create_default_engine(settings: CVSettings = DEFAULT_SETTINGS) -> TextureReplacementEngine:
    """Engine wired from the environment: remote segmentation when configured, chosen blender."""
    strategies = []
    if SEGMENTATION_API_URL:
        strategies.append(RemoteSegmentationStrategy(
            SEGMENTATION_API_URL,
            api_token=HUGGINGFACE_API_TOKEN,
            labels=SEGMENTATION_LABELS,
            timeout=SEGMENTATION_TIMEOUT,
        ))

    if BLEND_MODE == "poisson":
        blender = PoissonBlender(settings.blend_threshold)
    else:
        blender = BoundaryAlphaBlender(settings.blend_threshold)

    return TextureReplacementEngine(
        segmenter=CountertopSegmenter(strategies, settings),
        relighting_engine=RelightingEngine(settings, blender),
        settings=settings,
    )
