"""
Countertop segmentation.

Two strategies share one interface: a learned segmentation service reached
over HTTP, and a deterministic edge-detection + flood-fill heuristic. The
segmenter tries them in order and falls back whenever a strategy reports
``SegmentationUnavailable``; the heuristic always produces a mask.
"""

import base64
import io
import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence

import cv2
import numpy as np
import requests
from PIL import Image, UnidentifiedImageError

from countertop.cv.errors import InvalidImageError, SegmentationUnavailable
from countertop.cv.imaging import (
    BoundingBox,
    encode_image,
    ensure_rgba,
    get_mask_bounding_box,
    sobel_magnitude,
    to_grayscale,
)
from countertop.cv.settings import DEFAULT_SETTINGS, CVSettings

# Configure logging
logger = logging.getLogger(__name__)


@dataclass
class SegmentationResult:
    mask: np.ndarray
    confidence: float
    bounding_box: Optional[BoundingBox]
    strategy: str = "heuristic"


class SegmentationStrategy:
    """A way of producing a countertop mask from an RGBA photo."""

    name = "base"

    def segment(self, image: np.ndarray) -> SegmentationResult:
        raise NotImplementedError


class RemoteSegmentationStrategy(SegmentationStrategy):
    """
    Learned segmentation behind an HTTP endpoint.

    Speaks the Hugging Face image-segmentation response format: a JSON list
    of ``{"label", "score", "mask"}`` entries where ``mask`` is a base64 PNG.
    Masks whose label names a countertop are merged into one binary mask.
    Every failure (not configured, network error, timeout, bad status,
    unexpected payload, no countertop found) surfaces as
    ``SegmentationUnavailable`` so the segmenter can fall back.
    """

    name = "remote"

    def __init__(self, api_url: Optional[str], api_token: Optional[str] = None,
                 labels: Iterable[str] = ("countertop",), timeout: float = 30,
                 session: Optional[requests.Session] = None):
        self.api_url = api_url
        self.api_token = api_token
        self.labels = {label.strip().lower() for label in labels if label.strip()}
        self.timeout = timeout
        self.session = session or requests

    def segment(self, image: np.ndarray) -> SegmentationResult:
        if not self.api_url:
            raise SegmentationUnavailable("no segmentation endpoint configured", self.name)

        height, width = image.shape[:2]
        headers = {"Content-Type": "image/png", "Accept": "application/json"}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"

        try:
            r = self.session.post(self.api_url, data=encode_image(image, fmt="PNG"),
                                  headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise SegmentationUnavailable(f"request failed: {e}", self.name) from e

        if r.status_code != 200:
            raise SegmentationUnavailable(f"service error {r.status_code}: {r.text[:200]}", self.name)

        try:
            payload = r.json()
        except ValueError as e:
            raise SegmentationUnavailable("response is not JSON", self.name) from e
        if not isinstance(payload, list):
            raise SegmentationUnavailable(f"unexpected response shape: {type(payload).__name__}", self.name)

        merged = np.zeros((height, width), dtype=np.uint8)
        best_score = 0.0
        for entry in payload:
            if not isinstance(entry, dict) or "mask" not in entry:
                raise SegmentationUnavailable("segment entry without a mask", self.name)
            label = str(entry.get("label", "")).lower()
            if label not in self.labels:
                continue
            try:
                score = float(entry.get("score") or 0.0)
            except (TypeError, ValueError) as e:
                raise SegmentationUnavailable(f"non-numeric score: {entry.get('score')!r}", self.name) from e
            merged = np.maximum(merged, self._decode_mask(entry["mask"], width, height))
            best_score = max(best_score, score)

        if not merged.any():
            raise SegmentationUnavailable("no countertop segment in response", self.name)

        return SegmentationResult(
            mask=merged,
            confidence=min(1.0, max(0.0, best_score)),
            bounding_box=get_mask_bounding_box(merged),
            strategy=self.name,
        )

    def _decode_mask(self, encoded: str, width: int, height: int) -> np.ndarray:
        try:
            raw = base64.b64decode(encoded)
            mask_image = Image.open(io.BytesIO(raw)).convert("L")
        except (ValueError, TypeError, UnidentifiedImageError, OSError) as e:
            raise SegmentationUnavailable(f"undecodable mask: {e}", self.name) from e
        mask_image = mask_image.resize((width, height), Image.Resampling.NEAREST)
        return np.where(np.array(mask_image) >= 128, 255, 0).astype(np.uint8)


class HeuristicSegmentationStrategy(SegmentationStrategy):
    """
    Edge detection + flood fill.

    Countertops are assumed to sit in the middle-lower band of the photo as
    flat, low-gradient surfaces bordered by strong edges. Every strong edge
    pixel inside the band seeds a 4-connected fill over its low-gradient
    neighbours. Regions that reach the image frame are walls, floors or
    background rather than a bordered surface, and are dropped.
    """

    name = "heuristic"

    def __init__(self, settings: CVSettings = DEFAULT_SETTINGS):
        self.settings = settings

    def segment(self, image: np.ndarray) -> SegmentationResult:
        edges = sobel_magnitude(to_grayscale(image))
        mask = self.find_countertop_region(edges)
        bounding_box = get_mask_bounding_box(mask)

        # Fixed heuristic confidence; nothing found is the degenerate case
        confidence = self.settings.fallback_segmentation_confidence if bounding_box else 0.0
        return SegmentationResult(mask=mask, confidence=confidence,
                                  bounding_box=bounding_box, strategy=self.name)

    def find_countertop_region(self, edges: np.ndarray) -> np.ndarray:
        height, width = edges.shape
        threshold = self.settings.edge_threshold
        band_start = int(height * self.settings.search_band[0])
        band_end = int(height * self.settings.search_band[1])

        flat = (edges < threshold).astype(np.uint8)
        strong = np.zeros_like(flat, dtype=bool)
        strong[band_start:band_end] = edges[band_start:band_end] > threshold

        # Low-gradient 4-neighbours of the strong edge pixels start the fill
        seeds = np.zeros_like(strong)
        seeds[:-1, :] |= strong[1:, :]
        seeds[1:, :] |= strong[:-1, :]
        seeds[:, :-1] |= strong[:, 1:]
        seeds[:, 1:] |= strong[:, :-1]
        seeds &= flat.astype(bool)

        mask = np.zeros((height, width), dtype=np.uint8)
        if not seeds.any():
            return mask

        _, labels = cv2.connectedComponents(flat, connectivity=4)
        seeded = set(np.unique(labels[seeds]).tolist())
        border_labels = np.concatenate([labels[0, :], labels[-1, :], labels[:, 0], labels[:, -1]])
        border_labels = set(np.unique(border_labels).tolist())
        keep = sorted(seeded - border_labels - {0})
        if keep:
            mask[np.isin(labels, keep)] = 255
        return mask


class CountertopSegmenter:
    """Ordered-fallback segmentation: the first strategy that produces a mask wins."""

    def __init__(self, strategies: Optional[Sequence[SegmentationStrategy]] = None,
                 settings: CVSettings = DEFAULT_SETTINGS):
        strategies = list(strategies or [])
        if not any(isinstance(s, HeuristicSegmentationStrategy) for s in strategies):
            strategies.append(HeuristicSegmentationStrategy(settings))
        self.strategies: List[SegmentationStrategy] = strategies

    def segment(self, image: np.ndarray) -> SegmentationResult:
        image = ensure_rgba(image, "kitchen image")

        last_error = None
        for strategy in self.strategies:
            try:
                result = strategy.segment(image)
            except SegmentationUnavailable as e:
                logger.warning(f"{strategy.name} segmentation failed, falling back: {e}")
                last_error = e
                continue
            if result.mask.shape != image.shape[:2]:
                raise InvalidImageError(
                    f"{strategy.name} segmentation returned a {result.mask.shape} mask "
                    f"for a {image.shape[:2]} image"
                )
            return result

        raise last_error or SegmentationUnavailable("no segmentation strategy configured")
