"""
Countertop plane geometry.

Finds the quadrilateral the countertop occupies in the photo, solves the
homography between the flat texture plane and that quadrilateral, and warps
a texture into image coordinates through it.
"""

import itertools
import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Sequence

import cv2
import numpy as np

from countertop.cv.imaging import (
    BoundingBox,
    bilinear_sample,
    check_mask,
    ensure_rgba,
    get_mask_bounding_box,
    to_grayscale,
)
from countertop.cv.settings import DEFAULT_SETTINGS, SINGULAR_EPSILON, CVSettings

logger = logging.getLogger(__name__)

IDENTITY = np.array([1, 0, 0, 0, 1, 0, 0, 0, 1], dtype=np.float64)


@dataclass(frozen=True)
class Point2D:
    x: float
    y: float


@dataclass(frozen=True)
class Quadrilateral:
    top_left: Point2D
    top_right: Point2D
    bottom_right: Point2D
    bottom_left: Point2D

    def points(self) -> List[Point2D]:
        return [self.top_left, self.top_right, self.bottom_right, self.bottom_left]

    def area(self) -> float:
        """Shoelace area."""
        pts = self.points()
        total = 0.0
        for i in range(4):
            j = (i + 1) % 4
            total += pts[i].x * pts[j].y - pts[j].x * pts[i].y
        return abs(total) / 2

    def aspect_ratio(self) -> float:
        """Longer horizontal side over longer vertical side; 0 for a flat quad."""
        width = max(_distance(self.top_left, self.top_right), _distance(self.bottom_left, self.bottom_right))
        height = max(_distance(self.top_left, self.bottom_left), _distance(self.top_right, self.bottom_right))
        if height == 0:
            return 0.0
        return width / height


@dataclass
class Homography:
    """Texture-plane -> image transform (flat 3x3, row-major) and its inverse."""

    matrix: np.ndarray
    inverse: np.ndarray
    degenerate: bool = False  # inverse fell back to identity

    def apply(self, x: float, y: float) -> Point2D:
        return _project(self.matrix, x, y)

    def apply_inverse(self, x: float, y: float) -> Point2D:
        return _project(self.inverse, x, y)


@dataclass
class PerspectiveResult:
    quadrilateral: Quadrilateral
    homography: Homography
    confidence: float


def _distance(a: Point2D, b: Point2D) -> float:
    return math.hypot(a.x - b.x, a.y - b.y)


def _project(m: np.ndarray, x: float, y: float) -> Point2D:
    w = m[6] * x + m[7] * y + m[8]
    return Point2D((m[0] * x + m[1] * y + m[2]) / w, (m[3] * x + m[4] * y + m[5]) / w)


def invert_matrix_3x3(matrix: Sequence[float], epsilon: float = SINGULAR_EPSILON) -> np.ndarray:
    """Closed-form adjugate inverse; identity when |det| < epsilon."""
    a, b, c, d, e, f, g, h, i = [float(v) for v in matrix]
    det = a * (e * i - f * h) - b * (d * i - f * g) + c * (d * h - e * g)
    if abs(det) < epsilon:
        return IDENTITY.copy()

    return np.array([
        (e * i - f * h) / det, (c * h - b * i) / det, (b * f - c * e) / det,
        (f * g - d * i) / det, (a * i - c * g) / det, (c * d - a * f) / det,
        (d * h - e * g) / det, (b * g - a * h) / det, (a * e - b * d) / det,
    ], dtype=np.float64)


def _normalizing_transform(points: np.ndarray) -> np.ndarray:
    """Similarity moving the centroid to the origin with mean distance sqrt(2) (Hartley)."""
    centroid = points.mean(axis=0)
    mean_distance = np.sqrt(((points - centroid) ** 2).sum(axis=1)).mean()
    scale = math.sqrt(2) / mean_distance if mean_distance > 0 else 1.0
    return np.array([
        [scale, 0, -scale * centroid[0]],
        [0, scale, -scale * centroid[1]],
        [0, 0, 1],
    ], dtype=np.float64)


def solve_homography(src: Sequence[Point2D], dst: Sequence[Point2D],
                     epsilon: float = SINGULAR_EPSILON) -> np.ndarray:
    """
    Direct Linear Transform for four correspondences.

    Builds the 8x9 system A h = 0 on normalized coordinates and takes the
    right singular vector of the smallest singular value. The result is
    scaled so h33 = 1 whenever h33 is not ~0.
    """
    src_pts = np.array([[p.x, p.y] for p in src], dtype=np.float64)
    dst_pts = np.array([[q.x, q.y] for q in dst], dtype=np.float64)
    t_src = _normalizing_transform(src_pts)
    t_dst = _normalizing_transform(dst_pts)
    src_n = src_pts @ t_src[:2, :2].T + t_src[:2, 2]
    dst_n = dst_pts @ t_dst[:2, :2].T + t_dst[:2, 2]

    rows = []
    for (x, y), (u, v) in zip(src_n, dst_n):
        rows.append([x, y, 1, 0, 0, 0, -u * x, -u * y, -u])
        rows.append([0, 0, 0, x, y, 1, -v * x, -v * y, -v])
    a = np.array(rows, dtype=np.float64)

    _, _, vt = np.linalg.svd(a)
    h_n = vt[-1].reshape(3, 3)
    h = (np.linalg.inv(t_dst) @ h_n @ t_src).ravel()
    if abs(h[8]) > epsilon:
        h = h / h[8]
    return h


def convex_hull(points: Sequence[Point2D]) -> List[Point2D]:
    """Andrew's monotone chain; collinear points are dropped."""
    pts = sorted(set(points), key=lambda p: (p.x, p.y))
    if len(pts) <= 1:
        return list(pts)

    def cross(o, a, b):
        return (a.x - o.x) * (b.y - o.y) - (a.y - o.y) * (b.x - o.x)

    lower: List[Point2D] = []
    for p in pts:
        while len(lower) >= 2 and cross(lower[-2], lower[-1], p) <= 0:
            lower.pop()
        lower.append(p)

    upper: List[Point2D] = []
    for p in reversed(pts):
        while len(upper) >= 2 and cross(upper[-2], upper[-1], p) <= 0:
            upper.pop()
        upper.append(p)

    return lower[:-1] + upper[:-1]


def _point_segment_distances(points: np.ndarray, starts: np.ndarray, ends: np.ndarray) -> np.ndarray:
    """Distance from every point (P, 2) to every segment (S, 2)->(S, 2); returns (P, S)."""
    seg = ends - starts
    len_sq = (seg ** 2).sum(axis=1)
    rel = points[:, None, :] - starts[None, :, :]
    safe = np.where(len_sq > 0, len_sq, 1.0)
    t = np.clip((rel * seg[None, :, :]).sum(axis=2) / safe, 0.0, 1.0)
    t = np.where(len_sq > 0, t, 0.0)
    closest = starts[None, :, :] + t[:, :, None] * seg[None, :, :]
    return np.sqrt(((points[:, None, :] - closest) ** 2).sum(axis=2))


def sort_quadrilateral_points(points: Sequence[Point2D]) -> List[Point2D]:
    """Order by angle around the centroid: top-left, top-right, bottom-right, bottom-left in raster coordinates."""
    cx = sum(p.x for p in points) / len(points)
    cy = sum(p.y for p in points) / len(points)
    return sorted(points, key=lambda p: math.atan2(p.y - cy, p.x - cx))


class GeometryMapper:
    """Perspective detection and texture warping for the countertop plane."""

    def __init__(self, settings: CVSettings = DEFAULT_SETTINGS):
        self.settings = settings

    def detect_perspective(self, image: np.ndarray, mask: np.ndarray) -> PerspectiveResult:
        image = ensure_rgba(image, "kitchen image")
        height, width = image.shape[:2]
        mask = check_mask(mask, width, height)

        bounding_box = get_mask_bounding_box(mask)
        if bounding_box is None:
            # Nothing to map onto: use the whole frame so the transform stays invertible
            quad = Quadrilateral(Point2D(0, 0), Point2D(width - 1, 0),
                                 Point2D(width - 1, height - 1), Point2D(0, height - 1))
            return PerspectiveResult(quad, self.compute_homography(quad), 0.0)

        quad = self.find_countertop_corners(image, mask, bounding_box)
        homography = self.compute_homography(quad)
        confidence = self.calculate_perspective_confidence(quad, mask)
        if homography.degenerate:
            logger.warning("Countertop quadrilateral is degenerate; using identity inverse")
        return PerspectiveResult(quad, homography, confidence)

    def find_countertop_corners(self, image: np.ndarray, mask: np.ndarray,
                                bounding_box: BoundingBox) -> Quadrilateral:
        edge_pixels = self.extract_mask_edges(mask)
        corners = self.harris_corner_detection(image, edge_pixels)
        return self.select_quadrilateral_corners(corners, bounding_box)

    def extract_mask_edges(self, mask: np.ndarray) -> np.ndarray:
        """(N, 2) x/y of interior mask pixels with at least one 8-neighbour outside the mask."""
        inside = mask > 0
        height, width = inside.shape
        if height < 3 or width < 3:
            return np.empty((0, 2), dtype=np.int64)

        center = inside[1:-1, 1:-1]
        any_outside = np.zeros_like(center)
        for dy in (-1, 0, 1):
            for dx in (-1, 0, 1):
                if dy == 0 and dx == 0:
                    continue
                any_outside |= ~inside[1 + dy:height - 1 + dy, 1 + dx:width - 1 + dx]

        ys, xs = np.nonzero(center & any_outside)
        return np.stack([xs + 1, ys + 1], axis=1)

    def harris_corner_detection(self, image: np.ndarray, edge_pixels: np.ndarray) -> List[Point2D]:
        """Harris response on the mask boundary; strongest candidates first."""
        if len(edge_pixels) == 0:
            return []

        intensity = to_grayscale(image).astype(np.float64)
        height, width = intensity.shape
        ix = np.zeros_like(intensity)
        iy = np.zeros_like(intensity)
        ix[1:-1, 1:-1] = intensity[1:-1, 2:] - intensity[1:-1, :-2]
        iy[1:-1, 1:-1] = intensity[2:, 1:-1] - intensity[:-2, 1:-1]

        window = (self.settings.harris_window, self.settings.harris_window)
        sxx = cv2.boxFilter(ix * ix, -1, window, normalize=False, borderType=cv2.BORDER_CONSTANT)
        syy = cv2.boxFilter(iy * iy, -1, window, normalize=False, borderType=cv2.BORDER_CONSTANT)
        sxy = cv2.boxFilter(ix * iy, -1, window, normalize=False, borderType=cv2.BORDER_CONSTANT)

        radius = self.settings.harris_window // 2
        xs, ys = edge_pixels[:, 0], edge_pixels[:, 1]
        inside = (xs >= radius) & (xs < width - radius) & (ys >= radius) & (ys < height - radius)
        xs, ys = xs[inside], ys[inside]

        det = sxx[ys, xs] * syy[ys, xs] - sxy[ys, xs] ** 2
        trace = sxx[ys, xs] + syy[ys, xs]
        response = det - self.settings.harris_k * trace * trace

        strong = response > self.settings.harris_threshold
        xs, ys, response = xs[strong], ys[strong], response[strong]
        order = np.argsort(-response, kind="stable")[: self.settings.max_corners]
        return [Point2D(float(xs[i]), float(ys[i])) for i in order]

    def select_quadrilateral_corners(self, corners: List[Point2D],
                                     bounding_box: BoundingBox) -> Quadrilateral:
        if len(corners) < 4:
            bb = bounding_box
            return Quadrilateral(
                Point2D(bb.x, bb.y),
                Point2D(bb.x + bb.width, bb.y),
                Point2D(bb.x + bb.width, bb.y + bb.height),
                Point2D(bb.x, bb.y + bb.height),
            )

        hull = convex_hull(corners)
        if len(hull) >= 4:
            return Quadrilateral(*self.approximate_quadrilateral(hull))

        # Collinear-ish corners: fall back to the extreme points
        return Quadrilateral(
            top_left=min(corners, key=lambda p: p.y),
            top_right=max(corners, key=lambda p: p.x),
            bottom_right=max(corners, key=lambda p: p.y),
            bottom_left=min(corners, key=lambda p: p.x),
        )

    def approximate_quadrilateral(self, hull: List[Point2D]) -> List[Point2D]:
        """Four hull vertices whose polygon best fits the whole hull (least squared edge distance)."""
        if len(hull) == 4:
            return sort_quadrilateral_points(hull)

        pts = np.array([[p.x, p.y] for p in hull], dtype=np.float64)
        n = len(pts)
        # dist[p, i, j]: hull point p to segment hull[i] -> hull[j]
        ii, jj = np.meshgrid(np.arange(n), np.arange(n), indexing="ij")
        dist = _point_segment_distances(pts, pts[ii.ravel()], pts[jj.ravel()]).reshape(n, n, n)

        combos = np.array(list(itertools.combinations(range(n), 4)))
        a, b, c, d = combos.T
        nearest = np.minimum.reduce([dist[:, a, b], dist[:, b, c], dist[:, c, d], dist[:, d, a]])
        errors = (nearest ** 2).sum(axis=0)
        best = combos[int(np.argmin(errors))]
        return sort_quadrilateral_points([hull[i] for i in best])

    def compute_homography(self, quad: Quadrilateral) -> Homography:
        size = float(self.settings.texture_plane_size)
        plane = [Point2D(0, 0), Point2D(size, 0), Point2D(size, size), Point2D(0, size)]
        matrix = solve_homography(plane, quad.points(), self.settings.singular_epsilon)

        a, b, c, d, e, f, g, h, i = matrix
        det = a * (e * i - f * h) - b * (d * i - f * g) + c * (d * h - e * g)
        degenerate = abs(det) < self.settings.singular_epsilon
        inverse = invert_matrix_3x3(matrix, self.settings.singular_epsilon)
        return Homography(matrix=matrix, inverse=inverse, degenerate=degenerate)

    def calculate_perspective_confidence(self, quad: Quadrilateral, mask: np.ndarray) -> float:
        quad_area = quad.area()
        mask_area = float(np.count_nonzero(mask))

        # Symmetric: penalizes the quad for over- or under-covering the mask
        if quad_area > 0 and mask_area > 0:
            area_ratio = min(quad_area / mask_area, mask_area / quad_area)
        else:
            area_ratio = 0.0

        aspect_confidence = 1.0 - abs(quad.aspect_ratio() - self.settings.preferred_aspect_ratio) / 2.0

        confidence = (area_ratio * self.settings.area_confidence_weight
                      + aspect_confidence * self.settings.aspect_confidence_weight)
        return float(max(0.0, min(1.0, confidence)))

    def warp_texture(self, texture: np.ndarray, homography: Homography,
                     width: int, height: int, wrap: bool = False) -> np.ndarray:
        """
        Inverse-map every destination pixel into the texture and sample it bilinearly.

        Pixels that land outside the texture are left transparent black unless
        ``wrap`` is set, in which case a tileable texture repeats across the
        plane. Pixels beyond the plane's horizon are always skipped.
        """
        texture = ensure_rgba(texture, "texture")
        tex_h, tex_w = texture.shape[:2]
        result = np.zeros((height, width, 4), dtype=np.uint8)

        m = homography.inverse
        xs, ys = np.meshgrid(np.arange(width, dtype=np.float64), np.arange(height, dtype=np.float64))
        w = m[6] * xs + m[7] * ys + m[8]

        # Points in front of the plane share the sign of w at the plane origin
        front = 1.0
        if not homography.degenerate and homography.matrix[8] < 0:
            front = -1.0
        valid = w * front > 1e-12

        with np.errstate(divide="ignore", invalid="ignore"):
            src_x = (m[0] * xs + m[1] * ys + m[2]) / w
            src_y = (m[3] * xs + m[4] * ys + m[5]) / w

        if not wrap:
            valid &= (src_x >= 0) & (src_x < tex_w - 1) & (src_y >= 0) & (src_y < tex_h - 1)
        else:
            valid &= np.isfinite(src_x) & np.isfinite(src_y)

        if valid.any():
            result[valid] = bilinear_sample(texture, src_x[valid], src_y[valid], wrap=wrap)
        return result
