import numpy as np
import pytest

from countertop.cv.blending import BoundaryAlphaBlender, PoissonBlender, find_mask_boundary
from countertop.cv.errors import InvalidImageError
from countertop.cv.relighting import LightingComponents, RelightingEngine


@pytest.fixture
def relighting():
    return RelightingEngine()


@pytest.fixture
def square_mask():
    mask = np.zeros((60, 60), dtype=np.uint8)
    mask[10:50, 10:50] = 255
    return mask


def _relaxed_distances(mask):
    """Reference 4-neighbour relaxation, one pixel at a time."""
    h, w = mask.shape
    d = np.full((h, w), np.inf)
    for y in range(h):
        for x in range(w):
            if mask[y, x] == 0:
                d[y, x] = 0
                continue
            for ny, nx in ((y - 1, x), (y + 1, x), (y, x - 1), (y, x + 1)):
                if not (0 <= ny < h and 0 <= nx < w) or mask[ny, nx] == 0:
                    d[y, x] = 0
    for _ in range(max(w, h)):
        changed = False
        for y in range(1, h - 1):
            for x in range(1, w - 1):
                if mask[y, x] > 0:
                    best = min(d[y - 1, x], d[y + 1, x], d[y, x - 1], d[y, x + 1]) + 1
                    if best < d[y, x]:
                        d[y, x] = best
                        changed = True
        if not changed:
            break
    return d


def test_uniform_region_has_neutral_shading(relighting, solid, square_mask):
    image = solid(60, 60, 255)
    image[10:50, 10:50, :3] = 140

    lighting = relighting.extract_lighting(image, square_mask)

    assert (lighting.width, lighting.height) == (60, 60)
    np.testing.assert_allclose(lighting.shading[square_mask > 0], 1.0, atol=1e-3)
    assert (lighting.shading[square_mask == 0] == 1.0).all()
    assert lighting.confidence > 0.99


def test_shading_follows_scene_light(relighting, solid, square_mask):
    image = solid(60, 60, 255)
    image[10:50, 10:50, :3] = np.linspace(60, 200, 40).astype(np.uint8)[None, :, None]

    lighting = relighting.extract_lighting(image, square_mask)

    shading = lighting.shading
    assert shading[30, 12] < 1.0 < shading[30, 47]
    # Relative to the region's own average light
    assert np.exp(np.log(shading[square_mask > 0]).mean()) == pytest.approx(1.0, abs=1e-3)
    assert 0.0 <= lighting.confidence <= 1.0


def test_empty_mask_lighting(relighting, solid):
    lighting = relighting.extract_lighting(solid(20, 10, 50), np.zeros((10, 20), dtype=np.uint8))
    assert lighting.confidence == 0.0
    assert (lighting.shading == 1.0).all()


def test_lighting_rejects_mismatched_mask(relighting, solid):
    with pytest.raises(InvalidImageError):
        relighting.extract_lighting(solid(20, 10, 50), np.zeros((20, 10), dtype=np.uint8))


def test_apply_lighting_multiplies_and_clamps(relighting, solid):
    texture = solid(4, 4, 100)
    texture[0, 0, :3] = 200
    shading = np.full((4, 4), 2.0, dtype=np.float32)
    lighting = LightingComponents(shading, np.zeros_like(shading), 0.7, 4, 4)

    result = relighting.apply_lighting(texture, lighting, 4, 4)

    assert (result.relit_texture[1:, 1:, :3] == 200).all()
    assert (result.relit_texture[0, 0, :3] == 255).all()
    assert (result.relit_texture[:, :, 3] == 255).all()
    assert result.confidence == 0.7
    assert result.preserved_shading.shape == (4, 4, 4)


def test_apply_lighting_resizes_to_destination(relighting, solid):
    shading = np.ones((2, 4), dtype=np.float32)
    shading[:, 2:] = 0.5
    lighting = LightingComponents(shading, np.zeros_like(shading), 1.0, 4, 2)

    result = relighting.apply_lighting(solid(3, 3, 100), lighting, 8, 4)

    assert result.relit_texture.shape == (4, 8, 4)
    assert result.relit_texture[0, 0, 0] == 100
    assert result.relit_texture[0, 7, 0] == 50


def test_distance_transform_matches_relaxation(relighting):
    rng = np.random.default_rng(2)
    mask = np.zeros((14, 16), dtype=np.uint8)
    mask[2:12, 1:15] = 255
    mask[rng.random(mask.shape) > 0.9] = 0
    mask[0, 5:9] = 255  # touches the image border

    np.testing.assert_array_equal(relighting.compute_distance_transform(mask), _relaxed_distances(mask))


def test_feathered_mask_ramps_up_from_edge(relighting, square_mask):
    feathered = relighting.create_feathered_mask(square_mask, 60, 60, 8)

    row = feathered[30, 10:31].astype(int)
    assert row[0] == 0
    assert (np.diff(row) >= 0).all()
    assert (row[8:] == 255).all()
    assert 0 < row[4] < 255
    assert not feathered[square_mask == 0].any()


def test_zero_radius_binarizes(relighting):
    mask = np.zeros((5, 5), dtype=np.uint8)
    mask[1:4, 1:4] = 7
    feathered = relighting.create_feathered_mask(mask, 5, 5, 0)
    assert set(np.unique(feathered).tolist()) == {0, 255}
    assert feathered[2, 2] == 255


def test_blend_takes_overlay_inside_mask(relighting, solid, square_mask):
    base = solid(60, 60, 10)
    overlay = solid(60, 60, 250)

    blended = relighting.blend_seamlessly(base, overlay, square_mask, 60, 60)

    assert (blended[square_mask > 0] == overlay[square_mask > 0]).all()
    assert (blended[square_mask == 0] == base[square_mask == 0]).all()


def test_blend_mixes_partial_coverage(relighting, solid):
    mask = np.zeros((5, 5), dtype=np.uint8)
    mask[2, 2] = 128
    blended = relighting.blend_seamlessly(solid(5, 5, 0), solid(5, 5, 200), mask, 5, 5)
    assert blended[2, 2, 0] == 100
    assert blended[0, 0, 0] == 0


def test_mask_boundary_straddles_threshold(square_mask):
    boundary = find_mask_boundary(square_mask)
    assert boundary[30, 10] and boundary[30, 9]
    assert not boundary[30, 30]
    assert not boundary[0, 0]


def test_poisson_blender_keeps_far_pixels(solid, square_mask):
    base = solid(60, 60, 30)
    overlay = solid(60, 60, 220)

    blended = PoissonBlender().blend(base, overlay, square_mask)

    assert blended.shape == base.shape
    assert (blended[:5, :5] == base[:5, :5]).all()
    np.testing.assert_array_equal(blended[:, :, 3], base[:, :, 3])


def test_poisson_blender_empty_mask(solid):
    base = solid(10, 10, 30)
    blended = PoissonBlender().blend(base, solid(10, 10, 220), np.zeros((10, 10), dtype=np.uint8))
    np.testing.assert_array_equal(blended, BoundaryAlphaBlender().blend(base, base, np.zeros((10, 10), dtype=np.uint8)))
