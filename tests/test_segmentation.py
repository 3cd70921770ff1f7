import base64
import io
import logging

import numpy as np
import pytest
import requests
from PIL import Image

from countertop.cv.errors import InvalidImageError, SegmentationUnavailable
from countertop.cv.imaging import BoundingBox
from countertop.cv.segmentation import (
    CountertopSegmenter,
    HeuristicSegmentationStrategy,
    RemoteSegmentationStrategy,
    SegmentationResult,
    SegmentationStrategy,
)


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON object could be decoded")
        return self._payload


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def post(self, url, data=None, headers=None, timeout=None):
        self.calls.append({"url": url, "data": data, "headers": headers, "timeout": timeout})
        if self.error:
            raise self.error
        return self.response


def _mask_png_b64(mask):
    buf = io.BytesIO()
    Image.fromarray(mask).save(buf, format="PNG")
    return base64.b64encode(buf.getvalue()).decode("ascii")


def test_heuristic_finds_bordered_flat_region(kitchen_image):
    result = CountertopSegmenter().segment(kitchen_image)

    assert result.mask.shape == (512, 512)
    assert set(np.unique(result.mask).tolist()) <= {0, 255}
    assert result.strategy == "heuristic"
    assert result.confidence == pytest.approx(0.8)
    # Interior of the black rectangle; its one-pixel rim is a strong edge
    assert result.bounding_box == BoundingBox(x=107, y=157, width=297, height=197)
    assert result.mask[256, 256] == 255
    assert result.mask[0, 0] == 0
    assert np.count_nonzero(result.mask) == 298 * 198


def test_heuristic_mask_always_matches_image_size(solid):
    for width, height in [(1, 1), (3, 7), (64, 20)]:
        result = CountertopSegmenter().segment(solid(width, height, 90))
        assert result.mask.shape == (height, width)


def test_solid_image_yields_empty_mask(solid):
    result = CountertopSegmenter().segment(solid(128, 96, 200))

    assert not result.mask.any()
    assert result.bounding_box is None
    assert result.confidence == 0.0


def test_region_touching_frame_is_discarded(solid):
    # Dark band running off both sides of the photo
    image = solid(100, 100, 255)
    image[40:60, :, :3] = 0
    result = HeuristicSegmentationStrategy().segment(image)
    assert not result.mask.any()


def test_zero_size_image_is_rejected():
    with pytest.raises(InvalidImageError):
        CountertopSegmenter().segment(np.zeros((0, 10, 4), dtype=np.uint8))


def test_heuristic_is_always_last_resort():
    remote = RemoteSegmentationStrategy(None)
    segmenter = CountertopSegmenter([remote])
    assert segmenter.strategies[0] is remote
    assert isinstance(segmenter.strategies[-1], HeuristicSegmentationStrategy)


def test_remote_merges_countertop_masks(solid):
    left = np.zeros((64, 64), dtype=np.uint8)
    left[:, :32] = 255
    payload = [
        {"label": "countertop", "score": 0.9, "mask": _mask_png_b64(left)},
        {"label": "wall", "score": 0.99, "mask": _mask_png_b64(np.full((64, 64), 255, dtype=np.uint8))},
    ]
    session = FakeSession(FakeResponse(payload=payload))
    strategy = RemoteSegmentationStrategy("http://segment.test", api_token="tok",
                                          labels=["Countertop"], timeout=5, session=session)

    result = strategy.segment(solid(32, 32, 120))

    assert result.strategy == "remote"
    assert result.confidence == pytest.approx(0.9)
    assert (result.mask[:, :16] == 255).all()
    assert (result.mask[:, 16:] == 0).all()
    assert result.bounding_box == BoundingBox(x=0, y=0, width=15, height=31)

    call = session.calls[0]
    assert call["headers"]["Authorization"] == "Bearer tok"
    assert call["timeout"] == 5
    assert call["data"].startswith(b"\x89PNG")


def test_remote_not_configured():
    with pytest.raises(SegmentationUnavailable, match="no segmentation endpoint"):
        RemoteSegmentationStrategy(None).segment(np.zeros((4, 4, 4), dtype=np.uint8))


@pytest.mark.parametrize("response", [
    FakeResponse(status_code=503, text="loading"),
    FakeResponse(payload=None),
    FakeResponse(payload={"error": "bad"}),
    FakeResponse(payload=[{"label": "countertop"}]),
    FakeResponse(payload=[{"label": "countertop", "score": 0.5, "mask": "!!not-base64-png!!"}]),
    FakeResponse(payload=[{"label": "countertop", "score": "high", "mask": "unused"}]),
    FakeResponse(payload=[{"label": "countertop", "score": [0.9], "mask": "unused"}]),
    FakeResponse(payload=[]),
])
def test_remote_bad_responses_are_unavailable(solid, response):
    strategy = RemoteSegmentationStrategy("http://segment.test", session=FakeSession(response))
    with pytest.raises(SegmentationUnavailable) as excinfo:
        strategy.segment(solid(16, 16, 10))
    assert excinfo.value.strategy == "remote"


def test_network_failure_falls_back_to_heuristic(kitchen_image, caplog):
    session = FakeSession(error=requests.ConnectionError("connection refused"))
    segmenter = CountertopSegmenter([RemoteSegmentationStrategy("http://segment.test", session=session)])

    with caplog.at_level(logging.WARNING):
        result = segmenter.segment(kitchen_image)

    assert result.strategy == "heuristic"
    assert result.mask[256, 256] == 255
    assert "remote segmentation failed, falling back" in caplog.text


def test_strategy_with_wrong_mask_size_is_rejected(solid):
    class Broken(SegmentationStrategy):
        name = "broken"

        def segment(self, image):
            return SegmentationResult(np.zeros((2, 2), dtype=np.uint8), 1.0, None, self.name)

    with pytest.raises(InvalidImageError):
        CountertopSegmenter([Broken()]).segment(solid(8, 8, 0))


def test_non_numeric_score_falls_back_to_heuristic(kitchen_image, caplog):
    mask = np.zeros((512, 512), dtype=np.uint8)
    mask[:, :16] = 255
    response = FakeResponse(payload=[{"label": "countertop", "score": "high", "mask": _mask_png_b64(mask)}])
    segmenter = CountertopSegmenter([RemoteSegmentationStrategy("http://segment.test", session=FakeSession(response))])

    with caplog.at_level(logging.WARNING):
        result = segmenter.segment(kitchen_image)

    assert result.strategy == "heuristic"
    assert result.mask[256, 256] == 255
    assert "non-numeric score" in caplog.text
