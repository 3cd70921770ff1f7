import io

import numpy as np
import pytest
from PIL import Image

from countertop.services.texture_replacement import TextureReplacementEngine


def _solid(width, height, value):
    image = np.full((height, width, 4), value, dtype=np.uint8)
    image[:, :, 3] = 255
    return image


def _kitchen(size=512, rect=(300, 200), fill=0, background=255):
    """Plain background with a centred rectangle standing in for the countertop."""
    image = _solid(size, size, background)
    w, h = rect
    x0, y0 = (size - w) // 2, (size - h) // 2
    image[y0:y0 + h, x0:x0 + w, :3] = fill
    return image


def _to_png(image):
    buf = io.BytesIO()
    Image.fromarray(image).save(buf, format="PNG")
    return buf.getvalue()


def _from_bytes(data):
    return np.array(Image.open(io.BytesIO(data)).convert("RGBA"))


@pytest.fixture
def solid():
    return _solid


@pytest.fixture
def make_kitchen():
    return _kitchen


@pytest.fixture
def to_png():
    return _to_png


@pytest.fixture
def from_bytes():
    return _from_bytes


@pytest.fixture
def kitchen_image():
    # 512x512 white, black 300x200 countertop at x 106..405, y 156..355
    return _kitchen()


@pytest.fixture
def grey_material():
    return _solid(256, 256, 128)


@pytest.fixture
def engine():
    return TextureReplacementEngine()
