import base64
import io

import pytest

from countertop import create_app
from countertop.cv.errors import TextureReplacementError
from countertop.services import texture_api


@pytest.fixture
def client(engine):
    app = create_app(engine=engine)
    app.config["TESTING"] = True
    return app.test_client()


@pytest.fixture
def uploads(make_kitchen, grey_material, to_png):
    return to_png(make_kitchen(size=128, rect=(60, 40))), to_png(grey_material)


def _data_url(data):
    return "data:image/png;base64," + base64.b64encode(data).decode("ascii")


def test_health(client):
    r = client.get("/texture-replace/health")
    assert r.status_code == 200
    body = r.get_json()
    assert body["status"] == "healthy"
    assert body["segmentation_strategies"] == ["heuristic"]
    assert body["blender"] == "boundary-alpha"


def test_replace_with_file_uploads(client, uploads):
    room, material = uploads
    r = client.post("/texture-replace/", data={
        "roomImage": (io.BytesIO(room), "room.png"),
        "inspirationImage": (io.BytesIO(material), "material.png"),
        "outputFormat": "PNG",
    }, content_type="multipart/form-data")

    assert r.status_code == 200
    body = r.get_json()
    assert body["success"] is True
    assert body["image"].startswith("data:image/png;base64,")
    assert body["metadata"]["segmentation_confidence"] == pytest.approx(0.8)
    assert set(body["quality"]["breakdown"]) == {"segmentation", "perspective", "lighting", "blending"}
    assert "debug_images" not in body


def test_replace_with_data_urls_and_debug(client, uploads):
    room, material = uploads
    r = client.post("/texture-replace/", data={
        "roomImage": _data_url(room),
        "inspirationImage": _data_url(material),
        "preserveLighting": "false",
        "debug": "1",
    }, content_type="multipart/form-data")

    assert r.status_code == 200
    body = r.get_json()
    assert body["image"].startswith("data:image/jpeg;base64,")
    assert body["metadata"]["lighting_confidence"] == 0.0
    assert body["debug_images"]["lighting"] is None
    assert body["debug_images"]["original_mask"].startswith("data:image/jpeg;base64,")


def test_missing_image(client, uploads):
    r = client.post("/texture-replace/", data={
        "inspirationImage": (io.BytesIO(uploads[1]), "material.png"),
    }, content_type="multipart/form-data")
    assert r.status_code == 400
    assert r.get_json() == {"error": "roomImage is required", "code": 400}


def test_corrupt_image(client, uploads):
    r = client.post("/texture-replace/", data={
        "roomImage": (io.BytesIO(b"not a picture"), "room.png"),
        "inspirationImage": (io.BytesIO(uploads[1]), "material.png"),
    }, content_type="multipart/form-data")
    assert r.status_code == 400
    assert "could not decode image" in r.get_json()["error"]


def test_bad_data_url(client, uploads):
    r = client.post("/texture-replace/", data={
        "roomImage": "no-comma-here",
        "inspirationImage": (io.BytesIO(uploads[1]), "material.png"),
    }, content_type="multipart/form-data")
    assert r.status_code == 400


def test_invalid_option(client, uploads):
    room, material = uploads
    r = client.post("/texture-replace/", data={
        "roomImage": (io.BytesIO(room), "room.png"),
        "inspirationImage": (io.BytesIO(material), "material.png"),
        "outputQuality": "500",
    }, content_type="multipart/form-data")
    assert r.status_code == 400
    assert "output_quality" in r.get_json()["error"]


def test_oversize_upload(client, uploads, monkeypatch):
    monkeypatch.setattr(texture_api, "MAX_BYTES", 16)
    room, material = uploads
    r = client.post("/texture-replace/", data={
        "roomImage": (io.BytesIO(room), "room.png"),
        "inspirationImage": (io.BytesIO(material), "material.png"),
    }, content_type="multipart/form-data")
    assert r.status_code == 413


def test_pipeline_failure_is_500(uploads):
    class FailingEngine:
        def replace_texture(self, *args, **kwargs):
            raise TextureReplacementError("Texture replacement failed: boom")

    app = create_app(engine=FailingEngine())
    room, material = uploads
    r = app.test_client().post("/texture-replace/", data={
        "roomImage": (io.BytesIO(room), "room.png"),
        "inspirationImage": (io.BytesIO(material), "material.png"),
    }, content_type="multipart/form-data")

    assert r.status_code == 500
    assert r.get_json() == {"error": "Texture replacement failed: boom", "code": 500}
