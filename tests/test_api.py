import asyncio
import base64
import io

import numpy as np
import pytest
import torch
from fastapi.testclient import TestClient
from PIL import Image

from conftest import BrightnessModel, jpeg_bytes, make_subject_rgba, png_bytes
from cutout.api import create_app
from cutout.config import ServerConfig
from cutout.model import ModelHandle, ModelRegistry
from cutout.settings_store import SettingsStore


def _config(tmp_path, **kw) -> ServerConfig:
    return ServerConfig(upload_dir=tmp_path / "temp_uploads", processed_dir=tmp_path / "processed_images", **kw)


def _registry(loader=None) -> ModelRegistry:
    loader = loader or (lambda: (BrightnessModel().eval(), torch.device("cpu")))
    return ModelRegistry(factory=lambda name: ModelHandle(loader, name=name))


@pytest.fixture
def client(tmp_path):
    app = create_app(_config(tmp_path), SettingsStore(), _registry())
    with TestClient(app) as c:
        yield c


@pytest.fixture
def segment_client(tmp_path):
    app = create_app(_config(tmp_path, processing_mode="segment"), SettingsStore(), _registry())
    with TestClient(app) as c:
        yield c


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "healthy"


def test_get_and_update_settings(client):
    assert client.get("/api/settings").json()["foregroundThreshold"] == 50

    resp = client.post("/api/settings", json={"foregroundThreshold": 86, "backgroundType": "color"})
    assert resp.status_code == 200
    assert resp.json()["foregroundThreshold"] == 86
    assert client.get("/api/settings").json()["backgroundType"] == "color"


def test_out_of_range_threshold_rejected_without_mutation(client):
    before = client.get("/api/settings").json()
    resp = client.post("/api/settings", json={"foregroundThreshold": 150})
    assert resp.status_code == 400
    assert "foregroundThreshold" in resp.json()["message"]
    assert client.get("/api/settings").json() == before


def test_settings_body_must_be_object(client):
    assert client.post("/api/settings", json=[1, 2]).status_code == 400


def test_upload_copy_mode_serves_original_and_copy(client):
    data = jpeg_bytes()
    resp = client.post("/api/upload", files={"image": ("holiday.jpg", data, "image/jpeg")})
    assert resp.status_code == 200
    body = resp.json()
    assert body["processed"].startswith("/api/images/processed/")
    assert body["processed"].endswith("_holiday.png")

    original = client.get(body["original"])
    assert original.status_code == 200
    assert original.content == data
    assert original.headers["content-type"] == "image/jpeg"
    assert client.get(body["processed"]).content == data


@pytest.mark.parametrize(
    "filename,payload,mime,reason",
    [
        ("a.gif", b"GIF89a", "image/gif", "Invalid file type"),
        ("a.png", b"not really a png", "image/png", "decode"),
    ],
)
def test_upload_rejections(client, filename, payload, mime, reason):
    resp = client.post("/api/upload", files={"image": (filename, payload, mime)})
    assert resp.status_code == 400
    assert reason in resp.json()["message"]


def test_upload_too_large(tmp_path):
    app = create_app(_config(tmp_path, max_upload_bytes=100), SettingsStore(), _registry())
    with TestClient(app) as c:
        resp = c.post("/api/upload", files={"image": ("big.jpg", jpeg_bytes(size=(200, 200)), "image/jpeg")})
    assert resp.status_code == 400
    assert "too large" in resp.json()["message"]


def test_upload_without_file(client):
    resp = client.post("/api/upload")
    assert resp.status_code == 400
    assert resp.json()["message"] == "No file uploaded"


def test_missing_images_are_404(client):
    assert client.get("/api/images/nope").status_code == 404
    assert client.get("/api/images/processed/nope.png").status_code == 404


def test_segment_mode_produces_cutout(segment_client):
    resp = segment_client.post("/api/upload", files={"image": ("p.png", png_bytes(make_subject_rgba()), "image/png")})
    assert resp.status_code == 200
    processed = segment_client.get(resp.json()["processed"])
    assert processed.headers["content-type"] == "image/png"

    img = np.array(Image.open(io.BytesIO(processed.content)))
    assert img.shape == (48, 64, 4)
    assert img[24, 32, 3] == 255
    assert img[2, 2, 3] == 0


def test_segment_mode_uses_color_backdrop_from_settings(segment_client):
    segment_client.post("/api/settings", json={"backgroundType": "color", "backgroundColor": "#ff0000"})
    resp = segment_client.post("/api/upload", files={"image": ("p.png", png_bytes(make_subject_rgba()), "image/png")})
    img = np.array(Image.open(io.BytesIO(segment_client.get(resp.json()["processed"]).content)))
    assert tuple(img[2, 2]) == (255, 0, 0, 255)


def test_segment_mode_model_failure_is_503(tmp_path):
    def broken():
        raise RuntimeError("weights unavailable")

    app = create_app(_config(tmp_path, processing_mode="segment"), SettingsStore(), _registry(broken))
    with TestClient(app) as c:
        resp = c.post("/api/upload", files={"image": ("p.png", png_bytes(make_subject_rgba()), "image/png")})
        assert resp.status_code == 503
        assert "unavailable" in resp.json()["message"]
        assert c.get("/health").json()["models"]["u2net"] == "failed"
        # nothing was published for the failed attempt
        assert list((tmp_path / "processed_images").iterdir()) == []


def test_download_reencodes(segment_client):
    up = segment_client.post("/api/upload", files={"image": ("p.png", png_bytes(make_subject_rgba()), "image/png")})
    path = up.json()["processed"]

    png = segment_client.post("/api/download", json={"filepath": path, "options": {"format": "png", "quality": "high"}})
    assert png.status_code == 200
    assert png.headers["content-type"] == "image/png"
    assert 'filename="background_removed.png"' in png.headers["content-disposition"]

    # transparent cutout cannot become a JPEG
    jpg = segment_client.post("/api/download", json={"filepath": path, "options": {"format": "jpg", "quality": "low"}})
    assert jpg.status_code == 400


def test_download_jpeg_of_opaque_image(client):
    up = client.post("/api/upload", files={"image": ("x.jpg", jpeg_bytes(), "image/jpeg")})
    resp = client.post(
        "/api/download",
        json={"filepath": up.json()["processed"], "options": {"format": "jpg", "quality": "medium"}},
    )
    assert resp.status_code == 200
    assert resp.headers["content-type"] == "image/jpeg"
    assert Image.open(io.BytesIO(resp.content)).format == "JPEG"


@pytest.mark.parametrize(
    "body,status",
    [
        ({"filepath": "x.png", "options": {"format": "bmp", "quality": "high"}}, 400),
        ({"filepath": "", "options": {"format": "png", "quality": "high"}}, 400),
        ({"filepath": "/api/images/processed/missing.png", "options": {"format": "png", "quality": "high"}}, 404),
    ],
)
def test_download_errors(client, body, status):
    assert client.post("/api/download", json=body).status_code == status


def test_oversized_upload_is_rejected(client, monkeypatch):
    monkeypatch.setattr("PIL.Image.MAX_IMAGE_PIXELS", 1000)
    resp = client.post("/api/upload", files={"image": ("huge.png", png_bytes(make_subject_rgba()), "image/png")})
    assert resp.status_code == 400
    assert resp.json()["message"] == "Image dimensions are too large"


def test_segment_mode_with_image_backdrop(segment_client):
    backdrop = Image.new("RGB", (8, 8), (0, 128, 0))
    buf = io.BytesIO()
    backdrop.save(buf, format="PNG")
    ref = "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("ascii")
    segment_client.post("/api/settings", json={"backgroundType": "image", "backgroundImage": ref})

    resp = segment_client.post("/api/upload", files={"image": ("p.png", png_bytes(make_subject_rgba()), "image/png")})
    img = np.array(Image.open(io.BytesIO(segment_client.get(resp.json()["processed"]).content)))
    assert tuple(img[2, 2]) == (0, 128, 0, 255)


def test_image_work_runs_in_threadpool(segment_client, monkeypatch):
    import cutout.api

    ran = []
    original = cutout.api.run_in_threadpool

    async def recording(func, *args, **kwargs):
        ran.append(func.__name__)
        return await original(func, *args, **kwargs)

    monkeypatch.setattr(cutout.api, "run_in_threadpool", recording)
    up = segment_client.post("/api/upload", files={"image": ("p.png", png_bytes(make_subject_rgba()), "image/png")})
    segment_client.post(
        "/api/download", json={"filepath": up.json()["processed"], "options": {"format": "png", "quality": "high"}}
    )
    assert ran.count("decode_image") == 2
    assert ran.count("encode_result") == 2
    assert "process_image" in ran


def test_cleanup_loop_survives_unexpected_errors():
    from cutout.api import _cleanup_loop

    class FlakyStore:
        def __init__(self):
            self.calls = 0

        def remove_expired(self, ttl_s):
            self.calls += 1
            if self.calls == 1:
                raise RuntimeError("clock went backwards")
            return 0

    async def scenario(store):
        task = asyncio.create_task(_cleanup_loop(store, ttl_s=1, interval_s=0.01))
        while store.calls < 3 and not task.done():
            await asyncio.sleep(0.01)
        assert not task.done()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    store = FlakyStore()
    asyncio.run(scenario(store))
    assert store.calls >= 3
