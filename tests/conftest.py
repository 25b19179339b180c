"""Shared fixtures: synthetic images and a tiny stand-in segmentation model."""
import io

import numpy as np
import pytest
import torch
from PIL import Image


class BrightnessModel(torch.nn.Module):
    """Logits > 0 where the normalized input is brighter than mid-gray: white = subject."""

    def forward(self, x):
        return 10.0 * (x.mean(dim=1, keepdim=True) - 1.0)


def make_subject_rgba(h: int = 48, w: int = 64) -> np.ndarray:
    """Black frame with a white rectangle in the middle, fully opaque."""
    img = np.zeros((h, w, 4), dtype=np.uint8)
    img[..., 3] = 255
    img[h // 4 : 3 * h // 4, w // 4 : 3 * w // 4, :3] = 255
    return img


def png_bytes(rgba: np.ndarray) -> bytes:
    buf = io.BytesIO()
    Image.fromarray(rgba, mode="RGBA").save(buf, format="PNG")
    return buf.getvalue()


def jpeg_bytes(rgb_color=(200, 100, 50), size=(32, 24)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, rgb_color).save(buf, format="JPEG")
    return buf.getvalue()


@pytest.fixture
def subject_rgba():
    return make_subject_rgba()


@pytest.fixture
def fake_loader():
    calls = {"n": 0}

    def _load():
        calls["n"] += 1
        return BrightnessModel().eval(), torch.device("cpu")

    _load.calls = calls
    return _load
