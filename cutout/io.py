from __future__ import annotations

import base64
import binascii
import io
import json
from pathlib import Path
from typing import Any, Dict, Optional

import numpy as np
import requests
from PIL import Image, ImageOps, UnidentifiedImageError

from .config import get_fetch_timeout_s
from .errors import InvalidInputError, RenderingError


def _to_rgba_array(img: Image.Image) -> np.ndarray:
    img = ImageOps.exif_transpose(img)
    arr = np.array(img.convert("RGBA"), dtype=np.uint8)
    if arr.ndim != 3 or arr.shape[2] != 4:
        raise RenderingError(f"Expected RGBA image array, got shape={arr.shape}")
    # Source images are immutable once decoded.
    arr.setflags(write=False)
    return arr


def decode_image(data: bytes) -> np.ndarray:
    """
    Decode encoded image bytes to a read-only RGBA uint8 array (H, W, 4).
    """
    if not data:
        raise InvalidInputError("Empty image payload")
    try:
        img = Image.open(io.BytesIO(data))
        # open() only reads the header; refuse anything over the pixel cap before decoding.
        w, h = img.size
        if Image.MAX_IMAGE_PIXELS and w * h > Image.MAX_IMAGE_PIXELS:
            raise InvalidInputError("Image dimensions are too large")
        img.load()
    except Image.DecompressionBombError as e:
        raise InvalidInputError("Image dimensions are too large") from e
    except (UnidentifiedImageError, OSError) as e:
        raise InvalidInputError("Could not decode image data") from e
    return _to_rgba_array(img)


def load_image(path: str) -> np.ndarray:
    p = Path(path)
    if not p.is_file():
        raise FileNotFoundError(f"Could not read image: {path}")
    return decode_image(p.read_bytes())


def rgba_to_pil(rgba: np.ndarray) -> Image.Image:
    if rgba.ndim != 3 or rgba.shape[2] != 4:
        raise ValueError(f"Expected RGBA image (H,W,4), got {rgba.shape}")
    return Image.fromarray(np.ascontiguousarray(rgba, dtype=np.uint8), mode="RGBA")


def to_data_url(payload: bytes, mime: str) -> str:
    return f"data:{mime};base64," + base64.b64encode(payload).decode("utf-8")


def decode_data_url(url: str) -> bytes:
    """
    Decode `data:<mime>;base64,<payload>`. Only base64 payloads are supported.
    """
    header, sep, payload = url.partition(",")
    if not sep or not header.startswith("data:") or not header.endswith(";base64"):
        raise InvalidInputError("Unsupported data URL")
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidInputError("Malformed base64 in data URL") from e


def load_backdrop_image(ref: str) -> np.ndarray:
    """
    Resolve a backdrop reference (data URL, http(s) URL or local path) to RGBA.
    """
    ref = (ref or "").strip()
    if not ref:
        raise InvalidInputError("Backdrop type is 'image' but no background image is set")
    if ref.startswith("data:"):
        return decode_image(decode_data_url(ref))
    if ref.startswith(("http://", "https://")):
        try:
            resp = requests.get(ref, timeout=get_fetch_timeout_s())
            resp.raise_for_status()
        except requests.RequestException as e:
            raise InvalidInputError(f"Could not fetch background image: {ref}") from e
        return decode_image(resp.content)
    try:
        return load_image(ref)
    except FileNotFoundError as e:
        raise InvalidInputError(f"Background image not found: {ref}") from e


def write_json(path: str, data: Dict[str, Any]) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")


def read_json(path: str) -> Optional[Dict[str, Any]]:
    p = Path(path)
    if not p.exists():
        return None
    return json.loads(p.read_text(encoding="utf-8"))


def safe_stem(filename: str) -> str:
    """
    Make a filesystem-safe stem from an uploaded filename.
    Example: "../my photo (1).JPG" -> "my_photo__1_"
    """
    stem = Path(filename or "").stem or "image"
    return "".join(ch if ch.isalnum() or ch in ("_", "-") else "_" for ch in stem)
