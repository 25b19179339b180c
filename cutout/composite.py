from __future__ import annotations

import io
from dataclasses import dataclass, field
from typing import Literal, Optional, Tuple

import cv2
import numpy as np
from PIL import ImageColor

from .config import FEATHER_OPACITY, JPEG_QUALITY, PNG_COMPRESS_LEVEL
from .errors import InvalidInputError, RenderingError
from .io import rgba_to_pil, to_data_url
from .postprocess import feather

MaskMode = Literal["cutout", "destination-in"]


@dataclass(frozen=True)
class Backdrop:
    """What the cutout is composited over."""

    kind: Literal["transparent", "color", "image"] = "transparent"
    color: str = "#ffffff"
    image: Optional[np.ndarray] = field(default=None, repr=False, compare=False)

    def __post_init__(self):
        if self.kind not in ("transparent", "color", "image"):
            raise ValueError(f"Unknown backdrop kind: {self.kind!r}")
        if self.kind == "image" and self.image is None:
            raise InvalidInputError("Backdrop type is 'image' but no background image is set")

    @property
    def opaque(self) -> bool:
        if self.kind == "color":
            rgb = ImageColor.getrgb(self.color)
            return len(rgb) == 3 or rgb[3] == 255
        if self.kind == "image":
            return bool((self.image[..., 3] == 255).all())
        return False


@dataclass(frozen=True)
class CompositeResult:
    rgba: np.ndarray
    backdrop_kind: str

    @property
    def size(self) -> Tuple[int, int]:
        h, w = self.rgba.shape[:2]
        return w, h

    @property
    def opaque(self) -> bool:
        return bool((self.rgba[..., 3] == 255).all())


def apply_mask(rgba: np.ndarray, mask: np.ndarray, mode: MaskMode = "destination-in") -> np.ndarray:
    """
    Use the mask as the image's alpha.

    - "cutout": alpha := 0 wherever mask is 0, untouched elsewhere
    - "destination-in": alpha := alpha * mask / 255
    Both agree on binary masks.
    """
    if rgba.ndim != 3 or rgba.shape[2] != 4:
        raise ValueError(f"Expected RGBA image (H,W,4), got {rgba.shape}")
    if mask.shape != rgba.shape[:2]:
        raise ValueError(f"Mask shape {mask.shape} does not match image {rgba.shape[:2]}")

    out = np.array(rgba, dtype=np.uint8, copy=True)
    if mode == "cutout":
        out[..., 3][mask == 0] = 0
    elif mode == "destination-in":
        a = out[..., 3].astype(np.uint32) * mask.astype(np.uint32)
        out[..., 3] = ((a + 127) // 255).astype(np.uint8)
    else:
        raise ValueError(f"Unknown mask mode: {mode!r}")
    return out


def _solid(color: str, h: int, w: int) -> np.ndarray:
    try:
        rgb = ImageColor.getrgb(color)
    except ValueError as e:
        raise InvalidInputError(f"Unrecognized backdrop color: {color!r}") from e
    if len(rgb) == 3:
        rgb = (*rgb, 255)
    return np.broadcast_to(np.array(rgb, dtype=np.uint8), (h, w, 4)).copy()


def cover_resize(img: np.ndarray, h: int, w: int) -> np.ndarray:
    """
    Scale to cover (h, w) keeping aspect ratio, then centre-crop.
    """
    ih, iw = img.shape[:2]
    if ih <= 0 or iw <= 0:
        raise ValueError(f"Invalid backdrop size: {(ih, iw)}")
    scale = max(h / float(ih), w / float(iw))
    rw = max(w, int(np.ceil(iw * scale)))
    rh = max(h, int(np.ceil(ih * scale)))
    interp = cv2.INTER_AREA if scale < 1 else cv2.INTER_LINEAR
    resized = cv2.resize(np.ascontiguousarray(img), (rw, rh), interpolation=interp)
    resized = np.asarray(resized).reshape(rh, rw, img.shape[2])
    x0 = (rw - w) // 2
    y0 = (rh - h) // 2
    return resized[y0 : y0 + h, x0 : x0 + w].copy()


def source_over(fg: np.ndarray, bg: np.ndarray) -> np.ndarray:
    """
    Straight-alpha "source-over": fg drawn on top of bg.
    """
    if fg.shape != bg.shape:
        raise ValueError(f"Layer shapes differ: {fg.shape} vs {bg.shape}")
    fa = fg[..., 3:4].astype(np.float32) / 255.0
    ba = bg[..., 3:4].astype(np.float32) / 255.0
    out_a = fa + ba * (1.0 - fa)
    num = fg[..., :3].astype(np.float32) * fa + bg[..., :3].astype(np.float32) * ba * (1.0 - fa)
    rgb = np.divide(num, out_a, out=np.zeros_like(num), where=out_a > 0)

    out = np.empty_like(fg)
    out[..., :3] = np.clip(np.rint(rgb), 0, 255).astype(np.uint8)
    out[..., 3] = np.clip(np.rint(out_a[..., 0] * 255.0), 0, 255).astype(np.uint8)
    return out


def composite(
    source: np.ndarray,
    mask: np.ndarray,
    backdrop: Backdrop = Backdrop(),
    *,
    mask_mode: MaskMode = "destination-in",
    feather_radius: float = 0,
    feather_opacity: float = FEATHER_OPACITY,
) -> CompositeResult:
    """
    Cut the subject out of `source` with `mask`, place it over the backdrop and
    optionally feather the final image. Output has the source's dimensions.
    """
    if source.ndim != 3 or source.shape[2] != 4:
        raise ValueError(f"Expected RGBA source (H,W,4), got {source.shape}")
    h, w = source.shape[:2]

    cut = apply_mask(source, mask, mask_mode)

    if backdrop.kind == "transparent":
        out = cut
    elif backdrop.kind == "color":
        out = source_over(cut, _solid(backdrop.color, h, w))
    else:
        out = source_over(cut, cover_resize(backdrop.image, h, w))

    if feather_radius:
        out = feather(out, feather_radius, feather_opacity)

    if out.shape[:2] != (h, w):
        raise RenderingError(f"Composite size {out.shape[:2]} does not match source {(h, w)}")
    out.setflags(write=False)
    return CompositeResult(rgba=out, backdrop_kind=backdrop.kind)


def encode_result(result: CompositeResult, fmt: str = "png", quality: str = "high") -> bytes:
    """
    PNG is always lossless. JPEG is only allowed when every pixel is opaque.
    """
    if quality not in JPEG_QUALITY:
        raise InvalidInputError(f"Unknown quality {quality!r}; expected one of {tuple(JPEG_QUALITY)}")
    img = rgba_to_pil(result.rgba)
    buf = io.BytesIO()
    try:
        if fmt == "png":
            img.save(buf, format="PNG", compress_level=PNG_COMPRESS_LEVEL[quality])
        elif fmt in ("jpg", "jpeg"):
            if not result.opaque:
                raise InvalidInputError("JPEG output needs an opaque backdrop; use PNG to keep transparency")
            img.convert("RGB").save(buf, format="JPEG", quality=JPEG_QUALITY[quality])
        else:
            raise InvalidInputError(f"Unknown format {fmt!r}; expected 'png' or 'jpg'")
    except OSError as e:
        raise RenderingError("Failed to encode output image") from e
    return buf.getvalue()


def mime_for(fmt: str) -> str:
    return "image/png" if fmt == "png" else "image/jpeg"


def result_to_data_url(result: CompositeResult, fmt: str = "png", quality: str = "high") -> str:
    return to_data_url(encode_result(result, fmt, quality), mime_for(fmt))
