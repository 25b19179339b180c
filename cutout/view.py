from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence, Tuple

import cv2
import numpy as np

from .config import MAX_SCALE, MIN_SCALE, SCALE_STEP


def _clamp_scale(scale: float) -> float:
    return round(min(MAX_SCALE, max(MIN_SCALE, float(scale))), 4)


@dataclass
class ViewTransform:
    """
    On-screen scale/offset of a composite. Never touches the result's pixels.

    Permission flags come from the settings record; disallowed actions are no-ops.
    Updates are last-writer-wins in input event order.
    """

    allow_move: bool = True
    allow_resize: bool = True
    scale: float = 1.0
    offset: Tuple[float, float] = (0.0, 0.0)
    dragging: bool = False
    _drag_start: Tuple[float, float] = field(default=(0.0, 0.0), repr=False)

    def reset(self) -> None:
        self.scale = 1.0
        self.offset = (0.0, 0.0)
        self.dragging = False

    def zoom_in(self) -> None:
        if self.allow_resize:
            self.scale = _clamp_scale(self.scale + SCALE_STEP)

    def zoom_out(self) -> None:
        if self.allow_resize:
            self.scale = _clamp_scale(self.scale - SCALE_STEP)

    def set_zoom_percent(self, percent: float) -> None:
        """Slider input, 50..300."""
        if self.allow_resize:
            self.scale = _clamp_scale(float(percent) / 100.0)

    @property
    def zoom_percent(self) -> int:
        return int(round(self.scale * 100))

    def pointer_down(self, x: float, y: float) -> None:
        if not self.allow_move:
            return
        self.dragging = True
        self._drag_start = (x - self.offset[0], y - self.offset[1])

    def pointer_move(self, x: float, y: float) -> None:
        if not self.dragging or not self.allow_move:
            return
        self.offset = (x - self._drag_start[0], y - self._drag_start[1])

    def pointer_up(self) -> None:
        self.dragging = False

    def touch_start(self, touches: Sequence[Tuple[float, float]]) -> None:
        if len(touches) == 1:
            self.pointer_down(*touches[0])

    def touch_move(self, touches: Sequence[Tuple[float, float]]) -> None:
        if len(touches) == 1:
            self.pointer_move(*touches[0])

    def touch_end(self) -> None:
        self.pointer_up()

    def affine(self, content_size: Tuple[int, int], viewport: Tuple[int, int]) -> np.ndarray:
        """
        2x3 matrix placing content (w, h) centred in viewport (w, h), scaled
        about its centre, then translated by offset.
        """
        cw, ch = content_size
        vw, vh = viewport
        s = self.scale
        tx = vw / 2.0 - s * cw / 2.0 + self.offset[0]
        ty = vh / 2.0 - s * ch / 2.0 + self.offset[1]
        return np.array([[s, 0.0, tx], [0.0, s, ty]], dtype=np.float64)


def render_view(rgba: np.ndarray, viewport: Tuple[int, int], transform: ViewTransform) -> np.ndarray:
    """Rasterize `rgba` into a transparent viewport (w, h) under `transform`."""
    h, w = rgba.shape[:2]
    vw, vh = viewport
    return cv2.warpAffine(
        np.ascontiguousarray(rgba),
        transform.affine((w, h), viewport),
        (int(vw), int(vh)),
        flags=cv2.INTER_LINEAR,
        borderMode=cv2.BORDER_CONSTANT,
        borderValue=(0, 0, 0, 0),
    )


class InteractiveView:
    """
    Scopes a ViewTransform to the lifetime of an interactive view. On exit any
    drag in progress ends and the transform is reset.
    """

    def __init__(self, allow_move: bool = True, allow_resize: bool = True):
        self.transform = ViewTransform(allow_move=allow_move, allow_resize=allow_resize)
        self.active = False

    @classmethod
    def for_settings(cls, settings) -> "InteractiveView":
        return cls(allow_move=settings.allow_move, allow_resize=settings.allow_resize)

    def __enter__(self) -> ViewTransform:
        self.active = True
        return self.transform

    def __exit__(self, exc_type, exc, tb) -> None:
        self.transform.pointer_up()
        self.transform.reset()
        self.active = False
