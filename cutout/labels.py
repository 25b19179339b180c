from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np


@dataclass(frozen=True)
class SegmentationLabels:
    """
    Per-pixel foreground labels, flat and row-major, aligned with the source image.

    `confidence` keeps the model's matte probability (float32, [0,1]) when the
    model provides one so labels can be re-thresholded without re-running it.
    """

    width: int
    height: int
    foreground: np.ndarray
    confidence: Optional[np.ndarray] = None

    def __post_init__(self):
        n = int(self.width) * int(self.height)
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"Invalid label dimensions: {(self.width, self.height)}")
        if self.foreground.ndim != 1 or self.foreground.size != n:
            raise ValueError(f"Expected {n} flat labels, got shape={self.foreground.shape}")
        if self.confidence is not None and (self.confidence.ndim != 1 or self.confidence.size != n):
            raise ValueError(f"Expected {n} flat confidences, got shape={self.confidence.shape}")
        self.foreground.setflags(write=False)
        if self.confidence is not None:
            self.confidence.setflags(write=False)

    @classmethod
    def from_matte(cls, matte: np.ndarray, threshold: float) -> "SegmentationLabels":
        """
        Threshold a (H, W) matte in [0,1]: confidence >= threshold is foreground.
        """
        if matte.ndim != 2:
            raise ValueError(f"Expected 2D matte, got shape={matte.shape}")
        if not 0.0 <= float(threshold) <= 1.0:
            raise ValueError(f"Threshold must be in [0,1], got {threshold}")
        h, w = matte.shape
        conf = np.clip(matte.astype(np.float32), 0.0, 1.0).reshape(-1).copy()
        return cls(width=w, height=h, foreground=conf >= float(threshold), confidence=conf)

    @classmethod
    def from_mask(cls, mask: np.ndarray) -> "SegmentationLabels":
        if mask.ndim != 2:
            raise ValueError(f"Expected 2D mask, got shape={mask.shape}")
        h, w = mask.shape
        return cls(width=w, height=h, foreground=(mask.reshape(-1) > 0).copy())

    def rethreshold(self, threshold: float) -> "SegmentationLabels":
        if self.confidence is None:
            raise ValueError("Labels carry no confidence; re-run segmentation instead")
        return SegmentationLabels.from_matte(self.confidence.reshape(self.height, self.width), threshold)

    @property
    def shape(self):
        return self.height, self.width


def build_mask(labels: SegmentationLabels) -> np.ndarray:
    """255 where foreground, 0 elsewhere; (H, W) uint8."""
    mask = np.where(labels.foreground, 255, 0).astype(np.uint8)
    return mask.reshape(labels.height, labels.width)


def build_matted_mask(labels: SegmentationLabels, fg_threshold: float, bg_threshold: float) -> np.ndarray:
    """
    Trimap-style soft mask for alpha matting.

    confidence >= fg_threshold -> 255, <= bg_threshold -> 0, linear ramp between.
    Without confidence, or with an empty band, this is the binary mask.
    """
    fg = float(fg_threshold)
    bg = float(bg_threshold)
    if labels.confidence is None or fg <= bg:
        return build_mask(labels)
    conf = labels.confidence.reshape(labels.height, labels.width)
    alpha = np.clip((conf - bg) / (fg - bg), 0.0, 1.0)
    return np.rint(alpha * 255.0).astype(np.uint8)
