from __future__ import annotations

import cv2
import numpy as np

from .config import FEATHER_OPACITY, MASK_THRESHOLD
from .preprocess import PreprocessMeta

DILATION_STRATEGIES = ("neighbor", "blur")


def restore_mask_to_original(mask_sq: np.ndarray, meta: PreprocessMeta) -> np.ndarray:
    """
    Restore a model-space square mask back to original image resolution.

    Steps:
      1) remove padding using x/y offsets + resized sizes
      2) resize back to (orig_w, orig_h)
    """
    if mask_sq.ndim != 2:
        raise ValueError(f"Expected 2D mask, got shape={mask_sq.shape}")
    mask_sq = mask_sq.astype(np.float32, copy=False)

    x0, y0 = meta.x_offset, meta.y_offset
    x1, y1 = x0 + meta.resized_w, y0 + meta.resized_h
    cropped = mask_sq[y0:y1, x0:x1]
    if cropped.size == 0:
        raise ValueError("Mask crop is empty; check preprocessing meta.")

    restored = cv2.resize(cropped, (meta.orig_w, meta.orig_h), interpolation=cv2.INTER_LINEAR)
    # cv2 drops the axis for single-row/column outputs in some builds.
    restored = np.asarray(restored, dtype=np.float32).reshape(meta.orig_h, meta.orig_w)
    return np.clip(restored, 0.0, 1.0)


def _check_mask(mask: np.ndarray) -> None:
    if mask.ndim != 2 or mask.dtype != np.uint8:
        raise ValueError(f"Expected 2D uint8 mask, got shape={mask.shape} dtype={mask.dtype}")


def dilate_neighbors(mask: np.ndarray, iterations: int) -> np.ndarray:
    """
    Discrete dilation: each iteration flips every background pixel that is
    4-connected to a foreground pixel to 255. Existing values are kept.
    """
    _check_mask(mask)
    n = int(iterations)
    if n < 0:
        raise ValueError(f"iterations must be >= 0, got {n}")
    if n == 0:
        return mask.copy()

    fg = mask > 0
    cross = cv2.getStructuringElement(cv2.MORPH_CROSS, (3, 3))
    grown = cv2.dilate(fg.astype(np.uint8), cross, iterations=n) > 0
    out = mask.copy()
    out[grown & ~fg] = 255
    return out


def dilate_by_blur(mask: np.ndarray, radius: float, threshold: int = MASK_THRESHOLD) -> np.ndarray:
    """
    Blur-based dilation: Gaussian blur (sigma = radius), re-threshold at
    `> threshold`, then union with the input so no foreground pixel is lost.

    Smooths jagged boundaries and closes concavities narrower than ~radius.
    """
    _check_mask(mask)
    r = float(radius)
    if r < 0:
        raise ValueError(f"radius must be >= 0, got {r}")
    if r == 0:
        return mask.copy()

    blurred = cv2.GaussianBlur(mask, (0, 0), sigmaX=r, sigmaY=r)
    rethresholded = np.where(blurred > int(threshold), 255, 0).astype(np.uint8)
    return np.maximum(mask, rethresholded)


def refine_mask(mask: np.ndarray, strength: float = 0, strategy: str = "neighbor") -> np.ndarray:
    """
    Dilate with the chosen strategy; strength is iterations ("neighbor") or
    blur radius ("blur"). strength == 0 returns an unchanged copy.
    """
    if strategy == "neighbor":
        return dilate_neighbors(mask, int(round(float(strength))))
    if strategy == "blur":
        return dilate_by_blur(mask, float(strength))
    raise ValueError(f"Unknown dilation strategy {strategy!r}; expected one of {DILATION_STRATEGIES}")


def feather(rgba: np.ndarray, radius: float, opacity: float = FEATHER_OPACITY) -> np.ndarray:
    """
    Soften edges of the final composite: blur the whole RGBA image and blend
    the blurred copy over the original at `opacity`.
    """
    if rgba.ndim != 3 or rgba.shape[2] != 4:
        raise ValueError(f"Expected RGBA image (H,W,4), got {rgba.shape}")
    r = float(radius)
    op = float(opacity)
    if r < 0 or not 0.0 <= op <= 1.0:
        raise ValueError(f"Invalid feather params: radius={r} opacity={op}")
    if r == 0 or op == 0:
        return rgba.copy()

    src = rgba.astype(np.float32)
    blurred = cv2.GaussianBlur(src, (0, 0), sigmaX=r, sigmaY=r)
    out = src * (1.0 - op) + blurred * op
    return np.clip(np.rint(out), 0, 255).astype(np.uint8)
