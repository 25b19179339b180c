from __future__ import annotations

import logging

import numpy as np
import torch

from .errors import ModelUnavailableError
from .labels import SegmentationLabels
from .model import ModelHandle, forward_model
from .postprocess import restore_mask_to_original
from .preprocess import meta_to_dict, normalize, resize_with_padding, rgba_to_model_rgb

logger = logging.getLogger(__name__)


def _extract_primary_output(y):
    """
    Segmentation models may return:
      - a single tensor
      - (tensor, ...) tuple/list (final stage is typically last)
      - dict / ModelOutput with tensor fields
    """
    if isinstance(y, torch.Tensor):
        return y
    if hasattr(y, "logits") and isinstance(y.logits, torch.Tensor):
        return y.logits
    if isinstance(y, (list, tuple)) and len(y) > 0:
        for item in reversed(y):
            if isinstance(item, torch.Tensor):
                return item
        return _extract_primary_output(y[-1])
    if isinstance(y, dict):
        for k in ("logits", "pred", "alpha", "mask"):
            v = y.get(k, None)
            if isinstance(v, torch.Tensor):
                return v
        for v in y.values():
            if isinstance(v, torch.Tensor):
                return v
    return y


def predict_matte(model: torch.nn.Module, x: torch.Tensor, device: torch.device) -> np.ndarray:
    """
    Forward pass and convert logits -> probability matte.

    Output: float32 numpy array in [0,1], shape (S, S) matching the input tensor.
    """
    if x.ndim != 4 or x.shape[0] != 1:
        raise ValueError(f"Expected input tensor (1,3,H,W), got {tuple(x.shape)}")
    size = (int(x.shape[-2]), int(x.shape[-1]))

    y = forward_model(model, x.float().to(device))
    y = _extract_primary_output(y)
    if not isinstance(y, torch.Tensor):
        raise RuntimeError(f"Model output is not a tensor: {type(y)}")

    # Expect either (1,C,H,W), (1,H,W) or (H,W); channel 0 is the foreground.
    if y.ndim == 4:
        y = y[0, 0]
    elif y.ndim == 3:
        y = y[0]
    elif y.ndim != 2:
        raise RuntimeError(f"Unexpected output tensor shape: {tuple(y.shape)}")

    if tuple(y.shape[-2:]) != size:
        y = torch.nn.functional.interpolate(
            y.unsqueeze(0).unsqueeze(0).float(),
            size=size,
            mode="bilinear",
            align_corners=False,
        )[0, 0]

    p = torch.sigmoid(y.float())
    if torch.isnan(p).any():
        raise RuntimeError("NaNs detected in predicted matte.")

    matte = p.detach().to("cpu").numpy().astype(np.float32, copy=False)
    return np.clip(matte, 0.0, 1.0)


def segment(handle: ModelHandle, image: np.ndarray, foreground_threshold: float) -> SegmentationLabels:
    """
    Run the model on an RGBA source and return labels at its native resolution.

    foreground_threshold is in [0,1]; confidence >= threshold is foreground.
    Any failure to load or run the model raises ModelUnavailableError.
    """
    if not 0.0 <= float(foreground_threshold) <= 1.0:
        raise ValueError(f"foreground_threshold must be in [0,1], got {foreground_threshold}")

    model, device = handle.acquire()

    rgb = rgba_to_model_rgb(image)
    padded, meta = resize_with_padding(rgb)
    logger.debug("Preprocessed for %s: %s", handle.name, meta_to_dict(meta))
    try:
        matte_sq = predict_matte(model, normalize(padded), device)
    except Exception as e:  # noqa: BLE001 - inference failures are reported as one kind
        logger.error("Inference failed on %s: %s", handle.name, e)
        raise ModelUnavailableError(f"Model '{handle.name}' failed during inference") from e

    matte = restore_mask_to_original(matte_sq, meta)
    return SegmentationLabels.from_matte(matte, foreground_threshold)
