from __future__ import annotations

import itertools
import logging
import threading
import time
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional, Tuple

import numpy as np

from .composite import Backdrop, CompositeResult, MaskMode, composite, encode_result
from .config import DILATION_ITERATIONS, DILATION_STRATEGY, FEATHER_OPACITY, FEATHER_RADIUS
from .contracts import ImageSettings
from .inference import segment
from .io import load_backdrop_image, load_image
from .labels import SegmentationLabels, build_mask, build_matted_mask
from .model import ModelHandle
from .postprocess import refine_mask

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StageTimings:
    segment_s: float
    mask_s: float
    composite_s: float
    total_s: float


@dataclass(frozen=True)
class RenderOptions:
    """Everything needed to turn labels into a composite. Thresholds are in [0,1]."""

    foreground_threshold: float = 0.5
    background_threshold: float = 0.5
    alpha_matting: bool = False
    dilation: float = DILATION_ITERATIONS
    dilation_strategy: str = DILATION_STRATEGY
    feather_radius: float = FEATHER_RADIUS
    feather_opacity: float = FEATHER_OPACITY
    mask_mode: MaskMode = "destination-in"
    backdrop: Backdrop = Backdrop()


def options_from_settings(settings: ImageSettings, **overrides) -> RenderOptions:
    """
    Map the settings record (0-100 thresholds, backdrop fields) to RenderOptions.
    Image backdrops are resolved here, before any pixel work starts.
    """
    if settings.background_type == "image":
        backdrop = Backdrop(kind="image", image=load_backdrop_image(settings.background_image or ""))
    else:
        backdrop = Backdrop(kind=settings.background_type, color=settings.background_color)
    opts = RenderOptions(
        foreground_threshold=settings.foreground_threshold / 100.0,
        background_threshold=settings.background_threshold / 100.0,
        alpha_matting=settings.alpha_matting,
        backdrop=backdrop,
    )
    return replace(opts, **overrides) if overrides else opts


def build_refined_mask(labels: SegmentationLabels, options: RenderOptions) -> np.ndarray:
    if options.alpha_matting:
        mask = build_matted_mask(labels, options.foreground_threshold, options.background_threshold)
    else:
        mask = build_mask(labels)
    return refine_mask(mask, options.dilation, options.dilation_strategy)


def render(source: np.ndarray, labels: SegmentationLabels, options: RenderOptions) -> CompositeResult:
    """Labels -> mask -> refinement -> composite. Pure; no model access."""
    if labels.shape != source.shape[:2]:
        raise ValueError(f"Labels {labels.shape} do not match image {source.shape[:2]}")
    mask = build_refined_mask(labels, options)
    return composite(
        source,
        mask,
        options.backdrop,
        mask_mode=options.mask_mode,
        feather_radius=options.feather_radius,
        feather_opacity=options.feather_opacity,
    )


def process_image(
    source: np.ndarray,
    handle: ModelHandle,
    options: RenderOptions,
) -> Tuple[CompositeResult, SegmentationLabels, StageTimings]:
    """
    Deterministic, linear pipeline:
      1) Segment (model)
      2) Build + refine mask
      3) Composite over backdrop (+ feather)
    All-or-nothing: any failure propagates and nothing is returned.
    """
    t0 = time.perf_counter()
    labels = segment(handle, source, options.foreground_threshold)
    t1 = time.perf_counter()

    mask = build_refined_mask(labels, options)
    t2 = time.perf_counter()

    result = composite(
        source,
        mask,
        options.backdrop,
        mask_mode=options.mask_mode,
        feather_radius=options.feather_radius,
        feather_opacity=options.feather_opacity,
    )
    t3 = time.perf_counter()

    return result, labels, StageTimings(
        segment_s=t1 - t0,
        mask_s=t2 - t1,
        composite_s=t3 - t2,
        total_s=t3 - t0,
    )


def process_file(
    image_path: str,
    out_path: str,
    handle: ModelHandle,
    options: RenderOptions,
    *,
    fmt: str = "png",
    quality: str = "high",
) -> StageTimings:
    source = load_image(image_path)
    result, _labels, timings = process_image(source, handle, options)
    payload = encode_result(result, fmt, quality)
    out = Path(out_path)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_bytes(payload)
    return timings


class CutoutSession:
    """
    One interactive pipeline: the current upload, its labels and its result.

    A new upload supersedes the previous one. Work started for an older upload
    carries a stale token and its results are dropped on commit.
    """

    def __init__(self, handle: ModelHandle):
        self.handle = handle
        self._tokens = itertools.count(1)
        self._lock = threading.Lock()
        self._token = 0
        self.source: Optional[np.ndarray] = None
        self.labels: Optional[SegmentationLabels] = None
        self.result: Optional[CompositeResult] = None

    @property
    def token(self) -> int:
        return self._token

    def upload(self, source: np.ndarray) -> int:
        with self._lock:
            self._token = next(self._tokens)
            self.source = source
            self.labels = None
            self.result = None
            return self._token

    def reset(self) -> None:
        with self._lock:
            self._token = next(self._tokens)
            self.source = None
            self.labels = None
            self.result = None

    def is_current(self, token: int) -> bool:
        return token == self._token

    def commit(self, token: int, labels: SegmentationLabels, result: CompositeResult) -> bool:
        with self._lock:
            if token != self._token:
                logger.info("Dropping result for superseded request %d (current %d)", token, self._token)
                return False
            self.labels = labels
            self.result = result
            return True

    def run(self, token: int, options: RenderOptions) -> Optional[CompositeResult]:
        """
        Segment + composite the upload identified by `token`.
        Returns None if a newer upload replaced it meanwhile.
        """
        with self._lock:
            if token != self._token or self.source is None:
                return None
            source = self.source
        result, labels, _timings = process_image(source, self.handle, options)
        return result if self.commit(token, labels, result) else None

    def rerender(self, options: RenderOptions) -> CompositeResult:
        """
        Re-composite after a settings change without re-running the model.
        Labels are re-thresholded from stored confidence when available.
        """
        with self._lock:
            token, source, labels = self._token, self.source, self.labels
        if source is None or labels is None:
            raise ValueError("Nothing to re-render; upload and run an image first")
        if labels.confidence is not None:
            labels = labels.rethreshold(options.foreground_threshold)
        result = render(source, labels, options)
        self.commit(token, labels, result)
        return result
