"""
Centralized configuration for the cutout pipeline and backend.

Ground rules:
- float32 model inference, batch size 1
- masks are uint8 (0..255) at the source image's native resolution
- runtime paths/limits come from the environment (see load_server_config)
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

# NOTE: BiRefNet internally splits into patches; this size must be divisible by
# its patching grid. 1088 is the closest "1080-class" square that works reliably.
TARGET_SIZE = 1088
PAD_COLOR = 127

IMAGENET_MEAN = [0.485, 0.456, 0.406]
IMAGENET_STD = [0.229, 0.224, 0.225]

DEFAULT_MODEL_SPEC = "hf:ZhengPeng7/BiRefNet"
MODEL_NAMES = ("u2net", "u2netp", "u2net_human_seg")

# Mask refinement. Dilation strength 0 disables the step.
MASK_THRESHOLD = 128
DILATION_STRATEGY = "neighbor"
DILATION_ITERATIONS = 0

FEATHER_RADIUS = 0
FEATHER_OPACITY = 0.5

# Interactive view.
MIN_SCALE = 0.5
MAX_SCALE = 3.0
SCALE_STEP = 0.1

# Output encoding.
JPEG_QUALITY = {"high": 95, "medium": 80, "low": 60}
PNG_COMPRESS_LEVEL = {"high": 9, "medium": 6, "low": 1}

# Upload / temp storage.
MAX_UPLOAD_BYTES = 5 * 1024 * 1024
ALLOWED_MIME_TYPES = ("image/jpeg", "image/png", "image/jpg")
CLEANUP_TTL_S = 60 * 60
CLEANUP_INTERVAL_S = 60 * 60
PROCESSING_MODES = ("copy", "segment")

FETCH_TIMEOUT_S = 12.0


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


def get_fetch_timeout_s() -> float:
    return _env_float("CUTOUT_FETCH_TIMEOUT_S", FETCH_TIMEOUT_S)


def model_spec_for(name: str) -> str:
    """
    Resolve a settings model name to a loader spec.

    CUTOUT_MODEL_<NAME> wins, then CUTOUT_MODEL, then DEFAULT_MODEL_SPEC.
    """
    fallback = os.getenv("CUTOUT_MODEL", DEFAULT_MODEL_SPEC)
    return os.getenv(f"CUTOUT_MODEL_{name.upper()}", fallback)


@dataclass(frozen=True)
class ServerConfig:
    """Runtime settings for the HTTP backend, read from the environment."""

    upload_dir: Path
    processed_dir: Path
    max_upload_bytes: int = MAX_UPLOAD_BYTES
    allowed_mime_types: tuple = ALLOWED_MIME_TYPES
    cleanup_ttl_s: int = CLEANUP_TTL_S
    cleanup_interval_s: int = CLEANUP_INTERVAL_S
    processing_mode: str = "copy"
    settings_path: Path | None = None


def load_server_config() -> ServerConfig:
    cwd = Path.cwd()
    mode = os.getenv("CUTOUT_PROCESSING_MODE", "copy").strip().lower()
    if mode not in PROCESSING_MODES:
        raise ValueError(f"CUTOUT_PROCESSING_MODE must be one of {PROCESSING_MODES}, got {mode!r}")
    settings_path = os.getenv("CUTOUT_SETTINGS_PATH")
    return ServerConfig(
        upload_dir=Path(os.getenv("CUTOUT_UPLOAD_DIR", str(cwd / "temp_uploads"))),
        processed_dir=Path(os.getenv("CUTOUT_PROCESSED_DIR", str(cwd / "processed_images"))),
        max_upload_bytes=_env_int("CUTOUT_MAX_UPLOAD_BYTES", MAX_UPLOAD_BYTES),
        cleanup_ttl_s=_env_int("CUTOUT_CLEANUP_TTL_S", CLEANUP_TTL_S),
        cleanup_interval_s=_env_int("CUTOUT_CLEANUP_INTERVAL_S", CLEANUP_INTERVAL_S),
        processing_mode=mode,
        settings_path=Path(settings_path) if settings_path else None,
    )
