from __future__ import annotations

import enum
import logging
import os
import threading
from typing import Any, Callable, Dict, Optional, Tuple

import torch

from .config import MODEL_NAMES, model_spec_for
from .errors import ModelUnavailableError

logger = logging.getLogger(__name__)

ModelLoader = Callable[[], Tuple[torch.nn.Module, torch.device]]


def get_device() -> torch.device:
    """
    CUTOUT_DEVICE overrides; otherwise MPS, then CUDA, then CPU.
    """
    forced = os.getenv("CUTOUT_DEVICE")
    if forced:
        return torch.device(forced)
    if torch.backends.mps.is_available():
        return torch.device("mps")
    if torch.cuda.is_available():
        return torch.device("cuda")
    return torch.device("cpu")


def _freeze(model: torch.nn.Module, device: torch.device) -> torch.nn.Module:
    model.eval()
    for p in model.parameters():
        p.requires_grad_(False)
    return model.to(dtype=torch.float32).to(device)


def load_torchscript_matting_model(model_path: str, device: torch.device | None = None) -> torch.nn.Module:
    """
    Load a TorchScript matting/segmentation model saved via torch.jit.save.

    Pure state_dict checkpoints need the original model code and are not supported.
    """
    if device is None:
        device = get_device()

    if not os.path.exists(model_path):
        raise FileNotFoundError(f"Model not found: {model_path}")

    torch.set_default_dtype(torch.float32)

    # torchvision registers custom TorchScript ops (e.g. deform_conv2d) on import;
    # without it torch.jit.load fails with "Unknown builtin op: torchvision::...".
    import torchvision  # noqa: F401

    # Load on CPU first: some archives carry float64 attributes that MPS rejects.
    model = torch.jit.load(model_path, map_location="cpu")
    return _freeze(model, device)


def load_birefnet_hf(hf_repo: str = "ZhengPeng7/BiRefNet", device: torch.device | None = None) -> torch.nn.Module:
    """
    Load BiRefNet-style models via transformers (trust_remote_code), float32 only.

    Meta-device init paths are disabled to avoid `.item()` on meta tensors.
    """
    if device is None:
        device = get_device()

    from transformers import AutoModelForImageSegmentation

    torch.set_default_dtype(torch.float32)
    model = AutoModelForImageSegmentation.from_pretrained(
        hf_repo,
        trust_remote_code=True,
        low_cpu_mem_usage=False,
        device_map=None,
    )
    return _freeze(model, device)


def load_model_default(model_spec: str) -> Tuple[torch.nn.Module, torch.device]:
    """
    'hf:<repo>' loads through transformers; anything else is a TorchScript path.
    """
    device = get_device()
    if model_spec.startswith("hf:"):
        model = load_birefnet_hf(model_spec[len("hf:") :], device=device)
    elif model_spec == "birefnet":
        model = load_birefnet_hf("ZhengPeng7/BiRefNet", device=device)
    else:
        model = load_torchscript_matting_model(model_spec, device=device)
    return model, device


def forward_model(model: torch.nn.Module, x: torch.Tensor) -> Any:
    with torch.no_grad():
        return model(x)


class ModelState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    FAILED = "failed"


class ModelHandle:
    """
    Lazily-initialized, explicitly-owned model.

    Concurrent acquire() calls collapse onto a single in-flight load; once READY
    the instance is reused. A failed load is reported as ModelUnavailableError
    and never retried inside the same call; the next acquire() tries again.
    """

    def __init__(self, loader: ModelLoader, name: str = "model"):
        self.name = name
        self._loader = loader
        self._lock = threading.Lock()
        self._state = ModelState.UNINITIALIZED
        # (model, device) once READY; swapped as one reference so readers never see half of it.
        self._loaded: Optional[Tuple[torch.nn.Module, torch.device]] = None
        self._error: Optional[BaseException] = None

    @classmethod
    def from_spec(cls, model_spec: str, name: str | None = None) -> "ModelHandle":
        return cls(lambda: load_model_default(model_spec), name=name or model_spec)

    @property
    def state(self) -> ModelState:
        return self._state

    @property
    def error(self) -> Optional[BaseException]:
        return self._error

    def acquire(self) -> Tuple[torch.nn.Module, torch.device]:
        loaded = self._loaded
        if loaded is not None:
            return loaded

        with self._lock:
            # Another caller may have finished the load while we waited.
            if self._loaded is not None:
                return self._loaded

            self._state = ModelState.INITIALIZING
            logger.info("Loading model %s", self.name)
            try:
                model, device = self._loader()
            except Exception as e:  # noqa: BLE001 - every load failure means "unavailable"
                self._state = ModelState.FAILED
                self._error = e
                logger.error("Model %s failed to load: %s", self.name, e)
                raise ModelUnavailableError(f"Model '{self.name}' is unavailable") from e

            self._loaded = (model, device)
            self._error = None
            self._state = ModelState.READY
            logger.info("Model %s ready on %s", self.name, device)
            return model, device

    def release(self) -> None:
        """Drop the model to free accelerator memory."""
        with self._lock:
            loaded, self._loaded = self._loaded, None
            self._state = ModelState.UNINITIALIZED
            if loaded is not None:
                del loaded
                if torch.cuda.is_available():
                    torch.cuda.empty_cache()


class ModelRegistry:
    """One lazily-created ModelHandle per settings model name."""

    def __init__(self, factory: Callable[[str], ModelHandle] | None = None):
        self._factory = factory or (lambda name: ModelHandle.from_spec(model_spec_for(name), name=name))
        self._handles: Dict[str, ModelHandle] = {}
        self._lock = threading.Lock()

    def get(self, name: str) -> ModelHandle:
        if name not in MODEL_NAMES:
            raise ValueError(f"Unknown model {name!r}; expected one of {MODEL_NAMES}")
        with self._lock:
            handle = self._handles.get(name)
            if handle is None:
                handle = self._factory(name)
                self._handles[name] = handle
            return handle

    def states(self) -> Dict[str, str]:
        with self._lock:
            return {name: h.state.value for name, h in self._handles.items()}

    def release_all(self) -> None:
        with self._lock:
            handles = list(self._handles.values())
        for handle in handles:
            handle.release()
