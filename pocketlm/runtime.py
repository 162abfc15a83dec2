"""Runtime environment checks and device selection for pocketlm."""

from __future__ import annotations

import functools
import logging

import torch

logger = logging.getLogger(__name__)

_DTYPES = {
    "float32": torch.float32,
    "fp32": torch.float32,
    "float16": torch.float16,
    "fp16": torch.float16,
    "bfloat16": torch.bfloat16,
    "bf16": torch.bfloat16,
}


@functools.lru_cache(maxsize=1)
def is_cuda_available() -> bool:
    """Check if CUDA is available."""
    return torch.cuda.is_available()


@functools.lru_cache(maxsize=1)
def is_mps_available() -> bool:
    """Check if the Apple Metal backend is available."""
    backend = getattr(torch.backends, "mps", None)
    return bool(backend is not None and backend.is_available())


def resolve_device(device: str | None = None, *, prefer_gpu: bool = True) -> str:
    """Pick the torch device to run on.

    An explicit `device` always wins. Otherwise CUDA, then MPS, then CPU
    (GPUs only when `prefer_gpu`).
    """
    if device:
        return device
    if prefer_gpu and is_cuda_available():
        return "cuda"
    if prefer_gpu and is_mps_available():
        return "mps"
    return "cpu"


def resolve_dtype(dtype: str | torch.dtype | None, device: str) -> torch.dtype:
    """Map a dtype name to a torch dtype; fp16 on GPUs and fp32 on CPU by default."""
    if isinstance(dtype, torch.dtype):
        return dtype
    if dtype is None:
        return torch.float32 if device == "cpu" else torch.float16
    key = str(dtype).lower().removeprefix("torch.")
    if key not in _DTYPES:
        available = ", ".join(sorted(_DTYPES))
        raise ValueError(f"Unknown dtype: {dtype!r}. Available: {available}")
    return _DTYPES[key]


def set_num_threads(n_threads: int) -> None:
    """Set the intra-op CPU thread count."""
    if n_threads > 0 and torch.get_num_threads() != n_threads:
        logger.debug("Setting torch intra-op threads to %d", n_threads)
        torch.set_num_threads(int(n_threads))
