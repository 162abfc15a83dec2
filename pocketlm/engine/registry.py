"""Backend registry.

Maps backend names to their adapter classes.
"""

from typing import Type

from .adapters.base import BaseAdapter
from .adapters.hf import TransformersAdapter, TransformersVisionAdapter

# Registry mapping backend names to adapter classes
_ADAPTER_REGISTRY: dict[str, Type[BaseAdapter]] = {
    "transformers": TransformersAdapter,
    "transformers-vision": TransformersVisionAdapter,
}


def get_adapter(backend: str) -> BaseAdapter:
    """
    Get a fresh adapter instance for the given backend.

    Args:
        backend: Name of the backend (e.g., "transformers").

    Returns:
        An unloaded adapter instance.

    Raises:
        ValueError: If the backend is not registered.
    """
    if backend not in _ADAPTER_REGISTRY:
        available = ", ".join(_ADAPTER_REGISTRY.keys())
        raise ValueError(f"Unknown backend: {backend!r}. Available: {available}")
    return _ADAPTER_REGISTRY[backend]()


def register_adapter(backend: str, adapter_cls: Type[BaseAdapter]) -> None:
    """Register an adapter class under `backend`."""
    _ADAPTER_REGISTRY[backend] = adapter_cls


def list_backends() -> list[str]:
    """Return list of registered backend names."""
    return list(_ADAPTER_REGISTRY.keys())
