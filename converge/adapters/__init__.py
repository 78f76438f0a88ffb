"""Providers — bindings to the platforms resources live on.

Public re-exports for convenient access.
"""

from converge.adapters.base import Provider
from converge.adapters.local import LocalProvider
from converge.adapters.mock import MockProvider
from converge.adapters.registry import ProviderRegistry, build_registry

__all__ = [
    "LocalProvider",
    "MockProvider",
    "Provider",
    "ProviderRegistry",
    "build_registry",
]
