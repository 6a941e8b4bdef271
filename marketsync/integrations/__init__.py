"""
Integrations package initialization.
Exports the platform adapter contract and shipped adapters.
"""
from .base import PlatformAdapter, PlatformRequestError, UnsupportedPlatformError
from .mock import MockMarketplaceAdapter
from .gateway import HttpPlatformAdapter
from .platforms import PlatformAdapterRegistry, build_default_registry

__all__ = [
    "PlatformAdapter",
    "PlatformRequestError",
    "UnsupportedPlatformError",
    "MockMarketplaceAdapter",
    "HttpPlatformAdapter",
    "PlatformAdapterRegistry",
    "build_default_registry",
]
