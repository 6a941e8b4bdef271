"""
Platform adapter registry.
Dispatches each job to the adapter registered for its platform name.
"""
from typing import Any, Dict, Optional

from marketsync.config import PLATFORM_GATEWAY, SUPPORTED_PLATFORMS
from marketsync.utils.logger import get_logger
from .base import PlatformAdapter, UnsupportedPlatformError
from .gateway import HttpPlatformAdapter
from .mock import MockMarketplaceAdapter

logger = get_logger(__name__)


class PlatformAdapterRegistry:
    """Maps platform names to adapters."""

    def __init__(self, adapters: Optional[Dict[str, PlatformAdapter]] = None):
        self._adapters: Dict[str, PlatformAdapter] = {k.lower(): v for k, v in (adapters or {}).items()}

    def register(self, platform: str, adapter: PlatformAdapter) -> None:
        self._adapters[platform.lower()] = adapter

    @property
    def platforms(self) -> list[str]:
        return sorted(self._adapters)

    def get(self, platform: str) -> PlatformAdapter:
        adapter = self._adapters.get(platform.lower())
        if adapter is None:
            logger.error("Unsupported platform", platform=platform, supported_platforms=self.platforms)
            raise UnsupportedPlatformError(platform, self.platforms)
        return adapter

    async def perform_request(self, platform: str, payload: Any) -> Dict[str, Any]:
        return await self.get(platform).perform_request(platform, payload)

    async def close(self) -> None:
        for adapter in set(self._adapters.values()):
            await adapter.close()


def build_default_registry(mode: Optional[str] = None) -> PlatformAdapterRegistry:
    """One shared adapter for every supported platform, picked by gateway mode."""
    selected = str(mode or PLATFORM_GATEWAY["mode"]).lower()
    adapter: PlatformAdapter = HttpPlatformAdapter() if selected == "http" else MockMarketplaceAdapter()
    logger.info("Platform adapters configured", mode=selected, platforms=SUPPORTED_PLATFORMS)
    return PlatformAdapterRegistry({platform: adapter for platform in SUPPORTED_PLATFORMS})
