"""
Generation provider clients.

This package provides a unified three-call interface (submit / status /
result) over external asynchronous generation services:
- FalClient: fal.ai queue API (training, image, video, pose, upscale)
- KlingClient: Kling task API (image-to-video, motion)

Usage:
    from swapflow.services.providers import ProviderPool

    async with ProviderPool(settings) as pool:
        fal = pool.get("fal")
        handle = await fal.submit("upscale_clarity", {"image_url": url})
"""

import logging

from swapflow.config import Settings
from swapflow.services.providers.base import (
    BaseProviderImpl,
    GenerationProvider,
    ProviderConfig,
)
from swapflow.services.providers.fal_client import FalClient
from swapflow.services.providers.kling_client import KlingClient

logger = logging.getLogger(__name__)

PROVIDER_CLASSES: dict[str, type[BaseProviderImpl]] = {
    "fal": FalClient,
    "kling": KlingClient,
}


def create_provider(name: str, settings: Settings) -> GenerationProvider:
    """
    Create a provider client by identifier.

    Args:
        name: Provider identifier ("fal", "kling")
        settings: Application settings

    Returns:
        Provider client (caller owns closing it)

    Raises:
        KeyError: If provider is unknown
    """
    if name not in PROVIDER_CLASSES:
        raise KeyError(
            f"Provider '{name}' not found. Available: {list(PROVIDER_CLASSES.keys())}"
        )
    return PROVIDER_CLASSES[name].from_settings(settings)


class ProviderPool:
    """
    Lazily created provider clients shared by the stages of one job.

    Pre-built providers can be injected (tests, alternative transports).

    Example:
        async with ProviderPool(settings) as pool:
            provider = pool.get("kling")
    """

    def __init__(
        self,
        settings: Settings,
        providers: dict[str, GenerationProvider] | None = None,
    ):
        self.settings = settings
        self._providers: dict[str, GenerationProvider] = dict(providers or {})
        self._owned: set[str] = set()

    def get(self, name: str) -> GenerationProvider:
        """Get (creating on first use) the provider with this identifier."""
        if name not in self._providers:
            self._providers[name] = create_provider(name, self.settings)
            self._owned.add(name)
            logger.debug(f"Created provider client: {name}")
        return self._providers[name]

    async def close(self) -> None:
        """Close clients this pool created."""
        for name in list(self._owned):
            await self._providers[name].close()
            del self._providers[name]
        self._owned.clear()

    async def __aenter__(self) -> "ProviderPool":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


__all__ = [
    "BaseProviderImpl",
    "GenerationProvider",
    "ProviderConfig",
    "FalClient",
    "KlingClient",
    "ProviderPool",
    "create_provider",
]
