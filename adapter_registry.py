"""
Platform -> adapter lookup.

Adapters are built lazily on first ``get()`` from registered factories, so a
platform whose credentials are not configured never costs anything until it
is used. The app owns one registry (``build_default_registry()``); tests
build their own or ``register()`` fakes on top.
"""

from __future__ import annotations

import importlib
from typing import Callable, Dict, List

from delivery_models import PLATFORMS
from platform_adapters import PlatformAdapter
from platform_adapters.errors import UnsupportedPlatformError

AdapterFactory = Callable[[], PlatformAdapter]

# platform -> (module, class)
DEFAULT_ADAPTERS: Dict[str, tuple[str, str]] = {
    "instacart": ("platform_adapters.instacart", "InstacartAdapter"),
    "costco": ("platform_adapters.instacart", "CostcoAdapter"),
    "doordash": ("platform_adapters.doordash", "DoorDashAdapter"),
    "ubereats": ("platform_adapters.ubereats", "UberEatsAdapter"),
    "amazon": ("platform_adapters.amazon", "AmazonAdapter"),
    "totalwine": ("platform_adapters.totalwine", "TotalWineAdapter"),
    "walmart": ("platform_adapters.walmart", "WalmartAdapter"),
    "shipt": ("platform_adapters.shipt", "ShiptAdapter"),
    "drizly": ("platform_adapters.drizly", "DrizlyAdapter"),
    "samsclub": ("platform_adapters.samsclub", "SamsClubAdapter"),
}


class AdapterRegistry:
    def __init__(self) -> None:
        self._factories: Dict[str, AdapterFactory] = {}
        self._instances: Dict[str, PlatformAdapter] = {}

    def register(self, adapter: PlatformAdapter) -> None:
        """Install a ready-made adapter, replacing any factory or instance."""
        self._instances[adapter.platform_id] = adapter
        self._factories[adapter.platform_id] = lambda: adapter

    def register_factory(self, platform: str, factory: AdapterFactory) -> None:
        self._factories[platform] = factory
        self._instances.pop(platform, None)

    def get(self, platform: str) -> PlatformAdapter:
        adapter = self._instances.get(platform)
        if adapter is not None:
            return adapter
        factory = self._factories.get(platform)
        if factory is None:
            raise UnsupportedPlatformError(platform)
        adapter = factory()
        self._instances[platform] = adapter
        return adapter

    def has(self, platform: str) -> bool:
        return platform in self._factories or platform in self._instances

    def is_loaded(self, platform: str) -> bool:
        return platform in self._instances

    def platforms(self) -> List[str]:
        return sorted(set(self._factories) | set(self._instances))

    def loaded(self) -> List[PlatformAdapter]:
        return list(self._instances.values())

    def unregister(self, platform: str) -> None:
        self._factories.pop(platform, None)
        self._instances.pop(platform, None)

    def clear(self) -> None:
        self._factories.clear()
        self._instances.clear()

    async def aclose(self) -> None:
        for adapter in self.loaded():
            await adapter.aclose()


def _lazy(module_name: str, class_name: str) -> AdapterFactory:
    def factory() -> PlatformAdapter:
        module = importlib.import_module(module_name)
        return getattr(module, class_name)()

    return factory


def build_default_registry() -> AdapterRegistry:
    registry = AdapterRegistry()
    for platform in PLATFORMS:
        module_name, class_name = DEFAULT_ADAPTERS[platform]
        registry.register_factory(platform, _lazy(module_name, class_name))
    return registry


__all__ = ["AdapterRegistry", "DEFAULT_ADAPTERS", "build_default_registry"]
