from __future__ import annotations

from typing import Callable, Dict, Optional

from ..config import EngineConfig, TenantConfig
from ..util.errors import ConfigError
from .base import Command, CommandStatus, PolicyProvider, ProgressCallback, Provider

ProviderFactory = Callable[[TenantConfig, EngineConfig], Provider]


class ProviderRegistry:
    """
    Registry mapping provider type strings (intune, uem, ...) to factories.
    """

    def __init__(self) -> None:
        self._map: Dict[str, ProviderFactory] = {}

    def register(self, provider_type: str, factory: ProviderFactory) -> None:
        self._map[provider_type] = factory

    def is_registered(self, provider_type: str) -> bool:
        return provider_type in self._map

    def registered_types(self) -> list[str]:
        return sorted(self._map.keys())

    def build(self, tenant: TenantConfig, settings: Optional[EngineConfig] = None) -> Provider:
        factory = self._map.get(tenant.type)
        if factory is None:
            raise ConfigError(f"unsupported provider type '{tenant.type}' for tenant '{tenant.name}'")
        return factory(tenant, settings or EngineConfig())


_global_registry = ProviderRegistry()


def register_provider(provider_type: str, factory: ProviderFactory) -> None:
    _global_registry.register(provider_type, factory)


def build_provider(tenant: TenantConfig, settings: Optional[EngineConfig] = None) -> Provider:
    return _global_registry.build(tenant, settings)


def list_registered_provider_types() -> list[str]:
    return _global_registry.registered_types()


def _register_builtin() -> None:
    from .intune import PROVIDER_TYPE, IntuneProvider

    register_provider(PROVIDER_TYPE, lambda tenant, settings: IntuneProvider(tenant, settings))


_register_builtin()

__all__ = [
    "Command",
    "CommandStatus",
    "PolicyProvider",
    "ProgressCallback",
    "Provider",
    "ProviderFactory",
    "ProviderRegistry",
    "build_provider",
    "list_registered_provider_types",
    "register_provider",
]
