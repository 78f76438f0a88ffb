"""
Provider registry — lookup of providers by name.

The use cases never construct providers directly; they ask the
registry for the one named in converge.yml.  Tests register a
MockProvider under the configured name instead.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from converge.adapters.base import Provider
from converge.adapters.local import LocalProvider
from converge.adapters.mock import MockProvider
from converge.core.errors import ConfigError
from converge.core.models.project import ProviderSettings

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Central registry of provider instances."""

    def __init__(self) -> None:
        self._providers: dict[str, Provider] = {}

    def register(self, provider: Provider) -> None:
        name = provider.name
        if name in self._providers:
            logger.warning("Overwriting existing provider: %s", name)
        self._providers[name] = provider
        logger.debug("Registered provider: %s", name)

    def get(self, name: str) -> Provider | None:
        return self._providers.get(name)

    def resolve(self, name: str) -> Provider:
        """Look up a provider or raise ConfigError listing what exists."""
        provider = self._providers.get(name)
        if provider is None:
            known = ", ".join(sorted(self._providers)) or "none"
            raise ConfigError(f"Unknown provider '{name}' (registered: {known})")
        return provider

    def list_providers(self) -> list[str]:
        return list(self._providers)

    def provider_status(self) -> dict[str, dict[str, Any]]:
        """Availability of all registered providers."""
        status = {}
        for name, provider in self._providers.items():
            try:
                available = provider.is_available()
            except Exception:
                available = False
            status[name] = {
                "name": name,
                "available": available,
                "type": provider.__class__.__name__,
            }
        return status


def build_registry(settings: ProviderSettings, state_dir: Path) -> ProviderRegistry:
    """Registry with the built-in providers, configured from converge.yml."""
    registry = ProviderRegistry()
    local_settings = settings.settings if settings.name == "local" else {}
    registry.register(LocalProvider.from_settings(local_settings, state_dir))
    registry.register(MockProvider())
    return registry
