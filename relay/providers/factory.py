"""
Provider factory: maps a backend type tag to a constructor.

The factory is the only place concrete backends are wired in. It is
populated once per process by ``build_default_factory``, which loads each
configured backend independently so one broken backend cannot keep the
others from registering.
"""

from __future__ import annotations

import importlib
import logging
from typing import Callable

from django.conf import settings

from relay.providers.base import ProviderCapabilities, StorageProvider
from relay.providers.errors import ConfigurationError

logger = logging.getLogger(__name__)

ProviderConstructor = Callable[[dict | None], StorageProvider]

DEFAULT_BACKENDS = [
    ("webdav", "relay.providers.webdav:WebDAVProvider"),
    ("google_drive", "relay.providers.google_drive:GoogleDriveProvider"),
    ("synology", "relay.providers.synology:SynologyProvider"),
]


class ProviderFactory:
    """Registry of storage backend constructors keyed by type tag."""

    def __init__(self):
        self._registry: dict[str, ProviderConstructor] = {}

    @staticmethod
    def _key(provider_type: str) -> str:
        return (provider_type or "").strip().lower()

    def register(self, provider_type: str, constructor: ProviderConstructor) -> None:
        key = self._key(provider_type)
        if not key:
            raise ConfigurationError("Provider type must not be empty")
        if key in self._registry:
            logger.warning(f"Replacing registered provider backend '{key}'")
        self._registry[key] = constructor
        logger.debug(f"Registered provider backend '{key}'")

    def unregister(self, provider_type: str) -> bool:
        return self._registry.pop(self._key(provider_type), None) is not None

    def create(self, provider_type: str, config: dict | None = None) -> StorageProvider:
        """
        Instantiate an unauthenticated provider.

        Raises:
            ConfigurationError: If the type is not registered; the message
                lists the registered types
        """
        constructor = self._registry.get(self._key(provider_type))
        if constructor is None:
            supported = ", ".join(self.list_supported()) or "none"
            raise ConfigurationError(
                f"Unsupported provider type '{provider_type}'. Supported types: {supported}"
            )
        return constructor(config)

    def is_supported(self, provider_type: str) -> bool:
        return self._key(provider_type) in self._registry

    def list_supported(self) -> list[str]:
        return sorted(self._registry)

    def get_capabilities(self, provider_type: str) -> ProviderCapabilities:
        """Report capabilities from a transient instance; no credentials needed."""
        return self.create(provider_type).capabilities

    def describe(self) -> list[dict]:
        """Summary of every registered backend, for the CLI."""
        described = []
        for provider_type in self.list_supported():
            provider = self.create(provider_type)
            described.append({
                "type": provider_type,
                "name": provider.display_name or provider_type,
                "auth_kind": provider.auth_kind.value,
                "capabilities": provider.capabilities.to_dict(),
            })
        return described


def _load_constructor(target: str) -> ProviderConstructor:
    module_path, _, attribute = target.partition(":")
    module = importlib.import_module(module_path)
    return getattr(module, attribute)


def build_default_factory(backends: list[tuple[str, str]] | None = None) -> ProviderFactory:
    """
    Build a factory from ``(type, "module:Constructor")`` pairs.

    Defaults to ``settings.RELAY_PROVIDER_BACKENDS``. A backend that fails to
    import is logged and skipped.

    Raises:
        ConfigurationError: If no backend could be registered
    """
    if backends is None:
        backends = getattr(settings, "RELAY_PROVIDER_BACKENDS", DEFAULT_BACKENDS)

    factory = ProviderFactory()
    for provider_type, target in backends:
        try:
            constructor = _load_constructor(target)
        except Exception as e:
            logger.error(
                f"Failed to load provider backend '{provider_type}' from {target}: {e}",
                exc_info=True,
            )
            continue
        factory.register(provider_type, constructor)

    if not factory.list_supported():
        raise ConfigurationError("No storage provider backends could be loaded")

    logger.info(f"Loaded provider backends: {', '.join(factory.list_supported())}")
    return factory
