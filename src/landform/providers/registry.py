"""Provider lookup by resource type."""

from importlib.metadata import entry_points
from typing import Dict, Iterable, Optional

from landform.utils.errors import ConfigurationError, ErrorContext
from landform.utils.logging import get_logger

from .base import BaseProvider, ResourceSchema
from .local import LocalProvider
from .null import NullProvider

logger = get_logger(__name__)

ENTRY_POINT_GROUP = "landform.providers"


def provider_name_for(resource_type: str) -> str:
    """Provider name is the type prefix before the first underscore."""
    return resource_type.split("_", 1)[0]


class ProviderRegistry:
    """Maps resource types to provider instances."""

    def __init__(self, providers: Optional[Iterable[BaseProvider]] = None):
        self._providers: Dict[str, BaseProvider] = {}
        for provider in providers or []:
            self.register(provider)

    @classmethod
    def default(cls, base_dir: Optional[str] = None, load_plugins: bool = True) -> "ProviderRegistry":
        """Registry with the built-in providers and installed plugins.

        Plugins are classes or factories published under the
        ``landform.providers`` entry-point group; they are called with no
        arguments.
        """
        registry = cls([NullProvider(), LocalProvider(base_dir)])
        if load_plugins:
            registry.load_entry_points()
        return registry

    def load_entry_points(self) -> None:
        for entry_point in entry_points(group=ENTRY_POINT_GROUP):
            factory = entry_point.load()
            provider = factory()
            logger.debug(f"Loaded provider '{provider.name}' from {entry_point.value}")
            self.register(provider)

    def register(self, provider: BaseProvider) -> None:
        if not provider.name:
            raise ConfigurationError(f"Provider {type(provider).__name__} has no name")
        self._providers[provider.name] = provider

    def names(self):
        return sorted(self._providers)

    def get(self, resource_type: str) -> BaseProvider:
        """Provider responsible for a resource type.

        Raises:
            ConfigurationError: If no registered provider supports the type
        """
        name = provider_name_for(resource_type)
        provider = self._providers.get(name)
        if provider is None or not provider.supports(resource_type):
            raise ConfigurationError(
                f"No provider supports resource type '{resource_type}'",
                context=ErrorContext(resource_type=resource_type, provider=name),
                suggestions=[
                    f"Registered providers: {', '.join(self.names()) or 'none'}",
                    f"Install a package exposing a '{name}' provider under the "
                    f"'{ENTRY_POINT_GROUP}' entry-point group",
                ]
            )
        return provider

    def schema_for(self, resource_type: str) -> ResourceSchema:
        return self.get(resource_type).get_schema(resource_type)
