"""Provider registry.

Maps a resource kind to the provider implementation that manages it.
Providers are peers implementing the same four-operation protocol;
the engine never contains kind-specific logic.
"""

import importlib
import logging
from typing import Optional, Protocol, runtime_checkable

from config import ConfigError, Settings
from reconciler.errors import UnknownKindError
from reconciler.graph import ResourceGraph, ResourceSpec
from reconciler.state import ResourceState

logger = logging.getLogger(__name__)

# Registering under this kind sets the fallback for unlisted kinds
DEFAULT_KIND = '*'


@runtime_checkable
class ProviderCapability(Protocol):
    """Protocol for provider classes managing one or more resource kinds.

    Every operation raises ProviderError on failure; transient=True marks
    failures worth retrying.
    """

    def create(self, spec: ResourceSpec) -> ResourceState:
        """Create the resource and return its state."""

    def read(self, state: ResourceState) -> Optional[ResourceState]:
        """Return the live state of a previously applied resource, or None if gone."""

    def update(self, spec: ResourceSpec, state: ResourceState) -> ResourceState:
        """Bring the resource in line with spec and return its new state."""

    def delete(self, state: ResourceState) -> None:
        """Delete the resource."""


class ProviderRegistry:
    """Kind -> provider lookup, populated at process start."""

    def __init__(self):
        self._providers: dict[str, ProviderCapability] = {}
        self._default: Optional[ProviderCapability] = None

    def register(self, kind: str, provider: ProviderCapability) -> None:
        """Register provider for kind (replaces any earlier registration).

        Registering under DEFAULT_KIND ('*') sets the fallback provider.

        Raises:
            TypeError: If provider does not implement ProviderCapability
        """
        if not isinstance(provider, ProviderCapability):
            raise TypeError(
                f"Provider for kind '{kind}' must implement create/read/update/delete, "
                f"got {type(provider).__name__}"
            )
        if kind == DEFAULT_KIND:
            self._default = provider
            return
        if kind in self._providers:
            logger.debug(f"Replacing provider for kind '{kind}'")
        self._providers[kind] = provider

    def lookup(self, kind: str) -> ProviderCapability:
        """Get the provider for kind.

        Raises:
            UnknownKindError: If no provider is registered for kind
        """
        if kind in self._providers:
            return self._providers[kind]
        if self._default is not None:
            return self._default
        raise UnknownKindError(kind, self.kinds())

    def kinds(self) -> list[str]:
        return sorted(self._providers)

    def __contains__(self, kind: str) -> bool:
        return kind in self._providers or self._default is not None

    def validate(self, graph: ResourceGraph, extra_kinds: Optional[list[str]] = None) -> None:
        """Check every kind in graph (and extra_kinds) has a provider.

        Raises:
            UnknownKindError: For the first kind without a provider
        """
        for spec in graph.specs:
            self.lookup(spec.kind)
        for kind in extra_kinds or []:
            self.lookup(kind)


def _load_provider_class(type_name: str):
    """Resolve a provider type: built-in name or 'module:Class' path."""
    from providers import BUILTIN_PROVIDERS

    if type_name in BUILTIN_PROVIDERS:
        return BUILTIN_PROVIDERS[type_name]

    if ':' not in type_name:
        raise ConfigError(
            f"Unknown provider type '{type_name}'. "
            f"Use one of {', '.join(sorted(BUILTIN_PROVIDERS))} or 'module:Class'"
        )
    module_name, class_name = type_name.split(':', 1)
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigError(f"Cannot import provider module '{module_name}': {e}")
    try:
        return getattr(module, class_name)
    except AttributeError:
        raise ConfigError(f"Provider class '{class_name}' not found in '{module_name}'")


def build_registry(settings: Settings) -> ProviderRegistry:
    """Construct a registry from the providers section of the settings.

    Each entry maps a kind to {type: <builtin|module:Class>, **options};
    options are passed to the provider constructor. Kinds sharing an
    identical definition share one provider instance.

    Raises:
        ConfigError: If a provider type cannot be resolved or constructed
    """
    registry = ProviderRegistry()
    instances: dict[str, ProviderCapability] = {}

    for kind, definition in settings.providers.items():
        options = dict(definition)
        type_name = options.pop('type')
        cache_key = repr(sorted((k, repr(v)) for k, v in definition.items()))

        provider = instances.get(cache_key)
        if provider is None:
            provider_cls = _load_provider_class(type_name)
            try:
                provider = provider_cls(**options)
            except TypeError as e:
                raise ConfigError(f"Invalid options for provider '{type_name}' (kind '{kind}'): {e}")
            instances[cache_key] = provider

        try:
            registry.register(kind, provider)
        except TypeError as e:
            raise ConfigError(str(e))
        logger.debug(f"Registered provider '{type_name}' for kind '{kind}'")

    return registry
