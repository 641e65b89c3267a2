"""Built-in provider implementations.

Provider classes implement reconciler.registry.ProviderCapability and are
selected by 'type' in the providers section of reconciler.yaml.
"""

from providers.file import FileProvider
from providers.memory import MemoryProvider

BUILTIN_PROVIDERS = {
    'file': FileProvider,
    'memory': MemoryProvider,
}

__all__ = ['BUILTIN_PROVIDERS', 'FileProvider', 'MemoryProvider']
