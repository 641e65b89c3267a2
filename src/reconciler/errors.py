"""Error taxonomy for the reconciler engine.

Graph, kind and config errors are fatal and raised before any provider
call. ProviderError is recoverable per resource. StateStoreError aborts
the run.
"""

from typing import Optional


class ReconcilerError(Exception):
    """Base class for engine errors."""


class GraphError(ReconcilerError):
    """Resource declarations do not form a valid graph."""


class UnresolvedReferenceError(GraphError):
    """A declaration references an identifier (or variable) that does not exist."""

    def __init__(self, source: str, reference: str, message: Optional[str] = None):
        self.source = source
        self.reference = reference
        super().__init__(message or f"Resource '{source}' references unknown resource '{reference}'")


class CycleError(GraphError):
    """Dependency edges form a cycle."""

    def __init__(self, cycle: list[str]):
        self.cycle = list(cycle)
        super().__init__(f"Dependency cycle detected: {' -> '.join(self.cycle)}")


class DuplicateResourceError(GraphError):
    """Two declarations share the same identifier."""

    def __init__(self, identifier: str):
        self.identifier = identifier
        super().__init__(f"Duplicate resource: '{identifier}'")


class UnknownKindError(ReconcilerError):
    """No provider is registered for a resource kind."""

    def __init__(self, kind: str, available: Optional[list[str]] = None):
        self.kind = kind
        available_str = ', '.join(available) if available else 'none'
        super().__init__(f"No provider registered for kind '{kind}'. Available: {available_str}")


class ProviderError(ReconcilerError):
    """A provider operation failed.

    Attributes:
        transient: True if the operation may succeed when retried
    """

    def __init__(self, message: str, transient: bool = False):
        self.transient = transient
        super().__init__(message)

    @property
    def kind(self) -> str:
        return 'transient' if self.transient else 'permanent'


class PlanError(ReconcilerError):
    """The change-set could not be computed."""


class StateStoreError(ReconcilerError):
    """State could not be read or persisted; state integrity is not guaranteed."""
