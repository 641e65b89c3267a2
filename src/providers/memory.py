"""In-process provider.

Keeps resources in a dict. Useful for dry experiments and tests: failures,
latency, drift and out-of-band deletion can be injected per resource.
"""

import itertools
import logging
import threading
import time
from collections import defaultdict, deque
from typing import Optional

from reconciler.errors import ProviderError
from reconciler.graph import ResourceSpec
from reconciler.state import ResourceState

logger = logging.getLogger(__name__)


class MemoryProvider:
    """Provider backed by an in-memory object table.

    Attributes:
        name: Label used in log messages and generated IDs
        latency: Seconds each operation sleeps (exercises timeouts)
        calls: (operation, identifier) tuples in invocation order
    """

    def __init__(self, name: str = 'memory', latency: float = 0.0):
        self.name = name
        self.latency = latency
        self.calls: list[tuple[str, str]] = []
        self._objects: dict[str, dict] = {}
        self._counter = itertools.count(1)
        self._failures: dict[tuple[str, str], deque] = defaultdict(deque)
        self._lock = threading.Lock()

    # Fault injection

    def fail(self, identifier: str, operation: str, transient: bool = False, times: int = 1,
             message: Optional[str] = None) -> None:
        """Make the next `times` calls of operation on identifier raise ProviderError."""
        error = ProviderError(message or f"Injected {operation} failure for {identifier}", transient=transient)
        with self._lock:
            for _ in range(times):
                self._failures[(operation, identifier)].append(error)

    def drift(self, identifier: str, **attributes) -> None:
        """Change attributes of a live object behind the engine's back."""
        with self._lock:
            for obj in self._objects.values():
                if obj['identifier'] == identifier:
                    obj['attributes'].update(attributes)
                    return
        raise KeyError(identifier)

    def remove(self, identifier: str) -> None:
        """Delete a live object behind the engine's back."""
        with self._lock:
            for external_id, obj in list(self._objects.items()):
                if obj['identifier'] == identifier:
                    del self._objects[external_id]
                    return
        raise KeyError(identifier)

    def objects(self) -> dict[str, dict]:
        """Live objects keyed by resource identifier."""
        with self._lock:
            return {o['identifier']: dict(o['attributes']) for o in self._objects.values()}

    def calls_for(self, identifier: str) -> list[str]:
        return [op for op, ident in self.calls if ident == identifier]

    # ProviderCapability

    def _enter(self, operation: str, identifier: str) -> None:
        with self._lock:
            self.calls.append((operation, identifier))
            pending = self._failures.get((operation, identifier))
            error = pending.popleft() if pending else None
        if self.latency:
            time.sleep(self.latency)
        if error is not None:
            raise error

    def _state(self, kind: str, name: str, external_id: str, attributes: dict) -> ResourceState:
        return ResourceState(kind=kind, name=name, external_id=external_id, attributes=dict(attributes))

    def create(self, spec: ResourceSpec) -> ResourceState:
        self._enter('create', spec.identifier)
        external_id = f'{self.name}-{spec.kind}-{spec.name}-{next(self._counter)}'
        attributes = dict(spec.attributes)
        attributes['id'] = external_id
        with self._lock:
            self._objects[external_id] = {'identifier': spec.identifier, 'attributes': attributes}
        logger.debug(f"[{self.name}] created {spec.identifier} as {external_id}")
        return self._state(spec.kind, spec.name, external_id, attributes)

    def read(self, state: ResourceState) -> Optional[ResourceState]:
        self._enter('read', state.identifier)
        with self._lock:
            obj = self._objects.get(state.external_id)
            if obj is None:
                return None
            return self._state(state.kind, state.name, state.external_id, obj['attributes'])

    def update(self, spec: ResourceSpec, state: ResourceState) -> ResourceState:
        self._enter('update', spec.identifier)
        with self._lock:
            if state.external_id not in self._objects:
                raise ProviderError(f"{spec.identifier} ({state.external_id}) does not exist")
            attributes = dict(spec.attributes)
            attributes['id'] = state.external_id
            self._objects[state.external_id]['attributes'] = attributes
        logger.debug(f"[{self.name}] updated {spec.identifier}")
        return self._state(spec.kind, spec.name, state.external_id, attributes)

    def delete(self, state: ResourceState) -> None:
        self._enter('delete', state.identifier)
        with self._lock:
            self._objects.pop(state.external_id, None)
        logger.debug(f"[{self.name}] deleted {state.identifier}")
