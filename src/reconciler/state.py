"""Persistent resource state.

Tracks the last-applied state of every managed resource so later runs
can diff against it and destroy can find provider IDs without the
resource document.

State is persisted as one JSON document per resource in the state
directory ({kind}.{name}.json), written atomically and synced to disk
before put() returns.
"""

import json
import logging
import os
import tempfile
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from reconciler.errors import StateStoreError

logger = logging.getLogger(__name__)

STATE_SUFFIX = '.json'


@dataclass
class ResourceState:
    """Last-known state of one resource.

    Attributes:
        kind: Resource kind
        name: Resource name
        external_id: Provider-assigned ID
        attributes: Resolved attribute values (desired plus provider-computed)
        dependencies: Identifiers the resource depended on when applied
        updated_at: Timestamp of the last successful apply
    """
    kind: str
    name: str
    external_id: Optional[str] = None
    attributes: dict = field(default_factory=dict)
    dependencies: list[str] = field(default_factory=list)
    updated_at: Optional[float] = None

    @property
    def identifier(self) -> str:
        return f'{self.kind}.{self.name}'

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'id': self.identifier,
            'kind': self.kind,
            'name': self.name,
            'external_id': self.external_id,
            'attributes': self.attributes,
            'dependencies': list(self.dependencies),
        }
        if self.updated_at is not None:
            d['updated_at'] = self.updated_at
        return d

    @classmethod
    def from_dict(cls, data: dict) -> 'ResourceState':
        return cls(
            kind=data['kind'],
            name=data['name'],
            external_id=data.get('external_id'),
            attributes=data.get('attributes') or {},
            dependencies=list(data.get('dependencies') or []),
            updated_at=data.get('updated_at'),
        )


class StateStore:
    """Directory-backed state store.

    get() after put() in the same process always sees the written state.
    put() and delete() reach stable storage before returning, so a crash
    between two apply operations never loses already-applied state.
    """

    def __init__(self, path: Path):
        """Open (and create if needed) the state directory.

        Raises:
            StateStoreError: If the directory cannot be created
        """
        self.path = Path(path)
        self._cache: dict[str, ResourceState] = {}
        self._lock = threading.Lock()
        self._closed = False
        try:
            self.path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StateStoreError(f"Cannot open state directory {self.path}: {e}")

    def __enter__(self) -> 'StateStore':
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _file_for(self, identifier: str) -> Path:
        if '/' in identifier or identifier.startswith('.'):
            raise StateStoreError(f"Invalid resource identifier for state: '{identifier}'")
        return self.path / f'{identifier}{STATE_SUFFIX}'

    def _check_open(self) -> None:
        if self._closed:
            raise StateStoreError("State store is closed")

    def get(self, identifier: str) -> Optional[ResourceState]:
        """Return the state for identifier, or None if not tracked.

        Raises:
            StateStoreError: If the state file cannot be read or decoded
        """
        with self._lock:
            self._check_open()
            if identifier in self._cache:
                return self._cache[identifier]

            path = self._file_for(identifier)
            if not path.exists():
                return None
            state = self._read(path)
            self._cache[identifier] = state
            return state

    def _read(self, path: Path) -> ResourceState:
        try:
            with open(path, encoding='utf-8') as f:
                return ResourceState.from_dict(json.load(f))
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise StateStoreError(f"Cannot read state file {path}: {e}")

    def put(self, identifier: str, state: ResourceState) -> None:
        """Persist state for identifier (atomic write + fsync).

        Raises:
            StateStoreError: If the state cannot be written
        """
        if state.identifier != identifier:
            raise StateStoreError(
                f"State for '{state.identifier}' cannot be stored under '{identifier}'"
            )
        if state.updated_at is None:
            state.updated_at = time.time()

        with self._lock:
            self._check_open()
            path = self._file_for(identifier)
            tmp_name = None
            try:
                fd, tmp_name = tempfile.mkstemp(prefix=f'.{identifier}-', suffix='.tmp', dir=self.path)
                with os.fdopen(fd, 'w', encoding='utf-8') as f:
                    json.dump(state.to_dict(), f, indent=2, sort_keys=True)
                    f.write('\n')
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_name, path)
                tmp_name = None
                self._sync_dir()
            except (OSError, TypeError, ValueError) as e:
                raise StateStoreError(f"Cannot write state for '{identifier}': {e}")
            finally:
                if tmp_name is not None and os.path.exists(tmp_name):
                    os.unlink(tmp_name)
            self._cache[identifier] = state
        logger.debug(f"Saved state for {identifier} to {path}")

    def delete(self, identifier: str) -> None:
        """Forget identifier. Deleting an untracked identifier is a no-op.

        Raises:
            StateStoreError: If the state file cannot be removed
        """
        with self._lock:
            self._check_open()
            path = self._file_for(identifier)
            try:
                if path.exists():
                    path.unlink()
                    self._sync_dir()
            except OSError as e:
                raise StateStoreError(f"Cannot delete state for '{identifier}': {e}")
            self._cache.pop(identifier, None)
        logger.debug(f"Removed state for {identifier}")

    def list(self) -> list[ResourceState]:
        """All tracked states, sorted by identifier."""
        with self._lock:
            self._check_open()
            states = []
            for path in sorted(self.path.glob(f'*{STATE_SUFFIX}')):
                if path.name.startswith('.'):
                    continue
                identifier = path.name[:-len(STATE_SUFFIX)]
                if identifier not in self._cache:
                    self._cache[identifier] = self._read(path)
                states.append(self._cache[identifier])
            return states

    def _sync_dir(self) -> None:
        """fsync the directory so renames/unlinks are durable (POSIX only)."""
        if not hasattr(os, 'O_DIRECTORY'):
            return
        fd = os.open(self.path, os.O_RDONLY | os.O_DIRECTORY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)

    def close(self) -> None:
        with self._lock:
            self._closed = True
            self._cache.clear()


class MemoryStateStore:
    """In-memory state store with the same contract (no durability)."""

    def __init__(self, states: Optional[list[ResourceState]] = None):
        self._states: dict[str, ResourceState] = {}
        self._lock = threading.Lock()
        for state in states or []:
            self._states[state.identifier] = state

    def __enter__(self) -> 'MemoryStateStore':
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def get(self, identifier: str) -> Optional[ResourceState]:
        with self._lock:
            return self._states.get(identifier)

    def put(self, identifier: str, state: ResourceState) -> None:
        if state.identifier != identifier:
            raise StateStoreError(
                f"State for '{state.identifier}' cannot be stored under '{identifier}'"
            )
        if state.updated_at is None:
            state.updated_at = time.time()
        with self._lock:
            self._states[identifier] = state

    def delete(self, identifier: str) -> None:
        with self._lock:
            self._states.pop(identifier, None)

    def list(self) -> list[ResourceState]:
        with self._lock:
            return [self._states[k] for k in sorted(self._states)]

    def close(self) -> None:
        pass
