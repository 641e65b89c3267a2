"""Local filesystem provider.

Each resource is a JSON document at {root}/{kind}/{name}.json holding its
attributes. The relative path is the external ID.
"""

import errno
import json
import logging
import os
from pathlib import Path
from typing import Optional

from reconciler.errors import ProviderError
from reconciler.graph import ResourceSpec
from reconciler.state import ResourceState

logger = logging.getLogger(__name__)

# errno values worth retrying (contention, resource exhaustion)
TRANSIENT_ERRNOS = {errno.EAGAIN, errno.EBUSY, errno.EINTR, errno.ENOSPC, errno.EMFILE}


def _provider_error(action: str, identifier: str, e: OSError) -> ProviderError:
    transient = e.errno in TRANSIENT_ERRNOS
    return ProviderError(f"Failed to {action} {identifier}: {e}", transient=transient)


class FileProvider:
    """Provider writing resources as JSON files under a root directory."""

    def __init__(self, root: str = 'resources'):
        self.root = Path(root)

    def _path(self, kind: str, name: str) -> Path:
        return self.root / kind / f'{name}.json'

    def _external_id(self, kind: str, name: str) -> str:
        return f'{kind}/{name}.json'

    def _write(self, spec: ResourceSpec) -> ResourceState:
        path = self._path(spec.kind, spec.name)
        external_id = self._external_id(spec.kind, spec.name)
        attributes = dict(spec.attributes)
        attributes['id'] = external_id
        attributes['path'] = str(path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix('.json.tmp')
            with open(tmp, 'w', encoding='utf-8') as f:
                json.dump(attributes, f, indent=2, sort_keys=True)
            os.replace(tmp, path)
        except OSError as e:
            raise _provider_error('write', spec.identifier, e)
        except (TypeError, ValueError) as e:
            raise ProviderError(f"Attributes of {spec.identifier} are not JSON-serializable: {e}")
        return ResourceState(kind=spec.kind, name=spec.name, external_id=external_id, attributes=attributes)

    def create(self, spec: ResourceSpec) -> ResourceState:
        path = self._path(spec.kind, spec.name)
        if path.exists():
            raise ProviderError(f"{spec.identifier} already exists at {path}")
        logger.info(f"[file] Creating {path}")
        return self._write(spec)

    def read(self, state: ResourceState) -> Optional[ResourceState]:
        path = self.root / (state.external_id or self._external_id(state.kind, state.name))
        if not path.exists():
            return None
        try:
            with open(path, encoding='utf-8') as f:
                attributes = json.load(f)
        except OSError as e:
            raise _provider_error('read', state.identifier, e)
        except json.JSONDecodeError as e:
            raise ProviderError(f"Corrupt resource file {path}: {e}")
        return ResourceState(
            kind=state.kind,
            name=state.name,
            external_id=state.external_id,
            attributes=attributes,
        )

    def update(self, spec: ResourceSpec, state: ResourceState) -> ResourceState:
        logger.info(f"[file] Updating {self._path(spec.kind, spec.name)}")
        return self._write(spec)

    def delete(self, state: ResourceState) -> None:
        path = self.root / (state.external_id or self._external_id(state.kind, state.name))
        logger.info(f"[file] Removing {path}")
        try:
            path.unlink()
        except FileNotFoundError:
            logger.debug(f"[file] {path} already absent")
        except OSError as e:
            raise _provider_error('delete', state.identifier, e)
