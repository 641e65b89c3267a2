"""Resource document loading and validation.

A resource document declares the desired state of a set of resources.
Each resource has a kind (which provider manages it), a name (unique
within its kind) and an attribute map. Attribute values may contain
placeholders:

    ${var.NAME}            value from the variable map
    ${KIND.NAME}           provider-assigned ID of another resource
    ${KIND.NAME.ATTR}      attribute of another resource's state

Documents are YAML or JSON. Variables declared in the document are
defaults; --var-file and --var values override them.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from config import ConfigError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResourceDecl:
    """A single resource declaration as written in the document.

    Attributes:
        kind: Resource kind (provider lookup key), e.g. object-store-bucket
        name: Resource name, unique within its kind
        attributes: Attribute map; values may contain placeholders
        depends_on: Explicit dependency identifiers (kind.name)
    """
    kind: str
    name: str
    attributes: dict = field(default_factory=dict)
    depends_on: tuple = ()

    @property
    def identifier(self) -> str:
        return f'{self.kind}.{self.name}'

    @classmethod
    def from_dict(cls, data: dict, index: int = 0) -> 'ResourceDecl':
        """Create ResourceDecl from dictionary.

        Raises:
            ConfigError: If required fields are missing or malformed
        """
        if not isinstance(data, dict):
            raise ConfigError(f"Resource {index} must be a mapping")
        for key in ('kind', 'name'):
            if key not in data:
                raise ConfigError(f"Resource {index} missing required field: {key}")
            value = data[key]
            if not isinstance(value, str) or not value:
                raise ConfigError(f"Resource {index} field '{key}' must be a non-empty string")
            for separator in ('.', '/', '\\'):
                if separator in value:
                    raise ConfigError(f"Resource {index} field '{key}' must not contain '{separator}': {value!r}")

        attributes = data.get('attributes') or {}
        if not isinstance(attributes, dict):
            raise ConfigError(f"Resource {index} ({data['kind']}.{data['name']}) attributes must be a mapping")

        depends_on = data.get('depends_on') or []
        if isinstance(depends_on, str):
            depends_on = [depends_on]
        if not isinstance(depends_on, list) or not all(isinstance(d, str) for d in depends_on):
            raise ConfigError(f"Resource {index} ({data['kind']}.{data['name']}) depends_on must be a list of identifiers")

        return cls(
            kind=data['kind'],
            name=data['name'],
            attributes=attributes,
            depends_on=tuple(depends_on),
        )

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'kind': self.kind,
            'name': self.name,
            'attributes': self.attributes,
        }
        if self.depends_on:
            d['depends_on'] = list(self.depends_on)
        return d


@dataclass
class Manifest:
    """Declarative resource document.

    Attributes:
        name: Document name (used for report filenames)
        resources: Resource declarations in document order
        variables: Default variable values declared in the document
        description: Optional description
        source_path: Path where the document was loaded from (for debugging)
    """
    name: str
    resources: list[ResourceDecl]
    variables: dict = field(default_factory=dict)
    description: str = ''
    source_path: Optional[Path] = None

    @classmethod
    def from_dict(cls, data: dict, source_path: Optional[Path] = None) -> 'Manifest':
        """Create Manifest from dictionary.

        Raises:
            ConfigError: If the document is invalid
        """
        if not isinstance(data, dict):
            raise ConfigError("Resource document must be an object (dict)")
        if 'resources' not in data:
            raise ConfigError("Resource document missing required field: resources")
        if not isinstance(data['resources'], list):
            raise ConfigError("Resource document field 'resources' must be a list")

        variables = data.get('variables') or {}
        if not isinstance(variables, dict):
            raise ConfigError("Resource document field 'variables' must be a mapping")

        resources = [ResourceDecl.from_dict(r, i) for i, r in enumerate(data['resources'])]

        name = data.get('name')
        if not name:
            name = source_path.stem if source_path else 'inline'

        return cls(
            name=name,
            resources=resources,
            variables=variables,
            description=data.get('description', ''),
            source_path=source_path,
        )

    @classmethod
    def from_json(cls, json_str: str) -> 'Manifest':
        """Create Manifest from JSON string."""
        try:
            data = json.loads(json_str)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid document JSON: {e}")
        return cls.from_dict(data)

    def to_dict(self) -> dict:
        return {
            'name': self.name,
            'description': self.description,
            'variables': self.variables,
            'resources': [r.to_dict() for r in self.resources],
        }


def _load_structured_file(path: Path) -> Any:
    """Load a YAML or JSON file (chosen by extension; YAML otherwise)."""
    if not path.exists():
        raise ConfigError(f"File not found: {path}")
    try:
        with open(path, encoding='utf-8') as f:
            if path.suffix == '.json':
                return json.load(f)
            return yaml.safe_load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in {path}: {e}")
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")


def load_manifest(file_path: Optional[str] = None, json_str: Optional[str] = None) -> Manifest:
    """Load a resource document.

    Priority:
    1. json_str - Inline JSON
    2. file_path - YAML or JSON file

    Raises:
        ConfigError: If no source given, or the document is invalid
    """
    if json_str:
        return Manifest.from_json(json_str)
    if file_path:
        path = Path(file_path)
        data = _load_structured_file(path)
        manifest = Manifest.from_dict(data, source_path=path)
        logger.debug(f"Loaded document '{manifest.name}' from {path} ({len(manifest.resources)} resources)")
        return manifest
    raise ConfigError("No resource document given")


def load_var_file(path: str) -> dict:
    """Load a variable file (YAML or JSON mapping)."""
    data = _load_structured_file(Path(path))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Variable file {path} must be a mapping")
    return data


def parse_var_args(values: Optional[list[str]]) -> dict:
    """Parse repeated KEY=VALUE arguments.

    Values are parsed as YAML scalars so numbers and booleans keep their type.
    """
    result: dict[str, Any] = {}
    for item in values or []:
        if '=' not in item:
            raise ConfigError(f"Invalid --var '{item}': expected KEY=VALUE")
        key, raw = item.split('=', 1)
        key = key.strip()
        if not key:
            raise ConfigError(f"Invalid --var '{item}': empty key")
        try:
            result[key] = yaml.safe_load(raw) if raw else ''
        except yaml.YAMLError:
            result[key] = raw
    return result


def merge_variables(manifest: Manifest, var_files: Optional[list[str]] = None,
                    var_args: Optional[list[str]] = None) -> dict:
    """Combine variables: document defaults, then var files, then --var args."""
    variables = dict(manifest.variables)
    for var_file in var_files or []:
        variables.update(load_var_file(var_file))
    variables.update(parse_var_args(var_args))
    return variables
