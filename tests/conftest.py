"""Shared pytest fixtures for reconciler tests."""

import logging
import sys
from pathlib import Path

import pytest
import yaml

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from manifest import ResourceDecl  # noqa: E402
from providers.memory import MemoryProvider  # noqa: E402
from reconciler.registry import ProviderRegistry  # noqa: E402
from reconciler.state import MemoryStateStore  # noqa: E402


def decl(kind, name, /, depends_on=(), **attributes):
    """Shorthand for a ResourceDecl."""
    return ResourceDecl(kind=kind, name=name, attributes=attributes, depends_on=tuple(depends_on))


@pytest.fixture
def memory_provider():
    """In-memory provider with fault injection."""
    return MemoryProvider()


@pytest.fixture
def registry(memory_provider):
    """Registry serving every kind from memory_provider."""
    reg = ProviderRegistry()
    reg.register('*', memory_provider)
    return reg


@pytest.fixture
def store():
    """Empty in-memory state store."""
    return MemoryStateStore()


@pytest.fixture
def bucket_policy_decls():
    """Bucket (no deps) and a policy referencing it."""
    return [
        decl('object-store-bucket', 'logs', bucket='audit-logs'),
        decl('key-value-policy', 'logs-policy',
             bucket='${object-store-bucket.logs}',
             statement='allow-write'),
    ]


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    """Working directory with reconciler.yaml using the file provider.

    Creates:
    - reconciler.yaml (state in .states/, resources in resources/)
    - audit.yaml (bucket + policy document)
    """
    settings = {
        'state_dir': '.states',
        'max_retries': 0,
        'backoff_base': 0,
        'operation_timeout': 30,
        'providers': {'*': {'type': 'file', 'root': str(tmp_path / 'resources')}},
    }
    (tmp_path / 'reconciler.yaml').write_text(yaml.safe_dump(settings))

    document = {
        'name': 'audit',
        'variables': {'bucket_name': 'audit-logs'},
        'resources': [
            {'kind': 'object-store-bucket', 'name': 'logs',
             'attributes': {'bucket': '${var.bucket_name}'}},
            {'kind': 'key-value-policy', 'name': 'logs-policy',
             'attributes': {'bucket': '${object-store-bucket.logs}',
                            'arn': 'arn:bucket:${object-store-bucket.logs.bucket}'}},
        ],
    }
    (tmp_path / 'audit.yaml').write_text(yaml.safe_dump(document, sort_keys=False))

    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv('RECONCILER_CONFIG', raising=False)
    return tmp_path


@pytest.fixture(autouse=True)
def _restore_root_logger():
    """--json-output swaps root handlers; put them back after each test."""
    root_logger = logging.getLogger()
    handlers = root_logger.handlers[:]
    level = root_logger.level
    yield
    root_logger.handlers[:] = handlers
    root_logger.setLevel(level)
