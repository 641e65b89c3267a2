"""Tests for reconciler.registry module."""

import pytest

from conftest import decl
from config import ConfigError, Settings
from providers import FileProvider, MemoryProvider
from reconciler.errors import UnknownKindError
from reconciler.graph import build_graph
from reconciler.registry import ProviderCapability, ProviderRegistry, build_registry


class TestProviderRegistry:
    """Tests for kind lookup."""

    def test_lookup_registered(self):
        provider = MemoryProvider()
        registry = ProviderRegistry()
        registry.register('bucket', provider)
        assert registry.lookup('bucket') is provider
        assert 'bucket' in registry

    def test_unknown_kind(self):
        registry = ProviderRegistry()
        registry.register('bucket', MemoryProvider())
        with pytest.raises(UnknownKindError) as exc_info:
            registry.lookup('queue')
        assert exc_info.value.kind == 'queue'
        assert 'bucket' in str(exc_info.value)

    def test_default_provider(self):
        fallback = MemoryProvider(name='fallback')
        specific = MemoryProvider(name='specific')
        registry = ProviderRegistry()
        registry.register('*', fallback)
        registry.register('bucket', specific)
        assert registry.lookup('bucket') is specific
        assert registry.lookup('queue') is fallback
        assert 'queue' in registry
        assert registry.kinds() == ['bucket']

    def test_rejects_non_provider(self):
        class Incomplete:
            def create(self, spec):
                pass

        with pytest.raises(TypeError, match="create/read/update/delete"):
            ProviderRegistry().register('bucket', Incomplete())

    def test_builtins_satisfy_protocol(self):
        assert isinstance(MemoryProvider(), ProviderCapability)
        assert isinstance(FileProvider(), ProviderCapability)

    def test_validate_graph(self):
        registry = ProviderRegistry()
        registry.register('bucket', MemoryProvider())
        graph = build_graph([decl('bucket', 'logs'), decl('queue', 'q')])
        with pytest.raises(UnknownKindError, match="queue"):
            registry.validate(graph)

    def test_validate_extra_kinds(self):
        registry = ProviderRegistry()
        registry.register('bucket', MemoryProvider())
        graph = build_graph([decl('bucket', 'logs')])
        registry.validate(graph)
        with pytest.raises(UnknownKindError):
            registry.validate(graph, extra_kinds=['queue'])


class TestBuildRegistry:
    """Tests for build_registry from settings."""

    def test_builtin_types(self, tmp_path):
        settings = Settings(providers={
            'bucket': {'type': 'file', 'root': str(tmp_path)},
            '*': {'type': 'memory'},
        })
        registry = build_registry(settings)
        assert isinstance(registry.lookup('bucket'), FileProvider)
        assert registry.lookup('bucket').root == tmp_path
        assert isinstance(registry.lookup('anything'), MemoryProvider)

    def test_identical_definitions_share_instance(self):
        settings = Settings(providers={
            'bucket': {'type': 'memory', 'name': 'shared'},
            'policy': {'type': 'memory', 'name': 'shared'},
            'queue': {'type': 'memory', 'name': 'other'},
        })
        registry = build_registry(settings)
        assert registry.lookup('bucket') is registry.lookup('policy')
        assert registry.lookup('queue') is not registry.lookup('bucket')

    def test_module_class_path(self):
        settings = Settings(providers={'bucket': {'type': 'providers.memory:MemoryProvider'}})
        assert isinstance(build_registry(settings).lookup('bucket'), MemoryProvider)

    def test_unknown_builtin(self):
        settings = Settings(providers={'bucket': {'type': 'cloud'}})
        with pytest.raises(ConfigError, match="Unknown provider type 'cloud'"):
            build_registry(settings)

    def test_missing_module(self):
        settings = Settings(providers={'bucket': {'type': 'no_such_module:Provider'}})
        with pytest.raises(ConfigError, match="Cannot import"):
            build_registry(settings)

    def test_missing_class(self):
        settings = Settings(providers={'bucket': {'type': 'providers.memory:Nope'}})
        with pytest.raises(ConfigError, match="not found"):
            build_registry(settings)

    def test_bad_options(self):
        settings = Settings(providers={'bucket': {'type': 'memory', 'colour': 'red'}})
        with pytest.raises(ConfigError, match="Invalid options"):
            build_registry(settings)

    def test_non_provider_class(self):
        settings = Settings(providers={'bucket': {'type': 'collections:OrderedDict'}})
        with pytest.raises(ConfigError, match="must implement"):
            build_registry(settings)

    def test_empty(self):
        registry = build_registry(Settings())
        with pytest.raises(UnknownKindError):
            registry.lookup('bucket')
