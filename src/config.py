"""Engine settings management.

Settings are loaded from a YAML file (reconciler.yaml) and control where
state is kept, how provider calls are retried and bounded, and which
provider implementation serves each resource kind.

Resolution order for the settings file:
1. Explicit path (--config)
2. $RECONCILER_CONFIG environment variable
3. ./reconciler.yaml in the working directory
4. Built-in defaults (no file)

CLI flags override values read from the file.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

logger = logging.getLogger(__name__)

SETTINGS_FILENAME = 'reconciler.yaml'

# Defaults mirrored in Settings below
DEFAULT_STATE_DIR = '.states'
DEFAULT_MAX_RETRIES = 3
DEFAULT_OPERATION_TIMEOUT = 300.0


class ConfigError(Exception):
    """Configuration error."""


@dataclass
class Settings:
    """Engine settings.

    Attributes:
        state_dir: Directory holding one JSON state document per resource
        max_retries: Retries after a transient provider failure (0 = no retry)
        backoff_base: First retry delay in seconds; doubles per attempt
        backoff_max: Upper bound on a single retry delay
        operation_timeout: Seconds before a provider call counts as a transient failure
        concurrency: Worker count for independent graph branches (1 = sequential)
        report_dir: Optional directory for JSON/markdown apply reports
        providers: Resource kind -> provider definition ({type: ..., **options})
        source_path: File the settings were loaded from (None for defaults)
    """
    state_dir: Path = field(default_factory=lambda: Path(DEFAULT_STATE_DIR))
    max_retries: int = DEFAULT_MAX_RETRIES
    backoff_base: float = 1.0
    backoff_max: float = 30.0
    operation_timeout: float = DEFAULT_OPERATION_TIMEOUT
    concurrency: int = 1
    report_dir: Optional[Path] = None
    providers: dict[str, dict] = field(default_factory=dict)
    source_path: Optional[Path] = None

    def __post_init__(self):
        if isinstance(self.state_dir, str):
            self.state_dir = Path(self.state_dir)
        if isinstance(self.report_dir, str):
            self.report_dir = Path(self.report_dir)
        self.validate()

    def validate(self) -> None:
        """Check value ranges.

        Raises:
            ConfigError: If a value is out of range
        """
        if self.max_retries < 0:
            raise ConfigError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.backoff_base < 0 or self.backoff_max < 0:
            raise ConfigError("backoff_base and backoff_max must be >= 0")
        if self.operation_timeout <= 0:
            raise ConfigError(f"operation_timeout must be > 0, got {self.operation_timeout}")
        if self.concurrency < 1:
            raise ConfigError(f"concurrency must be >= 1, got {self.concurrency}")
        for kind, definition in self.providers.items():
            if not isinstance(definition, dict) or 'type' not in definition:
                raise ConfigError(f"Provider for kind '{kind}' must be a mapping with a 'type' key")

    @classmethod
    def from_dict(cls, data: Optional[dict], source_path: Optional[Path] = None) -> 'Settings':
        """Create Settings from a parsed settings document."""
        if not data:
            return cls(source_path=source_path)
        if not isinstance(data, dict):
            raise ConfigError(f"Settings {source_path or ''} must be a YAML object (dict)")

        try:
            report_dir = data.get('report_dir')
            return cls(
                state_dir=Path(data.get('state_dir', DEFAULT_STATE_DIR)),
                max_retries=int(data.get('max_retries', DEFAULT_MAX_RETRIES)),
                backoff_base=float(data.get('backoff_base', 1.0)),
                backoff_max=float(data.get('backoff_max', 30.0)),
                operation_timeout=float(data.get('operation_timeout', DEFAULT_OPERATION_TIMEOUT)),
                concurrency=int(data.get('concurrency', 1)),
                report_dir=Path(report_dir) if report_dir else None,
                providers=dict(data.get('providers') or {}),
                source_path=source_path,
            )
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid settings value in {source_path or 'settings'}: {e}")

    def with_overrides(self, **overrides: Any) -> 'Settings':
        """Return a copy with non-None overrides applied (CLI flags)."""
        values = {
            'state_dir': self.state_dir,
            'max_retries': self.max_retries,
            'backoff_base': self.backoff_base,
            'backoff_max': self.backoff_max,
            'operation_timeout': self.operation_timeout,
            'concurrency': self.concurrency,
            'report_dir': self.report_dir,
            'providers': dict(self.providers),
            'source_path': self.source_path,
        }
        for key, value in overrides.items():
            if key not in values:
                raise ConfigError(f"Unknown setting: {key}")
            if value is not None:
                values[key] = value
        return Settings(**values)


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    try:
        with open(path, encoding="utf-8") as f:
            return yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")


def find_settings_file(explicit: Optional[str] = None) -> Optional[Path]:
    """Discover the settings file.

    Resolution order:
    1. explicit path argument
    2. $RECONCILER_CONFIG environment variable
    3. ./reconciler.yaml

    Returns:
        Path to the settings file, or None to use built-in defaults

    Raises:
        ConfigError: If an explicitly named file does not exist
    """
    if explicit:
        path = Path(explicit)
        if not path.exists():
            raise ConfigError(f"Settings file not found: {path}")
        return path

    if env_path := os.environ.get('RECONCILER_CONFIG'):
        path = Path(env_path)
        if path.exists():
            return path
        raise ConfigError(f"RECONCILER_CONFIG={env_path} does not exist")

    local = Path.cwd() / SETTINGS_FILENAME
    if local.exists():
        return local

    return None


def load_settings(path: Optional[str] = None) -> Settings:
    """Load engine settings, falling back to defaults when no file is found.

    Relative state_dir/report_dir values are resolved against the settings
    file's directory.
    """
    settings_file = find_settings_file(path)
    if settings_file is None:
        logger.debug("No settings file found, using defaults")
        return Settings()

    data = _parse_yaml(settings_file)
    settings = Settings.from_dict(data, source_path=settings_file)

    base = settings_file.parent
    if not settings.state_dir.is_absolute():
        settings.state_dir = base / settings.state_dir
    if settings.report_dir is not None and not settings.report_dir.is_absolute():
        settings.report_dir = base / settings.report_dir

    logger.debug(f"Loaded settings from {settings_file}")
    return settings
