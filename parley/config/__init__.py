"""Configuration loading and validation."""

from parley.config.loader import DEFAULT_CONFIG, DEFAULTS_DIR, load_config
from parley.config.schema import (
    AuthMethod,
    CompactionConfig,
    Config,
    HistorySinkConfig,
    PersistenceConfig,
    ProfileConfig,
    ProviderConfig,
    SearchConfig,
    StreamConfig,
    ToolsConfig,
)

__all__ = [
    "AuthMethod",
    "CompactionConfig",
    "Config",
    "DEFAULT_CONFIG",
    "DEFAULTS_DIR",
    "HistorySinkConfig",
    "PersistenceConfig",
    "ProfileConfig",
    "ProviderConfig",
    "SearchConfig",
    "StreamConfig",
    "ToolsConfig",
    "load_config",
]
