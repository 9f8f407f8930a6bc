"""Configuration loading with fail-fast behavior and layered merging.

The shipped defaults are always the base layer; the user config
(~/.parley/config.json) or an explicit path is deep-merged on top, so a
user file only needs the keys it changes.
"""

import logging
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from parley.config.load_utils import load_json_file, load_json_file_optional
from parley.config.schema import Config
from parley.core.constants import get_default_config_path, get_defaults_dir
from parley.core.errors import ConfigurationError, LoadError
from parley.core.utils import deep_merge

logger = logging.getLogger(__name__)

# Path to shipped defaults in the install directory
DEFAULTS_DIR = get_defaults_dir()
DEFAULT_CONFIG = DEFAULTS_DIR / "config.json"


def load_config(path: Path | None = None) -> Config:
    """Load configuration, merging the user layer over shipped defaults.

    Args:
        path: Explicit config file path. Must exist. If None, the global
            user config is used when present.

    Returns:
        Validated Config object.

    Raises:
        ConfigurationError: If any layer contains invalid JSON, an explicit
            path is missing, or the merged config fails validation.
    """
    loaded_from: list[Path] = []

    try:
        merged: dict[str, Any] = load_json_file_optional(DEFAULT_CONFIG, "defaults") or {}
    except LoadError as e:
        raise ConfigurationError(e.message) from e
    if merged:
        loaded_from.append(DEFAULT_CONFIG)

    try:
        if path is not None:
            user_data: dict[str, Any] | None = load_json_file(path, error_context="config")
            user_path = path
        else:
            user_path = get_default_config_path()
            user_data = load_json_file_optional(user_path, error_context="config")
    except LoadError as e:
        raise ConfigurationError(e.message) from e

    if user_data:
        merged = deep_merge(merged, user_data)
        loaded_from.append(user_path)

    if loaded_from:
        logger.info("Config loaded from: %s", [str(p) for p in loaded_from])
    else:
        logger.debug("No config files found, using Pydantic defaults")

    if not merged:
        return Config()

    try:
        return Config.model_validate(merged)
    except ValidationError as e:
        sources = ", ".join(str(p) for p in loaded_from)
        raise ConfigurationError(f"Config validation failed (merged from {sources}): {e}") from e
