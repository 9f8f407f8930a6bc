"""JSON loading utility for config and snapshot files.

Use:
- load_json_file() for required files (raises LoadError if not found)
- load_json_file_optional() for optional layers (returns None if not found)
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from parley.core.errors import LoadError

logger = logging.getLogger(__name__)


def load_json_file(path: Path, error_context: str = "") -> dict[str, Any]:
    """Load and parse a JSON file with consistent error handling.

    Args:
        path: Path to the JSON file to load.
        error_context: Optional context string for error messages (e.g., "config").

    Returns:
        Parsed JSON as a dict. Returns empty dict if file is empty.

    Raises:
        LoadError: If the file doesn't exist, can't be read, contains invalid JSON,
            or contains non-dict JSON (e.g., array or scalar).
    """
    context_prefix = f"{error_context}: " if error_context else ""
    resolved = path.expanduser().resolve()

    if not resolved.exists():
        raise LoadError(f"{context_prefix}File not found: {path}")

    try:
        content = resolved.read_text(encoding="utf-8-sig")
    except OSError as e:
        raise LoadError(f"{context_prefix}Failed to read file {path}: {e}") from e

    content = content.strip()
    if not content:
        return {}

    try:
        result = json.loads(content)
    except json.JSONDecodeError as e:
        raise LoadError(f"{context_prefix}Invalid JSON in {path}: {e}") from e

    if not isinstance(result, dict):
        raise LoadError(
            f"{context_prefix}Expected object in {path}, got {type(result).__name__}"
        )

    return result


def load_json_file_optional(path: Path, error_context: str = "") -> dict[str, Any] | None:
    """Load JSON file if it exists, returning None for missing files.

    Raises:
        LoadError: If file exists but can't be read or contains invalid JSON.
    """
    resolved = path.expanduser().resolve()

    if not resolved.is_file():
        logger.debug("File not found: %s (resolved: %s)", path, resolved)
        return None

    logger.debug("Loading JSON file: %s", resolved)
    return load_json_file(resolved, error_context)
