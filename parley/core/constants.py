"""Core constants and paths for parley.

Single source of truth for global paths and tuning defaults. The numeric
defaults are mirrored in defaults/config.json and can be overridden there.
"""

from pathlib import Path

PARLEY_DIR_NAME = ".parley"

# Context compaction
SUMMARY_THRESHOLD = 10
RECENT_WINDOW = 5
MAX_SUMMARY_LENGTH = 500
SUMMARY_DEBOUNCE_SECONDS = 2.0
SUMMARY_MAX_AGE_DAYS = 7
SUMMARY_PROMPT_CLIP = 200
# Poll interval while a turn in the conversation is still running
SUMMARY_BUSY_RETRY_SECONDS = 0.25

# Streaming
FLUSH_INTERVAL_SECONDS = 0.1
STREAM_IDLE_TIMEOUT_SECONDS = 60.0
MAX_TOOL_ROUNDS = 5

# Tools
TOOL_TIMEOUT_SECONDS = 30.0
MAX_CONCURRENT_TOOLS = 10
SEARCH_RESULT_LIMIT = 5

# Persistence
ATTACHMENT_CONTENT_LIMIT = 2000
TITLE_LENGTH = 40

# REPL display
TOOL_QUERY_DISPLAY_LENGTH = 60
TOOLBAR_TITLE_LENGTH = 30


def get_parley_dir() -> Path:
    """Get ~/.parley (global config directory)."""
    return Path.home() / PARLEY_DIR_NAME


def get_defaults_dir() -> Path:
    """Get package defaults directory (shipped with package)."""
    import parley
    return Path(parley.__file__).parent / "defaults"


def get_default_config_path() -> Path:
    """Get default config file path."""
    return get_parley_dir() / "config.json"


def get_snapshot_path() -> Path:
    """Get the default conversation snapshot path."""
    return get_parley_dir() / "conversations.json"
