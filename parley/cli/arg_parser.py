"""Argument parsing for the parley CLI."""

import argparse
from collections.abc import Sequence
from pathlib import Path


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="parley",
        description="Streaming chat with LLM providers, tools and conversation summaries",
    )
    parser.add_argument(
        "--config", "-c",
        type=Path,
        help="Config file merged over the shipped defaults (default: ~/.parley/config.json)",
    )
    parser.add_argument(
        "--profile", "-p",
        help="Profile for new conversations (default: config default_profile)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="count",
        default=0,
        help="Log to stderr (-v info, -vv debug)",
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        help="Also write logs to this file (rotated)",
    )
    parser.add_argument(
        "--no-save",
        action="store_true",
        help="Do not load or save the local conversation snapshot",
    )
    parser.add_argument(
        "--list-profiles",
        action="store_true",
        help="Print the configured profiles and exit",
    )
    return parser


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    return build_parser().parse_args(argv)
