"""Entry point for the `parley` console script."""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import Sequence

from dotenv import load_dotenv
from rich.markup import escape

from parley.cli.arg_parser import parse_args
from parley.cli.console import get_console
from parley.cli.repl import run_session
from parley.config.loader import load_config
from parley.core.errors import ConfigurationError
from parley.session.logging import configure_logging


def _console_level(verbosity: int) -> int:
    if verbosity >= 2:
        return logging.DEBUG
    if verbosity == 1:
        return logging.INFO
    return logging.WARNING


def main(argv: Sequence[str] | None = None) -> int:
    load_dotenv()
    args = parse_args(argv)
    configure_logging(_console_level(args.verbose), log_file=args.log_file)
    console = get_console()

    try:
        config = load_config(args.config)
        if args.profile is not None:
            config.get_profile(args.profile)
    except ConfigurationError as e:
        console.print(f"[error]{escape(e.message)}[/]")
        return 1
    except KeyError as e:
        console.print(f"[error]{escape(str(e.args[0]))}[/]")
        return 1

    if args.list_profiles:
        for name in config.list_profiles():
            marker = "*" if name == config.default_profile else " "
            profile = config.profiles[name]
            console.print(f"{marker} {name} [info]({profile.provider}/{profile.model})[/]")
        return 0

    try:
        asyncio.run(run_session(config, profile=args.profile, save=not args.no_save, console=console))
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
