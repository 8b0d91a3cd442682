"""
=============================================================================
SCGI PROCESSOR CLI ENTRY POINT
=============================================================================

This module provides the command-line interface for running the processor.

=============================================================================
USAGE
=============================================================================

    # Run the built-in demo app on 127.0.0.1:9999
    python -m scgiserver

    # Serve a WSGI application
    python -m scgiserver myproject.wsgi:application

    # Custom port, cap concurrent connections
    python -m scgiserver myproject.wsgi:application --port 4000 --max-conns 64

    # App is not thread-safe
    python -m scgiserver legacy.app:application --serialize

    # Append logs to a file
    python -m scgiserver --log-file /var/log/scgi/app.log

=============================================================================
CONFIGURATION SOURCES
=============================================================================

Defaults come from ProcessorConfig.from_env() (SCGI_PORT, SCGI_MAXCONNS,
...). Command-line flags override them.

The environment tag is exported as SCGI_ENV BEFORE the application is
imported, so apps that read it at import time see the right value.

=============================================================================
"""

import argparse
import dataclasses
import os
import sys
from typing import List, Optional

from . import __version__
from .config import LOG_LEVELS, ProcessorConfig
from .handlers import WSGIHandler, demo_app, load_app
from .processor import SCGIProcessor, setup_logging


def _timeout(value: str) -> Optional[float]:
    if value.strip().lower() in ("none", "off"):
        return None
    return float(value)


def build_parser(defaults: ProcessorConfig) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="scgiserver",
        description="Multi-threaded SCGI processor for WSGI applications",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m scgiserver                                  # Demo app
  python -m scgiserver myproject.wsgi:application       # Serve an app
  python -m scgiserver app:application --port 4000      # Custom port
  python -m scgiserver app:application --serialize      # One request at a time

Signals:
  TERM  forced shutdown     INT/HUP  graceful shutdown     USR2  status dump
        """,
    )

    parser.add_argument(
        "app",
        nargs="?",
        default=None,
        help="WSGI application as module:attribute (default: built-in demo app)",
    )

    # ─────────────────────────────────────────────────────────────────────
    # NETWORK ARGUMENTS
    # ─────────────────────────────────────────────────────────────────────

    parser.add_argument(
        "--host", "-H",
        default=defaults.host,
        help=f"Address to bind (default: {defaults.host})",
    )

    parser.add_argument(
        "--port", "-p",
        type=int,
        default=defaults.port,
        help=f"Port to listen on (default: {defaults.port})",
    )

    # ─────────────────────────────────────────────────────────────────────
    # CAPACITY ARGUMENTS
    # ─────────────────────────────────────────────────────────────────────

    parser.add_argument(
        "--max-conns", "-m",
        type=int,
        default=defaults.max_connections,
        help="Connections above this count get the busy redirect",
    )

    parser.add_argument(
        "--timeout",
        type=_timeout,
        default=defaults.io_timeout,
        help=f"Client socket timeout in seconds, 'none' disables (default: {defaults.io_timeout})",
    )

    # ─────────────────────────────────────────────────────────────────────
    # LOGGING ARGUMENTS
    # ─────────────────────────────────────────────────────────────────────

    parser.add_argument(
        "--log-file", "-l",
        default=defaults.log_file,
        help="Append log records to this file as well as stderr",
    )

    parser.add_argument(
        "--log-level",
        type=str.upper,
        choices=LOG_LEVELS,
        default=defaults.log_level.upper(),
        help=f"Logging level (default: {defaults.log_level})",
    )

    # ─────────────────────────────────────────────────────────────────────
    # APPLICATION ARGUMENTS
    # ─────────────────────────────────────────────────────────────────────

    parser.add_argument(
        "--environment", "-e",
        default=defaults.environment,
        help=f"Environment tag passed to the app (default: {defaults.environment})",
    )

    parser.add_argument(
        "--serialize",
        action="store_true",
        help="Run the application under a lock, one request at a time",
    )

    # ─────────────────────────────────────────────────────────────────────
    # META ARGUMENTS
    # ─────────────────────────────────────────────────────────────────────

    parser.add_argument(
        "--version", "-v",
        action="version",
        version=f"scgiserver {__version__}",
    )

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main CLI entry point.

    Returns the process exit code: 0 after a clean shutdown, 1 on a
    fatal error (bad config, app import failure, listening socket failure).
    """
    try:
        defaults = ProcessorConfig.from_env()
    except ValueError as e:
        print(f"Error: invalid environment configuration: {e}", file=sys.stderr)
        return 1

    args = build_parser(defaults).parse_args(argv)

    config = dataclasses.replace(
        defaults,
        host=args.host,
        port=args.port,
        max_connections=args.max_conns,
        io_timeout=args.timeout,
        log_file=args.log_file,
        log_level=args.log_level,
        environment=args.environment,
    )

    try:
        config.validate()
        logger = setup_logging(config)

        os.environ["SCGI_ENV"] = config.environment
        app = load_app(args.app) if args.app else demo_app

        handler = WSGIHandler(app, environment=config.environment, serialize=args.serialize)
        processor = SCGIProcessor(handler, config, logger=logger)
        host, port = processor.bind()
        logger.info(
            f"scgiserver {__version__} listening on {host}:{port} "
            f"({config.environment}, app={args.app or 'demo'})"
        )
        processor.listen(install_signals=True)
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    return 0


# =============================================================================
# ENTRY POINT
# =============================================================================

if __name__ == "__main__":
    sys.exit(main())
