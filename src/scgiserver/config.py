"""
=============================================================================
PROCESSOR CONFIGURATION
=============================================================================

All knobs in one frozen dataclass. Frozen because every component reads
the config from its own thread; nothing may change it after the processor
is built.

    ┌─────────────────────────────────────────────────────────────────────┐
    │                    CONFIGURATION HIERARCHY                          │
    ├─────────────────────────────────────────────────────────────────────┤
    │                                                                      │
    │   Priority (highest to lowest):                                     │
    │                                                                      │
    │   1. Command-line arguments                                         │
    │      └── python -m scgiserver --port 9000                          │
    │                                                                      │
    │   2. Environment variables                                          │
    │      └── SCGI_PORT=9000 python -m scgiserver                       │
    │                                                                      │
    │   3. Default values (in this dataclass)                            │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

=============================================================================
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional


# Effectively unbounded: admission control only redirects on shutdown.
DEFAULT_MAX_CONNECTIONS = 2**30 - 1

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _optional_float(value: Optional[str], default: Optional[float]) -> Optional[float]:
    """Parse a float env var; "" or "none" disables the setting."""
    if value is None:
        return default
    if value.strip().lower() in ("", "none", "off"):
        return None
    return float(value)


@dataclass(frozen=True)
class ProcessorConfig:
    """
    Configuration for the SCGI processor.

    NETWORK
    - host, port, backlog, accept_poll_interval

    CAPACITY
    - max_connections

    TIMEOUTS
    - io_timeout, shutdown_timeout

    LOGGING
    - log_file, log_level

    APPLICATION
    - environment
    """

    # ─────────────────────────────────────────────────────────────────────
    # NETWORK SETTINGS
    # ─────────────────────────────────────────────────────────────────────

    host: str = "127.0.0.1"
    """
    Address to bind. SCGI is spoken by the front-end web server, which
    normally runs on the same host, so localhost is the safe default.
    """

    port: int = 9999
    """Port to listen on. 0 lets the OS pick a free one (tests)."""

    backlog: int = 128
    """Maximum number of connections queued by the kernel before accept()."""

    accept_poll_interval: float = 1.0
    """
    Seconds accept() waits before the loop re-checks the lifecycle state.
    Shutdown closes the listener anyway; this is the upper bound on how
    long the loop can miss it.
    """

    # ─────────────────────────────────────────────────────────────────────
    # CAPACITY
    # ─────────────────────────────────────────────────────────────────────

    max_connections: int = DEFAULT_MAX_CONNECTIONS
    """
    Connections above this count are redirected to /busy.html instead of
    reaching the application. 0 redirects everything.
    """

    # ─────────────────────────────────────────────────────────────────────
    # TIMEOUTS
    # ─────────────────────────────────────────────────────────────────────

    io_timeout: Optional[float] = 30.0
    """
    Read/write timeout on client sockets, in seconds.
    None = block forever. A stalled front end then pins a thread for good.
    """

    shutdown_timeout: float = 5.0
    """
    After a FORCED shutdown, how long listen() waits for in-flight
    connections before returning. A graceful shutdown always waits.
    """

    # ─────────────────────────────────────────────────────────────────────
    # LOGGING
    # ─────────────────────────────────────────────────────────────────────

    log_file: Optional[str] = None
    """Append log records to this file as well as stderr."""

    log_level: str = "INFO"
    """DEBUG, INFO, WARNING, ERROR or CRITICAL."""

    # ─────────────────────────────────────────────────────────────────────
    # APPLICATION
    # ─────────────────────────────────────────────────────────────────────

    environment: str = "production"
    """
    Operating environment tag, passed through to the application.
    The processor itself never looks at it.
    """

    @classmethod
    def from_env(cls) -> "ProcessorConfig":
        """
        Create configuration from environment variables.

        SCGI_HOST       Bind address (default: 127.0.0.1)
        SCGI_PORT       Port (default: 9999)
        SCGI_MAXCONNS   Max concurrent connections (default: 2**30 - 1)
        SCGI_TIMEOUT    Client socket timeout, "none" disables (default: 30)
        SCGI_LOG_FILE   Log file path (default: stderr only)
        SCGI_LOG_LEVEL  Logging level (default: INFO)
        SCGI_ENV        Environment tag (default: production)
        """
        return cls(
            host=os.getenv("SCGI_HOST", "127.0.0.1"),
            port=int(os.getenv("SCGI_PORT", "9999")),
            max_connections=int(os.getenv("SCGI_MAXCONNS", str(DEFAULT_MAX_CONNECTIONS))),
            io_timeout=_optional_float(os.getenv("SCGI_TIMEOUT"), 30.0),
            log_file=os.getenv("SCGI_LOG_FILE") or None,
            log_level=os.getenv("SCGI_LOG_LEVEL", "INFO"),
            environment=os.getenv("SCGI_ENV", "production"),
        )

    def validate(self) -> None:
        """
        Validate configuration values.

        Called by the processor's constructor so a bad value fails at
        startup, not on the first request.

        Raises:
            ValueError: On the first invalid value found.
        """
        if not 0 <= self.port < 65536:
            raise ValueError(f"Invalid port: {self.port}. Must be 0-65535.")

        if self.backlog < 1:
            raise ValueError("backlog must be >= 1")

        if self.max_connections < 0:
            raise ValueError("max_connections must be >= 0")

        if self.io_timeout is not None and self.io_timeout <= 0:
            raise ValueError("io_timeout must be > 0 or None")

        if self.accept_poll_interval <= 0:
            raise ValueError("accept_poll_interval must be > 0")

        if self.shutdown_timeout < 0:
            raise ValueError("shutdown_timeout must be >= 0")

        if self.log_level.upper() not in LOG_LEVELS:
            raise ValueError(
                f"Invalid log_level: {self.log_level}. Must be one of {', '.join(LOG_LEVELS)}."
            )

    @property
    def level(self) -> int:
        """log_level as a logging module constant."""
        return getattr(logging, self.log_level.upper(), logging.INFO)
