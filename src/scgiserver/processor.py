"""
=============================================================================
SCGI PROCESSOR
=============================================================================

The composition root. Builds every component, wires them together and
runs them on their threads.

    ┌─────────────────────────────────────────────────────────────────────┐
    │                        SCGIProcessor                                 │
    ├─────────────────────────────────────────────────────────────────────┤
    │                                                                      │
    │   ProcessorConfig ───► ShutdownController  (state + counters + lock)│
    │                              ▲     ▲                                 │
    │                              │     │                                 │
    │   Listener ◄── AcceptLoop ───┘     │        thread "scgi-accept"    │
    │                    │               │                                 │
    │                    ▼               │                                 │
    │           ConnectionRegistry ──────┘        thread "scgi-collector" │
    │                    │                                                 │
    │                    ▼                                                 │
    │           ConnectionHandler ──► handler(headers, body, writer)      │
    │                                             one thread per conn     │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

=============================================================================
SIGNALS
=============================================================================

    SIGTERM   forced shutdown     listener closed now
    SIGINT    graceful shutdown   drain, then close
    SIGHUP    graceful shutdown   drain, then close
    SIGUSR2   status dump         logged at INFO

Python only runs signal handlers on the main thread, which is why
listen() parks the CALLING thread on the accept thread instead of running
the loop itself: the main thread stays free to take signals.

=============================================================================
"""

import logging
import os
import signal
import socket
import threading
from typing import Dict, Optional, Tuple

from .config import ProcessorConfig
from .core import (
    AcceptLoop,
    ConnectionHandler,
    ConnectionRegistry,
    LifecycleState,
    Listener,
    ProcessorStatus,
    RequestHandler,
    ShutdownController,
)


logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s][%(process)d] %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(config: ProcessorConfig) -> logging.Logger:
    """
    Configure the ``scgiserver`` logger from ``config``.

    Records go to stderr and, if ``config.log_file`` is set, are appended to
    that file. The pid is part of every line so output from several
    processors sharing one file can be told apart.

    Returns:
        The configured package logger, ready to inject into SCGIProcessor.
    """
    package_logger = logging.getLogger("scgiserver")
    package_logger.setLevel(config.level)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    if not package_logger.handlers:
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)
        package_logger.addHandler(stream_handler)

    if config.log_file:
        directory = os.path.dirname(config.log_file)
        if directory:
            os.makedirs(directory, exist_ok=True)
        file_handler = logging.FileHandler(config.log_file, mode="a")
        file_handler.setFormatter(formatter)
        package_logger.addHandler(file_handler)

    return package_logger


class SCGIProcessor:
    """
    Accepts SCGI connections and hands each request to ``handler``.

    Usage:
        def handler(headers, body, writer):
            writer.write(b"Status: 200 OK\\r\\nContent-Type: text/plain\\r\\n\\r\\nhi")

        processor = SCGIProcessor(handler, ProcessorConfig(port=9999))
        processor.listen(install_signals=True)   # blocks until shutdown

    From another thread (or a signal handler):
        processor.shutdown()            # graceful
        processor.shutdown(force=True)  # forced
        processor.dump_status()
    """

    def __init__(
        self,
        handler: RequestHandler,
        config: Optional[ProcessorConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Args:
            handler: Application callable ``handler(headers, body, writer)``.
            config: Processor configuration; defaults if omitted.
            logger: Logger injected into every component.

        Raises:
            ValueError: Invalid configuration.
        """
        self.config = config or ProcessorConfig()
        self.config.validate()
        self.logger = logger or logging.getLogger(__name__)
        self.handler = handler

        self._controller = ShutdownController(self.config.max_connections, self.logger)
        self._registry = ConnectionRegistry(self._controller, self.logger)
        self._connection_handler = ConnectionHandler(handler, self._controller, self.logger)

        self._listener: Optional[Listener] = None
        self._accept_loop: Optional[AcceptLoop] = None
        self._original_handlers: Dict[signal.Signals, object] = {}

    # =========================================================================
    # PROPERTIES
    # =========================================================================

    @property
    def state(self) -> LifecycleState:
        return self._controller.state

    @property
    def active_connections(self) -> int:
        return self._controller.active_count

    @property
    def total_connections(self) -> int:
        return self._controller.total_count

    @property
    def address(self) -> Optional[Tuple[str, int]]:
        """Bound (host, port), or None before bind()."""
        return self._listener.address if self._listener else None

    @property
    def is_listening(self) -> bool:
        return self._listener is not None and not self._listener.closed

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def bind(self) -> Tuple[str, int]:
        """
        Bind the listening socket from the config.

        Separate from listen() so the caller can learn the real port
        (port=0) before the processor starts blocking.
        """
        if self._listener is None:
            self._listener = Listener.bind(
                self.config.host,
                self.config.port,
                backlog=self.config.backlog,
                poll_interval=self.config.accept_poll_interval,
            )
        return self._listener.address

    def listen(self, sock: Optional[socket.socket] = None, install_signals: bool = False) -> None:
        """
        Serve until shutdown completes. Blocks.

        Args:
            sock: An already bound socket to use instead of the config's
                  host and port.
            install_signals: Install TERM/INT/HUP/USR2 handlers for the
                  duration of the call. Main thread only.

        Raises:
            OSError: The listening socket failed while RUNNING.
        """
        if sock is not None:
            sock.listen(self.config.backlog)
            self._listener = Listener(sock, self.config.accept_poll_interval)
        else:
            self.bind()

        self._controller.attach_listener(self._listener.close)
        self._registry.start()

        self._accept_loop = AcceptLoop(
            self._listener,
            self._registry,
            self._controller,
            self._connection_handler,
            io_timeout=self.config.io_timeout,
            logger=self.logger,
        )
        accept_thread = threading.Thread(
            target=self._accept_loop.run, name="scgi-accept", daemon=True
        )

        if install_signals:
            self.install_signal_handlers()
        try:
            accept_thread.start()
            self._collect_accept_thread(accept_thread)
        finally:
            self.restore_signal_handlers()
            self._stop_collector()

        if self._accept_loop.error is not None:
            raise self._accept_loop.error

    def _collect_accept_thread(self, thread: threading.Thread) -> None:
        """
        Wait for the accept loop.

        Joins in short slices so a KeyboardInterrupt (SIGINT without our
        handler installed) lands here; it is treated as a graceful shutdown
        request, not as an error.
        """
        while thread.is_alive():
            try:
                thread.join(timeout=0.5)
            except KeyboardInterrupt:
                self.logger.info("Shutting down from SIGINT.")
                self._controller.begin_graceful_shutdown()

    def _stop_collector(self) -> None:
        self._registry.stop()
        timeout = None
        if self._controller.active_count > 0:
            # Only a forced shutdown leaves work behind
            timeout = self.config.shutdown_timeout
            self.logger.info(
                f"Waiting up to {timeout}s for {self._controller.active_count} "
                f"in-flight connections"
            )
        if not self._registry.join(timeout):
            self.logger.warning(
                f"Abandoning {self._registry.pending} in-flight connections"
            )

    def shutdown(self, force: bool = False) -> None:
        """Begin a graceful (default) or forced shutdown."""
        if force:
            self.begin_forced_shutdown()
        else:
            self.begin_graceful_shutdown()

    def begin_graceful_shutdown(self) -> None:
        self._controller.begin_graceful_shutdown()

    def begin_forced_shutdown(self) -> None:
        self._controller.begin_forced_shutdown()

    def wait_until_dead(self, timeout: Optional[float] = None) -> bool:
        """Block until the accept loop has exited. False on timeout."""
        return self._controller.wait_until_dead(timeout)

    # =========================================================================
    # STATUS
    # =========================================================================

    def status(self) -> ProcessorStatus:
        return self._controller.status()

    def dump_status(self) -> ProcessorStatus:
        return self._controller.dump_status()

    # =========================================================================
    # SIGNALS
    # =========================================================================

    def install_signal_handlers(self) -> None:
        """
        Route process signals to the shutdown controller.

        Signals the platform lacks (SIGHUP, SIGUSR2 on Windows) are skipped.
        The previous handlers are saved for restore_signal_handlers().
        """
        def forced(signum, frame):
            self.logger.info("SIGTERM, forced shutdown.")
            self.begin_forced_shutdown()

        def graceful(signum, frame):
            self.logger.info(f"{signal.Signals(signum).name}, graceful shutdown started.")
            self.begin_graceful_shutdown()

        def status(signum, frame):
            self.dump_status()

        for name, handler in (
            ("SIGTERM", forced),
            ("SIGINT", graceful),
            ("SIGHUP", graceful),
            ("SIGUSR2", status),
        ):
            signum = getattr(signal, name, None)
            if signum is None:
                continue
            self._original_handlers[signum] = signal.signal(signum, handler)

    def restore_signal_handlers(self) -> None:
        for signum, handler in self._original_handlers.items():
            signal.signal(signum, handler)
        self._original_handlers.clear()
