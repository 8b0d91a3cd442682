"""
=============================================================================
LISTENER AND ACCEPT LOOP
=============================================================================

    ┌─────────────────────────────────────────────────────────────────────┐
    │                        AcceptLoop.run()                              │
    ├─────────────────────────────────────────────────────────────────────┤
    │                                                                      │
    │   while not controller.should_exit():                               │
    │       │                                                              │
    │       ├──► listener.accept()     polls, times out every interval    │
    │       │       ├── timeout        → loop, re-check state             │
    │       │       └── OSError        → closed by shutdown? exit.        │
    │       │                            still RUNNING? fatal, re-raise.  │
    │       │                                                              │
    │       ├──► Connection(client_socket)                                │
    │       └──► registry.spawn(handler(conn))                            │
    │                                                                      │
    │   finally:                                                          │
    │       listener.close()            idempotent                        │
    │       controller.mark_dead()                                        │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

The loop never decides WHEN to shut down. It only reacts to the state the
shutdown controller sets, and to the listener being closed under it.

=============================================================================
SOCKET OPTIONS
=============================================================================

SO_REUSEADDR:
    Rebind right after a restart instead of waiting out TIME_WAIT.

TCP_NODELAY:
    Responses are written in a few small pieces (status, headers, body).
    Disabling Nagle's algorithm sends each one immediately.

Accept timeout:
    accept() blocks forever without it. A timeout lets the loop notice a
    state change even if nobody connects. Closing the listener wakes it
    sooner: shutdown(SHUT_RDWR) makes a blocked accept fail at once.

=============================================================================
"""

import logging
import socket
import threading
from typing import Callable, Optional, Tuple

from .connection import Connection
from .lifecycle import ShutdownController
from .registry import ConnectionRegistry


logger = logging.getLogger(__name__)


class Listener:
    """
    Owns the listening socket.

    ``close()`` is idempotent and thread-safe because two parties may call
    it: the shutdown controller and the accept loop on its way out.
    """

    def __init__(self, sock: socket.socket, poll_interval: Optional[float] = 1.0):
        self._socket = sock
        self._socket.settimeout(poll_interval)
        self._lock = threading.Lock()
        self._closed = False
        self._address = sock.getsockname()[:2]

    @classmethod
    def bind(
        cls,
        host: str,
        port: int,
        backlog: int = 128,
        poll_interval: Optional[float] = 1.0,
    ) -> "Listener":
        """
        Create, configure, bind and listen.

        Raises:
            OSError: Bind or listen failed (address in use, permission).
        """
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            sock.bind((host, port))
            sock.listen(backlog)
        except OSError as e:
            sock.close()
            logger.error(f"Failed to bind to {host}:{port}: {e}")
            raise
        return cls(sock, poll_interval)

    @property
    def address(self) -> Tuple[str, int]:
        """The bound (host, port); port is real even if 0 was requested."""
        return self._address

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    def accept(self) -> Tuple[socket.socket, Tuple[str, int]]:
        return self._socket.accept()

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True

        try:
            # Wakes a thread blocked in accept(); close() alone may not
            self._socket.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        try:
            self._socket.close()
        except OSError:
            pass
        logger.info(f"Listener on {self._address[0]}:{self._address[1]} closed")


class AcceptLoop:
    """
    Accepts connections until the shutdown controller says stop.

    Args:
        listener: Bound listener, closed by this loop on exit.
        registry: Spawns and tracks one thread per connection.
        controller: Lifecycle state, read only here except mark_dead().
        connection_handler: Called on the connection's own thread.
        io_timeout: Socket timeout for accepted connections.
        logger: Where to log.

    ``error`` holds the fatal exception, if the loop died from one.
    """

    def __init__(
        self,
        listener: Listener,
        registry: ConnectionRegistry,
        controller: ShutdownController,
        connection_handler: Callable[[Connection], None],
        io_timeout: Optional[float] = 30.0,
        logger: Optional[logging.Logger] = None,
    ):
        self.listener = listener
        self.registry = registry
        self.controller = controller
        self.connection_handler = connection_handler
        self.io_timeout = io_timeout
        self.logger = logger or logging.getLogger(__name__)
        self.error: Optional[BaseException] = None

    def run(self) -> None:
        """Thread target. Returns once the processor is DEAD."""
        host, port = self.listener.address
        self.logger.info(f"Accepting SCGI connections on {host}:{port}")
        try:
            while not self.controller.should_exit():
                try:
                    client_socket, client_address = self.listener.accept()
                except socket.timeout:
                    continue
                except ConnectionAbortedError:
                    # Client gave up while still in the backlog
                    continue
                except OSError as e:
                    if self.controller.state.is_shutting_down:
                        break
                    self.logger.error(f"Accept error: {e}")
                    self.error = e
                    break

                self._spawn(client_socket, client_address)
        except Exception as e:
            self.logger.exception(f"Accept loop failed: {e}")
            self.error = e
        finally:
            self.listener.close()
            self.controller.mark_dead()
            self.logger.info("Exited accept loop. Shutdown complete.")

    def _spawn(self, client_socket: socket.socket, client_address: Tuple[str, int]) -> None:
        conn = Connection(
            socket=client_socket,
            address=client_address,
            timeout=self.io_timeout,
        )
        self.logger.debug(
            f"[{conn.id}] Accepted connection from {client_address[0]}:{client_address[1]}"
        )
        try:
            self.registry.spawn(lambda: self.connection_handler(conn), client_address)
        except RuntimeError as e:
            # Out of threads; drop this client and keep accepting
            self.logger.error(f"[{conn.id}] Could not start connection thread: {e}")
            conn.close()
        except BaseException:
            conn.close()
            raise
