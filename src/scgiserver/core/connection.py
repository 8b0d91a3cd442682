"""
=============================================================================
CONNECTION MANAGEMENT
=============================================================================

One SCGI connection carries exactly one request:

    ┌─────────────────────────────────────────────────────────────────────┐
    │                     ConnectionHandler.__call__                      │
    ├─────────────────────────────────────────────────────────────────────┤
    │                                                                      │
    │   read_headers()      netstring header block                        │
    │        │               └── ProtocolError → log, close, no reply     │
    │        ▼                                                             │
    │   read_body(n)        exactly CONTENT_LENGTH bytes                  │
    │        │               └── TransportError → log, close              │
    │        ▼                                                             │
    │   admission()         ask the shutdown controller                   │
    │        │               └── REDIRECT → write BUSY_RESPONSE, close    │
    │        ▼                                                             │
    │   handler(headers, body, writer)                                    │
    │        │               └── raises → HandlerError, log, close        │
    │        ▼                                                             │
    │   close()             ALWAYS, exactly once (context manager)        │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

TCP is a byte stream, so reads go through a buffered file object from
socket.makefile("rb"). The netstring parser pulls the length prefix a
byte at a time; buffering keeps that from costing a syscall per byte.

=============================================================================
"""

import logging
import socket
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import BinaryIO, Callable, Dict, Iterable, Optional, Tuple

from ..errors import (
    HandlerError,
    ProtocolError,
    TransportError,
)
from .admission import Admission, BUSY_RESPONSE
from .lifecycle import ShutdownController
from .netstring import content_length, read_exact, read_headers


logger = logging.getLogger(__name__)

# close() gives up on unread client data after this long or this much.
DRAIN_TIMEOUT = 0.5
DRAIN_LIMIT = 64 * 1024


class ConnectionState(Enum):
    """Where a connection is in its single request/response cycle."""
    NEW = "new"                # Just accepted
    READING = "reading"        # Reading headers and body
    PROCESSING = "processing"  # Handler is running
    WRITING = "writing"        # Sending bytes
    CLOSED = "closed"          # Socket released


@dataclass
class SCGIRequest:
    """
    A decoded SCGI request.

    Attributes:
        headers: Header pairs in wire order (last duplicate wins).
        body: Raw body, exactly CONTENT_LENGTH bytes.
        client_address: The front-end server's (ip, port).
    """
    headers: Dict[str, str]
    body: bytes = b""
    client_address: Tuple[str, int] = ("", 0)

    @property
    def content_length(self) -> int:
        return len(self.body)


@dataclass
class Connection:
    """
    An accepted client socket plus the bookkeeping around it.

    Attributes:
        socket: The client socket.
        address: Client's (ip, port) tuple.
        id: Short identifier used as a log prefix.
        state: Current connection state.
        created_at: Time the connection was accepted.
        timeout: Read/write timeout in seconds, None to block forever.
    """

    socket: socket.socket
    address: Tuple[str, int]

    id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])
    state: ConnectionState = ConnectionState.NEW
    created_at: float = field(default_factory=time.time)
    timeout: Optional[float] = 30.0

    _reader: Optional[BinaryIO] = field(default=None, repr=False)

    def __post_init__(self):
        # Accepted sockets may inherit the listener's poll timeout.
        self.socket.settimeout(self.timeout)

    @property
    def closed(self) -> bool:
        return self.state == ConnectionState.CLOSED

    @property
    def age(self) -> float:
        """Seconds since the connection was accepted."""
        return time.time() - self.created_at

    @property
    def reader(self) -> BinaryIO:
        """Buffered, file-like view of the socket's read side."""
        if self._reader is None:
            self._reader = self.socket.makefile("rb")
        return self._reader

    # =========================================================================
    # READING
    # =========================================================================

    def read_headers(self) -> Dict[str, str]:
        """
        Read and decode the header netstring.

        Raises:
            ProtocolError: Bad framing.
            TransportError: Socket failure or premature close.
        """
        self.state = ConnectionState.READING
        try:
            return read_headers(self.reader)
        except OSError as e:
            raise TransportError(f"Reading headers failed: {e}") from e

    def read_body(self, length: int) -> bytes:
        """Read exactly ``length`` body bytes."""
        if length <= 0:
            return b""
        self.state = ConnectionState.READING
        try:
            return read_exact(self.reader, length)
        except OSError as e:
            raise TransportError(f"Reading body failed: {e}") from e

    # =========================================================================
    # WRITING
    # =========================================================================

    def send(self, data: bytes) -> None:
        """
        Send all of ``data``.

        Raises:
            TransportError: The peer went away or the socket timed out.
        """
        if self.closed:
            raise TransportError("Write on closed connection")
        self.state = ConnectionState.WRITING
        try:
            # sendall() loops until every byte is out; send() may stop short
            self.socket.sendall(data)
        except OSError as e:
            raise TransportError(f"Send failed: {e}") from e

    # =========================================================================
    # CLOSING
    # =========================================================================

    def close(self):
        """
        Close the connection. Safe to call more than once.

        1. shutdown(SHUT_WR)   send FIN, the front end sees end of response
        2. drain               swallow anything unread so close() does not RST,
                               at most DRAIN_LIMIT bytes for DRAIN_TIMEOUT seconds
        3. close()             release the reader and the descriptor
        """
        if self.closed:
            return

        try:
            self.socket.shutdown(socket.SHUT_WR)
        except OSError:
            pass  # Peer already gone

        deadline = time.monotonic() + DRAIN_TIMEOUT
        drained = 0
        try:
            while drained < DRAIN_LIMIT:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                self.socket.settimeout(remaining)
                chunk = self.socket.recv(4096)
                if not chunk:
                    break
                drained += len(chunk)
        except OSError:
            pass

        # The makefile() reader holds a reference; the descriptor is only
        # released once both are closed.
        if self._reader is not None:
            try:
                self._reader.close()
            except OSError:
                pass
            self._reader = None

        try:
            self.socket.close()
        except OSError:
            pass

        self.state = ConnectionState.CLOSED
        logger.debug(f"[{self.id}] Connection closed after {self.age:.3f}s")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class ResponseWriter:
    """
    Writable byte sink handed to the request handler.

    File-like enough for code that expects ``write``/``flush``. Every write
    goes straight to the socket.
    """

    def __init__(self, connection: Connection):
        self._connection = connection
        self.bytes_written = 0

    @property
    def closed(self) -> bool:
        return self._connection.closed

    def write(self, data: bytes) -> int:
        if not data:
            return 0
        self._connection.send(data)
        self.bytes_written += len(data)
        return len(data)

    def writelines(self, lines: Iterable[bytes]) -> None:
        for line in lines:
            self.write(line)

    def flush(self) -> None:
        """Nothing is buffered."""


# headers, body, sink
RequestHandler = Callable[[Dict[str, str], bytes, ResponseWriter], None]


class ConnectionHandler:
    """
    Runs one connection from first byte to close.

    One instance is shared by every connection thread; it holds no
    per-connection state.

    Args:
        handler: Application callable ``handler(headers, body, writer)``.
        controller: Source of admission decisions.
        logger: Logger for per-connection messages.
    """

    def __init__(
        self,
        handler: RequestHandler,
        controller: ShutdownController,
        logger: Optional[logging.Logger] = None,
    ):
        self.handler = handler
        self.controller = controller
        self.logger = logger or logging.getLogger(__name__)

    def __call__(self, conn: Connection) -> None:
        """
        Handle ``conn`` and close it. Never raises.

        Errors are caught by kind here so nothing a client or the
        application does can reach the accept loop or the collector.
        """
        with conn:
            try:
                self._serve(conn)
            except ProtocolError as e:
                self.logger.error(f"[{conn.id}] Malformed request from {conn.address[0]}: {e}")
            except TransportError as e:
                self.logger.warning(
                    f"[{conn.id}] I/O error: {e}. Web server may possibly be configured wrong."
                )
            except HandlerError as e:
                self.logger.error(
                    f"[{conn.id}] {e}",
                    exc_info=(type(e.__cause__), e.__cause__, e.__cause__.__traceback__),
                )
            except OSError as e:
                self.logger.warning(f"[{conn.id}] Socket error: {e}")
            except Exception as e:
                self.logger.exception(f"[{conn.id}] Handling client failed: {e}")

    def _serve(self, conn: Connection) -> None:
        headers = conn.read_headers()
        body = conn.read_body(content_length(headers))
        request = SCGIRequest(headers=headers, body=body, client_address=conn.address)

        if self.controller.admission() is Admission.REDIRECT:
            self.logger.info(f"[{conn.id}] Busy, redirecting to /busy.html")
            conn.send(BUSY_RESPONSE)
            return

        self._dispatch(conn, request)

    def _dispatch(self, conn: Connection, request: SCGIRequest) -> None:
        """
        Call the application.

        TransportError passes through untouched (the socket broke, not the
        app); anything else the handler raises becomes HandlerError.
        """
        conn.state = ConnectionState.PROCESSING
        start = time.time()
        try:
            self.handler(request.headers, request.body, ResponseWriter(conn))
        except TransportError:
            raise
        except Exception as e:
            raise HandlerError(
                f"Request handler raised {type(e).__name__}: {e}", conn.id
            ) from e
        self.logger.debug(
            f"[{conn.id}] {request.headers.get('REQUEST_METHOD', '-')} "
            f"{request.headers.get('REQUEST_URI', request.headers.get('PATH_INFO', '-'))} "
            f"handled in {(time.time() - start) * 1000:.1f}ms"
        )
