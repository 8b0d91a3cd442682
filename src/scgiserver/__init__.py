"""
=============================================================================
SCGISERVER - Multi-threaded SCGI Protocol Processor
=============================================================================

Runs behind a front-end web server (nginx, Apache, lighttpd) that speaks
SCGI. Each connection carries one netstring-framed header block plus a
body; the processor parses it, checks admission and hands the request to
an application callable on its own thread.

=============================================================================
PROJECT OVERVIEW
=============================================================================

    ┌─────────────────────────────────────────────────────────────────────┐
    │                    SCGI PROCESSOR ARCHITECTURE                      │
    ├─────────────────────────────────────────────────────────────────────┤
    │                                                                      │
    │   1. WIRE FORMAT                                                    │
    │      - "<len>:<headers>," netstring, NUL-separated pairs           │
    │      - Body of CONTENT_LENGTH bytes follows                        │
    │                                                                      │
    │   2. CONCURRENCY                                                    │
    │      - One thread per connection                                    │
    │      - Collector thread reclaims finished connections              │
    │                                                                      │
    │   3. ADMISSION + LIFECYCLE                                          │
    │      - Busy redirect above max_connections or while shutting down  │
    │      - RUNNING -> DRAINING / FORCED -> DEAD                         │
    │      - TERM forced, INT/HUP graceful, USR2 status dump             │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

=============================================================================
PACKAGE STRUCTURE
=============================================================================

    scgiserver/
    ├── __init__.py          # This file - package exports
    ├── __main__.py          # CLI entry point (python -m scgiserver)
    ├── processor.py         # SCGIProcessor + logging setup
    ├── config.py            # ProcessorConfig dataclass
    ├── errors.py            # Per-connection error taxonomy
    ├── core/
    │   ├── netstring.py     # Netstring / header codec
    │   ├── connection.py    # Connection wrapper + request handling
    │   ├── registry.py      # Connection threads + collector
    │   ├── socket_server.py # Listener + accept loop
    │   ├── lifecycle.py     # ShutdownController, ProcessorStatus
    │   ├── admission.py     # Busy redirect decision
    │   └── states.py        # LifecycleState
    └── handlers/
        └── wsgi.py          # WSGI application adapter

=============================================================================
QUICK START
=============================================================================

    from scgiserver import SCGIProcessor, ProcessorConfig

    def handler(headers, body, writer):
        writer.write(b"Status: 200 OK\\r\\n"
                     b"Content-Type: text/plain\\r\\n\\r\\n"
                     b"Hello from " + headers["REQUEST_URI"].encode())

    SCGIProcessor(handler, ProcessorConfig(port=9999)).listen(install_signals=True)

=============================================================================
"""

__version__ = "1.0.0"

from .config import ProcessorConfig
from .core import (
    BUSY_RESPONSE,
    LifecycleState,
    ProcessorStatus,
    ResponseWriter,
)
from .core.netstring import encode_request
from .errors import (
    ConnectionClosed,
    HandlerError,
    MalformedHeaderPairs,
    MalformedLength,
    MalformedTerminator,
    ProtocolError,
    SCGIError,
    TransportError,
)
from .processor import SCGIProcessor, setup_logging

__all__ = [
    "SCGIProcessor",
    "ProcessorConfig",
    "ProcessorStatus",
    "LifecycleState",
    "ResponseWriter",
    "BUSY_RESPONSE",
    "encode_request",
    "setup_logging",
    "SCGIError",
    "ProtocolError",
    "MalformedLength",
    "MalformedTerminator",
    "MalformedHeaderPairs",
    "TransportError",
    "ConnectionClosed",
    "HandlerError",
    "__version__",
]
