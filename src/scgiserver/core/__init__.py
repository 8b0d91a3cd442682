"""
=============================================================================
CORE PROTOCOL PROCESSOR
=============================================================================

    ┌─────────────────────────────────────────────────────────────────────┐
    │                    LISTENER + ACCEPT LOOP                            │
    │  • Owns the listening socket                                        │
    │  • Accepts, wraps each socket in a Connection, spawns it            │
    │  • Exits when the shutdown controller says the drain is over        │
    └─────────────────────────────────────────────────────────────────────┘
                                    │
                                    ▼
    ┌─────────────────────────────────────────────────────────────────────┐
    │                    CONNECTION REGISTRY                               │
    │  • One thread per connection, tracked in a task table               │
    │  • Collector thread reclaims finished tasks in completion order     │
    └─────────────────────────────────────────────────────────────────────┘
                                    │
                                    ▼
    ┌─────────────────────────────────────────────────────────────────────┐
    │                    CONNECTION HANDLER                                │
    │  • Netstring header parser, body read                               │
    │  • Admission control (busy redirect)                                │
    │  • Calls the application, always closes the socket                  │
    └─────────────────────────────────────────────────────────────────────┘

The shutdown controller sits beside all three and owns the lifecycle
state and the connection counters.

=============================================================================
"""

from .states import LifecycleState
from .admission import Admission, BUSY_RESPONSE, admit
from .lifecycle import ProcessorStatus, ShutdownController
from .connection import (
    Connection,
    ConnectionHandler,
    ConnectionState,
    RequestHandler,
    ResponseWriter,
    SCGIRequest,
)
from .registry import ConnectionRegistry, ConnectionTask
from .socket_server import AcceptLoop, Listener

__all__ = [
    "LifecycleState",
    "Admission",
    "BUSY_RESPONSE",
    "admit",
    "ProcessorStatus",
    "ShutdownController",
    "Connection",
    "ConnectionHandler",
    "ConnectionState",
    "RequestHandler",
    "ResponseWriter",
    "SCGIRequest",
    "ConnectionRegistry",
    "ConnectionTask",
    "AcceptLoop",
    "Listener",
]
