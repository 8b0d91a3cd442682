"""
=============================================================================
ERROR TAXONOMY
=============================================================================

Every failure a single connection can hit maps to one of these classes.
The connection handler catches them BY KIND and decides what to log; none
of them ever escapes a connection thread.

    SCGIError
     ├── ProtocolError              Framing is wrong. Log, close, no reply.
     │    ├── MalformedLength         bad / too long length prefix
     │    ├── MalformedTerminator     netstring not followed by ","
     │    └── MalformedHeaderPairs    odd number of header tokens
     ├── TransportError             Socket I/O failed. Log, abort.
     │    └── ConnectionClosed        peer hung up mid-request
     └── HandlerError               The application raised. Log, close.

The only error allowed to stop the processor is a failure of the LISTENING
socket while the processor is still running; that one is a plain OSError
and surfaces from SCGIProcessor.listen().

=============================================================================
"""


class SCGIError(Exception):
    """Base class for all per-connection errors."""


class ProtocolError(SCGIError):
    """
    Raised when the request does not follow SCGI framing.

    Nothing is written back for these: a peer that cannot frame a netstring
    will not understand a response either.
    """


class MalformedLength(ProtocolError):
    """Length prefix is empty, not decimal, or longer than 10 digits."""


class MalformedTerminator(ProtocolError):
    """The header netstring was not followed by a comma."""


class MalformedHeaderPairs(ProtocolError):
    """The header block splits into an odd number of tokens."""


class TransportError(SCGIError):
    """
    Raised when reading from or writing to the client socket fails.

    Wraps OSError (including timeouts) so callers only need to know about
    one family of exceptions.
    """


class ConnectionClosed(TransportError):
    """The peer closed the connection before the request was complete."""


class HandlerError(SCGIError):
    """
    The application request handler raised.

    The original exception is kept as __cause__ so the traceback can be
    logged in full.
    """

    def __init__(self, message: str, connection_id: str = ""):
        super().__init__(message)
        self.connection_id = connection_id
