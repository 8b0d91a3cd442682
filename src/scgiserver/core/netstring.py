"""
=============================================================================
SCGI NETSTRING HEADER PARSER
=============================================================================

An SCGI request is a netstring of NUL separated header pairs, followed by
the raw body:

    ┌──────────────────────────────────────────────────────────────────┐
    │  24:CONTENT_LENGTH\\05\\0SCGI\\01\\0,hello                            │
    │  ──  ──────────────────────────────  ─────                       │
    │  │   header block (exactly 24 bytes) │ body (CONTENT_LENGTH bytes)│
    │  │                                  │                            │
    │  length prefix, max 10 digits       comma terminator            │
    └──────────────────────────────────────────────────────────────────┘

Reading it back:

    1. Read digits one byte at a time until ":"   (read_length)
       └── an 11th digit is rejected right there, so a hostile peer can
           never make us buffer an unbounded prefix
    2. Read exactly <length> bytes                (read_netstring)
    3. Read one byte, it must be ","
    4. Split the block on NUL and pair the tokens (parse_headers)

The body is NOT read here. The connection handler reads it using the
decoded CONTENT_LENGTH, see content_length().

Any object with a ``read(n)`` method works as a stream: a buffered socket
file from ``socket.makefile("rb")`` in production, ``io.BytesIO`` in tests.

=============================================================================
"""

from typing import BinaryIO, Dict, Mapping

from ..errors import (
    ConnectionClosed,
    MalformedHeaderPairs,
    MalformedLength,
    MalformedTerminator,
)


# The length prefix may not exceed this many digit characters.
MAX_LENGTH_DIGITS = 10

# Large payloads are read in slices of this size, so a huge declared
# length never allocates its whole buffer up front.
READ_CHUNK_SIZE = 64 * 1024

# SCGI header bytes have no declared charset; latin-1 maps every byte to
# exactly one code point, so decoding is lossless and encoding reverses it.
HEADER_ENCODING = "latin-1"


def read_exact(stream: BinaryIO, size: int) -> bytes:
    """
    Read exactly ``size`` bytes from ``stream``.

    Raises:
        ConnectionClosed: If the stream ends first.
    """
    chunks = []
    remaining = size
    while remaining > 0:
        chunk = stream.read(min(remaining, READ_CHUNK_SIZE))
        if not chunk:
            raise ConnectionClosed(
                f"Connection closed after {size - remaining} of {size} bytes"
            )
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def read_length(stream: BinaryIO) -> int:
    """
    Read the decimal length prefix of a netstring, including the ":".

    Returns:
        The declared payload length.

    Raises:
        MalformedLength: Empty prefix, non-digit byte, or more than
                         MAX_LENGTH_DIGITS digits.
        ConnectionClosed: Stream ended inside the prefix.
    """
    digits = b""
    while True:
        c = stream.read(1)
        if not c:
            raise ConnectionClosed("Connection closed while reading netstring length")
        if c == b":":
            break
        if not c.isdigit():
            raise MalformedLength(f"Invalid character {c!r} in netstring length")
        if len(digits) >= MAX_LENGTH_DIGITS:
            raise MalformedLength(
                f"Netstring length exceeds {MAX_LENGTH_DIGITS} digits"
            )
        digits += c

    if not digits:
        raise MalformedLength("Empty netstring length")
    return int(digits)


def read_netstring(stream: BinaryIO) -> bytes:
    """
    Read one complete netstring and return its payload.

    Raises:
        MalformedLength: See read_length().
        MalformedTerminator: Payload not followed by ",".
        ConnectionClosed: Stream ended early.
    """
    length = read_length(stream)
    payload = read_exact(stream, length)

    terminator = stream.read(1)
    if terminator != b",":
        raise MalformedTerminator(
            f"Malformed request, does not end with ',' (got {terminator!r})"
        )
    return payload


def parse_headers(payload: bytes) -> Dict[str, str]:
    """
    Decode a header block into an ordered dict.

    Each key and each value is NUL terminated, so splitting
    ``b"A\\0x\\0B\\0y\\0"`` gives ``[A, x, B, y, ""]``. The empty token after the
    final terminator is dropped before pairing. Empty values in the middle
    (``QUERY_STRING\\0\\0``) are kept.

    When a key repeats, the later pair wins.

    Raises:
        MalformedHeaderPairs: Odd number of tokens.
    """
    tokens = payload.split(b"\0")
    if tokens[-1] == b"":
        tokens.pop()

    if len(tokens) % 2 != 0:
        raise MalformedHeaderPairs(
            f"Uneven number of header tokens: {len(tokens)}"
        )

    headers: Dict[str, str] = {}
    for key, value in zip(tokens[0::2], tokens[1::2]):
        headers[key.decode(HEADER_ENCODING)] = value.decode(HEADER_ENCODING)
    return headers


def read_headers(stream: BinaryIO) -> Dict[str, str]:
    """Read the header netstring from ``stream`` and decode it."""
    return parse_headers(read_netstring(stream))


def content_length(headers: Mapping[str, str]) -> int:
    """
    Body length announced by the request.

    Absent, unparsable, zero or negative values all mean "no body".
    """
    try:
        length = int(headers.get("CONTENT_LENGTH", "0").strip() or 0)
    except ValueError:
        return 0
    return max(length, 0)


# =============================================================================
# ENCODING: the client side, used by front-end shims and tests
# =============================================================================

def encode_netstring(payload: bytes) -> bytes:
    """Frame ``payload`` as ``<len>:<payload>,``."""
    return str(len(payload)).encode("ascii") + b":" + payload + b","


def encode_headers(headers: Mapping[str, str]) -> bytes:
    """Serialize headers as a NUL terminated ``key\\0value\\0`` block."""
    return b"".join(
        key.encode(HEADER_ENCODING) + b"\0" + value.encode(HEADER_ENCODING) + b"\0"
        for key, value in headers.items()
    )


def encode_request(headers: Mapping[str, str], body: bytes = b"") -> bytes:
    """
    Build a complete SCGI request.

    CONTENT_LENGTH is always sent first and always matches ``body``; an
    ``SCGI: 1`` header is added unless the caller supplied one.
    """
    ordered = {"CONTENT_LENGTH": str(len(body))}
    ordered["SCGI"] = headers.get("SCGI", "1")
    for key, value in headers.items():
        if key not in ordered:
            ordered[key] = value
    return encode_netstring(encode_headers(ordered)) + body
