"""
Unit tests for the connection wrapper and the connection handler.

A socketpair stands in for the front-end web server: the test writes the
request into one end, half-closes it, and reads the response back.
"""

import logging
import socket
import threading
import time

import pytest

from scgiserver.core.admission import BUSY_RESPONSE
from scgiserver.core.connection import (
    Connection,
    ConnectionHandler,
    ConnectionState,
    ResponseWriter,
)
from scgiserver.core.lifecycle import ShutdownController
from scgiserver.core.netstring import encode_request
from scgiserver.errors import TransportError


ADDRESS = ("10.0.0.1", 50000)


def make_connection(payload: bytes):
    """Connection with ``payload`` already sent and the peer half-closed."""
    server_end, peer = socket.socketpair()
    peer.sendall(payload)
    peer.shutdown(socket.SHUT_WR)
    return Connection(socket=server_end, address=ADDRESS, timeout=2.0), peer


def read_response(peer: socket.socket) -> bytes:
    chunks = []
    with peer:
        peer.settimeout(2.0)
        while True:
            chunk = peer.recv(65536)
            if not chunk:
                break
            chunks.append(chunk)
    return b"".join(chunks)


@pytest.fixture
def controller() -> ShutdownController:
    ctl = ShutdownController(max_connections=10)
    # The registry counts a connection before its thread runs
    ctl.connection_opened()
    return ctl


class TestConnection:
    """Tests for the Connection wrapper."""

    def test_read_headers_and_body(self):
        conn, peer = make_connection(encode_request({"REQUEST_METHOD": "POST"}, b"abc"))

        with conn:
            headers = conn.read_headers()
            body = conn.read_body(int(headers["CONTENT_LENGTH"]))

        peer.close()
        assert headers["REQUEST_METHOD"] == "POST"
        assert body == b"abc"

    def test_read_body_zero_length(self):
        conn, peer = make_connection(b"")
        with conn:
            assert conn.read_body(0) == b""
        peer.close()

    def test_close_is_idempotent(self):
        conn, peer = make_connection(b"")
        conn.close()
        conn.close()
        peer.close()
        assert conn.state is ConnectionState.CLOSED
        assert conn.closed

    def test_close_gives_up_on_trickling_peer(self):
        server_end, peer = socket.socketpair()
        conn = Connection(socket=server_end, address=ADDRESS, timeout=2.0)
        stop = threading.Event()

        def trickle():
            while not stop.is_set():
                try:
                    peer.sendall(b"x" * 100)
                except OSError:
                    return
                time.sleep(0.05)

        sender = threading.Thread(target=trickle, daemon=True)
        sender.start()
        closer = threading.Thread(target=conn.close, daemon=True)
        closer.start()
        closer.join(3.0)
        stop.set()
        sender.join(2.0)
        peer.close()

        assert not closer.is_alive()
        assert conn.closed

    def test_send_after_close(self):
        conn, peer = make_connection(b"")
        conn.close()
        peer.close()
        with pytest.raises(TransportError):
            conn.send(b"late")

    def test_timeout_applied(self):
        server_end, peer = socket.socketpair()
        conn = Connection(socket=server_end, address=ADDRESS, timeout=1.5)
        assert server_end.gettimeout() == 1.5
        conn.close()
        peer.close()


class TestResponseWriter:
    """Tests for the byte sink handed to applications."""

    def test_write_counts_bytes(self):
        conn, peer = make_connection(b"")
        writer = ResponseWriter(conn)

        assert writer.write(b"Status: 200 OK\r\n\r\n") == 18
        writer.writelines([b"a", b"bc"])
        writer.write(b"")
        writer.flush()
        conn.close()

        assert writer.bytes_written == 21
        assert writer.closed
        assert read_response(peer) == b"Status: 200 OK\r\n\r\nabc"


class TestConnectionHandler:
    """Tests for the per-connection request cycle."""

    def test_dispatches_to_handler(self, controller):
        calls = []

        def app(headers, body, writer):
            calls.append((headers, body))
            writer.write(b"Status: 200 OK\r\n\r\n" + body)

        conn, peer = make_connection(encode_request({"PATH_INFO": "/x"}, b"payload"))

        ConnectionHandler(app, controller)(conn)

        assert read_response(peer) == b"Status: 200 OK\r\n\r\npayload"
        assert len(calls) == 1
        assert calls[0][0]["PATH_INFO"] == "/x"
        assert calls[0][1] == b"payload"
        assert conn.closed

    def test_redirect_when_shutting_down(self, controller):
        calls = []
        controller.begin_forced_shutdown()
        conn, peer = make_connection(encode_request({"PATH_INFO": "/x"}))

        ConnectionHandler(lambda *args: calls.append(args), controller)(conn)

        assert read_response(peer) == BUSY_RESPONSE
        assert calls == []

    def test_redirect_when_over_limit(self):
        controller = ShutdownController(max_connections=0)
        controller.connection_opened()
        calls = []
        conn, peer = make_connection(encode_request({}))

        ConnectionHandler(lambda *args: calls.append(args), controller)(conn)

        assert read_response(peer) == BUSY_RESPONSE
        assert calls == []

    def test_malformed_request_gets_no_response(self, controller, caplog):
        calls = []
        conn, peer = make_connection(b"12345678901:garbage,")

        with caplog.at_level(logging.ERROR, logger="scgiserver"):
            ConnectionHandler(lambda *args: calls.append(args), controller)(conn)

        assert read_response(peer) == b""
        assert calls == []
        assert conn.closed
        assert "Malformed request" in caplog.text

    def test_truncated_body_logged_as_io_error(self, controller, caplog):
        calls = []
        raw = encode_request({}, b"0123456789")[:-4]
        conn, peer = make_connection(raw)

        with caplog.at_level(logging.WARNING, logger="scgiserver"):
            ConnectionHandler(lambda *args: calls.append(args), controller)(conn)

        peer.close()
        assert calls == []
        assert "I/O error" in caplog.text

    def test_handler_exception_is_contained(self, controller, caplog):
        def app(headers, body, writer):
            raise RuntimeError("application blew up")

        conn, peer = make_connection(encode_request({}))

        with caplog.at_level(logging.ERROR, logger="scgiserver"):
            ConnectionHandler(app, controller)(conn)

        assert read_response(peer) == b""
        assert conn.closed
        assert "Request handler raised RuntimeError" in caplog.text
        assert "application blew up" in caplog.text
