"""
pytest configuration and fixtures.
"""

import dataclasses
import socket
import threading
import time
from typing import Callable, Dict, Generator, List, Optional, Tuple
import pytest

# Add src to path for imports
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from scgiserver import LifecycleState, ProcessorConfig, SCGIProcessor
from scgiserver.core.netstring import encode_request


OK_HEAD = b"Status: 200 OK\r\nContent-Type: text/plain\r\n\r\n"


@pytest.fixture
def sample_headers() -> Dict[str, str]:
    """Headers a front-end web server sends for a simple GET."""
    return {
        "REQUEST_METHOD": "GET",
        "REQUEST_URI": "/hello?name=world",
        "PATH_INFO": "/hello",
        "QUERY_STRING": "name=world",
        "SERVER_NAME": "localhost",
        "SERVER_PORT": "80",
        "REMOTE_ADDR": "10.0.0.7",
    }


@pytest.fixture
def sample_request(sample_headers: Dict[str, str]) -> bytes:
    """Complete SCGI GET request."""
    return encode_request(sample_headers)


@pytest.fixture
def config() -> ProcessorConfig:
    """Default test processor configuration."""
    return ProcessorConfig(
        host="127.0.0.1",
        port=0,  # Let OS pick a free port
        io_timeout=5.0,
        accept_poll_interval=0.1,
        shutdown_timeout=2.0,
        log_level="WARNING",
    )


# =============================================================================
# HANDLERS
# =============================================================================

@dataclasses.dataclass
class Call:
    headers: Dict[str, str]
    body: bytes


class RecordingHandler:
    """
    Request handler that records every call and echoes the request.

    With ``block=True`` each call waits on ``release()`` before answering,
    which keeps connections in flight for shutdown tests.
    """

    def __init__(self, block: bool = False, fail: bool = False):
        self.calls: List[Call] = []
        self.block = block
        self.fail = fail
        self.started = threading.Event()
        self._released = threading.Event()
        self._lock = threading.Lock()

    def __call__(self, headers, body, writer):
        with self._lock:
            self.calls.append(Call(headers=dict(headers), body=body))
        self.started.set()
        if self.block:
            self._released.wait(10.0)
        if self.fail:
            raise RuntimeError("application blew up")
        writer.write(OK_HEAD)
        writer.write(body or headers.get("REQUEST_URI", "").encode("latin-1"))

    def release(self):
        self._released.set()


@pytest.fixture
def handler() -> Generator[RecordingHandler, None, None]:
    h = RecordingHandler()
    yield h
    h.release()


@pytest.fixture
def blocking_handler() -> Generator[RecordingHandler, None, None]:
    h = RecordingHandler(block=True)
    yield h
    h.release()


@pytest.fixture
def failing_handler() -> RecordingHandler:
    return RecordingHandler(fail=True)


# =============================================================================
# CLIENT HELPERS
# =============================================================================

class SCGIClient:
    """Plays the front-end web server."""

    @staticmethod
    def open(address: Tuple[str, int], data: bytes, timeout: float = 5.0) -> socket.socket:
        """Send a request and half-close, leaving the response unread."""
        sock = socket.create_connection(address, timeout=timeout)
        sock.sendall(data)
        sock.shutdown(socket.SHUT_WR)
        return sock

    @staticmethod
    def receive(sock: socket.socket) -> bytes:
        """Read until the processor closes the connection."""
        chunks = []
        with sock:
            while True:
                try:
                    chunk = sock.recv(65536)
                except ConnectionResetError:
                    break
                if not chunk:
                    break
                chunks.append(chunk)
        return b"".join(chunks)

    def send(self, address: Tuple[str, int], data: bytes, timeout: float = 5.0) -> bytes:
        return self.receive(self.open(address, data, timeout))


@pytest.fixture
def client() -> SCGIClient:
    return SCGIClient()


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.01) -> bool:
    """Poll ``predicate`` until it is true or ``timeout`` passes."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture(name="wait_for")
def wait_for_fixture() -> Callable[..., bool]:
    return wait_for


# =============================================================================
# PROCESSOR
# =============================================================================

class ProcessorRunner:
    """Test processor helper that runs listen() in a background thread."""

    def __init__(self, processor: SCGIProcessor):
        self.processor = processor
        self.address: Optional[Tuple[str, int]] = None
        self.error: Optional[BaseException] = None
        self._thread: Optional[threading.Thread] = None

    def start(self) -> "ProcessorRunner":
        """Bind, then serve in a background thread."""
        self.address = self.processor.bind()
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()
        return self

    def _run(self):
        try:
            self.processor.listen()
        except BaseException as e:
            self.error = e

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def join(self, timeout: float = 5.0) -> bool:
        """Wait for listen() to return."""
        if self._thread is not None:
            self._thread.join(timeout)
        return not self.running

    def stop(self):
        """Stop the processor."""
        if self.processor.state is not LifecycleState.DEAD:
            self.processor.shutdown(force=True)
        self.join()


@pytest.fixture
def start_processor(config: ProcessorConfig):
    """Factory: start_processor(handler, **config_overrides) -> ProcessorRunner."""
    runners: List[ProcessorRunner] = []

    def _start(request_handler, **overrides) -> ProcessorRunner:
        cfg = dataclasses.replace(config, **overrides)
        runner = ProcessorRunner(SCGIProcessor(request_handler, cfg)).start()
        runners.append(runner)
        return runner

    yield _start

    for runner in runners:
        runner.stop()
