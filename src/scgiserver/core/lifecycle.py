"""
=============================================================================
SHUTDOWN CONTROLLER
=============================================================================

Owns the ONLY mutable state shared between threads:

    ┌─────────────────────────────────────────────────────────────────────┐
    │                    ShutdownController._lock guards                  │
    ├─────────────────────────────────────────────────────────────────────┤
    │   state          RUNNING / DRAINING / FORCED / DEAD                 │
    │   active_count   connections registered but not yet reclaimed       │
    │   total_count    connections reclaimed since start (monotonic)      │
    └─────────────────────────────────────────────────────────────────────┘

Who touches it:

    Accept loop   ── should_exit(), mark_dead()
    Registry      ── connection_opened(), connection_reclaimed(),
                     connection_aborted()
    Connections   ── admission()
    Signals       ── begin_graceful_shutdown(), begin_forced_shutdown(),
                     dump_status()

The lock is owned here by composition; no other component locks this state.

=============================================================================
CLOSING THE LISTENER
=============================================================================

Two parties may close the listening socket:

    1. this controller   forced shutdown, or graceful with nobody connected,
                         or graceful once the last connection is reclaimed
    2. the accept loop   on its way out, whatever the reason

The close callable handed to attach_listener() must therefore be
idempotent. Listener.close() is.

=============================================================================
"""

import logging
import os
import threading
import time
from dataclasses import asdict, dataclass
from typing import Callable, Optional

from .admission import Admission, admit
from .states import LifecycleState


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessorStatus:
    """
    Point-in-time snapshot of the processor, taken under the lock.

    Attributes:
        time: Wall clock time of the snapshot.
        pid: Process id.
        started: Wall clock time the controller was created.
        uptime: Seconds since start.
        state: Lifecycle state name.
        active_connections: Outstanding connection tasks.
        total_connections: Connections reclaimed so far.
        max_connections: Configured admission threshold.
        cpu_times: ``os.times()`` user/system times for this process.
    """
    time: float
    pid: int
    started: float
    uptime: float
    state: str
    active_connections: int
    total_connections: int
    max_connections: int
    cpu_times: dict

    @property
    def shutdown(self) -> bool:
        return self.state != LifecycleState.RUNNING.value

    @property
    def dead(self) -> bool:
        return self.state == LifecycleState.DEAD.value

    def to_dict(self) -> dict:
        """Plain dict form, handy for logging and JSON."""
        data = asdict(self)
        data["shutdown"] = self.shutdown
        data["dead"] = self.dead
        return data


class ShutdownController:
    """
    Lifecycle state machine plus the connection counters.

    Usage:
        controller = ShutdownController(max_connections=100)
        controller.attach_listener(listener.close)

        controller.connection_opened()       # registry, on spawn
        controller.admission()               # connection, per request
        controller.connection_reclaimed()    # collector, on reap

        controller.begin_graceful_shutdown() # SIGINT / SIGHUP
        controller.begin_forced_shutdown()   # SIGTERM
    """

    def __init__(self, max_connections: int, logger: Optional[logging.Logger] = None):
        self.max_connections = max_connections
        self.logger = logger or logging.getLogger(__name__)

        self._lock = threading.Lock()
        self._state = LifecycleState.RUNNING
        self._active = 0
        self._total = 0

        self._close_listener: Optional[Callable[[], None]] = None
        self._dead = threading.Event()

        self.started_at = time.time()
        self._started_monotonic = time.monotonic()

    # =========================================================================
    # READ ACCESS
    # =========================================================================

    @property
    def state(self) -> LifecycleState:
        with self._lock:
            return self._state

    @property
    def active_count(self) -> int:
        with self._lock:
            return self._active

    @property
    def total_count(self) -> int:
        with self._lock:
            return self._total

    def admission(self) -> Admission:
        """Admission decision from one consistent view of state and count."""
        with self._lock:
            return admit(self._state, self._active, self.max_connections)

    def should_exit(self) -> bool:
        """True once shutdown has begun and no connection is outstanding."""
        with self._lock:
            return self._should_exit_locked()

    def _should_exit_locked(self) -> bool:
        return (
            self._state in (LifecycleState.DRAINING, LifecycleState.FORCED)
            and self._active == 0
        ) or self._state is LifecycleState.DEAD

    # =========================================================================
    # CONNECTION COUNTERS
    # =========================================================================

    def connection_opened(self) -> int:
        """Count a newly registered connection. Returns the new active count."""
        with self._lock:
            self._active += 1
            return self._active

    def connection_reclaimed(self) -> None:
        """
        Count a reclaimed connection.

        When a graceful drain has just finished, close the listener so the
        accept loop wakes up and exits without waiting for another client.
        """
        with self._lock:
            self._active -= 1
            self._total += 1
            if self._state is LifecycleState.DRAINING and self._active == 0:
                self.logger.info("Last connection finished, closing listener")
                self._close_listener_locked()

    def connection_aborted(self) -> None:
        """
        Undo connection_opened() for a connection that never ran.

        Not counted in the total. Finishes a graceful drain the same way
        connection_reclaimed() does.
        """
        with self._lock:
            self._active -= 1
            if self._state is LifecycleState.DRAINING and self._active == 0:
                self._close_listener_locked()

    # =========================================================================
    # SHUTDOWN
    # =========================================================================

    def attach_listener(self, close: Callable[[], None]) -> None:
        """
        Register the idempotent close function of the listening socket.

        If shutdown already began with nobody connected, close right away.
        """
        with self._lock:
            self._close_listener = close
            if self._state is not LifecycleState.RUNNING and (
                self._state is LifecycleState.FORCED or self._active == 0
            ):
                self._close_listener_locked()

    def begin_graceful_shutdown(self) -> None:
        """
        Stop dispatching new work and let in-flight connections finish.

        RUNNING -> DRAINING. Calling it again, or after a forced shutdown,
        changes nothing.
        """
        with self._lock:
            if self._state is LifecycleState.RUNNING:
                self._state = LifecycleState.DRAINING
            elif self._state is not LifecycleState.DRAINING:
                self.logger.info(f"Graceful shutdown ignored, already {self._state.value}")
                return

            if self._active == 0:
                self.logger.info("Immediate shutdown since nobody is connected.")
                self._close_listener_locked()
            else:
                self.logger.info(
                    f"Shutdown requested. Beginning graceful shutdown with "
                    f"{self._active} connected."
                )

    def begin_forced_shutdown(self) -> None:
        """
        Close the listener now, whatever is in flight.

        In-flight connections are not killed. They finish, or fail with
        I/O errors that get logged.
        """
        with self._lock:
            if self._state is LifecycleState.DEAD:
                return
            self._state = LifecycleState.FORCED
            self.logger.info(
                f"Forcing shutdown with {self._active} connected. You may see exceptions."
            )
            self._close_listener_locked()

    def mark_dead(self) -> None:
        """Terminal transition, made by the accept loop on exit."""
        with self._lock:
            self._state = LifecycleState.DEAD
        self._dead.set()

    def wait_until_dead(self, timeout: Optional[float] = None) -> bool:
        """Block until the accept loop has exited. False on timeout."""
        return self._dead.wait(timeout)

    def _close_listener_locked(self) -> None:
        if self._close_listener is not None:
            self._close_listener()

    # =========================================================================
    # STATUS
    # =========================================================================

    def status(self) -> ProcessorStatus:
        """Snapshot of state, counters and timing. Never mutates anything."""
        times = os.times()
        with self._lock:
            state = self._state
            active = self._active
            total = self._total
        return ProcessorStatus(
            time=time.time(),
            pid=os.getpid(),
            started=self.started_at,
            uptime=time.monotonic() - self._started_monotonic,
            state=state.value,
            active_connections=active,
            total_connections=total,
            max_connections=self.max_connections,
            cpu_times={"user": times.user, "system": times.system},
        )

    def dump_status(self) -> ProcessorStatus:
        """Log a status snapshot (SIGUSR2) and return it."""
        status = self.status()
        self.logger.info(f"Status: {status.to_dict()}")
        return status
