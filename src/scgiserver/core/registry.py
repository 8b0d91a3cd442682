"""
=============================================================================
CONNECTION REGISTRY AND COLLECTOR
=============================================================================

Every accepted connection runs on its own thread. Something has to notice
when each one finishes, join it, and update the counters. That is the
collector.

    ┌─────────────────────────────────────────────────────────────────────┐
    │                         ConnectionRegistry                           │
    ├─────────────────────────────────────────────────────────────────────┤
    │                                                                      │
    │   spawn(target)                                                     │
    │      ├── task table[id] = ConnectionTask      (owns the handle)     │
    │      ├── controller.connection_opened()       active += 1           │
    │      └── Thread(_run_task).start()                                  │
    │                  │                                                   │
    │                  └── finally: completed.put(id)                     │
    │                                      │                               │
    │   collector thread                   ▼                               │
    │      while True:                                                    │
    │          id = completed.get()       COMPLETION order, not spawn     │
    │          thread.join()              returns at once, it has ended   │
    │          del table[id]                                              │
    │          controller.connection_reclaimed()   active -= 1, total += 1│
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

Reclaiming in completion order means a slow connection never delays the
counter updates of faster ones that started after it.

stop() puts a poison pill (None) on the completion queue. The collector
keeps reclaiming until the task table is empty, then exits.

=============================================================================
"""

import itertools
import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Tuple

from .lifecycle import ShutdownController


logger = logging.getLogger(__name__)


@dataclass
class ConnectionTask:
    """
    One connection's unit of work, owned by the registry until reclaimed.

    Attributes:
        id: Registry-assigned task id.
        address: Client's (ip, port).
        thread: The thread running the connection.
        accepted_at: Time the task was registered.
        finished_at: Time the thread's target returned or raised.
        error: Exception that escaped the target, if any.
    """
    id: int
    address: Tuple[str, int]
    thread: Optional[threading.Thread] = None
    accepted_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None
    error: Optional[BaseException] = None

    @property
    def duration(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return self.finished_at - self.accepted_at


class ConnectionRegistry:
    """
    Tracks outstanding connection tasks and reclaims finished ones.

    Usage:
        registry = ConnectionRegistry(controller)
        registry.start()

        registry.spawn(lambda: handle(conn), conn.address)

        registry.stop()          # drain known tasks, then exit
        registry.join(timeout=5)
    """

    def __init__(
        self,
        controller: ShutdownController,
        logger: Optional[logging.Logger] = None,
    ):
        self.controller = controller
        self.logger = logger or logging.getLogger(__name__)

        # Guards _tasks only; the counters live behind the controller's lock
        self._lock = threading.Lock()
        self._tasks: Dict[int, ConnectionTask] = {}
        self._ids = itertools.count(1)

        self._completed: "queue.Queue[Optional[int]]" = queue.Queue()
        self._collector: Optional[threading.Thread] = None
        self._stopping = False

    @property
    def pending(self) -> int:
        """Tasks registered but not yet reclaimed."""
        with self._lock:
            return len(self._tasks)

    # =========================================================================
    # SPAWNING
    # =========================================================================

    def spawn(self, target: Callable[[], None], address: Tuple[str, int]) -> ConnectionTask:
        """
        Register a task and start its thread.

        The active count goes up BEFORE the thread starts, so the
        connection's own admission check already counts itself.

        Raises:
            RuntimeError: The thread could not be started. The task is
                          unregistered and the active count restored.
        """
        with self._lock:
            task = ConnectionTask(id=next(self._ids), address=address)
            self._tasks[task.id] = task
        self.controller.connection_opened()

        task.thread = threading.Thread(
            target=self._run_task,
            args=(task, target),
            name=f"scgi-conn-{task.id}",
            daemon=True,
        )
        try:
            task.thread.start()
        except BaseException:
            # No thread, so the collector will never see this task
            with self._lock:
                self._tasks.pop(task.id, None)
            self.controller.connection_aborted()
            raise
        return task

    def _run_task(self, task: ConnectionTask, target: Callable[[], None]) -> None:
        try:
            target()
        except BaseException as e:
            # Recorded here, reported by the collector
            task.error = e
        finally:
            task.finished_at = time.time()
            self._completed.put(task.id)

    # =========================================================================
    # COLLECTING
    # =========================================================================

    def start(self) -> None:
        """Start the collector thread."""
        if self._collector is not None:
            return
        self._collector = threading.Thread(
            target=self._collect, name="scgi-collector", daemon=True
        )
        self._collector.start()

    def _collect(self) -> None:
        self.logger.debug("Collector started")
        while True:
            task_id = self._completed.get()
            if task_id is not None:
                self._reclaim(task_id)
            if self._stopping and self.pending == 0:
                break
        self.logger.debug("Collector stopped")

    def _reclaim(self, task_id: int) -> None:
        with self._lock:
            task = self._tasks.pop(task_id, None)
        if task is None:
            return

        if task.thread is not None:
            task.thread.join()
        self._report(task)
        self.controller.connection_reclaimed()
        self.logger.debug(f"Reclaimed connection task {task.id} after {task.duration:.3f}s")

    def _report(self, task: ConnectionTask) -> None:
        """Log how a task ended if it did not end cleanly. Never raises."""
        error = task.error
        if error is None:
            return
        if isinstance(error, KeyboardInterrupt):
            self.logger.info(f"Connection task {task.id} interrupted during shutdown")
        elif isinstance(error, OSError):
            self.logger.error(
                f"Connection task {task.id} received I/O error {error}. "
                f"Web server may possibly be configured wrong."
            )
        else:
            self.logger.error(
                f"Collecting connection task {task.id}",
                exc_info=(type(error), error, error.__traceback__),
            )

    # =========================================================================
    # STOPPING
    # =========================================================================

    def stop(self) -> None:
        """Ask the collector to exit once every known task is reclaimed."""
        self._stopping = True
        self._completed.put(None)

    def join(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for the collector to exit.

        Returns:
            True if it exited, False on timeout.
        """
        if self._collector is None:
            return True
        self._collector.join(timeout)
        return not self._collector.is_alive()
