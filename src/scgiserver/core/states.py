"""
=============================================================================
PROCESSOR LIFECYCLE STATES
=============================================================================

    RUNNING ──begin_graceful_shutdown()──► DRAINING ──┐
       │                                              │ accept loop exits
       └────begin_forced_shutdown()─────► FORCED ─────┴──────────► DEAD

    RUNNING   Accepting and dispatching requests.
    DRAINING  Still accepting, but every new request gets /busy.html.
              The listener closes once the last active connection is
              reclaimed.
    FORCED    Listener already closed. In-flight connections finish on
              their own (or fail with I/O errors).
    DEAD      Accept loop has exited. Terminal.

DRAINING may still be escalated to FORCED. Nothing ever goes back to
RUNNING.

=============================================================================
"""

from enum import Enum


class LifecycleState(Enum):
    """Processor lifecycle state."""
    RUNNING = "running"
    DRAINING = "draining"
    FORCED = "forced"
    DEAD = "dead"

    @property
    def is_shutting_down(self) -> bool:
        """True for every state other than RUNNING."""
        return self is not LifecycleState.RUNNING
