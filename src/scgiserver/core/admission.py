"""
=============================================================================
ADMISSION CONTROL
=============================================================================

Decides, BEFORE any backend work is done, whether a request is dispatched
to the application or bounced to /busy.html.

    ┌─────────────────────────────────────────────────────────────────┐
    │   state != RUNNING          ──►  REDIRECT  (draining / forced) │
    │   active > max_connections  ──►  REDIRECT  (overloaded)        │
    │   otherwise                 ──►  ADMIT                         │
    └─────────────────────────────────────────────────────────────────┘

A rejected connection costs one fixed write and a close, so an overloaded
or shutting down processor stays responsive instead of queueing work it
cannot finish.

``active`` counts the connection being decided, so ``max_connections = 0``
redirects every request.

=============================================================================
"""

from enum import Enum

from .states import LifecycleState


class Admission(Enum):
    """Outcome of an admission decision."""
    ADMIT = "admit"
    REDIRECT = "redirect"


# Written verbatim to rejected clients. CGI style: the front-end web server
# turns the Status line into the real HTTP status.
BUSY_RESPONSE = (
    b"Location: /busy.html\r\n"
    b"Cache-control: no-cache, must-revalidate\r\n"
    b"Expires: Mon, 26 Jul 1997 05:00:00 GMT\r\n"
    b"Status: 307 Temporary Redirect\r\n"
    b"\r\n"
)


def admit(state: LifecycleState, active_count: int, max_connections: int) -> Admission:
    """
    Pure admission decision.

    Args:
        state: Current processor lifecycle state.
        active_count: Outstanding connections, including this one.
        max_connections: Configured threshold.

    Returns:
        Admission.ADMIT or Admission.REDIRECT.
    """
    if state is not LifecycleState.RUNNING or active_count > max_connections:
        return Admission.REDIRECT
    return Admission.ADMIT
