"""
Unit tests for admission control.
"""

import pytest

from scgiserver.core.admission import Admission, BUSY_RESPONSE, admit
from scgiserver.core.states import LifecycleState


class TestAdmit:
    """Tests for the pure admission decision."""

    def test_running_under_limit(self):
        assert admit(LifecycleState.RUNNING, 1, 10) is Admission.ADMIT

    def test_running_at_limit(self):
        assert admit(LifecycleState.RUNNING, 10, 10) is Admission.ADMIT

    def test_running_over_limit(self):
        assert admit(LifecycleState.RUNNING, 11, 10) is Admission.REDIRECT

    def test_zero_max_redirects_everything(self):
        """The active count includes the connection being decided."""
        assert admit(LifecycleState.RUNNING, 1, 0) is Admission.REDIRECT

    @pytest.mark.parametrize("state", [
        LifecycleState.DRAINING,
        LifecycleState.FORCED,
        LifecycleState.DEAD,
    ])
    def test_shutting_down_redirects(self, state):
        assert admit(state, 1, 100) is Admission.REDIRECT


class TestBusyResponse:
    """The busy redirect is written verbatim."""

    def test_exact_bytes(self):
        assert BUSY_RESPONSE == (
            b"Location: /busy.html\r\n"
            b"Cache-control: no-cache, must-revalidate\r\n"
            b"Expires: Mon, 26 Jul 1997 05:00:00 GMT\r\n"
            b"Status: 307 Temporary Redirect\r\n"
            b"\r\n"
        )
