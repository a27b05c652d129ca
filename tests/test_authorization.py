"""
Tests for the manager badge override.
"""

import pytest

from authorization import BadgeScan, KeystrokeTimer, ManagerAuthorizer
from exceptions import AuthorizationError


def badge(code, window_ms):
    return BadgeScan(code=code, first_keystroke_at=500.0, last_keystroke_at=500.0 + window_ms)


class TestManagerAuthorizer:

    def test_scanner_speed_manager_badge(self):
        assert ManagerAuthorizer().verify(badge("ASP1752", 35)) == "ASP1752"

    def test_code_normalized(self):
        assert ManagerAuthorizer().verify(badge(" asp0106 ", 10)) == "ASP0106"

    def test_non_manager_refused(self):
        with pytest.raises(AuthorizationError) as exc_info:
            ManagerAuthorizer().verify(badge("ASP0001", 10))
        assert exc_info.value.badge_code == "ASP0001"

    @pytest.mark.parametrize("window_ms", [200, 1500])
    def test_typed_code_refused(self, window_ms):
        with pytest.raises(AuthorizationError, match="scanner"):
            ManagerAuthorizer().verify(badge("ASP1752", window_ms))

    def test_just_under_limit_accepted(self):
        assert ManagerAuthorizer().verify(badge("ASP1752", 199.9)) == "ASP1752"

    def test_missing_scan(self):
        with pytest.raises(AuthorizationError):
            ManagerAuthorizer().verify(None)

    def test_invalid_allow_list_entries_ignored(self):
        authorizer = ManagerAuthorizer(["asp0001", "boss"], max_window_ms=100)
        assert authorizer.allowed_codes == frozenset({"ASP0001"})


class TestKeystrokeTimer:

    def test_window_from_keystrokes(self):
        times = iter([1000.0, 1004.0, 1009.0, 1012.0])
        timer = KeystrokeTimer(clock=lambda: next(times))

        for _ in range(3):
            timer.keystroke()
        scan = timer.finish("ASP1752")

        assert scan.code == "ASP1752"
        assert scan.window_ms == 9.0

    def test_finish_without_keystrokes(self):
        timer = KeystrokeTimer(clock=lambda: 42.0)
        assert timer.finish("ASP1752").window_ms == 0

    def test_reset_between_scans(self):
        times = iter([0.0, 500.0, 1000.0, 1003.0, 1010.0])
        timer = KeystrokeTimer(clock=lambda: next(times))

        timer.keystroke()
        timer.keystroke()
        timer.reset()
        timer.keystroke()
        timer.keystroke()

        assert timer.finish("ASP1752").window_ms == 3.0

    def test_from_line(self):
        assert KeystrokeTimer.from_line("ASP1752", 10.0, 250.0).window_ms == 240.0
