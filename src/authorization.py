"""
Manager override for unlocking and deleting check lines.

A manager authorizes a privileged action by scanning their badge. Two checks
are applied to the scan:

1. The normalized code must be on the manager allow-list.
2. The whole code must arrive within `max_window_ms` from the first to the
   last keystroke. Hardware scanners emit a code in a few milliseconds; a
   person typing the same code takes far longer.

This is a heuristic against casual misuse, not an authentication scheme: a
programmable keyboard or a replayed scanner beats it.
"""

import time
from dataclasses import dataclass
from typing import Iterable, Optional

from exceptions import AuthorizationError
from identity import normalize_employee_id
from logger import get_logger

logger = get_logger(__name__)

DEFAULT_MANAGER_BADGES = ('ASP0106', 'ASP1752', 'ASP0028', 'ASP1747', 'ASP2083', 'ASP2137')
DEFAULT_SCANNER_WINDOW_MS = 200


@dataclass(frozen=True)
class BadgeScan:
    """
    A badge code with the times of its first and last keystroke.

    Times are in milliseconds from any fixed origin (time.monotonic() * 1000
    in KeystrokeTimer).
    """
    code: str
    first_keystroke_at: float
    last_keystroke_at: float

    @property
    def window_ms(self) -> float:
        return self.last_keystroke_at - self.first_keystroke_at


class KeystrokeTimer:
    """
    Records keystroke times while a badge code is entered.

    Call keystroke() for every character received (a Qt keyPressEvent, a
    character read from a raw terminal), then finish() with the complete
    text to get a BadgeScan. When the input arrives as a whole line, as with
    input() in a console, pass the elapsed read time to from_line().
    """

    def __init__(self, clock=None):
        self._clock = clock or (lambda: time.monotonic() * 1000)
        self._first: Optional[float] = None
        self._last: Optional[float] = None

    def keystroke(self) -> None:
        now = self._clock()
        if self._first is None:
            self._first = now
        self._last = now

    def reset(self) -> None:
        self._first = None
        self._last = None

    def finish(self, code: str) -> BadgeScan:
        now = self._clock()
        first = self._first if self._first is not None else now
        last = self._last if self._last is not None else now
        self.reset()
        return BadgeScan(code=code, first_keystroke_at=first, last_keystroke_at=last)

    @staticmethod
    def from_line(code: str, started_at: float, finished_at: float) -> BadgeScan:
        return BadgeScan(code=code, first_keystroke_at=started_at, last_keystroke_at=finished_at)


class ManagerAuthorizer:
    """
    Verifies manager badge scans.

    Attributes:
        allowed_codes (frozenset): Normalized employee codes allowed to override
        max_window_ms (float): Keystroke window a scan must stay strictly below
    """

    def __init__(self, allowed_codes: Iterable[str] = DEFAULT_MANAGER_BADGES,
                 max_window_ms: float = DEFAULT_SCANNER_WINDOW_MS):
        codes = set()
        for code in allowed_codes:
            result = normalize_employee_id(code)
            if result.valid:
                codes.add(result.id)
            else:
                logger.warning(f"Ignoring invalid manager badge in allow-list: {code!r}")
        self.allowed_codes = frozenset(codes)
        self.max_window_ms = max_window_ms

    def verify(self, scan: Optional[BadgeScan]) -> str:
        """
        Check a badge scan and return the normalized manager code.

        Raises:
            AuthorizationError: If there is no scan, the code is not a manager
                                badge, or it was entered too slowly
        """
        if scan is None:
            raise AuthorizationError("Manager badge scan required.")

        result = normalize_employee_id(scan.code)
        code = result.id

        if not result.valid or code not in self.allowed_codes:
            logger.warning(f"Authorization refused for badge {code!r}: not a manager")
            raise AuthorizationError(f"Badge {code or '(empty)'} is not authorized for this action.",
                                     badge_code=code)

        if scan.window_ms >= self.max_window_ms:
            logger.warning(f"Authorization refused for badge {code}: entered in "
                           f"{scan.window_ms:.0f} ms (limit {self.max_window_ms:.0f} ms)")
            raise AuthorizationError("Scan the manager badge with the scanner; typed codes are not accepted.",
                                     badge_code=code)

        logger.info(f"Manager override authorized by {code}")
        return code
