"""
Custom exceptions for the Scan Reconciliation Station.

This module defines application-specific exceptions for scan validation,
reconciliation conflicts, persistence failures and manager authorization.
Using custom exceptions allows the application to:
- Give the operator a clear message and re-prompt without losing the session
- Include contextual information (line key, badge code, backend operation)
- Keep operator-facing rejections separate from real backend failures
- Improve logging and error reporting

On the warehouse floor malformed scans are routine. Most of these exceptions
are raised inside the core and converted into result values (ScanResult,
StepOutcome) before they reach the terminal; only PersistenceError is
treated as exceptional and logged with a traceback.

Exception hierarchy:
    ScanCheckError (base)
    ├── ValidationError (malformed scan input, missing required field)
    ├── ReconciliationConflict (scan rejected by the line's state)
    │   ├── LockedLineError (line is locked)
    │   ├── ModeMismatchError (carton scan on a quantity line or vice versa)
    │   └── NonPositiveQuantityError (quantity <= 0 in quantity mode)
    ├── PersistenceError (backing store read/write failed)
    ├── AuthorizationError (unlock/delete without a valid manager badge)
    └── InvalidTransitionError (scan flow API used out of order)
"""

from typing import Optional


class ScanCheckError(Exception):
    """
    Base exception for all Scan Reconciliation Station errors.

    All application-specific exceptions inherit from this class, so a single
    except clause can catch any of them:
        try:
            engine.delete_line(scope, line_id, badge)
        except ScanCheckError as e:
            show_warning(e.get_display_message())

    Note: This does NOT inherit from built-in errors like ValueError, IOError
    to maintain clear separation between application and system errors.
    """

    def get_display_message(self) -> str:
        """Message suitable for showing to the operator."""
        return str(self)


class ValidationError(ScanCheckError):
    """
    Raised when scanned input is malformed or a required field is missing.

    Common scenarios:
    - Employee badge does not match ASP + 4 digits
    - Goods label has no material code
    - Quantity label contains no digits

    Recovery is local: the session stays on the same step, the offending
    input is cleared and the operator scans again.

    Attributes:
        field (str): Name of the input field that failed validation
    """

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class ReconciliationConflict(ScanCheckError):
    """
    Raised when a valid scan cannot be applied to its target CheckLine.

    No partial mutation happens when this is raised; totals are unchanged.

    Attributes:
        line_key (str): Composite identity of the line the scan targeted
    """

    def __init__(self, message: str, line_key: Optional[str] = None):
        super().__init__(message)
        self.line_key = line_key


class LockedLineError(ReconciliationConflict):
    """
    Raised when a scan targets a locked CheckLine.

    A locked line is frozen after sign-off. Only a manager unlock (badge
    scan, see authorization.ManagerAuthorizer) may clear the flag.
    """

    def get_display_message(self) -> str:
        return f"{self} Ask a manager to unlock the line before scanning again."


class ModeMismatchError(ReconciliationConflict):
    """
    Raised when a line is scanned in a different counting mode than the one
    it was created with.

    Attributes:
        line_mode (str): Mode the line is bound to
        scan_mode (str): Mode of the rejected scan
    """

    def __init__(self, message: str, line_key: Optional[str] = None,
                 line_mode: Optional[str] = None, scan_mode: Optional[str] = None):
        super().__init__(message, line_key)
        self.line_mode = line_mode
        self.scan_mode = scan_mode


class NonPositiveQuantityError(ReconciliationConflict):
    """Raised when a quantity-mode scan carries a quantity of zero or less."""
    pass


class PersistenceError(ScanCheckError):
    """
    Raised when the backing store fails to read or write.

    The in-memory snapshot is NOT rolled back when a write fails: scanning
    continues and the failure is surfaced as a non-blocking warning so the
    data can be reconciled or retried later.

    Attributes:
        operation (str): Store operation that failed (e.g. "put_current_state")
        scope (str): Scope or line key the operation was working on
    """

    def __init__(self, message: str, operation: Optional[str] = None,
                 scope: Optional[str] = None):
        super().__init__(message)
        self.operation = operation
        self.scope = scope

    def get_display_message(self) -> str:
        return (
            f"Could not save scan data ({self.operation or 'unknown operation'}).\n\n"
            f"Scanning can continue; the totals on screen are kept and will be "
            f"written again with the next scan.\n\nDetails: {self}"
        )


class AuthorizationError(ScanCheckError):
    """
    Raised when an unlock or delete is attempted without a valid manager badge.

    Either the code is not on the manager allow-list or it was typed by hand
    (keystroke window too slow for a hardware scanner).

    Attributes:
        badge_code (str): The normalized code that was rejected
    """

    def __init__(self, message: str, badge_code: Optional[str] = None):
        super().__init__(message)
        self.badge_code = badge_code


class InvalidTransitionError(ScanCheckError):
    """
    Raised when the scan-flow API is called out of order, e.g. complete()
    before the goods step or submit() on a finished session.

    This signals a programming error in the caller, not an operator mistake.
    """
    pass
