"""
Scan Station - one operator terminal.

Wires the scan flow to the engine: raw input goes into the ScanSession, the
manifest for a scope is loaded once its shipment (or facility) is known,
complete goods scans are applied to the ReconciliationEngine, and only the
scans the engine accepted are recorded in the session result.
"""
from dataclasses import dataclass, field
from typing import List, Optional

from employee_directory import EmployeeDirectory
from exceptions import PersistenceError
from logger import (
    clear_logging_context,
    get_logger,
    set_operator_context,
    set_scope_context,
    set_session_context,
)
from manifest_loader import ManifestSource
from reconciliation_engine import ReconciliationEngine, ScanResult
from scan_flow import FlowType, ScanSession, SessionResult, Step

logger = get_logger(__name__)


@dataclass
class StationOutcome:
    """
    What the terminal shows after one input.

    Attributes:
        accepted: False if the input was rejected (by the flow or the engine)
        message: Main operator message
        step: Session step after the input
        prompt: What to scan next
        scan_result: Engine result when the input completed a goods scan
        warnings: Non-blocking warnings raised while handling the input
    """
    accepted: bool
    message: str
    step: Step
    prompt: str
    scan_result: Optional[ScanResult] = None
    warnings: List[str] = field(default_factory=list)


class ScanStation:
    """
    Drives scan sessions against one engine.

    Args:
        engine: Reconciliation engine over the station's store
        manifest_source: Expected lines per scope; None runs without a
                         manifest (every line is ad hoc)
        directory: Employee directory for display names
        customer_map: Customer code -> material code mapping for labels
    """

    def __init__(self, engine: ReconciliationEngine, manifest_source: Optional[ManifestSource] = None,
                 directory: Optional[EmployeeDirectory] = None, customer_map=None):
        self.engine = engine
        self.manifest_source = manifest_source
        self.directory = directory or EmployeeDirectory()
        self.customer_map = customer_map or {}
        self.session: Optional[ScanSession] = None
        self._loaded_scopes = set()
        self._warnings: List[str] = []

        self.engine.persistence_warning.connect(self._on_persistence_warning)

    def _on_persistence_warning(self, message: str) -> None:
        logger.warning(f"Persistence warning: {message}")
        self._warnings.append(message)

    def _take_warnings(self) -> List[str]:
        warnings, self._warnings = self._warnings, []
        return warnings

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def start_session(self, flow, mode=None, facility: Optional[str] = None) -> ScanSession:
        """Start a new session, abandoning any unfinished one."""
        if self.session is not None and not self.session.state.is_terminal:
            logger.info(f"Abandoning unfinished session {self.session.session_id}")
            self.session.cancel()

        self.session = ScanSession(flow, mode=mode, facility=facility, customer_map=self.customer_map)
        set_session_context(self.session.session_id)
        set_operator_context(None)
        set_scope_context(self.session.context.scope)

        if self.session.flow == FlowType.STOCK_CHECK:
            self._ensure_manifest(self.session.context.scope)

        logger.info(f"Session {self.session.session_id} started ({self.session.flow.value})")
        return self.session

    def _require_session(self) -> ScanSession:
        if self.session is None:
            raise RuntimeError("No scan session started")
        return self.session

    def _ensure_manifest(self, scope: Optional[str]) -> Optional[str]:
        """Load the manifest of a scope once. Returns a warning message, if any."""
        if not scope or scope in self._loaded_scopes or self.manifest_source is None:
            return None

        expected = self.manifest_source.expected_lines_for(scope)
        self._loaded_scopes.add(scope)
        if not expected:
            logger.warning(f"No manifest lines for scope {scope}")
            return f"No expected lines found for {scope}."

        self.engine.load_manifest(scope, expected)
        return None

    def submit(self, raw) -> StationOutcome:
        """
        Handle one scanned input.

        Raises:
            InvalidTransitionError: If the session is already complete or cancelled
        """
        session = self._require_session()
        previous_step = session.step
        outcome = session.submit(raw)
        warnings: List[str] = []

        if not outcome.accepted:
            return StationOutcome(False, outcome.message, outcome.state.step, outcome.state.prompt)

        message = outcome.message
        context = outcome.state.context

        if previous_step == Step.AWAITING_OPERATOR:
            set_operator_context(context.operator_id)
            self.directory.remember_badge_name(context.operator_id, context.operator_name_hint)
            message = f"Operator {self.directory.lookup_name(context.operator_id)}. {outcome.message}"

        elif previous_step == Step.AWAITING_SHIPMENT:
            set_scope_context(context.scope)
            try:
                warning = self._ensure_manifest(context.scope)
            except PersistenceError as e:
                logger.error(f"Could not load lines for {context.scope}: {e}", exc_info=True)
                warning = e.get_display_message()
            if warning:
                warnings.append(warning)

        scan_result = None
        if outcome.operation is not None:
            scan_result = self._apply(session, outcome.operation)
            message = scan_result.message

        warnings.extend(self._take_warnings())
        accepted = scan_result.accepted if scan_result is not None else True
        return StationOutcome(accepted, message, outcome.state.step, outcome.state.prompt,
                              scan_result=scan_result, warnings=warnings)

    def _apply(self, session: ScanSession, operation) -> ScanResult:
        try:
            result = self.engine.apply_scan(
                scope=operation.scope,
                material=operation.material_code,
                po_or_pallet=operation.po_or_pallet,
                mode=operation.mode,
                delta_quantity=operation.delta_quantity,
                operator_id=operation.operator_id,
                pallet=operation.pallet,
                customer_code=operation.customer_code,
                shipment_code=operation.shipment_code,
                imd=operation.imd,
                allow_ad_hoc=False if session.flow == FlowType.DELIVERY else None,
            )
        except PersistenceError as e:
            logger.error(f"Scan could not be applied: {e}", exc_info=True)
            return ScanResult(accepted=False, status="PERSISTENCE_ERROR",
                              message=e.get_display_message(), error=e)

        if result.accepted:
            session.record(operation)
        return result

    def complete(self) -> SessionResult:
        """
        Finish the session and wait for pending writes.

        Raises:
            InvalidTransitionError: Unless the session is waiting for a goods label
        """
        session = self._require_session()
        result = session.complete()
        self.engine.store.flush()
        clear_logging_context()
        return result

    def cancel(self) -> None:
        session = self._require_session()
        session.cancel()
        clear_logging_context()
