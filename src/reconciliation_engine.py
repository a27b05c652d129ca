"""
Accumulation & Matching Engine.

Applies validated scans to CheckLines and reconciles their running totals
against the expected quantities of a shipment manifest or PXK slip.
"""

from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Optional

from PySide6.QtCore import QObject, Signal

from async_state_writer import PersistResult
from authorization import BadgeScan, ManagerAuthorizer
from exceptions import (
    LockedLineError,
    ModeMismatchError,
    NonPositiveQuantityError,
    PersistenceError,
    ReconciliationConflict,
    ScanCheckError,
    ValidationError,
)
from identity import display_line_key, make_line_key, normalize_part, normalize_shipment_code
from logger import get_logger
from models import (
    CheckLine,
    CheckMode,
    ExpectedLine,
    HistoryEntry,
    HistoryKind,
    LineStatus,
    Number,
    TargetComparison,
)
from snapshot_store import SnapshotStore, combine_results

logger = get_logger(__name__)

CHECK_RESULT_OK = "OK"
CHECK_RESULT_MISMATCH = "Sai"


@dataclass
class ScanResult:
    """
    Outcome of apply_scan.

    Attributes:
        accepted: True if the scan changed the line's totals
        status: One of "SCAN_OK", "LINE_FULFILLED", "LINE_LOCKED",
                "MODE_MISMATCH", "INVALID_QUANTITY", "NOT_IN_MANIFEST",
                "INVALID_INPUT"
        message: Operator-facing message
        line: The line after the scan (or unchanged line on rejection)
        line_status: Classification of the line after the scan
        comparison: Scanned total vs. expected total
        created: True if the scan created the line
        persist: Outcome of the store writes, None if nothing was written
        error: The rejection, for callers that want the exception type
    """
    accepted: bool
    status: str
    message: str
    line: Optional[CheckLine] = None
    line_status: Optional[LineStatus] = None
    comparison: Optional[TargetComparison] = None
    created: bool = False
    persist: Optional[PersistResult] = None
    error: Optional[ScanCheckError] = None


@dataclass(frozen=True)
class ScopeSummary:
    """Line counts of one scope for progress display and report headers."""
    scope: str
    total_lines: int
    fulfilled: int
    pending: int
    needs_acknowledgement: int
    ad_hoc: int
    locked: int
    scanned_quantity: Number
    scanned_cartons: int

    @property
    def completion_rate(self) -> float:
        """Percentage of fulfilled lines, 0.0 for an empty scope."""
        if not self.total_lines:
            return 0.0
        return round(self.fulfilled / self.total_lines * 100, 1)


class ReconciliationEngine(QObject):
    """
    Finds or creates the CheckLine of each scan and applies its delta.

    The engine owns no state of its own beyond the loaded manifests: lines
    live in the SnapshotStore, so a second engine over the same store sees
    the same totals. Changes are announced with Qt signals.

    Attributes:
        line_updated (Signal): Emitted after an accepted scan with the line
                               key, scanned quantity and scanned cartons.
        persistence_warning (Signal): Emitted with an operator message when
                                      a store write fails. Scanning goes on.
        store (SnapshotStore): Lines and history
        authorizer (ManagerAuthorizer): Checks manager badges for unlock/delete
        allow_ad_hoc (bool): Accept scans with no manifest entry
    """
    line_updated = Signal(str, float, int)  # line_key, scanned_quantity, scanned_cartons
    persistence_warning = Signal(str)

    def __init__(self, store: SnapshotStore, authorizer: Optional[ManagerAuthorizer] = None,
                 allow_ad_hoc: bool = True):
        super().__init__()
        self.store = store
        self.authorizer = authorizer or ManagerAuthorizer()
        self.allow_ad_hoc = allow_ad_hoc
        self._expected: Dict[str, Dict[str, ExpectedLine]] = {}

        self.store.writer.set_error_handler(self._on_persistence_error)

    def _on_persistence_error(self, error: BaseException) -> None:
        if isinstance(error, PersistenceError):
            message = error.get_display_message()
        else:
            message = f"Could not save scan data: {error}"
        self.persistence_warning.emit(message)

    # ------------------------------------------------------------------
    # Manifest
    # ------------------------------------------------------------------

    def load_manifest(self, scope: str, expected_lines: Iterable[ExpectedLine]) -> int:
        """
        Register the expected lines of a scope and pre-create their CheckLines.

        Lines that already exist (earlier session, ad-hoc scan) get their
        expected totals filled in and lose the ad-hoc flag; their scanned
        totals are kept. Loading a manifest again replaces the previous one,
        so a corrected manifest updates the expected totals.

        Args:
            scope: Shipment or facility scope
            expected_lines: Lines from the manifest source

        Returns:
            Number of CheckLines created
        """
        expected_by_key: Dict[str, ExpectedLine] = {}
        now = self.store.now()
        created = 0
        changed: List[CheckLine] = []

        # Lines another station created since this scope was first read
        self._refresh(scope)

        for expected in expected_lines:
            key = expected.line_key
            if key in expected_by_key:
                logger.warning(f"Duplicate manifest line {display_line_key(key)}; keeping the first")
                continue
            expected_by_key[key] = expected

            line = self._find_line(scope, key)
            if line is None:
                line = CheckLine(
                    line_id=self.store.next_line_id(scope, offset=created),
                    shipment_code=expected.shipment_code,
                    material_code=expected.material_code,
                    pallet_or_po_key=expected.po_or_pallet_key,
                    expected_quantity=expected.expected_quantity,
                    expected_cartons=expected.expected_cartons,
                    created_at=now,
                    updated_at=now,
                )
                created += 1
            else:
                line = replace(
                    line,
                    expected_quantity=expected.expected_quantity,
                    expected_cartons=expected.expected_cartons,
                    is_ad_hoc=False,
                    updated_at=now,
                )
            changed.append(line)

        self._expected[scope] = expected_by_key
        if changed:
            self.store.upsert_lines(scope, changed)

        logger.info(f"Manifest loaded for scope {scope}: {len(expected_by_key)} expected lines, "
                    f"{created} created")
        return created

    def expected_for(self, scope: str, line_key: str) -> Optional[ExpectedLine]:
        return self._expected.get(scope, {}).get(line_key)

    def has_manifest(self, scope: str) -> bool:
        return bool(self._expected.get(scope))

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def _find_line(self, scope: str, line_key: str) -> Optional[CheckLine]:
        """
        Single line for a key, coalescing legacy duplicates.

        Older data can hold several records for one key (concurrent first
        scans from two terminals). They are merged into the record with the
        lowest id, totals summed, and the others removed.
        """
        matches = self.store.find_lines_by_key(scope, line_key)
        if not matches:
            return None
        if len(matches) == 1:
            return matches[0]

        keeper, *redundant = matches
        merged = replace(
            keeper,
            scanned_quantity=sum(line.scanned_quantity for line in matches),
            scanned_cartons=sum(line.scanned_cartons for line in matches),
            expected_quantity=next((other.expected_quantity for other in matches
                                    if other.expected_quantity is not None), None),
            expected_cartons=next((other.expected_cartons for other in matches
                                   if other.expected_cartons is not None), None),
            mode=next((other.mode for other in matches if other.mode is not None), None),
            locked=any(line.locked for line in matches),
            is_ad_hoc=all(line.is_ad_hoc for line in matches),
            acknowledged=any(line.acknowledged for line in matches),
        )
        for line in redundant:
            self.store.remove_line(scope, line.line_id)
        self.store.upsert_line(scope, merged)

        logger.warning(f"Coalesced {len(matches)} records of {display_line_key(line_key)} into "
                       f"{merged.line_id} (removed {', '.join(other.line_id for other in redundant)})")
        return merged

    def _refresh(self, scope: str) -> None:
        """Pick up lines of other stations; an unreachable store leaves the cache as is."""
        try:
            self.store.refresh(scope)
        except PersistenceError as e:
            logger.warning(f"Could not refresh scope {scope} from the store: {e}")
            self._on_persistence_error(e)

    def get_line(self, scope: str, line_id: str) -> CheckLine:
        line = self.store.get_line(scope, line_id)
        if line is None:
            raise ValidationError(f"Line {line_id} does not exist in {scope}.", field="line_id")
        return line

    def lines(self, scope: str) -> List[CheckLine]:
        return self.store.load_snapshot(scope)

    # ------------------------------------------------------------------
    # Scanning
    # ------------------------------------------------------------------

    def apply_scan(
        self,
        scope: str,
        material: str,
        po_or_pallet: Optional[str],
        mode,
        delta_quantity: Optional[Number],
        operator_id: Optional[str],
        pallet: Optional[str] = None,
        customer_code: Optional[str] = None,
        shipment_code: Optional[str] = None,
        imd: Optional[str] = None,
        allow_ad_hoc: Optional[bool] = None,
    ) -> ScanResult:
        """
        Apply one goods scan to its CheckLine.

        The line is identified by (shipment, material, PO). When the label
        carries no PO, a manifest line listed without a PO is matched by
        material alone; otherwise the session's pallet completes the key.
        Re-scanning an
        identical label always counts again: the engine cannot tell a second
        read of one carton from a second carton with the same label.

        Rejections (locked line, mode mismatch, quantity <= 0, not in the
        manifest when ad-hoc lines are disabled) leave every total unchanged
        and are returned as a ScanResult, not raised.

        Args:
            scope: Shipment or facility scope of the session
            material: Material code (already translated from customer code)
            po_or_pallet: PO from the label, empty if none
            mode: CheckMode or its name ("carton", "quantity", "pn", "pn-qty")
            delta_quantity: Quantity on the label; ignored in carton mode
            operator_id: Employee code of the scanning operator
            pallet: Pallet or receiving line of the session
            customer_code: Customer code as scanned, if the label used one
            shipment_code: Shipment of the line when the scope is a facility
            imd: Import date / batch marker from stock-check labels
            allow_ad_hoc: Overrides the engine setting for this scan

        Returns:
            ScanResult
        """
        try:
            scan_mode = CheckMode.parse(mode)
        except ValueError as e:
            return self._rejected("INVALID_INPUT", ValidationError(str(e), field="mode"))

        material_code = normalize_part(material)
        if not material_code:
            return self._rejected("INVALID_INPUT",
                                  ValidationError("Material code is empty.", field="material"))

        shipment = normalize_shipment_code(shipment_code if shipment_code is not None else scope)
        key_part = normalize_part(po_or_pallet)
        if not key_part and self.expected_for(scope, make_line_key(shipment, material_code, '')) is None:
            key_part = normalize_part(pallet)
        line_key = make_line_key(shipment, material_code, key_part)

        # === STEP 1: Find or create the line ===
        line = self._find_line(scope, line_key)
        if line is None:
            # Another station may have created it since the scope was read
            self._refresh(scope)
            line = self._find_line(scope, line_key)
        created = line is None
        if created:
            expected = self.expected_for(scope, line_key)
            ad_hoc_allowed = self.allow_ad_hoc if allow_ad_hoc is None else allow_ad_hoc
            if expected is None and not ad_hoc_allowed:
                return self._rejected("NOT_IN_MANIFEST", ReconciliationConflict(
                    f"{display_line_key(line_key)} is not on the delivery list for {scope}.",
                    line_key=line_key))

            now = self.store.now()
            line = CheckLine(
                line_id=self.store.next_line_id(scope),
                shipment_code=shipment,
                material_code=material_code,
                pallet_or_po_key=key_part,
                expected_quantity=expected.expected_quantity if expected else None,
                expected_cartons=expected.expected_cartons if expected else None,
                is_ad_hoc=expected is None,
                created_at=now,
            )

        # === STEP 2: Validate against the line's state ===
        try:
            self._check_scan_allowed(line, scan_mode, delta_quantity)
        except ReconciliationConflict as e:
            return self._rejected(self._status_for(e), e, line)

        # === STEP 3: Apply the delta ===
        now = self.store.now()
        if scan_mode == CheckMode.CARTON:
            added_quantity, added_cartons = 0, 1
        else:
            added_quantity, added_cartons = delta_quantity, 0

        updated = replace(
            line,
            mode=scan_mode,
            scanned_quantity=line.scanned_quantity + added_quantity,
            scanned_cartons=line.scanned_cartons + added_cartons,
            last_scan_operator_id=operator_id,
            last_scan_timestamp=now,
            pallet=normalize_part(pallet) or line.pallet,
            customer_code=normalize_part(customer_code) or line.customer_code,
            imd=str(imd) if imd else line.imd,
            updated_at=now,
        )

        entry = HistoryEntry(
            operator_id=operator_id,
            delta_quantity=added_quantity,
            delta_cartons=added_cartons,
            timestamp=now,
            kind=HistoryKind.SCAN,
            line_key=line_key,
            scope=scope,
            context={
                'line_id': updated.line_id,
                'mode': scan_mode.value,
                'pallet': updated.pallet,
                'customer_code': updated.customer_code,
                'imd': updated.imd,
                'scanned_quantity': updated.scanned_quantity,
                'scanned_cartons': updated.scanned_cartons,
            },
        )

        # === STEP 4: Persist (cache first, store behind) ===
        persist = self.store.apply_delta(scope, updated, entry)

        self.line_updated.emit(line_key, float(updated.scanned_quantity), updated.scanned_cartons)

        line_status = self.classify(updated)
        comparison = self.compare_to_target(updated)
        status = "LINE_FULFILLED" if line_status == LineStatus.FULFILLED else "SCAN_OK"

        logger.info(f"Scan applied: {display_line_key(line_key)} "
                    f"+{added_quantity} qty +{added_cartons} ctn -> "
                    f"{updated.scanned_quantity} qty / {updated.scanned_cartons} ctn ({line_status.value})")

        return ScanResult(
            accepted=True,
            status=status,
            message=self._describe(updated, line_status),
            line=updated,
            line_status=line_status,
            comparison=comparison,
            created=created,
            persist=persist,
        )

    def _check_scan_allowed(self, line: CheckLine, scan_mode: CheckMode,
                            delta_quantity: Optional[Number]) -> None:
        key = line.line_key
        if line.locked:
            raise LockedLineError(f"{display_line_key(key)} is locked and cannot be updated.",
                                  line_key=key)

        if line.mode is not None and line.mode != scan_mode:
            raise ModeMismatchError(
                f"{display_line_key(key)} is counted by {line.mode.value}; "
                f"a {scan_mode.value} scan cannot be added to it.",
                line_key=key, line_mode=line.mode.value, scan_mode=scan_mode.value)

        if scan_mode == CheckMode.QUANTITY:
            if delta_quantity is None or isinstance(delta_quantity, bool) or delta_quantity <= 0:
                raise NonPositiveQuantityError(
                    f"Quantity must be positive (got {delta_quantity}).", line_key=key)

    @staticmethod
    def _status_for(error: ReconciliationConflict) -> str:
        if isinstance(error, LockedLineError):
            return "LINE_LOCKED"
        if isinstance(error, ModeMismatchError):
            return "MODE_MISMATCH"
        if isinstance(error, NonPositiveQuantityError):
            return "INVALID_QUANTITY"
        return "NOT_IN_MANIFEST"

    @staticmethod
    def _rejected(status: str, error: ScanCheckError, line: Optional[CheckLine] = None) -> ScanResult:
        logger.info(f"Scan rejected ({status}): {error}")
        return ScanResult(accepted=False, status=status, message=error.get_display_message(),
                          line=line, error=error)

    def _describe(self, line: CheckLine, line_status: LineStatus) -> str:
        mode = self._effective_mode(line)
        scanned = line.scanned_cartons if mode == CheckMode.CARTON else line.scanned_quantity
        target = self._target(line)
        unit = "ctn" if mode == CheckMode.CARTON else "pcs"
        progress = f"{scanned}/{target}" if target is not None else f"{scanned}"
        return f"{line.material_code} {line.pallet_or_po_key}: {progress} {unit} ({line_status.value})".strip()

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    @staticmethod
    def _effective_mode(line: CheckLine) -> CheckMode:
        """A line's mode, or the mode its manifest figures imply before the first scan."""
        if line.mode is not None:
            return line.mode
        return CheckMode.QUANTITY if line.expected_quantity is not None else CheckMode.CARTON

    def _target(self, line: CheckLine) -> Optional[Number]:
        if self._effective_mode(line) == CheckMode.CARTON:
            return line.expected_cartons
        return line.expected_quantity

    def _scanned(self, line: CheckLine) -> Number:
        if self._effective_mode(line) == CheckMode.CARTON:
            return line.scanned_cartons
        return line.scanned_quantity

    def classify(self, line: CheckLine) -> LineStatus:
        """
        Classify a line as fulfilled, pending or needing acknowledgement.

        A line with an expected total is fulfilled once the scanned total for
        its mode reaches it. Ad-hoc lines, and lines whose manifest entry has
        no figure for the line's mode, are never fulfilled automatically: the
        operator has to acknowledge them.
        """
        target = self._target(line)
        if line.is_ad_hoc or target is None:
            return LineStatus.FULFILLED if line.acknowledged else LineStatus.NEEDS_ACKNOWLEDGEMENT
        return LineStatus.FULFILLED if self._scanned(line) >= target else LineStatus.PENDING

    def compare_to_target(self, line: CheckLine) -> TargetComparison:
        target = self._target(line)
        if target is None:
            return TargetComparison.UNKNOWN
        scanned = self._scanned(line)
        if scanned < target:
            return TargetComparison.UNDER
        if scanned > target:
            return TargetComparison.OVER
        return TargetComparison.AT

    def check_result(self, line: CheckLine) -> str:
        """Return "OK" when the scanned total equals the expected total exactly, else "Sai"."""
        if self.compare_to_target(line) == TargetComparison.AT:
            return CHECK_RESULT_OK
        return CHECK_RESULT_MISMATCH

    # ------------------------------------------------------------------
    # Line administration
    # ------------------------------------------------------------------

    def _record(self, scope: str, line: CheckLine, kind: HistoryKind,
                operator_id: Optional[str]) -> PersistResult:
        entry = HistoryEntry(
            operator_id=operator_id,
            delta_quantity=0,
            delta_cartons=0,
            timestamp=self.store.now(),
            kind=kind,
            line_key=line.line_key,
            scope=scope,
            context={'line_id': line.line_id,
                     'scanned_quantity': line.scanned_quantity,
                     'scanned_cartons': line.scanned_cartons},
        )
        return self.store.append_history(entry)

    def lock_line(self, scope: str, line_id: str, operator_id: Optional[str] = None) -> PersistResult:
        """Freeze a line against further scans (sign-off)."""
        line = replace(self.get_line(scope, line_id), locked=True, updated_at=self.store.now())
        result = combine_results(self.store.upsert_line(scope, line),
                                 self._record(scope, line, HistoryKind.LOCK, operator_id))
        logger.info(f"Line {line_id} ({display_line_key(line.line_key)}) locked by {operator_id}")
        return result

    def unlock_line(self, scope: str, line_id: str, badge_scan: Optional[BadgeScan]) -> PersistResult:
        """
        Clear a line's lock. Requires a manager badge scan.

        Raises:
            AuthorizationError: Badge missing, not a manager, or typed by hand
            ValidationError: Line does not exist
        """
        line = self.get_line(scope, line_id)
        manager = self.authorizer.verify(badge_scan)
        line = replace(line, locked=False, updated_at=self.store.now())
        result = combine_results(self.store.upsert_line(scope, line),
                                 self._record(scope, line, HistoryKind.UNLOCK, manager))
        logger.info(f"Line {line_id} unlocked by manager {manager}")
        return result

    def delete_line(self, scope: str, line_id: str, badge_scan: Optional[BadgeScan] = None,
                    operator_id: Optional[str] = None) -> PersistResult:
        """
        Remove a line from the snapshot. History is kept, with a delete marker.

        Deleting a locked line requires a manager badge scan.

        Raises:
            AuthorizationError: Line is locked and the badge does not verify
            ValidationError: Line does not exist
        """
        line = self.get_line(scope, line_id)
        actor = operator_id
        if line.locked:
            actor = self.authorizer.verify(badge_scan)

        result = combine_results(self.store.remove_line(scope, line_id),
                                 self._record(scope, line, HistoryKind.DELETE, actor))
        logger.info(f"Line {line_id} ({display_line_key(line.line_key)}) deleted by {actor}")
        return result

    def acknowledge_line(self, scope: str, line_id: str, operator_id: Optional[str] = None) -> PersistResult:
        """Accept a line without a usable expected total as complete."""
        line = replace(self.get_line(scope, line_id), acknowledged=True, updated_at=self.store.now())
        result = combine_results(self.store.upsert_line(scope, line),
                                 self._record(scope, line, HistoryKind.ACKNOWLEDGE, operator_id))
        logger.info(f"Line {line_id} acknowledged by {operator_id}")
        return result

    def reset_scope(self, scope: str, operator_id: Optional[str] = None) -> PersistResult:
        """
        Clear all lines of a scope (periodic stock-check reset). History is
        untouched; the loaded manifest is forgotten too.
        """
        self._expected.pop(scope, None)
        return self.store.reset(scope, operator_id)

    def scope_summary(self, scope: str) -> ScopeSummary:
        lines = self.lines(scope)
        statuses = [self.classify(line) for line in lines]
        return ScopeSummary(
            scope=scope,
            total_lines=len(lines),
            fulfilled=statuses.count(LineStatus.FULFILLED),
            pending=statuses.count(LineStatus.PENDING),
            needs_acknowledgement=statuses.count(LineStatus.NEEDS_ACKNOWLEDGEMENT),
            ad_hoc=sum(1 for line in lines if line.is_ad_hoc),
            locked=sum(1 for line in lines if line.locked),
            scanned_quantity=sum(line.scanned_quantity for line in lines),
            scanned_cartons=sum(line.scanned_cartons for line in lines),
        )
