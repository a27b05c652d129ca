"""
Data model for scan reconciliation.

CheckLine is the persisted per-(shipment, material, pallet/PO) record whose
running totals are reconciled against an ExpectedLine from the manifest.
HistoryEntry is the append-only audit record written for every applied scan.
"""
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Union

from identity import make_line_key, normalize_part, normalize_shipment_code

Number = Union[int, float]


class CheckMode(str, Enum):
    """Counting policy of a CheckLine: one scan = one carton, or one scan = a quantity."""
    CARTON = 'carton'
    QUANTITY = 'quantity'

    @classmethod
    def parse(cls, value) -> 'CheckMode':
        """
        Parse a mode from config, CLI or stored records.

        Accepts the canonical names and the legacy "pn" (part number only,
        carton counting) / "pn-qty" (part number + quantity) values.
        """
        if isinstance(value, cls):
            return value
        text = str(value or '').strip().lower()
        if text in ('carton', 'pn', 'c'):
            return cls.CARTON
        if text in ('quantity', 'qty', 'pn-qty', 'q'):
            return cls.QUANTITY
        raise ValueError(f"Unknown check mode: {value!r}")


class LineStatus(str, Enum):
    FULFILLED = 'fulfilled'
    PENDING = 'pending'
    NEEDS_ACKNOWLEDGEMENT = 'needs-acknowledgement'


class TargetComparison(str, Enum):
    UNDER = 'under'
    AT = 'at'
    OVER = 'over'
    UNKNOWN = 'unknown'


class HistoryKind(str, Enum):
    SCAN = 'scan'
    RESET = 'reset'
    DELETE = 'delete'
    LOCK = 'lock'
    UNLOCK = 'unlock'
    ACKNOWLEDGE = 'acknowledge'


def _parse_dt(value) -> Optional[datetime]:
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value)
    if isinstance(value, dict) and 'seconds' in value:
        # Firestore timestamp exported as {"seconds": ..., "nanoseconds": ...}
        return datetime.fromtimestamp(value['seconds'])
    return datetime.fromisoformat(str(value))


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _number(value, default: Number = 0) -> Number:
    if value is None or value == '':
        return default
    number = float(value)
    return int(number) if number.is_integer() else number


@dataclass
class ExpectedLine:
    """
    One line of a shipment manifest or PXK delivery slip.

    Attributes:
        shipment_code: Normalized shipment or LSX code
        material_code: Normalized material code
        po_or_pallet_key: Normalized PO number (or pallet when the manifest has no PO)
        expected_quantity: Quantity to ship, None if the manifest has none
        expected_cartons: Carton count to ship, None if the manifest has none
    """
    shipment_code: str
    material_code: str
    po_or_pallet_key: str = ''
    expected_quantity: Optional[Number] = None
    expected_cartons: Optional[Number] = None

    def __post_init__(self):
        self.shipment_code = normalize_shipment_code(self.shipment_code)
        self.material_code = normalize_part(self.material_code)
        self.po_or_pallet_key = normalize_part(self.po_or_pallet_key)

    @property
    def line_key(self) -> str:
        return make_line_key(self.shipment_code, self.material_code, self.po_or_pallet_key)


@dataclass
class CheckLine:
    """
    A persisted (shipment, material, pallet/PO) line under reconciliation.

    Attributes:
        line_id: Record identifier within the scope (e.g. "CHK007")
        shipment_code: Normalized shipment / LSX / facility code
        material_code: Normalized material code
        pallet_or_po_key: Normalized PO (or pallet) completing the identity
        mode: Counting mode, bound on the first scan and fixed afterwards
        scanned_quantity: Running quantity total (quantity mode)
        scanned_cartons: Running carton count (carton mode)
        expected_quantity: Quantity from the manifest, None if unknown
        expected_cartons: Carton count from the manifest, None if unknown
        last_scan_operator_id: Employee code of the last scan
        last_scan_timestamp: Time of the last scan
        locked: Frozen against scan-driven mutation
        is_ad_hoc: Created by a scan with no manifest entry
        acknowledged: Operator accepted an ad-hoc line as complete
        pallet: Pallet or receiving line scanned in the session
        customer_code: Customer part code from the last label, if any
        imd: Import date / batch marker (stock check)
    """
    line_id: str
    shipment_code: str
    material_code: str
    pallet_or_po_key: str = ''
    mode: Optional[CheckMode] = None
    scanned_quantity: Number = 0
    scanned_cartons: int = 0
    expected_quantity: Optional[Number] = None
    expected_cartons: Optional[Number] = None
    last_scan_operator_id: Optional[str] = None
    last_scan_timestamp: Optional[datetime] = None
    locked: bool = False
    is_ad_hoc: bool = False
    acknowledged: bool = False
    pallet: str = ''
    customer_code: str = ''
    imd: str = ''
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def line_key(self) -> str:
        return make_line_key(self.shipment_code, self.material_code, self.pallet_or_po_key)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary with datetimes as ISO strings and mode as its value."""
        data = asdict(self)
        data['mode'] = self.mode.value if self.mode else None
        data['last_scan_timestamp'] = _iso(self.last_scan_timestamp)
        data['created_at'] = _iso(self.created_at)
        data['updated_at'] = _iso(self.updated_at)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any], line_id: Optional[str] = None) -> 'CheckLine':
        """
        Build a CheckLine from a stored record.

        Records written by the earlier web client are accepted too: they use
        "shipment", "quantity", "carton", "checkMode", "checkId",
        "isChecked" and "poNumber" instead of the current field names.
        """
        mode_value = data.get('mode', data.get('checkMode'))
        return cls(
            line_id=str(data.get('line_id') or data.get('checkId') or line_id or ''),
            shipment_code=normalize_shipment_code(data.get('shipment_code', data.get('shipment', ''))),
            material_code=normalize_part(data.get('material_code', data.get('materialCode', ''))),
            pallet_or_po_key=normalize_part(
                data.get('pallet_or_po_key', data.get('poNumber', data.get('po', '')))
            ),
            mode=CheckMode.parse(mode_value) if mode_value else None,
            scanned_quantity=_number(data.get('scanned_quantity', data.get('quantity'))),
            scanned_cartons=int(_number(data.get('scanned_cartons', data.get('carton')))),
            expected_quantity=_number(data.get('expected_quantity', data.get('shipmentQuantity')), None),
            expected_cartons=_number(data.get('expected_cartons', data.get('shipmentCarton')), None),
            last_scan_operator_id=data.get('last_scan_operator_id'),
            last_scan_timestamp=_parse_dt(data.get('last_scan_timestamp')),
            locked=bool(data.get('locked', data.get('isChecked', False))),
            is_ad_hoc=bool(data.get('is_ad_hoc', False)),
            acknowledged=bool(data.get('acknowledged', False)),
            pallet=normalize_part(data.get('pallet', '')),
            customer_code=normalize_part(data.get('customer_code', data.get('customerCode', ''))),
            imd=str(data.get('imd', '') or ''),
            created_at=_parse_dt(data.get('created_at', data.get('createdAt'))),
            updated_at=_parse_dt(data.get('updated_at', data.get('updatedAt'))),
        )


@dataclass(frozen=True)
class HistoryEntry:
    """
    Append-only audit record. Never mutated once written.

    Attributes:
        operator_id: Employee code that caused the entry
        delta_quantity: Quantity added by this scan (not the running total)
        delta_cartons: Cartons added by this scan
        timestamp: When the entry was recorded
        kind: What happened (scan, reset, delete, lock, unlock, acknowledge)
        line_key: Composite identity of the line
        scope: Shipment / facility scope of the line
        context: Snapshot-of-stock fields at scan time (totals, pallet, mode)
    """
    operator_id: Optional[str]
    delta_quantity: Number
    delta_cartons: int
    timestamp: datetime
    kind: HistoryKind = HistoryKind.SCAN
    line_key: str = ''
    scope: str = ''
    context: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'operator_id': self.operator_id,
            'delta_quantity': self.delta_quantity,
            'delta_cartons': self.delta_cartons,
            'timestamp': self.timestamp.isoformat(),
            'kind': self.kind.value,
            'line_key': self.line_key,
            'scope': self.scope,
            'context': dict(self.context),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'HistoryEntry':
        return cls(
            operator_id=data.get('operator_id'),
            delta_quantity=_number(data.get('delta_quantity')),
            delta_cartons=int(_number(data.get('delta_cartons'))),
            timestamp=_parse_dt(data.get('timestamp')) or datetime.now(),
            kind=HistoryKind(data.get('kind', HistoryKind.SCAN.value)),
            line_key=data.get('line_key', ''),
            scope=data.get('scope', ''),
            context=dict(data.get('context') or {}),
        )
