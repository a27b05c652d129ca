"""
Identity Resolver - turns raw scanner text into canonical keys.

Every value that enters the reconciliation core passes through here first:
employee badges, shipment/LSX codes, pallet codes and goods labels. All
functions are pure and never raise for malformed input. Malformed scans are
frequent on the warehouse floor (partial reads, wrong label, manual typing),
so failures come back as result objects with `valid=False` and an operator
message, letting the scan flow re-prompt without losing the session.

Supported goods label formats:
    MAT01|PO1|10          material | PO | quantity
    MAT01|PO1|10|150326   material | PO | quantity | import date (stock check)
    MAT01|PO1             material | PO (carton mode, or quantity scanned next)
    300+CUSTCODE          quantity + customer code ("PCS" marker removed)
    CUSTCODE              bare material or customer code
"""

import re
from dataclasses import dataclass
from typing import Dict, Optional, Tuple, Union

Number = Union[int, float]

# ASCII unit separator: never produced by a barcode scanner, so joining the
# parts with it cannot make two different identities collide.
KEY_DELIMITER = "\x1f"

EMPLOYEE_ID_LENGTH = 7
EMPLOYEE_ID_PATTERN = re.compile(r'^ASP\d{4}$')

# LSX (work order) numbering: 4 digits, a separator, then a sequence number
LSX_PATTERN = re.compile(r'(\d{4}[/\-.]\d+)')

# Badge scanners configured with a Vietnamese keyboard layout turn "AS" into "Á"
_MISKEYED_PREFIX = re.compile(r'ÁP', re.IGNORECASE)

_PCS_MARKERS = (re.compile(r'P\+C\+S', re.IGNORECASE), re.compile(r'PCS', re.IGNORECASE))


@dataclass(frozen=True)
class EmployeeIdResult:
    """
    Result of normalizing an employee badge scan.

    Attributes:
        valid: True if the badge matched ASP + 4 digits
        id: Canonical employee code (also filled on failure, for display)
        error: Operator message when invalid
        name_hint: Name embedded in a badge QR payload, if any
    """
    valid: bool
    id: str
    error: Optional[str] = None
    name_hint: Optional[str] = None


@dataclass(frozen=True)
class GoodsScanResult:
    """
    Result of parsing a goods label.

    Attributes:
        valid: True if a material code could be extracted
        material_code: Canonical material code (customer codes already mapped)
        po_or_pallet: PO number from the label, empty if the label has none
        quantity: Quantity carried by the label, None if it carries none
        customer_code: Customer code as scanned, when the label used one
        imd: Import date / batch marker (stock-check labels)
        error: Operator message when invalid
    """
    valid: bool
    material_code: str = ''
    po_or_pallet: str = ''
    quantity: Optional[Number] = None
    customer_code: str = ''
    imd: str = ''
    error: Optional[str] = None


def normalize_part(value) -> str:
    """Uppercase and trim a single identity component."""
    return str(value if value is not None else '').strip().upper()


def normalize_employee_id(raw) -> EmployeeIdResult:
    """
    Normalize a scanned employee badge.

    Takes the first 7 characters of the trimmed input, uppercased, and checks
    them against ASP + 4 digits. Badge QR codes carry more data after the
    code ("ASP1752-NGUYEN VAN A-Kho-19/06/2023"); the name part is returned
    as a hint for display.

    Examples:
        "ASP1234"  -> valid, "ASP1234"
        "asp1234"  -> valid, "ASP1234"
        "ASP123"   -> invalid
        "XYZ1234"  -> invalid

    Args:
        raw: Raw scanner text

    Returns:
        EmployeeIdResult, never raises
    """
    text = str(raw if raw is not None else '').strip()
    if not text:
        return EmployeeIdResult(valid=False, id='', error="Employee code is empty. Scan your badge.")

    text = _MISKEYED_PREFIX.sub('ASP', text)
    candidate = text[:EMPLOYEE_ID_LENGTH].upper()

    if not EMPLOYEE_ID_PATTERN.match(candidate):
        return EmployeeIdResult(
            valid=False,
            id=candidate,
            error=f'Invalid employee code "{candidate}". Expected ASP + 4 digits (e.g. ASP0001).'
        )

    name_hint = None
    parts = text.split('-')
    if len(parts) >= 2 and parts[0].strip().upper() == candidate:
        name_hint = parts[1].strip() or None

    return EmployeeIdResult(valid=True, id=candidate, name_hint=name_hint)


def normalize_shipment_code(raw, extract_lsx: bool = False) -> str:
    """
    Normalize a shipment or LSX code.

    Uppercases and removes all whitespace. With extract_lsx, the LSX number
    (e.g. "KZLSX0326/0012" -> "0326/0012", "0326-12" -> "0326/12") is
    pulled out of the surrounding label text and its separator rendered as
    "/". If no LSX number is present the cleaned text is returned unchanged.
    """
    text = re.sub(r'\s', '', str(raw if raw is not None else '')).upper()
    if extract_lsx:
        match = LSX_PATTERN.search(text)
        if match:
            return re.sub(r'[-.]', '/', match.group(1))
    return text


def normalize_customer_code(raw) -> str:
    """Normalize a customer part code for lookup in the customer-code map."""
    return normalize_part(raw)


def normalize_line_key(material_code, po_or_pallet) -> str:
    """
    Build the line key for a material within a shipment.

    Both parts are uppercased and trimmed; the result is order-stable
    (material always first) and collision-free.
    """
    return f"{normalize_part(material_code)}{KEY_DELIMITER}{normalize_part(po_or_pallet)}"


def make_line_key(shipment_code, material_code, po_or_pallet) -> str:
    """Build the full composite identity (shipment, material, pallet/PO)."""
    return f"{normalize_shipment_code(shipment_code)}{KEY_DELIMITER}{normalize_line_key(material_code, po_or_pallet)}"


def split_line_key(line_key: str) -> Tuple[str, str, str]:
    """Split a composite identity back into (shipment, material, pallet/PO)."""
    parts = line_key.split(KEY_DELIMITER)
    if len(parts) != 3:
        raise ValueError(f"Not a composite line key: {line_key!r}")
    return parts[0], parts[1], parts[2]


def display_line_key(line_key: str) -> str:
    """Render a key for operator messages and logs ("0001 / MAT01 / PO1")."""
    return " / ".join(part for part in line_key.split(KEY_DELIMITER) if part)


def parse_quantity(raw) -> Optional[Number]:
    """
    Parse a quantity label.

    Plain numbers ("10", "2.5") are returned as numbers. Anything else has
    its non-digit characters stripped ("300PCS" -> 300). Returns None when
    no digits are present.
    """
    text = str(raw if raw is not None else '').strip()
    if not text:
        return None

    number = _to_number(text)
    if number is not None:
        return number

    digits = re.sub(r'[^\d]', '', text)
    return int(digits) if digits else None


def _to_number(text: str) -> Optional[Number]:
    try:
        value = float(text)
    except ValueError:
        return None
    if value != value or value in (float('inf'), float('-inf')):
        return None
    return int(value) if value.is_integer() else value


def _resolve_code(code: str, customer_map: Optional[Dict[str, str]]) -> Tuple[str, str]:
    """Return (material_code, customer_code) for a scanned code."""
    if customer_map:
        mapped = customer_map.get(normalize_customer_code(code))
        if mapped:
            return normalize_part(mapped), normalize_customer_code(code)
    return normalize_part(code), ''


def parse_goods_scan(raw, customer_map: Optional[Dict[str, str]] = None) -> GoodsScanResult:
    """
    Parse a goods label into material, PO and quantity.

    Customer codes are translated to material codes through customer_map
    (keys must already be normalized with normalize_customer_code). Codes
    without a mapping are used as material codes directly.

    Args:
        raw: Raw scanner text
        customer_map: Optional customer code -> material code mapping

    Returns:
        GoodsScanResult, never raises
    """
    text = str(raw if raw is not None else '').strip()
    if not text:
        return GoodsScanResult(valid=False, error="Empty scan. Scan the goods label.")

    if '|' in text:
        parts = [p.strip() for p in text.split('|')]
        if not parts[0]:
            return GoodsScanResult(valid=False, error=f'Label "{text}" has no material code.')

        material_code, customer_code = _resolve_code(parts[0], customer_map)
        po = normalize_part(parts[1]) if len(parts) > 1 else ''

        quantity = None
        if len(parts) > 2 and parts[2]:
            quantity = _to_number(parts[2])
            if quantity is None:
                return GoodsScanResult(
                    valid=False,
                    error=f'Quantity "{parts[2]}" on label "{text}" is not a number.'
                )

        imd = parts[3] if len(parts) > 3 else ''
        return GoodsScanResult(
            valid=True,
            material_code=material_code,
            po_or_pallet=po,
            quantity=quantity,
            customer_code=customer_code,
            imd=imd,
        )

    plus_index = text.find('+')
    if plus_index > 0:
        # "300+CUSTCODE" labels: quantity first, then the customer code
        quantity = parse_quantity(text[:plus_index]) or 1
        code = text[plus_index + 1:]
        for marker in _PCS_MARKERS:
            code = marker.sub('', code)
        code = code.replace('+', '').strip()
        if not code:
            return GoodsScanResult(valid=False, error=f'Label "{text}" has no customer code.')

        material_code, customer_code = _resolve_code(code, customer_map)
        return GoodsScanResult(
            valid=True,
            material_code=material_code,
            quantity=quantity,
            customer_code=customer_code or normalize_customer_code(code),
        )

    material_code, customer_code = _resolve_code(text, customer_map)
    return GoodsScanResult(valid=True, material_code=material_code, customer_code=customer_code)
