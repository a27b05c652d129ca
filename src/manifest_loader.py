"""
Manifest sources: expected quantities per (shipment, material, PO).

Two file layouts are supported, both read with pandas from Excel or CSV:

- Shipment lists (finished-goods check): one row per shipment / material /
  PO with the quantity and carton count to ship.
- PXK delivery slips (material delivery to production lines): rows per LSX
  work order. Only materials of the production warehouse groups are
  delivered through the scan flow; other groups and excluded material
  families are filtered out.

Column headers vary between exports (English, Vietnamese, camelCase from the
old web client), so known aliases are mapped to standard names first. A
column_mapping {standard name: header in file} overrides the aliases, the
same way the packing list import maps user columns.

Also home of CustomerCodeMap, the persisted customer code -> material code
translation used when a label carries the customer's part number.
"""
import json
import os
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import pandas as pd

from identity import normalize_customer_code, normalize_part, normalize_shipment_code
from logger import get_logger
from models import ExpectedLine

logger = get_logger(__name__)

# Standard column names after mapping
COL_SHIPMENT = 'Shipment'
COL_MATERIAL = 'Material'
COL_PO = 'PO'
COL_QUANTITY = 'Quantity'
COL_CARTONS = 'Cartons'
COL_WAREHOUSE = 'Warehouse'

COLUMN_ALIASES: Dict[str, List[str]] = {
    COL_SHIPMENT: ['shipment', 'shipmentcode', 'shipment code', 'lsx', 'lệnh sản xuất'],
    COL_MATERIAL: ['material', 'materialcode', 'material code', 'mã hàng', 'mã tp'],
    COL_PO: ['po', 'po number', 'ponumber', 'pallet'],
    COL_QUANTITY: ['quantity', 'qty', 'số lượng', 'lượng xuất'],
    COL_CARTONS: ['cartons', 'carton', 'ctn', 'số thùng'],
    COL_WAREHOUSE: ['warehouse', 'makho', 'mã kho'],
}

# Warehouse groups delivered to production through the scan flow
PXK_WAREHOUSE_GROUPS = frozenset({'NVL', 'NVL_E31', 'NVL_KE31', 'NVL_EXPIRED', '00'})

# Material families never scanned at delivery
PXK_EXCLUDED_PREFIXES = ('R', 'B033', 'B030')


def read_table(file_path) -> pd.DataFrame:
    """
    Read an Excel or CSV file into a DataFrame of strings.

    Raises:
        ValueError: If the file cannot be read or is empty
    """
    path = Path(file_path)
    logger.info(f"Loading manifest from: {path}")

    try:
        if path.suffix.lower() == '.csv':
            df = pd.read_csv(path, dtype=str, encoding='utf-8-sig').fillna('')
        else:
            df = pd.read_excel(path, dtype=str).fillna('')
        logger.debug(f"Loaded {len(df)} rows, {len(df.columns)} columns")
    except Exception as e:
        logger.error(f"Failed to read manifest file: {e}")
        raise ValueError(f"Could not read the manifest file: {e}")

    if df.empty:
        logger.error("Loaded manifest file is empty")
        raise ValueError("The file is empty or contains no data.")

    return df


def standardize_columns(df: pd.DataFrame, column_mapping: Optional[Dict[str, str]] = None) -> pd.DataFrame:
    """
    Rename known header variants to the standard column names.

    Args:
        df: Raw DataFrame
        column_mapping: Optional {standard name: header in file}, applied
                        before the built-in aliases

    Returns:
        A renamed copy of df
    """
    df = df.copy()
    renames: Dict[str, str] = {}

    if column_mapping:
        logger.debug(f"Applying column mapping: {column_mapping}")
        renames.update({actual: standard for standard, actual in column_mapping.items()
                        if actual in df.columns})

    for column in df.columns:
        if column in renames:
            continue
        header = str(column).strip().lower()
        for standard, aliases in COLUMN_ALIASES.items():
            if header == standard.lower() or header in aliases:
                if standard not in renames.values():
                    renames[column] = standard
                break

    return df.rename(columns=renames)


def filter_pxk_rows(df: pd.DataFrame) -> pd.DataFrame:
    """Keep PXK rows of the production warehouse groups, minus excluded materials."""
    before = len(df)
    materials = df[COL_MATERIAL].astype(str).str.strip().str.upper()
    keep = materials != ''

    if COL_WAREHOUSE in df.columns:
        groups = df[COL_WAREHOUSE].astype(str).str.strip().str.upper()
        keep &= groups.isin(PXK_WAREHOUSE_GROUPS)
    else:
        logger.warning("PXK file has no warehouse column; warehouse group filter skipped")

    keep &= ~materials.map(lambda code: code.startswith(PXK_EXCLUDED_PREFIXES)).astype(bool)

    filtered = df[keep]
    logger.info(f"PXK filter kept {len(filtered)} of {before} rows")
    return filtered


def _clean_number(value):
    if value is None or pd.isna(value):
        return None
    number = float(value)
    return int(number) if number.is_integer() else number


def build_expected_lines(df: pd.DataFrame, shipment_code: Optional[str] = None,
                         extract_lsx: bool = False) -> List[ExpectedLine]:
    """
    Turn a standardized DataFrame into ExpectedLines.

    Rows sharing a (shipment, material, PO) key are summed. Empty quantity
    or carton cells count as "no figure", not as zero.

    Args:
        df: DataFrame with standard column names
        shipment_code: Shipment to use when the file has no shipment column
        extract_lsx: Pull the LSX number out of the shipment cells

    Raises:
        ValueError: If the material column, or both shipment sources, are missing
    """
    if COL_MATERIAL not in df.columns:
        raise ValueError(f"The file is missing required columns: {COL_MATERIAL}")
    if COL_SHIPMENT not in df.columns and not shipment_code:
        raise ValueError(f"The file is missing required columns: {COL_SHIPMENT}")

    work = pd.DataFrame({
        COL_SHIPMENT: (df[COL_SHIPMENT] if COL_SHIPMENT in df.columns
                       else pd.Series([shipment_code] * len(df), index=df.index)),
        COL_MATERIAL: df[COL_MATERIAL],
        COL_PO: df[COL_PO] if COL_PO in df.columns else '',
    })
    work[COL_SHIPMENT] = work[COL_SHIPMENT].map(lambda v: normalize_shipment_code(v, extract_lsx=extract_lsx))
    work[COL_MATERIAL] = work[COL_MATERIAL].map(normalize_part)
    work[COL_PO] = work[COL_PO].map(normalize_part)

    for column in (COL_QUANTITY, COL_CARTONS):
        if column in df.columns:
            work[column] = pd.to_numeric(df[column].astype(str).str.replace(',', '', regex=False),
                                         errors='coerce')
        else:
            work[column] = float('nan')

    work = work[(work[COL_MATERIAL] != '') & (work[COL_SHIPMENT] != '')]
    if work.empty:
        return []

    grouped = work.groupby([COL_SHIPMENT, COL_MATERIAL, COL_PO], sort=False)[[COL_QUANTITY, COL_CARTONS]] \
        .sum(min_count=1).reset_index()

    lines = [
        ExpectedLine(
            shipment_code=row[COL_SHIPMENT],
            material_code=row[COL_MATERIAL],
            po_or_pallet_key=row[COL_PO],
            expected_quantity=_clean_number(row[COL_QUANTITY]),
            expected_cartons=_clean_number(row[COL_CARTONS]),
        )
        for row in grouped.to_dict('records')
    ]
    logger.debug(f"Built {len(lines)} expected lines")
    return lines


class ManifestSource:
    """Read-only expected lines per scope."""

    def __init__(self, lines: Iterable[ExpectedLine] = ()):
        self._by_scope: Dict[str, List[ExpectedLine]] = {}
        for line in lines:
            self._by_scope.setdefault(line.shipment_code, []).append(line)

    def expected_lines_for(self, scope: str) -> List[ExpectedLine]:
        """Expected lines of a shipment/LSX scope; [] when the scope is unknown."""
        return list(self._by_scope.get(normalize_shipment_code(scope), []))

    def scopes(self) -> List[str]:
        return sorted(self._by_scope)

    def __len__(self) -> int:
        return sum(len(lines) for lines in self._by_scope.values())


class ShipmentManifest(ManifestSource):
    """Shipment list for the finished-goods check."""

    @classmethod
    def from_file(cls, file_path, column_mapping: Optional[Dict[str, str]] = None,
                  shipment_code: Optional[str] = None) -> 'ShipmentManifest':
        df = standardize_columns(read_table(file_path), column_mapping)
        manifest = cls(build_expected_lines(df, shipment_code=shipment_code))
        logger.info(f"Shipment manifest loaded: {len(manifest)} lines in {len(manifest.scopes())} shipments")
        return manifest


class PxkManifest(ManifestSource):
    """PXK delivery slip lines, scoped by normalized LSX."""

    @classmethod
    def from_file(cls, file_path, column_mapping: Optional[Dict[str, str]] = None,
                  lsx: Optional[str] = None) -> 'PxkManifest':
        df = standardize_columns(read_table(file_path), column_mapping)
        if COL_MATERIAL not in df.columns:
            raise ValueError(f"The file is missing required columns: {COL_MATERIAL}")
        df = filter_pxk_rows(df)
        manifest = cls(build_expected_lines(df, shipment_code=lsx, extract_lsx=True))
        logger.info(f"PXK loaded: {len(manifest)} lines in {len(manifest.scopes())} LSX")
        return manifest

    def expected_lines_for(self, scope: str) -> List[ExpectedLine]:
        return list(self._by_scope.get(normalize_shipment_code(scope, extract_lsx=True), []))


class CustomerCodeMap:
    """
    Persisted customer code -> material code mapping.

    Customer labels carry the customer's part number; the check compares
    material codes, so the scan is translated through this map. Keys are
    stored normalized.
    """

    def __init__(self, map_file_path=None):
        if map_file_path is None:
            config_dir = os.path.join(os.path.expanduser("~"), ".scan_station")
            map_file_path = os.path.join(config_dir, "customer_codes.json")
        self.map_file_path = Path(map_file_path)
        self.code_map = self.load_map()

    def load_map(self) -> Dict[str, str]:
        """
        Load the map from its JSON file.

        Returns:
            The mapping, or {} if the file is missing or unreadable
        """
        if not self.map_file_path.exists():
            return {}
        try:
            with open(self.map_file_path, 'r', encoding='utf-8') as f:
                raw = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.error(f"Could not read customer code map {self.map_file_path}: {e}")
            return {}
        return {normalize_customer_code(k): normalize_part(v) for k, v in raw.items() if k and v}

    def save_map(self, code_map: Optional[Dict[str, str]] = None) -> None:
        """Write the map (or a replacement for it) to the JSON file."""
        if code_map is not None:
            self.code_map = {normalize_customer_code(k): normalize_part(v) for k, v in code_map.items()}
        try:
            self.map_file_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.map_file_path, 'w', encoding='utf-8') as f:
                json.dump(self.code_map, f, indent=4, ensure_ascii=False)
        except OSError as e:
            logger.error(f"Could not save customer code map to {self.map_file_path}: {e}")
            raise

    def set_mapping(self, customer_code: str, material_code: str) -> None:
        self.code_map[normalize_customer_code(customer_code)] = normalize_part(material_code)
        self.save_map()

    def remove_mapping(self, customer_code: str) -> bool:
        removed = self.code_map.pop(normalize_customer_code(customer_code), None)
        if removed is not None:
            self.save_map()
        return removed is not None

    def lookup(self, customer_code: str) -> Optional[str]:
        return self.code_map.get(normalize_customer_code(customer_code))

    def get_map(self) -> Dict[str, str]:
        return dict(self.code_map)
