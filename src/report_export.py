"""
Report export for reconciled scopes.

Builds pandas DataFrames from the engine's lines and the store's history and
writes them to an Excel workbook:

    Lines     one row per CheckLine: shipment, material, PO, scanned and
              expected totals, result (OK / Sai), status, operator, timestamp
    History   one row per history entry of the exported lines
    Summary   line counts and completion rate

Fulfilled lines are highlighted green, like completed orders in the packing
report.
"""
from pathlib import Path
from typing import List, Optional

import pandas as pd
from openpyxl.styles import Font, PatternFill

from employee_directory import EmployeeDirectory
from identity import display_line_key
from logger import get_logger
from reconciliation_engine import ReconciliationEngine

logger = get_logger(__name__)

LINE_COLUMNS = [
    'Line ID', 'Shipment', 'Material', 'PO / Pallet', 'Mode', 'Scanned Quantity', 'Scanned Cartons',
    'Expected Quantity', 'Expected Cartons', 'Result', 'Status', 'Ad Hoc', 'Locked',
    'Operator', 'Operator Name', 'Last Scan',
]

HISTORY_COLUMNS = ['Line', 'Kind', 'Delta Quantity', 'Delta Cartons', 'Operator', 'Operator Name', 'Timestamp']

_GREEN_FILL = PatternFill(start_color="C6EFCE", end_color="C6EFCE", fill_type="solid")


def _name(directory: Optional[EmployeeDirectory], code: Optional[str]) -> str:
    if not code:
        return ''
    return directory.lookup_name(code) if directory else code


def lines_dataframe(engine: ReconciliationEngine, scope: str,
                    directory: Optional[EmployeeDirectory] = None) -> pd.DataFrame:
    """One row per CheckLine of a scope."""
    rows = []
    for line in engine.lines(scope):
        rows.append({
            'Line ID': line.line_id,
            'Shipment': line.shipment_code,
            'Material': line.material_code,
            'PO / Pallet': line.pallet_or_po_key,
            'Mode': line.mode.value if line.mode else '',
            'Scanned Quantity': line.scanned_quantity,
            'Scanned Cartons': line.scanned_cartons,
            'Expected Quantity': line.expected_quantity,
            'Expected Cartons': line.expected_cartons,
            'Result': engine.check_result(line),
            'Status': engine.classify(line).value,
            'Ad Hoc': line.is_ad_hoc,
            'Locked': line.locked,
            'Operator': line.last_scan_operator_id or '',
            'Operator Name': _name(directory, line.last_scan_operator_id),
            'Last Scan': line.last_scan_timestamp.strftime('%Y-%m-%d %H:%M:%S')
            if line.last_scan_timestamp else '',
        })
    return pd.DataFrame(rows, columns=LINE_COLUMNS)


def history_dataframe(engine: ReconciliationEngine, scope: str,
                      directory: Optional[EmployeeDirectory] = None) -> pd.DataFrame:
    """History of every line currently in the scope, newest first per line."""
    rows = []
    for line in engine.lines(scope):
        for entry in engine.store.get_history(line.line_key):
            rows.append({
                'Line': display_line_key(entry.line_key),
                'Kind': entry.kind.value,
                'Delta Quantity': entry.delta_quantity,
                'Delta Cartons': entry.delta_cartons,
                'Operator': entry.operator_id or '',
                'Operator Name': _name(directory, entry.operator_id),
                'Timestamp': entry.timestamp.strftime('%Y-%m-%d %H:%M:%S'),
            })
    return pd.DataFrame(rows, columns=HISTORY_COLUMNS)


def summary_dataframe(engine: ReconciliationEngine, scopes: List[str]) -> pd.DataFrame:
    rows = []
    for scope in scopes:
        summary = engine.scope_summary(scope)
        rows.append({
            'Scope': scope,
            'Total Lines': summary.total_lines,
            'Fulfilled': summary.fulfilled,
            'Pending': summary.pending,
            'Needs Acknowledgement': summary.needs_acknowledgement,
            'Ad Hoc': summary.ad_hoc,
            'Locked': summary.locked,
            'Scanned Quantity': summary.scanned_quantity,
            'Scanned Cartons': summary.scanned_cartons,
            'Completion Rate (%)': summary.completion_rate,
        })
    return pd.DataFrame(rows)


def export_scopes(engine: ReconciliationEngine, scopes: List[str], output_path,
                  directory: Optional[EmployeeDirectory] = None,
                  include_history: bool = True) -> Path:
    """
    Write the lines of one or more scopes to an Excel workbook.

    Args:
        engine: Engine whose store holds the lines
        scopes: Scopes to export (their lines go to one sheet)
        output_path: .xlsx path; parent directories are created
        directory: Optional employee directory for operator names
        include_history: Add the History sheet

    Returns:
        Path of the written file
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    engine.store.flush()

    lines_df = pd.concat([lines_dataframe(engine, s, directory) for s in scopes], ignore_index=True) \
        if scopes else pd.DataFrame(columns=LINE_COLUMNS)

    logger.info(f"Exporting {len(lines_df)} lines of {len(scopes)} scopes to {output_path}")

    with pd.ExcelWriter(output_path, engine='openpyxl') as writer:
        lines_df.to_excel(writer, index=False, sheet_name='Lines')
        worksheet = writer.sheets['Lines']
        for cell in worksheet[1]:
            cell.font = Font(bold=True)

        status_col_idx = LINE_COLUMNS.index('Status') + 1
        for row in worksheet.iter_rows(min_row=2, max_row=worksheet.max_row):
            if row[status_col_idx - 1].value == 'fulfilled':
                for cell in row:
                    cell.fill = _GREEN_FILL

        if include_history:
            history_df = pd.concat([history_dataframe(engine, s, directory) for s in scopes],
                                   ignore_index=True) if scopes else pd.DataFrame(columns=HISTORY_COLUMNS)
            history_df.to_excel(writer, index=False, sheet_name='History')

        summary_dataframe(engine, scopes).to_excel(writer, index=False, sheet_name='Summary')

    logger.info(f"Report saved to {output_path}")
    return output_path
