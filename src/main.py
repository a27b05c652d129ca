"""
Console harness for the Scan Reconciliation Station.

    scan-station scan --flow fg-check --mode pn-qty --manifest shipments.xlsx
    scan-station scan --flow delivery --pxk pxk.xlsx
    scan-station scan --flow stock-check --facility ASM1
    scan-station export --scope 0001 --output reports/0001.xlsx
    scan-station labels --manifest shipments.xlsx --scope 0001
    scan-station audit --scope 0001

During a scan session, lines starting with ":" are commands:
    :done            complete the session
    :cancel          cancel the session
    :summary         show the scope's progress
    :lines           list the scope's lines
    :lock LINE_ID    lock a line (sign-off)
    :unlock LINE_ID  unlock a line (manager badge)
    :delete LINE_ID  delete a line (manager badge if locked)
    :ack LINE_ID     acknowledge an ad-hoc line
"""
import argparse
import sys
import time
from typing import Optional

from app_config import AppConfig, build_authorizer, build_store
from authorization import BadgeScan, KeystrokeTimer
from employee_directory import EmployeeDirectory
from exceptions import InvalidTransitionError, ScanCheckError
from label_printer import LabelPrinter
from logger import get_logger
from manifest_loader import CustomerCodeMap, ManifestSource, PxkManifest, ShipmentManifest
from reconciliation_engine import ReconciliationEngine
from report_export import export_scopes
from scan_flow import FlowType
from scan_station import ScanStation

logger = get_logger(__name__)


def read_badge(prompt: str) -> BadgeScan:
    """
    Read a badge code, timing the first and last keystroke.

    On a POSIX terminal characters are read one at a time in cbreak mode.
    Elsewhere the whole line is read and the read time is used as the window,
    which only passes when the scanner fires right after the prompt.
    """
    print(prompt, end='', flush=True)
    timer = KeystrokeTimer()

    if sys.stdin.isatty():
        try:
            import termios
            import tty
        except ImportError:
            termios = None
        if termios is not None:
            fd = sys.stdin.fileno()
            saved = termios.tcgetattr(fd)
            chars = []
            try:
                tty.setcbreak(fd)
                while True:
                    char = sys.stdin.read(1)
                    if char in ('\n', '\r', ''):
                        break
                    timer.keystroke()
                    chars.append(char)
            finally:
                termios.tcsetattr(fd, termios.TCSADRAIN, saved)
            print()
            return timer.finish(''.join(chars))

    started = time.monotonic() * 1000
    code = sys.stdin.readline().strip()
    return KeystrokeTimer.from_line(code, started, time.monotonic() * 1000)


def build_engine(config: AppConfig) -> ReconciliationEngine:
    store = build_store(config)
    return ReconciliationEngine(store, build_authorizer(config), allow_ad_hoc=config.allow_ad_hoc)


def load_customer_map(config: AppConfig):
    if config.customer_map_path is None:
        return {}
    return CustomerCodeMap(config.customer_map_path).get_map()


def _print_lines(engine: ReconciliationEngine, scope: str) -> None:
    for line in engine.lines(scope):
        target = line.expected_quantity if line.expected_quantity is not None else line.expected_cartons
        print(f"  {line.line_id}  {line.material_code:<14} {line.pallet_or_po_key:<12} "
              f"qty={line.scanned_quantity} ctn={line.scanned_cartons} expected={target} "
              f"[{engine.classify(line).value}]{' LOCKED' if line.locked else ''}")


def _print_summary(engine: ReconciliationEngine, scope: str) -> None:
    summary = engine.scope_summary(scope)
    print(f"  {scope}: {summary.fulfilled}/{summary.total_lines} lines fulfilled "
          f"({summary.completion_rate}%), {summary.pending} pending, "
          f"{summary.needs_acknowledgement} need acknowledgement")


def _run_command(station: ScanStation, command: str) -> bool:
    """Handle a ':' command. Returns False when the session loop should end."""
    engine = station.engine
    scope = station.session.context.scope
    name, _, argument = command[1:].partition(' ')
    argument = argument.strip()

    if name == 'done':
        result = station.complete()
        print(f"Session complete: {len(result.operations)} scans, "
              f"{result.total_quantity} pcs, {result.total_cartons} cartons")
        if scope:
            _print_summary(engine, scope)
        return False
    if name == 'cancel':
        station.cancel()
        print("Session cancelled")
        return False

    if not scope:
        print("No shipment selected yet")
        return True
    if name == 'summary':
        _print_summary(engine, scope)
    elif name == 'lines':
        _print_lines(engine, scope)
    elif name == 'lock':
        engine.lock_line(scope, argument, station.session.context.operator_id)
        print(f"{argument} locked")
    elif name == 'unlock':
        engine.unlock_line(scope, argument, read_badge("Manager badge: "))
        print(f"{argument} unlocked")
    elif name == 'delete':
        line = engine.get_line(scope, argument)
        badge = read_badge("Manager badge: ") if line.locked else None
        engine.delete_line(scope, argument, badge, station.session.context.operator_id)
        print(f"{argument} deleted")
    elif name == 'ack':
        engine.acknowledge_line(scope, argument, station.session.context.operator_id)
        print(f"{argument} acknowledged")
    else:
        print(f"Unknown command :{name}")
    return True


def run_scan(args, config: AppConfig) -> int:
    manifest: Optional[ManifestSource] = None
    if args.pxk:
        manifest = PxkManifest.from_file(args.pxk)
    elif args.manifest:
        manifest = ShipmentManifest.from_file(args.manifest)

    engine = build_engine(config)
    station = ScanStation(engine, manifest, EmployeeDirectory(config.employees_path),
                          load_customer_map(config))
    session = station.start_session(args.flow, mode=args.mode, facility=args.facility)

    try:
        while not session.state.is_terminal:
            try:
                raw = input(f"[{session.step.value}] {session.state.prompt}: ")
            except EOFError:
                break

            raw = raw.strip()
            try:
                if raw.startswith(':'):
                    if not _run_command(station, raw):
                        break
                    continue

                outcome = station.submit(raw)
            except InvalidTransitionError as e:
                print(f"! {e}")
                continue
            except ScanCheckError as e:
                print(f"! {e.get_display_message()}")
                continue

            print(("  " if outcome.accepted else "! ") + outcome.message)
            for warning in outcome.warnings:
                print(f"  WARNING: {warning}")
    finally:
        engine.store.writer.shutdown()
    return 0


def run_export(args, config: AppConfig) -> int:
    engine = build_engine(config)
    try:
        path = export_scopes(engine, args.scope, args.output, EmployeeDirectory(config.employees_path),
                             include_history=not args.no_history)
    finally:
        engine.store.writer.shutdown()
    print(f"Report saved to {path}")
    return 0


def run_labels(args, config: AppConfig) -> int:
    manifest = PxkManifest.from_file(args.pxk) if args.pxk else ShipmentManifest.from_file(args.manifest)
    printer = LabelPrinter(args.output_dir or config.label_dir)
    scopes = args.scope or manifest.scopes()
    count = 0
    for scope in scopes:
        printer.shipment_label(scope)
        for expected in manifest.expected_lines_for(scope):
            printer.goods_label(expected.material_code, expected.po_or_pallet_key,
                                expected.expected_quantity)
            count += 1
    print(f"{count} goods labels and {len(scopes)} shipment labels written to {printer.output_dir}")
    return 0


def run_audit(args, config: AppConfig) -> int:
    engine = build_engine(config)
    problems = 0
    try:
        for scope in args.scope:
            for discrepancy in engine.store.audit_scope(scope):
                print(discrepancy.describe())
                problems += 1
    finally:
        engine.store.writer.shutdown()
    print(f"{problems} lines disagree with their history")
    return 1 if problems else 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='scan-station', description="Warehouse scan reconciliation station")
    parser.add_argument('--config', default='config.ini', help="Path to config.ini")
    sub = parser.add_subparsers(dest='command', required=True)

    scan = sub.add_parser('scan', help="Run a scan session")
    scan.add_argument('--flow', choices=[f.value for f in FlowType], default=FlowType.FG_CHECK.value)
    scan.add_argument('--mode', help="Check mode for fg-check: pn (cartons) or pn-qty (quantity)")
    scan.add_argument('--facility', help="Facility scope for stock-check")
    scan.add_argument('--manifest', help="Shipment list (.xlsx/.csv)")
    scan.add_argument('--pxk', help="PXK delivery slip (.xlsx/.csv)")
    scan.set_defaults(handler=run_scan)

    export = sub.add_parser('export', help="Export scopes to Excel")
    export.add_argument('--scope', action='append', required=True)
    export.add_argument('--output', required=True)
    export.add_argument('--no-history', action='store_true')
    export.set_defaults(handler=run_export)

    labels = sub.add_parser('labels', help="Print barcode labels for a manifest")
    source = labels.add_mutually_exclusive_group(required=True)
    source.add_argument('--manifest')
    source.add_argument('--pxk')
    labels.add_argument('--scope', action='append')
    labels.add_argument('--output-dir')
    labels.set_defaults(handler=run_labels)

    audit = sub.add_parser('audit', help="Compare snapshot totals with history")
    audit.add_argument('--scope', action='append', required=True)
    audit.set_defaults(handler=run_audit)

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    try:
        config = AppConfig.load(args.config)
        return args.handler(args, config)
    except (ValueError, ScanCheckError) as e:
        logger.error(f"{args.command} failed: {e}", exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
