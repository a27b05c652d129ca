"""
Snapshot & History Store.

Keeps, per scope (shipment or facility), a materialized view of the current
CheckLine totals, and per line an append-only list of HistoryEntry records.

The in-memory cache is the source of truth for the running session. Every
change updates the cache synchronously and is then handed to the
PersistenceWriter, which merges the changed lines into the stored snapshot
and appends the history record. A failed write is logged and reported through
the writer's error handler; the cache is never rolled back, and the changed
lines stay pending, so scanning continues and the next successful snapshot
write brings the store up to date.

Several stations may work on one scope. Each snapshot write re-reads the
stored scope and replaces only the lines this station changed (last write
wins per line), so lines created or updated elsewhere are kept. New line ids
carry the station id, so two stations never hand out the same one.

History retention: when a line's history grows beyond `history_threshold`
entries, entries older than `retention_months` are dropped and the remaining
ones are rewritten in timestamp order; reads return them newest first.
Entries newer than the cutoff are never removed, whatever their number.
"""

import calendar
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from async_state_writer import PersistenceWriter, PersistResult
from exceptions import PersistenceError
from identity import display_line_key
from logger import get_logger
from models import CheckLine, HistoryEntry, HistoryKind, _parse_dt
from storage import StateBackend

logger = get_logger(__name__)

DEFAULT_HISTORY_THRESHOLD = 100
DEFAULT_RETENTION_MONTHS = 12

LINE_ID_PREFIX = "CHK"


@dataclass(frozen=True)
class AuditDiscrepancy:
    """A line whose snapshot totals disagree with its replayed history."""
    line_id: str
    line_key: str
    snapshot_quantity: float
    snapshot_cartons: int
    replayed_quantity: float
    replayed_cartons: int

    def describe(self) -> str:
        return (
            f"{self.line_id} ({display_line_key(self.line_key)}): snapshot "
            f"{self.snapshot_quantity} qty / {self.snapshot_cartons} ctn, history "
            f"{self.replayed_quantity} qty / {self.replayed_cartons} ctn"
        )


def subtract_months(moment: datetime, months: int) -> datetime:
    """Same day and time `months` earlier, clamped to the end of shorter months."""
    month_index = moment.year * 12 + (moment.month - 1) - months
    year, month = divmod(month_index, 12)
    month += 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def normalize_station_id(raw: Optional[str]) -> str:
    """Letters and digits of a station name, uppercased ("wh-pc 01" -> "WHPC01")."""
    return "".join(c for c in str(raw or '') if c.isalnum()).upper()


def line_id_number(line_id: str) -> Optional[int]:
    """Sequence number of a "CHKnnn" or "CHKnnn-STATION" id, None for other ids."""
    if not line_id.startswith(LINE_ID_PREFIX):
        return None
    digits = line_id[len(LINE_ID_PREFIX):].split('-', 1)[0]
    return int(digits) if digits.isdigit() else None


def _records_by_id(raw: Any, scope: str) -> Dict[str, Dict]:
    """Stored snapshot as a line_id -> record mapping."""
    if not raw:
        return {}
    # Older exports hold a list of records instead of a line_id mapping
    if isinstance(raw, list):
        return {str(r.get('line_id') or r.get('checkId') or i): r for i, r in enumerate(raw)}
    if isinstance(raw, dict):
        return dict(raw)
    raise PersistenceError(f"Unexpected snapshot format for scope {scope}",
                           operation="get_current_state", scope=scope)


def combine_results(*results: PersistResult) -> PersistResult:
    """Fold several write outcomes into one: failed if any failed."""
    for result in results:
        if not result.ok:
            return result
    return PersistResult(ok=True, pending=any(r.pending for r in results))


class SnapshotStore:
    """
    Repository over a StateBackend with a per-scope write-through cache.

    Attributes:
        backend (StateBackend): Durable store
        writer (PersistenceWriter): Write-behind queue (sync_mode by default)
        history_threshold (int): History length that triggers retention
        retention_months (int): Age beyond which entries may be pruned
        station_id (str): Suffix of the line ids this store hands out,
                          empty for plain "CHKnnn" ids
    """

    def __init__(
        self,
        backend: StateBackend,
        writer: Optional[PersistenceWriter] = None,
        history_threshold: int = DEFAULT_HISTORY_THRESHOLD,
        retention_months: int = DEFAULT_RETENTION_MONTHS,
        clock: Callable[[], datetime] = datetime.now,
        station_id: Optional[str] = None,
    ):
        self.backend = backend
        self.writer = writer or PersistenceWriter(sync_mode=True)
        self.history_threshold = history_threshold
        self.retention_months = retention_months
        self.station_id = normalize_station_id(station_id)
        self._clock = clock
        self._cache: Dict[str, Dict[str, CheckLine]] = {}

        # Lines changed here and not yet merged into the backend, per scope.
        # None marks a removal. Shared with the writer thread.
        self._pending: Dict[str, Dict[str, Optional[Dict]]] = {}
        self._pending_lock = threading.Lock()

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Snapshot reads
    # ------------------------------------------------------------------

    def _scope_lines(self, scope: str) -> Dict[str, CheckLine]:
        """Cached lines of a scope, loading them from the backend on first use."""
        if scope in self._cache:
            return self._cache[scope]

        lines = self._read_scope(scope)
        self._cache[scope] = lines
        logger.debug(f"Loaded {len(lines)} lines for scope {scope}")
        return lines

    def _read_scope(self, scope: str) -> Dict[str, CheckLine]:
        records = _records_by_id(self.backend.get_current_state(scope), scope)

        lines: Dict[str, CheckLine] = {}
        for line_id, record in records.items():
            try:
                line = CheckLine.from_dict(record, line_id=line_id)
            except (TypeError, ValueError) as e:
                logger.warning(f"Skipping unreadable line {line_id} in scope {scope}: {e}")
                continue
            lines[line.line_id] = line

        return lines

    def refresh(self, scope: str) -> List[CheckLine]:
        """
        Re-read a scope from the backend, picking up lines written by other
        stations. Changes of this station not yet written are kept.
        """
        lines = self._read_scope(scope)
        cached = self._cache.get(scope, {})
        with self._pending_lock:
            pending = dict(self._pending.get(scope, {}))

        for line_id, record in pending.items():
            if record is None or line_id not in cached:
                lines.pop(line_id, None)
            else:
                lines[line_id] = cached[line_id]

        self._cache[scope] = lines
        logger.debug(f"Refreshed scope {scope}: {len(lines)} lines")
        return sorted(lines.values(), key=lambda line: line.line_id)

    def load_snapshot(self, scope: str) -> List[CheckLine]:
        """All lines of a scope, in line_id order."""
        return sorted(self._scope_lines(scope).values(), key=lambda line: line.line_id)

    def find_lines_by_shipment(self, scope: str, shipment_code: Optional[str] = None) -> List[CheckLine]:
        """
        Lines of a scope, optionally restricted to one shipment code.

        A facility scope (stock check) holds lines of several shipments; a
        shipment scope holds only its own.
        """
        lines = self.load_snapshot(scope)
        if shipment_code is None:
            return lines
        return [line for line in lines if line.shipment_code == shipment_code]

    def find_lines_by_key(self, scope: str, line_key: str) -> List[CheckLine]:
        """All records sharing a composite key (more than one only for legacy data)."""
        return [line for line in self.load_snapshot(scope) if line.line_key == line_key]

    def get_line(self, scope: str, line_id: str) -> Optional[CheckLine]:
        return self._scope_lines(scope).get(line_id)

    def next_line_id(self, scope: str, offset: int = 0) -> str:
        """
        Next free identifier in the scope: "CHKnnn", or "CHKnnn-STATION"
        when the store has a station id.

        offset skips ids already handed out for lines not yet upserted
        (a batch being built by the caller).
        """
        numbers = [line_id_number(line_id) for line_id in self._scope_lines(scope)]
        highest = max((n for n in numbers if n is not None), default=0)
        line_id = f"{LINE_ID_PREFIX}{highest + 1 + offset:03d}"
        if self.station_id:
            line_id = f"{line_id}-{self.station_id}"
        return line_id

    # ------------------------------------------------------------------
    # Snapshot writes
    # ------------------------------------------------------------------

    def _persist_lines(self, scope: str, changes: Dict[str, Optional[CheckLine]]) -> PersistResult:
        """Add changed (None: removed) lines to the scope's pending set and schedule a merge."""
        with self._pending_lock:
            pending = self._pending.setdefault(scope, {})
            for line_id, line in changes.items():
                pending[line_id] = line.to_dict() if line is not None else None
            payload = dict(pending)
        return self.writer.schedule_snapshot(scope, payload, self._merge_snapshot)

    def _merge_snapshot(self, scope: str, changes: Dict[str, Optional[Dict]]) -> None:
        """Writer job: overlay the changed lines on the stored scope."""

        def overlay(stored: Any) -> Dict[str, Dict]:
            records = _records_by_id(stored, scope)
            for line_id, record in changes.items():
                if record is None:
                    records.pop(line_id, None)
                else:
                    records[line_id] = record
            return records

        self.backend.update_current_state(scope, overlay)

        with self._pending_lock:
            pending = self._pending.get(scope, {})
            for line_id, record in changes.items():
                # A newer change of the same line is left for the next merge
                if line_id in pending and pending[line_id] == record:
                    del pending[line_id]

    def upsert_line(self, scope: str, line: CheckLine) -> PersistResult:
        """Insert or replace a line in the cache and persist it."""
        self._scope_lines(scope)[line.line_id] = line
        return self._persist_lines(scope, {line.line_id: line})

    def upsert_lines(self, scope: str, lines: List[CheckLine]) -> PersistResult:
        """Insert or replace several lines with a single snapshot write."""
        cached = self._scope_lines(scope)
        for line in lines:
            cached[line.line_id] = line
        return self._persist_lines(scope, {line.line_id: line for line in lines})

    def remove_line(self, scope: str, line_id: str) -> PersistResult:
        """Drop a line from the snapshot. History is kept."""
        removed = self._scope_lines(scope).pop(line_id, None)
        if removed is None:
            logger.debug(f"remove_line: {line_id} not in scope {scope}")
        return self._persist_lines(scope, {line_id: None})

    def apply_delta(self, scope: str, line: CheckLine, entry: HistoryEntry) -> PersistResult:
        """
        Record an applied scan: update the cached line, then persist the
        line and append the history entry.

        Args:
            scope: Scope the line belongs to
            line: Line with its new totals already applied
            entry: History record carrying the delta of this scan

        Returns:
            Combined PersistResult of both writes
        """
        self._scope_lines(scope)[line.line_id] = line
        snapshot_result = self._persist_lines(scope, {line.line_id: line})
        history_result = self.append_history(entry)
        result = combine_results(snapshot_result, history_result)
        if not result.ok:
            logger.warning(f"Scan on {display_line_key(line.line_key)} kept in memory, "
                           f"persistence failed: {result.message}")
        return result

    def reset(self, scope: str, operator_id: Optional[str] = None) -> PersistResult:
        """
        Clear a scope's snapshot, including lines written by other stations.
        History is untouched apart from a reset marker appended for each
        cleared line.
        """
        lines = self.refresh(scope)
        now = self.now()
        results = []
        for line in lines:
            marker = HistoryEntry(
                operator_id=operator_id,
                delta_quantity=0,
                delta_cartons=0,
                timestamp=now,
                kind=HistoryKind.RESET,
                line_key=line.line_key,
                scope=scope,
                context={'line_id': line.line_id,
                         'scanned_quantity': line.scanned_quantity,
                         'scanned_cartons': line.scanned_cartons},
            )
            results.append(self.append_history(marker))

        self._cache[scope] = {}
        results.append(self._persist_lines(scope, {line.line_id: None for line in lines}))
        logger.info(f"Scope {scope} reset: {len(lines)} lines cleared")
        return combine_results(*results)

    def invalidate(self, scope: Optional[str] = None) -> None:
        """
        Forget cached lines (one scope, or all). The next read reloads the
        persisted current state; history is never used to rebuild it.
        """
        if scope is None:
            self._cache.clear()
        else:
            self._cache.pop(scope, None)

    def flush(self) -> None:
        self.writer.flush()

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def append_history(self, entry: HistoryEntry) -> PersistResult:
        """Queue one history record; retention runs as part of the append."""
        return self.writer.schedule_append(self._append_with_retention, entry.line_key, entry.to_dict())

    def _append_with_retention(self, line_key: str, record: Dict) -> None:
        self.backend.append_history(line_key, record)

        if len(self.backend.get_history(line_key)) <= self.history_threshold:
            return

        cutoff = subtract_months(self.now(), self.retention_months)
        pruned = 0

        def prune(records: List[Dict]) -> List[Dict]:
            nonlocal pruned
            if len(records) <= self.history_threshold:
                return records
            kept = [r for r in records if (_parse_dt(r.get('timestamp')) or cutoff) >= cutoff]
            kept.sort(key=lambda r: _parse_dt(r.get('timestamp')) or cutoff)
            pruned = len(records) - len(kept)
            return kept

        self.backend.update_history(line_key, prune)
        if pruned:
            logger.info(f"History retention: pruned {pruned} entries of "
                        f"{display_line_key(line_key)} older than {cutoff:%Y-%m-%d}")

    def get_history(self, line_key: str) -> List[HistoryEntry]:
        """History of a line, newest first. Waits for queued appends."""
        self.writer.flush()
        # Stored oldest first; reversing before the stable sort keeps ties newest first
        entries = [HistoryEntry.from_dict(r) for r in reversed(self.backend.get_history(line_key))]
        entries.sort(key=lambda e: e.timestamp, reverse=True)
        return entries

    def audit_scope(self, scope: str) -> List[AuditDiscrepancy]:
        """
        Replay each line's scan history since its last reset or delete and
        report lines whose snapshot totals differ.

        Lines whose early history was pruned by retention will show up here;
        the report is informational and never changes the snapshot.
        """
        discrepancies = []
        for line in self.load_snapshot(scope):
            quantity, cartons = 0, 0
            for entry in reversed(self.get_history(line.line_key)):
                if entry.kind in (HistoryKind.RESET, HistoryKind.DELETE):
                    quantity, cartons = 0, 0
                elif entry.kind == HistoryKind.SCAN:
                    quantity += entry.delta_quantity
                    cartons += entry.delta_cartons

            if quantity != line.scanned_quantity or cartons != line.scanned_cartons:
                discrepancies.append(AuditDiscrepancy(
                    line_id=line.line_id,
                    line_key=line.line_key,
                    snapshot_quantity=line.scanned_quantity,
                    snapshot_cartons=line.scanned_cartons,
                    replayed_quantity=quantity,
                    replayed_cartons=cartons,
                ))

        if discrepancies:
            logger.warning(f"Audit of scope {scope}: {len(discrepancies)} lines disagree with history")
        return discrepancies
