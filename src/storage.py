"""
Persistent store backends for check lines and scan history.

The reconciliation core depends on these operations only:

    get_current_state(scope)               -> dict of line_id -> line record
    put_current_state(scope, data)         overwrite the scope's snapshot
    update_current_state(scope, update)    read-modify-write of the snapshot
    append_history(line_key, entry)        append one history record
    get_history(line_key)                  -> list of history records (insert order)
    replace_history(line_key, entries)     rewrite a line's history
    update_history(line_key, update)       read-modify-write of a line's history

The update operations are atomic against other stations sharing the backend;
snapshot merges and retention go through them. Three backends are provided:

- InMemoryBackend: dictionaries, for tests and throwaway sessions
- JsonFileBackend: one JSON file per scope and per line history, written
  atomically (temp file + replace) so a crash never leaves a torn file;
  read-modify-write cycles hold a lock file next to the data file
- SqliteBackend: a single SQLite database, updates in IMMEDIATE transactions

All backends raise PersistenceError on I/O failure.
"""

import copy
import hashlib
import json
import shutil
import sqlite3
import tempfile
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List

from filelock import FileLock, Timeout

from exceptions import PersistenceError
from logger import get_logger

logger = get_logger(__name__)

STATE_FORMAT_VERSION = '1.0'

# Seconds a station waits for another station's lock on a shared data file
LOCK_TIMEOUT_SECONDS = 10

SnapshotUpdate = Callable[[Any], Dict[str, Dict]]
HistoryUpdate = Callable[[List[Dict]], List[Dict]]


class StateBackend:
    """
    Base class documenting the store contract.

    Records are plain JSON-compatible dictionaries; conversion to CheckLine
    and HistoryEntry happens in the snapshot store.
    """

    def get_current_state(self, scope: str) -> Any:
        """Return the stored snapshot for a scope, {} if there is none."""
        raise NotImplementedError

    def put_current_state(self, scope: str, data: Dict[str, Dict]) -> None:
        raise NotImplementedError

    def update_current_state(self, scope: str, update: SnapshotUpdate) -> None:
        """
        Replace a scope's snapshot with update(stored snapshot).

        The stored value is passed as read, so it may be a legacy list.
        """
        self.put_current_state(scope, update(self.get_current_state(scope)))

    def append_history(self, line_key: str, entry: Dict) -> None:
        raise NotImplementedError

    def get_history(self, line_key: str) -> List[Dict]:
        raise NotImplementedError

    def replace_history(self, line_key: str, entries: List[Dict]) -> None:
        raise NotImplementedError

    def update_history(self, line_key: str, update: HistoryUpdate) -> None:
        """Replace a line's history with update(stored history)."""
        self.replace_history(line_key, update(self.get_history(line_key)))


class InMemoryBackend(StateBackend):
    """Dictionary-backed store. Records are deep-copied in and out."""

    def __init__(self):
        self._states: Dict[str, Any] = {}
        self._history: Dict[str, List[Dict]] = {}

    def get_current_state(self, scope: str) -> Any:
        return copy.deepcopy(self._states.get(scope, {}))

    def put_current_state(self, scope: str, data: Dict[str, Dict]) -> None:
        self._states[scope] = copy.deepcopy(data)

    def append_history(self, line_key: str, entry: Dict) -> None:
        self._history.setdefault(line_key, []).append(copy.deepcopy(entry))

    def get_history(self, line_key: str) -> List[Dict]:
        return copy.deepcopy(self._history.get(line_key, []))

    def replace_history(self, line_key: str, entries: List[Dict]) -> None:
        self._history[line_key] = copy.deepcopy(entries)

    def scopes(self) -> List[str]:
        return sorted(self._states)


def _safe_name(value: str) -> str:
    """File-system safe name for a scope ("0326/12" -> "0326_12")."""
    cleaned = "".join(c if c.isalnum() or c in '-_' else '_' for c in value)
    return cleaned or "_empty"


def _atomic_write_json(path: Path, data: Any) -> None:
    """Write JSON through a temp file in the same directory, then replace."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        mode='w',
        dir=path.parent,
        prefix='.tmp_state_',
        suffix='.json',
        delete=False,
        encoding='utf-8'
    ) as tmp_file:
        json.dump(data, tmp_file, indent=2, ensure_ascii=False)
        tmp_path = tmp_file.name

    shutil.move(tmp_path, path)


class JsonFileBackend(StateBackend):
    """
    JSON files on a local disk or file share.

    Layout:
        <data_dir>/state/<scope>.json         versioned snapshot wrapper
        <data_dir>/history/<sha1 of key>.json list of history records

    History files are named by hash because composite line keys contain
    separator characters that are not valid in file names.
    """

    def __init__(self, data_dir):
        self.data_dir = Path(data_dir)
        self.state_dir = self.data_dir / "state"
        self.history_dir = self.data_dir / "history"
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            self.history_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PersistenceError(f"Cannot create data directory {self.data_dir}: {e}",
                                   operation="init") from e
        logger.info(f"JsonFileBackend initialized at {self.data_dir}")

    def _state_path(self, scope: str) -> Path:
        return self.state_dir / f"{_safe_name(scope)}.json"

    def _history_path(self, line_key: str) -> Path:
        digest = hashlib.sha1(line_key.encode('utf-8')).hexdigest()
        return self.history_dir / f"{digest}.json"

    def _read(self, path: Path, default: Any, operation: str, scope: str) -> Any:
        if not path.exists():
            return default
        try:
            with open(path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise PersistenceError(f"Cannot read {path.name}: {e}",
                                   operation=operation, scope=scope) from e

    def _write(self, path: Path, data: Any, operation: str, scope: str) -> None:
        try:
            _atomic_write_json(path, data)
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceError(f"Cannot write {path.name}: {e}",
                                   operation=operation, scope=scope) from e

    @contextmanager
    def _locked(self, path: Path, operation: str, scope: str):
        """Hold the lock file of a data file for a read-modify-write cycle."""
        try:
            with FileLock(f"{path}.lock", timeout=LOCK_TIMEOUT_SECONDS):
                yield
        except Timeout as e:
            raise PersistenceError(f"{path.name} is locked by another station",
                                   operation=operation, scope=scope) from e

    def _read_state(self, scope: str, operation: str) -> Any:
        data = self._read(self._state_path(scope), {}, operation, scope)

        # Versioned wrapper vs. older files holding the records directly
        if isinstance(data, dict) and 'data' in data and 'version' in data:
            return data['data']
        return data

    def _write_state(self, scope: str, data: Dict[str, Dict], operation: str) -> None:
        wrapper = {
            'version': STATE_FORMAT_VERSION,
            'timestamp': datetime.now().isoformat(),
            'scope': scope,
            'data': data,
        }
        self._write(self._state_path(scope), wrapper, operation, scope)

    def get_current_state(self, scope: str) -> Any:
        return self._read_state(scope, "get_current_state")

    def put_current_state(self, scope: str, data: Dict[str, Dict]) -> None:
        with self._locked(self._state_path(scope), "put_current_state", scope):
            self._write_state(scope, data, "put_current_state")

    def update_current_state(self, scope: str, update: SnapshotUpdate) -> None:
        with self._locked(self._state_path(scope), "update_current_state", scope):
            data = update(self._read_state(scope, "update_current_state"))
            self._write_state(scope, data, "update_current_state")

    def append_history(self, line_key: str, entry: Dict) -> None:
        path = self._history_path(line_key)
        with self._locked(path, "append_history", line_key):
            entries = self._read(path, [], "append_history", line_key)
            entries.append(entry)
            self._write(path, entries, "append_history", line_key)

    def get_history(self, line_key: str) -> List[Dict]:
        return self._read(self._history_path(line_key), [], "get_history", line_key)

    def replace_history(self, line_key: str, entries: List[Dict]) -> None:
        path = self._history_path(line_key)
        with self._locked(path, "replace_history", line_key):
            self._write(path, entries, "replace_history", line_key)

    def update_history(self, line_key: str, update: HistoryUpdate) -> None:
        path = self._history_path(line_key)
        with self._locked(path, "update_history", line_key):
            entries = update(self._read(path, [], "update_history", line_key))
            self._write(path, entries, "update_history", line_key)


_SCHEMA = """
CREATE TABLE IF NOT EXISTS current_state (
    scope       TEXT PRIMARY KEY,
    data        TEXT NOT NULL,
    updated_at  TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS scan_history (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    line_key    TEXT NOT NULL,
    data        TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_history_line_key ON scan_history (line_key);
"""


class SqliteBackend(StateBackend):
    """SQLite store: one row per scope snapshot, one row per history record."""

    def __init__(self, db_path):
        self._path = str(db_path)
        Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        try:
            with self._connect() as conn:
                conn.executescript(_SCHEMA)
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot open database {self._path}: {e}",
                                   operation="init") from e
        logger.info(f"SqliteBackend initialized at {self._path}")

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._path, timeout=5)
        conn.row_factory = sqlite3.Row
        return conn

    @property
    def db_path(self) -> str:
        return self._path

    def get_current_state(self, scope: str) -> Any:
        try:
            with self._connect() as conn:
                return self._select_state(conn, scope)
        except sqlite3.Error as e:
            raise PersistenceError(str(e), operation="get_current_state", scope=scope) from e

    def put_current_state(self, scope: str, data: Dict[str, Dict]) -> None:
        try:
            with self._connect() as conn:
                self._store_state(conn, scope, data)
        except sqlite3.Error as e:
            raise PersistenceError(str(e), operation="put_current_state", scope=scope) from e

    def update_current_state(self, scope: str, update: SnapshotUpdate) -> None:
        try:
            with self._connect() as conn:
                # Write lock up front: no other station can slip in between read and write
                conn.execute("BEGIN IMMEDIATE")
                self._store_state(conn, scope, update(self._select_state(conn, scope)))
        except sqlite3.Error as e:
            raise PersistenceError(str(e), operation="update_current_state", scope=scope) from e

    @staticmethod
    def _select_state(conn: sqlite3.Connection, scope: str) -> Any:
        row = conn.execute(
            "SELECT data FROM current_state WHERE scope = ?", (scope,)
        ).fetchone()
        return json.loads(row["data"]) if row else {}

    @staticmethod
    def _store_state(conn: sqlite3.Connection, scope: str, data: Dict[str, Dict]) -> None:
        sql = """
            INSERT OR REPLACE INTO current_state (scope, data, updated_at)
            VALUES (?, ?, ?)
        """
        conn.execute(sql, (scope, json.dumps(data, ensure_ascii=False),
                           datetime.now().isoformat()))

    def append_history(self, line_key: str, entry: Dict) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO scan_history (line_key, data) VALUES (?, ?)",
                    (line_key, json.dumps(entry, ensure_ascii=False))
                )
        except sqlite3.Error as e:
            raise PersistenceError(str(e), operation="append_history", scope=line_key) from e

    def get_history(self, line_key: str) -> List[Dict]:
        try:
            with self._connect() as conn:
                return self._select_history(conn, line_key)
        except sqlite3.Error as e:
            raise PersistenceError(str(e), operation="get_history", scope=line_key) from e

    def replace_history(self, line_key: str, entries: List[Dict]) -> None:
        try:
            with self._connect() as conn:
                self._store_history(conn, line_key, entries)
        except sqlite3.Error as e:
            raise PersistenceError(str(e), operation="replace_history", scope=line_key) from e

    def update_history(self, line_key: str, update: HistoryUpdate) -> None:
        try:
            with self._connect() as conn:
                conn.execute("BEGIN IMMEDIATE")
                self._store_history(conn, line_key, update(self._select_history(conn, line_key)))
        except sqlite3.Error as e:
            raise PersistenceError(str(e), operation="update_history", scope=line_key) from e

    @staticmethod
    def _select_history(conn: sqlite3.Connection, line_key: str) -> List[Dict]:
        rows = conn.execute(
            "SELECT data FROM scan_history WHERE line_key = ? ORDER BY id",
            (line_key,)
        ).fetchall()
        return [json.loads(r["data"]) for r in rows]

    @staticmethod
    def _store_history(conn: sqlite3.Connection, line_key: str, entries: List[Dict]) -> None:
        conn.execute("DELETE FROM scan_history WHERE line_key = ?", (line_key,))
        conn.executemany(
            "INSERT INTO scan_history (line_key, data) VALUES (?, ?)",
            [(line_key, json.dumps(e, ensure_ascii=False)) for e in entries]
        )
