"""
Async write-behind queue for snapshot and history persistence.

Keeps scanning responsive when the backing store is slow (file share, remote
database). Two kinds of work are queued:

- Snapshot writes: one pending slot per scope. A newer snapshot for the same
  scope replaces the pending one, so only the latest state reaches the store
  (last write wins).
- History appends: FIFO queue. Every append is executed, in order; audit
  records are never coalesced or dropped.
"""

import copy
import threading
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, Optional, Tuple

from logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class PersistResult:
    """
    Outcome of a persistence request.

    Attributes:
        ok: False if the write failed (sync mode) or could not be queued
        pending: True if the write was queued and has not run yet
        error: Exception raised by the store, if any
    """
    ok: bool
    pending: bool = False
    error: Optional[BaseException] = None

    @property
    def message(self) -> str:
        if self.error is not None:
            return str(self.error)
        return "queued" if self.pending else "saved"


class PersistenceWriter:
    """
    Write-behind queue for store writes.

    Behaviour:
    - schedule_snapshot(scope, data, write_fn): non-blocking, replaces any
      pending snapshot write for the same scope
    - schedule_append(write_fn, *args): non-blocking, queued in order
    - flush(): blocking, waits until all queued work has been written
    - shutdown(): flush then stop the daemon thread

    Concurrency model:
    - schedule_*() and flush() are called from the scanning (UI) thread
    - A background daemon thread runs the write functions
    - Snapshot data is deep-copied on schedule so the caller can keep
      mutating its in-memory lines immediately

    Failures in the background thread are logged and passed to on_error; the
    caller's in-memory state is never rolled back.

    sync_mode=True skips the background thread and writes inline, returning
    the real outcome of each write; useful for unit tests and the CLI.
    """

    def __init__(
        self,
        sync_mode: bool = False,
        on_error: Optional[Callable[[BaseException], None]] = None,
    ) -> None:
        self._sync_mode = sync_mode
        self._on_error = on_error

        if sync_mode:
            return

        self._condition = threading.Condition()
        self._snapshots: Dict[str, Tuple[Callable, Any]] = {}
        self._appends: Deque[Tuple[Callable, tuple]] = deque()
        self._is_writing = False
        self._stop = False
        self._thread = threading.Thread(
            target=self._run, daemon=True, name="scan-state-writer"
        )
        self._thread.start()

    @property
    def sync_mode(self) -> bool:
        return self._sync_mode

    def set_error_handler(self, on_error: Optional[Callable[[BaseException], None]]) -> None:
        self._on_error = on_error

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def schedule_snapshot(self, scope: str, data: Dict[str, Any],
                          write_fn: Callable[[str, Dict[str, Any]], None]) -> PersistResult:
        """Schedule a snapshot write for a scope, replacing any pending one."""
        if self._sync_mode:
            return self._run_inline(write_fn, (scope, data))

        snapshot = copy.deepcopy(data)
        with self._condition:
            self._snapshots[scope] = (write_fn, snapshot)
            self._condition.notify()
        return PersistResult(ok=True, pending=True)

    def schedule_append(self, write_fn: Callable[..., None], *args) -> PersistResult:
        """Queue an append; appends run in the order they were scheduled."""
        if self._sync_mode:
            return self._run_inline(write_fn, args)

        args = copy.deepcopy(args)
        with self._condition:
            self._appends.append((write_fn, args))
            self._condition.notify()
        return PersistResult(ok=True, pending=True)

    def flush(self) -> None:
        """
        Block until nothing is pending and the current write has finished.

        Call before checkpoints (session complete, export, shutdown).
        """
        if self._sync_mode:
            return

        with self._condition:
            while self._snapshots or self._appends or self._is_writing:
                self._condition.wait()

    def shutdown(self) -> None:
        """Flush pending writes then stop the background thread."""
        if self._sync_mode:
            return

        self.flush()
        with self._condition:
            self._stop = True
            self._condition.notify()
        self._thread.join(timeout=10)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _run_inline(self, write_fn: Callable, args: tuple) -> PersistResult:
        try:
            write_fn(*args)
            return PersistResult(ok=True)
        except Exception as e:
            logger.error(f"Persistence write failed: {e}", exc_info=True)
            self._report(e)
            return PersistResult(ok=False, error=e)

    def _report(self, error: BaseException) -> None:
        if self._on_error is not None:
            try:
                self._on_error(error)
            except Exception:
                logger.exception("Persistence error handler failed")

    def _next_job(self) -> Optional[Tuple[Callable, tuple]]:
        # Appends first: a history record is never written after a snapshot
        # that was scheduled later than it
        if self._appends:
            return self._appends.popleft()
        if self._snapshots:
            scope = next(iter(self._snapshots))
            write_fn, data = self._snapshots.pop(scope)
            return write_fn, (scope, data)
        return None

    def _run(self) -> None:
        while True:
            with self._condition:
                while not self._snapshots and not self._appends and not self._stop:
                    self._condition.wait()

                job = self._next_job()
                if job is None and self._stop:
                    break
                self._is_writing = True

            try:
                if job is not None:
                    write_fn, args = job
                    write_fn(*args)
            except Exception as e:
                logger.exception("PersistenceWriter: write failed")
                self._report(e)
            finally:
                with self._condition:
                    self._is_writing = False
                    self._condition.notify_all()
