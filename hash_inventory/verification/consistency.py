"""
Checks that every record in the store still exists on disk.

One worker per storage root, so separate devices are read in parallel.
Each worker streams its rows from its own connection and appends every
missing file to its own report (`missing_rows_<root>.tsv`), which can be
fed back to `prune-missing` to delete the stale rows.
"""
import logging
import os
import re
import threading
import time
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from .. import config
from ..database.db import DBManager
from ..database.ops import InventoryStore
from ..exceptions import (
    StorageRootUnavailableError,
    VerificationError,
    VerificationTimeoutError,
)
from ..progress import CounterArena, ProgressReporter, RootStatusBoard


@dataclass
class RootResult:
    storage_root: str
    report_path: Path
    checked: int = 0
    missing: int = 0
    interrupted: bool = False


def last_segment(path: str) -> str:
    """'/media/red/' -> 'red', with anything unusual replaced by '_'."""
    if not path:
        return "root"
    normalized = path.rstrip("/")
    segment = normalized.rsplit("/", 1)[-1] if normalized else "root"
    return re.sub(r"[^a-zA-Z0-9._-]", "_", segment) or "root"


def report_names(roots: List[str]) -> Dict[str, str]:
    """Maps each root to a unique label; clashes get _2, _3... in sorted root order."""
    labels: Dict[str, str] = {}
    used = set()
    for root in sorted(roots):
        base = last_segment(root)
        label, n = base, 1
        while label in used:
            n += 1
            label = f"{base}_{n}"
        used.add(label)
        labels[root] = label
    return labels


class ConsistencyVerifier:
    def __init__(self,
                 db_path: Path,
                 report_dir: Path = Path("."),
                 fetch_window: int = config.FETCH_WINDOW,
                 max_runtime: float = config.MAX_RUNTIME_SECONDS,
                 silent: bool = False):
        self.db_path = Path(db_path)
        self.report_dir = Path(report_dir)
        self.fetch_window = fetch_window
        self.max_runtime = max_runtime
        self.silent = silent
        self.counters = CounterArena()
        self._stopping = threading.Event()

    def request_stop(self):
        self._stopping.set()

    def run(self) -> List[RootResult]:
        logging.info("Initializing consistency check...")
        with DBManager(self.db_path, create=False) as conn:
            roots = InventoryStore(conn).distinct_roots()

        # Phase 1: an unmounted root would make every one of its files look missing
        logging.info(f"Phase 1: Validating {len(roots)} mount points...")
        for root in roots:
            if not os.path.isdir(root):
                raise StorageRootUnavailableError(f"Storage root missing or unmounted: {root}")

        labels = report_names(roots)
        self.report_dir.mkdir(parents=True, exist_ok=True)

        board = RootStatusBoard(self.counters, labels, disable=self.silent)
        reporter = ProgressReporter(board.render, config.STATUS_INTERVAL)
        reporter.start()

        logging.info("Phase 2: Scanning filesystems, one worker per storage root...")
        started = time.monotonic()
        try:
            with ThreadPoolExecutor(max_workers=max(len(roots), 1), thread_name_prefix="verify") as executor:
                futures = {executor.submit(self._check_root, root, labels[root]): root for root in roots}
                done, pending = wait(futures, timeout=self.max_runtime, return_when=FIRST_EXCEPTION)

                failed = [f for f in done if f.exception() is not None]
                if failed or pending:
                    self._stopping.set()
                if failed:
                    root = futures[failed[0]]
                    error = failed[0].exception()
                    raise VerificationError(f"Check of {root} failed: {error}") from error
                if pending:
                    raise VerificationTimeoutError(
                        f"Consistency check exceeded {self.max_runtime:.0f}s; "
                        f"{len(pending)} roots unfinished"
                    )
                results = [f.result() for f in futures]
        finally:
            reporter.stop()
            board.close()

        results.sort(key=lambda r: r.storage_root)
        total_missing = sum(r.missing for r in results)
        logging.info(
            f"Consistency check finished in {time.monotonic() - started:.1f}s: "
            f"{sum(r.checked for r in results):,} checked, {total_missing:,} missing."
        )
        return results

    def _check_root(self, storage_root: str, label: str) -> RootResult:
        report_path = self.report_dir / f"{config.MISSING_REPORT_PREFIX}{label}{config.MISSING_REPORT_SUFFIX}"
        result = RootResult(storage_root=storage_root, report_path=report_path)

        with DBManager(self.db_path, create=False) as conn, \
                report_path.open("w", encoding="utf-8", newline="\n") as report:
            store = InventoryStore(conn)
            for record_id, full_path in store.stream_root(storage_root, self.fetch_window):
                if self._stopping.is_set():
                    result.interrupted = True
                    break
                # lexists: lstat only, a dangling symlink still counts as present
                if not os.path.lexists(full_path):
                    report.write(f"{record_id}\t{full_path}\n")
                    result.missing += 1
                result.checked += 1
                self.counters.increment(storage_root)
            report.flush()

        if result.missing:
            logging.warning(f"[{label}] {result.missing:,} missing files -> {report_path}")
        return result


def read_missing_report(path: Path) -> List[int]:
    """Ids from a missing-rows report; malformed lines are logged and skipped."""
    ids = []
    with Path(path).open("r", encoding="utf-8") as f:
        for line_number, line in enumerate(f, start=1):
            if not line.strip():
                continue
            first = line.split("\t", 1)[0]
            try:
                ids.append(int(first))
            except ValueError:
                logging.warning(f"{path}:{line_number}: not a record id: {first!r}")
    return ids
