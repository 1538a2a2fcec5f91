import logging
import queue
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Set, TextIO

from .. import config
from ..exceptions import PersistenceError, StructuralError
from ..models import FileRecord, major_type
from ..progress import CounterArena, PipelineProgress, ProgressReporter, format_hms
from ..records.stream import to_line
from .filesystem import iter_files
from .fingerprint import DetectorFactory, Fingerprinter, MagicDetector

# Tells a worker or the writer that no more items will arrive
_STOP = object()


@dataclass
class PipelineStats:
    discovered: int = 0
    processed: int = 0      # records flushed to the output
    skipped: int = 0        # rejected by the content-type allow-list
    failed: int = 0         # unreadable files, dropped
    elapsed: float = 0.0
    peak_in_flight: int = 0
    stopped_early: bool = False

    @property
    def rate(self) -> float:
        return self.processed / self.elapsed if self.elapsed > 0 else 0.0


class DigestPipeline:
    """
    Walks a root directory and writes one record per regular file.

    scan (caller thread) -> work queue -> T fingerprint workers
        -> bounded record queue (capacity Q) -> single writer, batches of B

    Output order is completion order, not directory order.
    """

    def __init__(self,
                 root: Path,
                 out: TextIO,
                 threads: int = config.DEFAULT_THREADS,
                 queue_size: int = config.DEFAULT_QUEUE_SIZE,
                 batch_size: int = config.DEFAULT_BATCH_SIZE,
                 include_types: Optional[Set[str]] = None,
                 detector_factory: DetectorFactory = MagicDetector,
                 silent: bool = False):
        self.root = Path(root)
        self.out = out
        self.threads = threads
        self.queue_size = queue_size
        self.batch_size = batch_size
        self.include_types = {t.lower() for t in include_types} if include_types else set()
        self.detector_factory = detector_factory
        self.silent = silent

        self.counters = CounterArena("discovered", "processed", "skipped", "failed")
        self._abort = threading.Event()      # writer failed
        self._stopping = threading.Event()   # stop requested from outside
        self._write_error: Optional[BaseException] = None
        self._peak_lock = threading.Lock()
        self._peak_in_flight = 0

    def request_stop(self):
        """Stop accepting new files; in-flight work is flushed before run() returns."""
        if not self._stopping.is_set():
            logging.warning("Stop requested: finishing in-flight files and flushing output.")
        self._stopping.set()

    def run(self) -> PipelineStats:
        self._validate()

        if not self.silent:
            logging.info(f"Starting with {self.threads} threads, queue={self.queue_size}, batch={self.batch_size}.")

        started = time.monotonic()
        work_q: queue.Queue = queue.Queue(maxsize=self.queue_size)
        record_q: queue.Queue = queue.Queue(maxsize=self.queue_size)

        workers = [
            threading.Thread(
                target=self._fingerprint_worker,
                args=(Fingerprinter(self.root, self.detector_factory()), work_q, record_q),
                name=f"fingerprint-{i}",
            )
            for i in range(self.threads)
        ]
        writer = threading.Thread(target=self._writer, args=(record_q,), name="writer")

        progress = PipelineProgress(self.counters, disable=self.silent)
        reporter = ProgressReporter(progress.render, config.PIPELINE_PROGRESS_INTERVAL)

        writer.start()
        for w in workers:
            w.start()
        reporter.start()

        try:
            self._scan(work_q)
        finally:
            # Workers always drain the work queue, so these puts cannot block forever
            for _ in workers:
                work_q.put(_STOP)
            for w in workers:
                w.join()
            record_q.put(_STOP)
            writer.join()
            reporter.stop()
            progress.close()

        stats = self._stats(time.monotonic() - started)

        if self._write_error is not None:
            raise PersistenceError(f"Failed to write records: {self._write_error}") from self._write_error

        if not self.silent:
            logging.info(
                f"Done. elapsed {format_hms(stats.elapsed)}, hashed {stats.processed:,}, "
                f"skipped {stats.skipped:,}, failed {stats.failed:,}, {stats.rate:.2f} files/sec"
            )
        return stats

    def _validate(self):
        if not self.root.is_dir():
            raise StructuralError(f"{self.root} is not a directory.")
        for name in ("threads", "queue_size", "batch_size"):
            if getattr(self, name) < 1:
                raise StructuralError(f"{name} must be at least 1")

    def _scan(self, work_q: queue.Queue):
        detector = self.detector_factory() if self.include_types else None

        for path in iter_files(self.root):
            if self._stopping.is_set() or self._abort.is_set():
                break

            content_type = None
            if detector is not None:
                content_type = detector.detect(path)
                if major_type(content_type) not in self.include_types:
                    self.counters.increment("skipped")
                    continue

            self.counters.increment("discovered")
            if not self._put(work_q, (path, content_type)):
                break

    def _fingerprint_worker(self, fingerprinter: Fingerprinter, work_q: queue.Queue, record_q: queue.Queue):
        while True:
            item = work_q.get()
            if item is _STOP:
                return
            if self._stopping.is_set() or self._abort.is_set():
                continue  # drain without working

            path, content_type = item
            outcome = fingerprinter.fingerprint(path, content_type)
            if outcome.is_ok:
                self._put(record_q, outcome.value)
            else:
                self.counters.increment("failed")
                logging.error(f"ERROR processing {path}: {outcome.reason}")

    def _writer(self, record_q: queue.Queue):
        batch: List[FileRecord] = []
        while True:
            item = record_q.get()
            if item is _STOP:
                break
            if self._abort.is_set():
                continue  # keep draining so producers never block on a dead writer

            batch.append(item)
            self._note_in_flight(record_q.qsize() + len(batch))
            if len(batch) >= self.batch_size:
                self._flush(batch)

        if not self._abort.is_set():
            self._flush(batch)

    def _flush(self, batch: List[FileRecord]):
        if not batch:
            return
        try:
            self.out.write("".join(to_line(r) + "\n" for r in batch))
            self.out.flush()
        except Exception as e:
            self._write_error = e
            self._abort.set()
            logging.error(f"ERROR writing results: {e}")
            return
        self.counters.increment("processed", len(batch))
        batch.clear()

    def _put(self, q: queue.Queue, item) -> bool:
        """Blocking put that gives up once the writer has failed."""
        while not self._abort.is_set():
            try:
                q.put(item, timeout=config.QUEUE_POLL_INTERVAL)
                return True
            except queue.Full:
                continue
        return False

    def _note_in_flight(self, count: int):
        with self._peak_lock:
            if count > self._peak_in_flight:
                self._peak_in_flight = count

    def _stats(self, elapsed: float) -> PipelineStats:
        snap = self.counters.snapshot()
        return PipelineStats(
            discovered=snap["discovered"],
            processed=snap["processed"],
            skipped=snap["skipped"],
            failed=snap["failed"],
            elapsed=elapsed,
            peak_in_flight=self._peak_in_flight,
            stopped_early=self._stopping.is_set(),
        )
