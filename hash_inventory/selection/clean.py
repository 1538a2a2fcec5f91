import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from tqdm import tqdm

from ..exceptions import StorageRootUnavailableError
from ..models import FileRecord, Outcome
from ..records.stream import backup_record_file, read_records, write_record_file
from ..scanning.filesystem import format_mtime
from ..scanning.fingerprint import ContentTypeDetector, normalize_content_type


@dataclass
class CleanReport:
    source: Path
    examined: int = 0
    kept: List[FileRecord] = field(default_factory=list)
    removed: List[Tuple[FileRecord, str]] = field(default_factory=list)
    backup: Optional[Path] = None
    written: bool = False


class RecordCleaner:
    """
    Drops records whose file is gone (shallow) or no longer matches the
    record's size, timestamp or content type (deep).
    """

    def __init__(self,
                 detector: Optional[ContentTypeDetector] = None,
                 deep: bool = False,
                 show_progress: bool = False):
        if deep and detector is None:
            raise ValueError("deep checks need a content type detector")
        self.detector = detector
        self.deep = deep
        self.show_progress = show_progress
        # Shared across record files
        self._root_cache: Dict[str, bool] = {}

    def clean_file(self, path: Path, dry_run: bool = True) -> CleanReport:
        path = Path(path)
        records = read_records(path)
        self._check_roots(path, records)

        report = CleanReport(source=path, examined=len(records))
        for rec in tqdm(records, desc=path.name, unit="rec", disable=not self.show_progress):
            outcome = self.check(rec)
            if outcome.is_ok:
                report.kept.append(rec)
                logging.debug(f"KEEP   : {rec.full_path}")
            else:
                report.removed.append((rec, outcome.reason))
                logging.info(f"REMOVE : {rec.full_path}  reason={outcome.reason}")

        if not report.removed:
            return report
        if dry_run:
            logging.info(f"Dry run; {path} left unchanged.")
            return report

        report.backup = backup_record_file(path)
        write_record_file(path, report.kept)
        report.written = True
        logging.info(f"Written {len(report.kept)} records to {path}")
        return report

    def check(self, rec: FileRecord) -> Outcome:
        path = Path(rec.full_path)
        if not path.is_file():
            return Outcome.skipped("file missing")
        if not self.deep:
            return Outcome.ok(rec)

        try:
            st = os.stat(path)
        except OSError as e:
            return Outcome.skipped(f"I/O error: {e}", e)

        if st.st_size != rec.size:
            return Outcome.skipped(f"size mismatch (meta={rec.size},disk={st.st_size})")
        actual_ts = format_mtime(st.st_mtime)
        if actual_ts != rec.modified_at:
            return Outcome.skipped(f"timestamp mismatch (meta={rec.modified_at},disk={actual_ts})")
        actual_type = normalize_content_type(self.detector.detect(path))
        if actual_type != rec.content_type:
            return Outcome.skipped(f"mime mismatch (meta={rec.content_type},disk={actual_type})")
        return Outcome.ok(rec)

    def _check_roots(self, source: Path, records: List[FileRecord]):
        """Every storage root must be mounted before any record is judged."""
        for rec in records:
            ok = self._root_cache.get(rec.storage_root)
            if ok is None:
                ok = os.path.isdir(rec.storage_root)
                self._root_cache[rec.storage_root] = ok
            if not ok:
                raise StorageRootUnavailableError(
                    f"In {source.name}: storage root '{rec.storage_root}' for entry "
                    f"'{rec.relative_path}' does not exist or is not a directory"
                )
