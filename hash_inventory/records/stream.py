"""
Reading and writing record streams (one tab-separated record per line).
"""
import logging
import re
import shutil
import sys
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Set, TextIO

from .. import config
from ..exceptions import DuplicatePathError, LegacyRecordFormatError, RecordFormatError
from ..models import FileRecord, major_type

_HASH_RE = re.compile(r"^[0-9a-f]+$")


def to_line(rec: FileRecord) -> str:
    """Formats a record as one TSV line, without the trailing newline."""
    return "\t".join((
        rec.hash,
        rec.modified_at,
        str(rec.size),
        rec.content_type,
        rec.storage_root,
        rec.relative_path,
    ))


def from_line(line: str, source: str = "", line_number: int = 0) -> FileRecord:
    """Parses one TSV line. Raises RecordFormatError on any malformed field."""
    parts = line.rstrip("\r\n").split("\t")

    if len(parts) == config.LEGACY_RECORD_FIELD_COUNT:
        raise LegacyRecordFormatError(
            "legacy 5-column record without a storage root; regenerate the stream",
            source, line_number,
        )
    if len(parts) != config.RECORD_FIELD_COUNT:
        raise RecordFormatError(
            f"expected {config.RECORD_FIELD_COUNT} tab-separated columns, got {len(parts)}",
            source, line_number,
        )

    digest, modified_at, size_str, content_type, storage_root, relative_path = parts

    if not _HASH_RE.match(digest):
        raise RecordFormatError(f"invalid hash {digest!r}", source, line_number)
    try:
        size = int(size_str)
    except ValueError:
        raise RecordFormatError(f"invalid size {size_str!r}", source, line_number) from None
    if size < 0:
        raise RecordFormatError(f"negative size {size}", source, line_number)
    try:
        datetime.strptime(modified_at, config.TIMESTAMP_FORMAT)
    except ValueError:
        raise RecordFormatError(f"invalid timestamp {modified_at!r}", source, line_number) from None
    if not storage_root or not relative_path:
        raise RecordFormatError("empty storage root or relative path", source, line_number)

    return FileRecord(
        hash=digest,
        modified_at=modified_at,
        size=size,
        content_type=content_type,
        storage_root=storage_root,
        relative_path=relative_path,
    )


def read_records(path: Path) -> List[FileRecord]:
    """
    Strict loader used before any mutating operation: the first bad line
    aborts the load.
    """
    path = Path(path)
    if not path.is_file():
        raise RecordFormatError(f"Invalid record file: {path}")

    records = []
    with path.open("r", encoding="utf-8", newline="\n") as f:
        for line_number, line in enumerate(f, start=1):
            if not line.strip():
                continue
            records.append(from_line(line, str(path), line_number))

    logging.debug(f"Read {len(records)} records from {path}")
    return records


def iter_records_lenient(path: Path) -> Iterator[FileRecord]:
    """Yields every parsable record, logging and skipping bad lines."""
    path = Path(path)
    try:
        f = path.open("r", encoding="utf-8", newline="\n")
    except OSError as e:
        logging.error(f"Cannot read {path}: {e}")
        return

    with f:
        line_number = 0
        while True:
            try:
                line = f.readline()
            except UnicodeDecodeError as e:
                logging.error(f"{path}: undecodable content after line {line_number}: {e}")
                return
            if not line:
                return
            line_number += 1
            if not line.strip():
                continue
            try:
                yield from_line(line, str(path), line_number)
            except RecordFormatError as e:
                logging.warning(f"Skipping record: {e}")


def validate_record_file(path: Path) -> List[str]:
    """
    Checks every line of a record file and returns one message per problem.
    Unlike read_records, nothing is raised and nothing stops at the first error.
    """
    path = Path(path)
    if not path.is_file():
        return [f"{path}: does not exist or is not a regular file"]

    errors = []
    try:
        with path.open("r", encoding="utf-8", newline="\n") as f:
            for line_number, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                try:
                    rec = from_line(line, str(path), line_number)
                except RecordFormatError as e:
                    errors.append(str(e))
                    continue
                if len(rec.hash) != config.HASH_HEX_LENGTH:
                    errors.append(
                        f"{path}:{line_number}: expected a {config.HASH_HEX_LENGTH}-digit "
                        f"{config.HASH_ALGORITHM} hash, got {len(rec.hash)} digits"
                    )
    except (OSError, UnicodeDecodeError) as e:
        errors.append(f"{path}: cannot read: {e}")
    return errors


def read_record_sets(paths: Iterable[Path]) -> List[FileRecord]:
    """Loads several streams and merges them by full path."""
    merged: List[FileRecord] = []
    for p in paths:
        merged.extend(read_records(p))
    return merge_records(merged)


def merge_records(records: Iterable[FileRecord]) -> List[FileRecord]:
    """
    Collapses exact duplicates, keeping first-seen order. Two different
    records for the same full path cannot both be true.
    """
    by_path: Dict[str, FileRecord] = {}
    for rec in records:
        existing = by_path.get(rec.full_path)
        if existing is None:
            by_path[rec.full_path] = rec
        elif existing != rec:
            raise DuplicatePathError(
                f"Conflicting records for {rec.full_path}: {to_line(existing)!r} vs {to_line(rec)!r}"
            )
    return list(by_path.values())


def write_records(out: TextIO, records: Iterable[FileRecord]) -> int:
    count = 0
    for rec in records:
        out.write(to_line(rec))
        out.write("\n")
        count += 1
    return count


def write_record_file(path: Path, records: Iterable[FileRecord]) -> int:
    with Path(path).open("w", encoding="utf-8", newline="\n") as f:
        return write_records(f, records)


def backup_record_file(path: Path, now: Optional[datetime] = None) -> Path:
    """Copies `path` to `<name>.<YYYYmmdd-HHMMSS>.bak` beside it."""
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"Cannot backup {path}: file does not exist")

    stamp = (now or datetime.now()).strftime(config.BACKUP_TIMESTAMP_FORMAT)
    backup = path.with_name(f"{path.name}.{stamp}.bak")
    shutil.copy2(path, backup)
    logging.info(f"Backed up {path} -> {backup}")
    return backup


def default_output_path(now: Optional[datetime] = None) -> Path:
    stamp = (now or datetime.now()).strftime(config.TIMESTAMP_FORMAT)
    return Path(stamp + config.RECORD_FILE_EXTENSION)


def open_output(destination: Optional[str]) -> TextIO:
    """'-' is stdout; anything else is opened as a file for writing."""
    if destination == "-":
        return sys.stdout
    return open(destination, "w", encoding="utf-8", newline="\n")


def split_by_content_type(path: Path,
                          out_dir: Path,
                          prefix: Optional[str] = None,
                          major_types: Optional[Set[str]] = None,
                          by_major: bool = False) -> Dict[str, Path]:
    """
    Writes one stream per content type (or per major type) into out_dir.
    Lines that do not parse are logged and skipped.
    """
    path = Path(path)
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    prefix = prefix or path.stem
    major_types = major_types or set()

    writers: Dict[str, TextIO] = {}
    outputs: Dict[str, Path] = {}
    try:
        for rec in iter_records_lenient(path):
            kind = rec.major_type
            if major_types and kind not in major_types:
                continue

            key = kind if by_major else re.sub(r"[^a-zA-Z0-9]+", "_", rec.content_type)
            if key not in writers:
                outputs[key] = out_dir / f"{prefix}_{key}{config.RECORD_FILE_EXTENSION}"
                writers[key] = outputs[key].open("w", encoding="utf-8", newline="\n")
            writers[key].write(to_line(rec) + "\n")
    finally:
        for w in writers.values():
            w.close()

    logging.info(f"Split {path} into {len(outputs)} files under {out_dir}")
    return outputs


def filter_major_types(records: Iterable[FileRecord], major_types: Optional[Set[str]]) -> List[FileRecord]:
    if not major_types:
        return list(records)
    return [r for r in records if major_type(r.content_type) in major_types]
