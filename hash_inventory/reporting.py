import logging
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set

from . import config
from .models import FileRecord, Group, major_type
from .records.stream import iter_records_lenient


@dataclass
class InventorySummary:
    total: int = 0
    total_size: int = 0
    hashes: Set[str] = field(default_factory=set)
    content_types: Counter = field(default_factory=Counter)
    size_buckets: Dict[str, int] = field(
        default_factory=lambda: {label: 0 for label, _ in config.SIZE_BUCKETS}
    )
    oldest: Optional[str] = None
    newest: Optional[str] = None

    def add(self, rec: FileRecord):
        self.total += 1
        self.total_size += rec.size
        self.hashes.add(rec.hash)
        self.content_types[rec.content_type] += 1
        self.size_buckets[size_bucket(rec.size)] += 1

        # Fixed-width timestamps compare correctly as strings
        if self.oldest is None or rec.modified_at < self.oldest:
            self.oldest = rec.modified_at
        if self.newest is None or rec.modified_at > self.newest:
            self.newest = rec.modified_at

    @property
    def unique_hashes(self) -> int:
        return len(self.hashes)

    @property
    def duplicates(self) -> int:
        return self.total - self.unique_hashes

    @property
    def duplication_ratio(self) -> float:
        return self.duplicates / self.total if self.total else 0.0

    def major_types(self) -> Dict[str, int]:
        by_major: Counter = Counter()
        for content_type, count in self.content_types.items():
            by_major[major_type(content_type)] += count
        return dict(sorted(by_major.items()))


def size_bucket(size: int) -> str:
    for label, upper in config.SIZE_BUCKETS:
        if upper is None or size < upper:
            return label
    return config.SIZE_BUCKETS[-1][0]


def summarize(records: Iterable[FileRecord]) -> InventorySummary:
    summary = InventorySummary()
    for rec in records:
        summary.add(rec)
    return summary


def summarize_files(paths: Iterable[Path]) -> InventorySummary:
    """Read-only: unreadable files and bad lines are logged, never raised."""
    summary = InventorySummary()
    for path in paths:
        path = Path(path)
        if not path.is_file():
            logging.error(f"ERROR: {path} is not a valid file.")
            continue
        for rec in iter_records_lenient(path):
            summary.add(rec)
    return summary


def human_readable(num_bytes: int) -> str:
    """1024-based units: 512 -> '512 B', 2048 -> '2.000 KB'."""
    if num_bytes < 1024:
        return f"{num_bytes} B"
    value = float(num_bytes)
    for unit in ("KB", "MB", "GB", "TB", "PB", "EB"):
        value /= 1024
        if value < 1024 or unit == "EB":
            return f"{value:.3f} {unit}"
    return f"{num_bytes} B"


def format_summary(summary: InventorySummary, detail: bool = False) -> List[str]:
    lines = [
        "Meta Summary:",
        f"  Total entries     : {summary.total:,}",
        f"  Unique hashes     : {summary.unique_hashes:,}",
    ]
    if summary.total:
        lines.append(f"  Duplicated hashes : {summary.duplicates:,} ({100 * summary.duplication_ratio:.1f}%)")
    lines.append(f"  Total size        : {summary.total_size / 1_000_000_000:.1f} GB")
    if summary.oldest:
        lines.append(f"  Oldest timestamp  : {summary.oldest}")
    if summary.newest:
        lines.append(f"  Newest timestamp  : {summary.newest}")

    if detail:
        lines.append("  MIME types (full list):")
        counts = dict(sorted(summary.content_types.items()))
    else:
        lines.append("  MIME types (by major type):")
        counts = summary.major_types()
    for name, count in counts.items():
        lines.append(f"    {name:<16} : {count:,} {'file' if count == 1 else 'files'}")

    if detail:
        lines.append("  Size distribution:")
        for label, count in summary.size_buckets.items():
            lines.append(f"    {label:<16} : {count:,}")
    return lines


def format_group(group: Group) -> List[str]:
    digest, content_type = group.key
    lines = [f"GROUP : {group.size:,} : {digest} : {content_type}"]
    for rec in group.members:
        lines.append(f"  - {group.disposition(rec).value:<9} : {rec.modified_at} : {rec.full_path}")
    return lines
