"""
Canonical selection: group records by content identity and pick one
primary per group.

Rank within a group:
  1. modified_at ascending (oldest copy wins)
  2. storage root priority ascending (lower number wins)
  3. (storage_root, relative_path) descending, only to make the order total
"""
import logging
import os
from collections import OrderedDict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set, Tuple

from ..exceptions import DestinationError
from ..models import FileRecord, Group, RootRegistry
from ..records.stream import filter_major_types, merge_records
from ..scanning.filesystem import iter_files
from .mover import copy_and_verify, delete_paths


def rank_group(records: Iterable[FileRecord], registry: Optional[RootRegistry] = None) -> List[FileRecord]:
    """Returns the members in rank order; the first one is the primary."""
    registry = registry or RootRegistry()
    # Two stable sorts: the tie-break first, then the real keys
    ordered = sorted(records, key=lambda r: (r.storage_root, r.relative_path), reverse=True)
    ordered.sort(key=lambda r: (r.modified_at, registry.priority(r.storage_root)))
    return ordered


def group_records(records: Iterable[FileRecord]) -> "OrderedDict[Tuple[str, str], List[FileRecord]]":
    """Groups by (hash, content_type), keeping first-seen group order."""
    groups: "OrderedDict[Tuple[str, str], List[FileRecord]]" = OrderedDict()
    for rec in records:
        groups.setdefault(rec.group_key, []).append(rec)
    return groups


def classify(records: Iterable[FileRecord], registry: Optional[RootRegistry] = None) -> List[Group]:
    groups = []
    for key, members in group_records(records).items():
        ranked = rank_group(members, registry)
        groups.append(Group(key=key, primary=ranked[0], redundant=ranked[1:]))
    return groups


@dataclass
class SelectionResult:
    groups: List[Group] = field(default_factory=list)
    copied: List[Path] = field(default_factory=list)
    prune_candidates: List[FileRecord] = field(default_factory=list)
    deleted: List[FileRecord] = field(default_factory=list)

    @property
    def selected_size(self) -> int:
        return sum(g.primary.size for g in self.groups)

    @property
    def unselected_size(self) -> int:
        return sum(r.size for g in self.groups for r in g.redundant)


def select(reference: Iterable[FileRecord],
           data: Iterable[FileRecord],
           registry: Optional[RootRegistry] = None,
           major_types: Optional[Set[str]] = None,
           copy_to: Optional[Path] = None,
           prune: bool = False,
           force: bool = False) -> SelectionResult:
    """
    Picks the primary of every group whose hash is also in `reference`.

    copy_to: copy each primary below this directory, verified.
    prune:   collect every redundant member; they are deleted only with
             `force`, after all groups have been processed.
    """
    registry = registry or RootRegistry()
    reference_hashes = {r.hash for r in reference}

    candidates = merge_records(r for r in data if r.hash in reference_hashes)
    candidates = filter_major_types(candidates, major_types)
    registry.validate(candidates)

    if copy_to is not None:
        check_destination(Path(copy_to))

    result = SelectionResult(groups=classify(candidates, registry))

    for group in result.groups:
        if copy_to is not None:
            result.copied.append(copy_and_verify(group.primary, Path(copy_to)))
        if prune:
            result.prune_candidates.extend(group.redundant)

    if prune and force and result.prune_candidates:
        logging.info(f"Pruning {len(result.prune_candidates)} redundant files...")
        result.deleted = _delete_records(result.prune_candidates)
    elif prune and result.prune_candidates:
        logging.info(f"[DRY RUN] {len(result.prune_candidates)} redundant files would be pruned (use --force).")

    return result


@dataclass
class PurgeResult:
    matched: Dict[Tuple[str, str], List[FileRecord]] = field(default_factory=dict)
    retained: List[FileRecord] = field(default_factory=list)
    protected: List[FileRecord] = field(default_factory=list)
    reference_keys: int = 0
    deleted: List[FileRecord] = field(default_factory=list)

    @property
    def matched_records(self) -> List[FileRecord]:
        return [r for members in self.matched.values() for r in members]

    @property
    def reclaimable_bytes(self) -> int:
        return sum(r.size for r in self.matched_records)

    @property
    def deleted_bytes(self) -> int:
        return sum(r.size for r in self.deleted)


def purge(reference: Iterable[FileRecord],
          target: Iterable[FileRecord],
          major_types: Optional[Set[str]] = None,
          delete: bool = False) -> PurgeResult:
    """
    Every target record whose (hash, content_type) occurs in the reference
    set is matched for removal. A target record that is itself one of the
    reference files is never removed.
    """
    reference = list(reference)
    reference_keys = {r.group_key for r in reference}
    reference_paths = {r.full_path for r in reference}

    result = PurgeResult(reference_keys=len(reference_keys))
    for rec in target:
        in_scope = not major_types or rec.major_type in major_types
        if in_scope and rec.group_key in reference_keys:
            if rec.full_path in reference_paths:
                result.protected.append(rec)
            else:
                result.matched.setdefault(rec.group_key, []).append(rec)
        else:
            result.retained.append(rec)

    if delete and result.matched:
        result.deleted = _delete_records(result.matched_records)

    return result


def intersect(first: Iterable[FileRecord],
              second: Iterable[FileRecord],
              major_types: Optional[Set[str]] = None) -> List[FileRecord]:
    """Records of `first` whose hash also appears in `second`."""
    hashes = {r.hash for r in second}
    return filter_major_types((r for r in first if r.hash in hashes), major_types)


def view(records: Iterable[FileRecord],
         registry: Optional[RootRegistry] = None,
         major_types: Optional[Set[str]] = None,
         duplicates_only: bool = False) -> List[Group]:
    """Read-only ranked grouping."""
    groups = classify(filter_major_types(records, major_types), registry)
    if duplicates_only:
        groups = [g for g in groups if g.size > 1]
    return groups


@dataclass
class RemoveResult:
    matched: List[FileRecord] = field(default_factory=list)
    unknown: List[Path] = field(default_factory=list)
    to_remove: List[FileRecord] = field(default_factory=list)
    deleted: List[FileRecord] = field(default_factory=list)


def remove(records: Iterable[FileRecord],
           targets: Iterable[Path],
           delete: bool = False) -> RemoveResult:
    """
    Keeps the given files and marks every other copy of their content for
    removal.

    targets: files, or directories whose regular files are all kept.
    Files without a record are reported in `unknown`. Deletion only
    happens with `delete`.
    """
    records = list(records)
    by_path = {os.path.normpath(r.full_path): r for r in records}
    groups = group_records(records)

    result = RemoveResult()
    kept: Dict[str, FileRecord] = {}
    for path in _expand_targets(targets):
        rec = by_path.get(os.path.normpath(str(path)))
        if rec is None:
            result.unknown.append(path)
        elif rec.full_path not in kept:
            kept[rec.full_path] = rec
            result.matched.append(rec)

    marked: Dict[str, FileRecord] = {}
    for rec in result.matched:
        for member in groups[rec.group_key]:
            if member.full_path not in kept:
                marked.setdefault(member.full_path, member)
    result.to_remove = list(marked.values())

    if delete and result.to_remove:
        result.deleted = _delete_records(result.to_remove)
    elif result.to_remove:
        logging.info(f"[DRY RUN] {len(result.to_remove)} other copies would be removed (use --delete).")

    return result


def _expand_targets(targets: Iterable[Path]) -> List[Path]:
    paths: List[Path] = []
    for target in targets:
        target = Path(os.path.abspath(target))
        if target.is_dir():
            paths.extend(iter_files(target))
        else:
            paths.append(target)
    return paths


def check_destination(dest: Path):
    if not dest.is_dir() or not os.access(dest, os.R_OK | os.W_OK):
        raise DestinationError(f"Copy target must be an existing, readable/writable directory: {dest}")


def _delete_records(records: List[FileRecord]) -> List[FileRecord]:
    """Deletes the records' files; returns only those actually removed from disk."""
    removed = set(delete_paths([Path(r.full_path) for r in records]))
    return [r for r in records if Path(r.full_path) in removed]
