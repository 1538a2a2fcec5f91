import sqlite3
import logging
from dataclasses import dataclass
from typing import Iterable, Iterator, List, Optional, Set, Tuple

from .. import config
from ..exceptions import DatabaseError
from ..models import Disposition, FileRecord, RootRegistry, StorageRoot

_RECORD_COLUMNS = "hash, modified_at, size, content_type, storage_root, relative_path"
# Same rule as models.major_type: the part before the first slash, or the whole value
_MAJOR_TYPE_SQL = (
    "CASE WHEN instr(content_type, '/') > 1 "
    "THEN substr(content_type, 1, instr(content_type, '/') - 1) "
    "ELSE content_type END"
)


@dataclass(frozen=True)
class RankedRow:
    id: int
    group_num: int
    group_size: int
    record: FileRecord
    disposition: Disposition


@dataclass(frozen=True)
class UnvaultedPrimary:
    """A primary outside the vault while a vault root holds the same content."""
    primary_id: int
    primary: FileRecord
    vault_id: int
    vault_full_path: str
    vault_modified_at: str


class InventoryStore:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    # --- Loading ---

    def insert_records(self, records: Iterable[FileRecord]) -> int:
        """Bulk insert; a duplicate full path rolls back the whole load."""
        rows = [
            (r.hash, r.modified_at, r.size, r.content_type, r.storage_root, r.relative_path)
            for r in records
        ]
        try:
            with self.conn:
                self.conn.executemany(
                    f"INSERT INTO records ({_RECORD_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)", rows
                )
        except sqlite3.IntegrityError as e:
            raise DatabaseError(f"Load rejected: {e}") from e

        self.register_roots({r[4] for r in rows})
        logging.info(f"Loaded {len(rows)} records.")
        return len(rows)

    def register_roots(self, paths: Iterable[str]):
        """New roots get the next free priorities, in path order."""
        known = {r.path for r in self.storage_roots()}
        missing = sorted(set(paths) - known)
        if not missing:
            return

        cur = self.conn.cursor()
        cur.execute("SELECT COALESCE(MAX(priority), 0) FROM storage_roots")
        next_priority = cur.fetchone()[0] + 1
        with self.conn:
            for offset, path in enumerate(missing):
                self.conn.execute(
                    "INSERT INTO storage_roots (storage_root, priority, is_vault) VALUES (?, ?, 0)",
                    (path, next_priority + offset),
                )
        logging.info(f"Registered {len(missing)} new storage roots.")

    def set_root(self, root: StorageRoot):
        try:
            with self.conn:
                self.conn.execute("""
                    INSERT INTO storage_roots (storage_root, priority, is_vault) VALUES (?, ?, ?)
                    ON CONFLICT (storage_root) DO UPDATE
                    SET priority = excluded.priority, is_vault = excluded.is_vault
                """, (root.path, root.priority, int(root.is_vault)))
        except sqlite3.IntegrityError as e:
            raise DatabaseError(f"Cannot set root {root.path}: {e}") from e

    # --- Roots ---

    def storage_roots(self) -> List[StorageRoot]:
        cur = self.conn.cursor()
        cur.execute("SELECT storage_root, priority, is_vault FROM storage_roots ORDER BY priority")
        return [StorageRoot(path, priority, bool(vault)) for path, priority, vault in cur.fetchall()]

    def root_registry(self) -> RootRegistry:
        return RootRegistry(self.storage_roots())

    def distinct_roots(self) -> List[str]:
        cur = self.conn.cursor()
        cur.execute("SELECT DISTINCT storage_root FROM records ORDER BY storage_root")
        return [row[0] for row in cur.fetchall()]

    # --- Reading ---

    def stream_root(self, storage_root: str, window: int = config.FETCH_WINDOW) -> Iterator[Tuple[int, str]]:
        """
        Yields (id, full_path) for one root, `window` rows per fetch, so the
        result set is never held in memory at once.
        """
        cur = self.conn.cursor()
        cur.execute("SELECT id, full_path FROM records WHERE storage_root = ?", (storage_root,))
        while True:
            rows = cur.fetchmany(window)
            if not rows:
                break
            yield from rows
        cur.close()

    def iter_ranked(self,
                    disposition: Optional[Disposition] = None,
                    major_types: Optional[Set[str]] = None) -> Iterator[RankedRow]:
        clauses = []
        params: list = []
        if disposition is not None:
            clauses.append("disposition = ?")
            params.append(disposition.value)
        if major_types:
            placeholders = ", ".join("?" for _ in major_types)
            clauses.append(f"{_MAJOR_TYPE_SQL} IN ({placeholders})")
            params.extend(sorted(major_types))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        cur = self.conn.cursor()
        cur.execute(f"""
            SELECT id, group_num, group_size, {_RECORD_COLUMNS}, disposition
            FROM ranked_records {where}
            ORDER BY group_num, disposition, modified_at, priority, id
        """, params)
        for row in cur:
            yield RankedRow(
                id=row[0],
                group_num=row[1],
                group_size=row[2],
                record=_to_record(row[3:9]),
                disposition=Disposition(row[9]),
            )

    def unvaulted_primaries(self) -> List[UnvaultedPrimary]:
        cur = self.conn.cursor()
        cur.execute(f"""
            WITH vault_pick AS (
                SELECT hash, content_type, id, full_path, modified_at,
                       ROW_NUMBER() OVER (
                           PARTITION BY hash, content_type ORDER BY priority, id
                       ) AS rn
                FROM ranked_records
                WHERE is_vault = 1
            )
            SELECT p.id, p.hash, p.modified_at, p.size, p.content_type, p.storage_root,
                   p.relative_path, v.id, v.full_path, v.modified_at
            FROM records_primary p
            JOIN vault_pick v
              ON v.hash = p.hash AND v.content_type = p.content_type AND v.rn = 1
            WHERE p.is_vault = 0
            ORDER BY p.full_path
        """)
        return [
            UnvaultedPrimary(
                primary_id=row[0],
                primary=_to_record(row[1:7]),
                vault_id=row[7],
                vault_full_path=row[8],
                vault_modified_at=row[9],
            )
            for row in cur.fetchall()
        ]

    # --- Removal ---

    def delete_ids(self, ids: Iterable[int], batch_size: int = config.DELETE_BATCH_SIZE) -> int:
        deleted = 0
        batch: List[Tuple[int]] = []
        with self.conn:
            for record_id in ids:
                batch.append((record_id,))
                if len(batch) >= batch_size:
                    deleted += self._delete_batch(batch)
            deleted += self._delete_batch(batch)
        logging.info(f"Deleted {deleted} stale records.")
        return deleted

    def _delete_batch(self, batch: List[Tuple[int]]) -> int:
        if not batch:
            return 0
        before = self.conn.total_changes
        self.conn.executemany("DELETE FROM records WHERE id = ?", batch)
        batch.clear()
        return self.conn.total_changes - before

    def count_records(self) -> int:
        cur = self.conn.cursor()
        cur.execute("SELECT COUNT(*) FROM records")
        return cur.fetchone()[0]


def _to_record(row) -> FileRecord:
    digest, modified_at, size, content_type, storage_root, relative_path = row
    return FileRecord(
        hash=digest,
        modified_at=modified_at,
        size=size,
        content_type=content_type,
        storage_root=storage_root,
        relative_path=relative_path,
    )
