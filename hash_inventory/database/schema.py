"""
Database schema definitions.
"""
import sqlite3
import logging

from .. import config

CURRENT_SCHEMA_VERSION = 1


def init_schema(conn: sqlite3.Connection):
    """
    Applies the core schema to the database.
    Idempotent: safe to run on every startup.
    """
    with conn:
        # 1. Version Tracking (For future migrations)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY
            );
        """)

        cur = conn.cursor()
        cur.execute("SELECT version FROM schema_version")
        if not cur.fetchone():
            conn.execute("INSERT INTO schema_version (version) VALUES (?)", (CURRENT_SCHEMA_VERSION,))

        # 2. Fingerprinted files
        conn.execute("""
        CREATE TABLE IF NOT EXISTS records (
            id              INTEGER PRIMARY KEY AUTOINCREMENT,
            hash            TEXT NOT NULL,        -- lowercase hex digest of the contents
            content_type    TEXT NOT NULL,        -- lowercase major/minor
            modified_at     TEXT NOT NULL,        -- YYYY-MM-DDTHH:MM:SS, local time
            size            INTEGER NOT NULL CHECK (size >= 0),
            storage_root    TEXT NOT NULL,        -- mount point or common root
            relative_path   TEXT NOT NULL,        -- relative to storage_root
            full_path       TEXT GENERATED ALWAYS AS (storage_root || '/' || relative_path) STORED NOT NULL
        );
        """)

        # Ids start at a known value
        conn.execute("""
            INSERT INTO sqlite_sequence (name, seq)
            SELECT 'records', ?
            WHERE NOT EXISTS (SELECT 1 FROM sqlite_sequence WHERE name = 'records')
        """, (config.FIRST_RECORD_ID - 1,))

        # 3. Storage roots: priority order and vault flag
        conn.execute("""
        CREATE TABLE IF NOT EXISTS storage_roots (
            storage_root    TEXT PRIMARY KEY,
            priority        INTEGER NOT NULL UNIQUE CHECK (priority > 0),
            is_vault        INTEGER NOT NULL DEFAULT 0
        );
        """)

        # 4. Indices
        conn.execute("CREATE UNIQUE INDEX IF NOT EXISTS idx_records_full_path ON records(full_path);")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_records_group ON records(hash, content_type);")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_records_root ON records(storage_root);")

        # 5. Ranked view: one primary per (hash, content_type)
        conn.execute("""
        CREATE VIEW IF NOT EXISTS ranked_records AS
        WITH joined AS (
            SELECT r.*,
                   COALESCE(s.priority, 2147483647) AS priority,
                   COALESCE(s.is_vault, 0)          AS is_vault
            FROM records r
            LEFT JOIN storage_roots s ON s.storage_root = r.storage_root
        ),
        ranked AS (
            SELECT joined.*,
                   DENSE_RANK() OVER (ORDER BY hash, content_type) AS group_num,
                   ROW_NUMBER() OVER (
                       PARTITION BY hash, content_type
                       ORDER BY modified_at ASC, priority ASC, id ASC
                   ) AS rn,
                   COUNT(*) OVER (PARTITION BY hash, content_type) AS group_size
            FROM joined
        )
        SELECT id, group_num, group_size, hash, content_type, modified_at, size,
               storage_root, relative_path, full_path, priority, is_vault,
               CASE WHEN rn = 1 THEN 'primary' ELSE 'redundant' END AS disposition
        FROM ranked;
        """)
        conn.execute("""
            CREATE VIEW IF NOT EXISTS records_primary AS
            SELECT * FROM ranked_records WHERE disposition = 'primary';
        """)
        conn.execute("""
            CREATE VIEW IF NOT EXISTS records_redundant AS
            SELECT * FROM ranked_records WHERE disposition = 'redundant';
        """)

    logging.debug("Database schema initialized.")
