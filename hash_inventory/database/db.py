"""
Database connection management.
"""
import sqlite3
import logging
from pathlib import Path
from typing import Optional

from ..exceptions import DatabaseError
from .schema import init_schema


class DBManager:
    """
    One connection per manager. sqlite3 connections must stay on the
    thread that opened them, so concurrent readers each build their own.
    """

    def __init__(self, db_path: Path, create: bool = True):
        self.db_path = Path(db_path)
        self.create = create
        self._conn: Optional[sqlite3.Connection] = None

    def connect(self) -> sqlite3.Connection:
        """
        Connects to the SQLite database and configures performance pragmas.
        """
        if self._conn:
            return self._conn

        if not self.create and not self.db_path.exists():
            raise DatabaseError(f"Database not found at {self.db_path}")

        logging.debug(f"Connecting to database: {self.db_path}")
        try:
            self._conn = sqlite3.connect(self.db_path)

            # Safe for single-writer, multi-reader
            self._conn.execute("PRAGMA journal_mode=WAL;")
            self._conn.execute("PRAGMA synchronous=NORMAL;")
            self._conn.execute("PRAGMA temp_store=MEMORY;")
            self._conn.execute("PRAGMA cache_size=-200000;")  # ~200MB cache

            init_schema(self._conn)
        except sqlite3.Error as e:
            self.close()
            raise DatabaseError(f"Cannot open database {self.db_path}: {e}") from e

        return self._conn

    def close(self):
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self.connect()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
