import pytest
import sqlite3
from pathlib import Path

from hash_inventory.database.schema import init_schema
from hash_inventory.database.ops import InventoryStore
from hash_inventory.models import FileRecord

SUFFIX_TYPES = {
    ".jpg": "image/jpeg",
    ".png": "image/png",
    ".txt": "text/plain",
    ".mp4": "video/mp4",
}


class FakeDetector:
    """Content type by file suffix, so tests never need libmagic."""

    def __init__(self):
        self.calls = 0

    def detect(self, path):
        self.calls += 1
        return SUFFIX_TYPES.get(Path(path).suffix.lower(), "application/octet-stream")


@pytest.fixture
def conn():
    """Returns an in-memory SQLite connection with the schema initialized."""
    c = sqlite3.connect(":memory:")
    init_schema(c)
    try:
        yield c
    finally:
        c.close()


@pytest.fixture
def store(conn):
    """Returns an InventoryStore attached to the in-memory DB."""
    return InventoryStore(conn)


@pytest.fixture
def detector():
    return FakeDetector()


@pytest.fixture
def make_record():
    def _make(digest="a" * 40, modified_at="2020-01-01T00:00:00", root="/vol/a",
              path="x.jpg", content_type="image/jpeg", size=10):
        return FileRecord(
            hash=digest,
            modified_at=modified_at,
            size=size,
            content_type=content_type,
            storage_root=root,
            relative_path=path,
        )
    return _make


@pytest.fixture
def make_tree(tmp_path):
    """Creates files from {relative_path: bytes} under a fresh directory."""
    def _make(files, name="root"):
        root = tmp_path / name
        root.mkdir(parents=True, exist_ok=True)
        for rel, data in files.items():
            p = root / rel
            p.parent.mkdir(parents=True, exist_ok=True)
            p.write_bytes(data)
        return root
    return _make
