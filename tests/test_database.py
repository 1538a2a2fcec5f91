import pytest

from hash_inventory import config
from hash_inventory.database.db import DBManager
from hash_inventory.exceptions import DatabaseError
from hash_inventory.models import Disposition, StorageRoot

H1 = "a" * 40
H2 = "b" * 40


def test_schema_is_idempotent(conn):
    from hash_inventory.database.schema import init_schema
    init_schema(conn)
    init_schema(conn)
    names = {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type IN ('table', 'view')")}
    assert {"records", "storage_roots", "ranked_records", "records_primary", "records_redundant"} <= names


def test_ids_start_at_known_value(store, make_record):
    store.insert_records([make_record(path="a"), make_record(path="b")])
    ids = sorted(r[0] for r in store.conn.execute("SELECT id FROM records"))
    assert ids == [config.FIRST_RECORD_ID, config.FIRST_RECORD_ID + 1]


def test_insert_registers_roots_in_order(store, make_record):
    store.insert_records([make_record(root="/vol/b"), make_record(root="/vol/a")])
    roots = store.storage_roots()
    assert [(r.path, r.priority) for r in roots] == [("/vol/a", 1), ("/vol/b", 2)]

    store.register_roots(["/vol/c", "/vol/a"])
    assert store.root_registry().priority("/vol/c") == 3


def test_duplicate_full_path_is_rejected(store, make_record):
    store.insert_records([make_record(path="x")])
    with pytest.raises(DatabaseError):
        store.insert_records([make_record(path="x", size=99)])
    assert store.count_records() == 1


def test_ranked_view_prefers_priority(store, make_record):
    store.set_root(StorageRoot("/vol/a", 20))
    store.set_root(StorageRoot("/vol/b", 10))
    store.insert_records([make_record(root="/vol/a"), make_record(root="/vol/b")])

    rows = list(store.iter_ranked())

    assert len(rows) == 2
    assert all(r.group_size == 2 for r in rows)
    primary, = [r for r in rows if r.disposition is Disposition.PRIMARY]
    assert primary.record.storage_root == "/vol/b"


def test_ranked_view_prefers_oldest(store, make_record):
    store.set_root(StorageRoot("/vol/a", 10))
    store.set_root(StorageRoot("/vol/b", 20))
    store.insert_records([
        make_record(root="/vol/a", modified_at="2020-01-02T00:00:00"),
        make_record(root="/vol/b", modified_at="2020-01-01T00:00:00"),
    ])

    primary, = store.iter_ranked(Disposition.PRIMARY)
    assert primary.record.storage_root == "/vol/b"


def test_iter_ranked_mime_filter(store, make_record):
    store.insert_records([
        make_record(path="a.jpg"),
        make_record(digest=H2, path="b.txt", content_type="text/plain"),
    ])
    rows = list(store.iter_ranked(major_types={"text"}))
    assert [r.record.relative_path for r in rows] == ["b.txt"]


def test_stream_root_windows(store, make_record):
    store.insert_records([make_record(path=f"f{i}") for i in range(7)] + [make_record(root="/vol/z", path="z")])

    rows = list(store.stream_root("/vol/a", window=3))

    assert len(rows) == 7
    assert all(full.startswith("/vol/a/") for _, full in rows)


def test_delete_ids(store, make_record):
    store.insert_records([make_record(path=f"f{i}") for i in range(5)])
    ids = [r[0] for r in store.conn.execute("SELECT id FROM records ORDER BY id")]

    deleted = store.delete_ids(ids[:3] + [1], batch_size=2)

    assert deleted == 3
    assert store.count_records() == 2


def test_unvaulted_primaries(store, make_record):
    store.set_root(StorageRoot("/work", 1))
    store.set_root(StorageRoot("/vault", 2, is_vault=True))
    store.insert_records([
        make_record(digest=H1, root="/work", path="a.jpg"),
        make_record(digest=H1, root="/vault", path="a.jpg"),
        make_record(digest=H2, root="/work", path="only-here.jpg"),
    ])

    rows = store.unvaulted_primaries()

    assert len(rows) == 1
    assert rows[0].primary.full_path == "/work/a.jpg"
    assert rows[0].vault_full_path == "/vault/a.jpg"


def test_set_root_priority_must_be_unique(store):
    store.set_root(StorageRoot("/a", 1))
    with pytest.raises(DatabaseError):
        store.set_root(StorageRoot("/b", 1))


def test_db_manager_requires_existing_file(tmp_path):
    with pytest.raises(DatabaseError):
        DBManager(tmp_path / "nope.db", create=False).connect()

    with DBManager(tmp_path / "new.db") as conn:
        conn.execute("SELECT COUNT(*) FROM records")
    assert (tmp_path / "new.db").exists()


def test_iter_ranked_mime_filter_is_literal(store, make_record):
    store.insert_records([
        make_record(path="a.jpg"),
        make_record(digest=H2, path="b.bin", content_type="application/octet-stream"),
    ])

    assert list(store.iter_ranked(major_types={"imag_"})) == []
    assert list(store.iter_ranked(major_types={"%"})) == []
    rows = list(store.iter_ranked(major_types={"image", "application"}))
    assert sorted(r.record.relative_path for r in rows) == ["a.jpg", "b.bin"]
