import shutil
from pathlib import Path

import pytest

from hash_inventory.database.db import DBManager
from hash_inventory.database.ops import InventoryStore
from hash_inventory.exceptions import DatabaseError, StorageRootUnavailableError, VerificationTimeoutError
from hash_inventory.verification.consistency import (
    ConsistencyVerifier,
    RootResult,
    last_segment,
    read_missing_report,
    report_names,
)


@pytest.fixture
def inventory(tmp_path, make_record):
    """A file-backed store with two real roots; one file per root is deleted afterwards."""
    red = tmp_path / "media" / "red"
    blue = tmp_path / "media" / "blue"
    records = []
    for root in (red, blue):
        for i in range(4):
            p = root / f"dir/f{i}.bin"
            p.parent.mkdir(parents=True, exist_ok=True)
            p.write_bytes(b"x")
            records.append(make_record(root=str(root), path=f"dir/f{i}.bin"))

    db = tmp_path / "inventory.db"
    with DBManager(db) as conn:
        InventoryStore(conn).insert_records(records)

    (red / "dir" / "f1.bin").unlink()
    (blue / "dir" / "f3.bin").unlink()
    return db, red, blue


def test_last_segment():
    assert last_segment("/media/red/") == "red"
    assert last_segment("/mnt/My Disk") == "My_Disk"
    assert last_segment("/") == "root"


def test_report_names_are_unique():
    labels = report_names(["/a/photos", "/b/photos", "/c/misc"])
    assert labels == {"/a/photos": "photos", "/b/photos": "photos_2", "/c/misc": "misc"}


def test_missing_rows_are_reported_per_root(inventory, tmp_path):
    db, red, blue = inventory
    reports = tmp_path / "reports"

    results = ConsistencyVerifier(db, report_dir=reports, fetch_window=2, silent=True).run()

    by_root = {r.storage_root: r for r in results}
    assert by_root[str(red)].checked == 4
    assert by_root[str(red)].missing == 1
    assert by_root[str(red)].report_path.name == "missing_rows_red.tsv"

    lines = by_root[str(blue)].report_path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 1
    record_id, full_path = lines[0].split("\t")
    assert full_path == f"{blue}/dir/f3.bin"
    assert read_missing_report(by_root[str(blue)].report_path) == [int(record_id)]


def test_unmounted_root_aborts_before_scanning(inventory, tmp_path):
    db, red, _ = inventory
    shutil.rmtree(red)
    reports = tmp_path / "reports"

    with pytest.raises(StorageRootUnavailableError):
        ConsistencyVerifier(db, report_dir=reports, silent=True).run()
    assert not reports.exists() or list(reports.iterdir()) == []


def test_pruning_reported_rows(inventory, tmp_path):
    db, _, _ = inventory
    results = ConsistencyVerifier(db, report_dir=tmp_path, silent=True).run()

    ids = [i for r in results for i in read_missing_report(r.report_path)]
    with DBManager(db, create=False) as conn:
        store = InventoryStore(conn)
        assert store.delete_ids(ids) == 2
        assert store.count_records() == 6


def test_timeout_is_fatal(inventory, tmp_path, monkeypatch):
    db, _, _ = inventory

    def stuck(self, storage_root, label):
        self._stopping.wait(5)
        return RootResult(storage_root, Path(label), interrupted=True)

    monkeypatch.setattr(ConsistencyVerifier, "_check_root", stuck)
    with pytest.raises(VerificationTimeoutError):
        ConsistencyVerifier(db, report_dir=tmp_path, max_runtime=0.1, silent=True).run()


def test_missing_database(tmp_path):
    with pytest.raises(DatabaseError):
        ConsistencyVerifier(tmp_path / "nope.db", silent=True).run()


def test_read_missing_report_skips_garbage(tmp_path):
    report = tmp_path / "missing_rows_x.tsv"
    report.write_text("1000001\t/a/b\nheader\t/x\n\n1000005\t/a/c\n", encoding="utf-8")
    assert read_missing_report(report) == [1000001, 1000005]
