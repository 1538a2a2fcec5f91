import pytest

from hash_inventory import main as cli
from hash_inventory.records.stream import read_records, write_record_file

from conftest import FakeDetector

H1 = "a" * 40
H2 = "b" * 40


@pytest.fixture(autouse=True)
def quiet_logging(monkeypatch):
    """Keep main() from re-pointing the root logger at pytest's captured streams."""
    monkeypatch.setattr(cli, "setup_logging", lambda verbose, log_file=None: None)


def test_generate_writes_record_file(make_tree, tmp_path, monkeypatch):
    monkeypatch.setattr(cli, "MagicDetector", FakeDetector)
    root = make_tree({"a.jpg": b"1", "sub/b.txt": b"2"})
    out = tmp_path / "out.meta"

    assert cli.main(["generate", str(root), "-o", str(out), "-s", "-t", "1"]) == 0

    records = read_records(out)
    assert sorted(r.relative_path for r in records) == ["a.jpg", "sub/b.txt"]
    assert {r.content_type for r in records} == {"image/jpeg", "text/plain"}


def test_generate_to_stdout(make_tree, capsys, monkeypatch):
    monkeypatch.setattr(cli, "MagicDetector", FakeDetector)
    root = make_tree({"a.jpg": b"1"})

    assert cli.main(["generate", str(root), "-o", "-"]) == 0

    line, = capsys.readouterr().out.splitlines()
    assert line.endswith("\ta.jpg")


def test_generate_missing_root_is_invalid(tmp_path):
    assert cli.main(["generate", str(tmp_path / "nope"), "-o", str(tmp_path / "x.meta"), "-s"]) == 2
    assert not (tmp_path / "x.meta").exists()


def test_summary(tmp_path, make_record, capsys):
    meta = tmp_path / "a.meta"
    write_record_file(meta, [make_record(path="1"), make_record(path="2")])

    assert cli.main(["summary", str(meta)]) == 0

    out = capsys.readouterr().out
    assert "Total entries     : 2" in out
    assert "Unique hashes     : 1" in out


def test_select_paths(tmp_path, make_record, capsys):
    meta = tmp_path / "a.meta"
    write_record_file(meta, [
        make_record(path="new.jpg", modified_at="2022-01-01T00:00:00"),
        make_record(path="old.jpg"),
    ])

    assert cli.main(["select", str(meta), "--paths"]) == 0
    assert capsys.readouterr().out.splitlines() == ["/vol/a/old.jpg"]


def test_purge_rejects_legacy_stream(tmp_path, make_record):
    legacy = tmp_path / "old.meta"
    legacy.write_text("\t".join([H1, "2020-01-01T00:00:00", "1", "image/jpeg", "/vol/a/x.jpg"]) + "\n")
    target = tmp_path / "t.meta"
    write_record_file(target, [make_record()])

    assert cli.main(["purge", str(legacy), str(target)]) == 2


def test_purge_simple_lists_matches(tmp_path, make_record, capsys):
    ref = tmp_path / "ref.meta"
    write_record_file(ref, [make_record(digest=H1, root="/ref")])
    target = tmp_path / "t.meta"
    write_record_file(target, [make_record(digest=H1, path="m.jpg"), make_record(digest=H2, path="k.jpg")])

    assert cli.main(["purge", str(ref), str(target), "--simple"]) == 0
    assert capsys.readouterr().out.splitlines() == ["/vol/a/m.jpg"]


def test_intersect_to_file(tmp_path, make_record):
    a = tmp_path / "a.meta"
    b = tmp_path / "b.meta"
    write_record_file(a, [make_record(digest=H1, path="1"), make_record(digest=H2, path="2")])
    write_record_file(b, [make_record(digest=H2, root="/other")])
    out = tmp_path / "both.meta"

    assert cli.main(["intersect", str(a), str(b), "-o", str(out)]) == 0
    assert [r.relative_path for r in read_records(out)] == ["2"]


def test_load_then_view_from_store(tmp_path, make_record, capsys):
    meta = tmp_path / "a.meta"
    write_record_file(meta, [make_record(path="1"), make_record(path="2", root="/vol/b")])
    db = tmp_path / "inv.db"

    assert cli.main(["load", str(meta), "--db", str(db)]) == 0
    assert cli.main(["view", "--db", str(db), "--duplicates-only"]) == 0

    out = capsys.readouterr().out.splitlines()
    assert out[0] == f"GROUP : 2 : {H1} : image/jpeg"
    assert len(out) == 3


def test_prune_missing_dry_run(tmp_path, capsys):
    report = tmp_path / "missing_rows_x.tsv"
    report.write_text("1000001\t/x/a\n1000002\t/x/b\n")

    assert cli.main(["prune-missing", str(report), "--db", str(tmp_path / "inv.db")]) == 0
    assert capsys.readouterr().out.strip() == "2"


def test_consistency_without_database_is_fatal(tmp_path):
    assert cli.main(["consistency", "--db", str(tmp_path / "nope.db"), "--no-progress"]) == 1


def test_unknown_command_exits_2():
    with pytest.raises(SystemExit) as exc:
        cli.main(["frobnicate"])
    assert exc.value.code == 2


def test_roots_file_must_be_an_object(tmp_path, make_record):
    meta = tmp_path / "a.meta"
    write_record_file(meta, [make_record()])
    roots = tmp_path / "roots.json"
    roots.write_text('[{"path": "/vol/a", "priority": 1}]', encoding="utf-8")

    assert cli.main(["view", str(meta), "--roots", str(roots)]) == 2


def test_validate_reports_all_errors(tmp_path, make_record, capsys):
    good = tmp_path / "good.meta"
    write_record_file(good, [make_record()])
    bad = tmp_path / "bad.meta"
    bad.write_text("not a record\nstill not\n", encoding="utf-8")

    assert cli.main(["validate", str(good), str(bad)]) == 2
    out = capsys.readouterr().out.splitlines()
    assert len(out) == 2
    assert all(line.startswith("ERROR : ") for line in out)

    assert cli.main(["validate", str(good)]) == 0
    assert "All files validated successfully." in capsys.readouterr().out


def test_remove_dry_run_lists_other_copies(tmp_path, make_record, capsys):
    for root in ("a", "b"):
        (tmp_path / root).mkdir()
        (tmp_path / root / "x.jpg").write_bytes(b"same")
    meta = tmp_path / "set.meta"
    write_record_file(meta, [
        make_record(root=str(tmp_path / "a")),
        make_record(root=str(tmp_path / "b")),
    ])

    assert cli.main(["remove", str(meta), str(tmp_path / "a" / "x.jpg"), str(tmp_path / "nothing.jpg")]) == 0

    out = capsys.readouterr().out.splitlines()
    assert out == [f"no_meta\t{tmp_path / 'nothing.jpg'}", f"delete\t{tmp_path / 'b' / 'x.jpg'}"]
    assert (tmp_path / "b" / "x.jpg").exists()
