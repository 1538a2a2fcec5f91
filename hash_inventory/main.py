import argparse
import logging
import signal
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import List, Optional, Set

from . import config
from .database.db import DBManager
from .database.ops import InventoryStore
from .exceptions import InventoryError, StructuralError
from .models import Disposition, RootRegistry
from .records.stream import (
    default_output_path,
    open_output,
    read_record_sets,
    read_records,
    split_by_content_type,
    validate_record_file,
    write_records,
)
from .reporting import format_group, format_summary, human_readable, summarize_files
from .scanning.fingerprint import MagicDetector
from .scanning.pipeline import DigestPipeline
from .selection import engine
from .selection.clean import RecordCleaner
from .selection.mover import copy_and_verify
from .verification.consistency import ConsistencyVerifier, read_missing_report

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_INVALID = 2
EXIT_INTERRUPTED = 130


def setup_logging(verbose: bool, log_file: Optional[Path] = None):
    """Diagnostics go to stderr (and optionally a file); stdout carries data."""
    log_level = logging.DEBUG if verbose else logging.INFO

    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=handlers,
        force=True,
    )


def _types(values: Optional[List[str]]) -> Set[str]:
    """Accepts repeated and comma separated values: -i image -i video,audio"""
    result: Set[str] = set()
    for value in values or []:
        result.update(v.strip().lower() for v in value.split(",") if v.strip())
    return result


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        prog="hash-inventory",
        description="Content-addressed file inventory: generate, select, purge, clean, verify",
    )
    p.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    p.add_argument("--log-file", type=Path, default=None, help="Also write the log to this file")
    sub = p.add_subparsers(dest="command", required=True)

    def mime_filter(sp):
        sp.add_argument("--mime-filter", action="append", metavar="TYPE",
                        help="Restrict to these major MIME types (e.g. image,video)")

    def db_option(sp, required=False):
        sp.add_argument("--db", type=Path, required=required, help=f"SQLite inventory store (e.g. {config.DEFAULT_DB_NAME})")

    g = sub.add_parser("generate", help="Fingerprint every file under ROOT")
    g.add_argument("root", type=Path, help="Root directory to scan")
    g.add_argument("-t", "--threads", type=int, default=config.DEFAULT_THREADS)
    g.add_argument("-q", "--queue-size", type=int, default=config.DEFAULT_QUEUE_SIZE,
                   help="Queue capacity for backpressure")
    g.add_argument("-b", "--batch-size", type=int, default=config.DEFAULT_BATCH_SIZE,
                   help="Records per write")
    g.add_argument("-o", "--output", default=None, help="Output file ('-' for stdout)")
    g.add_argument("-i", "--include", action="append", metavar="TYPE",
                   help="Only include these major MIME types (e.g. image, text)")
    g.add_argument("-s", "--silent", action="store_true", help="No progress output")

    s = sub.add_parser("select", help="Pick the primary copy per (hash, type)")
    s.add_argument("files", nargs="+", type=Path,
                   help="First file is the reference; the rest are data files (default: the reference)")
    mime_filter(s)
    s.add_argument("--paths", action="store_true", help="Print only the primary path per group")
    s.add_argument("--summary", action="store_true", help="Print selected and unselected sizes")
    s.add_argument("--copy", type=Path, dest="copy_to", metavar="DEST_DIR",
                   help="Copy each primary below this directory, verified")
    s.add_argument("--prune", action="store_true", help="Delete redundant copies (needs --force)")
    s.add_argument("--force", action="store_true", help="Actually delete when pruning")
    s.add_argument("--roots", type=Path, default=None, help="JSON file of storage root priorities")
    db_option(s)

    pu = sub.add_parser("purge", help="Remove target records whose content is in the reference")
    pu.add_argument("reference", type=Path)
    pu.add_argument("target", type=Path)
    mime_filter(pu)
    pu.add_argument("--delete", action="store_true", help="Delete matched files from disk")
    pu.add_argument("--simple", action="store_true", help="Print only matched paths")

    it = sub.add_parser("intersect", help="Records of A whose hash also occurs in B")
    it.add_argument("first", type=Path)
    it.add_argument("second", type=Path)
    mime_filter(it)
    it.add_argument("-o", "--output", default="-", help="Output file ('-' for stdout)")

    c = sub.add_parser("clean", help="Drop records whose files are gone or changed")
    c.add_argument("files", nargs="+", type=Path)
    c.add_argument("--deep", action="store_true", help="Also compare size, timestamp and MIME type")
    c.add_argument("--force", action="store_true", help="Rewrite the files (a backup is kept)")
    c.add_argument("--no-progress", action="store_true")

    vw = sub.add_parser("view", help="List ranked groups")
    vw.add_argument("files", nargs="*", type=Path)
    mime_filter(vw)
    vw.add_argument("--duplicates-only", action="store_true", help="Skip groups with one member")
    vw.add_argument("--roots", type=Path, default=None, help="JSON file of storage root priorities")
    db_option(vw)

    sm = sub.add_parser("summary", help="Aggregate statistics of record files")
    sm.add_argument("files", nargs="+", type=Path)
    sm.add_argument("--detail", action="store_true", help="Full MIME list and size distribution")

    sp = sub.add_parser("split", help="Split a record file by MIME type")
    sp.add_argument("file", type=Path)
    sp.add_argument("out_dir", type=Path)
    sp.add_argument("--prefix", default=None)
    sp.add_argument("--by-major", action="store_true", help="One file per major type")
    mime_filter(sp)

    ld = sub.add_parser("load", help="Load record files into the store")
    ld.add_argument("files", nargs="+", type=Path)
    ld.add_argument("--roots", type=Path, default=None, help="JSON file of storage root priorities")
    db_option(ld, required=True)

    uv = sub.add_parser("unvaulted", help="Primaries outside the vault that the vault also holds")
    db_option(uv, required=True)

    cs = sub.add_parser("consistency", help="Verify every stored record still exists on disk")
    cs.add_argument("--db", type=Path, default=Path(config.DEFAULT_DB_NAME))
    cs.add_argument("--report-dir", type=Path, default=Path("."))
    cs.add_argument("--fetch-size", type=int, default=config.FETCH_WINDOW)
    cs.add_argument("--max-runtime", type=float, default=config.MAX_RUNTIME_SECONDS,
                    help="Seconds before the run is abandoned")
    cs.add_argument("--no-progress", action="store_true")

    va = sub.add_parser("validate", help="Report every malformed line in record files")
    va.add_argument("files", nargs="+", type=Path)

    rm = sub.add_parser("remove", help="Keep the given files, drop every other copy of their content")
    rm.add_argument("meta", type=Path, help="Record file describing the copies")
    rm.add_argument("targets", nargs="+", type=Path, help="Files or directories to keep")
    rm.add_argument("--delete", action="store_true", help="Delete the other copies from disk")

    pm = sub.add_parser("prune-missing", help="Delete stale rows listed in missing-row reports")
    pm.add_argument("reports", nargs="+", type=Path)
    pm.add_argument("--force", action="store_true", help="Actually delete the rows")
    db_option(pm, required=True)

    return p.parse_args(argv)


@contextmanager
def _graceful_stop(target):
    """SIGTERM and Ctrl-C ask `target` to stop instead of killing it mid-batch."""
    def handler(signum, frame):
        target.request_stop()

    previous = {}
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            previous[sig] = signal.signal(sig, handler)
        except ValueError:
            pass  # not on the main thread
    try:
        yield
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)


def _registry(args) -> RootRegistry:
    if getattr(args, "roots", None):
        return config.load_roots(args.roots)
    return RootRegistry()


def cmd_generate(args) -> int:
    if not args.root.is_dir():
        raise StructuralError(f"{args.root} is not a directory.")

    if args.output == "-":
        destination = "-"
    else:
        destination = str(args.output or default_output_path())
        logging.info(f"Output file: {destination}")

    out = open_output(destination)
    try:
        pipeline = DigestPipeline(
            root=args.root,
            out=out,
            threads=args.threads,
            queue_size=args.queue_size,
            batch_size=args.batch_size,
            include_types=_types(args.include),
            detector_factory=MagicDetector,
            silent=args.silent or destination == "-",
        )
        with _graceful_stop(pipeline):
            stats = pipeline.run()
    finally:
        if out is not sys.stdout:
            out.close()
    return EXIT_INTERRUPTED if stats.stopped_early else EXIT_OK


def cmd_select(args) -> int:
    major_types = _types(args.mime_filter)

    if args.db:
        return _select_from_store(args, major_types)

    reference = read_records(args.files[0])
    data = read_record_sets(args.files[1:]) if len(args.files) > 1 else reference

    result = engine.select(
        reference, data,
        registry=_registry(args),
        major_types=major_types,
        copy_to=args.copy_to,
        prune=args.prune,
        force=args.force,
    )

    for group in result.groups:
        best = group.primary
        if args.paths:
            print(best.full_path)
        else:
            print(f"SELECT : {group.size} : {best.modified_at} : {best.hash} : {best.full_path}")

    if args.prune and not args.force:
        for rec in result.prune_candidates:
            logging.info(f"[DRY RUN] Would delete: {rec.full_path}")

    if args.summary:
        print(f"Total selected size  : {human_readable(result.selected_size)}")
        print(f"Total unselected size: {human_readable(result.unselected_size)}")
        print(f"Deleted items        : {len(result.deleted)}")
    return EXIT_OK


def _select_from_store(args, major_types: Set[str]) -> int:
    if args.prune:
        raise StructuralError("--prune works on record files only")
    if args.copy_to:
        engine.check_destination(args.copy_to)

    with DBManager(args.db, create=False) as conn:
        store = InventoryStore(conn)
        for row in store.iter_ranked(Disposition.PRIMARY, major_types):
            best = row.record
            if args.copy_to:
                copy_and_verify(best, args.copy_to)
            if args.paths:
                print(best.full_path)
            else:
                print(f"SELECT : {row.group_size} : {best.modified_at} : {best.hash} : {best.full_path}")
    return EXIT_OK


def cmd_purge(args) -> int:
    reference = read_records(args.reference)
    target = read_records(args.target)

    result = engine.purge(reference, target, _types(args.mime_filter), delete=args.delete)

    for (digest, _), members in result.matched.items():
        if not args.simple:
            print(f"MATCH : {digest}\t{len(members):,}")
        for rec in members:
            print(rec.full_path if args.simple else f"  - {rec.relative_path}")
        if not args.simple:
            print()

    for rec in result.protected:
        logging.warning(f"Protected (also in reference): {rec.full_path}")

    if not args.simple:
        verb = "Space Saved" if args.delete else "Reclaimable"
        print("SUMMARY")
        print(f"  Matched    : {len(result.matched_records)} item(s) from {args.target.name} "
              f"using {result.reference_keys} reference key(s)")
        print(f"  Deleted    : {len(result.deleted)} file(s)")
        print(f"  Retained   : {len(result.retained)} entry(ies)")
        saved = result.deleted_bytes if args.delete else result.reclaimable_bytes
        print(f"  {verb:<11}: {human_readable(saved)}")
    return EXIT_OK


def cmd_intersect(args) -> int:
    matches = engine.intersect(read_records(args.first), read_records(args.second), _types(args.mime_filter))
    out = open_output(args.output)
    try:
        write_records(out, matches)
        out.flush()
    finally:
        if out is not sys.stdout:
            out.close()
    return EXIT_OK


def cmd_clean(args) -> int:
    detector = MagicDetector() if args.deep else None
    cleaner = RecordCleaner(detector=detector, deep=args.deep, show_progress=not args.no_progress)

    for path in args.files:
        report = cleaner.clean_file(path, dry_run=not args.force)
        print(f"=== {path.name} ===")
        print(f"Examined : {report.examined} entries")
        print(f"Kept     : {len(report.kept)} entries")
        print(f"Removed  : {len(report.removed)} entries")
        if report.backup:
            print(f"Backup   : {report.backup.name}")
        if report.written:
            print(f"Written  : {len(report.kept)} entries")
        elif report.removed:
            print("Dry run; no changes written (use --force).")
        print()
    return EXIT_OK


def cmd_view(args) -> int:
    major_types = _types(args.mime_filter)

    if args.db:
        with DBManager(args.db, create=False) as conn:
            current = None
            for row in InventoryStore(conn).iter_ranked(major_types=major_types):
                if args.duplicates_only and row.group_size < 2:
                    continue
                rec = row.record
                if row.group_num != current:
                    if current is not None:
                        print()
                    current = row.group_num
                    print(f"GROUP : {row.group_size:,} : {rec.hash} : {rec.content_type}")
                print(f"  - {row.disposition.value:<9} : {rec.modified_at} : {rec.full_path}")
        return EXIT_OK

    if not args.files:
        raise StructuralError("view needs record files or --db")

    records = read_record_sets(args.files)
    groups = engine.view(records, _registry(args), major_types, args.duplicates_only)
    for group in groups:
        print("\n".join(format_group(group)))
        print()
    print("SUMMARY")
    print(f"  Groups: {len(groups)}")
    print(f"  Items : {sum(g.size for g in groups)}")
    return EXIT_OK


def cmd_summary(args) -> int:
    summary = summarize_files(args.files)
    print("\n".join(format_summary(summary, detail=args.detail)))
    return EXIT_OK


def cmd_split(args) -> int:
    outputs = split_by_content_type(args.file, args.out_dir, args.prefix,
                                    _types(args.mime_filter), args.by_major)
    for path in sorted(outputs.values()):
        print(path)
    return EXIT_OK


def cmd_load(args) -> int:
    records = read_record_sets(args.files)
    with DBManager(args.db) as conn:
        store = InventoryStore(conn)
        if args.roots:
            for root in config.load_roots(args.roots).roots:
                store.set_root(root)
        store.insert_records(records)
    return EXIT_OK


def cmd_unvaulted(args) -> int:
    with DBManager(args.db, create=False) as conn:
        for row in InventoryStore(conn).unvaulted_primaries():
            p = row.primary
            print("\t".join((p.hash, p.content_type, str(row.primary_id), p.modified_at,
                             p.full_path, str(row.vault_id), row.vault_modified_at, row.vault_full_path)))
    return EXIT_OK


def cmd_consistency(args) -> int:
    verifier = ConsistencyVerifier(
        db_path=args.db,
        report_dir=args.report_dir,
        fetch_window=args.fetch_size,
        max_runtime=args.max_runtime,
        silent=args.no_progress,
    )
    with _graceful_stop(verifier):
        results = verifier.run()

    for r in results:
        print(f"{r.storage_root}\tchecked={r.checked}\tmissing={r.missing}\t{r.report_path}")
    return EXIT_INTERRUPTED if any(r.interrupted for r in results) else EXIT_OK


def cmd_validate(args) -> int:
    errors = []
    for path in args.files:
        errors.extend(validate_record_file(path))

    for message in errors:
        print(f"ERROR : {message}")
    if errors:
        logging.error(f"{len(errors)} problem(s) found in {len(args.files)} file(s).")
        return EXIT_INVALID
    print("All files validated successfully.")
    return EXIT_OK


def cmd_remove(args) -> int:
    result = engine.remove(read_record_sets([args.meta]), args.targets, delete=args.delete)

    for path in result.unknown:
        print(f"no_meta\t{path}")
    deleted = {r.full_path for r in result.deleted}
    for rec in result.to_remove:
        status = "deleted" if rec.full_path in deleted else "delete"
        print(f"{status}\t{rec.full_path}")

    logging.info(
        f"Matched {len(result.matched)} target(s); {len(result.to_remove)} other copies, "
        f"{len(result.deleted)} deleted."
    )
    return EXIT_OK


def cmd_prune_missing(args) -> int:
    ids: List[int] = []
    for report in args.reports:
        ids.extend(read_missing_report(report))

    if not args.force:
        logging.info(f"[DRY RUN] {len(ids)} rows would be deleted (use --force).")
        print(len(ids))
        return EXIT_OK

    with DBManager(args.db, create=False) as conn:
        deleted = InventoryStore(conn).delete_ids(ids)
    print(deleted)
    return EXIT_OK


COMMANDS = {
    "generate": cmd_generate,
    "select": cmd_select,
    "purge": cmd_purge,
    "intersect": cmd_intersect,
    "clean": cmd_clean,
    "view": cmd_view,
    "summary": cmd_summary,
    "split": cmd_split,
    "load": cmd_load,
    "unvaulted": cmd_unvaulted,
    "consistency": cmd_consistency,
    "prune-missing": cmd_prune_missing,
    "validate": cmd_validate,
    "remove": cmd_remove,
}


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(args.verbose, args.log_file)

    try:
        return COMMANDS[args.command](args)
    except StructuralError as e:
        logging.error(str(e))
        return EXIT_INVALID
    except InventoryError as e:
        logging.error(str(e))
        return EXIT_FATAL
    except KeyboardInterrupt:
        logging.warning("Operation cancelled by user.")
        return EXIT_INTERRUPTED
    except OSError as e:
        logging.exception(f"Fatal I/O error: {e}")
        return EXIT_FATAL


if __name__ == "__main__":
    sys.exit(main())
