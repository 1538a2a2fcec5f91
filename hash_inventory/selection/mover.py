import logging
import os
import shutil
from pathlib import Path
from typing import List

from tqdm import tqdm

from ..exceptions import CopyVerificationError, FileOperationError
from ..models import FileRecord


def copy_and_verify(rec: FileRecord, dest_root: Path) -> Path:
    """
    Copies the record's file to dest_root/relative_path, keeping its
    modification time, then re-reads size and mtime of both sides.

    A destination that already exists is accepted only if it verifies
    against the source; it is never overwritten.
    """
    src = Path(rec.full_path)
    dest = Path(dest_root) / rec.relative_path

    if not src.is_file() or not os.access(src, os.R_OK):
        raise FileOperationError(f"Source not accessible: {src}")

    if dest.exists():
        _verify(src, dest)
        logging.debug(f"Already copied: {dest}")
        return dest

    try:
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(src, dest)
    except OSError as e:
        raise FileOperationError(f"Error copying file {src}: {e}") from e

    _verify(src, dest)
    logging.info(f"Copied {src} -> {dest}")
    return dest


def _verify(src: Path, dest: Path):
    src_stat = src.stat()
    dest_stat = dest.stat()

    if src_stat.st_size != dest_stat.st_size:
        raise CopyVerificationError(
            f"Copy verification failed for {src} -> {dest}: "
            f"size mismatch (src={src_stat.st_size},dst={dest_stat.st_size})"
        )
    # copy2 keeps nanoseconds where the filesystem does; compare at second precision
    if int(src_stat.st_mtime) != int(dest_stat.st_mtime):
        raise CopyVerificationError(
            f"Copy verification failed for {src} -> {dest}: "
            f"timestamp mismatch (src={src_stat.st_mtime},dst={dest_stat.st_mtime})"
        )


def delete_paths(paths: List[Path], show_progress: bool = False) -> List[Path]:
    """
    Deletes each path and returns the ones actually removed. The first
    failure aborts the rest of the batch; paths already gone are skipped.
    """
    removed: List[Path] = []
    for path in tqdm(paths, desc="Deleting", disable=not show_progress):
        try:
            path.unlink()
            removed.append(path)
            logging.info(f"Deleted: {path}")
        except FileNotFoundError:
            logging.warning(f"Already gone: {path}")
        except OSError as e:
            raise FileOperationError(f"Deletion failed for {path}, aborting: {e}") from e
    return removed
