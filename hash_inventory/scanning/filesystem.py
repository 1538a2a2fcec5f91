import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Iterator

from .. import config


def iter_files(root: Path) -> Iterator[Path]:
    """
    Depth-first walker using os.scandir for speed.
    Yields regular files only; symlinks are neither yielded nor followed.
    """
    stack = [Path(root)]
    while stack:
        current = stack.pop()

        try:
            with os.scandir(current) as it:
                entries = list(it)
        except OSError as e:
            logging.warning(f"Cannot list {current}: {e}")
            continue

        # Sort for stable traversal order
        entries.sort(key=lambda e: e.name)

        dirs = []
        for e in entries:
            try:
                if e.is_dir(follow_symlinks=False):
                    dirs.append(Path(e.path))
                elif e.is_file(follow_symlinks=False):
                    yield Path(e.path)
            except OSError as err:
                logging.warning(f"Cannot stat {e.path}: {err}")

        # Push dirs to stack (reversed so we process A before Z)
        for d in reversed(dirs):
            stack.append(d)


def format_mtime(mtime: float) -> str:
    """Epoch seconds -> local 'YYYY-MM-DDTHH:MM:SS', sub-second part dropped."""
    return datetime.fromtimestamp(int(mtime)).strftime(config.TIMESTAMP_FORMAT)


def relative_to_root(path: Path, root: Path) -> str:
    return Path(path).relative_to(root).as_posix()
