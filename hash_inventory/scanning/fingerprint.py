import hashlib
import logging
import os
import re
from pathlib import Path
from typing import Callable, Optional, Protocol

from .. import config
from ..models import FileRecord, Outcome
from .filesystem import format_mtime, relative_to_root


class ContentTypeDetector(Protocol):
    def detect(self, path: Path) -> str:
        ...


DetectorFactory = Callable[[], ContentTypeDetector]

# Field and line separators of the record stream
_UNSAFE_CHARS = re.compile(r"[\t\r\n]")


def normalize_content_type(raw: Optional[str]) -> str:
    """'Image/JPEG; charset=binary' -> 'image/jpeg'."""
    if not raw:
        return config.DEFAULT_CONTENT_TYPE
    value = raw.split(";")[0].strip().lower()
    return value or config.DEFAULT_CONTENT_TYPE


class MagicDetector:
    """
    Sniffs content type from file bytes with libmagic.

    A libmagic handle is not safe to share between threads, so every
    worker builds its own detector.
    """

    def __init__(self):
        import magic
        self._magic = magic.Magic(mime=True)

    def detect(self, path: Path) -> str:
        try:
            return normalize_content_type(self._magic.from_file(str(path)))
        except Exception as e:
            logging.warning(f"Content type detection failed for {path}: {e}")
            return config.DEFAULT_CONTENT_TYPE


class Fingerprinter:
    """
    Per-worker fingerprint context. Owns its read buffer and detector for
    its whole lifetime; never shared between threads.
    """

    def __init__(self,
                 root: Path,
                 detector: ContentTypeDetector,
                 algorithm: str = config.HASH_ALGORITHM,
                 chunk_size: int = config.HASH_CHUNK_SIZE):
        self.root = Path(root)
        self.storage_root = str(self.root.absolute())
        self.detector = detector
        self.algorithm = algorithm
        self._buffer = bytearray(chunk_size)
        self._view = memoryview(self._buffer)

    def digest(self, path: Path) -> str:
        """Reads the file in fixed-size chunks; memory use is one buffer."""
        h = hashlib.new(self.algorithm)
        with open(path, "rb", buffering=0) as f:
            while True:
                n = f.readinto(self._buffer)
                if not n:
                    break
                h.update(self._view[:n])
        return h.hexdigest()

    def fingerprint(self, path: Path, content_type: Optional[str] = None) -> Outcome:
        """
        Builds the FileRecord for one file.
        Any read failure is reported as a skip; it never raises.
        """
        try:
            relative_path = relative_to_root(path, self.root)
            if _UNSAFE_CHARS.search(relative_path) or _UNSAFE_CHARS.search(self.storage_root):
                return Outcome.skipped(f"path contains tab or newline: {path!r}")

            st = os.stat(path, follow_symlinks=False)
            if content_type is None:
                content_type = self.detector.detect(path)
            digest = self.digest(path)
            record = FileRecord(
                hash=digest,
                modified_at=format_mtime(st.st_mtime),
                size=st.st_size,
                content_type=normalize_content_type(content_type),
                storage_root=self.storage_root,
                relative_path=relative_path,
            )
            return Outcome.ok(record)
        except (OSError, ValueError) as e:
            return Outcome.skipped(f"cannot fingerprint {path}: {e}", e)
