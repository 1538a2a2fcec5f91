"""
Configuration constants for the hash inventory.
"""
import json
import logging
from pathlib import Path

from .exceptions import StructuralError
from .models import RootRegistry, StorageRoot

# --- Record Format ---
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S"     # modifiedAt, local time, no offset
BACKUP_TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"
RECORD_FIELD_COUNT = 6
LEGACY_RECORD_FIELD_COUNT = 5
RECORD_FILE_EXTENSION = ".meta"
DEFAULT_CONTENT_TYPE = "application/octet-stream"

# --- Hashing ---
HASH_ALGORITHM = "sha1"
HASH_CHUNK_SIZE = 16 * 1024  # 16 KB per read, per worker
HASH_HEX_LENGTH = 40          # hex digits of a SHA-1 digest

# --- Digest Pipeline ---
DEFAULT_THREADS = 2
DEFAULT_QUEUE_SIZE = 10_000
DEFAULT_BATCH_SIZE = 500
PIPELINE_PROGRESS_INTERVAL = 1.0   # seconds
QUEUE_POLL_INTERVAL = 0.5          # seconds between abort checks on a blocked put

# --- Consistency Verifier ---
FETCH_WINDOW = 10_000              # rows per fetchmany() round trip
STATUS_INTERVAL = 0.25             # seconds
MAX_RUNTIME_SECONDS = 12 * 60 * 60
MISSING_REPORT_PREFIX = "missing_rows_"
MISSING_REPORT_SUFFIX = ".tsv"

# --- Store ---
DEFAULT_DB_NAME = "inventory.db"
FIRST_RECORD_ID = 1_000_001
DELETE_BATCH_SIZE = 1_000

# --- Reporting ---
# Upper bounds (exclusive) of the summary size buckets, decimal units
SIZE_BUCKETS = [
    ("< 1KB", 1_000),
    ("KB", 1_000_000),
    ("MB", 1_000_000_000),
    ("GB", 1_000_000_000_000),
    ("TB", None),
]


def load_roots(path: Path) -> RootRegistry:
    """
    Reads storage root priorities from a JSON file:

        {"roots": [{"path": "/vault", "priority": 10, "vault": true}, ...]}
    """
    try:
        with Path(path).open("r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        raise StructuralError(f"Cannot read roots file {path}: {e}") from e

    entries = data.get("roots", []) if isinstance(data, dict) else None
    if not isinstance(entries, list):
        raise StructuralError(f"Roots file {path} must be an object with a \"roots\" list")

    roots = []
    for entry in entries:
        try:
            roots.append(StorageRoot(
                path=str(entry["path"]).rstrip("/") or "/",
                priority=int(entry["priority"]),
                is_vault=bool(entry.get("vault", False)),
            ))
        except (KeyError, TypeError, ValueError) as e:
            raise StructuralError(f"Invalid root entry in {path}: {entry!r}") from e

    logging.debug(f"Loaded {len(roots)} storage roots from {path}")
    return RootRegistry(roots)
