from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .exceptions import UnknownStorageRootError

# Rank used for every root when no roots are configured
DEFAULT_ROOT_PRIORITY = 0


@dataclass(frozen=True)
class FileRecord:
    """
    One fingerprinted file: content identity plus where it lives.
    """
    hash: str
    modified_at: str        # YYYY-MM-DDTHH:MM:SS, local time
    size: int
    content_type: str       # lowercase major/minor
    storage_root: str
    relative_path: str

    @property
    def full_path(self) -> str:
        return f"{self.storage_root}/{self.relative_path}"

    @property
    def major_type(self) -> str:
        return major_type(self.content_type)

    @property
    def group_key(self) -> Tuple[str, str]:
        return (self.hash, self.content_type)


def major_type(content_type: str) -> str:
    """'image/jpeg' -> 'image'. Blank input yields ''."""
    if not content_type:
        return ""
    slash = content_type.find("/")
    return content_type[:slash] if slash > 0 else content_type


@dataclass(frozen=True)
class StorageRoot:
    path: str
    priority: int
    is_vault: bool = False


class RootRegistry:
    """
    Priority and vault lookup for configured storage roots.

    An empty registry ranks every root equally. Once roots are configured,
    a record under any other root is rejected.
    """

    def __init__(self, roots: Iterable[StorageRoot] = ()):
        self._roots: Dict[str, StorageRoot] = {r.path: r for r in roots}

    def __len__(self) -> int:
        return len(self._roots)

    def __contains__(self, path: str) -> bool:
        return path in self._roots

    @property
    def roots(self) -> List[StorageRoot]:
        return sorted(self._roots.values(), key=lambda r: (r.priority, r.path))

    def get(self, path: str) -> StorageRoot:
        if not self._roots:
            return StorageRoot(path, DEFAULT_ROOT_PRIORITY)
        try:
            return self._roots[path]
        except KeyError:
            raise UnknownStorageRootError(f"Storage root is not configured: {path}") from None

    def priority(self, path: str) -> int:
        return self.get(path).priority

    def is_vault(self, path: str) -> bool:
        return self.get(path).is_vault

    def validate(self, records: Iterable[FileRecord]):
        """Fails fast on the first record whose root is unknown."""
        if not self._roots:
            return
        for rec in records:
            self.get(rec.storage_root)


class Disposition(str, Enum):
    PRIMARY = "primary"
    REDUNDANT = "redundant"


@dataclass
class Group:
    """All records sharing one (hash, content_type) key, already ranked."""
    key: Tuple[str, str]
    primary: FileRecord
    redundant: List[FileRecord] = field(default_factory=list)

    @property
    def members(self) -> List[FileRecord]:
        return [self.primary] + self.redundant

    @property
    def size(self) -> int:
        return 1 + len(self.redundant)

    def disposition(self, rec: FileRecord) -> Disposition:
        return Disposition.PRIMARY if rec == self.primary else Disposition.REDUNDANT


class Status(str, Enum):
    OK = "ok"
    SKIPPED = "skipped"
    FATAL = "fatal"


@dataclass(frozen=True)
class Outcome:
    """
    Result of processing one item.

    ok      -> value holds the result
    skipped -> the item is dropped, processing continues
    fatal   -> the whole run must stop
    """
    status: Status
    value: Any = None
    reason: str = ""
    error: Optional[BaseException] = None

    @classmethod
    def ok(cls, value: Any = None) -> "Outcome":
        return cls(Status.OK, value=value)

    @classmethod
    def skipped(cls, reason: str, error: Optional[BaseException] = None) -> "Outcome":
        return cls(Status.SKIPPED, reason=reason, error=error)

    @classmethod
    def fatal(cls, reason: str, error: Optional[BaseException] = None) -> "Outcome":
        return cls(Status.FATAL, reason=reason, error=error)

    @property
    def is_ok(self) -> bool:
        return self.status is Status.OK

    @property
    def is_fatal(self) -> bool:
        return self.status is Status.FATAL
