"""
Custom exception hierarchy for the hash inventory.

Structural errors are raised before anything on disk is touched; the
CLI maps them to exit code 2. Everything else that reaches the top level
is fatal and maps to exit code 1.
"""


class InventoryError(Exception):
    """Base exception for all inventory errors."""
    pass


class StructuralError(InventoryError):
    """Input is unusable as a whole; nothing has been modified yet."""
    pass


class RecordFormatError(StructuralError):
    """Raised when a record stream line has the wrong shape or bad values."""

    def __init__(self, message: str, source: str = "", line_number: int = 0):
        if source:
            message = f"{source}:{line_number}: {message}"
        super().__init__(message)
        self.source = source
        self.line_number = line_number


class LegacyRecordFormatError(RecordFormatError):
    """Raised for 5-column streams written before storage roots were recorded."""
    pass


class DuplicatePathError(StructuralError):
    """Raised when two different records claim the same full path."""
    pass


class UnknownStorageRootError(StructuralError):
    """Raised when a record references a storage root missing from the configuration."""
    pass


class StorageRootUnavailableError(StructuralError):
    """Raised when a storage root is not mounted or is not a directory."""
    pass


class DestinationError(StructuralError):
    """Raised when a copy destination is missing or not writable."""
    pass


class FileOperationError(InventoryError):
    """Raised when file copy/delete operations fail."""
    pass


class CopyVerificationError(FileOperationError):
    """Raised when a copied file does not match its source size or timestamp."""
    pass


class PersistenceError(InventoryError):
    """Raised when a batch of records cannot be written to its destination."""
    pass


class DatabaseError(InventoryError):
    """Raised when database operations fail."""
    pass


class VerificationError(InventoryError):
    """Raised when a consistency check cannot complete."""
    pass


class VerificationTimeoutError(VerificationError):
    """Raised when a consistency check exceeds its runtime limit."""
    pass
