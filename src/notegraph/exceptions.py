"""Custom exceptions for the notegraph index.

Provides a structured exception hierarchy with error codes and
machine-readable error information for better error handling.
"""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Error codes for machine-readable error identification."""

    # Note errors (1xxx)
    NOTE_NOT_FOUND = 1001
    NOTE_VALIDATION_FAILED = 1002

    # Link errors (2xxx)
    LINK_INVALID = 2001
    LINK_EXTRACTION_FAILED = 2002
    LINK_MIGRATION_FAILED = 2003

    # Concurrency errors (3xxx)
    CONTENT_CONFLICT = 3001
    FINGERPRINT_MISSING = 3002

    # Storage errors (4xxx)
    STORAGE_READ_FAILED = 4001
    STORAGE_WRITE_FAILED = 4002
    STORAGE_DELETE_FAILED = 4003
    STORAGE_CONNECTION_FAILED = 4004
    STORAGE_REBUILD_FAILED = 4005
    FTS_UNAVAILABLE = 4006

    # Search errors (5xxx)
    SEARCH_FAILED = 5001

    # Schema / migration errors (6xxx)
    MIGRATION_NOT_FOUND = 6001
    MIGRATION_FAILED = 6002
    SCHEMA_VERSION_REGRESSION = 6003
    SCHEMA_VERSION_INVALID = 6004

    # Validation errors (7xxx)
    VALIDATION_FAILED = 7001
    CONFIG_INVALID = 7002


class NotegraphError(Exception):
    """Base exception for all notegraph errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context about the error
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a dictionary for serialization."""
        return {
            "error": self.__class__.__name__,
            "code": self.code.value,
            "code_name": self.code.name,
            "message": self.message,
            "details": self.details,
        }

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"[{self.code.name}] {self.message} ({detail_str})"
        return f"[{self.code.name}] {self.message}"


class NoteNotFoundError(NotegraphError):
    """Raised when an identifier does not resolve to an existing note."""

    def __init__(self, note_id: str, message: Optional[str] = None):
        super().__init__(
            message or f"Note not found: {note_id}",
            code=ErrorCode.NOTE_NOT_FOUND,
            details={"note_id": note_id},
        )
        self.note_id = note_id


class ContentConflictError(NotegraphError):
    """Raised when a write carries a fingerprint that no longer matches.

    Both fingerprints are kept so callers can decide whether to re-read
    the note or surface the conflict.
    """

    def __init__(
        self,
        current_hash: str,
        provided_hash: str,
        note_id: Optional[str] = None,
    ):
        details = {"current_hash": current_hash, "provided_hash": provided_hash}
        if note_id:
            details["note_id"] = note_id
        super().__init__(
            "Note content has been modified since last read. "
            "Please fetch the latest version.",
            code=ErrorCode.CONTENT_CONFLICT,
            details=details,
        )
        self.current_hash = current_hash
        self.provided_hash = provided_hash
        self.note_id = note_id


class MissingFingerprintError(NotegraphError):
    """Raised when an update operation omits its content fingerprint."""

    def __init__(self, operation: str):
        super().__init__(
            f"content_hash is required for {operation} operations",
            code=ErrorCode.FINGERPRINT_MISSING,
            details={"operation": operation},
        )
        self.operation = operation


class StorageError(NotegraphError):
    """Raised for storage/persistence errors from the underlying engine."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        entity: Optional[str] = None,
        code: ErrorCode = ErrorCode.STORAGE_READ_FAILED,
        original_error: Optional[Exception] = None,
    ):
        details: Dict[str, Any] = {}
        if operation:
            details["operation"] = operation
        if entity:
            details["entity"] = entity
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.operation = operation
        self.entity = entity
        self.original_error = original_error


class LinkError(NotegraphError):
    """Raised for link extraction and link-graph errors."""

    def __init__(
        self,
        message: str,
        note_id: Optional[str] = None,
        code: ErrorCode = ErrorCode.LINK_INVALID,
        original_error: Optional[Exception] = None,
    ):
        details: Dict[str, Any] = {}
        if note_id:
            details["note_id"] = note_id
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.note_id = note_id
        self.original_error = original_error


class SearchError(NotegraphError):
    """Raised for search-related errors."""

    def __init__(
        self,
        message: str,
        query: Optional[str] = None,
        code: ErrorCode = ErrorCode.SEARCH_FAILED,
    ):
        details = {}
        if query:
            details["query"] = query[:100]  # Truncate for safety

        super().__init__(message, code=code, details=details)
        self.query = query


class MigrationNotFoundError(NotegraphError):
    """Raised when an operator requests a migration version that is not declared."""

    def __init__(self, version: str):
        super().__init__(
            f"Migration not found for version: {version}",
            code=ErrorCode.MIGRATION_NOT_FOUND,
            details={"version": version},
        )
        self.version = version


class MigrationFailedError(NotegraphError):
    """Raised when any step of a migration run fails.

    The run is never reported as partially applied; ``original_error``
    holds the failure that aborted it.
    """

    def __init__(
        self,
        message: str,
        from_version: Optional[str] = None,
        to_version: Optional[str] = None,
        migration_version: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        details: Dict[str, Any] = {}
        if from_version:
            details["from_version"] = from_version
        if to_version:
            details["to_version"] = to_version
        if migration_version:
            details["migration_version"] = migration_version
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=ErrorCode.MIGRATION_FAILED, details=details)
        self.from_version = from_version
        self.to_version = to_version
        self.migration_version = migration_version
        self.original_error = original_error


class SchemaVersionError(NotegraphError):
    """Raised for malformed schema versions or attempts to lower the marker."""

    def __init__(
        self,
        message: str,
        version: Optional[str] = None,
        current_version: Optional[str] = None,
        code: ErrorCode = ErrorCode.SCHEMA_VERSION_REGRESSION,
    ):
        details = {}
        if version:
            details["version"] = version
        if current_version:
            details["current_version"] = current_version

        super().__init__(message, code=code, details=details)
        self.version = version
        self.current_version = current_version


class ValidationError(NotegraphError):
    """Raised for general validation errors."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
    ):
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)[:100]

        super().__init__(message, code=code, details=details)
        self.field = field
        self.value = value
