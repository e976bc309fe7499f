"""Custom exceptions for the note index.

Provides a structured exception hierarchy with error codes and
machine-readable error information for better error handling.
"""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Error codes for machine-readable error identification."""

    # Parse errors (1xxx)
    PARSE_FAILED = 1001
    MISSING_FRONTMATTER = 1002
    MISSING_REQUIRED_FIELD = 1003
    INVALID_ENCODING = 1004
    FILE_READ_FAILED = 1005

    # Duplicate id errors (2xxx)
    DUPLICATE_ID = 2001

    # Storage errors (4xxx)
    STORAGE_READ_FAILED = 4001
    STORAGE_WRITE_FAILED = 4002
    STORAGE_DELETE_FAILED = 4003
    STORAGE_CONNECTION_FAILED = 4004
    DATABASE_CORRUPTED = 4005
    DATABASE_RECOVERY_FAILED = 4006
    FTS_CORRUPTED = 4007
    LOCK_TIMEOUT = 4008
    NOTES_DIR_NOT_FOUND = 4009

    # Query errors (5xxx)
    SEARCH_FAILED = 5001
    SEARCH_INVALID_QUERY = 5002
    EMPTY_QUERY = 5003
    INVALID_TOPIC = 5004
    INVALID_TAG = 5005
    INVALID_REL = 5006

    # Configuration errors (6xxx)
    CONFIG_INVALID = 6001
    CONFIG_MISSING = 6002


class NoteIndexError(Exception):
    """Base exception for all note index errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context about the error
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.STORAGE_READ_FAILED,
        details: Optional[Dict[str, Any]] = None
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
            "details": self.details
        }

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"[{self.code.name}] {self.message} ({detail_str})"
        return f"[{self.code.name}] {self.message}"


class ParseError(NoteIndexError):
    """Raised when a note file cannot be read or its frontmatter is invalid."""

    def __init__(
        self,
        message: str,
        path: Optional[str] = None,
        code: ErrorCode = ErrorCode.PARSE_FAILED,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if path:
            details["path"] = path
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.path = path
        self.original_error = original_error

    @property
    def kind(self) -> str:
        """Failure category: ``"encoding"``, ``"io"`` or ``"parse"``."""
        if self.code == ErrorCode.INVALID_ENCODING:
            return "encoding"
        if self.code == ErrorCode.FILE_READ_FAILED:
            return "io"
        return "parse"


class DuplicateIdError(NoteIndexError):
    """Raised when two files declare the same note id."""

    def __init__(self, note_id: str, path: str, first_path: str):
        super().__init__(
            f"Note ID '{note_id}' in {path} was already used by {first_path}",
            code=ErrorCode.DUPLICATE_ID,
            details={"note_id": note_id, "path": path, "first_path": first_path}
        )
        self.note_id = note_id
        self.path = path
        self.first_path = first_path


class StorageError(NoteIndexError):
    """Raised for storage/persistence errors."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        path: Optional[str] = None,
        code: ErrorCode = ErrorCode.STORAGE_READ_FAILED,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if path:
            details["path"] = path
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.operation = operation
        self.path = path
        self.original_error = original_error


class DatabaseCorruptionError(StorageError):
    """Raised when database corruption is detected.

    The SQLite file (or its FTS5 index) has become corrupted and the index
    must be rebuilt from the markdown files.

    Attributes:
        recovered: Whether auto-recovery was successful
        backup_path: Path to the backup of the corrupted database
    """

    def __init__(
        self,
        message: str,
        recovered: bool = False,
        backup_path: Optional[str] = None,
        code: ErrorCode = ErrorCode.DATABASE_CORRUPTED,
        original_error: Optional[Exception] = None
    ):
        super().__init__(
            message,
            operation="database_check",
            code=code,
            original_error=original_error
        )
        self.recovered = recovered
        self.backup_path = backup_path
        self.details["recovered"] = recovered
        if backup_path:
            self.details["backup_path"] = backup_path


class QueryError(NoteIndexError):
    """Raised for invalid queries (empty search, bad topic, bad tags)."""

    def __init__(
        self,
        message: str,
        query: Optional[str] = None,
        code: ErrorCode = ErrorCode.SEARCH_INVALID_QUERY
    ):
        details = {}
        if query:
            details["query"] = query[:100]  # Truncate for safety

        super().__init__(message, code=code, details=details)
        self.query = query


class ConfigurationError(NoteIndexError):
    """Raised for configuration-related errors."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        code: ErrorCode = ErrorCode.CONFIG_INVALID
    ):
        details = {}
        if config_key:
            details["config_key"] = config_key

        super().__init__(message, code=code, details=details)
        self.config_key = config_key
