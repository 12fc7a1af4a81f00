"""Custom exceptions for roam-index.

Provides a structured exception hierarchy with error codes and
machine-readable error information, so callers can tell "no data"
apart from "not indexed yet" and recoverable errors from fatal ones.
"""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Error codes for machine-readable error identification."""

    # Index lifecycle errors (1xxx)
    INDEX_NOT_READY = 1001
    SCAN_CANCELLED = 1002

    # Note lifecycle errors (2xxx)
    RENAME_TARGET_EXISTS = 2001
    NOTE_NOT_FOUND = 2002

    # Storage errors (4xxx)
    STORAGE_READ_FAILED = 4001
    DATABASE_CORRUPTED = 4005
    DATABASE_RECOVERY_FAILED = 4006

    # Configuration errors (6xxx)
    CONFIG_INVALID = 6001


class RoamIndexError(Exception):
    """Base exception for all roam-index errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context about the error
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.CONFIG_INVALID,
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


class IndexNotReadyError(RoamIndexError):
    """Raised when the index is queried before its first successful build."""

    def __init__(self, operation: str, message: Optional[str] = None):
        super().__init__(
            message or f"Index not built yet, cannot run '{operation}'",
            code=ErrorCode.INDEX_NOT_READY,
            details={"operation": operation}
        )
        self.operation = operation


class ScanCancelledError(RoamIndexError):
    """Raised when a full scan is cancelled before it commits.

    Nothing has been written to the store when this is raised.
    """

    def __init__(self, root: str, processed: int = 0):
        super().__init__(
            f"Scan of '{root}' cancelled before commit",
            code=ErrorCode.SCAN_CANCELLED,
            details={"root": root, "processed": processed}
        )
        self.root = root
        self.processed = processed


class RenameCollisionError(RoamIndexError):
    """Raised when a note is renamed onto a path that is already indexed."""

    def __init__(self, old_path: str, new_path: str):
        super().__init__(
            f"Cannot rename onto existing note '{new_path}'",
            code=ErrorCode.RENAME_TARGET_EXISTS,
            details={"old_path": old_path, "new_path": new_path}
        )
        self.old_path = old_path
        self.new_path = new_path


class NoteNotFoundError(RoamIndexError):
    """Raised when an operation needs a note row that is not in the store."""

    def __init__(self, path: str):
        super().__init__(
            f"Note '{path}' is not indexed",
            code=ErrorCode.NOTE_NOT_FOUND,
            details={"path": path}
        )
        self.path = path


class StorageError(RoamIndexError):
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
    """Raised when the persisted store fails its integrity check.

    Corruption is not repaired in place: the damaged file is moved aside
    and the store is rebuilt from the note files with a full scan.
    """

    def __init__(
        self,
        message: str,
        backup_path: Optional[str] = None,
        code: ErrorCode = ErrorCode.DATABASE_CORRUPTED,
        original_error: Optional[Exception] = None
    ):
        super().__init__(
            message,
            operation="integrity_check",
            code=code,
            original_error=original_error
        )
        if backup_path:
            self.details["backup_path"] = backup_path
        self.backup_path = backup_path


class ConfigurationError(RoamIndexError):
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
