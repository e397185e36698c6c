"""Custom exceptions for the NotePad store.

Provides a structured exception hierarchy with error codes and
machine-readable error information for better error handling.
"""
from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorCode(Enum):
    """Error codes for machine-readable error identification."""

    # Lookup errors (1xxx)
    NOTE_NOT_FOUND = 1001
    TAG_NOT_FOUND = 1002

    # Validation errors (2xxx)
    VALIDATION_FAILED = 2001
    NOTE_TITLE_REQUIRED = 2002
    TAG_NAME_REQUIRED = 2003
    TAG_COLOR_INVALID = 2004
    INVALID_ARGUMENT = 2005

    # Persistence errors (4xxx)
    COMMIT_FAILED = 4001
    CONSTRAINT_VIOLATION = 4002
    STORAGE_READ_FAILED = 4003
    STORE_OPEN_FAILED = 4004
    SCHEMA_MIGRATION_FAILED = 4005

    # Bulk operation errors (45xx)
    BULK_OPERATION_FAILED = 4501
    BULK_OPERATION_PARTIAL = 4502
    IMPORT_FAILED = 4510
    IMPORT_NO_TAGS = 4511


class NotePadError(Exception):
    """Base exception for all NotePad store errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context about the error
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
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


class NotFoundError(NotePadError):
    """Raised when an identifier no longer resolves to a stored entity."""

    def __init__(
        self,
        entity: str,
        entity_id: str,
        message: Optional[str] = None,
        code: ErrorCode = ErrorCode.NOTE_NOT_FOUND
    ):
        super().__init__(
            message or f"{entity} with ID '{entity_id}' not found",
            code=code,
            details={f"{entity.lower()}_id": entity_id}
        )
        self.entity = entity
        self.entity_id = entity_id


class NoteNotFoundError(NotFoundError):
    """Raised when a note cannot be found."""

    def __init__(self, note_id: str, message: Optional[str] = None):
        super().__init__("Note", note_id, message, code=ErrorCode.NOTE_NOT_FOUND)
        self.note_id = note_id


class TagNotFoundError(NotFoundError):
    """Raised when a tag cannot be found."""

    def __init__(self, tag_id: str, message: Optional[str] = None):
        super().__init__("Tag", tag_id, message, code=ErrorCode.TAG_NOT_FOUND)
        self.tag_id = tag_id


class ValidationError(NotePadError):
    """Raised for invalid input to a store or service call."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED
    ):
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)[:100]

        super().__init__(message, code=code, details=details)
        self.field = field
        self.value = value


class PersistenceError(NotePadError):
    """Raised when a commit or other storage I/O fails."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        path: Optional[str] = None,
        code: ErrorCode = ErrorCode.COMMIT_FAILED,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if path:
            # Don't expose full paths in error messages
            details["path_hint"] = path.split("/")[-1] if "/" in path else path
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.operation = operation
        self.path = path
        self.original_error = original_error


class StoreOpenError(PersistenceError):
    """Raised when the store file cannot be opened or migrated.

    This is the one fatal error in the package: callers are expected to
    abort startup rather than retry individual operations.
    """

    def __init__(
        self,
        message: str,
        path: Optional[str] = None,
        code: ErrorCode = ErrorCode.STORE_OPEN_FAILED,
        original_error: Optional[Exception] = None
    ):
        super().__init__(
            message,
            operation="open",
            path=path,
            code=code,
            original_error=original_error
        )


class BulkOperationError(NotePadError):
    """Raised for bulk operation errors.

    Attributes:
        operation: Name of the bulk operation (e.g., "delete_old_notes")
        total_count: Total number of items attempted
        success_count: Number of items that succeeded
        failed_ids: List of IDs that failed (full list, not truncated)
        original_error: The underlying exception if applicable

    Note:
        The `details` dict contains `failed_ids` truncated to 10 items for
        safe serialization. Access `self.failed_ids` for the complete list.
    """

    def __init__(
        self,
        message: str,
        operation: str,
        total_count: int = 0,
        success_count: int = 0,
        failed_ids: Optional[List[str]] = None,
        code: ErrorCode = ErrorCode.BULK_OPERATION_FAILED,
        original_error: Optional[Exception] = None
    ):
        if total_count < 0:
            raise ValueError("total_count must be non-negative")
        if success_count < 0:
            raise ValueError("success_count must be non-negative")
        if success_count > total_count:
            raise ValueError("success_count cannot exceed total_count")

        details = {
            "operation": operation,
            "total_count": total_count,
            "success_count": success_count,
            "failed_count": total_count - success_count
        }
        if failed_ids:
            details["failed_ids"] = failed_ids[:10]
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.operation = operation
        self.total_count = total_count
        self.success_count = success_count
        self.failed_ids: List[str] = list(failed_ids) if failed_ids else []
        self.original_error = original_error

    @property
    def failed_count(self) -> int:
        """Number of items that failed (computed from total - success)."""
        return self.total_count - self.success_count


class BulkImportError(BulkOperationError):
    """Raised when a bulk import is aborted.

    Progress made before the failure is not resumable: batches already
    committed stay in the store and a retry starts from scratch.
    """

    def __init__(
        self,
        message: str,
        requested: int = 0,
        imported: int = 0,
        code: ErrorCode = ErrorCode.IMPORT_FAILED,
        original_error: Optional[Exception] = None
    ):
        super().__init__(
            message,
            operation="import_sample_notes",
            total_count=requested,
            success_count=min(imported, requested),
            code=code,
            original_error=original_error
        )
        self.requested = requested
        self.imported = imported
