"""
Error taxonomy for the historical import pipeline.

Every failure surfaced to a caller is an :class:`ImportApiError` carrying a
machine-readable code, a human message, the HTTP status class and optional
structured details. Row-level parser problems never become exceptions; they
are recorded on the staged file instead.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from http import HTTPStatus
from typing import Any, Mapping, Sequence


class ImportErrorCode(str, enum.Enum):
    # File
    FILE_NOT_FOUND = "FILE_NOT_FOUND"
    FILE_EXPIRED = "FILE_EXPIRED"
    FILE_TOO_LARGE = "FILE_TOO_LARGE"
    INVALID_FILE_FORMAT = "INVALID_FILE_FORMAT"
    FILE_PARSING_FAILED = "FILE_PARSING_FAILED"
    # Validation
    VALIDATION_FAILED = "VALIDATION_FAILED"
    INVALID_DATA_TYPE = "INVALID_DATA_TYPE"
    MISSING_REQUIRED_FIELD = "MISSING_REQUIRED_FIELD"
    INVALID_FIELD_VALUE = "INVALID_FIELD_VALUE"
    DUPLICATE_RECORD = "DUPLICATE_RECORD"
    # Reconciliation
    RECONCILIATION_NOT_FOUND = "RECONCILIATION_NOT_FOUND"
    RECONCILIATION_NOT_COMPLETE = "RECONCILIATION_NOT_COMPLETE"
    INVALID_MATCH_DECISION = "INVALID_MATCH_DECISION"
    AMBIGUOUS_MATCH_NOT_FOUND = "AMBIGUOUS_MATCH_NOT_FOUND"
    # Execution
    IMPORT_NOT_FOUND = "IMPORT_NOT_FOUND"
    IMPORT_ALREADY_EXECUTED = "IMPORT_ALREADY_EXECUTED"
    IMPORT_NOT_READY = "IMPORT_NOT_READY"
    IMPORT_EXECUTION_FAILED = "IMPORT_EXECUTION_FAILED"
    CONCURRENT_MODIFICATION = "CONCURRENT_MODIFICATION"
    # Access
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    # General
    BAD_REQUEST = "BAD_REQUEST"
    INTERNAL_ERROR = "INTERNAL_ERROR"


ERROR_STATUS: Mapping[ImportErrorCode, HTTPStatus] = {
    ImportErrorCode.FILE_NOT_FOUND: HTTPStatus.NOT_FOUND,
    ImportErrorCode.FILE_EXPIRED: HTTPStatus.GONE,
    ImportErrorCode.FILE_TOO_LARGE: HTTPStatus.REQUEST_ENTITY_TOO_LARGE,
    ImportErrorCode.INVALID_FILE_FORMAT: HTTPStatus.BAD_REQUEST,
    ImportErrorCode.FILE_PARSING_FAILED: HTTPStatus.UNPROCESSABLE_ENTITY,
    ImportErrorCode.VALIDATION_FAILED: HTTPStatus.UNPROCESSABLE_ENTITY,
    ImportErrorCode.INVALID_DATA_TYPE: HTTPStatus.BAD_REQUEST,
    ImportErrorCode.MISSING_REQUIRED_FIELD: HTTPStatus.BAD_REQUEST,
    ImportErrorCode.INVALID_FIELD_VALUE: HTTPStatus.BAD_REQUEST,
    ImportErrorCode.DUPLICATE_RECORD: HTTPStatus.CONFLICT,
    ImportErrorCode.RECONCILIATION_NOT_FOUND: HTTPStatus.NOT_FOUND,
    ImportErrorCode.RECONCILIATION_NOT_COMPLETE: HTTPStatus.UNPROCESSABLE_ENTITY,
    ImportErrorCode.INVALID_MATCH_DECISION: HTTPStatus.BAD_REQUEST,
    ImportErrorCode.AMBIGUOUS_MATCH_NOT_FOUND: HTTPStatus.NOT_FOUND,
    ImportErrorCode.IMPORT_NOT_FOUND: HTTPStatus.NOT_FOUND,
    ImportErrorCode.IMPORT_ALREADY_EXECUTED: HTTPStatus.CONFLICT,
    ImportErrorCode.IMPORT_NOT_READY: HTTPStatus.UNPROCESSABLE_ENTITY,
    ImportErrorCode.IMPORT_EXECUTION_FAILED: HTTPStatus.INTERNAL_SERVER_ERROR,
    ImportErrorCode.CONCURRENT_MODIFICATION: HTTPStatus.CONFLICT,
    ImportErrorCode.UNAUTHORIZED: HTTPStatus.UNAUTHORIZED,
    ImportErrorCode.FORBIDDEN: HTTPStatus.FORBIDDEN,
    ImportErrorCode.BAD_REQUEST: HTTPStatus.BAD_REQUEST,
    ImportErrorCode.INTERNAL_ERROR: HTTPStatus.INTERNAL_SERVER_ERROR,
}


class ImportApiError(Exception):
    """Pipeline failure with a stable error code."""

    def __init__(
        self,
        code: ImportErrorCode,
        message: str,
        details: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = dict(details) if details else None
        self.timestamp = datetime.now(timezone.utc)

    @property
    def status_code(self) -> HTTPStatus:
        return ERROR_STATUS.get(self.code, HTTPStatus.INTERNAL_SERVER_ERROR)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.message,
            "error_code": self.code.value,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }

    def __repr__(self) -> str:  # pragma: no cover - debugging helper
        return f"ImportApiError({self.code.value}, {self.message!r})"


# ---------------------------------------------------------------------------
# Named constructors for the frequently raised errors
# ---------------------------------------------------------------------------


def file_not_found(file_id: str) -> ImportApiError:
    return ImportApiError(ImportErrorCode.FILE_NOT_FOUND, f"File with ID '{file_id}' not found", {"file_id": file_id})


def file_expired(file_id: str) -> ImportApiError:
    return ImportApiError(
        ImportErrorCode.FILE_EXPIRED,
        f"File with ID '{file_id}' has expired. Please upload again.",
        {"file_id": file_id},
    )


def file_too_large(max_size: int, actual_size: int) -> ImportApiError:
    return ImportApiError(
        ImportErrorCode.FILE_TOO_LARGE,
        f"File size ({actual_size} bytes) exceeds maximum allowed size ({max_size} bytes)",
        {"max_size": max_size, "actual_size": actual_size},
    )


def invalid_file_format(media_type: str | None, allowed: list[str]) -> ImportApiError:
    return ImportApiError(
        ImportErrorCode.INVALID_FILE_FORMAT,
        f"Invalid file format '{media_type or 'unknown'}'. Allowed: {', '.join(allowed)}",
        {"media_type": media_type, "allowed_types": allowed},
    )


def file_parsing_failed(reason: str) -> ImportApiError:
    return ImportApiError(ImportErrorCode.FILE_PARSING_FAILED, f"Failed to parse file: {reason}", {"reason": reason})


def invalid_data_type(data_type: str, valid: list[str]) -> ImportApiError:
    return ImportApiError(
        ImportErrorCode.INVALID_DATA_TYPE,
        f"Invalid data type '{data_type}'. Valid types: {', '.join(valid)}",
        {"data_type": data_type, "valid_types": valid},
    )


def validation_failed(file_id: str) -> ImportApiError:
    return ImportApiError(
        ImportErrorCode.VALIDATION_FAILED,
        "Strict validation failed for this file. Fix the data or validate in permissive mode.",
        {"file_id": file_id},
    )


def reconciliation_not_found(file_id: str) -> ImportApiError:
    return ImportApiError(
        ImportErrorCode.RECONCILIATION_NOT_FOUND,
        f"No reconciliation found for file '{file_id}'",
        {"file_id": file_id},
    )


def reconciliation_not_complete(total: int, resolved: int) -> ImportApiError:
    return ImportApiError(
        ImportErrorCode.RECONCILIATION_NOT_COMPLETE,
        f"Reconciliation incomplete: {total - resolved} ambiguous matches remain unresolved",
        {"total_ambiguous": total, "resolved_ambiguous": resolved, "pending": total - resolved},
    )


def invalid_match_decision(match_id: int, reason: str) -> ImportApiError:
    return ImportApiError(
        ImportErrorCode.INVALID_MATCH_DECISION,
        f"Invalid decision for ambiguous match {match_id}: {reason}",
        {"ambiguous_match_id": match_id, "reason": reason},
    )


def import_not_found(import_id: str) -> ImportApiError:
    return ImportApiError(
        ImportErrorCode.IMPORT_NOT_FOUND,
        f"Import with ID '{import_id}' not found",
        {"import_id": import_id},
    )


def import_already_executed(file_id: str, import_id: str | None = None) -> ImportApiError:
    details: dict[str, Any] = {"file_id": file_id}
    if import_id:
        details["import_id"] = import_id
    return ImportApiError(
        ImportErrorCode.IMPORT_ALREADY_EXECUTED,
        "This import has already been executed",
        details,
    )


def import_not_ready(current_status: str, required_status: str = "ready") -> ImportApiError:
    return ImportApiError(
        ImportErrorCode.IMPORT_NOT_READY,
        f"Import not ready. Current status: {current_status}",
        {"current_status": current_status, "required_status": required_status},
    )


def import_execution_failed(import_id: str, committed_categories: Sequence[str] = ()) -> ImportApiError:
    committed = list(committed_categories)
    if committed:
        message = f"Import execution failed after committing: {', '.join(committed)}."
    else:
        message = "Import execution failed; no category was committed."
    return ImportApiError(
        ImportErrorCode.IMPORT_EXECUTION_FAILED,
        message,
        {"import_id": import_id, "committed_categories": committed},
    )


def concurrent_modification(file_id: str) -> ImportApiError:
    return ImportApiError(
        ImportErrorCode.CONCURRENT_MODIFICATION,
        f"File '{file_id}' was modified by another request. Reload and retry.",
        {"file_id": file_id},
    )


def bad_request(message: str, details: Mapping[str, Any] | None = None) -> ImportApiError:
    return ImportApiError(ImportErrorCode.BAD_REQUEST, message, details)


def unauthorized() -> ImportApiError:
    return ImportApiError(ImportErrorCode.UNAUTHORIZED, "Authentication required.")


def forbidden(permission: str) -> ImportApiError:
    return ImportApiError(
        ImportErrorCode.FORBIDDEN,
        f"Missing {permission} permission.",
        {"required_permission": permission},
    )


def internal_error() -> ImportApiError:
    return ImportApiError(ImportErrorCode.INTERNAL_ERROR, "An unexpected error occurred.")
