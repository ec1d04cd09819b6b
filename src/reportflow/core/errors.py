"""
Domain errors.

Each error is an ``HTTPException`` so services can raise it directly and FastAPI renders
it with a structured body: ``{"detail": {"code": ..., "message": ..., **context}}``.
Messages are written for the end user and always name the file, column or status
involved.
"""

from __future__ import annotations

from typing import Any

from fastapi import HTTPException, status


class DomainError(HTTPException):
    code = "DOMAIN_ERROR"
    http_status = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, **context: Any) -> None:
        self.message = message
        self.context = context
        detail: dict[str, Any] = {"code": self.code, "message": message}
        detail.update({k: v for k, v in context.items() if v is not None})
        super().__init__(status_code=self.http_status, detail=detail)

    def __str__(self) -> str:
        return self.message


class UnsupportedFileType(DomainError):
    code = "UNSUPPORTED_FILE_TYPE"


class MalformedDocument(DomainError):
    code = "MALFORMED_DOCUMENT"
    http_status = status.HTTP_422_UNPROCESSABLE_ENTITY


class NoAmountColumnFound(DomainError):
    code = "NO_AMOUNT_COLUMN_FOUND"
    http_status = status.HTTP_422_UNPROCESSABLE_ENTITY


class FileTooLarge(DomainError):
    code = "FILE_TOO_LARGE"
    http_status = status.HTTP_413_REQUEST_ENTITY_TOO_LARGE


class ValidationFailed(DomainError):
    code = "VALIDATION_FAILED"


class IncompleteUpload(DomainError):
    code = "INCOMPLETE_UPLOAD"
    http_status = status.HTTP_409_CONFLICT


class InvalidTransition(DomainError):
    code = "INVALID_TRANSITION"
    http_status = status.HTTP_409_CONFLICT
