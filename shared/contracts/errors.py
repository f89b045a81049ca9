from __future__ import annotations

from .enums import ErrorCode


class MedLedgerError(Exception):
    """Base error carrying a machine-readable code and an optional field name."""

    code: ErrorCode = ErrorCode.STORE_ERROR

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.field = field

    def to_dict(self) -> dict[str, str | None]:
        return {"code": self.code.value, "message": self.message, "field": self.field}


class ValidationError(MedLedgerError):
    code = ErrorCode.VALIDATION_ERROR


class ExpiredWindow(MedLedgerError):
    code = ErrorCode.EXPIRED_WINDOW


class StaleVersion(MedLedgerError):
    code = ErrorCode.STALE_VERSION


class NotFound(MedLedgerError):
    code = ErrorCode.NOT_FOUND


class StoreError(MedLedgerError):
    """Transient persistence failure; retried before it reaches callers."""

    code = ErrorCode.STORE_ERROR


class DuplicateSuppressed(MedLedgerError):
    """A write was skipped because an equivalent event already exists."""

    code = ErrorCode.DUPLICATE_SUPPRESSED


class Forbidden(MedLedgerError):
    code = ErrorCode.FORBIDDEN
