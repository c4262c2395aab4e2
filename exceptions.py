"""
Unified exception hierarchy for the household ledger.

LedgerError is the base exception. Each subclass carries a stable error code
that the HTTP layer turns into a status code and a JSON error body.
"""

from typing import Optional


class LedgerError(Exception):
    """
    Base exception class for all ledger errors.

    Attributes:
        message: Human-readable error message
        details: Optional dictionary with additional error context
        original_error: Optional original exception that caused this error
    """

    code = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        details: Optional[dict] = None,
        original_error: Optional[Exception] = None
    ) -> None:
        """
        Initialize LedgerError.

        Args:
            message: Human-readable error message
            details: Optional dictionary with additional error context
            original_error: Optional original exception that caused this error
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.original_error = original_error

    def __str__(self) -> str:
        """Return string representation of the error."""
        msg = self.message
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            msg = f"{msg} ({detail_str})"
        return msg

    def to_dict(self) -> dict:
        """Serialize the error as an API error body."""
        return {
            "code": self.code,
            "message": self.message,
            "details": {k: str(v) for k, v in self.details.items()},
        }


class ConfigError(LedgerError):
    """Raised when configuration loading or validation fails."""
    code = "CONFIG_ERROR"


class InvalidInputError(LedgerError):
    """Raised when a request field is missing or malformed."""
    code = "INVALID_INPUT"


class ConflictError(LedgerError):
    """Raised when a row already exists for a unique key."""
    code = "DUPLICATE_ENTRY"


class NotFoundError(LedgerError):
    """Raised when an update or delete target does not exist."""
    code = "NOT_FOUND"


class StorageError(LedgerError):
    """Raised when an underlying query or statement fails."""
    code = "DATABASE_ERROR"


class InUseError(LedgerError):
    """Raised when deactivating a record that transactions still reference."""
    code = "CANNOT_DELETE"
