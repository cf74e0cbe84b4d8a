"""
Custom Exceptions for the Billing Sync Service

Hierarchical exception classes for proper error handling across layers.
"""

from typing import Optional, Dict, Any


class BillingSyncError(Exception):
    """Base exception for all billing sync errors."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.original_error = original_error

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details
        }


class ValidationError(BillingSyncError):
    """Raised when input validation fails."""
    pass


class VerificationError(BillingSyncError):
    """
    Raised when an inbound webhook cannot be authenticated or decoded.

    Covers a missing or invalid signature, an unparseable payload and an
    unsupported event schema version. Nothing is mutated.
    """

    def __init__(
        self,
        message: str,
        reason: str,
        original_error: Optional[Exception] = None
    ):
        super().__init__(message, {"reason": reason}, original_error)
        self.reason = reason


class UnknownSubjectError(BillingSyncError):
    """Raised when an event references a subscription or user that cannot be resolved."""

    def __init__(
        self,
        message: str,
        remote_subscription_id: Optional[str] = None,
        remote_customer_id: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if remote_subscription_id:
            details["remote_subscription_id"] = remote_subscription_id
        if remote_customer_id:
            details["remote_customer_id"] = remote_customer_id
        super().__init__(message, details, original_error)


class DatabaseError(BillingSyncError):
    """Raised when database operations fail."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        table: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if table:
            details["table"] = table
        super().__init__(message, details, original_error)


class NotFoundError(DatabaseError):
    """Raised when a requested resource is not found."""
    pass


class DuplicateError(DatabaseError):
    """Raised when attempting to create a duplicate resource."""
    pass


class TransientStoreError(DatabaseError):
    """
    Raised when a write could not be completed but may succeed on retry.

    Lost compare-and-swap races and connection failures end up here; the
    webhook endpoint answers non-2xx so the provider redelivers.
    """

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        table: Optional[str] = None,
        retry_after: int = 5,
        original_error: Optional[Exception] = None
    ):
        super().__init__(message, operation, table, original_error)
        self.retry_after = retry_after
        self.details["retry_after_seconds"] = retry_after


class ProviderError(BillingSyncError):
    """Raised when a payment provider call fails or times out."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if operation:
            details["operation"] = operation
        super().__init__(message, details, original_error)


class ReconciliationMismatch(BillingSyncError):
    """
    Provider and local state disagreed during a reconciliation pull.

    Reported and logged, not raised: the local record is corrected toward
    the provider and the mismatch is kept in the reconciliation report.
    """

    def __init__(
        self,
        remote_subscription_id: str,
        differences: Dict[str, Dict[str, Any]],
    ):
        super().__init__(
            f"Local subscription {remote_subscription_id} diverged from provider",
            {
                "remote_subscription_id": remote_subscription_id,
                "differences": differences,
            },
        )
        self.remote_subscription_id = remote_subscription_id
        self.differences = differences


class ConfigurationError(BillingSyncError):
    """Raised when configuration is missing or invalid."""

    def __init__(
        self,
        message: str,
        missing_keys: Optional[list] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if missing_keys:
            details["missing_keys"] = missing_keys
        super().__init__(message, details, original_error)
