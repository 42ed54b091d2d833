"""
Payment Network Exception Hierarchy.

Every error carries a stable ``error_code`` so the request layer can map it
to a response without inspecting message text.
"""

from typing import Any, Dict, Optional


class PaymentNetworkError(Exception):
    """Base exception for all payment network errors."""

    def __init__(
        self,
        error_code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None
    ):
        self.error_code = error_code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to API error response format."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details
        }


class ValidationError(PaymentNetworkError):
    """Malformed or missing input fields."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("payment:validation_failed", message, details)


class ConfigurationError(PaymentNetworkError):
    """Invalid service configuration detected at startup."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("payment:configuration_invalid", message, details)


class DeclineError(PaymentNetworkError):
    """
    The issuer explicitly declined the operation.

    Terminal for the operation: recorded on the transaction, never retried.
    """

    def __init__(self, reason: str, details: Optional[Dict[str, Any]] = None):
        self.reason = reason
        super().__init__("issuer:declined", reason, details)


class TransientIssuerError(PaymentNetworkError):
    """
    Issuer returned a 5xx or the request failed at the transport level.

    Retried by the issuer gateway with exponential backoff.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.status_code = status_code
        super().__init__("issuer:unavailable", message, details)


class IssuerRequestError(PaymentNetworkError):
    """Issuer rejected the request with a non-retryable HTTP status."""

    def __init__(
        self,
        message: str,
        status_code: int,
        details: Optional[Dict[str, Any]] = None
    ):
        self.status_code = status_code
        super().__init__("issuer:request_rejected", message, details)


class DeliveryError(PaymentNetworkError):
    """A merchant notification endpoint was unreachable or returned non-2xx."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.status_code = status_code
        super().__init__("webhook:delivery_failed", message, details)


class PersistenceError(PaymentNetworkError):
    """The repository could not complete a read or write."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("storage:failure", message, details)


class StaleTransactionError(PersistenceError):
    """
    A conditional update found the transaction in a different status.

    Raised when a concurrent operation changed the transaction between
    read and write.
    """

    def __init__(self, transaction_id: str, expected_status: str, actual_status: Optional[str]):
        self.transaction_id = transaction_id
        self.expected_status = expected_status
        self.actual_status = actual_status
        super().__init__(
            f"Transaction {transaction_id} is {actual_status}, expected {expected_status}",
            {"transaction_id": transaction_id}
        )
        self.error_code = "storage:stale_transaction"
