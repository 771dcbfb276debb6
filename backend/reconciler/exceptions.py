"""
Reconciler Exception Hierarchy

Error codes shared by the HTTP layer and the reconciliation services.
All errors use a reconciler: prefix so clients can branch on them.
"""
from typing import Optional, Dict, Any


class ReconcilerError(Exception):
    """
    Base exception for all reconciliation errors.

    Each subclass fixes its error code and the HTTP status the API layer
    answers with; callers only supply the message and details.
    """

    http_status: int = 400

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
            "success": False,
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details
        }


class OrderValidationError(ReconcilerError):
    """
    Order data is missing mandatory fields.

    Example:
    - orderID, totalAmount, phone or name absent from orderData
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("reconciler:order:invalid", message, details)


class InvalidAmountError(ReconcilerError):
    """
    Amount cannot be converted to a positive number of minor units.

    Examples:
    - "abc", "NaN", "-5", "0.001" (rounds to zero)
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("reconciler:order:invalid_amount", message, details)


class DuplicateTransactionError(ReconcilerError):
    """Transaction identifier already present in the ledger."""

    http_status = 409

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("reconciler:order:duplicate", message, details)


class OrderNotFoundError(ReconcilerError):
    """
    No order recorded for the transaction identifier.

    Permanent for the event that raised it: the event is reported, not retried.
    """

    http_status = 404

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("reconciler:order:not_found", message, details)


class GatewayUnavailableError(ReconcilerError):
    """
    Gateway could not be reached or answered with an unparseable body.

    Examples:
    - Connection refused, DNS failure
    - Request exceeded GATEWAY_TIMEOUT_SECONDS
    - Response body is not a JSON object

    Never a payment outcome: callers must not treat it as a failed payment.
    """

    http_status = 503

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("reconciler:gateway:unavailable", message, details)


class MalformedPayloadError(ReconcilerError):
    """
    Inbound callback payload cannot be decoded.

    Examples:
    - response is not valid base64
    - decoded bytes are not a JSON object
    - code or data.merchantTransactionId missing
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("reconciler:callback:malformed", message, details)


class SignatureInvalidError(ReconcilerError):
    """
    Callback checksum missing or failed verification.

    Examples:
    - X-VERIFY header absent on a server-to-server callback
    - X-VERIFY digest does not match sha256(response + salt key)
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("reconciler:callback:signature_invalid", message, details)
