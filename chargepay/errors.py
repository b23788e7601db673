"""
Error taxonomy for the charging payments service.

Every error carries a machine-readable ``code`` and a human-readable
``message``; the HTTP layer renders ``to_dict()`` with ``http_status``.
"""

from typing import Any, Dict, Optional


class PaymentServiceError(Exception):
    """Base class for all domain errors raised by the service."""

    http_status = 500
    default_code = "PAYMENT_SERVICE_ERROR"

    def __init__(self, message: str, code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class InvalidArgument(PaymentServiceError):
    """Missing or inconsistent input for the chosen flow."""

    http_status = 400
    default_code = "INVALID_ARGUMENT"


class MalformedPayload(InvalidArgument):
    """A webhook body that cannot be decoded or parsed."""

    default_code = "MALFORMED_PAYLOAD"


class NotFound(PaymentServiceError):
    http_status = 404
    default_code = "NOT_FOUND"


class InvalidState(PaymentServiceError):
    """Operation incompatible with the current lifecycle state."""

    http_status = 400
    default_code = "INVALID_STATE"


class InsufficientBalance(PaymentServiceError):
    http_status = 400
    default_code = "INSUFFICIENT_BALANCE"

    def __init__(self, required, available, balance_check_id: Optional[str] = None):
        super().__init__(
            f"Insufficient balance. Required: ${required}, Available: ${available}",
            details={
                "required": str(required),
                "available": str(available),
                "balance_check_id": balance_check_id,
            },
        )
        self.required = required
        self.available = available


class BalanceCheckFailed(PaymentServiceError):
    http_status = 400
    default_code = "BALANCE_CHECK_FAILED"


class AlreadyPaid(PaymentServiceError):
    http_status = 400
    default_code = "ALREADY_PAID"


class AuthenticationError(PaymentServiceError):
    """Webhook signature missing, invalid or not verifiable."""

    http_status = 400
    default_code = "AUTHENTICATION_ERROR"


class ProviderError(PaymentServiceError):
    """The checkout provider answered but rejected the request."""

    http_status = 502
    default_code = "PROVIDER_ERROR"


class OracleError(PaymentServiceError):
    """Balance lookup could not produce an answer."""

    http_status = 502
    default_code = "ORACLE_ERROR"


class AddressInvalid(OracleError):
    http_status = 400
    default_code = "ADDRESS_INVALID"


class TransportError(PaymentServiceError):
    """Oracle or checkout provider unreachable or timed out."""

    http_status = 502
    default_code = "TRANSPORT_ERROR"
