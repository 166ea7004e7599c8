"""Error taxonomy for the fulfillment pipeline.

Every error carries a code and a message that is safe to show a buyer. Raw
processor or storage detail stays on the exception (and in order metadata),
never in the message.
"""

from enum import Enum
from typing import Any, Optional


class ErrorCode(Enum):
    VALIDATION = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    TIER_NOT_FOUND = "TIER_NOT_FOUND"
    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    EVENT_NOT_FOUND = "EVENT_NOT_FOUND"
    UNAUTHENTICATED = "UNAUTHENTICATED"
    FORBIDDEN = "FORBIDDEN"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    CONFLICT = "CONFLICT"
    INTERNAL = "INTERNAL_ERROR"


class DomainError(Exception):
    """Base error with code, user-safe message and HTTP status."""

    status_code = 400
    default_code = ErrorCode.VALIDATION

    def __init__(self, message: str, code: Optional[ErrorCode] = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"

    def envelope(self) -> dict[str, Any]:
        return {"error": {"code": self.code.value, "message": self.message}}


class ValidationError(DomainError):
    """Bad tier, quantity, discount or payload. User-correctable."""


class NotFoundError(DomainError):
    status_code = 404
    default_code = ErrorCode.NOT_FOUND


class TierNotFoundError(NotFoundError):
    def __init__(self, tier_id: str) -> None:
        super().__init__("Ticket tier not found", ErrorCode.TIER_NOT_FOUND)
        self.tier_id = tier_id


class OrderNotFoundError(NotFoundError):
    def __init__(self, ref: str) -> None:
        super().__init__("Order not found", ErrorCode.ORDER_NOT_FOUND)
        self.ref = ref


class EventNotFoundError(NotFoundError):
    def __init__(self, event_id: str) -> None:
        super().__init__("Event not found", ErrorCode.EVENT_NOT_FOUND)
        self.event_id = event_id


class AuthorizationError(DomainError):
    status_code = 403
    default_code = ErrorCode.FORBIDDEN

    def __init__(self, message: str = "Not allowed",
                 code: Optional[ErrorCode] = None) -> None:
        super().__init__(message, code)
        if self.code is ErrorCode.UNAUTHENTICATED:
            self.status_code = 401


class GatewayError(DomainError):
    """The payment processor declined, timed out or was unreachable.

    ``processor_code`` and ``processor_message`` are the raw processor
    details; they are recorded on the order for diagnosis but the buyer
    only ever sees the generic message.
    """

    status_code = 402
    default_code = ErrorCode.PAYMENT_FAILED

    def __init__(self, processor_code: str, processor_message: str = "",
                 transient: bool = False) -> None:
        super().__init__("Payment failed")
        self.processor_code = processor_code
        self.processor_message = processor_message
        self.transient = transient

    def envelope(self) -> dict[str, Any]:
        env = super().envelope()
        env["error"]["retryable"] = True
        return env

    def audit(self) -> dict[str, Any]:
        return {
            "last_error": self.processor_message or self.processor_code,
            "last_error_code": self.processor_code,
        }


class ConflictError(DomainError):
    status_code = 409
    default_code = ErrorCode.CONFLICT


class InternalError(DomainError):
    status_code = 500
    default_code = ErrorCode.INTERNAL

    def __init__(self, message: str = "Something went wrong") -> None:
        super().__init__(message)


class CodeGenerationExhausted(InternalError):
    def __init__(self, attempts: int) -> None:
        super().__init__()
        self.attempts = attempts


class InvalidSignatureError(ValidationError):
    def __init__(self) -> None:
        super().__init__("Invalid signature")
