from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Optional, Union


class ErrorCategory(str, Enum):
    VALIDATION = "validation"
    PROVIDER = "provider"
    NETWORK = "network"
    AUTHENTICATION = "authentication"
    RATE_LIMIT = "rate_limit"
    CONFLICT = "conflict"
    TIMEOUT = "timeout"
    CANCELLATION = "cancellation"
    ORDER = "order"
    PAYMENT = "payment"
    SYSTEM = "system"


class FlowErrorCode(str, Enum):
    NO_AMOUNT = "NO_AMOUNT"
    NO_PAIR_SELECTED = "NO_PAIR_SELECTED"
    NO_PAYMENT_TYPE = "NO_PAYMENT_TYPE"
    NO_ACCOUNT = "NO_ACCOUNT"
    NO_QUOTE = "NO_QUOTE"
    NO_FIAT_CURRENCY = "NO_FIAT_CURRENCY"
    NO_ORDER_EXISTS = "NO_ORDER_EXISTS"
    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    ORDER_VALUE_CHANGED = "ORDER_VALUE_CHANGED"
    ORDER_VERIFICATION_TIMED_OUT = "ORDER_VERIFICATION_TIMED_OUT"
    RETRYING_TO_GET_AUTH_URL = "RETRYING_TO_GET_AUTH_URL"
    UNHANDLED_PAYMENT_STATE = "UNHANDLED_PAYMENT_STATE"
    CHECKOUTDOTCOM_NOT_FOUND = "CHECKOUTDOTCOM_NOT_FOUND"
    APPLE_PAY_INFO_NOT_FOUND = "APPLE_PAY_INFO_NOT_FOUND"
    FAILED_TO_VALIDATE_APPLE_PAY_MERCHANT = "FAILED_TO_VALIDATE_APPLE_PAY_MERCHANT"
    USER_CANCELLED_APPLE_PAY = "USER_CANCELLED_APPLE_PAY"
    GOOGLE_PAY_INFO_NOT_FOUND = "GOOGLE_PAY_INFO_NOT_FOUND"
    GOOGLE_PAY_PARAMETERS_MALFORMED = "GOOGLE_PAY_PARAMETERS_MALFORMED"
    GOOGLE_PAY_PARAMETERS_NOT_FOUND = "GOOGLE_PAY_PARAMETERS_NOT_FOUND"
    FAILED_TO_GENERATE_GOOGLE_PAY_TOKEN = "FAILED_TO_GENERATE_GOOGLE_PAY_TOKEN"
    USER_CANCELLED_GOOGLE_PAY = "USER_CANCELLED_GOOGLE_PAY"
    NO_SWAP_FORM_VALUES = "NO_SWAP_FORM_VALUES"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    INVALID_DESTINATION = "INVALID_DESTINATION"


class CardErrorCode(str, Enum):
    PENDING_CARD_AFTER_POLL = "PENDING_CARD_AFTER_POLL"
    BLOCKED_CARD_AFTER_POLL = "BLOCKED_CARD_AFTER_POLL"
    LINK_CARD_FAILED = "LINK_CARD_FAILED"


# Recorded and logged, never shown on the checkout form.
SUPPRESSED_ERROR_CODES: frozenset[str] = frozenset({FlowErrorCode.NO_AMOUNT.value})


class BrokerageError(Exception):
    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.SYSTEM,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
    ) -> None:
        self.message = message
        self.category = category
        self.status_code = status_code
        self.code = code
        super().__init__(self.message)

    def __str__(self) -> str:
        parts = [f"[{self.category.value}] {self.message}"]
        if self.status_code:
            parts.append(f"(HTTP {self.status_code})")
        if self.code and self.code != self.message:
            parts.append(f"Code: {self.code}")
        return " | ".join(parts)


class ValidationError(BrokerageError):
    def __init__(self, code: FlowErrorCode, message: Optional[str] = None) -> None:
        super().__init__(message or code.value, ErrorCategory.VALIDATION, code=code.value)


class ProviderError(BrokerageError):
    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        category: ErrorCategory = ErrorCategory.PROVIDER,
    ) -> None:
        super().__init__(message, category, status_code, code)


class NetworkError(ProviderError):
    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message, status_code, category=ErrorCategory.NETWORK)


class AuthenticationError(ProviderError):
    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message, status_code, category=ErrorCategory.AUTHENTICATION)


class RateLimitError(ProviderError):
    def __init__(self, message: str = "Rate limit exceeded") -> None:
        super().__init__(message, 429, category=ErrorCategory.RATE_LIMIT)


class ConflictError(ProviderError):
    def __init__(self, message: str = "Order already settled", code: Optional[str] = None) -> None:
        super().__init__(message, 409, code, category=ErrorCategory.CONFLICT)


class RetryTimeoutError(BrokerageError, TimeoutError):
    def __init__(
        self,
        message: str = "Verification timed out",
        attempts: int = 0,
        last_value: Any = None,
    ) -> None:
        self.attempts = attempts
        self.last_value = last_value
        super().__init__(
            message,
            ErrorCategory.TIMEOUT,
            code=FlowErrorCode.ORDER_VERIFICATION_TIMED_OUT.value,
        )


class CancellationError(BrokerageError):
    def __init__(self, code: FlowErrorCode) -> None:
        super().__init__(code.value, ErrorCategory.CANCELLATION, code=code.value)


class TokenizationError(BrokerageError):
    def __init__(self, code: FlowErrorCode) -> None:
        super().__init__(code.value, ErrorCategory.PAYMENT, code=code.value)


class OrderValueChangedError(BrokerageError):
    def __init__(self, expected: str, actual: str) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Order input quantity changed from {expected} to {actual}",
            ErrorCategory.ORDER,
            code=FlowErrorCode.ORDER_VALUE_CHANGED.value,
        )


class UnhandledPaymentStateError(BrokerageError):
    def __init__(self, order_id: str) -> None:
        self.order_id = order_id
        super().__init__(
            f"No payment rail matches order {order_id}",
            ErrorCategory.ORDER,
            code=FlowErrorCode.UNHANDLED_PAYMENT_STATE.value,
        )


class PaymentBuildError(BrokerageError):
    def __init__(self, message: str, code: FlowErrorCode) -> None:
        super().__init__(message, ErrorCategory.PAYMENT, code=code.value)


class InsufficientBalanceError(PaymentBuildError):
    def __init__(self, required: int, available: int) -> None:
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient balance: need {required}, have {available}",
            FlowErrorCode.INSUFFICIENT_BALANCE,
        )


class InvalidDestinationError(PaymentBuildError):
    def __init__(self, address: str) -> None:
        self.address = address
        super().__init__(f"Invalid destination address: {address}", FlowErrorCode.INVALID_DESTINATION)


@dataclass
class ClientErrorProperties:
    """Error classification fields consumed by analytics."""

    network_endpoint: str
    network_error_code: Union[int, str, None]
    network_error_description: str
    source: str = "NABU"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def error_code(error: BaseException) -> Union[int, str]:
    """Best identifier for an error: named code, then HTTP status, then message."""
    if isinstance(error, BrokerageError):
        if error.code:
            return error.code
        if error.status_code:
            return error.status_code
        return error.message
    return str(error)


def error_code_and_message(error: BaseException) -> tuple[Union[int, str, None], str]:
    if isinstance(error, BrokerageError):
        return (error.code or error.status_code), error.message
    return None, str(error)


def client_error_properties(endpoint: str, error: BaseException) -> ClientErrorProperties:
    code, message = error_code_and_message(error)
    return ClientErrorProperties(
        network_endpoint=endpoint,
        network_error_code=code,
        network_error_description=message,
    )
