from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from tradeflow.data.models import (
    Card,
    Fix,
    MobilePaymentMethod,
    Order,
    OrderSide,
    OrderState,
    PaymentMethod,
    Quote,
    SwapAccount,
)
from tradeflow.execution.steps import Step, StepName
from tradeflow.payments.provisional import ProvisionalPayment
from tradeflow.utils.exceptions import SUPPRESSED_ERROR_CODES, error_code_and_message


@dataclass
class ErrorRecord:
    code: Optional[str]
    message: str
    displayed: bool


@dataclass
class FlowState:
    """Everything a flow has learned so far.

    The orchestrator owns ``step``; background tasks only write the quote
    and payment slices.
    """

    step: Step = field(default_factory=lambda: Step(StepName.INIT_SELECTION))
    pair: Optional[str] = None
    side: OrderSide = OrderSide.BUY
    fix: Fix = Fix.FIAT
    amount: Optional[str] = None
    crypto_amount: Optional[str] = None
    account: Optional[SwapAccount] = None
    method: Optional[PaymentMethod] = None
    mobile_payment_method: Optional[MobilePaymentMethod] = None
    quote: Optional[Quote] = None
    quote_error: Optional[dict[str, Any]] = None
    order: Optional[Order] = None
    orders: list[Order] = field(default_factory=list)
    payment: Optional[ProvisionalPayment] = None
    card: Optional[Card] = None
    last_error: Optional[ErrorRecord] = None
    form_error: Optional[str] = None

    @property
    def cancellable_orders(self) -> list[Order]:
        return [o for o in self.orders if o.state == OrderState.PENDING_CONFIRMATION]

    def record_error(self, error: BaseException) -> ErrorRecord:
        code, message = error_code_and_message(error)
        code_str = str(code) if code is not None else None
        displayed = code_str not in SUPPRESSED_ERROR_CODES
        record = ErrorRecord(code=code_str, message=message, displayed=displayed)
        self.last_error = record
        if displayed:
            self.form_error = code_str or message
        return record

    def clear_error(self) -> None:
        self.last_error = None
        self.form_error = None
