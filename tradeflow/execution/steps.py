from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Optional

from tradeflow.data.models import CardAcquirerName, Order, PaymentMethod, SwapAccount


class StepName(str, Enum):
    INIT_SELECTION = "INIT_SELECTION"
    ENTER_AMOUNT = "ENTER_AMOUNT"
    DETERMINE_PAYMENT_PROVIDER = "DETERMINE_PAYMENT_PROVIDER"
    ADD_CARD = "ADD_CARD"
    CREATE_ORDER = "CREATE_ORDER"
    CARD_3DS_HANDLER = "CARD_3DS_HANDLER"
    CONFIRM = "CONFIRM"
    BANK_TRANSFER_HANDOFF = "BANK_TRANSFER_HANDOFF"
    POLL_CONFIRMATION = "POLL_CONFIRMATION"
    ORDER_SUMMARY = "ORDER_SUMMARY"
    FAILED = "FAILED"
    UPGRADE_REQUIRED = "UPGRADE_REQUIRED"
    RESTRICTED = "RESTRICTED"


TERMINAL_STEPS = frozenset(
    {StepName.ORDER_SUMMARY, StepName.FAILED, StepName.UPGRADE_REQUIRED, StepName.RESTRICTED}
)


@dataclass(frozen=True)
class Step:
    """The single active screen of a flow, with the context it needs."""

    name: StepName
    pair: Optional[str] = None
    account: Optional[SwapAccount] = None
    order: Optional[Order] = None
    method: Optional[PaymentMethod] = None
    provider: Optional[CardAcquirerName] = None
    form: Optional[str] = None
    message: Optional[str] = None
    extra: dict[str, Any] = field(default_factory=dict)

    def with_(self, **changes: Any) -> Step:
        return replace(self, **changes)

    @property
    def is_terminal(self) -> bool:
        return self.name in TERMINAL_STEPS

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name.value,
            "pair": self.pair,
            "order_id": self.order.id if self.order else None,
            "provider": self.provider.value if self.provider else None,
            "message": self.message,
        }
