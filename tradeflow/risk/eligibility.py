"""
Eligibility & sanctions gate, run once when a buy/sell/swap flow opens.

Order of decisions:
  1. Cancel any order left in PENDING_CONFIRMATION and re-fetch the list once
  2. Tier / quota check          -> UPGRADE_REQUIRED
  3. Product restriction          -> RESTRICTED (optional message)
  4. Existing pending order       -> resume at CONFIRM / BANK_TRANSFER_HANDOFF / ORDER_SUMMARY
  5. Otherwise                    -> ENTER_AMOUNT (buy with a coin) or INIT_SELECTION
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from tradeflow.api.client import BrokerageClient
from tradeflow.data.models import (
    PENDING_ORDER_STATES,
    BankPartner,
    Order,
    OrderState,
    PaymentType,
    Product,
    ProductAccess,
    ProductEligibility,
    SanctionReason,
)
from tradeflow.execution.steps import Step, StepName
from tradeflow.utils.logger import get_logger

logger = get_logger(__name__)

FULL_TIER = 2


# ─────────────────────────────────────────────────────────────
# Enums & Data Classes
# ─────────────────────────────────────────────────────────────

class GateOutcome(str, Enum):
    PROCEED = "PROCEED"
    RESUME_ORDER = "RESUME_ORDER"
    UPGRADE_REQUIRED = "UPGRADE_REQUIRED"
    RESTRICTED = "RESTRICTED"


@dataclass
class GateDecision:
    """Where a newly opened flow should start."""
    outcome: GateOutcome
    step: Step
    pending_order: Optional[Order] = None
    orders: list[Order] = field(default_factory=list)
    message: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def admits_flow(self) -> bool:
        return self.outcome in (GateOutcome.PROCEED, GateOutcome.RESUME_ORDER)

    @property
    def attach_poller(self) -> bool:
        """Resumed orders awaiting the user's confirmation are not polled."""
        return (
            self.outcome == GateOutcome.RESUME_ORDER
            and self.pending_order is not None
            and self.pending_order.state != OrderState.PENDING_CONFIRMATION
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "step": self.step.name.value,
            "pending_order_id": self.pending_order.id if self.pending_order else None,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }


def fallback_eligibility() -> ProductEligibility:
    return ProductEligibility(buy=ProductAccess(enabled=False, max_orders_left=0))


async def is_open_banking(client: BrokerageClient, order: Order) -> bool:
    """True when the order is paid from a bank linked through an open-banking partner."""
    try:
        accounts = await client.get_bank_transfer_accounts()
    except Exception as e:
        logger.warning("bank_accounts_fetch_failed", order_id=order.id, error=str(e))
        return False
    return any(
        a.id == order.payment_method_id and a.partner == BankPartner.YAPILY.value
        for a in accounts
    )


# ─────────────────────────────────────────────────────────────
# EligibilityGate
# ─────────────────────────────────────────────────────────────

class EligibilityGate:
    def __init__(self, client: BrokerageClient) -> None:
        self._client = client

    async def cleanup_cancellable_orders(self, keep_order_id: Optional[str] = None) -> list[Order]:
        """Cancel every PENDING_CONFIRMATION order, then re-fetch the list once."""
        orders = await self._client.get_orders()
        cancellable = [
            o for o in orders
            if o.state == OrderState.PENDING_CONFIRMATION and o.id != keep_order_id
        ]
        if not cancellable:
            return orders

        for order in cancellable:
            await self._client.cancel_order(order)
        logger.info("cancellable_orders_cleaned", count=len(cancellable))
        return await self._client.get_orders()

    async def _eligibility(self) -> ProductEligibility:
        try:
            return await self._client.get_product_eligibility()
        except Exception as e:
            logger.warning("eligibility_fetch_failed", error=str(e))
            return fallback_eligibility()

    async def _tier(self) -> int:
        try:
            return await self._client.get_user_tier()
        except Exception as e:
            logger.warning("user_tier_fetch_failed", error=str(e))
            return 0

    async def _resume_step(self, order: Order) -> Step:
        if order.state == OrderState.PENDING_CONFIRMATION:
            return Step(StepName.CONFIRM, pair=order.pair, order=order)
        if order.payment_type == PaymentType.BANK_TRANSFER and await is_open_banking(
            self._client, order
        ):
            return Step(StepName.BANK_TRANSFER_HANDOFF, pair=order.pair, order=order)
        return Step(StepName.ORDER_SUMMARY, pair=order.pair, order=order)

    async def evaluate(
        self,
        product: Product,
        pair: Optional[str] = None,
        order_id: Optional[str] = None,
    ) -> GateDecision:
        orders = await self.cleanup_cancellable_orders(keep_order_id=order_id)

        pending: Optional[Order] = None
        if order_id:
            pending = next((o for o in orders if o.id == order_id), None)
        if pending is None:
            pending = next((o for o in orders if o.state in PENDING_ORDER_STATES), None)

        eligibility = await self._eligibility()
        access = eligibility.for_product(product)
        tier = await self._tier()

        if tier != FULL_TIER and (
            (pending is None and not access.max_orders_left) or product == Product.SELL
        ):
            logger.info("gate_upgrade_required", product=product.value, tier=tier)
            return GateDecision(
                outcome=GateOutcome.UPGRADE_REQUIRED,
                step=Step(StepName.UPGRADE_REQUIRED, pair=pair),
                orders=orders,
            )

        reason = access.reason_not_eligible
        if reason is not None:
            message = None if reason.reason == SanctionReason.EU_5_SANCTION.value else reason.message
            logger.info("gate_restricted", product=product.value, reason=reason.reason)
            return GateDecision(
                outcome=GateOutcome.RESTRICTED,
                step=Step(StepName.RESTRICTED, pair=pair, message=message),
                orders=orders,
                message=message,
            )

        if pending is not None:
            step = await self._resume_step(pending)
            logger.info("gate_resume_order", order_id=pending.id, step=step.name.value)
            return GateDecision(
                outcome=GateOutcome.RESUME_ORDER,
                step=step,
                pending_order=pending,
                orders=orders,
            )

        if product == Product.BUY and pair:
            step = Step(StepName.ENTER_AMOUNT, pair=pair)
        else:
            step = Step(StepName.INIT_SELECTION, pair=pair)
        return GateDecision(outcome=GateOutcome.PROCEED, step=step, orders=orders)
