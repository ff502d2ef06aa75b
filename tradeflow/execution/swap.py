from __future__ import annotations

from dataclasses import replace
from decimal import Decimal
from typing import Optional

from tradeflow.data.currency import (
    convert_standard_to_base,
    generate_provisional_payment_amount,
    get_swap_direction,
    get_swap_pair,
    to_decimal,
)
from tradeflow.data.models import (
    AccountType,
    Fix,
    Order,
    OrderSide,
    Product,
    Quote,
    SwapAccount,
    SwapDirection,
)
from tradeflow.execution.events import FlowEventKind
from tradeflow.execution.flow import BaseFlow
from tradeflow.execution.quotes import swap_quote_fetcher
from tradeflow.execution.steps import Step, StepName
from tradeflow.payments.provisional import (
    calculate_provisional_payment,
    payment_get_or_else,
    rebuild_with_amount,
)
from tradeflow.risk.eligibility import GateDecision
from tradeflow.utils.config import get_settings
from tradeflow.utils.exceptions import FlowErrorCode, PaymentBuildError, ValidationError
from tradeflow.utils.logger import get_logger

logger = get_logger(__name__)

ON_CHAIN_SOURCES = frozenset({SwapDirection.ON_CHAIN, SwapDirection.FROM_USERKEY})
ON_CHAIN_TARGETS = frozenset({SwapDirection.ON_CHAIN, SwapDirection.TO_USERKEY})


class SwapFlow(BaseFlow):
    """Exchange between two accounts, custodial or self-custody on either side."""

    product = Product.SWAP

    base: Optional[SwapAccount] = None
    counter: Optional[SwapAccount] = None

    async def start(
        self,
        base: Optional[SwapAccount] = None,
        counter: Optional[SwapAccount] = None,
        order_id: Optional[str] = None,
    ) -> GateDecision:
        self.base, self.counter = base, counter
        pair = get_swap_pair(base, counter) if base and counter else None
        decision = await self.open(pair, order_id)
        if decision.pending_order is None and decision.admits_flow and pair:
            await self.init_amount_form()
        return decision

    async def init_amount_form(self) -> Optional[Quote]:
        base, counter = self.base, self.counter
        if base is None or counter is None:
            self._set_step(Step(StepName.INIT_SELECTION))
            return None

        st = self.state
        pair = get_swap_pair(base, counter)
        st.pair, st.side, st.account = pair, OrderSide.SELL, base
        direction = get_swap_direction(base, counter)

        quote = await self._first_quote(
            pair, OrderSide.SELL, swap_quote_fetcher(self.client, pair, direction)
        )
        self._set_step(Step(StepName.ENTER_AMOUNT, pair=pair, account=base))
        if quote is None:
            return None

        if base.type == AccountType.ACCOUNT and self.backend is not None:
            st.payment = await calculate_provisional_payment(
                self.backend, base, quote, st.crypto_amount or 0
            )
        else:
            st.payment = None
        self.bus.publish(FlowEventKind.PAYMENT_UPDATED, {"payment": st.payment})
        return quote

    async def amount_changed(
        self, amount: str, fiat_rate: Optional[Decimal] = None
    ) -> Optional[str]:
        """Track the amount field. Fiat-fixed input needs the base coin's fiat rate."""
        st = self.state
        base = self.base
        st.amount = amount
        if base is None:
            return None
        try:
            value = to_decimal(amount)
        except ValueError:
            st.record_error(ValidationError(FlowErrorCode.NO_AMOUNT))
            return None

        if st.fix == Fix.CRYPTO:
            crypto = amount
        else:
            if not fiat_rate:
                st.record_error(ValidationError(FlowErrorCode.NO_QUOTE))
                return None
            crypto = format((value / to_decimal(fiat_rate)).normalize(), "f")
        st.crypto_amount = crypto

        if base.type == AccountType.CUSTODIAL or self.backend is None:
            return crypto

        payment = payment_get_or_else(base.coin, st.payment)
        try:
            st.payment = await rebuild_with_amount(
                self.backend, payment, generate_provisional_payment_amount(base.coin, crypto)
            )
            self.bus.publish(FlowEventKind.PAYMENT_UPDATED, {"payment": st.payment})
        except PaymentBuildError as e:
            self.bus.publish(FlowEventKind.PAYMENT_FAILED, {"error": e, "code": e.code})
        return crypto

    async def create_order(self) -> Optional[Order]:
        st = self.state
        base, counter = self.base, self.counter
        try:
            if base is None or counter is None:
                raise ValidationError(FlowErrorCode.NO_SWAP_FORM_VALUES)
            try:
                crypto = to_decimal(st.crypto_amount) if st.crypto_amount else None
            except ValueError:
                crypto = None
            if crypto is None or crypto <= 0:
                raise ValidationError(FlowErrorCode.NO_AMOUNT)
            quote = st.quote
            if quote is None:
                raise ValidationError(FlowErrorCode.NO_QUOTE)
        except ValidationError as e:
            self._fail_in_place(e, endpoint="create_swap_order")
            return None

        settings = get_settings()
        direction = get_swap_direction(base, counter)
        on_chain = direction in ON_CHAIN_SOURCES
        to_chain = direction in ON_CHAIN_TARGETS
        amount = convert_standard_to_base(base.coin, st.crypto_amount)

        try:
            refund_address = None
            destination_address = None
            payment = None
            if on_chain or to_chain:
                backend = self._require_backend()
                if on_chain:
                    refund_address = await backend.get_receive_address(
                        base.coin, base.address if base.address is not None else 0
                    )
                    payment = st.payment or await calculate_provisional_payment(
                        backend, base, quote, st.crypto_amount
                    )
                    payment = replace(payment, amount=int(amount))
                if to_chain:
                    destination_address = await backend.get_receive_address(
                        counter.coin, counter.address if counter.address is not None else 0
                    )

            hot_wallet = settings.swap_hot_wallet_address or None
            if on_chain and hot_wallet is None:
                logger.warning("hot_wallet_unavailable", fallback="deposit_and_sweep")

            order = await self._submit_swap_order(
                direction,
                quote.quote_id,
                amount,
                settings.default_fiat_currency,
                payment,
                destination_address=destination_address,
                refund_address=refund_address,
                on_chain=on_chain,
                hot_wallet_address=hot_wallet,
            )
        except Exception as e:
            logger.error("swap_order_failed", pair=st.pair, direction=direction.value, error=str(e))
            self._fail_in_place(e, endpoint="create_swap_order")
            return None

        self._set_step(Step(StepName.ORDER_SUMMARY, pair=st.pair, account=base, order=order))
        logger.info("swap_order_placed", order_id=order.id, direction=direction.value)
        return order

    async def cancel_order(self, order: Order) -> bool:
        try:
            await self.client.cancel_swap_order(order.id)
        except Exception as e:
            self._fail_in_place(e, endpoint="cancel_swap_order")
            return False
        self.state.order = None
        self._set_step(Step(StepName.INIT_SELECTION))
        return True
