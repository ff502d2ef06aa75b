"""Buy and sell checkout: quote, create, confirm, and follow the order to a summary."""

from __future__ import annotations

import asyncio
from dataclasses import replace
from decimal import Decimal
from typing import Optional

from tradeflow.api.client import BrokerageClient
from tradeflow.data.currency import (
    convert_base_to_standard,
    convert_standard_to_base,
    generate_provisional_payment_amount,
    get_coin_from_pair,
    get_direction,
    get_fiat_from_pair,
    get_quote_amount,
    to_decimal,
)
from tradeflow.data.models import (
    AccountType,
    Card,
    CardAcquirerName,
    CardProviderDetails,
    CardState,
    CreateOrderCommand,
    Fix,
    MobilePaymentMethod,
    Order,
    OrderLeg,
    OrderSide,
    OrderState,
    PaymentMethod,
    PaymentType,
    Product,
    Quote,
    SwapAccount,
    SwapDirection,
)
from tradeflow.execution.events import EventBus, FlowEvent, FlowEventKind
from tradeflow.execution.flow import BaseFlow
from tradeflow.execution.quotes import QuoteLoopManager, buy_quote_fetcher, swap_quote_fetcher
from tradeflow.execution.rails import Rail, match_rail
from tradeflow.execution.retry import (
    PollSuperseded,
    RetryBudget,
    auth_url_check,
    card_activation_check,
    deposit_settled_check,
    poll,
)
from tradeflow.execution.steps import Step, StepName
from tradeflow.payments.chain import ChainBackend
from tradeflow.payments.provisional import (
    calculate_provisional_payment,
    payment_get_or_else,
    rebuild_with_amount,
)
from tradeflow.payments.tokenization import TokenizationBridge
from tradeflow.risk.eligibility import GateDecision, is_open_banking
from tradeflow.utils.config import get_settings
from tradeflow.utils.exceptions import (
    BrokerageError,
    CardErrorCode,
    ErrorCategory,
    FlowErrorCode,
    OrderValueChangedError,
    PaymentBuildError,
    ProviderError,
    RetryTimeoutError,
    ValidationError,
)
from tradeflow.utils.logger import get_logger

logger = get_logger(__name__)

FLEXIBLE_PRICING_TASK = "flexible_pricing"
CONFIRM_POLL_TASK = "confirm_poll"


def compute_order_legs(
    pair: str,
    side: OrderSide,
    fix: Fix,
    amount: str,
    rate: Optional[Decimal] = None,
    flexible: bool = False,
) -> tuple[OrderLeg, OrderLeg]:
    """Input and output legs for an order; the leg not fixed by the user has no amount.

    Under flexible pricing a crypto-fixed buy is sent as its fiat value at
    ``rate``, since those orders are priced from the fiat leg.
    """
    coin = get_coin_from_pair(pair)
    fiat = get_fiat_from_pair(pair)

    if side == OrderSide.BUY:
        if fix == Fix.FIAT:
            fiat_base = convert_standard_to_base(fiat, amount)
            return OrderLeg(symbol=fiat, amount=fiat_base), OrderLeg(symbol=coin)
        if flexible:
            if rate is None:
                raise ValidationError(FlowErrorCode.NO_QUOTE)
            fiat_amount = get_quote_amount(pair, rate, Fix.CRYPTO, amount)
            fiat_base = convert_standard_to_base(fiat, fiat_amount)
            return OrderLeg(symbol=fiat, amount=fiat_base), OrderLeg(symbol=coin)
        coin_base = convert_standard_to_base(coin, amount)
        return OrderLeg(symbol=fiat), OrderLeg(symbol=coin, amount=coin_base)

    if fix == Fix.CRYPTO:
        coin_base = convert_standard_to_base(coin, amount)
        return OrderLeg(symbol=coin, amount=coin_base), OrderLeg(symbol=fiat)
    fiat_base = convert_standard_to_base(fiat, amount)
    return OrderLeg(symbol=coin), OrderLeg(symbol=fiat, amount=fiat_base)


class BuySellFlow(BaseFlow):
    def __init__(
        self,
        client: BrokerageClient,
        bus: Optional[EventBus] = None,
        backend: Optional[ChainBackend] = None,
        budget: Optional[RetryBudget] = None,
        quotes: Optional[QuoteLoopManager] = None,
        tokenizer: Optional[TokenizationBridge] = None,
        flexible_pricing: Optional[bool] = None,
    ) -> None:
        super().__init__(client, bus=bus, backend=backend, budget=budget, quotes=quotes)
        self.settings = get_settings()
        self.flexible_pricing = (
            self.settings.flexible_pricing_model if flexible_pricing is None else flexible_pricing
        )
        self.tokenizer = tokenizer or TokenizationBridge(client)

    async def open(
        self,
        pair: Optional[str] = None,
        order_id: Optional[str] = None,
        side: OrderSide = OrderSide.BUY,
    ) -> GateDecision:
        self.product = Product.SELL if side == OrderSide.SELL else Product.BUY
        self.state.side = side
        return await super().open(pair, order_id)

    # ─────────────────────────────────────────────────────────
    # Checkout form
    # ─────────────────────────────────────────────────────────

    async def initialize_checkout(
        self,
        pair: str,
        side: OrderSide = OrderSide.BUY,
        method: Optional[PaymentMethod] = None,
        account: Optional[SwapAccount] = None,
        amount: Optional[str] = None,
        fix: Fix = Fix.FIAT,
    ) -> Optional[Quote]:
        """Start quoting for the checkout and wait for the first quote.

        Returns None when the first fetch fails; the failure is published
        and the loop can be restarted by calling this again.
        """
        st = self.state
        st.pair, st.side, st.fix = pair, side, fix
        st.method, st.account, st.amount = method, account, amount
        st.clear_error()

        if side == OrderSide.BUY:
            fetch = buy_quote_fetcher(self.client, pair, method)
        else:
            if account is None:
                self._fail_in_place(ValidationError(FlowErrorCode.NO_ACCOUNT))
                return None
            fetch = swap_quote_fetcher(self.client, pair, get_direction(account), OrderSide.SELL)

        quote = await self._first_quote(pair, side, fetch)
        if quote is None:
            logger.warning("checkout_quote_unavailable", pair=pair, side=side.value)
            return None
        st.quote = quote

        if side == OrderSide.SELL and account is not None and account.type == AccountType.ACCOUNT:
            if self.backend is not None:
                st.payment = await calculate_provisional_payment(
                    self.backend, account, quote, st.crypto_amount or 0
                )
                self.bus.publish(FlowEventKind.PAYMENT_UPDATED, {"payment": st.payment})

        if self.step.name == StepName.INIT_SELECTION:
            self._set_step(Step(StepName.ENTER_AMOUNT, pair=pair, account=account, method=method))
        return quote

    async def amount_changed(self, amount: str) -> Optional[str]:
        """Track a new form amount; returns the matching crypto amount."""
        st = self.state
        st.amount = amount
        if st.quote is None or st.pair is None:
            return None
        try:
            to_decimal(amount)
        except ValueError:
            st.record_error(ValidationError(FlowErrorCode.NO_AMOUNT))
            return None

        if st.fix == Fix.CRYPTO:
            crypto = amount
        else:
            crypto = get_quote_amount(st.pair, st.quote.rate, Fix.FIAT, amount)
        st.crypto_amount = crypto

        account = st.account
        if (
            st.side == OrderSide.SELL
            and account is not None
            and account.type == AccountType.ACCOUNT
            and self.backend is not None
        ):
            payment = payment_get_or_else(account.coin, st.payment)
            try:
                st.payment = await rebuild_with_amount(
                    self.backend, payment, generate_provisional_payment_amount(account.coin, crypto)
                )
                self.bus.publish(FlowEventKind.PAYMENT_UPDATED, {"payment": st.payment})
            except PaymentBuildError as e:
                logger.info("payment_rebuild_failed", coin=account.coin, code=e.code)
                self.bus.publish(FlowEventKind.PAYMENT_FAILED, {"error": e, "code": e.code})
        return crypto

    # ─────────────────────────────────────────────────────────
    # Create
    # ─────────────────────────────────────────────────────────

    def _validate(self, command: CreateOrderCommand) -> None:
        try:
            amount = to_decimal(command.amount) if command.amount else None
        except ValueError:
            amount = None
        if amount is None or amount <= 0:
            raise ValidationError(FlowErrorCode.NO_AMOUNT)
        if not command.pair:
            raise ValidationError(FlowErrorCode.NO_PAIR_SELECTED)
        if command.side == OrderSide.BUY and command.payment_type is None:
            raise ValidationError(FlowErrorCode.NO_PAYMENT_TYPE)
        if command.side == OrderSide.SELL and self.state.account is None:
            raise ValidationError(FlowErrorCode.NO_ACCOUNT)

    async def create_order(self, command: CreateOrderCommand) -> Optional[Order]:
        try:
            self._validate(command)
        except ValidationError as e:
            self._fail_in_place(e, endpoint="create_order")
            return None

        st = self.state
        st.pair, st.side, st.fix, st.amount = command.pair, command.side, command.fix, command.amount
        st.mobile_payment_method = command.mobile_payment_method
        st.clear_error()
        self._set_step(Step(StepName.CREATE_ORDER, pair=st.pair, account=st.account, method=st.method))

        try:
            if command.side == OrderSide.SELL:
                order = await self.place_sell_order(command)
            else:
                order = await self._create_buy_order(command)
                st.order = order
                self.bus.publish(FlowEventKind.ORDER_CREATED, {"order": order})
        except Exception as e:
            logger.error("create_order_failed", pair=st.pair, side=command.side.value, error=str(e))
            self._fail_in_place(e, endpoint="create_order")
            self._set_step(
                Step(StepName.ENTER_AMOUNT, pair=st.pair, account=st.account, method=st.method)
            )
            return None

        if command.side == OrderSide.SELL:
            self._set_step(Step(StepName.ORDER_SUMMARY, pair=st.pair, account=st.account, order=order))
            return order

        self._set_step(Step(StepName.CONFIRM, pair=st.pair, order=order, method=st.method))
        if self.flexible_pricing:
            self.spawn(FLEXIBLE_PRICING_TASK, self._refresh_flexible_order(command))
        return order

    async def _create_buy_order(
        self, command: CreateOrderCommand, quote_id: Optional[str] = None
    ) -> Order:
        quote = self.state.quote
        rate = None
        if self.flexible_pricing:
            if quote is None:
                raise ValidationError(FlowErrorCode.NO_QUOTE)
            quote_id = quote_id or quote.quote_id
            rate = quote.rate
        input_leg, output_leg = compute_order_legs(
            command.pair or "", OrderSide.BUY, command.fix, command.amount or "0",
            rate=rate, flexible=self.flexible_pricing,
        )
        return await self.client.create_buy_order(
            command.pair or "",
            OrderSide.BUY,
            input_leg,
            output_leg,
            command.payment_type or PaymentType.FUNDS,
            payment_method_id=command.payment_method_id,
            quote_id=quote_id if self.flexible_pricing else None,
            period=command.period,
        )

    async def _refresh_flexible_order(self, command: CreateOrderCommand) -> None:
        """Re-bind the pending order to every fresh quote while the user is on CONFIRM.

        Cancel of the old order always precedes creation of the new one.
        """
        events: asyncio.Queue[FlowEvent] = asyncio.Queue()
        watched = (FlowEventKind.QUOTE_UPDATED, FlowEventKind.QUOTE_LOOP_STOPPED)
        unsubscribe = self.bus.subscribe(
            lambda e: events.put_nowait(e) if e.kind in watched else None
        )
        st = self.state
        try:
            while True:
                event = await events.get()
                if event.payload.get("pair") != st.pair:
                    continue
                if event.kind == FlowEventKind.QUOTE_LOOP_STOPPED:
                    if event.payload.get("superseded"):
                        continue
                    logger.info("flexible_pricing_stopped", reason="quote_loop_stopped")
                    return

                if self.step.name != StepName.CONFIRM:
                    return
                previous = st.order
                quote: Quote = event.payload["quote"]
                try:
                    if previous is not None:
                        await self.client.cancel_order(previous)
                        st.order = None
                    if self.step.name != StepName.CONFIRM:
                        return
                    order = await self._create_buy_order(command, quote_id=quote.quote_id)
                except Exception as e:
                    logger.error(
                        "flexible_order_refresh_failed",
                        previous=previous.id if previous else None,
                        error=str(e),
                    )
                    self._fail_in_place(e, endpoint="create_order")
                    if self.step.name == StepName.CONFIRM:
                        self._set_step(
                            Step(
                                StepName.ENTER_AMOUNT,
                                pair=st.pair,
                                account=st.account,
                                method=st.method,
                            )
                        )
                    return

                st.order = order
                self.bus.publish(
                    FlowEventKind.ORDER_CREATED,
                    {"order": order, "replaces": previous.id if previous else None},
                )
                logger.info("flexible_order_refreshed", order_id=order.id, quote_id=quote.quote_id)
        finally:
            unsubscribe()

    async def place_sell_order(self, command: CreateOrderCommand) -> Order:
        """Sell through a swap order; self-custody sources broadcast the deposit.

        Raises the original error when the broadcast fails, after the order
        has been cancelled remotely.
        """
        st = self.state
        account = st.account
        if account is None:
            raise ValidationError(FlowErrorCode.NO_ACCOUNT)
        quote = st.quote
        if quote is None:
            raise ValidationError(FlowErrorCode.NO_QUOTE)

        pair = command.pair or ""
        coin = get_coin_from_pair(pair)
        fiat = get_fiat_from_pair(pair)
        amount = command.amount or "0"
        crypto_amt = (
            amount if command.fix == Fix.CRYPTO
            else get_quote_amount(pair, quote.rate, Fix.FIAT, amount)
        )
        volume = convert_standard_to_base(coin, crypto_amt)
        direction = get_direction(account)
        on_chain = direction == SwapDirection.FROM_USERKEY

        refund_address = None
        payment = None
        if on_chain:
            backend = self._require_backend()
            source = account.address if account.address is not None else 0
            refund_address = await backend.get_receive_address(coin, source)
            payment = st.payment or await calculate_provisional_payment(
                backend, account, quote, crypto_amt
            )
            payment = replace(payment, amount=int(volume))

        return await self._submit_swap_order(
            direction,
            quote.quote_id,
            volume,
            fiat,
            payment,
            refund_address=refund_address,
            on_chain=on_chain,
        )

    # ─────────────────────────────────────────────────────────
    # Confirm
    # ─────────────────────────────────────────────────────────

    async def _confirm_attributes(self, order: Order, open_banking: bool) -> Optional[dict]:
        settings = self.settings
        attributes: dict = {}
        if order.payment_type in (PaymentType.PAYMENT_CARD, PaymentType.USER_CARD):
            link = settings.payment_success_link
            attributes = {"everypay": {"customerUrl": link}, "redirectURL": link}
        elif open_banking:
            attributes = {"callback": f"{settings.com_root_domain}/brokerage-link-success"}

        mobile = self.state.mobile_payment_method
        if mobile is not None:
            currency = order.input_currency or settings.default_fiat_currency
            if order.input_quantity:
                amount = convert_base_to_standard(currency, order.input_quantity)
            else:
                amount = self.state.amount or "0"
            if mobile == MobilePaymentMethod.APPLE_PAY:
                token = await self.tokenizer.apple_pay_token(amount, currency)
                attributes["applePayPaymentToken"] = token
            else:
                token = await self.tokenizer.google_pay_token(amount, currency)
                attributes["googlePayPayload"] = token
        return attributes or None

    async def confirm_order(
        self, order: Optional[Order] = None, payment_method_id: Optional[str] = None
    ) -> Optional[Order]:
        st = self.state
        order = order or st.order
        if order is None:
            self._fail_in_place(
                ValidationError(FlowErrorCode.NO_ORDER_EXISTS), endpoint="confirm_order"
            )
            return None
        self.cancel_task(FLEXIBLE_PRICING_TASK)
        self.cancel_task(CONFIRM_POLL_TASK)

        try:
            if self.flexible_pricing:
                # The refresh loop may have re-bound the order since the caller read it.
                latest = st.order or order
                fresh = await self.client.get_order(latest.id)
                if fresh.input_quantity != order.input_quantity:
                    raise OrderValueChangedError(
                        order.input_quantity or "", fresh.input_quantity or ""
                    )
                order = fresh

            open_banking = False
            if order.payment_type == PaymentType.BANK_TRANSFER:
                open_banking = await is_open_banking(self.client, order)
            attributes = await self._confirm_attributes(order, open_banking)
            confirmed = await self.client.confirm_order(order, attributes, payment_method_id)
            st.order = confirmed
            self.bus.publish(FlowEventKind.ORDER_CONFIRMED, {"order": confirmed})
            logger.info("order_confirmed", order_id=confirmed.id, state=confirmed.state.value)

            if open_banking:
                return await self._open_banking_handoff(confirmed)

            decision = match_rail(confirmed)
            self._set_step(
                Step(
                    decision.step,
                    pair=st.pair,
                    order=confirmed,
                    method=st.method,
                    provider=decision.provider,
                    extra=decision.context,
                )
            )
            if decision.rail == Rail.BANK_REDIRECT:
                self.spawn(CONFIRM_POLL_TASK, self.confirm_order_poll(confirmed))
            return confirmed
        except PollSuperseded:
            return None
        except RetryTimeoutError as e:
            self._fail_terminal(e, endpoint="confirm_order")
            return None
        except Exception as e:
            logger.error("confirm_order_failed", order_id=order.id, error=str(e))
            self._fail_in_place(e, endpoint="confirm_order")
            self._set_step(Step(StepName.CONFIRM, pair=st.pair, order=order, method=st.method))
            return None

    async def _open_banking_handoff(self, order: Order) -> Order:
        self._set_step(Step(StepName.POLL_CONFIRMATION, pair=self.state.pair, order=order))
        with_url = await poll(
            self.budget,
            auth_url_check,
            self.client,
            order.id,
            still_wanted=self.still_in(StepName.POLL_CONFIRMATION),
        )
        if with_url.state == OrderState.FAILED:
            raise ProviderError(
                "Order failed before bank authorisation",
                code=FlowErrorCode.RETRYING_TO_GET_AUTH_URL.value,
            )
        self.state.order = with_url
        url = with_url.attributes.authorisation_url if with_url.attributes else None
        self._set_step(
            Step(
                StepName.BANK_TRANSFER_HANDOFF,
                pair=self.state.pair,
                order=with_url,
                extra={"authorisation_url": url},
            )
        )
        self.spawn(CONFIRM_POLL_TASK, self.confirm_order_poll(with_url))
        return with_url

    async def confirm_funds_order(self) -> Optional[Order]:
        """Confirm an order paid from the user's custodial fiat balance."""
        st = self.state
        order = st.order
        if order is None:
            self._fail_in_place(
                ValidationError(FlowErrorCode.NO_ORDER_EXISTS), endpoint="confirm_order"
            )
            return None
        try:
            confirmed = await self.client.confirm_order(order)
        except Exception as e:
            self._fail_in_place(e, endpoint="confirm_order")
            self._set_step(Step(StepName.CONFIRM, pair=st.pair, order=order))
            return None
        st.order = confirmed
        self.bus.publish(FlowEventKind.ORDER_CONFIRMED, {"order": confirmed})
        self._set_step(Step(StepName.ORDER_SUMMARY, pair=st.pair, order=confirmed))
        return confirmed

    async def poll_order(self, order_id: str) -> Optional[Order]:
        """After a 3DS challenge, wait for the deposit to leave PENDING_DEPOSIT."""
        try:
            order = await poll(
                self.budget,
                deposit_settled_check,
                self.client,
                order_id,
                still_wanted=self.still_in(StepName.CARD_3DS_HANDLER),
            )
        except PollSuperseded:
            return None
        except RetryTimeoutError as e:
            self._fail_terminal(e, endpoint="order_poll")
            return None

        self.state.order = order
        failed = order.state in (OrderState.FAILED, OrderState.CANCELED, OrderState.EXPIRED)
        self.bus.publish(
            FlowEventKind.ORDER_FAILED if failed else FlowEventKind.ORDER_CONFIRMED, {"order": order}
        )
        self._set_step(Step(StepName.ORDER_SUMMARY, pair=self.state.pair, order=order))
        return order

    async def cancel_order(self, order: Order) -> bool:
        st = self.state
        self.cancel_task(FLEXIBLE_PRICING_TASK)
        try:
            await self.client.cancel_order(order)
            st.orders = await self.client.get_orders()
        except Exception as e:
            self._fail_in_place(e, endpoint="cancel_order")
            return False
        self.bus.publish(FlowEventKind.ORDERS_FETCHED, {"orders": st.orders})

        if order.state != OrderState.PENDING_CONFIRMATION:
            await self.close()
            return True

        st.order = None
        if st.pair:
            self._set_step(Step(StepName.ENTER_AMOUNT, pair=st.pair, method=st.method))
        else:
            self._set_step(Step(StepName.INIT_SELECTION))
        return True

    # ─────────────────────────────────────────────────────────
    # Cards
    # ─────────────────────────────────────────────────────────

    async def determine_card_provider(self) -> Optional[Step]:
        st = self.state
        self._set_step(Step(StepName.DETERMINE_PAYMENT_PROVIDER, pair=st.pair))
        try:
            acquirers = await self.client.get_card_acquirers()
        except Exception as e:
            self._fail_terminal(e, endpoint="card_acquirers")
            return None

        checkout = [
            a for a in acquirers if a.card_acquirer_name == CardAcquirerName.CHECKOUTDOTCOM.value
        ]
        if not checkout:
            self._fail_terminal(
                ProviderError(
                    "No CHECKOUTDOTCOM card acquirer",
                    code=FlowErrorCode.CHECKOUTDOTCOM_NOT_FOUND.value,
                ),
                endpoint="card_acquirers",
            )
            return None

        account_codes: list[str] = []
        for acquirer in checkout:
            for code in acquirer.card_acquirer_account_codes:
                if code not in account_codes:
                    account_codes.append(code)

        step = Step(
            StepName.ADD_CARD,
            pair=st.pair,
            provider=CardAcquirerName.CHECKOUTDOTCOM,
            extra={
                "checkout_account_codes": account_codes,
                "checkout_api_key": checkout[0].api_key,
            },
        )
        self._set_step(step)
        return step

    def _card_failed(self, code: CardErrorCode, card_id: str) -> None:
        error = BrokerageError(code.value, ErrorCategory.PAYMENT, code=code.value)
        record = self.state.record_error(error)
        logger.warning("card_failed", card_id=card_id, code=code.value)
        self.bus.publish(FlowEventKind.CARD_FAILED, {"card_id": card_id, "code": code.value})
        self._set_step(Step(StepName.FAILED, pair=self.state.pair, message=record.code))

    async def activate_card(self, card: Card, cvv: str) -> Optional[CardProviderDetails]:
        try:
            details = await self.client.activate_card(
                card.id, cvv, self.settings.payment_success_link
            )
        except Exception as e:
            logger.error("card_activation_failed", card_id=card.id, error=str(e))
            self.state.record_error(e)
            self.bus.publish(
                FlowEventKind.CARD_FAILED,
                {"card_id": card.id, "code": CardErrorCode.LINK_CARD_FAILED.value, "error": e},
            )
            return None

        provider = CardProviderDetails.model_validate(details.get("cardProvider") or details)
        self.state.card = card.model_copy(update={"card_provider": provider})
        self._set_step(
            Step(
                StepName.CARD_3DS_HANDLER,
                pair=self.state.pair,
                provider=provider.card_acquirer_name or CardAcquirerName.CHECKOUTDOTCOM,
                extra={"card_id": card.id, "payment_link": provider.payment_link},
            )
        )
        return provider

    async def poll_card(self, card_id: str) -> Optional[Card]:
        st = self.state
        try:
            card = await poll(
                self.budget,
                card_activation_check,
                self.client,
                card_id,
                still_wanted=self.still_in(StepName.CARD_3DS_HANDLER),
            )
        except PollSuperseded:
            return None
        except RetryTimeoutError:
            self._card_failed(CardErrorCode.PENDING_CARD_AFTER_POLL, card_id)
            return None

        st.card = card
        if card.state != CardState.ACTIVE:
            code = (
                CardErrorCode.BLOCKED_CARD_AFTER_POLL
                if card.state == CardState.BLOCKED
                else CardErrorCode.LINK_CARD_FAILED
            )
            self._card_failed(code, card_id)
            return card

        self.bus.publish(FlowEventKind.CARD_ACTIVATED, {"card": card})
        st.method = PaymentMethod(
            type=PaymentType.PAYMENT_CARD,
            currency=card.currency or self.settings.default_fiat_currency,
            id=card.id,
        )

        pending = st.order
        if pending is not None and pending.state == OrderState.PENDING_CONFIRMATION:
            await self.confirm_order(pending, payment_method_id=card.id)
        else:
            await self.create_order(
                CreateOrderCommand(
                    pair=st.pair,
                    side=OrderSide.BUY,
                    amount=st.amount,
                    fix=st.fix,
                    payment_type=PaymentType.PAYMENT_CARD,
                    payment_method_id=card.id,
                )
            )
        return card
