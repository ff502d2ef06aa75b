"""Tests for the buy/sell checkout flow."""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from tradeflow.data.models import (
    AccountType,
    BankTransferAccount,
    Card,
    CardAcquirer,
    CardAcquirerName,
    CardState,
    CreateOrderCommand,
    EverypayDetails,
    Fix,
    MobilePaymentMethod,
    OrderAttributes,
    OrderLeg,
    OrderSide,
    OrderState,
    PaymentType,
    SwapAccount,
    SwapDirection,
    SwapOrderKind,
    SwapOrderUpdate,
)
from tradeflow.execution.buy_sell import BuySellFlow, compute_order_legs
from tradeflow.execution.events import FlowEventKind
from tradeflow.execution.rails import SETTLED, WAITING_FOR_3DS
from tradeflow.execution.retry import RetryBudget
from tradeflow.execution.steps import Step, StepName
from tradeflow.payments.tokenization import TokenizationBridge
from tradeflow.utils.config import get_settings
from tradeflow.utils.exceptions import (
    CardErrorCode,
    FlowErrorCode,
    ProviderError,
)


def _buy(amount="100", fix=Fix.FIAT, payment_type=PaymentType.PAYMENT_CARD, **kw):
    return CreateOrderCommand(
        pair="BTC-USD", side=OrderSide.BUY, amount=amount, fix=fix, payment_type=payment_type, **kw
    )


def _sell(amount="0.01", fix=Fix.CRYPTO):
    return CreateOrderCommand(pair="BTC-USD", side=OrderSide.SELL, amount=amount, fix=fix)


def _settled_card_order(make_order, order_id="order-1"):
    return make_order(
        order_id,
        OrderState.FINISHED,
        attributes=OrderAttributes(everypay=EverypayDetails(payment_state=SETTLED)),
    )


class TestOrderLegs:
    """The leg the user did not fix is sent without an amount."""

    def test_buy_fiat_fixed(self):
        input_leg, output_leg = compute_order_legs("BTC-USD", OrderSide.BUY, Fix.FIAT, "100")
        assert input_leg == OrderLeg(symbol="USD", amount="10000")
        assert output_leg == OrderLeg(symbol="BTC", amount=None)

    def test_buy_crypto_fixed(self):
        input_leg, output_leg = compute_order_legs("BTC-USD", OrderSide.BUY, Fix.CRYPTO, "0.5")
        assert input_leg == OrderLeg(symbol="USD")
        assert output_leg == OrderLeg(symbol="BTC", amount="50000000")

    def test_flexible_crypto_fixed_buy_sends_fiat_value(self):
        input_leg, output_leg = compute_order_legs(
            "BTC-USD", OrderSide.BUY, Fix.CRYPTO, "0.01", rate=Decimal("50000"), flexible=True
        )
        assert input_leg == OrderLeg(symbol="USD", amount="50000")
        assert output_leg.amount is None

    def test_sell_crypto_fixed(self):
        input_leg, output_leg = compute_order_legs("BTC-USD", OrderSide.SELL, Fix.CRYPTO, "0.01")
        assert input_leg == OrderLeg(symbol="BTC", amount="1000000")
        assert output_leg == OrderLeg(symbol="USD")


class TestCheckout:
    """Starting checkout waits for the first quote."""

    @pytest.mark.asyncio
    async def test_initialize_and_amount_changed(self, buy_flow, mock_client, make_quote):
        mock_client.get_buy_quote.return_value = make_quote(pair="USD-BTC")

        quote = await buy_flow.initialize_checkout("BTC-USD")

        assert quote.pair == "BTC-USD"
        assert buy_flow.step.name == StepName.ENTER_AMOUNT
        assert buy_flow.quotes.is_running("BTC-USD", OrderSide.BUY)
        assert await buy_flow.amount_changed("100") == "0.002"
        assert buy_flow.state.crypto_amount == "0.002"
        assert await buy_flow.amount_changed("NaN") is None
        assert buy_flow.state.last_error.code == FlowErrorCode.NO_AMOUNT.value
        assert buy_flow.state.crypto_amount == "0.002"

    @pytest.mark.asyncio
    async def test_first_quote_failure(self, buy_flow, mock_client):
        mock_client.get_buy_quote.side_effect = ProviderError("pair not supported", 400)

        quote = await buy_flow.initialize_checkout("BTC-USD")

        assert quote is None
        assert buy_flow.state.quote_error["network_error_code"] == 400
        assert buy_flow.step.name == StepName.INIT_SELECTION

    @pytest.mark.asyncio
    async def test_self_custody_sell_drafts_payment(self, buy_flow, mock_client, make_quote):
        mock_client.get_swap_quote.return_value = make_quote(side=OrderSide.SELL)
        account = SwapAccount(coin="BTC", type=AccountType.ACCOUNT, address=0)

        await buy_flow.initialize_checkout("BTC-USD", OrderSide.SELL, account=account)

        mock_client.get_swap_quote.assert_awaited_with(
            "BTC-USD", SwapDirection.FROM_USERKEY, OrderSide.SELL
        )
        assert buy_flow.state.payment.effective_balance == 100_000_000 - 1_000
        assert buy_flow.bus.last(FlowEventKind.PAYMENT_UPDATED) is not None


class TestCreateOrder:
    """create_order validates locally before any network call."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "amount", ["0", "-5", "abc", None, "NaN", "Infinity", "-Infinity"]
    )
    async def test_missing_amount_makes_no_calls(self, buy_flow, mock_client, amount):
        result = await buy_flow.create_order(_buy(amount=amount))

        assert result is None
        assert mock_client.mock_calls == []
        assert buy_flow.state.last_error.code == FlowErrorCode.NO_AMOUNT.value
        assert buy_flow.state.last_error.displayed is False
        assert buy_flow.state.form_error is None
        assert buy_flow.step.name == StepName.INIT_SELECTION

    @pytest.mark.asyncio
    async def test_missing_payment_type_is_displayed(self, buy_flow, mock_client):
        await buy_flow.create_order(_buy(payment_type=None))

        assert buy_flow.state.form_error == FlowErrorCode.NO_PAYMENT_TYPE.value
        failed = buy_flow.bus.last(FlowEventKind.ORDER_FAILED)
        assert failed.payload["displayed"] is True
        mock_client.create_buy_order.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_buy_order_moves_to_confirm(self, buy_flow, mock_client, make_order):
        order = make_order()
        mock_client.create_buy_order.return_value = order

        result = await buy_flow.create_order(_buy(period="ONE_TIME"))

        assert result == order
        assert buy_flow.step.name == StepName.CONFIRM
        assert buy_flow.step.order == order
        args = mock_client.create_buy_order.await_args
        assert args.args[:5] == (
            "BTC-USD",
            OrderSide.BUY,
            OrderLeg(symbol="USD", amount="10000"),
            OrderLeg(symbol="BTC"),
            PaymentType.PAYMENT_CARD,
        )
        assert args.kwargs["quote_id"] is None
        assert args.kwargs["period"] == "ONE_TIME"
        assert buy_flow.task("flexible_pricing") is None

    @pytest.mark.asyncio
    async def test_rejected_order_returns_to_amount(self, buy_flow, mock_client):
        mock_client.create_buy_order.side_effect = ProviderError(
            "Insufficient funds", 400, "INSUFFICIENT_FUNDS"
        )

        result = await buy_flow.create_order(_buy())

        assert result is None
        assert buy_flow.step.name == StepName.ENTER_AMOUNT
        assert buy_flow.state.last_error.code == "INSUFFICIENT_FUNDS"
        assert buy_flow.state.form_error == "INSUFFICIENT_FUNDS"


class TestSellOrders:
    """Sells are swap orders into fiat."""

    @pytest.mark.asyncio
    async def test_self_custody_sell_broadcasts_deposit(
        self, buy_flow, mock_client, backend, make_order, make_quote
    ):
        buy_flow.state.account = SwapAccount(coin="BTC", type=AccountType.ACCOUNT, address=0)
        buy_flow.state.quote = make_quote(side=OrderSide.SELL)
        mock_client.create_swap_order.return_value = make_order(
            "sell-1",
            OrderState.PENDING_DEPOSIT,
            payment_type=None,
            kind=SwapOrderKind(deposit_address="bc1deposit"),
        )

        order = await buy_flow.create_order(_sell())

        assert order.id == "sell-1"
        mock_client.create_swap_order.assert_awaited_once_with(
            SwapDirection.FROM_USERKEY, "q-1", "1000000", "USD", None, "BTC-receive-0"
        )
        mock_client.update_swap_order.assert_awaited_once_with(
            "sell-1", SwapOrderUpdate.DEPOSIT_SENT
        )
        assert backend.published[0].destination == "bc1deposit"
        assert backend.published[0].amount == 1_000_000
        assert buy_flow.step.name == StepName.ORDER_SUMMARY

    @pytest.mark.asyncio
    async def test_failed_broadcast_cancels_and_reraises(
        self, buy_flow, mock_client, backend, make_order, make_quote
    ):
        backend.publish_error = RuntimeError("broadcast rejected")
        buy_flow.state.account = SwapAccount(coin="BTC", type=AccountType.ACCOUNT, address=0)
        buy_flow.state.quote = make_quote(side=OrderSide.SELL)
        mock_client.create_swap_order.return_value = make_order(
            "sell-1", OrderState.PENDING_DEPOSIT, kind=SwapOrderKind(deposit_address="bc1deposit")
        )

        with pytest.raises(RuntimeError, match="broadcast rejected"):
            await buy_flow.place_sell_order(_sell())

        mock_client.update_swap_order.assert_awaited_once_with("sell-1", SwapOrderUpdate.CANCEL)

    @pytest.mark.asyncio
    async def test_failed_broadcast_returns_to_amount(
        self, buy_flow, mock_client, backend, make_order, make_quote
    ):
        backend.publish_error = RuntimeError("broadcast rejected")
        buy_flow.state.account = SwapAccount(coin="BTC", type=AccountType.ACCOUNT, address=0)
        buy_flow.state.quote = make_quote(side=OrderSide.SELL)
        mock_client.create_swap_order.return_value = make_order(
            "sell-1", OrderState.PENDING_DEPOSIT, kind=SwapOrderKind(deposit_address="bc1deposit")
        )

        assert await buy_flow.create_order(_sell()) is None
        assert buy_flow.step.name == StepName.ENTER_AMOUNT
        assert buy_flow.state.form_error == "broadcast rejected"

    @pytest.mark.asyncio
    async def test_custodial_sell_at_fiat_amount(self, buy_flow, mock_client, backend, make_order, make_quote):
        buy_flow.state.account = SwapAccount(coin="BTC", type=AccountType.CUSTODIAL)
        buy_flow.state.quote = make_quote(side=OrderSide.SELL)
        mock_client.create_swap_order.return_value = make_order("sell-2", OrderState.PENDING_DEPOSIT)

        await buy_flow.create_order(_sell(amount="100", fix=Fix.FIAT))

        mock_client.create_swap_order.assert_awaited_once_with(
            SwapDirection.INTERNAL, "q-1", "200000", "USD", None, None
        )
        mock_client.update_swap_order.assert_not_awaited()
        assert backend.published == []


class TestConfirmOrder:
    """Confirmation picks the rail and follows it."""

    @pytest.mark.asyncio
    async def test_card_order_enters_3ds(self, buy_flow, mock_client, make_order):
        order = make_order()
        mock_client.confirm_order.return_value = make_order(
            attributes=OrderAttributes(
                everypay=EverypayDetails(
                    payment_state=WAITING_FOR_3DS, payment_link="https://everypay/3ds"
                )
            )
        )

        await buy_flow.confirm_order(order)

        link = get_settings().payment_success_link
        mock_client.confirm_order.assert_awaited_once_with(
            order, {"everypay": {"customerUrl": link}, "redirectURL": link}, None
        )
        assert buy_flow.step.name == StepName.CARD_3DS_HANDLER
        assert buy_flow.step.provider == CardAcquirerName.EVERYPAY
        assert buy_flow.step.extra["payment_link"] == "https://everypay/3ds"

    @pytest.mark.asyncio
    async def test_flexible_confirm_detects_changed_value(self, mock_client, bus, budget, make_order):
        flow = BuySellFlow(mock_client, bus=bus, budget=budget, flexible_pricing=True)
        order = make_order(input_quantity="10000")
        mock_client.get_order.return_value = make_order(input_quantity="10100")
        try:
            result = await flow.confirm_order(order)
        finally:
            await flow.close()

        assert result is None
        mock_client.confirm_order.assert_not_awaited()
        assert flow.state.last_error.code == FlowErrorCode.ORDER_VALUE_CHANGED.value
        assert flow.step.name == StepName.CONFIRM

    @pytest.mark.asyncio
    async def test_unhandled_payment_state_stays_on_confirm(self, buy_flow, mock_client, make_order):
        mock_client.confirm_order.return_value = make_order(state=OrderState.PENDING_DEPOSIT)

        result = await buy_flow.confirm_order(make_order())

        assert result is None
        assert buy_flow.step.name == StepName.CONFIRM
        assert buy_flow.state.last_error.code == FlowErrorCode.UNHANDLED_PAYMENT_STATE.value

    @pytest.mark.asyncio
    async def test_open_banking_handoff_then_summary(self, buy_flow, mock_client, make_order):
        order = make_order(payment_type=PaymentType.BANK_TRANSFER, payment_method_id="bank-1")
        mock_client.get_bank_transfer_accounts.return_value = [
            BankTransferAccount(id="bank-1", partner="YAPILY")
        ]
        mock_client.confirm_order.return_value = make_order(
            state=OrderState.PENDING_DEPOSIT, payment_type=PaymentType.BANK_TRANSFER
        )
        mock_client.get_order.side_effect = [
            make_order(
                state=OrderState.PENDING_DEPOSIT,
                payment_type=PaymentType.BANK_TRANSFER,
                attributes=OrderAttributes(authorisation_url="https://bank/auth"),
            ),
            make_order(state=OrderState.FINISHED, payment_type=PaymentType.BANK_TRANSFER),
        ]

        await buy_flow.confirm_order(order)

        attributes = mock_client.confirm_order.await_args.args[1]
        assert attributes["callback"].endswith("/brokerage-link-success")
        assert buy_flow.step.name == StepName.BANK_TRANSFER_HANDOFF
        assert buy_flow.step.extra["authorisation_url"] == "https://bank/auth"

        await asyncio.wait_for(buy_flow.task("confirm_poll"), timeout=1)
        assert buy_flow.step.name == StepName.ORDER_SUMMARY
        assert buy_flow.state.order.state == OrderState.FINISHED

    @pytest.mark.asyncio
    async def test_apple_pay_token_attached(self, mock_client, bus, budget, make_order):
        tokenizer = AsyncMock(spec=TokenizationBridge)
        tokenizer.apple_pay_token.return_value = '{"paymentData": "abc"}'
        flow = BuySellFlow(
            mock_client, bus=bus, budget=budget, tokenizer=tokenizer, flexible_pricing=False
        )
        flow.state.mobile_payment_method = MobilePaymentMethod.APPLE_PAY
        order = make_order(input_currency="USD", input_quantity="10000")
        mock_client.confirm_order.return_value = _settled_card_order(make_order)
        try:
            await flow.confirm_order(order)
        finally:
            await flow.close()

        tokenizer.apple_pay_token.assert_awaited_once_with("100", "USD")
        attributes = mock_client.confirm_order.await_args.args[1]
        assert attributes["applePayPaymentToken"] == '{"paymentData": "abc"}'
        assert flow.step.name == StepName.ORDER_SUMMARY

    @pytest.mark.asyncio
    async def test_confirm_poll_timeout_fails_flow(self, buy_flow, mock_client, make_order):
        order = make_order(state=OrderState.PENDING_DEPOSIT)
        mock_client.get_order.return_value = order
        buy_flow.state.step = Step(StepName.CONFIRM, order=order)

        assert await buy_flow.confirm_order_poll(order) is None

        assert mock_client.get_order.await_count == 3
        assert buy_flow.step.name == StepName.FAILED
        assert buy_flow.step.message == FlowErrorCode.ORDER_VERIFICATION_TIMED_OUT.value

    @pytest.mark.asyncio
    async def test_confirm_funds_order(self, buy_flow, mock_client, make_order):
        buy_flow.state.order = make_order(payment_type=PaymentType.FUNDS)
        mock_client.confirm_order.return_value = make_order(
            state=OrderState.FINISHED, payment_type=PaymentType.FUNDS
        )

        confirmed = await buy_flow.confirm_funds_order()

        assert confirmed.state == OrderState.FINISHED
        assert buy_flow.step.name == StepName.ORDER_SUMMARY


class TestFlexiblePricing:
    """The pending order is re-created for every fresh quote while on CONFIRM."""

    @pytest.mark.asyncio
    async def test_new_quote_cancels_then_recreates(
        self, mock_client, bus, budget, quote_loops, make_order, make_quote
    ):
        flow = BuySellFlow(
            mock_client, bus=bus, budget=budget, quotes=quote_loops, flexible_pricing=True
        )
        first, second = make_order("order-1"), make_order("order-2")
        mock_client.create_buy_order.side_effect = [first, second]
        flow.state.quote = make_quote()
        try:
            await flow.create_order(_buy(payment_type=PaymentType.FUNDS))
            assert flow.task("flexible_pricing") is not None
            await asyncio.sleep(0)

            fresh = make_quote(quote_id="q-2")
            created = bus.waiter(FlowEventKind.ORDER_CREATED)
            bus.publish(
                FlowEventKind.QUOTE_UPDATED,
                {"pair": "BTC-USD", "side": OrderSide.BUY, "quote": fresh, "rate": fresh.rate},
            )
            event = await asyncio.wait_for(created, timeout=1)
        finally:
            await flow.close()

        assert event.payload["replaces"] == "order-1"
        calls = [
            c[0] for c in mock_client.mock_calls if c[0] in ("create_buy_order", "cancel_order")
        ]
        assert calls == ["create_buy_order", "cancel_order", "create_buy_order"]
        mock_client.cancel_order.assert_awaited_once_with(first)
        assert mock_client.create_buy_order.await_args.kwargs["quote_id"] == "q-2"
        assert flow.state.order == second
        assert flow.step.name == StepName.CONFIRM

    @pytest.mark.asyncio
    async def test_confirm_stops_refreshing(self, mock_client, bus, budget, make_order, make_quote):
        flow = BuySellFlow(mock_client, bus=bus, budget=budget, flexible_pricing=True)
        order = make_order(input_quantity="10000")
        mock_client.create_buy_order.return_value = order
        mock_client.get_order.return_value = order
        mock_client.confirm_order.return_value = _settled_card_order(make_order)
        flow.state.quote = make_quote()
        try:
            await flow.create_order(_buy())
            await flow.confirm_order()
        finally:
            await flow.close()

        assert flow.task("flexible_pricing") is None
        mock_client.confirm_order.assert_awaited_once()
        assert flow.step.name == StepName.ORDER_SUMMARY

    @pytest.mark.asyncio
    async def test_confirm_uses_replacement_order(
        self, mock_client, bus, budget, quote_loops, make_order, make_quote
    ):
        flow = BuySellFlow(
            mock_client, bus=bus, budget=budget, quotes=quote_loops, flexible_pricing=True
        )
        first = make_order("order-1", input_quantity="10000")
        second = make_order("order-2", input_quantity="10000")
        mock_client.create_buy_order.side_effect = [first, second]
        mock_client.get_order.side_effect = lambda order_id: {"order-1": first, "order-2": second}[
            order_id
        ]
        mock_client.confirm_order.return_value = _settled_card_order(make_order, "order-2")
        flow.state.quote = make_quote()
        try:
            await flow.create_order(_buy())
            await asyncio.sleep(0)
            fresh = make_quote(quote_id="q-2")
            created = bus.waiter(FlowEventKind.ORDER_CREATED)
            bus.publish(
                FlowEventKind.QUOTE_UPDATED,
                {"pair": "BTC-USD", "side": OrderSide.BUY, "quote": fresh, "rate": fresh.rate},
            )
            await asyncio.wait_for(created, timeout=1)

            await flow.confirm_order(first)
        finally:
            await flow.close()

        mock_client.get_order.assert_awaited_once_with("order-2")
        assert mock_client.confirm_order.await_args.args[0] == second
        assert flow.step.name == StepName.ORDER_SUMMARY

    @pytest.mark.asyncio
    async def test_failed_recreate_returns_to_amount(
        self, mock_client, bus, budget, quote_loops, make_order, make_quote
    ):
        flow = BuySellFlow(
            mock_client, bus=bus, budget=budget, quotes=quote_loops, flexible_pricing=True
        )
        first = make_order("order-1")
        mock_client.create_buy_order.side_effect = [first, ProviderError("quote expired", 500)]
        flow.state.quote = make_quote()
        try:
            await flow.create_order(_buy(payment_type=PaymentType.FUNDS))
            refresher = flow.task("flexible_pricing")
            await asyncio.sleep(0)
            fresh = make_quote(quote_id="q-2")
            bus.publish(
                FlowEventKind.QUOTE_UPDATED,
                {"pair": "BTC-USD", "side": OrderSide.BUY, "quote": fresh, "rate": fresh.rate},
            )
            await asyncio.wait_for(refresher, timeout=1)
        finally:
            await flow.close()

        mock_client.cancel_order.assert_awaited_once_with(first)
        assert flow.state.order is None
        assert flow.state.last_error is not None
        assert isinstance(bus.last(FlowEventKind.ORDER_FAILED).payload["error"], ProviderError)
        assert flow.step.name == StepName.ENTER_AMOUNT


class TestCancelOrder:
    @pytest.mark.asyncio
    async def test_cancel_refetches_once(self, buy_flow, mock_client, make_order):
        order = make_order()
        buy_flow.state.pair = "BTC-USD"
        buy_flow.state.order = order
        buy_flow.state.orders = [order]
        mock_client.get_orders.return_value = []

        assert await buy_flow.cancel_order(order) is True

        mock_client.cancel_order.assert_awaited_once_with(order)
        assert mock_client.get_orders.await_count == 1
        assert buy_flow.state.cancellable_orders == []
        assert buy_flow.state.order is None
        assert buy_flow.step.name == StepName.ENTER_AMOUNT

    @pytest.mark.asyncio
    async def test_cancel_settled_order_closes_flow(self, buy_flow, mock_client, make_order):
        order = make_order(state=OrderState.PENDING_DEPOSIT)

        await buy_flow.cancel_order(order)

        assert buy_flow.closed
        assert buy_flow.bus.last(FlowEventKind.FLOW_CLOSED) is not None


class TestOpen:
    @pytest.mark.asyncio
    async def test_resumed_order_is_polled(self, buy_flow, mock_client, make_order):
        pending = make_order("resume", OrderState.DEPOSIT_MATCHED, payment_type=PaymentType.FUNDS)
        mock_client.get_orders.return_value = [pending]
        mock_client.get_order.return_value = make_order(
            "resume", OrderState.FINISHED, payment_type=PaymentType.FUNDS
        )

        decision = await buy_flow.open("BTC-USD")

        assert decision.pending_order == pending
        assert buy_flow.step.name == StepName.ORDER_SUMMARY
        await asyncio.wait_for(buy_flow.task("confirm_poll"), timeout=1)
        assert buy_flow.bus.last(FlowEventKind.ORDER_CONFIRMED).payload["order"].id == "resume"

    @pytest.mark.asyncio
    async def test_order_awaiting_confirmation_is_not_polled(
        self, buy_flow, mock_client, make_order
    ):
        pending = make_order("order-9", OrderState.PENDING_CONFIRMATION)
        mock_client.get_orders.return_value = [pending]
        mock_client.get_order.return_value = pending

        await buy_flow.open("BTC-USD", order_id="order-9")
        await asyncio.sleep(0.02)

        assert buy_flow.task("confirm_poll") is None
        mock_client.get_order.assert_not_awaited()
        assert buy_flow.step.name == StepName.CONFIRM
        assert buy_flow.state.last_error is None

    @pytest.mark.asyncio
    async def test_confirm_stops_resumed_poller(self, mock_client, bus, make_order):
        flow = BuySellFlow(mock_client, bus=bus, budget=RetryBudget(50, 20))
        pending = make_order("resume", OrderState.DEPOSIT_MATCHED)
        mock_client.get_orders.return_value = [pending]
        mock_client.get_order.return_value = pending
        mock_client.confirm_order.return_value = _settled_card_order(make_order, "resume")
        try:
            await flow.open("BTC-USD")
            poller = flow.task("confirm_poll")
            assert poller is not None

            await flow.confirm_order()
            await asyncio.gather(poller, return_exceptions=True)
        finally:
            await flow.close()

        assert poller.cancelled()
        assert flow.step.name == StepName.ORDER_SUMMARY

    @pytest.mark.asyncio
    async def test_close_cancels_everything(self, buy_flow, mock_client, make_quote):
        mock_client.get_buy_quote.return_value = make_quote(pair="USD-BTC")
        await buy_flow.initialize_checkout("BTC-USD")

        await buy_flow.close()

        assert not buy_flow.quotes.is_running("BTC-USD", OrderSide.BUY)
        assert buy_flow.bus.last(FlowEventKind.FLOW_CLOSED) is not None


class TestCards:
    """Card linking: provider lookup, activation and the 3DS poll."""

    @pytest.mark.asyncio
    async def test_checkout_acquirer_found(self, buy_flow, mock_client):
        mock_client.get_card_acquirers.return_value = [
            CardAcquirer(card_acquirer_name="STRIPE", api_key="pk_stripe"),
            CardAcquirer(
                card_acquirer_name="CHECKOUTDOTCOM",
                api_key="pk_checkout",
                card_acquirer_account_codes=["acc-1", "acc-2"],
            ),
        ]

        step = await buy_flow.determine_card_provider()

        assert step.name == StepName.ADD_CARD
        assert step.extra == {
            "checkout_account_codes": ["acc-1", "acc-2"],
            "checkout_api_key": "pk_checkout",
        }

    @pytest.mark.asyncio
    async def test_checkout_acquirer_missing(self, buy_flow, mock_client):
        mock_client.get_card_acquirers.return_value = [
            CardAcquirer(card_acquirer_name="STRIPE", api_key="pk_stripe")
        ]

        assert await buy_flow.determine_card_provider() is None
        assert buy_flow.step.name == StepName.FAILED
        assert buy_flow.step.message == FlowErrorCode.CHECKOUTDOTCOM_NOT_FOUND.value

    @pytest.mark.asyncio
    async def test_activate_card(self, buy_flow, mock_client):
        mock_client.activate_card.return_value = {
            "cardProvider": {"cardAcquirerName": "CHECKOUTDOTCOM", "paymentLink": "https://3ds"}
        }

        provider = await buy_flow.activate_card(Card(id="card-1", state=CardState.PENDING), "123")

        assert provider.card_acquirer_name == CardAcquirerName.CHECKOUTDOTCOM
        assert buy_flow.step.name == StepName.CARD_3DS_HANDLER
        assert buy_flow.step.extra["payment_link"] == "https://3ds"
        mock_client.activate_card.assert_awaited_once_with(
            "card-1", "123", get_settings().payment_success_link
        )

    @pytest.mark.asyncio
    async def test_activation_failure_published(self, buy_flow, mock_client):
        mock_client.activate_card.side_effect = ProviderError("declined", 400)

        assert await buy_flow.activate_card(Card(id="card-1", state=CardState.PENDING), "1") is None

        event = buy_flow.bus.last(FlowEventKind.CARD_FAILED)
        assert event.payload["code"] == CardErrorCode.LINK_CARD_FAILED.value

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "state, code",
        [
            (CardState.PENDING, CardErrorCode.PENDING_CARD_AFTER_POLL),
            (CardState.BLOCKED, CardErrorCode.BLOCKED_CARD_AFTER_POLL),
            (CardState.FRAUD_REVIEW, CardErrorCode.LINK_CARD_FAILED),
        ],
    )
    async def test_card_poll_failures(self, buy_flow, mock_client, state, code):
        mock_client.get_card.return_value = Card(id="card-1", state=state)
        buy_flow.state.step = Step(StepName.CARD_3DS_HANDLER)

        await buy_flow.poll_card("card-1")

        assert buy_flow.step.name == StepName.FAILED
        assert buy_flow.step.message == code.value

    @pytest.mark.asyncio
    async def test_active_card_confirms_pending_order(self, buy_flow, mock_client, make_order):
        pending = make_order()
        buy_flow.state.order = pending
        buy_flow.state.step = Step(StepName.CARD_3DS_HANDLER)
        mock_client.get_card.return_value = Card(id="card-1", state=CardState.ACTIVE, currency="EUR")
        mock_client.confirm_order.return_value = _settled_card_order(make_order)

        card = await buy_flow.poll_card("card-1")

        assert card.state == CardState.ACTIVE
        assert buy_flow.bus.last(FlowEventKind.CARD_ACTIVATED) is not None
        assert mock_client.confirm_order.await_args.args[2] == "card-1"
        assert buy_flow.state.method.id == "card-1"
        assert buy_flow.step.name == StepName.ORDER_SUMMARY

    @pytest.mark.asyncio
    async def test_poll_abandoned_when_user_leaves(self, buy_flow, mock_client):
        buy_flow.state.step = Step(StepName.ENTER_AMOUNT)

        assert await buy_flow.poll_card("card-1") is None
        mock_client.get_card.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_poll_order_after_3ds(self, buy_flow, mock_client, make_order):
        buy_flow.state.step = Step(StepName.CARD_3DS_HANDLER)
        mock_client.get_order.side_effect = [
            make_order(state=OrderState.PENDING_DEPOSIT),
            make_order(state=OrderState.FINISHED),
        ]

        order = await buy_flow.poll_order("order-1")

        assert order.state == OrderState.FINISHED
        assert buy_flow.step.name == StepName.ORDER_SUMMARY
