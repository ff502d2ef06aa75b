"""Shared orchestration for buy/sell and swap flows."""

from __future__ import annotations

import asyncio
from typing import Any, Coroutine, Optional

from tradeflow.api.client import BrokerageClient
from tradeflow.data.models import Order, OrderState, Product, SwapDirection, SwapOrderUpdate
from tradeflow.execution.events import EventBus, FlowEvent, FlowEventKind, race_first
from tradeflow.execution.quotes import QuoteFetcher, QuoteLoopManager
from tradeflow.execution.retry import (
    PollSuperseded,
    RetryBudget,
    order_confirm_check,
    poll,
)
from tradeflow.execution.state import ErrorRecord, FlowState
from tradeflow.execution.steps import Step, StepName
from tradeflow.payments.chain import ChainBackend
from tradeflow.payments.provisional import ProvisionalPayment, build_and_publish_payment
from tradeflow.risk.eligibility import EligibilityGate, GateDecision
from tradeflow.utils.exceptions import (
    FlowErrorCode,
    RetryTimeoutError,
    ValidationError,
    client_error_properties,
)
from tradeflow.utils.logger import get_logger

logger = get_logger(__name__)


class BaseFlow:
    """One user session of a trade flow.

    The flow object is the orchestrator: it alone moves the Step. Quote
    loops and pollers are child tasks kept in a keyed registry, so starting
    a task under an existing key cancels the previous one.
    """

    product: Product = Product.BUY

    def __init__(
        self,
        client: BrokerageClient,
        bus: Optional[EventBus] = None,
        backend: Optional[ChainBackend] = None,
        budget: Optional[RetryBudget] = None,
        quotes: Optional[QuoteLoopManager] = None,
    ) -> None:
        self.client = client
        self.bus = bus or EventBus()
        self.backend = backend
        self.budget = budget or RetryBudget.from_settings()
        self.quotes = quotes or QuoteLoopManager(self.bus)
        self.gate = EligibilityGate(client)
        self.state = FlowState()
        self.closed = False
        self._tasks: dict[str, asyncio.Task] = {}
        self._unsubscribe = self.bus.subscribe(self._on_event)

    # ─────────────────────────────────────────────────────────
    # Step & task plumbing
    # ─────────────────────────────────────────────────────────

    @property
    def step(self) -> Step:
        return self.state.step

    def _set_step(self, step: Step) -> None:
        previous = self.state.step.name
        self.state.step = step
        logger.info(
            "step_changed", flow=type(self).__name__, previous=previous.value, step=step.name.value
        )
        self.bus.publish(FlowEventKind.STEP_CHANGED, {"step": step, "previous": previous})

    def still_in(self, *names: StepName) -> Any:
        """Predicate for pollers: true while the active Step is one of ``names``."""
        wanted = frozenset(names)

        def check() -> bool:
            return not self.closed and self.state.step.name in wanted

        return check

    def spawn(self, key: str, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        self.cancel_task(key)
        task = asyncio.create_task(coro, name=f"{type(self).__name__}:{key}")
        self._tasks[key] = task

        def _done(t: asyncio.Task) -> None:
            if self._tasks.get(key) is t:
                del self._tasks[key]
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                logger.error("flow_task_failed", task=key, error=str(exc))

        task.add_done_callback(_done)
        return task

    def cancel_task(self, key: str) -> None:
        task = self._tasks.pop(key, None)
        if task is not None and not task.done():
            task.cancel()

    def task(self, key: str) -> Optional[asyncio.Task]:
        return self._tasks.get(key)

    def _on_event(self, event: FlowEvent) -> None:
        if event.kind == FlowEventKind.QUOTE_UPDATED and event.payload.get("pair") == self.state.pair:
            self.state.quote = event.payload["quote"]
            self.state.quote_error = None
        elif event.kind == FlowEventKind.QUOTE_FAILED and event.payload.get("pair") == self.state.pair:
            self.state.quote_error = {
                k: v for k, v in event.payload.items() if k.startswith("network_")
            }

    def _fail_in_place(self, error: BaseException, endpoint: str = "flow") -> ErrorRecord:
        """Record ``error`` for the current form without leaving the Step."""
        record = self.state.record_error(error)
        props = client_error_properties(endpoint, error)
        if record.displayed:
            logger.warning("flow_error", code=record.code, message=record.message)
        else:
            logger.info("flow_error_suppressed", code=record.code)
        self.bus.publish(
            FlowEventKind.ORDER_FAILED,
            {"error": error, "displayed": record.displayed, **props.to_dict()},
        )
        return record

    def _fail_terminal(self, error: BaseException, endpoint: str = "flow") -> None:
        record = self._fail_in_place(error, endpoint)
        self._set_step(
            Step(StepName.FAILED, pair=self.state.pair, order=self.state.order, message=record.code)
        )

    # ─────────────────────────────────────────────────────────
    # Entry & exit
    # ─────────────────────────────────────────────────────────

    async def open(self, pair: Optional[str] = None, order_id: Optional[str] = None) -> GateDecision:
        """Run the eligibility gate and move to the Step it picks."""
        self.state.pair = pair
        decision = await self.gate.evaluate(self.product, pair=pair, order_id=order_id)
        self.state.orders = decision.orders
        self.bus.publish(FlowEventKind.ORDERS_FETCHED, {"orders": decision.orders})
        logger.info("flow_opened", flow=type(self).__name__, **decision.to_dict())

        if decision.pending_order is not None:
            self.state.order = decision.pending_order
            if decision.pending_order.pair:
                self.state.pair = decision.pending_order.pair
        self._set_step(decision.step)

        if decision.attach_poller and decision.pending_order is not None:
            self.spawn("confirm_poll", self.confirm_order_poll(decision.pending_order))
        return decision

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        current = asyncio.current_task()
        tasks = [t for t in self._tasks.values() if t is not current]
        self._tasks.clear()
        for t in tasks:
            t.cancel()
        await self.quotes.stop_all()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._unsubscribe()
        self.bus.publish(FlowEventKind.FLOW_CLOSED, {"flow": type(self).__name__})
        logger.info("flow_closed", flow=type(self).__name__)

    # ─────────────────────────────────────────────────────────
    # Quotes
    # ─────────────────────────────────────────────────────────

    async def _first_quote(self, pair: str, side: Any, fetch: QuoteFetcher) -> Optional[Any]:
        """Start the quote loop and wait for its first success or failure."""
        success = self.bus.waiter(FlowEventKind.QUOTE_UPDATED)
        failure = self.bus.waiter(FlowEventKind.QUOTE_FAILED)
        self.quotes.start(pair, side, fetch)
        event = await race_first(success, failure)
        if event.kind == FlowEventKind.QUOTE_FAILED:
            return None
        return event.payload["quote"]

    # ─────────────────────────────────────────────────────────
    # Polling
    # ─────────────────────────────────────────────────────────

    async def confirm_order_poll(self, order: Order) -> Optional[Order]:
        """Poll until ``order`` is terminal, then show the summary."""
        watched = self.still_in(
            StepName.CONFIRM,
            StepName.BANK_TRANSFER_HANDOFF,
            StepName.POLL_CONFIRMATION,
            StepName.ORDER_SUMMARY,
        )
        try:
            final = await poll(
                self.budget, order_confirm_check, self.client, order.id, still_wanted=watched
            )
        except PollSuperseded:
            return None
        except RetryTimeoutError as e:
            self._fail_terminal(e, endpoint="order_poll")
            return None

        self.state.order = final
        kind = (
            FlowEventKind.ORDER_CONFIRMED
            if final.state == OrderState.FINISHED
            else FlowEventKind.ORDER_FAILED
        )
        self.bus.publish(kind, {"order": final})
        if watched():
            pair = final.pair or self.state.pair
            self._set_step(Step(StepName.ORDER_SUMMARY, pair=pair, order=final))
        return final

    # ─────────────────────────────────────────────────────────
    # Swap-style orders (sell and swap)
    # ─────────────────────────────────────────────────────────

    def _require_backend(self) -> ChainBackend:
        if self.backend is None:
            raise ValidationError(FlowErrorCode.NO_ACCOUNT, "No chain backend for self-custody account")
        return self.backend

    async def _submit_swap_order(
        self,
        direction: SwapDirection,
        quote_id: str,
        volume: str,
        ccy: str,
        payment: Optional[ProvisionalPayment],
        destination_address: Optional[str] = None,
        refund_address: Optional[str] = None,
        on_chain: bool = False,
        hot_wallet_address: Optional[str] = None,
    ) -> Order:
        """Create the order; for on-chain sources broadcast the deposit.

        A failed broadcast cancels the order remotely and re-raises the
        broadcast error.
        """
        order = await self.client.create_swap_order(
            direction, quote_id, volume, ccy, destination_address, refund_address
        )
        self.state.order = order
        self.bus.publish(FlowEventKind.ORDER_CREATED, {"order": order})

        if not on_chain:
            return order

        backend = self._require_backend()
        try:
            if payment is None:
                raise ValidationError(FlowErrorCode.NO_ACCOUNT, "No provisional payment")
            await build_and_publish_payment(
                backend, payment, order.deposit_address or "", hot_wallet_address
            )
            await self.client.update_swap_order(order.id, SwapOrderUpdate.DEPOSIT_SENT)
        except Exception as e:
            logger.error("deposit_broadcast_failed", order_id=order.id, error=str(e))
            try:
                await self.client.update_swap_order(order.id, SwapOrderUpdate.CANCEL)
            except Exception as cancel_error:
                logger.error("order_compensation_failed", order_id=order.id, error=str(cancel_error))
            raise
        return order
