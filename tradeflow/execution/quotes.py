"""Quote refresh loops, one per (pair, side)."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from tradeflow.api.client import BrokerageClient
from tradeflow.data.currency import reverse_pair
from tradeflow.data.models import OrderSide, PaymentMethod, PaymentType, Quote, SwapDirection
from tradeflow.execution.events import EventBus, FlowEventKind
from tradeflow.utils.config import get_settings
from tradeflow.utils.exceptions import client_error_properties
from tradeflow.utils.logger import get_logger

logger = get_logger(__name__)

QuoteFetcher = Callable[[], Awaitable[Quote]]
LoopKey = tuple[str, OrderSide]


def refresh_delay(
    quote: Quote, now: Optional[datetime] = None, safety_margin: Optional[float] = None
) -> float:
    """Seconds until the next refresh; zero for an already stale quote."""
    now = now or datetime.now(timezone.utc)
    margin = get_settings().quote_safety_margin if safety_margin is None else safety_margin
    remaining = (quote.expires_at - now).total_seconds() - margin
    return max(0.0, remaining)


def buy_quote_fetcher(
    client: BrokerageClient,
    pair: str,
    method: Optional[PaymentMethod] = None,
    amount: Optional[str] = None,
) -> QuoteFetcher:
    """Buy quotes are priced on the reversed (fiat-first) pair."""
    payment_type = method.type if method else PaymentType.FUNDS
    method_id = method.id if method and method.type == PaymentType.BANK_TRANSFER else None
    probe = amount or get_settings().buy_quote_probe_amount

    async def fetch() -> Quote:
        quote = await client.get_buy_quote(
            reverse_pair(pair), probe, payment_type, payment_method_id=method_id
        )
        return quote.model_copy(update={"pair": pair})

    return fetch


def swap_quote_fetcher(
    client: BrokerageClient,
    pair: str,
    direction: SwapDirection,
    side: OrderSide = OrderSide.SELL,
) -> QuoteFetcher:
    async def fetch() -> Quote:
        return await client.get_swap_quote(pair, direction, side)

    return fetch


class QuoteLoopManager:
    def __init__(
        self,
        bus: EventBus,
        safety_margin: Optional[float] = None,
        fallback_delay: Optional[float] = None,
    ) -> None:
        settings = get_settings()
        self._bus = bus
        self._safety_margin = settings.quote_safety_margin if safety_margin is None else safety_margin
        self._fallback_delay = (
            settings.quote_fallback_delay if fallback_delay is None else fallback_delay
        )
        self._tasks: dict[LoopKey, asyncio.Task] = {}

    def start(self, pair: str, side: OrderSide, fetch: QuoteFetcher) -> asyncio.Task:
        """Start refreshing quotes for ``(pair, side)``, replacing any running loop."""
        key = (pair, side)
        self.stop(pair, side)
        task = asyncio.create_task(self._run(key, fetch), name=f"quote:{pair}:{side.value}")
        self._tasks[key] = task
        logger.info("quote_loop_started", pair=pair, side=side.value)
        return task

    def stop(self, pair: str, side: OrderSide) -> None:
        task = self._tasks.pop((pair, side), None)
        if task is not None and not task.done():
            task.cancel()

    async def stop_all(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def is_running(self, pair: str, side: OrderSide) -> bool:
        task = self._tasks.get((pair, side))
        return task is not None and not task.done()

    async def _run(self, key: LoopKey, fetch: QuoteFetcher) -> None:
        pair, side = key
        superseded = False
        try:
            while True:
                try:
                    quote = await fetch()
                except Exception as e:
                    props = client_error_properties("quote", e)
                    logger.warning("quote_fetch_failed", pair=pair, side=side.value, error=str(e))
                    self._bus.publish(
                        FlowEventKind.QUOTE_FAILED,
                        {"pair": pair, "side": side, "error": e, **props.to_dict()},
                    )
                    await asyncio.sleep(self._fallback_delay)
                    return

                delay = refresh_delay(quote, safety_margin=self._safety_margin)
                self._bus.publish(
                    FlowEventKind.QUOTE_UPDATED,
                    {"pair": pair, "side": side, "quote": quote, "rate": quote.rate},
                )
                logger.debug("quote_refresh_scheduled", pair=pair, side=side.value, delay=delay)
                await asyncio.sleep(delay)
        except asyncio.CancelledError:
            superseded = True
            raise
        finally:
            if self._tasks.get(key) is asyncio.current_task():
                del self._tasks[key]
            self._bus.publish(
                FlowEventKind.QUOTE_LOOP_STOPPED,
                {"pair": pair, "side": side, "superseded": superseded},
            )
