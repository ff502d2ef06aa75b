from __future__ import annotations

import argparse
import asyncio

from tradeflow.api.client import BrokerageClient
from tradeflow.data.models import OrderSide, PaymentMethod, PaymentType, SwapDirection
from tradeflow.execution.events import EventBus, FlowEvent
from tradeflow.execution.quotes import QuoteLoopManager, buy_quote_fetcher, swap_quote_fetcher
from tradeflow.utils.config import get_settings
from tradeflow.utils.logger import get_logger, setup_logging

logger = get_logger("tradeflow.main")


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Stream brokerage quotes for a pair")
    parser.add_argument("pair", help="Pair such as BTC-USD")
    parser.add_argument("--side", choices=[s.value for s in OrderSide], default=OrderSide.BUY.value)
    parser.add_argument(
        "--direction",
        choices=[d.value for d in SwapDirection],
        default=SwapDirection.INTERNAL.value,
        help="Swap direction used for sell quotes",
    )
    return parser.parse_args()


def _log_event(event: FlowEvent) -> None:
    payload = {k: str(v) for k, v in event.payload.items()}
    logger.info("event", kind=event.kind.value, **payload)


async def run(pair: str, side: OrderSide, direction: SwapDirection) -> None:
    settings = get_settings()
    client = BrokerageClient()
    bus = EventBus()
    bus.subscribe(_log_event)
    quotes = QuoteLoopManager(bus)

    if side == OrderSide.BUY:
        method = PaymentMethod(type=PaymentType.FUNDS, currency=settings.default_fiat_currency)
        fetch = buy_quote_fetcher(client, pair, method)
    else:
        fetch = swap_quote_fetcher(client, pair, direction, side)

    try:
        # A loop only ends after a failed fetch and its fallback delay.
        while True:
            await quotes.start(pair, side, fetch)
            logger.info("quote_loop_restarting", pair=pair, side=side.value)
    finally:
        await quotes.stop_all()
        await client.close()


def main() -> None:
    setup_logging()
    args = _parse_args()
    try:
        asyncio.run(run(args.pair, OrderSide(args.side), SwapDirection(args.direction)))
    except KeyboardInterrupt:
        logger.info("shutdown_requested")


if __name__ == "__main__":
    main()
