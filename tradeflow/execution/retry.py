"""Bounded polling.

``retry`` calls a check until it returns a value, raising ``NotYet``
in between. It never gives up silently: an exhausted budget raises
``RetryTimeoutError``.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

from tradeflow.api.client import BrokerageClient
from tradeflow.data.models import (
    PENDING_CARD_STATES,
    Card,
    CardState,
    Order,
    OrderState,
)
from tradeflow.utils.config import get_settings
from tradeflow.utils.exceptions import RetryTimeoutError
from tradeflow.utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

CONFIRMED_ORDER_STATES = frozenset({OrderState.FINISHED, OrderState.FAILED, OrderState.CANCELED})


class NotYet(Exception):
    """The polled resource is not in a terminal state yet."""

    def __init__(self, value: Any = None) -> None:
        self.value = value
        super().__init__("not yet")


class PollSuperseded(asyncio.CancelledError):
    """The flow moved on and no longer wants this poll's result."""


def _name(check: Callable[..., Any]) -> str:
    return getattr(check, "__name__", type(check).__name__)


@dataclass(frozen=True)
class RetryBudget:
    max_attempts: int = 10
    interval_ms: int = 2000

    @classmethod
    def from_settings(cls) -> RetryBudget:
        settings = get_settings()
        return cls(settings.polling_attempts, settings.polling_interval_ms)


async def retry(
    max_attempts: int,
    interval_ms: int,
    check: Callable[..., Awaitable[T]],
    *args: Any,
    still_wanted: Optional[Callable[[], bool]] = None,
) -> T:
    last_value: Any = None
    for attempt in range(1, max_attempts + 1):
        if still_wanted is not None and not still_wanted():
            logger.info("poll_superseded", check=_name(check), attempt=attempt)
            raise PollSuperseded()
        try:
            return await check(*args)
        except NotYet as pending:
            last_value = pending.value
        if attempt < max_attempts:
            await asyncio.sleep(interval_ms / 1000)

    logger.warning("poll_timed_out", check=_name(check), attempts=max_attempts)
    raise RetryTimeoutError(
        f"{_name(check)} not satisfied after {max_attempts} attempts",
        attempts=max_attempts,
        last_value=last_value,
    )


async def poll(
    budget: RetryBudget,
    check: Callable[..., Awaitable[T]],
    *args: Any,
    still_wanted: Optional[Callable[[], bool]] = None,
) -> T:
    return await retry(
        budget.max_attempts, budget.interval_ms, check, *args, still_wanted=still_wanted
    )


# ─────────────────────────────────────────────────────────────
# Checks
# ─────────────────────────────────────────────────────────────

async def order_confirm_check(client: BrokerageClient, order_id: str) -> Order:
    order = await client.get_order(order_id)
    if order.state in CONFIRMED_ORDER_STATES:
        return order
    raise NotYet(order)


async def auth_url_check(client: BrokerageClient, order_id: str) -> Order:
    order = await client.get_order(order_id)
    if order.attributes and order.attributes.authorisation_url:
        return order
    if order.state == OrderState.FAILED:
        return order
    raise NotYet(order)


async def card_activation_check(client: BrokerageClient, card_id: str) -> Card:
    card = await client.get_card(card_id)
    if card.state == CardState.ACTIVE or card.state not in PENDING_CARD_STATES:
        return card
    raise NotYet(card)


async def deposit_settled_check(client: BrokerageClient, order_id: str) -> Order:
    order = await client.get_order(order_id)
    if order.state != OrderState.PENDING_DEPOSIT:
        return order
    raise NotYet(order)
