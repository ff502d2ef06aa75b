"""Flow events and the in-process bus that carries them to the UI layer."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from tradeflow.utils.logger import get_logger

logger = get_logger(__name__)


class FlowEventKind(str, Enum):
    QUOTE_UPDATED = "QUOTE_UPDATED"
    QUOTE_FAILED = "QUOTE_FAILED"
    QUOTE_LOOP_STOPPED = "QUOTE_LOOP_STOPPED"
    ORDER_CREATED = "ORDER_CREATED"
    ORDER_CONFIRMED = "ORDER_CONFIRMED"
    ORDER_FAILED = "ORDER_FAILED"
    ORDERS_FETCHED = "ORDERS_FETCHED"
    STEP_CHANGED = "STEP_CHANGED"
    PAYMENT_UPDATED = "PAYMENT_UPDATED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    CARD_ACTIVATED = "CARD_ACTIVATED"
    CARD_FAILED = "CARD_FAILED"
    FLOW_CLOSED = "FLOW_CLOSED"


@dataclass
class FlowEvent:
    kind: FlowEventKind
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


Subscriber = Callable[[FlowEvent], None]


class EventBus:
    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []
        self._waiters: dict[FlowEventKind, list[asyncio.Future]] = {}
        self.history: list[FlowEvent] = []

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback``; returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, kind: FlowEventKind, payload: Optional[dict[str, Any]] = None) -> FlowEvent:
        event = FlowEvent(kind=kind, payload=payload or {})
        self.history.append(event)
        logger.debug("flow_event", kind=kind.value)

        for future in self._waiters.pop(kind, []):
            if not future.done():
                future.set_result(event)

        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as e:
                logger.error("subscriber_failed", kind=kind.value, error=str(e))
        return event

    def waiter(self, *kinds: FlowEventKind) -> asyncio.Future:
        """Future resolved by the next event of any of ``kinds``.

        Register before starting the work that publishes, so the event
        cannot be missed.
        """
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        for kind in kinds:
            self._waiters.setdefault(kind, []).append(future)
        return future

    async def wait_for(self, *kinds: FlowEventKind) -> FlowEvent:
        return await self.waiter(*kinds)

    def last(self, kind: FlowEventKind) -> Optional[FlowEvent]:
        for event in reversed(self.history):
            if event.kind == kind:
                return event
        return None


async def race_first(*aws: Awaitable[Any]) -> Any:
    """Result of the first awaitable to finish; the others are cancelled."""
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
    # Deterministic winner when several finished in the same tick.
    winner = next(task for task in tasks if task in done)
    return winner.result()
