"""
Shared fixtures for flow tests.

The brokerage client is always an ``AsyncMock`` specced on the real
client, so a test fails loudly if a flow calls an endpoint that does not
exist. Chain access goes through an in-memory ``FakeChainBackend``.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Optional
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from tradeflow.api.client import BrokerageClient
from tradeflow.data.models import (
    Order,
    OrderSide,
    OrderState,
    PaymentType,
    ProductAccess,
    ProductEligibility,
    Quote,
)
from tradeflow.execution.buy_sell import BuySellFlow
from tradeflow.execution.events import EventBus
from tradeflow.execution.quotes import QuoteLoopManager
from tradeflow.execution.retry import RetryBudget
from tradeflow.execution.swap import SwapFlow
from tradeflow.payments.chain import ChainBackend, FeeTier, SourceRef
from tradeflow.payments.provisional import ProvisionalPayment
from tradeflow.payments.tokenization import reset_payments_client
from tradeflow.risk.eligibility import FULL_TIER


# ─────────────────────────────────────────────────────────
# Fakes
# ─────────────────────────────────────────────────────────

class FakeChainBackend(ChainBackend):
    """In-memory wallet: one balance for every source, flat fee."""

    def __init__(
        self,
        balance: int = 100_000_000,
        fee: int = 1_000,
        publish_error: Optional[Exception] = None,
    ) -> None:
        self.balance = balance
        self.fee = fee
        self.publish_error = publish_error
        self.invalid_addresses: set[str] = set()
        self.published: list[ProvisionalPayment] = []

    async def estimate_fee(self, coin: str, tier: FeeTier, is_token: bool) -> int:
        return self.fee

    async def get_balance(self, coin: str, source: SourceRef) -> int:
        return self.balance

    def is_valid_address(self, coin: str, address: str) -> bool:
        return address not in self.invalid_addresses

    async def get_receive_address(self, coin: str, source: SourceRef) -> str:
        return f"{coin}-receive-{source}"

    async def sign_and_publish(self, payment: ProvisionalPayment) -> str:
        if self.publish_error is not None:
            raise self.publish_error
        self.published.append(payment)
        return f"tx-{len(self.published)}"


# ─────────────────────────────────────────────────────────
# Factories
# ─────────────────────────────────────────────────────────

@pytest.fixture
def make_quote():
    def _make(
        pair: str = "BTC-USD",
        side: OrderSide = OrderSide.BUY,
        rate: str = "50000",
        quote_id: str = "q-1",
        expires_in: float = 3600,
        sample_deposit_address: Optional[str] = None,
    ) -> Quote:
        return Quote(
            quote_id=quote_id,
            pair=pair,
            side=side,
            rate=Decimal(rate),
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
            sample_deposit_address=sample_deposit_address,
        )

    return _make


@pytest.fixture
def make_order():
    def _make(
        order_id: str = "order-1",
        state: OrderState = OrderState.PENDING_CONFIRMATION,
        pair: str = "BTC-USD",
        payment_type: Optional[PaymentType] = PaymentType.PAYMENT_CARD,
        **fields: Any,
    ) -> Order:
        return Order(id=order_id, state=state, pair=pair, payment_type=payment_type, **fields)

    return _make


# ─────────────────────────────────────────────────────────
# Collaborators
# ─────────────────────────────────────────────────────────

@pytest.fixture
def mock_client():
    """Client for a fully verified user with no open orders."""
    client = AsyncMock(spec=BrokerageClient)
    access = ProductAccess(enabled=True, max_orders_left=5)
    client.get_orders.return_value = []
    client.get_product_eligibility.return_value = ProductEligibility(
        buy=access, sell=access, swap=access
    )
    client.get_user_tier.return_value = FULL_TIER
    client.get_bank_transfer_accounts.return_value = []
    return client


@pytest.fixture
def backend():
    return FakeChainBackend()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def budget():
    """Three quick attempts so timeouts resolve in milliseconds."""
    return RetryBudget(max_attempts=3, interval_ms=1)


@pytest.fixture
def quote_loops(bus):
    return QuoteLoopManager(bus, safety_margin=0, fallback_delay=0)


@pytest_asyncio.fixture
async def buy_flow(mock_client, bus, backend, budget, quote_loops):
    flow = BuySellFlow(
        mock_client,
        bus=bus,
        backend=backend,
        budget=budget,
        quotes=quote_loops,
        flexible_pricing=False,
    )
    yield flow
    await flow.close()


@pytest_asyncio.fixture
async def swap_flow(mock_client, bus, backend, budget, quote_loops):
    flow = SwapFlow(mock_client, bus=bus, backend=backend, budget=budget, quotes=quote_loops)
    yield flow
    await flow.close()


@pytest.fixture(autouse=True)
def _fresh_payments_client():
    reset_payments_client()
    yield
    reset_payments_client()
