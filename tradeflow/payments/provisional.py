"""Provisional payments for sells and swaps out of self-custody accounts.

A payment is drafted while the user types an amount (so balance and fee
can be shown) and re-targeted at the order's deposit address once the
order exists. Every builder step returns a new builder; ``build()``
returns a frozen snapshot.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Optional

from tradeflow.data.currency import generate_provisional_payment_amount
from tradeflow.data.models import Quote, SwapAccount
from tradeflow.payments.chain import ChainBackend, FeeTier, SourceRef
from tradeflow.utils.exceptions import InsufficientBalanceError, InvalidDestinationError
from tradeflow.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ProvisionalPayment:
    coin: str
    network: Optional[str] = None
    is_token: bool = False
    source: Optional[SourceRef] = None
    destination: Optional[str] = None
    amount: int = 0
    fee_tier: FeeTier = FeeTier.PRIORITY
    fee: int = 0
    effective_balance: int = 0
    # Set when the payment is relayed through a hot wallet.
    deposit_address: Optional[str] = None

    @classmethod
    def placeholder(cls, coin: str) -> ProvisionalPayment:
        return cls(coin=coin, effective_balance=0)


@dataclass(frozen=True)
class ProvisionalPaymentBuilder:
    backend: ChainBackend = field(compare=False)
    coin: str
    network: Optional[str] = None
    is_token: bool = False
    fee_tier: FeeTier = FeeTier.PRIORITY
    source_ref: Optional[SourceRef] = None
    destination_address: Optional[str] = None
    amount_base: int = 0
    deposit_address: Optional[str] = None

    @classmethod
    def create(
        cls, backend: ChainBackend, coin: str, network: Optional[str] = None
    ) -> ProvisionalPaymentBuilder:
        return cls(backend=backend, coin=coin, network=network)

    @classmethod
    def from_payment(
        cls, backend: ChainBackend, payment: ProvisionalPayment
    ) -> ProvisionalPaymentBuilder:
        return cls(
            backend=backend,
            coin=payment.coin,
            network=payment.network,
            is_token=payment.is_token,
            fee_tier=payment.fee_tier,
            source_ref=payment.source,
            destination_address=payment.destination,
            amount_base=payment.amount,
            deposit_address=payment.deposit_address,
        )

    def init(self, is_token: bool = False) -> ProvisionalPaymentBuilder:
        return replace(self, is_token=is_token)

    def fee(self, tier: FeeTier) -> ProvisionalPaymentBuilder:
        return replace(self, fee_tier=tier)

    def source(self, ref: SourceRef) -> ProvisionalPaymentBuilder:
        return replace(self, source_ref=ref)

    def destination(self, address: str) -> ProvisionalPaymentBuilder:
        return replace(self, destination_address=address)

    def amount(self, amount: int) -> ProvisionalPaymentBuilder:
        return replace(self, amount_base=int(amount))

    def via_hot_wallet(self, hot_wallet_address: str, deposit_address: str) -> ProvisionalPaymentBuilder:
        return replace(
            self, destination_address=hot_wallet_address, deposit_address=deposit_address
        )

    async def build(self) -> ProvisionalPayment:
        """Resolve fee and balance and snapshot the payment.

        Raises:
            InvalidDestinationError: destination is set but not a valid address.
            InsufficientBalanceError: amount exceeds the balance left after fees.
        """
        if self.destination_address and not self.backend.is_valid_address(
            self.coin, self.destination_address
        ):
            raise InvalidDestinationError(self.destination_address)

        fee = await self.backend.estimate_fee(self.coin, self.fee_tier, self.is_token)
        balance = 0
        if self.source_ref is not None:
            balance = await self.backend.get_balance(self.coin, self.source_ref)
        effective_balance = max(0, balance - fee)

        if self.amount_base > effective_balance:
            raise InsufficientBalanceError(self.amount_base, effective_balance)

        return ProvisionalPayment(
            coin=self.coin,
            network=self.network,
            is_token=self.is_token,
            source=self.source_ref,
            destination=self.destination_address,
            amount=self.amount_base,
            fee_tier=self.fee_tier,
            fee=fee,
            effective_balance=effective_balance,
            deposit_address=self.deposit_address,
        )


def sample_destination(quote: Quote) -> Optional[str]:
    # Sample deposit addresses may carry a ":memo" suffix.
    if not quote.sample_deposit_address:
        return None
    return quote.sample_deposit_address.split(":")[0]


async def calculate_provisional_payment(
    backend: ChainBackend,
    account: SwapAccount,
    quote: Quote,
    amount: object = 0,
    fee_tier: FeeTier = FeeTier.PRIORITY,
) -> ProvisionalPayment:
    """Draft a payment from ``account`` towards the quote's sample deposit address.

    Any failure degrades to a zero-balance placeholder so the amount form
    can still render.
    """
    coin = account.coin
    try:
        builder = (
            ProvisionalPaymentBuilder.create(backend, coin)
            .init(account.is_token)
            .fee(fee_tier)
            .source(account.address if account.address is not None else 0)
        )
        destination = sample_destination(quote)
        if destination:
            builder = builder.destination(destination)
        builder = builder.amount(generate_provisional_payment_amount(coin, amount))
        return await builder.build()
    except Exception as e:
        logger.warning("provisional_payment_failed", coin=coin, error=str(e))
        return ProvisionalPayment.placeholder(coin)


def payment_get_or_else(coin: str, payment: Optional[ProvisionalPayment]) -> ProvisionalPayment:
    return payment if payment is not None else ProvisionalPayment.placeholder(coin)


async def rebuild_with_amount(
    backend: ChainBackend, payment: ProvisionalPayment, amount: int
) -> ProvisionalPayment:
    return await ProvisionalPaymentBuilder.from_payment(backend, payment).amount(amount).build()


async def build_and_publish_payment(
    backend: ChainBackend,
    payment: ProvisionalPayment,
    deposit_address: str,
    hot_wallet_address: Optional[str] = None,
) -> str:
    """Re-target ``payment`` at the order's deposit address and broadcast it.

    Returns:
        The transaction hash reported by the backend.
    """
    builder = ProvisionalPaymentBuilder.from_payment(backend, payment)
    if hot_wallet_address:
        builder = builder.via_hot_wallet(hot_wallet_address, deposit_address)
    else:
        builder = builder.destination(deposit_address)
    final = await builder.build()
    tx_hash = await backend.sign_and_publish(final)
    logger.info(
        "payment_published",
        coin=final.coin,
        amount=final.amount,
        destination=final.destination,
        tx_hash=tx_hash,
    )
    return tx_hash
