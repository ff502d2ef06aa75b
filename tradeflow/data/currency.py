"""Unit conversion and trading-pair helpers.

Amounts travel to the brokerage in base units (satoshi, wei, cents) as
integer strings; user input is in standard units. Pairs are written
``COIN-FIAT`` for buy/sell and ``BASE-COUNTER`` for swaps.
"""

from __future__ import annotations

from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Union

from tradeflow.data.models import AccountType, Fix, PriceTier, SwapAccount, SwapDirection

FIAT_DECIMALS = 2

FIAT_CURRENCIES = frozenset({"USD", "EUR", "GBP", "ARS", "CAD", "AUD", "CHF", "JPY"})

COIN_DECIMALS: dict[str, int] = {
    "BTC": 8,
    "BCH": 8,
    "ETH": 18,
    "XLM": 7,
    "STX": 6,
    "ALGO": 6,
    "DOT": 10,
    "USDC": 6,
    "USDT": 6,
    "PAX": 18,
    "AAVE": 18,
    "LINK": 18,
}

Number = Union[str, int, float, Decimal]


def is_fiat(symbol: str) -> bool:
    return symbol == "FIAT" or symbol in FIAT_CURRENCIES


def decimals_for(symbol: str) -> int:
    if is_fiat(symbol):
        return FIAT_DECIMALS
    try:
        return COIN_DECIMALS[symbol]
    except KeyError:
        raise ValueError(f"Unknown currency: {symbol}") from None


def to_decimal(value: Number) -> Decimal:
    """Parse an amount. Unparseable, NaN and infinite values raise ValueError."""
    try:
        parsed = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"Not a number: {value!r}") from None
    if not parsed.is_finite():
        raise ValueError(f"Not a finite number: {value!r}")
    return parsed


def convert_standard_to_base(symbol: str, value: Number) -> str:
    """1.5 BTC -> '150000000'; 100 USD -> '10000'. Truncates sub-unit dust."""
    scaled = to_decimal(value) * (Decimal(10) ** decimals_for(symbol))
    return str(int(scaled.to_integral_value(rounding=ROUND_DOWN)))


def convert_base_to_standard(symbol: str, value: Number) -> str:
    scaled = to_decimal(value) / (Decimal(10) ** decimals_for(symbol))
    return format(scaled.normalize(), "f")


def get_coin_from_pair(pair: str) -> str:
    return pair.split("-")[0]


def get_fiat_from_pair(pair: str) -> str:
    return pair.split("-")[1]


def reverse_pair(pair: str) -> str:
    base, counter = pair.split("-")
    return f"{counter}-{base}"


def get_quote_amount(pair: str, rate: Number, fix: Fix, amount: Number) -> str:
    """Counter amount for ``amount`` at ``rate`` (fiat per whole coin).

    fix=FIAT: fiat in, coin out. fix=CRYPTO: coin in, fiat out.
    """
    rate_d = to_decimal(rate)
    amount_d = to_decimal(amount)
    if fix == Fix.FIAT:
        if rate_d <= 0:
            return "0"
        coin = get_coin_from_pair(pair)
        result = (amount_d / rate_d).quantize(
            Decimal(1).scaleb(-decimals_for(coin)), rounding=ROUND_DOWN
        )
    else:
        result = (amount_d * rate_d).quantize(
            Decimal(1).scaleb(-FIAT_DECIMALS), rounding=ROUND_DOWN
        )
    return format(result.normalize(), "f")


def get_rate(price_tiers: list[PriceTier], counter: str, amount_base: Number) -> Decimal:
    """Standard-unit price of ``amount_base`` from the matching volume tier.

    Tier prices are quoted in the counter currency's base units; the highest
    tier whose volume does not exceed the amount wins, else the first tier.
    """
    if not price_tiers:
        return Decimal("0")
    amount = to_decimal(amount_base)
    tiers = sorted(price_tiers, key=lambda t: t.volume)
    chosen = tiers[0]
    for tier in tiers:
        if tier.volume <= amount:
            chosen = tier
    return to_decimal(convert_base_to_standard(counter, chosen.price))


def generate_provisional_payment_amount(coin: str, amount: Number) -> int:
    return int(convert_standard_to_base(coin, amount or 0))


def get_direction(account: SwapAccount) -> SwapDirection:
    if account.type == AccountType.ACCOUNT:
        return SwapDirection.FROM_USERKEY
    return SwapDirection.INTERNAL


def get_swap_direction(base: SwapAccount, counter: SwapAccount) -> SwapDirection:
    base_on_chain = base.type == AccountType.ACCOUNT
    counter_on_chain = counter.type == AccountType.ACCOUNT
    if base_on_chain and counter_on_chain:
        return SwapDirection.ON_CHAIN
    if base_on_chain:
        return SwapDirection.FROM_USERKEY
    if counter_on_chain:
        return SwapDirection.TO_USERKEY
    return SwapDirection.INTERNAL


def get_swap_pair(base: SwapAccount, counter: SwapAccount) -> str:
    return f"{base.coin}-{counter.coin}"
