from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class OrderSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class Fix(str, Enum):
    FIAT = "FIAT"
    CRYPTO = "CRYPTO"


class PaymentType(str, Enum):
    PAYMENT_CARD = "PAYMENT_CARD"
    USER_CARD = "USER_CARD"
    BANK_TRANSFER = "BANK_TRANSFER"
    BANK_ACCOUNT = "BANK_ACCOUNT"
    LINK_BANK = "LINK_BANK"
    FUNDS = "FUNDS"


class MobilePaymentMethod(str, Enum):
    APPLE_PAY = "APPLE_PAY"
    GOOGLE_PAY = "GOOGLE_PAY"


class OrderState(str, Enum):
    PENDING_CONFIRMATION = "PENDING_CONFIRMATION"
    PENDING_DEPOSIT = "PENDING_DEPOSIT"
    DEPOSIT_MATCHED = "DEPOSIT_MATCHED"
    FINISHED = "FINISHED"
    FAILED = "FAILED"
    CANCELED = "CANCELED"
    EXPIRED = "EXPIRED"


TERMINAL_ORDER_STATES = frozenset(
    {OrderState.FINISHED, OrderState.FAILED, OrderState.CANCELED, OrderState.EXPIRED}
)
PENDING_ORDER_STATES = frozenset(
    {OrderState.PENDING_CONFIRMATION, OrderState.PENDING_DEPOSIT, OrderState.DEPOSIT_MATCHED}
)


class SwapDirection(str, Enum):
    ON_CHAIN = "ON_CHAIN"
    FROM_USERKEY = "FROM_USERKEY"
    TO_USERKEY = "TO_USERKEY"
    INTERNAL = "INTERNAL"


class SwapOrderUpdate(str, Enum):
    DEPOSIT_SENT = "DEPOSIT_SENT"
    CANCEL = "CANCEL"


class AccountType(str, Enum):
    ACCOUNT = "ACCOUNT"      # self-custody, needs an on-chain broadcast
    CUSTODIAL = "CUSTODIAL"


class CardAcquirerName(str, Enum):
    EVERYPAY = "EVERYPAY"
    STRIPE = "STRIPE"
    CHECKOUTDOTCOM = "CHECKOUTDOTCOM"


class CardState(str, Enum):
    CREATED = "CREATED"
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    BLOCKED = "BLOCKED"
    FRAUD_REVIEW = "FRAUD_REVIEW"
    EXPIRED = "EXPIRED"


PENDING_CARD_STATES = frozenset({CardState.CREATED, CardState.PENDING})


class BankPartner(str, Enum):
    YODLEE = "YODLEE"
    YAPILY = "YAPILY"


class Product(str, Enum):
    BUY = "buy"
    SELL = "sell"
    SWAP = "swap"


class SanctionReason(str, Enum):
    EU_5_SANCTION = "EU_5_SANCTION"
    EU_8_SANCTION = "EU_8_SANCTION"


class WireModel(BaseModel):
    """Base for payloads exchanged with the brokerage API (camelCase on the wire)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


# ─────────────────────────────────────────────────────────────
# Quotes
# ─────────────────────────────────────────────────────────────

class PriceTier(WireModel):
    volume: Decimal
    price: Decimal
    margin_price: Optional[Decimal] = None


class Quote(WireModel):
    quote_id: str
    pair: str
    side: OrderSide
    rate: Decimal
    fee: Decimal = Decimal("0")
    expires_at: datetime
    sample_deposit_address: Optional[str] = None
    payload: dict[str, Any] = Field(default_factory=dict)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return self.expires_at <= now


# ─────────────────────────────────────────────────────────────
# Orders
# ─────────────────────────────────────────────────────────────

class OrderLeg(WireModel):
    symbol: str
    amount: Optional[str] = None


class EverypayDetails(WireModel):
    payment_state: Optional[str] = None
    payment_link: Optional[str] = None


class CardProviderDetails(WireModel):
    card_acquirer_name: Optional[CardAcquirerName] = None
    payment_state: Optional[str] = None
    payment_link: Optional[str] = None
    client_secret: Optional[str] = None
    publishable_api_key: Optional[str] = None


class OrderAttributes(WireModel):
    everypay: Optional[EverypayDetails] = None
    card_provider: Optional[CardProviderDetails] = None
    authorisation_url: Optional[str] = None
    payment_id: Optional[str] = None


class SwapOrderKind(WireModel):
    direction: Optional[SwapDirection] = None
    deposit_address: Optional[str] = None
    withdrawal_address: Optional[str] = None


class Order(WireModel):
    id: str
    state: OrderState
    pair: str = ""
    side: Optional[OrderSide] = None
    payment_type: Optional[PaymentType] = None
    payment_method_id: Optional[str] = None
    input_currency: Optional[str] = None
    input_quantity: Optional[str] = None
    output_currency: Optional[str] = None
    output_quantity: Optional[str] = None
    attributes: Optional[OrderAttributes] = None
    kind: Optional[SwapOrderKind] = None
    inserted_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_ORDER_STATES

    @property
    def deposit_address(self) -> Optional[str]:
        return self.kind.deposit_address if self.kind else None


# ─────────────────────────────────────────────────────────────
# Accounts, cards, payment methods
# ─────────────────────────────────────────────────────────────

class SwapAccount(WireModel):
    coin: str
    type: AccountType
    label: str = ""
    address: Optional[Union[int, str]] = None
    is_token: bool = False


class PaymentMethod(WireModel):
    type: PaymentType
    currency: str
    id: Optional[str] = None


class Card(WireModel):
    id: str
    state: CardState
    currency: Optional[str] = None
    card_provider: Optional[CardProviderDetails] = None


class CardAcquirer(WireModel):
    card_acquirer_name: str
    api_key: str = ""
    card_acquirer_account_codes: list[str] = Field(default_factory=list)


class BankTransferAccount(WireModel):
    id: str
    partner: Optional[str] = None
    currency: Optional[str] = None
    state: Optional[str] = None


class ApplePayInfo(WireModel):
    beneficiary_id: str
    merchant_bank_country_code: str
    allow_credit_cards: bool = False


class GooglePayInfo(WireModel):
    beneficiary_id: str
    merchant_bank_country: str
    google_pay_parameters: str
    allow_credit_cards: bool = False


# ─────────────────────────────────────────────────────────────
# Eligibility
# ─────────────────────────────────────────────────────────────

class IneligibilityReason(WireModel):
    reason: str
    message: Optional[str] = None


class ProductAccess(WireModel):
    enabled: bool = False
    max_orders_left: int = 0
    reason_not_eligible: Optional[IneligibilityReason] = None


class ProductEligibility(WireModel):
    buy: ProductAccess = Field(default_factory=ProductAccess)
    sell: ProductAccess = Field(default_factory=ProductAccess)
    swap: ProductAccess = Field(default_factory=ProductAccess)

    def for_product(self, product: Product) -> ProductAccess:
        return getattr(self, product.value)


# ─────────────────────────────────────────────────────────────
# Inbound commands
# ─────────────────────────────────────────────────────────────

class CreateOrderCommand(BaseModel):
    pair: Optional[str] = None
    side: OrderSide = OrderSide.BUY
    amount: Optional[str] = None
    fix: Fix = Fix.FIAT
    payment_type: Optional[PaymentType] = None
    payment_method_id: Optional[str] = None
    mobile_payment_method: Optional[MobilePaymentMethod] = None
    period: Optional[str] = None
