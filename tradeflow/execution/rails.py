"""Picks the confirmation rail for a freshly confirmed order."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from tradeflow.data.models import (
    CardAcquirerName,
    Order,
    OrderAttributes,
    PaymentType,
)
from tradeflow.execution.steps import StepName
from tradeflow.utils.exceptions import UnhandledPaymentStateError

WAITING_FOR_3DS = "WAITING_FOR_3DS_RESPONSE"
SETTLED = "SETTLED"


class Rail(str, Enum):
    CARD_3DS = "CARD_3DS"
    BANK_REDIRECT = "BANK_REDIRECT"
    SETTLED = "SETTLED"


def _everypay_challenge(attrs: OrderAttributes) -> dict[str, Any]:
    return {"payment_link": attrs.everypay.payment_link if attrs.everypay else None}


def _stripe_challenge(attrs: OrderAttributes) -> dict[str, Any]:
    provider = attrs.card_provider
    return {
        "client_secret": provider.client_secret if provider else None,
        "publishable_api_key": provider.publishable_api_key if provider else None,
    }


def _checkout_challenge(attrs: OrderAttributes) -> dict[str, Any]:
    provider = attrs.card_provider
    return {"payment_link": provider.payment_link if provider else None}


# Every acquirer must have a challenge handler.
CHALLENGE_CONTEXT: dict[CardAcquirerName, Callable[[OrderAttributes], dict[str, Any]]] = {
    CardAcquirerName.EVERYPAY: _everypay_challenge,
    CardAcquirerName.STRIPE: _stripe_challenge,
    CardAcquirerName.CHECKOUTDOTCOM: _checkout_challenge,
}


@dataclass(frozen=True)
class RailDecision:
    rail: Rail
    step: StepName
    provider: Optional[CardAcquirerName] = None
    context: dict[str, Any] = field(default_factory=dict)


def _card_challenge(provider: CardAcquirerName, attrs: OrderAttributes) -> RailDecision:
    return RailDecision(
        rail=Rail.CARD_3DS,
        step=StepName.CARD_3DS_HANDLER,
        provider=provider,
        context=CHALLENGE_CONTEXT[provider](attrs),
    )


def match_rail(order: Order) -> RailDecision:
    """Exactly one rail per order; anything unrecognised is an error."""
    attrs = order.attributes or OrderAttributes()
    everypay = attrs.everypay
    card_provider = attrs.card_provider

    if (everypay and everypay.payment_state == SETTLED) or (
        card_provider and card_provider.payment_state == SETTLED
    ):
        return RailDecision(rail=Rail.SETTLED, step=StepName.ORDER_SUMMARY)

    if everypay:
        return _card_challenge(CardAcquirerName.EVERYPAY, attrs)

    if card_provider and card_provider.payment_state == WAITING_FOR_3DS:
        acquirer = card_provider.card_acquirer_name
        if acquirer is not None:
            return _card_challenge(acquirer, attrs)

    if order.payment_type == PaymentType.BANK_TRANSFER:
        if attrs.authorisation_url:
            return RailDecision(
                rail=Rail.BANK_REDIRECT,
                step=StepName.BANK_TRANSFER_HANDOFF,
                context={"authorisation_url": attrs.authorisation_url},
            )
        return RailDecision(rail=Rail.SETTLED, step=StepName.ORDER_SUMMARY)

    raise UnhandledPaymentStateError(order.id)
