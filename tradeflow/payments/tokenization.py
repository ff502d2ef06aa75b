"""Apple Pay / Google Pay token issuance.

Both wallets are one-shot external flows. Each call resolves exactly once
with an opaque token string, or raises; user cancellation always raises
``CancellationError``. Nothing here retries.
"""

from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

from tradeflow.api.client import BrokerageClient
from tradeflow.data.models import ApplePayInfo, GooglePayInfo
from tradeflow.utils.config import get_settings
from tradeflow.utils.exceptions import (
    CancellationError,
    FlowErrorCode,
    TokenizationError,
)
from tradeflow.utils.logger import get_logger

logger = get_logger(__name__)

APPLE_PAY_STATUS_SUCCESS = 0
GOOGLE_PAY_CANCELED = "CANCELED"


# ─────────────────────────────────────────────────────────────
# Wallet SDK surfaces
# ─────────────────────────────────────────────────────────────

class ApplePaySession(ABC):
    """One Apple Pay sheet. The SDK calls the ``on_*`` handlers."""

    on_validate_merchant: Optional[Callable[[str], None]] = None
    on_payment_authorized: Optional[Callable[[dict[str, Any]], None]] = None
    on_cancel: Optional[Callable[[], None]] = None

    @abstractmethod
    def begin(self) -> None:
        ...

    @abstractmethod
    def abort(self) -> None:
        ...

    @abstractmethod
    def complete_merchant_validation(self, merchant_session: dict[str, Any]) -> None:
        ...

    @abstractmethod
    def complete_payment(self, status: int) -> None:
        ...


class GooglePaymentsClient(ABC):
    @abstractmethod
    async def load_payment_data(self, request: dict[str, Any]) -> dict[str, Any]:
        ...


ApplePaySessionFactory = Callable[[dict[str, Any]], ApplePaySession]
GooglePaymentsClientFactory = Callable[[str], GooglePaymentsClient]


# ─────────────────────────────────────────────────────────────
# Google payments client handle
# ─────────────────────────────────────────────────────────────

_payments_client: Optional[GooglePaymentsClient] = None
_payments_environment: Optional[str] = None


def get_payments_client(
    factory: GooglePaymentsClientFactory, environment: Optional[str] = None
) -> GooglePaymentsClient:
    """Process-wide client; re-created only when the environment changes."""
    global _payments_client, _payments_environment
    env = environment or get_settings().payments_environment
    if _payments_client is None or _payments_environment != env:
        logger.info("google_payments_client_created", environment=env)
        _payments_client = factory(env)
        _payments_environment = env
    return _payments_client


def reset_payments_client() -> None:
    global _payments_client, _payments_environment
    _payments_client = None
    _payments_environment = None


# ─────────────────────────────────────────────────────────────
# Payment requests
# ─────────────────────────────────────────────────────────────

def build_apple_pay_request(
    info: ApplePayInfo, amount: str, currency: str, merchant_name: str
) -> dict[str, Any]:
    capabilities = ["supports3DS", "supportsDebit"]
    if info.allow_credit_cards:
        capabilities.append("supportsCredit")
    return {
        "countryCode": info.merchant_bank_country_code,
        "currencyCode": currency,
        "merchantCapabilities": capabilities,
        "supportedNetworks": ["visa", "masterCard"],
        "total": {"label": merchant_name, "amount": amount, "type": "final"},
    }


def build_google_pay_request(
    info: GooglePayInfo,
    amount: str,
    currency: str,
    merchant_id: str,
    merchant_name: str,
) -> dict[str, Any]:
    if not info.google_pay_parameters:
        raise TokenizationError(FlowErrorCode.GOOGLE_PAY_PARAMETERS_NOT_FOUND)
    try:
        gateway_parameters = json.loads(info.google_pay_parameters)
    except ValueError:
        raise TokenizationError(FlowErrorCode.GOOGLE_PAY_PARAMETERS_MALFORMED) from None

    return {
        "apiVersion": 2,
        "apiVersionMinor": 0,
        "merchantInfo": {"merchantId": merchant_id, "merchantName": merchant_name},
        "allowedPaymentMethods": [
            {
                "type": "CARD",
                "parameters": {
                    "allowedAuthMethods": ["PAN_ONLY", "CRYPTOGRAM_3DS"],
                    "allowedCardNetworks": ["MASTERCARD", "VISA"],
                    "allowCreditCards": info.allow_credit_cards,
                    "billingAddressRequired": False,
                },
                "tokenizationSpecification": {
                    "type": "PAYMENT_GATEWAY",
                    "parameters": gateway_parameters,
                },
            }
        ],
        "transactionInfo": {
            "countryCode": info.merchant_bank_country,
            "currencyCode": currency,
            "totalPrice": amount,
            "totalPriceStatus": "FINAL",
        },
    }


# ─────────────────────────────────────────────────────────────
# Bridge
# ─────────────────────────────────────────────────────────────

class TokenizationBridge:
    def __init__(
        self,
        client: BrokerageClient,
        apple_session_factory: Optional[ApplePaySessionFactory] = None,
        google_client_factory: Optional[GooglePaymentsClientFactory] = None,
    ) -> None:
        self._client = client
        self._apple_session_factory = apple_session_factory
        self._google_client_factory = google_client_factory
        self._settings = get_settings()

    async def apple_pay_token(self, amount: str, currency: str) -> str:
        if self._apple_session_factory is None:
            raise TokenizationError(FlowErrorCode.APPLE_PAY_INFO_NOT_FOUND)
        try:
            info = await self._client.get_apple_pay_info(currency)
        except Exception as e:
            logger.error("apple_pay_info_failed", currency=currency, error=str(e))
            raise TokenizationError(FlowErrorCode.APPLE_PAY_INFO_NOT_FOUND) from e

        request = build_apple_pay_request(info, amount, currency, self._settings.merchant_name)
        session = self._apple_session_factory(request)

        loop = asyncio.get_running_loop()
        outcome: asyncio.Future[str] = loop.create_future()
        pending: set[asyncio.Task] = set()

        def settle(token: Optional[str] = None, error: Optional[BaseException] = None) -> None:
            if outcome.done():
                return
            if error is not None:
                outcome.set_exception(error)
            else:
                outcome.set_result(token)

        async def validate(validation_url: str) -> None:
            try:
                payload = await self._client.validate_apple_pay_merchant(
                    info.beneficiary_id, self._settings.wallet_host, validation_url
                )
                session.complete_merchant_validation(json.loads(payload))
            except Exception as e:
                logger.error("apple_pay_merchant_validation_failed", error=str(e))
                session.abort()
                settle(error=TokenizationError(FlowErrorCode.FAILED_TO_VALIDATE_APPLE_PAY_MERCHANT))

        def on_validate_merchant(validation_url: str) -> None:
            task = loop.create_task(validate(validation_url))
            pending.add(task)
            task.add_done_callback(pending.discard)

        def on_payment_authorized(payment: dict[str, Any]) -> None:
            session.complete_payment(APPLE_PAY_STATUS_SUCCESS)
            settle(token=json.dumps(payment.get("token")))

        def on_cancel() -> None:
            settle(error=CancellationError(FlowErrorCode.USER_CANCELLED_APPLE_PAY))

        session.on_validate_merchant = on_validate_merchant
        session.on_payment_authorized = on_payment_authorized
        session.on_cancel = on_cancel
        session.begin()

        try:
            return await outcome
        finally:
            for task in pending:
                task.cancel()

    async def google_pay_token(self, amount: str, currency: str) -> str:
        if self._google_client_factory is None:
            raise TokenizationError(FlowErrorCode.GOOGLE_PAY_INFO_NOT_FOUND)
        try:
            info = await self._client.get_google_pay_info(currency)
        except Exception as e:
            logger.error("google_pay_info_failed", currency=currency, error=str(e))
            raise TokenizationError(FlowErrorCode.GOOGLE_PAY_INFO_NOT_FOUND) from e

        request = build_google_pay_request(
            info,
            amount,
            currency,
            self._settings.google_pay_merchant_id,
            self._settings.merchant_name,
        )
        payments_client = get_payments_client(self._google_client_factory)
        try:
            payment_data = await payments_client.load_payment_data(request)
        except Exception as e:
            if getattr(e, "status_code", None) == GOOGLE_PAY_CANCELED:
                raise CancellationError(FlowErrorCode.USER_CANCELLED_GOOGLE_PAY) from e
            logger.error("google_pay_token_failed", error=str(e))
            raise TokenizationError(FlowErrorCode.FAILED_TO_GENERATE_GOOGLE_PAY_TOKEN) from e

        try:
            return payment_data["paymentMethodData"]["tokenizationData"]["token"]
        except (KeyError, TypeError):
            raise TokenizationError(FlowErrorCode.FAILED_TO_GENERATE_GOOGLE_PAY_TOKEN) from None
