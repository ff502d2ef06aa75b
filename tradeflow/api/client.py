from __future__ import annotations

import asyncio
import json
import ssl
from decimal import Decimal
from typing import Any, Optional

import aiohttp
from aiolimiter import AsyncLimiter

from tradeflow.data.currency import convert_standard_to_base, get_rate
from tradeflow.data.models import (
    ApplePayInfo,
    BankTransferAccount,
    Card,
    CardAcquirer,
    GooglePayInfo,
    Order,
    OrderLeg,
    OrderSide,
    PaymentType,
    PriceTier,
    ProductEligibility,
    Quote,
    SwapDirection,
    SwapOrderUpdate,
)
from tradeflow.utils.config import get_settings
from tradeflow.utils.exceptions import (
    AuthenticationError,
    BrokerageError,
    ConflictError,
    NetworkError,
    ProviderError,
)
from tradeflow.utils.logger import get_logger, sanitize_log_data

logger = get_logger(__name__)


class BrokerageClient:
    def __init__(self, api_token: str = "") -> None:
        self._settings = get_settings()
        self._api_token = api_token or self._settings.api_token
        self._session: Optional[aiohttp.ClientSession] = None

        self._default_limiter = AsyncLimiter(self._settings.rate_limit_default, 1)
        self._order_limiter = AsyncLimiter(self._settings.rate_limit_orders, 1)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            ssl_context = None
            if self._settings.disable_ssl_verify:
                logger.error(
                    "security_warning",
                    msg="SSL verification is DISABLED - this is not secure for production!"
                )
                ssl_context = ssl.create_default_context()
                ssl_context.check_hostname = False
                ssl_context.verify_mode = ssl.CERT_NONE

            connector = aiohttp.TCPConnector(ssl=ssl_context)
            self._session = aiohttp.ClientSession(
                base_url=self._settings.api_base_url.rstrip("/") + "/",
                timeout=aiohttp.ClientTimeout(total=self._settings.request_timeout),
                connector=connector,
            )
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._api_token:
            headers["Authorization"] = f"Bearer {self._api_token}"
        return headers

    async def _request(
        self,
        method: str,
        endpoint: str,
        limiter: Optional[AsyncLimiter] = None,
        params: Any = None,
        body: Optional[dict[str, Any]] = None,
    ) -> Any:
        rate_limiter = limiter or self._default_limiter
        settings = self._settings
        path = endpoint.lstrip("/")

        last_error: Optional[Exception] = None
        for attempt in range(settings.max_retries):
            try:
                async with rate_limiter:
                    session = await self._get_session()
                    async with session.request(
                        method, path, params=params, json=body, headers=self._headers()
                    ) as response:
                        if response.status == 429:
                            wait_time = settings.retry_delay * (2 ** attempt)
                            logger.warning("rate_limited", endpoint=endpoint, wait=wait_time)
                            await asyncio.sleep(wait_time)
                            continue

                        text = await response.text()
                        try:
                            result = json.loads(text) if text else {}
                        except ValueError:
                            result = {"description": text}

                        if response.status >= 400:
                            raise self._error_for(endpoint, response.status, result)

                        return result

            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_error = e
                wait_time = settings.retry_delay * (2 ** attempt)
                logger.warning(
                    "request_retry",
                    endpoint=endpoint,
                    attempt=attempt + 1,
                    error=str(e),
                )
                if attempt < settings.max_retries - 1:
                    await asyncio.sleep(wait_time)
            except BrokerageError:
                raise

        raise NetworkError(f"Request failed after {settings.max_retries} attempts: {last_error}")

    @staticmethod
    def _error_for(endpoint: str, status: int, result: Any) -> ProviderError:
        body = result if isinstance(result, dict) else {}
        message = body.get("description") or body.get("message") or "Request failed"
        error_type = body.get("type") or body.get("errorType")
        logger.error("request_failed", endpoint=endpoint, status=status, error_type=error_type)
        if status == 409:
            return ConflictError(message, code=error_type)
        if status in (401, 403):
            return AuthenticationError(message, status)
        if 400 <= status < 500:
            return ProviderError(message, status, error_type)
        return NetworkError(message, status)

    # ─────────────────────────────────────────────────────────
    # Quotes
    # ─────────────────────────────────────────────────────────

    async def get_buy_quote(
        self,
        pair: str,
        amount: str,
        payment_method: PaymentType,
        payment_method_id: Optional[str] = None,
        profile: str = "SIMPLEBUY",
    ) -> Quote:
        params: dict[str, Any] = {
            "currencyPair": pair,
            "profile": profile,
            "inputValue": amount,
            "paymentMethod": payment_method.value,
        }
        if payment_method_id:
            params["paymentMethodId"] = payment_method_id
        data = await self._request("GET", "/brokerage/quote", params=params)
        return Quote(
            quote_id=data["quoteId"],
            pair=pair,
            side=OrderSide.BUY,
            rate=Decimal(str(data["price"])),
            fee=Decimal(str(data.get("feeDetails", {}).get("fee", 0))),
            expires_at=data["quoteExpiresAt"],
            payload=data,
        )

    async def get_swap_quote(
        self, pair: str, direction: SwapDirection, side: OrderSide = OrderSide.SELL
    ) -> Quote:
        body = {"pair": pair, "direction": direction.value, "profile": "SWAP_INTERNAL"}
        data = await self._request("POST", "/custodial/quote", body=body)
        inner = data.get("quote", {})
        base, counter = pair.split("-")
        tiers = [PriceTier.model_validate(t) for t in inner.get("priceTiers", [])]
        return Quote(
            quote_id=data.get("id") or inner.get("id", ""),
            pair=pair,
            side=side,
            rate=get_rate(tiers, counter, convert_standard_to_base(base, 1)),
            fee=Decimal(str(data.get("networkFee", 0))),
            expires_at=data["expiresAt"],
            sample_deposit_address=data.get("sampleDepositAddress"),
            payload=data,
        )

    # ─────────────────────────────────────────────────────────
    # Orders
    # ─────────────────────────────────────────────────────────

    async def create_buy_order(
        self,
        pair: str,
        side: OrderSide,
        input_leg: OrderLeg,
        output_leg: OrderLeg,
        payment_type: PaymentType,
        payment_method_id: Optional[str] = None,
        quote_id: Optional[str] = None,
        period: Optional[str] = None,
    ) -> Order:
        body: dict[str, Any] = {
            "pair": pair,
            "action": side.value,
            "input": input_leg.model_dump(exclude_none=True),
            "output": output_leg.model_dump(exclude_none=True),
            "paymentType": payment_type.value,
        }
        if payment_method_id:
            body["paymentMethodId"] = payment_method_id
        if quote_id:
            body["quoteId"] = quote_id
        if period:
            body["period"] = period
        data = await self._request(
            "POST", "/simple-buy/trades", limiter=self._order_limiter,
            params={"action": "pending"}, body=body,
        )
        order = Order.model_validate(data)
        logger.info("buy_order_created", order_id=order.id, pair=pair, side=side.value)
        return order

    async def create_swap_order(
        self,
        direction: SwapDirection,
        quote_id: str,
        volume: str,
        ccy: str,
        destination_address: Optional[str] = None,
        refund_address: Optional[str] = None,
    ) -> Order:
        body: dict[str, Any] = {
            "direction": direction.value,
            "quoteId": quote_id,
            "volume": volume,
            "ccy": ccy,
        }
        if destination_address:
            body["destinationAddress"] = destination_address
        if refund_address:
            body["refundAddress"] = refund_address
        data = await self._request(
            "POST", "/custodial/trades", limiter=self._order_limiter, body=body
        )
        order = Order.model_validate(data)
        logger.info("swap_order_created", order_id=order.id, direction=direction.value)
        return order

    async def update_swap_order(self, order_id: str, action: SwapOrderUpdate) -> None:
        await self._request(
            "POST", f"/custodial/trades/{order_id}", limiter=self._order_limiter,
            body={"action": action.value},
        )
        logger.info("swap_order_updated", order_id=order_id, action=action.value)

    async def cancel_swap_order(self, order_id: str) -> None:
        await self.update_swap_order(order_id, SwapOrderUpdate.CANCEL)

    async def confirm_order(
        self,
        order: Order,
        attributes: Optional[dict[str, Any]] = None,
        payment_method_id: Optional[str] = None,
    ) -> Order:
        body: dict[str, Any] = {"action": "confirm"}
        method_id = payment_method_id or order.payment_method_id
        if method_id:
            body["paymentMethodId"] = method_id
        if attributes:
            body["attributes"] = attributes
        logger.info("order_confirm_request", order_id=order.id, **sanitize_log_data(body))
        data = await self._request(
            "POST", f"/simple-buy/trades/{order.id}", limiter=self._order_limiter, body=body
        )
        return Order.model_validate(data)

    async def cancel_order(self, order: Order) -> None:
        """Cancel a pending order. An already settled order counts as cancelled."""
        try:
            await self._request(
                "DELETE", f"/simple-buy/trades/{order.id}", limiter=self._order_limiter
            )
        except ConflictError:
            logger.info("order_cancel_conflict_ignored", order_id=order.id)
            return
        logger.info("order_cancelled", order_id=order.id)

    async def get_order(self, order_id: str) -> Order:
        data = await self._request("GET", f"/simple-buy/trades/{order_id}")
        return Order.model_validate(data)

    async def get_orders(self) -> list[Order]:
        data = await self._request("GET", "/simple-buy/trades")
        if not data:
            return []
        return [Order.model_validate(o) for o in data]

    # ─────────────────────────────────────────────────────────
    # User, eligibility, payment methods
    # ─────────────────────────────────────────────────────────

    async def get_product_eligibility(self) -> ProductEligibility:
        data = await self._request("GET", "/products", params={"product": "SIMPLEBUY"})
        return ProductEligibility.model_validate(data)

    async def get_user_tier(self) -> int:
        data = await self._request("GET", "/users/current")
        return int(data.get("tiers", {}).get("current", 0))

    async def get_bank_transfer_accounts(self) -> list[BankTransferAccount]:
        data = await self._request("GET", "/payments/banktransfer")
        if not data:
            return []
        return [BankTransferAccount.model_validate(a) for a in data]

    async def get_card(self, card_id: str) -> Card:
        data = await self._request("GET", f"/payments/cards/{card_id}")
        return Card.model_validate(data)

    async def activate_card(self, card_id: str, cvv: str, redirect_url: str) -> dict[str, Any]:
        body = {"redirectURL": redirect_url, "cvv": cvv}
        data = await self._request(
            "POST", f"/payments/cards/{card_id}/activate", limiter=self._order_limiter, body=body
        )
        logger.info("card_activation_requested", card_id=card_id)
        return data

    async def get_card_acquirers(self) -> list[CardAcquirer]:
        data = await self._request("GET", "/payments/card-acquirers")
        if not data:
            return []
        return [CardAcquirer.model_validate(a) for a in data]

    async def get_apple_pay_info(self, currency: str) -> ApplePayInfo:
        data = await self._request("GET", "/payments/apple-pay/info", params={"currency": currency})
        return ApplePayInfo.model_validate(data)

    async def get_google_pay_info(self, currency: str) -> GooglePayInfo:
        data = await self._request("GET", "/payments/google-pay/info", params={"currency": currency})
        return GooglePayInfo.model_validate(data)

    async def validate_apple_pay_merchant(
        self, beneficiary_id: str, domain: str, validation_url: str
    ) -> str:
        body = {"beneficiaryID": beneficiary_id, "domain": domain, "validationURL": validation_url}
        data = await self._request("POST", "/payments/apple-pay/validate", body=body)
        return data["applePayPayload"]
