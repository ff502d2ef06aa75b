from __future__ import annotations

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    api_base_url: str = Field(default="https://api.blockchain.info/nabu-gateway", description="Brokerage API base URL")
    api_token: str = Field(default="", description="Bearer token for the brokerage API")
    request_timeout: float = Field(default=30.0, description="Total HTTP request timeout in seconds")

    rate_limit_default: float = Field(default=8.0, description="Default requests per second")
    rate_limit_orders: float = Field(default=4.0, description="Order requests per second")
    max_retries: int = Field(default=3, description="Maximum HTTP retry attempts")
    retry_delay: float = Field(default=1.0, description="Base HTTP retry delay in seconds")

    quote_safety_margin: float = Field(default=10.0, description="Seconds before quote expiry to refresh")
    quote_fallback_delay: float = Field(default=15.0, description="Seconds to wait after a failed quote fetch")
    buy_quote_probe_amount: str = Field(default="500", description="Fiat minor units used to probe buy quotes")

    polling_attempts: int = Field(default=10, description="Polling attempts before giving up")
    polling_interval_ms: int = Field(default=2000, description="Delay between polling attempts in ms")

    flexible_pricing_model: bool = Field(default=False, description="Refresh buy orders on every new quote")
    wallet_helper_domain: str = Field(default="https://wallet-helper.blockchain.com", description="3DS redirect host")
    com_root_domain: str = Field(default="https://www.blockchain.com", description="Open banking callback host")
    wallet_host: str = Field(default="login.blockchain.com", description="Host used as Apple Pay domain")
    payments_environment: str = Field(default="TEST", description="Mobile wallet environment (TEST or PRODUCTION)")
    google_pay_merchant_id: str = Field(default="", description="Google Pay merchant id")
    merchant_name: str = Field(default="Blockchain.com", description="Merchant label on mobile wallet sheets")
    default_fiat_currency: str = Field(default="USD", description="Fallback fiat currency")
    swap_hot_wallet_address: str = Field(default="", description="Relay address for on-chain swap deposits")

    log_level: str = Field(default="INFO", description="Logging level")
    log_file: str = Field(default="logs/tradeflow.log", description="Log file path")
    disable_ssl_verify: bool = Field(default=False, description="Disable SSL verification (development only)")

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    @property
    def payment_success_link(self) -> str:
        return f"{self.wallet_helper_domain}/wallet-helper/3ds-payment-success/#/"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    global _settings
    _settings = Settings()
    return _settings
