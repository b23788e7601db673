from decimal import Decimal
from typing import Dict, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from .chains import Chain


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_host: str = "0.0.0.0"
    app_port: int = 3000
    env: str = "development"
    log_level: str = "INFO"

    database_url: str = "sqlite+aiosqlite:///./charging_payments.db"

    # optional; when set the session/payment routes require X-API-KEY
    service_api_key: Optional[str] = None

    checkout_provider: str = "stripe"
    checkout_currency: str = "usd"
    checkout_success_url: str = "http://localhost:3000/payment/success?session_id={CHECKOUT_SESSION_ID}"
    checkout_cancel_url: str = "http://localhost:3000/payment/cancel?session_id={CHECKOUT_SESSION_ID}"
    checkout_timeout_seconds: float = 20.0

    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_enable_card_payments: bool = True

    mollie_api_key: Optional[str] = None
    mollie_api_base: str = "https://api.mollie.com/v2"
    mollie_webhook_secret: Optional[str] = None
    mollie_webhook_url: Optional[str] = None

    rpc_ethereum: Optional[str] = None
    rpc_polygon: Optional[str] = None
    rpc_arbitrum: Optional[str] = None
    rpc_base: Optional[str] = None
    rpc_ethereum_sepolia: Optional[str] = None
    rpc_polygon_amoy: Optional[str] = None
    rpc_base_sepolia: Optional[str] = None
    oracle_timeout_seconds: float = 10.0

    default_session_cost: Decimal = Decimal("0.50")
    session_link_expiry_minutes: int = 24 * 60
    recent_check_window_minutes: int = 5
    history_limit: int = 10

    @property
    def rpc_urls(self) -> Dict[Chain, str]:
        urls = {
            Chain.ETHEREUM: self.rpc_ethereum,
            Chain.POLYGON: self.rpc_polygon,
            Chain.ARBITRUM: self.rpc_arbitrum,
            Chain.BASE: self.rpc_base,
            Chain.ETHEREUM_SEPOLIA: self.rpc_ethereum_sepolia,
            Chain.POLYGON_AMOY: self.rpc_polygon_amoy,
            Chain.BASE_SEPOLIA: self.rpc_base_sepolia,
        }
        return {chain: url for chain, url in urls.items() if url}


settings = Settings()
