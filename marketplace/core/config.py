from __future__ import annotations

from decimal import Decimal
from functools import lru_cache
from typing import Any

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_TOKEN_SIGNING_SECRET = "marketplace-dev-token-secret-change-me"
DEFAULT_PAYMENT_GATEWAY_API_KEY = "mkt-gateway-dev-key"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_prefix="MKT_", extra="ignore")

    app_name: str = "Marketplace Orders"
    env: str = "dev"
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    log_level: str = "INFO"

    database_url: str = "sqlite+pysqlite:///./marketplace.db"
    test_database_url: str = "sqlite+pysqlite:///:memory:"

    bootstrap_demo_on_startup: bool = False

    auth_enabled: bool = True
    token_signing_secret: str = DEFAULT_TOKEN_SIGNING_SECRET
    access_token_ttl_seconds: int = 3600
    dev_actor_id: str = "admin-dev-001"

    currency: str = "USD"
    tax_rate: Decimal = Decimal("0.08")
    processing_days: int = 1
    return_window_days: int = 30
    overdue_after_days: int = 30
    low_stock_threshold: int = 5

    # Payment gateway: fake | http
    payment_gateway: str = "fake"
    payment_gateway_url: str = "http://payments:8080"
    payment_gateway_api_key: str = DEFAULT_PAYMENT_GATEWAY_API_KEY
    payment_gateway_timeout_seconds: int = 10

    # Notification delivery: log | memory | webhook
    notification_backend: str = "log"
    notification_webhook_url: str = "http://notifications:8080/events"
    notification_timeout_seconds: int = 5

    coupons: dict[str, dict[str, Any]] = Field(
        default_factory=dict,
        description="code -> {type: percentage|fixed_amount, value, min_order_amount}",
    )

    def model_post_init(self, __context) -> None:
        if self.env.lower() == "dev":
            return

        insecure_items: list[str] = []
        if self.token_signing_secret == DEFAULT_TOKEN_SIGNING_SECRET:
            insecure_items.append("MKT_TOKEN_SIGNING_SECRET")
        if self.payment_gateway == "http" and self.payment_gateway_api_key == DEFAULT_PAYMENT_GATEWAY_API_KEY:
            insecure_items.append("MKT_PAYMENT_GATEWAY_API_KEY")
        if not self.auth_enabled:
            insecure_items.append("MKT_AUTH_ENABLED")

        if insecure_items:
            raise ValueError(
                "insecure development defaults are not allowed outside dev mode; set env vars: "
                + ", ".join(sorted(insecure_items))
            )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
