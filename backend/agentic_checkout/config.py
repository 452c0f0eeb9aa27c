"""
Agentic Checkout Configuration Module

Loads environment variables for the merchant-side Agentic Commerce Protocol backend.
"""
from pydantic_settings import BaseSettings
from typing import List, Literal, Optional


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Protocol Notes:
    - Checkout endpoints accept any version listed in supported_api_versions
    - Delegated payment is pinned to its own protocol version
    - All monetary values are integer minor units (cents)
    """

    # Runtime
    demo_mode: bool = True
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Database
    database_path: str = "./agentic_checkout.db"

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    # Protocol versions (comma separated for checkout)
    supported_api_versions: str = "2025-09-12"
    delegate_payment_api_version: str = "2025-09-29"

    # Request authentication (Bearer key). Unset means log-and-allow.
    api_key: Optional[str] = None
    signature_max_skew_seconds: int = 300

    # Merchant
    merchant_id: str = "merchant_demo"
    base_url: str = "https://shop.example.com"
    payment_provider: str = "stripe"
    default_currency: str = "usd"

    # Checkout sessions
    checkout_session_expiry_minutes: int = 30
    tax_rate: float = 0.08
    shipping_tax_rate: float = 0.08
    standard_shipping_cents: int = 599
    express_shipping_cents: int = 1999

    # Idempotency
    idempotency_retention_hours: int = 24
    idempotency_lock_timeout_seconds: int = 60
    idempotency_wait_timeout_seconds: float = 10.0

    # Delegated payment vault
    token_cleanup_grace_hours: int = 24

    # Maintenance jobs
    maintenance_interval_minutes: int = 60

    # Order webhooks
    webhook_url: Optional[str] = None
    webhook_secret: Optional[str] = None
    webhook_max_retries: int = 3
    webhook_base_delay_seconds: float = 1.0
    webhook_queue_size: int = 100
    webhook_timeout_seconds: float = 10.0

    class Config:
        env_file = ".env"
        case_sensitive = False

    @property
    def api_versions(self) -> List[str]:
        """Supported checkout API versions as a list."""
        return [v.strip() for v in self.supported_api_versions.split(",") if v.strip()]


# Global settings instance
settings = Settings()
