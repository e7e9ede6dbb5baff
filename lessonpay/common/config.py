"""Central environment-driven settings for the checkout service.

Loaded once at import time. Behavior is controlled by environment variables
(or a local `.env` file); the verification fallback policy in particular must
be declared explicitly to get the permissive behavior.
"""

from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class CheckoutSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "checkout"
    log_level: str = "INFO"
    reference_namespace: str = "LSN"
    default_currency: str = "NGN"
    payment_channels: list[str] = ["card", "bank_transfer", "ussd", "mobile_money"]
    gateway_name: str = "paystack"
    gateway_mode: Literal["hosted", "simulated"] = "hosted"
    checkout_retention: int = 1000
    verification_url: str | None = None
    verification_timeout_seconds: float = 10.0
    verification_max_attempts: int = 2
    verification_backoff_seconds: float = 0.5
    verification_fallback: Literal["strict", "permissive"] = "strict"
    grant_webhook_url: str | None = None
    grant_webhook_timeout_seconds: float = 5.0
    tracing_enabled: bool = True
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = CheckoutSettings()
