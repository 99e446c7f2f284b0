"""Billing configuration helpers."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional
import os


@dataclass(frozen=True)
class BillingConfig:
    """Configuration for the payment processor integration."""

    provider_name: str
    stripe_secret_key: Optional[str]
    stripe_webhook_secret: Optional[str]
    webhook_tolerance_seconds: int
    request_timeout_seconds: float
    max_network_retries: int
    feature_grant_days: int
    cron_secret_token: Optional[str]
    subscription_price_id: Optional[str] = None
    feature_price_cents: int = 1000
    currency: str = "usd"


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def _to_float(value: Optional[str], *, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected float value, got {value!r}") from exc


def load_billing_config(env: Optional[Mapping[str, str]] = None) -> BillingConfig:
    """Load :class:`BillingConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    stripe_secret_key = env_mapping.get("STRIPE_SECRET_KEY") or None
    default_provider = "stripe" if stripe_secret_key else "sandbox"
    provider_name = (env_mapping.get("BILLING_PROVIDER") or default_provider).strip().lower() or default_provider
    if provider_name not in {"stripe", "sandbox"}:
        raise ValueError(f"Unsupported BILLING_PROVIDER {provider_name!r}")
    if provider_name == "stripe" and not stripe_secret_key:
        raise ValueError("STRIPE_SECRET_KEY is required when BILLING_PROVIDER=stripe")

    timeout = _to_float(env_mapping.get("STRIPE_TIMEOUT_SECONDS"), default=10.0)
    if timeout <= 0:
        raise ValueError("STRIPE_TIMEOUT_SECONDS must be positive")

    feature_price_cents = _to_int(env_mapping.get("FEATURE_PRICE_CENTS"), default=1000)
    if feature_price_cents <= 0:
        raise ValueError("FEATURE_PRICE_CENTS must be positive")

    return BillingConfig(
        provider_name=provider_name,
        stripe_secret_key=stripe_secret_key,
        stripe_webhook_secret=env_mapping.get("STRIPE_WEBHOOK_SECRET") or None,
        webhook_tolerance_seconds=max(0, _to_int(env_mapping.get("STRIPE_WEBHOOK_TOLERANCE_SECONDS"), default=300)),
        request_timeout_seconds=timeout,
        max_network_retries=max(0, _to_int(env_mapping.get("STRIPE_MAX_NETWORK_RETRIES"), default=2)),
        feature_grant_days=max(1, _to_int(env_mapping.get("FEATURE_GRANT_DAYS"), default=30)),
        cron_secret_token=env_mapping.get("CRON_SECRET_TOKEN") or None,
        subscription_price_id=env_mapping.get("STRIPE_SUBSCRIPTION_PRICE_ID") or None,
        feature_price_cents=feature_price_cents,
        currency=(env_mapping.get("BILLING_CURRENCY") or "usd").strip().lower(),
    )


__all__ = ["BillingConfig", "load_billing_config"]
