"""Application wiring for the billing and listing services."""
from __future__ import annotations

import logging
from functools import lru_cache

from ..billing import (
    BillingAuditEvent,
    BillingConfig,
    BillingEventLogger,
    BillingService,
    CheckoutVerifier,
    EventReconciler,
    LocalSandboxPaymentProvider,
    PaymentProvider,
    StripePaymentProvider,
    StripeWebhookVerifier,
    SubscriptionSync,
    load_billing_config,
)
from ..billing.repository import PostgresBillingRepository
from ..listings import ListingProjector, ListingService
from ..listings.repository import PostgresListingRepository


logger = logging.getLogger("billing")


class LoggingBillingEventLogger(BillingEventLogger):
    """Simple event logger forwarding billing audit events to logging."""

    def log(self, event: BillingAuditEvent) -> None:
        logger.info(
            "Billing event %s subscription=%s actor=%s metadata=%s",
            event.event_type.value,
            event.subscription_id,
            event.actor_id,
            event.metadata,
        )


@lru_cache(maxsize=1)
def get_billing_config() -> BillingConfig:
    return load_billing_config()


@lru_cache(maxsize=1)
def get_payment_provider() -> PaymentProvider:
    config = get_billing_config()
    if config.provider_name == "stripe":
        return StripePaymentProvider(
            config.stripe_secret_key or "",
            timeout_seconds=config.request_timeout_seconds,
            max_network_retries=config.max_network_retries,
            subscription_price_id=config.subscription_price_id,
            feature_price_cents=config.feature_price_cents,
            feature_days=config.feature_grant_days,
            currency=config.currency,
        )
    logger.warning("Using the local sandbox payment provider; no real payments will be verified")
    return LocalSandboxPaymentProvider()


@lru_cache(maxsize=1)
def get_webhook_verifier() -> StripeWebhookVerifier:
    config = get_billing_config()
    if not config.stripe_webhook_secret:
        logger.warning("STRIPE_WEBHOOK_SECRET is not set; webhook deliveries will be rejected")
    return StripeWebhookVerifier(
        config.stripe_webhook_secret,
        tolerance_seconds=config.webhook_tolerance_seconds,
    )


@lru_cache(maxsize=1)
def get_listing_service() -> ListingService:
    return ListingService(
        PostgresListingRepository(),
        feature_grant_days=get_billing_config().feature_grant_days,
    )


@lru_cache(maxsize=1)
def get_subscription_sync() -> SubscriptionSync:
    return SubscriptionSync(
        PostgresBillingRepository(),
        ListingProjector(PostgresListingRepository()),
        LoggingBillingEventLogger(),
    )


@lru_cache(maxsize=1)
def get_checkout_verifier() -> CheckoutVerifier:
    return CheckoutVerifier(
        get_payment_provider(),
        PostgresBillingRepository(),
        get_subscription_sync(),
        get_listing_service(),
    )


@lru_cache(maxsize=1)
def get_event_reconciler() -> EventReconciler:
    return EventReconciler(
        PostgresBillingRepository(),
        get_payment_provider(),
        get_subscription_sync(),
        get_listing_service(),
    )


@lru_cache(maxsize=1)
def get_billing_service() -> BillingService:
    return BillingService(
        repository=PostgresBillingRepository(),
        provider=get_payment_provider(),
        sync=get_subscription_sync(),
        listings=get_listing_service(),
    )


__all__ = [
    "LoggingBillingEventLogger",
    "get_billing_config",
    "get_billing_service",
    "get_checkout_verifier",
    "get_event_reconciler",
    "get_listing_service",
    "get_payment_provider",
    "get_subscription_sync",
    "get_webhook_verifier",
]
