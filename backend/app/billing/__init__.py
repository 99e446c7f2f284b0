"""Billing domain package: subscription mirror, checkout verification and webhook reconciliation."""

from .checkout import CheckoutVerifier
from .config import BillingConfig, load_billing_config
from .exceptions import (
    BillingError,
    FeatureAlreadyActiveError,
    FeatureListingUnavailableError,
    ListingOwnershipError,
    PaymentIncompleteError,
    SessionOwnershipError,
    SignatureVerificationError,
    SubscriptionAlreadyActiveError,
    SubscriptionNotFoundError,
    TransientProcessorError,
    UnknownSubscriptionError,
)
from .models import (
    BillingAuditEvent,
    BillingAuditEventType,
    CheckoutLink,
    CheckoutPurpose,
    CheckoutSessionSnapshot,
    CheckoutVerification,
    InvoiceSnapshot,
    PayerLink,
    PortalLink,
    ReconciliationOutcome,
    RemoteSubscription,
    Subscription,
    SubscriptionStatus,
    WebhookEvent,
    WebhookEventType,
)
from .provider import (
    LocalSandboxPaymentProvider,
    PaymentProvider,
    StripePaymentProvider,
    StripeWebhookVerifier,
)
from .reconciler import EventReconciler
from .service import BillingService
from .sync import BillingEventLogger, BillingRepository, SubscriptionSync

__all__ = [
    "BillingAuditEvent",
    "BillingAuditEventType",
    "BillingConfig",
    "BillingError",
    "BillingEventLogger",
    "BillingRepository",
    "BillingService",
    "CheckoutLink",
    "CheckoutPurpose",
    "CheckoutSessionSnapshot",
    "CheckoutVerification",
    "CheckoutVerifier",
    "EventReconciler",
    "FeatureAlreadyActiveError",
    "FeatureListingUnavailableError",
    "InvoiceSnapshot",
    "ListingOwnershipError",
    "LocalSandboxPaymentProvider",
    "PayerLink",
    "PaymentIncompleteError",
    "PaymentProvider",
    "PortalLink",
    "ReconciliationOutcome",
    "RemoteSubscription",
    "SessionOwnershipError",
    "SignatureVerificationError",
    "StripePaymentProvider",
    "StripeWebhookVerifier",
    "Subscription",
    "SubscriptionAlreadyActiveError",
    "SubscriptionNotFoundError",
    "SubscriptionStatus",
    "SubscriptionSync",
    "TransientProcessorError",
    "UnknownSubscriptionError",
    "WebhookEvent",
    "WebhookEventType",
    "load_billing_config",
]
