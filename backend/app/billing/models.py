"""Domain models for the billing system."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..listings.models import FeatureGrant, ListingSubscriptionStatus


class SubscriptionStatus(str, Enum):
    """Subscription states as reported by the payment processor."""

    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    PAUSED = "paused"

    def to_listing_status(self) -> ListingSubscriptionStatus:
        """Map a processor state onto the status copied to owned listings."""

        return _LISTING_STATUS_BY_SUBSCRIPTION_STATUS[self]


_LISTING_STATUS_BY_SUBSCRIPTION_STATUS: Dict[SubscriptionStatus, ListingSubscriptionStatus] = {
    SubscriptionStatus.ACTIVE: ListingSubscriptionStatus.ACTIVE,
    SubscriptionStatus.TRIALING: ListingSubscriptionStatus.TRIAL,
    SubscriptionStatus.PAST_DUE: ListingSubscriptionStatus.PAST_DUE,
    SubscriptionStatus.INCOMPLETE: ListingSubscriptionStatus.PAST_DUE,
    SubscriptionStatus.UNPAID: ListingSubscriptionStatus.EXPIRED,
    SubscriptionStatus.INCOMPLETE_EXPIRED: ListingSubscriptionStatus.EXPIRED,
    SubscriptionStatus.PAUSED: ListingSubscriptionStatus.EXPIRED,
    SubscriptionStatus.CANCELED: ListingSubscriptionStatus.CANCELED,
}


class WebhookEventType(str, Enum):
    """Processor event types the reconciler reacts to."""

    CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"


class ReconciliationOutcome(str, Enum):
    """Result of handling one webhook delivery."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    STALE = "stale"


class CheckoutPurpose(str, Enum):
    """What a hosted checkout session was opened for."""

    SUBSCRIPTION = "subscription"
    LISTING_FEATURE = "listing_feature"


class Subscription(BaseModel):
    """Local mirror of a processor subscription."""

    subscription_id: str
    payer_id: str
    customer_id: Optional[str] = None
    remote_subscription_id: str
    status: SubscriptionStatus
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    renewal_count: int = Field(default=0, ge=0)
    last_payment_date: Optional[datetime] = None
    last_failed_payment_date: Optional[datetime] = None
    remote_updated_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def is_past_due(self) -> bool:
        """Return ``True`` when the subscription is in a past-due state."""
        return self.status == SubscriptionStatus.PAST_DUE

    @property
    def is_canceled(self) -> bool:
        return self.status == SubscriptionStatus.CANCELED

    @property
    def auto_renew(self) -> bool:
        return not self.cancel_at_period_end and not self.is_canceled


class RemoteSubscription(BaseModel):
    """Processor-side subscription object, normalized."""

    remote_subscription_id: str
    customer_id: Optional[str] = None
    status: SubscriptionStatus
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    metadata: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class CheckoutSessionSnapshot(BaseModel):
    """Processor-side hosted checkout session, normalized."""

    session_id: str
    payer_id: Optional[str] = None
    customer_id: Optional[str] = None
    payment_status: Optional[str] = None
    remote_subscription_id: Optional[str] = None
    purpose: CheckoutPurpose = CheckoutPurpose.SUBSCRIPTION
    listing_id: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def is_paid(self) -> bool:
        return self.payment_status == "paid"


class InvoiceSnapshot(BaseModel):
    """Processor-side invoice fields needed for renewal bookkeeping."""

    invoice_id: str
    remote_subscription_id: Optional[str] = None
    customer_id: Optional[str] = None
    billing_reason: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    paid_at: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def is_renewal(self) -> bool:
        return self.billing_reason == "subscription_cycle"


class WebhookEvent(BaseModel):
    """Signature-verified webhook delivery."""

    event_id: str
    event_type: str
    created_at: datetime
    data: Dict[str, object] = Field(default_factory=dict)
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def known_type(self) -> Optional[WebhookEventType]:
        try:
            return WebhookEventType(self.event_type)
        except ValueError:
            return None


class PayerLink(BaseModel):
    """Association between a payer account and its current subscription."""

    payer_id: str
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    subscription_status: Optional[SubscriptionStatus] = None
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class BillingAuditEventType(str, Enum):
    """Audit event categories emitted by the billing subsystem."""

    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_RENEWED = "subscription_renewed"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    PAYMENT_FAILED = "payment_failed"
    FEATURE_GRANTED = "feature_granted"


class BillingAuditEvent(BaseModel):
    """Structured audit event for analytics and alerting."""

    event_type: BillingAuditEventType
    subscription_id: Optional[str] = None
    actor_id: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class CheckoutLink(BaseModel):
    """Hosted checkout session opened for a payer."""

    session_id: str
    checkout_url: str
    purpose: CheckoutPurpose
    expires_at: Optional[datetime] = None
    metadata: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class PortalLink(BaseModel):
    url: str
    expires_at: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class CheckoutVerification(BaseModel):
    """Return value of a synchronous checkout verification."""

    session_id: str
    subscription: Optional[Subscription] = None
    feature_grant: Optional[FeatureGrant] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


__all__ = [
    "BillingAuditEvent",
    "BillingAuditEventType",
    "CheckoutLink",
    "CheckoutPurpose",
    "CheckoutSessionSnapshot",
    "CheckoutVerification",
    "InvoiceSnapshot",
    "PayerLink",
    "PortalLink",
    "ReconciliationOutcome",
    "RemoteSubscription",
    "Subscription",
    "SubscriptionStatus",
    "WebhookEvent",
    "WebhookEventType",
]
