"""API schemas for subscription endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from ..billing import (
    CheckoutLink,
    CheckoutPurpose,
    CheckoutVerification,
    PortalLink,
    ReconciliationOutcome,
    Subscription,
    SubscriptionStatus,
)
from ..listings import FeatureGrant


class SubscriptionResponse(BaseModel):
    subscription_id: str = Field(alias="subscriptionId")
    status: SubscriptionStatus
    current_period_start: Optional[datetime] = Field(alias="currentPeriodStart", default=None)
    current_period_end: Optional[datetime] = Field(alias="currentPeriodEnd", default=None)
    auto_renew: bool = Field(alias="autoRenew")
    canceled_at: Optional[datetime] = Field(alias="canceledAt", default=None)
    renewal_count: int = Field(alias="renewalCount", default=0)
    last_payment_date: Optional[datetime] = Field(alias="lastPaymentDate", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_subscription(cls, subscription: Subscription) -> "SubscriptionResponse":
        return cls(
            subscription_id=subscription.subscription_id,
            status=subscription.status,
            current_period_start=subscription.current_period_start,
            current_period_end=subscription.current_period_end,
            auto_renew=subscription.auto_renew,
            canceled_at=subscription.canceled_at,
            renewal_count=subscription.renewal_count,
            last_payment_date=subscription.last_payment_date,
        )


class FeatureGrantResponse(BaseModel):
    listing_id: str = Field(alias="listingId")
    feature_expiration: datetime = Field(alias="featureExpiration")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_grant(cls, grant: FeatureGrant) -> "FeatureGrantResponse":
        return cls(listing_id=grant.listing_id, feature_expiration=grant.feature_expiration)


class CheckoutVerificationResponse(BaseModel):
    session_id: str = Field(alias="sessionId")
    subscription: Optional[SubscriptionResponse] = None
    feature: Optional[FeatureGrantResponse] = None

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_verification(cls, result: CheckoutVerification) -> "CheckoutVerificationResponse":
        return cls(
            session_id=result.session_id,
            subscription=(
                SubscriptionResponse.from_subscription(result.subscription)
                if result.subscription is not None
                else None
            ),
            feature=FeatureGrantResponse.from_grant(result.feature_grant) if result.feature_grant else None,
        )


class AutoRenewRequest(BaseModel):
    enabled: bool


class WebhookAck(BaseModel):
    received: bool = True
    outcome: ReconciliationOutcome


class CheckoutSessionRequest(BaseModel):
    success_url: str = Field(alias="successUrl", min_length=1)
    cancel_url: str = Field(alias="cancelUrl", min_length=1)

    model_config = ConfigDict(populate_by_name=True)


class FeatureCheckoutRequest(CheckoutSessionRequest):
    listing_id: str = Field(alias="listingId", min_length=1)


class CheckoutSessionResponse(BaseModel):
    session_id: str = Field(alias="sessionId")
    checkout_url: str = Field(alias="checkoutUrl")
    purpose: CheckoutPurpose
    expires_at: Optional[datetime] = Field(alias="expiresAt", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_checkout(cls, checkout: CheckoutLink) -> "CheckoutSessionResponse":
        return cls(
            session_id=checkout.session_id,
            checkout_url=checkout.checkout_url,
            purpose=checkout.purpose,
            expires_at=checkout.expires_at,
        )


class PortalSessionRequest(BaseModel):
    return_url: str = Field(alias="returnUrl", min_length=1)

    model_config = ConfigDict(populate_by_name=True)


class PortalSessionResponse(BaseModel):
    url: str
    expires_at: Optional[datetime] = Field(alias="expiresAt", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_portal(cls, portal: PortalLink) -> "PortalSessionResponse":
        return cls(url=portal.url, expires_at=portal.expires_at)
