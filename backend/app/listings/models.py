"""Domain models for directory listings."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ListingStatus(str, Enum):
    """Owner-controlled publication state."""

    DRAFT = "draft"
    PUBLISHED = "published"
    SUSPENDED = "suspended"


class ListingSubscriptionStatus(str, Enum):
    """Subscription state projected onto every listing owned by a payer."""

    TRIAL = "trial"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    EXPIRED = "expired"
    CANCELED = "canceled"

    @property
    def grants_visibility(self) -> bool:
        return self in {ListingSubscriptionStatus.ACTIVE, ListingSubscriptionStatus.TRIAL}


class Listing(BaseModel):
    """Snapshot of a listing as stored in the directory."""

    listing_id: str
    owner_id: str
    title: str = ""
    status: ListingStatus = ListingStatus.DRAFT
    is_active: bool = True
    subscription_status: ListingSubscriptionStatus = ListingSubscriptionStatus.TRIAL
    subscription_start_date: Optional[datetime] = None
    subscription_end_date: Optional[datetime] = None
    is_featured: bool = False
    feature_expiration: Optional[datetime] = None
    view_count: int = Field(default=0, ge=0)
    click_count: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class Visibility(BaseModel):
    """Public-facing evaluation of a listing at a given instant."""

    visible: bool
    featured: bool

    model_config = ConfigDict(frozen=True)


class FeatureGrant(BaseModel):
    """Time-boxed promotion bought through a one-off feature checkout."""

    session_id: str
    listing_id: str
    payer_id: str
    feature_expiration: datetime
    applied: bool = True
    granted_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class SweepSummary(BaseModel):
    """Counts produced by one batch expiration pass."""

    features_expired: int = 0
    trials_expired: int = 0
    ran_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(frozen=True)


__all__ = [
    "FeatureGrant",
    "Listing",
    "ListingStatus",
    "ListingSubscriptionStatus",
    "SweepSummary",
    "Visibility",
]
