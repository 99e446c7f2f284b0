"""Listing domain package: records, visibility rules and the status projection."""

from .models import (
    FeatureGrant,
    Listing,
    ListingStatus,
    ListingSubscriptionStatus,
    SweepSummary,
    Visibility,
)
from .projection import ListingProjector, ListingRepository
from .service import ListingService
from .visibility import (
    effective_subscription_status,
    evaluate_visibility,
    extend_feature_expiration,
    filter_visible,
    is_feature_active,
)

__all__ = [
    "FeatureGrant",
    "Listing",
    "ListingProjector",
    "ListingRepository",
    "ListingService",
    "ListingStatus",
    "ListingSubscriptionStatus",
    "SweepSummary",
    "Visibility",
    "effective_subscription_status",
    "evaluate_visibility",
    "extend_feature_expiration",
    "filter_visible",
    "is_feature_active",
]
