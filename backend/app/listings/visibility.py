"""Read-time visibility rules for listings.

Every public read goes through :func:`evaluate_visibility`. Time-bounded
grants (feature promotions, trial windows) are compared against ``now`` here
instead of trusting stored flags, so a listing whose promotion lapsed a
second ago is already unfeatured even if no batch job has run yet.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from .models import Listing, ListingStatus, ListingSubscriptionStatus, Visibility


def is_feature_active(
    is_featured: bool,
    feature_expiration: Optional[datetime],
    now: datetime,
) -> bool:
    """Return ``True`` while a feature promotion is still running."""

    return bool(is_featured) and feature_expiration is not None and feature_expiration > now


def effective_subscription_status(listing: Listing, now: datetime) -> ListingSubscriptionStatus:
    """Fold a lapsed trial window into ``expired``."""

    status = listing.subscription_status
    if (
        status == ListingSubscriptionStatus.TRIAL
        and listing.subscription_end_date is not None
        and listing.subscription_end_date <= now
    ):
        return ListingSubscriptionStatus.EXPIRED
    return status


def evaluate_visibility(listing: Listing, now: datetime) -> Visibility:
    visible = (
        listing.is_active
        and listing.status == ListingStatus.PUBLISHED
        and effective_subscription_status(listing, now).grants_visibility
    )
    featured = is_feature_active(listing.is_featured, listing.feature_expiration, now)
    return Visibility(visible=visible, featured=featured)


def filter_visible(listings: Iterable[Listing], now: datetime) -> List[Listing]:
    """Keep only publicly visible listings, featured ones first."""

    ranked = []
    for listing in listings:
        visibility = evaluate_visibility(listing, now)
        if visibility.visible:
            ranked.append((not visibility.featured, listing))
    ranked.sort(key=lambda item: item[0])
    return [listing for _, listing in ranked]


def extend_feature_expiration(
    current_expiration: Optional[datetime],
    now: datetime,
    days: int,
) -> datetime:
    """Compute the new expiry of a purchased promotion.

    A purchase made while a promotion is still running stacks on top of the
    remaining time.
    """

    if days < 1:
        raise ValueError("days must be >= 1")
    start = current_expiration if current_expiration is not None and current_expiration > now else now
    return start + timedelta(days=days)


__all__ = [
    "effective_subscription_status",
    "evaluate_visibility",
    "extend_feature_expiration",
    "filter_visible",
    "is_feature_active",
]
