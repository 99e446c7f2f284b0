"""Projection of subscription state onto the listings a payer owns.

Listings carry a denormalized copy of their owner's subscription status so
the public read path can evaluate visibility from the listing row alone. The
copy is written only here, after the subscription write has committed. A
reader may briefly observe the previous status until the projection lands;
every retry of a reconciliation step re-runs the projection, so the copy
converges once the subscription write is durable.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional, Protocol, Sequence

from .models import FeatureGrant, Listing, ListingSubscriptionStatus


logger = logging.getLogger("listings")


class ListingRepository(Protocol):
    """Persistence operations required by the listing flows."""

    def create_listing(self, listing: Listing) -> Listing:
        ...

    def get_listing(self, listing_id: str) -> Optional[Listing]:
        ...

    def list_by_owner(self, owner_id: str) -> Sequence[Listing]:
        ...

    def project_subscription_status(
        self,
        owner_id: str,
        *,
        status: ListingSubscriptionStatus,
        start_date: Optional[datetime],
        end_date: Optional[datetime],
    ) -> int:
        ...

    def apply_feature_grant(
        self,
        *,
        session_id: str,
        listing_id: str,
        payer_id: str,
        days: int,
        now: datetime,
    ) -> Optional[FeatureGrant]:
        ...

    def expire_features(self, now: datetime) -> int:
        ...

    def expire_trials(self, now: datetime) -> int:
        ...

    def increment_counter(self, listing_id: str, counter: str) -> Optional[Listing]:
        ...


class ListingProjector:
    """Copies a payer's subscription status onto every listing they own."""

    def __init__(self, repository: ListingRepository) -> None:
        self._repository = repository

    def project(
        self,
        owner_id: str,
        status: ListingSubscriptionStatus,
        *,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> int:
        updated = self._repository.project_subscription_status(
            owner_id,
            status=status,
            start_date=start_date,
            end_date=end_date,
        )
        if updated:
            logger.info(
                "Projected subscription status %s onto %s listing(s) owner=%s",
                status.value,
                updated,
                owner_id,
            )
        return updated


__all__ = ["ListingProjector", "ListingRepository"]
