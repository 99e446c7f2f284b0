"""Public read path, feature promotions and batch expiry for listings."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple

from .models import FeatureGrant, Listing, SweepSummary, Visibility
from .projection import ListingRepository
from .visibility import evaluate_visibility, filter_visible


logger = logging.getLogger("listings")


class ListingService:
    """Serves listings to the public through the visibility evaluator."""

    def __init__(
        self,
        repository: ListingRepository,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        feature_grant_days: int = 30,
    ) -> None:
        if feature_grant_days < 1:
            raise ValueError("feature_grant_days must be >= 1")
        self._repository = repository
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._feature_grant_days = feature_grant_days

    def get_listing(self, listing_id: str) -> Optional[Listing]:
        """Owner-side read: the stored listing whatever its public visibility."""

        return self._repository.get_listing(listing_id)

    def get_public_listing(self, listing_id: str) -> Optional[Tuple[Listing, Visibility]]:
        """Return a listing and its visibility, or ``None`` when hidden from the public."""

        listing = self._repository.get_listing(listing_id)
        if listing is None:
            return None
        visibility = evaluate_visibility(listing, self._clock())
        if not visibility.visible:
            return None
        counted = self._repository.increment_counter(listing_id, "view_count")
        return (counted or listing), visibility

    def record_click(self, listing_id: str) -> Optional[Listing]:
        listing = self._repository.get_listing(listing_id)
        if listing is None or not evaluate_visibility(listing, self._clock()).visible:
            return None
        return self._repository.increment_counter(listing_id, "click_count")

    def list_public_for_owner(self, owner_id: str) -> List[Listing]:
        return filter_visible(self._repository.list_by_owner(owner_id), self._clock())

    def grant_feature(self, *, session_id: str, listing_id: str, payer_id: str) -> Optional[FeatureGrant]:
        """Apply a purchased promotion. Re-running for the same session is a no-op."""

        listing = self._repository.get_listing(listing_id)
        if listing is None:
            logger.warning("Feature purchase %s references unknown listing %s", session_id, listing_id)
            return None
        if listing.owner_id != payer_id:
            logger.warning(
                "Feature purchase %s payer=%s does not own listing %s",
                session_id,
                payer_id,
                listing_id,
            )
            return None

        grant = self._repository.apply_feature_grant(
            session_id=session_id,
            listing_id=listing_id,
            payer_id=payer_id,
            days=self._feature_grant_days,
            now=self._clock(),
        )
        if grant is not None and grant.applied:
            logger.info(
                "Featured listing %s until %s session=%s",
                listing_id,
                grant.feature_expiration.isoformat(),
                session_id,
            )
        return grant

    def expire_stale(self, now: Optional[datetime] = None) -> SweepSummary:
        """Flip lapsed feature and trial flags so stored rows match what readers compute."""

        run_at = now or self._clock()
        features = self._repository.expire_features(run_at)
        trials = self._repository.expire_trials(run_at)
        return SweepSummary(features_expired=features, trials_expired=trials, ran_at=run_at)


__all__ = ["ListingService"]
