"""Persistence layer for listing records."""
from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from ..db import PostgresRepository
from .models import FeatureGrant, Listing, ListingStatus, ListingSubscriptionStatus
from .visibility import extend_feature_expiration


_COUNTER_COLUMNS = {"view_count", "click_count"}


def _row_to_listing(row: dict) -> Listing:
    return Listing(
        listing_id=row["listing_id"],
        owner_id=row["owner_id"],
        title=row.get("title") or "",
        status=ListingStatus(row["status"]),
        is_active=bool(row["is_active"]),
        subscription_status=ListingSubscriptionStatus(row["subscription_status"]),
        subscription_start_date=row.get("subscription_start_date"),
        subscription_end_date=row.get("subscription_end_date"),
        is_featured=bool(row["is_featured"]),
        feature_expiration=row.get("feature_expiration"),
        view_count=int(row.get("view_count") or 0),
        click_count=int(row.get("click_count") or 0),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_feature_grant(row: dict, *, applied: bool) -> FeatureGrant:
    return FeatureGrant(
        session_id=row["session_id"],
        listing_id=row["listing_id"],
        payer_id=row["payer_id"],
        feature_expiration=row["feature_expiration"],
        applied=applied,
        granted_at=row["granted_at"],
    )


class PostgresListingRepository(PostgresRepository):
    """Concrete repository persisting listings in PostgreSQL."""

    def create_listing(self, listing: Listing) -> Listing:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO listings (
                    listing_id,
                    owner_id,
                    title,
                    status,
                    is_active,
                    subscription_status,
                    subscription_start_date,
                    subscription_end_date,
                    is_featured,
                    feature_expiration
                )
                VALUES (%(listing_id)s, %(owner_id)s, %(title)s, %(status)s, %(is_active)s,
                        %(subscription_status)s, %(subscription_start_date)s,
                        %(subscription_end_date)s, %(is_featured)s, %(feature_expiration)s)
                RETURNING *
                """,
                {
                    "listing_id": listing.listing_id,
                    "owner_id": listing.owner_id,
                    "title": listing.title,
                    "status": listing.status.value,
                    "is_active": listing.is_active,
                    "subscription_status": listing.subscription_status.value,
                    "subscription_start_date": listing.subscription_start_date,
                    "subscription_end_date": listing.subscription_end_date,
                    "is_featured": listing.is_featured,
                    "feature_expiration": listing.feature_expiration,
                },
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist listing")
            return _row_to_listing(row)

    def get_listing(self, listing_id: str) -> Optional[Listing]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM listings
                WHERE listing_id = %s
                LIMIT 1
                """,
                (listing_id,),
            )
            row = cursor.fetchone()
            return _row_to_listing(row) if row else None

    def list_by_owner(self, owner_id: str) -> List[Listing]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM listings
                WHERE owner_id = %s
                ORDER BY created_at DESC
                """,
                (owner_id,),
            )
            rows = cursor.fetchall() or []
            return [_row_to_listing(row) for row in rows]

    def project_subscription_status(
        self,
        owner_id: str,
        *,
        status: ListingSubscriptionStatus,
        start_date: Optional[datetime],
        end_date: Optional[datetime],
    ) -> int:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE listings
                SET subscription_status = %s,
                    subscription_start_date = COALESCE(%s, subscription_start_date),
                    subscription_end_date = COALESCE(%s, subscription_end_date),
                    updated_at = NOW()
                WHERE owner_id = %s
                  AND (
                    subscription_status IS DISTINCT FROM %s
                    OR subscription_start_date IS DISTINCT FROM COALESCE(%s, subscription_start_date)
                    OR subscription_end_date IS DISTINCT FROM COALESCE(%s, subscription_end_date)
                  )
                """,
                (
                    status.value,
                    start_date,
                    end_date,
                    owner_id,
                    status.value,
                    start_date,
                    end_date,
                ),
            )
            return cursor.rowcount

    def apply_feature_grant(
        self,
        *,
        session_id: str,
        listing_id: str,
        payer_id: str,
        days: int,
        now: datetime,
    ) -> Optional[FeatureGrant]:
        """Extend a listing's promotion once per checkout session."""

        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM listing_feature_grants
                WHERE session_id = %s
                """,
                (session_id,),
            )
            existing = cursor.fetchone()
            if existing:
                return _row_to_feature_grant(existing, applied=False)

            cursor.execute(
                """
                SELECT *
                FROM listings
                WHERE listing_id = %s
                FOR UPDATE
                """,
                (listing_id,),
            )
            row = cursor.fetchone()
            if not row:
                return None
            listing = _row_to_listing(row)
            expires_at = extend_feature_expiration(
                listing.feature_expiration if listing.is_featured else None,
                now,
                days,
            )

            cursor.execute(
                """
                INSERT INTO listing_feature_grants (
                    session_id,
                    listing_id,
                    payer_id,
                    feature_expiration,
                    granted_at
                )
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (session_id) DO NOTHING
                RETURNING *
                """,
                (session_id, listing_id, payer_id, expires_at, now),
            )
            grant_row = cursor.fetchone()
            if not grant_row:
                # A concurrent delivery for the same session won the insert.
                cursor.execute(
                    "SELECT * FROM listing_feature_grants WHERE session_id = %s",
                    (session_id,),
                )
                return _row_to_feature_grant(cursor.fetchone(), applied=False)

            cursor.execute(
                """
                UPDATE listings
                SET is_featured = TRUE,
                    feature_expiration = %s,
                    updated_at = NOW()
                WHERE listing_id = %s
                """,
                (expires_at, listing_id),
            )
            return _row_to_feature_grant(grant_row, applied=True)

    def expire_features(self, now: datetime) -> int:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE listings
                SET is_featured = FALSE,
                    updated_at = NOW()
                WHERE is_featured = TRUE
                  AND (feature_expiration IS NULL OR feature_expiration <= %s)
                """,
                (now,),
            )
            return cursor.rowcount

    def expire_trials(self, now: datetime) -> int:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE listings
                SET subscription_status = %s,
                    updated_at = NOW()
                WHERE subscription_status = %s
                  AND subscription_end_date IS NOT NULL
                  AND subscription_end_date <= %s
                """,
                (
                    ListingSubscriptionStatus.EXPIRED.value,
                    ListingSubscriptionStatus.TRIAL.value,
                    now,
                ),
            )
            return cursor.rowcount

    def increment_counter(self, listing_id: str, counter: str) -> Optional[Listing]:
        if counter not in _COUNTER_COLUMNS:
            raise ValueError(f"Unknown listing counter: {counter}")
        with self._cursor() as cursor:
            cursor.execute(
                f"""
                UPDATE listings
                SET {counter} = {counter} + 1
                WHERE listing_id = %s
                RETURNING *
                """,
                (listing_id,),
            )
            row = cursor.fetchone()
            return _row_to_listing(row) if row else None


__all__ = ["PostgresListingRepository"]
