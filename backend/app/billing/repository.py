"""Persistence layer for billing domain objects.

Every write keyed by a remote subscription id is a single conditional
statement or a single transaction, so the webhook path and the checkout
verification path can race on the same aggregate without read-modify-write
hazards.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional, Tuple

import psycopg2.extras

from ..db import PostgresRepository
from .models import (
    InvoiceSnapshot,
    PayerLink,
    ReconciliationOutcome,
    RemoteSubscription,
    Subscription,
    SubscriptionStatus,
    WebhookEvent,
)


def _row_to_subscription(row: dict) -> Subscription:
    return Subscription(
        subscription_id=row["subscription_id"],
        payer_id=row["payer_id"],
        customer_id=row.get("customer_id"),
        remote_subscription_id=row["remote_subscription_id"],
        status=SubscriptionStatus(row["status"]),
        current_period_start=row.get("current_period_start"),
        current_period_end=row.get("current_period_end"),
        cancel_at_period_end=bool(row.get("cancel_at_period_end")),
        canceled_at=row.get("canceled_at"),
        renewal_count=int(row.get("renewal_count") or 0),
        last_payment_date=row.get("last_payment_date"),
        last_failed_payment_date=row.get("last_failed_payment_date"),
        remote_updated_at=row.get("remote_updated_at"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_payer_link(row: dict) -> PayerLink:
    status = row.get("subscription_status")
    return PayerLink(
        payer_id=row["payer_id"],
        customer_id=row.get("customer_id"),
        subscription_id=row.get("subscription_id"),
        subscription_status=SubscriptionStatus(status) if status else None,
        updated_at=row["updated_at"],
    )


class PostgresBillingRepository(PostgresRepository):
    """Concrete repository persisting billing models in PostgreSQL."""

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_subscriptions
                WHERE subscription_id = %s
                LIMIT 1
                """,
                (subscription_id,),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def get_by_remote_id(self, remote_subscription_id: str) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_subscriptions
                WHERE remote_subscription_id = %s
                LIMIT 1
                """,
                (remote_subscription_id,),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def get_for_payer(self, payer_id: str) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT sub.*
                FROM billing_payers AS payer
                JOIN billing_subscriptions AS sub ON sub.subscription_id = payer.subscription_id
                WHERE payer.payer_id = %s
                LIMIT 1
                """,
                (payer_id,),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def insert_if_absent(self, subscription: Subscription) -> Tuple[Subscription, bool]:
        """Create the subscription unless its remote id is already stored."""

        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_subscriptions (
                    subscription_id,
                    payer_id,
                    customer_id,
                    remote_subscription_id,
                    status,
                    current_period_start,
                    current_period_end,
                    cancel_at_period_end,
                    canceled_at,
                    renewal_count,
                    last_payment_date,
                    remote_updated_at
                )
                VALUES (%(subscription_id)s, %(payer_id)s, %(customer_id)s,
                        %(remote_subscription_id)s, %(status)s, %(current_period_start)s,
                        %(current_period_end)s, %(cancel_at_period_end)s, %(canceled_at)s,
                        %(renewal_count)s, %(last_payment_date)s, %(remote_updated_at)s)
                ON CONFLICT (remote_subscription_id) DO NOTHING
                RETURNING *
                """,
                {
                    "subscription_id": subscription.subscription_id,
                    "payer_id": subscription.payer_id,
                    "customer_id": subscription.customer_id,
                    "remote_subscription_id": subscription.remote_subscription_id,
                    "status": subscription.status.value,
                    "current_period_start": subscription.current_period_start,
                    "current_period_end": subscription.current_period_end,
                    "cancel_at_period_end": subscription.cancel_at_period_end,
                    "canceled_at": subscription.canceled_at,
                    "renewal_count": subscription.renewal_count,
                    "last_payment_date": subscription.last_payment_date,
                    "remote_updated_at": subscription.remote_updated_at,
                },
            )
            row = cursor.fetchone()
            if row:
                return _row_to_subscription(row), True

            cursor.execute(
                "SELECT * FROM billing_subscriptions WHERE remote_subscription_id = %s",
                (subscription.remote_subscription_id,),
            )
            existing = cursor.fetchone()
            if not existing:
                raise RuntimeError("Failed to persist subscription")
            return _row_to_subscription(existing), False

    def apply_snapshot(
        self,
        remote: RemoteSubscription,
        *,
        observed_at: datetime,
    ) -> Tuple[Optional[Subscription], bool]:
        """Overwrite mirrored fields unless a newer snapshot was already applied."""

        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE billing_subscriptions
                SET status = %(status)s,
                    customer_id = COALESCE(%(customer_id)s, customer_id),
                    current_period_start = %(current_period_start)s,
                    current_period_end = %(current_period_end)s,
                    cancel_at_period_end = %(cancel_at_period_end)s,
                    canceled_at = %(canceled_at)s,
                    remote_updated_at = %(observed_at)s,
                    updated_at = NOW()
                WHERE remote_subscription_id = %(remote_subscription_id)s
                  AND (remote_updated_at IS NULL OR remote_updated_at <= %(observed_at)s)
                RETURNING *
                """,
                {
                    "status": remote.status.value,
                    "customer_id": remote.customer_id,
                    "current_period_start": remote.current_period_start,
                    "current_period_end": remote.current_period_end,
                    "cancel_at_period_end": remote.cancel_at_period_end,
                    "canceled_at": remote.canceled_at,
                    "observed_at": observed_at,
                    "remote_subscription_id": remote.remote_subscription_id,
                },
            )
            row = cursor.fetchone()
            if row:
                return _row_to_subscription(row), True

            cursor.execute(
                "SELECT * FROM billing_subscriptions WHERE remote_subscription_id = %s",
                (remote.remote_subscription_id,),
            )
            existing = cursor.fetchone()
            return (_row_to_subscription(existing) if existing else None), False

    def record_renewal(
        self,
        invoice: InvoiceSnapshot,
        *,
        paid_at: datetime,
    ) -> Tuple[Optional[Subscription], bool]:
        """Count a renewal once per invoice id and extend the period monotonically."""

        with self._cursor() as cursor:
            cursor.execute(
                "SELECT 1 FROM billing_subscriptions WHERE remote_subscription_id = %s FOR UPDATE",
                (invoice.remote_subscription_id,),
            )
            if not cursor.fetchone():
                return None, False

            cursor.execute(
                """
                INSERT INTO billing_subscription_renewals (
                    invoice_id,
                    remote_subscription_id,
                    period_start,
                    period_end,
                    paid_at
                )
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (invoice_id) DO NOTHING
                """,
                (
                    invoice.invoice_id,
                    invoice.remote_subscription_id,
                    invoice.period_start,
                    invoice.period_end,
                    paid_at,
                ),
            )
            if cursor.rowcount == 0:
                cursor.execute(
                    "SELECT * FROM billing_subscriptions WHERE remote_subscription_id = %s",
                    (invoice.remote_subscription_id,),
                )
                return _row_to_subscription(cursor.fetchone()), False

            cursor.execute(
                """
                UPDATE billing_subscriptions
                SET renewal_count = renewal_count + 1,
                    status = CASE
                        WHEN status = %(canceled)s THEN status
                        WHEN %(period_end)s::timestamptz IS NULL
                             OR current_period_end IS NULL
                             OR %(period_end)s::timestamptz >= current_period_end THEN %(active)s
                        ELSE status
                    END,
                    current_period_start = CASE
                        WHEN %(period_end)s::timestamptz > COALESCE(current_period_end, '-infinity'::timestamptz)
                            THEN COALESCE(%(period_start)s, current_period_start)
                        ELSE current_period_start
                    END,
                    current_period_end = GREATEST(current_period_end, %(period_end)s),
                    last_payment_date = GREATEST(last_payment_date, %(paid_at)s),
                    updated_at = NOW()
                WHERE remote_subscription_id = %(remote_subscription_id)s
                RETURNING *
                """,
                {
                    "canceled": SubscriptionStatus.CANCELED.value,
                    "active": SubscriptionStatus.ACTIVE.value,
                    "period_start": invoice.period_start,
                    "period_end": invoice.period_end,
                    "paid_at": paid_at,
                    "remote_subscription_id": invoice.remote_subscription_id,
                },
            )
            return _row_to_subscription(cursor.fetchone()), True

    def record_payment(self, remote_subscription_id: str, *, paid_at: datetime) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE billing_subscriptions
                SET last_payment_date = GREATEST(last_payment_date, %s),
                    updated_at = NOW()
                WHERE remote_subscription_id = %s
                RETURNING *
                """,
                (paid_at, remote_subscription_id),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def mark_payment_failed(self, remote_subscription_id: str, *, failed_at: datetime) -> Optional[Subscription]:
        """Move to past_due unless canceled or a later payment already succeeded."""

        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE billing_subscriptions
                SET status = CASE
                        WHEN status = %(canceled)s THEN status
                        WHEN last_payment_date IS NOT NULL AND last_payment_date > %(failed_at)s THEN status
                        ELSE %(past_due)s
                    END,
                    last_failed_payment_date = GREATEST(last_failed_payment_date, %(failed_at)s),
                    updated_at = NOW()
                WHERE remote_subscription_id = %(remote_subscription_id)s
                RETURNING *
                """,
                {
                    "canceled": SubscriptionStatus.CANCELED.value,
                    "past_due": SubscriptionStatus.PAST_DUE.value,
                    "failed_at": failed_at,
                    "remote_subscription_id": remote_subscription_id,
                },
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def mark_canceled(
        self,
        remote_subscription_id: str,
        *,
        canceled_at: datetime,
        observed_at: datetime,
    ) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE billing_subscriptions
                SET status = %s,
                    canceled_at = COALESCE(canceled_at, %s),
                    cancel_at_period_end = FALSE,
                    remote_updated_at = GREATEST(remote_updated_at, %s),
                    updated_at = NOW()
                WHERE remote_subscription_id = %s
                RETURNING *
                """,
                (SubscriptionStatus.CANCELED.value, canceled_at, observed_at, remote_subscription_id),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def link_payer(self, subscription: Subscription, *, claim: bool) -> PayerLink:
        """Point the payer at ``subscription``.

        Without ``claim`` the link is only refreshed when it already points at
        this subscription (or at nothing), so events for an older subscription
        never steal the payer back from a newer one.
        """

        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_payers (payer_id, customer_id, subscription_id, subscription_status)
                VALUES (%(payer_id)s, %(customer_id)s, %(subscription_id)s, %(status)s)
                ON CONFLICT (payer_id) DO UPDATE SET
                    customer_id = COALESCE(EXCLUDED.customer_id, billing_payers.customer_id),
                    subscription_id = EXCLUDED.subscription_id,
                    subscription_status = EXCLUDED.subscription_status,
                    updated_at = NOW()
                WHERE %(claim)s
                   OR billing_payers.subscription_id IS NULL
                   OR billing_payers.subscription_id = EXCLUDED.subscription_id
                RETURNING *
                """,
                {
                    "payer_id": subscription.payer_id,
                    "customer_id": subscription.customer_id,
                    "subscription_id": subscription.subscription_id,
                    "status": subscription.status.value,
                    "claim": claim,
                },
            )
            row = cursor.fetchone()
            if not row:
                cursor.execute(
                    "SELECT * FROM billing_payers WHERE payer_id = %s",
                    (subscription.payer_id,),
                )
                row = cursor.fetchone()
            return _row_to_payer_link(row)

    def get_payer_link(self, payer_id: str) -> Optional[PayerLink]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM billing_payers WHERE payer_id = %s",
                (payer_id,),
            )
            row = cursor.fetchone()
            return _row_to_payer_link(row) if row else None

    def has_processed_event(self, event_id: str) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT 1 FROM billing_webhook_events WHERE event_id = %s",
                (event_id,),
            )
            return cursor.fetchone() is not None

    def mark_event_processed(self, event: WebhookEvent, outcome: ReconciliationOutcome) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_webhook_events (
                    event_id,
                    event_type,
                    outcome,
                    payload,
                    event_created_at,
                    received_at,
                    processed_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, NOW())
                ON CONFLICT (event_id) DO NOTHING
                """,
                (
                    event.event_id,
                    event.event_type,
                    outcome.value,
                    psycopg2.extras.Json(event.data),
                    event.created_at,
                    event.received_at,
                ),
            )
            return cursor.rowcount > 0


__all__ = ["PostgresBillingRepository"]
