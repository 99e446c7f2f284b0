"""Single write path for subscription state.

Both the checkout verifier and the webhook reconciler mutate subscriptions
exclusively through :class:`SubscriptionSync`. Each operation performs one
atomic repository write keyed by the remote subscription id and then runs
the post-write step: refresh the payer link and project the status onto the
payer's listings.

Two merge rules coexist on purpose:

* snapshot-type events (``apply_remote_snapshot``) overwrite local fields
  with the processor's values, ordered by the snapshot's own timestamp;
* renewal events (``apply_renewal``) increment ``renewal_count`` once per
  invoice id and only ever move ``current_period_end`` forward.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol, Tuple
from uuid import uuid4

from ..listings.projection import ListingProjector
from .exceptions import UnknownSubscriptionError
from .models import (
    BillingAuditEvent,
    BillingAuditEventType,
    InvoiceSnapshot,
    PayerLink,
    ReconciliationOutcome,
    RemoteSubscription,
    Subscription,
    WebhookEvent,
)


logger = logging.getLogger("billing")


class BillingRepository(Protocol):
    """Persistence operations required by the billing flows."""

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        ...

    def get_by_remote_id(self, remote_subscription_id: str) -> Optional[Subscription]:
        ...

    def get_for_payer(self, payer_id: str) -> Optional[Subscription]:
        ...

    def insert_if_absent(self, subscription: Subscription) -> Tuple[Subscription, bool]:
        ...

    def apply_snapshot(
        self,
        remote: RemoteSubscription,
        *,
        observed_at: datetime,
    ) -> Tuple[Optional[Subscription], bool]:
        ...

    def record_renewal(
        self,
        invoice: InvoiceSnapshot,
        *,
        paid_at: datetime,
    ) -> Tuple[Optional[Subscription], bool]:
        ...

    def record_payment(self, remote_subscription_id: str, *, paid_at: datetime) -> Optional[Subscription]:
        ...

    def mark_payment_failed(self, remote_subscription_id: str, *, failed_at: datetime) -> Optional[Subscription]:
        ...

    def mark_canceled(
        self,
        remote_subscription_id: str,
        *,
        canceled_at: datetime,
        observed_at: datetime,
    ) -> Optional[Subscription]:
        ...

    def link_payer(self, subscription: Subscription, *, claim: bool) -> PayerLink:
        ...

    def get_payer_link(self, payer_id: str) -> Optional[PayerLink]:
        ...

    def has_processed_event(self, event_id: str) -> bool:
        ...

    def mark_event_processed(self, event: WebhookEvent, outcome: ReconciliationOutcome) -> bool:
        ...


class BillingEventLogger(Protocol):
    """Captures structured billing audit events."""

    def log(self, event: BillingAuditEvent) -> None:
        ...


class SubscriptionSync:
    """Applies subscription transitions and keeps the listing projection in step."""

    def __init__(
        self,
        repository: BillingRepository,
        projector: ListingProjector,
        event_logger: BillingEventLogger,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._repository = repository
        self._projector = projector
        self._event_logger = event_logger
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def upsert_from_remote(
        self,
        remote: RemoteSubscription,
        *,
        payer_id: str,
        customer_id: Optional[str] = None,
        observed_at: Optional[datetime] = None,
    ) -> Tuple[Subscription, bool]:
        """Create the local mirror for ``remote`` unless it already exists.

        Returns the stored subscription and whether this call created it.
        Re-running after a partial failure repeats the payer link and the
        projection, so retries converge.
        """

        now = self._clock()
        candidate = Subscription(
            subscription_id=f"lsub_{uuid4().hex}",
            payer_id=payer_id,
            customer_id=remote.customer_id or customer_id,
            remote_subscription_id=remote.remote_subscription_id,
            status=remote.status,
            current_period_start=remote.current_period_start,
            current_period_end=remote.current_period_end,
            cancel_at_period_end=remote.cancel_at_period_end,
            canceled_at=remote.canceled_at,
            last_payment_date=now if remote.status.to_listing_status().grants_visibility else None,
            remote_updated_at=observed_at,
            created_at=now,
            updated_at=now,
        )
        subscription, created = self._repository.insert_if_absent(candidate)
        if subscription.payer_id != payer_id:
            logger.warning(
                "Remote subscription %s is linked to payer %s, not %s",
                remote.remote_subscription_id,
                subscription.payer_id,
                payer_id,
            )
            return subscription, False

        if created:
            logger.info(
                "Created subscription %s remote=%s payer=%s status=%s",
                subscription.subscription_id,
                subscription.remote_subscription_id,
                payer_id,
                subscription.status.value,
            )
            self._audit(BillingAuditEventType.SUBSCRIPTION_ACTIVATED, subscription)
        self._after_write(subscription, claim=not subscription.is_canceled)
        return subscription, created

    def converge(self, subscription: Subscription) -> Subscription:
        """Repeat the post-write step for an already stored subscription."""

        self._after_write(subscription, claim=not subscription.is_canceled)
        return subscription

    def apply_remote_snapshot(
        self,
        remote: RemoteSubscription,
        *,
        observed_at: datetime,
    ) -> Tuple[Subscription, bool]:
        """Mirror the processor's view. Snapshots older than the stored one are ignored."""

        subscription, applied = self._repository.apply_snapshot(remote, observed_at=observed_at)
        if subscription is None:
            raise UnknownSubscriptionError(remote.remote_subscription_id)

        if applied:
            audit_type = (
                BillingAuditEventType.SUBSCRIPTION_CANCELED
                if subscription.is_canceled
                else BillingAuditEventType.SUBSCRIPTION_UPDATED
            )
            self._audit(audit_type, subscription, status=subscription.status.value)
        else:
            logger.info(
                "Ignored stale snapshot for %s observed_at=%s stored=%s",
                remote.remote_subscription_id,
                observed_at.isoformat(),
                subscription.remote_updated_at.isoformat() if subscription.remote_updated_at else None,
            )
        self._after_write(subscription, claim=False)
        return subscription, applied

    def apply_renewal(self, invoice: InvoiceSnapshot, *, paid_at: datetime) -> Tuple[Subscription, bool]:
        """Count a paid renewal cycle once per invoice and extend the period."""

        if not invoice.remote_subscription_id:
            raise UnknownSubscriptionError(None)
        subscription, counted = self._repository.record_renewal(invoice, paid_at=paid_at)
        if subscription is None:
            raise UnknownSubscriptionError(invoice.remote_subscription_id)

        if counted:
            self._audit(
                BillingAuditEventType.SUBSCRIPTION_RENEWED,
                subscription,
                invoice_id=invoice.invoice_id,
                renewal_count=str(subscription.renewal_count),
            )
        else:
            logger.info("Renewal for invoice %s already counted", invoice.invoice_id)
        self._after_write(subscription, claim=False)
        return subscription, counted

    def record_payment(self, invoice: InvoiceSnapshot, *, paid_at: datetime) -> Subscription:
        if not invoice.remote_subscription_id:
            raise UnknownSubscriptionError(None)
        subscription = self._repository.record_payment(invoice.remote_subscription_id, paid_at=paid_at)
        if subscription is None:
            raise UnknownSubscriptionError(invoice.remote_subscription_id)
        return subscription

    def apply_payment_failure(self, invoice: InvoiceSnapshot, *, failed_at: datetime) -> Subscription:
        if not invoice.remote_subscription_id:
            raise UnknownSubscriptionError(None)
        subscription = self._repository.mark_payment_failed(
            invoice.remote_subscription_id,
            failed_at=failed_at,
        )
        if subscription is None:
            raise UnknownSubscriptionError(invoice.remote_subscription_id)

        self._audit(
            BillingAuditEventType.PAYMENT_FAILED,
            subscription,
            invoice_id=invoice.invoice_id,
            status=subscription.status.value,
        )
        self._after_write(subscription, claim=False)
        return subscription

    def apply_cancellation(
        self,
        remote_subscription_id: str,
        *,
        canceled_at: datetime,
        observed_at: datetime,
    ) -> Subscription:
        subscription = self._repository.mark_canceled(
            remote_subscription_id,
            canceled_at=canceled_at,
            observed_at=observed_at,
        )
        if subscription is None:
            raise UnknownSubscriptionError(remote_subscription_id)

        self._audit(BillingAuditEventType.SUBSCRIPTION_CANCELED, subscription)
        self._after_write(subscription, claim=False)
        return subscription

    def _after_write(self, subscription: Subscription, *, claim: bool) -> None:
        link = self._repository.link_payer(subscription, claim=claim)
        if link.subscription_id != subscription.subscription_id:
            logger.info(
                "Subscription %s is not current for payer %s; listings left untouched",
                subscription.subscription_id,
                subscription.payer_id,
            )
            return
        self._projector.project(
            subscription.payer_id,
            subscription.status.to_listing_status(),
            start_date=subscription.current_period_start,
            end_date=subscription.current_period_end,
        )

    def _audit(self, event_type: BillingAuditEventType, subscription: Subscription, **metadata: str) -> None:
        self._event_logger.log(
            BillingAuditEvent(
                event_type=event_type,
                subscription_id=subscription.subscription_id,
                actor_id=subscription.payer_id,
                metadata=dict(metadata),
                occurred_at=self._clock(),
            )
        )


__all__ = ["BillingEventLogger", "BillingRepository", "SubscriptionSync"]
