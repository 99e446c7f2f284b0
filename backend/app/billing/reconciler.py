"""Webhook-driven reconciliation of subscription lifecycle events.

Deliveries are at-least-once and unordered. A delivery id is recorded only
after its handler returns, so a failed handler is retried on redelivery, and
every handler is safe to run again for the same event.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from ..listings.service import ListingService
from .exceptions import UnknownSubscriptionError
from .models import (
    CheckoutPurpose,
    ReconciliationOutcome,
    WebhookEvent,
    WebhookEventType,
)
from .payloads import (
    checkout_session_from_payload,
    invoice_from_payload,
    remote_subscription_from_payload,
)
from .provider import PaymentProvider
from .sync import BillingRepository, SubscriptionSync


logger = logging.getLogger("billing")

Handler = Callable[[WebhookEvent], ReconciliationOutcome]


class EventReconciler:
    """Applies verified processor events to subscription and listing state."""

    def __init__(
        self,
        repository: BillingRepository,
        provider: PaymentProvider,
        sync: SubscriptionSync,
        listings: ListingService,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._repository = repository
        self._provider = provider
        self._sync = sync
        self._listings = listings
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._handlers: Dict[WebhookEventType, Handler] = {
            WebhookEventType.CHECKOUT_SESSION_COMPLETED: self._on_checkout_completed,
            WebhookEventType.SUBSCRIPTION_CREATED: self._on_subscription_created,
            WebhookEventType.SUBSCRIPTION_UPDATED: self._on_subscription_updated,
            WebhookEventType.SUBSCRIPTION_DELETED: self._on_subscription_deleted,
            WebhookEventType.INVOICE_PAYMENT_SUCCEEDED: self._on_invoice_paid,
            WebhookEventType.INVOICE_PAYMENT_FAILED: self._on_invoice_failed,
        }

    def handle(self, event: WebhookEvent) -> ReconciliationOutcome:
        if self._repository.has_processed_event(event.event_id):
            logger.info("Skipping already processed delivery %s (%s)", event.event_id, event.event_type)
            return ReconciliationOutcome.DUPLICATE

        event_type = event.known_type
        handler = self._handlers.get(event_type) if event_type is not None else None
        if handler is None:
            logger.debug("Unhandled event type %s", event.event_type)
            outcome = ReconciliationOutcome.IGNORED
        else:
            try:
                outcome = handler(event)
            except UnknownSubscriptionError as exc:
                logger.warning(
                    "Event %s (%s) references unknown subscription %s",
                    event.event_id,
                    event.event_type,
                    (exc.detail or {}).get("remote_subscription_id"),
                )
                outcome = ReconciliationOutcome.IGNORED
            except ValueError:
                logger.exception("Malformed %s payload in event %s", event.event_type, event.event_id)
                outcome = ReconciliationOutcome.IGNORED

        self._repository.mark_event_processed(event, outcome)
        logger.info("Event %s (%s) -> %s", event.event_id, event.event_type, outcome.value)
        return outcome

    def _on_checkout_completed(self, event: WebhookEvent) -> ReconciliationOutcome:
        session = checkout_session_from_payload(event.data)

        if session.purpose == CheckoutPurpose.LISTING_FEATURE:
            if not session.is_paid or not session.listing_id or not session.payer_id:
                logger.warning("Feature checkout %s is unpaid or incomplete", session.session_id)
                return ReconciliationOutcome.IGNORED
            grant = self._listings.grant_feature(
                session_id=session.session_id,
                listing_id=session.listing_id,
                payer_id=session.payer_id,
            )
            if grant is None:
                logger.error(
                    "Paid feature session %s for listing %s was not applied; refund required",
                    session.session_id,
                    session.listing_id,
                )
                return ReconciliationOutcome.IGNORED
            return ReconciliationOutcome.APPLIED if grant.applied else ReconciliationOutcome.DUPLICATE

        if not session.remote_subscription_id:
            logger.info("Checkout %s does not include a subscription", session.session_id)
            return ReconciliationOutcome.IGNORED
        if not session.payer_id:
            logger.warning("Checkout %s carries no payer reference", session.session_id)
            return ReconciliationOutcome.IGNORED

        existing = self._repository.get_by_remote_id(session.remote_subscription_id)
        if existing is not None:
            self._sync.converge(existing)
            return ReconciliationOutcome.DUPLICATE

        remote = self._provider.retrieve_subscription(session.remote_subscription_id)
        _, created = self._sync.upsert_from_remote(
            remote,
            payer_id=session.payer_id,
            customer_id=session.customer_id,
            observed_at=self._clock(),
        )
        return ReconciliationOutcome.APPLIED if created else ReconciliationOutcome.DUPLICATE

    def _on_subscription_created(self, event: WebhookEvent) -> ReconciliationOutcome:
        remote = remote_subscription_from_payload(event.data)
        if self._repository.get_by_remote_id(remote.remote_subscription_id) is None:
            payer_id = remote.metadata.get("payer_id")
            if not payer_id:
                raise UnknownSubscriptionError(remote.remote_subscription_id)
            _, created = self._sync.upsert_from_remote(
                remote,
                payer_id=payer_id,
                observed_at=event.created_at,
            )
            if created:
                return ReconciliationOutcome.APPLIED
        return self._on_subscription_updated(event)

    def _on_subscription_updated(self, event: WebhookEvent) -> ReconciliationOutcome:
        remote = remote_subscription_from_payload(event.data)
        _, applied = self._sync.apply_remote_snapshot(remote, observed_at=event.created_at)
        return ReconciliationOutcome.APPLIED if applied else ReconciliationOutcome.STALE

    def _on_subscription_deleted(self, event: WebhookEvent) -> ReconciliationOutcome:
        remote = remote_subscription_from_payload(event.data)
        self._sync.apply_cancellation(
            remote.remote_subscription_id,
            canceled_at=remote.canceled_at or self._clock(),
            observed_at=event.created_at,
        )
        return ReconciliationOutcome.APPLIED

    def _on_invoice_paid(self, event: WebhookEvent) -> ReconciliationOutcome:
        invoice = invoice_from_payload(event.data)
        if not invoice.remote_subscription_id:
            return ReconciliationOutcome.IGNORED
        paid_at = invoice.paid_at or event.created_at

        if not invoice.is_renewal:
            self._sync.record_payment(invoice, paid_at=paid_at)
            return ReconciliationOutcome.APPLIED

        _, counted = self._sync.apply_renewal(invoice, paid_at=paid_at)
        return ReconciliationOutcome.APPLIED if counted else ReconciliationOutcome.DUPLICATE

    def _on_invoice_failed(self, event: WebhookEvent) -> ReconciliationOutcome:
        invoice = invoice_from_payload(event.data)
        if not invoice.remote_subscription_id:
            return ReconciliationOutcome.IGNORED
        self._sync.apply_payment_failure(invoice, failed_at=event.created_at)
        return ReconciliationOutcome.APPLIED


__all__ = ["EventReconciler"]
