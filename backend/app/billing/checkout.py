"""Synchronous verification of a completed hosted checkout."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from ..listings.service import ListingService
from .exceptions import FeatureListingUnavailableError, PaymentIncompleteError, SessionOwnershipError
from .models import CheckoutPurpose, CheckoutVerification
from .provider import PaymentProvider
from .sync import BillingRepository, SubscriptionSync


logger = logging.getLogger("billing")


class CheckoutVerifier:
    """Reconciles a checkout session into local state right after the payer returns.

    Safe to call any number of times for the same session: the first call
    creates the subscription, later calls return the stored one and only
    repeat the idempotent payer link and listing projection.
    """

    def __init__(
        self,
        provider: PaymentProvider,
        repository: BillingRepository,
        sync: SubscriptionSync,
        listings: ListingService,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._provider = provider
        self._repository = repository
        self._sync = sync
        self._listings = listings
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def verify(self, session_id: str, payer_id: str) -> CheckoutVerification:
        if not session_id:
            raise ValueError("session_id is required")

        session = self._provider.retrieve_checkout_session(session_id)
        if session.payer_id is None or session.payer_id != str(payer_id):
            logger.warning(
                "Checkout session %s recorded payer=%s but was verified by %s",
                session_id,
                session.payer_id,
                payer_id,
            )
            raise SessionOwnershipError(session_id)
        if not session.is_paid:
            raise PaymentIncompleteError(session_id, session.payment_status)

        if session.purpose == CheckoutPurpose.LISTING_FEATURE:
            if not session.listing_id:
                raise ValueError("Feature checkout session is missing listing_id")
            grant = self._listings.grant_feature(
                session_id=session_id,
                listing_id=session.listing_id,
                payer_id=session.payer_id,
            )
            if grant is None:
                logger.error(
                    "Paid feature session %s for listing %s by payer %s was not applied; refund required",
                    session_id,
                    session.listing_id,
                    session.payer_id,
                )
                raise FeatureListingUnavailableError(session_id, session.listing_id)
            return CheckoutVerification(session_id=session_id, feature_grant=grant)

        remote_id = session.remote_subscription_id
        if not remote_id:
            raise ValueError("Checkout session does not include a subscription")

        existing = self._repository.get_by_remote_id(remote_id)
        if existing is not None:
            if existing.payer_id != session.payer_id:
                raise SessionOwnershipError(session_id)
            subscription = self._sync.converge(existing)
            logger.info("Checkout %s already reconciled as %s", session_id, subscription.subscription_id)
            return CheckoutVerification(session_id=session_id, subscription=subscription)

        # The retrieved object is at least as new as anything sent before now,
        # so older snapshot deliveries must not overwrite it.
        remote = self._provider.retrieve_subscription(remote_id)
        subscription, created = self._sync.upsert_from_remote(
            remote,
            payer_id=session.payer_id,
            customer_id=session.customer_id,
            observed_at=self._clock(),
        )
        if subscription.payer_id != session.payer_id:
            raise SessionOwnershipError(session_id)
        logger.info(
            "Checkout %s verified subscription=%s created=%s",
            session_id,
            subscription.subscription_id,
            created,
        )
        return CheckoutVerification(session_id=session_id, subscription=subscription)


__all__ = ["CheckoutVerifier"]
