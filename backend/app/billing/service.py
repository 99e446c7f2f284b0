"""Account-facing subscription operations layered on the reconciliation core."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict

from ..listings.service import ListingService
from ..listings.visibility import is_feature_active
from .exceptions import (
    FeatureAlreadyActiveError,
    ListingOwnershipError,
    SubscriptionAlreadyActiveError,
    SubscriptionNotFoundError,
)
from .models import CheckoutLink, CheckoutPurpose, PortalLink, Subscription
from .provider import PaymentProvider
from .sync import BillingRepository, SubscriptionSync


logger = logging.getLogger("billing")

SESSION_ID_PLACEHOLDER = "{CHECKOUT_SESSION_ID}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _with_session_placeholder(success_url: str) -> str:
    """Make the processor echo the session id back so the return page can verify it."""

    if SESSION_ID_PLACEHOLDER in success_url:
        return success_url
    separator = "&" if "?" in success_url else "?"
    return f"{success_url}{separator}session_id={SESSION_ID_PLACEHOLDER}"


@dataclass
class BillingService:
    """Reads and adjusts the subscription that backs a payer's listings."""

    repository: BillingRepository
    provider: PaymentProvider
    sync: SubscriptionSync
    listings: ListingService
    clock: Callable[[], datetime] = field(default=_utcnow)

    def status(self, payer_id: str) -> Subscription:
        subscription = self.repository.get_for_payer(str(payer_id))
        if subscription is None:
            raise SubscriptionNotFoundError(str(payer_id))
        return subscription

    def refresh(self, payer_id: str) -> Subscription:
        """Pull the processor's current view and apply it as a fresh snapshot.

        Recovers from missed or permanently failed webhook deliveries.
        """

        current = self.status(payer_id)
        remote = self.provider.retrieve_subscription(current.remote_subscription_id)
        subscription, applied = self.sync.apply_remote_snapshot(remote, observed_at=self.clock())
        logger.info(
            "Refreshed subscription %s for payer %s applied=%s status=%s",
            subscription.subscription_id,
            payer_id,
            applied,
            subscription.status.value,
        )
        return subscription

    def set_auto_renew(self, payer_id: str, enabled: bool) -> Subscription:
        current = self.status(payer_id)
        if current.is_canceled:
            raise ValueError("Subscription is already canceled")
        if current.auto_renew == enabled:
            return current

        remote = self.provider.set_cancel_at_period_end(current.remote_subscription_id, not enabled)
        subscription, _ = self.sync.apply_remote_snapshot(remote, observed_at=self.clock())
        logger.info(
            "Auto-renew %s for subscription %s payer=%s",
            "enabled" if enabled else "disabled",
            subscription.subscription_id,
            payer_id,
        )
        return subscription

    def start_subscription_checkout(self, payer_id: str, *, success_url: str, cancel_url: str) -> CheckoutLink:
        payer_id = str(payer_id)
        link = self.repository.get_payer_link(payer_id)
        customer_id = link.customer_id if link is not None else None
        if link is not None and link.subscription_id:
            current = self.repository.get_subscription(link.subscription_id)
            if (
                current is not None
                and not current.is_canceled
                and current.status.to_listing_status().grants_visibility
            ):
                raise SubscriptionAlreadyActiveError(payer_id, current.subscription_id)

        metadata: Dict[str, str] = {"payer_id": payer_id, "purpose": CheckoutPurpose.SUBSCRIPTION.value}
        checkout = self.provider.create_checkout_session(
            purpose=CheckoutPurpose.SUBSCRIPTION,
            payer_id=payer_id,
            customer_id=customer_id,
            metadata=metadata,
            success_url=_with_session_placeholder(success_url),
            cancel_url=cancel_url,
        )
        logger.info("Opened subscription checkout %s for payer %s", checkout.session_id, payer_id)
        return checkout

    def start_feature_checkout(
        self,
        payer_id: str,
        listing_id: str,
        *,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutLink:
        """Open a one-off payment that promotes ``listing_id`` once it settles.

        The listing must belong to the payer and must not already be featured.
        """

        payer_id = str(payer_id)
        listing = self.listings.get_listing(listing_id)
        if listing is None:
            raise LookupError("Listing not found")
        if listing.owner_id != payer_id:
            raise ListingOwnershipError(listing_id)
        if is_feature_active(listing.is_featured, listing.feature_expiration, self.clock()):
            raise FeatureAlreadyActiveError(listing_id, listing.feature_expiration)

        link = self.repository.get_payer_link(payer_id)
        metadata: Dict[str, str] = {
            "payer_id": payer_id,
            "purpose": CheckoutPurpose.LISTING_FEATURE.value,
            "listing_id": listing_id,
        }
        checkout = self.provider.create_checkout_session(
            purpose=CheckoutPurpose.LISTING_FEATURE,
            payer_id=payer_id,
            customer_id=link.customer_id if link is not None else None,
            metadata=metadata,
            success_url=_with_session_placeholder(success_url),
            cancel_url=cancel_url,
        )
        logger.info(
            "Opened feature checkout %s for listing %s payer=%s",
            checkout.session_id,
            listing_id,
            payer_id,
        )
        return checkout

    def open_billing_portal(self, payer_id: str, *, return_url: str) -> PortalLink:
        link = self.repository.get_payer_link(str(payer_id))
        if link is None or not link.customer_id:
            raise SubscriptionNotFoundError(str(payer_id))
        return self.provider.create_billing_portal_session(customer_id=link.customer_id, return_url=return_url)


__all__ = ["BillingService"]
