"""In-memory doubles shared by the billing and listing tests.

The repositories mirror the conditional writes of the PostgreSQL
implementations so the reconciliation rules can be exercised without a
database.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence, Set, Tuple

import pytest

from backend.app.billing import (
    BillingAuditEvent,
    BillingService,
    CheckoutVerifier,
    EventReconciler,
    InvoiceSnapshot,
    LocalSandboxPaymentProvider,
    PayerLink,
    ReconciliationOutcome,
    RemoteSubscription,
    Subscription,
    SubscriptionStatus,
    SubscriptionSync,
    WebhookEvent,
)
from backend.app.billing.sync import BillingEventLogger, BillingRepository
from backend.app.listings import (
    FeatureGrant,
    Listing,
    ListingProjector,
    ListingRepository,
    ListingService,
    ListingStatus,
    ListingSubscriptionStatus,
    extend_feature_expiration,
)


def _latest(current: Optional[datetime], candidate: Optional[datetime]) -> Optional[datetime]:
    if current is None:
        return candidate
    if candidate is None:
        return current
    return max(current, candidate)


class FrozenClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class InMemoryBillingRepository(BillingRepository):
    def __init__(self) -> None:
        self.subscriptions: Dict[str, Subscription] = {}
        self.payers: Dict[str, PayerLink] = {}
        self.renewal_invoices: Set[str] = set()
        self.processed_events: Dict[str, ReconciliationOutcome] = {}

    def _by_remote(self, remote_subscription_id: Optional[str]) -> Optional[Subscription]:
        for subscription in self.subscriptions.values():
            if subscription.remote_subscription_id == remote_subscription_id:
                return subscription
        return None

    def _save(self, subscription: Subscription, **changes) -> Subscription:
        updated = subscription.model_copy(update={**changes, "updated_at": datetime.now(timezone.utc)})
        self.subscriptions[updated.subscription_id] = updated
        return updated

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        return self.subscriptions.get(subscription_id)

    def get_by_remote_id(self, remote_subscription_id: str) -> Optional[Subscription]:
        return self._by_remote(remote_subscription_id)

    def get_for_payer(self, payer_id: str) -> Optional[Subscription]:
        link = self.payers.get(payer_id)
        if link is None or link.subscription_id is None:
            return None
        return self.subscriptions.get(link.subscription_id)

    def insert_if_absent(self, subscription: Subscription) -> Tuple[Subscription, bool]:
        existing = self._by_remote(subscription.remote_subscription_id)
        if existing is not None:
            return existing, False
        self.subscriptions[subscription.subscription_id] = subscription
        return subscription, True

    def apply_snapshot(
        self,
        remote: RemoteSubscription,
        *,
        observed_at: datetime,
    ) -> Tuple[Optional[Subscription], bool]:
        existing = self._by_remote(remote.remote_subscription_id)
        if existing is None:
            return None, False
        if existing.remote_updated_at is not None and existing.remote_updated_at > observed_at:
            return existing, False
        return (
            self._save(
                existing,
                status=remote.status,
                customer_id=remote.customer_id or existing.customer_id,
                current_period_start=remote.current_period_start,
                current_period_end=remote.current_period_end,
                cancel_at_period_end=remote.cancel_at_period_end,
                canceled_at=remote.canceled_at,
                remote_updated_at=observed_at,
            ),
            True,
        )

    def record_renewal(
        self,
        invoice: InvoiceSnapshot,
        *,
        paid_at: datetime,
    ) -> Tuple[Optional[Subscription], bool]:
        existing = self._by_remote(invoice.remote_subscription_id)
        if existing is None:
            return None, False
        if invoice.invoice_id in self.renewal_invoices:
            return existing, False
        self.renewal_invoices.add(invoice.invoice_id)

        status = existing.status
        if status != SubscriptionStatus.CANCELED and (
            invoice.period_end is None
            or existing.current_period_end is None
            or invoice.period_end >= existing.current_period_end
        ):
            status = SubscriptionStatus.ACTIVE

        period_start = existing.current_period_start
        if invoice.period_end is not None and (
            existing.current_period_end is None or invoice.period_end > existing.current_period_end
        ):
            period_start = invoice.period_start or existing.current_period_start

        return (
            self._save(
                existing,
                renewal_count=existing.renewal_count + 1,
                status=status,
                current_period_start=period_start,
                current_period_end=_latest(existing.current_period_end, invoice.period_end),
                last_payment_date=_latest(existing.last_payment_date, paid_at),
            ),
            True,
        )

    def record_payment(self, remote_subscription_id: str, *, paid_at: datetime) -> Optional[Subscription]:
        existing = self._by_remote(remote_subscription_id)
        if existing is None:
            return None
        return self._save(existing, last_payment_date=_latest(existing.last_payment_date, paid_at))

    def mark_payment_failed(self, remote_subscription_id: str, *, failed_at: datetime) -> Optional[Subscription]:
        existing = self._by_remote(remote_subscription_id)
        if existing is None:
            return None
        status = existing.status
        paid_later = existing.last_payment_date is not None and existing.last_payment_date > failed_at
        if status != SubscriptionStatus.CANCELED and not paid_later:
            status = SubscriptionStatus.PAST_DUE
        return self._save(
            existing,
            status=status,
            last_failed_payment_date=_latest(existing.last_failed_payment_date, failed_at),
        )

    def mark_canceled(
        self,
        remote_subscription_id: str,
        *,
        canceled_at: datetime,
        observed_at: datetime,
    ) -> Optional[Subscription]:
        existing = self._by_remote(remote_subscription_id)
        if existing is None:
            return None
        return self._save(
            existing,
            status=SubscriptionStatus.CANCELED,
            canceled_at=existing.canceled_at or canceled_at,
            cancel_at_period_end=False,
            remote_updated_at=_latest(existing.remote_updated_at, observed_at),
        )

    def link_payer(self, subscription: Subscription, *, claim: bool) -> PayerLink:
        current = self.payers.get(subscription.payer_id)
        if (
            current is None
            or claim
            or current.subscription_id is None
            or current.subscription_id == subscription.subscription_id
        ):
            current = PayerLink(
                payer_id=subscription.payer_id,
                customer_id=subscription.customer_id or (current.customer_id if current else None),
                subscription_id=subscription.subscription_id,
                subscription_status=subscription.status,
            )
            self.payers[subscription.payer_id] = current
        return current

    def get_payer_link(self, payer_id: str) -> Optional[PayerLink]:
        return self.payers.get(payer_id)

    def has_processed_event(self, event_id: str) -> bool:
        return event_id in self.processed_events

    def mark_event_processed(self, event: WebhookEvent, outcome: ReconciliationOutcome) -> bool:
        if event.event_id in self.processed_events:
            return False
        self.processed_events[event.event_id] = outcome
        return True


class InMemoryListingRepository(ListingRepository):
    def __init__(self) -> None:
        self.listings: Dict[str, Listing] = {}
        self.grants: Dict[str, FeatureGrant] = {}

    def _save(self, listing: Listing, **changes) -> Listing:
        updated = listing.model_copy(update=changes)
        self.listings[updated.listing_id] = updated
        return updated

    def create_listing(self, listing: Listing) -> Listing:
        self.listings[listing.listing_id] = listing
        return listing

    def get_listing(self, listing_id: str) -> Optional[Listing]:
        return self.listings.get(listing_id)

    def list_by_owner(self, owner_id: str) -> Sequence[Listing]:
        return [listing for listing in self.listings.values() if listing.owner_id == owner_id]

    def project_subscription_status(
        self,
        owner_id: str,
        *,
        status: ListingSubscriptionStatus,
        start_date: Optional[datetime],
        end_date: Optional[datetime],
    ) -> int:
        updated = 0
        for listing in self.list_by_owner(owner_id):
            changes = {
                "subscription_status": status,
                "subscription_start_date": start_date or listing.subscription_start_date,
                "subscription_end_date": end_date or listing.subscription_end_date,
            }
            if any(getattr(listing, key) != value for key, value in changes.items()):
                self._save(listing, **changes)
                updated += 1
        return updated

    def apply_feature_grant(
        self,
        *,
        session_id: str,
        listing_id: str,
        payer_id: str,
        days: int,
        now: datetime,
    ) -> Optional[FeatureGrant]:
        existing = self.grants.get(session_id)
        if existing is not None:
            return existing.model_copy(update={"applied": False})
        listing = self.listings.get(listing_id)
        if listing is None:
            return None
        expires_at = extend_feature_expiration(
            listing.feature_expiration if listing.is_featured else None,
            now,
            days,
        )
        grant = FeatureGrant(
            session_id=session_id,
            listing_id=listing_id,
            payer_id=payer_id,
            feature_expiration=expires_at,
            granted_at=now,
        )
        self.grants[session_id] = grant
        self._save(listing, is_featured=True, feature_expiration=expires_at)
        return grant

    def expire_features(self, now: datetime) -> int:
        expired = 0
        for listing in list(self.listings.values()):
            if listing.is_featured and (listing.feature_expiration is None or listing.feature_expiration <= now):
                self._save(listing, is_featured=False)
                expired += 1
        return expired

    def expire_trials(self, now: datetime) -> int:
        expired = 0
        for listing in list(self.listings.values()):
            if (
                listing.subscription_status == ListingSubscriptionStatus.TRIAL
                and listing.subscription_end_date is not None
                and listing.subscription_end_date <= now
            ):
                self._save(listing, subscription_status=ListingSubscriptionStatus.EXPIRED)
                expired += 1
        return expired

    def increment_counter(self, listing_id: str, counter: str) -> Optional[Listing]:
        if counter not in {"view_count", "click_count"}:
            raise ValueError(f"Unknown listing counter: {counter}")
        listing = self.listings.get(listing_id)
        if listing is None:
            return None
        return self._save(listing, **{counter: getattr(listing, counter) + 1})


class RecordingEventLogger(BillingEventLogger):
    def __init__(self) -> None:
        self.events: List[BillingAuditEvent] = []

    def log(self, event: BillingAuditEvent) -> None:
        self.events.append(event)


T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(T0)


@pytest.fixture
def billing_repo() -> InMemoryBillingRepository:
    return InMemoryBillingRepository()


@pytest.fixture
def listing_repo() -> InMemoryListingRepository:
    return InMemoryListingRepository()


@pytest.fixture
def provider() -> LocalSandboxPaymentProvider:
    return LocalSandboxPaymentProvider()


@pytest.fixture
def event_logger() -> RecordingEventLogger:
    return RecordingEventLogger()


@pytest.fixture
def listing_service(listing_repo, clock) -> ListingService:
    return ListingService(listing_repo, clock=clock, feature_grant_days=30)


@pytest.fixture
def sync(billing_repo, listing_repo, event_logger, clock) -> SubscriptionSync:
    return SubscriptionSync(billing_repo, ListingProjector(listing_repo), event_logger, clock=clock)


@pytest.fixture
def verifier(provider, billing_repo, sync, listing_service, clock) -> CheckoutVerifier:
    return CheckoutVerifier(provider, billing_repo, sync, listing_service, clock=clock)


@pytest.fixture
def reconciler(billing_repo, provider, sync, listing_service, clock) -> EventReconciler:
    return EventReconciler(billing_repo, provider, sync, listing_service, clock=clock)


@pytest.fixture
def billing_service(billing_repo, provider, sync, listing_service, clock) -> BillingService:
    return BillingService(
        repository=billing_repo,
        provider=provider,
        sync=sync,
        listings=listing_service,
        clock=clock,
    )


@pytest.fixture
def make_listing(listing_repo):
    def _make(listing_id: str = "lst_1", owner_id: str = "payer_1", **overrides) -> Listing:
        fields = {
            "listing_id": listing_id,
            "owner_id": owner_id,
            "title": f"Listing {listing_id}",
            "status": ListingStatus.PUBLISHED,
            "is_active": True,
            "subscription_status": ListingSubscriptionStatus.TRIAL,
            **overrides,
        }
        return listing_repo.create_listing(Listing(**fields))

    return _make
