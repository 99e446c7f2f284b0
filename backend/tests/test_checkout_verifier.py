from __future__ import annotations

import logging
from datetime import timedelta

import pytest

from backend.app.billing import (
    CheckoutPurpose,
    CheckoutSessionSnapshot,
    FeatureListingUnavailableError,
    PaymentIncompleteError,
    SessionOwnershipError,
    SubscriptionStatus,
    TransientProcessorError,
)
from backend.app.listings import ListingSubscriptionStatus, evaluate_visibility


def test_verified_checkout_activates_owned_listings(verifier, provider, billing_repo, listing_repo, make_listing, clock):
    make_listing("lst_1", owner_id="payer_1")
    make_listing("lst_2", owner_id="payer_1")
    make_listing("lst_other", owner_id="payer_2")
    session = provider.register_subscription_checkout(payer_id="payer_1")

    result = verifier.verify(session.session_id, "payer_1")

    subscription = result.subscription
    assert subscription is not None
    assert subscription.status == SubscriptionStatus.ACTIVE
    assert subscription.remote_subscription_id == session.remote_subscription_id
    assert billing_repo.get_for_payer("payer_1") == subscription

    for listing_id in ("lst_1", "lst_2"):
        listing = listing_repo.get_listing(listing_id)
        assert listing.subscription_status == ListingSubscriptionStatus.ACTIVE
        assert listing.subscription_end_date == subscription.current_period_end
        assert evaluate_visibility(listing, clock()).visible is True
    assert listing_repo.get_listing("lst_other").subscription_status == ListingSubscriptionStatus.TRIAL


def test_verifying_twice_returns_identical_state(verifier, provider, billing_repo, event_logger):
    session = provider.register_subscription_checkout(payer_id="payer_1")

    first = verifier.verify(session.session_id, "payer_1")
    second = verifier.verify(session.session_id, "payer_1")

    assert first == second
    assert len(billing_repo.subscriptions) == 1
    assert [event.event_type.value for event in event_logger.events] == ["subscription_activated"]


def test_session_of_another_payer_is_rejected(verifier, provider, billing_repo):
    session = provider.register_subscription_checkout(payer_id="payer_1")

    with pytest.raises(SessionOwnershipError) as excinfo:
        verifier.verify(session.session_id, "intruder")

    assert excinfo.value.status_code == 403
    assert billing_repo.subscriptions == {}


def test_unpaid_session_surfaces_actionable_message(verifier, provider, billing_repo):
    session = provider.register_subscription_checkout(payer_id="payer_1", payment_status="unpaid")

    with pytest.raises(PaymentIncompleteError) as excinfo:
        verifier.verify(session.session_id, "payer_1")

    assert excinfo.value.status_code == 402
    assert "Payment not completed" in excinfo.value.payload["message"]
    assert billing_repo.subscriptions == {}


def test_unknown_session_raises_lookup_error(verifier):
    with pytest.raises(LookupError):
        verifier.verify("cs_missing", "payer_1")


def test_session_without_subscription_is_rejected(verifier, provider):
    provider.sessions["cs_one_off"] = CheckoutSessionSnapshot(
        session_id="cs_one_off",
        payer_id="payer_1",
        payment_status="paid",
    )

    with pytest.raises(ValueError):
        verifier.verify("cs_one_off", "payer_1")


def test_transient_processor_failure_is_retryable(verifier, provider, billing_repo, monkeypatch):
    session = provider.register_subscription_checkout(payer_id="payer_1")
    original = provider.retrieve_subscription
    calls = {"count": 0}

    def flaky_retrieve(remote_subscription_id):
        calls["count"] += 1
        if calls["count"] == 1:
            raise TransientProcessorError("retrieve_subscription", "read timed out")
        return original(remote_subscription_id)

    monkeypatch.setattr(provider, "retrieve_subscription", flaky_retrieve)

    with pytest.raises(TransientProcessorError) as excinfo:
        verifier.verify(session.session_id, "payer_1")
    assert excinfo.value.payload["retryable"] is True
    assert billing_repo.subscriptions == {}

    result = verifier.verify(session.session_id, "payer_1")
    assert result.subscription is not None
    assert len(billing_repo.subscriptions) == 1


def test_retry_after_failed_projection_converges(verifier, provider, listing_repo, make_listing, monkeypatch):
    make_listing("lst_1", owner_id="payer_1")
    session = provider.register_subscription_checkout(payer_id="payer_1")
    original = listing_repo.project_subscription_status
    calls = {"count": 0}

    def failing_once(owner_id, **kwargs):
        calls["count"] += 1
        if calls["count"] == 1:
            raise RuntimeError("connection reset")
        return original(owner_id, **kwargs)

    monkeypatch.setattr(listing_repo, "project_subscription_status", failing_once)

    with pytest.raises(RuntimeError):
        verifier.verify(session.session_id, "payer_1")
    assert listing_repo.get_listing("lst_1").subscription_status == ListingSubscriptionStatus.TRIAL

    verifier.verify(session.session_id, "payer_1")
    assert listing_repo.get_listing("lst_1").subscription_status == ListingSubscriptionStatus.ACTIVE


def test_feature_checkout_grants_promotion_once(verifier, provider, listing_repo, make_listing, clock):
    make_listing("lst_1", owner_id="payer_1")
    provider.sessions["cs_feature"] = CheckoutSessionSnapshot(
        session_id="cs_feature",
        payer_id="payer_1",
        payment_status="paid",
        purpose=CheckoutPurpose.LISTING_FEATURE,
        listing_id="lst_1",
    )

    first = verifier.verify("cs_feature", "payer_1")
    second = verifier.verify("cs_feature", "payer_1")

    expected = clock() + timedelta(days=30)
    assert first.feature_grant.feature_expiration == expected
    assert second.feature_grant.feature_expiration == expected
    assert second.feature_grant.applied is False
    listing = listing_repo.get_listing("lst_1")
    assert listing.is_featured is True
    assert listing.feature_expiration == expected


def test_feature_checkout_for_foreign_listing_is_not_applied(verifier, provider, listing_repo, make_listing, caplog):
    make_listing("lst_1", owner_id="someone_else")
    provider.sessions["cs_feature"] = CheckoutSessionSnapshot(
        session_id="cs_feature",
        payer_id="payer_1",
        payment_status="paid",
        purpose=CheckoutPurpose.LISTING_FEATURE,
        listing_id="lst_1",
    )

    with caplog.at_level(logging.ERROR, logger="billing"):
        with pytest.raises(FeatureListingUnavailableError) as excinfo:
            verifier.verify("cs_feature", "payer_1")

    assert excinfo.value.status_code == 409
    assert excinfo.value.payload["refund_required"] is True
    assert excinfo.value.payload["listing_id"] == "lst_1"
    assert listing_repo.get_listing("lst_1").is_featured is False
    assert "refund required" in caplog.text


def test_verified_subscription_is_stamped_with_retrieval_time(verifier, provider, clock):
    clock.advance(minutes=10)
    session = provider.register_subscription_checkout(payer_id="payer_1")

    subscription = verifier.verify(session.session_id, "payer_1").subscription

    assert subscription.remote_updated_at == clock()
