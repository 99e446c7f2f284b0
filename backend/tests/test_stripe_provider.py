from __future__ import annotations

from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
import stripe

from backend.app.billing import (
    CheckoutPurpose,
    StripePaymentProvider,
    SubscriptionStatus,
    TransientProcessorError,
)


class _FakeResource:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.calls = []

    def retrieve(self, *args, **kwargs):
        self.calls.append(("retrieve", args, kwargs))
        if self.error is not None:
            raise self.error
        return self.result

    def update(self, *args, **kwargs):
        self.calls.append(("update", args, kwargs))
        if self.error is not None:
            raise self.error
        return self.result

    def create(self, *args, **kwargs):
        self.calls.append(("create", args, kwargs))
        if self.error is not None:
            raise self.error
        return self.result


def _provider(sessions=None, subscriptions=None, portal_sessions=None, **settings) -> StripePaymentProvider:
    client = SimpleNamespace(
        checkout=SimpleNamespace(sessions=sessions or _FakeResource()),
        subscriptions=subscriptions or _FakeResource(),
        billing_portal=SimpleNamespace(sessions=portal_sessions or _FakeResource()),
    )
    return StripePaymentProvider("sk_test", client=client, **settings)


def test_retrieve_checkout_session_normalizes_payload():
    sessions = _FakeResource(
        result={
            "id": "cs_1",
            "client_reference_id": "payer_1",
            "customer": "cus_1",
            "payment_status": "paid",
            "subscription": {"id": "sub_1", "object": "subscription"},
            "metadata": {"purpose": "listing_feature", "listing_id": "lst_1"},
        }
    )

    session = _provider(sessions=sessions).retrieve_checkout_session("cs_1")

    assert session.payer_id == "payer_1"
    assert session.remote_subscription_id == "sub_1"
    assert session.purpose == CheckoutPurpose.LISTING_FEATURE
    assert session.listing_id == "lst_1"
    assert session.is_paid is True


def test_retrieve_subscription_reads_period_from_items():
    subscriptions = _FakeResource(
        result={
            "id": "sub_1",
            "customer": "cus_1",
            "status": "trialing",
            "cancel_at_period_end": True,
            "items": {"data": [{"current_period_start": 1714564800, "current_period_end": 1717243200}]},
        }
    )

    remote = _provider(subscriptions=subscriptions).retrieve_subscription("sub_1")

    assert remote.status == SubscriptionStatus.TRIALING
    assert remote.cancel_at_period_end is True
    assert remote.current_period_start == datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    assert remote.current_period_end == datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def test_set_cancel_at_period_end_sends_update():
    subscriptions = _FakeResource(result={"id": "sub_1", "status": "active", "cancel_at_period_end": True})

    remote = _provider(subscriptions=subscriptions).set_cancel_at_period_end("sub_1", True)

    assert remote.cancel_at_period_end is True
    assert subscriptions.calls == [("update", ("sub_1",), {"params": {"cancel_at_period_end": True}})]


@pytest.mark.parametrize(
    "error",
    [
        stripe.APIConnectionError("Request timed out"),
        stripe.RateLimitError("Too many requests", http_status=429),
        stripe.APIError("Upstream failure", http_status=502),
    ],
)
def test_network_and_server_errors_are_transient(error):
    provider = _provider(subscriptions=_FakeResource(error=error))

    with pytest.raises(TransientProcessorError) as excinfo:
        provider.retrieve_subscription("sub_1")

    assert excinfo.value.status_code == 503
    assert excinfo.value.payload["operation"] == "retrieve_subscription"


def test_missing_object_maps_to_lookup_error():
    error = stripe.InvalidRequestError("No such checkout.session", "id", http_status=404)
    provider = _provider(sessions=_FakeResource(error=error))

    with pytest.raises(LookupError):
        provider.retrieve_checkout_session("cs_missing")


def test_client_errors_propagate_unchanged():
    error = stripe.AuthenticationError("Invalid API key", http_status=401)
    provider = _provider(sessions=_FakeResource(error=error))

    with pytest.raises(stripe.AuthenticationError):
        provider.retrieve_checkout_session("cs_1")


def test_api_key_is_required_without_client():
    with pytest.raises(ValueError):
        StripePaymentProvider("")


def test_subscription_checkout_carries_payer_metadata_onto_the_subscription():
    sessions = _FakeResource(result={"id": "cs_new", "url": "https://checkout.stripe.com/c/cs_new", "expires_at": 1714566600})
    provider = _provider(sessions=sessions, subscription_price_id="price_monthly")

    link = provider.create_checkout_session(
        purpose=CheckoutPurpose.SUBSCRIPTION,
        payer_id="payer_1",
        customer_id="cus_1",
        metadata={"payer_id": "payer_1", "purpose": "subscription"},
        success_url="https://app.test/done?session_id={CHECKOUT_SESSION_ID}",
        cancel_url="https://app.test/cancel",
    )

    assert link.session_id == "cs_new"
    assert link.checkout_url == "https://checkout.stripe.com/c/cs_new"
    assert link.expires_at == datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)
    (_, _, kwargs), = sessions.calls
    params = kwargs["params"]
    assert params["mode"] == "subscription"
    assert params["line_items"] == [{"price": "price_monthly", "quantity": 1}]
    assert params["customer"] == "cus_1"
    assert params["client_reference_id"] == "payer_1"
    assert params["metadata"] == {"payer_id": "payer_1", "purpose": "subscription"}
    assert params["subscription_data"] == {"metadata": {"payer_id": "payer_1"}}


def test_subscription_checkout_requires_a_price():
    provider = _provider()

    with pytest.raises(ValueError):
        provider.create_checkout_session(
            purpose=CheckoutPurpose.SUBSCRIPTION,
            payer_id="payer_1",
            customer_id=None,
            metadata={"payer_id": "payer_1"},
            success_url="https://app.test/done",
            cancel_url="https://app.test/cancel",
        )


def test_feature_checkout_is_a_one_off_payment():
    sessions = _FakeResource(result={"id": "cs_feat", "url": "https://checkout.stripe.com/c/cs_feat"})
    provider = _provider(sessions=sessions, feature_price_cents=1500, feature_days=14, currency="eur")
    metadata = {"payer_id": "payer_1", "purpose": "listing_feature", "listing_id": "lst_1"}

    link = provider.create_checkout_session(
        purpose=CheckoutPurpose.LISTING_FEATURE,
        payer_id="payer_1",
        customer_id=None,
        metadata=metadata,
        success_url="https://app.test/done",
        cancel_url="https://app.test/cancel",
    )

    assert link.purpose == CheckoutPurpose.LISTING_FEATURE
    assert link.expires_at is None
    params = sessions.calls[0][2]["params"]
    assert params["mode"] == "payment"
    assert "customer" not in params
    assert params["metadata"] == metadata
    (item,) = params["line_items"]
    assert item["price_data"]["currency"] == "eur"
    assert item["price_data"]["unit_amount"] == 1500
    assert item["price_data"]["product_data"]["name"] == "Feature Listing - 14 Days"


def test_checkout_creation_failures_are_transient():
    sessions = _FakeResource(error=stripe.APIConnectionError("Request timed out"))
    provider = _provider(sessions=sessions, subscription_price_id="price_monthly")

    with pytest.raises(TransientProcessorError) as excinfo:
        provider.create_checkout_session(
            purpose=CheckoutPurpose.SUBSCRIPTION,
            payer_id="payer_1",
            customer_id=None,
            metadata={"payer_id": "payer_1"},
            success_url="https://app.test/done",
            cancel_url="https://app.test/cancel",
        )

    assert excinfo.value.payload["operation"] == "create_checkout_session"


def test_billing_portal_session_targets_the_customer():
    portal_sessions = _FakeResource(result={"id": "bps_1", "url": "https://billing.stripe.com/p/session/bps_1"})

    portal = _provider(portal_sessions=portal_sessions).create_billing_portal_session(
        customer_id="cus_1",
        return_url="https://app.test/account",
    )

    assert portal.url == "https://billing.stripe.com/p/session/bps_1"
    assert portal_sessions.calls == [
        ("create", (), {"params": {"customer": "cus_1", "return_url": "https://app.test/account"}})
    ]
