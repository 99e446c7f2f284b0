"""Payment processor integrations."""
from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Mapping, Optional, Protocol, TypeVar
from uuid import uuid4

import stripe

from .exceptions import SignatureVerificationError, TransientProcessorError
from .models import (
    CheckoutLink,
    CheckoutPurpose,
    CheckoutSessionSnapshot,
    PortalLink,
    RemoteSubscription,
    SubscriptionStatus,
    WebhookEvent,
)
from .payloads import (
    checkout_session_from_payload,
    parse_timestamp,
    remote_subscription_from_payload,
)


logger = logging.getLogger("billing")

T = TypeVar("T")


def _as_mapping(obj: Any) -> Mapping[str, Any]:
    """Convert a ``StripeObject`` (including nested objects) into plain dicts."""

    to_dict = getattr(obj, "to_dict", None)
    return to_dict() if callable(to_dict) else obj


class PaymentProvider(Protocol):
    """External payment processor integration."""

    def retrieve_checkout_session(self, session_id: str) -> CheckoutSessionSnapshot:
        """Fetch a hosted checkout session."""

    def retrieve_subscription(self, remote_subscription_id: str) -> RemoteSubscription:
        """Fetch the processor-side subscription object."""

    def set_cancel_at_period_end(self, remote_subscription_id: str, cancel: bool) -> RemoteSubscription:
        """Toggle auto-renewal and return the updated subscription."""

    def create_checkout_session(
        self,
        *,
        purpose: CheckoutPurpose,
        payer_id: str,
        customer_id: Optional[str],
        metadata: Dict[str, str],
        success_url: str,
        cancel_url: str,
    ) -> CheckoutLink:
        """Open a hosted checkout session carrying ``metadata`` back to the webhooks."""

    def create_billing_portal_session(self, *, customer_id: str, return_url: str) -> PortalLink:
        """Open a processor-managed page where the payer manages payment details."""


class StripePaymentProvider:
    """Stripe-backed provider with bounded timeouts on every call.

    Timeouts, connection failures, rate limiting and 5xx answers surface as
    :class:`TransientProcessorError`; callers must treat them as "retry
    later", never as "not subscribed".
    """

    def __init__(
        self,
        api_key: str,
        *,
        timeout_seconds: float = 10.0,
        max_network_retries: int = 2,
        subscription_price_id: Optional[str] = None,
        feature_price_cents: int = 1000,
        feature_days: int = 30,
        currency: str = "usd",
        client: Optional[Any] = None,
    ) -> None:
        if not api_key and client is None:
            raise ValueError("api_key must be provided")
        self._subscription_price_id = subscription_price_id
        self._feature_price_cents = feature_price_cents
        self._feature_days = feature_days
        self._currency = currency
        self._client = client or stripe.StripeClient(
            api_key,
            http_client=stripe.new_default_http_client(timeout=timeout_seconds),
            max_network_retries=max_network_retries,
        )

    def _call(self, operation: str, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        try:
            return func(*args, **kwargs)
        except (stripe.APIConnectionError, stripe.RateLimitError) as exc:
            logger.warning("Stripe %s failed transiently: %s", operation, exc)
            raise TransientProcessorError(operation, str(exc)) from exc
        except stripe.StripeError as exc:
            status_code = exc.http_status
            if status_code is None or status_code >= 500:
                logger.warning("Stripe %s failed with status=%s: %s", operation, status_code, exc)
                raise TransientProcessorError(operation, str(exc)) from exc
            if status_code == 404:
                raise LookupError(f"Stripe object not found during {operation}") from exc
            raise

    def retrieve_checkout_session(self, session_id: str) -> CheckoutSessionSnapshot:
        session = self._call(
            "retrieve_checkout_session",
            self._client.checkout.sessions.retrieve,
            session_id,
        )
        return checkout_session_from_payload(_as_mapping(session))

    def retrieve_subscription(self, remote_subscription_id: str) -> RemoteSubscription:
        subscription = self._call(
            "retrieve_subscription",
            self._client.subscriptions.retrieve,
            remote_subscription_id,
        )
        return remote_subscription_from_payload(_as_mapping(subscription))

    def set_cancel_at_period_end(self, remote_subscription_id: str, cancel: bool) -> RemoteSubscription:
        subscription = self._call(
            "update_subscription",
            self._client.subscriptions.update,
            remote_subscription_id,
            params={"cancel_at_period_end": cancel},
        )
        return remote_subscription_from_payload(_as_mapping(subscription))

    def _checkout_params(
        self,
        purpose: CheckoutPurpose,
        payer_id: str,
        metadata: Dict[str, str],
    ) -> Dict[str, Any]:
        if purpose == CheckoutPurpose.SUBSCRIPTION:
            if not self._subscription_price_id:
                raise ValueError("STRIPE_SUBSCRIPTION_PRICE_ID is not configured")
            return {
                "mode": "subscription",
                "line_items": [{"price": self._subscription_price_id, "quantity": 1}],
                "payment_method_collection": "always",
                # customer.subscription.* events only see the subscription's own metadata.
                "subscription_data": {"metadata": {"payer_id": payer_id}},
            }
        return {
            "mode": "payment",
            "line_items": [
                {
                    "price_data": {
                        "currency": self._currency,
                        "unit_amount": self._feature_price_cents,
                        "product_data": {
                            "name": f"Feature Listing - {self._feature_days} Days",
                            "description": f"Feature listing {metadata.get('listing_id')} for {self._feature_days} days",
                        },
                    },
                    "quantity": 1,
                }
            ],
        }

    def create_checkout_session(
        self,
        *,
        purpose: CheckoutPurpose,
        payer_id: str,
        customer_id: Optional[str],
        metadata: Dict[str, str],
        success_url: str,
        cancel_url: str,
    ) -> CheckoutLink:
        params = self._checkout_params(purpose, payer_id, metadata)
        params.update(
            {
                "client_reference_id": payer_id,
                "metadata": dict(metadata),
                "success_url": success_url,
                "cancel_url": cancel_url,
            }
        )
        if customer_id:
            params["customer"] = customer_id

        session = _as_mapping(
            self._call("create_checkout_session", self._client.checkout.sessions.create, params=params)
        )
        return CheckoutLink(
            session_id=str(session["id"]),
            checkout_url=str(session.get("url") or ""),
            purpose=purpose,
            expires_at=parse_timestamp(session.get("expires_at")),
            metadata=dict(metadata),
        )

    def create_billing_portal_session(self, *, customer_id: str, return_url: str) -> PortalLink:
        session = _as_mapping(
            self._call(
                "create_billing_portal_session",
                self._client.billing_portal.sessions.create,
                params={"customer": customer_id, "return_url": return_url},
            )
        )
        return PortalLink(url=str(session.get("url") or ""))


class LocalSandboxPaymentProvider:
    """Minimal provider implementation for local development."""

    def __init__(self) -> None:
        self.sessions: Dict[str, CheckoutSessionSnapshot] = {}
        self.subscriptions: Dict[str, RemoteSubscription] = {}

    def register_subscription_checkout(
        self,
        *,
        payer_id: str,
        period_days: int = 30,
        payment_status: str = "paid",
        customer_id: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> CheckoutSessionSnapshot:
        now = datetime.now(timezone.utc)
        customer_id = customer_id or f"cus_{uuid4().hex[:14]}"
        remote = RemoteSubscription(
            remote_subscription_id=f"sub_{uuid4().hex[:14]}",
            customer_id=customer_id,
            status=SubscriptionStatus.ACTIVE,
            current_period_start=now,
            current_period_end=now + timedelta(days=period_days),
            metadata={"payer_id": payer_id},
        )
        self.subscriptions[remote.remote_subscription_id] = remote
        session = CheckoutSessionSnapshot(
            session_id=f"cs_{uuid4().hex}",
            payer_id=payer_id,
            customer_id=customer_id,
            payment_status=payment_status,
            remote_subscription_id=remote.remote_subscription_id,
            metadata=dict(metadata or {"payer_id": payer_id}),
        )
        self.sessions[session.session_id] = session
        return session

    def retrieve_checkout_session(self, session_id: str) -> CheckoutSessionSnapshot:
        try:
            return self.sessions[session_id]
        except KeyError as exc:
            raise LookupError("Unknown checkout session") from exc

    def retrieve_subscription(self, remote_subscription_id: str) -> RemoteSubscription:
        try:
            return self.subscriptions[remote_subscription_id]
        except KeyError as exc:
            raise LookupError("Unknown subscription") from exc

    def set_cancel_at_period_end(self, remote_subscription_id: str, cancel: bool) -> RemoteSubscription:
        updated = self.retrieve_subscription(remote_subscription_id).model_copy(
            update={"cancel_at_period_end": cancel}
        )
        self.subscriptions[remote_subscription_id] = updated
        return updated

    def create_checkout_session(
        self,
        *,
        purpose: CheckoutPurpose,
        payer_id: str,
        customer_id: Optional[str],
        metadata: Dict[str, str],
        success_url: str,
        cancel_url: str,
    ) -> CheckoutLink:
        # Sessions are settled immediately so the verify endpoint works offline.
        if purpose == CheckoutPurpose.SUBSCRIPTION:
            session = self.register_subscription_checkout(
                payer_id=payer_id,
                customer_id=customer_id,
                metadata=metadata,
            )
        else:
            session = CheckoutSessionSnapshot(
                session_id=f"cs_{uuid4().hex}",
                payer_id=payer_id,
                customer_id=customer_id,
                payment_status="paid",
                purpose=purpose,
                listing_id=metadata.get("listing_id"),
                metadata=dict(metadata),
            )
            self.sessions[session.session_id] = session
        return CheckoutLink(
            session_id=session.session_id,
            checkout_url=f"https://billing.local/checkout/{session.session_id}",
            purpose=purpose,
            expires_at=datetime.now(timezone.utc) + timedelta(minutes=30),
            metadata=dict(metadata),
        )

    def create_billing_portal_session(self, *, customer_id: str, return_url: str) -> PortalLink:
        return PortalLink(
            url=f"https://billing.local/portal/{customer_id}",
            expires_at=datetime.now(timezone.utc) + timedelta(minutes=15),
        )


class StripeWebhookVerifier:
    """Verifies ``Stripe-Signature`` headers and parses the event envelope."""

    def __init__(self, secret: Optional[str], *, tolerance_seconds: int = 300) -> None:
        self._secret = secret
        self._tolerance = tolerance_seconds

    def construct_event(self, payload: bytes, signature: Optional[str]) -> WebhookEvent:
        if not self._secret:
            raise SignatureVerificationError("webhook secret is not configured")
        if not signature:
            raise SignatureVerificationError("missing Stripe-Signature header")

        try:
            text = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise SignatureVerificationError("payload is not valid UTF-8") from exc

        try:
            stripe.WebhookSignature.verify_header(text, signature, self._secret, self._tolerance)
        except stripe.SignatureVerificationError as exc:
            raise SignatureVerificationError(str(exc)) from exc

        try:
            envelope = json.loads(text)
        except ValueError as exc:
            raise SignatureVerificationError("payload is not valid JSON") from exc
        return event_from_envelope(envelope)


def event_from_envelope(envelope: Any) -> WebhookEvent:
    if not isinstance(envelope, Mapping):
        raise SignatureVerificationError("event envelope is not a JSON object")
    event_id = envelope.get("id")
    event_type = envelope.get("type")
    if not event_id or not event_type:
        raise SignatureVerificationError("event envelope is missing id or type")
    data = envelope.get("data")
    data_object = data.get("object") if isinstance(data, Mapping) else None
    try:
        created_at = parse_timestamp(envelope.get("created")) or datetime.now(timezone.utc)
    except ValueError as exc:
        raise SignatureVerificationError("event envelope has an invalid created timestamp") from exc
    return WebhookEvent(
        event_id=str(event_id),
        event_type=str(event_type),
        created_at=created_at,
        data=dict(data_object) if isinstance(data_object, Mapping) else {},
    )


__all__ = [
    "LocalSandboxPaymentProvider",
    "PaymentProvider",
    "StripePaymentProvider",
    "StripeWebhookVerifier",
    "event_from_envelope",
]
