"""API routes for checkout verification, webhooks and subscription management."""
from __future__ import annotations

import logging
import os
from functools import lru_cache
from typing import Any, Callable, Optional

from fastapi import APIRouter, Cookie, Depends, Header, HTTPException, Query, Request, status

from ..billing import BillingError, SignatureVerificationError, TransientProcessorError
from ..schemas.billing import (
    AutoRenewRequest,
    CheckoutSessionRequest,
    CheckoutSessionResponse,
    CheckoutVerificationResponse,
    FeatureCheckoutRequest,
    PortalSessionRequest,
    PortalSessionResponse,
    SubscriptionResponse,
    WebhookAck,
)
from ..services.billing import (
    get_billing_service,
    get_checkout_verifier,
    get_event_reconciler,
    get_webhook_verifier,
)


logger = logging.getLogger("billing")


def _resolve_get_current_user() -> Callable[..., Any]:  # pragma: no cover
    try:
        from backend.app_context import get_current_user as resolved
    except ModuleNotFoundError as exc:
        if exc.name != "backend":
            raise
        from ...app_context import get_current_user as resolved  # type: ignore[no-redef]
    return resolved


@lru_cache(maxsize=1)
def _get_current_user_callable() -> Callable[..., Any]:
    return _resolve_get_current_user()


_SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "session")


def _get_current_user(
    session_token: Optional[str] = Cookie(None, alias=_SESSION_COOKIE_NAME),
):
    resolved = _get_current_user_callable()
    return resolved(session_token=session_token)


router = APIRouter(prefix="/api", tags=["billing"])


@router.get("/subscriptions/verify", response_model=CheckoutVerificationResponse)
def verify_checkout(
    session_id: str = Query(alias="session_id", min_length=1),
    *,
    current_user=Depends(_get_current_user),
) -> CheckoutVerificationResponse:
    verifier = get_checkout_verifier()
    try:
        result = verifier.verify(session_id, str(current_user.id))
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return CheckoutVerificationResponse.from_verification(result)


@router.post("/subscriptions/checkout", response_model=CheckoutSessionResponse)
def create_subscription_checkout(
    payload: CheckoutSessionRequest,
    *,
    current_user=Depends(_get_current_user),
) -> CheckoutSessionResponse:
    service = get_billing_service()
    try:
        checkout = service.start_subscription_checkout(
            str(current_user.id),
            success_url=payload.success_url,
            cancel_url=payload.cancel_url,
        )
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return CheckoutSessionResponse.from_checkout(checkout)


@router.post("/features/checkout", response_model=CheckoutSessionResponse)
def create_feature_checkout(
    payload: FeatureCheckoutRequest,
    *,
    current_user=Depends(_get_current_user),
) -> CheckoutSessionResponse:
    service = get_billing_service()
    try:
        checkout = service.start_feature_checkout(
            str(current_user.id),
            payload.listing_id,
            success_url=payload.success_url,
            cancel_url=payload.cancel_url,
        )
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return CheckoutSessionResponse.from_checkout(checkout)


@router.post("/subscriptions/portal", response_model=PortalSessionResponse)
def create_portal_session(
    payload: PortalSessionRequest,
    *,
    current_user=Depends(_get_current_user),
) -> PortalSessionResponse:
    service = get_billing_service()
    try:
        portal = service.open_billing_portal(str(current_user.id), return_url=payload.return_url)
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return PortalSessionResponse.from_portal(portal)


@router.post("/webhooks/stripe", response_model=WebhookAck)
async def receive_stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
) -> WebhookAck:
    payload = await request.body()
    try:
        event = get_webhook_verifier().construct_event(payload, stripe_signature)
    except SignatureVerificationError as exc:
        logger.warning("Rejected webhook delivery: %s", exc.message)
        raise exc.to_http_exception() from exc

    try:
        outcome = get_event_reconciler().handle(event)
    except TransientProcessorError as exc:
        logger.warning("Webhook %s deferred: %s", event.event_id, exc.message)
        raise exc.to_http_exception() from exc
    except Exception as exc:
        logger.exception("Webhook %s (%s) failed", event.event_id, event.event_type)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        ) from exc
    return WebhookAck(outcome=outcome)


@router.get("/subscriptions/status", response_model=SubscriptionResponse)
def subscription_status(*, current_user=Depends(_get_current_user)) -> SubscriptionResponse:
    service = get_billing_service()
    try:
        subscription = service.status(str(current_user.id))
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return SubscriptionResponse.from_subscription(subscription)


@router.post("/subscriptions/refresh", response_model=SubscriptionResponse)
def refresh_subscription(*, current_user=Depends(_get_current_user)) -> SubscriptionResponse:
    service = get_billing_service()
    try:
        subscription = service.refresh(str(current_user.id))
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return SubscriptionResponse.from_subscription(subscription)


@router.post("/subscriptions/auto-renew", response_model=SubscriptionResponse)
def update_auto_renew(
    payload: AutoRenewRequest,
    *,
    current_user=Depends(_get_current_user),
) -> SubscriptionResponse:
    service = get_billing_service()
    try:
        subscription = service.set_auto_renew(str(current_user.id), payload.enabled)
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return SubscriptionResponse.from_subscription(subscription)
