"""Normalization of payment processor objects into billing snapshots.

Processor payloads arrive either as webhook ``data.object`` dictionaries or
as objects returned by the API client; both are mappings, so the helpers here
accept any ``Mapping``.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from .models import (
    CheckoutPurpose,
    CheckoutSessionSnapshot,
    InvoiceSnapshot,
    RemoteSubscription,
    SubscriptionStatus,
)


def _from_epoch(seconds: float) -> datetime:
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError) as exc:
        raise ValueError(f"Epoch timestamp out of range: {seconds!r}") from exc


def parse_timestamp(value: object) -> Optional[datetime]:
    """Parse epoch seconds, ISO-8601 strings or datetimes into aware UTC datetimes.

    Every unusable input raises :class:`ValueError`.
    """

    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError(f"Unsupported datetime value {value!r}")
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return _from_epoch(value)
    if isinstance(value, str):
        if value.isdigit():
            return _from_epoch(int(value))
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise ValueError(f"Unsupported datetime value {value!r}")


def safe_metadata(value: object) -> Dict[str, str]:
    if isinstance(value, Mapping):
        return {str(k): str(v) for k, v in value.items() if v is not None}
    return {}


def _object_id(value: object) -> Optional[str]:
    """Return the id of an expandable field that may be a string or an object."""

    if value is None:
        return None
    if isinstance(value, Mapping):
        identifier = value.get("id")
        return str(identifier) if identifier else None
    text = str(value)
    return text or None


def _first_item(payload: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    container = payload.get(key)
    if isinstance(container, Mapping):
        data = container.get("data")
        if isinstance(data, list) and data and isinstance(data[0], Mapping):
            return data[0]
    return {}


def remote_subscription_from_payload(payload: Mapping[str, Any]) -> RemoteSubscription:
    remote_id = _object_id(payload.get("id"))
    if not remote_id:
        raise ValueError("subscription id missing from payload")
    try:
        status = SubscriptionStatus(str(payload.get("status")))
    except ValueError as exc:
        raise ValueError(f"Unsupported subscription status {payload.get('status')!r}") from exc

    # Newer API versions report the billing period on the subscription item.
    item = _first_item(payload, "items")
    period_start = payload.get("current_period_start") or item.get("current_period_start")
    period_end = payload.get("current_period_end") or item.get("current_period_end")

    return RemoteSubscription(
        remote_subscription_id=remote_id,
        customer_id=_object_id(payload.get("customer")),
        status=status,
        current_period_start=parse_timestamp(period_start),
        current_period_end=parse_timestamp(period_end),
        cancel_at_period_end=bool(payload.get("cancel_at_period_end", False)),
        canceled_at=parse_timestamp(payload.get("canceled_at")),
        metadata=safe_metadata(payload.get("metadata")),
    )


def checkout_session_from_payload(payload: Mapping[str, Any]) -> CheckoutSessionSnapshot:
    session_id = _object_id(payload.get("id"))
    if not session_id:
        raise ValueError("checkout session id missing from payload")
    metadata = safe_metadata(payload.get("metadata"))
    payer_id = metadata.get("payer_id") or payload.get("client_reference_id")
    try:
        purpose = CheckoutPurpose(metadata.get("purpose", CheckoutPurpose.SUBSCRIPTION.value))
    except ValueError:
        purpose = CheckoutPurpose.SUBSCRIPTION

    return CheckoutSessionSnapshot(
        session_id=session_id,
        payer_id=str(payer_id) if payer_id else None,
        customer_id=_object_id(payload.get("customer")),
        payment_status=payload.get("payment_status") and str(payload.get("payment_status")),
        remote_subscription_id=_object_id(payload.get("subscription")),
        purpose=purpose,
        listing_id=metadata.get("listing_id"),
        metadata=metadata,
    )


def invoice_from_payload(payload: Mapping[str, Any]) -> InvoiceSnapshot:
    invoice_id = _object_id(payload.get("id"))
    if not invoice_id:
        raise ValueError("invoice id missing from payload")

    remote_subscription_id = _object_id(payload.get("subscription"))
    if remote_subscription_id is None:
        parent = payload.get("parent")
        if isinstance(parent, Mapping):
            details = parent.get("subscription_details")
            if isinstance(details, Mapping):
                remote_subscription_id = _object_id(details.get("subscription"))

    # The invoice-level period covers the previous cycle; the subscription
    # line item carries the period that was just paid for.
    line = _first_item(payload, "lines")
    line_period = line.get("period") if isinstance(line.get("period"), Mapping) else {}
    period_start = line_period.get("start") or payload.get("period_start")
    period_end = line_period.get("end") or payload.get("period_end")

    transitions = payload.get("status_transitions")
    paid_at = transitions.get("paid_at") if isinstance(transitions, Mapping) else None

    return InvoiceSnapshot(
        invoice_id=invoice_id,
        remote_subscription_id=remote_subscription_id,
        customer_id=_object_id(payload.get("customer")),
        billing_reason=payload.get("billing_reason") and str(payload.get("billing_reason")),
        period_start=parse_timestamp(period_start),
        period_end=parse_timestamp(period_end),
        paid_at=parse_timestamp(paid_at),
    )


__all__ = [
    "checkout_session_from_payload",
    "invoice_from_payload",
    "parse_timestamp",
    "remote_subscription_from_payload",
    "safe_metadata",
]
