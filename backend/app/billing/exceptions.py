"""Error taxonomy for the subscription reconciliation flows."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

from fastapi import HTTPException, status


@dataclass
class BillingError(Exception):
    """Base class for billing failures that map onto an API response."""

    code: str
    message: str
    status_code: int = status.HTTP_400_BAD_REQUEST
    detail: Optional[Mapping[str, Any]] = None

    def __post_init__(self) -> None:
        base_detail: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.detail:
            base_detail.update(self.detail)
        object.__setattr__(self, "_payload", base_detail)
        super().__init__(self.message)

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation suitable for JSON responses."""

        return self._payload

    def to_http_exception(self) -> HTTPException:
        """Convert the domain error into a FastAPI HTTPException."""

        return HTTPException(status_code=self.status_code, detail=dict(self.payload))


class SessionOwnershipError(BillingError):
    def __init__(self, session_id: str) -> None:
        super().__init__(
            code="session_ownership",
            message="Checkout session belongs to a different account",
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"session_id": session_id},
        )


class PaymentIncompleteError(BillingError):
    def __init__(self, session_id: str, payment_status: Optional[str]) -> None:
        super().__init__(
            code="payment_incomplete",
            message="Payment not completed. Finish checkout or try another payment method.",
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={"session_id": session_id, "payment_status": payment_status},
        )


class SignatureVerificationError(BillingError):
    def __init__(self, reason: str) -> None:
        super().__init__(
            code="invalid_signature",
            message=f"Webhook signature verification failed: {reason}",
            status_code=status.HTTP_400_BAD_REQUEST,
        )


class UnknownSubscriptionError(BillingError):
    """Raised when an event references a remote subscription never stored locally."""

    def __init__(self, remote_subscription_id: Optional[str]) -> None:
        super().__init__(
            code="unknown_subscription",
            message="Subscription is not known locally",
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"remote_subscription_id": remote_subscription_id},
        )


class SubscriptionNotFoundError(BillingError):
    def __init__(self, payer_id: str) -> None:
        super().__init__(
            code="subscription_not_found",
            message="No subscription found for this account",
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"payer_id": payer_id},
        )


class TransientProcessorError(BillingError):
    """Network failure, timeout or 5xx from the payment processor. Always retryable."""

    def __init__(self, operation: str, reason: str) -> None:
        super().__init__(
            code="processor_unavailable",
            message="Payment processor is temporarily unavailable, please retry",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"operation": operation, "reason": reason, "retryable": True},
        )


class FeatureListingUnavailableError(BillingError):
    """A paid feature session points at a listing the payer cannot promote."""

    def __init__(self, session_id: str, listing_id: Optional[str]) -> None:
        super().__init__(
            code="feature_listing_unavailable",
            message=(
                "Payment received, but the listing is not yours or no longer exists. "
                "Contact support for a refund."
            ),
            status_code=status.HTTP_409_CONFLICT,
            detail={"session_id": session_id, "listing_id": listing_id, "refund_required": True},
        )


class ListingOwnershipError(BillingError):
    def __init__(self, listing_id: str) -> None:
        super().__init__(
            code="listing_ownership",
            message="You do not have permission to feature this listing",
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"listing_id": listing_id},
        )


class FeatureAlreadyActiveError(BillingError):
    def __init__(self, listing_id: str, feature_expiration: Optional[datetime]) -> None:
        super().__init__(
            code="feature_already_active",
            message="Listing is already featured",
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "listing_id": listing_id,
                "feature_expiration": feature_expiration.isoformat() if feature_expiration else None,
            },
        )


class SubscriptionAlreadyActiveError(BillingError):
    def __init__(self, payer_id: str, subscription_id: str) -> None:
        super().__init__(
            code="subscription_already_active",
            message="Account already has an active subscription",
            status_code=status.HTTP_409_CONFLICT,
            detail={"payer_id": payer_id, "subscription_id": subscription_id},
        )


__all__ = [
    "BillingError",
    "FeatureAlreadyActiveError",
    "FeatureListingUnavailableError",
    "ListingOwnershipError",
    "PaymentIncompleteError",
    "SessionOwnershipError",
    "SignatureVerificationError",
    "SubscriptionAlreadyActiveError",
    "SubscriptionNotFoundError",
    "TransientProcessorError",
    "UnknownSubscriptionError",
]
