"""Public listing routes. Hidden listings are indistinguishable from missing ones."""
from __future__ import annotations

from fastapi import APIRouter, HTTPException, status

from ..schemas.listings import PublicListingResponse
from ..services.billing import get_listing_service


router = APIRouter(prefix="/api/listings", tags=["listings"])


@router.get("/{listing_id}", response_model=PublicListingResponse)
def get_listing(listing_id: str) -> PublicListingResponse:
    result = get_listing_service().get_public_listing(listing_id)
    if result is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Listing not found")
    listing, visibility = result
    return PublicListingResponse.from_listing(listing, visibility)


@router.post("/{listing_id}/click", status_code=status.HTTP_204_NO_CONTENT)
def record_click(listing_id: str) -> None:
    if get_listing_service().record_click(listing_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Listing not found")
