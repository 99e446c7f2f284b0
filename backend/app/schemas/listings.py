"""API schemas for public listing endpoints."""
from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from ..listings import Listing, SweepSummary, Visibility


class PublicListingResponse(BaseModel):
    listing_id: str = Field(alias="listingId")
    title: str
    featured: bool
    view_count: int = Field(alias="viewCount")
    click_count: int = Field(alias="clickCount")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_listing(cls, listing: Listing, visibility: Visibility) -> "PublicListingResponse":
        return cls(
            listing_id=listing.listing_id,
            title=listing.title,
            featured=visibility.featured,
            view_count=listing.view_count,
            click_count=listing.click_count,
        )


class SweepResponse(BaseModel):
    features_expired: int = Field(alias="featuresExpired")
    trials_expired: int = Field(alias="trialsExpired")
    ran_at: datetime = Field(alias="ranAt")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_summary(cls, summary: SweepSummary) -> "SweepResponse":
        return cls(
            features_expired=summary.features_expired,
            trials_expired=summary.trials_expired,
            ran_at=summary.ran_at,
        )
