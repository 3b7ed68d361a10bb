"""Admin endpoints for moderating listings and repairing bid ledgers."""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from models.auction.events import EventBus
from models.operations.bids import bid_reconcile_listing
from models.operations.listings import listing_cancel, listing_search, listing_set_featured
from utils import log

from .dependencies import get_event_bus, require_admin
from .errors import rejection_to_http
from .listings import ListingResponse, listing_to_response

logger = log.get_logger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


class FeaturedRequest(BaseModel):
    featured: bool


class AdminCancelRequest(BaseModel):
    reason: Optional[str] = None


@router.get("/listings", response_model=List[ListingResponse])
async def admin_listings(
    include_inactive: bool = True,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
):
    """All listings, including soft-deleted ones."""
    listings = await listing_search(include_inactive=include_inactive, limit=limit, offset=offset)
    return [listing_to_response(listing) for listing in listings]


@router.put("/listings/{listing_id}/featured", response_model=ListingResponse)
async def admin_set_featured(listing_id: str, body: FeaturedRequest):
    listing, rejection = await listing_set_featured(listing_id, body.featured)
    if rejection:
        raise rejection_to_http(rejection)
    return listing_to_response(listing)


@router.post("/listings/{listing_id}/cancel", response_model=ListingResponse)
async def admin_cancel(
    listing_id: str,
    body: Optional[AdminCancelRequest] = None,
    bus: EventBus = Depends(get_event_bus),
):
    """Cancel any seller's listing; the no-bids rule still applies."""
    reason = body.reason if body and body.reason else "Cancelled by admin"
    listing, rejection = await listing_cancel(listing_id, reason=reason, publisher=bus)
    if rejection:
        raise rejection_to_http(rejection)
    logger.info(f"Admin cancelled listing {listing_id}")
    return listing_to_response(listing)


@router.post("/listings/{listing_id}/reconcile")
async def admin_reconcile(listing_id: str) -> Dict[str, Any]:
    """Repair the listing's bid documents after an interrupted settlement."""
    report, rejection = await bid_reconcile_listing(listing_id)
    if rejection:
        raise rejection_to_http(rejection)
    return {"listing_id": listing_id, **report.model_dump()}
