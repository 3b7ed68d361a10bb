"""
API endpoints for listings.

POST   /listings                   create a draft listing (seller)
GET    /listings                   search by category, seller, effective status
GET    /listings/me                seller's own listings
GET    /listings/{id}              detail with recent bids; counts a view
PUT    /listings/{id}              edit a listing that has no bids (owner)
DELETE /listings/{id}              soft delete a listing with no bids (owner)
POST   /listings/{id}/cancel       cancel a pre-sale listing (owner)
POST   /listings/{id}/watch        toggle the caller's watch
POST   /listings/{id}/buy-now      purchase at the buy-now price
GET    /listings/{id}/stream       SSE stream of bid and closure events
"""

import asyncio
import json
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

import conf
from models.auction.events import EventBus, ListingClosed
from models.auction.state_machine import ListingStatus, time_remaining, utcnow
from models.auction.validator import minimum_bid
from models.entities.couchbase.listings import Category, Condition, Listing, ListingData, ShippingInfo
from models.operations.bids import bid_get_by_listing, bid_place
from models.operations.listings import (
    listing_cancel,
    listing_create,
    listing_get,
    listing_get_by_seller,
    listing_record_view,
    listing_search,
    listing_soft_delete,
    listing_toggle_watch,
    listing_update,
)
from utils import log

from .bids import BidResponse, bid_to_response
from .dependencies import get_event_bus, require_authenticated, require_seller
from .errors import rejection_to_http

logger = log.get_logger(__name__)

router = APIRouter(prefix="/listings", tags=["listings"])

STREAM_KEEPALIVE_SECONDS = 15


# ---------------------------------------------------------------------------
# Request / Response schemas
# ---------------------------------------------------------------------------

class ListingCreateRequest(BaseModel):
    title: str
    description: str
    category: Category = "other"
    subcategory: Optional[str] = None
    condition: Condition = "good"
    materials: List[str] = []
    tags: List[str] = []
    images: List[str] = []
    shipping: Optional[ShippingInfo] = None
    starting_bid: Decimal
    bid_increment: Decimal = Decimal("1.00")
    reserve_price: Optional[Decimal] = None
    buy_now_price: Optional[Decimal] = None
    auction_start_date: Optional[datetime] = None
    auction_end_date: datetime


class ListingUpdateRequest(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    category: Optional[Category] = None
    subcategory: Optional[str] = None
    condition: Optional[Condition] = None
    materials: Optional[List[str]] = None
    tags: Optional[List[str]] = None
    images: Optional[List[str]] = None
    shipping: Optional[ShippingInfo] = None
    auction_start_date: Optional[datetime] = None
    auction_end_date: Optional[datetime] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class ListingResponse(BaseModel):
    id: str
    seller_id: str
    title: str
    description: str
    category: str
    subcategory: Optional[str] = None
    condition: str
    materials: List[str]
    tags: List[str]
    images: List[str]
    shipping: ShippingInfo
    starting_bid: Decimal
    current_bid: Decimal
    bid_increment: Decimal
    minimum_bid: Decimal
    buy_now_price: Optional[Decimal] = None
    reserve_met: bool
    auction_start_date: datetime
    auction_end_date: datetime
    time_remaining_seconds: float
    # Effective status, derived from the auction window at read time
    status: ListingStatus
    total_bids: int
    highest_bidder_id: Optional[str] = None
    winning_bid_id: Optional[str] = None
    sold_to: Optional[str] = None
    sold_at: Optional[datetime] = None
    final_price: Optional[Decimal] = None
    cancelled_at: Optional[datetime] = None
    watcher_count: int
    views: int
    featured: bool
    is_active: bool
    created_at: Optional[datetime] = None


class ListingDetailResponse(ListingResponse):
    recent_bids: List[BidResponse] = []


def listing_to_response(listing: Listing, now: Optional[datetime] = None) -> ListingResponse:
    now = now or utcnow()
    d = listing.data
    return ListingResponse(
        id=listing.id,
        seller_id=d.seller_id,
        title=d.title,
        description=d.description,
        category=d.category,
        subcategory=d.subcategory,
        condition=d.condition,
        materials=d.materials,
        tags=d.tags,
        images=d.images,
        shipping=d.shipping,
        starting_bid=d.starting_bid,
        current_bid=d.current_bid,
        bid_increment=d.bid_increment,
        minimum_bid=minimum_bid(d),
        buy_now_price=d.buy_now_price,
        reserve_met=d.reserve_met,
        auction_start_date=d.auction_start_date,
        auction_end_date=d.auction_end_date,
        time_remaining_seconds=time_remaining(d, now),
        status=d.effective_status(now),
        total_bids=d.total_bids,
        highest_bidder_id=d.highest_bidder_id,
        winning_bid_id=d.winning_bid_id,
        sold_to=d.sold_to,
        sold_at=d.sold_at,
        final_price=d.final_price,
        cancelled_at=d.cancelled_at,
        watcher_count=len(d.watchers),
        views=d.views,
        featured=d.featured,
        is_active=d.is_active,
        created_at=d.created_at,
    )


def _sse(event: str, payload: Dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(payload, default=str)}\n\n"


# ---------------------------------------------------------------------------
# POST /listings: create
# ---------------------------------------------------------------------------

@router.post("", response_model=ListingResponse, status_code=201)
async def route_listing_create(
    body: ListingCreateRequest,
    user: dict = Depends(require_seller),
):
    """Create a draft listing. The auction opens at its start date."""
    seller_id = user["sub"]
    fields = body.model_dump(exclude_none=True)
    fields.setdefault("auction_start_date", utcnow())
    try:
        data = ListingData(seller_id=seller_id, **fields)
        listing = await listing_create(seller_id, data)
    except ValueError as e:
        # pydantic's ValidationError is a ValueError
        raise HTTPException(status_code=400, detail=str(e))
    return listing_to_response(listing)


# ---------------------------------------------------------------------------
# GET /listings: search
# ---------------------------------------------------------------------------

@router.get("", response_model=List[ListingResponse])
async def route_listings_search(
    category: Optional[str] = None,
    seller_id: Optional[str] = None,
    status: Optional[ListingStatus] = None,
    featured: Optional[bool] = None,
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
):
    now = utcnow()
    listings = await listing_search(
        category=category,
        seller_id=seller_id,
        status=status,
        featured=featured,
        limit=limit,
        offset=offset,
        now=now,
    )
    return [listing_to_response(listing, now) for listing in listings]


@router.get("/me", response_model=List[ListingResponse])
async def route_listings_mine(user: dict = Depends(require_seller)):
    listings = await listing_get_by_seller(user["sub"])
    return [listing_to_response(listing) for listing in listings]


# ---------------------------------------------------------------------------
# GET /listings/{id}: detail
# ---------------------------------------------------------------------------

@router.get("/{listing_id}", response_model=ListingDetailResponse)
async def route_listing_detail(listing_id: str):
    """Listing with its effective status and most recent active bids."""
    listing = await listing_get(listing_id)
    if not listing:
        raise HTTPException(status_code=404, detail="Listing not found")

    await listing_record_view(listing_id)
    bids = await bid_get_by_listing(listing_id, limit=10)
    return ListingDetailResponse(
        **listing_to_response(listing).model_dump(),
        recent_bids=[bid_to_response(b) for b in bids],
    )


# ---------------------------------------------------------------------------
# PUT / DELETE /listings/{id}: owner edits
# ---------------------------------------------------------------------------

@router.put("/{listing_id}", response_model=ListingResponse)
async def route_listing_update(
    listing_id: str,
    body: ListingUpdateRequest,
    user: dict = Depends(require_seller),
):
    """Edit descriptive fields and the auction window while no bids exist."""
    try:
        listing, rejection = await listing_update(
            listing_id, body.model_dump(exclude_none=True), seller_id=user["sub"]
        )
    except ValueError as e:
        # pydantic's ValidationError is a ValueError
        raise HTTPException(status_code=400, detail=str(e))
    if rejection:
        raise rejection_to_http(rejection)
    return listing_to_response(listing)


@router.delete("/{listing_id}", status_code=204)
async def route_listing_delete(
    listing_id: str,
    user: dict = Depends(require_seller),
) -> None:
    _, rejection = await listing_soft_delete(listing_id, seller_id=user["sub"])
    if rejection:
        raise rejection_to_http(rejection)


# ---------------------------------------------------------------------------
# POST /listings/{id}/cancel
# ---------------------------------------------------------------------------

@router.post("/{listing_id}/cancel", response_model=ListingResponse)
async def route_listing_cancel(
    listing_id: str,
    body: Optional[CancelRequest] = None,
    user: dict = Depends(require_seller),
    bus: EventBus = Depends(get_event_bus),
):
    """Cancel a draft, scheduled or active listing that has no bids."""
    listing, rejection = await listing_cancel(
        listing_id,
        reason=body.reason if body else None,
        publisher=bus,
        seller_id=user["sub"],
    )
    if rejection:
        raise rejection_to_http(rejection)
    return listing_to_response(listing)


# ---------------------------------------------------------------------------
# POST /listings/{id}/watch
# ---------------------------------------------------------------------------

@router.post("/{listing_id}/watch")
async def route_listing_watch(
    listing_id: str,
    user: dict = Depends(require_authenticated),
) -> Dict[str, Any]:
    watching, rejection = await listing_toggle_watch(listing_id, user["sub"])
    if rejection:
        raise rejection_to_http(rejection)
    return {"listing_id": listing_id, "watching": watching}


# ---------------------------------------------------------------------------
# POST /listings/{id}/buy-now
# ---------------------------------------------------------------------------

@router.post("/{listing_id}/buy-now", response_model=BidResponse, status_code=201)
async def route_buy_now(
    listing_id: str,
    request: Request,
    user: dict = Depends(require_authenticated),
    bus: EventBus = Depends(get_event_bus),
):
    """Buy the item outright at its buy-now price, closing the auction."""
    bidding = conf.get_bidding_conf()
    bid, rejection = await bid_place(
        listing_id,
        user["sub"],
        None,
        buy_now=True,
        publisher=bus,
        max_retries=bidding.cas_max_retries,
        backoff_ms=bidding.cas_backoff_ms,
        user_agent=request.headers.get("user-agent", ""),
        ip_address=request.client.host if request.client else "",
    )
    if rejection:
        raise rejection_to_http(rejection)
    return bid_to_response(bid)


# ---------------------------------------------------------------------------
# GET /listings/{id}/stream: SSE for live bid updates
# ---------------------------------------------------------------------------

@router.get("/{listing_id}/stream")
async def route_listing_stream(
    listing_id: str,
    request: Request,
    bus: EventBus = Depends(get_event_bus),
):
    """Server-Sent Events stream for a live auction room.

    Emits a ``snapshot`` of the listing first, then one ``bid_accepted`` per
    accepted bid and a final ``listing_closed`` when the listing is sold or
    cancelled. Comment lines keep idle connections open.
    """
    # Subscribe before reading the snapshot so no accepted bid falls between them
    queue = bus.subscribe(listing_id)
    listing = await listing_get(listing_id)
    if not listing:
        bus.unsubscribe(listing_id, queue)
        raise HTTPException(status_code=404, detail="Listing not found")

    async def event_generator():
        try:
            yield _sse("snapshot", listing_to_response(listing).model_dump(mode="json"))
            while True:
                if await request.is_disconnected():
                    break
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=STREAM_KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                yield _sse(event.event_type, event.model_dump(mode="json"))
                if isinstance(event, ListingClosed):
                    break
        finally:
            bus.unsubscribe(listing_id, queue)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
