"""
API endpoints for bidding.

POST   /bids                        place a bid (or buy-now)
GET    /bids/listing/{id}           active bid history, newest first
GET    /bids/highest/{id}           current highest active bid
GET    /bids/me                     caller's bids, filterable by outcome
POST   /bids/{id}/withdraw          withdraw a non-winning bid
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel

import conf
from models.auction.events import EventBus
from models.auction.money import PositiveMoney
from models.auction.state_machine import ListingStatus, utcnow
from models.entities.couchbase.bids import Bid
from models.operations.bids import (
    bid_get_by_bidder,
    bid_get_by_listing,
    bid_get_highest,
    bid_place,
    bid_withdraw,
)
from models.operations.listings import listing_get
from utils import log

from .dependencies import get_event_bus, require_authenticated
from .errors import rejection_to_http

logger = log.get_logger(__name__)

router = APIRouter(prefix="/bids", tags=["bids"])


# ---------------------------------------------------------------------------
# Request / Response schemas
# ---------------------------------------------------------------------------

class PlaceBidRequest(BaseModel):
    listing_id: str
    amount: Optional[PositiveMoney] = None
    buy_now: bool = False


class WithdrawBidRequest(BaseModel):
    reason: Optional[str] = None


class BidResponse(BaseModel):
    id: str
    listing_id: str
    bidder_id: str
    amount: Decimal
    previous_bid: Decimal
    increment: Decimal
    placed_at: datetime
    bid_type: str
    is_winning: bool
    is_active: bool
    withdrawn_at: Optional[datetime] = None
    withdrawal_reason: Optional[str] = None


class MyBidResponse(BidResponse):
    listing_title: Optional[str] = None
    listing_status: Optional[ListingStatus] = None
    listing_current_bid: Optional[Decimal] = None


def bid_to_response(bid: Bid) -> BidResponse:
    d = bid.data
    return BidResponse(
        id=bid.id,
        listing_id=d.listing_id,
        bidder_id=d.bidder_id,
        amount=d.amount,
        previous_bid=d.previous_bid,
        increment=d.increment,
        placed_at=d.placed_at,
        bid_type=d.bid_type.value,
        is_winning=d.is_winning,
        is_active=d.is_active,
        withdrawn_at=d.withdrawn_at,
        withdrawal_reason=d.withdrawal_reason,
    )


# ---------------------------------------------------------------------------
# POST /bids: place a bid
# ---------------------------------------------------------------------------

@router.post("", response_model=BidResponse, status_code=201)
async def route_bid_place(
    body: PlaceBidRequest,
    request: Request,
    user: dict = Depends(require_authenticated),
    bus: EventBus = Depends(get_event_bus),
):
    """Place a bid. A bid at or above the buy-now price buys the item."""
    if body.amount is None and not body.buy_now:
        raise HTTPException(status_code=400, detail="amount is required")

    bidding = conf.get_bidding_conf()
    bid, rejection = await bid_place(
        body.listing_id,
        user["sub"],
        body.amount,
        buy_now=body.buy_now,
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
# GET /bids/listing/{id}, /bids/highest/{id}
# ---------------------------------------------------------------------------

@router.get("/listing/{listing_id}", response_model=List[BidResponse])
async def route_bids_for_listing(
    listing_id: str,
    limit: Optional[int] = Query(default=None, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
):
    listing = await listing_get(listing_id)
    if not listing:
        raise HTTPException(status_code=404, detail="Listing not found")
    limit = limit or conf.get_bidding_conf().history_page_size
    bids = await bid_get_by_listing(listing_id, limit=limit, offset=offset)
    return [bid_to_response(b) for b in bids]


@router.get("/highest/{listing_id}", response_model=Optional[BidResponse])
async def route_bid_highest(listing_id: str):
    listing = await listing_get(listing_id)
    if not listing:
        raise HTTPException(status_code=404, detail="Listing not found")
    bid = await bid_get_highest(listing_id)
    return bid_to_response(bid) if bid else None


# ---------------------------------------------------------------------------
# GET /bids/me
# ---------------------------------------------------------------------------

@router.get("/me", response_model=List[MyBidResponse])
async def route_bids_mine(
    status: Optional[Literal["winning", "losing", "won", "lost"]] = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    user: dict = Depends(require_authenticated),
):
    """The caller's active bids with their listing's current state."""
    now = utcnow()
    pairs = await bid_get_by_bidder(user["sub"], status=status, limit=limit, offset=offset, now=now)
    return [
        MyBidResponse(
            **bid_to_response(bid).model_dump(),
            listing_title=listing.data.title if listing else None,
            listing_status=listing.data.effective_status(now) if listing else None,
            listing_current_bid=listing.data.current_bid if listing else None,
        )
        for bid, listing in pairs
    ]


# ---------------------------------------------------------------------------
# POST /bids/{id}/withdraw
# ---------------------------------------------------------------------------

@router.post("/{bid_id}/withdraw", response_model=BidResponse)
async def route_bid_withdraw(
    bid_id: str,
    body: Optional[WithdrawBidRequest] = None,
    user: dict = Depends(require_authenticated),
):
    """Withdraw one of the caller's bids. Winning bids cannot be withdrawn."""
    bid, rejection = await bid_withdraw(bid_id, user["sub"], reason=body.reason if body else None)
    if rejection:
        raise rejection_to_http(rejection)
    return bid_to_response(bid)
