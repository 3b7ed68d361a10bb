"""Typed business rejections returned by the bidding engine instead of raised."""

from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class RejectionCode(str, Enum):
    LISTING_NOT_FOUND = "listing_not_found"
    NOT_BIDDABLE = "not_biddable"
    SELF_BID = "self_bid"
    BID_TOO_LOW = "bid_too_low"
    BUY_NOW_UNAVAILABLE = "buy_now_unavailable"
    NOT_OWNER = "not_owner"
    CANNOT_WITHDRAW_WINNING = "cannot_withdraw_winning"
    AUCTION_CLOSED = "auction_closed"
    BID_NOT_FOUND = "bid_not_found"
    ALREADY_WITHDRAWN = "already_withdrawn"
    CONCURRENCY_CONFLICT = "concurrency_conflict"
    HAS_BIDS = "has_bids"
    NOT_CANCELLABLE = "not_cancellable"
    LISTING_LOCKED = "listing_locked"


class Rejection(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: RejectionCode
    message: str
    # Only set for BID_TOO_LOW so the client can show the next valid amount
    minimum_bid: Optional[Decimal] = None


def reject(code: RejectionCode, message: str, minimum_bid: Optional[Decimal] = None) -> Rejection:
    return Rejection(code=code, message=message, minimum_bid=minimum_bid)
