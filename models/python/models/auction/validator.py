"""
Bid acceptance rules.

``validate_bid`` is a pure decision over a listing snapshot: it never writes.
Callers must run it against the freshest snapshot they are about to commit
against (see ``models.operations.bids.bid_place``), never against one read
earlier in the request.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Literal, Optional, Protocol, Union

from pydantic import BaseModel, ConfigDict

from .money import format_money, to_money
from .rejections import Rejection, RejectionCode, reject
from .state_machine import is_biddable


class BidType(str, Enum):
    REGULAR = "regular"
    AUTO = "auto"
    BUY_NOW = "buy-now"


class BiddableListing(Protocol):
    seller_id: str
    status: str
    current_bid: Decimal
    bid_increment: Decimal
    buy_now_price: Optional[Decimal]
    reserve_price: Optional[Decimal]
    auction_start_date: Optional[datetime]
    auction_end_date: Optional[datetime]
    total_bids: int


class Accepted(BaseModel):
    model_config = ConfigDict(frozen=True)

    bid_type: BidType
    amount: Decimal
    # Buy-now acceptances carry the instruction to move the listing to sold
    closes_listing: bool = False


Decision = Union[Accepted, Rejection]


def minimum_bid(listing: BiddableListing) -> Decimal:
    return listing.current_bid + listing.bid_increment


def validate_bid(
    listing: BiddableListing,
    bidder_id: str,
    amount: Optional[Decimal],
    now: Optional[datetime],
    buy_now: bool = False,
    placed_by: Literal["human", "agent"] = "human",
) -> Decision:
    if bidder_id == listing.seller_id:
        return reject(RejectionCode.SELF_BID, "Sellers cannot bid on their own listings")

    if not is_biddable(listing, now):
        return reject(RejectionCode.NOT_BIDDABLE, "Auction is not currently active")

    if buy_now:
        if listing.buy_now_price is None or listing.buy_now_price <= listing.current_bid:
            return reject(
                RejectionCode.BUY_NOW_UNAVAILABLE, "This listing has no buy-now price"
            )
        # current_bid stays below buy_now_price while the listing is biddable,
        # so a buy-now purchase is valid even when it is under the next increment
        return Accepted(
            bid_type=BidType.BUY_NOW,
            amount=listing.buy_now_price,
            closes_listing=True,
        )

    if amount is None:
        return reject(RejectionCode.BID_TOO_LOW, "Bid amount is required", minimum_bid(listing))
    amount = to_money(amount)

    minimum = minimum_bid(listing)
    if amount < minimum:
        return reject(
            RejectionCode.BID_TOO_LOW,
            f"Bid must be at least {format_money(minimum)}",
            minimum_bid=minimum,
        )

    buy_now_open = (
        listing.buy_now_price is not None and listing.buy_now_price > listing.current_bid
    )
    if buy_now_open and amount >= listing.buy_now_price:
        return Accepted(
            bid_type=BidType.BUY_NOW,
            amount=listing.buy_now_price,
            closes_listing=True,
        )

    bid_type = BidType.AUTO if placed_by == "agent" else BidType.REGULAR
    return Accepted(bid_type=bid_type, amount=amount)
