"""
Bid ledger settlement.

``append_and_settle`` turns an accepted decision into the full set of writes
that must become visible together: the new listing aggregates, the new bid,
and the bids that lose their winning flag. It is pure; the operations layer
commits the listing under a CAS guard and then applies the bid writes.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from models.entities.couchbase.bids import BidData
from models.entities.couchbase.listings import ListingData

from .events import AuctionEvent, BidAccepted, ListingClosed
from .rejections import Rejection, RejectionCode, reject
from .state_machine import CLOSED_STATUSES, ListingStatus
from .validator import Accepted, BidType


@dataclass
class Settlement:
    listing: ListingData
    bid_id: str
    bid: BidData
    # Bid keys whose is_winning flag must be cleared
    demote_bid_ids: List[str] = field(default_factory=list)
    # Buy-now: clear every other winning flag on the listing, not just the known leader
    demote_all_others: bool = False
    previous_leader_id: Optional[str] = None
    events: List[AuctionEvent] = field(default_factory=list)


def append_and_settle(
    listing_id: str,
    listing: ListingData,
    bid_id: str,
    bidder_id: str,
    decision: Accepted,
    now: datetime,
    user_agent: str = "",
    ip_address: str = "",
) -> Settlement:
    updated = listing.model_copy(deep=True)
    previous_winning_bid_id = listing.winning_bid_id
    previous_leader_id = listing.highest_bidder_id

    # 1. demote the current leader, even when the same bidder is raising
    demote = [previous_winning_bid_id] if previous_winning_bid_id else []

    # 2. the new leading bid
    bid = BidData(
        listing_id=listing_id,
        bidder_id=bidder_id,
        amount=decision.amount,
        previous_bid=listing.current_bid,
        placed_at=now,
        bid_type=decision.bid_type,
        is_winning=True,
        is_active=True,
        previous_winning_bid_id=previous_winning_bid_id,
        user_agent=user_agent,
        ip_address=ip_address,
    )

    # 3. aggregates
    updated.current_bid = decision.amount
    updated.highest_bidder_id = bidder_id
    updated.winning_bid_id = bid_id
    updated.total_bids += 1

    events: List[AuctionEvent] = [
        BidAccepted(
            listing_id=listing_id,
            bid_id=bid_id,
            bidder_id=bidder_id,
            amount=decision.amount,
            bid_type=decision.bid_type,
            previous_leader_id=previous_leader_id,
            occurred_at=now,
        )
    ]

    # 4. buy-now closes the auction
    if decision.bid_type == BidType.BUY_NOW:
        updated.status = ListingStatus.SOLD
        updated.sold_to = bidder_id
        updated.sold_at = now
        updated.final_price = decision.amount
        events.append(ListingClosed(listing_id=listing_id, reason="sold", occurred_at=now))

    return Settlement(
        listing=updated,
        bid_id=bid_id,
        bid=bid,
        demote_bid_ids=demote,
        demote_all_others=decision.bid_type == BidType.BUY_NOW,
        previous_leader_id=previous_leader_id,
        events=events,
    )


def check_withdrawal(
    bid_id: str,
    bid: BidData,
    listing: Optional[ListingData],
    acting_user_id: str,
    now: datetime,
) -> Optional[Rejection]:
    """None if *acting_user_id* may withdraw the bid now, otherwise the reason they may not."""
    if acting_user_id != bid.bidder_id:
        return reject(RejectionCode.NOT_OWNER, "You can only withdraw your own bids")
    if not bid.is_active:
        return reject(RejectionCode.ALREADY_WITHDRAWN, "Bid has already been withdrawn")
    if listing is None:
        return reject(RejectionCode.LISTING_NOT_FOUND, "Listing not found")
    # The listing's pointer is authoritative; the flag on the bid can lag a
    # settlement that committed but has not finished its ledger writes
    if bid.is_winning or listing.winning_bid_id == bid_id:
        return reject(RejectionCode.CANNOT_WITHDRAW_WINNING, "Cannot withdraw winning bid")
    if listing.effective_status(now) in CLOSED_STATUSES:
        return reject(
            RejectionCode.AUCTION_CLOSED, "Cannot withdraw bid after auction has ended"
        )
    return None


def apply_withdrawal(bid: BidData, reason: Optional[str], now: datetime) -> BidData:
    withdrawn = bid.model_copy(deep=True)
    withdrawn.is_active = False
    withdrawn.withdrawn_at = now
    withdrawn.withdrawal_reason = reason or "User withdrawal"
    return withdrawn
