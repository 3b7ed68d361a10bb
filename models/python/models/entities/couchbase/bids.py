from typing import Optional
from datetime import datetime
from clients.couchbase import BaseModelCouchbase, BaseCouchbaseEntityData
from models.auction.money import Money, PositiveMoney
from models.auction.validator import BidType


class BidData(BaseCouchbaseEntityData):
    listing_id: str
    bidder_id: str
    amount: PositiveMoney
    previous_bid: Money  # listing.current_bid just before acceptance, audit only
    placed_at: datetime
    bid_type: BidType = BidType.REGULAR
    is_winning: bool = False
    # False once withdrawn; committed bids are never deleted
    is_active: bool = True
    # Written before the listing commit; cleared once the bid is committed
    is_pending: bool = False
    # Winning bid this one displaced at commit time. Following the links from
    # the listing's winning_bid_id visits every committed bid.
    previous_winning_bid_id: Optional[str] = None
    withdrawn_at: Optional[datetime] = None
    withdrawal_reason: Optional[str] = None
    user_agent: str = ""
    ip_address: str = ""

    @property
    def increment(self):
        return self.amount - self.previous_bid


class Bid(BaseModelCouchbase[BidData]):
    _collection_name = "bids"
