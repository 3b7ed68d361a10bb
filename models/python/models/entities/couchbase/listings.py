from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from clients.couchbase import BaseModelCouchbase, BaseCouchbaseEntityData
from models.auction.money import Money, PositiveMoney
from models.auction.state_machine import ListingStatus, listing_effective_status

Category = Literal[
    "pottery", "jewelry", "textiles", "woodwork", "metalwork", "glasswork",
    "leatherwork", "painting", "sculpture", "home-decor", "accessories", "other",
]
Condition = Literal["new", "like-new", "good", "fair", "poor"]


class ShippingInfo(BaseModel):
    free_shipping: bool = False
    shipping_cost: Money = Decimal("0.00")
    estimated_delivery: str = "5-7 business days"
    shipping_methods: List[Literal["standard", "express", "overnight", "pickup"]] = []


class ListingData(BaseCouchbaseEntityData):
    # Ownership (immutable)
    seller_id: str

    # Description
    title: str = Field(min_length=1, max_length=200)
    description: str = Field(min_length=1, max_length=2000)
    category: Category = "other"
    subcategory: Optional[str] = None
    condition: Condition = "good"
    materials: List[str] = []
    tags: List[str] = []
    images: List[str] = []
    shipping: ShippingInfo = Field(default_factory=ShippingInfo)

    # Pricing (starting_bid and bid_increment immutable after creation)
    starting_bid: PositiveMoney
    current_bid: Optional[PositiveMoney] = None
    bid_increment: PositiveMoney = Decimal("1.00")
    reserve_price: Optional[Money] = None
    buy_now_price: Optional[Money] = None

    # Auction window (immutable once any bid exists)
    auction_start_date: datetime
    auction_end_date: datetime

    # Only explicit transitions (sold, cancelled) are ever persisted here;
    # read effective_status() for the time-derived state
    status: ListingStatus = ListingStatus.DRAFT

    # Aggregates, written only by bid settlement
    total_bids: int = 0
    highest_bidder_id: Optional[str] = None
    winning_bid_id: Optional[str] = None

    # Closure
    sold_to: Optional[str] = None
    sold_at: Optional[datetime] = None
    final_price: Optional[Money] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None

    # Engagement
    watchers: List[str] = []
    views: int = 0
    featured: bool = False

    # Soft delete
    is_active: bool = True

    @field_validator("auction_start_date", "auction_end_date", "sold_at", "cancelled_at")
    @classmethod
    def _as_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @field_validator("tags")
    @classmethod
    def _lowercase_tags(cls, tags: List[str]) -> List[str]:
        return [t.strip().lower() for t in tags if t.strip()]

    @model_validator(mode="after")
    def _check_invariants(self) -> "ListingData":
        if self.current_bid is None:
            self.current_bid = self.starting_bid
        if self.current_bid < self.starting_bid:
            raise ValueError("current_bid cannot be below starting_bid")
        if self.auction_end_date <= self.auction_start_date:
            raise ValueError("Auction end date must be after start date")
        if self.buy_now_price is not None and self.buy_now_price <= self.starting_bid:
            raise ValueError("Buy-now price must be greater than the starting bid")
        return self

    def effective_status(self, now: Optional[datetime]) -> ListingStatus:
        return listing_effective_status(self, now)

    @property
    def reserve_met(self) -> bool:
        if self.reserve_price is None:
            return True
        return self.total_bids > 0 and self.current_bid >= self.reserve_price


class Listing(BaseModelCouchbase[ListingData]):
    _collection_name = "listings"
