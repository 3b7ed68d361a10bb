"""
Auction lifecycle.

Time-derived states (scheduled / active / ended) are never trusted from the
stored ``status`` field: they are recomputed from the auction window on every
read. Only explicit transitions (sold, cancelled) are persisted, which is why
no scheduler is needed to flip listings when their window opens or closes.

    draft | scheduled | active  --now < start-->      scheduled
    draft | scheduled | active  --start <= now < end--> active
    draft | scheduled | active  --now >= end-->        ended
    active                      --buy-now accepted-->   sold       (terminal)
    draft | scheduled | active  --cancel, no bids-->   cancelled  (terminal)
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Protocol

from .rejections import Rejection, RejectionCode, reject


class ListingStatus(str, Enum):
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    ENDED = "ended"
    SOLD = "sold"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({ListingStatus.SOLD, ListingStatus.CANCELLED})
CANCELLABLE_STATUSES = frozenset({ListingStatus.DRAFT, ListingStatus.SCHEDULED, ListingStatus.ACTIVE})
CLOSED_STATUSES = frozenset({ListingStatus.ENDED, ListingStatus.SOLD})


class AuctionWindow(Protocol):
    status: str
    auction_start_date: Optional[datetime]
    auction_end_date: Optional[datetime]
    total_bids: int


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _window(
    start: Optional[datetime], end: Optional[datetime], now: Optional[datetime]
) -> Optional[tuple[datetime, datetime, datetime]]:
    """Normalized (start, end, now), or None when any part is missing or end <= start."""
    start, end, now = _as_utc(start), _as_utc(end), _as_utc(now)
    if start is None or end is None or now is None or end <= start:
        return None
    return start, end, now


def _coerce_status(stored) -> Optional[ListingStatus]:
    try:
        return ListingStatus(stored)
    except ValueError:
        return None


def effective_status(
    stored,
    start: Optional[datetime],
    end: Optional[datetime],
    now: Optional[datetime],
) -> ListingStatus:
    status = _coerce_status(stored)
    if status is None:
        # Unknown stored value: treat as not yet published
        return ListingStatus.DRAFT
    if status in TERMINAL_STATUSES or status == ListingStatus.ENDED:
        return status

    window = _window(start, end, now)
    if window is None:
        return status
    start, end, now = window

    if now < start:
        return ListingStatus.SCHEDULED
    if now < end:
        return ListingStatus.ACTIVE
    return ListingStatus.ENDED


def listing_effective_status(listing: AuctionWindow, now: Optional[datetime]) -> ListingStatus:
    return effective_status(
        listing.status, listing.auction_start_date, listing.auction_end_date, now
    )


def is_biddable(listing: Optional[AuctionWindow], now: Optional[datetime]) -> bool:
    """The single gate for accepting bids. Fails closed on any missing or malformed input."""
    if listing is None:
        return False
    window = _window(
        getattr(listing, "auction_start_date", None),
        getattr(listing, "auction_end_date", None),
        now,
    )
    if window is None:
        return False
    start, end, now = window
    if listing_effective_status(listing, now) != ListingStatus.ACTIVE:
        return False
    return start <= now < end


def can_sell(listing: AuctionWindow, now: Optional[datetime]) -> bool:
    return is_biddable(listing, now)


def can_cancel(listing: AuctionWindow, now: Optional[datetime]) -> Optional[Rejection]:
    """None if the listing may be cancelled now, otherwise the reason it may not."""
    status = listing_effective_status(listing, now)
    if status not in CANCELLABLE_STATUSES:
        return reject(
            RejectionCode.NOT_CANCELLABLE,
            f"Cannot cancel a listing that is {status.value}",
        )
    if listing.total_bids > 0:
        return reject(
            RejectionCode.HAS_BIDS,
            "Cannot cancel a listing with existing bids",
        )
    return None


def time_remaining(listing: AuctionWindow, now: Optional[datetime]) -> float:
    """Seconds left in an active auction, 0 otherwise."""
    if listing_effective_status(listing, now) != ListingStatus.ACTIVE:
        return 0.0
    end, now = _as_utc(listing.auction_end_date), _as_utc(now)
    return max(0.0, (end - now).total_seconds())
