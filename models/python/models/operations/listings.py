"""
Listing lifecycle operations.

Every write goes through ``listing_cas_retry`` so it serializes with bid
settlement on the same document. Bid aggregates (current_bid,
highest_bidder_id, winning_bid_id, total_bids, sold fields) are never touched
here; only ``models.operations.bids`` writes them.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from couchbase.exceptions import CASMismatchException

from models.auction.events import EventPublisher, ListingClosed, publish_all
from models.auction.rejections import Rejection, RejectionCode, reject
from models.auction.state_machine import (
    TERMINAL_STATUSES,
    ListingStatus,
    can_cancel,
    utcnow,
)
from models.entities.couchbase.listings import Listing, ListingData

logger = logging.getLogger(__name__)

START_DATE_GRACE = timedelta(minutes=1)

UPDATABLE_FIELDS = frozenset({
    "title",
    "description",
    "category",
    "subcategory",
    "condition",
    "materials",
    "tags",
    "images",
    "shipping",
    "auction_start_date",
    "auction_end_date",
})


# ---------------------------------------------------------------------------
# CAS-retry helper
# ---------------------------------------------------------------------------

async def listing_cas_retry(
    listing_id: str,
    mutator: Callable[[ListingData], Optional[Rejection]],
    max_retries: int = 5,
    backoff_ms: int = 10,
) -> tuple[Optional[Listing], Optional[Rejection]]:
    """Read-modify-write a listing with CAS-guarded retry.

    *mutator* receives ``ListingData`` and mutates it in place.  It returns
    ``None`` on success or a ``Rejection`` to abort early.  On
    ``CASMismatchException`` the helper re-reads and retries with
    exponential backoff (10 ms, 20 ms, 40 ms, …), so the mutator always
    decides against the freshest document.
    """
    for attempt in range(max_retries + 1):
        listing = await Listing.get(listing_id)
        if not listing or not listing.data.is_active:
            return None, reject(RejectionCode.LISTING_NOT_FOUND, "Listing not found")

        rejection = mutator(listing.data)
        if rejection is not None:
            return None, rejection

        try:
            return await Listing.update(listing), None
        except CASMismatchException:
            if attempt == max_retries:
                break
            logger.debug(f"CAS conflict on listing {listing_id}, attempt {attempt + 1}")
            await asyncio.sleep(backoff_ms / 1000)
            backoff_ms *= 2

    logger.warning(f"Giving up on listing {listing_id} after {max_retries + 1} CAS conflicts")
    return None, reject(
        RejectionCode.CONCURRENCY_CONFLICT, "Concurrent update conflict, please retry"
    )


# ---------------------------------------------------------------------------
# CRUD
# ---------------------------------------------------------------------------

def _not_owner() -> Rejection:
    return reject(RejectionCode.NOT_OWNER, "You can only manage your own listings")


async def listing_create(
    seller_id: str, data: ListingData, now: Optional[datetime] = None
) -> Listing:
    """Create a draft listing. Raises ValueError on an invalid auction window."""
    now = now or utcnow()
    if data.auction_start_date < now - START_DATE_GRACE:
        raise ValueError("Auction start date cannot be in the past")
    if data.auction_end_date <= data.auction_start_date:
        raise ValueError("Auction end date must be after start date")

    data.seller_id = seller_id
    data.status = ListingStatus.DRAFT
    data.current_bid = data.starting_bid
    data.total_bids = 0
    data.highest_bidder_id = None
    data.winning_bid_id = None
    data.watchers = []
    data.views = 0
    data.featured = False
    data.is_active = True
    listing = await Listing.create(data, user_id=seller_id)
    logger.info(f"Listing {listing.id} created by seller {seller_id}")
    return listing


async def listing_get(listing_id: str) -> Optional[Listing]:
    """Get a listing; soft-deleted listings read as missing."""
    listing = await Listing.get(listing_id)
    if not listing or not listing.data.is_active:
        return None
    return listing


async def listing_search(
    category: Optional[str] = None,
    seller_id: Optional[str] = None,
    status: Optional[ListingStatus] = None,
    featured: Optional[bool] = None,
    include_inactive: bool = False,
    limit: int = 50,
    offset: int = 0,
    now: Optional[datetime] = None,
) -> List[Listing]:
    """Search listings.

    ``status`` filters on the effective (time-derived) status, so it is
    applied after the query rather than in N1QL.
    """
    conditions = []
    params: Dict[str, Any] = {}

    if not include_inactive:
        conditions.append("is_active = $is_active")
        params["is_active"] = True
    if category:
        conditions.append("category = $category")
        params["category"] = category
    if seller_id:
        conditions.append("seller_id = $seller_id")
        params["seller_id"] = seller_id
    if featured is not None:
        conditions.append("featured = $featured")
        params["featured"] = featured

    where = " AND ".join(conditions) if conditions else "1=1"
    listings = await Listing.query(where, "ORDER BY created_at DESC", **params)

    if status is not None:
        now = now or utcnow()
        listings = [item for item in listings if item.data.effective_status(now) == status]
    return listings[offset:offset + limit]


async def listing_get_by_seller(seller_id: str) -> List[Listing]:
    return await listing_search(seller_id=seller_id, limit=1000)


async def listing_update(
    listing_id: str,
    updates: Dict[str, Any],
    seller_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> tuple[Optional[Listing], Optional[Rejection]]:
    """Apply allow-listed field changes to a listing that has no bids yet.

    When *seller_id* is given the listing must belong to it.
    Fields outside ``UPDATABLE_FIELDS`` are ignored. Raises ``ValueError``
    (pydantic ``ValidationError``) when the merged listing is invalid or a new
    start date lies in the past.
    """
    now = now or utcnow()
    allowed = {k: v for k, v in updates.items() if k in UPDATABLE_FIELDS}
    ignored = set(updates) - set(allowed)
    if ignored:
        logger.info(f"Ignoring non-updatable listing fields {sorted(ignored)} on {listing_id}")

    def _mutate(data: ListingData) -> Optional[Rejection]:
        if seller_id is not None and data.seller_id != seller_id:
            return _not_owner()
        if data.total_bids > 0:
            return reject(RejectionCode.LISTING_LOCKED, "Cannot update listing with existing bids")
        if data.status in TERMINAL_STATUSES:
            return reject(
                RejectionCode.LISTING_LOCKED, f"Cannot update a {data.status.value} listing"
            )
        merged = ListingData.model_validate({**data.model_dump(), **allowed})
        if (
            merged.auction_start_date != data.auction_start_date
            and merged.auction_start_date < now - START_DATE_GRACE
        ):
            raise ValueError("Auction start date cannot be in the past")
        for key in allowed:
            setattr(data, key, getattr(merged, key))
        return None

    return await listing_cas_retry(listing_id, _mutate)


async def listing_soft_delete(
    listing_id: str, seller_id: Optional[str] = None
) -> tuple[Optional[Listing], Optional[Rejection]]:
    """Hide a listing. Only allowed while it has no bids."""

    def _mutate(data: ListingData) -> Optional[Rejection]:
        if seller_id is not None and data.seller_id != seller_id:
            return _not_owner()
        if data.total_bids > 0:
            return reject(RejectionCode.HAS_BIDS, "Cannot delete listing with existing bids")
        data.is_active = False
        return None

    listing, rejection = await listing_cas_retry(listing_id, _mutate)
    if listing:
        logger.info(f"Listing {listing_id} soft-deleted")
    return listing, rejection


# ---------------------------------------------------------------------------
# Lifecycle transitions
# ---------------------------------------------------------------------------

async def listing_cancel(
    listing_id: str,
    reason: Optional[str] = None,
    publisher: Optional[EventPublisher] = None,
    now: Optional[datetime] = None,
    seller_id: Optional[str] = None,
) -> tuple[Optional[Listing], Optional[Rejection]]:
    """Cancel a pre-sale listing that has no bids, then announce the closure.

    Admin callers pass no *seller_id* and may cancel any listing.
    """
    now = now or utcnow()

    def _mutate(data: ListingData) -> Optional[Rejection]:
        if seller_id is not None and data.seller_id != seller_id:
            return _not_owner()
        rejection = can_cancel(data, now)
        if rejection is not None:
            return rejection
        data.status = ListingStatus.CANCELLED
        data.cancelled_at = now
        data.cancel_reason = reason
        return None

    listing, rejection = await listing_cas_retry(listing_id, _mutate)
    if listing:
        logger.info(f"Listing {listing_id} cancelled: {reason or 'no reason given'}")
        await publish_all(
            publisher,
            [ListingClosed(listing_id=listing_id, reason="cancelled", occurred_at=now)],
        )
    return listing, rejection


# ---------------------------------------------------------------------------
# Engagement
# ---------------------------------------------------------------------------

async def listing_toggle_watch(
    listing_id: str, user_id: str
) -> tuple[Optional[bool], Optional[Rejection]]:
    """Add or remove *user_id* from the watchers. Returns the new watching state."""
    state: Dict[str, bool] = {}

    def _mutate(data: ListingData) -> Optional[Rejection]:
        if user_id in data.watchers:
            data.watchers = [w for w in data.watchers if w != user_id]
            state["watching"] = False
        else:
            data.watchers = [*data.watchers, user_id]
            state["watching"] = True
        return None

    listing, rejection = await listing_cas_retry(listing_id, _mutate)
    if rejection:
        return None, rejection
    return state["watching"], None


async def listing_record_view(listing_id: str) -> None:
    """Best-effort view counter; a lost increment is not worth failing a read."""

    def _mutate(data: ListingData) -> Optional[Rejection]:
        data.views += 1
        return None

    _, rejection = await listing_cas_retry(listing_id, _mutate, max_retries=1)
    if rejection:
        logger.debug(f"View not recorded for listing {listing_id}: {rejection.message}")


async def listing_set_featured(
    listing_id: str, featured: bool
) -> tuple[Optional[Listing], Optional[Rejection]]:

    def _mutate(data: ListingData) -> Optional[Rejection]:
        data.featured = featured
        return None

    return await listing_cas_retry(listing_id, _mutate)
