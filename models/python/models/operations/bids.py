"""
Bid placement, withdrawal and ledger queries.

The listing document is the serialization point for a listing's bids:
``bid_place`` validates against a freshly read listing and commits the new
aggregates with a CAS-guarded replace, retrying from the re-read on
``CASMismatchException``. Each bid document is written as pending, under a
key generated once per placement, before the listing commit that accepts it,
and promoted afterwards; a listing therefore only ever points at bid
documents that exist.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, List, Literal, Optional, Set, Tuple

from couchbase.exceptions import CASMismatchException
from pydantic import BaseModel, Field

from models.auction.events import EventPublisher, publish_all
from models.auction.ledger import Settlement, append_and_settle, apply_withdrawal, check_withdrawal
from models.auction.rejections import Rejection, RejectionCode, reject
from models.auction.state_machine import CLOSED_STATUSES, utcnow
from models.auction.validator import BidType, validate_bid
from models.entities.couchbase.bids import Bid, BidData
from models.entities.couchbase.listings import Listing, ListingData
from models.operations.listings import listing_cas_retry, listing_get
from models.operations.users import user_record_bid

logger = logging.getLogger(__name__)

BidStatusFilter = Literal["winning", "losing", "won", "lost"]


def _conflict() -> Rejection:
    return reject(RejectionCode.CONCURRENCY_CONFLICT, "Concurrent update conflict, please retry")


# ---------------------------------------------------------------------------
# CAS-retry helper for bid documents
# ---------------------------------------------------------------------------

async def _bid_cas_retry(
    bid_id: str,
    mutator: Callable[[BidData], Optional[Rejection]],
    max_retries: int = 5,
    backoff_ms: int = 10,
) -> tuple[Optional[Bid], Optional[Rejection]]:
    """Same contract as ``listing_cas_retry`` for a single bid document."""
    for attempt in range(max_retries + 1):
        bid = await Bid.get(bid_id)
        if not bid:
            return None, reject(RejectionCode.BID_NOT_FOUND, "Bid not found")

        rejection = mutator(bid.data)
        if rejection is not None:
            return None, rejection

        try:
            return await Bid.update(bid), None
        except CASMismatchException:
            if attempt == max_retries:
                break
            await asyncio.sleep(backoff_ms / 1000)
            backoff_ms *= 2

    return None, _conflict()


async def _bid_set_winning(bid_id: str, is_winning: bool, committed: bool = False) -> None:
    def _mutate(data: BidData) -> Optional[Rejection]:
        data.is_winning = is_winning
        if committed:
            data.is_pending = False
        return None

    _, rejection = await _bid_cas_retry(bid_id, _mutate)
    if rejection is not None and rejection.code == RejectionCode.BID_NOT_FOUND:
        logger.debug(f"Bid {bid_id} no longer exists, skipping is_winning={is_winning}")
    elif rejection is not None:
        logger.warning(f"Could not set is_winning={is_winning} on bid {bid_id}: {rejection.message}")


# ---------------------------------------------------------------------------
# Placement (CAS-critical)
# ---------------------------------------------------------------------------

async def bid_place(
    listing_id: str,
    bidder_id: str,
    amount: Optional[Decimal],
    buy_now: bool = False,
    placed_by: Literal["human", "agent"] = "human",
    publisher: Optional[EventPublisher] = None,
    clock: Callable[[], datetime] = utcnow,
    max_retries: int = 5,
    backoff_ms: int = 10,
    user_agent: str = "",
    ip_address: str = "",
) -> Tuple[Optional[Bid], Optional[Rejection]]:
    """
    Validate and settle a bid against the current listing.

    CAS flow, repeated from step 1 on conflict:
    1. Read the listing with its CAS token
    2. Validate against that snapshot (state, ownership, amount, buy-now)
    3. Compute the settlement (aggregates, new bid, demotions, events)
    4. Write the bid document as pending under its pre-generated key
    5. CAS-replace the listing; this is the point the bid is accepted
    6. Demote previous winners and promote the new bid
    7. Update bidder statistics and publish events

    The listing never references a bid document that does not exist. If the
    process stops between steps 5 and 6, ``bid_reconcile_listing`` finishes
    the promotion.

    Returns (bid, rejection). On success rejection is None.
    """
    bid_id = str(uuid.uuid4())
    settlement: Optional[Settlement] = None
    pending_written = False
    rejection: Optional[Rejection] = None

    for attempt in range(max_retries + 1):
        listing = await Listing.get(listing_id)
        if not listing or not listing.data.is_active:
            rejection = reject(RejectionCode.LISTING_NOT_FOUND, "Listing not found")
            break

        now = clock()
        decision = validate_bid(
            listing.data, bidder_id, amount, now, buy_now=buy_now, placed_by=placed_by
        )
        if isinstance(decision, Rejection):
            logger.info(
                f"Bid by {bidder_id} on listing {listing_id} rejected: {decision.code.value}"
            )
            rejection = decision
            break

        settlement = append_and_settle(
            listing_id,
            listing.data,
            bid_id,
            bidder_id,
            decision,
            now,
            user_agent=user_agent,
            ip_address=ip_address,
        )
        pending = settlement.bid.model_copy(update={"is_winning": False, "is_pending": True})
        await Bid.create_or_update(bid_id, pending, user_id=bidder_id)
        pending_written = True

        listing.data = settlement.listing
        try:
            await Listing.update(listing)
            break
        except CASMismatchException:
            settlement = None
            if attempt == max_retries:
                break
            logger.debug(f"CAS conflict placing bid on listing {listing_id}, attempt {attempt + 1}")
            await asyncio.sleep(backoff_ms / 1000)
            backoff_ms *= 2

    if settlement is None:
        # The listing was never committed against this bid
        if pending_written:
            await Bid.delete(bid_id)
        if rejection is not None:
            return None, rejection
        logger.warning(
            f"Bid by {bidder_id} on listing {listing_id} lost {max_retries + 1} CAS races"
        )
        return None, _conflict()

    bid = await _ledger_apply(settlement)
    logger.info(
        f"Bid {bid_id} accepted on listing {listing_id}: {bidder_id} "
        f"{settlement.bid.bid_type.value} {settlement.bid.amount}"
    )

    try:
        await user_record_bid(bidder_id, won=settlement.bid.bid_type == BidType.BUY_NOW)
    except Exception as e:
        logger.warning(f"Failed to record bid statistics for user {bidder_id}: {e}")

    await publish_all(publisher, settlement.events)
    return bid, None


def _promote(data: BidData) -> Optional[Rejection]:
    data.is_pending = False
    data.is_winning = data.is_active
    return None


async def _ledger_apply(settlement: Settlement) -> Bid:
    """Finish the bid writes for a committed settlement."""
    listing_id = settlement.bid.listing_id

    for demote_id in settlement.demote_bid_ids:
        await _bid_set_winning(demote_id, False)

    if settlement.demote_all_others:
        winners = await Bid.query(
            "listing_id = $listing_id AND is_winning = $is_winning",
            listing_id=listing_id,
            is_winning=True,
        )
        for other in winners:
            if other.id != settlement.bid_id and other.id not in settlement.demote_bid_ids:
                await _bid_set_winning(other.id, False)

    bid, rejection = await _bid_cas_retry(settlement.bid_id, _promote)
    if bid is None:
        # Committed all the same; reconcile completes the promotion
        logger.warning(
            f"Could not promote bid {settlement.bid_id} on listing {listing_id}: {rejection.message}"
        )
        return Bid(id=settlement.bid_id, data=settlement.bid)

    # A later bid may have committed and demoted this one before it was
    # promoted; the listing pointer settles who is winning.
    listing = await Listing.get(listing_id)
    if listing and listing.data.winning_bid_id != settlement.bid_id:
        logger.info(f"Bid {settlement.bid_id} was outbid before its promotion finished")
        await _bid_set_winning(settlement.bid_id, False)
        bid.data.is_winning = False

    return bid


# ---------------------------------------------------------------------------
# Withdrawal
# ---------------------------------------------------------------------------

async def bid_withdraw(
    bid_id: str,
    acting_user_id: str,
    reason: Optional[str] = None,
    clock: Callable[[], datetime] = utcnow,
) -> Tuple[Optional[Bid], Optional[Rejection]]:
    """
    Withdraw a non-winning bid while its auction is still open.

    The winner and status checks run inside a listing CAS write, so a
    withdrawal cannot interleave with a settlement that makes the bid the
    winner or closes the listing.
    """
    bid = await Bid.get(bid_id)
    if not bid or bid.data.is_pending:
        return None, reject(RejectionCode.BID_NOT_FOUND, "Bid not found")

    now = clock()
    # Ownership and activity do not depend on the listing
    if acting_user_id != bid.data.bidder_id:
        return None, reject(RejectionCode.NOT_OWNER, "You can only withdraw your own bids")
    if not bid.data.is_active:
        return None, reject(RejectionCode.ALREADY_WITHDRAWN, "Bid has already been withdrawn")

    def _guard(data: ListingData) -> Optional[Rejection]:
        return check_withdrawal(bid_id, bid.data, data, acting_user_id, now)

    _, rejection = await listing_cas_retry(bid.data.listing_id, _guard)
    if rejection is not None:
        logger.info(f"Withdrawal of bid {bid_id} rejected: {rejection.code.value}")
        return None, rejection

    def _withdraw(data: BidData) -> Optional[Rejection]:
        if not data.is_active:
            return reject(RejectionCode.ALREADY_WITHDRAWN, "Bid has already been withdrawn")
        withdrawn = apply_withdrawal(data, reason, now)
        data.is_active = withdrawn.is_active
        data.withdrawn_at = withdrawn.withdrawn_at
        data.withdrawal_reason = withdrawn.withdrawal_reason
        return None

    withdrawn_bid, rejection = await _bid_cas_retry(bid_id, _withdraw)
    if withdrawn_bid:
        logger.info(f"Bid {bid_id} withdrawn by {acting_user_id}")
    return withdrawn_bid, rejection


# ---------------------------------------------------------------------------
# Repair
# ---------------------------------------------------------------------------

# Pending bids younger than this may still be on their way to a listing commit
PENDING_GRACE = timedelta(minutes=5)


class ReconcileReport(BaseModel):
    bids_changed: int = 0
    pending_discarded: int = 0
    # Committed bids the listing refers to whose documents are gone
    missing_bid_ids: List[str] = Field(default_factory=list)


async def _committed_bid_ids(listing: Listing) -> Tuple[Set[str], List[str]]:
    """Walk the displaced-winner links back from the listing's winning bid."""
    committed: Set[str] = set()
    missing: List[str] = []
    bid_id = listing.data.winning_bid_id
    while bid_id and bid_id not in committed:
        bid = await Bid.get(bid_id)
        if bid is None:
            missing.append(bid_id)
            break
        committed.add(bid_id)
        bid_id = bid.data.previous_winning_bid_id
    return committed, missing


async def bid_reconcile_listing(
    listing_id: str,
    now: Optional[datetime] = None,
    pending_grace: timedelta = PENDING_GRACE,
) -> Tuple[Optional[ReconcileReport], Optional[Rejection]]:
    """Bring a listing's bid documents back in line with the listing.

    Committed bids left pending are promoted, ``is_winning`` is made to agree
    with ``winning_bid_id``, pending bids the listing never committed are
    deleted once older than *pending_grace*, and committed bids without a
    document are reported.
    """
    listing = await listing_get(listing_id)
    if not listing:
        return None, reject(RejectionCode.LISTING_NOT_FOUND, "Listing not found")

    now = now or utcnow()
    committed, missing = await _committed_bid_ids(listing)
    report = ReconcileReport(missing_bid_ids=missing)
    if missing:
        logger.error(f"Listing {listing_id} refers to missing bid document(s): {missing}")

    for bid in await Bid.query("listing_id = $listing_id", listing_id=listing_id):
        if bid.data.is_pending and bid.id not in committed:
            if now - bid.data.placed_at >= pending_grace and await Bid.delete(bid.id):
                report.pending_discarded += 1
            continue

        should_win = bid.id == listing.data.winning_bid_id and bid.data.is_active
        if bid.data.is_pending or bid.data.is_winning != should_win:
            await _bid_set_winning(bid.id, should_win, committed=True)
            report.bids_changed += 1

    if report.bids_changed or report.pending_discarded:
        logger.warning(
            f"Reconciled listing {listing_id}: {report.bids_changed} bid(s) changed, "
            f"{report.pending_discarded} pending bid(s) discarded"
        )
    return report, None


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

async def bid_get(bid_id: str) -> Optional[Bid]:
    return await Bid.get(bid_id)


async def bid_get_by_listing(listing_id: str, limit: int = 50, offset: int = 0) -> List[Bid]:
    """Active bids on a listing, newest first."""
    bids = await Bid.query(
        "listing_id = $listing_id AND is_active = $is_active AND is_pending = $is_pending",
        "ORDER BY placed_at DESC",
        listing_id=listing_id,
        is_active=True,
        is_pending=False,
    )
    bids.sort(key=lambda b: b.data.placed_at, reverse=True)
    return bids[offset:offset + limit]


async def bid_get_highest(listing_id: str) -> Optional[Bid]:
    """The listing's winning bid, which is always its highest active bid."""
    listing = await listing_get(listing_id)
    if not listing or not listing.data.winning_bid_id:
        return None
    return await Bid.get(listing.data.winning_bid_id)


async def bid_get_user_bids_for_listing(listing_id: str, bidder_id: str) -> List[Bid]:
    bids = await Bid.query(
        "listing_id = $listing_id AND bidder_id = $bidder_id AND is_pending = $is_pending",
        "ORDER BY placed_at DESC",
        listing_id=listing_id,
        bidder_id=bidder_id,
        is_pending=False,
    )
    bids.sort(key=lambda b: b.data.placed_at, reverse=True)
    return bids


def _bid_matches_status(
    bid: Bid, listing: Optional[Listing], status: BidStatusFilter, now: datetime
) -> bool:
    if listing is None:
        return False
    winning = listing.data.winning_bid_id == bid.id
    closed = listing.data.effective_status(now) in CLOSED_STATUSES
    if status == "winning":
        return winning and not closed
    if status == "losing":
        return not winning and not closed
    if status == "won":
        return winning and closed
    return not winning and closed


async def bid_get_by_bidder(
    bidder_id: str,
    status: Optional[BidStatusFilter] = None,
    limit: int = 50,
    offset: int = 0,
    now: Optional[datetime] = None,
) -> List[Tuple[Bid, Optional[Listing]]]:
    """A bidder's active bids with their listings, newest first.

    *status* is judged against the listing's winning pointer and effective
    status: ``winning``/``losing`` while the auction is open,
    ``won``/``lost`` once it has ended or sold.
    """
    now = now or utcnow()
    bids = await Bid.query(
        "bidder_id = $bidder_id AND is_active = $is_active AND is_pending = $is_pending",
        "ORDER BY placed_at DESC",
        bidder_id=bidder_id,
        is_active=True,
        is_pending=False,
    )
    bids.sort(key=lambda b: b.data.placed_at, reverse=True)

    listings: Dict[str, Optional[Listing]] = {}
    for listing_id in {b.data.listing_id for b in bids}:
        listings[listing_id] = await listing_get(listing_id)

    pairs = [(b, listings.get(b.data.listing_id)) for b in bids]
    if status is not None:
        pairs = [pair for pair in pairs if _bid_matches_status(*pair, status, now)]
    return pairs[offset:offset + limit]
