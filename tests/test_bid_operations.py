import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest
from couchbase.exceptions import CASMismatchException

from conftest import NOW, RecordingPublisher, clock, store_listing
from models.auction.events import BidAccepted, ListingClosed
from models.auction.rejections import RejectionCode
from models.auction.state_machine import ListingStatus
from models.auction.validator import BidType
from models.entities.couchbase.bids import Bid
from models.entities.couchbase.listings import Listing
from models.entities.couchbase.users import User, UserData
import models.operations.bids as bid_ops
from models.operations.bids import (
    bid_get_by_bidder,
    bid_get_by_listing,
    bid_get_highest,
    bid_get_user_bids_for_listing,
    bid_place,
    bid_reconcile_listing,
    bid_withdraw,
)
from models.operations.listings import listing_soft_delete


async def place(bidder_id, amount, **kwargs):
    kwargs.setdefault("clock", clock())
    return await bid_place("listing-1", bidder_id, Decimal(amount) if amount else None, **kwargs)


async def winners(listing_id="listing-1"):
    return [b for b in await Bid.query("listing_id = $listing_id", listing_id=listing_id) if b.data.is_winning]


# ---------------------------------------------------------------------------
# Placement
# ---------------------------------------------------------------------------

async def test_first_bid_leads():
    await store_listing()

    bid, rejection = await place("buyer-a", "11.00")

    assert rejection is None
    assert bid.data.is_winning is True
    assert bid.data.bid_type == BidType.REGULAR
    listing = await Listing.get("listing-1")
    assert listing.data.current_bid == Decimal("11.00")
    assert listing.data.highest_bidder_id == "buyer-a"
    assert listing.data.winning_bid_id == bid.id
    assert listing.data.total_bids == 1


async def test_too_low_writes_nothing(fake_db):
    await store_listing()

    bid, rejection = await place("buyer-a", "10.50")

    assert bid is None
    assert rejection.code == RejectionCode.BID_TOO_LOW
    assert rejection.minimum_bid == Decimal("11.00")
    assert fake_db.collection("bids").docs == {}
    assert (await Listing.get("listing-1")).data.total_bids == 0


async def test_outbid_flips_the_winner():
    await store_listing()
    bid_a, _ = await place("buyer-a", "11.00")

    bid_b, rejection = await place("buyer-b", "12.00")

    assert rejection is None
    assert (await Bid.get(bid_a.id)).data.is_winning is False
    assert (await Bid.get(bid_b.id)).data.is_winning is True
    listing = await Listing.get("listing-1")
    assert listing.data.highest_bidder_id == "buyer-b"
    assert listing.data.total_bids == 2
    assert (await Bid.get(bid_b.id)).data.previous_bid == Decimal("11.00")


async def test_buy_now_clamps_and_sells():
    await store_listing(current_bid=Decimal("20.00"), buy_now_price=Decimal("50.00"))
    earlier, _ = await place("buyer-a", "21.00")

    bid, rejection = await place("buyer-b", "60.00")

    assert rejection is None
    assert bid.data.bid_type == BidType.BUY_NOW
    assert bid.data.amount == Decimal("50.00")
    listing = await Listing.get("listing-1")
    assert listing.data.status == ListingStatus.SOLD
    assert listing.data.sold_to == "buyer-b"
    assert listing.data.final_price == Decimal("50.00")
    assert [b.id for b in await winners()] == [bid.id]
    assert (await Bid.get(earlier.id)).data.is_winning is False

    _, late = await place("buyer-c", "70.00")
    assert late.code == RejectionCode.NOT_BIDDABLE


async def test_buy_now_intent():
    await store_listing(buy_now_price=Decimal("50.00"))
    bid, rejection = await place("buyer-a", None, buy_now=True)
    assert rejection is None
    assert bid.data.amount == Decimal("50.00")
    assert (await Listing.get("listing-1")).data.status == ListingStatus.SOLD


async def test_stale_active_listing_past_end_is_rejected():
    await store_listing(
        status="active",
        auction_start_date=NOW - timedelta(days=3),
        auction_end_date=NOW - timedelta(seconds=1),
    )
    _, rejection = await place("buyer-a", "100.00")
    assert rejection.code == RejectionCode.NOT_BIDDABLE


async def test_seller_cannot_bid():
    await store_listing()
    _, rejection = await place("seller-1", "11.00")
    assert rejection.code == RejectionCode.SELF_BID


async def test_missing_and_deleted_listings_are_not_found():
    _, rejection = await place("buyer-a", "11.00")
    assert rejection.code == RejectionCode.LISTING_NOT_FOUND

    await store_listing()
    await listing_soft_delete("listing-1")
    _, rejection = await place("buyer-a", "11.00")
    assert rejection.code == RejectionCode.LISTING_NOT_FOUND


async def test_agent_bids_are_recorded_as_auto():
    await store_listing()
    bid, _ = await place("buyer-a", "11.00", placed_by="agent")
    assert bid.data.bid_type == BidType.AUTO


async def test_events_are_published_after_commit():
    await store_listing(buy_now_price=Decimal("50.00"))
    publisher = RecordingPublisher()

    await place("buyer-a", "11.00", publisher=publisher)
    await place("buyer-b", None, buy_now=True, publisher=publisher)

    kinds = [type(e) for e in publisher.events]
    assert kinds == [BidAccepted, BidAccepted, ListingClosed]
    assert publisher.events[1].previous_leader_id == "buyer-a"


async def test_bidder_statistics_are_recorded():
    await User.create_or_update("buyer-a", UserData(email="a@example.com"))
    await store_listing(buy_now_price=Decimal("50.00"))

    await place("buyer-a", "11.00")
    await place("buyer-a", None, buy_now=True)

    user = await User.get("buyer-a")
    assert user.data.total_bids == 2
    assert user.data.won_auctions == 1


async def test_bid_without_profile_still_accepted():
    await store_listing()
    _, rejection = await place("no-profile", "11.00")
    assert rejection is None


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------

async def test_racing_equal_bids_accept_exactly_one():
    await store_listing()

    results = await asyncio.gather(place("buyer-a", "11.00"), place("buyer-b", "11.00"))

    accepted = [bid for bid, rejection in results if rejection is None]
    rejected = [rejection for bid, rejection in results if rejection is not None]
    assert len(accepted) == 1
    assert [r.code for r in rejected] == [RejectionCode.BID_TOO_LOW]
    assert rejected[0].minimum_bid == Decimal("12.00")

    listing = await Listing.get("listing-1")
    assert listing.data.total_bids == 1
    assert listing.data.winning_bid_id == accepted[0].id


async def test_racing_bids_keep_a_single_consistent_winner():
    await store_listing()
    amounts = ["11.00", "13.00", "12.00", "15.00", "14.00", "16.00"]

    results = await asyncio.gather(
        *(
            place(f"buyer-{i}", amount, max_retries=20, backoff_ms=1)
            for i, amount in enumerate(amounts)
        )
    )

    accepted = [bid for bid, rejection in results if rejection is None]
    assert accepted
    for _, rejection in results:
        if rejection is not None:
            assert rejection.code == RejectionCode.BID_TOO_LOW

    listing = await Listing.get("listing-1")
    top = max(accepted, key=lambda b: b.data.amount)
    assert listing.data.total_bids == len(accepted)
    assert listing.data.current_bid == top.data.amount
    assert listing.data.winning_bid_id == top.id
    assert [b.id for b in await winners()] == [top.id]

    # Commit order is strictly increasing in amount
    ordered = sorted(accepted, key=lambda b: b.data.previous_bid)
    assert all(
        later.data.amount > earlier.data.amount for earlier, later in zip(ordered, ordered[1:])
    )


async def test_exhausted_retries_report_a_conflict(monkeypatch, fake_db):
    await store_listing()

    async def always_conflicts(item):
        raise CASMismatchException(message="listing changed")

    monkeypatch.setattr(Listing, "update", always_conflicts)

    bid, rejection = await place("buyer-a", "11.00", max_retries=2, backoff_ms=1)

    assert bid is None
    assert rejection.code == RejectionCode.CONCURRENCY_CONFLICT
    assert fake_db.collection("bids").docs == {}


# ---------------------------------------------------------------------------
# Interrupted settlement
# ---------------------------------------------------------------------------

async def test_failed_bid_write_leaves_the_listing_untouched(monkeypatch):
    await store_listing()

    async def unavailable(key, data, user_id=None):
        raise RuntimeError("bids collection unavailable")

    monkeypatch.setattr(Bid, "create_or_update", unavailable)

    with pytest.raises(RuntimeError):
        await place("buyer-a", "11.00")

    listing = await Listing.get("listing-1")
    assert listing.data.current_bid == Decimal("10.00")
    assert listing.data.total_bids == 0
    assert listing.data.winning_bid_id is None


async def test_listing_only_refers_to_written_bids(monkeypatch):
    await store_listing()

    async def stopped(settlement):
        raise RuntimeError("process stopped after the listing commit")

    with monkeypatch.context() as m:
        m.setattr(bid_ops, "_ledger_apply", stopped)
        with pytest.raises(RuntimeError):
            await place("buyer-a", "11.00")

    listing = await Listing.get("listing-1")
    assert listing.data.total_bids == 1
    committed = await Bid.get(listing.data.winning_bid_id)
    assert committed.data.is_pending is True
    assert committed.data.amount == Decimal("11.00")
    assert await bid_get_by_listing("listing-1") == []

    report, rejection = await bid_reconcile_listing("listing-1", now=NOW)

    assert rejection is None
    assert report.bids_changed == 1
    assert report.missing_bid_ids == []
    repaired = await Bid.get(committed.id)
    assert repaired.data.is_pending is False
    assert repaired.data.is_winning is True
    assert [b.id for b in await bid_get_by_listing("listing-1")] == [committed.id]


async def test_uncommitted_pending_bid_is_discarded_after_grace(monkeypatch, fake_db):
    await store_listing()

    async def timed_out(item):
        raise RuntimeError("listing write timed out")

    with monkeypatch.context() as m:
        m.setattr(Listing, "update", timed_out)
        with pytest.raises(RuntimeError):
            await place("buyer-a", "11.00")

    assert (await Listing.get("listing-1")).data.total_bids == 0
    assert len(fake_db.collection("bids").docs) == 1

    report, _ = await bid_reconcile_listing("listing-1", now=NOW + timedelta(minutes=1))
    assert report.pending_discarded == 0
    assert len(fake_db.collection("bids").docs) == 1

    report, _ = await bid_reconcile_listing("listing-1", now=NOW + timedelta(minutes=10))
    assert report.pending_discarded == 1
    assert fake_db.collection("bids").docs == {}


async def test_pending_bid_cannot_be_withdrawn(monkeypatch):
    await store_listing()

    async def stopped(settlement):
        raise RuntimeError("process stopped after the listing commit")

    with monkeypatch.context() as m:
        m.setattr(bid_ops, "_ledger_apply", stopped)
        with pytest.raises(RuntimeError):
            await place("buyer-a", "11.00")

    pending_id = (await Listing.get("listing-1")).data.winning_bid_id
    _, rejection = await bid_withdraw(pending_id, "buyer-a", clock=clock())
    assert rejection.code == RejectionCode.BID_NOT_FOUND


async def test_committed_bids_link_back_through_displaced_winners():
    await store_listing()
    bid_a, _ = await place("buyer-a", "11.00")
    bid_b, _ = await place("buyer-b", "12.00")

    assert bid_a.data.previous_winning_bid_id is None
    assert (await Bid.get(bid_b.id)).data.previous_winning_bid_id == bid_a.id
    assert all(not b.data.is_pending for b in await bid_get_by_listing("listing-1"))


# ---------------------------------------------------------------------------
# Withdrawal
# ---------------------------------------------------------------------------

async def test_outbid_bid_can_be_withdrawn():
    await store_listing()
    bid_a, _ = await place("buyer-a", "11.00")
    await place("buyer-b", "12.00")

    withdrawn, rejection = await bid_withdraw(bid_a.id, "buyer-a", clock=clock())

    assert rejection is None
    assert withdrawn.data.is_active is False
    assert withdrawn.data.withdrawn_at == NOW
    assert withdrawn.data.withdrawal_reason == "User withdrawal"
    listing = await Listing.get("listing-1")
    assert listing.data.total_bids == 2
    assert listing.data.current_bid == Decimal("12.00")
    assert listing.data.highest_bidder_id == "buyer-b"


async def test_winning_bid_cannot_be_withdrawn():
    await store_listing()
    bid, _ = await place("buyer-a", "11.00")
    _, rejection = await bid_withdraw(bid.id, "buyer-a", clock=clock())
    assert rejection.code == RejectionCode.CANNOT_WITHDRAW_WINNING
    assert (await Bid.get(bid.id)).data.is_active is True


async def test_withdrawal_guards():
    await store_listing()
    bid_a, _ = await place("buyer-a", "11.00")
    await place("buyer-b", "12.00")

    _, rejection = await bid_withdraw("missing", "buyer-a", clock=clock())
    assert rejection.code == RejectionCode.BID_NOT_FOUND

    _, rejection = await bid_withdraw(bid_a.id, "buyer-b", clock=clock())
    assert rejection.code == RejectionCode.NOT_OWNER

    later = clock(NOW + timedelta(days=2))
    _, rejection = await bid_withdraw(bid_a.id, "buyer-a", clock=later)
    assert rejection.code == RejectionCode.AUCTION_CLOSED

    await bid_withdraw(bid_a.id, "buyer-a", reason="Changed my mind", clock=clock())
    _, rejection = await bid_withdraw(bid_a.id, "buyer-a", clock=clock())
    assert rejection.code == RejectionCode.ALREADY_WITHDRAWN
    assert (await Bid.get(bid_a.id)).data.withdrawal_reason == "Changed my mind"


async def test_outbid_bid_cannot_be_withdrawn_after_a_sale():
    await store_listing(buy_now_price=Decimal("50.00"))
    bid_a, _ = await place("buyer-a", "11.00")
    _, rejection = await place("buyer-b", None, buy_now=True)
    assert rejection is None

    _, rejection = await bid_withdraw(bid_a.id, "buyer-a", clock=clock())

    assert rejection.code == RejectionCode.AUCTION_CLOSED
    assert (await Bid.get(bid_a.id)).data.is_active is True


# ---------------------------------------------------------------------------
# Reconcile and queries
# ---------------------------------------------------------------------------

async def test_reconcile_restores_a_single_winner():
    await store_listing()
    bid_a, _ = await place("buyer-a", "11.00")
    bid_b, _ = await place("buyer-b", "12.00")

    stray = await Bid.get(bid_a.id)
    stray.data.is_winning = True
    await Bid.update(stray)
    lost = await Bid.get(bid_b.id)
    lost.data.is_winning = False
    await Bid.update(lost)

    report, rejection = await bid_reconcile_listing("listing-1")

    assert rejection is None
    assert report.bids_changed == 2
    assert [b.id for b in await winners()] == [bid_b.id]
    report, _ = await bid_reconcile_listing("listing-1")
    assert report.bids_changed == 0


async def test_reconcile_reports_a_missing_winning_bid():
    await store_listing(
        current_bid=Decimal("11.00"),
        highest_bidder_id="buyer-a",
        winning_bid_id="lost-bid",
        total_bids=1,
    )

    report, rejection = await bid_reconcile_listing("listing-1", now=NOW)

    assert rejection is None
    assert report.missing_bid_ids == ["lost-bid"]
    assert report.bids_changed == 0


async def test_history_lists_active_bids_newest_first():
    await store_listing()
    bid_a, _ = await place("buyer-a", "11.00", clock=clock(NOW))
    bid_b, _ = await place("buyer-b", "12.00", clock=clock(NOW + timedelta(minutes=1)))
    bid_c, _ = await place("buyer-a", "13.00", clock=clock(NOW + timedelta(minutes=2)))
    await bid_withdraw(bid_b.id, "buyer-b", clock=clock(NOW + timedelta(minutes=3)))

    history = await bid_get_by_listing("listing-1")
    assert [b.id for b in history] == [bid_c.id, bid_a.id]
    assert [b.id for b in await bid_get_by_listing("listing-1", limit=1, offset=1)] == [bid_a.id]

    assert (await bid_get_highest("listing-1")).id == bid_c.id
    mine = await bid_get_user_bids_for_listing("listing-1", "buyer-a")
    assert [b.id for b in mine] == [bid_c.id, bid_a.id]


async def test_highest_is_none_without_bids():
    await store_listing()
    assert await bid_get_highest("listing-1") is None


async def test_bidder_view_filters_by_outcome():
    await store_listing("listing-1")
    await store_listing("listing-2", auction_end_date=NOW + timedelta(hours=1))
    await place("buyer-a", "11.00")
    await place("buyer-b", "12.00")
    await bid_place("listing-2", "buyer-a", Decimal("11.00"), clock=clock())

    async def statuses(status, at=NOW):
        pairs = await bid_get_by_bidder("buyer-a", status=status, now=at)
        return sorted(listing.id for _, listing in pairs)

    assert await statuses("winning") == ["listing-2"]
    assert await statuses("losing") == ["listing-1"]
    assert await statuses("won") == []

    after_listing_2 = NOW + timedelta(hours=2)
    assert await statuses("won", after_listing_2) == ["listing-2"]
    assert await statuses("winning", after_listing_2) == []
    assert await statuses("lost", NOW + timedelta(days=2)) == ["listing-1"]
