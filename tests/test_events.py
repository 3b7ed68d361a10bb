from decimal import Decimal

from conftest import NOW
from models.auction.events import BidAccepted, EventBus, ListingClosed, publish_all
from models.auction.validator import BidType


def accepted(listing_id="listing-1", amount="11.00"):
    return BidAccepted(
        listing_id=listing_id,
        bid_id="bid-1",
        bidder_id="buyer-1",
        amount=Decimal(amount),
        bid_type=BidType.REGULAR,
        occurred_at=NOW,
    )


async def test_bus_delivers_only_to_the_listings_subscribers():
    bus = EventBus()
    room = bus.subscribe("listing-1")
    other = bus.subscribe("listing-2")

    await bus.publish(accepted())

    assert room.get_nowait().bid_id == "bid-1"
    assert other.empty()


async def test_full_queue_drops_its_oldest_event():
    bus = EventBus(max_queue_size=2)
    room = bus.subscribe("listing-1")

    for amount in ("11.00", "12.00", "13.00"):
        await bus.publish(accepted(amount=amount))

    assert [room.get_nowait().amount for _ in range(2)] == [Decimal("12.00"), Decimal("13.00")]


async def test_unsubscribe():
    bus = EventBus()
    room = bus.subscribe("listing-1")
    assert bus.subscriber_count("listing-1") == 1
    bus.unsubscribe("listing-1", room)
    bus.unsubscribe("listing-1", room)
    assert bus.subscriber_count("listing-1") == 0


class BrokenPublisher:
    def __init__(self):
        self.calls = 0

    async def publish(self, event):
        self.calls += 1
        raise ConnectionError("broker down")


async def test_publish_all_survives_publisher_failures():
    publisher = BrokenPublisher()
    closed = ListingClosed(listing_id="listing-1", reason="sold", occurred_at=NOW)
    await publish_all(publisher, [accepted(), closed])
    assert publisher.calls == 2


async def test_publish_all_without_publisher():
    await publish_all(None, [accepted()])
