"""
Domain events emitted after a bid or closure has been committed.

Delivery (outbid e-mails, live auction rooms) belongs to whoever implements
``EventPublisher``. A publisher failure never rolls back a committed bid.
"""

import asyncio
import logging
from collections import defaultdict
from datetime import datetime
from decimal import Decimal
from typing import DefaultDict, List, Literal, Optional, Protocol, Set, Union

from pydantic import BaseModel, ConfigDict

from .validator import BidType

logger = logging.getLogger(__name__)


class BidAccepted(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_type: Literal["bid_accepted"] = "bid_accepted"
    listing_id: str
    bid_id: str
    bidder_id: str
    amount: Decimal
    bid_type: BidType
    previous_leader_id: Optional[str] = None
    occurred_at: datetime


class ListingClosed(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_type: Literal["listing_closed"] = "listing_closed"
    listing_id: str
    reason: Literal["sold", "cancelled"]
    occurred_at: datetime


AuctionEvent = Union[BidAccepted, ListingClosed]


class EventPublisher(Protocol):
    async def publish(self, event: AuctionEvent) -> None: ...


async def publish_all(publisher: Optional[EventPublisher], events: List[AuctionEvent]) -> None:
    """Hand committed events to *publisher*, logging (not raising) delivery failures."""
    if publisher is None:
        return
    for event in events:
        try:
            await publisher.publish(event)
        except Exception as e:
            logger.warning(
                f"Failed to publish {event.event_type} for listing {event.listing_id}: {e}"
            )


class EventBus:
    """In-process fan-out of auction events to per-listing subscriber queues.

    Used by the live auction-room stream; each subscriber gets its own bounded
    queue and a slow subscriber only loses its own oldest events.
    """

    def __init__(self, max_queue_size: int = 100) -> None:
        self.max_queue_size = max_queue_size
        self._subscribers: DefaultDict[str, Set[asyncio.Queue]] = defaultdict(set)

    def subscribe(self, listing_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue_size)
        self._subscribers[listing_id].add(queue)
        return queue

    def unsubscribe(self, listing_id: str, queue: asyncio.Queue) -> None:
        queues = self._subscribers.get(listing_id)
        if not queues:
            return
        queues.discard(queue)
        if not queues:
            del self._subscribers[listing_id]

    def subscriber_count(self, listing_id: str) -> int:
        return len(self._subscribers.get(listing_id, ()))

    async def publish(self, event: AuctionEvent) -> None:
        for queue in list(self._subscribers.get(event.listing_id, ())):
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(event)
        logger.debug(
            f"Published {event.event_type} for listing {event.listing_id} "
            f"to {self.subscriber_count(event.listing_id)} subscriber(s)"
        )
