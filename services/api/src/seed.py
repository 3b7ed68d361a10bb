"""
Database seeding script for BidCraft.

Populates Couchbase with realistic fake data for development:
- 1 admin, 3 sellers, 4 buyers
- 10 handcraft listings across sellers: upcoming, live, ended, one with buy-now
- Bidding history on the live and ended listings, placed through the
  normal bid path so aggregates and winning flags are consistent

Run standalone:   python seed.py
Or via API:       POST /api/seed
"""

import asyncio
import random
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from models.entities.couchbase.listings import Listing, ListingData
from models.entities.couchbase.users import User, UserData
from models.operations.bids import bid_place

from utils import log

logger = log.get_logger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _from_now(days: float = 0, hours: float = 0) -> datetime:
    return datetime.now(timezone.utc) + timedelta(days=days, hours=hours)


# ---------------------------------------------------------------------------
# Seed data definitions
# ---------------------------------------------------------------------------

ADMIN = {"key": "admin-1", "email": "admin@bidcraft.dev", "role": "admin", "first_name": "Ada"}

SELLERS = [
    {"key": "seller-1", "email": "mara@clayandkiln.co", "role": "seller",
     "first_name": "Mara", "last_name": "Okafor", "shop_name": "Clay & Kiln"},
    {"key": "seller-2", "email": "tomas@silverthread.studio", "role": "seller",
     "first_name": "Tomás", "last_name": "Reyes", "shop_name": "Silverthread Studio"},
    {"key": "seller-3", "email": "ines@grainworks.shop", "role": "seller",
     "first_name": "Inès", "last_name": "Laurent", "shop_name": "Grainworks"},
]

BUYERS = [
    {"key": "buyer-1", "email": "jo@example.com", "first_name": "Jo"},
    {"key": "buyer-2", "email": "sam@example.com", "first_name": "Sam"},
    {"key": "buyer-3", "email": "alex@example.com", "first_name": "Alex"},
    {"key": "buyer-4", "email": "kim@example.com", "first_name": "Kim"},
]


def _build_listings() -> list[dict]:
    """Listings with windows relative to now: (start_days, end_days) offsets."""
    specs = [
        ("listing-1", "seller-1", "Wood-fired stoneware vase", "pottery", "new",
         ["stoneware", "ash glaze"], "45.00", "2.50", None, (-2, 3)),
        ("listing-2", "seller-1", "Set of four celadon tea bowls", "pottery", "new",
         ["porcelain"], "30.00", "1.00", "120.00", (-1, 5)),
        ("listing-3", "seller-1", "Raku bud vase", "pottery", "like-new",
         ["raku clay"], "18.00", "1.00", None, (2, 9)),
        ("listing-4", "seller-2", "Hammered sterling cuff", "jewelry", "new",
         ["sterling silver"], "60.00", "5.00", "200.00", (-3, 2)),
        ("listing-5", "seller-2", "Garnet drop earrings", "jewelry", "new",
         ["silver", "garnet"], "25.00", "1.00", None, (-10, -1)),
        ("listing-6", "seller-2", "Handwoven wool throw", "textiles", "new",
         ["merino wool"], "80.00", "5.00", None, (1, 8)),
        ("listing-7", "seller-3", "Walnut serving board", "woodwork", "new",
         ["black walnut"], "35.00", "1.00", "90.00", (-1, 4)),
        ("listing-8", "seller-3", "Hand-turned maple bowl", "woodwork", "good",
         ["maple"], "22.00", "1.00", None, (-7, -2)),
        ("listing-9", "seller-3", "Forged steel bottle opener", "metalwork", "new",
         ["carbon steel"], "12.00", "0.50", None, (-1, 6)),
        ("listing-10", "seller-3", "Stained glass sun catcher", "glasswork", "new",
         ["cathedral glass", "lead came"], "28.00", "1.00", None, (3, 10)),
    ]
    listings = []
    for key, seller, title, category, condition, materials, start, incr, buy_now, window in specs:
        listings.append({
            "key": key,
            "seller_id": seller,
            "title": title,
            "description": f"{title}, made by hand in a small studio. One of a kind.",
            "category": category,
            "condition": condition,
            "materials": materials,
            "tags": [category, "handmade"],
            "starting_bid": Decimal(start),
            "bid_increment": Decimal(incr),
            "buy_now_price": Decimal(buy_now) if buy_now else None,
            "auction_start_date": _from_now(days=window[0]),
            "auction_end_date": _from_now(days=window[1]),
            "featured": key in ("listing-1", "listing-4"),
        })
    return listings


async def _seed_bids(listing_id: str, rounds: int, clock) -> int:
    """Alternate random buyers raising by one to three increments."""
    placed = 0
    for _ in range(rounds):
        listing = await Listing.get(listing_id)
        bidder = random.choice([b["key"] for b in BUYERS if b["key"] != listing.data.highest_bidder_id])
        amount = listing.data.current_bid + listing.data.bid_increment * random.randint(1, 3)
        if listing.data.buy_now_price and amount >= listing.data.buy_now_price:
            break
        bid, rejection = await bid_place(listing_id, bidder, amount, clock=clock)
        if rejection:
            logger.warning(f"Seed bid on {listing_id} rejected: {rejection.message}")
            break
        placed += 1
    return placed


async def run_seed() -> dict:
    """Insert all seed data. Returns summary counts."""
    counts = {"users": 0, "listings": 0, "bids": 0}

    # ---- Users ----
    for u in [ADMIN] + SELLERS + BUYERS:
        fields = {k: v for k, v in u.items() if k != "key"}
        await User.create_or_update(u["key"], UserData(**fields))
        counts["users"] += 1
    logger.info(f"Seeded {counts['users']} users")

    # ---- Listings ----
    listings = _build_listings()
    for listing in listings:
        fields = {k: v for k, v in listing.items() if k != "key"}
        await Listing.create_or_update(listing["key"], ListingData(**fields), user_id=listing["seller_id"])
        counts["listings"] += 1
    logger.info(f"Seeded {counts['listings']} listings")

    # ---- Bids ----
    for listing in listings:
        start, end = listing["auction_start_date"], listing["auction_end_date"]
        now = datetime.now(timezone.utc)
        if start > now:
            continue
        # Ended auctions get their history as of an hour before closing
        at = min(now, end - timedelta(hours=1))
        counts["bids"] += await _seed_bids(listing["key"], random.randint(2, 6), clock=lambda at=at: at)
    logger.info(f"Seeded {counts['bids']} bids")

    logger.info(f"Seeding complete: {counts}")
    return counts


# ---------------------------------------------------------------------------
# Standalone entrypoint
# ---------------------------------------------------------------------------

async def _main():
    from clients.couchbase import check_connection
    await check_connection()

    result = await run_seed()
    print(f"Seed complete: {result}")


if __name__ == "__main__":
    log.init("INFO")
    asyncio.run(_main())
