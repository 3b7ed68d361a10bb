from fastapi import APIRouter
from utils import log

from .admin import router as admin_router
from .bids import router as bids_router
from .listings import router as listings_router
from .users import router as users_router

logger = log.get_logger(__name__)

router = APIRouter(prefix="/api")
router.include_router(users_router)
router.include_router(listings_router)
router.include_router(bids_router)
router.include_router(admin_router)


@router.post("/seed", tags=["dev"])
async def route_seed():
    """Populate the database with fake seed data (dev only)."""
    from seed import run_seed

    counts = await run_seed()
    return {"status": "ok", "seeded": counts}


@router.get("/health", tags=["dev"])
async def route_health():
    return {"status": "ok"}
