import logging
from typing import Any, Dict, Optional

from couchbase.exceptions import CASMismatchException, DocumentExistsException

from models.entities.couchbase.users import User, UserData

logger = logging.getLogger(__name__)


async def user_get(user_id: str) -> Optional[User]:
    return await User.get(user_id)


async def user_get_data_for_frontend(user_id: str) -> Dict[str, Any]:
    user = await User.get(user_id)
    if not user:
        raise ValueError(f"User with ID {user_id} not found")
    return {"id": user.id, "user": user.data.model_dump(mode="json")}


async def user_create_if_not_exists_and_get(
    user_id: str, email: str, role: Optional[str] = None
) -> User:
    existing_user = await User.get(user_id)
    if existing_user:
        return existing_user
    new_user_data = UserData(email=email, role=role or "buyer")
    try:
        return await User.create(new_user_data, key=user_id, user_id=user_id)
    except DocumentExistsException:
        # First two requests of a new user raced each other
        return await User.get(user_id)


async def user_record_bid(user_id: str, won: bool = False, max_retries: int = 3) -> None:
    """Bump the bidder's statistics. Lost increments are tolerated."""
    for _ in range(max_retries):
        user = await User.get(user_id)
        if not user:
            logger.debug(f"No profile for bidder {user_id}, statistics not recorded")
            return
        user.data.total_bids += 1
        if won:
            user.data.won_auctions += 1
        try:
            await User.update(user)
            return
        except CASMismatchException:
            continue
    logger.warning(f"Gave up recording bid statistics for user {user_id}")
