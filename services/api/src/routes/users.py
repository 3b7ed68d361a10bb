from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException

from models.operations.users import user_get_data_for_frontend
from utils import log
from .dependencies import current_user_get

logger = log.get_logger(__name__)

router = APIRouter(prefix="/users", tags=["users"])

@router.get("/me", response_model=Dict[str, Any])
async def route_user_me(
    user: dict = Depends(current_user_get)
) -> Dict[str, Any]:
    """
    Profile and bidding statistics of the authenticated user.
    """
    user_id = user["sub"]
    try:
        return await user_get_data_for_frontend(user_id)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
