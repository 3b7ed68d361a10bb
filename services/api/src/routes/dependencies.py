from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from models.auction.events import EventBus
from models.operations.users import user_create_if_not_exists_and_get
from utils import log

logger = log.get_logger(__name__)

security = HTTPBearer()


def _claim_email(payload: dict) -> str:
    email = payload.get("email")
    # Some providers send a list of {"value": ...} objects
    if isinstance(email, list):
        if not email:
            return ""
        item = email[0]
        email = item.get("value") if isinstance(item, dict) else str(item)
    return str(email) if email else ""


def _claim_roles(payload: dict) -> list:
    roles = payload.get("roles", [])
    if isinstance(roles, str):
        roles = [roles]
    return list(roles)


async def current_user_get(request: Request, token: HTTPAuthorizationCredentials = Depends(security)):
    if not hasattr(request.app.state, "auth_client"):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="No auth_client")

    payload = request.app.state.auth_client.decode_jwt(token.credentials)
    if not payload:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="User ID not found in token")

    roles = _claim_roles(payload)
    role: Optional[str] = next((r for r in ("admin", "seller") if r in roles), None)
    try:
        payload["db_user"] = await user_create_if_not_exists_and_get(user_id, _claim_email(payload), role)
    except Exception as e:
        # Profile and statistics are optional for authorization decisions
        logger.error(f"Failed to ensure user existence for {user_id}: {e}")
    return payload


async def require_authenticated(user: dict = Depends(current_user_get)):
    return user


def _has_role(user: dict, role: str) -> bool:
    if role in _claim_roles(user):
        return True
    db_user = user.get("db_user")
    return bool(db_user and db_user.data.role == role)


async def require_seller(user: dict = Depends(current_user_get)):
    if not (_has_role(user, "seller") or _has_role(user, "admin")):
        logger.warning(f"User {user.get('sub')} attempted seller access without 'seller' role")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Seller privileges required"
        )
    return user


async def require_admin(user: dict = Depends(current_user_get)):
    """
    Dependency to ensure the user has the 'admin' role.
    """
    if not _has_role(user, "admin"):
        logger.warning(f"User {user.get('sub')} attempted admin access without 'admin' role. Roles: {_claim_roles(user)}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin privileges required"
        )
    return user


def get_event_bus(request: Request) -> EventBus:
    return request.app.state.event_bus
