from typing import Optional
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
import jwt
from sqlalchemy import select

from app.core.exceptions import ForbiddenError
from app.models.user import User
from app.services.escrow_service import EscrowService
from app.services.order_policy import can_manage_order

security = HTTPBearer(auto_error=False)


def get_escrow(request: Request) -> EscrowService:
    return request.app.state.escrow


async def get_current_user(
    request: Request,
    creds: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> User:
    if creds is None or creds.scheme.lower() != "bearer":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    config = request.app.state.settings
    try:
        payload = jwt.decode(creds.credentials, config.JWT_SECRET, algorithms=["HS256"],
                             options={"require": ["exp", "iat", "sub"]})
        uid = int(payload["sub"])
    except (jwt.PyJWTError, KeyError, ValueError) as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token") from e

    # short-lived session: the escrow service runs its own transactions
    async with request.app.state.sessionmaker() as session:
        u = await session.scalar(select(User).where(User.id == uid))
    if not u or u.status != 1:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found or disabled")
    return u


async def require_staff(user: User = Depends(get_current_user)) -> User:
    if not can_manage_order(user.role):
        raise ForbiddenError("Support or admin role required")
    return user
