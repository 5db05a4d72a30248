from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import NotFoundError
from app.models.service import Service
from app.models.user import User


async def get_user(session: AsyncSession, user_id: int, label: str = "User") -> User:
    u = await session.get(User, user_id)
    if u is None:
        raise NotFoundError(f"{label} not found", {"user_id": user_id})
    return u


async def get_user_by_discord_id(session: AsyncSession, discord_id: str, label: str = "User") -> User:
    u = await session.scalar(select(User).where(User.discord_id == str(discord_id)))
    if u is None:
        raise NotFoundError(f"{label} with Discord ID {discord_id} not found", {"discord_id": str(discord_id)})
    return u


async def ensure_service(session: AsyncSession, service_id: str) -> Service:
    svc = await session.get(Service, service_id)
    if svc is None:
        raise NotFoundError("Service not found", {"service_id": service_id})
    return svc
