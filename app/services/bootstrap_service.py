from sqlalchemy.ext.asyncio import AsyncEngine

from app.db.session import Base

# registers every table on Base.metadata
from app.models import orders, service, user, wallet  # noqa: F401


async def init_db(engine: AsyncEngine):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
