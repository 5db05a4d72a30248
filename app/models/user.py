import enum
from datetime import datetime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Integer, DateTime, BigInteger, Enum
from app.core.timeutil import now_utc
from app.db.session import Base


class UserRole(str, enum.Enum):
    CUSTOMER = "CUSTOMER"
    WORKER = "WORKER"
    SUPPORT = "SUPPORT"
    ADMIN = "ADMIN"


class User(Base):
    __tablename__ = "user"

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    fullname: Mapped[str | None] = mapped_column(String(128))
    # chat-platform identity, resolved by the bot
    discord_id: Mapped[str | None] = mapped_column(String(32), unique=True)
    role: Mapped[UserRole] = mapped_column(Enum(UserRole, native_enum=False, length=16), default=UserRole.CUSTOMER)
    status: Mapped[int] = mapped_column(Integer, default=1)  # 1 active

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=now_utc
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=now_utc, onupdate=now_utc
    )
