import enum
from datetime import datetime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Text, Integer, Boolean, DateTime, BigInteger, Enum, ForeignKey
from app.core.money import Money, MoneyType
from app.core.timeutil import now_utc
from app.db.session import Base
from app.models.wallet import new_id


class OrderStatus(str, enum.Enum):
    PENDING = "PENDING"
    CLAIMING = "CLAIMING"
    ASSIGNED = "ASSIGNED"
    IN_PROGRESS = "IN_PROGRESS"
    AWAITING_CONFIRM = "AWAITING_CONFIRM"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    DISPUTED = "DISPUTED"
    REFUNDED = "REFUNDED"


_status_type = Enum(OrderStatus, native_enum=False, length=20)


class Orders(Base):
    __tablename__ = "orders"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    order_number: Mapped[int] = mapped_column(Integer, unique=True, nullable=False)
    customer_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("user.id"), nullable=False, index=True)
    worker_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("user.id"), index=True)
    support_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("user.id"))
    service_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("service.id"))

    order_value: Mapped[Money] = mapped_column(MoneyType, nullable=False)
    deposit_amount: Mapped[Money] = mapped_column(MoneyType, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), default="USD")
    # fixed at creation, worker + support + system == order_value
    worker_payout: Mapped[Money] = mapped_column(MoneyType, nullable=False)
    support_payout: Mapped[Money] = mapped_column(MoneyType, nullable=False)
    system_payout: Mapped[Money] = mapped_column(MoneyType, nullable=False)

    status: Mapped[OrderStatus] = mapped_column(_status_type, default=OrderStatus.PENDING, index=True)
    payout_processed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    job_details: Mapped[str | None] = mapped_column(Text)
    completion_notes: Mapped[str | None] = mapped_column(Text)
    cancellation_reason: Mapped[str | None] = mapped_column(String(500))
    idempotency_key: Mapped[str | None] = mapped_column(String(64), unique=True)

    assigned_at: Mapped[datetime | None] = mapped_column(DateTime)
    started_at: Mapped[datetime | None] = mapped_column(DateTime)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime)
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=now_utc)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=now_utc, onupdate=now_utc)


class OrderStatusHistory(Base):
    __tablename__ = "order_status_history"
    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    from_status: Mapped[OrderStatus | None] = mapped_column(_status_type)
    to_status: Mapped[OrderStatus] = mapped_column(_status_type, nullable=False)
    changed_by_id: Mapped[int | None] = mapped_column(BigInteger)
    reason: Mapped[str | None] = mapped_column(String(500))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=now_utc)
