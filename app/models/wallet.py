import enum
import uuid
from datetime import datetime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Text, Boolean, DateTime, BigInteger, Enum, ForeignKey, Index
from app.core.money import Money, MoneyType
from app.core.timeutil import now_utc
from app.db.session import Base


def new_id() -> str:
    return str(uuid.uuid4())


class WalletType(str, enum.Enum):
    CUSTOMER = "CUSTOMER"
    WORKER = "WORKER"
    SUPPORT = "SUPPORT"
    SYSTEM = "SYSTEM"


class TransactionType(str, enum.Enum):
    PAYMENT = "PAYMENT"
    RELEASE = "RELEASE"
    EARNING = "EARNING"
    COMMISSION = "COMMISSION"
    REFUND = "REFUND"
    ORDER_REWARD = "ORDER_REWARD"
    DEPOSIT = "DEPOSIT"
    WORKER_DEPOSIT = "WORKER_DEPOSIT"
    ADJUSTMENT = "ADJUSTMENT"


class TransactionStatus(str, enum.Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"


class Wallet(Base):
    __tablename__ = "wallet"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("user.id"), unique=True, nullable=False)
    wallet_type: Mapped[WalletType] = mapped_column(Enum(WalletType, native_enum=False, length=16), default=WalletType.CUSTOMER)
    balance: Mapped[Money] = mapped_column(MoneyType, default=Money.zero, nullable=False)          # available
    pending_balance: Mapped[Money] = mapped_column(MoneyType, default=Money.zero, nullable=False)  # escrowed against orders
    deposit: Mapped[Money] = mapped_column(MoneyType, default=Money.zero, nullable=False)          # worker security pool
    currency: Mapped[str] = mapped_column(String(8), default="USD")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=now_utc, onupdate=now_utc)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=now_utc)


class WalletTransaction(Base):
    __tablename__ = "wallet_transaction"
    __table_args__ = (
        Index("ix_wallet_transaction_wallet_created", "wallet_id", "created_at"),
    )
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    wallet_id: Mapped[str] = mapped_column(String(36), ForeignKey("wallet.id"), nullable=False)
    order_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("orders.id"), index=True)
    type: Mapped[TransactionType] = mapped_column(Enum(TransactionType, native_enum=False, length=16), nullable=False)
    # amount is the signed change of balance; pending/deposit deltas cover the rest of the mutation
    amount: Mapped[Money] = mapped_column(MoneyType, nullable=False)
    balance_before: Mapped[Money] = mapped_column(MoneyType, nullable=False)
    balance_after: Mapped[Money] = mapped_column(MoneyType, nullable=False)
    pending_delta: Mapped[Money] = mapped_column(MoneyType, default=Money.zero, nullable=False)
    deposit_delta: Mapped[Money] = mapped_column(MoneyType, default=Money.zero, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), default="USD")
    status: Mapped[TransactionStatus] = mapped_column(Enum(TransactionStatus, native_enum=False, length=16), nullable=False)
    reference: Mapped[str | None] = mapped_column(String(255))
    notes: Mapped[str | None] = mapped_column(Text)
    created_by_id: Mapped[int | None] = mapped_column(BigInteger)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=now_utc)
