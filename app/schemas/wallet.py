from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.models.wallet import TransactionStatus, TransactionType, WalletType
from app.schemas.orders import MoneyStr


class WalletOut(BaseModel):
    id: str
    user_id: int
    wallet_type: WalletType
    balance: MoneyStr
    pending_balance: MoneyStr
    deposit: MoneyStr
    available: MoneyStr
    currency: str
    is_active: bool
    updated_at: datetime

    @classmethod
    def of(cls, w, available) -> "WalletOut":
        return cls(
            id=w.id,
            user_id=w.user_id,
            wallet_type=w.wallet_type,
            balance=w.balance,
            pending_balance=w.pending_balance,
            deposit=w.deposit,
            available=available,
            currency=w.currency,
            is_active=w.is_active,
            updated_at=w.updated_at,
        )


class TransactionOut(BaseModel):
    id: str
    wallet_id: str
    order_id: Optional[str] = None
    type: TransactionType
    amount: MoneyStr
    balance_before: MoneyStr
    balance_after: MoneyStr
    pending_delta: MoneyStr
    deposit_delta: MoneyStr
    currency: str
    status: TransactionStatus
    reference: Optional[str] = None
    notes: Optional[str] = None
    created_by_id: Optional[int] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AddBalanceIn(BaseModel):
    amount: Decimal
    type: Literal["DEPOSIT", "WORKER_DEPOSIT"] = "DEPOSIT"
    reference: Optional[str] = Field(default=None, max_length=255)
    notes: Optional[str] = None


class AdjustBalanceIn(BaseModel):
    amount: Decimal  # signed
    reason: str = Field(min_length=1)
    reference: Optional[str] = Field(default=None, max_length=255)


class BalanceChangeOut(BaseModel):
    wallet: WalletOut
    transaction: TransactionOut


class SystemWalletOut(BaseModel):
    total_revenue: MoneyStr
    this_month_revenue: MoneyStr
    currency: str
