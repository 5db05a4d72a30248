from datetime import datetime
from decimal import Decimal
from typing import Annotated, Dict, List, Literal, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field

from app.models.orders import OrderStatus


def _money_str(v):
    # Money / Decimal leave the service as fixed 2-place strings, never floats
    if v is None or isinstance(v, str):
        return v
    if isinstance(v, Decimal):
        return format(v.quantize(Decimal("0.01")), "f")
    return str(v)


MoneyStr = Annotated[str, BeforeValidator(_money_str)]


# create
class OrderCreateIn(BaseModel):
    customer_id: int
    support_id: Optional[int] = None
    worker_id: Optional[int] = None
    service_id: Optional[str] = None
    order_value: Decimal
    deposit_amount: Decimal = Decimal("0")
    currency: str = Field(default="USD", min_length=3, max_length=8)
    job_details: Optional[str] = None
    idempotency_key: Optional[str] = Field(default=None, max_length=64)


class DiscordOrderCreateIn(BaseModel):
    customer_discord_id: str
    support_discord_id: str
    worker_discord_id: Optional[str] = None
    service_id: Optional[str] = None
    order_value: Decimal
    deposit_amount: Decimal = Decimal("0")
    currency: str = Field(default="USD", min_length=3, max_length=8)
    job_details: Optional[str] = None
    idempotency_key: Optional[str] = Field(default=None, max_length=64)


# lifecycle
class ClaimIn(BaseModel):
    worker_discord_id: Optional[str] = None  # defaults to the caller


class AssignIn(BaseModel):
    worker_id: int
    notes: Optional[str] = None


class StatusUpdateIn(BaseModel):
    status: OrderStatus
    reason: Optional[str] = Field(default=None, max_length=500)
    notes: Optional[str] = None


class CompleteIn(BaseModel):
    completion_notes: Optional[str] = None


class ConfirmIn(BaseModel):
    feedback: Optional[str] = Field(default=None, max_length=500)


class CancelIn(BaseModel):
    reason: str = Field(min_length=1, max_length=500)
    refund_type: Literal["full", "partial", "none"] = "full"
    refund_amount: Optional[Decimal] = None


# out
class OrderOut(BaseModel):
    id: str
    order_number: int
    customer_id: int
    worker_id: Optional[int] = None
    support_id: Optional[int] = None
    service_id: Optional[str] = None
    order_value: MoneyStr
    deposit_amount: MoneyStr
    currency: str
    worker_payout: MoneyStr
    support_payout: MoneyStr
    system_payout: MoneyStr
    status: OrderStatus
    payout_processed: bool
    job_details: Optional[str] = None
    completion_notes: Optional[str] = None
    cancellation_reason: Optional[str] = None
    assigned_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class OrderListOut(BaseModel):
    list: List[OrderOut]
    total: int
    page: int
    limit: int
    total_pages: int


class OrderHistoryOut(BaseModel):
    id: int
    order_id: str
    from_status: Optional[OrderStatus] = None
    to_status: OrderStatus
    changed_by_id: Optional[int] = None
    reason: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class OrderStatsOut(BaseModel):
    total_orders: int
    orders_by_status: Dict[str, int]
    total_revenue: MoneyStr
    average_order_value: MoneyStr
    orders_today: int
    orders_this_week: int
    orders_this_month: int
