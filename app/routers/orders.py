from __future__ import annotations
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from app.core.auth import get_current_user, get_escrow, require_staff
from app.core.exceptions import ForbiddenError
from app.models.orders import OrderStatus
from app.models.user import User
from app.schemas.orders import (
    AssignIn, CancelIn, ClaimIn, CompleteIn, ConfirmIn, DiscordOrderCreateIn,
    OrderCreateIn, OrderHistoryOut, OrderListOut, OrderOut, OrderStatsOut, StatusUpdateIn,
)
from app.services.escrow_service import EscrowService
from app.services.order_policy import OrderParties, can_manage_order, can_view_order

router = APIRouter(prefix="/api/orders", tags=["orders"])


@router.post("", response_model=OrderOut)
async def create_order(
    body: OrderCreateIn,
    user: User = Depends(get_current_user),
    escrow: EscrowService = Depends(get_escrow),
):
    # customers order for themselves; staff may order on someone's behalf
    if body.customer_id != user.id and not can_manage_order(user.role):
        raise ForbiddenError("Cannot create an order for another customer")
    return await escrow.create_order(body, created_by_id=user.id)


@router.post("/discord", response_model=OrderOut)
async def create_order_by_discord(
    body: DiscordOrderCreateIn,
    user: User = Depends(require_staff),
    escrow: EscrowService = Depends(get_escrow),
):
    return await escrow.create_order_by_discord(body, created_by_id=user.id)


@router.get("", response_model=OrderListOut)
async def list_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: Optional[OrderStatus] = None,
    customer_id: Optional[int] = None,
    worker_id: Optional[int] = None,
    search: Optional[str] = None,
    sort_by: str = "created_at",
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    user: User = Depends(get_current_user),
    escrow: EscrowService = Depends(get_escrow),
):
    if not can_manage_order(user.role):
        # non-staff only see their own orders
        if worker_id is None or worker_id != user.id:
            customer_id = user.id
    return await escrow.list_orders(
        page=page, limit=limit, status=status, customer_id=customer_id, worker_id=worker_id,
        search=search, sort_by=sort_by, sort_order=sort_order,
    )


@router.get("/stats", response_model=OrderStatsOut)
async def order_stats(
    _: User = Depends(require_staff),
    escrow: EscrowService = Depends(get_escrow),
):
    return await escrow.get_order_stats()


@router.get("/{order_id}", response_model=OrderOut)
async def get_order(
    order_id: str,
    user: User = Depends(get_current_user),
    escrow: EscrowService = Depends(get_escrow),
):
    order = await escrow.get_order(order_id)
    if not can_view_order(user.id, user.role, OrderParties.of(order)):
        raise ForbiddenError("Not a party to this order")
    return order


@router.get("/{order_id}/history", response_model=List[OrderHistoryOut])
async def get_order_history(
    order_id: str,
    user: User = Depends(get_current_user),
    escrow: EscrowService = Depends(get_escrow),
):
    order = await escrow.get_order(order_id)
    if not can_view_order(user.id, user.role, OrderParties.of(order)):
        raise ForbiddenError("Not a party to this order")
    return await escrow.get_order_history(order_id)


@router.post("/{order_id}/claim", response_model=OrderOut)
async def claim_order(
    order_id: str,
    body: ClaimIn,
    user: User = Depends(get_current_user),
    escrow: EscrowService = Depends(get_escrow),
):
    discord_id = body.worker_discord_id or user.discord_id
    if discord_id != user.discord_id and not can_manage_order(user.role):
        raise ForbiddenError("Cannot claim an order for another worker")
    if not discord_id:
        raise ForbiddenError("A linked Discord account is required to claim orders")
    return await escrow.claim_order(order_id, discord_id)


@router.post("/{order_id}/assign", response_model=OrderOut)
async def assign_worker(
    order_id: str,
    body: AssignIn,
    user: User = Depends(require_staff),
    escrow: EscrowService = Depends(get_escrow),
):
    return await escrow.assign_worker(order_id, body.worker_id, user.id, body.notes)


@router.post("/{order_id}/status", response_model=OrderOut)
async def update_status(
    order_id: str,
    body: StatusUpdateIn,
    user: User = Depends(require_staff),
    escrow: EscrowService = Depends(get_escrow),
):
    return await escrow.update_order_status(order_id, body.status, user.id, body.reason, body.notes)


@router.post("/{order_id}/complete", response_model=OrderOut)
async def complete_order(
    order_id: str,
    body: CompleteIn,
    user: User = Depends(get_current_user),
    escrow: EscrowService = Depends(get_escrow),
):
    return await escrow.complete_order(order_id, user, body.completion_notes)


@router.post("/{order_id}/confirm", response_model=OrderOut)
async def confirm_order(
    order_id: str,
    body: ConfirmIn,
    user: User = Depends(get_current_user),
    escrow: EscrowService = Depends(get_escrow),
):
    return await escrow.confirm_order_completion(order_id, user, body.feedback)


@router.post("/{order_id}/cancel", response_model=OrderOut)
async def cancel_order(
    order_id: str,
    body: CancelIn,
    user: User = Depends(require_staff),
    escrow: EscrowService = Depends(get_escrow),
):
    return await escrow.cancel_order(order_id, user.id, body.reason, body.refund_type, body.refund_amount)
