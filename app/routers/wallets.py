from __future__ import annotations
from typing import List

from fastapi import APIRouter, Depends, Query

from app.core.auth import get_current_user, get_escrow, require_staff
from app.core.exceptions import ForbiddenError, NotFoundError
from app.models.user import User, UserRole
from app.models.wallet import TransactionType, WalletType
from app.schemas.wallet import (
    AddBalanceIn, AdjustBalanceIn, BalanceChangeOut, SystemWalletOut, TransactionOut, WalletOut,
)
from app.services.escrow_service import EscrowService, available_balance
from app.services.order_policy import can_manage_order

router = APIRouter(prefix="/api/wallets", tags=["wallets"])

WALLET_TYPE_FOR_ROLE = {
    UserRole.CUSTOMER: WalletType.CUSTOMER,
    UserRole.WORKER: WalletType.WORKER,
    UserRole.SUPPORT: WalletType.SUPPORT,
    UserRole.ADMIN: WalletType.SUPPORT,
}


def _out(w) -> WalletOut:
    return WalletOut.of(w, available_balance(w))


@router.get("/me", response_model=WalletOut)
async def my_wallet(
    user: User = Depends(get_current_user),
    escrow: EscrowService = Depends(get_escrow),
):
    w = await escrow.get_or_create_wallet(user.id, WALLET_TYPE_FOR_ROLE.get(user.role, WalletType.CUSTOMER))
    return _out(w)


# static path before /{wallet_id}
@router.get("/system", response_model=SystemWalletOut)
async def system_wallet(
    _: User = Depends(require_staff),
    escrow: EscrowService = Depends(get_escrow),
):
    return await escrow.get_system_revenue()


@router.get("/user/{user_id}", response_model=WalletOut)
async def wallet_of_user(
    user_id: int,
    _: User = Depends(require_staff),
    escrow: EscrowService = Depends(get_escrow),
):
    w = await escrow.get_wallet_by_user_id(user_id)
    if w is None:
        raise NotFoundError("Wallet not found", {"user_id": user_id})
    return _out(w)


@router.get("/{wallet_id}/transactions", response_model=List[TransactionOut])
async def wallet_transactions(
    wallet_id: str,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user: User = Depends(get_current_user),
    escrow: EscrowService = Depends(get_escrow),
):
    w = await escrow.get_wallet(wallet_id)
    if w.user_id != user.id and not can_manage_order(user.role):
        raise ForbiddenError("Not your wallet")
    return await escrow.get_transaction_history(wallet_id, limit, offset)


@router.post("/{wallet_id}/add-balance", response_model=BalanceChangeOut)
async def add_balance(
    wallet_id: str,
    body: AddBalanceIn,
    user: User = Depends(require_staff),
    escrow: EscrowService = Depends(get_escrow),
):
    w, tx = await escrow.add_balance(wallet_id, body.amount, user.id, TransactionType(body.type),
                                     body.reference, body.notes)
    return {"wallet": _out(w), "transaction": tx}


@router.post("/{wallet_id}/adjust", response_model=BalanceChangeOut)
async def adjust_balance(
    wallet_id: str,
    body: AdjustBalanceIn,
    user: User = Depends(require_staff),
    escrow: EscrowService = Depends(get_escrow),
):
    w, tx = await escrow.adjust_balance(wallet_id, body.amount, user.id, body.reason, body.reference)
    return {"wallet": _out(w), "transaction": tx}
