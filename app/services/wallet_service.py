"""
Wallet ledger.

Every mutation happens inside a caller-owned transaction: the wallet row is
re-read under ``SELECT ... FOR UPDATE`` and then changed with a single atomic
``UPDATE ... SET col = col + :delta`` guarded so that no column can go
negative. Callers pair each mutation with one transaction-log row.

Locked funds are debited from ``balance`` and tracked in ``pending_balance``
until the order releases, refunds or distributes them.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import BadRequestError, InsufficientBalanceError, NotFoundError
from app.core.money import Money
from app.models.orders import OrderStatus, Orders
from app.models.wallet import TransactionType, Wallet, WalletTransaction, WalletType
from app.services.transaction_log import list_transactions, record_transaction

logger = logging.getLogger(__name__)

ROLE_CUSTOMER = "customer"
ROLE_WORKER = "worker"


@dataclass(frozen=True)
class BalanceChange:
    wallet_id: str
    balance_before: Money
    balance_after: Money
    pending_before: Money
    pending_after: Money
    deposit_before: Money
    deposit_after: Money

    @property
    def balance_delta(self) -> Money:
        return self.balance_after - self.balance_before

    @property
    def pending_delta(self) -> Money:
        return self.pending_after - self.pending_before

    @property
    def deposit_delta(self) -> Money:
        return self.deposit_after - self.deposit_before


@dataclass(frozen=True)
class BalanceCheck:
    sufficient: bool
    available: Money
    wallet: Wallet


@dataclass(frozen=True)
class WorkerDeduction:
    from_balance: Money
    from_deposit: Money
    change: BalanceChange


async def get_wallet(session: AsyncSession, wallet_id: str) -> Wallet:
    w = await session.get(Wallet, wallet_id)
    if w is None:
        raise NotFoundError("Wallet not found", {"wallet_id": wallet_id})
    return w


async def get_wallet_by_user_id(session: AsyncSession, user_id: int) -> Optional[Wallet]:
    return await session.scalar(select(Wallet).where(Wallet.user_id == user_id))


async def get_or_create_wallet(
    session: AsyncSession,
    user_id: int,
    wallet_type: WalletType = WalletType.CUSTOMER,
    currency: str = "USD",
) -> Wallet:
    acc = await get_wallet_by_user_id(session, user_id)
    if acc is not None:
        return acc
    try:
        # a concurrent creator may win the unique(user_id) race; the savepoint keeps our transaction usable
        async with session.begin_nested():
            acc = Wallet(
                user_id=user_id,
                wallet_type=wallet_type,
                balance=Money.zero(),
                pending_balance=Money.zero(),
                deposit=Money.zero(),
                currency=currency,
                is_active=True,
            )
            session.add(acc)
    except IntegrityError:
        acc = await get_wallet_by_user_id(session, user_id)
        if acc is None:
            raise
        return acc
    logger.info("Created %s wallet %s for user %s", wallet_type.value, acc.id, user_id)
    return acc


async def lock_wallet(session: AsyncSession, wallet_id: str) -> Wallet:
    w = await session.scalar(
        select(Wallet)
        .where(Wallet.id == wallet_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    if w is None:
        raise NotFoundError("Wallet not found", {"wallet_id": wallet_id})
    return w


def available_for(wallet: Wallet, role: str = ROLE_CUSTOMER) -> Money:
    free = wallet.balance - wallet.pending_balance
    if role == ROLE_WORKER:
        # deposits count toward a worker's eligibility
        return free + wallet.deposit
    return free


def worker_breakdown(wallet: Wallet) -> dict:
    return {"deposit": wallet.deposit, "balance": wallet.balance - wallet.pending_balance}


async def check_balance_with_lock(
    session: AsyncSession,
    wallet_id: str,
    required: Money,
    role: str = ROLE_CUSTOMER,
) -> BalanceCheck:
    """Re-read the wallet under a row lock and test it against ``required``."""
    wallet = await lock_wallet(session, wallet_id)
    available = available_for(wallet, role)
    return BalanceCheck(sufficient=available >= required, available=available, wallet=wallet)


async def update_balance(
    session: AsyncSession,
    wallet_id: str,
    balance_delta: Money | Decimal | int = 0,
    pending_delta: Money | Decimal | int = 0,
    deposit_delta: Money | Decimal | int = 0,
) -> BalanceChange:
    bd, pd, dd = Money(balance_delta), Money(pending_delta), Money(deposit_delta)
    wallet = await lock_wallet(session, wallet_id)
    balance, pending, deposit = wallet.balance, wallet.pending_balance, wallet.deposit

    for current, delta in ((balance, bd), (pending, pd), (deposit, dd)):
        if (current + delta).is_negative():
            raise InsufficientBalanceError(-delta, current)

    if bd or pd or dd:
        rs = await session.execute(
            update(Wallet)
            .where(
                Wallet.id == wallet_id,
                Wallet.balance + bd >= 0,
                Wallet.pending_balance + pd >= 0,
                Wallet.deposit + dd >= 0,
            )
            .values(
                balance=Wallet.balance + bd,
                pending_balance=Wallet.pending_balance + pd,
                deposit=Wallet.deposit + dd,
            )
            .execution_options(synchronize_session=False)
        )
        if rs.rowcount != 1:
            # guard rejected the write: some field would have gone negative
            raise InsufficientBalanceError(-bd, balance)
        wallet = await lock_wallet(session, wallet_id)

    return BalanceChange(
        wallet_id=wallet_id,
        balance_before=balance,
        balance_after=wallet.balance,
        pending_before=pending,
        pending_after=wallet.pending_balance,
        deposit_before=deposit,
        deposit_after=wallet.deposit,
    )


async def deduct_from_worker_wallet(
    session: AsyncSession,
    wallet_id: str,
    total: Money,
    pending_delta: Money | int = 0,
) -> WorkerDeduction:
    """
    Take ``total`` from a worker wallet, free balance (``balance - pending``)
    first and the deposit pool for whatever that cannot cover.
    """
    wallet = await lock_wallet(session, wallet_id)
    deposit = wallet.deposit
    # funds already held in pending belong to other orders
    free = available_for(wallet, ROLE_CUSTOMER)
    if not free.is_positive():
        free = Money.zero()

    from_balance = min(free, total)
    from_deposit = total - from_balance
    if deposit < from_deposit:
        raise InsufficientBalanceError(
            total, from_balance + deposit, ROLE_WORKER, {"deposit": deposit, "balance": free}
        )

    change = await update_balance(session, wallet_id, -from_balance, pending_delta, -from_deposit)
    return WorkerDeduction(from_balance=from_balance, from_deposit=from_deposit, change=change)


async def add_balance(
    session: AsyncSession,
    wallet_id: str,
    amount: Money,
    created_by_id: int | None,
    kind: TransactionType = TransactionType.DEPOSIT,
    reference: str | None = None,
    notes: str | None = None,
    max_balance: Decimal | None = None,
) -> tuple[Wallet, WalletTransaction]:
    """Top up ``balance`` (DEPOSIT) or the worker security pool (WORKER_DEPOSIT)."""
    if kind not in (TransactionType.DEPOSIT, TransactionType.WORKER_DEPOSIT):
        raise BadRequestError(f"Unsupported top-up type {kind.value}")
    if not amount.is_positive():
        raise BadRequestError("Amount must be greater than zero")

    wallet = await lock_wallet(session, wallet_id)
    if not wallet.is_active:
        raise BadRequestError("Wallet is not active")

    to_deposit = kind == TransactionType.WORKER_DEPOSIT
    current = wallet.deposit if to_deposit else wallet.balance
    if max_balance is not None and current + amount > max_balance:
        raise BadRequestError(f"Wallet limit exceeded, maximum is ${Money(max_balance)}")

    if to_deposit:
        change = await update_balance(session, wallet_id, deposit_delta=amount)
    else:
        change = await update_balance(session, wallet_id, balance_delta=amount)

    row = record_transaction(
        session,
        wallet_id=wallet_id,
        type=kind,
        change=change,
        currency=wallet.currency,
        reference=reference,
        notes=notes,
        created_by_id=created_by_id,
    )
    await session.flush()
    logger.info("Added %s to %s of wallet %s", amount, "deposit" if to_deposit else "balance", wallet_id)
    return await lock_wallet(session, wallet_id), row


async def adjust_balance(
    session: AsyncSession,
    wallet_id: str,
    amount: Money,
    created_by_id: int | None,
    reference: str | None = None,
    notes: str | None = None,
) -> tuple[Wallet, WalletTransaction]:
    wallet = await lock_wallet(session, wallet_id)
    if not wallet.is_active:
        raise BadRequestError("Wallet is not active")
    if amount.is_zero():
        raise BadRequestError("Adjustment amount must not be zero")
    if (wallet.balance + amount).is_negative():
        raise BadRequestError(
            f"Adjustment would result in negative balance. Current: {wallet.balance}, adjustment: {amount}"
        )

    change = await update_balance(session, wallet_id, balance_delta=amount)
    row = record_transaction(
        session,
        wallet_id=wallet_id,
        type=TransactionType.ADJUSTMENT,
        change=change,
        currency=wallet.currency,
        reference=reference,
        notes=notes or "Manual balance adjustment",
        created_by_id=created_by_id,
    )
    await session.flush()
    logger.info("Adjusted wallet %s by %s, balance %s -> %s", wallet_id, amount,
                change.balance_before, change.balance_after)
    return await lock_wallet(session, wallet_id), row


async def get_transaction_history(session: AsyncSession, wallet_id: str, limit: int = 50,
                                  offset: int = 0) -> list[WalletTransaction]:
    await get_wallet(session, wallet_id)
    return await list_transactions(session, wallet_id, limit=limit, offset=offset)


async def get_system_revenue(session: AsyncSession, since: datetime | None = None) -> Money:
    """System profit is never a wallet balance; it is the sum of ``system_payout`` of paid-out orders."""
    stmt = select(func.sum(Orders.system_payout)).where(
        Orders.status == OrderStatus.COMPLETED,
        Orders.payout_processed.is_(True),
    )
    if since is not None:
        stmt = stmt.where(Orders.confirmed_at >= since)
    total = await session.scalar(stmt)
    return Money(str(total)).cents() if total is not None else Money.zero()


async def find_integrity_violations(session: AsyncSession) -> list[Wallet]:
    rs = await session.execute(
        select(Wallet).where(
            or_(Wallet.balance < 0, Wallet.pending_balance < 0, Wallet.deposit < 0)
        )
    )
    return list(rs.scalars().all())


__all__ = [
    "BalanceChange",
    "BalanceCheck",
    "WorkerDeduction",
    "get_wallet",
    "get_wallet_by_user_id",
    "get_or_create_wallet",
    "lock_wallet",
    "available_for",
    "worker_breakdown",
    "check_balance_with_lock",
    "update_balance",
    "deduct_from_worker_wallet",
    "add_balance",
    "adjust_balance",
    "get_transaction_history",
    "get_system_revenue",
    "find_integrity_violations",
]
