# Append-only audit trail. One row per wallet mutation, written in the same
# transaction as the mutation itself.
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.money import Money
from app.models.wallet import TransactionStatus, TransactionType, WalletTransaction


def record_transaction(
    session: AsyncSession,
    *,
    wallet_id: str,
    type: TransactionType,
    change=None,
    amount: Money | None = None,
    balance_before: Money | None = None,
    balance_after: Money | None = None,
    order_id: str | None = None,
    status: TransactionStatus = TransactionStatus.COMPLETED,
    currency: str = "USD",
    reference: str | None = None,
    notes: str | None = None,
    created_by_id: int | None = None,
) -> WalletTransaction:
    """
    Insert a transaction row.

    Pass either ``change`` (a ``BalanceChange`` from the ledger, which supplies
    the amount and all snapshots) or explicit ``amount``/``balance_before``/
    ``balance_after``.
    """
    pending_delta = Money.zero()
    deposit_delta = Money.zero()
    if change is not None:
        amount = change.balance_delta
        balance_before = change.balance_before
        balance_after = change.balance_after
        pending_delta = change.pending_delta
        deposit_delta = change.deposit_delta
    if amount is None or balance_before is None or balance_after is None:
        raise ValueError("record_transaction needs a change or amount with both balance snapshots")

    row = WalletTransaction(
        wallet_id=wallet_id,
        order_id=order_id,
        type=type,
        amount=amount,
        balance_before=balance_before,
        balance_after=balance_after,
        pending_delta=pending_delta,
        deposit_delta=deposit_delta,
        currency=currency,
        status=status,
        reference=reference,
        notes=notes,
        created_by_id=created_by_id,
    )
    session.add(row)
    return row


async def list_transactions(session: AsyncSession, wallet_id: str, limit: int = 50, offset: int = 0,
                            order_id: str | None = None) -> list[WalletTransaction]:
    stmt = select(WalletTransaction).where(WalletTransaction.wallet_id == wallet_id)
    if order_id:
        stmt = stmt.where(WalletTransaction.order_id == order_id)
    stmt = stmt.order_by(WalletTransaction.created_at.desc(), WalletTransaction.id).limit(limit).offset(offset)
    rs = await session.execute(stmt)
    return list(rs.scalars().all())
