"""
Escrow and payout engine.

``EscrowService`` owns the order lifecycle and every money movement attached
to it. Each mutating operation is one unit of work run through
``run_in_transaction``: it re-reads the order and the wallets it touches under
row locks, mutates them through the wallet ledger, appends transaction and
status-history rows, and commits atomically. A storage conflict reruns the
whole unit against fresh state; business errors abort it untouched.

Money flow for one order::

    create   customer  balance -V, pending +V             PAYMENT (pending)
    claim    worker    balance/deposit -D, pending +D     PAYMENT (pending)
    payout   customer  pending -V                         RELEASE
             worker    balance +D, pending -D             RELEASE
             worker    balance +worker_payout             EARNING
             support   balance +support_payout            COMMISSION
    cancel   customer  balance +refund, pending -D        REFUND
             worker    balance +D, pending -D             RELEASE

The system share is never credited to a wallet; it stays on the order as
``system_payout``.
"""
from __future__ import annotations

import logging
import math
from datetime import timedelta
from typing import Awaitable, Callable, Optional, TypeVar

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased

from app.core.config import Settings, settings
from app.core.exceptions import BadRequestError, InsufficientBalanceError, NotFoundError, TransientConflictError
from app.core.money import Money
from app.core.timeutil import now_utc
from app.db.retry import run_in_transaction
from app.models.orders import OrderStatus, OrderStatusHistory, Orders
from app.models.user import User
from app.models.wallet import TransactionStatus, TransactionType, Wallet, WalletTransaction, WalletType, new_id
from app.schemas.orders import DiscordOrderCreateIn, OrderCreateIn
from app.services import wallet_service as ledger
from app.services.identity import ensure_service, get_user, get_user_by_discord_id
from app.services.order_policy import OrderParties, can_confirm_completion, can_mark_complete
from app.services.order_state import (
    add_history, apply_transition, list_history, record_initial_status, validate_transition,
)
from app.services.transaction_log import record_transaction

logger = logging.getLogger(__name__)

T = TypeVar("T")

REFUND_TYPES = ("full", "partial", "none")
SORTABLE = {
    "created_at": Orders.created_at,
    "updated_at": Orders.updated_at,
    "order_number": Orders.order_number,
    "order_value": Orders.order_value,
    "status": Orders.status,
}


def _ref(order: Orders) -> str:
    return f"ORDER-{order.order_number}"


def _as_money(v) -> Money:
    # aggregates come back as Money, Decimal or float depending on the dialect
    if v is None:
        return Money.zero()
    return Money(str(v)).cents()


def _require_payout_parties(order: Orders) -> None:
    if order.worker_id is None or order.support_id is None:
        raise BadRequestError("Order must have both a worker and a support agent for payout",
                              {"order_id": order.id})


class EscrowService:
    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession], config: Settings = settings):
        self.sessionmaker = sessionmaker
        self.config = config

    async def _run(self, work: Callable[[AsyncSession], Awaitable[T]], label: str) -> T:
        return await run_in_transaction(
            self.sessionmaker,
            work,
            max_attempts=self.config.TX_MAX_ATTEMPTS,
            base_delay=self.config.TX_BACKOFF_BASE_MS / 1000,
            max_delay=self.config.TX_BACKOFF_MAX_MS / 1000,
            label=label,
        )

    async def _read(self, work: Callable[[AsyncSession], Awaitable[T]]) -> T:
        async with self.sessionmaker() as session:
            return await work(session)

    # ------------------------------
    # helpers (run inside a unit of work)
    # ------------------------------
    @staticmethod
    async def _lock_order(session: AsyncSession, order_id: str) -> Orders:
        order = await session.scalar(
            select(Orders)
            .where(Orders.id == order_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        if order is None:
            raise NotFoundError("Order not found", {"order_id": order_id})
        return order

    @staticmethod
    async def _next_order_number(session: AsyncSession) -> int:
        current = await session.scalar(
            select(Orders.order_number).order_by(Orders.order_number.desc()).limit(1).with_for_update()
        )
        return (current or 0) + 1

    async def _lock_customer_funds(self, session: AsyncSession, order: Orders, created_by_id: Optional[int]) -> None:
        wallet = await ledger.get_or_create_wallet(session, order.customer_id, WalletType.CUSTOMER, order.currency)
        check = await ledger.check_balance_with_lock(session, wallet.id, order.order_value, ledger.ROLE_CUSTOMER)
        if not check.sufficient:
            raise InsufficientBalanceError(order.order_value, check.available, ledger.ROLE_CUSTOMER)
        change = await ledger.update_balance(session, wallet.id, -order.order_value, order.order_value)
        record_transaction(
            session,
            wallet_id=wallet.id,
            order_id=order.id,
            type=TransactionType.PAYMENT,
            change=change,
            status=TransactionStatus.PENDING,
            currency=order.currency,
            reference=_ref(order),
            notes=f"Payment for order #{order.order_number} held in escrow",
            created_by_id=created_by_id,
        )

    async def _lock_worker_deposit(self, session: AsyncSession, order: Orders, worker_id: int,
                                   created_by_id: Optional[int]) -> Optional[ledger.WorkerDeduction]:
        wallet = await ledger.get_or_create_wallet(session, worker_id, WalletType.WORKER, order.currency)
        deposit = order.deposit_amount
        if not deposit.is_positive():
            return None
        check = await ledger.check_balance_with_lock(session, wallet.id, deposit, ledger.ROLE_WORKER)
        if not check.sufficient:
            raise InsufficientBalanceError(
                deposit, check.available, ledger.ROLE_WORKER, ledger.worker_breakdown(check.wallet)
            )
        deduction = await ledger.deduct_from_worker_wallet(session, wallet.id, deposit, deposit)
        record_transaction(
            session,
            wallet_id=wallet.id,
            order_id=order.id,
            type=TransactionType.PAYMENT,
            change=deduction.change,
            status=TransactionStatus.PENDING,
            currency=order.currency,
            reference=_ref(order),
            notes=(
                f"Deposit locked for order #{order.order_number} "
                f"(balance {deduction.from_balance}, deposit pool {deduction.from_deposit})"
            ),
            created_by_id=created_by_id,
        )
        return deduction

    # ------------------------------
    # create
    # ------------------------------
    async def create_order(self, data: OrderCreateIn, created_by_id: Optional[int] = None) -> Orders:
        cfg = self.config
        order_value = Money.parse(data.order_value, field="order_value")
        deposit = Money.parse(data.deposit_amount, field="deposit_amount")
        if order_value < cfg.ORDER_MIN_VALUE or order_value > cfg.ORDER_MAX_VALUE:
            raise BadRequestError(
                f"Order value must be between ${Money(cfg.ORDER_MIN_VALUE)} and ${Money(cfg.ORDER_MAX_VALUE)}",
                {"order_value": str(order_value)},
            )
        if deposit < cfg.DEPOSIT_MIN or deposit > cfg.DEPOSIT_MAX:
            raise BadRequestError(
                f"Deposit amount must be between ${Money(cfg.DEPOSIT_MIN)} and ${Money(cfg.DEPOSIT_MAX)}",
                {"deposit_amount": str(deposit)},
            )
        order_value, deposit = order_value.cents(), deposit.cents()
        worker_payout, support_payout, system_payout = order_value.split(cfg.payout_shares)
        order_id = new_id()
        actor_id = created_by_id if created_by_id is not None else data.customer_id

        async def work(session: AsyncSession):
            if data.idempotency_key:
                existing = await session.scalar(
                    select(Orders).where(Orders.idempotency_key == data.idempotency_key)
                )
                if existing is not None:
                    return existing, True

            await get_user(session, data.customer_id, "Customer")
            if data.support_id is not None:
                await get_user(session, data.support_id, "Support")
            if data.worker_id is not None:
                await get_user(session, data.worker_id, "Worker")
            if data.service_id:
                await ensure_service(session, data.service_id)

            number = await self._next_order_number(session)
            now = now_utc()
            order = Orders(
                id=order_id,
                order_number=number,
                customer_id=data.customer_id,
                worker_id=data.worker_id,
                support_id=data.support_id,
                service_id=data.service_id,
                order_value=order_value,
                deposit_amount=deposit,
                currency=data.currency,
                worker_payout=worker_payout,
                support_payout=support_payout,
                system_payout=system_payout,
                status=OrderStatus.ASSIGNED if data.worker_id is not None else OrderStatus.PENDING,
                payout_processed=False,
                job_details=data.job_details,
                idempotency_key=data.idempotency_key,
                assigned_at=now if data.worker_id is not None else None,
                created_at=now,
                updated_at=now,
            )
            session.add(order)
            try:
                await session.flush()
            except IntegrityError as e:
                # a concurrent create took this order number (or idempotency key)
                raise TransientConflictError(details={"order_number": number}) from e

            await self._lock_customer_funds(session, order, actor_id)
            if data.worker_id is not None:
                await self._lock_worker_deposit(session, order, data.worker_id, actor_id)
            record_initial_status(session, order, actor_id, "Order created")
            await session.flush()
            return order, False

        order, replayed = await self._run(work, "create_order")
        if replayed:
            logger.info("Order #%s replayed for idempotency key %s", order.order_number, data.idempotency_key)
        else:
            logger.info(
                "Order #%s (%s) created: customer=%s worker=%s value=%s deposit=%s status=%s",
                order.order_number, order.id, order.customer_id, order.worker_id,
                order.order_value, order.deposit_amount, order.status.value,
            )
        return order

    async def create_order_by_discord(self, data: DiscordOrderCreateIn, created_by_id: Optional[int] = None) -> Orders:
        async def resolve(session: AsyncSession):
            customer = await get_user_by_discord_id(session, data.customer_discord_id, "Customer")
            support = await get_user_by_discord_id(session, data.support_discord_id, "Support")
            worker = None
            if data.worker_discord_id:
                worker = await get_user_by_discord_id(session, data.worker_discord_id, "Worker")
            return customer, support, worker

        customer, support, worker = await self._read(resolve)
        payload = OrderCreateIn(
            customer_id=customer.id,
            support_id=support.id,
            worker_id=worker.id if worker else None,
            service_id=data.service_id,
            order_value=data.order_value,
            deposit_amount=data.deposit_amount,
            currency=data.currency,
            job_details=data.job_details,
            idempotency_key=data.idempotency_key,
        )
        return await self.create_order(payload, created_by_id if created_by_id is not None else support.id)

    # ------------------------------
    # worker assignment
    # ------------------------------
    async def claim_order(self, order_id: str, worker_discord_id: str) -> Orders:
        auto_start = self.config.AUTO_START_ON_CLAIM

        async def work(session: AsyncSession):
            order = await self._lock_order(session, order_id)
            if order.status != OrderStatus.PENDING or order.worker_id is not None:
                raise BadRequestError(
                    f"Order is not available for claiming (status {order.status.value})",
                    {"order_id": order_id, "status": order.status.value},
                )
            worker = await get_user_by_discord_id(session, worker_discord_id, "Worker")
            await self._lock_worker_deposit(session, order, worker.id, worker.id)

            now = now_utc()
            rs = await session.execute(
                update(Orders)
                .where(
                    Orders.id == order_id,
                    Orders.status == OrderStatus.PENDING,
                    Orders.worker_id.is_(None),
                )
                .values(worker_id=worker.id, status=OrderStatus.ASSIGNED, assigned_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if rs.rowcount != 1:
                raise BadRequestError("Order was already claimed", {"order_id": order_id})
            add_history(session, order_id, OrderStatus.PENDING, OrderStatus.ASSIGNED, worker.id,
                        "Claimed by worker", now)

            order = await self._lock_order(session, order_id)
            if auto_start:
                apply_transition(session, order, OrderStatus.IN_PROGRESS, worker.id, "Work started on claim")
            await session.flush()
            return order

        order = await self._run(work, "claim_order")
        logger.info("Order #%s claimed by worker %s, status %s", order.order_number, order.worker_id,
                    order.status.value)
        return order

    async def assign_worker(self, order_id: str, worker_id: int, assigned_by_id: Optional[int],
                            notes: Optional[str] = None) -> Orders:
        async def work(session: AsyncSession):
            order = await self._lock_order(session, order_id)
            if order.status not in (OrderStatus.PENDING, OrderStatus.CLAIMING):
                raise BadRequestError(
                    f"Cannot assign a worker to an order that is {order.status.value}",
                    {"order_id": order_id, "status": order.status.value},
                )
            if order.worker_id is not None:
                raise BadRequestError("Order already has a worker", {"order_id": order_id})
            worker = await get_user(session, worker_id, "Worker")
            await self._lock_worker_deposit(session, order, worker.id, assigned_by_id)
            order.worker_id = worker.id
            apply_transition(session, order, OrderStatus.ASSIGNED, assigned_by_id, notes or "Worker assigned")
            await session.flush()
            return order

        order = await self._run(work, "assign_worker")
        logger.info("Order #%s assigned to worker %s by %s", order.order_number, order.worker_id, assigned_by_id)
        return order

    # ------------------------------
    # status changes
    # ------------------------------
    async def update_order_status(self, order_id: str, new_status: OrderStatus, changed_by_id: Optional[int],
                                  reason: Optional[str] = None, notes: Optional[str] = None) -> Orders:
        if new_status == OrderStatus.CANCELLED:
            # cancelling moves money; only cancel_order knows how
            raise BadRequestError("Use the cancel operation to cancel an order", {"order_id": order_id})
        if new_status == OrderStatus.ASSIGNED:
            # assignment locks the worker deposit
            raise BadRequestError("Use assign_worker or claim_order to assign an order", {"order_id": order_id})

        async def work(session: AsyncSession):
            order = await self._lock_order(session, order_id)
            from_status = order.status
            if new_status == OrderStatus.COMPLETED:
                validate_transition(from_status, new_status)
                _require_payout_parties(order)
            apply_transition(session, order, new_status, changed_by_id, reason or notes)
            if notes and new_status == OrderStatus.AWAITING_CONFIRM:
                order.completion_notes = notes
            await session.flush()
            return order, from_status

        order, from_status = await self._run(work, "update_order_status")
        logger.info("Order #%s status %s -> %s by %s", order.order_number, from_status.value,
                    order.status.value, changed_by_id)
        if order.status == OrderStatus.COMPLETED and not order.payout_processed:
            order = await self.process_order_payouts(order_id)
        return order

    async def complete_order(self, order_id: str, actor: User, completion_notes: Optional[str] = None) -> Orders:
        async def work(session: AsyncSession):
            order = await self._lock_order(session, order_id)
            if not can_mark_complete(actor.id, actor.role, OrderParties.of(order)):
                raise BadRequestError("Only the assigned worker can mark this order as complete",
                                      {"order_id": order_id})
            if order.status != OrderStatus.IN_PROGRESS:
                raise BadRequestError(
                    f"Order must be IN_PROGRESS to be marked complete, it is {order.status.value}",
                    {"order_id": order_id, "status": order.status.value},
                )
            apply_transition(session, order, OrderStatus.AWAITING_CONFIRM, actor.id, "Work completed")
            order.completion_notes = completion_notes
            await session.flush()
            return order

        order = await self._run(work, "complete_order")
        logger.info("Order #%s marked complete by %s, awaiting confirmation", order.order_number, actor.id)
        return order

    async def confirm_order_completion(self, order_id: str, actor: User, feedback: Optional[str] = None) -> Orders:
        async def work(session: AsyncSession):
            order = await self._lock_order(session, order_id)
            if not can_confirm_completion(actor.id, actor.role, OrderParties.of(order)):
                raise BadRequestError("Only the customer or support staff can confirm this order",
                                      {"order_id": order_id})
            if order.status != OrderStatus.AWAITING_CONFIRM:
                raise BadRequestError(
                    f"Order must be AWAITING_CONFIRM to be confirmed, it is {order.status.value}",
                    {"order_id": order_id, "status": order.status.value},
                )
            _require_payout_parties(order)
            apply_transition(session, order, OrderStatus.COMPLETED, actor.id, feedback or "Completion confirmed")
            await session.flush()
            return order

        order = await self._run(work, "confirm_order_completion")
        logger.info("Order #%s confirmed by %s", order.order_number, actor.id)
        await self.process_order_payouts(order_id)
        return await self.get_order(order_id)

    # ------------------------------
    # payout
    # ------------------------------
    async def process_order_payouts(self, order_id: str) -> Orders:
        """
        Release escrow and distribute the split. Safe to call any number of
        times: the ``payout_processed`` flag is re-read under the order lock.
        """
        async def work(session: AsyncSession):
            order = await self._lock_order(session, order_id)
            if order.payout_processed:
                return order, False
            _require_payout_parties(order)
            if order.status != OrderStatus.COMPLETED:
                raise BadRequestError(
                    f"Order must be COMPLETED to pay out, it is {order.status.value}",
                    {"order_id": order_id, "status": order.status.value},
                )
            n = order.order_number

            customer_wallet = await ledger.get_wallet_by_user_id(session, order.customer_id)
            if customer_wallet is None:
                raise NotFoundError("Customer wallet not found", {"user_id": order.customer_id})
            change = await ledger.update_balance(session, customer_wallet.id, pending_delta=-order.order_value)
            self._log_payout(session, order, customer_wallet.id, TransactionType.RELEASE, change,
                             f"Escrow released for order #{n}")

            worker_wallet = await ledger.get_or_create_wallet(session, order.worker_id, WalletType.WORKER,
                                                             order.currency)
            if order.deposit_amount.is_positive():
                change = await ledger.update_balance(session, worker_wallet.id, order.deposit_amount,
                                                     -order.deposit_amount)
                self._log_payout(session, order, worker_wallet.id, TransactionType.RELEASE, change,
                                 f"Deposit returned for order #{n}")
            change = await ledger.update_balance(session, worker_wallet.id, order.worker_payout)
            self._log_payout(session, order, worker_wallet.id, TransactionType.EARNING, change,
                             f"Earning for order #{n}")

            support_wallet = await ledger.get_or_create_wallet(session, order.support_id, WalletType.SUPPORT,
                                                              order.currency)
            change = await ledger.update_balance(session, support_wallet.id, order.support_payout)
            self._log_payout(session, order, support_wallet.id, TransactionType.COMMISSION, change,
                             f"Commission for order #{n}")

            order.payout_processed = True
            await session.flush()
            return order, True

        order, paid = await self._run(work, "process_order_payouts")
        if paid:
            logger.info(
                "Order #%s paid out: worker %s=%s support %s=%s system=%s",
                order.order_number, order.worker_id, order.worker_payout,
                order.support_id, order.support_payout, order.system_payout,
            )
        else:
            logger.info("Order #%s payout already processed, skipping", order.order_number)
        return order

    @staticmethod
    def _log_payout(session: AsyncSession, order: Orders, wallet_id: str, kind: TransactionType,
                    change: ledger.BalanceChange, notes: str) -> WalletTransaction:
        return record_transaction(
            session,
            wallet_id=wallet_id,
            order_id=order.id,
            type=kind,
            change=change,
            status=TransactionStatus.COMPLETED,
            currency=order.currency,
            reference=_ref(order),
            notes=notes,
        )

    # ------------------------------
    # cancel
    # ------------------------------
    async def cancel_order(self, order_id: str, cancelled_by_id: Optional[int], reason: str,
                           refund_type: str = "full", refund_amount=None) -> Orders:
        if refund_type not in REFUND_TYPES:
            raise BadRequestError(f"refund_type must be one of {', '.join(REFUND_TYPES)}")
        partial = None
        if refund_type == "partial":
            if refund_amount is None:
                raise BadRequestError("Refund amount is required for a partial refund")
            partial = Money.parse(refund_amount, field="refund_amount").cents()
            if not partial.is_positive():
                raise BadRequestError("Refund amount must be greater than zero")

        async def work(session: AsyncSession):
            order = await self._lock_order(session, order_id)
            if order.status in (OrderStatus.COMPLETED, OrderStatus.CANCELLED):
                raise BadRequestError(f"Cannot cancel an order that is {order.status.value}",
                                      {"order_id": order_id, "status": order.status.value})
            if order.payout_processed:
                raise BadRequestError("Order has already been paid out", {"order_id": order_id})

            if refund_type == "full":
                refund = order.deposit_amount
            elif refund_type == "partial":
                if partial > order.order_value:
                    raise BadRequestError("Refund amount cannot exceed the order value",
                                          {"refund_amount": str(partial), "order_value": str(order.order_value)})
                refund = partial
            else:
                refund = Money.zero()

            apply_transition(session, order, OrderStatus.CANCELLED, cancelled_by_id, reason)
            order.cancellation_reason = reason

            if refund.is_positive():
                customer_wallet = await ledger.get_wallet_by_user_id(session, order.customer_id)
                if customer_wallet is None:
                    raise NotFoundError("Customer wallet not found", {"user_id": order.customer_id})
                locked = await ledger.lock_wallet(session, customer_wallet.id)
                release = min(order.deposit_amount, locked.pending_balance)
                change = await ledger.update_balance(session, locked.id, refund, -release)
                record_transaction(
                    session,
                    wallet_id=locked.id,
                    order_id=order.id,
                    type=TransactionType.REFUND,
                    change=change,
                    currency=order.currency,
                    reference=_ref(order),
                    notes=f"{refund_type.capitalize()} refund for cancelled order #{order.order_number}: {reason}",
                    created_by_id=cancelled_by_id,
                )

            if order.worker_id is not None and order.deposit_amount.is_positive():
                worker_wallet = await ledger.get_wallet_by_user_id(session, order.worker_id)
                if worker_wallet is not None:
                    change = await ledger.update_balance(session, worker_wallet.id, order.deposit_amount,
                                                         -order.deposit_amount)
                    record_transaction(
                        session,
                        wallet_id=worker_wallet.id,
                        order_id=order.id,
                        type=TransactionType.RELEASE,
                        change=change,
                        currency=order.currency,
                        reference=_ref(order),
                        notes=f"Deposit returned, order #{order.order_number} cancelled",
                        created_by_id=cancelled_by_id,
                    )
            await session.flush()
            return order, refund

        order, refund = await self._run(work, "cancel_order")
        logger.info("Order #%s cancelled by %s (%s refund %s): %s", order.order_number, cancelled_by_id,
                    refund_type, refund, reason)
        return order

    # ------------------------------
    # reads
    # ------------------------------
    async def get_order(self, order_id: str) -> Orders:
        async def work(session: AsyncSession):
            order = await session.get(Orders, order_id)
            if order is None:
                raise NotFoundError("Order not found", {"order_id": order_id})
            return order

        return await self._read(work)

    async def list_orders(self, *, page: int = 1, limit: int = 20, status: Optional[OrderStatus] = None,
                          customer_id: Optional[int] = None, worker_id: Optional[int] = None,
                          search: Optional[str] = None, sort_by: str = "created_at",
                          sort_order: str = "desc") -> dict:
        if sort_by not in SORTABLE:
            raise BadRequestError(f"Cannot sort by {sort_by}", {"allowed": sorted(SORTABLE)})
        page, limit = max(page, 1), min(max(limit, 1), 100)

        stmt = select(Orders)
        if search:
            search = search.strip()
            if search.isdigit():
                stmt = stmt.where(Orders.order_number == int(search))
            else:
                customer, worker = aliased(User), aliased(User)
                pattern = f"%{search}%"
                stmt = (
                    stmt.outerjoin(customer, customer.id == Orders.customer_id)
                    .outerjoin(worker, worker.id == Orders.worker_id)
                    .where(or_(
                        customer.fullname.ilike(pattern),
                        customer.username.ilike(pattern),
                        worker.fullname.ilike(pattern),
                        worker.username.ilike(pattern),
                    ))
                )
        if status is not None:
            stmt = stmt.where(Orders.status == status)
        if customer_id is not None:
            stmt = stmt.where(Orders.customer_id == customer_id)
        if worker_id is not None:
            stmt = stmt.where(Orders.worker_id == worker_id)

        column = SORTABLE[sort_by]
        ordering = column.asc() if sort_order.lower() == "asc" else column.desc()

        async def work(session: AsyncSession):
            total = await session.scalar(select(func.count()).select_from(stmt.subquery()))
            rs = await session.execute(stmt.order_by(ordering, Orders.id).offset((page - 1) * limit).limit(limit))
            return list(rs.scalars().all()), total or 0

        rows, total = await self._read(work)
        return {
            "list": rows,
            "total": total,
            "page": page,
            "limit": limit,
            "total_pages": math.ceil(total / limit) if total else 0,
        }

    async def get_order_history(self, order_id: str) -> list[OrderStatusHistory]:
        async def work(session: AsyncSession):
            if await session.get(Orders, order_id) is None:
                raise NotFoundError("Order not found", {"order_id": order_id})
            return await list_history(session, order_id)

        return await self._read(work)

    async def get_order_stats(self) -> dict:
        now = now_utc()
        today = now.replace(hour=0, minute=0, second=0, microsecond=0)
        month_start = today.replace(day=1)

        async def work(session: AsyncSession):
            rs = await session.execute(select(Orders.status, func.count(Orders.id)).group_by(Orders.status))
            by_status = {s.value: 0 for s in OrderStatus}
            for st, count in rs.all():
                by_status[OrderStatus(st).value] = count
            revenue = await session.scalar(
                select(func.sum(Orders.order_value)).where(Orders.status == OrderStatus.COMPLETED)
            )
            average = await session.scalar(
                select(func.avg(Orders.order_value)).where(Orders.status != OrderStatus.CANCELLED)
            )

            async def created_since(ts):
                return await session.scalar(select(func.count(Orders.id)).where(Orders.created_at >= ts)) or 0

            return {
                "total_orders": sum(by_status.values()),
                "orders_by_status": by_status,
                "total_revenue": _as_money(revenue),
                "average_order_value": _as_money(average),
                "orders_today": await created_since(today),
                "orders_this_week": await created_since(now - timedelta(days=7)),
                "orders_this_month": await created_since(month_start),
            }

        return await self._read(work)

    async def list_unsettled_order_ids(self, limit: int = 100) -> list[str]:
        """COMPLETED orders whose payout has not run yet (e.g. DISPUTED -> COMPLETED)."""
        async def work(session: AsyncSession):
            rs = await session.execute(
                select(Orders.id)
                .where(
                    Orders.status == OrderStatus.COMPLETED,
                    Orders.payout_processed.is_(False),
                    Orders.worker_id.is_not(None),
                    Orders.support_id.is_not(None),
                )
                .order_by(Orders.confirmed_at)
                .limit(limit)
            )
            return list(rs.scalars().all())

        return await self._read(work)

    # ------------------------------
    # wallets
    # ------------------------------
    async def get_wallet(self, wallet_id: str) -> Wallet:
        return await self._read(lambda session: ledger.get_wallet(session, wallet_id))

    async def get_wallet_by_user_id(self, user_id: int) -> Optional[Wallet]:
        return await self._read(lambda session: ledger.get_wallet_by_user_id(session, user_id))

    async def get_or_create_wallet(self, user_id: int, wallet_type: WalletType = WalletType.CUSTOMER) -> Wallet:
        async def work(session: AsyncSession):
            await get_user(session, user_id)
            return await ledger.get_or_create_wallet(session, user_id, wallet_type, self.config.DEFAULT_CURRENCY)

        return await self._run(work, "get_or_create_wallet")

    async def add_balance(self, wallet_id: str, amount, created_by_id: Optional[int],
                          kind: TransactionType = TransactionType.DEPOSIT, reference: Optional[str] = None,
                          notes: Optional[str] = None) -> tuple[Wallet, WalletTransaction]:
        value = Money.parse(amount).cents()
        wallet, row = await self._run(
            lambda session: ledger.add_balance(
                session, wallet_id, value, created_by_id, kind, reference, notes,
                max_balance=self.config.WALLET_MAX_BALANCE,
            ),
            "add_balance",
        )
        logger.info("Wallet %s topped up: %s %s by %s", wallet_id, kind.value, value, created_by_id)
        return wallet, row

    async def adjust_balance(self, wallet_id: str, amount, created_by_id: Optional[int], reason: str,
                             reference: Optional[str] = None) -> tuple[Wallet, WalletTransaction]:
        value = Money.parse(amount, allow_negative=True).cents()
        wallet, row = await self._run(
            lambda session: ledger.adjust_balance(session, wallet_id, value, created_by_id, reference, reason),
            "adjust_balance",
        )
        logger.info("Wallet %s adjusted by %s (%s) by %s", wallet_id, value, reason, created_by_id)
        return wallet, row

    async def get_transaction_history(self, wallet_id: str, limit: int = 50,
                                      offset: int = 0) -> list[WalletTransaction]:
        limit, offset = min(max(limit, 1), 200), max(offset, 0)
        return await self._read(lambda session: ledger.get_transaction_history(session, wallet_id, limit, offset))

    async def get_system_revenue(self) -> dict:
        month_start = now_utc().replace(day=1, hour=0, minute=0, second=0, microsecond=0)

        async def work(session: AsyncSession):
            return {
                "total_revenue": await ledger.get_system_revenue(session),
                "this_month_revenue": await ledger.get_system_revenue(session, since=month_start),
                "currency": self.config.DEFAULT_CURRENCY,
            }

        return await self._read(work)

    async def find_integrity_violations(self) -> list[Wallet]:
        return await self._read(ledger.find_integrity_violations)


def available_balance(wallet: Wallet) -> Money:
    role = ledger.ROLE_WORKER if wallet.wallet_type == WalletType.WORKER else ledger.ROLE_CUSTOMER
    return ledger.available_for(wallet, role)


__all__ = ["EscrowService", "available_balance", "REFUND_TYPES"]
