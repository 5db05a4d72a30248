import asyncio
from datetime import datetime

import pytest
from sqlalchemy import select, update

from app.core.config import Settings
from app.core.exceptions import (
    BadRequestError, EscrowError, InsufficientBalanceError, InvalidTransitionError, NotFoundError,
)
from app.core.money import Money
from app.models.orders import OrderStatus, Orders
from app.models.user import UserRole
from app.models.wallet import TransactionStatus, TransactionType, WalletTransaction, WalletType
from app.schemas.orders import DiscordOrderCreateIn, OrderCreateIn
from app.services.escrow_service import EscrowService
from app.tasks.payouts import check_wallet_integrity, sweep_pending_payouts


def _order(customer, support=None, worker=None, value="100", deposit="50", **kw) -> OrderCreateIn:
    return OrderCreateIn(
        customer_id=customer.id,
        support_id=support.id if support else None,
        worker_id=worker.id if worker else None,
        order_value=value,
        deposit_amount=deposit,
        **kw,
    )


async def _transactions(sessionmaker, **where):
    async with sessionmaker() as session:
        stmt = select(WalletTransaction).filter_by(**where).order_by(WalletTransaction.created_at)
        return list((await session.execute(stmt)).scalars().all())


def _total(*wallets) -> Money:
    return sum((w.balance + w.pending_balance + w.deposit for w in wallets), Money.zero())


# ------------------------------
# happy path
# ------------------------------
async def test_happy_path_end_to_end(escrow, parties, wallet_of, sessionmaker):
    customer, worker, support = parties

    order = await escrow.create_order(_order(customer, support))
    assert order.status == OrderStatus.PENDING
    assert order.order_number == 1
    assert (order.worker_payout, order.support_payout, order.system_payout) == (80, 5, 15)
    cw = await wallet_of(customer)
    assert (cw.balance, cw.pending_balance) == (900, 100)

    order = await escrow.claim_order(order.id, worker.discord_id)
    assert order.worker_id == worker.id
    assert order.status == OrderStatus.IN_PROGRESS
    assert order.assigned_at is not None and order.started_at is not None
    ww = await wallet_of(worker)
    assert (ww.balance, ww.pending_balance, ww.deposit) == (50, 50, 0)

    order = await escrow.complete_order(order.id, worker, "all done")
    assert order.status == OrderStatus.AWAITING_CONFIRM
    assert order.completion_notes == "all done"

    order = await escrow.confirm_order_completion(order.id, customer, "thanks")
    assert order.status == OrderStatus.COMPLETED
    assert order.payout_processed is True
    assert order.confirmed_at is not None

    cw, ww, sw = await wallet_of(customer), await wallet_of(worker), await wallet_of(support)
    assert (cw.balance, cw.pending_balance) == (900, 0)
    assert (ww.balance, ww.pending_balance, ww.deposit) == (180, 0, 0)
    assert sw.balance == 5 and sw.wallet_type == WalletType.SUPPORT

    revenue = await escrow.get_system_revenue()
    assert revenue["total_revenue"] == 15

    # conservation: 1000 + 100 in, nothing created or lost
    assert _total(cw, ww, sw) + order.system_payout == 1100

    history = await escrow.get_order_history(order.id)
    assert [h.to_status for h in history] == [
        OrderStatus.PENDING, OrderStatus.ASSIGNED, OrderStatus.IN_PROGRESS,
        OrderStatus.AWAITING_CONFIRM, OrderStatus.COMPLETED,
    ]
    assert history[0].from_status is None


async def test_every_ledger_row_carries_the_order_id(escrow, parties, sessionmaker):
    customer, worker, support = parties
    order = await escrow.create_order(_order(customer, support, worker))
    await escrow.update_order_status(order.id, OrderStatus.IN_PROGRESS, support.id)
    await escrow.complete_order(order.id, worker)
    await escrow.confirm_order_completion(order.id, support)

    rows = await _transactions(sessionmaker, order_id=order.id)
    kinds = sorted(r.type.value for r in rows)
    assert kinds == ["COMMISSION", "EARNING", "PAYMENT", "PAYMENT", "RELEASE", "RELEASE"]
    for r in rows:
        assert r.balance_after == r.balance_before + r.amount
    pending = [r for r in rows if r.type == TransactionType.PAYMENT]
    assert all(r.status == TransactionStatus.PENDING for r in pending)


async def test_create_with_worker_locks_deposit_and_assigns(escrow, parties, wallet_of):
    customer, worker, support = parties
    order = await escrow.create_order(_order(customer, support, worker, deposit="30"))
    assert order.status == OrderStatus.ASSIGNED and order.assigned_at is not None
    ww = await wallet_of(worker)
    assert (ww.balance, ww.pending_balance) == (70, 30)


async def test_order_numbers_increase(escrow, parties):
    customer, _, support = parties
    a = await escrow.create_order(_order(customer, support, value="10", deposit="0"))
    b = await escrow.create_order(_order(customer, support, value="10", deposit="0"))
    assert (a.order_number, b.order_number) == (1, 2)


# ------------------------------
# payouts
# ------------------------------
async def test_payout_is_idempotent(escrow, parties, wallet_of, sessionmaker):
    customer, worker, support = parties
    order = await escrow.create_order(_order(customer, support, worker))
    await escrow.update_order_status(order.id, OrderStatus.IN_PROGRESS, support.id)
    await escrow.complete_order(order.id, worker)
    await escrow.confirm_order_completion(order.id, customer)
    before = [await wallet_of(u) for u in parties]
    rows_before = len(await _transactions(sessionmaker))

    again = await escrow.process_order_payouts(order.id)
    assert again.payout_processed
    after = [await wallet_of(u) for u in parties]
    assert [(w.balance, w.pending_balance, w.deposit) for w in after] == \
           [(w.balance, w.pending_balance, w.deposit) for w in before]
    assert len(await _transactions(sessionmaker)) == rows_before


async def test_payout_requires_completed_status_and_parties(escrow, parties):
    customer, worker, support = parties
    order = await escrow.create_order(_order(customer, support, worker))
    with pytest.raises(BadRequestError):
        await escrow.process_order_payouts(order.id)

    no_support = await escrow.create_order(_order(customer, None, worker, value="10", deposit="0"))
    await escrow.update_order_status(no_support.id, OrderStatus.IN_PROGRESS, support.id)
    await escrow.complete_order(no_support.id, worker)
    with pytest.raises(BadRequestError):
        await escrow.confirm_order_completion(no_support.id, customer)
    unchanged = await escrow.get_order(no_support.id)
    assert unchanged.status == OrderStatus.AWAITING_CONFIRM and unchanged.confirmed_at is None


async def test_dispute_cannot_resolve_to_completed_without_support(escrow, parties, wallet_of):
    customer, worker, support = parties
    order = await escrow.create_order(_order(customer, None, worker, value="10", deposit="0"))
    await escrow.update_order_status(order.id, OrderStatus.IN_PROGRESS, support.id)
    await escrow.update_order_status(order.id, OrderStatus.DISPUTED, support.id)
    with pytest.raises(BadRequestError):
        await escrow.update_order_status(order.id, OrderStatus.COMPLETED, support.id)
    assert (await escrow.get_order(order.id)).status == OrderStatus.DISPUTED
    assert (await wallet_of(customer)).pending_balance == 10


async def test_disputed_then_completed_pays_out(escrow, parties, wallet_of):
    customer, worker, support = parties
    order = await escrow.create_order(_order(customer, support, worker))
    await escrow.update_order_status(order.id, OrderStatus.IN_PROGRESS, support.id)
    await escrow.update_order_status(order.id, OrderStatus.DISPUTED, support.id, "customer complaint")
    order = await escrow.update_order_status(order.id, OrderStatus.COMPLETED, support.id, "resolved")
    assert order.payout_processed
    assert (await wallet_of(worker)).balance == 180


async def test_sweep_settles_unpaid_completed_orders(escrow, parties, sessionmaker, wallet_of):
    customer, worker, support = parties
    order = await escrow.create_order(_order(customer, support, worker))
    async with sessionmaker() as session:
        async with session.begin():
            await session.execute(update(Orders).where(Orders.id == order.id).values(status=OrderStatus.COMPLETED))

    assert await escrow.list_unsettled_order_ids() == [order.id]
    assert await sweep_pending_payouts(escrow) == 1
    assert await sweep_pending_payouts(escrow) == 0
    assert (await wallet_of(support)).balance == 5
    assert await check_wallet_integrity(escrow) == []


async def test_sweep_skips_orders_that_cannot_pay_out(escrow, parties, sessionmaker, wallet_of):
    customer, worker, support = parties
    unpayable = await escrow.create_order(_order(customer, None, worker, value="10", deposit="0"))
    payable = await escrow.create_order(_order(customer, support, worker))
    async with sessionmaker() as session:
        async with session.begin():
            for oid, confirmed in ((unpayable.id, datetime(2024, 1, 1)), (payable.id, datetime(2024, 1, 2))):
                await session.execute(
                    update(Orders).where(Orders.id == oid)
                    .values(status=OrderStatus.COMPLETED, confirmed_at=confirmed)
                )

    assert await escrow.list_unsettled_order_ids(limit=1) == [payable.id]
    assert await sweep_pending_payouts(escrow, limit=1) == 1
    assert (await escrow.get_order(payable.id)).payout_processed
    assert (await wallet_of(support)).balance == 5


# ------------------------------
# insufficient funds
# ------------------------------
async def test_insufficient_customer_funds_rolls_everything_back(escrow, make_user, fund, wallet_of, sessionmaker):
    customer = await make_user(UserRole.CUSTOMER)
    support = await make_user(UserRole.SUPPORT)
    await fund(customer, balance="50")

    with pytest.raises(InsufficientBalanceError) as e:
        await escrow.create_order(_order(customer, support))
    assert e.value.role == "customer"
    assert e.value.details["required"] == "100.00"
    assert e.value.details["available"] == "50.00"

    listing = await escrow.list_orders()
    assert listing["total"] == 0
    cw = await wallet_of(customer)
    assert (cw.balance, cw.pending_balance) == (50, 0)
    assert await _transactions(sessionmaker, type=TransactionType.PAYMENT) == []


async def test_worker_deposit_fallback_on_claim(escrow, make_user, fund, wallet_of, parties):
    customer, _, support = parties
    worker = await make_user(UserRole.WORKER, "poor-worker")
    await fund(worker, balance="10", deposit="100", wallet_type=WalletType.WORKER)

    order = await escrow.create_order(_order(customer, support))
    await escrow.claim_order(order.id, "poor-worker")
    ww = await wallet_of(worker)
    assert (ww.balance, ww.deposit, ww.pending_balance) == (0, 60, 50)


async def test_worker_without_eligibility_cannot_claim(escrow, make_user, fund, wallet_of, parties):
    customer, _, support = parties
    worker = await make_user(UserRole.WORKER, "broke-worker")
    await fund(worker, balance="10", deposit="5", wallet_type=WalletType.WORKER)

    order = await escrow.create_order(_order(customer, support))
    with pytest.raises(InsufficientBalanceError) as e:
        await escrow.claim_order(order.id, "broke-worker")
    assert e.value.role == "worker"
    assert e.value.details["breakdown"] == {"deposit": "5.00", "balance": "10.00"}

    order = await escrow.get_order(order.id)
    assert order.status == OrderStatus.PENDING and order.worker_id is None
    ww = await wallet_of(worker)
    assert (ww.balance, ww.deposit, ww.pending_balance) == (10, 5, 0)


# ------------------------------
# concurrency
# ------------------------------
async def test_concurrent_claim_has_one_winner(escrow, make_user, fund, wallet_of, parties):
    customer, _, support = parties
    w1 = await make_user(UserRole.WORKER, "racer-1")
    w2 = await make_user(UserRole.WORKER, "racer-2")
    for w in (w1, w2):
        await fund(w, balance="100", wallet_type=WalletType.WORKER)
    order = await escrow.create_order(_order(customer, support))

    results = await asyncio.gather(
        escrow.claim_order(order.id, "racer-1"),
        escrow.claim_order(order.id, "racer-2"),
        return_exceptions=True,
    )
    won = [r for r in results if isinstance(r, Orders)]
    lost = [r for r in results if isinstance(r, Exception)]
    assert len(won) == 1 and len(lost) == 1
    assert isinstance(lost[0], EscrowError)

    winner = won[0].worker_id
    loser = w2 if winner == w1.id else w1
    final = await escrow.get_order(order.id)
    assert final.worker_id == winner
    lw = await wallet_of(loser)
    assert (lw.balance, lw.pending_balance) == (100, 0)


async def test_concurrent_creates_cannot_overdraw(escrow, make_user, fund, wallet_of):
    customer = await make_user(UserRole.CUSTOMER)
    support = await make_user(UserRole.SUPPORT)
    await fund(customer, balance="150")

    results = await asyncio.gather(
        escrow.create_order(_order(customer, support, deposit="0")),
        escrow.create_order(_order(customer, support, deposit="0")),
        return_exceptions=True,
    )
    assert sum(isinstance(r, Orders) for r in results) == 1
    assert sum(isinstance(r, InsufficientBalanceError) for r in results) == 1
    cw = await wallet_of(customer)
    assert (cw.balance, cw.pending_balance) == (50, 100)


# ------------------------------
# cancellation
# ------------------------------
async def _claimed(escrow, parties):
    customer, worker, support = parties
    order = await escrow.create_order(_order(customer, support))
    return await escrow.claim_order(order.id, worker.discord_id)


async def test_full_refund_returns_deposit_amount(escrow, parties, wallet_of, sessionmaker):
    customer, worker, support = parties
    order = await _claimed(escrow, parties)

    order = await escrow.cancel_order(order.id, support.id, "customer changed their mind", "full")
    assert order.status == OrderStatus.CANCELLED
    assert order.cancellation_reason == "customer changed their mind"
    assert order.cancelled_at is not None

    cw = await wallet_of(customer)
    assert (cw.balance, cw.pending_balance) == (950, 50)
    ww = await wallet_of(worker)
    assert (ww.balance, ww.pending_balance) == (100, 0)
    refunds = await _transactions(sessionmaker, order_id=order.id, type=TransactionType.REFUND)
    assert len(refunds) == 1 and refunds[0].amount == 50


async def test_partial_refund(escrow, parties, wallet_of):
    customer, _, support = parties
    order = await _claimed(escrow, parties)
    await escrow.cancel_order(order.id, support.id, "partial work", "partial", "30")
    cw = await wallet_of(customer)
    assert (cw.balance, cw.pending_balance) == (930, 50)


async def test_no_refund_still_returns_worker_deposit(escrow, parties, wallet_of, sessionmaker):
    customer, worker, support = parties
    order = await _claimed(escrow, parties)
    await escrow.cancel_order(order.id, support.id, "fraud", "none")
    cw = await wallet_of(customer)
    assert (cw.balance, cw.pending_balance) == (900, 100)
    assert (await wallet_of(worker)).balance == 100
    assert await _transactions(sessionmaker, order_id=order.id, type=TransactionType.REFUND) == []


@pytest.mark.parametrize("refund_type,amount", [("partial", None), ("partial", "0"), ("partial", "100.01"),
                                                ("bogus", None)])
async def test_invalid_refund_requests(escrow, parties, refund_type, amount):
    customer, _, support = parties
    order = await escrow.create_order(_order(customer, support))
    with pytest.raises(BadRequestError):
        await escrow.cancel_order(order.id, support.id, "reason", refund_type, amount)
    assert (await escrow.get_order(order.id)).status == OrderStatus.PENDING


async def test_cannot_cancel_completed_or_cancelled(escrow, parties):
    customer, worker, support = parties
    order = await escrow.create_order(_order(customer, support))
    await escrow.cancel_order(order.id, support.id, "dup", "none")
    with pytest.raises(BadRequestError):
        await escrow.cancel_order(order.id, support.id, "again", "none")

    done = await escrow.create_order(_order(customer, support, worker, value="10", deposit="0"))
    await escrow.update_order_status(done.id, OrderStatus.IN_PROGRESS, support.id)
    await escrow.complete_order(done.id, worker)
    await escrow.confirm_order_completion(done.id, customer)
    with pytest.raises(BadRequestError):
        await escrow.cancel_order(done.id, support.id, "too late", "full")


# ------------------------------
# lifecycle guards
# ------------------------------
async def test_invalid_transition_leaves_order_untouched(escrow, parties):
    customer, _, support = parties
    order = await escrow.create_order(_order(customer, support))
    with pytest.raises(InvalidTransitionError):
        await escrow.update_order_status(order.id, OrderStatus.COMPLETED, support.id)
    with pytest.raises(InvalidTransitionError):
        await escrow.update_order_status(order.id, OrderStatus.PENDING, support.id)
    assert (await escrow.get_order(order.id)).status == OrderStatus.PENDING
    assert len(await escrow.get_order_history(order.id)) == 1


async def test_cancel_goes_through_cancel_operation(escrow, parties):
    customer, _, support = parties
    order = await escrow.create_order(_order(customer, support))
    with pytest.raises(BadRequestError):
        await escrow.update_order_status(order.id, OrderStatus.CANCELLED, support.id)


async def test_status_update_cannot_assign_without_a_worker(escrow, parties):
    customer, _, support = parties
    order = await escrow.create_order(_order(customer, support))
    with pytest.raises(BadRequestError) as e:
        await escrow.update_order_status(order.id, OrderStatus.ASSIGNED, support.id)
    assert "assign_worker" in e.value.message
    order = await escrow.get_order(order.id)
    assert order.status == OrderStatus.PENDING and order.worker_id is None
    assert len(await escrow.get_order_history(order.id)) == 1


async def test_only_assigned_worker_completes_and_customer_confirms(escrow, parties, make_user):
    customer, worker, support = parties
    stranger = await make_user(UserRole.WORKER)
    order = await _claimed(escrow, parties)

    with pytest.raises(BadRequestError):
        await escrow.complete_order(order.id, stranger)
    await escrow.complete_order(order.id, worker)
    with pytest.raises(BadRequestError):
        await escrow.confirm_order_completion(order.id, worker)
    with pytest.raises(BadRequestError):
        await escrow.complete_order(order.id, worker)


async def test_claim_requires_pending_unassigned_order(escrow, parties, make_user, fund):
    customer, worker, support = parties
    order = await escrow.create_order(_order(customer, support, worker))
    other = await make_user(UserRole.WORKER, "late-worker")
    await fund(other, balance="100", wallet_type=WalletType.WORKER)
    with pytest.raises(BadRequestError):
        await escrow.claim_order(order.id, "late-worker")


async def test_claim_without_auto_start(sessionmaker, parties, monkeypatch):
    monkeypatch.setenv("AUTO_START_ON_CLAIM", "0")
    escrow = EscrowService(sessionmaker, Settings())
    customer, worker, support = parties
    order = await escrow.create_order(_order(customer, support))
    order = await escrow.claim_order(order.id, worker.discord_id)
    assert order.status == OrderStatus.ASSIGNED and order.started_at is None


async def test_assign_worker(escrow, parties, wallet_of):
    customer, worker, support = parties
    order = await escrow.create_order(_order(customer, support))
    order = await escrow.assign_worker(order.id, worker.id, support.id, "best fit")
    assert order.status == OrderStatus.ASSIGNED and order.worker_id == worker.id
    assert (await wallet_of(worker)).pending_balance == 50
    with pytest.raises(BadRequestError):
        await escrow.assign_worker(order.id, worker.id, support.id)


# ------------------------------
# creation input
# ------------------------------
@pytest.mark.parametrize("value,deposit", [("0", "0"), ("100000.01", "0"), ("10", "100000.01")])
async def test_amount_bounds(escrow, parties, value, deposit):
    customer, _, support = parties
    with pytest.raises(BadRequestError):
        await escrow.create_order(_order(customer, support, value=value, deposit=deposit))


async def test_negative_deposit_rejected(escrow, parties):
    customer, _, support = parties
    with pytest.raises(BadRequestError):
        await escrow.create_order(_order(customer, support, deposit="-1"))


async def test_idempotency_key_replays_without_charging_twice(escrow, parties, wallet_of):
    customer, _, support = parties
    first = await escrow.create_order(_order(customer, support, idempotency_key="abc-123"))
    second = await escrow.create_order(_order(customer, support, idempotency_key="abc-123"))
    assert first.id == second.id
    cw = await wallet_of(customer)
    assert (cw.balance, cw.pending_balance) == (900, 100)


async def test_unknown_parties_are_not_found(escrow, parties):
    customer, _, support = parties
    with pytest.raises(NotFoundError):
        await escrow.create_order(OrderCreateIn(customer_id=9999, order_value="10"))
    with pytest.raises(NotFoundError):
        await escrow.create_order(_order(customer, support, service_id="missing-service"))
    with pytest.raises(NotFoundError) as e:
        await escrow.create_order_by_discord(DiscordOrderCreateIn(
            customer_discord_id="nobody", support_discord_id="supp-1", order_value="10",
        ))
    assert "nobody" in e.value.message


async def test_create_by_discord(escrow, parties, make_service):
    customer, worker, support = parties
    svc = await make_service()
    order = await escrow.create_order_by_discord(DiscordOrderCreateIn(
        customer_discord_id="cust-1", support_discord_id="supp-1", worker_discord_id="work-1",
        service_id=svc.id, order_value="20", deposit_amount="10", job_details="carry",
    ))
    assert (order.customer_id, order.support_id, order.worker_id) == (customer.id, support.id, worker.id)
    assert order.service_id == svc.id and order.status == OrderStatus.ASSIGNED


# ------------------------------
# reads
# ------------------------------
async def test_list_search_and_stats(escrow, parties):
    customer, worker, support = parties
    a = await escrow.create_order(_order(customer, support, value="10", deposit="0"))
    await escrow.create_order(_order(customer, support, value="20", deposit="0"))
    await escrow.cancel_order(a.id, support.id, "nope", "none")

    page = await escrow.list_orders(limit=1)
    assert page["total"] == 2 and page["total_pages"] == 2 and len(page["list"]) == 1
    assert (await escrow.list_orders(search="1"))["list"][0].id == a.id
    assert (await escrow.list_orders(search=customer.fullname))["total"] == 2
    assert (await escrow.list_orders(status=OrderStatus.CANCELLED))["total"] == 1
    with pytest.raises(BadRequestError):
        await escrow.list_orders(sort_by="password")

    stats = await escrow.get_order_stats()
    assert stats["total_orders"] == 2
    assert stats["orders_by_status"]["CANCELLED"] == 1 and stats["orders_by_status"]["PENDING"] == 1
    assert stats["average_order_value"] == 20
    assert stats["orders_today"] == 2
