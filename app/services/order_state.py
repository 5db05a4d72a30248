"""
Order status state machine.

Every status change goes through ``apply_transition`` so that the legality
check, the lifecycle timestamp and the history row always travel together.
"""
from datetime import datetime
from typing import Dict, FrozenSet, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import InvalidTransitionError
from app.core.timeutil import now_utc
from app.models.orders import OrderStatus, OrderStatusHistory, Orders

S = OrderStatus

TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    S.PENDING: frozenset({S.CLAIMING, S.ASSIGNED, S.CANCELLED}),
    S.CLAIMING: frozenset({S.ASSIGNED, S.CANCELLED}),
    S.ASSIGNED: frozenset({S.IN_PROGRESS, S.CANCELLED}),
    S.IN_PROGRESS: frozenset({S.AWAITING_CONFIRM, S.CANCELLED, S.DISPUTED}),
    S.AWAITING_CONFIRM: frozenset({S.COMPLETED, S.DISPUTED, S.CANCELLED}),
    S.COMPLETED: frozenset({S.DISPUTED}),
    S.CANCELLED: frozenset({S.REFUNDED}),
    S.DISPUTED: frozenset({S.COMPLETED, S.REFUNDED, S.CANCELLED, S.IN_PROGRESS, S.AWAITING_CONFIRM}),
    S.REFUNDED: frozenset(),
}

# lifecycle column stamped when an order enters the status
_TIMESTAMPS = {
    S.ASSIGNED: "assigned_at",
    S.IN_PROGRESS: "started_at",
    S.AWAITING_CONFIRM: "completed_at",
    S.COMPLETED: "confirmed_at",
    S.CANCELLED: "cancelled_at",
}

_ORDER = list(OrderStatus)


def allowed_transitions(status: OrderStatus) -> list[OrderStatus]:
    return sorted(TRANSITIONS.get(status, frozenset()), key=_ORDER.index)


def is_valid_transition(from_status: OrderStatus, to_status: OrderStatus) -> bool:
    return to_status in TRANSITIONS.get(from_status, frozenset())


def validate_transition(from_status: OrderStatus, to_status: OrderStatus) -> None:
    if not is_valid_transition(from_status, to_status):
        raise InvalidTransitionError(from_status, to_status, allowed_transitions(from_status))


def add_history(
    session: AsyncSession,
    order_id: str,
    from_status: Optional[OrderStatus],
    to_status: OrderStatus,
    changed_by_id: Optional[int],
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> OrderStatusHistory:
    row = OrderStatusHistory(
        order_id=order_id,
        from_status=from_status,
        to_status=to_status,
        changed_by_id=changed_by_id,
        reason=reason,
        created_at=now or now_utc(),
    )
    session.add(row)
    return row


def stamp(order: Orders, status: OrderStatus, now: datetime) -> None:
    column = _TIMESTAMPS.get(status)
    if column:
        setattr(order, column, now)


def apply_transition(
    session: AsyncSession,
    order: Orders,
    to_status: OrderStatus,
    changed_by_id: Optional[int],
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> OrderStatusHistory:
    """Validate and apply ``order.status -> to_status`` on a locked order row."""
    from_status = order.status
    validate_transition(from_status, to_status)
    now = now or now_utc()
    order.status = to_status
    stamp(order, to_status, now)
    return add_history(session, order.id, from_status, to_status, changed_by_id, reason, now)


def record_initial_status(session: AsyncSession, order: Orders, changed_by_id: Optional[int],
                          reason: Optional[str] = None) -> OrderStatusHistory:
    return add_history(session, order.id, None, order.status, changed_by_id, reason, order.created_at)


async def list_history(session: AsyncSession, order_id: str) -> list[OrderStatusHistory]:
    rs = await session.execute(
        select(OrderStatusHistory)
        .where(OrderStatusHistory.order_id == order_id)
        .order_by(OrderStatusHistory.created_at, OrderStatusHistory.id)
    )
    return list(rs.scalars().all())
