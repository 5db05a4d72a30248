# Who may drive an order forward. Pure predicates, no I/O.
from dataclasses import dataclass
from typing import Optional

from app.models.user import UserRole

STAFF_ROLES = frozenset({UserRole.SUPPORT, UserRole.ADMIN})


@dataclass(frozen=True)
class OrderParties:
    customer_id: int
    worker_id: Optional[int] = None
    support_id: Optional[int] = None

    @classmethod
    def of(cls, order) -> "OrderParties":
        return cls(order.customer_id, order.worker_id, order.support_id)


def can_confirm_completion(actor_id: int, actor_role: UserRole, parties: OrderParties) -> bool:
    return actor_id == parties.customer_id or actor_role in STAFF_ROLES


def can_mark_complete(actor_id: int, actor_role: UserRole, parties: OrderParties) -> bool:
    if actor_role == UserRole.ADMIN:
        return True
    return parties.worker_id is not None and actor_id == parties.worker_id


def can_manage_order(actor_role: UserRole) -> bool:
    return actor_role in STAFF_ROLES


def can_view_order(actor_id: int, actor_role: UserRole, parties: OrderParties) -> bool:
    if actor_role in STAFF_ROLES:
        return True
    return actor_id in (parties.customer_id, parties.worker_id, parties.support_id)
