"""
Order status graph and actor identities.

The transition table is the only authority on which status may follow
which. Cancellation has an additional per-actor guard on top of it
(``can_be_cancelled``).
"""
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple

from errors import AccessDenied, InvalidTransition, ValidationError


class OrderStatus(str, Enum):
    PENDING_SHOPPER = "pending_shopper"
    ACCEPTED_BY_SHOPPER = "accepted_by_shopper"
    SHOPPER_AT_SHOP = "shopper_at_shop"
    SHOPPING_IN_PROGRESS = "shopping_in_progress"
    SHOPPER_REVISED_ORDER = "shopper_revised_order"
    CUSTOMER_REVIEWING_REVISION = "customer_reviewing_revision"
    REVISION_REJECTED = "revision_rejected"
    CUSTOMER_APPROVED_REVISION = "customer_approved_revision"
    FINAL_SHOPPING = "final_shopping"
    BILL_UPLOADED = "bill_uploaded"
    BILL_APPROVED = "bill_approved"
    BILL_REJECTED = "bill_rejected"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


S = OrderStatus

TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    S.PENDING_SHOPPER: frozenset({S.ACCEPTED_BY_SHOPPER, S.CANCELLED}),
    S.ACCEPTED_BY_SHOPPER: frozenset({S.SHOPPER_AT_SHOP, S.CANCELLED}),
    S.SHOPPER_AT_SHOP: frozenset({S.SHOPPING_IN_PROGRESS, S.CANCELLED}),
    S.SHOPPING_IN_PROGRESS: frozenset({S.SHOPPER_REVISED_ORDER, S.FINAL_SHOPPING, S.BILL_UPLOADED, S.CANCELLED}),
    S.SHOPPER_REVISED_ORDER: frozenset({S.CUSTOMER_REVIEWING_REVISION, S.CANCELLED}),
    S.CUSTOMER_REVIEWING_REVISION: frozenset({S.CUSTOMER_APPROVED_REVISION, S.REVISION_REJECTED, S.CANCELLED}),
    S.REVISION_REJECTED: frozenset({S.SHOPPING_IN_PROGRESS, S.CANCELLED}),
    S.CUSTOMER_APPROVED_REVISION: frozenset({S.FINAL_SHOPPING, S.CANCELLED}),
    S.FINAL_SHOPPING: frozenset({S.BILL_UPLOADED, S.OUT_FOR_DELIVERY, S.CANCELLED}),
    S.BILL_UPLOADED: frozenset({S.BILL_APPROVED, S.BILL_REJECTED}),
    S.BILL_APPROVED: frozenset({S.OUT_FOR_DELIVERY, S.CANCELLED}),
    S.BILL_REJECTED: frozenset({S.SHOPPING_IN_PROGRESS, S.FINAL_SHOPPING, S.CANCELLED}),
    S.OUT_FOR_DELIVERY: frozenset({S.DELIVERED}),
    S.DELIVERED: frozenset(),
    S.CANCELLED: frozenset(),
    S.REFUNDED: frozenset(),
}

TERMINAL_STATES: FrozenSet[OrderStatus] = frozenset({S.DELIVERED, S.CANCELLED, S.REFUNDED})

INITIAL_STATUS = S.PENDING_SHOPPER

# Statuses in which a shopper is working on an order.
ACTIVE_STATUSES: FrozenSet[OrderStatus] = frozenset(
    s for s in OrderStatus if s not in TERMINAL_STATES and s != S.PENDING_SHOPPER
)


class ActorRole(str, Enum):
    CUSTOMER = "customer"
    SHOPPER = "shopper"
    ADMIN = "admin"


@dataclass(frozen=True)
class Actor:
    """Who is asking. Admin is the system principal and has no user id."""

    role: ActorRole
    id: Optional[str] = None

    def __post_init__(self):
        if self.role != ActorRole.ADMIN and not self.id:
            raise ValidationError(f"{self.role.value} actor requires an id", field="actor_id")

    @classmethod
    def customer(cls, customer_id: str) -> "Actor":
        return cls(ActorRole.CUSTOMER, customer_id)

    @classmethod
    def shopper(cls, shopper_id: str) -> "Actor":
        return cls(ActorRole.SHOPPER, shopper_id)

    @classmethod
    def system(cls) -> "Actor":
        return cls(ActorRole.ADMIN)

    @property
    def is_admin(self) -> bool:
        return self.role == ActorRole.ADMIN


# Edges whose roles differ from the default for their target.
EDGE_ROLES: Dict[Tuple[OrderStatus, OrderStatus], FrozenSet[ActorRole]] = {
    (S.CUSTOMER_APPROVED_REVISION, S.FINAL_SHOPPING): frozenset({ActorRole.SHOPPER, ActorRole.CUSTOMER}),
}

# Which non-admin role may drive an order into each status.
TARGET_ROLES: Dict[OrderStatus, FrozenSet[ActorRole]] = {
    S.ACCEPTED_BY_SHOPPER: frozenset({ActorRole.SHOPPER}),
    S.SHOPPER_AT_SHOP: frozenset({ActorRole.SHOPPER}),
    S.SHOPPING_IN_PROGRESS: frozenset({ActorRole.SHOPPER}),
    S.SHOPPER_REVISED_ORDER: frozenset({ActorRole.SHOPPER}),
    S.CUSTOMER_REVIEWING_REVISION: frozenset({ActorRole.SHOPPER}),
    S.CUSTOMER_APPROVED_REVISION: frozenset({ActorRole.CUSTOMER}),
    S.REVISION_REJECTED: frozenset({ActorRole.CUSTOMER}),
    S.FINAL_SHOPPING: frozenset({ActorRole.SHOPPER}),
    S.BILL_UPLOADED: frozenset({ActorRole.SHOPPER}),
    S.BILL_APPROVED: frozenset({ActorRole.CUSTOMER}),
    S.BILL_REJECTED: frozenset({ActorRole.CUSTOMER}),
    S.OUT_FOR_DELIVERY: frozenset({ActorRole.SHOPPER}),
    S.DELIVERED: frozenset({ActorRole.SHOPPER}),
    S.CANCELLED: frozenset({ActorRole.CUSTOMER, ActorRole.SHOPPER}),
    S.REFUNDED: frozenset(),
}

_CUSTOMER_CANCELLABLE: FrozenSet[OrderStatus] = frozenset({
    S.PENDING_SHOPPER,
    S.ACCEPTED_BY_SHOPPER,
    S.SHOPPER_AT_SHOP,
    S.SHOPPING_IN_PROGRESS,
    S.SHOPPER_REVISED_ORDER,
    S.CUSTOMER_REVIEWING_REVISION,
    S.REVISION_REJECTED,
    S.CUSTOMER_APPROVED_REVISION,
})

_SHOPPER_CANCELLABLE: FrozenSet[OrderStatus] = (
    _CUSTOMER_CANCELLABLE - {S.PENDING_SHOPPER}
) | {S.FINAL_SHOPPING, S.BILL_REJECTED}


def parse_status(value) -> OrderStatus:
    try:
        return OrderStatus(value)
    except ValueError:
        raise ValidationError(f"Unknown order status '{value}'", field="status")


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in TRANSITIONS[current]


def ensure_transition(current: OrderStatus, target: OrderStatus) -> None:
    if not can_transition(current, target):
        raise InvalidTransition(current.value, target.value)


def can_be_cancelled(status: OrderStatus, role: ActorRole) -> bool:
    """Whether ``role`` may cancel an order sitting in ``status``.

    Customers lose the right once goods are bought (final shopping and
    later). Shoppers may also back out of final shopping or a rejected
    bill. Admin may cancel wherever the transition table has an edge.
    """
    if status in TERMINAL_STATES:
        return False
    if role == ActorRole.ADMIN:
        return S.CANCELLED in TRANSITIONS[status]
    if role == ActorRole.SHOPPER:
        return status in _SHOPPER_CANCELLABLE
    return status in _CUSTOMER_CANCELLABLE


def ensure_role_for(actor: Actor, target: OrderStatus, current: Optional[OrderStatus] = None) -> None:
    """Check that ``actor`` may drive an order into ``target``, from ``current`` when known."""
    if actor.is_admin:
        return
    allowed = EDGE_ROLES.get((current, target), TARGET_ROLES.get(target, frozenset()))
    if actor.role not in allowed:
        raise AccessDenied(
            f"A {actor.role.value} cannot move an order to '{target.value}'",
            role=actor.role.value,
            requested=target.value,
        )
