"""
Order State Machine - status vocabulary and transition rules

Three independent tracks:
1. Payment status:  pending -> paid | failed | refunded
2. Order status:    created -> confirmed -> preparing -> ready_for_pickup
                    -> out_for_delivery -> delivered -> completed
3. Item fulfillment: pending -> packed -> handed_to_courier -> delivered

Legacy spellings from older records are mapped here and nowhere else.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Union
import logging

logger = logging.getLogger(__name__)


class OrderStatus(str, Enum):
    """
    Canonical order lifecycle statuses
    Every order is in exactly one of these after normalization
    """
    CREATED = "created"  # Submitted, awaiting payment
    CONFIRMED = "confirmed"  # Payment received
    PREPARING = "preparing"  # Vendor is packing
    READY_FOR_PICKUP = "ready_for_pickup"  # Waiting for courier
    OUT_FOR_DELIVERY = "out_for_delivery"  # Courier dispatched
    DELIVERED = "delivered"  # Dispute window running
    COMPLETED = "completed"  # Window passed, no dispute
    DELIVERY_FAILED = "delivery_failed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"


class PaymentStatus(str, Enum):
    """Payment track, independent of order status"""
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class FulfillmentStatus(str, Enum):
    """Per-item fulfillment track"""
    PENDING = "pending"
    PACKED = "packed"
    HANDED_TO_COURIER = "handed_to_courier"
    DELIVERED = "delivered"


class ActorRole(str, Enum):
    SYSTEM = "system"
    VENDOR = "vendor"
    BUYER = "buyer"
    ADMIN = "admin"


LEGACY_ORDER_STATUSES: Dict[str, OrderStatus] = {
    "pending_payment": OrderStatus.CREATED,
    "processing": OrderStatus.CONFIRMED,
    "shipped": OrderStatus.OUT_FOR_DELIVERY,
    "fulfilled": OrderStatus.DELIVERED,
}

LEGACY_FULFILLMENT_STATUSES: Dict[str, FulfillmentStatus] = {
    "shipped": FulfillmentStatus.HANDED_TO_COURIER,
    "fulfilled": FulfillmentStatus.DELIVERED,
}

FULFILLMENT_RANK: Dict[FulfillmentStatus, int] = {
    FulfillmentStatus.PENDING: 0,
    FulfillmentStatus.PACKED: 1,
    FulfillmentStatus.HANDED_TO_COURIER: 2,
    FulfillmentStatus.DELIVERED: 3,
}


def normalize_order_status(status: Union[str, OrderStatus]) -> OrderStatus:
    """
    Map a stored order status (canonical or legacy) to the canonical enum

    Raises:
        ValueError: if the value is neither canonical nor a known alias
    """
    if isinstance(status, OrderStatus):
        return status
    value = str(status).strip().lower()
    if value in LEGACY_ORDER_STATUSES:
        return LEGACY_ORDER_STATUSES[value]
    return OrderStatus(value)


def normalize_fulfillment_status(status: Union[str, FulfillmentStatus]) -> FulfillmentStatus:
    """Map a stored item status (canonical or legacy) to the canonical enum"""
    if isinstance(status, FulfillmentStatus):
        return status
    value = str(status).strip().lower()
    if value in LEGACY_FULFILLMENT_STATUSES:
        return LEGACY_FULFILLMENT_STATUSES[value]
    return FulfillmentStatus(value)


def normalize_payment_status(status: Union[str, PaymentStatus]) -> PaymentStatus:
    if isinstance(status, PaymentStatus):
        return status
    return PaymentStatus(str(status).strip().lower())


def normalize_actor_role(role: Union[str, ActorRole]) -> ActorRole:
    if isinstance(role, ActorRole):
        return role
    value = str(role).strip().lower()
    # master admins share the admin override
    if value == "master_admin":
        return ActorRole.ADMIN
    return ActorRole(value)


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of a transition check; reason is set only on rejection"""
    valid: bool
    reason: Optional[str] = None

    def to_dict(self) -> Dict:
        return {"valid": self.valid, "reason": self.reason}


class StateTransition:
    """
    Defines valid order transitions and which actor may drive each one
    """

    VALID_TRANSITIONS: Dict[OrderStatus, List[OrderStatus]] = {
        OrderStatus.CREATED: [OrderStatus.CONFIRMED, OrderStatus.CANCELLED],
        OrderStatus.CONFIRMED: [OrderStatus.PREPARING, OrderStatus.CANCELLED],
        OrderStatus.PREPARING: [OrderStatus.READY_FOR_PICKUP, OrderStatus.CANCELLED],
        OrderStatus.READY_FOR_PICKUP: [OrderStatus.OUT_FOR_DELIVERY, OrderStatus.CANCELLED],
        OrderStatus.OUT_FOR_DELIVERY: [
            OrderStatus.DELIVERED,
            OrderStatus.DELIVERY_FAILED,
            OrderStatus.CANCELLED,
        ],
        OrderStatus.DELIVERED: [OrderStatus.COMPLETED, OrderStatus.DISPUTED],
        # Retry the courier or give up
        OrderStatus.DELIVERY_FAILED: [OrderStatus.OUT_FOR_DELIVERY, OrderStatus.CANCELLED],
        # Admin resolution
        OrderStatus.DISPUTED: [OrderStatus.COMPLETED, OrderStatus.CANCELLED],
        OrderStatus.COMPLETED: [],  # Terminal state
        OrderStatus.CANCELLED: [],  # Terminal state
    }

    # Admin is absent: it may traverse any edge of VALID_TRANSITIONS
    ACTOR_TRANSITIONS: Dict[ActorRole, Dict[OrderStatus, List[OrderStatus]]] = {
        ActorRole.SYSTEM: {
            OrderStatus.CREATED: [OrderStatus.CONFIRMED],
            OrderStatus.DELIVERED: [OrderStatus.COMPLETED],
        },
        ActorRole.VENDOR: {
            OrderStatus.CONFIRMED: [OrderStatus.PREPARING],
            OrderStatus.PREPARING: [OrderStatus.READY_FOR_PICKUP],
            OrderStatus.READY_FOR_PICKUP: [OrderStatus.OUT_FOR_DELIVERY],
            OrderStatus.OUT_FOR_DELIVERY: [OrderStatus.DELIVERED, OrderStatus.DELIVERY_FAILED],
            OrderStatus.DELIVERY_FAILED: [OrderStatus.OUT_FOR_DELIVERY],
        },
        ActorRole.BUYER: {
            OrderStatus.DELIVERED: [OrderStatus.DISPUTED],
        },
    }

    @classmethod
    def get_allowed_transitions(cls, current_status: Union[str, OrderStatus]) -> List[OrderStatus]:
        """
        Get list of next statuses reachable from the current one in the base graph
        """
        return list(cls.VALID_TRANSITIONS.get(normalize_order_status(current_status), []))

    @classmethod
    def get_allowed_transitions_for_actor(
        cls,
        current_status: Union[str, OrderStatus],
        actor_role: Union[str, ActorRole],
    ) -> List[OrderStatus]:
        """
        Get the next statuses a given actor may drive the order to
        """
        current = normalize_order_status(current_status)
        role = normalize_actor_role(actor_role)
        if role == ActorRole.ADMIN:
            return cls.get_allowed_transitions(current)
        return list(cls.ACTOR_TRANSITIONS.get(role, {}).get(current, []))

    @classmethod
    def validate(
        cls,
        current_status: Union[str, OrderStatus],
        target_status: Union[str, OrderStatus],
        actor_role: Union[str, ActorRole],
    ) -> TransitionResult:
        """
        Decide whether actor_role may move an order from current to target

        Pure: nothing is persisted or logged to the audit trail here.

        Args:
            current_status: Stored status (legacy spellings accepted)
            target_status: Desired status (legacy spellings accepted)
            actor_role: system, vendor, buyer or admin

        Returns:
            TransitionResult with a human-readable reason on rejection
        """
        current = normalize_order_status(current_status)
        target = normalize_order_status(target_status)
        role = normalize_actor_role(actor_role)

        if target not in cls.VALID_TRANSITIONS.get(current, []):
            return TransitionResult(
                valid=False,
                reason=f"Invalid transition from '{current.value}' to '{target.value}'",
            )

        if role == ActorRole.ADMIN:
            return TransitionResult(valid=True)

        allowed_for_actor = cls.ACTOR_TRANSITIONS.get(role, {}).get(current, [])
        if target not in allowed_for_actor:
            return TransitionResult(
                valid=False,
                reason=(
                    f"Actor '{role.value}' cannot transition from "
                    f"'{current.value}' to '{target.value}'"
                ),
            )

        return TransitionResult(valid=True)

    @classmethod
    def is_terminal_state(cls, status: Union[str, OrderStatus]) -> bool:
        """
        Check if status is terminal (no further transitions possible)
        """
        return len(cls.get_allowed_transitions(status)) == 0


class FulfillmentTransition:
    """
    Item-level transitions; a vendor may skip packing and hand over directly
    """

    VALID_TRANSITIONS: Dict[FulfillmentStatus, List[FulfillmentStatus]] = {
        FulfillmentStatus.PENDING: [FulfillmentStatus.PACKED, FulfillmentStatus.HANDED_TO_COURIER],
        FulfillmentStatus.PACKED: [FulfillmentStatus.HANDED_TO_COURIER],
        FulfillmentStatus.HANDED_TO_COURIER: [FulfillmentStatus.DELIVERED],
        FulfillmentStatus.DELIVERED: [],  # Terminal state
    }

    @classmethod
    def get_allowed_transitions(
        cls, current_status: Union[str, FulfillmentStatus]
    ) -> List[FulfillmentStatus]:
        return list(cls.VALID_TRANSITIONS.get(normalize_fulfillment_status(current_status), []))

    @classmethod
    def validate(
        cls,
        current_status: Union[str, FulfillmentStatus],
        target_status: Union[str, FulfillmentStatus],
    ) -> TransitionResult:
        current = normalize_fulfillment_status(current_status)
        target = normalize_fulfillment_status(target_status)
        if target not in cls.VALID_TRANSITIONS.get(current, []):
            return TransitionResult(
                valid=False,
                reason=f"Item cannot move from '{current.value}' to '{target.value}'",
            )
        return TransitionResult(valid=True)

    @staticmethod
    def has_reached(
        status: Union[str, FulfillmentStatus],
        milestone: FulfillmentStatus,
    ) -> bool:
        """True if the item is at or past the given milestone"""
        return FULFILLMENT_RANK[normalize_fulfillment_status(status)] >= FULFILLMENT_RANK[milestone]


class CancellationRules:
    """
    Rules for when an order may still be cancelled
    """

    CANCELLABLE_STATUSES = frozenset({
        OrderStatus.CREATED,
        OrderStatus.CONFIRMED,
        OrderStatus.PREPARING,
        OrderStatus.READY_FOR_PICKUP,
        OrderStatus.OUT_FOR_DELIVERY,
        OrderStatus.DELIVERED,
        OrderStatus.DISPUTED,
        OrderStatus.DELIVERY_FAILED,
    })

    @classmethod
    def can_cancel(cls, order_status: Union[str, OrderStatus]) -> bool:
        return normalize_order_status(order_status) in cls.CANCELLABLE_STATUSES

    @staticmethod
    def refund_required(payment_status: Union[str, PaymentStatus]) -> bool:
        """A cancelled order owes the buyer a refund only if it was paid"""
        return normalize_payment_status(payment_status) == PaymentStatus.PAID


def get_valid_order_transitions(current_status: Union[str, OrderStatus]) -> List[OrderStatus]:
    return StateTransition.get_allowed_transitions(current_status)


def get_valid_fulfillment_transitions(
    current_status: Union[str, FulfillmentStatus]
) -> List[FulfillmentStatus]:
    return FulfillmentTransition.get_allowed_transitions(current_status)


def validate_transition(
    current_status: Union[str, OrderStatus],
    target_status: Union[str, OrderStatus],
    actor_role: Union[str, ActorRole],
) -> TransitionResult:
    """Module-level shortcut for StateTransition.validate"""
    return StateTransition.validate(current_status, target_status, actor_role)


def is_terminal_state(status: Union[str, OrderStatus]) -> bool:
    return StateTransition.is_terminal_state(status)
