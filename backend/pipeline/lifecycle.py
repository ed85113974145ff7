"""
Lifecycle Guard
===============
Explicit transition table: ``(current state, actor role) -> allowed targets``.

Checked before every write that changes ``status`` and before every
delete. A rejection raises PreconditionError naming what failed; nothing
is silently downgraded.
"""

from typing import Callable, Dict, FrozenSet, Optional, Tuple, Union

import structlog

from pipeline.errors import PreconditionError
from schemas.commerce import (
    HELD_PAYMENT_STATUSES,
    Actor,
    ActorRole,
    Order,
    OrderStatus,
    Subscription,
    SubscriptionStatus,
)

logger = structlog.get_logger().bind(component="lifecycle_guard")

Purchase = Union[Order, Subscription]

CLIENT, ADMIN, SYSTEM = ActorRole.CLIENT, ActorRole.ADMIN, ActorRole.SYSTEM


def _table(rows) -> Dict[Tuple[object, ActorRole], FrozenSet]:
    table: Dict[Tuple[object, ActorRole], FrozenSet] = {}
    for current, roles, targets in rows:
        for role in roles:
            key = (current, role)
            table[key] = table.get(key, frozenset()) | frozenset(targets)
    return table


# =============================================================================
# ORDER
# =============================================================================

_O = OrderStatus

ORDER_TRANSITIONS = _table([
    (_O.PENDING, (SYSTEM,), (_O.INPROGRESS, _O.FAILED)),
    (_O.PENDING, (CLIENT, ADMIN), (_O.CANCELLED,)),
    (_O.INPROGRESS, (ADMIN,), (_O.COMPLETED,)),
    (_O.COMPLETED, (CLIENT,), (_O.ACCEPTED,)),
])

ORDER_DELETABLE_FROM = frozenset({_O.CANCELLED})


# target -> (check(order, delivered_files), failure message)
ORDER_PRECONDITIONS: Dict[OrderStatus, Tuple[Callable[[Order, int], bool], str]] = {
    _O.ACCEPTED: (
        lambda order, _: order.payment_status in HELD_PAYMENT_STATUSES,
        "payment must be authorized or captured before the order can be accepted",
    ),
    _O.COMPLETED: (
        lambda _, delivered_files: delivered_files > 0,
        "at least one delivered file is required to complete the order",
    ),
}


# =============================================================================
# SUBSCRIPTION
# =============================================================================

_S = SubscriptionStatus

SUBSCRIPTION_TRANSITIONS = _table([
    (_S.PENDING, (SYSTEM,), (_S.ACTIVE, _S.PAYMENT_FAILED)),
    (_S.PENDING, (CLIENT, ADMIN), (_S.CANCELLED,)),
    (_S.ACTIVE, (CLIENT, ADMIN), (_S.PAUSED, _S.CANCELLED)),
    (_S.ACTIVE, (SYSTEM,), (_S.PAYMENT_FAILED, _S.EXPIRED)),
    (_S.PAUSED, (CLIENT, ADMIN), (_S.ACTIVE, _S.CANCELLED)),
    (_S.PAUSED, (SYSTEM,), (_S.EXPIRED,)),
    (_S.PAYMENT_FAILED, (SYSTEM,), (_S.ACTIVE, _S.EXPIRED)),
    (_S.PAYMENT_FAILED, (CLIENT, ADMIN), (_S.CANCELLED,)),
])

SUBSCRIPTION_DELETABLE_FROM = frozenset({_S.CANCELLED, _S.EXPIRED})


# =============================================================================
# CHECKS
# =============================================================================

def allowed_targets(current, role: ActorRole) -> FrozenSet:
    table = ORDER_TRANSITIONS if isinstance(current, OrderStatus) else SUBSCRIPTION_TRANSITIONS
    return table.get((current, role), frozenset())


def check_access(entity: Purchase, actor: Actor) -> None:
    """Clients may only act on their own entities."""
    if actor.role == CLIENT and entity.user_id != actor.user_id:
        raise PreconditionError(f"caller does not own {entity.entity_type.value} {entity.id}")


def _reject(entity: Purchase, actor: Actor, target: str, reason: str):
    logger.warning(
        "transition_rejected",
        entity_type=entity.entity_type.value,
        entity_id=entity.id,
        current=entity.status.value,
        target=target,
        actor=actor.role.value,
        reason=reason,
    )
    raise PreconditionError(reason, detail={"current": entity.status.value, "target": target})


def check_order_transition(
    order: Order,
    actor: Actor,
    target: OrderStatus,
    delivered_files: int = 0,
) -> None:
    check_access(order, actor)
    if target not in allowed_targets(order.status, actor.role):
        _reject(
            order,
            actor,
            target.value,
            f"{actor.role.value} cannot move an order from {order.status.value} to {target.value}",
        )
    precondition = ORDER_PRECONDITIONS.get(target)
    if precondition and not precondition[0](order, delivered_files):
        _reject(order, actor, target.value, precondition[1])


def check_subscription_transition(
    sub: Subscription,
    actor: Actor,
    target: SubscriptionStatus,
) -> None:
    check_access(sub, actor)
    if target not in allowed_targets(sub.status, actor.role):
        _reject(
            sub,
            actor,
            target.value,
            f"{actor.role.value} cannot move a subscription from {sub.status.value} to {target.value}",
        )


def check_transition(entity: Purchase, actor: Actor, target, delivered_files: Optional[int] = None) -> None:
    if isinstance(entity, Order):
        check_order_transition(entity, actor, OrderStatus(target), delivered_files or 0)
    else:
        check_subscription_transition(entity, actor, SubscriptionStatus(target))


def check_delete(entity: Purchase, actor: Actor) -> None:
    """Physical deletion: never while money is held, never from a live state."""
    check_access(entity, actor)
    if actor.role == SYSTEM:
        _reject(entity, actor, "deleted", "system actors do not delete entities")

    if isinstance(entity, Order):
        if entity.payment_status in HELD_PAYMENT_STATUSES:
            _reject(
                entity,
                actor,
                "deleted",
                f"cannot delete an order whose payment is {entity.payment_status.value}",
            )
        if entity.status not in ORDER_DELETABLE_FROM:
            _reject(entity, actor, "deleted", "only cancelled orders can be deleted")
        return

    if entity.status not in SUBSCRIPTION_DELETABLE_FROM:
        _reject(entity, actor, "deleted", "only cancelled or expired subscriptions can be deleted")
