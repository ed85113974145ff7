"""
Reconciliation Engine
=====================
Pure state machine: ``(entity snapshot, payment event) -> next snapshot``.

No I/O happens here. The same (entity, event) pair may be applied any
number of times and from any path (redirect callback or webhook):

- Idempotent short-circuit: an event whose outcome the entity already
  reflects returns the snapshot unchanged.
- First terminal outcome wins: a later conflicting event is discarded and
  reported as an anomaly. Reverting a capture needs an explicit refund;
  a held authorization is only released by a provider void.
- Orders only move out of ``pending`` through here; subscriptions move
  between pending / active / payment_failed.
"""

import calendar
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Union

from pipeline.errors import AnomalyWarning
from schemas.commerce import (
    HELD_PAYMENT_STATUSES,
    PROVIDER_FIELDS,
    BillingInterval,
    ConfirmationResult,
    EntityType,
    EventKind,
    Order,
    OrderStatus,
    PaymentEvent,
    PaymentOutcome,
    PaymentStatus,
    ProviderKind,
    SideEffect,
    SideEffectKind,
    Subscription,
    SubscriptionStatus,
    utcnow,
)

Purchase = Union[Order, Subscription]


# =============================================================================
# BILLING DATES
# =============================================================================

def add_months(dt: datetime, months: int) -> datetime:
    """Calendar month arithmetic, clamping the day to the target month's length."""
    month_index = dt.month - 1 + months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def advance(dt: datetime, interval: BillingInterval) -> datetime:
    if interval == BillingInterval.MONTHLY:
        return add_months(dt, 1)
    if interval == BillingInterval.YEARLY:
        return add_months(dt, 12)
    return dt + timedelta(hours=1)


# =============================================================================
# EVENT CLASSIFICATION
# =============================================================================

_ORDER_KINDS = {
    PaymentOutcome.AUTHORIZED: EventKind.PAYMENT_AUTHORIZED,
    PaymentOutcome.SUCCEEDED: EventKind.PAYMENT_SUCCEEDED,
    PaymentOutcome.FAILED: EventKind.PAYMENT_FAILED,
    PaymentOutcome.VOIDED: EventKind.PAYMENT_VOIDED,
}

_SUBSCRIPTION_KINDS = {
    PaymentOutcome.SUCCEEDED: EventKind.SUBSCRIPTION_ACTIVATED,
    PaymentOutcome.FAILED: EventKind.SUBSCRIPTION_PAYMENT_FAILED,
    PaymentOutcome.VOIDED: EventKind.SUBSCRIPTION_PAYMENT_FAILED,
    PaymentOutcome.RENEWED: EventKind.SUBSCRIPTION_RENEWED,
    PaymentOutcome.RENEWAL_FAILED: EventKind.SUBSCRIPTION_PAYMENT_FAILED,
    PaymentOutcome.LINKED: EventKind.SUBSCRIPTION_LINKED,
}


def classify(outcome: PaymentOutcome, entity_type: EntityType) -> Optional[EventKind]:
    """Event kind for an outcome against an entity type; None if it carries no transition."""
    table = _ORDER_KINDS if entity_type == EntityType.ORDER else _SUBSCRIPTION_KINDS
    return table.get(outcome)


def to_event(
    result: ConfirmationResult,
    entity_type: EntityType,
    reference_field: str,
) -> Optional[PaymentEvent]:
    kind = classify(result.outcome, entity_type)
    if kind is None:
        return None
    return PaymentEvent(
        kind=kind,
        provider=result.provider,
        reference=result.reference,
        reference_field=reference_field,
        transaction_id=result.transaction_id,
        amount=result.amount,
        currency=result.currency,
        updates=result.updates,
    )


# =============================================================================
# RESULT
# =============================================================================

@dataclass
class ReconciliationResult:
    entity: Purchase
    changed: bool = False
    duplicate: bool = False
    anomaly: Optional[str] = None
    side_effects: List[SideEffect] = field(default_factory=list)

    @property
    def warning(self) -> Optional[AnomalyWarning]:
        return AnomalyWarning(self.anomaly) if self.anomaly else None


def _effect(entity: Purchase, kind: SideEffectKind, message: str = "") -> SideEffect:
    return SideEffect(kind=kind, entity_type=entity.entity_type, entity_id=entity.id, message=message)


def _duplicate(entity: Purchase) -> ReconciliationResult:
    return ReconciliationResult(entity=entity, duplicate=True)


def _anomaly(entity: Purchase, reason: str, *effects: SideEffect) -> ReconciliationResult:
    return ReconciliationResult(entity=entity, anomaly=reason, side_effects=list(effects))


def _reference_updates(entity: Purchase, event: PaymentEvent) -> Dict[str, str]:
    """Provider fields the event fills in. Never overwrites a stored handle."""
    allowed = PROVIDER_FIELDS[entity.entity_type][event.provider]
    return {
        key: value
        for key, value in event.updates.items()
        if key in allowed and value and not getattr(entity, key)
    }


def _reference_matches(entity: Purchase, event: PaymentEvent) -> bool:
    stored = getattr(entity, event.reference_field, None)
    if stored is None:
        return False
    if event.reference_field == "email":
        return stored.lower() == event.reference.lower()
    return stored == event.reference


# =============================================================================
# ENGINE
# =============================================================================

def reconcile(
    entity: Purchase,
    event: PaymentEvent,
    now: Optional[datetime] = None,
) -> ReconciliationResult:
    """Compute the next snapshot for ``entity`` given ``event``."""
    now = now or utcnow()

    if not _reference_matches(entity, event):
        return _anomaly(
            entity,
            f"stale reference: {event.reference_field}={event.reference} does not match the stored value",
        )

    if isinstance(entity, Order):
        return _reconcile_order(entity, event, now)
    return _reconcile_subscription(entity, event, now)


def _reconcile_order(order: Order, event: PaymentEvent, now: datetime) -> ReconciliationResult:
    kind = event.kind
    if kind not in _ORDER_KINDS.values():
        return _anomaly(order, f"{kind.value} does not apply to orders")

    updates = _reference_updates(order, event)

    if order.status == OrderStatus.PENDING:
        if kind == EventKind.PAYMENT_AUTHORIZED:
            if order.payment_status == PaymentStatus.AUTHORIZED:
                if updates:
                    return ReconciliationResult(entity=order.touched(**updates), changed=True, duplicate=True)
                return _duplicate(order)
            if order.payment_status != PaymentStatus.UNPAID:
                return _anomaly(order, f"authorization for order with payment {order.payment_status.value}")
            next_order = order.touched(
                payment_status=PaymentStatus.AUTHORIZED,
                last_transaction_id=event.transaction_id,
                **updates,
            )
            return ReconciliationResult(entity=next_order, changed=True)

        if kind == EventKind.PAYMENT_SUCCEEDED:
            next_order = order.touched(
                status=OrderStatus.INPROGRESS,
                payment_status=PaymentStatus.CAPTURED,
                last_transaction_id=event.transaction_id,
                paid_at=now,
                **updates,
            )
            return ReconciliationResult(
                entity=next_order,
                changed=True,
                side_effects=[
                    _effect(next_order, SideEffectKind.NOTIFY_ADMIN, f"Payment received for order: {order.plan_title}"),
                    _effect(next_order, SideEffectKind.NOTIFY_CLIENT, "Payment received, work on your order has started"),
                ],
            )

        if order.payment_status == PaymentStatus.AUTHORIZED:
            if kind == EventKind.PAYMENT_VOIDED:
                next_order = order.touched(
                    status=OrderStatus.FAILED,
                    payment_status=PaymentStatus.VOIDED,
                    last_transaction_id=event.transaction_id,
                    **updates,
                )
                return ReconciliationResult(
                    entity=next_order,
                    changed=True,
                    side_effects=[
                        _effect(next_order, SideEffectKind.NOTIFY_ADMIN, f"Authorization voided for order: {order.plan_title}"),
                        _effect(next_order, SideEffectKind.NOTIFY_CLIENT, "Your payment could not be completed"),
                    ],
                )
            # funds are still held; only a void releases them
            return _anomaly(
                order,
                f"{kind.value} for order with an authorized payment; keeping the authorization",
                _effect(order, SideEffectKind.NOTIFY_ADMIN, f"Review held payment on order {order.id}"),
            )

        next_order = order.touched(
            status=OrderStatus.FAILED,
            payment_status=PaymentStatus.UNPAID,
            last_transaction_id=event.transaction_id,
            **updates,
        )
        return ReconciliationResult(
            entity=next_order,
            changed=True,
            side_effects=[_effect(next_order, SideEffectKind.NOTIFY_CLIENT, "Your payment could not be completed")],
        )

    # Not pending: the outcome is either already reflected or conflicts with it
    if kind == EventKind.PAYMENT_AUTHORIZED:
        reflected = order.payment_status in HELD_PAYMENT_STATUSES
    elif kind == EventKind.PAYMENT_SUCCEEDED:
        reflected = order.payment_status == PaymentStatus.CAPTURED
    else:
        reflected = order.status == OrderStatus.FAILED

    if reflected:
        return _duplicate(order)

    reason = (
        f"{kind.value} for order in {order.status.value}/{order.payment_status.value}; "
        "keeping the first applied outcome"
    )
    if kind in (EventKind.PAYMENT_AUTHORIZED, EventKind.PAYMENT_SUCCEEDED):
        # money moved for an order that will not be fulfilled
        return _anomaly(
            order,
            reason,
            _effect(order, SideEffectKind.NOTIFY_ADMIN, f"Review payment on {order.status.value} order {order.id}"),
        )
    return _anomaly(order, reason)


def _activate(sub: Subscription, event: PaymentEvent, now: datetime, updates: Dict[str, str]) -> ReconciliationResult:
    changes = dict(
        status=SubscriptionStatus.ACTIVE,
        payment_status=PaymentStatus.CAPTURED,
        start_date=sub.start_date or now,
        next_billing_date=advance(now, sub.interval),
        last_payment_reference=event.transaction_id,
        **updates,
    )
    next_sub = sub.touched(**changes)
    effects = [
        _effect(next_sub, SideEffectKind.NOTIFY_ADMIN, f"Subscription activated: {sub.plan_title}"),
        _effect(next_sub, SideEffectKind.NOTIFY_CLIENT, "Your subscription is active"),
    ]
    if event.provider == ProviderKind.PAYSTACK and not next_sub.paystack_subscription_code:
        effects.append(_effect(next_sub, SideEffectKind.LINK_RECURRING))
    return ReconciliationResult(entity=next_sub, changed=True, side_effects=effects)


def _reconcile_subscription(sub: Subscription, event: PaymentEvent, now: datetime) -> ReconciliationResult:
    kind = event.kind
    if kind not in _SUBSCRIPTION_KINDS.values():
        return _anomaly(sub, f"{kind.value} does not apply to subscriptions")

    updates = _reference_updates(sub, event)
    same_transaction = event.transaction_id == sub.last_payment_reference

    if kind == EventKind.SUBSCRIPTION_LINKED:
        if not updates:
            return _duplicate(sub)
        return ReconciliationResult(entity=sub.touched(**updates), changed=True)

    if kind in (EventKind.SUBSCRIPTION_ACTIVATED, EventKind.SUBSCRIPTION_RENEWED):
        if same_transaction:
            if sub.status == SubscriptionStatus.PAYMENT_FAILED:
                return _anomaly(sub, f"success after failure for transaction {event.transaction_id}; keeping failure")
            return _duplicate(sub)

        if sub.status == SubscriptionStatus.PENDING:
            return _activate(sub, event, now, updates)

        if kind == EventKind.SUBSCRIPTION_ACTIVATED:
            if sub.status == SubscriptionStatus.PAYMENT_FAILED:
                return _activate(sub, event, now, updates)
            return _anomaly(sub, f"activation for subscription in {sub.status.value}")

        if sub.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAYMENT_FAILED):
            due = sub.next_billing_date or now
            if sub.status == SubscriptionStatus.PAYMENT_FAILED and due < now:
                due = now
            next_sub = sub.touched(
                status=SubscriptionStatus.ACTIVE,
                payment_status=PaymentStatus.CAPTURED,
                next_billing_date=advance(due, sub.interval),
                last_payment_reference=event.transaction_id,
                **updates,
            )
            effects = []
            if sub.status == SubscriptionStatus.PAYMENT_FAILED:
                effects.append(_effect(next_sub, SideEffectKind.NOTIFY_ADMIN, f"Subscription recovered: {sub.plan_title}"))
            return ReconciliationResult(entity=next_sub, changed=True, side_effects=effects)

        return _anomaly(sub, f"renewal for subscription in {sub.status.value}")

    # SUBSCRIPTION_PAYMENT_FAILED
    if same_transaction:
        if sub.status == SubscriptionStatus.PAYMENT_FAILED:
            return _duplicate(sub)
        return _anomaly(sub, f"failure after success for transaction {event.transaction_id}; keeping success")

    if sub.status in (SubscriptionStatus.PENDING, SubscriptionStatus.ACTIVE):
        next_sub = sub.touched(
            status=SubscriptionStatus.PAYMENT_FAILED,
            payment_status=PaymentStatus.UNPAID,
            last_payment_reference=event.transaction_id,
            **updates,
        )
        return ReconciliationResult(
            entity=next_sub,
            changed=True,
            side_effects=[
                _effect(next_sub, SideEffectKind.NOTIFY_ADMIN, f"Subscription payment failed: {sub.plan_title}"),
                _effect(next_sub, SideEffectKind.NOTIFY_CLIENT, "Your subscription payment failed"),
            ],
        )

    if sub.status == SubscriptionStatus.PAYMENT_FAILED:
        # another failed retry: remember it, state unchanged
        return ReconciliationResult(
            entity=sub.touched(last_payment_reference=event.transaction_id, **updates),
            changed=True,
        )

    return _anomaly(sub, f"payment failure for subscription in {sub.status.value}")
