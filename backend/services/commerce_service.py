"""
Commerce Service
================
Everything a client or admin does to orders, subscriptions, submissions
and catalog packages outside of payment confirmation.

- Creation snapshots the package (title, plan type, price)
- Partial updates go through a per-entity allow-list; unknown fields are
  dropped, never merged
- Edits, status changes and deletes re-read the entity under its store
  lock, the same lock payment reconciliation takes
- File delivery and order completion are coupled
- Cancelling a subscription disables provider billing best-effort
"""

import uuid
from typing import Any, Dict, List, Optional, Tuple, Union

import structlog
from pydantic import BaseModel, Field
from pydantic import ValidationError as SchemaValidationError

from pipeline.errors import NotFoundError, PreconditionError, ValidationError
from pipeline.gateway import PaymentGateway
from pipeline.lifecycle import check_access, check_delete, check_order_transition, check_subscription_transition
from schemas.commerce import (
    Actor,
    AuditEventType,
    AuditLogEntry,
    BillingCycle,
    BillingInterval,
    EntityType,
    Order,
    OrderStatus,
    Package,
    PlanName,
    PlanType,
    SideEffect,
    SideEffectKind,
    Submission,
    SubmissionFile,
    Subscription,
    SubscriptionStatus,
    utcnow,
)
from services.notifications import Notifier
from storage.repositories import EntityStore

logger = structlog.get_logger().bind(component="commerce_service")

Purchase = Union[Order, Subscription]


# =============================================================================
# ALLOW-LISTS
# =============================================================================

_CONTENT_FIELDS = frozenset({
    "name",
    "email",
    "phone",
    "description",
    "features",
    "file_urls",
    "links",
})

ORDER_EDITABLE_FIELDS = _CONTENT_FIELDS
SUBSCRIPTION_EDITABLE_FIELDS = _CONTENT_FIELDS
# a fixed-term subscription: the expiry sweep retires it once end_date passes
SUBSCRIPTION_ADMIN_FIELDS = frozenset({"end_date"})
PACKAGE_EDITABLE_FIELDS = frozenset({
    "title",
    "price",
    "billing_cycle",
    "description",
    "features",
    "popular",
    "plan_type",
})


def filter_changes(changes: Dict[str, Any], allowed: frozenset) -> Tuple[Dict[str, Any], List[str]]:
    """Split ``changes`` into (allowed, dropped field names)."""
    kept = {k: v for k, v in changes.items() if k in allowed}
    dropped = sorted(k for k in changes if k not in allowed)
    return kept, dropped


# =============================================================================
# INPUT MODELS
# =============================================================================

class OrderDraft(BaseModel):
    plan_id: str
    name: str = Field(min_length=1)
    email: str = Field(min_length=3)
    phone: str = ""
    description: str = ""
    features: List[str] = Field(default_factory=list)
    file_urls: List[str] = Field(default_factory=list)
    links: List[str] = Field(default_factory=list)
    # Only honoured when the package has no list price (development quotes)
    price: Optional[float] = Field(default=None, ge=0)


class SubscriptionDraft(BaseModel):
    plan_id: str
    plan_name: PlanName
    interval: Optional[BillingInterval] = None
    name: str = Field(min_length=1)
    email: str = Field(min_length=3)
    phone: str = ""
    description: str = ""
    features: List[str] = Field(default_factory=list)
    file_urls: List[str] = Field(default_factory=list)
    links: List[str] = Field(default_factory=list)


class PackageDraft(BaseModel):
    title: str = Field(min_length=1)
    price: Optional[float] = Field(default=None, ge=0)
    billing_cycle: BillingCycle = BillingCycle.ONE_TIME
    description: str = ""
    features: List[str] = Field(default_factory=list)
    popular: bool = False
    plan_type: PlanType = PlanType.DEVELOPMENT


_CYCLE_TO_INTERVAL = {
    BillingCycle.MONTHLY: BillingInterval.MONTHLY,
    BillingCycle.HOURLY: BillingInterval.HOURLY,
    BillingCycle.ONE_TIME: BillingInterval.MONTHLY,
}


def _validated(model: type, data: Dict[str, Any]):
    try:
        return model.model_validate(data)
    except SchemaValidationError as e:
        errors = [
            {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
            for err in e.errors()
        ]
        message = errors[0]["message"] if errors else "invalid input"
        raise ValidationError(message, detail={"errors": errors}) from e


# =============================================================================
# SERVICE
# =============================================================================

class CommerceService:
    """Client/admin operations on the entity store."""

    def __init__(
        self,
        store: EntityStore,
        gateway: Optional[PaymentGateway] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.notifier = notifier

    async def _audit(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        actor: Actor,
        previous_state: Optional[dict] = None,
        new_state: Optional[dict] = None,
        metadata: Optional[dict] = None,
    ) -> None:
        await self.store.audit.append(AuditLogEntry(
            correlation_id=str(uuid.uuid4()),
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            previous_state=previous_state,
            new_state=new_state,
            metadata=metadata or {},
            actor=actor.role.value,
        ))

    async def _notify(self, entity: Purchase, effects: List[SideEffect]) -> None:
        if self.notifier is not None and effects:
            await self.notifier.dispatch(entity, effects)

    @staticmethod
    def _require_admin(actor: Actor, action: str) -> None:
        if not actor.is_admin:
            raise PreconditionError(f"only admins can {action}")

    async def _load(self, entity_type: EntityType, entity_id: str, actor: Actor) -> Purchase:
        entity = await self.store.repository_for(entity_type).get(entity_id)
        if entity is None:
            raise NotFoundError(f"{entity_type.value} {entity_id} not found")
        check_access(entity, actor)
        return entity

    async def _list(self, entity_type: EntityType, actor: Actor, everyone: bool) -> List[Purchase]:
        repo = self.store.repository_for(entity_type)
        if everyone:
            self._require_admin(actor, f"list every {entity_type.value}")
            return await repo.find_many()
        return await repo.find_many(user_id=actor.user_id)

    # =========================================================================
    # ORDERS
    # =========================================================================

    async def create_order(self, actor: Actor, draft: OrderDraft) -> Order:
        package = await self.get_package(draft.plan_id)

        if package.price is not None:
            price = package.price
        elif draft.price is not None:
            price = draft.price
        else:
            raise ValidationError("price is required for packages without a list price")

        order = _validated(Order, {
            **draft.model_dump(exclude={"plan_id", "price"}),
            "user_id": actor.user_id,
            "plan_id": package.id,
            "plan_title": package.title,
            "plan_type": package.plan_type,
            "price": price,
        })
        await self.store.orders.save(order)

        await self._audit(
            AuditEventType.ORDER_CREATED, "order", order.id, actor,
            new_state={"status": order.status.value, "price": order.price, "plan_id": order.plan_id},
        )
        logger.info("order_created", order_id=order.id, plan_id=package.id, price=price)
        if self.notifier is not None:
            await self.notifier.entity_created(order)
        return order

    async def get_order(self, actor: Actor, order_id: str) -> Order:
        return await self._load(EntityType.ORDER, order_id, actor)

    async def list_orders(self, actor: Actor, everyone: bool = False) -> List[Order]:
        return await self._list(EntityType.ORDER, actor, everyone)

    async def update_order(self, actor: Actor, order_id: str, changes: Dict[str, Any]) -> Order:
        """
        Allow-listed partial update. ``status`` is routed through the guard;
        anything else outside the allow-list is dropped.
        """
        kept, dropped = filter_changes(
            {k: v for k, v in changes.items() if k != "status"}, ORDER_EDITABLE_FIELDS
        )
        if dropped:
            logger.debug("update_fields_dropped", order_id=order_id, fields=dropped)

        async with self.store.locks.hold(EntityType.ORDER, order_id):
            # fresh read: only ``kept`` may differ from what is stored
            order = await self.get_order(actor, order_id)
            effects: List[SideEffect] = []

            target = changes.get("status")
            if target is not None and target != order.status.value:
                try:
                    target = OrderStatus(target)
                except ValueError:
                    raise ValidationError(f"unknown order status: {target}")

                delivered = 0
                if target == OrderStatus.COMPLETED:
                    submission = await self.store.submissions.find_one(order_id=order.id)
                    delivered = len(submission.files) if submission else 0
                check_order_transition(order, actor, target, delivered)

                kept["status"] = target
                if target == OrderStatus.ACCEPTED:
                    kept["funds_released_at"] = utcnow()
                    effects.append(SideEffect(kind=SideEffectKind.RELEASE_FUNDS, entity_type=EntityType.ORDER, entity_id=order.id))
                elif target == OrderStatus.CANCELLED:
                    effects.append(SideEffect(
                        kind=SideEffectKind.NOTIFY_ADMIN,
                        entity_type=EntityType.ORDER,
                        entity_id=order.id,
                        message=f"Order cancelled: {order.plan_title}",
                    ))
                elif target == OrderStatus.COMPLETED:
                    effects.append(SideEffect(
                        kind=SideEffectKind.NOTIFY_CLIENT,
                        entity_type=EntityType.ORDER,
                        entity_id=order.id,
                        message="Your order has been delivered",
                    ))

            if not kept:
                return order

            updated = _validated(Order, {**order.model_dump(), **kept}).touched()
            await self.store.orders.save(updated)

        await self._audit(
            AuditEventType.ORDER_UPDATED, "order", order.id, actor,
            previous_state={"status": order.status.value},
            new_state={"status": updated.status.value},
            metadata={"fields": sorted(kept)},
        )
        if updated.funds_released_at and not order.funds_released_at:
            await self._audit(AuditEventType.FUNDS_RELEASED, "order", order.id, actor, metadata={"price": order.price})
        logger.info("order_updated", order_id=order.id, fields=sorted(kept), status=updated.status.value)

        await self._notify(updated, effects)
        return updated

    async def delete_order(self, actor: Actor, order_id: str) -> None:
        async with self.store.locks.hold(EntityType.ORDER, order_id):
            order = await self.get_order(actor, order_id)
            check_delete(order, actor)
            await self.store.orders.delete(order.id)

        submission = await self.store.submissions.find_one(order_id=order.id)
        if submission is not None:
            await self.store.submissions.delete(submission.id)

        await self._audit(
            AuditEventType.ORDER_DELETED, "order", order.id, actor,
            previous_state={"status": order.status.value, "payment_status": order.payment_status.value},
        )
        logger.info("order_deleted", order_id=order.id, actor=actor.role.value)

    # =========================================================================
    # SUBMISSIONS
    # =========================================================================

    async def deliver_files(
        self,
        actor: Actor,
        order_id: str,
        files: List[SubmissionFile],
        complete: bool = True,
    ) -> Tuple[Submission, Order]:
        """Append delivered files; completes an in-progress order when ``complete``."""
        self._require_admin(actor, "deliver files")
        if not files:
            raise ValidationError("at least one file is required")

        order = await self.get_order(actor, order_id)
        submission = await self.store.submissions.find_one(order_id=order.id) or Submission(
            order_id=order.id,
            user_id=order.user_id,
            email=order.email,
        )
        submission, added = submission.with_files(files)

        completing = complete and order.status == OrderStatus.INPROGRESS
        if completing:
            check_order_transition(order, actor, OrderStatus.COMPLETED, delivered_files=len(submission.files))

        await self.store.submissions.save(submission)
        await self._audit(
            AuditEventType.FILES_DELIVERED, "order", order.id, actor,
            metadata={"added": added, "total": len(submission.files)},
        )
        logger.info("files_delivered", order_id=order.id, added=added, total=len(submission.files))

        if completing:
            order = await self.update_order(actor, order.id, {"status": OrderStatus.COMPLETED.value})
        return submission, order

    async def get_submission(self, actor: Actor, order_id: str) -> Submission:
        order = await self.get_order(actor, order_id)
        submission = await self.store.submissions.find_one(order_id=order.id)
        if submission is None:
            raise NotFoundError(f"no files delivered for order {order_id}")
        return submission

    # =========================================================================
    # SUBSCRIPTIONS
    # =========================================================================

    async def create_subscription(self, actor: Actor, draft: SubscriptionDraft) -> Subscription:
        package = await self.get_package(draft.plan_id)
        if package.price is None:
            raise ValidationError(f"package {package.id} has no price and cannot be subscribed to")

        sub = _validated(Subscription, {
            **draft.model_dump(exclude={"plan_id", "interval"}),
            "user_id": actor.user_id,
            "plan_id": package.id,
            "plan_title": package.title,
            "plan_type": package.plan_type,
            "price": package.price,
            "interval": draft.interval or _CYCLE_TO_INTERVAL[package.billing_cycle],
        })
        await self.store.subscriptions.save(sub)

        await self._audit(
            AuditEventType.SUBSCRIPTION_CREATED, "subscription", sub.id, actor,
            new_state={"status": sub.status.value, "price": sub.price, "plan_name": sub.plan_name.value},
        )
        logger.info("subscription_created", subscription_id=sub.id, plan_name=sub.plan_name.value)
        if self.notifier is not None:
            await self.notifier.entity_created(sub)
        return sub

    async def get_subscription(self, actor: Actor, subscription_id: str) -> Subscription:
        return await self._load(EntityType.SUBSCRIPTION, subscription_id, actor)

    async def list_subscriptions(self, actor: Actor, everyone: bool = False) -> List[Subscription]:
        return await self._list(EntityType.SUBSCRIPTION, actor, everyone)

    async def update_subscription(self, actor: Actor, subscription_id: str, changes: Dict[str, Any]) -> Subscription:
        allowed = SUBSCRIPTION_EDITABLE_FIELDS
        if actor.is_admin:
            allowed = allowed | SUBSCRIPTION_ADMIN_FIELDS
        kept, dropped = filter_changes({k: v for k, v in changes.items() if k != "status"}, allowed)
        if dropped:
            logger.debug("update_fields_dropped", subscription_id=subscription_id, fields=dropped)

        async with self.store.locks.hold(EntityType.SUBSCRIPTION, subscription_id):
            sub = await self.get_subscription(actor, subscription_id)
            cancelling = False

            target = changes.get("status")
            if target is not None and target != sub.status.value:
                try:
                    target = SubscriptionStatus(target)
                except ValueError:
                    raise ValidationError(f"unknown subscription status: {target}")
                check_subscription_transition(sub, actor, target)
                kept["status"] = target
                if target == SubscriptionStatus.CANCELLED:
                    kept["end_date"] = utcnow()
                    cancelling = True

            if not kept:
                return sub

            updated = _validated(Subscription, {**sub.model_dump(), **kept}).touched()
            await self.store.subscriptions.save(updated)

        await self._audit(
            AuditEventType.SUBSCRIPTION_UPDATED, "subscription", sub.id, actor,
            previous_state={"status": sub.status.value},
            new_state={"status": updated.status.value},
            metadata={"fields": sorted(kept)},
        )
        logger.info("subscription_updated", subscription_id=sub.id, fields=sorted(kept), status=updated.status.value)

        if cancelling:
            if self.gateway is not None:
                await self.gateway.disable_recurring(updated)
            await self._notify(updated, [SideEffect(
                kind=SideEffectKind.NOTIFY_ADMIN,
                entity_type=EntityType.SUBSCRIPTION,
                entity_id=updated.id,
                message=f"Subscription cancelled: {updated.plan_title}",
            )])
        return updated

    async def delete_subscription(self, actor: Actor, subscription_id: str) -> None:
        async with self.store.locks.hold(EntityType.SUBSCRIPTION, subscription_id):
            sub = await self.get_subscription(actor, subscription_id)
            check_delete(sub, actor)
            await self.store.subscriptions.delete(sub.id)
        await self._audit(
            AuditEventType.SUBSCRIPTION_DELETED, "subscription", sub.id, actor,
            previous_state={"status": sub.status.value},
        )
        logger.info("subscription_deleted", subscription_id=sub.id, actor=actor.role.value)

    # =========================================================================
    # PACKAGES
    # =========================================================================

    async def list_packages(self, plan_type: Optional[PlanType] = None) -> List[Package]:
        if plan_type is None:
            return await self.store.packages.find_many()
        return await self.store.packages.find_many(plan_type=plan_type)

    async def get_package(self, package_id: str) -> Package:
        package = await self.store.packages.get(package_id)
        if package is None:
            raise NotFoundError(f"package {package_id} not found")
        return package

    async def create_package(self, actor: Actor, draft: PackageDraft) -> Package:
        self._require_admin(actor, "manage packages")
        package = _validated(Package, draft.model_dump())
        await self.store.packages.save(package)
        logger.info("package_created", package_id=package.id, title=package.title)
        return package

    async def update_package(self, actor: Actor, package_id: str, changes: Dict[str, Any]) -> Package:
        """Catalog edits never touch existing orders or subscriptions."""
        self._require_admin(actor, "manage packages")
        kept, dropped = filter_changes(changes, PACKAGE_EDITABLE_FIELDS)
        if dropped:
            logger.debug("update_fields_dropped", package_id=package_id, fields=dropped)

        package = await self.get_package(package_id)
        if not kept:
            return package
        updated = _validated(Package, {**package.model_dump(), **kept}).touched()
        await self.store.packages.save(updated)
        logger.info("package_updated", package_id=package_id, fields=sorted(kept))
        return updated

    async def delete_package(self, actor: Actor, package_id: str) -> None:
        self._require_admin(actor, "manage packages")
        if not await self.store.packages.delete(package_id):
            raise NotFoundError(f"package {package_id} not found")
        logger.info("package_deleted", package_id=package_id)
