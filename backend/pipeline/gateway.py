"""
Payment Gateway
===============
Orchestrates provider adapters, the reconciliation engine and the entity
store.

Features:
- Tagged provider dispatch (AdapterRegistry)
- Fail-closed initiation: exchange-rate or provider failure persists nothing
- One reconciliation path for redirect callbacks and webhooks
- Per-entity locking: callbacks, webhooks and edits for one entity are
  serialized, whichever provider handle they arrived under
- Audit logging: every state change traced with correlation_id

Example:
    gateway = PaymentGateway(store, adapters, rates, notifier)
    session = await gateway.initiate("paystack", EntityType.ORDER, order_id, actor)
    # payer completes checkout at session.redirect_url
    report = await gateway.confirm("paystack", session.reference, actor)
    # Webhook: await gateway.process_webhook("paystack", raw_body, headers)
"""

import uuid
from typing import Dict, Mapping, Optional, Tuple, Union

import structlog
from pydantic import BaseModel

from pipeline.errors import NotFoundError, PreconditionError, ProviderError, SignatureError, ValidationError
from pipeline.exchange_rates import ExchangeRateClient
from pipeline.lifecycle import check_access, check_transition
from pipeline.providers.base import AdapterRegistry
from pipeline.reconciliation import ReconciliationResult, reconcile, to_event
from schemas.commerce import (
    PROVIDER_FIELDS,
    Actor,
    AuditEventType,
    AuditLogEntry,
    ConfirmationResult,
    EntityType,
    Order,
    OrderStatus,
    Payer,
    PaymentStatus,
    ProviderKind,
    ProviderSession,
    ReferenceKind,
    SideEffectKind,
    Subscription,
    SubscriptionStatus,
    reference_field_for,
)
from services.notifications import Notifier
from storage.repositories import EntityStore

Purchase = Union[Order, Subscription]

INITIABLE_SUBSCRIPTION_STATES = frozenset({SubscriptionStatus.PENDING, SubscriptionStatus.PAYMENT_FAILED})


class ReconcileReport(BaseModel):
    """What one confirmation did to one entity."""
    entity_type: EntityType
    entity_id: str
    status: str
    payment_status: PaymentStatus
    changed: bool = False
    duplicate: bool = False
    ignored: bool = False
    anomaly: Optional[str] = None

    @classmethod
    def of(cls, entity: Purchase, outcome: Optional[ReconciliationResult] = None, **kwargs) -> "ReconcileReport":
        if outcome is not None:
            kwargs.setdefault("changed", outcome.changed)
            kwargs.setdefault("duplicate", outcome.duplicate)
            kwargs.setdefault("anomaly", outcome.anomaly)
        return cls(
            entity_type=entity.entity_type,
            entity_id=entity.id,
            status=entity.status.value,
            payment_status=entity.payment_status,
            **kwargs,
        )


class PaymentGateway:
    """Single entry point for every payment-related state change."""

    def __init__(
        self,
        store: EntityStore,
        adapters: AdapterRegistry,
        rates: Optional[ExchangeRateClient] = None,
        notifier: Optional[Notifier] = None,
        store_currency: str = "KES",
    ):
        self.store = store
        self.adapters = adapters
        self.rates = rates or ExchangeRateClient()
        self.notifier = notifier
        self.store_currency = store_currency

        self._base_logger = structlog.get_logger()

    def _get_logger(self, correlation_id: Optional[str] = None):
        """Get logger bound with correlation context"""
        return self._base_logger.bind(
            component="payment_gateway",
            correlation_id=correlation_id or str(uuid.uuid4()),
        )

    async def _emit_audit(
        self,
        event_type: AuditEventType,
        entity: Purchase,
        correlation_id: str,
        previous_state: Optional[dict] = None,
        new_state: Optional[dict] = None,
        metadata: Optional[dict] = None,
        actor: str = "system",
    ) -> None:
        await self.store.audit.append(AuditLogEntry(
            correlation_id=correlation_id,
            event_type=event_type,
            entity_type=entity.entity_type.value,
            entity_id=entity.id,
            previous_state=previous_state,
            new_state=new_state,
            metadata=metadata or {},
            actor=actor,
        ))

    @staticmethod
    def _state(entity: Purchase) -> dict:
        return {"status": entity.status.value, "payment_status": entity.payment_status.value}

    # =========================================================================
    # INITIATE
    # =========================================================================

    async def initiate(
        self,
        provider: Union[str, ProviderKind],
        entity_type: EntityType,
        entity_id: str,
        actor: Actor,
        amount: Optional[float] = None,
        payer: Optional[Payer] = None,
    ) -> ProviderSession:
        """
        Create a provider-side payment and bind its reference to the entity.

        Initiation is not confirmation: status and payment_status are left
        untouched.
        """
        adapter = self.adapters.resolve(provider)
        repo = self.store.repository_for(entity_type)
        correlation_id = str(uuid.uuid4())
        log = self._get_logger(correlation_id).bind(
            provider=adapter.kind.value, entity_type=entity_type.value, entity_id=entity_id
        )

        entity = await repo.get(entity_id)
        if entity is None:
            raise NotFoundError(f"{entity_type.value} {entity_id} not found")
        check_access(entity, actor)
        self._check_initiable(entity)

        if amount is not None and abs(amount - entity.price) > 0.005:
            raise ValidationError(
                f"amount {amount} does not match the {entity_type.value} price {entity.price}"
            )
        if entity.price <= 0:
            raise ValidationError(f"{entity_type.value} {entity_id} has no payable price yet")

        log.info("payment_initiation_started", price=entity.price, currency=self.store_currency)

        settle_amount = await self.rates.convert(entity.price, self.store_currency, adapter.settlement_currency)
        session = await adapter.initiate(
            entity,
            settle_amount,
            adapter.settlement_currency,
            payer or Payer(email=entity.email, name=entity.name),
        )

        async with self.store.locks.hold(entity_type, entity_id):
            current = await repo.get(entity_id)
            if current is None:
                raise NotFoundError(f"{entity_type.value} {entity_id} not found")
            self._check_initiable(current)

            changes: Dict[str, Optional[str]] = {
                name: None
                for fields in PROVIDER_FIELDS[entity_type].values()
                for name in fields
            }
            changes[reference_field_for(entity_type, adapter.kind)] = session.reference
            own_fields = PROVIDER_FIELDS[entity_type][adapter.kind]
            changes.update({k: v for k, v in session.extra_fields.items() if k in own_fields})

            saved = await repo.save(current.touched(**changes))

        await self._emit_audit(
            AuditEventType.PAYMENT_INITIATED,
            saved,
            correlation_id,
            new_state={"provider": adapter.kind.value, "reference": session.reference},
            metadata={"amount": session.amount, "currency": session.currency},
            actor=actor.role.value,
        )
        log.info("payment_initiated", reference=session.reference, amount=session.amount, currency=session.currency)
        return session

    @staticmethod
    def _check_initiable(entity: Purchase) -> None:
        if isinstance(entity, Order):
            if entity.status != OrderStatus.PENDING or entity.payment_status != PaymentStatus.UNPAID:
                raise PreconditionError(
                    "payment can only be initiated for a pending, unpaid order",
                    detail={"status": entity.status.value, "payment_status": entity.payment_status.value},
                )
        elif entity.status not in INITIABLE_SUBSCRIPTION_STATES:
            raise PreconditionError(
                "payment can only be initiated for a pending or payment_failed subscription",
                detail={"status": entity.status.value},
            )

    # =========================================================================
    # LOCATE
    # =========================================================================

    async def locate(
        self,
        provider: ProviderKind,
        reference: str,
        reference_kind: ReferenceKind = ReferenceKind.CHECKOUT,
    ) -> Tuple[Purchase, str]:
        """Find the entity bound to a provider reference: orders first, then subscriptions."""
        for entity_type in (EntityType.ORDER, EntityType.SUBSCRIPTION):
            field = reference_field_for(entity_type, provider, reference_kind)
            if field is None:
                continue
            repo = self.store.repository_for(entity_type)

            if reference_kind == ReferenceKind.CUSTOMER_EMAIL:
                candidates = await repo.find_many(email=reference)
                entity = next(
                    (c for c in candidates if c.paystack_reference and not c.paystack_subscription_code),
                    None,
                )
            else:
                entity = await repo.find_one(**{field: reference})

            if entity is not None:
                return entity, field

        raise NotFoundError(
            "no matching entity",
            detail={"provider": provider.value, "reference": reference},
        )

    # =========================================================================
    # RECONCILE
    # =========================================================================

    async def apply(
        self,
        result: ConfirmationResult,
        correlation_id: Optional[str] = None,
        actor: Optional[Actor] = None,
    ) -> ReconcileReport:
        """Run one provider outcome through the engine and persist the result."""
        correlation_id = correlation_id or str(uuid.uuid4())
        log = self._get_logger(correlation_id).bind(
            provider=result.provider.value,
            reference=result.reference,
            outcome=result.outcome.value,
        )

        located, field = await self.locate(result.provider, result.reference, result.reference_kind)
        repo = self.store.repository_for(located.entity_type)

        async with self.store.locks.hold(located.entity_type, located.id):
            # fresh read under the entity lock
            entity = await repo.get(located.id)
            if entity is None:
                raise NotFoundError(f"{located.entity_type.value} {located.id} not found")
            if actor is not None:
                check_access(entity, actor)

            event = to_event(result, entity.entity_type, field)
            if event is None:
                log.info("outcome_ignored", entity_type=entity.entity_type.value, entity_id=entity.id)
                return ReconcileReport.of(entity, ignored=True)

            outcome = reconcile(entity, event)
            saved = entity

            if outcome.warning is not None:
                log.warning(
                    "reconciliation_anomaly",
                    entity_id=entity.id,
                    reason=outcome.anomaly,
                    category=type(outcome.warning).__name__,
                )
                await self._emit_audit(
                    AuditEventType.PAYMENT_ANOMALY,
                    entity,
                    correlation_id,
                    previous_state=self._state(entity),
                    metadata={"reason": outcome.anomaly, "event": event.kind.value, "transaction_id": event.transaction_id},
                )
            elif outcome.changed:
                if outcome.entity.status != entity.status:
                    check_transition(entity, Actor.system(), outcome.entity.status)
                saved = await repo.save(outcome.entity)
                await self._emit_audit(
                    AuditEventType.PAYMENT_RECONCILED,
                    saved,
                    correlation_id,
                    previous_state=self._state(entity),
                    new_state=self._state(saved),
                    metadata={"event": event.kind.value, "transaction_id": event.transaction_id, "amount": event.amount},
                )
                log.info(
                    "payment_reconciled",
                    entity_type=saved.entity_type.value,
                    entity_id=saved.id,
                    status=saved.status.value,
                    payment_status=saved.payment_status.value,
                )
            else:
                await self._emit_audit(
                    AuditEventType.PAYMENT_DUPLICATE,
                    entity,
                    correlation_id,
                    previous_state=self._state(entity),
                    metadata={"event": event.kind.value, "transaction_id": event.transaction_id, "source": result.source_event},
                )
                log.info("already_reconciled", entity_id=entity.id, event_kind=event.kind.value)

        await self._run_side_effects(saved, outcome.side_effects, log)
        return ReconcileReport.of(saved, outcome)

    async def _run_side_effects(self, entity: Purchase, effects, log) -> None:
        """Best-effort: failures are logged, the persisted transition stands."""
        for effect in effects:
            if effect.kind == SideEffectKind.LINK_RECURRING and isinstance(entity, Subscription):
                await self._link_recurring(entity, log)
        if self.notifier is not None:
            await self.notifier.dispatch(entity, effects)

    async def _link_recurring(self, sub: Subscription, log) -> None:
        provider = sub.bound_provider
        if provider is None:
            return
        adapter = self.adapters.resolve(provider)
        try:
            handle = await adapter.fetch_recurring_handle(sub.email)
        except ProviderError as e:
            log.warning("recurring_handle_lookup_failed", subscription_id=sub.id, error=e.message)
            return
        if not handle:
            log.info("recurring_handle_not_found", subscription_id=sub.id)
            return

        repo = self.store.subscriptions
        current = await repo.get(sub.id)
        if current is None:
            return
        own_fields = PROVIDER_FIELDS[EntityType.SUBSCRIPTION][provider]
        changes = {k: v for k, v in handle.items() if k in own_fields and not getattr(current, k)}
        if changes:
            await repo.save(current.touched(**changes))
            log.info("recurring_handle_linked", subscription_id=sub.id, fields=sorted(changes))

    # =========================================================================
    # REDIRECT CONFIRMATION (capture / verify)
    # =========================================================================

    async def confirm(
        self,
        provider: Union[str, ProviderKind],
        reference: str,
        actor: Optional[Actor] = None,
        payer_id: Optional[str] = None,
    ) -> ReconcileReport:
        """Server-to-provider confirmation of a checkout reference."""
        adapter = self.adapters.resolve(provider)
        if not reference:
            raise ValidationError("a provider reference is required")

        # unknown references never reach the provider
        entity, _ = await self.locate(adapter.kind, reference)
        if actor is not None:
            check_access(entity, actor)

        result = await adapter.confirm(reference, payer_id)
        return await self.apply(result, actor=actor)

    # =========================================================================
    # WEBHOOK PROCESSING
    # =========================================================================

    async def process_webhook(
        self,
        provider: Union[str, ProviderKind],
        raw_body: bytes,
        headers: Mapping[str, str],
    ) -> dict:
        """
        Verify, normalize and reconcile a provider webhook.

        Only authentication failures raise. Unmatched or stale events are
        logged and acknowledged so the provider stops retrying.
        """
        adapter = self.adapters.resolve(provider)
        correlation_id = str(uuid.uuid4())
        log = self._get_logger(correlation_id).bind(provider=adapter.kind.value)

        try:
            results = await adapter.decode_webhook(raw_body, {k.lower(): v for k, v in headers.items()})
        except SignatureError as e:
            log.warning("webhook_signature_invalid", security_event=True, error=e.message)
            await self.store.audit.append(AuditLogEntry(
                correlation_id=correlation_id,
                event_type=AuditEventType.WEBHOOK_REJECTED,
                entity_type="webhook",
                entity_id=adapter.kind.value,
                metadata={"reason": e.message, "body_bytes": len(raw_body)},
            ))
            raise

        log.info("webhook_received", events=len(results))

        applied = ignored = 0
        for result in results:
            try:
                report = await self.apply(result, correlation_id)
            except NotFoundError:
                log.warning(
                    "webhook_entity_not_found",
                    reference=result.reference,
                    outcome=result.outcome.value,
                    source_event=result.source_event,
                )
                ignored += 1
                continue
            except PreconditionError as e:
                log.error("webhook_transition_rejected", reference=result.reference, error=e.message)
                ignored += 1
                continue
            except Exception as e:
                log.error(
                    "webhook_event_failed",
                    reference=result.reference,
                    source_event=result.source_event,
                    error=str(e),
                    exc_info=True,
                )
                ignored += 1
                continue

            if report.changed:
                applied += 1
            else:
                ignored += 1

        return {"received": True, "applied": applied, "ignored": ignored}

    # =========================================================================
    # RECURRING BILLING
    # =========================================================================

    async def disable_recurring(self, sub: Subscription) -> bool:
        """Best-effort provider-side cancel. Never raises."""
        provider = sub.bound_provider
        log = self._get_logger().bind(subscription_id=sub.id, provider=provider.value if provider else None)
        if provider is None:
            return False
        try:
            adapter = self.adapters.resolve(provider)
            disabled = await adapter.disable_recurring(sub)
        except (ProviderError, ValidationError) as e:
            log.warning("recurring_disable_failed", error=e.message)
            return False
        log.info("recurring_disable_attempted", disabled=disabled)
        return disabled

    async def close(self) -> None:
        await self.adapters.close()
        await self.rates.close()
