"""
Commerce Domain Models
======================
Orders, subscriptions, submissions and catalog packages, plus the
normalized payment types exchanged between provider adapters, the
reconciliation engine and the gateway.

All models are pydantic v2 and persist as JSON documents
(``model_dump(mode="json")``).
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, computed_field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


# =============================================================================
# ENUMS
# =============================================================================

class OrderStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    INPROGRESS = "inprogress"
    COMPLETED = "completed"
    ACCEPTED = "accepted"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    UNPAID = "unpaid"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    VOIDED = "voided"
    REFUNDED = "refunded"


# Money is held by the platform in these states
HELD_PAYMENT_STATUSES = frozenset({PaymentStatus.AUTHORIZED, PaymentStatus.CAPTURED})


class SubscriptionStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    PAYMENT_FAILED = "payment_failed"


class PlanType(str, Enum):
    DEVELOPMENT = "development"
    MAINTENANCE = "maintenance"


class PlanName(str, Enum):
    BASIC = "Basic"
    GROWTH = "Growth"
    PREMIUM = "Premium"
    TEST = "Test"


class BillingInterval(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"
    HOURLY = "hourly"


class BillingCycle(str, Enum):
    ONE_TIME = "one-time"
    MONTHLY = "monthly"
    HOURLY = "hourly"


class ProviderKind(str, Enum):
    STRIPE = "stripe"
    PAYPAL = "paypal"
    PAYSTACK = "paystack"


class EntityType(str, Enum):
    ORDER = "order"
    SUBSCRIPTION = "subscription"


class ActorRole(str, Enum):
    CLIENT = "client"
    ADMIN = "admin"
    SYSTEM = "system"


class PaymentOutcome(str, Enum):
    """What a provider told us about one transaction."""
    AUTHORIZED = "authorized"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    VOIDED = "voided"
    RENEWED = "renewed"
    RENEWAL_FAILED = "renewal_failed"
    LINKED = "linked"


class ReferenceKind(str, Enum):
    """Which provider handle an outcome is keyed by."""
    CHECKOUT = "checkout"
    PAYMENT_INTENT = "payment_intent"
    RECURRING = "recurring"
    CUSTOMER_EMAIL = "customer_email"


class EventKind(str, Enum):
    PAYMENT_AUTHORIZED = "payment_authorized"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_VOIDED = "payment_voided"
    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    SUBSCRIPTION_RENEWED = "subscription_renewed"
    SUBSCRIPTION_PAYMENT_FAILED = "subscription_payment_failed"
    SUBSCRIPTION_LINKED = "subscription_linked"


class SideEffectKind(str, Enum):
    NOTIFY_ADMIN = "notify_admin"
    NOTIFY_CLIENT = "notify_client"
    RELEASE_FUNDS = "release_funds"
    LINK_RECURRING = "link_recurring"


class AuditEventType(str, Enum):
    ORDER_CREATED = "order.created"
    ORDER_UPDATED = "order.updated"
    ORDER_DELETED = "order.deleted"
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_UPDATED = "subscription.updated"
    SUBSCRIPTION_DELETED = "subscription.deleted"
    SUBSCRIPTION_EXPIRED = "subscription.expired"
    PAYMENT_INITIATED = "payment.initiated"
    PAYMENT_RECONCILED = "payment.reconciled"
    PAYMENT_DUPLICATE = "payment.duplicate"
    PAYMENT_ANOMALY = "payment.anomaly"
    WEBHOOK_REJECTED = "webhook.rejected"
    FILES_DELIVERED = "files.delivered"
    FUNDS_RELEASED = "funds.released"


# =============================================================================
# PROVIDER REFERENCE FIELDS
# =============================================================================

# Every field owned by a provider, per entity type. Initiating with one
# provider clears the others' fields.
PROVIDER_FIELDS: Dict[EntityType, Dict[ProviderKind, Tuple[str, ...]]] = {
    EntityType.ORDER: {
        ProviderKind.STRIPE: ("stripe_session_id", "stripe_payment_intent_id"),
        ProviderKind.PAYPAL: ("paypal_order_id",),
        ProviderKind.PAYSTACK: ("paystack_reference", "paystack_access_code"),
    },
    EntityType.SUBSCRIPTION: {
        ProviderKind.STRIPE: ("stripe_session_id", "stripe_payment_intent_id"),
        ProviderKind.PAYPAL: ("paypal_subscription_id",),
        ProviderKind.PAYSTACK: (
            "paystack_reference",
            "paystack_access_code",
            "paystack_subscription_code",
            "paystack_email_token",
        ),
    },
}

_REFERENCE_FIELDS: Dict[EntityType, Dict[Tuple[ProviderKind, ReferenceKind], str]] = {
    EntityType.ORDER: {
        (ProviderKind.STRIPE, ReferenceKind.CHECKOUT): "stripe_session_id",
        (ProviderKind.STRIPE, ReferenceKind.PAYMENT_INTENT): "stripe_payment_intent_id",
        (ProviderKind.PAYPAL, ReferenceKind.CHECKOUT): "paypal_order_id",
        (ProviderKind.PAYSTACK, ReferenceKind.CHECKOUT): "paystack_reference",
    },
    EntityType.SUBSCRIPTION: {
        (ProviderKind.STRIPE, ReferenceKind.CHECKOUT): "stripe_session_id",
        (ProviderKind.STRIPE, ReferenceKind.PAYMENT_INTENT): "stripe_payment_intent_id",
        (ProviderKind.PAYPAL, ReferenceKind.CHECKOUT): "paypal_subscription_id",
        (ProviderKind.PAYPAL, ReferenceKind.RECURRING): "paypal_subscription_id",
        (ProviderKind.PAYSTACK, ReferenceKind.CHECKOUT): "paystack_reference",
        (ProviderKind.PAYSTACK, ReferenceKind.RECURRING): "paystack_subscription_code",
        (ProviderKind.PAYSTACK, ReferenceKind.CUSTOMER_EMAIL): "email",
    },
}


def reference_field_for(
    entity_type: EntityType,
    provider: ProviderKind,
    kind: ReferenceKind = ReferenceKind.CHECKOUT,
) -> Optional[str]:
    """Entity field holding a provider handle, or None if the entity has no such field."""
    return _REFERENCE_FIELDS[entity_type].get((provider, kind))


# =============================================================================
# ACTORS
# =============================================================================

class Actor(BaseModel):
    """Who is asking: the owning client, an admin, or provider reconciliation."""
    role: ActorRole
    user_id: Optional[str] = None
    email: Optional[str] = None

    @computed_field
    @property
    def is_admin(self) -> bool:
        return self.role == ActorRole.ADMIN

    @classmethod
    def system(cls) -> "Actor":
        return cls(role=ActorRole.SYSTEM, user_id="system")


# =============================================================================
# ENTITIES
# =============================================================================

class _Document(BaseModel):
    id: str = Field(default_factory=new_id)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 1

    def touched(self, **changes: Any):
        """Copy with ``changes`` applied and bookkeeping advanced."""
        changes.setdefault("updated_at", utcnow())
        changes["version"] = self.version + 1
        return self.model_copy(update=changes)


class _Purchase(_Document):
    user_id: str
    name: str
    email: str
    phone: str = ""
    plan_id: str
    plan_title: str
    plan_type: PlanType
    price: float = Field(ge=0)
    description: str = ""
    features: List[str] = Field(default_factory=list)
    file_urls: List[str] = Field(default_factory=list)
    links: List[str] = Field(default_factory=list)

    stripe_session_id: Optional[str] = None
    stripe_payment_intent_id: Optional[str] = None
    paystack_reference: Optional[str] = None
    paystack_access_code: Optional[str] = None

    payment_status: PaymentStatus = PaymentStatus.UNPAID


class Order(_Purchase):
    """One-off development or maintenance work."""
    paypal_order_id: Optional[str] = None

    status: OrderStatus = OrderStatus.PENDING
    last_transaction_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    funds_released_at: Optional[datetime] = None

    entity_type: ClassVar[EntityType] = EntityType.ORDER

    @model_validator(mode="after")
    def _maintenance_has_no_features(self) -> "Order":
        if self.plan_type == PlanType.MAINTENANCE and self.features:
            raise ValueError("maintenance orders cannot carry a feature list")
        return self

    @property
    def bound_provider(self) -> Optional[ProviderKind]:
        if self.stripe_session_id:
            return ProviderKind.STRIPE
        if self.paypal_order_id:
            return ProviderKind.PAYPAL
        if self.paystack_reference:
            return ProviderKind.PAYSTACK
        return None


class Subscription(_Purchase):
    """Recurring maintenance plan."""
    plan_name: PlanName
    interval: BillingInterval = BillingInterval.MONTHLY
    start_date: Optional[datetime] = None
    next_billing_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    paypal_subscription_id: Optional[str] = None
    paystack_subscription_code: Optional[str] = None
    paystack_email_token: Optional[str] = None

    status: SubscriptionStatus = SubscriptionStatus.PENDING
    last_payment_reference: Optional[str] = None

    entity_type: ClassVar[EntityType] = EntityType.SUBSCRIPTION

    @field_validator("start_date", "next_billing_date", "end_date")
    @classmethod
    def _utc_dates(cls, value: Optional[datetime]) -> Optional[datetime]:
        # naive timestamps are UTC
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @model_validator(mode="after")
    def _active_has_reference(self) -> "Subscription":
        if self.status == SubscriptionStatus.ACTIVE and self.bound_provider is None:
            raise ValueError("an active subscription must carry a payment reference")
        return self

    @property
    def bound_provider(self) -> Optional[ProviderKind]:
        if self.stripe_session_id:
            return ProviderKind.STRIPE
        if self.paypal_subscription_id:
            return ProviderKind.PAYPAL
        if self.paystack_reference or self.paystack_subscription_code:
            return ProviderKind.PAYSTACK
        return None


class SubmissionFile(BaseModel):
    file_id: str
    file_url: str
    filename: str
    mime_type: str = "application/octet-stream"


class Submission(_Document):
    """Files delivered by the admin team for one order."""
    order_id: str
    user_id: str
    email: str
    files: List[SubmissionFile] = Field(default_factory=list)

    def with_files(self, files: List[SubmissionFile]) -> Tuple["Submission", int]:
        """Append ``files`` skipping ids already present. Returns (copy, added)."""
        known = {f.file_id for f in self.files}
        fresh = []
        for f in files:
            if f.file_id not in known:
                known.add(f.file_id)
                fresh.append(f)
        if not fresh:
            return self, 0
        return self.touched(files=[*self.files, *fresh]), len(fresh)


class Package(_Document):
    """Catalog plan. Orders and subscriptions snapshot it at creation."""
    title: str
    price: Optional[float] = Field(default=None, ge=0)
    billing_cycle: BillingCycle = BillingCycle.ONE_TIME
    description: str = ""
    features: List[str] = Field(default_factory=list)
    popular: bool = False
    plan_type: PlanType = PlanType.DEVELOPMENT

    @model_validator(mode="after")
    def _maintenance_is_priced(self) -> "Package":
        if self.plan_type == PlanType.MAINTENANCE and self.price is None:
            raise ValueError("maintenance packages require a price")
        return self


# =============================================================================
# PAYMENT EXCHANGE TYPES
# =============================================================================

class Payer(BaseModel):
    email: str
    name: str = ""


class ProviderSession(BaseModel):
    """Result of initiating a payment with a provider."""
    provider: ProviderKind
    reference: str
    redirect_url: Optional[str] = None
    access_code: Optional[str] = None
    amount: float
    currency: str
    extra_fields: Dict[str, str] = Field(default_factory=dict)


class ConfirmationResult(BaseModel):
    """A provider's verdict on one transaction, from a callback or a webhook."""
    provider: ProviderKind
    outcome: PaymentOutcome
    reference: str
    reference_kind: ReferenceKind = ReferenceKind.CHECKOUT
    transaction_id: str
    amount: Optional[float] = None
    currency: Optional[str] = None
    updates: Dict[str, str] = Field(default_factory=dict)
    source_event: Optional[str] = None


class PaymentEvent(BaseModel):
    """Normalized event fed to the reconciliation engine."""
    kind: EventKind
    provider: ProviderKind
    reference: str
    reference_field: str
    transaction_id: str
    amount: Optional[float] = None
    currency: Optional[str] = None
    updates: Dict[str, str] = Field(default_factory=dict)


class SideEffect(BaseModel):
    kind: SideEffectKind
    entity_type: EntityType
    entity_id: str
    message: str = ""


class AuditLogEntry(BaseModel):
    """Immutable audit log entry"""
    log_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    correlation_id: str
    event_type: AuditEventType
    entity_type: str
    entity_id: str
    previous_state: Optional[dict] = None
    new_state: Optional[dict] = None
    metadata: dict = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)
    actor: str = "system"
